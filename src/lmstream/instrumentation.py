"""Optional OpenTelemetry instrumentation for lmstream.

Call ``lmstream.instrument()`` once at startup to enable tracing.
Requires ``opentelemetry-api`` to be installed; the library
works identically without it.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None

LOG_FORMAT = '%(asctime)s:%(name)s:%(levelname)s:%(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def configure_logging(
    level: int = logging.INFO, filename: str | None = None,
) -> None:
    """Send ``lmstream`` log records to stderr, and optionally a file.

    Libraries should not configure logging on import; applications
    that want the default format call this once at startup.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if filename:
        handlers.append(logging.FileHandler(filename))
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    package_logger = logging.getLogger("lmstream")
    package_logger.setLevel(level)
    for handler in handlers:
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)


def instrument(*, tracer_name: str = "lmstream") -> None:
    """Enable OpenTelemetry tracing for provider requests.

    Call once at startup, after configuring your TracerProvider.
    Requires ``opentelemetry-api``: ``pip install lmstream[otel]``

    Example::

        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            BatchSpanProcessor,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry import trace

        provider = TracerProvider()
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter())
        )
        trace.set_tracer_provider(provider)

        import lmstream
        lmstream.instrument()

    See also:
        - `GenAI Semantic Conventions <https://opentelemetry.io/docs/specs/semconv/gen-ai/>`_

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install lmstream[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured, spans will be "
            "discarded. Set up a TracerProvider to export "
            "traces."
        )
    else:
        logger.info("lmstream instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing.

    Subsequent operations will not emit spans.
    """
    global _tracer
    _tracer = None


@asynccontextmanager
async def completion_span(system: str, model: str):
    """Wrap a streamed provider request in a ``chat`` span."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"chat {model}",
        kind=SpanKind.CLIENT,
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.provider.name": system,
            "gen_ai.request.model": model,
        },
    ) as span:
        yield span


@asynccontextmanager
async def fallback_span(system: str, model: str):
    """Wrap the non-streaming retry issued after an empty stream."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"chat {model} fallback",
        kind=SpanKind.CLIENT,
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.provider.name": system,
            "gen_ai.request.model": model,
            "lmstream.empty_stream_fallback": True,
        },
    ) as span:
        yield span


def _usage_value(usage, *names):
    for name in names:
        if isinstance(usage, dict):
            value = usage.get(name)
        else:
            value = getattr(usage, name, None)
        if value is not None:
            return value
    return None


def record_usage(
    span, usage, response_model: str | None = None
):
    """Set token-usage and response-model attributes on a span.

    Understands OpenAI, Anthropic, and Gemini usage shapes.
    """
    if span is None or usage is None:
        return
    input_tokens = _usage_value(
        usage, "prompt_tokens", "input_tokens", "promptTokenCount",
    )
    if input_tokens is not None:
        span.set_attribute("gen_ai.usage.input_tokens", input_tokens)
    output_tokens = _usage_value(
        usage, "completion_tokens", "output_tokens", "candidatesTokenCount",
    )
    if output_tokens is not None:
        span.set_attribute("gen_ai.usage.output_tokens", output_tokens)
    if response_model:
        span.set_attribute(
            "gen_ai.response.model", response_model
        )


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on a span.

    Sets ``error.type`` per GenAI semantic conventions.
    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute(
        "error.type", type(exception).__qualname__
    )
