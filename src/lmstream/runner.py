import asyncio
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Awaitable
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from lmstream.cancellation import CancellationSignal
from lmstream.config import StreamConfig
from lmstream.decoders import VendorStreamDecoder
from lmstream.events import Done, StreamEvent, TextDelta, ThinkingDelta, ToolCallDelta
from lmstream.streaming import CompletedToolCall, ToolCallAssembler
from lmstream.thinking import TagTextFilter
from lmstream.xml_tools import XmlParseOptions, XmlToolCallStreamParser

logger = logging.getLogger(__name__)


@dataclass
class StreamSinks:
    """Caller-supplied callbacks, invoked synchronously and in order.

    ``on_tool_calls`` receives a single batch at the end of the stream.
    """

    on_text: Callable[[str], None] | None = None
    on_thinking: Callable[[str], None] | None = None
    on_tool_calls: Callable[[list[CompletedToolCall]], None] | None = None


@dataclass
class StreamResult:
    """The outcome of a single Runner.run() invocation."""

    text: str = ""
    thinking: str = ""
    thinking_signature: str | None = None
    tool_calls: list[CompletedToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    cancelled: bool = False
    used_fallback: bool = False
    event_count: int = 0


class Runner:
    """Drives one streamed model response through the extraction pipeline.

    Fragments are decoded into events; visible text passes through the
    thinking-tag filter (and, in prompt-based tool mode, the XML tool
    parser), side-channel thinking goes straight to the thinking sink,
    and tool-call fragments are assembled until the end of the stream.

    A Runner owns per-request state and drives exactly one response.
    ``run()`` drains ``iter()``.  ``iter()`` is the streaming entry point.

    Args:
        decoder: Decoder for the provider's wire format.
        config: Streaming behaviour; defaults to :class:`StreamConfig`.
        tool_names: Tools offered to the model, used to recognise XML
            tool calls when ``config.prompt_based_tool_calling`` is set.
    """

    def __init__(
        self,
        decoder: VendorStreamDecoder,
        config: StreamConfig | None = None,
        tool_names: Iterable[str] = (),
    ):
        self.decoder = decoder
        self.config = config or StreamConfig()
        self.tool_names = [n for n in tool_names if n]
        self.result = StreamResult()

        self._sinks = StreamSinks()
        self._filter: TagTextFilter | None = None
        self._assembler = ToolCallAssembler()
        self._xml_parser: XmlToolCallStreamParser | None = None
        if self.config.prompt_based_tool_calling and self.tool_names:
            self._xml_parser = XmlToolCallStreamParser(
                self.tool_names,
                XmlParseOptions(
                    trim_parameter_whitespace=self.config.trim_xml_parameter_whitespace,
                ),
            )
        self._xml_calls: list[CompletedToolCall] = []
        self._observed_output = False

    @property
    def observed_output(self) -> bool:
        """Whether any text, thinking, or tool call has been seen."""
        return self._observed_output

    async def run(
        self,
        fragments: AsyncIterable[Any],
        sinks: StreamSinks | None = None,
        cancel: CancellationSignal | None = None,
        fallback: Callable[[], Awaitable[Any]] | None = None,
    ) -> StreamResult:
        """Consume the stream, then emit the end-of-stream tool-call batch.

        If the stream produced no output and was not cancelled,
        *fallback* is awaited once for a complete non-streaming response,
        which is absorbed exactly like streamed output.
        """
        async for _event in self.iter(fragments, sinks, cancel):
            pass

        if fallback is not None and not self._observed_output and not self.result.cancelled:
            logger.warning("Stream produced no output; retrying without streaming")
            logger.debug(
                f"Empty stream: events={self.result.event_count} "
                f"finish_reason={self.result.finish_reason}"
            )
            self.result.used_fallback = True
            response = await self._await_fallback(fallback, cancel)
            if cancel is not None and cancel.cancelled:
                self._mark_cancelled()
            elif response is not None:
                for event in self.decoder.decode_response(response):
                    self._absorb(event)

        return self._finish()

    async def iter(
        self,
        fragments: AsyncIterable[Any],
        sinks: StreamSinks | None = None,
        cancel: CancellationSignal | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Decode *fragments*, routing output to *sinks* and yielding events.

        The cancellation signal is checked before each fragment.  Output
        produced before cancellation is kept.
        """
        self._bind(sinks)
        iterator = fragments.__aiter__()
        try:
            while True:
                if cancel is not None and cancel.cancelled:
                    self._mark_cancelled()
                    break
                try:
                    fragment = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                except asyncio.CancelledError:
                    if cancel is None or not cancel.cancelled:
                        raise
                    self._mark_cancelled()
                    break
                for event in self.decoder.decode(fragment):
                    self._absorb(event)
                    yield event
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    def emit_completed_tool_calls(self) -> list[CompletedToolCall]:
        """Collect finished tool calls from every source, deduplicated by id."""
        seen = {tc.id for tc in self.result.tool_calls}
        batch = []
        for tc in [*self._assembler.finalize(), *self._xml_calls]:
            if tc.id in seen:
                logger.debug(f"Skipping duplicate tool call {tc.id}")
                continue
            seen.add(tc.id)
            batch.append(tc)
        self._xml_calls = []
        self.result.tool_calls.extend(batch)
        return batch

    # ------------------------------------------------------------------
    # Event routing
    # ------------------------------------------------------------------

    def _bind(self, sinks: StreamSinks | None) -> None:
        if self._filter is not None:
            return
        self._sinks = sinks or StreamSinks()
        self._filter = TagTextFilter(
            on_text=self._on_visible_text,
            on_thinking=self._on_inline_thinking if self._sinks.on_thinking else None,
            preamble_handling=self.config.preamble_tag_handling,
            block_handling=self.config.block_tag_handling,
        )

    def _absorb(self, event: StreamEvent) -> None:
        if self._filter is None:
            self._bind(None)
        self.result.event_count += 1

        if isinstance(event, TextDelta):
            if event.text:
                self._observed_output = True
                self._filter.ingest(event.text)
        elif isinstance(event, ThinkingDelta):
            self._observed_output = True
            self._filter.notify_thinking_received()
            if event.signature:
                self.result.thinking_signature = event.signature
            if event.text:
                self.result.thinking += event.text
                if self._sinks.on_thinking is not None:
                    self._sinks.on_thinking(event.text)
        elif isinstance(event, ToolCallDelta):
            self._observed_output = True
            self._assembler.feed(event)
        elif isinstance(event, Done):
            if event.finish_reason:
                self.result.finish_reason = event.finish_reason
        else:
            logger.warning(f"Ignoring unknown stream event {type(event).__name__}")

    def _on_visible_text(self, text: str) -> None:
        if self._xml_parser is not None:
            for call in self._xml_parser.add_chunk(text):
                self._xml_calls.append(CompletedToolCall(
                    id=call.id, name=call.name, arguments=json.dumps(call.arguments),
                ))
            return
        self.result.text += text
        if self._sinks.on_text is not None:
            self._sinks.on_text(text)

    def _on_inline_thinking(self, text: str) -> None:
        self.result.thinking += text
        self._sinks.on_thinking(text)

    def _mark_cancelled(self) -> None:
        if not self.result.cancelled:
            logger.info("Stream cancelled; keeping partial output")
        self.result.cancelled = True

    def _finish(self) -> StreamResult:
        if self._filter is None:
            self._bind(None)
        self._filter.flush()

        if self._xml_parser is not None:
            for call in self._xml_parser.finalize():
                self._xml_calls.append(CompletedToolCall(
                    id=call.id, name=call.name, arguments=json.dumps(call.arguments),
                ))
            narrative = self._xml_parser.non_tool_call_text()
            self.result.text = narrative
            if narrative and self._sinks.on_text is not None:
                self._sinks.on_text(narrative)

        batch = self.emit_completed_tool_calls()
        if batch and self._sinks.on_tool_calls is not None:
            self._sinks.on_tool_calls(batch)
        return self.result

    @staticmethod
    async def _await_fallback(
        fallback: Callable[[], Awaitable[Any]],
        cancel: CancellationSignal | None,
    ) -> Any:
        if cancel is None:
            return await fallback()

        if cancel.cancelled:
            return None
        request = asyncio.ensure_future(fallback())
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({request, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            request.cancel()
            raise
        finally:
            waiter.cancel()
        if request.done():
            return request.result()

        request.cancel()
        try:
            await request
        except asyncio.CancelledError:
            pass
        logger.info("Fallback request cancelled")
        return None
