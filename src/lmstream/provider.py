import logging
import os
from collections.abc import AsyncIterator
from contextlib import contextmanager
from typing import Any

import anthropic
import httpx
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from lmstream.cancellation import CancellationSignal
from lmstream.config import ModelOverride, StreamConfig, resolve_config
from lmstream.decoders import (
    AnthropicMessagesDecoder,
    ChatCompletionsDecoder,
    GeminiDecoder,
    ResponsesDecoder,
    VendorStreamDecoder,
)
from lmstream.errors import ProviderError
from lmstream.instrumentation import (
    completion_span,
    fallback_span,
    record_error,
    record_usage,
)
from lmstream.message import (
    Message,
    to_anthropic_messages,
    to_gemini_contents,
    to_openai_messages,
    to_prompt_based_messages,
    to_responses_input,
)
from lmstream.runner import Runner, StreamResult, StreamSinks
from lmstream.sse import iter_sse_data
from lmstream.tools import (
    ToolDefinition,
    anthropic_tool_choice,
    gemini_tool_config,
    openai_tool_choice,
    responses_tool_choice,
)
from lmstream.xml_tools import generate_xml_tool_prompt

logger = logging.getLogger(__name__)

ANTHROPIC_DEFAULT_MAX_TOKENS = 2048
ANTHROPIC_THINKING_BUDGETS = {"low": 2048, "medium": 4096, "high": 8192, "auto": 4096}
ANTHROPIC_MIN_THINKING_BUDGET = 1024
GEMINI_DEFAULT_ENDPOINT = "https://generativelanguage.googleapis.com"
GEMINI_THINKING_LEVELS = {"low": "LOW", "medium": "MEDIUM", "high": "HIGH"}
OPENAI_REASONING_EFFORTS = ("low", "medium", "high")


@contextmanager
def _translate_errors(model: str, messages: list):
    """Re-raise SDK and HTTP failures as a single ProviderError."""
    try:
        yield
    except (openai.APIStatusError, anthropic.APIStatusError) as e:
        raise ProviderError(
            e.message, status=e.status_code, model=model, message_count=len(messages),
        ) from e
    except (openai.APIConnectionError, anthropic.APIConnectionError) as e:
        raise ProviderError(
            str(e), model=model, message_count=len(messages),
        ) from e
    except httpx.HTTPStatusError as e:
        raise ProviderError(
            e.response.text, status=e.response.status_code,
            model=model, message_count=len(messages),
        ) from e
    except httpx.TransportError as e:
        raise ProviderError(
            str(e) or type(e).__name__, model=model, message_count=len(messages),
        ) from e


class ModelProvider:
    """Base class for vendor providers.

    Subclasses build vendor requests and implement the two transport
    operations: :meth:`stream` yields raw protocol fragments and
    :meth:`complete` returns one non-streaming response.
    :meth:`stream_chat` wires both into a :class:`Runner`.

    Args:
        config: Default streaming behaviour for every model.
        overrides: Per-model settings keyed by model id or ``*`` pattern.
    """

    system = ""

    def __init__(
        self,
        config: StreamConfig | None = None,
        overrides: dict[str, ModelOverride] | None = None,
    ):
        self.config = config or StreamConfig()
        self.overrides = overrides or {}

    def resolve_config(self, model: str) -> StreamConfig:
        return resolve_config(model, self.overrides, self.config)

    def decoder(self, config: StreamConfig) -> VendorStreamDecoder:
        raise NotImplementedError

    async def stream(
            self,
            model: str,
            messages: list[Message],
            tools: list[ToolDefinition],
            config: StreamConfig,
    ) -> AsyncIterator[Any]:
        raise NotImplementedError
        yield

    async def complete(
            self,
            model: str,
            messages: list[Message],
            tools: list[ToolDefinition],
            config: StreamConfig,
    ) -> Any:
        raise NotImplementedError

    async def stream_chat(
            self,
            model: str,
            messages: list[Message],
            tools: list[ToolDefinition] | None = None,
            sinks: StreamSinks | None = None,
            cancel: CancellationSignal | None = None,
            config: StreamConfig | None = None,
    ) -> StreamResult:
        """Stream one assistant turn and return what it produced.

        In prompt-based tool mode the tools are described in the system
        prompt instead of being sent natively, and tool calls are read
        back out of the visible text.
        """
        config = config or self.resolve_config(model)
        tools = tools or []
        tool_names: list[str] = []
        if config.prompt_based_tool_calling and tools:
            messages = to_prompt_based_messages(messages, generate_xml_tool_prompt(tools))
            tool_names = [t.name for t in tools]
            tools = []

        runner = Runner(self.decoder(config), config, tool_names=tool_names)

        async def fallback():
            async with fallback_span(self.system, model) as span:
                try:
                    response = await self.complete(model, messages, tools, config)
                except ProviderError as e:
                    record_error(span, e)
                    raise
                record_usage(span, _response_usage(response))
                return response

        async with completion_span(self.system, model) as span:
            try:
                result = await runner.run(
                    self.stream(model, messages, tools, config),
                    sinks=sinks, cancel=cancel, fallback=fallback,
                )
            except ProviderError as e:
                logger.error(f"{self.system} request for {model} failed: {e}")
                record_error(span, e)
                raise
        logger.debug(
            f"{model}: {len(result.text)} chars, {len(result.tool_calls)} tool calls, "
            f"finish_reason={result.finish_reason}"
        )
        return result


def _response_usage(response: Any) -> Any:
    if isinstance(response, dict):
        return response.get("usage") or response.get("usageMetadata")
    return getattr(response, "usage", None)


# ----------------------------------------------------------------------
# OpenAI and compatible gateways
# ----------------------------------------------------------------------

class OpenAIProvider(ModelProvider):
    """OpenAI Chat Completions, or the Responses API when requested.

    The client does not retry; the only retry is the empty-stream
    fallback.
    """

    system = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        use_responses_api: bool = False,
        timeout: float = 600.0,
        config: StreamConfig | None = None,
        overrides: dict[str, ModelOverride] | None = None,
    ):
        super().__init__(config, overrides)
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            max_retries=0,
            timeout=timeout,
        )
        self.use_responses_api = use_responses_api

    def decoder(self, config: StreamConfig) -> VendorStreamDecoder:
        decoder_cls = ResponsesDecoder if self.use_responses_api else ChatCompletionsDecoder
        return decoder_cls(suppress_chain_of_thought=config.suppress_chain_of_thought)

    def chat_params(
            self,
            model: str,
            messages: list[Message],
            tools: list[ToolDefinition],
            config: StreamConfig,
    ) -> dict:
        params: dict[str, Any] = {
            "model": model,
            "messages": to_openai_messages(messages),
        }
        if tools:
            params["tools"] = [t.to_openai() for t in tools]
            if config.tool_choice:
                params["tool_choice"] = openai_tool_choice(config.tool_choice)
        if config.max_tokens is not None:
            params["max_tokens"] = config.max_tokens
        if config.temperature is not None:
            params["temperature"] = config.temperature
        if config.thinking in OPENAI_REASONING_EFFORTS:
            params["reasoning_effort"] = config.thinking
        return params

    def responses_params(
            self,
            model: str,
            messages: list[Message],
            tools: list[ToolDefinition],
            config: StreamConfig,
    ) -> dict:
        params: dict[str, Any] = {
            "model": model,
            "input": to_responses_input(messages),
        }
        if tools:
            params["tools"] = [t.to_responses() for t in tools]
            if config.tool_choice:
                params["tool_choice"] = responses_tool_choice(config.tool_choice)
        if config.max_tokens is not None:
            params["max_output_tokens"] = config.max_tokens
        if config.temperature is not None:
            params["temperature"] = config.temperature
        if config.thinking in OPENAI_REASONING_EFFORTS:
            params["reasoning"] = {"effort": config.thinking}
        return params

    async def stream(self, model, messages, tools, config):
        with _translate_errors(model, messages):
            if self.use_responses_api:
                response = await self.client.responses.create(
                    **self.responses_params(model, messages, tools, config), stream=True,
                )
            else:
                response = await self.client.chat.completions.create(
                    **self.chat_params(model, messages, tools, config), stream=True,
                )
            async for chunk in response:
                yield chunk

    async def complete(self, model, messages, tools, config):
        with _translate_errors(model, messages):
            if self.use_responses_api:
                return await self.client.responses.create(
                    **self.responses_params(model, messages, tools, config), stream=False,
                )
            return await self.client.chat.completions.create(
                **self.chat_params(model, messages, tools, config), stream=False,
            )


class OpenRouter(OpenAIProvider):

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float = 180.0,
        config: StreamConfig | None = None,
        overrides: dict[str, ModelOverride] | None = None,
    ):
        if not api_key:
            api_key = os.getenv("OPENROUTER_API_KEY")
        super().__init__(
            api_key=api_key,
            base_url="https://openrouter.ai/api/v1",
            timeout=timeout,
            config=config,
            overrides=overrides,
        )


class OpenAICompatibleProvider(OpenAIProvider):
    """Any server that speaks the Chat Completions protocol."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "DUMMY",
        timeout: float = 600.0,
        config: StreamConfig | None = None,
        overrides: dict[str, ModelOverride] | None = None,
    ):
        base_url = base_url.rstrip("/")
        super().__init__(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            config=config,
            overrides=overrides,
        )
        self.base_url = base_url


class VLLMProvider(OpenAICompatibleProvider):

    def __init__(self, url: str, port: int, **kwargs):
        super().__init__(base_url=f"http://{url}:{port}/v1", **kwargs)


# ----------------------------------------------------------------------
# Anthropic
# ----------------------------------------------------------------------

def normalize_anthropic_base_url(endpoint: str | None) -> str | None:
    """Strip trailing slashes and a trailing ``/v1``; the SDK adds its own."""
    if not endpoint:
        return None
    normalized = endpoint.rstrip("/")
    if normalized.endswith("/v1"):
        normalized = normalized[:-3]
    return normalized


def anthropic_thinking(thinking: str | int | None) -> dict | None:
    if thinking is None:
        return None
    if isinstance(thinking, int):
        if thinking <= 0:
            return None
        return {"type": "enabled", "budget_tokens": max(ANTHROPIC_MIN_THINKING_BUDGET, thinking)}
    level = thinking.lower()
    if level in ("none", "disabled"):
        return {"type": "disabled"}
    if level in ANTHROPIC_THINKING_BUDGETS:
        return {"type": "enabled", "budget_tokens": ANTHROPIC_THINKING_BUDGETS[level]}
    return None


class AnthropicProvider(ModelProvider):

    system = "anthropic"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 600.0,
        config: StreamConfig | None = None,
        overrides: dict[str, ModelOverride] | None = None,
    ):
        super().__init__(config, overrides)
        if not api_key:
            api_key = os.getenv("ANTHROPIC_API_KEY")
        self.client = AsyncAnthropic(
            api_key=api_key,
            base_url=normalize_anthropic_base_url(base_url),
            max_retries=0,
            timeout=timeout,
        )

    def decoder(self, config: StreamConfig) -> VendorStreamDecoder:
        return AnthropicMessagesDecoder(
            suppress_chain_of_thought=config.suppress_chain_of_thought,
        )

    def message_params(
            self,
            model: str,
            messages: list[Message],
            tools: list[ToolDefinition],
            config: StreamConfig,
    ) -> dict:
        system, turns = to_anthropic_messages(messages)
        thinking = anthropic_thinking(config.thinking)
        max_tokens = config.max_tokens
        if max_tokens is None:
            max_tokens = ANTHROPIC_DEFAULT_MAX_TOKENS
            # The thinking budget must fit inside max_tokens.
            if thinking and thinking["type"] == "enabled":
                max_tokens += thinking["budget_tokens"]

        params: dict[str, Any] = {
            "model": model,
            "messages": turns,
            "max_tokens": max_tokens,
        }
        if system:
            params["system"] = system
        if config.temperature is not None:
            params["temperature"] = config.temperature
        if tools:
            params["tools"] = [t.to_anthropic() for t in tools]
            tool_choice = anthropic_tool_choice(config.tool_choice)
            if tool_choice:
                params["tool_choice"] = tool_choice
        if thinking:
            params["thinking"] = thinking
        return params

    async def stream(self, model, messages, tools, config):
        with _translate_errors(model, messages):
            response = await self.client.messages.create(
                **self.message_params(model, messages, tools, config), stream=True,
            )
            async for event in response:
                yield event

    async def complete(self, model, messages, tools, config):
        with _translate_errors(model, messages):
            return await self.client.messages.create(
                **self.message_params(model, messages, tools, config), stream=False,
            )


# ----------------------------------------------------------------------
# Gemini
# ----------------------------------------------------------------------

def gemini_thinking_config(thinking: str | int | None) -> dict | None:
    if thinking is None:
        return None
    if isinstance(thinking, int):
        if thinking <= 0:
            return None
        return {"thinkingBudget": thinking, "includeThoughts": True}
    level = thinking.lower()
    if level == "auto":
        return {"includeThoughts": True}
    if level in GEMINI_THINKING_LEVELS:
        return {"thinkingLevel": GEMINI_THINKING_LEVELS[level], "includeThoughts": True}
    return None


class GeminiProvider(ModelProvider):
    """Google Gemini over its native REST API.

    Streams ``:streamGenerateContent?alt=sse`` with httpx and authenticates
    with the ``X-Goog-Api-Key`` header.
    """

    system = "gemini"

    def __init__(
        self,
        api_key: str | None = None,
        endpoint: str = GEMINI_DEFAULT_ENDPOINT,
        timeout: float = 600.0,
        config: StreamConfig | None = None,
        overrides: dict[str, ModelOverride] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(config, overrides)
        if not api_key:
            api_key = os.getenv("GEMINI_API_KEY")
        self.api_key = api_key
        self.endpoint = endpoint.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    def decoder(self, config: StreamConfig) -> VendorStreamDecoder:
        return GeminiDecoder(suppress_chain_of_thought=config.suppress_chain_of_thought)

    def model_url(self, model: str, method: str) -> str:
        base = self.endpoint if "/v1beta" in self.endpoint else f"{self.endpoint}/v1beta"
        model_path = model if model.startswith("models/") else f"models/{model}"
        return f"{base}/{model_path}:{method}"

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Goog-Api-Key": self.api_key or "",
        }

    def request_body(
            self,
            messages: list[Message],
            tools: list[ToolDefinition],
            config: StreamConfig,
    ) -> dict:
        system_instruction, contents = to_gemini_contents(messages)
        body: dict[str, Any] = {"contents": contents}
        if system_instruction:
            body["systemInstruction"] = system_instruction
        if tools:
            body["tools"] = [{"functionDeclarations": [t.to_gemini() for t in tools]}]
            tool_config = gemini_tool_config(config.tool_choice)
            if tool_config:
                body["toolConfig"] = tool_config

        generation_config: dict[str, Any] = {}
        if config.max_tokens is not None:
            generation_config["maxOutputTokens"] = config.max_tokens
        if config.temperature is not None:
            generation_config["temperature"] = config.temperature
        thinking_config = gemini_thinking_config(config.thinking)
        if thinking_config:
            generation_config["thinkingConfig"] = thinking_config
        if generation_config:
            body["generationConfig"] = generation_config
        return body

    async def stream(self, model, messages, tools, config):
        url = self.model_url(model, "streamGenerateContent") + "?alt=sse"
        body = self.request_body(messages, tools, config)
        with _translate_errors(model, messages):
            async with self.client.stream("POST", url, json=body, headers=self.headers) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                resp.raise_for_status()
                async for data in iter_sse_data(resp.aiter_text()):
                    yield data

    async def complete(self, model, messages, tools, config):
        url = self.model_url(model, "generateContent")
        body = self.request_body(messages, tools, config)
        with _translate_errors(model, messages):
            resp = await self.client.post(url, json=body, headers=self.headers)
            resp.raise_for_status()
            return resp.json()

    async def aclose(self) -> None:
        await self.client.aclose()
