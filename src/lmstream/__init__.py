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
from lmstream.events import Done, StreamEvent, TextDelta, ThinkingDelta, ToolCallDelta
from lmstream.instrumentation import configure_logging, instrument, uninstrument
from lmstream.message import Message, MessageRole, ToolCallRequestMessage, ToolCallResultMessage
from lmstream.provider import (
    AnthropicProvider,
    GeminiProvider,
    ModelProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    OpenRouter,
    VLLMProvider,
)
from lmstream.runner import Runner, StreamResult, StreamSinks
from lmstream.streaming import CompletedToolCall, ToolCallAssembler, parse_arguments
from lmstream.thinking import TagHandling, TagTextFilter
from lmstream.tools import ToolDefinition
from lmstream.xml_tools import ParsedToolCall, XmlParseOptions, XmlToolCallStreamParser

__all__ = [
    "AnthropicMessagesDecoder",
    "AnthropicProvider",
    "CancellationSignal",
    "ChatCompletionsDecoder",
    "CompletedToolCall",
    "Done",
    "GeminiDecoder",
    "GeminiProvider",
    "Message",
    "MessageRole",
    "ModelOverride",
    "ModelProvider",
    "OpenAICompatibleProvider",
    "OpenAIProvider",
    "OpenRouter",
    "ParsedToolCall",
    "ProviderError",
    "ResponsesDecoder",
    "Runner",
    "StreamConfig",
    "StreamEvent",
    "StreamResult",
    "StreamSinks",
    "TagHandling",
    "TagTextFilter",
    "TextDelta",
    "ThinkingDelta",
    "ToolCallAssembler",
    "ToolCallDelta",
    "ToolCallRequestMessage",
    "ToolCallResultMessage",
    "ToolDefinition",
    "VLLMProvider",
    "VendorStreamDecoder",
    "XmlParseOptions",
    "XmlToolCallStreamParser",
    "configure_logging",
    "instrument",
    "parse_arguments",
    "resolve_config",
    "uninstrument",
]
