import json
from dataclasses import dataclass, field

import pytest

from lmstream.decoders import ChatCompletionsDecoder
from lmstream.provider import ModelProvider
from lmstream.runner import StreamSinks
from lmstream.streaming import CompletedToolCall


# ---------------------------------------------------------------------------
# Fragment builders (mirror the OpenAI Chat Completions chunk shape)
# ---------------------------------------------------------------------------

def chat_chunk(
    content: str | None = None,
    tool_calls: list[dict] | None = None,
    finish_reason: str | None = None,
    **extra,
) -> dict:
    """One streamed ``chat.completion.chunk`` with a single choice."""
    delta = dict(extra)
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    return {"choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}


def tool_call_delta(
    index: int,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> dict:
    function = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    tc = {"index": index, "function": function}
    if call_id is not None:
        tc["id"] = call_id
    return tc


def chat_completion(content: str | None = "hi", tool_calls: list[dict] | None = None) -> dict:
    """A complete non-streaming ``chat.completion`` body."""
    message = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {"choices": [{"index": 0, "message": message, "finish_reason": "stop"}]}


def sse_body(*payloads) -> str:
    lines = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    return "".join(lines) + "data: [DONE]\n\n"


async def aiter(items):
    for item in items:
        yield item


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

@dataclass
class RecordingSinks:
    """Collects everything a stream hands to its callers."""

    text: list[str] = field(default_factory=list)
    thinking: list[str] = field(default_factory=list)
    tool_call_batches: list[list[CompletedToolCall]] = field(default_factory=list)

    def sinks(self, thinking: bool = True) -> StreamSinks:
        return StreamSinks(
            on_text=self.text.append,
            on_thinking=self.thinking.append if thinking else None,
            on_tool_calls=self.tool_call_batches.append,
        )

    @property
    def all_text(self) -> str:
        return "".join(self.text)

    @property
    def all_thinking(self) -> str:
        return "".join(self.thinking)


@pytest.fixture
def recorder():
    return RecordingSinks()


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------

class MockProvider(ModelProvider):
    """Provider that replays queued fragments and responses. No network calls."""

    system = "mock"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.streams: list[list] = []
        self.responses: list = []
        self.call_log: list[dict] = []

    def decoder(self, config):
        return ChatCompletionsDecoder(
            suppress_chain_of_thought=config.suppress_chain_of_thought,
        )

    async def stream(self, model, messages, tools, config):
        self.call_log.append({
            "model": model, "messages": messages, "tools": tools, "stream": True,
        })
        for fragment in self.streams.pop(0):
            yield fragment

    async def complete(self, model, messages, tools, config):
        self.call_log.append({
            "model": model, "messages": messages, "tools": tools, "stream": False,
        })
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def mock_provider():
    return MockProvider()
