"""Unit tests for the vendor stream decoders."""

import json
import logging

import pytest

from lmstream.decoders import (
    AnthropicMessagesDecoder,
    ChatCompletionsDecoder,
    GeminiDecoder,
    ResponsesDecoder,
)
from lmstream.events import Done, TextDelta, ThinkingDelta, ToolCallDelta
from lmstream.streaming import CompletedToolCall, ToolCallAssembler

from tests.conftest import chat_chunk, chat_completion, tool_call_delta


class FakeSDKChunk:
    """Stands in for an SDK pydantic model."""

    def __init__(self, payload):
        self._payload = payload

    def model_dump(self):
        return self._payload


# ---------------------------------------------------------------------------
# Fragment loading
# ---------------------------------------------------------------------------

class TestFragmentLoading:
    def test_raw_json_string(self):
        events = ChatCompletionsDecoder().decode(json.dumps(chat_chunk("hi")))
        assert events == [TextDelta(text="hi")]

    def test_sse_data_line(self):
        events = ChatCompletionsDecoder().decode("data: " + json.dumps(chat_chunk("hi")))
        assert events == [TextDelta(text="hi")]

    def test_done_sentinel_ignored(self):
        assert ChatCompletionsDecoder().decode("data: [DONE]") == []

    def test_blank_and_comment_lines_ignored(self):
        decoder = ChatCompletionsDecoder()
        assert decoder.decode("") == []
        assert decoder.decode(": keep-alive") == []
        assert decoder.decode("event: message") == []

    def test_malformed_json_discarded(self, caplog):
        decoder = ChatCompletionsDecoder()
        with caplog.at_level(logging.DEBUG, logger="lmstream.decoders"):
            assert decoder.decode('{"choices": [') == []
        assert any("malformed" in r.message for r in caplog.records)
        # The decoder keeps working after a bad event.
        assert decoder.decode(chat_chunk("ok")) == [TextDelta(text="ok")]

    def test_sdk_object(self):
        events = ChatCompletionsDecoder().decode(FakeSDKChunk(chat_chunk("hi")))
        assert events == [TextDelta(text="hi")]

    def test_unrecognised_fragment(self):
        assert ChatCompletionsDecoder().decode(42) == []


# ---------------------------------------------------------------------------
# Chat Completions
# ---------------------------------------------------------------------------

class TestChatCompletions:
    def test_text_and_finish(self):
        events = ChatCompletionsDecoder().decode(chat_chunk("hi", finish_reason="stop"))
        assert events == [TextDelta(text="hi"), Done(finish_reason="stop")]

    def test_empty_choices(self):
        assert ChatCompletionsDecoder().decode({"choices": [], "usage": {}}) == []

    @pytest.mark.parametrize("field", ["reasoning_content", "reasoning", "thinking"])
    def test_reasoning_side_channel(self, field):
        events = ChatCompletionsDecoder().decode(chat_chunk(**{field: "hmm"}))
        assert events == [ThinkingDelta(text="hmm")]

    def test_first_non_empty_reasoning_field_wins(self):
        events = ChatCompletionsDecoder().decode(
            chat_chunk(reasoning_content="", reasoning="second", thinking="third"),
        )
        assert events == [ThinkingDelta(text="second")]

    def test_reasoning_as_list_of_strings(self):
        events = ChatCompletionsDecoder().decode(chat_chunk(reasoning=["a", "b"]))
        assert events == [ThinkingDelta(text="ab")]

    def test_suppressed_reasoning_still_observed(self):
        decoder = ChatCompletionsDecoder(suppress_chain_of_thought=True)
        assert decoder.decode(chat_chunk(reasoning="secret")) == [ThinkingDelta(text="")]

    def test_index_addressed_tool_calls(self):
        events = ChatCompletionsDecoder().decode(chat_chunk(tool_calls=[
            tool_call_delta(0, call_id="c1", name="t", arguments='{"a"'),
        ]))
        assert events == [ToolCallDelta(
            key=0, call_id="c1", name="t", arguments_delta='{"a"',
        )]

    def test_message_shape_replaces_arguments(self):
        body = chat_completion(content="done", tool_calls=[
            {"id": "c1", "type": "function", "function": {"name": "t", "arguments": "{}"}},
        ])
        events = ChatCompletionsDecoder().decode(body)
        assert events == [
            TextDelta(text="done"),
            ToolCallDelta(key=0, call_id="c1", name="t", arguments_delta="{}", replace_arguments=True),
            Done(finish_reason="stop"),
        ]

    def test_delta_and_message_in_same_chunk(self):
        chunk = {"choices": [{
            "delta": {"content": "a"},
            "message": {"content": "b"},
        }]}
        assert ChatCompletionsDecoder().decode(chunk) == [TextDelta(text="a"), TextDelta(text="b")]

    def test_decode_response(self):
        events = ChatCompletionsDecoder().decode_response(chat_completion("hello"))
        assert events == [TextDelta(text="hello"), Done(finish_reason="stop")]


# ---------------------------------------------------------------------------
# Responses API
# ---------------------------------------------------------------------------

class TestResponses:
    def test_text_delta_then_done_not_duplicated(self):
        decoder = ResponsesDecoder()
        assert decoder.decode({
            "type": "response.output_text.delta", "item_id": "m1", "delta": "Hi",
        }) == [TextDelta(text="Hi")]
        assert decoder.decode({
            "type": "response.output_text.done", "item_id": "m1", "text": "Hi",
        }) == []

    def test_text_done_without_delta(self):
        events = ResponsesDecoder().decode({
            "type": "response.output_text.done", "item_id": "m1", "text": "Hi",
        })
        assert events == [TextDelta(text="Hi")]

    def test_refusal(self):
        decoder = ResponsesDecoder()
        assert decoder.decode({
            "type": "response.refusal.done", "item_id": "m1", "refusal": "No.",
        }) == [TextDelta(text="No.")]

    def test_reasoning_text(self):
        events = ResponsesDecoder().decode({
            "type": "response.reasoning_text.delta", "item_id": "r1", "delta": "think",
        })
        assert events == [ThinkingDelta(text="think")]

    def test_function_call_lifecycle(self):
        decoder = ResponsesDecoder()
        added = decoder.decode({
            "type": "response.output_item.added",
            "item": {"type": "function_call", "id": "fc_1", "call_id": "call_1",
                     "name": "search", "arguments": ""},
        })
        delta = decoder.decode({
            "type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": "{}",
        })
        done = decoder.decode({
            "type": "response.function_call_arguments.done", "item_id": "fc_1", "arguments": "{}",
        })

        assert added == [ToolCallDelta(
            key="call_1", call_id="call_1", item_id="fc_1", name="search",
        )]
        assert delta == [ToolCallDelta(key="fc_1", item_id="fc_1", arguments_delta="{}")]
        assert done == [ToolCallDelta(
            key="fc_1", item_id="fc_1", arguments_delta="{}", replace_arguments=True,
        )]

    def test_arguments_done_carries_name(self):
        done = ResponsesDecoder().decode({
            "type": "response.function_call_arguments.done",
            "item_id": "fc_1", "name": "search", "arguments": '{"q": "x"}',
        })
        assert done == [ToolCallDelta(
            key="fc_1", item_id="fc_1", name="search",
            arguments_delta='{"q": "x"}', replace_arguments=True,
        )]

    def test_non_function_items_ignored(self):
        assert ResponsesDecoder().decode({
            "type": "response.output_item.added", "item": {"type": "message", "id": "m1"},
        }) == []

    def test_completed(self):
        events = ResponsesDecoder().decode({
            "type": "response.completed", "response": {"status": "completed"},
        })
        assert events == [Done(finish_reason="completed")]

    def test_decode_response(self):
        response = {
            "status": "completed",
            "output": [
                {"type": "reasoning", "content": [{"type": "reasoning_text", "text": "r"}]},
                {"type": "message", "content": [{"type": "output_text", "text": "hello"}]},
                {"type": "function_call", "id": "fc_1", "call_id": "call_1",
                 "name": "t", "arguments": "{}"},
            ],
        }
        events = ResponsesDecoder().decode_response(response)
        assert events == [
            ThinkingDelta(text="r"),
            TextDelta(text="hello"),
            ToolCallDelta(key="call_1", call_id="call_1", item_id="fc_1", name="t",
                          arguments_delta="{}", replace_arguments=True),
            Done(finish_reason="completed"),
        ]


# ---------------------------------------------------------------------------
# Anthropic Messages
# ---------------------------------------------------------------------------

class TestAnthropic:
    def test_text_blocks(self):
        decoder = AnthropicMessagesDecoder()
        assert decoder.decode({
            "type": "content_block_start", "index": 0,
            "content_block": {"type": "text", "text": ""},
        }) == []
        assert decoder.decode({
            "type": "content_block_delta", "index": 0,
            "delta": {"type": "text_delta", "text": "Hi"},
        }) == [TextDelta(text="Hi")]

    def test_thinking_and_signature(self):
        decoder = AnthropicMessagesDecoder()
        assert decoder.decode({
            "type": "content_block_delta", "index": 0,
            "delta": {"type": "thinking_delta", "thinking": "hmm"},
        }) == [ThinkingDelta(text="hmm")]
        assert decoder.decode({
            "type": "content_block_delta", "index": 0,
            "delta": {"type": "signature_delta", "signature": "sig"},
        }) == [ThinkingDelta(text="", signature="sig")]

    def test_tool_use_stream(self):
        decoder = AnthropicMessagesDecoder()
        start = decoder.decode({
            "type": "content_block_start", "index": 1,
            "content_block": {"type": "tool_use", "id": "toolu_1", "name": "t", "input": {}},
        })
        delta = decoder.decode({
            "type": "content_block_delta", "index": 1,
            "delta": {"type": "input_json_delta", "partial_json": '{"a": 1}'},
        })
        assert start == [ToolCallDelta(key=1, call_id="toolu_1", name="t")]
        assert delta == [ToolCallDelta(key=1, arguments_delta='{"a": 1}')]

    def test_start_input_superseded_by_json_deltas(self):
        decoder = AnthropicMessagesDecoder()
        assembler = ToolCallAssembler()
        for event in [
            {"type": "content_block_start", "index": 0,
             "content_block": {"type": "tool_use", "id": "toolu_1", "name": "t",
                               "input": {"stale": True}}},
            {"type": "content_block_delta", "index": 0,
             "delta": {"type": "input_json_delta", "partial_json": '{"a": '}},
            {"type": "content_block_delta", "index": 0,
             "delta": {"type": "input_json_delta", "partial_json": "1}"}},
            {"type": "content_block_stop", "index": 0},
        ]:
            for delta in decoder.decode(event):
                assembler.feed(delta)

        assert assembler.finalize() == [
            CompletedToolCall(id="toolu_1", name="t", arguments='{"a": 1}'),
        ]

    def test_start_input_used_without_json_deltas(self):
        decoder = AnthropicMessagesDecoder()
        start = decoder.decode({
            "type": "content_block_start", "index": 0,
            "content_block": {"type": "tool_use", "id": "toolu_1", "name": "t",
                              "input": {"a": 1}},
        })
        stop = decoder.decode({"type": "content_block_stop", "index": 0})

        assert start == [ToolCallDelta(key=0, call_id="toolu_1", name="t")]
        assert stop == [ToolCallDelta(key=0, arguments_delta='{"a": 1}', replace_arguments=True)]

    def test_stop_reason(self):
        events = AnthropicMessagesDecoder().decode({
            "type": "message_delta", "delta": {"stop_reason": "tool_use"},
        })
        assert events == [Done(finish_reason="tool_use")]

    def test_decode_response(self):
        message = {
            "content": [
                {"type": "thinking", "thinking": "hmm", "signature": "sig"},
                {"type": "text", "text": "hello"},
                {"type": "tool_use", "id": "toolu_1", "name": "t", "input": {"a": 1}},
            ],
            "stop_reason": "tool_use",
        }
        events = AnthropicMessagesDecoder().decode_response(message)
        assert events == [
            ThinkingDelta(text="hmm", signature="sig"),
            TextDelta(text="hello"),
            ToolCallDelta(key=2, call_id="toolu_1", name="t",
                          arguments_delta='{"a": 1}', replace_arguments=True),
            Done(finish_reason="tool_use"),
        ]


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

def gemini_chunk(parts, finish_reason=None):
    candidate = {"content": {"role": "model", "parts": parts}}
    if finish_reason:
        candidate["finishReason"] = finish_reason
    return {"candidates": [candidate]}


class TestGemini:
    def test_text_and_finish(self):
        events = GeminiDecoder().decode(gemini_chunk([{"text": "Hi"}], finish_reason="STOP"))
        assert events == [TextDelta(text="Hi"), Done(finish_reason="STOP")]

    def test_thought_part_carries_signature(self):
        decoder = GeminiDecoder()
        events = decoder.decode(gemini_chunk([
            {"text": "plan", "thought": True, "thoughtSignature": "sig1"},
        ]))
        assert events == [ThinkingDelta(text="plan", signature="sig1")]

    def test_function_call_gets_generated_id(self):
        events = GeminiDecoder().decode(gemini_chunk([
            {"functionCall": {"name": "search", "args": {"q": "x"}}},
        ]))
        assert len(events) == 1
        delta = events[0]
        assert delta.name == "search"
        assert delta.call_id.startswith("gemini_call_")
        assert delta.key == delta.call_id
        assert json.loads(delta.arguments_delta) == {"q": "x"}

    def test_two_function_calls_get_distinct_ids(self):
        events = GeminiDecoder().decode(gemini_chunk([
            {"functionCall": {"name": "a", "args": {}}},
            {"functionCall": {"name": "b", "args": {}}},
        ]))
        assert events[0].call_id != events[1].call_id

    def test_from_sse_payload(self):
        payload = json.dumps(gemini_chunk([{"text": "Hi"}]))
        assert GeminiDecoder().decode(payload) == [TextDelta(text="Hi")]

    def test_blocked_prompt(self):
        events = GeminiDecoder().decode({"promptFeedback": {"blockReason": "SAFETY"}})
        assert events == [Done(finish_reason="SAFETY")]
