"""Vendor stream decoders.

Each decoder turns one provider's streaming wire format into the
normalised :mod:`lmstream.events` model.  A fragment is either one
pre-parsed protocol object (a ``dict`` or an SDK model exposing
``model_dump()``) or one raw JSON payload as found on an SSE ``data:``
line.  Decoders hold only per-request state; create one per stream.
"""

from __future__ import annotations

import itertools
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

from lmstream.events import Done, StreamEvent, TextDelta, ThinkingDelta, ToolCallDelta

logger = logging.getLogger(__name__)

REASONING_FIELDS = ("reasoning_content", "reasoning", "thinking")


def _as_dict(value: Any) -> dict | None:
    if isinstance(value, dict):
        return value
    if hasattr(value, "model_dump"):
        return value.model_dump()
    return None


def _joined_text(value: Any) -> str:
    """Flatten a string, a list of strings, or a list of text parts."""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        pieces = []
        for item in value:
            if isinstance(item, str):
                pieces.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                pieces.append(item["text"])
        return "".join(pieces)
    return ""


class VendorStreamDecoder(ABC):
    """Base class for protocol-specific stream decoders.

    Args:
        suppress_chain_of_thought: Observe side-channel thinking without
            forwarding its text.  Suppressed thinking still surfaces as an
            empty :class:`ThinkingDelta` so callers know it happened.
    """

    system: str = ""

    def __init__(self, suppress_chain_of_thought: bool = False):
        self.suppress_chain_of_thought = suppress_chain_of_thought

    def decode(self, fragment: Any) -> list[StreamEvent]:
        payload = self._load(fragment)
        if payload is None:
            return []
        return self._decode(payload)

    def decode_response(self, response: Any) -> list[StreamEvent]:
        """Normalise a complete non-streaming response body."""
        return self.decode(response)

    @abstractmethod
    def _decode(self, payload: dict) -> list[StreamEvent]:
        ...

    def _load(self, fragment: Any) -> dict | None:
        if isinstance(fragment, (bytes, bytearray)):
            fragment = fragment.decode("utf-8", errors="replace")
        if isinstance(fragment, str):
            line = fragment.strip()
            if line.startswith("data:"):
                line = line[5:].strip()
            if not line or line == "[DONE]" or line.startswith((":", "event:")):
                return None
            try:
                payload = json.loads(line)
            except json.JSONDecodeError as e:
                logger.debug(f"Discarding malformed {self.system} event: {e}")
                return None
            if not isinstance(payload, dict):
                logger.debug(f"Discarding non-object {self.system} event")
                return None
            return payload

        payload = _as_dict(fragment)
        if payload is None:
            logger.debug(
                f"Discarding unrecognised {self.system} fragment "
                f"of type {type(fragment).__name__}"
            )
        return payload

    def _thinking(self, text: str, signature: str | None = None) -> list[StreamEvent]:
        if not text and signature is None:
            return []
        if self.suppress_chain_of_thought:
            text = ""
        return [ThinkingDelta(text=text, signature=signature)]


class ChatCompletionsDecoder(VendorStreamDecoder):
    """OpenAI Chat Completions and the gateways that mimic it.

    Some gateways send the final message on ``choices[0].message`` rather
    than incremental ``delta`` fields, and some send both; the two shapes
    are decoded the same way.
    """

    system = "openai"

    def _decode(self, payload: dict) -> list[StreamEvent]:
        choices = payload.get("choices") or []
        if not choices:
            return []
        choice = _as_dict(choices[0]) or {}

        events: list[StreamEvent] = []
        delta = choice.get("delta")
        if isinstance(delta, dict):
            events.extend(self._decode_message(delta, complete=False))
        message = choice.get("message")
        if isinstance(message, dict):
            events.extend(self._decode_message(message, complete=True))

        finish_reason = choice.get("finish_reason")
        if finish_reason:
            events.append(Done(finish_reason=finish_reason))
        return events

    def _decode_message(self, message: dict, complete: bool) -> list[StreamEvent]:
        events: list[StreamEvent] = []

        for name in REASONING_FIELDS:
            reasoning = _joined_text(message.get(name))
            if reasoning:
                events.extend(self._thinking(reasoning))
                break

        content = _joined_text(message.get("content"))
        if content:
            events.append(TextDelta(text=content))

        for position, tc in enumerate(message.get("tool_calls") or []):
            tc = _as_dict(tc) or {}
            fn = tc.get("function") or {}
            arguments = fn.get("arguments")
            if arguments is not None and not isinstance(arguments, str):
                arguments = json.dumps(arguments)
            index = tc.get("index")
            events.append(ToolCallDelta(
                key=index if isinstance(index, int) else position,
                call_id=tc.get("id") or None,
                name=fn.get("name") or None,
                arguments_delta=arguments,
                replace_arguments=complete,
            ))
        return events


class ResponsesDecoder(VendorStreamDecoder):
    """OpenAI Responses API events, discriminated by ``type``.

    Function-call items are addressed by a transient item id until the
    ``output_item`` event reveals the stable call id.
    """

    system = "openai"

    def __init__(self, suppress_chain_of_thought: bool = False):
        super().__init__(suppress_chain_of_thought)
        self._text_items: set[str] = set()
        self._refusal_items: set[str] = set()
        self._reasoning_items: set[str] = set()

    def _decode(self, payload: dict) -> list[StreamEvent]:
        event_type = payload.get("type", "")
        item_id = payload.get("item_id") or ""

        if event_type == "response.output_text.delta":
            self._text_items.add(item_id)
            return self._text(payload.get("delta"))
        if event_type == "response.output_text.done":
            if item_id in self._text_items:
                return []
            return self._text(payload.get("text"))

        if event_type == "response.refusal.delta":
            self._refusal_items.add(item_id)
            return self._text(payload.get("delta"))
        if event_type == "response.refusal.done":
            if item_id in self._refusal_items:
                return []
            return self._text(payload.get("refusal"))

        if event_type == "response.reasoning_text.delta":
            self._reasoning_items.add(item_id)
            return self._thinking(payload.get("delta") or "")
        if event_type == "response.reasoning_text.done":
            if item_id in self._reasoning_items:
                return []
            return self._thinking(payload.get("text") or "")

        if event_type in ("response.output_item.added", "response.output_item.done"):
            item = _as_dict(payload.get("item")) or {}
            if item.get("type") != "function_call":
                return []
            return [self._function_call(item, done=event_type.endswith(".done"))]

        if event_type == "response.function_call_arguments.delta":
            return [ToolCallDelta(
                key=item_id, item_id=item_id,
                arguments_delta=payload.get("delta") or "",
            )]
        if event_type == "response.function_call_arguments.done":
            # Some gateways skip output_item events; the name only arrives here.
            return [ToolCallDelta(
                key=item_id, item_id=item_id,
                name=payload.get("name") or None,
                arguments_delta=payload.get("arguments") or "",
                replace_arguments=True,
            )]

        if event_type in ("response.completed", "response.incomplete"):
            response = _as_dict(payload.get("response")) or {}
            details = response.get("incomplete_details") or {}
            return [Done(finish_reason=details.get("reason") or response.get("status"))]

        if event_type in ("response.failed", "error"):
            logger.warning(f"Responses stream reported {event_type}: {payload}")
            return [Done(finish_reason="failed")]

        return []

    def decode_response(self, response: Any) -> list[StreamEvent]:
        payload = self._load(response)
        if payload is None:
            return []

        events: list[StreamEvent] = []
        for item in payload.get("output") or []:
            item = _as_dict(item) or {}
            kind = item.get("type")
            if kind == "message":
                for part in item.get("content") or []:
                    part = _as_dict(part) or {}
                    if part.get("type") == "output_text":
                        events.extend(self._text(part.get("text")))
                    elif part.get("type") == "refusal":
                        events.extend(self._text(part.get("refusal")))
            elif kind == "reasoning":
                for part in item.get("content") or []:
                    part = _as_dict(part) or {}
                    events.extend(self._thinking(part.get("text") or ""))
            elif kind == "function_call":
                events.append(self._function_call(item, done=True))
        details = payload.get("incomplete_details") or {}
        events.append(Done(finish_reason=details.get("reason") or payload.get("status")))
        return events

    @staticmethod
    def _text(text: str | None) -> list[StreamEvent]:
        return [TextDelta(text=text)] if text else []

    @staticmethod
    def _function_call(item: dict, done: bool) -> ToolCallDelta:
        item_id = item.get("id") or None
        call_id = item.get("call_id") or None
        arguments = item.get("arguments")
        if not done and not arguments:
            arguments = None
        return ToolCallDelta(
            key=call_id or item_id or "",
            call_id=call_id,
            item_id=item_id,
            name=item.get("name") or None,
            arguments_delta=arguments,
            replace_arguments=done,
        )


class AnthropicMessagesDecoder(VendorStreamDecoder):
    """Anthropic Messages streaming events.

    Tool-use blocks are addressed by their content-block index.  Their
    arguments are built from ``input_json_delta`` fragments; an ``input``
    sent on the opening block only applies if no fragments follow.
    """

    system = "anthropic"

    def __init__(self, suppress_chain_of_thought: bool = False):
        super().__init__(suppress_chain_of_thought)
        self._start_inputs: dict[int, Any] = {}

    def _decode(self, payload: dict) -> list[StreamEvent]:
        event_type = payload.get("type")
        index = payload.get("index", 0)

        if event_type == "content_block_start":
            block = _as_dict(payload.get("content_block")) or {}
            if block.get("type") == "tool_use" and block.get("input"):
                self._start_inputs[index] = block["input"]
            return self._decode_block(block, index, complete=False)

        if event_type == "content_block_stop":
            tool_input = self._start_inputs.pop(index, None)
            if tool_input is None:
                return []
            return [ToolCallDelta(
                key=index, arguments_delta=json.dumps(tool_input), replace_arguments=True,
            )]

        if event_type == "content_block_delta":
            delta = _as_dict(payload.get("delta")) or {}
            kind = delta.get("type")
            if kind == "text_delta":
                text = delta.get("text") or ""
                return [TextDelta(text=text)] if text else []
            if kind == "thinking_delta":
                return self._thinking(delta.get("thinking") or "")
            if kind == "signature_delta":
                return self._thinking("", signature=delta.get("signature"))
            if kind == "input_json_delta":
                self._start_inputs.pop(index, None)
                return [ToolCallDelta(
                    key=index, arguments_delta=delta.get("partial_json") or "",
                )]
            return []

        if event_type == "message_delta":
            delta = _as_dict(payload.get("delta")) or {}
            stop_reason = delta.get("stop_reason")
            return [Done(finish_reason=stop_reason)] if stop_reason else []

        if event_type == "error":
            logger.warning(f"Anthropic stream reported an error: {payload.get('error')}")

        return []

    def decode_response(self, response: Any) -> list[StreamEvent]:
        payload = self._load(response)
        if payload is None:
            return []
        events: list[StreamEvent] = []
        for index, block in enumerate(payload.get("content") or []):
            block = _as_dict(block) or {}
            events.extend(self._decode_block(block, index, complete=True))
        events.append(Done(finish_reason=payload.get("stop_reason")))
        return events

    def _decode_block(self, block: dict, index: int, complete: bool) -> list[StreamEvent]:
        kind = block.get("type")
        if kind == "text":
            text = block.get("text") or ""
            return [TextDelta(text=text)] if text else []
        if kind == "thinking":
            return self._thinking(block.get("thinking") or "", block.get("signature") or None)
        if kind == "tool_use":
            arguments = None
            # Streamed input is deferred to content_block_stop.
            if complete:
                arguments = json.dumps(block.get("input") or {})
            return [ToolCallDelta(
                key=index,
                call_id=block.get("id") or None,
                name=block.get("name") or None,
                arguments_delta=arguments,
                replace_arguments=arguments is not None,
            )]
        return []


class GeminiDecoder(VendorStreamDecoder):
    """Gemini ``streamGenerateContent`` SSE chunks.

    Function calls arrive whole; each gets a generated id unless the
    service supplies one.  The most recent ``thoughtSignature`` is
    attached to thinking output.
    """

    system = "gemini"

    def __init__(self, suppress_chain_of_thought: bool = False):
        super().__init__(suppress_chain_of_thought)
        self._call_counter = itertools.count()
        self.thought_signature: str | None = None

    def _decode(self, payload: dict) -> list[StreamEvent]:
        if isinstance(payload.get("thoughtSignature"), str):
            self.thought_signature = payload["thoughtSignature"]

        feedback = payload.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            logger.warning(f"Gemini blocked the prompt: {feedback['blockReason']}")
            return [Done(finish_reason=feedback["blockReason"])]

        candidates = payload.get("candidates") or []
        if not candidates:
            return []
        candidate = candidates[0] or {}

        events: list[StreamEvent] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if part.get("thoughtSignature"):
                self.thought_signature = part["thoughtSignature"]

            text = part.get("text")
            if isinstance(text, str) and text:
                if part.get("thought"):
                    events.extend(self._thinking(text, self.thought_signature))
                else:
                    events.append(TextDelta(text=text))

            call = part.get("functionCall")
            if isinstance(call, dict) and call.get("name"):
                call_id = call.get("id") or self._generate_call_id()
                events.append(ToolCallDelta(
                    key=call_id,
                    call_id=call_id,
                    name=call["name"],
                    arguments_delta=json.dumps(call.get("args") or {}),
                    replace_arguments=True,
                ))

        finish_reason = candidate.get("finishReason")
        if finish_reason:
            events.append(Done(finish_reason=finish_reason))
        return events

    def _generate_call_id(self) -> str:
        return f"gemini_call_{int(time.time() * 1000)}_{next(self._call_counter)}"
