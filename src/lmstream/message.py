"""Vendor-neutral chat transcript and its per-vendor request shapes."""

from enum import Enum

from pydantic import BaseModel, Field, field_serializer

from lmstream.streaming import CompletedToolCall, parse_arguments
from lmstream.xml_tools import format_tool_call_as_xml, format_tool_result_as_text


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class Message(BaseModel):
    role: MessageRole
    content: str = ""

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value


class ToolCallRequestMessage(Message):
    role: MessageRole = MessageRole.ASSISTANT
    tool_calls: list[CompletedToolCall]

    @field_serializer("tool_calls")
    def serialize_tool_calls(self, tool_calls: list[CompletedToolCall]) -> list[dict]:
        return [
            {
                "id": t.id,
                "type": "function",
                "function": {
                    "arguments": t.arguments,
                    "name": t.name,
                },
            }
            for t in tool_calls
        ]


class ToolCallResultMessage(Message):
    role: MessageRole = MessageRole.TOOL
    tool_call_id: str
    # Gemini addresses results by tool name rather than call id.
    name: str = Field(default="", exclude=True)


def to_openai_messages(messages: list[Message]) -> list[dict]:
    return [m.model_dump() for m in messages]


def to_responses_input(messages: list[Message]) -> list[dict]:
    items = []
    for m in messages:
        if isinstance(m, ToolCallRequestMessage):
            if m.content:
                items.append({"role": "assistant", "content": m.content})
            items.extend(
                {
                    "type": "function_call",
                    "call_id": tc.id,
                    "name": tc.name,
                    "arguments": tc.arguments,
                }
                for tc in m.tool_calls
            )
        elif isinstance(m, ToolCallResultMessage):
            items.append({
                "type": "function_call_output",
                "call_id": m.tool_call_id,
                "output": m.content,
            })
        else:
            items.append({"role": m.role.value, "content": m.content})
    return items


def _append_turn(turns: list[dict], role: str, blocks: list) -> None:
    # Consecutive same-role turns must be merged for Anthropic and Gemini.
    if turns and turns[-1]["role"] == role:
        turns[-1]["blocks"].extend(blocks)
    else:
        turns.append({"role": role, "blocks": list(blocks)})


def to_anthropic_messages(messages: list[Message]) -> tuple[str | None, list[dict]]:
    """Split out the system prompt and build Messages API turns."""
    system = [m.content for m in messages if m.role == MessageRole.SYSTEM and m.content]
    turns: list[dict] = []
    for m in messages:
        if m.role == MessageRole.SYSTEM:
            continue
        if isinstance(m, ToolCallRequestMessage):
            blocks = [{"type": "text", "text": m.content}] if m.content else []
            blocks.extend(
                {
                    "type": "tool_use",
                    "id": tc.id,
                    "name": tc.name,
                    "input": parse_arguments(tc.arguments),
                }
                for tc in m.tool_calls
            )
            _append_turn(turns, "assistant", blocks)
        elif isinstance(m, ToolCallResultMessage):
            _append_turn(turns, "user", [{
                "type": "tool_result",
                "tool_use_id": m.tool_call_id,
                "content": m.content,
            }])
        elif m.content:
            _append_turn(turns, m.role.value, [{"type": "text", "text": m.content}])
    return (
        "\n\n".join(system) or None,
        [{"role": t["role"], "content": t["blocks"]} for t in turns],
    )


def to_gemini_contents(messages: list[Message]) -> tuple[dict | None, list[dict]]:
    """Build ``contents`` and ``systemInstruction`` for generateContent."""
    system = [m.content for m in messages if m.role == MessageRole.SYSTEM and m.content]
    call_names: dict[str, str] = {}
    turns: list[dict] = []
    for m in messages:
        if m.role == MessageRole.SYSTEM:
            continue
        if isinstance(m, ToolCallRequestMessage):
            parts = [{"text": m.content}] if m.content else []
            for tc in m.tool_calls:
                call_names[tc.id] = tc.name
                parts.append({
                    "functionCall": {"name": tc.name, "args": parse_arguments(tc.arguments)},
                })
            _append_turn(turns, "model", parts)
        elif isinstance(m, ToolCallResultMessage):
            name = m.name or call_names.get(m.tool_call_id, "")
            _append_turn(turns, "user", [{
                "functionResponse": {"name": name, "response": {"content": m.content}},
            }])
        elif m.content:
            role = "model" if m.role == MessageRole.ASSISTANT else "user"
            _append_turn(turns, role, [{"text": m.content}])

    instruction = {"parts": [{"text": "\n\n".join(system)}]} if system else None
    return instruction, [{"role": t["role"], "parts": t["blocks"]} for t in turns]


def to_prompt_based_messages(
    messages: list[Message], tool_prompt: str,
) -> list[Message]:
    """Rewrite a transcript for models that call tools through XML text.

    Tool calls become assistant text, tool results become user text, and
    *tool_prompt* is appended to the system prompt.
    """
    converted: list[Message] = []
    call_names: dict[str, str] = {}
    has_system = False
    for m in messages:
        if m.role == MessageRole.SYSTEM:
            content = f"{m.content}\n\n{tool_prompt}" if tool_prompt and not has_system else m.content
            has_system = True
            converted.append(Message(role=MessageRole.SYSTEM, content=content))
        elif isinstance(m, ToolCallRequestMessage):
            rendered = [m.content] if m.content else []
            for tc in m.tool_calls:
                call_names[tc.id] = tc.name
                rendered.append(format_tool_call_as_xml(tc.name, parse_arguments(tc.arguments)))
            converted.append(Message(role=MessageRole.ASSISTANT, content="\n\n".join(rendered)))
        elif isinstance(m, ToolCallResultMessage):
            name = m.name or call_names.get(m.tool_call_id, "tool")
            converted.append(Message(
                role=MessageRole.USER,
                content=format_tool_result_as_text(name, m.content),
            ))
        else:
            converted.append(Message(role=m.role, content=m.content))

    if tool_prompt and not has_system:
        converted.insert(0, Message(role=MessageRole.SYSTEM, content=tool_prompt))
    return converted
