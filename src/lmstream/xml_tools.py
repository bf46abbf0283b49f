"""Prompt-based tool calling for models without native function calling.

Tools are described to the model in the system prompt and invoked with
XML-style tags, the tool name being the tag name::

    <read_file>
    <path>/etc/hosts</path>
    </read_file>

:class:`XmlToolCallStreamParser` detects such blocks while the visible
text is still streaming and reports each completed block exactly once.
"""

from __future__ import annotations

import itertools
import json
import logging
import random
import re
import string
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from lmstream.tools import ToolDefinition

logger = logging.getLogger(__name__)

_PARAM_RE = re.compile(r"<([a-zA-Z_][a-zA-Z0-9_-]*)>([\s\S]*?)</\1>")
_BASE36 = string.digits + string.ascii_lowercase
_id_counter = itertools.count(1)


@dataclass
class ParsedToolCall:
    """A tool call recovered from XML markup."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class XmlParseOptions:
    """Options for XML tool call parsing.

    Args:
        trim_parameter_whitespace: Strip leading and trailing whitespace
            from parameter values.  Off by default so that values such
            as file contents survive untouched.
    """

    trim_parameter_whitespace: bool = False


@dataclass
class _Block:
    start: int
    end: int
    name: str
    content: str


def _base36(n: int) -> str:
    digits = []
    while True:
        n, r = divmod(n, 36)
        digits.append(_BASE36[r])
        if n == 0:
            return "".join(reversed(digits))


def generate_tool_call_id() -> str:
    """Return a unique id of the form ``call_xml_<time>_<n>_<random>``."""
    timestamp = _base36(int(time.time() * 1000))
    counter = _base36(next(_id_counter))
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"call_xml_{timestamp}_{counter}_{suffix}"


def escape_xml(value: str) -> str:
    return (
        value.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def unescape_xml(value: str) -> str:
    # &amp; last so that "&amp;lt;" becomes "&lt;", not "<".
    return (
        value.replace("&lt;", "<")
        .replace("&gt;", ">")
        .replace("&quot;", '"')
        .replace("&apos;", "'")
        .replace("&amp;", "&")
    )


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def _coerce_value(value: str) -> Any:
    try:
        return json.loads(value, parse_constant=_reject_constant)
    except ValueError:
        return value


def _parse_parameters(content: str, options: XmlParseOptions) -> dict[str, Any]:
    args: dict[str, Any] = {}
    for match in _PARAM_RE.finditer(content):
        name = match.group(1)
        value = match.group(2)
        if options.trim_parameter_whitespace:
            value = value.strip()
        if f"<{name}>" in value or f"</{name}>" in value:
            logger.debug(f"Skipping malformed nested parameter <{name}>")
            continue
        args[name] = _coerce_value(unescape_xml(value))
    return args


def _find_blocks(text: str, tool_names: Iterable[str]) -> list[_Block]:
    found = []
    for name in tool_names:
        tag = re.escape(name)
        pattern = re.compile(f"<{tag}>([\\s\\S]*?)</{tag}>")
        for match in pattern.finditer(text):
            found.append(_Block(
                start=match.start(), end=match.end(),
                name=name, content=match.group(1),
            ))
    found.sort(key=lambda b: (b.start, -b.end))

    # A block nested in an earlier block's body belongs to that block.
    blocks: list[_Block] = []
    for block in found:
        if blocks and block.start < blocks[-1].end:
            continue
        blocks.append(block)
    return blocks


def _build_call(block: _Block, options: XmlParseOptions) -> ParsedToolCall:
    args = _parse_parameters(block.content, options)
    call_id = args.pop("callId", None)
    if call_id is not None and str(call_id).strip():
        call_id = str(call_id).strip()
    else:
        call_id = generate_tool_call_id()
    return ParsedToolCall(id=call_id, name=block.name, arguments=args)


def parse_xml_tool_calls(
    text: str,
    tool_names: Iterable[str],
    options: XmlParseOptions | None = None,
) -> list[ParsedToolCall]:
    """Parse every complete XML tool call in *text*.

    Only tags named after one of *tool_names* are considered, matched
    case-sensitively.  Calls are returned in the order they appear.
    """
    options = options or XmlParseOptions()
    names = [n for n in tool_names if n]
    return [_build_call(b, options) for b in _find_blocks(text, names)]


def remove_xml_tool_calls(text: str, tool_names: Iterable[str]) -> str:
    """Return *text* with every complete tool-call block removed."""
    names = [n for n in tool_names if n]
    pieces = []
    cursor = 0
    for block in _find_blocks(text, names):
        pieces.append(text[cursor:block.start])
        cursor = block.end
    pieces.append(text[cursor:])
    return "".join(pieces).strip()


class XmlToolCallStreamParser:
    """Incrementally detects XML tool calls in streamed text.

    Each :meth:`add_chunk` returns only the calls completed since the
    previous call.  A block is reported once, keyed by both its offset
    in the buffer and its call id.

    Args:
        tool_names: Names of the tools available for this request.
        options: Parameter parsing options.
    """

    def __init__(
        self,
        tool_names: Iterable[str],
        options: XmlParseOptions | None = None,
    ):
        self.tool_names = [n for n in tool_names if n]
        self.options = options or XmlParseOptions()
        self._buffer = ""
        self._emitted_offsets: set[int] = set()
        self._emitted_ids: set[str] = set()

    @property
    def buffer(self) -> str:
        return self._buffer

    def add_chunk(self, chunk: str) -> list[ParsedToolCall]:
        if not chunk:
            return []
        self._buffer += chunk
        return self._collect(final=False)

    def finalize(self) -> list[ParsedToolCall]:
        """Return completed calls that have not been reported yet.

        Blocks held back behind an opening tag that never closed are
        released here.
        """
        return self._collect(final=True)

    def non_tool_call_text(self) -> str:
        """The narrative text with all complete tool-call blocks removed."""
        return remove_xml_tool_calls(self._buffer, self.tool_names)

    def _first_open_tag(self, blocks: list[_Block]) -> int | None:
        """Offset of the earliest tool opening tag with no closing tag yet.

        A later block may still turn out to be nested inside it.
        """
        earliest = None
        for name in self.tool_names:
            open_tag, close_tag = f"<{name}>", f"</{name}>"
            idx = self._buffer.find(open_tag)
            while idx != -1:
                if earliest is not None and idx >= earliest:
                    break
                inside = any(b.start <= idx < b.end for b in blocks)
                if not inside and self._buffer.find(close_tag, idx + len(open_tag)) == -1:
                    earliest = idx
                    break
                idx = self._buffer.find(open_tag, idx + 1)
        return earliest

    def _collect(self, final: bool) -> list[ParsedToolCall]:
        new_calls = []
        blocks = _find_blocks(self._buffer, self.tool_names)
        hold_from = None if final else self._first_open_tag(blocks)
        for block in blocks:
            if block.start in self._emitted_offsets:
                continue
            if hold_from is not None and block.start > hold_from:
                continue
            self._emitted_offsets.add(block.start)
            call = _build_call(block, self.options)
            if call.id in self._emitted_ids:
                logger.debug(f"Ignoring repeated XML tool call id {call.id}")
                continue
            self._emitted_ids.add(call.id)
            new_calls.append(call)
        return new_calls


# ----------------------------------------------------------------------
# Prompt and transcript formatting
# ----------------------------------------------------------------------

_PROMPT_TEMPLATE = """====

TOOL USE

You have access to a set of tools that are executed upon the user's approval. You can use zero or more tools per message depending on what the task requires. For independent operations, you can call up to 5 tools in a single message. The results of all tool calls will be returned together after execution.

# Tool Use Formatting

Tool uses are formatted using XML-style tags. The tool name itself becomes the XML tag name. Each parameter is enclosed within its own set of tags. Here's the structure:

<actual_tool_name>
<parameter1_name>value1</parameter1_name>
<parameter2_name>value2</parameter2_name>
...
</actual_tool_name>

Always use the actual tool name as the XML tag name for proper parsing and execution.

## Special Characters

When parameter values contain XML special characters, escape them as follows:
- `&` as `&amp;`
- `<` as `&lt;`
- `>` as `&gt;`
- `"` as `&quot;`
- `'` as `&apos;`

For example: `<content>x &lt; y &amp;&amp; z &gt; w</content>`

You may optionally include a `callId` parameter to identify each tool call. This is useful when making multiple calls to the same tool:

<tool_name>
<callId>unique_id_here</callId>
<parameter1_name>value1</parameter1_name>
</tool_name>

If `callId` is omitted, one will be automatically generated.

# Available Tools

{tool_descriptions}

# Tool Use Guidelines

1. Choose the most appropriate tool(s) based on the task and the tool descriptions provided.
2. For independent operations, you can call up to 5 tools in a single message.
3. For dependent operations, use tools step-by-step with each use informed by the previous result.
4. After tool execution, results will be provided in XML format: <tool_name_result>...</tool_name_result>.
5. If no tool is needed, you may respond with text only.

IMPORTANT: Keep each tool call a well-formed XML block with no text interleaved inside the tags."""

_PLACEHOLDERS = {
    "number": "0",
    "integer": "0",
    "boolean": "true",
    "array": "[]",
    "object": "{}",
}


def _describe_parameters(schema: dict | None) -> str:
    properties = (schema or {}).get("properties") or {}
    required = (schema or {}).get("required") or []
    lines = []
    for name, spec in properties.items():
        type_str = f" [{spec['type']}]" if spec.get("type") else ""
        req_str = "(required)" if name in required else "(optional)"
        desc_str = f": {spec['description']}" if spec.get("description") else ""
        lines.append(f"- {name}{type_str} {req_str}{desc_str}")
    return "\n".join(lines)


def _example_parameters(schema: dict | None) -> str:
    properties = (schema or {}).get("properties") or {}
    if not properties:
        return "<!-- No parameters required -->"
    return "\n".join(
        f"<{name}>{_PLACEHOLDERS.get(spec.get('type'), '{' + name + '}')}</{name}>"
        for name, spec in properties.items()
    )


def _describe_tool(tool: ToolDefinition) -> str:
    name = tool.name.strip()
    if not name:
        return ""
    parts = [f"## {name}"]
    if tool.description and tool.description.strip():
        parts.append(f"Description: {tool.description.strip()}")
    params = _describe_parameters(tool.parameters)
    parts.append(f"Parameters:\n{params}" if params else "Parameters: None")
    parts.append(
        f"\nUsage:\n<{name}>\n{_example_parameters(tool.parameters)}\n</{name}>"
    )
    return "\n".join(parts)


def generate_xml_tool_prompt(tools: Iterable[ToolDefinition]) -> str:
    """Build the system-prompt section that teaches the XML tool format."""
    descriptions = [d for d in (_describe_tool(t) for t in tools) if d]
    if not descriptions:
        return ""
    return _PROMPT_TEMPLATE.format(tool_descriptions="\n\n".join(descriptions))


def format_tool_call_as_xml(name: str, arguments: dict[str, Any]) -> str:
    """Render a previous tool call back into the XML form for the transcript."""
    lines = []
    for key, value in arguments.items():
        text = value if isinstance(value, str) else json.dumps(value)
        lines.append(f"<{key}>{escape_xml(text)}</{key}>")
    return f"<{name}>\n" + "\n".join(lines) + f"\n</{name}>"


def format_tool_result_as_text(name: str, result: str) -> str:
    return f"<{name}_result>\n{result}\n</{name}_result>"
