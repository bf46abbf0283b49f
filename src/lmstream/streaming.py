"""Tool-call reassembly for streamed provider responses.

Decoders emit :class:`~lmstream.events.ToolCallDelta` fragments.  The
:class:`ToolCallAssembler` reassembles tool calls whose identity,
name and arguments arrive in pieces across many events.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from lmstream.events import ToolCallDelta

logger = logging.getLogger(__name__)


@dataclass
class PendingToolCall:
    """A tool call still being assembled."""

    id: str = ""
    name: str = ""
    arguments: str = ""
    position: int = 0


@dataclass(frozen=True)
class CompletedToolCall:
    """A resolved tool call ready to hand to the caller."""

    id: str
    name: str
    arguments: str = ""


class ToolCallAssembler:
    """Assembles complete tool calls from streaming fragments.

    Integer keys address a call by its position in the response.
    String keys address it by identifier; a transient item id is
    rewritten to the stable call id as soon as both have been seen,
    carrying any accumulated arguments along.
    """

    def __init__(self) -> None:
        self._pending: dict[int | str, PendingToolCall] = {}
        self._aliases: dict[str, str] = {}
        self._emitted: set[str] = set()
        self._seen = 0

    def feed(self, delta: ToolCallDelta) -> None:
        if isinstance(delta.key, int):
            tc = self._get_or_create(delta.key, delta.call_id or "")
            if delta.call_id:
                tc.id = delta.call_id
        else:
            tc = self._get_or_create(self._resolve(delta), "")

        if delta.name:
            tc.name = delta.name
        if delta.arguments_delta is not None:
            if delta.replace_arguments:
                tc.arguments = delta.arguments_delta
            else:
                tc.arguments += delta.arguments_delta

    def finalize(self) -> list[CompletedToolCall]:
        """Return completed tool calls in first-seen order.

        Calls lacking an id or a name are dropped.  A call id is only
        ever returned once, even across repeated ``finalize`` calls.
        """
        completed = []
        for tc in sorted(self._pending.values(), key=lambda t: t.position):
            if not tc.id or not tc.name:
                logger.debug(
                    f"Dropping incomplete tool call id={tc.id!r} "
                    f"name={tc.name!r}"
                )
                continue
            if tc.id in self._emitted:
                continue
            self._emitted.add(tc.id)
            completed.append(CompletedToolCall(
                id=tc.id, name=tc.name, arguments=tc.arguments,
            ))
        return completed

    @property
    def pending(self) -> list[PendingToolCall]:
        return list(self._pending.values())

    # ------------------------------------------------------------------
    # Identifier bookkeeping
    # ------------------------------------------------------------------

    def _get_or_create(self, key: int | str, call_id: str) -> PendingToolCall:
        tc = self._pending.get(key)
        if tc is None:
            position = key if isinstance(key, int) else self._seen
            tc = PendingToolCall(
                id=key if isinstance(key, str) else call_id,
                position=position,
            )
            self._pending[key] = tc
            self._seen += 1
        return tc

    def _resolve(self, delta: ToolCallDelta) -> str:
        item_id = delta.item_id
        target = (
            delta.call_id
            or (self._aliases.get(item_id) if item_id else None)
            or self._aliases.get(delta.key)
            or delta.key
        )
        if item_id:
            previous = self._aliases.get(item_id)
            if delta.call_id:
                self._aliases[item_id] = target
            if previous and previous != target:
                self._move(previous, target)
            elif item_id != target:
                self._move(item_id, target)
        elif delta.key != target:
            self._move(delta.key, target)
        return target

    def _move(self, source: str, target: str) -> None:
        if source == target:
            return
        existing = self._pending.pop(source, None)
        if existing is None:
            return
        current = self._pending.get(target)
        if current is None:
            existing.id = target
            self._pending[target] = existing
            return
        # Both keys accumulated text; the item-addressed record came first.
        current.arguments = existing.arguments + current.arguments
        current.name = current.name or existing.name
        current.position = min(current.position, existing.position)


def parse_arguments(arguments: str) -> dict:
    """Parse tool-call arguments, degrading to ``{}`` on bad input."""
    if not arguments or not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid JSON in tool call arguments: {e}")
        logger.debug(f"Unparseable arguments: {arguments!r}")
        return {}
    if not isinstance(parsed, dict):
        logger.warning(
            f"Tool call arguments are {type(parsed).__name__}, not an object"
        )
        return {}
    return parsed
