"""Normalised events emitted by every vendor stream decoder."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass
class TextDelta:
    """Visible text from the provider stream."""

    text: str = ""


@dataclass
class ThinkingDelta:
    """Reasoning text delivered on a side channel.

    ``signature`` is an opaque token some vendors attach to thinking
    content so it can be replayed on the next turn.
    """

    text: str = ""
    signature: str | None = None


@dataclass
class ToolCallDelta:
    """A fragment of a tool invocation.

    ``key`` is a position for index-addressed protocols or an
    identifier for id-addressed ones.  ``item_id`` is the transient
    item identifier used before the stable ``call_id`` is known.
    When ``replace_arguments`` is set, ``arguments_delta`` is the
    complete argument text rather than a fragment.
    """

    key: int | str
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None
    replace_arguments: bool = False
    item_id: str | None = None


@dataclass
class Done:
    """End of the model's turn."""

    finish_reason: str | None = None


StreamEvent = Union[TextDelta, ThinkingDelta, ToolCallDelta, Done]
