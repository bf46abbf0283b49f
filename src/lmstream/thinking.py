"""Streaming-safe extraction of chain-of-thought markup from visible text.

Some providers do not use a separate reasoning field and instead prepend
the assistant text with thinking blocks.  :class:`TagTextFilter` splits
visible text into plain text and thinking text while the stream is
still arriving, without assuming that tags align with fragment
boundaries.

Two tag families are recognised, case-insensitively:

* ``<think>...</think>`` (the *preamble* family) only at absolute
  position zero of the stream, and only while no thinking content has
  been observed from any source.
* ``<thinking>...</thinking>`` (the *block* family) at the start of the
  stream or directly after a newline, any number of times.

Nested tags are not supported: once inside a region, only that region's
own end tag closes it.  An end tag without a matching start tag is
ordinary visible text.
"""

from __future__ import annotations

import logging
import string
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)

# Tags are ASCII, so fold ASCII only and keep indices aligned with the
# original text.
_ASCII_LOWER = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)


def _fold(text: str) -> str:
    return text.translate(_ASCII_LOWER)


class TagHandling(Enum):
    FORWARD = "forward"
    DROP = "drop"


@dataclass(frozen=True)
class TagFamily:
    """A start/end tag pair and the rules for when it may open."""

    name: str
    start_tag: str
    end_tag: str
    handling: TagHandling = TagHandling.FORWARD
    only_at_stream_start: bool = False
    only_at_line_start: bool = False
    requires_no_thinking: bool = False


BLOCK_FAMILY = TagFamily(
    name="thinking",
    start_tag="<thinking>",
    end_tag="</thinking>",
    only_at_line_start=True,
)

PREAMBLE_FAMILY = TagFamily(
    name="think",
    start_tag="<think>",
    end_tag="</think>",
    only_at_stream_start=True,
    requires_no_thinking=True,
)


@dataclass
class TagMatchState:
    """Mutable state of one :class:`TagTextFilter`.

    ``at_stream_start`` stays true until any visible text is emitted or
    any region opens.  ``at_line_start`` describes the character that
    precedes the carry buffer.
    """

    carry: str = ""
    inside_tag: bool = False
    active_end_tag: str = ""
    active_handling: TagHandling = TagHandling.FORWARD
    has_emitted_visible_text: bool = False
    has_received_thinking: bool = False
    at_stream_start: bool = True
    at_line_start: bool = True


@dataclass
class _Split:
    emit: str
    carry: str = field(default="")


class TagTextFilter:
    """Routes thinking markup in visible text to a thinking sink.

    If ``on_thinking`` is ``None`` the filter is a passthrough: every
    fragment is forwarded to ``on_text`` unchanged, tags included.

    Args:
        on_text: Receives visible text fragments.
        on_thinking: Receives thinking fragments.
        preamble_handling: What to do with ``<think>`` content.
        block_handling: What to do with ``<thinking>`` content.
    """

    def __init__(
        self,
        on_text: Callable[[str], None] | None = None,
        on_thinking: Callable[[str], None] | None = None,
        preamble_handling: TagHandling = TagHandling.FORWARD,
        block_handling: TagHandling = TagHandling.FORWARD,
    ):
        self._on_text = on_text
        self._on_thinking = on_thinking
        # Block family first: on a tie it must win over its own prefix.
        self._families = (
            replace(BLOCK_FAMILY, handling=TagHandling(block_handling)),
            replace(PREAMBLE_FAMILY, handling=TagHandling(preamble_handling)),
        )
        self._max_start_len = max(len(f.start_tag) for f in self._families)
        self.state = TagMatchState()

    def notify_thinking_received(self) -> None:
        """Record thinking observed on a side channel.

        Permanently disables the preamble family for this stream.
        """
        self.state.has_received_thinking = True

    def ingest(self, fragment: str) -> None:
        if not fragment:
            return

        if self._on_thinking is None:
            self._emit_text(fragment)
            return

        st = self.state
        text = st.carry + fragment
        st.carry = ""

        while text:
            folded = _fold(text)

            if st.inside_tag:
                end_idx = folded.find(st.active_end_tag)
                if end_idx == -1:
                    split = self._split_end_tag_prefix(text, st.active_end_tag)
                    self._emit_thinking(split.emit)
                    st.carry = split.carry
                    return

                self._emit_thinking(text[:end_idx])
                logger.debug(f"Closed thinking region at {st.active_end_tag}")
                text = text[end_idx + len(st.active_end_tag):]
                st.inside_tag = False
                st.active_end_tag = ""
                st.active_handling = TagHandling.FORWARD
                st.at_line_start = True
                continue

            match = self._find_start_tag(text, folded)
            if match is None:
                split = self._split_start_tag_prefix(text)
                self._emit_text(split.emit)
                st.carry = split.carry
                return

            idx, family = match
            self._emit_text(text[:idx])
            text = text[idx + len(family.start_tag):]
            st.inside_tag = True
            st.at_stream_start = False
            st.active_end_tag = family.end_tag
            st.active_handling = family.handling
            logger.debug(f"Opened {family.name} thinking region ({family.handling.value})")

    def flush(self) -> None:
        """Resolve any carried text at end of input."""
        st = self.state
        if st.inside_tag:
            logger.debug(f"Stream ended inside a thinking region awaiting {st.active_end_tag}")
        if not st.carry:
            return
        carry, st.carry = st.carry, ""
        if self._on_thinking is not None and st.inside_tag:
            self._emit_thinking(carry)
        else:
            self._emit_text(carry)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def _eligible(self, family: TagFamily) -> bool:
        st = self.state
        if family.only_at_stream_start and not st.at_stream_start:
            return False
        if family.requires_no_thinking and st.has_received_thinking:
            return False
        return True

    def _position_ok(self, family: TagFamily, text: str, idx: int) -> bool:
        if family.only_at_stream_start and idx != 0:
            return False
        if family.only_at_line_start:
            if idx == 0:
                return self.state.at_line_start
            return text[idx - 1] == "\n"
        return True

    def _find_start_tag(self, text: str, folded: str) -> tuple[int, TagFamily] | None:
        best: tuple[int, TagFamily] | None = None
        for family in self._families:
            if not self._eligible(family):
                continue
            idx = folded.find(family.start_tag)
            while idx != -1:
                if self._position_ok(family, text, idx):
                    if best is None or idx < best[0]:
                        best = (idx, family)
                    break
                if family.only_at_stream_start:
                    break
                idx = folded.find(family.start_tag, idx + 1)
        return best

    def _split_start_tag_prefix(self, text: str) -> _Split:
        folded = _fold(text)
        longest = min(self._max_start_len - 1, len(text))
        for k in range(longest, 0, -1):
            j = len(text) - k
            suffix = folded[j:]
            for family in self._families:
                if not self._eligible(family):
                    continue
                if not family.start_tag.startswith(suffix):
                    continue
                if self._position_ok(family, text, j):
                    return _Split(emit=text[:j], carry=text[j:])
        return _Split(emit=text)

    @staticmethod
    def _split_end_tag_prefix(text: str, end_tag: str) -> _Split:
        folded = _fold(text)
        longest = min(len(end_tag) - 1, len(text))
        for k in range(longest, 0, -1):
            if end_tag.startswith(folded[-k:]):
                return _Split(emit=text[:-k], carry=text[-k:])
        return _Split(emit=text)

    # ------------------------------------------------------------------
    # Sinks
    # ------------------------------------------------------------------

    def _emit_text(self, text: str) -> None:
        if not text:
            return
        st = self.state
        st.has_emitted_visible_text = True
        st.at_stream_start = False
        st.at_line_start = text.endswith("\n")
        if self._on_text is not None:
            self._on_text(text)

    def _emit_thinking(self, text: str) -> None:
        if not text:
            return
        self.state.has_received_thinking = True
        if self.state.active_handling is TagHandling.FORWARD:
            self._on_thinking(text)
