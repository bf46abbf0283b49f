import logging
import re
from typing import Literal

from pydantic import BaseModel

from lmstream.thinking import TagHandling

logger = logging.getLogger(__name__)

ThinkingLevel = Literal["none", "low", "medium", "high", "auto"]


class StreamConfig(BaseModel):
    """Per-request streaming behaviour.

    ``max_tokens``, ``temperature`` and ``tool_choice`` are handed to the
    vendor request as-is.  ``thinking`` is a named level or an explicit
    token budget; providers translate it to their own request shape.

    Example:
        config = StreamConfig(
            preamble_tag_handling=TagHandling.DROP,
            prompt_based_tool_calling=True,
        )
    """

    preamble_tag_handling: TagHandling = TagHandling.FORWARD
    block_tag_handling: TagHandling = TagHandling.FORWARD
    trim_xml_parameter_whitespace: bool = False
    suppress_chain_of_thought: bool = False
    prompt_based_tool_calling: bool = False
    max_tokens: int | None = None
    temperature: float | None = None
    tool_choice: str | None = None
    thinking: ThinkingLevel | int | None = None


class ModelOverride(BaseModel):
    """Settings applied to every model whose id matches a pattern.

    Unset fields leave the base configuration untouched.
    """

    preamble_tag_handling: TagHandling | None = None
    block_tag_handling: TagHandling | None = None
    trim_xml_parameter_whitespace: bool | None = None
    suppress_chain_of_thought: bool | None = None
    prompt_based_tool_calling: bool | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    thinking: ThinkingLevel | int | None = None


def wildcard_to_regex(pattern: str) -> re.Pattern:
    """Compile a ``gpt-*`` style pattern; ``*`` matches any run of characters."""
    escaped = re.escape(pattern).replace(r"\*", ".*")
    return re.compile(f"^{escaped}$", re.IGNORECASE)


def find_model_override(
    model_id: str, overrides: dict[str, ModelOverride],
) -> ModelOverride | None:
    """Exact match first, then the first matching wildcard pattern."""
    if model_id in overrides:
        return overrides[model_id]
    for pattern, override in overrides.items():
        if "*" in pattern and wildcard_to_regex(pattern).match(model_id):
            return override
    return None


def resolve_config(
    model_id: str,
    overrides: dict[str, ModelOverride] | None = None,
    base: StreamConfig | None = None,
) -> StreamConfig:
    base = base or StreamConfig()
    override = find_model_override(model_id, overrides or {})
    if override is None:
        return base
    logger.debug(f"Applying model override for {model_id}")
    return base.model_copy(update=override.model_dump(exclude_none=True))
