"""Unit tests for configuration and model overrides."""

import pytest
from pydantic import ValidationError

from lmstream.config import (
    ModelOverride,
    StreamConfig,
    find_model_override,
    resolve_config,
    wildcard_to_regex,
)
from lmstream.thinking import TagHandling


class TestStreamConfig:
    def test_defaults(self):
        config = StreamConfig()
        assert config.preamble_tag_handling is TagHandling.FORWARD
        assert config.block_tag_handling is TagHandling.FORWARD
        assert config.trim_xml_parameter_whitespace is False
        assert config.prompt_based_tool_calling is False
        assert config.max_tokens is None

    def test_handling_from_string(self):
        config = StreamConfig(preamble_tag_handling="drop")
        assert config.preamble_tag_handling is TagHandling.DROP

    def test_thinking_level_or_budget(self):
        assert StreamConfig(thinking="high").thinking == "high"
        assert StreamConfig(thinking=2048).thinking == 2048

    def test_invalid_thinking_level(self):
        with pytest.raises(ValidationError):
            StreamConfig(thinking="extreme")


class TestWildcards:
    @pytest.mark.parametrize("pattern,model,expected", [
        ("gpt-*", "gpt-4o", True),
        ("gpt-*", "GPT-4o", True),
        ("gpt-*", "chatgpt-4o", False),
        ("*-mini", "o4-mini", True),
        ("claude-*-sonnet", "claude-3.5-sonnet", True),
        ("a.b", "axb", False),
    ])
    def test_wildcard_to_regex(self, pattern, model, expected):
        assert bool(wildcard_to_regex(pattern).match(model)) is expected


class TestResolveConfig:
    def test_exact_match_preferred_over_wildcard(self):
        overrides = {
            "gpt-*": ModelOverride(temperature=0.1),
            "gpt-4o": ModelOverride(temperature=0.9),
        }
        assert find_model_override("gpt-4o", overrides).temperature == 0.9

    def test_wildcard_match(self):
        overrides = {"deepseek-*": ModelOverride(prompt_based_tool_calling=True)}
        config = resolve_config("DeepSeek-R1", overrides)
        assert config.prompt_based_tool_calling is True

    def test_no_match_returns_base(self):
        base = StreamConfig(max_tokens=100)
        assert resolve_config("other", {"gpt-*": ModelOverride(max_tokens=5)}, base) is base

    def test_unset_fields_keep_base(self):
        base = StreamConfig(max_tokens=100, temperature=0.5)
        config = resolve_config("m", {"m": ModelOverride(temperature=0.2)}, base)
        assert config.max_tokens == 100
        assert config.temperature == 0.2
        assert base.temperature == 0.5

    def test_override_tag_handling(self):
        config = resolve_config("m", {"m": ModelOverride(block_tag_handling="drop")})
        assert config.block_tag_handling is TagHandling.DROP
