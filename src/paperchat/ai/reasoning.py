"""Reasoning ("thinking") capability profiles keyed by model name.

:func:`classify` maps a model name to a provider family. Each family has an
ordered rule table that picks a :class:`ProviderProfile` describing which
reasoning levels the model accepts and how a level translates into request
parameters. :class:`ReasoningSelector` remembers the level picked for each
item so a conversation keeps its setting across sends.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Mapping, Optional, Sequence, Union

ReasoningLevel = Literal["default", "minimal", "low", "medium", "high", "xhigh"]
GeminiThinkingValue = Union[str, int]


class ReasoningProvider(str, enum.Enum):
    OPENAI = "openai"
    GEMINI = "gemini"
    DEEPSEEK = "deepseek"
    KIMI = "kimi"
    QWEN = "qwen"
    GROK = "grok"
    ANTHROPIC = "anthropic"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True, slots=True)
class ReasoningOption:
    level: ReasoningLevel
    label: str
    enabled: bool = True


@dataclass(frozen=True, slots=True)
class ReasoningConfig:
    """A resolved reasoning selection for one request."""

    provider: ReasoningProvider
    level: ReasoningLevel


@dataclass(frozen=True, slots=True)
class ProviderProfile:
    supports_reasoning: bool
    default_level: Optional[ReasoningLevel]
    options: tuple[ReasoningOption, ...] = ()
    # reasoning_effort per level; None means "omit the field".
    level_to_effort: Mapping[str, Optional[str]] = field(default_factory=dict)
    gemini_param: Optional[str] = None
    gemini_values: Mapping[str, GeminiThinkingValue] = field(default_factory=dict)
    anthropic_budgets: Mapping[str, int] = field(default_factory=dict)
    qwen_enable_thinking: Mapping[str, Optional[bool]] = field(default_factory=dict)
    qwen_default_thinking: Optional[bool] = None
    deepseek_thinking: bool = False

    @property
    def enabled_levels(self) -> list[ReasoningLevel]:
        if not self.supports_reasoning:
            return []
        return [option.level for option in self.options if option.enabled]


def _options(*pairs: tuple[ReasoningLevel, str]) -> tuple[ReasoningOption, ...]:
    return tuple(ReasoningOption(level, label) for level, label in pairs)


def _single_enabled(**extras: Any) -> ProviderProfile:
    return ProviderProfile(
        supports_reasoning=True,
        default_level="default",
        options=_options(("default", "enabled")),
        **extras,
    )


OPENAI_GPT5_PROFILE = ProviderProfile(
    supports_reasoning=True,
    default_level="default",
    options=_options(("default", "default"), ("low", "low"), ("medium", "medium"), ("high", "high")),
    level_to_effort={"default": None, "low": "low", "medium": "medium", "high": "high"},
)

OPENAI_GPT52_PROFILE = ProviderProfile(
    supports_reasoning=True,
    default_level="default",
    options=_options(
        ("default", "default"), ("low", "low"), ("medium", "medium"), ("high", "high"), ("xhigh", "xhigh")
    ),
    level_to_effort={"default": None, "low": "low", "medium": "medium", "high": "high", "xhigh": "xhigh"},
)

GROK_3_MINI_PROFILE = ProviderProfile(
    supports_reasoning=True,
    default_level="default",
    options=_options(("default", "default"), ("low", "low"), ("high", "high")),
    level_to_effort={"default": None, "low": "low", "high": "high"},
)

GROK_REASONING_PROFILE = _single_enabled()

GEMINI_3_PRO_PROFILE = ProviderProfile(
    supports_reasoning=True,
    default_level="high",
    options=_options(("high", "high"), ("low", "low")),
    gemini_param="thinking_level",
    gemini_values={"high": "high", "low": "low"},
)

GEMINI_25_PRO_PROFILE = ProviderProfile(
    supports_reasoning=True,
    default_level="default",
    options=_options(("default", "dynamic (-1)"), ("low", "128"), ("high", "32768")),
    gemini_param="thinking_budget",
    gemini_values={"default": -1, "low": 128, "high": 32768},
)

GEMINI_25_FLASH_PROFILE = ProviderProfile(
    supports_reasoning=True,
    default_level="default",
    options=_options(("default", "dynamic (-1)"), ("minimal", "off (0)"), ("low", "1"), ("high", "24576")),
    gemini_param="thinking_budget",
    gemini_values={"default": -1, "minimal": 0, "low": 1, "high": 24576},
)

GEMINI_25_FLASH_LITE_PROFILE = ProviderProfile(
    supports_reasoning=True,
    default_level="default",
    options=_options(("default", "off (0)"), ("minimal", "dynamic (-1)"), ("low", "512"), ("high", "24576")),
    gemini_param="thinking_budget",
    gemini_values={"default": 0, "minimal": -1, "low": 512, "high": 24576},
)

GEMINI_GENERIC_PROFILE = ProviderProfile(
    supports_reasoning=True,
    default_level="medium",
    options=_options(("medium", "medium"), ("low", "low"), ("high", "high")),
    gemini_param="thinking_level",
    gemini_values={"low": "low", "medium": "medium", "high": "high"},
)

DEEPSEEK_REASONER_PROFILE = _single_enabled(deepseek_thinking=True)

KIMI_THINKING_PROFILE = _single_enabled()

QWEN_TOGGLE_PROFILE = ProviderProfile(
    supports_reasoning=True,
    default_level="default",
    options=_options(("default", "default"), ("high", "enabled"), ("low", "disabled")),
    qwen_enable_thinking={"default": None, "high": True, "low": False},
)

QWEN_THINKING_ONLY_PROFILE = ProviderProfile(
    supports_reasoning=True,
    default_level="default",
    options=_options(("default", "enabled")),
    qwen_enable_thinking={"default": True},
    qwen_default_thinking=True,
)

QWEN_NON_THINKING_ONLY_PROFILE = ProviderProfile(
    supports_reasoning=False,
    default_level=None,
    qwen_default_thinking=False,
)

ANTHROPIC_THINKING_PROFILE = ProviderProfile(
    supports_reasoning=True,
    default_level="default",
    options=_options(("default", "2000"), ("low", "1024"), ("high", "10000")),
    anthropic_budgets={"default": 2000, "low": 1024, "high": 10000},
)

UNSUPPORTED_PROFILE = ProviderProfile(supports_reasoning=False, default_level=None)

_BOUNDARY = r"(?:\b|[.-])"


@dataclass(frozen=True, slots=True)
class _ProfileTable:
    rules: tuple[tuple[re.Pattern[str], ProviderProfile], ...]
    fallback: ProviderProfile


def _rule(pattern: str, profile: ProviderProfile) -> tuple[re.Pattern[str], ProviderProfile]:
    return re.compile(pattern), profile


PROFILE_RULES: Dict[ReasoningProvider, _ProfileTable] = {
    ReasoningProvider.OPENAI: _ProfileTable(
        rules=(
            _rule(rf"^gpt-5\.2{_BOUNDARY}", OPENAI_GPT52_PROFILE),
            _rule(rf"^(gpt-5{_BOUNDARY}|o\d+{_BOUNDARY})", OPENAI_GPT5_PROFILE),
        ),
        fallback=OPENAI_GPT5_PROFILE,
    ),
    ReasoningProvider.GEMINI: _ProfileTable(
        rules=(
            _rule(rf"(^|[/:])gemini-2\.5-pro{_BOUNDARY}", GEMINI_25_PRO_PROFILE),
            _rule(rf"(^|[/:])gemini-2\.5-flash-lite{_BOUNDARY}", GEMINI_25_FLASH_LITE_PROFILE),
            _rule(rf"(^|[/:])gemini-2\.5-flash{_BOUNDARY}", GEMINI_25_FLASH_PROFILE),
            _rule(rf"(^|[/:])gemini-2\.5{_BOUNDARY}", GEMINI_25_FLASH_PROFILE),
            _rule(rf"(^|[/:])gemini-3-pro{_BOUNDARY}", GEMINI_3_PRO_PROFILE),
            _rule(r"\bgemini\b", GEMINI_GENERIC_PROFILE),
        ),
        fallback=GEMINI_GENERIC_PROFILE,
    ),
    ReasoningProvider.DEEPSEEK: _ProfileTable(
        rules=(
            _rule(rf"^deepseek-(?:reasoner|r1){_BOUNDARY}", DEEPSEEK_REASONER_PROFILE),
            _rule(rf"^deepseek-chat{_BOUNDARY}", UNSUPPORTED_PROFILE),
        ),
        fallback=UNSUPPORTED_PROFILE,
    ),
    ReasoningProvider.KIMI: _ProfileTable(
        rules=(
            _rule(rf"^kimi-k2(?:\.5)?(?:-thinking(?:-turbo)?)?{_BOUNDARY}", KIMI_THINKING_PROFILE),
            _rule(rf"^kimi{_BOUNDARY}", KIMI_THINKING_PROFILE),
        ),
        fallback=KIMI_THINKING_PROFILE,
    ),
    ReasoningProvider.QWEN: _ProfileTable(
        rules=(
            _rule(rf"(^|[/:])qwen3-[\w.-]*instruct-2507{_BOUNDARY}", QWEN_NON_THINKING_ONLY_PROFILE),
            _rule(rf"(^|[/:])(?:qwen3-[\w.-]*thinking-2507|qwq){_BOUNDARY}", QWEN_THINKING_ONLY_PROFILE),
            _rule(rf"(^|[/:])qwen(?:\d+)?{_BOUNDARY}", QWEN_TOGGLE_PROFILE),
        ),
        fallback=QWEN_TOGGLE_PROFILE,
    ),
    ReasoningProvider.GROK: _ProfileTable(
        rules=(
            _rule(rf"^grok-3-mini{_BOUNDARY}", GROK_3_MINI_PROFILE),
            _rule(rf"(^|[/:])grok{_BOUNDARY}", GROK_REASONING_PROFILE),
        ),
        fallback=GROK_REASONING_PROFILE,
    ),
    ReasoningProvider.ANTHROPIC: _ProfileTable(
        rules=(_rule(rf"(^|[/:])claude{_BOUNDARY}", ANTHROPIC_THINKING_PROFILE),),
        fallback=ANTHROPIC_THINKING_PROFILE,
    ),
}

_QWEN_FAMILY = re.compile(rf"(^|[/:])(?:qwen(?:\d+)?|qwq|qvq){_BOUNDARY}")
_GROK_FAMILY = re.compile(rf"(^|[/:])grok{_BOUNDARY}")
_CLAUDE_FAMILY = re.compile(rf"(^|[/:])claude{_BOUNDARY}")
_OPENAI_FAMILY = re.compile(r"^(gpt-5|o\d)(\b|[.-])")


def _normalize(model_name: str | None) -> str:
    return (model_name or "").strip().lower()


def classify(model_name: str | None) -> ReasoningProvider:
    """Return the reasoning provider family for *model_name* (case-insensitive)."""

    name = _normalize(model_name)
    if not name:
        return ReasoningProvider.UNSUPPORTED
    if name.startswith("deepseek"):
        return ReasoningProvider.DEEPSEEK
    if name.startswith("kimi"):
        return ReasoningProvider.KIMI
    if _QWEN_FAMILY.search(name):
        return ReasoningProvider.QWEN
    if _GROK_FAMILY.search(name):
        return ReasoningProvider.GROK
    if _CLAUDE_FAMILY.search(name):
        return ReasoningProvider.ANTHROPIC
    if "gemini" in name:
        return ReasoningProvider.GEMINI
    if _OPENAI_FAMILY.search(name):
        return ReasoningProvider.OPENAI
    return ReasoningProvider.UNSUPPORTED


def resolve_profile(provider: ReasoningProvider, model_name: str | None) -> ProviderProfile:
    table = PROFILE_RULES.get(provider)
    if table is None:
        return UNSUPPORTED_PROFILE
    name = _normalize(model_name)
    for pattern, profile in table.rules:
        if pattern.search(name):
            return profile
    return table.fallback


def reasoning_options(provider: ReasoningProvider, model_name: str | None) -> list[ReasoningOption]:
    """Return the selectable levels for *model_name*, empty when unsupported."""

    profile = resolve_profile(provider, model_name)
    if not profile.supports_reasoning:
        return []
    return list(profile.options)


def supports_reasoning(provider: ReasoningProvider, model_name: str | None) -> bool:
    return bool(resolve_profile(provider, model_name).enabled_levels)


def default_level(provider: ReasoningProvider, model_name: str | None) -> Optional[ReasoningLevel]:
    profile = resolve_profile(provider, model_name)
    levels = profile.enabled_levels
    if not levels:
        return None
    if profile.default_level in levels:
        return profile.default_level
    return levels[0]


class ReasoningSelector:
    """Per-item memory of the chosen reasoning level."""

    def __init__(self) -> None:
        self._selected: dict[int, ReasoningLevel] = {}

    def get(self, item_id: int) -> Optional[ReasoningLevel]:
        return self._selected.get(item_id)

    def set(self, item_id: int, level: ReasoningLevel) -> None:
        self._selected[item_id] = level

    def forget(self, item_id: int) -> None:
        self._selected.pop(item_id, None)

    def select_level(
        self,
        item_id: int,
        provider: ReasoningProvider,
        available: Sequence[ReasoningOption | str],
    ) -> Optional[ReasoningConfig]:
        """Return the cached level when still valid, else the first enabled one."""

        if provider is ReasoningProvider.UNSUPPORTED:
            return None
        levels: list[ReasoningLevel] = []
        for entry in available:
            if isinstance(entry, ReasoningOption):
                if entry.enabled:
                    levels.append(entry.level)
            else:
                levels.append(entry)  # type: ignore[arg-type]
        if not levels:
            return None
        selected = self._selected.get(item_id)
        if selected is None or selected not in levels:
            selected = levels[0]
            self._selected[item_id] = selected
        return ReasoningConfig(provider=provider, level=selected)

    def resolve_for_model(self, item_id: int, model_name: str | None) -> Optional[ReasoningConfig]:
        provider = classify(model_name)
        if provider is ReasoningProvider.UNSUPPORTED:
            return None
        return self.select_level(item_id, provider, reasoning_options(provider, model_name))


def build_reasoning_params(config: ReasoningConfig | None, model_name: str | None) -> Dict[str, Any]:
    """Translate a reasoning selection into OpenAI-compatible request fields.

    Returns top-level keyword arguments; provider-specific fields are nested
    under ``extra_body``.
    """

    if config is None or config.provider is ReasoningProvider.UNSUPPORTED:
        # Non-thinking-only Qwen builds still need thinking switched off explicitly.
        if classify(model_name) is ReasoningProvider.QWEN:
            if resolve_profile(ReasoningProvider.QWEN, model_name).qwen_default_thinking is False:
                return {"extra_body": {"enable_thinking": False}}
        return {}
    profile = resolve_profile(config.provider, model_name)
    level = config.level
    provider = config.provider
    if provider in (ReasoningProvider.OPENAI, ReasoningProvider.GROK):
        effort = profile.level_to_effort.get(level)
        return {"reasoning_effort": effort} if effort else {}
    if provider is ReasoningProvider.GEMINI:
        value = profile.gemini_values.get(level)
        if value is None or profile.gemini_param is None:
            return {}
        key = "thinking_level" if profile.gemini_param == "thinking_level" else "thinking_budget"
        return {
            "extra_body": {
                "google": {"thinking_config": {key: value, "include_thoughts": True}},
            }
        }
    if provider is ReasoningProvider.ANTHROPIC:
        budget = profile.anthropic_budgets.get(level) or profile.anthropic_budgets.get("default", 2000)
        return {"extra_body": {"thinking": {"type": "enabled", "budget_tokens": budget}}}
    if provider is ReasoningProvider.QWEN:
        enabled = profile.qwen_enable_thinking.get(level, profile.qwen_default_thinking)
        if enabled is None:
            return {}
        return {"extra_body": {"enable_thinking": enabled}}
    if provider is ReasoningProvider.DEEPSEEK:
        if profile.deepseek_thinking:
            return {"extra_body": {"thinking": {"type": "enabled"}}}
        return {}
    if provider is ReasoningProvider.KIMI:
        return {"extra_body": {"thinking": {"type": "enabled"}}}
    return {}


__all__ = [
    "ReasoningLevel",
    "ReasoningProvider",
    "ReasoningOption",
    "ReasoningConfig",
    "ProviderProfile",
    "PROFILE_RULES",
    "classify",
    "resolve_profile",
    "reasoning_options",
    "supports_reasoning",
    "default_level",
    "ReasoningSelector",
    "build_reasoning_params",
]
