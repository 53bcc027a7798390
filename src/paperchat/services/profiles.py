"""Model profiles and per-item profile selection.

Up to four endpoint/model profiles are configured in preferences. The
primary profile also honours the legacy unsuffixed ``apiBase``/``apiKey``/
``model`` keys.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..chat.constants import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE
from .preferences import PreferenceStore

LOGGER = logging.getLogger(__name__)

MODEL_PROFILE_ORDER: tuple[str, ...] = ("primary", "secondary", "tertiary", "quaternary")
_SUFFIXES = {key: key.capitalize() for key in MODEL_PROFILE_ORDER}
_MAX_TEMPERATURE = 2.0


@dataclass(frozen=True, slots=True)
class ModelProfile:
    key: str
    api_base: str = ""
    api_key: str = ""
    model: str = ""

    @property
    def usable(self) -> bool:
        return bool(self.model)


@dataclass(frozen=True, slots=True)
class AdvancedParams:
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS


class ProfileRegistry:
    """Reads profiles from a :class:`PreferenceStore` and tracks selections."""

    def __init__(self, preferences: PreferenceStore) -> None:
        self._prefs = preferences
        self._selected: dict[int, str] = {}

    @property
    def preferences(self) -> PreferenceStore:
        return self._prefs

    def profile(self, key: str) -> ModelProfile:
        suffix = _SUFFIXES.get(key)
        if suffix is None:
            raise KeyError(key)
        api_base = self._prefs.get_string(f"apiBase{suffix}").strip()
        api_key = self._prefs.get_secret(f"apiKey{suffix}").strip()
        model = self._prefs.get_string(f"model{suffix}").strip()
        if key == "primary":
            api_base = api_base or self._prefs.get_string("apiBase").strip()
            api_key = api_key or self._prefs.get_secret("apiKey").strip()
            model = model or self._prefs.get_string("model").strip()
        return ModelProfile(key=key, api_base=api_base, api_key=api_key, model=model)

    def profiles(self) -> list[ModelProfile]:
        return [self.profile(key) for key in MODEL_PROFILE_ORDER]

    def usable_profiles(self) -> list[ModelProfile]:
        return [profile for profile in self.profiles() if profile.usable]

    def save_profile(self, profile: ModelProfile) -> None:
        suffix = _SUFFIXES[profile.key]
        self._prefs.update({f"apiBase{suffix}": profile.api_base, f"model{suffix}": profile.model})
        self._prefs.set_secret(f"apiKey{suffix}", profile.api_key)

    def select_for_item(self, item_id: int, key: str) -> None:
        if key not in _SUFFIXES:
            raise KeyError(key)
        self._selected[item_id] = key

    def selected_for_item(self, item_id: int) -> ModelProfile:
        """Return the profile chosen for *item_id*, falling back to ``primary``."""

        key = self._selected.get(item_id, "primary")
        if key != "primary":
            profile = self.profile(key)
            if profile.usable:
                return profile
            LOGGER.debug("Profile %s for item %s is no longer usable; using primary", key, item_id)
            self._selected.pop(item_id, None)
        return self.profile("primary")

    def global_default_model(self) -> str:
        return (self._prefs.get_string("modelPrimary") or self._prefs.get_string("model")).strip()

    def advanced_params(self, key: Optional[str]) -> AdvancedParams:
        suffix = _SUFFIXES.get(key or "primary", "Primary")
        return AdvancedParams(
            temperature=_coerce_temperature(self._prefs.get(f"temperature{suffix}")),
            max_tokens=_coerce_max_tokens(self._prefs.get(f"maxTokens{suffix}")),
        )


def _coerce_temperature(value: object) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_TEMPERATURE
    if number != number:
        return DEFAULT_TEMPERATURE
    return min(_MAX_TEMPERATURE, max(0.0, number))


def _coerce_max_tokens(value: object) -> int:
    try:
        number = int(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_MAX_TOKENS
    return number if number > 0 else DEFAULT_MAX_TOKENS


__all__ = ["AdvancedParams", "MODEL_PROFILE_ORDER", "ModelProfile", "ProfileRegistry"]
