"""Global configuration: endpoint credentials, timeouts and tuning constants.

Stored as ``config.json`` in the data directory and merged over
``_CONFIG_DEFAULTS``. A handful of environment variables (usually coming from
``.env`` via python-dotenv) override the stored endpoint settings without
being written back.
"""

import json
import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

_CONFIG_DEFAULTS: dict[str, Any] = {
    "endpoint": {
        "api_base": "",
        "api_key": "",
        "model": "gpt-4o-mini",
        "provider_format": "openai",
        "temperature": 0.8,
    },
    "timeouts": {
        "generation": 120.0,
        "probe": 1.2,
    },
    "limits": {
        "normal": {
            "rules": 12000,
            "preset": 3000,
            "customization": 3000,
            "memory": 1500,
            "snapshot": 6000,
        },
        "constrained": {
            "rules": 5000,
            "preset": 1000,
            "customization": 1000,
            "memory": 600,
            "snapshot": 3000,
        },
    },
    "repair_limit": 8,
    "max_blank_lines": 2,
    "history_window": 8,
    "history_window_constrained": 5,
    "context_depth": 5,
    "cache_ttl": 300.0,
    "incremental_updates": False,
    "daily_favor_cap": 5,
    "phase_transitions": {"A": "B", "B": "C"},
}

_ENV_OVERRIDES = {
    "AI_API_BASE": "api_base",
    "AI_API_KEY": "api_key",
    "AI_MODEL": "model",
}


class EndpointConfig(BaseModel):
    api_base: str = ""
    api_key: str = ""
    model: str = ""
    provider_format: Literal["openai", "koboldcpp"] = "openai"
    temperature: float = 0.8

    @property
    def configured(self) -> bool:
        return bool(self.api_base.strip() and self.api_key.strip())


class Timeouts(BaseModel):
    generation: float = 120.0
    probe: float = 1.2


class PayloadLimits(BaseModel):
    """Per-block character caps for the assembled payload."""

    rules: int
    preset: int
    customization: int
    memory: int
    snapshot: int


class LimitProfiles(BaseModel):
    normal: PayloadLimits
    constrained: PayloadLimits

    def pick(self, constrained: bool) -> PayloadLimits:
        return self.constrained if constrained else self.normal


class AppConfig(BaseModel):
    endpoint: EndpointConfig = Field(default_factory=EndpointConfig)
    timeouts: Timeouts = Field(default_factory=Timeouts)
    limits: LimitProfiles
    repair_limit: int = 8
    max_blank_lines: int = 2
    history_window: int = 8
    history_window_constrained: int = 5
    context_depth: int = 5
    cache_ttl: float = 300.0
    incremental_updates: bool = False
    daily_favor_cap: int = 5
    phase_transitions: dict[str, str] = Field(default_factory=dict)


def _merge(base: dict[str, Any], stored: dict[str, Any]) -> dict[str, Any]:
    """Recursively overlay stored values; unknown keys are dropped."""
    merged: dict[str, Any] = {}
    for key, default in base.items():
        if key not in stored:
            merged[key] = json.loads(json.dumps(default))
        elif isinstance(default, dict) and isinstance(stored[key], dict) and key != "phase_transitions":
            merged[key] = _merge(default, stored[key])
        else:
            merged[key] = stored[key]
    return merged


def _read_stored(path: Path | None) -> dict[str, Any]:
    if path is None or not path.is_file():
        return {}
    return json.loads(path.read_text())


def _apply_env(raw: dict[str, Any]) -> dict[str, Any]:
    for var, key in _ENV_OVERRIDES.items():
        value = os.getenv(var, "")
        if value:
            raw["endpoint"][key] = value
    return raw


def default_config() -> AppConfig:
    return AppConfig.model_validate(_merge(_CONFIG_DEFAULTS, {}))


def get_config(path: Path | None = None) -> AppConfig:
    """Read config, returning defaults merged with stored values and env overrides."""
    raw = _merge(_CONFIG_DEFAULTS, _read_stored(path))
    return AppConfig.model_validate(_apply_env(raw))


def update_config(path: Path, fields: dict[str, Any]) -> AppConfig:
    """Merge fields into the stored config and persist. Returns the full config."""
    current = _merge(_CONFIG_DEFAULTS, _read_stored(path))
    updated = _merge(current, fields)
    AppConfig.model_validate(updated)  # reject bad values before writing
    path.write_text(json.dumps(updated, indent=2))
    return AppConfig.model_validate(_apply_env(updated))
