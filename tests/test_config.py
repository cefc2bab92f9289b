"""Tests for config loading, partial updates and env overrides."""

import json

import pytest
from pydantic import ValidationError

from companion_tavern.config import EndpointConfig, default_config, get_config, update_config


@pytest.fixture(autouse=True)
def no_env_overrides(monkeypatch):
    for var in ("AI_API_BASE", "AI_API_KEY", "AI_MODEL"):
        monkeypatch.delenv(var, raising=False)


def test_get_config_empty(storage):
    """Returns defaults when no config file exists."""
    config = get_config(storage.config_path)
    assert config == default_config()
    assert config.repair_limit == 8
    assert config.timeouts.probe == 1.2
    assert config.limits.normal.rules == 12000
    assert config.phase_transitions == {"A": "B", "B": "C"}
    assert not config.endpoint.configured


def test_update_config_partial(storage):
    """Nested updates keep sibling values."""
    update_config(storage.config_path, {"endpoint": {"api_base": "http://localhost:8080/v1"}})
    update_config(storage.config_path, {"limits": {"constrained": {"rules": 4000}}})

    config = get_config(storage.config_path)
    assert config.endpoint.api_base == "http://localhost:8080/v1"
    assert config.endpoint.model == "gpt-4o-mini"
    assert config.limits.constrained.rules == 4000
    assert config.limits.constrained.preset == 1000
    assert config.limits.normal.rules == 12000


def test_update_config_returns_full_config(storage):
    result = update_config(storage.config_path, {"incremental_updates": True})
    assert result.incremental_updates is True
    assert result.daily_favor_cap == 5


def test_phase_transitions_are_replaced_whole(storage):
    update_config(storage.config_path, {"phase_transitions": {"A": "C"}})
    assert get_config(storage.config_path).phase_transitions == {"A": "C"}


def test_unknown_keys_are_dropped(storage):
    update_config(storage.config_path, {"font_size": 14})
    stored = json.loads(storage.config_path.read_text())
    assert "font_size" not in stored


def test_invalid_update_is_not_written(storage):
    update_config(storage.config_path, {"repair_limit": 4})
    with pytest.raises(ValidationError):
        update_config(storage.config_path, {"repair_limit": "many"})
    assert get_config(storage.config_path).repair_limit == 4


def test_env_overrides_endpoint(storage, monkeypatch):
    monkeypatch.setenv("AI_API_BASE", "https://api.example.com/v1")
    monkeypatch.setenv("AI_API_KEY", "sk-test")
    config = get_config(storage.config_path)
    assert config.endpoint.api_base == "https://api.example.com/v1"
    assert config.endpoint.configured


def test_env_overrides_are_not_persisted(storage, monkeypatch):
    monkeypatch.setenv("AI_API_KEY", "sk-test")
    result = update_config(storage.config_path, {"max_blank_lines": 1})
    assert result.endpoint.api_key == "sk-test"
    stored = json.loads(storage.config_path.read_text())
    assert stored["endpoint"]["api_key"] == ""


@pytest.mark.parametrize("base, key, configured", [
    ("http://x", "k", True),
    ("http://x", "", False),
    ("", "k", False),
    ("  ", "k", False),
])
def test_endpoint_configured(base, key, configured):
    assert EndpointConfig(api_base=base, api_key=key).configured is configured


def test_limit_profiles():
    limits = default_config().limits
    assert limits.pick(False) is limits.normal
    assert limits.pick(True) is limits.constrained
    assert limits.constrained.snapshot < limits.normal.snapshot
