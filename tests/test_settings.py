"""Tests for persisted control settings."""

import pytest

from bambot.config_bambot import ControlConfig
from bambot.errors import ConfigurationError
from bambot.settings import (
    InMemorySettingsStore,
    JsonFileSettingsStore,
    control_config_from_settings,
    save_control_overrides,
    settings_key,
)


class TestSettings:
    def test_overrides_are_applied(self):
        store = InMemorySettingsStore()
        save_control_overrides(store, "so-arm100", sensitivity=0.5, hold_policy="sum")
        config = control_config_from_settings(store, "so-arm100")
        assert config.sensitivity == 0.5
        assert config.hold_policy == "sum"
        assert control_config_from_settings(store, "bambot-b0").sensitivity == 1.0

    def test_unknown_keys_are_ignored(self):
        store = InMemorySettingsStore({settings_key("so-arm100"): {"volume": 11, "tick_hz": 30.0}})
        config = control_config_from_settings(store, "so-arm100")
        assert config.tick_hz == 30.0
        assert not hasattr(config, "volume")

    def test_malformed_overrides_fall_back_to_base(self):
        base = ControlConfig(sensitivity=2.0)
        store = InMemorySettingsStore({settings_key("so-arm100"): "loud"})
        assert control_config_from_settings(store, "so-arm100", base) is base

    def test_invalid_override_value(self):
        store = InMemorySettingsStore({settings_key("so-arm100"): {"hold_policy": "max"}})
        with pytest.raises(ConfigurationError):
            control_config_from_settings(store, "so-arm100")

    def test_json_store_persists(self, tmp_path):
        path = tmp_path / "config" / "settings.json"
        save_control_overrides(JsonFileSettingsStore(path), "so-arm100", max_speed=50.0)
        reopened = JsonFileSettingsStore(path)
        assert control_config_from_settings(reopened, "so-arm100").max_speed == 50.0

    def test_json_store_ignores_unreadable_file(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("[1, 2")
        assert JsonFileSettingsStore(path).get("anything", "default") == "default"

    def test_json_store_ignores_non_object(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("[1, 2]")
        assert JsonFileSettingsStore(path).get("anything") is None
