"""Tests for taskcore.settings: defaults, YAML overlay, TaskSettings."""

from pathlib import Path

import pytest

from taskcore.settings import (
    TaskSettings,
    get_default_settings,
    get_setting,
    load_settings,
    reload_settings,
)


class TestLoadSettings:
    """load_settings merges config/settings.yaml over the defaults."""

    def test_defaults_when_file_missing(self, tmp_path: Path) -> None:
        settings = load_settings(tmp_path)
        assert get_setting(settings, "storage.db_path") == "data/tasks.db"
        assert get_setting(settings, "api.request_delay_seconds") == 5

    def test_yaml_overrides_nested_keys(self, tmp_path: Path) -> None:
        (tmp_path / "settings.yaml").write_text(
            "api:\n  auto_retry: true\n  rate_limit_seconds: 3\n", encoding="utf-8"
        )
        settings = load_settings(tmp_path)
        assert get_setting(settings, "api.auto_retry") is True
        assert get_setting(settings, "api.rate_limit_seconds") == 3
        assert get_setting(settings, "api.request_delay_seconds") == 5

    def test_none_values_keep_defaults(self, tmp_path: Path) -> None:
        (tmp_path / "settings.yaml").write_text("task:\n  mode_switch_delay:\n", encoding="utf-8")
        settings = load_settings(tmp_path)
        assert get_setting(settings, "task.mode_switch_delay") == 0.5

    def test_invalid_yaml_falls_back_to_defaults(self, tmp_path: Path) -> None:
        (tmp_path / "settings.yaml").write_text("api: [unclosed", encoding="utf-8")
        settings = load_settings(tmp_path)
        assert settings == get_default_settings()

    def test_cached_until_reload(self, tmp_path: Path) -> None:
        first = load_settings(tmp_path)
        (tmp_path / "settings.yaml").write_text("api:\n  auto_retry: true\n", encoding="utf-8")
        assert load_settings(tmp_path) is first
        reload_settings()
        assert get_setting(load_settings(tmp_path), "api.auto_retry") is True

    def test_defaults_are_copies(self) -> None:
        settings = get_default_settings()
        settings["api"]["auto_retry"] = True
        assert get_default_settings()["api"]["auto_retry"] is False


class TestGetSetting:
    def test_missing_path_returns_default(self) -> None:
        assert get_setting({"a": {"b": 1}}, "a.c", "x") == "x"
        assert get_setting({"a": 1}, "a.b") is None


class TestTaskSettings:
    """TaskSettings.from_settings reads the task/api/context sections."""

    def test_from_defaults(self) -> None:
        assert TaskSettings.from_settings(get_default_settings()) == TaskSettings()

    def test_from_overrides(self) -> None:
        settings = get_default_settings()
        settings["api"].update(
            {"auto_retry": True, "request_delay_seconds": 2, "allowed_max_requests": "4"}
        )
        settings["context"].update({"auto_condense": True, "auto_condense_percent": 75})
        settings["task"]["consecutive_mistake_limit"] = 5
        ts = TaskSettings.from_settings(settings)
        assert ts.auto_retry is True
        assert ts.request_delay_seconds == 2
        assert ts.allowed_max_requests == 4
        assert ts.auto_condense_context is True
        assert ts.auto_condense_context_percent == 75
        assert ts.consecutive_mistake_limit == 5

    def test_frozen(self) -> None:
        with pytest.raises(AttributeError):
            TaskSettings().auto_retry = True  # type: ignore[misc]
