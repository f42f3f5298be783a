"""Load engine settings from config/settings.yaml."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

_DEFAULTS: dict[str, Any] = {
    "agents": {
        "default": {
            "provider": "openai",
            "model": "gpt-4.1",
        },
    },
    "providers": {},
    "storage": {
        "db_path": "data/tasks.db",
        "busy_timeout": 5000,
    },
    "logging": {
        "file": "logs/taskcore.log",
        "level": "INFO",
        "log_to_console": False,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
    },
    "task": {
        "consecutive_mistake_limit": 3,
        "ask_poll_interval": 0.1,
        "pause_poll_interval": 1.0,
        "mode_switch_delay": 0.5,
        "enable_checkpoints": True,
        "default_mode": "code",
        "language": None,
    },
    "api": {
        # Auto-retry on first-chunk failures (auto-approval + always-resubmit).
        "auto_retry": False,
        "request_delay_seconds": 5,
        "rate_limit_seconds": 0,
        "allowed_max_requests": None,
    },
    "context": {
        "auto_condense": False,
        "auto_condense_percent": 100,
        "model_max_tokens": None,
    },
}

_cached: dict[str, Any] | None = None


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base recursively. Mutates base."""
    for key, value in overlay.items():
        if value is None:
            continue
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def get_default_settings() -> dict[str, Any]:
    """Return a deep copy of default settings."""
    return _deep_copy_nested(_DEFAULTS)


def get_setting(settings: dict[str, Any], path: str, default: Any = None) -> Any:
    """Get a nested value by dot path (e.g. 'api.request_delay_seconds')."""
    current: Any = settings
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def reload_settings() -> None:
    """Clear the settings cache. Call after config files change."""
    global _cached
    _cached = None


def load_settings(config_dir: Path | None = None) -> dict[str, Any]:
    """Load settings from config/settings.yaml. Returns merged defaults + file values."""
    global _cached
    if _cached is not None:
        return _cached

    if config_dir is None:
        config_dir = Path(__file__).resolve().parent.parent / "config"
    path = config_dir / "settings.yaml"

    result = get_default_settings()
    if path.exists():
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                _deep_merge(result, data)
        except (yaml.YAMLError, OSError):
            pass

    _cached = result
    return result


def _deep_copy_nested(obj: Any) -> Any:
    """Return a deep copy of nested dicts/lists for defaults."""
    if isinstance(obj, dict):
        return {k: _deep_copy_nested(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_deep_copy_nested(x) for x in obj]
    return obj


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


@dataclass(frozen=True)
class TaskSettings:
    """Per-task tuning read once when a task is created."""

    consecutive_mistake_limit: int = 3
    auto_retry: bool = False
    request_delay_seconds: float = 5
    rate_limit_seconds: float = 0
    allowed_max_requests: int | None = None
    auto_condense_context: bool = False
    auto_condense_context_percent: float = 100
    model_max_tokens: int | None = None
    ask_poll_interval: float = 0.1
    pause_poll_interval: float = 1.0
    mode_switch_delay: float = 0.5
    enable_checkpoints: bool = True

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> "TaskSettings":
        """Build from the task/api/context sections of loaded settings."""
        return cls(
            consecutive_mistake_limit=int(
                get_setting(settings, "task.consecutive_mistake_limit", 3)
            ),
            auto_retry=bool(get_setting(settings, "api.auto_retry", False)),
            request_delay_seconds=float(
                get_setting(settings, "api.request_delay_seconds", 5) or 5
            ),
            rate_limit_seconds=float(
                get_setting(settings, "api.rate_limit_seconds", 0) or 0
            ),
            allowed_max_requests=_optional_int(
                get_setting(settings, "api.allowed_max_requests")
            ),
            auto_condense_context=bool(
                get_setting(settings, "context.auto_condense", False)
            ),
            auto_condense_context_percent=float(
                get_setting(settings, "context.auto_condense_percent", 100)
            ),
            model_max_tokens=_optional_int(
                get_setting(settings, "context.model_max_tokens")
            ),
            ask_poll_interval=float(get_setting(settings, "task.ask_poll_interval", 0.1)),
            pause_poll_interval=float(
                get_setting(settings, "task.pause_poll_interval", 1.0)
            ),
            mode_switch_delay=float(get_setting(settings, "task.mode_switch_delay", 0.5)),
            enable_checkpoints=bool(
                get_setting(settings, "task.enable_checkpoints", True)
            ),
        )
