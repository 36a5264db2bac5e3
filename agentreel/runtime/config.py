from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .errors import ConfigError

CONFIG_FILENAME = "config.json"

DEFAULT_HIDDEN_TOOLS: tuple[str, ...] = ("report_intent", "ask_user")
DEFAULT_PREVIEW_CHARS = 120
DEFAULT_MAX_SESSION_LOGS = 50
DEFAULT_MODEL = "gpt-4.1"
DEFAULT_LOG_LEVEL = "WARNING"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def default_data_dir() -> Path:
    override = os.environ.get("AGENTREEL_HOME")
    if override:
        return Path(os.path.expanduser(override))
    return Path.home() / ".agentreel"


def config_path(data_dir: Path | None = None) -> Path:
    override = os.environ.get("AGENTREEL_CONFIG_PATH")
    if override:
        path = Path(os.path.expanduser(override))
        if not path.is_absolute() and data_dir is not None:
            path = data_dir / path
        return path
    return DataPaths.for_data_dir(data_dir or default_data_dir()).config_dir / CONFIG_FILENAME


@dataclass(frozen=True, slots=True)
class DataPaths:
    data_dir: Path
    config_dir: Path
    policy_dir: Path
    sessions_dir: Path
    events_dir: Path

    @property
    def rules_file(self) -> Path:
        return self.policy_dir / "permissions.json"

    @staticmethod
    def for_data_dir(data_dir: Path) -> "DataPaths":
        data_dir = data_dir.expanduser().resolve()
        return DataPaths(
            data_dir=data_dir,
            config_dir=data_dir / "config",
            policy_dir=data_dir / "policy",
            sessions_dir=data_dir / "sessions",
            events_dir=data_dir / "events",
        )


@dataclass(frozen=True, slots=True)
class AppConfig:
    data_dir: Path = field(default_factory=default_data_dir)
    hidden_tools: tuple[str, ...] = DEFAULT_HIDDEN_TOOLS
    preview_chars: int = DEFAULT_PREVIEW_CHARS
    max_session_logs: int = DEFAULT_MAX_SESSION_LOGS
    default_model: str = DEFAULT_MODEL
    log_level: str = DEFAULT_LOG_LEVEL

    @property
    def paths(self) -> DataPaths:
        return DataPaths.for_data_dir(self.data_dir)

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_dir": str(self.data_dir),
            "hidden_tools": list(self.hidden_tools),
            "preview_chars": self.preview_chars,
            "max_session_logs": self.max_session_logs,
            "default_model": self.default_model,
            "log_level": self.log_level,
        }


def load_config(path: Path | None = None) -> AppConfig:
    """
    Load the app config.

    A missing file yields defaults. Invalid JSON, unknown keys or values of the
    wrong type raise ConfigError.
    """

    path = path or config_path()
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return AppConfig()
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {path} ({e})") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file is not valid JSON: {path} ({e})") from e

    return config_from_dict(data, source=str(path))


def config_from_dict(data: Any, *, source: str = "<config>") -> AppConfig:
    root = _ensure_dict(data, ctx=f"{source}:root")
    _assert_known_keys(
        root,
        allowed={"data_dir", "hidden_tools", "preview_chars", "max_session_logs", "default_model", "log_level"},
        ctx=f"{source}:root",
    )
    cfg = AppConfig()

    data_dir_raw = root.get("data_dir")
    if data_dir_raw is not None:
        if not isinstance(data_dir_raw, str) or not data_dir_raw.strip():
            raise ConfigError(f"{source}:data_dir must be a non-empty string")
        cfg = replace(cfg, data_dir=Path(os.path.expanduser(data_dir_raw.strip())))

    hidden_raw = root.get("hidden_tools")
    if hidden_raw is not None:
        if not isinstance(hidden_raw, list) or not all(isinstance(x, str) for x in hidden_raw):
            raise ConfigError(f"{source}:hidden_tools must be a list of strings")
        cfg = replace(cfg, hidden_tools=tuple(x.strip() for x in hidden_raw if x.strip()))

    preview_raw = root.get("preview_chars")
    if preview_raw is not None:
        cfg = replace(cfg, preview_chars=_positive_int(preview_raw, ctx=f"{source}:preview_chars"))

    max_logs_raw = root.get("max_session_logs")
    if max_logs_raw is not None:
        cfg = replace(cfg, max_session_logs=_positive_int(max_logs_raw, ctx=f"{source}:max_session_logs"))

    model_raw = root.get("default_model")
    if model_raw is not None:
        if not isinstance(model_raw, str) or not model_raw.strip():
            raise ConfigError(f"{source}:default_model must be a non-empty string")
        cfg = replace(cfg, default_model=model_raw.strip())

    level_raw = root.get("log_level")
    if level_raw is not None:
        level = str(level_raw).strip().upper()
        if level not in _LOG_LEVELS:
            raise ConfigError(f"{source}:log_level must be one of {', '.join(sorted(_LOG_LEVELS))}")
        cfg = replace(cfg, log_level=level)

    return cfg


def save_config(path: Path, config: AppConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_dict(), ensure_ascii=False, indent=2) + "\n", encoding="utf-8")


def _positive_int(value: Any, *, ctx: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{ctx} must be a positive integer")
    return value


def _ensure_dict(value: Any, *, ctx: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"{ctx} must be an object")
    return value


def _assert_known_keys(obj: dict[str, Any], *, allowed: set[str], ctx: str) -> None:
    unknown = set(obj.keys()) - allowed
    if unknown:
        rendered = ", ".join(sorted(unknown))
        raise ConfigError(f"{ctx} contains unknown keys: {rendered}")
