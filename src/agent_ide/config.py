from __future__ import annotations

import logging
import math
import os
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

from agent_ide.errors import ConfigurationError

LOGGER = logging.getLogger("agent_ide.config")
LOGGER.addHandler(logging.NullHandler())

LOG_LEVEL_ENV = "AGENT_IDE_LOG_LEVEL"
LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")
DEFAULT_LOG_POLL_INTERVAL_S = 0.25
DEFAULT_TEXT_DEBOUNCE_S = 0.8
DEFAULT_FILE_CHECK_INTERVAL_S = 5.0
DEFAULT_CLOCK_SKEW_TOLERANCE_S = 2.0
DEFAULT_RESPONSE_GRACE_S = 2.0
DEFAULT_SCREEN_BUFFER_CHARS = 2000
DEFAULT_STALE_LOCK_AGE_S = 120.0
DEFAULT_PTY_COLS = 160
DEFAULT_PTY_ROWS = 48
DEFAULT_GIT_USER_NAME = "WebIDE User"
DEFAULT_GIT_USER_EMAIL = "webide@example.com"


def _default_data_dir() -> Path:
    return Path.home() / ".local" / "share" / "agent-ide"


@dataclass(frozen=True)
class IdeSettings:
    data_dir: Path = field(default_factory=_default_data_dir)
    workspace_root: Path | None = None
    home_root: Path | None = None
    container_workspace_root: str = ""
    pty_cols: int = DEFAULT_PTY_COLS
    pty_rows: int = DEFAULT_PTY_ROWS
    log_poll_interval_s: float = DEFAULT_LOG_POLL_INTERVAL_S
    claude_text_debounce_s: float = DEFAULT_TEXT_DEBOUNCE_S
    codex_text_debounce_s: float = DEFAULT_TEXT_DEBOUNCE_S
    gemini_turn_idle_s: float = DEFAULT_TEXT_DEBOUNCE_S
    file_check_interval_s: float = DEFAULT_FILE_CHECK_INTERVAL_S
    clock_skew_tolerance_s: float = DEFAULT_CLOCK_SKEW_TOLERANCE_S
    response_grace_s: float = DEFAULT_RESPONSE_GRACE_S
    screen_buffer_chars: int = DEFAULT_SCREEN_BUFFER_CHARS
    stale_lock_age_s: float = DEFAULT_STALE_LOCK_AGE_S
    git_user_name: str = DEFAULT_GIT_USER_NAME
    git_user_email: str = DEFAULT_GIT_USER_EMAIL

    @property
    def resolved_workspace_root(self) -> Path:
        return self.workspace_root or (self.data_dir / "workspaces")

    @property
    def resolved_home_root(self) -> Path:
        return self.home_root or (self.data_dir / "homes")

    def debounce_for(self, provider_name: str) -> float:
        if provider_name == "codex":
            return self.codex_text_debounce_s
        if provider_name == "gemini":
            return self.gemini_turn_idle_s
        return self.claude_text_debounce_s


def normalize_log_level(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in LOG_LEVEL_CHOICES:
        return normalized
    return "info"


def parse_duration_preference(*, ms: Any = None, s: Any = None, default: float) -> float:
    """Resolve a duration in seconds from millisecond or second overrides.

    A valid, non-negative millisecond value wins over a second value; anything
    unparsable falls through to ``default``.
    """
    for raw, scale in ((ms, 1000.0), (s, 1.0)):
        if raw is None or str(raw).strip() == "":
            continue
        try:
            value = float(str(raw).strip())
        except ValueError:
            continue
        if math.isfinite(value) and value >= 0:
            return value / scale
    return default


_SECTION_KEYS: dict[str, dict[str, str]] = {
    "paths": {
        "data_dir": "data_dir",
        "workspace_root": "workspace_root",
        "home_root": "home_root",
        "container_workspace_root": "container_workspace_root",
    },
    "terminal": {
        "cols": "pty_cols",
        "rows": "pty_rows",
    },
    "monitor": {
        "poll_interval_s": "log_poll_interval_s",
        "text_debounce_s": "claude_text_debounce_s",
        "claude_text_debounce_s": "claude_text_debounce_s",
        "codex_text_debounce_s": "codex_text_debounce_s",
        "gemini_turn_idle_s": "gemini_turn_idle_s",
        "file_check_interval_s": "file_check_interval_s",
        "clock_skew_tolerance_s": "clock_skew_tolerance_s",
        "response_grace_s": "response_grace_s",
        "screen_buffer_chars": "screen_buffer_chars",
    },
    "git": {
        "stale_lock_age_s": "stale_lock_age_s",
        "user_name": "git_user_name",
        "user_email": "git_user_email",
    },
}


def _coerce_field(name: str, value: Any) -> Any:
    if name in {"data_dir", "workspace_root", "home_root"}:
        text = str(value or "").strip()
        if not text:
            raise ConfigurationError(f"Setting {name} must be a non-empty path.")
        return Path(text).expanduser()
    if name in {"pty_cols", "pty_rows", "screen_buffer_chars"}:
        try:
            parsed = int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Setting {name} must be an integer.") from exc
        if parsed <= 0:
            raise ConfigurationError(f"Setting {name} must be positive.")
        return parsed
    if name.endswith("_s"):
        try:
            parsed_float = float(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Setting {name} must be a number of seconds.") from exc
        if parsed_float < 0:
            raise ConfigurationError(f"Setting {name} must not be negative.")
        return parsed_float
    return str(value)


def _settings_from_toml(raw: Mapping[str, Any], base: IdeSettings) -> IdeSettings:
    updates: dict[str, Any] = {}
    known = {item.name for item in fields(IdeSettings)}
    for section, mapping in _SECTION_KEYS.items():
        values = raw.get(section)
        if values is None:
            continue
        if not isinstance(values, dict):
            raise ConfigurationError(f"Config section [{section}] must be a table.")
        for key, value in values.items():
            target = mapping.get(key)
            if target is None or target not in known:
                LOGGER.warning("Ignoring unknown config key %s.%s", section, key)
                continue
            updates[target] = _coerce_field(target, value)
    return replace(base, **updates)


def _apply_env_overrides(settings: IdeSettings, environ: Mapping[str, str]) -> IdeSettings:
    return replace(
        settings,
        claude_text_debounce_s=parse_duration_preference(
            ms=environ.get("CLAUDE_TEXT_DEBOUNCE_MS"),
            default=settings.claude_text_debounce_s,
        ),
        codex_text_debounce_s=parse_duration_preference(
            ms=environ.get("CODEX_TEXT_DEBOUNCE_MS"),
            default=settings.codex_text_debounce_s,
        ),
        gemini_turn_idle_s=parse_duration_preference(
            ms=environ.get("GEMINI_TURN_IDLE_MS"),
            s=environ.get("GEMINI_TURN_IDLE_S"),
            default=settings.gemini_turn_idle_s,
        ),
    )


def load_settings(
    config_file: Path | None = None,
    environ: Mapping[str, str] | None = None,
    *,
    data_dir: Path | None = None,
) -> IdeSettings:
    env = os.environ if environ is None else environ
    settings = IdeSettings()
    if config_file is not None and config_file.exists():
        try:
            raw = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, UnicodeError) as exc:
            raise ConfigurationError(f"Unable to read config file {config_file}: {exc}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise ConfigurationError(f"Invalid config file {config_file}: {exc}") from exc
        settings = _settings_from_toml(raw, settings)
    if data_dir is not None:
        settings = replace(settings, data_dir=data_dir)
    return _apply_env_overrides(settings, env)
