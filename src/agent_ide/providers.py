from __future__ import annotations

import abc
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Iterable, Mapping

from agent_ide.errors import ConfigurationError, SpawnError

LOGGER = logging.getLogger("agent_ide.providers")
LOGGER.addHandler(logging.NullHandler())

DEFAULT_RUNTIME_TERM = "xterm-256color"
DEFAULT_RUNTIME_COLORTERM = "truecolor"


def _has_cli_option(args: Iterable[str], *, long_option: str, short_option: str | None = None) -> bool:
    return any(
        arg == long_option
        or arg.startswith(f"{long_option}=")
        or (short_option and (arg == short_option or arg.startswith(f"{short_option}=")))
        for arg in args
    )


def _first_credential(env: Mapping[str, str], names: Iterable[str]) -> str:
    for name in names:
        value = str(env.get(name) or "").strip()
        if value:
            return value
    return ""


def _read_json_object(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeError, json.JSONDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}


def _write_json_if_changed(path: Path, payload: dict) -> bool:
    """Write ``payload`` unless the file already holds exactly that object."""
    if _read_json_object(path) == payload:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    os.chmod(tmp_path, 0o600)
    tmp_path.replace(path)
    return True


class AgentProvider(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> str:
        """The internal identifier for the provider (e.g., 'codex', 'claude', 'gemini')."""

    @property
    @abc.abstractmethod
    def display_name(self) -> str:
        """Human-readable provider name used in notifications."""

    @property
    @abc.abstractmethod
    def executable(self) -> str:
        pass

    @property
    @abc.abstractmethod
    def credential_env_vars(self) -> tuple[str, ...]:
        """Environment variables that may hold the provider credential, in priority order."""

    @property
    def auth_flow_markers(self) -> tuple[str, ...]:
        """Screen phrases shown while the CLI waits for a pasted auth code."""
        return ()

    def default_runtime_flags(self, *, explicit_args: Iterable[str]) -> list[str]:
        return []

    def command(self, explicit_args: Iterable[str] = ()) -> list[str]:
        parsed_args = [str(arg) for arg in explicit_args]
        return [self.executable, *self.default_runtime_flags(explicit_args=parsed_args), *parsed_args]

    def credential(self, env: Mapping[str, str]) -> str:
        return _first_credential(env, self.credential_env_vars)

    def resolve_executable(self, env: Mapping[str, str]) -> str:
        resolved = shutil.which(self.executable, path=env.get("PATH") or os.defpath)
        if resolved is None:
            raise SpawnError(
                f"{self.display_name} CLI ({self.executable}) is not installed. "
                f"Install it and make sure '{self.executable}' is on PATH."
            )
        return resolved

    def build_env(self, *, home_dir: Path, workspace_dir: Path, base_env: Mapping[str, str]) -> dict[str, str]:
        env = dict(base_env)
        env["HOME"] = str(home_dir)
        env["PWD"] = str(workspace_dir)
        term = str(env.get("TERM") or "").strip()
        if not term or term.lower() == "dumb":
            env["TERM"] = DEFAULT_RUNTIME_TERM
        env.setdefault("COLORTERM", DEFAULT_RUNTIME_COLORTERM)
        return env

    def prepare(self, *, home_dir: Path, workspace_dir: Path, env: Mapping[str, str]) -> None:
        """Validate credentials and write first-use config files under ``home_dir``."""
        credential = self.credential(env)
        if not credential:
            names = " or ".join(self.credential_env_vars)
            raise ConfigurationError(f"{self.display_name} requires {names} to be set on the server.")
        home_dir.mkdir(parents=True, exist_ok=True)
        if self.write_config_files(home_dir=home_dir, workspace_dir=workspace_dir, credential=credential):
            LOGGER.info("Wrote %s config files under %s", self.name, home_dir)

    @abc.abstractmethod
    def write_config_files(self, *, home_dir: Path, workspace_dir: Path, credential: str) -> bool:
        """Write provider config files; returns True when anything changed."""


class ClaudeProvider(AgentProvider):
    @property
    def name(self) -> str:
        return "claude"

    @property
    def display_name(self) -> str:
        return "Claude"

    @property
    def executable(self) -> str:
        return "claude"

    @property
    def credential_env_vars(self) -> tuple[str, ...]:
        return ("ANTHROPIC_API_KEY", "CLAUDE_API_KEY")

    @property
    def auth_flow_markers(self) -> tuple[str, ...]:
        return ("Paste code here", "Browser didn't open?")

    @staticmethod
    def config_dir(home_dir: Path) -> Path:
        return home_dir / ".config" / "claude"

    def build_env(self, *, home_dir: Path, workspace_dir: Path, base_env: Mapping[str, str]) -> dict[str, str]:
        env = super().build_env(home_dir=home_dir, workspace_dir=workspace_dir, base_env=base_env)
        env["CLAUDE_CONFIG_DIR"] = str(self.config_dir(home_dir))
        credential = self.credential(base_env)
        if credential:
            env["ANTHROPIC_API_KEY"] = credential
        return env

    def write_config_files(self, *, home_dir: Path, workspace_dir: Path, credential: str) -> bool:
        config_file = self.config_dir(home_dir) / ".claude.json"
        config = _read_json_object(config_file)
        updated = dict(config)
        updated["hasCompletedOnboarding"] = True
        responses = updated.get("customApiKeyResponses")
        if not isinstance(responses, dict):
            responses = {}
        approved = [str(item) for item in responses.get("approved") or [] if str(item)]
        key_suffix = credential[-20:]
        if key_suffix not in approved:
            approved.append(key_suffix)
        updated["customApiKeyResponses"] = {
            "approved": approved,
            "rejected": [str(item) for item in responses.get("rejected") or [] if str(item)],
        }
        projects = updated.get("projects")
        if not isinstance(projects, dict):
            projects = {}
        project_entry = projects.get(str(workspace_dir))
        if not isinstance(project_entry, dict):
            project_entry = {}
        project_entry = {**project_entry, "hasTrustDialogAccepted": True}
        updated["projects"] = {**projects, str(workspace_dir): project_entry}
        return _write_json_if_changed(config_file, updated)


class CodexProvider(AgentProvider):
    @property
    def name(self) -> str:
        return "codex"

    @property
    def display_name(self) -> str:
        return "Codex"

    @property
    def executable(self) -> str:
        return "codex"

    @property
    def credential_env_vars(self) -> tuple[str, ...]:
        return ("OPENAI_API_KEY",)

    def default_runtime_flags(self, *, explicit_args: Iterable[str]) -> list[str]:
        parsed_args = [str(arg) for arg in explicit_args]
        flags: list[str] = []
        if _has_cli_option(parsed_args, long_option="--dangerously-bypass-approvals-and-sandbox"):
            return flags
        if not _has_cli_option(parsed_args, long_option="--sandbox", short_option="-s"):
            flags.extend(["--sandbox", "workspace-write"])
        return flags

    def build_env(self, *, home_dir: Path, workspace_dir: Path, base_env: Mapping[str, str]) -> dict[str, str]:
        env = super().build_env(home_dir=home_dir, workspace_dir=workspace_dir, base_env=base_env)
        env["CODEX_HOME"] = str(home_dir / ".codex")
        return env

    def write_config_files(self, *, home_dir: Path, workspace_dir: Path, credential: str) -> bool:
        auth_file = home_dir / ".codex" / "auth.json"
        existing = _read_json_object(auth_file)
        if str(existing.get("auth_mode") or "").strip().lower() == "chatgpt":
            return False
        return _write_json_if_changed(auth_file, {**existing, "OPENAI_API_KEY": credential})


class GeminiProvider(AgentProvider):
    @property
    def name(self) -> str:
        return "gemini"

    @property
    def display_name(self) -> str:
        return "Gemini"

    @property
    def executable(self) -> str:
        return "gemini"

    @property
    def credential_env_vars(self) -> tuple[str, ...]:
        return ("GEMINI_API_KEY", "GOOGLE_API_KEY")

    @property
    def auth_flow_markers(self) -> tuple[str, ...]:
        return ("Enter the authorization code",)

    def build_env(self, *, home_dir: Path, workspace_dir: Path, base_env: Mapping[str, str]) -> dict[str, str]:
        env = super().build_env(home_dir=home_dir, workspace_dir=workspace_dir, base_env=base_env)
        credential = self.credential(base_env)
        if credential:
            env["GEMINI_API_KEY"] = credential
        return env

    def write_config_files(self, *, home_dir: Path, workspace_dir: Path, credential: str) -> bool:
        settings_file = home_dir / ".gemini" / "settings.json"
        settings = _read_json_object(settings_file)
        security = settings.get("security") if isinstance(settings.get("security"), dict) else {}
        auth = security.get("auth") if isinstance(security.get("auth"), dict) else {}
        updated = {
            **settings,
            "security": {**security, "auth": {**auth, "selectedType": "gemini-api-key"}},
        }
        return _write_json_if_changed(settings_file, updated)


_PROVIDERS: dict[str, AgentProvider] = {
    "claude": ClaudeProvider(),
    "codex": CodexProvider(),
    "gemini": GeminiProvider(),
}


def provider_names() -> tuple[str, ...]:
    return tuple(_PROVIDERS)


def get_provider(name: str) -> AgentProvider:
    normalized = str(name or "").strip().lower()
    provider = _PROVIDERS.get(normalized)
    if provider is None:
        supported = ", ".join(sorted(_PROVIDERS))
        raise ConfigurationError(f"Unsupported provider '{name}'. Supported providers: {supported}.")
    return provider
