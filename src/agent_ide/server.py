from __future__ import annotations

import asyncio
import json
import logging
import os
import queue
import re
import sys
import time
from pathlib import Path
from typing import Any, Callable, Mapping

import click
import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect

from agent_ide.commits import CommitOrchestrator
from agent_ide.config import LOG_LEVEL_CHOICES, LOG_LEVEL_ENV, IdeSettings, load_settings, normalize_log_level
from agent_ide.errors import AgentIdeError, ConfigurationError, GitError
from agent_ide.git_repo import GitRepository
from agent_ide.monitors.base import REASON_DISCONNECT
from agent_ide.prompt_log import PromptLogStore
from agent_ide.providers import get_provider, provider_names
from agent_ide.session import TerminalSession
from agent_ide.session_state import CommitBatchRegistry, SessionRegistry
from agent_ide.terminal import TerminalProcess

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8765
DEFAULT_PROVIDER = "claude"
WS_CLOSE_UNKNOWN = 4404
WS_CLOSE_CONFLICT = 4409
SAFE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

LOGGER = logging.getLogger("agent_ide")
LOGGER.addHandler(logging.NullHandler())


def _configure_logging(level: str) -> None:
    normalized = normalize_log_level(level)
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.INFO))
    LOGGER.propagate = False


def _uvicorn_log_level(level: str) -> str:
    normalized = normalize_log_level(level)
    if normalized == "debug":
        return "info"
    return normalized


def _is_safe_id(value: str) -> bool:
    return bool(SAFE_ID_RE.match(value or "")) and ".." not in value


class WorkspaceResolver:
    """Maps a user and project onto directories on this host."""

    def __init__(self, settings: IdeSettings) -> None:
        self.settings = settings

    def workspace_dir(self, user_id: str, project_id: str) -> Path:
        return self.settings.resolved_workspace_root / user_id / project_id

    def home_dir(self, user_id: str) -> Path:
        return self.settings.resolved_home_root / user_id

    def monitored_dirs(self, user_id: str, project_id: str) -> list[str]:
        """Workspace paths a provider may record in its logs, host path first."""
        dirs = [str(self.workspace_dir(user_id, project_id))]
        container_root = self.settings.container_workspace_root.rstrip("/")
        if container_root:
            dirs.append(f"{container_root}/{user_id}/{project_id}")
        return dirs


class IdeHub:
    """Owns every live terminal session plus the shared commit machinery."""

    def __init__(
        self,
        settings: IdeSettings,
        *,
        resolver: WorkspaceResolver | None = None,
        base_env: Mapping[str, str] | None = None,
        terminal_factory: Callable[..., TerminalProcess] = TerminalProcess,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.resolver = resolver or WorkspaceResolver(settings)
        self.base_env = dict(os.environ if base_env is None else base_env)
        self.terminal_factory = terminal_factory
        self.clock = clock
        self.sessions: SessionRegistry[TerminalSession] = SessionRegistry()
        self.batches = CommitBatchRegistry()
        self.prompt_log = PromptLogStore(settings.data_dir)
        self.orchestrator = CommitOrchestrator(
            batches=self.batches,
            prompt_log=self.prompt_log,
            repository_factory=self.repository,
            clock=clock,
        )

    def repository(self, workspace_dir: Path) -> GitRepository:
        return GitRepository(
            workspace_dir,
            user_name=self.settings.git_user_name,
            user_email=self.settings.git_user_email,
            stale_lock_age_s=self.settings.stale_lock_age_s,
            clock=self.clock,
        )

    @staticmethod
    def session_key(user_id: str, project_id: str) -> str:
        return f"{user_id}:{project_id}"

    def open_session(self, user_id: str, project_id: str, provider_name: str) -> TerminalSession:
        if not _is_safe_id(user_id) or not _is_safe_id(project_id):
            raise HTTPException(status_code=404, detail="Unknown user or project.")
        provider = get_provider(provider_name)
        key = self.session_key(user_id, project_id)
        if self.sessions.get(key) is not None:
            raise HTTPException(status_code=409, detail="A terminal is already open for this project.")

        workspace_dir = self.resolver.workspace_dir(user_id, project_id)
        workspace_dir.mkdir(parents=True, exist_ok=True)
        try:
            self.repository(workspace_dir).ensure_initialized()
        except GitError as exc:
            LOGGER.warning("Unable to initialize git in %s: %s", workspace_dir, exc)

        session = TerminalSession(
            session_key=key,
            user_id=user_id,
            project_id=project_id,
            provider=provider,
            workspace_dir=workspace_dir,
            home_dir=self.resolver.home_dir(user_id),
            settings=self.settings,
            orchestrator=self.orchestrator,
            monitored_workspace_dirs=self.resolver.monitored_dirs(user_id, project_id),
            base_env=self.base_env,
            terminal_factory=self.terminal_factory,
            on_closed=self._session_closed,
            clock=self.clock,
        )
        try:
            self.sessions.register(key, session)
        except KeyError as exc:
            raise HTTPException(status_code=409, detail="A terminal is already open for this project.") from exc
        try:
            session.start()
        except Exception:
            self.sessions.remove(key)
            raise
        return session

    def _session_closed(self, session: TerminalSession) -> None:
        if self.sessions.get(session.session_key) is session:
            self.sessions.remove(session.session_key)

    def close_session(self, session: TerminalSession, reason: str = REASON_DISCONNECT) -> None:
        session.disconnect(reason)
        self._session_closed(session)

    def shutdown(self) -> int:
        sessions = self.sessions.values()
        for session in sessions:
            self.close_session(session)
        return len(sessions)

    def sessions_payload(self) -> dict[str, Any]:
        return {"sessions": [session.snapshot() for session in self.sessions.values()]}

    def commits_payload(self, project_id: str, user_id: str = "") -> dict[str, Any]:
        if not _is_safe_id(project_id):
            raise HTTPException(status_code=404, detail="Unknown project.")
        rows = self.prompt_log.commits_for(project_id)
        if user_id:
            rows = [row for row in rows if row.get("user_id") == user_id]
        payload: dict[str, Any] = {"project_id": project_id, "commits": rows}
        if user_id:
            payload["history"] = self.git_history(user_id, project_id)
        return payload

    def git_history(self, user_id: str, project_id: str, limit: int = 20) -> list[dict[str, str]]:
        if not _is_safe_id(user_id):
            raise HTTPException(status_code=404, detail="Unknown user.")
        repository = self.repository(self.resolver.workspace_dir(user_id, project_id))
        if not repository.is_initialized():
            return []
        try:
            return repository.recent_commits(limit)
        except GitError as exc:
            LOGGER.warning("Unable to read git history for %s/%s: %s", user_id, project_id, exc)
            return []

    def prompts_payload(self, project_id: str, user_id: str = "") -> dict[str, Any]:
        if not _is_safe_id(project_id):
            raise HTTPException(status_code=404, detail="Unknown project.")
        rows = self.prompt_log.prompts_for(project_id)
        if user_id:
            rows = [row for row in rows if row.get("user_id") == user_id]
        return {"project_id": project_id, "prompts": rows}


def build_app(hub: IdeHub) -> FastAPI:
    app = FastAPI()
    app.state.hub = hub

    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        return {"ok": True, "sessions": len(hub.sessions), "providers": list(provider_names())}

    @app.get("/api/sessions")
    def api_sessions() -> dict[str, Any]:
        return hub.sessions_payload()

    @app.get("/api/projects/{project_id}/commits")
    def api_project_commits(project_id: str, user: str = "") -> dict[str, Any]:
        return hub.commits_payload(project_id, user)

    @app.get("/api/projects/{project_id}/prompts")
    def api_project_prompts(project_id: str, user: str = "") -> dict[str, Any]:
        return hub.prompts_payload(project_id, user)

    @app.websocket("/api/projects/{project_id}/terminal")
    async def ws_project_terminal(project_id: str, websocket: WebSocket) -> None:
        user_id = str(websocket.headers.get("x-user-id") or websocket.query_params.get("user") or "").strip()
        provider_name = str(websocket.query_params.get("provider") or DEFAULT_PROVIDER).strip().lower()
        if not _is_safe_id(user_id) or not _is_safe_id(project_id) or provider_name not in provider_names():
            await websocket.close(code=WS_CLOSE_UNKNOWN)
            return

        await websocket.accept()
        try:
            session = await asyncio.to_thread(hub.open_session, user_id, project_id, provider_name)
        except HTTPException as exc:
            await websocket.close(code=WS_CLOSE_CONFLICT, reason=str(exc.detail))
            return
        except AgentIdeError as exc:
            LOGGER.warning("Unable to start %s for project %s: %s", provider_name, project_id, exc)
            await websocket.send_text(json.dumps({"type": "error", "payload": {"message": str(exc)}}))
            await websocket.close(code=WS_CLOSE_CONFLICT)
            return
        LOGGER.debug("Terminal websocket connected for %s.", session.session_key)

        async def stream_output() -> None:
            while True:
                try:
                    event = await asyncio.to_thread(session.events.get, True, 0.25)
                except queue.Empty:
                    continue
                if event is None:
                    break
                await websocket.send_text(json.dumps(event))

        async def stream_input() -> None:
            while True:
                message = await websocket.receive_text()
                payload: Any = None
                try:
                    payload = json.loads(message)
                except json.JSONDecodeError:
                    await asyncio.to_thread(session.handle_input, message)
                    continue

                if isinstance(payload, dict):
                    message_type = str(payload.get("type") or "")
                    if message_type == "input":
                        await asyncio.to_thread(session.handle_input, str(payload.get("data") or ""))
                        continue
                    if message_type == "resize":
                        try:
                            cols = int(payload.get("cols") or 0)
                            rows = int(payload.get("rows") or 0)
                        except (TypeError, ValueError):
                            session.emit("warning", {"message": "Ignored a resize with an invalid size."})
                            continue
                        resized = await asyncio.to_thread(session.resize, cols, rows)
                        if not resized:
                            session.emit("warning", {"message": "Terminal resize failed."})
                        continue
                    if message_type == "terminate":
                        await asyncio.to_thread(hub.close_session, session)
                        break
                    if message_type == "provider":
                        try:
                            provider = get_provider(str(payload.get("provider") or ""))
                            await asyncio.to_thread(session.change_provider, provider)
                        except AgentIdeError as exc:
                            session.emit("error", {"message": str(exc)})
                            await asyncio.to_thread(hub.close_session, session)
                            break
                        continue

                await asyncio.to_thread(session.handle_input, message)

        sender = asyncio.create_task(stream_output())
        receiver = asyncio.create_task(stream_input())
        try:
            done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done and not sender.done():
                # Let queued events such as the final commit notification drain.
                await asyncio.wait({sender}, timeout=1.0)
            for task in (sender, receiver):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sender, receiver, return_exceptions=True)
            for task in done:
                exc = task.exception()
                if exc and not isinstance(exc, (WebSocketDisconnect, OSError)):
                    raise exc
        except WebSocketDisconnect:
            pass
        finally:
            await asyncio.to_thread(hub.close_session, session)
            try:
                await websocket.close()
            except RuntimeError:
                pass

    @app.on_event("shutdown")
    async def app_shutdown() -> None:
        closed = await asyncio.to_thread(hub.shutdown)
        if closed:
            LOGGER.info("Shutdown closed %d terminal session(s).", closed)

    return app


@click.command(help="Run the agent IDE terminal server.")
@click.option("--data-dir", default=None, type=click.Path(file_okay=False, path_type=Path), help="Directory for prompt logs, homes and workspaces.")
@click.option("--config-file", default=None, type=click.Path(exists=True, dir_okay=False, path_type=Path), help="TOML settings file.")
@click.option("--host", default=DEFAULT_HOST, show_default=True)
@click.option("--port", default=DEFAULT_PORT, show_default=True, type=int)
@click.option(
    "--log-level",
    default=os.environ.get(LOG_LEVEL_ENV, "info"),
    show_default=True,
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
    help="Logging verbosity (applies to agent_ide logs and Uvicorn).",
)
@click.option("--reload", is_flag=True, default=False)
def main(
    data_dir: Path | None,
    config_file: Path | None,
    host: str,
    port: int,
    log_level: str,
    reload: bool,
) -> None:
    normalized_log_level = normalize_log_level(log_level)
    _configure_logging(normalized_log_level)
    try:
        settings = load_settings(config_file, data_dir=data_dir)
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    LOGGER.info(
        "Starting agent IDE host=%s port=%s data_dir=%s log_level=%s reload=%s",
        host,
        port,
        settings.data_dir,
        normalized_log_level,
        reload,
    )

    hub = IdeHub(settings)
    app = build_app(hub)
    uvicorn.run(app, host=host, port=port, reload=reload, log_level=_uvicorn_log_level(normalized_log_level))


if __name__ == "__main__":
    main()
