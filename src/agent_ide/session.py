from __future__ import annotations

import logging
import os
import queue
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from agent_ide.commits import CommitOrchestrator
from agent_ide.config import IdeSettings
from agent_ide.input_normalizer import InputNormalizer
from agent_ide.monitors.base import (
    REASON_DISCONNECT,
    REASON_PROVIDER_CHANGE,
    REASON_RESPONSE_COMPLETE,
    LogMonitor,
    TurnResult,
)
from agent_ide.monitors.claude import ClaudeLogMonitor
from agent_ide.monitors.codex import CodexLogMonitor
from agent_ide.monitors.gemini import GeminiLogMonitor
from agent_ide.prompt_log import iso_from_timestamp
from agent_ide.providers import AgentProvider
from agent_ide.screen_monitor import ScreenMonitor
from agent_ide.session_state import PromptLinker, PromptRecord, SessionState
from agent_ide.terminal import TerminalProcess

LOGGER = logging.getLogger("agent_ide.session")
LOGGER.addHandler(logging.NullHandler())

EVENT_QUEUE_MAX = 512

LOG_MONITOR_CLASSES: dict[str, type[LogMonitor]] = {
    "claude": ClaudeLogMonitor,
    "codex": CodexLogMonitor,
    "gemini": GeminiLogMonitor,
}


def queue_put(listener: queue.Queue[dict[str, Any] | None], value: dict[str, Any] | None) -> None:
    """Put without blocking, dropping the oldest queued event when full."""
    try:
        listener.put_nowait(value)
        return
    except queue.Full:
        pass

    try:
        listener.get_nowait()
    except queue.Empty:
        return

    try:
        listener.put_nowait(value)
    except queue.Full:
        return


class TerminalSession:
    """One provider CLI attached to one project workspace for one user.

    Every handler that touches monitor or prompt state runs under ``lock``:
    terminal output arrives on the reader thread, input on the websocket
    thread, and log polling on the ticker thread.
    """

    def __init__(
        self,
        *,
        session_key: str,
        user_id: str,
        project_id: str,
        provider: AgentProvider,
        workspace_dir: Path,
        home_dir: Path,
        settings: IdeSettings,
        orchestrator: CommitOrchestrator,
        monitored_workspace_dirs: Sequence[Path | str] = (),
        linker: PromptLinker | None = None,
        base_env: Mapping[str, str] | None = None,
        terminal_factory: Callable[..., TerminalProcess] = TerminalProcess,
        on_closed: Callable[[TerminalSession], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.session_key = session_key
        self.user_id = user_id
        self.project_id = project_id
        self.provider = provider
        self.workspace_dir = Path(workspace_dir)
        self.home_dir = Path(home_dir)
        self.settings = settings
        self.orchestrator = orchestrator
        self.monitored_workspace_dirs = [str(self.workspace_dir)] + [
            str(path) for path in monitored_workspace_dirs if str(path) and str(path) != str(self.workspace_dir)
        ]
        self.linker = linker or PromptLinker()
        self._base_env = dict(os.environ if base_env is None else base_env)
        self._terminal_factory = terminal_factory
        self._on_closed = on_closed
        self.clock = clock

        self.lock = threading.RLock()
        self.events: queue.Queue[dict[str, Any] | None] = queue.Queue(maxsize=EVENT_QUEUE_MAX)
        self.spawned_at: float | None = None
        self.closed = False
        self.terminal: TerminalProcess | None = None
        self.log_monitor: LogMonitor | None = None
        self.state = SessionState(provider.display_name, clock=clock)
        self.normalizer = InputNormalizer()
        self.screen = self._build_screen_monitor()
        self._stop_ticker = threading.Event()
        self._ticker: threading.Thread | None = None
        self._generation = 0

    # Construction

    def _build_screen_monitor(self) -> ScreenMonitor:
        return ScreenMonitor(
            buffer_chars=self.settings.screen_buffer_chars,
            grace_s=self.settings.response_grace_s,
            auth_markers=self.provider.auth_flow_markers,
            clock=self.clock,
            approval_wait=self.state.approval_wait,
            on_response_complete=self._handle_screen_response_complete,
            on_approval_change=self._handle_approval_change,
            on_auth_flow_change=self._handle_auth_flow_change,
        )

    def _build_log_monitor(self) -> LogMonitor:
        monitor_cls = LOG_MONITOR_CLASSES[self.provider.name]
        return monitor_cls(
            home_dir=self.home_dir,
            workspace_dirs=self.monitored_workspace_dirs,
            on_finalize=self.finalize,
            link_prompt=self._link_prompt,
            approval_wait=self.state.approval_wait,
            debounce_s=self.settings.debounce_for(self.provider.name),
            clock_skew_tolerance_s=self.settings.clock_skew_tolerance_s,
            file_check_interval_s=self.settings.file_check_interval_s,
            clock=self.clock,
        )

    # Lifecycle

    def start(self) -> None:
        """Spawn the provider CLI and begin monitoring it.

        Raises ``ConfigurationError`` for missing credentials and ``SpawnError``
        when the CLI cannot be launched; nothing keeps running in either case.
        """
        env = self.provider.build_env(
            home_dir=self.home_dir,
            workspace_dir=self.workspace_dir,
            base_env=self._base_env,
        )
        executable = self.provider.resolve_executable(env)
        self.provider.prepare(home_dir=self.home_dir, workspace_dir=self.workspace_dir, env=env)
        cmd = [executable, *self.provider.command()[1:]]
        self.workspace_dir.mkdir(parents=True, exist_ok=True)

        with self.lock:
            self._generation += 1
            generation = self._generation
        terminal = self._terminal_factory(
            on_output=self._handle_output,
            on_exit=lambda code, sig: self._handle_exit(generation, code, sig),
        )
        terminal.start(
            cmd,
            cwd=self.workspace_dir,
            env=env,
            cols=self.settings.pty_cols,
            rows=self.settings.pty_rows,
        )
        with self.lock:
            closed = self.closed
            if not closed:
                self.log_monitor = self._build_log_monitor()
                self.terminal = terminal
                self.spawned_at = self.clock()
        if closed:
            LOGGER.info("Session %s closed while its CLI was starting.", self.session_key)
            terminal.terminate()
            return
        LOGGER.info(
            "Session %s started %s for user %s project %s.",
            self.session_key,
            self.provider.name,
            self.user_id,
            self.project_id,
        )
        self._ticker = threading.Thread(target=self._ticker_loop, name=f"ticker-{self.session_key}", daemon=True)
        self._ticker.start()

    def _ticker_loop(self) -> None:
        interval = max(0.01, self.settings.log_poll_interval_s)
        while not self._stop_ticker.wait(interval):
            self.poll()

    def poll(self) -> None:
        with self.lock:
            if self.closed:
                return
            try:
                if self.log_monitor is not None:
                    self.log_monitor.poll()
                self.screen.tick()
            except Exception:
                LOGGER.exception("Session %s poll failed.", self.session_key)

    def change_provider(self, provider: AgentProvider) -> None:
        """Replace the running CLI with another provider's CLI in the same workspace."""
        with self.lock:
            if self.closed:
                return
            # The old CLI exiting must not close the session.
            self._generation += 1
            if self.log_monitor is not None:
                self.log_monitor.dispose(REASON_PROVIDER_CHANGE)
            terminal = self.terminal
            self.terminal = None
            self.log_monitor = None
        self._stop_ticker.set()
        self._join_ticker()
        if terminal is not None:
            terminal.terminate()
        with self.lock:
            self.provider = provider
            self.state = SessionState(provider.display_name, clock=self.clock)
            self.normalizer.reset()
            self.screen = self._build_screen_monitor()
            self._stop_ticker = threading.Event()
        LOGGER.info("Session %s switching to %s.", self.session_key, provider.name)
        self.start()

    def disconnect(self, reason: str = REASON_DISCONNECT) -> None:
        """Stop monitoring, finalize open turns and end the CLI. Safe to call repeatedly."""
        with self.lock:
            if self.closed:
                return
            self.closed = True
        self._stop_ticker.set()
        self._join_ticker()
        with self.lock:
            monitor = self.log_monitor
            if monitor is not None:
                try:
                    monitor.dispose(reason)
                except Exception:
                    LOGGER.exception("Session %s failed to finalize open turns.", self.session_key)
            terminal = self.terminal
        if terminal is not None:
            terminal.terminate()
        LOGGER.info("Session %s closed (%s).", self.session_key, reason)
        queue_put(self.events, None)
        if self._on_closed is not None:
            self._on_closed(self)

    def _join_ticker(self) -> None:
        ticker = self._ticker
        if ticker is not None and ticker is not threading.current_thread():
            ticker.join(timeout=max(1.0, self.settings.log_poll_interval_s * 4))

    # Terminal traffic

    def emit(self, event_type: str, payload: Any) -> None:
        key = "data" if event_type == "output" else "payload"
        queue_put(self.events, {"type": event_type, key: payload})

    def handle_input(self, data: bytes | str) -> list[PromptRecord]:
        """Forward raw input to the CLI and record any prompts it submits."""
        terminal = self.terminal
        if terminal is None:
            raise OSError("Session is not running.")
        terminal.write(data)
        records: list[PromptRecord] = []
        with self.lock:
            for line in self.normalizer.feed(data):
                record = self.state.add_prompt(line, self.clock())
                records.append(record)
                self.screen.reset()
                if self.log_monitor is not None:
                    self.log_monitor.note_prompt(record.submitted_at)
                LOGGER.debug("Session %s captured a prompt (%d chars).", self.session_key, len(line))
        return records

    def resize(self, cols: int, rows: int) -> bool:
        terminal = self.terminal
        if terminal is None:
            return False
        return terminal.resize(cols, rows)

    def _handle_output(self, text: str) -> None:
        self.emit("output", text)
        with self.lock:
            self.screen.feed(text)

    def _handle_exit(self, generation: int, code: int | None, sig: int | None) -> None:
        with self.lock:
            current = self._generation
        if generation != current:
            LOGGER.debug("Session %s ignored exit of a replaced CLI.", self.session_key)
            return
        self.emit("exit", {"code": code, "signal": sig})
        self.disconnect(REASON_DISCONNECT)

    # Monitor callbacks

    def _link_prompt(self, turn_id: str, prompt_text: str) -> PromptRecord | None:
        return self.linker.link(self.state, turn_id, prompt_text)

    def _handle_approval_change(self, awaiting: bool) -> None:
        with self.lock:
            self.state.set_awaiting_approval(awaiting)
            self.normalizer.set_suppressed(awaiting or self.screen.auth_flow_active)

    def _handle_auth_flow_change(self, active: bool) -> None:
        with self.lock:
            self.normalizer.set_suppressed(active or self.state.awaiting_approval)

    def _handle_screen_response_complete(self, duration_s: float) -> None:
        with self.lock:
            if self.closed or not self.state.response_pending:
                return
            if self.log_monitor is not None and self.log_monitor.open_turns():
                return
            pending = self.state.unlinked_prompts()
            if not pending:
                return
            now = self.clock()
            LOGGER.info("Session %s: screen went idle with no log turn; finalizing from the screen.", self.session_key)
            self._commit_turn(
                TurnResult(
                    provider=self.provider.name,
                    turn_id=uuid.uuid4().hex,
                    reason=REASON_RESPONSE_COMPLETE,
                    duration_s=duration_s,
                    started_at=pending[0].submitted_at,
                    finished_at=now,
                    extra={"source": "screen"},
                ),
                pending,
            )

    def finalize(self, result: TurnResult) -> None:
        """Entry point for log monitors once a turn has finished."""
        with self.lock:
            records = [result.prompt] if result.prompt is not None else []
            self._commit_turn(result, records)

    def _commit_turn(self, result: TurnResult, records: list[PromptRecord]) -> None:
        taken = self.state.take_prompts(records)
        for record in taken:
            record.duration_s = result.duration_s
            record.completed_at = result.finished_at
            record.output_text = result.output_text
            record.usage = result.usage
        self.state.record_completion(
            duration_s=result.duration_s,
            finished_at=result.finished_at,
            usage=result.usage,
            output_text=result.output_text,
        )
        self.screen.reset()
        try:
            self.orchestrator.finalize(
                user_id=self.user_id,
                project_id=self.project_id,
                provider=self.provider.display_name,
                workspace_dir=self.workspace_dir,
                records=taken,
                duration_s=result.duration_s,
                emit=self.emit,
                log_prompt_text=result.prompt_text,
                usage=result.usage,
            )
        except Exception:
            LOGGER.exception("Session %s failed to save turn %s.", self.session_key, result.turn_id)
            self.emit(
                "commit_notification",
                {
                    "status": "error",
                    "provider": self.provider.display_name,
                    "count": len(taken),
                    "duration": None,
                    "message": "Saving your changes failed unexpectedly.",
                },
            )

    def snapshot(self) -> dict[str, Any]:
        with self.lock:
            monitor = self.log_monitor
            return {
                "session_key": self.session_key,
                "user_id": self.user_id,
                "project_id": self.project_id,
                "provider": self.provider.name,
                "workspace_dir": str(self.workspace_dir),
                "spawned_at": iso_from_timestamp(self.spawned_at) if self.spawned_at is not None else None,
                "pid": self.terminal.pid if self.terminal is not None else None,
                "log_file": str(monitor.current_path) if monitor is not None and monitor.current_path else None,
                "open_turns": len(monitor.open_turns()) if monitor is not None else 0,
                "state": self.state.snapshot(),
            }
