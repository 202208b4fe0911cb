from __future__ import annotations

import abc
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

from agent_ide.config import (
    DEFAULT_CLOCK_SKEW_TOLERANCE_S,
    DEFAULT_FILE_CHECK_INTERVAL_S,
    DEFAULT_TEXT_DEBOUNCE_S,
)
from agent_ide.session_state import PromptRecord, TokenUsage

LOGGER = logging.getLogger("agent_ide.monitors")
LOGGER.addHandler(logging.NullHandler())

STATUS_WAITING = "waiting"
STATUS_IN_PROGRESS = "in_progress"
STATUS_TEXT_READY = "text_ready"
STATUS_COMPLETED = "completed"

REASON_RESPONSE_COMPLETE = "response-complete"
REASON_END_OF_TURN = "end-of-turn"
REASON_ABORTED = "aborted"
REASON_NEXT_PROMPT = "next-prompt"
REASON_SESSION_SWITCH = "session-switch"
REASON_DISCONNECT = "disconnect"
REASON_PROVIDER_CHANGE = "provider-change"
FORCED_REASONS = frozenset({REASON_NEXT_PROMPT, REASON_SESSION_SWITCH, REASON_DISCONNECT, REASON_PROVIDER_CHANGE})

DUPLICATE_PROMPT_WINDOW_S = 0.2
PSEUDO_PROMPT_PREFIXES = ("<environment_context", "<user_instructions")


@dataclass
class Turn:
    turn_id: str
    started_at: float
    last_event_at: float
    prompt_text: str = ""
    last_assistant_at: float | None = None
    usage: TokenUsage | None = None
    latest_text: str | None = None
    status: str = STATUS_WAITING
    prompt: PromptRecord | None = None
    debounce_deadline: float | None = None

    @property
    def open(self) -> bool:
        return self.status != STATUS_COMPLETED

    def clear_debounce(self) -> None:
        self.debounce_deadline = None

    def mark_in_progress(self) -> None:
        if not self.open:
            return
        self.status = STATUS_IN_PROGRESS
        self.latest_text = None
        self.clear_debounce()

    def mark_text_ready(self, text: str, at: float) -> None:
        self.status = STATUS_TEXT_READY
        self.latest_text = text
        self.last_assistant_at = at


@dataclass
class TurnResult:
    provider: str
    turn_id: str
    reason: str
    duration_s: float
    started_at: float
    finished_at: float
    prompt_text: str = ""
    prompt: PromptRecord | None = None
    usage: TokenUsage | None = None
    output_text: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def forced(self) -> bool:
        return self.reason in FORCED_REASONS


class JsonlTail:
    """Reads the bytes appended to a file since the previous read.

    An incomplete trailing line is held back until its newline arrives. A file
    that shrank is read again from the start.
    """

    def __init__(self, path: Path, *, from_end: bool = False) -> None:
        self.path = path
        self.offset = 0
        self._pending = b""
        if from_end:
            try:
                self.offset = path.stat().st_size
            except OSError:
                self.offset = 0

    def read_lines(self) -> list[str]:
        try:
            size = self.path.stat().st_size
        except OSError:
            return []
        if size < self.offset:
            LOGGER.debug("%s was truncated; reading from the start.", self.path)
            self.offset = 0
            self._pending = b""
        if size == self.offset:
            return []
        try:
            with self.path.open("rb") as handle:
                handle.seek(self.offset)
                chunk = handle.read(size - self.offset)
        except OSError as exc:
            LOGGER.debug("Unable to read %s: %s", self.path, exc)
            return []
        self.offset += len(chunk)
        data = self._pending + chunk
        *complete, self._pending = data.split(b"\n")
        lines: list[str] = []
        for raw in complete:
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                lines.append(line)
        return lines

    def read_entries(self) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        for line in self.read_lines():
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                LOGGER.debug("Skipping undecodable line in %s.", self.path)
                continue
            if isinstance(entry, dict):
                entries.append(entry)
        return entries


def newest_file(paths: Iterable[Path], *, min_mtime: float | None = None) -> Path | None:
    latest_path: Path | None = None
    latest_mtime = 0.0
    for path in paths:
        try:
            mtime = path.stat().st_mtime
        except OSError:
            continue
        if min_mtime is not None and mtime < min_mtime:
            continue
        if mtime > latest_mtime:
            latest_mtime = mtime
            latest_path = path
    return latest_path


def list_dir(path: Path, *, dirs: bool = False) -> list[Path]:
    try:
        with os.scandir(path) as entries:
            return [
                Path(entry.path)
                for entry in entries
                if (entry.is_dir() if dirs else entry.is_file())
            ]
    except OSError:
        return []


class LogMonitor(abc.ABC):
    """Tails one provider's session log and turns its entries into turn results.

    ``poll`` is called by the owning session at a fixed interval. It re-checks
    which log file is current, feeds new entries to ``process_entry`` and then
    fires any debounce deadline that has passed.
    """

    provider_name = ""

    def __init__(
        self,
        *,
        home_dir: Path,
        workspace_dirs: Sequence[Path | str],
        on_finalize: Callable[[TurnResult], None],
        link_prompt: Callable[[str, str], PromptRecord | None] | None = None,
        approval_wait: Callable[[], float] | None = None,
        debounce_s: float = DEFAULT_TEXT_DEBOUNCE_S,
        clock_skew_tolerance_s: float = DEFAULT_CLOCK_SKEW_TOLERANCE_S,
        file_check_interval_s: float = DEFAULT_FILE_CHECK_INTERVAL_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.home_dir = Path(home_dir)
        self.workspace_dirs = [str(path) for path in workspace_dirs if str(path)]
        self._on_finalize = on_finalize
        self._link_prompt = link_prompt
        self._approval_wait = approval_wait or (lambda: 0.0)
        self.debounce_s = max(0.0, float(debounce_s))
        self.clock_skew_tolerance_s = clock_skew_tolerance_s
        self.file_check_interval_s = file_check_interval_s
        self.clock = clock
        self.started_at = clock()
        self.last_prompt_at: float | None = None
        self.current_path: Path | None = None
        self.skipped_files: set[Path] = set()
        self.disposed = False
        self._tail: JsonlTail | None = None
        self._last_file_check: float | None = None
        self._last_user_message: tuple[str, float] | None = None

    # Discovery

    @abc.abstractmethod
    def candidate_files(self) -> list[Path]:
        """Log files that may belong to this session, in preference order."""

    def discover(self) -> Path | None:
        candidates = [path for path in self.candidate_files() if path not in self.skipped_files]
        return newest_file(candidates, min_mtime=self.min_file_mtime())

    def min_file_mtime(self) -> float:
        reference = self.last_prompt_at if self.last_prompt_at is not None else self.started_at
        return reference - self.clock_skew_tolerance_s

    def request_rediscovery(self) -> None:
        self._last_file_check = None

    def note_prompt(self, at: float | None = None) -> None:
        """Record that a prompt was submitted so discovery considers newer files."""
        self.last_prompt_at = self.clock() if at is None else at
        self.request_rediscovery()

    def refresh_file(self) -> None:
        now = self.clock()
        if (
            self.current_path is not None
            and self._last_file_check is not None
            and now - self._last_file_check < self.file_check_interval_s
        ):
            return
        self._last_file_check = now
        candidate = self.discover()
        if candidate is None or candidate == self.current_path:
            return
        if self.current_path is not None:
            LOGGER.info("%s session log switched from %s to %s", self.provider_name, self.current_path, candidate)
            self.finalize_open_turns(REASON_SESSION_SWITCH)
        else:
            LOGGER.info("%s session log found at %s", self.provider_name, candidate)
        self.open_file(candidate)

    def open_file(self, path: Path) -> None:
        self.current_path = path
        self._tail = JsonlTail(path)
        self._last_user_message = None

    def skip_current_file(self) -> None:
        if self.current_path is None:
            return
        LOGGER.info("%s session log %s belongs to another workspace; skipping it.", self.provider_name, self.current_path)
        self.skipped_files.add(self.current_path)
        self.finalize_open_turns(REASON_SESSION_SWITCH)
        self.current_path = None
        self._tail = None
        self.request_rediscovery()

    def accepts_cwd(self, cwd: Any) -> bool:
        if not isinstance(cwd, str) or not cwd:
            return True
        normalized = cwd.rstrip("/") or "/"
        return any(normalized == (path.rstrip("/") or "/") for path in self.workspace_dirs)

    # Polling

    def poll(self) -> list[dict[str, Any]]:
        if self.disposed:
            return []
        self.before_poll()
        self.refresh_file()
        entries = self.read_entries()
        for entry in entries:
            if self.disposed or self.current_path is None:
                break
            self.process_entry(entry)
        self.after_poll()
        self.fire_due_debounces()
        return entries

    def read_entries(self) -> list[dict[str, Any]]:
        if self._tail is None:
            return []
        return self._tail.read_entries()

    def before_poll(self) -> None:
        pass

    def after_poll(self) -> None:
        pass

    @abc.abstractmethod
    def process_entry(self, entry: dict[str, Any]) -> None:
        pass

    @abc.abstractmethod
    def open_turns(self) -> list[Turn]:
        pass

    @abc.abstractmethod
    def discard_turn(self, turn: Turn) -> None:
        pass

    # Turn lifecycle

    def new_turn(self, started_at: float, prompt_text: str = "", turn_id: str | None = None) -> Turn:
        turn = Turn(
            turn_id=turn_id or uuid.uuid4().hex,
            started_at=started_at,
            last_event_at=started_at,
            prompt_text=prompt_text,
        )
        self.link(turn)
        LOGGER.debug("%s turn %s started.", self.provider_name, turn.turn_id)
        return turn

    def link(self, turn: Turn) -> None:
        if turn.prompt is not None or self._link_prompt is None:
            return
        turn.prompt = self._link_prompt(turn.turn_id, turn.prompt_text)

    def is_duplicate_prompt(self, text: str, at: float) -> bool:
        """True for pseudo-prompts and for a repeat of the previous prompt within 200 ms."""
        if not text or text.startswith(PSEUDO_PROMPT_PREFIXES):
            return True
        previous = self._last_user_message
        if previous is not None and previous[0] == text and abs(at - previous[1]) <= DUPLICATE_PROMPT_WINDOW_S:
            return True
        self._last_user_message = (text, at)
        return False

    def arm_debounce(self, turn: Turn, delay_s: float | None = None) -> None:
        delay = self.debounce_s if delay_s is None else delay_s
        if delay <= 0:
            self.finalize_turn(turn, REASON_RESPONSE_COMPLETE)
            return
        turn.debounce_deadline = self.clock() + delay

    def fire_due_debounces(self) -> None:
        now = self.clock()
        for turn in self.open_turns():
            if turn.debounce_deadline is None or now < turn.debounce_deadline:
                continue
            turn.clear_debounce()
            if turn.status == STATUS_TEXT_READY:
                self.finalize_turn(turn, REASON_RESPONSE_COMPLETE)

    def finalize_turn(self, turn: Turn, reason: str) -> TurnResult | None:
        if not turn.open:
            return None
        if reason == REASON_RESPONSE_COMPLETE and turn.status != STATUS_TEXT_READY:
            return None
        turn.status = STATUS_COMPLETED
        turn.clear_debounce()
        self.discard_turn(turn)
        self.link(turn)

        finished_at = turn.last_assistant_at or turn.last_event_at or self.clock()
        raw_duration = finished_at - turn.started_at
        duration = max(0.0, raw_duration - self._approval_wait())
        result = TurnResult(
            provider=self.provider_name,
            turn_id=turn.turn_id,
            reason=reason,
            duration_s=duration,
            started_at=turn.started_at,
            finished_at=finished_at,
            prompt_text=turn.prompt_text,
            prompt=turn.prompt,
            usage=turn.usage,
            output_text=turn.latest_text,
        )
        LOGGER.info(
            "%s turn %s finalized (%s) after %.2fs.",
            self.provider_name,
            turn.turn_id,
            reason,
            duration,
        )
        self._on_finalize(result)
        return result

    def finalize_open_turns(self, reason: str) -> list[TurnResult]:
        results: list[TurnResult] = []
        for turn in list(self.open_turns()):
            result = self.finalize_turn(turn, reason)
            if result is not None:
                results.append(result)
        return results

    def dispose(self, reason: str = REASON_DISCONNECT) -> list[TurnResult]:
        """Force-finalize open turns and stop reading. Safe to call repeatedly."""
        if self.disposed:
            return []
        results = self.finalize_open_turns(reason)
        self.disposed = True
        self._tail = None
        self.close()
        return results

    def close(self) -> None:
        pass
