from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterable, TypeVar

LOGGER = logging.getLogger("agent_ide.session_state")
LOGGER.addHandler(logging.NullHandler())

SessionT = TypeVar("SessionT")


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    total_tokens: int = 0

    def add(self, input_tokens: int = 0, output_tokens: int = 0) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.total_tokens = self.input_tokens + self.output_tokens + self.reasoning_tokens

    def as_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "reasoning_tokens": self.reasoning_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class PromptRecord:
    text: str
    submitted_at: float
    prompt_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    turn_id: str | None = None
    duration_s: float | None = None
    completed_at: float | None = None
    output_text: str | None = None
    usage: TokenUsage | None = None

    @property
    def linked(self) -> bool:
        return self.turn_id is not None


class SessionState:
    """Per-session bookkeeping shared by the input, screen and log monitors.

    Callers hold the owning session's lock while mutating it.
    """

    def __init__(self, provider_display_name: str, *, clock: Callable[[], float] = time.time) -> None:
        self.provider_display_name = provider_display_name
        self._clock = clock
        self.prompts: list[PromptRecord] = []
        self.approval_wait_s = 0.0
        self.awaiting_approval = False
        self.approval_wait_started_at: float | None = None
        self.response_pending = False
        self.last_duration_s: float | None = None
        self.last_usage: TokenUsage | None = None
        self.last_output_text: str | None = None
        self.last_finished_at: float | None = None

    def add_prompt(self, text: str, submitted_at: float | None = None) -> PromptRecord:
        record = PromptRecord(text=text, submitted_at=self._clock() if submitted_at is None else submitted_at)
        self.prompts.append(record)
        self.response_pending = True
        return record

    def unlinked_prompts(self) -> list[PromptRecord]:
        return [record for record in self.prompts if not record.linked]

    def set_awaiting_approval(self, awaiting: bool) -> None:
        if awaiting == self.awaiting_approval:
            return
        now = self._clock()
        if awaiting:
            self.approval_wait_started_at = now
        elif self.approval_wait_started_at is not None:
            self.approval_wait_s += max(0.0, now - self.approval_wait_started_at)
            self.approval_wait_started_at = None
        self.awaiting_approval = awaiting

    def approval_wait(self) -> float:
        """Approval wait accumulated since the last finalize, including a wait still in progress."""
        waited = self.approval_wait_s
        if self.awaiting_approval and self.approval_wait_started_at is not None:
            waited += max(0.0, self._clock() - self.approval_wait_started_at)
        return waited

    def record_completion(
        self,
        *,
        duration_s: float,
        finished_at: float,
        usage: TokenUsage | None = None,
        output_text: str | None = None,
    ) -> None:
        self.last_duration_s = duration_s
        self.last_finished_at = finished_at
        self.last_usage = usage
        if output_text:
            self.last_output_text = output_text
        self.approval_wait_s = 0.0
        self.approval_wait_started_at = None
        self.awaiting_approval = False
        self.response_pending = False

    def take_prompts(self, records: Iterable[PromptRecord] | None = None) -> list[PromptRecord]:
        """Remove and return ``records`` (every pending prompt when omitted)."""
        if records is None:
            taken = list(self.prompts)
            self.prompts.clear()
            return taken
        selected = {id(record) for record in records}
        taken = [record for record in self.prompts if id(record) in selected]
        self.prompts = [record for record in self.prompts if id(record) not in selected]
        return taken

    def snapshot(self) -> dict[str, Any]:
        return {
            "provider": self.provider_display_name,
            "pending_prompts": [record.text for record in self.prompts],
            "awaiting_approval": self.awaiting_approval,
            "approval_wait_s": round(self.approval_wait(), 3),
            "response_pending": self.response_pending,
            "last_duration_s": self.last_duration_s,
            "last_usage": self.last_usage.as_dict() if self.last_usage else None,
            "last_finished_at": self.last_finished_at,
        }


class PromptLinker:
    """Pairs log-derived turns with typed prompts.

    The pairing takes the first prompt not yet linked to a turn. Lines typed in
    quick succession can therefore be paired with the wrong turn; subclasses
    may implement a stricter strategy.
    """

    def link(self, state: SessionState, turn_id: str, prompt_text: str = "") -> PromptRecord | None:
        for record in state.prompts:
            if record.linked:
                continue
            record.turn_id = turn_id
            return record
        return None


class SessionRegistry(Generic[SessionT]):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, SessionT] = {}

    def register(self, session_key: str, session: SessionT) -> None:
        with self._lock:
            if session_key in self._sessions:
                raise KeyError(f"Session {session_key} is already registered.")
            self._sessions[session_key] = session

    def get(self, session_key: str) -> SessionT | None:
        with self._lock:
            return self._sessions.get(session_key)

    def remove(self, session_key: str) -> SessionT | None:
        with self._lock:
            return self._sessions.pop(session_key, None)

    def items(self) -> list[tuple[str, SessionT]]:
        with self._lock:
            return list(self._sessions.items())

    def values(self) -> list[SessionT]:
        with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class CommitBatchRegistry:
    """Prompt texts awaiting a commit, keyed by ``(user_id, project_id)``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._batches: dict[tuple[str, str], list[str]] = {}

    def merge(self, key: tuple[str, str], prompts: Iterable[str]) -> list[str]:
        """Append ``prompts`` to the batch for ``key`` and return the merged batch."""
        with self._lock:
            batch = self._batches.setdefault(key, [])
            batch.extend(text for text in prompts if text)
            if not batch:
                self._batches.pop(key, None)
            return list(batch)

    def get(self, key: tuple[str, str]) -> list[str]:
        with self._lock:
            return list(self._batches.get(key, []))

    def clear(self, key: tuple[str, str], committed: int | None = None) -> None:
        """Drop the first ``committed`` prompts of a batch, or all of it."""
        with self._lock:
            batch = self._batches.get(key)
            if batch is None:
                return
            if committed is None or committed >= len(batch):
                self._batches.pop(key, None)
                return
            del batch[:committed]

    def size(self, key: tuple[str, str]) -> int:
        with self._lock:
            return len(self._batches.get(key, []))
