from __future__ import annotations

import logging
from collections import deque
from pathlib import Path
from typing import Any

from agent_ide.monitors.base import (
    REASON_ABORTED,
    REASON_END_OF_TURN,
    REASON_NEXT_PROMPT,
    LogMonitor,
    Turn,
    list_dir,
    newest_file,
)
from agent_ide.monitors.entries import (
    END_OF_TURN_STOP_REASONS,
    as_int,
    assistant_text,
    parse_timestamp,
    session_id_from_path,
    stop_reason,
)
from agent_ide.session_state import TokenUsage

LOGGER = logging.getLogger("agent_ide.monitors.codex")
LOGGER.addHandler(logging.NullHandler())

INTERMEDIATE_ITEM_TYPES = frozenset(
    {
        "function_call",
        "function_call_output",
        "custom_tool_call",
        "custom_tool_call_output",
        "local_shell_call",
        "web_search_call",
        "reasoning",
    }
)


def _sorted_subdirs(path: Path) -> list[Path]:
    return sorted(list_dir(path, dirs=True), key=lambda item: item.name, reverse=True)


class CodexLogMonitor(LogMonitor):
    """Follows ``~/.codex/sessions/YYYY/MM/DD/rollout-*.jsonl``.

    Turns form a queue in prompt order; only the head receives assistant
    activity.
    """

    provider_name = "codex"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.sessions_root = self.home_dir / ".codex" / "sessions"
        self.session_id: str | None = None
        self.queue: deque[Turn] = deque()

    def day_dirs(self) -> list[Path]:
        days: list[Path] = []
        for year in _sorted_subdirs(self.sessions_root):
            for month in _sorted_subdirs(year):
                days.extend(_sorted_subdirs(month))
        return days

    def _rollouts(self, day_dir: Path) -> list[Path]:
        return [
            path
            for path in list_dir(day_dir)
            if path.name.startswith("rollout-") and path.suffix == ".jsonl" and path not in self.skipped_files
        ]

    def candidate_files(self) -> list[Path]:
        files: list[Path] = []
        for day_dir in self.day_dirs():
            files.extend(self._rollouts(day_dir))
        return files

    def discover(self) -> Path | None:
        min_mtime = self.min_file_mtime()
        for day_dir in self.day_dirs():
            latest = newest_file(self._rollouts(day_dir), min_mtime=min_mtime)
            if latest is not None:
                return latest
        return None

    def open_file(self, path: Path) -> None:
        super().open_file(path)
        self.session_id = session_id_from_path(path)

    def open_turns(self) -> list[Turn]:
        return [turn for turn in self.queue if turn.open]

    def discard_turn(self, turn: Turn) -> None:
        try:
            self.queue.remove(turn)
        except ValueError:
            pass

    @property
    def head(self) -> Turn | None:
        return self.queue[0] if self.queue else None

    def process_entry(self, entry: dict[str, Any]) -> None:
        entry_type = entry.get("type")
        payload = entry.get("payload") if isinstance(entry.get("payload"), dict) else {}
        timestamp = parse_timestamp(entry.get("timestamp"), default=self.clock())

        if entry_type == "session_meta":
            if not self.accepts_cwd(payload.get("cwd")):
                self.skip_current_file()
                return
            self.session_id = payload.get("id") or self.session_id
            return

        if entry_type == "event_msg":
            self._process_event(payload, timestamp)
            return

        if entry_type != "response_item":
            return
        item_type = payload.get("type")
        role = payload.get("role")
        if item_type == "message" and role == "assistant":
            self._process_assistant_message(entry, payload, timestamp)
        elif item_type == "message" and role == "user":
            parts = [
                part.get("text")
                for part in payload.get("content") or []
                if isinstance(part, dict) and part.get("type") == "input_text" and isinstance(part.get("text"), str)
            ]
            if parts:
                self.push_prompt("\n".join(parts), timestamp)
        elif item_type in INTERMEDIATE_ITEM_TYPES:
            head = self.head
            if head is not None:
                head.last_event_at = timestamp
                head.mark_in_progress()

    def _process_event(self, payload: dict[str, Any], timestamp: float) -> None:
        event_type = payload.get("type")
        head = self.head
        if event_type == "user_message":
            message = payload.get("message")
            if isinstance(message, str):
                self.push_prompt(message, timestamp)
        elif event_type == "token_count":
            if head is not None:
                self._update_usage(head, payload.get("info"))
                head.last_event_at = timestamp
        elif event_type == "task_complete":
            if head is None:
                return
            head.last_event_at = timestamp
            last_message = payload.get("last_agent_message")
            if isinstance(last_message, str) and last_message.strip() and not head.latest_text:
                head.mark_text_ready(last_message.strip(), timestamp)
            self.finalize_turn(head, REASON_END_OF_TURN)
        elif event_type == "turn_aborted":
            if head is not None:
                head.last_event_at = timestamp
                self.finalize_turn(head, REASON_ABORTED)

    def push_prompt(self, text: str, timestamp: float) -> Turn | None:
        trimmed = text.strip()
        if self.is_duplicate_prompt(trimmed, timestamp):
            return None
        self.finalize_open_turns(REASON_NEXT_PROMPT)
        turn = self.new_turn(timestamp, trimmed)
        self.queue.append(turn)
        return turn

    def _process_assistant_message(self, entry: dict[str, Any], payload: dict[str, Any], timestamp: float) -> None:
        head = self.head
        if head is None:
            return
        head.last_event_at = timestamp
        text = assistant_text({"message": payload})
        if not text:
            return
        head.mark_text_ready(text, timestamp)
        if (stop_reason(entry) or stop_reason({"message": payload})) in END_OF_TURN_STOP_REASONS:
            self.finalize_turn(head, REASON_END_OF_TURN)
            return
        self.arm_debounce(head)

    @staticmethod
    def _update_usage(turn: Turn, info: Any) -> None:
        if not isinstance(info, dict):
            return
        source = info.get("last_token_usage") or info.get("total_token_usage")
        if not isinstance(source, dict):
            return
        input_tokens = as_int(source.get("input_tokens", source.get("inputTokens")))
        output_tokens = as_int(source.get("output_tokens", source.get("outputTokens")))
        reasoning_tokens = as_int(source.get("reasoning_output_tokens", source.get("reasoningOutputTokens")))
        total_tokens = as_int(source.get("total_tokens", source.get("totalTokens")))
        turn.usage = TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            reasoning_tokens=reasoning_tokens,
            total_tokens=total_tokens or input_tokens + output_tokens,
        )
