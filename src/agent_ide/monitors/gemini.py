from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_ide.monitors.base import (
    REASON_END_OF_TURN,
    REASON_NEXT_PROMPT,
    LogMonitor,
    Turn,
    list_dir,
    newest_file,
)
from agent_ide.monitors.entries import as_int, parse_timestamp
from agent_ide.session_state import TokenUsage

LOGGER = logging.getLogger("agent_ide.monitors.gemini")
LOGGER.addHandler(logging.NullHandler())


@dataclass
class _MessageState:
    has_tokens: bool = False
    has_model: bool = False
    finalized: bool = False
    saw_tokens_without_model: bool = False


def gemini_project_hash(workspace_dir: str) -> str:
    return hashlib.sha256(workspace_dir.encode("utf-8")).hexdigest()


def _message_text(message: dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        texts = [
            str(part.get("text")).strip()
            for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str) and part.get("text").strip()
        ]
        return "\n".join(texts)
    return ""


def _usage_from_tokens(tokens: dict[str, Any]) -> TokenUsage:
    input_tokens = as_int(tokens.get("input", tokens.get("prompt", tokens.get("total_input"))))
    output_tokens = as_int(tokens.get("output", tokens.get("completion", tokens.get("total_output"))))
    reasoning_tokens = as_int(tokens.get("thoughts", tokens.get("reasoning")))
    total_tokens = as_int(tokens.get("total")) or input_tokens + output_tokens
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        reasoning_tokens=reasoning_tokens,
        total_tokens=total_tokens,
    )


class GeminiLogMonitor(LogMonitor):
    """Follows ``~/.gemini/tmp/<hash>/chats/session-*.json``.

    Gemini rewrites a single JSON document in place, so the whole document is
    re-read whenever its size or modification time changes and only messages
    past the last processed index are handled. The newest message is looked at
    again on every change because Gemini keeps updating it while it streams.
    """

    provider_name = "gemini"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.tmp_root = self.home_dir / ".gemini" / "tmp"
        self.active_turn: Turn | None = None
        self.last_processed_index = -1
        self._signature: tuple[int, int] | None = None
        self._message_states: dict[str, _MessageState] = {}

    def hash_dirs(self) -> list[Path]:
        preferred = [self.tmp_root / gemini_project_hash(path) for path in self.workspace_dirs]
        preferred = [path for path in preferred if path.is_dir()]

        def mtime(path: Path) -> float:
            try:
                return path.stat().st_mtime
            except OSError:
                return 0.0

        others = sorted(
            (path for path in list_dir(self.tmp_root, dirs=True) if path not in preferred),
            key=mtime,
            reverse=True,
        )
        return preferred + others

    def _chat_files(self, hash_dir: Path) -> list[Path]:
        return [
            path
            for path in list_dir(hash_dir / "chats")
            if path.name.startswith("session-") and path.suffix == ".json" and path not in self.skipped_files
        ]

    def candidate_files(self) -> list[Path]:
        files: list[Path] = []
        for hash_dir in self.hash_dirs():
            files.extend(self._chat_files(hash_dir))
        return files

    def discover(self) -> Path | None:
        min_mtime = self.min_file_mtime()
        for hash_dir in self.hash_dirs():
            latest = newest_file(self._chat_files(hash_dir), min_mtime=min_mtime)
            if latest is not None:
                return latest
        return None

    def open_file(self, path: Path) -> None:
        super().open_file(path)
        self.last_processed_index = -1
        self._signature = None
        self._message_states.clear()

    def skip_current_file(self) -> None:
        super().skip_current_file()
        self.last_processed_index = -1
        self._signature = None
        self._message_states.clear()

    def open_turns(self) -> list[Turn]:
        return [self.active_turn] if self.active_turn is not None and self.active_turn.open else []

    def discard_turn(self, turn: Turn) -> None:
        if self.active_turn is turn:
            self.active_turn = None
            self._message_states.clear()

    def read_entries(self) -> list[dict[str, Any]]:
        path = self.current_path
        if path is None:
            return []
        try:
            stat = path.stat()
        except OSError:
            return []
        signature = (stat.st_size, stat.st_mtime_ns)
        if signature == self._signature:
            return []
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeError, json.JSONDecodeError):
            # Mid-write; the next poll will see a different signature or a complete file.
            LOGGER.debug("Gemini session document %s not readable yet.", path)
            return []
        self._signature = signature
        if not isinstance(document, dict):
            return []
        if not self.accepts_cwd(document.get("cwd")):
            self.skip_current_file()
            return []

        messages = document.get("messages")
        if not isinstance(messages, list) or not messages:
            return []
        start = self.last_processed_index + 1
        if start > len(messages) - 1:
            start = len(messages) - 1
        entries = [
            {"index": index, "message": messages[index]}
            for index in range(max(start, 0), len(messages))
            if isinstance(messages[index], dict)
        ]
        self.last_processed_index = len(messages) - 1
        return entries

    def process_entry(self, entry: dict[str, Any]) -> None:
        message = entry.get("message")
        if not isinstance(message, dict):
            return
        index = as_int(entry.get("index"))
        message_type = message.get("type")
        timestamp = parse_timestamp(message.get("timestamp"), default=self.clock())
        if message_type == "user":
            self._start_turn(message, index, timestamp)
        elif message_type == "gemini":
            self._update_response(message, index, timestamp)

    def _start_turn(self, message: dict[str, Any], index: int, timestamp: float) -> None:
        text = _message_text(message)
        if self.active_turn is not None and self.active_turn.turn_id == self._message_key(message, index):
            return
        if self.is_duplicate_prompt(text, timestamp):
            return
        if self.active_turn is not None:
            self.finalize_turn(self.active_turn, REASON_NEXT_PROMPT)
        self._message_states.clear()
        self.active_turn = self.new_turn(timestamp, text, turn_id=self._message_key(message, index))

    @staticmethod
    def _message_key(message: dict[str, Any], index: int) -> str:
        message_id = message.get("id")
        if isinstance(message_id, str) and message_id:
            return f"id:{message_id}"
        return f"index:{index}"

    def _update_response(self, message: dict[str, Any], index: int, timestamp: float) -> None:
        turn = self.active_turn
        if turn is None or not turn.open:
            return
        turn.last_event_at = max(turn.last_event_at, timestamp)
        tokens = message.get("tokens") if isinstance(message.get("tokens"), dict) else None
        if tokens is not None:
            turn.usage = _usage_from_tokens(tokens)

        key = self._message_key(message, index)
        previous = self._message_states.get(key) or _MessageState()
        has_tokens = tokens is not None
        has_model = isinstance(message.get("model"), str) and bool(message.get("model"))
        tool_calls = message.get("toolCalls")
        has_tool_calls = isinstance(tool_calls, list) and len(tool_calls) > 0
        final_payload = has_tokens and has_model and not has_tool_calls
        saw_tokens_without_model = previous.saw_tokens_without_model or (has_tokens and not has_model)
        state = _MessageState(
            has_tokens=has_tokens,
            has_model=has_model,
            finalized=previous.finalized,
            saw_tokens_without_model=saw_tokens_without_model,
        )
        self._message_states[key] = state

        if has_tool_calls:
            turn.mark_in_progress()
            return
        text = _message_text(message)
        if text:
            turn.mark_text_ready(text, timestamp)

        completed_by_update = final_payload and not previous.has_model and (previous.has_tokens or saw_tokens_without_model)
        completed_on_first_sight = final_payload and not previous.has_tokens and not previous.has_model
        if not previous.finalized and (completed_by_update or completed_on_first_sight):
            state.finalized = True
            if turn.last_assistant_at is None:
                turn.last_assistant_at = timestamp
            self.finalize_turn(turn, REASON_END_OF_TURN)
            return
        if text:
            self.arm_debounce(turn)
