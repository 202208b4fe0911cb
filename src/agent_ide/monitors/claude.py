from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from agent_ide.monitors.base import (
    REASON_END_OF_TURN,
    REASON_NEXT_PROMPT,
    STATUS_TEXT_READY,
    JsonlTail,
    LogMonitor,
    Turn,
    list_dir,
)
from agent_ide.monitors.entries import (
    END_OF_TURN_STOP_REASONS,
    as_int,
    assistant_text,
    claude_project_slugs,
    has_tool_result,
    has_tool_use,
    is_user_prompt_entry,
    parse_timestamp,
    root_user_uuid,
    session_id_from_path,
    stop_reason,
    user_prompt_text,
)
from agent_ide.session_state import TokenUsage

LOGGER = logging.getLogger("agent_ide.monitors.claude")
LOGGER.addHandler(logging.NullHandler())

STOP_HOOK_MARKERS = ("Getting matching hook commands for Stop", "Executing hooks for Stop")
SUBAGENT_STOP_MARKER = "SubagentStop"
IGNORED_ENTRY_TYPES = frozenset({"file-history-snapshot", "summary"})


class ClaudeLogMonitor(LogMonitor):
    """Follows ``~/.config/claude/projects/<slug>/<session>.jsonl``.

    ``history.jsonl`` is tailed from its current end to learn when prompts are
    submitted, and the session's debug log is watched for the Stop hook.
    """

    provider_name = "claude"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.config_dir = self.home_dir / ".config" / "claude"
        self.projects_root = self.config_dir / "projects"
        self.debug_root = self.config_dir / "debug"
        self._history_tail = JsonlTail(self.config_dir / "history.jsonl", from_end=True)
        self._last_history_prompt: str | None = None
        self._debug_tail: JsonlTail | None = None
        self.session_id: str | None = None
        self.entry_index: dict[str, dict[str, Any]] = {}
        self._turn_entries: dict[str, list[str]] = {}
        self.active_turn: Turn | None = None

    def project_dirs(self) -> list[Path]:
        return [self.projects_root / slug for slug in claude_project_slugs(self.workspace_dirs)]

    def candidate_files(self) -> list[Path]:
        files: list[Path] = []
        for project_dir in self.project_dirs():
            files.extend(path for path in list_dir(project_dir) if path.suffix == ".jsonl")
        return files

    def open_file(self, path: Path) -> None:
        super().open_file(path)
        self.entry_index.clear()
        self._turn_entries.clear()
        self.session_id = session_id_from_path(path)
        self._debug_tail = None
        if self.session_id:
            self._debug_tail = JsonlTail(self.debug_root / f"{self.session_id}.txt", from_end=True)

    def open_turns(self) -> list[Turn]:
        return [self.active_turn] if self.active_turn is not None and self.active_turn.open else []

    def discard_turn(self, turn: Turn) -> None:
        if self.active_turn is turn:
            self.active_turn = None
        for uuid_key in self._turn_entries.pop(turn.turn_id, []):
            self.entry_index.pop(uuid_key, None)

    def before_poll(self) -> None:
        for line in self._history_tail.read_lines():
            self._process_history_line(line)

    def after_poll(self) -> None:
        if self._debug_tail is None:
            return
        for line in self._debug_tail.read_lines():
            self.process_debug_line(line)

    def _process_history_line(self, line: str) -> None:
        try:
            entry = json.loads(line)
        except ValueError:
            LOGGER.debug("Skipping undecodable history line.")
            return
        if not isinstance(entry, dict):
            return
        prompt = entry.get("display") or entry.get("prompt")
        if not isinstance(prompt, str) or not prompt or prompt == self._last_history_prompt:
            return
        self._last_history_prompt = prompt
        self.note_prompt(parse_timestamp(entry.get("timestamp"), default=self.clock()))
        LOGGER.debug("Claude history recorded a new prompt.")

    def process_debug_line(self, line: str) -> None:
        if SUBAGENT_STOP_MARKER in line:
            return
        if not any(marker in line for marker in STOP_HOOK_MARKERS):
            return
        turn = self.active_turn
        if turn is None or not turn.open:
            LOGGER.debug("Claude Stop hook seen with no open turn.")
            return
        if turn.status == STATUS_TEXT_READY or turn.latest_text:
            self.finalize_turn(turn, REASON_END_OF_TURN)

    def process_entry(self, entry: dict[str, Any]) -> None:
        uuid_value = entry.get("uuid")
        if isinstance(uuid_value, str) and uuid_value:
            self.entry_index[uuid_value] = entry
        if entry.get("type") in IGNORED_ENTRY_TYPES:
            return

        timestamp = parse_timestamp(entry.get("timestamp"), default=self.clock())
        reference = self.last_prompt_at if self.last_prompt_at is not None else self.started_at
        if timestamp < reference - self.clock_skew_tolerance_s:
            return

        is_user = is_user_prompt_entry(entry)
        tool_result = is_user and has_tool_result(entry)
        if is_user and not tool_result:
            if entry.get("isMeta") or entry.get("isSidechain"):
                return
            self._start_turn(entry, timestamp)
            return

        root_uuid = root_user_uuid(entry, self.entry_index)
        turn = self.active_turn
        if turn is None or root_uuid != turn.turn_id:
            return
        if isinstance(uuid_value, str) and uuid_value:
            self._turn_entries.setdefault(turn.turn_id, []).append(uuid_value)
        turn.last_event_at = timestamp

        if tool_result:
            turn.mark_in_progress()
            return

        message = entry.get("message") if isinstance(entry.get("message"), dict) else {}
        if entry.get("type") == "assistant":
            self._accumulate_usage(turn, entry, message)
        if entry.get("type") == "assistant" and message.get("role") == "assistant":
            turn.last_assistant_at = timestamp
            if has_tool_use(entry):
                turn.mark_in_progress()
                return
            text = assistant_text(entry)
            if not text:
                return
            turn.mark_text_ready(text, timestamp)
            if stop_reason(entry) in END_OF_TURN_STOP_REASONS:
                self.finalize_turn(turn, REASON_END_OF_TURN)
            else:
                self.arm_debounce(turn)
            return
        if has_tool_result(entry):
            turn.mark_in_progress()

    def _start_turn(self, entry: dict[str, Any], timestamp: float) -> None:
        text = user_prompt_text(entry)
        turn_id = entry.get("uuid") or None
        if self.active_turn is not None and self.active_turn.turn_id == turn_id:
            return
        if self.is_duplicate_prompt(text, timestamp):
            return
        if self.active_turn is not None:
            self.finalize_turn(self.active_turn, REASON_NEXT_PROMPT)
        self.active_turn = self.new_turn(timestamp, text, turn_id=turn_id)
        if turn_id:
            self._turn_entries[turn_id] = [turn_id]

    @staticmethod
    def _accumulate_usage(turn: Turn, entry: dict[str, Any], message: dict[str, Any]) -> None:
        usage = entry.get("usage") or message.get("usage")
        if not isinstance(usage, dict):
            return
        if turn.usage is None:
            turn.usage = TokenUsage()
        turn.usage.add(
            input_tokens=as_int(usage.get("input_tokens") or usage.get("inputTokens")),
            output_tokens=as_int(usage.get("output_tokens") or usage.get("outputTokens")),
        )
