from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Iterable

from agent_ide.session_state import TokenUsage

LOGGER = logging.getLogger("agent_ide.prompt_log")
LOGGER.addHandler(logging.NullHandler())

PROMPT_LOG_FILE = "prompt_logs.jsonl"
COMMIT_LINKS_FILE = "commit_links.jsonl"


def iso_from_timestamp(timestamp: float) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(timestamp))


def _iter_jsonl(path: Path) -> Iterable[dict[str, Any]]:
    try:
        text = path.read_text(encoding="utf-8", errors="ignore")
    except FileNotFoundError:
        return
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            row = json.loads(line)
        except json.JSONDecodeError:
            LOGGER.warning("Skipping corrupt row in %s.", path)
            continue
        if isinstance(row, dict):
            yield row


class PromptLogStore:
    """Append-only prompt history and commit linkage under the data directory."""

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)
        self.prompt_log_file = self.data_dir / PROMPT_LOG_FILE
        self.commit_links_file = self.data_dir / COMMIT_LINKS_FILE
        self._lock = threading.Lock()

    def _append(self, path: Path, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fp:
                for row in rows:
                    fp.write(json.dumps(row, ensure_ascii=False, sort_keys=True) + "\n")

    def append_prompts(
        self,
        *,
        project_id: str,
        user_id: str,
        provider: str,
        prompts: list[str],
        duration_s: float | None,
        timestamp: float,
        usage: TokenUsage | None = None,
    ) -> list[dict[str, Any]]:
        rows = [
            {
                "project_id": project_id,
                "user_id": user_id,
                "provider": provider,
                "prompt": text,
                "duration_s": None if duration_s is None else round(duration_s, 3),
                "timestamp": iso_from_timestamp(timestamp),
                "usage": usage.as_dict() if usage is not None else None,
            }
            for text in prompts
        ]
        self._append(self.prompt_log_file, rows)
        return rows

    def link_commit(
        self,
        *,
        project_id: str,
        user_id: str,
        commit_hash: str,
        prompts: list[str],
        timestamp: float,
    ) -> dict[str, Any]:
        row = {
            "project_id": project_id,
            "user_id": user_id,
            "commit": commit_hash,
            "prompts": list(prompts),
            "timestamp": iso_from_timestamp(timestamp),
        }
        self._append(self.commit_links_file, [row])
        return row

    def prompts_for(self, project_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [row for row in _iter_jsonl(self.prompt_log_file) if row.get("project_id") == project_id]

    def commits_for(self, project_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [row for row in _iter_jsonl(self.commit_links_file) if row.get("project_id") == project_id]
