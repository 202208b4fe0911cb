from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Iterable

from agent_ide.errors import GitError, GitLockError, NothingToCommitError
from agent_ide.git_repo import GitRepository
from agent_ide.prompt_log import PromptLogStore, iso_from_timestamp
from agent_ide.session_state import CommitBatchRegistry, PromptRecord, TokenUsage

LOGGER = logging.getLogger("agent_ide.commits")
LOGGER.addHandler(logging.NullHandler())

STATUS_SUCCESS = "success"
STATUS_INFO = "info"
STATUS_WARNING = "warning"
STATUS_ERROR = "error"

EVENT_COMMIT_NOTIFICATION = "commit_notification"
EVENT_SAVE_COMPLETE = "save_complete"

Emit = Callable[[str, dict[str, Any]], None]


def format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "unknown"
    seconds = max(0.0, float(seconds))
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, remainder = divmod(int(round(seconds)), 60)
    if minutes < 60:
        return f"{minutes}m {remainder:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m"


def build_commit_message(prompts: list[str], timestamp: float) -> str:
    lines = [iso_from_timestamp(timestamp), ""]
    for text in prompts:
        lines.append(" ".join(text.split()))
    return "\n".join(lines)


def collect_prompt_texts(log_prompt_text: str, records: Iterable[PromptRecord]) -> list[str]:
    """Prompt texts for one turn, oldest first, without repeats.

    The text the provider wrote to its own log replaces the typed text of the
    linked record, since typed input can carry editing residue.
    """
    texts: list[str] = []
    log_text = (log_prompt_text or "").strip()
    used_log_text = False
    for record in records:
        text = record.text.strip()
        if log_text and record.linked and not used_log_text:
            text = log_text
            used_log_text = True
        if text and text not in texts:
            texts.append(text)
    if log_text and not used_log_text and log_text not in texts:
        texts.append(log_text)
    return texts


class CommitOrchestrator:
    """Turns finalized turns into prompt-log rows and git commits.

    Prompts of turns that produced no file changes are carried in the
    ``CommitBatchRegistry`` and land in the next commit for the project.
    """

    def __init__(
        self,
        *,
        batches: CommitBatchRegistry,
        prompt_log: PromptLogStore,
        repository_factory: Callable[[Path], GitRepository],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.batches = batches
        self.prompt_log = prompt_log
        self._repository_factory = repository_factory
        self._clock = clock
        self._locks_guard = threading.Lock()
        self._project_locks: dict[tuple[str, str], threading.Lock] = {}

    def _project_lock(self, key: tuple[str, str]) -> threading.Lock:
        with self._locks_guard:
            lock = self._project_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._project_locks[key] = lock
            return lock

    def finalize(
        self,
        *,
        user_id: str,
        project_id: str,
        provider: str,
        workspace_dir: Path,
        records: Iterable[PromptRecord],
        duration_s: float | None,
        emit: Emit,
        log_prompt_text: str = "",
        usage: TokenUsage | None = None,
    ) -> dict[str, Any] | None:
        """Log the turn's prompts and commit the workspace.

        Returns the ``commit_notification`` payload that was emitted, or None
        when there was nothing queued for the project.
        """
        now = self._clock()
        key = (user_id, project_id)
        texts = collect_prompt_texts(log_prompt_text, records)

        def notify(status: str, count: int, message: str, **extra: Any) -> dict[str, Any]:
            payload = {
                "status": status,
                "provider": provider,
                "count": count,
                "duration": format_duration(duration_s),
                "message": message,
            }
            payload.update(extra)
            emit(EVENT_COMMIT_NOTIFICATION, payload)
            return payload

        if texts:
            try:
                self.prompt_log.append_prompts(
                    project_id=project_id,
                    user_id=user_id,
                    provider=provider,
                    prompts=texts,
                    duration_s=duration_s,
                    timestamp=now,
                    usage=usage,
                )
            except OSError as exc:
                LOGGER.warning("Unable to record prompts for project %s: %s", project_id, exc)
                notify(STATUS_WARNING, len(texts), f"Prompt history could not be saved: {exc}")

        with self._project_lock(key):
            batch = self.batches.merge(key, texts)
            if not batch:
                return None
            repository = self._repository_factory(Path(workspace_dir))
            try:
                if not repository.has_changes():
                    LOGGER.info("No changes in project %s; keeping %d prompt(s) queued.", project_id, len(batch))
                    return notify(
                        STATUS_INFO,
                        len(batch),
                        f"{provider} finished with no file changes. Prompts will be included in the next save.",
                    )
                commit_hash = repository.commit_all(build_commit_message(batch, now))
            except NothingToCommitError:
                LOGGER.info("git reported nothing to commit for project %s.", project_id)
                return notify(STATUS_INFO, len(batch), "Nothing to commit. Prompts will be included in the next save.")
            except GitLockError as exc:
                LOGGER.warning("Commit for project %s blocked by index.lock: %s", project_id, exc)
                return notify(STATUS_ERROR, len(batch), f"{exc} Your prompts are kept for the next save.")
            except GitError as exc:
                LOGGER.warning("Commit for project %s failed: %s", project_id, exc)
                return notify(STATUS_ERROR, len(batch), f"Saving failed: {exc}")

            self.batches.clear(key, len(batch))
            LOGGER.info("Committed %s for project %s with %d prompt(s).", commit_hash[:12], project_id, len(batch))
            payload = notify(
                STATUS_SUCCESS,
                len(batch),
                f"Saved {len(batch)} prompt{'s' if len(batch) != 1 else ''} from {provider} "
                f"({format_duration(duration_s)}).",
                commit=commit_hash,
            )
            emit(EVENT_SAVE_COMPLETE, {"timestamp": iso_from_timestamp(now), "commit": commit_hash})
            try:
                self.prompt_log.link_commit(
                    project_id=project_id,
                    user_id=user_id,
                    commit_hash=commit_hash,
                    prompts=batch,
                    timestamp=now,
                )
            except OSError as exc:
                LOGGER.warning("Unable to record commit link for %s: %s", commit_hash, exc)
                notify(STATUS_WARNING, len(batch), f"Commit history could not be saved: {exc}")
            return payload
