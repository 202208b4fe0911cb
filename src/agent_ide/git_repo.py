from __future__ import annotations

import logging
import subprocess
import time
from pathlib import Path
from typing import Callable

from agent_ide.config import DEFAULT_GIT_USER_EMAIL, DEFAULT_GIT_USER_NAME, DEFAULT_STALE_LOCK_AGE_S
from agent_ide.errors import GitError, GitLockError, NothingToCommitError

LOGGER = logging.getLogger("agent_ide.git_repo")
LOGGER.addHandler(logging.NullHandler())

DEFAULT_GITIGNORE = """# Agent IDE generated files
.DS_Store
node_modules/
*.log
.env
.bash_history
.config/
.backup/
"""
INITIAL_COMMIT_MESSAGE = "Initial commit"


class GitRepository:
    """Runs git in one project workspace.

    Commits go through ``commit_all``, which recovers from an ``index.lock``
    left behind by a crashed git process but refuses to remove a lock that is
    younger than ``stale_lock_age_s``.
    """

    def __init__(
        self,
        repo_dir: Path,
        *,
        user_name: str = DEFAULT_GIT_USER_NAME,
        user_email: str = DEFAULT_GIT_USER_EMAIL,
        stale_lock_age_s: float = DEFAULT_STALE_LOCK_AGE_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.repo_dir = Path(repo_dir)
        self.user_name = user_name
        self.user_email = user_email
        self.stale_lock_age_s = stale_lock_age_s
        self._clock = clock

    @property
    def git_dir(self) -> Path:
        return self.repo_dir / ".git"

    @property
    def index_lock_path(self) -> Path:
        return self.git_dir / "index.lock"

    def _run(self, args: list[str], *, check: bool = True) -> subprocess.CompletedProcess:
        cmd = [
            "git",
            "-C",
            str(self.repo_dir),
            "-c",
            f"user.name={self.user_name}",
            "-c",
            f"user.email={self.user_email}",
            *args,
        ]
        try:
            result = subprocess.run(cmd, check=False, text=True, capture_output=True)
        except FileNotFoundError as exc:
            raise GitError("git is not installed on the server.") from exc
        if check and result.returncode != 0:
            output = ((result.stdout or "") + (result.stderr or "")).strip()
            raise GitError(f"git {args[0]} failed: {output}", output=output)
        return result

    def is_initialized(self) -> bool:
        return self.git_dir.exists()

    def ensure_initialized(self) -> bool:
        """Create the repository with an initial commit; returns False if it already existed."""
        if self.is_initialized():
            return False
        self.repo_dir.mkdir(parents=True, exist_ok=True)
        gitignore = self.repo_dir / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text(DEFAULT_GITIGNORE, encoding="utf-8")
        self._run(["init", "--initial-branch=main"])
        self._run(["add", "-A"])
        self._run(["commit", "--allow-empty", "-m", INITIAL_COMMIT_MESSAGE])
        LOGGER.info("Initialized git repository at %s", self.repo_dir)
        return True

    def status_lines(self) -> list[str]:
        result = self._run(["status", "--porcelain"])
        return [line for line in result.stdout.splitlines() if line.strip()]

    def has_changes(self) -> bool:
        return bool(self.status_lines())

    def clear_stale_lock(self) -> bool:
        """Remove ``index.lock`` when it is stale.

        Returns True when a lock was removed, False when there was none, and
        raises ``GitLockError`` for a lock that may belong to a running git.
        """
        try:
            age = self._clock() - self.index_lock_path.stat().st_mtime
        except FileNotFoundError:
            return False
        if age > self.stale_lock_age_s:
            LOGGER.warning("Removing stale git index.lock in %s (age %.0fs).", self.repo_dir, age)
            try:
                self.index_lock_path.unlink()
            except FileNotFoundError:
                pass
            return True
        raise GitLockError("Git index.lock file exists. Another git process may be running.")

    def _run_with_lock_recovery(self, args: list[str]) -> subprocess.CompletedProcess:
        self.clear_stale_lock()
        result = self._run(args, check=False)
        if result.returncode == 0:
            return result
        output = ((result.stdout or "") + (result.stderr or "")).strip()
        if "index.lock" in output and self.clear_stale_lock():
            LOGGER.info("Retrying git %s after clearing a stale lock.", args[0])
            result = self._run(args, check=False)
            if result.returncode == 0:
                return result
            output = ((result.stdout or "") + (result.stderr or "")).strip()
        if "index.lock" in output:
            raise GitLockError("Git index.lock file exists. Another git process may be running.", output=output)
        if "nothing to commit" in output or "nothing added to commit" in output:
            raise NothingToCommitError("No changes to commit.", output=output)
        raise GitError(f"git {args[0]} failed: {output}", output=output)

    def stage_all(self) -> None:
        self._run_with_lock_recovery(["add", "-A"])

    def commit(self, message: str) -> str:
        self._run_with_lock_recovery(["commit", "-m", message])
        return self.head()

    def commit_all(self, message: str) -> str:
        """Stage every change and commit it; returns the new commit hash."""
        self.stage_all()
        return self.commit(message)

    def head(self) -> str:
        return self._run(["rev-parse", "HEAD"]).stdout.strip()

    def recent_commits(self, limit: int = 20) -> list[dict[str, str]]:
        result = self._run(
            ["log", f"--max-count={max(1, int(limit))}", "--pretty=format:%H%x1f%an%x1f%ae%x1f%aI%x1f%s"],
            check=False,
        )
        if result.returncode != 0:
            return []
        commits: list[dict[str, str]] = []
        for line in result.stdout.splitlines():
            parts = line.split("\x1f")
            if len(parts) != 5:
                continue
            commit_hash, author, email, date, subject = parts
            commits.append({"hash": commit_hash, "author": author, "email": email, "date": date, "subject": subject})
        return commits
