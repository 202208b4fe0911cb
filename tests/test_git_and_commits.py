from __future__ import annotations

import json
import shutil
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from agent_ide import commits
from agent_ide.errors import GitLockError, NothingToCommitError
from agent_ide.git_repo import GitRepository
from agent_ide.prompt_log import PromptLogStore
from agent_ide.session_state import CommitBatchRegistry, PromptRecord

HAS_GIT = shutil.which("git") is not None


class FakeClock:
    def __init__(self, now: float = 1_736_935_200.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FormattingTests(unittest.TestCase):
    def test_format_duration(self) -> None:
        self.assertEqual(commits.format_duration(None), "unknown")
        self.assertEqual(commits.format_duration(4.24), "4.2s")
        self.assertEqual(commits.format_duration(125), "2m 05s")
        self.assertEqual(commits.format_duration(3725), "1h 02m")
        self.assertEqual(commits.format_duration(-3), "0.0s")

    def test_commit_message_lists_prompts_under_timestamp(self) -> None:
        message = commits.build_commit_message(["add a footer", "make it\n  sticky"], 1_736_935_200.0)
        self.assertEqual(message, "2025-01-15T10:00:00Z\n\nadd a footer\nmake it sticky")

    def test_log_text_replaces_linked_record_text(self) -> None:
        records = [
            PromptRecord(text="add a fo footer", submitted_at=1.0, turn_id="t1"),
            PromptRecord(text="  ", submitted_at=2.0),
            PromptRecord(text="and a header", submitted_at=3.0),
            PromptRecord(text="and a header", submitted_at=4.0),
        ]
        texts = commits.collect_prompt_texts("add a footer", records)
        self.assertEqual(texts, ["add a footer", "and a header"])

    def test_log_text_appended_when_no_record_is_linked(self) -> None:
        records = [PromptRecord(text="typed", submitted_at=1.0)]
        self.assertEqual(commits.collect_prompt_texts("from log", records), ["typed", "from log"])
        self.assertEqual(commits.collect_prompt_texts("", []), [])


@unittest.skipUnless(HAS_GIT, "git is not installed")
class GitRepositoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.repo_dir = Path(self.tmp.name) / "demo"
        self.clock = FakeClock(0.0)
        self.repo = GitRepository(self.repo_dir, stale_lock_age_s=120.0, clock=self.clock)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_ensure_initialized_creates_initial_commit_once(self) -> None:
        self.assertTrue(self.repo.ensure_initialized())
        self.assertFalse(self.repo.ensure_initialized())
        self.assertIn(".config/", (self.repo_dir / ".gitignore").read_text(encoding="utf-8"))
        history = self.repo.recent_commits()
        self.assertEqual([item["subject"] for item in history], ["Initial commit"])
        self.assertEqual(history[0]["author"], "WebIDE User")
        self.assertFalse(self.repo.has_changes())

    def test_commit_all_returns_head(self) -> None:
        self.repo.ensure_initialized()
        (self.repo_dir / "index.html").write_text("<footer></footer>\n", encoding="utf-8")
        self.assertTrue(self.repo.has_changes())
        commit_hash = self.repo.commit_all("2025-01-15T10:00:00Z\n\nadd a footer")
        self.assertEqual(commit_hash, self.repo.head())
        self.assertEqual(self.repo.recent_commits(limit=1)[0]["subject"], "2025-01-15T10:00:00Z")

    def test_nothing_to_commit_is_reported(self) -> None:
        self.repo.ensure_initialized()
        with self.assertRaises(NothingToCommitError):
            self.repo.commit_all("empty")

    def test_stale_lock_is_removed_before_commit(self) -> None:
        self.repo.ensure_initialized()
        lock = self.repo.index_lock_path
        lock.write_text("", encoding="utf-8")
        self.clock.now = lock.stat().st_mtime + 300
        (self.repo_dir / "style.css").write_text("footer {}\n", encoding="utf-8")
        self.repo.commit_all("style")
        self.assertFalse(lock.exists())

    def test_fresh_lock_is_left_alone(self) -> None:
        self.repo.ensure_initialized()
        lock = self.repo.index_lock_path
        lock.write_text("", encoding="utf-8")
        self.clock.now = lock.stat().st_mtime + 5
        (self.repo_dir / "style.css").write_text("footer {}\n", encoding="utf-8")
        with self.assertRaises(GitLockError):
            self.repo.commit_all("style")
        self.assertTrue(lock.exists())

    def test_clear_stale_lock_without_lock(self) -> None:
        self.repo.ensure_initialized()
        self.assertFalse(self.repo.clear_stale_lock())


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self.tmp.name) / "data"
        self.workspace = Path(self.tmp.name) / "ws" / "alice" / "demo"
        self.clock = FakeClock()
        self.events: list[tuple[str, dict]] = []
        self.batches = CommitBatchRegistry()
        self.prompt_log = PromptLogStore(self.data_dir)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def emit(self, event_type: str, payload: dict) -> None:
        self.events.append((event_type, payload))

    def notifications(self) -> list[dict]:
        return [payload for event_type, payload in self.events if event_type == commits.EVENT_COMMIT_NOTIFICATION]

    def build(self, repository_factory) -> commits.CommitOrchestrator:
        return commits.CommitOrchestrator(
            batches=self.batches,
            prompt_log=self.prompt_log,
            repository_factory=repository_factory,
            clock=self.clock,
        )

    def finalize(self, orchestrator: commits.CommitOrchestrator, text: str, duration: float | None = 4.2):
        record = PromptRecord(text=text, submitted_at=self.clock(), turn_id="turn")
        return orchestrator.finalize(
            user_id="alice",
            project_id="demo",
            provider="Claude Code",
            workspace_dir=self.workspace,
            records=[record],
            duration_s=duration,
            emit=self.emit,
        )


@unittest.skipUnless(HAS_GIT, "git is not installed")
class CommitOrchestratorGitTests(OrchestratorTestCase):
    def setUp(self) -> None:
        super().setUp()
        GitRepository(self.workspace).ensure_initialized()
        self.orchestrator = self.build(GitRepository)

    def test_turn_with_changes_commits_one_prompt(self) -> None:
        (self.workspace / "index.html").write_text("<footer>hi</footer>\n", encoding="utf-8")
        payload = self.finalize(self.orchestrator, "add a footer")

        self.assertEqual(payload["status"], commits.STATUS_SUCCESS)
        self.assertEqual(payload["count"], 1)
        self.assertEqual(payload["duration"], "4.2s")
        self.assertEqual(payload["message"], "Saved 1 prompt from Claude Code (4.2s).")
        self.assertEqual(len(self.notifications()), 1)
        save_events = [data for event_type, data in self.events if event_type == commits.EVENT_SAVE_COMPLETE]
        self.assertEqual(save_events, [{"timestamp": "2025-01-15T10:00:00Z", "commit": payload["commit"]}])

        message = subprocess.run(
            ["git", "-C", str(self.workspace), "log", "-1", "--pretty=%B"],
            check=True,
            capture_output=True,
            text=True,
        ).stdout.strip()
        self.assertEqual(message, "2025-01-15T10:00:00Z\n\nadd a footer")
        self.assertEqual(self.batches.size(("alice", "demo")), 0)

        rows = self.prompt_log.prompts_for("demo")
        self.assertEqual([row["prompt"] for row in rows], ["add a footer"])
        self.assertEqual(rows[0]["duration_s"], 4.2)
        links = self.prompt_log.commits_for("demo")
        self.assertEqual(links[0]["commit"], payload["commit"])
        self.assertEqual(links[0]["prompts"], ["add a footer"])

    def test_prompts_without_changes_join_the_next_commit(self) -> None:
        first = self.finalize(self.orchestrator, "what does this project do?")
        self.assertEqual(first["status"], commits.STATUS_INFO)
        self.assertIn("no file changes", first["message"])
        self.assertEqual(self.batches.get(("alice", "demo")), ["what does this project do?"])

        self.clock.advance(60)
        (self.workspace / "README.md").write_text("# Demo\n", encoding="utf-8")
        second = self.finalize(self.orchestrator, "write a README", duration=125)
        self.assertEqual(second["status"], commits.STATUS_SUCCESS)
        self.assertEqual(second["count"], 2)
        self.assertEqual(second["message"], "Saved 2 prompts from Claude Code (2m 05s).")
        self.assertEqual(
            json.loads(self.prompt_log.commit_links_file.read_text(encoding="utf-8").splitlines()[0])["prompts"],
            ["what does this project do?", "write a README"],
        )

    def test_batches_are_independent_per_user(self) -> None:
        self.finalize(self.orchestrator, "explain the layout")
        other = PromptRecord(text="bob's question", submitted_at=self.clock(), turn_id="t")
        self.orchestrator.finalize(
            user_id="bob",
            project_id="demo",
            provider="Codex",
            workspace_dir=self.workspace,
            records=[other],
            duration_s=1.0,
            emit=self.emit,
        )
        self.assertEqual(self.batches.get(("alice", "demo")), ["explain the layout"])
        self.assertEqual(self.batches.get(("bob", "demo")), ["bob's question"])


class CommitOrchestratorFailureTests(OrchestratorTestCase):
    def test_lock_error_keeps_prompts_and_reports_error(self) -> None:
        repository = mock.Mock()
        repository.has_changes.return_value = True
        repository.commit_all.side_effect = GitLockError(
            "Git index.lock file exists. Another git process may be running."
        )
        orchestrator = self.build(lambda path: repository)

        payload = self.finalize(orchestrator, "add a footer")

        self.assertEqual(payload["status"], commits.STATUS_ERROR)
        self.assertIn("index.lock", payload["message"])
        self.assertIn("kept for the next save", payload["message"])
        self.assertEqual(self.batches.get(("alice", "demo")), ["add a footer"])
        self.assertEqual(len(self.notifications()), 1)

    def test_nothing_to_commit_from_git_is_informational(self) -> None:
        repository = mock.Mock()
        repository.has_changes.return_value = True
        repository.commit_all.side_effect = NothingToCommitError("No changes to commit.")
        orchestrator = self.build(lambda path: repository)
        payload = self.finalize(orchestrator, "add a footer")
        self.assertEqual(payload["status"], commits.STATUS_INFO)
        self.assertEqual(self.batches.size(("alice", "demo")), 1)

    def test_empty_turn_emits_nothing(self) -> None:
        repository = mock.Mock()
        orchestrator = self.build(lambda path: repository)
        result = orchestrator.finalize(
            user_id="alice",
            project_id="demo",
            provider="Gemini",
            workspace_dir=self.workspace,
            records=[],
            duration_s=None,
            emit=self.emit,
        )
        self.assertIsNone(result)
        self.assertEqual(self.events, [])
        repository.has_changes.assert_not_called()

    def test_unwritable_prompt_log_is_a_warning(self) -> None:
        repository = mock.Mock()
        repository.has_changes.return_value = False
        orchestrator = self.build(lambda path: repository)
        with mock.patch.object(self.prompt_log, "append_prompts", side_effect=OSError("disk full")):
            self.finalize(orchestrator, "add a footer")
        statuses = [payload["status"] for payload in self.notifications()]
        self.assertEqual(statuses, [commits.STATUS_WARNING, commits.STATUS_INFO])


if __name__ == "__main__":
    unittest.main()
