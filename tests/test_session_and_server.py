from __future__ import annotations

import json
import os
import shutil
import sys
import tempfile
import time
import unittest
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest import mock

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from click.testing import CliRunner
from fastapi import HTTPException, WebSocketDisconnect
from fastapi.testclient import TestClient

from agent_ide import server as ide_server
from agent_ide.config import IdeSettings
from agent_ide.errors import ConfigurationError, SpawnError
from agent_ide.monitors.base import REASON_RESPONSE_COMPLETE
from agent_ide.monitors.entries import slugify_claude_project
from agent_ide.providers import get_provider

HAS_GIT = shutil.which("git") is not None


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTerminal:
    """Stands in for ``TerminalProcess``; echoes input back as output."""

    instances: list["FakeTerminal"] = []

    def __init__(self, *, on_output, on_exit=None) -> None:
        self.on_output = on_output
        self.on_exit = on_exit
        self.cmd: list[str] | None = None
        self.env: dict[str, str] | None = None
        self.size: tuple[int, int] | None = None
        self.written: list[str] = []
        self.terminated = False
        self.pid = 4242
        FakeTerminal.instances.append(self)

    @property
    def running(self) -> bool:
        return self.cmd is not None and not self.terminated

    def start(self, cmd, *, cwd, env, cols, rows) -> None:
        self.cmd = list(cmd)
        self.cwd = cwd
        self.env = dict(env)
        self.size = (cols, rows)

    def write(self, data) -> None:
        text = data.decode("utf-8") if isinstance(data, bytes) else data
        self.written.append(text)
        self.on_output(text)

    def resize(self, cols: int, rows: int) -> bool:
        self.size = (cols, rows)
        return cols > 0 and rows > 0

    def terminate(self) -> None:
        self.terminated = True


class ExitOnTerminateTerminal(FakeTerminal):
    """Reports its exit from inside ``terminate`` like a real PTY reader can."""

    def terminate(self) -> None:
        if self.terminated:
            return
        super().terminate()
        if self.on_exit is not None:
            self.on_exit(None, 15)


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class HubTestCase(unittest.TestCase):
    def setUp(self) -> None:
        FakeTerminal.instances = []
        self.tmp = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self.tmp.name)
        self.bin_dir = self.tmp_path / "bin"
        self.bin_dir.mkdir()
        for name in ("claude", "codex", "gemini"):
            executable = self.bin_dir / name
            executable.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
            os.chmod(executable, 0o755)
        self.settings = replace(IdeSettings(data_dir=self.tmp_path / "data"), log_poll_interval_s=60.0)
        self.clock = FakeClock(time.time())
        self.base_env = {
            "PATH": str(self.bin_dir),
            "ANTHROPIC_API_KEY": "sk-ant-REDACTED",
            "OPENAI_API_KEY": "sk-test",
        }
        self.hub = self.make_hub(self.base_env)

    def tearDown(self) -> None:
        self.hub.shutdown()
        self.tmp.cleanup()

    def make_hub(self, base_env: dict[str, str], terminal_factory=FakeTerminal) -> ide_server.IdeHub:
        return ide_server.IdeHub(
            self.settings,
            base_env=base_env,
            terminal_factory=terminal_factory,
            clock=self.clock,
        )

    def drain_events(self, session) -> list[dict[str, Any]]:
        events = []
        while not session.events.empty():
            event = session.events.get_nowait()
            if event is not None:
                events.append(event)
        return events


class WorkspaceResolverTests(unittest.TestCase):
    def test_container_variant_is_monitored(self) -> None:
        settings = IdeSettings(data_dir=Path("/data"), container_workspace_root="/workspace/")
        resolver = ide_server.WorkspaceResolver(settings)
        self.assertEqual(resolver.workspace_dir("alice", "demo"), Path("/data/workspaces/alice/demo"))
        self.assertEqual(resolver.home_dir("alice"), Path("/data/homes/alice"))
        self.assertEqual(
            resolver.monitored_dirs("alice", "demo"),
            ["/data/workspaces/alice/demo", "/workspace/alice/demo"],
        )


class TerminalSessionTests(HubTestCase):
    def test_spawns_provider_cli_in_workspace(self) -> None:
        session = self.hub.open_session("alice", "demo", "codex")
        terminal = FakeTerminal.instances[-1]
        self.assertEqual(terminal.cmd, [str(self.bin_dir / "codex"), "--sandbox", "workspace-write"])
        self.assertEqual(terminal.cwd, self.settings.resolved_workspace_root / "alice" / "demo")
        self.assertEqual(terminal.env["HOME"], str(self.settings.resolved_home_root / "alice"))
        self.assertEqual(terminal.size, (160, 48))
        self.assertIs(self.hub.sessions.get("alice:demo"), session)
        self.assertEqual(session.snapshot()["pid"], 4242)

    def test_second_session_for_project_conflicts(self) -> None:
        self.hub.open_session("alice", "demo", "claude")
        with self.assertRaises(HTTPException) as ctx:
            self.hub.open_session("alice", "demo", "codex")
        self.assertEqual(ctx.exception.status_code, 409)

    def test_missing_executable_registers_nothing(self) -> None:
        hub = self.make_hub({**self.base_env, "PATH": str(self.tmp_path / "empty")})
        with self.assertRaises(SpawnError):
            hub.open_session("alice", "demo", "claude")
        self.assertEqual(len(hub.sessions), 0)
        self.assertEqual(FakeTerminal.instances, [])
        claude_config = self.settings.resolved_home_root / "alice" / ".config" / "claude" / ".claude.json"
        self.assertFalse(claude_config.exists())

    def test_missing_credentials_raise_configuration_error(self) -> None:
        hub = self.make_hub({"PATH": str(self.bin_dir)})
        with self.assertRaises(ConfigurationError) as ctx:
            hub.open_session("alice", "demo", "gemini")
        self.assertIn("GEMINI_API_KEY or GOOGLE_API_KEY", str(ctx.exception))
        self.assertEqual(len(hub.sessions), 0)

    def test_input_is_forwarded_and_prompts_recorded(self) -> None:
        session = self.hub.open_session("alice", "demo", "claude")
        records = session.handle_input("add a fooo\x7fter\r")
        self.assertEqual([record.text for record in records], ["add a footer"])
        self.assertEqual(FakeTerminal.instances[-1].written, ["add a fooo\x7fter\r"])
        events = self.drain_events(session)
        self.assertEqual(events[0], {"type": "output", "data": "add a fooo\x7fter\r"})
        self.assertEqual(session.snapshot()["state"]["pending_prompts"], ["add a footer"])

    def test_process_exit_closes_session(self) -> None:
        session = self.hub.open_session("alice", "demo", "claude")
        FakeTerminal.instances[-1].on_exit(0, None)
        events = self.drain_events(session)
        self.assertIn({"type": "exit", "payload": {"code": 0, "signal": None}}, events)
        self.assertTrue(session.closed)
        self.assertIsNone(self.hub.sessions.get("alice:demo"))

    def test_provider_change_restarts_cli(self) -> None:
        session = self.hub.open_session("alice", "demo", "claude")
        first = FakeTerminal.instances[-1]
        session.change_provider(get_provider("codex"))
        second = FakeTerminal.instances[-1]
        self.assertTrue(first.terminated)
        self.assertIsNot(first, second)
        self.assertTrue(second.cmd[0].endswith("codex"))
        self.assertEqual(session.provider.name, "codex")
        self.assertEqual(session.log_monitor.provider_name, "codex")

        # An exit from the replaced CLI must not close the session.
        first.on_exit(None, 15)
        self.assertFalse(session.closed)

    def test_replaced_cli_exiting_during_switch_keeps_session_open(self) -> None:
        hub = self.make_hub(self.base_env, terminal_factory=ExitOnTerminateTerminal)
        self.addCleanup(hub.shutdown)
        session = hub.open_session("alice", "demo", "claude")
        first = FakeTerminal.instances[-1]

        session.change_provider(get_provider("codex"))

        self.assertTrue(first.terminated)
        self.assertFalse(session.closed)
        self.assertIs(hub.sessions.get("alice:demo"), session)
        self.assertIs(session.terminal, FakeTerminal.instances[-1])
        self.assertNotIn("exit", [event["type"] for event in self.drain_events(session)])

        # The current CLI exiting still ends the session.
        session.terminal.on_exit(0, None)
        self.assertTrue(session.closed)
        self.assertIsNone(hub.sessions.get("alice:demo"))

    def test_session_closed_while_starting_terminates_new_cli(self) -> None:
        hub = None

        class ShutdownDuringStart(FakeTerminal):
            def start(self, cmd, **kwargs) -> None:
                super().start(cmd, **kwargs)
                hub.shutdown()

        hub = self.make_hub(self.base_env, terminal_factory=ShutdownDuringStart)
        session = hub.open_session("alice", "demo", "claude")

        self.assertTrue(session.closed)
        self.assertTrue(FakeTerminal.instances[-1].terminated)
        self.assertIsNone(session.terminal)
        self.assertIsNone(session.log_monitor)
        self.assertEqual(len(hub.sessions), 0)

    def test_normalizer_partial_line_is_dropped_on_provider_change(self) -> None:
        session = self.hub.open_session("alice", "demo", "claude")
        session.handle_input("half typed")
        session.change_provider(get_provider("codex"))
        records = session.handle_input("list the files\r")
        self.assertEqual([record.text for record in records], ["list the files"])

    def _run_banner(self, session, seconds: float) -> None:
        terminal = FakeTerminal.instances[-1]
        terminal.on_output("\x1b[2K\r* Thinking… (esc to interrupt)")
        self.clock.advance(seconds)
        terminal.on_output("Done.")
        self.clock.advance(self.settings.response_grace_s + 0.5)
        session.poll()

    def test_screen_idle_commits_prompt_when_no_log_turn_exists(self) -> None:
        session = self.hub.open_session("alice", "demo", "claude")
        session.handle_input("what does this project do?\r")
        with mock.patch.object(session, "_commit_turn") as commit_turn:
            self._run_banner(session, 4.0)

        commit_turn.assert_called_once()
        result, records = commit_turn.call_args.args
        self.assertEqual(result.extra, {"source": "screen"})
        self.assertEqual(result.reason, REASON_RESPONSE_COMPLETE)
        self.assertEqual(result.provider, "claude")
        self.assertAlmostEqual(result.duration_s, 4.5)
        self.assertEqual([record.text for record in records], ["what does this project do?"])

    def test_screen_idle_defers_to_open_log_turn(self) -> None:
        session = self.hub.open_session("alice", "demo", "claude")
        session.handle_input("add a footer\r")
        with mock.patch.object(session.log_monitor, "open_turns", return_value=[object()]), mock.patch.object(
            session, "_commit_turn"
        ) as commit_turn:
            self._run_banner(session, 4.0)
        commit_turn.assert_not_called()
        self.assertEqual(session.snapshot()["state"]["pending_prompts"], ["add a footer"])

    def test_screen_idle_without_pending_response_commits_nothing(self) -> None:
        session = self.hub.open_session("alice", "demo", "claude")
        with mock.patch.object(session, "_commit_turn") as commit_turn:
            self._run_banner(session, 4.0)
        commit_turn.assert_not_called()
        self.assertFalse(session.state.response_pending)

    def test_approval_prompt_blocks_screen_fallback(self) -> None:
        session = self.hub.open_session("alice", "demo", "claude")
        session.handle_input("add a footer\r")
        terminal = FakeTerminal.instances[-1]
        with mock.patch.object(session, "_commit_turn") as commit_turn:
            terminal.on_output("Editing (esc to interrupt)")
            self.clock.advance(1.0)
            terminal.on_output("Do you want to make this edit to index.html?\n❯ 1. Yes\n  2. No")
            self.clock.advance(30.0)
            session.poll()
        commit_turn.assert_not_called()
        self.assertTrue(session.state.awaiting_approval)
        self.assertTrue(session.normalizer.suppressed)

    @unittest.skipUnless(HAS_GIT, "git is not installed")
    def test_finished_claude_turn_is_committed_once(self) -> None:
        session = self.hub.open_session("alice", "demo", "claude")
        t0 = self.clock()
        session.handle_input("add a footer\r")
        self.drain_events(session)

        workspace = session.workspace_dir
        (workspace / "index.html").write_text("<footer>made with care</footer>\n", encoding="utf-8")
        log_dir = session.home_dir / ".config" / "claude" / "projects" / slugify_claude_project(workspace)
        log_dir.mkdir(parents=True, exist_ok=True)
        entries = [
            {
                "type": "user",
                "uuid": "u1",
                "parentUuid": None,
                "timestamp": _iso(t0),
                "message": {"role": "user", "content": "add a footer"},
            },
            {
                "type": "assistant",
                "uuid": "a1",
                "parentUuid": "u1",
                "timestamp": _iso(t0 + 6),
                "message": {
                    "role": "assistant",
                    "content": [{"type": "text", "text": "Added a footer to index.html."}],
                    "stop_reason": "end_turn",
                },
            },
        ]
        (log_dir / "5f0c2f4e-1b9a-4f7e-9d55-2a7e3c1d9b10.jsonl").write_text(
            "".join(json.dumps(entry) + "\n" for entry in entries),
            encoding="utf-8",
        )

        session.poll()
        session.poll()

        notifications = [event for event in self.drain_events(session) if event["type"] == "commit_notification"]
        self.assertEqual(len(notifications), 1)
        payload = notifications[0]["payload"]
        self.assertEqual(payload["status"], "success")
        self.assertEqual(payload["count"], 1)
        self.assertEqual(payload["duration"], "6.0s")
        self.assertEqual(payload["message"], "Saved 1 prompt from Claude (6.0s).")
        self.assertEqual(session.state.prompts, [])
        rows = self.hub.prompt_log.prompts_for("demo")
        self.assertEqual([row["prompt"] for row in rows], ["add a footer"])

    @unittest.skipUnless(HAS_GIT, "git is not installed")
    def test_disconnect_finalizes_open_turn(self) -> None:
        session = self.hub.open_session("alice", "demo", "claude")
        session.handle_input("explain the build\r")
        log_dir = session.home_dir / ".config" / "claude" / "projects" / slugify_claude_project(session.workspace_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        (log_dir / "0123456789abcdef.jsonl").write_text(
            json.dumps(
                {
                    "type": "user",
                    "uuid": "u1",
                    "parentUuid": None,
                    "timestamp": _iso(self.clock()),
                    "message": {"role": "user", "content": "explain the build"},
                }
            )
            + "\n",
            encoding="utf-8",
        )
        session.poll()
        self.hub.close_session(session)
        events = self.drain_events(session)
        notifications = [event["payload"] for event in events if event["type"] == "commit_notification"]
        self.assertEqual([payload["status"] for payload in notifications], ["info"])
        self.assertEqual(self.hub.batches.get(("alice", "demo")), ["explain the build"])
        self.assertTrue(FakeTerminal.instances[-1].terminated)


class ApiTests(HubTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.client = TestClient(ide_server.build_app(self.hub))

    def test_health_lists_providers(self) -> None:
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"ok": True, "sessions": 0, "providers": ["claude", "codex", "gemini"]})

    def test_commits_endpoint_filters_by_user(self) -> None:
        self.hub.prompt_log.link_commit(
            project_id="demo", user_id="alice", commit_hash="abc123", prompts=["add a footer"], timestamp=0.0
        )
        self.hub.prompt_log.link_commit(
            project_id="demo", user_id="bob", commit_hash="def456", prompts=["other"], timestamp=0.0
        )
        response = self.client.get("/api/projects/demo/commits", params={"user": "alice"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["commit"] for row in response.json()["commits"]], ["abc123"])

    def test_commits_endpoint_rejects_unsafe_project(self) -> None:
        response = self.client.get("/api/projects/bad%20id/commits")
        self.assertEqual(response.status_code, 404)

    def test_sessions_endpoint_reports_open_sessions(self) -> None:
        self.hub.open_session("alice", "demo", "codex")
        sessions = self.client.get("/api/sessions").json()["sessions"]
        self.assertEqual([item["session_key"] for item in sessions], ["alice:demo"])
        self.assertEqual(sessions[0]["provider"], "codex")

    def test_unknown_provider_closes_with_4404(self) -> None:
        with self.assertRaises(WebSocketDisconnect) as ctx:
            with self.client.websocket_connect("/api/projects/demo/terminal?user=alice&provider=copilot"):
                pass
        self.assertEqual(ctx.exception.code, ide_server.WS_CLOSE_UNKNOWN)

    def test_missing_user_closes_with_4404(self) -> None:
        with self.assertRaises(WebSocketDisconnect) as ctx:
            with self.client.websocket_connect("/api/projects/demo/terminal"):
                pass
        self.assertEqual(ctx.exception.code, ide_server.WS_CLOSE_UNKNOWN)

    def test_existing_session_closes_with_4409(self) -> None:
        self.hub.open_session("alice", "demo", "claude")
        with self.client.websocket_connect("/api/projects/demo/terminal?user=alice") as websocket:
            with self.assertRaises(WebSocketDisconnect) as ctx:
                websocket.receive_text()
        self.assertEqual(ctx.exception.code, ide_server.WS_CLOSE_CONFLICT)

    def test_start_failure_sends_single_error(self) -> None:
        self.hub.base_env["PATH"] = str(self.tmp_path / "empty")
        with self.client.websocket_connect("/api/projects/demo/terminal?user=alice&provider=claude") as websocket:
            event = json.loads(websocket.receive_text())
            self.assertEqual(event["type"], "error")
            self.assertIn("not installed", event["payload"]["message"])
            with self.assertRaises(WebSocketDisconnect) as ctx:
                websocket.receive_text()
        self.assertEqual(ctx.exception.code, ide_server.WS_CLOSE_CONFLICT)
        self.assertEqual(len(self.hub.sessions), 0)

    def test_terminal_round_trip(self) -> None:
        headers = {"x-user-id": "alice"}
        with self.client.websocket_connect("/api/projects/demo/terminal?provider=codex", headers=headers) as websocket:
            websocket.send_text(json.dumps({"type": "input", "data": "ls\r"}))
            event = json.loads(websocket.receive_text())
            self.assertEqual(event, {"type": "output", "data": "ls\r"})
            websocket.send_text(json.dumps({"type": "resize", "cols": 120, "rows": 40}))
            websocket.send_text(json.dumps({"type": "terminate"}))
        terminal = FakeTerminal.instances[-1]
        self.assertEqual(terminal.size, (120, 40))
        self.assertTrue(terminal.terminated)
        self.assertEqual(len(self.hub.sessions), 0)

    def test_invalid_resize_is_a_warning(self) -> None:
        with self.client.websocket_connect("/api/projects/demo/terminal?user=alice&provider=codex") as websocket:
            websocket.send_text(json.dumps({"type": "resize", "cols": "wide", "rows": 10}))
            event = json.loads(websocket.receive_text())
            self.assertEqual(event["type"], "warning")
            self.assertIn("invalid size", event["payload"]["message"])
            websocket.send_text(json.dumps({"type": "input", "data": "ls\r"}))
            self.assertEqual(json.loads(websocket.receive_text()), {"type": "output", "data": "ls\r"})
            websocket.send_text(json.dumps({"type": "terminate"}))
        self.assertEqual(FakeTerminal.instances[-1].size, (160, 48))
        self.assertEqual(len(self.hub.sessions), 0)

    def test_prompts_endpoint_filters_by_user(self) -> None:
        self.hub.prompt_log.append_prompts(
            project_id="demo", user_id="alice", provider="Codex", prompts=["add a footer"], duration_s=4.2, timestamp=0.0
        )
        self.hub.prompt_log.append_prompts(
            project_id="demo", user_id="bob", provider="Claude", prompts=["other"], duration_s=None, timestamp=0.0
        )
        response = self.client.get("/api/projects/demo/prompts", params={"user": "alice"})
        self.assertEqual(response.status_code, 200)
        rows = response.json()["prompts"]
        self.assertEqual([row["prompt"] for row in rows], ["add a footer"])
        self.assertEqual(rows[0]["duration_s"], 4.2)
        self.assertEqual(len(self.client.get("/api/projects/demo/prompts").json()["prompts"]), 2)
        self.assertEqual(self.client.get("/api/projects/bad%20id/prompts").status_code, 404)

    @unittest.skipUnless(HAS_GIT, "git is not installed")
    def test_commits_endpoint_includes_git_history_for_user(self) -> None:
        self.hub.open_session("alice", "demo", "codex")
        payload = self.client.get("/api/projects/demo/commits", params={"user": "alice"}).json()
        self.assertEqual([item["subject"] for item in payload["history"]], ["Initial commit"])
        self.assertNotIn("history", self.client.get("/api/projects/demo/commits").json())
        self.assertEqual(
            self.client.get("/api/projects/demo/commits", params={"user": "bob"}).json()["history"], []
        )


class CliTests(unittest.TestCase):
    def test_debug_log_level_keeps_uvicorn_at_info(self) -> None:
        runner = CliRunner()
        with tempfile.TemporaryDirectory() as tmp, mock.patch.object(ide_server.uvicorn, "run") as run:
            result = runner.invoke(ide_server.main, ["--data-dir", tmp, "--log-level", "DEBUG", "--port", "9000"])
        self.assertEqual(result.exit_code, 0, result.output)
        run.assert_called_once()
        self.assertEqual(run.call_args.kwargs["log_level"], "info")
        self.assertEqual(run.call_args.kwargs["port"], 9000)
        self.assertEqual(run.call_args.kwargs["host"], ide_server.DEFAULT_HOST)

    def test_warning_log_level_is_passed_through(self) -> None:
        runner = CliRunner()
        with tempfile.TemporaryDirectory() as tmp, mock.patch.object(ide_server.uvicorn, "run") as run:
            result = runner.invoke(ide_server.main, ["--data-dir", tmp, "--log-level", "warning"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(run.call_args.kwargs["log_level"], "warning")

    def test_invalid_config_file_is_a_usage_error(self) -> None:
        runner = CliRunner()
        with tempfile.TemporaryDirectory() as tmp, mock.patch.object(ide_server.uvicorn, "run") as run:
            config_file = Path(tmp) / "agent-ide.toml"
            config_file.write_text("[terminal]\ncols = 'wide'\n", encoding="utf-8")
            result = runner.invoke(ide_server.main, ["--data-dir", tmp, "--config-file", str(config_file)])
        self.assertNotEqual(result.exit_code, 0)
        self.assertIn("Error", result.output)
        run.assert_not_called()


if __name__ == "__main__":
    unittest.main()
