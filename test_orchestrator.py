#!/usr/bin/env python3
"""
Orchestrator tests: init, start, wait and cleanup against fake tmux and git
"""

import json
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

sys.path.append(str(Path(__file__).parent))

from fakes import FakeController, FakeRepo, FakeWorktreeManager, make_commit, make_context
from tina_session.core.errors import (
    AlreadyInitialized, ArtifactNotFound, ClaudeNotReady, InvalidName, InvalidTransition,
    NotInitialized, SessionNotFound, TinaError
)
from tina_session.core.orchestrator import (
    Orchestrator, claude_command, detect_claude_binary, install_dependencies
)
from tina_session.core.schema import OrchestrationStatus
from tina_session.monitoring.status_watcher import status_file_path


class OrchestratorTestCase(unittest.TestCase):

    controller_kwargs = {}

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp()).resolve()
        self.repo_dir = self.test_dir / "repo"
        self.repo_dir.mkdir()
        self.design = self.repo_dir / "design.md"
        self.design.write_text("# Auth design\n")
        self.plan = self.repo_dir / "plan-1.md"
        self.plan.write_text("# Phase 1\n")

        self.controller = FakeController(**self.controller_kwargs)
        self.context = make_context(self.test_dir, controller=self.controller)
        self.repo = FakeRepo([make_commit(1)])
        self.orchestrator = Orchestrator(
            self.context,
            worktree_factory=FakeWorktreeManager,
            repo_factory=lambda path: self.repo,
            claude_binary="claude",
        )

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def init(self, feature="auth", total_phases=2):
        return self.orchestrator.init(feature, self.repo_dir, self.design, total_phases)

    def write_status(self, feature, phase, data):
        worktree = Path(self.context.registry.load(feature).worktree_path)
        path = status_file_path(worktree, phase)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data))


class TestInit(OrchestratorTestCase):

    def test_init_creates_state_and_record(self):
        worktree = self.init()

        self.assertEqual(worktree, self.repo_dir / ".worktrees" / "auth")
        status = self.orchestrator.status("auth")
        self.assertEqual(status["status"], "planning")
        self.assertEqual(status["current_phase"], 1)
        self.assertEqual(status["total_phases"], 2)
        self.assertEqual(status["branch"], "tina/auth")
        self.assertEqual(self.context.registry.load("auth").repo_root, str(self.repo_dir))

    def test_init_twice(self):
        self.init()
        with self.assertRaises(AlreadyInitialized):
            self.init()

    def test_init_rejects_bad_input(self):
        with self.assertRaises(InvalidName):
            self.init(feature="has space")
        with self.assertRaises(TinaError):
            self.init(total_phases=0)
        with self.assertRaises(ArtifactNotFound):
            self.orchestrator.init("auth", self.repo_dir, self.repo_dir / "missing.md", 2)
        self.assertFalse(self.context.registry.exists("auth"))

    def test_status_of_unknown_feature(self):
        with self.assertRaises(NotInitialized):
            self.orchestrator.status("nope")


class TestStartPhase(OrchestratorTestCase):

    def test_start_launches_agent_then_team_lead(self):
        self.init()
        name = self.orchestrator.start_phase("auth", "1", self.plan)

        self.assertEqual(name, "tina-auth-phase-1")
        self.assertEqual(
            self.controller.texts_sent_to(name),
            [claude_command("claude"), f"/tina:team-lead-init {self.plan}"]
        )
        status = self.orchestrator.status("auth")
        self.assertEqual(status["status"], "executing")
        self.assertEqual(status["phases"]["1"]["status"], "running")
        self.assertEqual(status["phases"]["1"]["plan_path"], str(self.plan))

    def test_existing_session_is_reused(self):
        self.init()
        worktree = self.repo_dir / ".worktrees" / "auth"
        self.controller.create("tina-auth-phase-1", worktree)
        self.controller.panes["tina-auth-phase-1"] = "❯ "

        self.orchestrator.start_phase("auth", "1", self.plan)

        self.assertEqual(
            self.controller.texts_sent_to("tina-auth-phase-1"),
            [f"/tina:team-lead-init {self.plan}"]
        )

    def test_missing_plan(self):
        self.init()
        with self.assertRaises(ArtifactNotFound):
            self.orchestrator.start_phase("auth", "1", self.repo_dir / "nope.md")
        self.assertEqual(self.controller.sessions, {})

    def test_rejected_start_leaves_tmux_untouched(self):
        self.init()
        _, state = self.orchestrator.load("auth")
        state.status = OrchestrationStatus.COMPLETE
        self.context.state_store.save(state)

        with self.assertRaises(InvalidTransition):
            self.orchestrator.start_phase("auth", "1", self.plan)

        self.assertEqual(self.controller.sessions, {})
        self.assertEqual(self.controller.sent, [])
        self.assertEqual(self.orchestrator.status("auth")["phases"], {})

    @patch('subprocess.run')
    def test_new_session_installs_dependencies_first(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        self.init()
        (self.repo_dir / ".worktrees" / "auth" / "package.json").write_text("{}")

        self.orchestrator.start_phase("auth", "1", self.plan)

        command = mock_run.call_args[0][0]
        self.assertEqual(command, ['npm', 'install'])
        self.assertEqual(mock_run.call_args[1]['cwd'], self.repo_dir / ".worktrees" / "auth")

    def test_completed_phase_cannot_restart(self):
        self.init()
        self.orchestrator.start_phase("auth", "1", self.plan)
        self.write_status("auth", "1", {"status": "complete", "git_range": "a..b"})
        self.orchestrator.wait_phase("auth", "1", timeout_secs=5)

        with self.assertRaises(InvalidTransition):
            self.orchestrator.start_phase("auth", "1", self.plan)


class TestAgentNeverReady(OrchestratorTestCase):

    controller_kwargs = {"agent_starts": False}

    def test_claude_not_ready(self):
        self.init()
        with self.assertRaises(ClaudeNotReady):
            self.orchestrator.start_phase("auth", "1", self.plan, timeout_secs=3)

        status = self.orchestrator.status("auth")
        self.assertEqual(status["status"], "planning")
        self.assertEqual(status["phases"], {})
        self.assertEqual(self.controller.texts_sent_to("tina-auth-phase-1"), [claude_command("claude")])


class TestWaitPhase(OrchestratorTestCase):

    def setUp(self):
        super().setUp()
        self.init()
        self.orchestrator.start_phase("auth", "1", self.plan)

    def test_complete_advances(self):
        self.write_status("auth", "1", {"status": "complete", "git_range": "abc..def"})

        result = self.orchestrator.wait_phase("auth", "1", timeout_secs=60)

        self.assertEqual(result.status, "complete")
        status = self.orchestrator.status("auth")
        self.assertEqual(status["phases"]["1"]["status"], "complete")
        self.assertEqual(status["phases"]["1"]["git_range"], "abc..def")
        self.assertEqual(status["current_phase"], 2)
        self.assertEqual(status["status"], "executing")

    def test_last_phase_moves_to_reviewing(self):
        self.write_status("auth", "1", {"status": "complete", "git_range": "a..b"})
        self.orchestrator.wait_phase("auth", "1", timeout_secs=60)
        plan2 = self.repo_dir / "plan-2.md"
        plan2.write_text("# Phase 2\n")
        self.orchestrator.start_phase("auth", "2", plan2)
        self.write_status("auth", "2", {"status": "complete", "git_range": "b..c"})

        self.orchestrator.wait_phase("auth", "2", timeout_secs=60)

        status = self.orchestrator.status("auth")
        self.assertEqual(status["current_phase"], 2)
        self.assertEqual(status["status"], OrchestrationStatus.REVIEWING.value)

    def test_blocked(self):
        self.write_status("auth", "1", {"status": "blocked", "blocked_reason": "missing API key"})

        result = self.orchestrator.wait_phase("auth", "1", timeout_secs=60)

        self.assertEqual(result.status, "blocked")
        status = self.orchestrator.status("auth")
        self.assertEqual(status["status"], "blocked")
        self.assertEqual(status["phases"]["1"]["blocked_reason"], "missing API key")

    def test_blocked_phase_can_be_restarted(self):
        self.write_status("auth", "1", {"status": "blocked", "blocked_reason": "flaky"})
        self.orchestrator.wait_phase("auth", "1", timeout_secs=60)

        self.orchestrator.start_phase("auth", "1", self.plan)

        status = self.orchestrator.status("auth")
        self.assertEqual(status["status"], "executing")
        self.assertEqual(status["phases"]["1"]["status"], "running")
        self.assertIsNone(status["phases"]["1"]["blocked_reason"])

    def test_timeout_leaves_state_alone(self):
        result = self.orchestrator.wait_phase("auth", "1", timeout_secs=3)

        self.assertEqual(result.status, "timeout")
        self.assertEqual(self.orchestrator.status("auth")["phases"]["1"]["status"], "running")

    def test_session_death_is_not_completion(self):
        self.controller.kill("tina-auth-phase-1")

        result = self.orchestrator.wait_phase("auth", "1", timeout_secs=60)

        self.assertEqual(result.status, "session_died")
        self.assertEqual(self.orchestrator.status("auth")["phases"]["1"]["status"], "running")

    def test_streaming_emits_updates(self):
        updates = []
        result = self.orchestrator.wait_phase(
            "auth", "1", timeout_secs=4, stream_interval=2, emit=updates.append
        )
        self.assertEqual(result.status, "timeout")
        self.assertEqual([u.elapsed_secs for u in updates], [0, 2])


class TestSessionCommands(OrchestratorTestCase):

    def setUp(self):
        super().setUp()
        self.init()
        self.orchestrator.start_phase("auth", "1", self.plan)

    def test_send_and_capture(self):
        self.orchestrator.send("auth", "1", "/status")
        self.orchestrator.send("auth", "1", "y", raw=True)
        self.assertEqual(self.controller.sent[-2:], [
            ("tina-auth-phase-1", "/status", True),
            ("tina-auth-phase-1", "y", False),
        ])
        self.assertIn("❯", self.orchestrator.capture("auth", "1"))

    def test_send_to_missing_session(self):
        self.orchestrator.stop_phase("auth", "1")
        with self.assertRaises(SessionNotFound):
            self.orchestrator.send("auth", "1", "hello")

    def test_stop_marks_running_phase_blocked(self):
        self.orchestrator.stop_phase("auth", "1")

        status = self.orchestrator.status("auth")
        self.assertEqual(status["status"], "blocked")
        self.assertEqual(status["phases"]["1"]["status"], "blocked")
        self.assertEqual(status["phases"]["1"]["blocked_reason"], "stopped by user")
        self.assertEqual(self.controller.list_sessions(), [])

        self.orchestrator.start_phase("auth", "1", self.plan)
        self.assertEqual(self.orchestrator.status("auth")["phases"]["1"]["status"], "running")

    def test_stop_unregistered_feature_only_kills(self):
        self.assertEqual(self.orchestrator.stop_phase("other", "1"), "tina-other-phase-1")
        self.assertIn("tina-other-phase-1", self.controller.killed)

    def test_phase_status_snapshot(self):
        self.write_status("auth", "1", {"status": "executing"})
        update = self.orchestrator.phase_status("auth", "1")
        self.assertEqual(update.status, "executing")
        self.assertTrue(update.last_commit.endswith("commit 1"))

    def test_update_state_rejects_without_saving(self):
        with self.assertRaises(InvalidTransition):
            self.orchestrator.update_state(
                "auth", lambda machine: machine.transition(OrchestrationStatus.COMPLETE)
            )
        self.assertEqual(self.orchestrator.status("auth")["status"], "executing")


class TestCleanup(OrchestratorTestCase):

    def test_cleanup_kills_only_feature_sessions(self):
        self.init()
        self.init(feature="auth-v2")
        worktree = self.repo_dir
        for name in ("tina-auth-phase-1", "tina-auth-phase-1_5", "tina-auth-orchestration",
                     "tina-auth-v2-phase-1", "unrelated"):
            self.controller.create(name, worktree)

        self.assertTrue(self.orchestrator.cleanup("auth"))

        self.assertEqual(
            self.controller.list_sessions(), ["tina-auth-v2-phase-1", "unrelated"]
        )
        self.assertFalse(self.context.registry.exists("auth"))
        self.assertTrue(self.context.registry.exists("auth-v2"))

    def test_cleanup_unknown_feature(self):
        self.assertFalse(self.orchestrator.cleanup("nope"))

    def test_corrupt_registry_entry_can_be_cleaned_up(self):
        entry = self.context.registry.path_for("auth")
        entry.parent.mkdir(parents=True, exist_ok=True)
        entry.write_text("{half-written")

        with self.assertRaises(AlreadyInitialized):
            self.init()
        self.assertFalse((self.repo_dir / ".worktrees" / "auth").exists())

        self.assertTrue(self.orchestrator.cleanup("auth"))
        self.assertFalse(entry.exists())
        self.init()
        self.assertTrue(self.context.registry.exists("auth"))

    def test_list_orchestrations(self):
        self.init()
        self.orchestrator.start_phase("auth", "1", self.plan)

        rows = self.orchestrator.list_orchestrations()

        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["feature"], "auth")
        self.assertEqual(rows[0]["status"], "executing")
        self.assertEqual(rows[0]["sessions"], ["tina-auth-phase-1"])


def completed(returncode=0, stdout="", stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


class TestStartHelpers(unittest.TestCase):

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    @patch('subprocess.run')
    def test_prefers_preview_binary(self, mock_run):
        mock_run.return_value = completed(0)
        self.assertEqual(detect_claude_binary(), "claudesp")
        self.assertEqual(mock_run.call_args[0][0], ['which', 'claudesp'])

    @patch('subprocess.run')
    def test_falls_back_to_claude(self, mock_run):
        mock_run.side_effect = lambda args, **kwargs: completed(0 if args[1] == 'claude' else 1)
        self.assertEqual(detect_claude_binary(), "claude")

    @patch('subprocess.run', return_value=completed(1))
    def test_defaults_to_claude_when_nothing_installed(self, mock_run):
        self.assertEqual(detect_claude_binary(), "claude")

    def test_no_markers_runs_nothing(self):
        with patch('subprocess.run') as mock_run:
            self.assertEqual(install_dependencies(self.test_dir), {})
        mock_run.assert_not_called()

    @patch('subprocess.run')
    def test_install_failures_are_not_fatal(self, mock_run):
        (self.test_dir / "Cargo.toml").write_text("[package]\n")
        (self.test_dir / "requirements.txt").write_text("requests\n")

        def run(args, **kwargs):
            if args[0] == 'cargo':
                return completed(101, stderr="error: could not compile")
            raise FileNotFoundError(args[0])
        mock_run.side_effect = run

        outcomes = install_dependencies(self.test_dir)

        self.assertEqual(outcomes, {"cargo build": False, "pip install": False})
        commands = [call[0][0] for call in mock_run.call_args_list]
        self.assertEqual(commands, [['cargo', 'build'], ['pip', 'install', '-r', 'requirements.txt']])


if __name__ == '__main__':
    unittest.main()
