#!/usr/bin/env python3
"""
tmux session controller and readiness detector tests
"""

import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

sys.path.append(str(Path(__file__).parent))

from fakes import FakeController
from tina_session.core.errors import ClaudeNotReady, ProcessControlError, SessionAlreadyExists
from tina_session.tmux.readiness import ReadinessDetector, is_agent_ready
from tina_session.tmux.session_controller import TmuxSessionController
from tina_session.utils.clock import ManualClock


def completed(returncode=0, stdout="", stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


class TestTmuxSessionController(unittest.TestCase):

    def setUp(self):
        self.controller = TmuxSessionController()

    @patch('subprocess.run')
    def test_create_session(self, mock_run):
        mock_run.return_value = completed()
        self.controller.create("tina-auth-phase-1", Path("/work/auth"))
        args = mock_run.call_args[0][0]
        self.assertEqual(
            args, ['tmux', 'new-session', '-d', '-s', 'tina-auth-phase-1', '-c', '/work/auth']
        )

    @patch('subprocess.run')
    def test_create_failure_carries_stderr(self, mock_run):
        mock_run.return_value = completed(1, stderr="can't use /nope as working directory\n")
        with self.assertRaises(ProcessControlError) as ctx:
            self.controller.create("tina-auth-phase-1", Path("/nope"))
        self.assertEqual(ctx.exception.command, "new-session")
        self.assertIn("working directory", ctx.exception.stderr)

    @patch('subprocess.run')
    def test_create_duplicate_session(self, mock_run):
        mock_run.return_value = completed(1, stderr="duplicate session: tina-auth-phase-1\n")
        with self.assertRaises(SessionAlreadyExists):
            self.controller.create("tina-auth-phase-1", Path("/work"))

    @patch('subprocess.run')
    def test_exists(self, mock_run):
        mock_run.return_value = completed(0)
        self.assertTrue(self.controller.exists("s"))
        mock_run.return_value = completed(1, stderr="can't find session: s")
        self.assertFalse(self.controller.exists("s"))

    @patch('subprocess.run')
    def test_send_keys_presses_enter(self, mock_run):
        mock_run.return_value = completed()
        self.controller.send_keys("s", "hello")
        self.assertEqual(mock_run.call_args[0][0], ['tmux', 'send-keys', '-t', 's', 'hello', 'Enter'])
        self.controller.send_raw("s", "y")
        self.assertEqual(mock_run.call_args[0][0], ['tmux', 'send-keys', '-t', 's', 'y'])

    @patch('subprocess.run')
    def test_capture(self, mock_run):
        mock_run.return_value = completed(stdout="line1\nline2\n")
        self.assertEqual(self.controller.capture("s", 50), "line1\nline2\n")
        self.assertEqual(mock_run.call_args[0][0][-2:], ['-S', '-50'])

    @patch('subprocess.run')
    def test_kill_tolerates_missing_session(self, mock_run):
        mock_run.return_value = completed(1, stderr="can't find session: s")
        self.controller.kill("s")
        mock_run.return_value = completed(1, stderr="no server running on /tmp/tmux-0/default")
        self.controller.kill("s")

    @patch('subprocess.run')
    def test_kill_other_failure_raises(self, mock_run):
        mock_run.return_value = completed(1, stderr="permission denied")
        with self.assertRaises(ProcessControlError):
            self.controller.kill("s")

    @patch('subprocess.run')
    def test_list_sessions(self, mock_run):
        mock_run.return_value = completed(stdout="tina-a-phase-1\ntina-b-phase-2\n")
        self.assertEqual(self.controller.list_sessions(), ["tina-a-phase-1", "tina-b-phase-2"])
        mock_run.return_value = completed(1, stderr="no server running")
        self.assertEqual(self.controller.list_sessions(), [])

    @patch('subprocess.run', side_effect=FileNotFoundError("tmux"))
    def test_missing_binary(self, mock_run):
        with self.assertRaises(ProcessControlError):
            self.controller.send_keys("s", "x")


class TestReadiness(unittest.TestCase):

    def test_prompt_detection(self):
        self.assertTrue(is_agent_ready("Welcome\n❯ "))
        self.assertTrue(is_agent_ready("  > type here"))
        self.assertTrue(is_agent_ready("⏵⏵ bypass permissions on"))
        self.assertFalse(is_agent_ready("Loading...\n"))
        self.assertFalse(is_agent_ready(""))

    def test_ready_after_prompt_appears(self):
        controller = FakeController()
        controller.create("s", Path("/tmp"))
        clock = ManualClock()
        clock.on_sleep.append(
            lambda now: controller.panes.__setitem__("s", "❯ ") if now >= 3 else None
        )

        ReadinessDetector(controller, clock).wait_for_ready("s", 10)
        self.assertEqual(clock.monotonic(), 3.0)

    def test_not_ready_times_out(self):
        controller = FakeController()
        controller.create("s", Path("/tmp"))
        clock = ManualClock()

        with self.assertRaises(ClaudeNotReady) as ctx:
            ReadinessDetector(controller, clock).wait_for_ready("s", 5)
        self.assertEqual(str(ctx.exception), "Claude not ready after 5 seconds")
        self.assertGreaterEqual(clock.monotonic(), 5)

    def test_capture_failures_count_as_not_ready(self):
        clock = ManualClock()
        with self.assertRaises(ClaudeNotReady):
            ReadinessDetector(FakeController(), clock).wait_for_ready("missing", 2)


if __name__ == '__main__':
    unittest.main()
