#!/usr/bin/env python3
"""
Orchestration state machine tests
"""

import shutil
import sys
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

sys.path.append(str(Path(__file__).parent))

from tina_session.core.errors import (
    ArtifactNotFound, InvalidStatus, InvalidTransition, PhaseNotFound, TinaError
)
from tina_session.core.schema import OrchestrationStatus, PhaseStatus, SupervisorState
from tina_session.core.state_machine import (
    OrchestrationStateMachine, StateStore, valid_next_states, validate_transition
)
from tina_session.monitoring.status_watcher import WaitResult

O = OrchestrationStatus


def make_state(total_phases: int = 3, status: OrchestrationStatus = O.PLANNING,
               worktree: str = "/tmp/wt") -> SupervisorState:
    return SupervisorState(
        feature="auth",
        design_doc="/tmp/design.md",
        worktree_path=worktree,
        branch="tina/auth",
        total_phases=total_phases,
        status=status,
    )


class TestTransitionTable(unittest.TestCase):

    def test_allowed_transitions(self):
        allowed = [
            (O.PLANNING, O.PLANNED), (O.PLANNED, O.EXECUTING), (O.EXECUTING, O.REVIEWING),
            (O.EXECUTING, O.BLOCKED), (O.REVIEWING, O.COMPLETE), (O.REVIEWING, O.BLOCKED),
            (O.BLOCKED, O.EXECUTING),
        ]
        for current, target in allowed:
            validate_transition(current, target)

    def test_complete_is_terminal(self):
        for target in OrchestrationStatus:
            with self.assertRaises(InvalidTransition):
                validate_transition(O.COMPLETE, target)
        self.assertEqual(valid_next_states(O.COMPLETE), [])

    def test_planning_cannot_skip_to_complete(self):
        with self.assertRaises(InvalidTransition) as ctx:
            validate_transition(O.PLANNING, O.COMPLETE)
        self.assertEqual(
            str(ctx.exception),
            "Invalid status transition: cannot go from 'planning' to 'complete'"
        )

    def test_rejected_transition_leaves_state(self):
        state = make_state(status=O.PLANNING)
        with self.assertRaises(InvalidTransition):
            OrchestrationStateMachine(state).transition(O.COMPLETE)
        self.assertIs(state.status, O.PLANNING)

    def test_parse_unknown_status(self):
        with self.assertRaises(InvalidStatus):
            OrchestrationStatus.parse("done")
        self.assertIs(OrchestrationStatus.parse("executing"), O.EXECUTING)


class TestPhaseOperations(unittest.TestCase):

    def setUp(self):
        self.state = make_state(status=O.PLANNED)
        self.machine = OrchestrationStateMachine(self.state)
        self.t0 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)

    def test_start_phase_moves_orchestration_to_executing(self):
        entry = self.machine.start_phase("1", session_alive=True, plan_path="/p.md", now=self.t0)
        self.assertIs(entry.status, PhaseStatus.RUNNING)
        self.assertEqual(entry.team_name, "auth-phase-1")
        self.assertEqual(entry.plan_path, "/p.md")
        self.assertIs(self.state.status, O.EXECUTING)

    def test_start_phase_requires_live_session(self):
        with self.assertRaises(TinaError):
            self.machine.start_phase("1", session_alive=False)
        self.assertNotIn("1", self.state.phases)
        self.assertIs(self.state.status, O.PLANNED)

    def test_phase_out_of_range(self):
        with self.assertRaises(PhaseNotFound):
            self.machine.start_phase("4", session_alive=True)
        with self.assertRaises(PhaseNotFound):
            self.machine.start_phase("0", session_alive=True)

    def test_remediation_phase_within_range(self):
        self.machine.start_phase("1.5", session_alive=True)
        self.assertIs(self.state.phases["1.5"].status, PhaseStatus.RUNNING)

    def test_complete_phase_records_git_range_and_duration(self):
        self.machine.start_phase("1", session_alive=True, now=self.t0)
        later = datetime(2024, 1, 1, 10, 30, tzinfo=timezone.utc)
        entry = self.machine.complete_phase(
            "1", WaitResult(status="complete", git_range="abc..def"), now=later
        )
        self.assertIs(entry.status, PhaseStatus.COMPLETE)
        self.assertEqual(entry.git_range, "abc..def")
        self.assertEqual(entry.duration_mins, 30.0)
        self.assertEqual(entry.breakdown.execution_mins, 30.0)

    def test_session_death_never_completes_phase(self):
        self.machine.start_phase("1", session_alive=True, now=self.t0)
        with self.assertRaises(InvalidTransition):
            self.machine.complete_phase("1", WaitResult(status="session_died", reason="gone"))
        self.assertIs(self.state.phases["1"].status, PhaseStatus.RUNNING)

    def test_cannot_complete_pending_phase(self):
        with self.assertRaises(InvalidTransition):
            self.machine.complete_phase("2", WaitResult(status="complete", git_range="a..b"))

    def test_block_requires_reason(self):
        self.machine.start_phase("1", session_alive=True)
        with self.assertRaises(TinaError):
            self.machine.block_phase("1", "  ")
        self.assertIs(self.state.phases["1"].status, PhaseStatus.RUNNING)

    def test_block_and_retry(self):
        self.machine.start_phase("1", session_alive=True)
        self.machine.block_phase("1", "tests failing")
        self.assertIs(self.state.status, O.BLOCKED)
        self.assertEqual(self.state.phases["1"].blocked_reason, "tests failing")

        self.machine.retry_phase("1", session_alive=True)
        self.assertIs(self.state.status, O.EXECUTING)
        self.assertIs(self.state.phases["1"].status, PhaseStatus.RUNNING)
        self.assertIsNone(self.state.phases["1"].blocked_reason)

    def test_retry_only_from_blocked(self):
        self.machine.start_phase("1", session_alive=True)
        with self.assertRaises(InvalidTransition):
            self.machine.retry_phase("1", session_alive=True)

    def test_advance_requires_completed_current_phase(self):
        self.machine.start_phase("1", session_alive=True)
        with self.assertRaises(InvalidTransition):
            self.machine.advance()
        self.assertEqual(self.state.current_phase, 1)

        self.machine.complete_phase("1", WaitResult(status="complete", git_range="a..b"))
        self.assertEqual(self.machine.advance(), 2)

    def test_advance_past_last_phase(self):
        state = make_state(total_phases=1, status=O.PLANNED)
        machine = OrchestrationStateMachine(state)
        machine.start_phase("1", session_alive=True)
        machine.complete_phase("1", WaitResult(status="complete", git_range="a..b"))
        with self.assertRaises(PhaseNotFound):
            machine.advance()

    def test_reset_phase_rewinds(self):
        self.machine.start_phase("1", session_alive=True)
        self.machine.complete_phase("1", WaitResult(status="complete", git_range="a..b"))
        self.machine.advance()
        self.machine.reset_phase("1")
        self.assertEqual(self.state.current_phase, 1)
        self.assertIs(self.state.phases["1"].status, PhaseStatus.PENDING)


class TestStateStore(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.store = StateStore()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_save_and_load(self):
        state = make_state(worktree=self.test_dir, status=O.PLANNED)
        OrchestrationStateMachine(state).start_phase("1", session_alive=True)
        path = self.store.save(state)

        self.assertEqual(path, Path(self.test_dir) / ".claude" / "tina" / "supervisor-state.json")
        loaded = self.store.load(Path(self.test_dir))
        self.assertEqual(loaded.to_dict(), state.to_dict())

    def test_missing_state(self):
        with self.assertRaises(ArtifactNotFound):
            self.store.load(Path(self.test_dir))

    def test_corrupt_state(self):
        path = self.store.path_for(Path(self.test_dir))
        path.parent.mkdir(parents=True)
        path.write_text("{not json")
        with self.assertRaises(TinaError):
            self.store.load(Path(self.test_dir))


if __name__ == '__main__':
    unittest.main()
