"""
Orchestration State Machine Module

Transition tables for orchestrations and phases, plus the operations that
move a SupervisorState through them. Every operation validates first and
mutates second, so a rejected call leaves the state untouched.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, FrozenSet, Optional

from .errors import ArtifactNotFound, InvalidTransition, PhaseNotFound, TinaError
from .naming import phase_team_name, validate_phase
from .schema import (
    OrchestrationStatus, PhaseState, PhaseStatus, SupervisorState, parse_timestamp
)
from ..utils.file_utils import FileUtils

logger = logging.getLogger(__name__)

O = OrchestrationStatus
P = PhaseStatus

ORCHESTRATION_TRANSITIONS: Dict[OrchestrationStatus, FrozenSet[OrchestrationStatus]] = {
    O.PLANNING: frozenset({O.PLANNED}),
    O.PLANNED: frozenset({O.EXECUTING}),
    O.EXECUTING: frozenset({O.REVIEWING, O.BLOCKED}),
    O.REVIEWING: frozenset({O.COMPLETE, O.BLOCKED}),
    O.BLOCKED: frozenset({O.EXECUTING}),
    O.COMPLETE: frozenset(),
}

PHASE_TRANSITIONS: Dict[PhaseStatus, FrozenSet[PhaseStatus]] = {
    P.PENDING: frozenset({P.RUNNING}),
    P.RUNNING: frozenset({P.COMPLETE, P.BLOCKED}),
    P.BLOCKED: frozenset({P.RUNNING}),
    P.COMPLETE: frozenset(),
}


def validate_transition(current: OrchestrationStatus, target: OrchestrationStatus) -> None:
    """
    Check an orchestration status change against the transition table.

    Raises:
        InvalidTransition: if ``target`` is not reachable from ``current``
    """
    if target not in ORCHESTRATION_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)


def validate_phase_transition(current: PhaseStatus, target: PhaseStatus) -> None:
    if target not in PHASE_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)


def valid_next_states(current: OrchestrationStatus):
    """Sorted list of statuses reachable from ``current``."""
    return sorted(ORCHESTRATION_TRANSITIONS[current], key=lambda s: s.value)


class OrchestrationStateMachine:
    """
    Applies validated transitions to one SupervisorState.

    Handles:
    - Orchestration status changes
    - Phase start / completion / blocking / retry
    - Forward-only phase advancement with an explicit reset for recovery
    """

    def __init__(self, state: SupervisorState):
        self.state = state

    def transition(self, target: OrchestrationStatus) -> None:
        """
        Move the orchestration to ``target``.

        Args:
            target: Desired status

        Raises:
            InvalidTransition: if the table does not allow it
        """
        validate_transition(self.state.status, target)
        logger.info(f"{self.state.feature}: {self.state.status.value} -> {target.value}")
        self.state.status = target

    def get_or_create_phase(self, phase: str) -> PhaseState:
        """
        Return the phase entry, creating a pending one on first use.

        Raises:
            InvalidName: if the phase token is malformed
            PhaseNotFound: if the phase lies beyond ``total_phases``
        """
        phase = str(phase)
        self.peek_phase(phase)
        if phase not in self.state.phases:
            self.state.phases[phase] = PhaseState()
        return self.state.phases[phase]

    def start_phase(self, phase: str, session_alive: bool, plan_path: Optional[str] = None,
                    now: Optional[datetime] = None) -> PhaseState:
        """
        Mark a phase running.

        The phase's session must already exist; a planned or blocked
        orchestration moves to executing at the same time.

        Args:
            phase: Phase token
            session_alive: Whether the phase's tmux session exists right now
            plan_path: Plan document driving the phase
            now: Timestamp to record (defaults to current UTC time)
        """
        phase = str(phase)
        entry = self.peek_phase(phase)
        validate_phase_transition(entry.status, P.RUNNING)
        orch_target = self._orchestration_target_for_run()
        if not session_alive:
            raise TinaError(
                f"Cannot start phase {phase}: its tmux session is not running"
            )

        entry = self.get_or_create_phase(phase)
        if orch_target is not None:
            self.transition(orch_target)
        entry.status = P.RUNNING
        entry.team_name = phase_team_name(self.state.feature, phase)
        entry.blocked_reason = None
        if plan_path:
            entry.plan_path = str(plan_path)
        if not entry.started_at:
            entry.started_at = _iso(now)
        self._note_current_phase(phase)
        return entry

    def complete_phase(self, phase: str, wait_result, now: Optional[datetime] = None) -> PhaseState:
        """
        Mark a phase complete based on a status-watch result.

        Process exit alone never completes a phase; only a watcher result
        with status ``complete`` does.

        Args:
            phase: Phase token
            wait_result: Object with ``status`` and ``git_range`` attributes
            now: Completion timestamp
        """
        phase = str(phase)
        entry = self.peek_phase(phase)
        if getattr(wait_result, 'status', None) != 'complete':
            raise InvalidTransition(entry.status.value, P.COMPLETE.value)
        validate_phase_transition(entry.status, P.COMPLETE)

        entry.status = P.COMPLETE
        entry.git_range = wait_result.git_range
        entry.completed_at = _iso(now)
        entry.duration_mins = _minutes_between(entry.started_at, entry.completed_at)
        if entry.duration_mins is not None:
            entry.breakdown.execution_mins = entry.duration_mins
        return entry

    def block_phase(self, phase: str, reason: str) -> PhaseState:
        """
        Mark a phase blocked and the orchestration with it.

        Raises:
            TinaError: if ``reason`` is empty
            InvalidTransition: if either status change is not allowed
        """
        phase = str(phase)
        if not reason or not reason.strip():
            raise TinaError("A blocked phase requires a non-empty reason")
        entry = self.peek_phase(phase)
        validate_phase_transition(entry.status, P.BLOCKED)
        validate_transition(self.state.status, O.BLOCKED)

        self.transition(O.BLOCKED)
        entry.status = P.BLOCKED
        entry.blocked_reason = reason.strip()
        return entry

    def retry_phase(self, phase: str, session_alive: bool) -> PhaseState:
        """Move a blocked phase back to running; the orchestration resumes executing."""
        phase = str(phase)
        entry = self.peek_phase(phase)
        if entry.status is not P.BLOCKED:
            raise InvalidTransition(entry.status.value, P.RUNNING.value)
        return self.start_phase(phase, session_alive=session_alive)

    def advance(self) -> int:
        """
        Move ``current_phase`` forward by one.

        Returns:
            int: the new current phase
        """
        current = str(self.state.current_phase)
        entry = self.state.phases.get(current)
        if entry is None or entry.status is not P.COMPLETE:
            status = entry.status.value if entry else P.PENDING.value
            raise InvalidTransition(status, f"phase {self.state.current_phase + 1}")
        if self.state.current_phase >= self.state.total_phases:
            raise PhaseNotFound(str(self.state.current_phase + 1), self.state.total_phases)

        self.state.current_phase += 1
        return self.state.current_phase

    def reset_phase(self, phase: str) -> PhaseState:
        """
        Recovery operation: rewind to ``phase`` and clear its record.

        This is the only operation allowed to lower ``current_phase``.
        """
        phase = str(phase)
        self.peek_phase(phase)
        if self.state.status is O.COMPLETE:
            raise InvalidTransition(O.COMPLETE.value, O.EXECUTING.value)

        self.state.phases[phase] = PhaseState()
        self.state.current_phase = int(phase.split('.')[0])
        logger.warning(f"{self.state.feature}: reset to phase {phase}")
        return self.state.phases[phase]

    def peek_phase(self, phase: str) -> PhaseState:
        """Validate a phase key and return its entry without storing a new one."""
        validate_phase(phase)
        major = int(phase.split('.')[0])
        if major < 1 or major > self.state.total_phases:
            raise PhaseNotFound(phase, self.state.total_phases)
        return self.state.phases.get(phase) or PhaseState()

    def _orchestration_target_for_run(self) -> Optional[OrchestrationStatus]:
        current = self.state.status
        if current in (O.PLANNED, O.BLOCKED):
            return O.EXECUTING
        if current in (O.EXECUTING, O.REVIEWING):
            return None
        raise InvalidTransition(current.value, O.EXECUTING.value)

    def _note_current_phase(self, phase: str) -> None:
        major = int(phase.split('.')[0])
        if major > self.state.current_phase:
            self.state.current_phase = major


class StateStore:
    """
    Loads and saves SupervisorState files inside worktrees.

    A lock serializes writers within this process; across processes the
    atomic rename keeps readers from seeing partial files.
    """

    def __init__(self):
        self._state_lock = threading.RLock()

    def path_for(self, worktree_path: Path) -> Path:
        return SupervisorState.state_path(worktree_path)

    def exists(self, worktree_path: Path) -> bool:
        return self.path_for(worktree_path).exists()

    def load(self, worktree_path: Path) -> SupervisorState:
        """
        Load the orchestration state for a worktree.

        Raises:
            ArtifactNotFound: if no state file exists
            TinaError: if the file cannot be parsed
        """
        path = self.path_for(worktree_path)
        try:
            data = FileUtils.load_json(path)
        except FileNotFoundError:
            raise ArtifactNotFound(path) from None
        except (OSError, json.JSONDecodeError) as e:
            raise TinaError(f"Failed to read state file {path}: {e}") from e

        try:
            return SupervisorState.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise TinaError(f"Malformed state file {path}: {e}") from e

    def save(self, state: SupervisorState) -> Path:
        path = self.path_for(Path(state.worktree_path))
        with self._state_lock:
            FileUtils.write_json_atomic(path, state.to_dict())
        return path


def _iso(now: Optional[datetime]) -> str:
    return (now or datetime.now(timezone.utc)).isoformat()


def _minutes_between(start: Optional[str], end: Optional[str]) -> Optional[float]:
    started = parse_timestamp(start)
    ended = parse_timestamp(end)
    if not started or not ended:
        return None
    return round((ended - started).total_seconds() / 60.0, 2)
