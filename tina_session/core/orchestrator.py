"""
Core Orchestrator Module

The Orchestrator class ties naming, the session registry, tmux control,
readiness detection, status watching and the state machine together into the
operations the CLI exposes: init, start, wait, stop, cleanup and friends.
"""

import copy
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import (
    AlreadyInitialized, ArtifactNotFound, ClaudeNotReady, InvalidTransition, NotInitialized,
    ProcessControlError, SessionNotFound, TinaError
)
from .naming import (
    is_feature_session, phase_team_name, session_name, validate_feature, validate_phase
)
from .registry import SessionLookup
from .schema import OrchestrationStatus, PhaseStatus, SupervisorState
from .state_machine import OrchestrationStateMachine
from ..git.repository import GitRepository
from ..git.worktree_manager import WorktreeManager
from ..monitoring.status_watcher import StatusUpdate, StatusWatcher, WaitResult, status_file_path
from ..tmux.readiness import ReadinessDetector
from ..utils.system_utils import SystemUtils

logger = logging.getLogger(__name__)

CLAUDE_BINARIES = ('claudesp', 'claude')
CLAUDE_FLAGS = "--dangerously-skip-permissions"
TEAM_LEAD_INIT_COMMAND = "/tina:team-lead-init"
DEFAULT_START_TIMEOUT_SECS = 60
RESUME_READY_TIMEOUT_SECS = 10
STOPPED_REASON = "stopped by user"

# marker file -> install command, run in the worktree before a new session starts
DEPENDENCY_INSTALLERS = [
    ('package.json', ['npm', 'install']),
    ('Cargo.toml', ['cargo', 'build']),
    ('requirements.txt', ['pip', 'install', '-r', 'requirements.txt']),
]


def detect_claude_binary() -> str:
    """Prefer the ``claudesp`` preview build when installed, else ``claude``."""
    for binary in CLAUDE_BINARIES:
        if SystemUtils.check_command_availability(binary):
            return binary
    return 'claude'


def claude_command(binary: str) -> str:
    return f"{binary} {CLAUDE_FLAGS}"


def install_dependencies(cwd: Path) -> Dict[str, bool]:
    """
    Install project dependencies found in ``cwd``.

    Failures are logged and never raised; a phase should still start when
    an install step breaks.

    Returns:
        Mapping of the commands run to whether they succeeded
    """
    outcomes = {}
    for marker, command in DEPENDENCY_INSTALLERS:
        if not (Path(cwd) / marker).exists():
            continue
        label = ' '.join(command[:2])
        logger.info(f"Running {label} in {cwd}")
        code, _, stderr = SystemUtils.run_command(command, cwd=Path(cwd))
        outcomes[label] = code == 0
        if code != 0:
            logger.warning(f"{label} exited with {code}: {stderr.strip()}")
    return outcomes


class Orchestrator:
    """
    Main orchestrator for phase sessions.

    Coordinates:
    - Worktree creation and registry records for new features
    - tmux session startup with agent readiness checks
    - Status watching with results applied to supervisor state
    - Cleanup of sessions and registry records
    """

    def __init__(self, context,
                 worktree_factory: Callable[[Path], WorktreeManager] = WorktreeManager,
                 repo_factory: Callable[[Path], GitRepository] = GitRepository,
                 claude_binary: Optional[str] = None):
        """
        Initialize orchestrator.

        Args:
            context: TinaContext carrying config, registry, controller, clock and state store
            worktree_factory: Builds a WorktreeManager for a project directory
            repo_factory: Opens a worktree repository for status snapshots
            claude_binary: Agent executable (detected on first start when None)
        """
        self.context = context
        self.registry = context.registry
        self.controller = context.controller
        self.clock = context.clock
        self.state_store = context.state_store
        self.worktree_factory = worktree_factory
        self.repo_factory = repo_factory
        self.claude_binary = claude_binary

    def init(self, feature: str, cwd: Path, design_doc: Path, total_phases: int,
             branch: Optional[str] = None) -> Path:
        """
        Create the worktree, supervisor state and registry record for a feature.

        Args:
            feature: Feature name
            cwd: Directory inside the main repository
            design_doc: Design document driving the orchestration
            total_phases: Number of planned phases
            branch: Branch name override (defaults to ``tina/{feature}``)

        Returns:
            Path: the new worktree
        """
        validate_feature(feature)
        if self.registry.has_entry(feature):
            raise AlreadyInitialized(feature)
        if total_phases < 1:
            raise TinaError("total_phases must be at least 1")

        design_doc = Path(design_doc).resolve()
        if not design_doc.exists():
            raise ArtifactNotFound(design_doc)

        manager = self.worktree_factory(Path(cwd))
        worktree_path, branch = manager.create_feature_worktree(feature, branch)

        state = SupervisorState(
            feature=feature,
            design_doc=str(design_doc),
            worktree_path=str(worktree_path),
            branch=branch,
            total_phases=total_phases,
        )
        self.state_store.save(state)
        self.registry.register(SessionLookup(
            feature=feature,
            worktree_path=str(worktree_path),
            repo_root=str(manager.repo_root),
        ))

        logger.info(f"Initialized {feature} at {worktree_path} ({total_phases} phases)")
        return worktree_path

    def load(self, feature: str) -> Tuple[SessionLookup, SupervisorState]:
        lookup = self.registry.load(feature)
        return lookup, self.state_store.load(Path(lookup.worktree_path))

    def status(self, feature: str) -> Dict[str, Any]:
        """Supervisor state for a feature as a plain dict."""
        _, state = self.load(feature)
        return state.to_dict()

    def phase_status(self, feature: str, phase: str) -> StatusUpdate:
        """Point-in-time progress snapshot for one phase."""
        validate_phase(phase)
        lookup, _ = self.load(feature)
        watcher = self._watcher()
        path = status_file_path(Path(lookup.worktree_path), phase)
        return watcher.snapshot(path, 0, phase_team_name(feature, phase),
                                watcher.open_repo(Path(lookup.worktree_path)))

    def start_phase(self, feature: str, phase: str, plan: Path,
                    timeout_secs: float = DEFAULT_START_TIMEOUT_SECS) -> str:
        """
        Start (or resume) the team lead session for a phase.

        Args:
            feature: Feature name
            phase: Phase token
            plan: Plan document handed to the team lead
            timeout_secs: Budget for the agent prompt to appear

        Returns:
            str: session name

        Raises:
            ClaudeNotReady: if the agent never shows its prompt
        """
        validate_phase(phase)
        lookup, state = self.load(feature)
        plan = Path(plan).resolve()
        if not plan.exists():
            raise ArtifactNotFound(plan)

        machine = OrchestrationStateMachine(state)
        entry = machine.peek_phase(phase)
        if entry.status is PhaseStatus.COMPLETE:
            raise InvalidTransition(entry.status.value, PhaseStatus.RUNNING.value)
        # rehearse on a copy so a rejected start never touches tmux
        self._mark_started(OrchestrationStateMachine(copy.deepcopy(state)),
                           phase, entry.status, plan)

        name = session_name(feature, phase)
        detector = ReadinessDetector(self.controller, self.clock)

        if self.controller.exists(name):
            logger.info(f"Session {name} already exists, checking agent readiness")
            detector.wait_for_ready(name, RESUME_READY_TIMEOUT_SECS)
        else:
            worktree = Path(lookup.worktree_path)
            install_dependencies(worktree)
            self.controller.create(name, worktree)
            if self.claude_binary is None:
                self.claude_binary = detect_claude_binary()
            self.controller.send_keys(name, claude_command(self.claude_binary))
            try:
                detector.wait_for_ready(name, timeout_secs)
            except ClaudeNotReady:
                logger.error(f"Agent in {name} never became ready")
                raise

        self.controller.send_keys(name, f"{TEAM_LEAD_INIT_COMMAND} {plan}")

        self._mark_started(machine, phase, entry.status, plan,
                           session_alive=self.controller.exists(name))
        self.state_store.save(state)

        logger.info(f"Started phase {phase} of {feature} in {name}")
        return name

    def wait_phase(self, feature: str, phase: str, timeout_secs: float,
                   stream_interval: Optional[float] = None,
                   emit: Optional[Callable[[StatusUpdate], None]] = None,
                   team: Optional[str] = None) -> WaitResult:
        """
        Wait for a phase to finish and record the outcome in supervisor state.

        Args:
            feature: Feature name
            phase: Phase token
            timeout_secs: Overall budget
            stream_interval: Emit a StatusUpdate every N seconds when set
            emit: Receives each StatusUpdate
            team: Team whose tasks feed progress counts

        Returns:
            WaitResult
        """
        validate_phase(phase)
        lookup, _ = self.load(feature)
        worktree = Path(lookup.worktree_path)
        path = status_file_path(worktree, phase)
        name = session_name(feature, phase)
        watcher = self._watcher()

        if stream_interval:
            result = watcher.watch_streaming(
                path, worktree, team or phase_team_name(feature, phase),
                timeout_secs, stream_interval, session=name, emit=emit,
            )
        else:
            result = watcher.watch(path, timeout_secs, session=name)

        self._record_result(feature, phase, result)
        return result

    def stop_phase(self, feature: str, phase: str) -> str:
        """
        Kill a phase's session. A missing session is not an error.

        A running phase is recorded as blocked so ``start`` can retry it.
        """
        validate_feature(feature)
        validate_phase(phase)
        name = session_name(feature, phase)
        self.controller.kill(name)
        logger.info(f"Stopped {name}")

        try:
            _, state = self.load(feature)
        except NotInitialized:
            return name
        except TinaError as e:
            logger.warning(f"Stopped {name} but could not update state: {e}")
            return name

        entry = state.phases.get(phase)
        if entry is not None and entry.status is PhaseStatus.RUNNING:
            try:
                OrchestrationStateMachine(state).block_phase(phase, STOPPED_REASON)
            except InvalidTransition as e:
                logger.warning(f"Could not mark phase {phase} of {feature} stopped: {e}")
                return name
            self.state_store.save(state)
        return name

    def send(self, feature: str, phase: str, text: str, raw: bool = False) -> None:
        name = self._phase_session(feature, phase)
        if raw:
            self.controller.send_raw(name, text)
        else:
            self.controller.send_keys(name, text)

    def capture(self, feature: str, phase: str, lines: int = 100) -> str:
        return self.controller.capture(self._phase_session(feature, phase), lines)

    def attach(self, feature: str, phase: str) -> None:
        self.controller.attach(self._phase_session(feature, phase))

    def cleanup(self, feature: str) -> bool:
        """
        Kill every session of a feature and drop its registry record.

        Returns:
            bool: False if the feature was never registered
        """
        if not self.registry.has_entry(feature):
            return False

        for name in self.controller.list_sessions():
            if is_feature_session(feature, name):
                self.controller.kill(name)
                logger.info(f"Killed {name}")

        return self.registry.delete(feature)

    def list_orchestrations(self) -> List[Dict[str, Any]]:
        """Registry records joined with their current state and live sessions."""
        sessions = self.controller.list_sessions()
        rows = []
        for lookup in self.registry.list():
            row = {
                'feature': lookup.feature,
                'worktree_path': lookup.worktree_path,
                'status': 'unknown',
                'current_phase': None,
                'total_phases': None,
                'sessions': [name for name in sessions if is_feature_session(lookup.feature, name)],
            }
            try:
                state = self.state_store.load(Path(lookup.worktree_path))
                row.update(status=state.status.value, current_phase=state.current_phase,
                           total_phases=state.total_phases)
            except TinaError as e:
                logger.warning(f"No readable state for {lookup.feature}: {e}")
            rows.append(row)
        return rows

    def update_state(self, feature: str,
                     change: Callable[[OrchestrationStateMachine], Any]) -> SupervisorState:
        """
        Load state, apply ``change`` through the state machine, save.

        Nothing is written if ``change`` raises.
        """
        _, state = self.load(feature)
        change(OrchestrationStateMachine(state))
        self.state_store.save(state)
        return state

    def session_alive(self, feature: str, phase: str) -> bool:
        try:
            return self.controller.exists(session_name(feature, phase))
        except ProcessControlError:
            return False

    def _record_result(self, feature: str, phase: str, result: WaitResult) -> None:
        if result.status not in ('complete', 'blocked'):
            return

        _, state = self.load(feature)
        machine = OrchestrationStateMachine(state)
        entry = state.phases.get(phase)
        if entry is None or entry.status is not PhaseStatus.RUNNING:
            logger.warning(f"Phase {phase} of {feature} is not running, state left unchanged")
            return

        try:
            if result.status == 'complete':
                machine.complete_phase(phase, result, now=self.clock.now())
                self._after_completion(machine, phase)
            else:
                machine.block_phase(phase, result.reason or f"Phase {phase} reported blocked")
        except InvalidTransition as e:
            logger.warning(f"Could not record {result.status} for phase {phase}: {e}")
            return

        self.state_store.save(state)

    def _mark_started(self, machine: OrchestrationStateMachine, phase: str,
                      previous: PhaseStatus, plan: Path, session_alive: bool = True) -> None:
        """Apply the state changes of a phase start; a running phase is left as is."""
        if machine.state.status is OrchestrationStatus.PLANNING:
            machine.transition(OrchestrationStatus.PLANNED)

        if previous is PhaseStatus.BLOCKED:
            machine.retry_phase(phase, session_alive=session_alive)
            machine.state.phases[phase].plan_path = str(plan)
        elif previous is PhaseStatus.PENDING:
            machine.start_phase(phase, session_alive=session_alive, plan_path=str(plan),
                                now=self.clock.now())

    @staticmethod
    def _after_completion(machine: OrchestrationStateMachine, phase: str) -> None:
        state = machine.state
        if phase != str(state.current_phase):
            return
        if state.current_phase < state.total_phases:
            machine.advance()
        elif state.status is OrchestrationStatus.EXECUTING:
            machine.transition(OrchestrationStatus.REVIEWING)

    def _phase_session(self, feature: str, phase: str) -> str:
        validate_feature(feature)
        validate_phase(phase)
        name = session_name(feature, phase)
        if not self.controller.exists(name):
            raise SessionNotFound(name)
        return name

    def _watcher(self) -> StatusWatcher:
        return StatusWatcher(self.controller, self.clock, tasks_dir=self.context.config.tasks_dir,
                             repo_factory=self.repo_factory)
