"""
Status Watch Engine Module

Polls a phase's status artifact and tmux session until the phase reaches a
terminal state. Supports a one-shot mode that only reports the outcome and a
streaming mode that emits a progress snapshot every interval.

Status artifacts are small JSON files written by the agents. A missing or
half-written file just means "no status yet"; only timeout and session death
end a watch without a status from the agents.
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from ..core.errors import GitError, ProcessControlError
from ..core.schema import Task, TaskStatus, parse_timestamp
from ..git.repository import GitRepository, truncate
from ..tmux.session_controller import ProcessController
from ..utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

HEARTBEAT_STALE_SECS = 300
DEFAULT_POLL_INTERVAL_SECS = 1.0
TASK_SUBJECT_MAX_CHARS = 50

EXIT_CODES = {
    'complete': 0,
    'blocked': 1,
    'timeout': 2,
    'session_died': 3,
}


@dataclass
class WaitResult:
    """Outcome of a watch"""
    status: str
    git_range: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class StatusUpdate:
    """Progress snapshot emitted while streaming"""
    elapsed_secs: int
    status: str
    tasks_complete: Optional[int] = None
    tasks_total: Optional[int] = None
    current_task: Optional[str] = None
    last_commit: Optional[str] = None
    git_range: Optional[str] = None
    blocked_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class TaskProgress:
    completed: int = 0
    total: int = 0
    in_progress: List[str] = field(default_factory=list)


def status_file_path(worktree_path: Path, phase: str) -> Path:
    """Location of a phase's status artifact inside its worktree."""
    return Path(worktree_path) / '.claude' / 'tina' / f'phase-{phase}' / 'status.json'


def read_status_file(path: Path) -> Optional[Dict[str, Any]]:
    """
    Read a status artifact.

    Returns:
        Parsed mapping, or None when absent, unreadable or not a JSON object
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def check_status_file(path: Path) -> Optional[WaitResult]:
    """
    Map a status artifact to a terminal result.

    Returns:
        WaitResult for ``complete`` / ``blocked``; None for anything else
    """
    data = read_status_file(path)
    if data is None:
        return None

    status = data.get('status')
    if status == 'complete':
        return WaitResult(status='complete', git_range=data.get('git_range'))
    if status == 'blocked':
        return WaitResult(status='blocked', reason=data.get('blocked_reason'))
    return None


def current_status(path: Path) -> str:
    """Human-facing status: ``waiting`` before the file exists, ``unknown`` if unreadable."""
    if not Path(path).exists():
        return 'waiting'
    data = read_status_file(path)
    if data is None or not isinstance(data.get('status'), str):
        return 'unknown'
    return data['status']


def heartbeat_age_secs(data: Optional[Dict[str, Any]], now: datetime) -> Optional[float]:
    """Seconds since the agent's last ``heartbeat_at``, or None if it never wrote one."""
    if not data:
        return None
    beat = parse_timestamp(data.get('heartbeat_at'))
    if beat is None:
        return None
    return max(0.0, (now - beat).total_seconds())


def load_tasks(task_dir: Path) -> List[Task]:
    """Load every parseable task file in a directory."""
    tasks: List[Task] = []
    if not task_dir.is_dir():
        return tasks

    for path in sorted(task_dir.glob('*.json')):
        try:
            with open(path, 'r', encoding='utf-8') as f:
                tasks.append(Task.model_validate(json.load(f)))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.debug(f"Skipping unreadable task file {path}: {e}")
    return tasks


def task_progress(tasks_dir: Path, team: str) -> TaskProgress:
    """
    Summarize task files for a team.

    Args:
        tasks_dir: Root tasks directory (``~/.claude/tasks``)
        team: Team (or lead session) name

    Returns:
        TaskProgress with completed/total counts and in-progress subjects
    """
    progress = TaskProgress()
    for task in load_tasks(Path(tasks_dir) / team):
        progress.total += 1
        if task.status is TaskStatus.COMPLETED:
            progress.completed += 1
        elif task.status is TaskStatus.IN_PROGRESS:
            progress.in_progress.append(truncate(task.subject, TASK_SUBJECT_MAX_CHARS))
    return progress


def exit_code_for(result: WaitResult) -> int:
    """Process exit code for a watch outcome."""
    return EXIT_CODES.get(result.status, 1)


class StatusWatcher:
    """
    Polling watcher for phase status artifacts.

    Features:
    - One-shot wait for complete / blocked / session death / timeout
    - Streaming snapshots at a fixed interval
    - Clock injection so tests simulate time instead of sleeping
    """

    def __init__(self,
                 controller: ProcessController,
                 clock: Clock = None,
                 poll_interval: float = DEFAULT_POLL_INTERVAL_SECS,
                 tasks_dir: Optional[Path] = None,
                 repo_factory: Callable[[Path], GitRepository] = GitRepository):
        """
        Initialize status watcher.

        Args:
            controller: Session control used for liveness checks
            clock: Time source (defaults to the system clock)
            poll_interval: Seconds between polls
            tasks_dir: Root of team task directories for progress counts
            repo_factory: Opens the worktree repository for last-commit lookups
        """
        self.controller = controller
        self.clock = clock or SystemClock()
        self.poll_interval = poll_interval
        self.tasks_dir = Path(tasks_dir) if tasks_dir else None
        self.repo_factory = repo_factory

    def watch(self, path: Path, timeout_secs: float,
              session: Optional[str] = None) -> WaitResult:
        """
        Poll until the phase finishes, its session dies, or time runs out.

        Args:
            path: Status artifact path
            timeout_secs: Overall budget
            session: tmux session whose disappearance ends the watch

        Returns:
            WaitResult with status complete, blocked, session_died or timeout
        """
        start = self.clock.monotonic()

        while True:
            outcome = self._check_terminal(path, session)
            if outcome is not None:
                return outcome

            elapsed = self.clock.monotonic() - start
            if elapsed >= timeout_secs:
                return self._timeout_result(timeout_secs)

            self.clock.sleep(min(self.poll_interval, timeout_secs - elapsed))

    def watch_streaming(self,
                        path: Path,
                        cwd: Path,
                        team: Optional[str],
                        timeout_secs: float,
                        interval_secs: float,
                        session: Optional[str] = None,
                        emit: Optional[Callable[[StatusUpdate], None]] = None) -> WaitResult:
        """
        Like ``watch`` but emits a StatusUpdate once per ``interval_secs``.

        The first snapshot is emitted immediately. Snapshots are emitted one
        at a time as each tick comes due, never batched.

        Args:
            path: Status artifact path
            cwd: Worktree used for the last-commit lookup
            team: Team whose task files provide progress counts
            timeout_secs: Overall budget
            interval_secs: Seconds between snapshots
            session: tmux session whose disappearance ends the watch
            emit: Callback receiving each snapshot

        Returns:
            WaitResult with status complete, blocked, session_died or timeout
        """
        if interval_secs <= 0:
            raise ValueError("interval_secs must be positive")

        start = self.clock.monotonic()
        next_emit = 0.0
        repo = self.open_repo(cwd)

        while True:
            outcome = self._check_terminal(path, session)
            if outcome is not None:
                return outcome

            elapsed = self.clock.monotonic() - start
            if elapsed >= timeout_secs:
                return self._timeout_result(timeout_secs)

            if elapsed >= next_emit:
                if emit is not None:
                    emit(self.snapshot(path, elapsed, team, repo))
                while next_emit <= elapsed:
                    next_emit += interval_secs

            wait = min(self.poll_interval, next_emit - elapsed, timeout_secs - elapsed)
            self.clock.sleep(max(wait, 0.0))

    def snapshot(self, path: Path, elapsed: float, team: Optional[str] = None,
                 repo: Optional[GitRepository] = None) -> StatusUpdate:
        """Build a progress snapshot for the current moment."""
        data = read_status_file(path)
        update = StatusUpdate(elapsed_secs=int(elapsed), status=current_status(path))
        if data:
            update.git_range = data.get('git_range')
            update.blocked_reason = data.get('blocked_reason')

            age = heartbeat_age_secs(data, self.clock.now())
            if age is not None and age > HEARTBEAT_STALE_SECS:
                logger.warning(f"Heartbeat in {path} is {int(age)}s old")

        if team and self.tasks_dir is not None:
            progress = task_progress(self.tasks_dir, team)
            if progress.total:
                update.tasks_complete = progress.completed
                update.tasks_total = progress.total
            if progress.in_progress:
                update.current_task = ", ".join(progress.in_progress)

        if repo is not None:
            update.last_commit = repo.last_commit()

        return update

    def _check_terminal(self, path: Path, session: Optional[str]) -> Optional[WaitResult]:
        result = check_status_file(path)
        if result is not None:
            return result

        if session and not self._session_alive(session):
            return WaitResult(
                status='session_died',
                reason=f"tmux session '{session}' no longer exists",
            )
        return None

    def _session_alive(self, session: str) -> bool:
        try:
            return self.controller.exists(session)
        except ProcessControlError as e:
            # tmux unreachable is not the same as the session being gone
            logger.debug(f"Liveness check for {session} failed: {e}")
            return True

    def open_repo(self, cwd: Path) -> Optional[GitRepository]:
        try:
            return self.repo_factory(cwd)
        except GitError as e:
            logger.debug(f"No git repository for status snapshots: {e}")
            return None

    @staticmethod
    def _timeout_result(timeout_secs: float) -> WaitResult:
        secs = int(timeout_secs) if float(timeout_secs).is_integer() else timeout_secs
        return WaitResult(status='timeout', reason=f"Timed out after {secs} seconds")
