"""
Daemon Sync Loop Module

Background reconciler that keeps the remote store's view of every active
orchestration current: supervisor state, commits, plan documents, team
members and task events. Each cycle rediscovers worktrees from the session
registry, so orchestrations that finish drop out at the next cycle.
"""

import hashlib
import json
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ..core.errors import GitError, RemoteStoreError, TinaError
from ..core.naming import extract_phase_number, phase_sort_key
from ..core.registry import SessionRegistry
from ..core.schema import (
    OrchestrationStatus, SupervisorState, Team, parse_timestamp, utc_now_iso
)
from ..core.state_machine import StateStore
from ..git.repository import GitCommit, GitRepository
from ..monitoring.status_watcher import load_tasks
from ..remote.store import (
    CommitRecord, OrchestrationRecord, PhaseRecord, PlanRecord, RemoteStore,
    TaskEventRecord, TeamMemberRecord, TeamRecord
)
from ..utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

PLANS_SUBDIR = Path('docs') / 'plans'
# commit SHAs remembered across cycles; the store also keys commits by SHA
MAX_SEEN_SHAS = 10000


@dataclass
class ActiveWorktree:
    """An orchestration the daemon is responsible for this cycle"""
    feature: str
    worktree_path: Path
    state: SupervisorState
    repo_root: Optional[Path] = None

    @property
    def plan_dirs(self) -> List[Path]:
        dirs = [self.worktree_path / PLANS_SUBDIR]
        if self.repo_root is not None:
            repo_plans = self.repo_root / PLANS_SUBDIR
            if repo_plans != dirs[0]:
                dirs.append(repo_plans)
        return dirs


@dataclass(frozen=True)
class TaskCacheEntry:
    status: str
    subject: str
    owner: Optional[str]


@dataclass
class SyncCache:
    """What has already been written, so unchanged data is never re-sent"""
    orchestration_ids: Dict[str, str] = field(default_factory=dict)
    state_hashes: Dict[str, str] = field(default_factory=dict)
    last_commit_sha: Dict[str, str] = field(default_factory=dict)
    seen_shas: 'OrderedDict[str, None]' = field(default_factory=OrderedDict)
    max_seen_shas: int = MAX_SEEN_SHAS
    plan_hashes: Dict[Tuple[str, str], str] = field(default_factory=dict)
    registered_teams: Dict[str, str] = field(default_factory=dict)
    team_member_state: Dict[Tuple[str, str, str], Tuple[Optional[str], Optional[str]]] = field(default_factory=dict)
    task_state: Dict[Tuple[str, str], TaskCacheEntry] = field(default_factory=dict)

    def commit_seen(self, sha: str) -> bool:
        return sha in self.seen_shas

    def mark_commit_seen(self, sha: str) -> None:
        """Remember a synced SHA, forgetting the oldest past ``max_seen_shas``."""
        self.seen_shas[sha] = None
        self.seen_shas.move_to_end(sha)
        while len(self.seen_shas) > self.max_seen_shas:
            self.seen_shas.popitem(last=False)


@dataclass
class SyncReport:
    """Counts of writes performed by one cycle"""
    worktrees: int = 0
    orchestrations_upserted: int = 0
    phases_upserted: int = 0
    commits_upserted: int = 0
    plans_upserted: int = 0
    teams_registered: int = 0
    members_upserted: int = 0
    tasks_recorded: int = 0
    failures: List[str] = field(default_factory=list)

    @property
    def upserts(self) -> int:
        return (self.orchestrations_upserted + self.phases_upserted + self.commits_upserted
                + self.plans_upserted + self.teams_registered + self.members_upserted
                + self.tasks_recorded)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def plan_filename_pattern(feature: str) -> re.Pattern:
    """Dated plan documents: ``YYYY-MM-DD-{feature}-phase-{N}.md``."""
    return re.compile(
        rf'^\d{{4}}-\d{{2}}-\d{{2}}-{re.escape(feature)}-phase-(\d+(?:\.\d+)*)\.md$'
    )


def attribute_phase(state: SupervisorState, commit_timestamp: str) -> str:
    """
    Pick the phase a commit belongs to.

    The commit goes to the latest-started phase that started at or before
    the commit; commits older than every phase go to ``current_phase``.
    """
    committed = parse_timestamp(commit_timestamp)
    best_key = None
    best_start = None

    if committed is not None:
        for key in sorted(state.phases, key=phase_sort_key):
            started = parse_timestamp(state.phases[key].started_at)
            if started is None or started > committed:
                continue
            if best_start is None or started >= best_start:
                best_key, best_start = key, started

    return best_key or str(state.current_phase)


class DaemonSync:
    """
    Discovery-and-sync loop for active orchestrations.

    Features:
    - Worktree discovery from the registry plus supervisor state
    - Idempotent commit, plan, team and task upserts guarded by SyncCache
    - Per-worktree failure isolation: one bad worktree never aborts a cycle
    """

    def __init__(self,
                 registry: SessionRegistry,
                 store: RemoteStore,
                 node_name: str,
                 teams_dir: Optional[Path] = None,
                 tasks_dir: Optional[Path] = None,
                 state_store: Optional[StateStore] = None,
                 repo_factory: Callable[[Path], GitRepository] = GitRepository,
                 clock: Clock = None):
        """
        Initialize daemon sync.

        Args:
            registry: Session registry used for discovery
            store: Remote store receiving upserts
            node_name: Name of this machine as reported to the store
            teams_dir: Root of team config directories
            tasks_dir: Root of task directories
            state_store: Supervisor state reader
            repo_factory: Opens a GitRepository for a worktree path
            clock: Time source for the run loop
        """
        self.registry = registry
        self.store = store
        self.node_name = node_name
        self.teams_dir = Path(teams_dir) if teams_dir else None
        self.tasks_dir = Path(tasks_dir) if tasks_dir else None
        self.state_store = state_store or StateStore()
        self.repo_factory = repo_factory
        self.clock = clock or SystemClock()
        self.cache = SyncCache()
        self.running = False

    def discover_worktrees(self) -> List[ActiveWorktree]:
        """
        Registry records whose orchestration state loads and is not complete.

        Returns:
            Active worktrees sorted by feature
        """
        active = []
        for lookup in self.registry.list():
            worktree_path = Path(lookup.worktree_path)
            try:
                state = self.state_store.load(worktree_path)
            except TinaError as e:
                logger.debug(f"Skipping {lookup.feature}: {e}")
                continue

            if state.status is OrchestrationStatus.COMPLETE:
                continue

            active.append(ActiveWorktree(
                feature=lookup.feature,
                worktree_path=worktree_path,
                state=state,
                repo_root=Path(lookup.repo_root) if lookup.repo_root else None,
            ))
        return active

    def run_cycle(self) -> SyncReport:
        """
        Run one full reconciliation pass.

        Returns:
            SyncReport with the writes performed and the features that failed
        """
        report = SyncReport()
        worktrees = self.discover_worktrees()
        report.worktrees = len(worktrees)

        for worktree in worktrees:
            try:
                self.sync_worktree(worktree, report)
            except (TinaError, OSError) as e:
                logger.error(f"Sync failed for {worktree.feature}: {e}")
                report.failures.append(worktree.feature)

        if self.teams_dir is not None:
            self.sync_teams(worktrees, report)

        if report.upserts:
            logger.info(
                f"Cycle synced {report.worktrees} worktrees: {report.commits_upserted} commits, "
                f"{report.plans_upserted} plans, {report.tasks_recorded} task events"
            )
        return report

    def sync_worktree(self, worktree: ActiveWorktree, report: SyncReport) -> None:
        orchestration_id = self.sync_orchestration(worktree, report)
        report.commits_upserted += self.sync_commits(worktree, orchestration_id)
        report.plans_upserted += self.sync_plans(worktree, orchestration_id)

    def sync_orchestration(self, worktree: ActiveWorktree, report: SyncReport) -> str:
        """
        Resolve the store id for a worktree, pushing state when it changed.

        Returns:
            str: orchestration id in the remote store
        """
        state = worktree.state
        state_hash = content_hash(json.dumps(state.to_dict(), sort_keys=True))
        orchestration_id = self.cache.orchestration_ids.get(worktree.feature)

        if orchestration_id is None:
            existing = self.store.fetch_orchestration(worktree.feature)
            if existing:
                orchestration_id = existing.get('_id')

        if orchestration_id is None or self.cache.state_hashes.get(worktree.feature) != state_hash:
            orchestration_id = self.store.upsert_orchestration(
                self._orchestration_record(state)
            )
            report.orchestrations_upserted += 1
            for key in sorted(state.phases, key=phase_sort_key):
                self.store.upsert_phase(self._phase_record(orchestration_id, key, state))
                report.phases_upserted += 1
            self.cache.state_hashes[worktree.feature] = state_hash

        self.cache.orchestration_ids[worktree.feature] = orchestration_id
        return orchestration_id

    def sync_commits(self, worktree: ActiveWorktree, orchestration_id: str) -> int:
        """
        Upsert commits made since the last synced SHA, oldest first.

        Returns:
            int: number of commits upserted
        """
        repo = self.repo_factory(worktree.worktree_path)
        since = self.cache.last_commit_sha.get(worktree.feature)

        try:
            commits = repo.commits_since(since)
        except GitError as e:
            if since is None:
                raise
            # history rewritten under us; fall back to a first-sync window
            logger.warning(f"{worktree.feature}: cannot log from {since[:8]}, rescanning ({e})")
            commits = repo.commits_since(None)

        upserted = 0
        for commit in reversed(commits):
            if self.cache.commit_seen(commit.sha):
                continue
            self.store.upsert_commit(self._commit_record(orchestration_id, worktree.state, commit))
            self.cache.mark_commit_seen(commit.sha)
            upserted += 1
            logger.debug(f"{worktree.feature}: synced commit {commit.short_sha}")

        if commits:
            self.cache.last_commit_sha[worktree.feature] = commits[0].sha
        elif since is None:
            self.cache.last_commit_sha[worktree.feature] = repo.head_sha()
        return upserted

    def sync_plans(self, worktree: ActiveWorktree, orchestration_id: str) -> int:
        """
        Upsert plan documents whose content changed since the last cycle.

        Returns:
            int: number of plans upserted
        """
        pattern = plan_filename_pattern(worktree.feature)
        upserted = 0

        for plans_dir in worktree.plan_dirs:
            if not plans_dir.is_dir():
                continue
            for path in sorted(plans_dir.glob('*.md')):
                match = pattern.match(path.name)
                if not match:
                    continue
                try:
                    content = path.read_text(encoding='utf-8')
                except OSError as e:
                    logger.warning(f"Cannot read plan {path}: {e}")
                    continue

                key = (orchestration_id, str(path))
                digest = content_hash(content)
                if self.cache.plan_hashes.get(key) == digest:
                    continue

                self.store.upsert_plan(PlanRecord(
                    orchestration_id=orchestration_id,
                    phase_number=match.group(1),
                    plan_path=str(path),
                    content=content,
                ))
                self.cache.plan_hashes[key] = digest
                upserted += 1
                logger.debug(f"{worktree.feature}: synced plan {path.name}")

        return upserted

    def sync_teams(self, worktrees: List[ActiveWorktree], report: SyncReport) -> None:
        """Register teams, upsert members and record task changes for active orchestrations."""
        if not self.teams_dir.is_dir():
            return

        for config_path in sorted(self.teams_dir.glob('*/config.json')):
            team_name = config_path.parent.name
            try:
                with open(config_path, 'r', encoding='utf-8') as f:
                    team = Team.model_validate(json.load(f))
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Failed to load team config {config_path}: {e}")
                continue

            feature = self._feature_for_team(team_name, team, worktrees)
            if feature is None:
                continue
            orchestration_id = self.cache.orchestration_ids.get(feature)
            if orchestration_id is None:
                continue

            try:
                self._sync_team(team_name, team, orchestration_id, feature, report)
            except RemoteStoreError as e:
                logger.error(f"Team sync failed for {team_name}: {e}")
                report.failures.append(team_name)

    def run(self, interval_secs: float) -> None:
        """
        Main daemon loop: run a cycle, then wait ``interval_secs``.

        Stops when ``stop()`` is called (e.g. from a signal handler).
        """
        self.running = True
        logger.info(f"🔍 Sync daemon started on {self.node_name} (every {interval_secs}s)")

        while self.running:
            try:
                self.run_cycle()
                self.store.heartbeat(self.node_name)
            except RemoteStoreError as e:
                logger.error(f"Heartbeat failed: {e}")
            except (TinaError, OSError) as e:
                logger.error(f"Error in sync cycle: {e}")

            waited = 0.0
            while self.running and waited < interval_secs:
                step = min(1.0, interval_secs - waited)
                self.clock.sleep(step)
                waited += step

        logger.info("🛑 Sync daemon stopped")

    def stop(self) -> None:
        self.running = False

    def _sync_team(self, team_name: str, team: Team, orchestration_id: str,
                   feature: str, report: SyncReport) -> None:
        phase_number = extract_phase_number(team_name)
        lead_session = team.lead_session_id or team_name

        if self.cache.registered_teams.get(team_name) != lead_session:
            self.store.register_team(TeamRecord(
                team_name=team_name,
                orchestration_id=orchestration_id,
                lead_session_id=lead_session,
                local_dir_name=team_name,
                created_at=team.created_at or 0,
                phase_number=phase_number,
            ))
            self.cache.registered_teams[team_name] = lead_session
            report.teams_registered += 1

        now = utc_now_iso()
        for member in team.members:
            key = (orchestration_id, phase_number or '0', member.name)
            snapshot = (member.agent_type, member.model)
            if self.cache.team_member_state.get(key) == snapshot:
                continue
            self.store.upsert_team_member(TeamMemberRecord(
                orchestration_id=orchestration_id,
                phase_number=phase_number or '0',
                agent_name=member.name,
                agent_type=member.agent_type,
                model=member.model,
                joined_at=str(member.joined_at) if member.joined_at is not None else None,
                recorded_at=now,
            ))
            self.cache.team_member_state[key] = snapshot
            report.members_upserted += 1

        if self.tasks_dir is None:
            return
        task_dir = self.tasks_dir / lead_session
        if not task_dir.is_dir():
            task_dir = self.tasks_dir / team_name

        for task in load_tasks(task_dir):
            key = (orchestration_id, task.id)
            current = TaskCacheEntry(task.status.value, task.subject, task.owner)
            if self.cache.task_state.get(key) == current:
                continue
            self.store.record_task_event(TaskEventRecord(
                orchestration_id=orchestration_id,
                phase_number=phase_number,
                task_id=task.id,
                subject=task.subject,
                description=task.description or None,
                status=task.status.value,
                owner=task.owner,
                blocked_by=json.dumps(task.blocked_by) if task.blocked_by else None,
                metadata=json.dumps(task.metadata) if task.metadata else None,
                recorded_at=now,
            ))
            self.cache.task_state[key] = current
            report.tasks_recorded += 1
            logger.debug(f"{feature}: task {task.id} -> {task.status.value}")

    def _feature_for_team(self, team_name: str, team: Team,
                          worktrees: List[ActiveWorktree]) -> Optional[str]:
        features = {w.feature for w in worktrees}

        if team_name.endswith('-orchestration'):
            feature = team_name[:-len('-orchestration')]
            if feature in features:
                return feature

        phase = extract_phase_number(team_name)
        if phase is not None:
            feature = team_name[:team_name.rfind(f'-phase-{phase}')]
            if feature in features:
                return feature

        if team.members:
            member_cwd = Path(team.members[0].cwd).resolve() if team.members[0].cwd else None
            for worktree in worktrees:
                if member_cwd is not None and worktree.worktree_path.resolve() == member_cwd:
                    return worktree.feature
        return None

    def _orchestration_record(self, state: SupervisorState) -> OrchestrationRecord:
        return OrchestrationRecord(
            node_id=self.node_name,
            feature_name=state.feature,
            design_doc_path=state.design_doc,
            branch=state.branch,
            worktree_path=state.worktree_path,
            total_phases=state.total_phases,
            current_phase=state.current_phase,
            status=state.status.value,
            started_at=state.orchestration_started_at,
            total_elapsed_mins=state.timing.total_elapsed_mins,
        )

    @staticmethod
    def _phase_record(orchestration_id: str, key: str, state: SupervisorState) -> PhaseRecord:
        phase = state.phases[key]
        return PhaseRecord(
            orchestration_id=orchestration_id,
            phase_number=key,
            status=phase.status.value,
            plan_path=phase.plan_path,
            git_range=phase.git_range,
            planning_mins=phase.breakdown.planning_mins,
            execution_mins=phase.breakdown.execution_mins,
            review_mins=phase.breakdown.review_mins,
            started_at=phase.started_at,
            completed_at=phase.completed_at,
        )

    @staticmethod
    def _commit_record(orchestration_id: str, state: SupervisorState,
                       commit: GitCommit) -> CommitRecord:
        return CommitRecord(
            orchestration_id=orchestration_id,
            phase_number=attribute_phase(state, commit.timestamp),
            sha=commit.sha,
            short_sha=commit.short_sha,
            subject=commit.subject,
            author=commit.author,
            timestamp=commit.timestamp,
            insertions=commit.insertions,
            deletions=commit.deletions,
        )
