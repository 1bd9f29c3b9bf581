"""
Remote Store Module

Records and operation contracts for the remote orchestration store. The
daemon and commands depend only on RemoteStore; how calls travel to the
store is up to the implementation.

Upserts are keyed by stable identifiers (feature, sha, orchestration+path,
orchestration+phase, ...) so repeating a call never creates a duplicate.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional


def _camel(name: str) -> str:
    head, *rest = name.split('_')
    return head + ''.join(part.title() for part in rest)


class Record:
    """Mixin turning a dataclass into store call arguments (camelCase, no Nones)."""

    def to_args(self) -> Dict[str, Any]:
        return {_camel(k): v for k, v in asdict(self).items() if v is not None}


@dataclass
class OrchestrationRecord(Record):
    node_id: str
    feature_name: str
    design_doc_path: str
    branch: str
    total_phases: int
    current_phase: int
    status: str
    started_at: str
    worktree_path: Optional[str] = None
    completed_at: Optional[str] = None
    total_elapsed_mins: Optional[float] = None


@dataclass
class PhaseRecord(Record):
    orchestration_id: str
    phase_number: str
    status: str
    plan_path: Optional[str] = None
    git_range: Optional[str] = None
    planning_mins: Optional[float] = None
    execution_mins: Optional[float] = None
    review_mins: Optional[float] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


@dataclass
class TeamRecord(Record):
    team_name: str
    orchestration_id: str
    lead_session_id: str
    local_dir_name: str
    created_at: int
    tmux_session_name: Optional[str] = None
    phase_number: Optional[str] = None


@dataclass
class TeamMemberRecord(Record):
    orchestration_id: str
    phase_number: str
    agent_name: str
    recorded_at: str
    agent_type: Optional[str] = None
    model: Optional[str] = None
    joined_at: Optional[str] = None


@dataclass
class TaskEventRecord(Record):
    orchestration_id: str
    task_id: str
    subject: str
    status: str
    recorded_at: str
    phase_number: Optional[str] = None
    description: Optional[str] = None
    owner: Optional[str] = None
    blocked_by: Optional[str] = None
    metadata: Optional[str] = None


@dataclass
class CommitRecord(Record):
    orchestration_id: str
    phase_number: str
    sha: str
    short_sha: str
    subject: str
    author: str
    timestamp: str
    insertions: int = 0
    deletions: int = 0


@dataclass
class PlanRecord(Record):
    orchestration_id: str
    phase_number: str
    plan_path: str
    content: str


@dataclass
class CommentRecord(Record):
    project_id: str
    target_type: str
    target_id: str
    author_type: str
    author_name: str
    body: str


class RemoteStore:
    """
    Operations the orchestration core needs from the remote store.

    Implementations raise RemoteStoreError for transport or server failures
    and the specific NotFoundError subclasses for absent designs/tickets.
    """

    def fetch_orchestration(self, feature: str) -> Optional[Dict[str, Any]]:
        """Return the orchestration document for a feature, or None."""
        raise NotImplementedError

    def upsert_orchestration(self, record: OrchestrationRecord) -> str:
        """Create or update an orchestration keyed by feature; returns its id."""
        raise NotImplementedError

    def upsert_phase(self, record: PhaseRecord) -> str:
        raise NotImplementedError

    def register_team(self, record: TeamRecord) -> str:
        raise NotImplementedError

    def upsert_team_member(self, record: TeamMemberRecord) -> str:
        raise NotImplementedError

    def record_task_event(self, record: TaskEventRecord) -> str:
        raise NotImplementedError

    def upsert_commit(self, record: CommitRecord) -> str:
        """Create a commit keyed by sha; an existing sha is left as is."""
        raise NotImplementedError

    def upsert_plan(self, record: PlanRecord) -> str:
        """Create or replace the plan keyed by (orchestration, path)."""
        raise NotImplementedError

    def add_comment(self, record: CommentRecord) -> str:
        raise NotImplementedError

    def list_comments(self, target_type: str, target_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def get_design(self, design_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    def update_design(self, design_id: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError

    def get_ticket(self, ticket_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    def update_ticket(self, ticket_id: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError

    def heartbeat(self, node_name: str) -> None:
        raise NotImplementedError
