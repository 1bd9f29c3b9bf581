"""
State Schema Module

Data structures for orchestration state (written by this package) and for
team/task files (written by the agent runtime and only read here).
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidStatus

STATE_VERSION = 1


class OrchestrationStatus(Enum):
    """Orchestration lifecycle states."""
    PLANNING = "planning"
    PLANNED = "planned"
    EXECUTING = "executing"
    REVIEWING = "reviewing"
    COMPLETE = "complete"
    BLOCKED = "blocked"

    @classmethod
    def parse(cls, value: str) -> 'OrchestrationStatus':
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise InvalidStatus(value, ", ".join(s.value for s in cls)) from None


class PhaseStatus(Enum):
    """Phase lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    BLOCKED = "blocked"

    @classmethod
    def parse(cls, value: str) -> 'PhaseStatus':
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise InvalidStatus(value, ", ".join(s.value for s in cls)) from None


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (``Z`` suffix accepted); naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class PhaseBreakdown:
    """Minutes spent in each part of a phase."""
    planning_mins: Optional[float] = None
    execution_mins: Optional[float] = None
    review_mins: Optional[float] = None


@dataclass
class PhaseState:
    """State of one phase of an orchestration"""
    status: PhaseStatus = PhaseStatus.PENDING
    team_name: Optional[str] = None
    plan_path: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_mins: Optional[float] = None
    git_range: Optional[str] = None
    blocked_reason: Optional[str] = None
    breakdown: PhaseBreakdown = field(default_factory=PhaseBreakdown)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PhaseState':
        breakdown = data.get('breakdown') or {}
        return cls(
            status=PhaseStatus.parse(data.get('status', 'pending')),
            team_name=data.get('team_name'),
            plan_path=data.get('plan_path'),
            started_at=data.get('started_at'),
            completed_at=data.get('completed_at'),
            duration_mins=data.get('duration_mins'),
            git_range=data.get('git_range'),
            blocked_reason=data.get('blocked_reason'),
            breakdown=PhaseBreakdown(
                planning_mins=breakdown.get('planning_mins'),
                execution_mins=breakdown.get('execution_mins'),
                review_mins=breakdown.get('review_mins'),
            ),
        )


@dataclass
class TimingStats:
    active_mins: float = 0.0
    total_elapsed_mins: Optional[float] = None


@dataclass
class SupervisorState:
    """Complete durable state of an orchestration"""
    feature: str
    design_doc: str
    worktree_path: str
    branch: str
    total_phases: int
    current_phase: int = 1
    status: OrchestrationStatus = OrchestrationStatus.PLANNING
    orchestration_started_at: str = field(default_factory=utc_now_iso)
    phases: Dict[str, PhaseState] = field(default_factory=dict)
    timing: TimingStats = field(default_factory=TimingStats)
    model_policy: Optional[Dict[str, Any]] = None
    review_policy: Optional[Dict[str, Any]] = None
    version: int = STATE_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'feature': self.feature,
            'design_doc': self.design_doc,
            'worktree_path': self.worktree_path,
            'branch': self.branch,
            'total_phases': self.total_phases,
            'current_phase': self.current_phase,
            'status': self.status.value,
            'orchestration_started_at': self.orchestration_started_at,
            'phases': {key: phase.to_dict() for key, phase in self.phases.items()},
            'timing': asdict(self.timing),
            'model_policy': self.model_policy,
            'review_policy': self.review_policy,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SupervisorState':
        timing = data.get('timing') or {}
        return cls(
            version=data.get('version', STATE_VERSION),
            feature=data['feature'],
            design_doc=data.get('design_doc', ''),
            worktree_path=data['worktree_path'],
            branch=data.get('branch', ''),
            total_phases=int(data['total_phases']),
            current_phase=int(data.get('current_phase', 1)),
            status=OrchestrationStatus.parse(data.get('status', 'planning')),
            orchestration_started_at=data.get('orchestration_started_at') or utc_now_iso(),
            phases={
                str(key): PhaseState.from_dict(value)
                for key, value in (data.get('phases') or {}).items()
            },
            timing=TimingStats(
                active_mins=timing.get('active_mins', 0.0),
                total_elapsed_mins=timing.get('total_elapsed_mins'),
            ),
            model_policy=data.get('model_policy'),
            review_policy=data.get('review_policy'),
        )

    @staticmethod
    def state_path(worktree_path: Path) -> Path:
        return Path(worktree_path) / '.claude' / 'tina' / 'supervisor-state.json'


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class Task(BaseModel):
    """A task file written by the agent runtime."""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    id: str
    subject: str = ""
    description: str = ""
    active_form: Optional[str] = Field(default=None, alias='activeForm')
    status: TaskStatus = TaskStatus.PENDING
    owner: Optional[str] = None
    blocks: List[str] = Field(default_factory=list)
    blocked_by: List[str] = Field(default_factory=list, alias='blockedBy')
    metadata: Optional[Dict[str, Any]] = None


class Agent(BaseModel):
    """A team member entry in a team config file."""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    agent_id: str = Field(alias='agentId')
    name: str
    agent_type: Optional[str] = Field(default=None, alias='agentType')
    model: Optional[str] = None
    joined_at: Optional[int] = Field(default=None, alias='joinedAt')
    tmux_pane_id: Optional[str] = Field(default=None, alias='tmuxPaneId')
    cwd: str = ""
    subscriptions: List[str] = Field(default_factory=list)


class Team(BaseModel):
    """A team config file (``~/.claude/teams/{name}/config.json``)."""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    name: str
    description: Optional[str] = None
    created_at: Optional[int] = Field(default=None, alias='createdAt')
    lead_agent_id: Optional[str] = Field(default=None, alias='leadAgentId')
    lead_session_id: Optional[str] = Field(default=None, alias='leadSessionId')
    members: List[Agent] = Field(default_factory=list)
