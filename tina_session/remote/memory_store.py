"""
In-Memory Remote Store Module

Dict-backed RemoteStore honoring the same keying rules as the real store.
Used by tests and by ``--dry-run`` daemon cycles; ``calls`` counts every
operation so callers can assert how many writes happened.
"""

import itertools
from collections import Counter
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Tuple

from ..core.errors import DesignNotFound, TicketNotFound
from .store import (
    CommentRecord, CommitRecord, OrchestrationRecord, PhaseRecord, PlanRecord,
    RemoteStore, TaskEventRecord, TeamMemberRecord, TeamRecord
)


class InMemoryRemoteStore(RemoteStore):
    """Remote store kept entirely in process memory."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.calls: Counter = Counter()
        self.orchestrations: Dict[str, Dict[str, Any]] = {}
        self.phases: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.teams: Dict[str, Dict[str, Any]] = {}
        self.team_members: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.task_events: List[Dict[str, Any]] = []
        self.commits: Dict[str, Dict[str, Any]] = {}
        self.plans: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.comments: List[Dict[str, Any]] = []
        self.designs: Dict[str, Dict[str, Any]] = {}
        self.tickets: Dict[str, Dict[str, Any]] = {}
        self.heartbeats: List[str] = []

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    @property
    def upsert_count(self) -> int:
        """Total writes (everything except reads and heartbeats)."""
        reads = {'fetch_orchestration', 'list_comments', 'get_design', 'get_ticket', 'heartbeat'}
        return sum(n for name, n in self.calls.items() if name not in reads)

    def fetch_orchestration(self, feature: str) -> Optional[Dict[str, Any]]:
        self.calls['fetch_orchestration'] += 1
        return self.orchestrations.get(feature)

    def upsert_orchestration(self, record: OrchestrationRecord) -> str:
        self.calls['upsert_orchestration'] += 1
        existing = self.orchestrations.get(record.feature_name)
        doc_id = existing['_id'] if existing else self._new_id('orch')
        self.orchestrations[record.feature_name] = dict(asdict(record), _id=doc_id)
        return doc_id

    def upsert_phase(self, record: PhaseRecord) -> str:
        self.calls['upsert_phase'] += 1
        key = (record.orchestration_id, record.phase_number)
        doc_id = self.phases[key]['_id'] if key in self.phases else self._new_id('phase')
        self.phases[key] = dict(asdict(record), _id=doc_id)
        return doc_id

    def register_team(self, record: TeamRecord) -> str:
        self.calls['register_team'] += 1
        existing = self.teams.get(record.team_name)
        doc_id = existing['_id'] if existing else self._new_id('team')
        self.teams[record.team_name] = dict(asdict(record), _id=doc_id)
        return doc_id

    def upsert_team_member(self, record: TeamMemberRecord) -> str:
        self.calls['upsert_team_member'] += 1
        key = (record.orchestration_id, record.phase_number, record.agent_name)
        doc_id = self.team_members[key]['_id'] if key in self.team_members else self._new_id('member')
        self.team_members[key] = dict(asdict(record), _id=doc_id)
        return doc_id

    def record_task_event(self, record: TaskEventRecord) -> str:
        self.calls['record_task_event'] += 1
        doc_id = self._new_id('event')
        self.task_events.append(dict(asdict(record), _id=doc_id))
        return doc_id

    def upsert_commit(self, record: CommitRecord) -> str:
        self.calls['upsert_commit'] += 1
        existing = self.commits.get(record.sha)
        if existing:
            return existing['_id']
        doc_id = self._new_id('commit')
        self.commits[record.sha] = dict(asdict(record), _id=doc_id)
        return doc_id

    def upsert_plan(self, record: PlanRecord) -> str:
        self.calls['upsert_plan'] += 1
        key = (record.orchestration_id, record.plan_path)
        doc_id = self.plans[key]['_id'] if key in self.plans else self._new_id('plan')
        self.plans[key] = dict(asdict(record), _id=doc_id)
        return doc_id

    def add_comment(self, record: CommentRecord) -> str:
        self.calls['add_comment'] += 1
        doc_id = self._new_id('comment')
        self.comments.append(dict(asdict(record), _id=doc_id))
        return doc_id

    def list_comments(self, target_type: str, target_id: str) -> List[Dict[str, Any]]:
        self.calls['list_comments'] += 1
        return [c for c in self.comments
                if c['target_type'] == target_type and c['target_id'] == target_id]

    def get_design(self, design_id: str) -> Dict[str, Any]:
        self.calls['get_design'] += 1
        if design_id not in self.designs:
            raise DesignNotFound(design_id)
        return self.designs[design_id]

    def update_design(self, design_id: str, fields: Dict[str, Any]) -> None:
        self.calls['update_design'] += 1
        if design_id not in self.designs:
            raise DesignNotFound(design_id)
        self.designs[design_id].update(fields)

    def get_ticket(self, ticket_id: str) -> Dict[str, Any]:
        self.calls['get_ticket'] += 1
        if ticket_id not in self.tickets:
            raise TicketNotFound(ticket_id)
        return self.tickets[ticket_id]

    def update_ticket(self, ticket_id: str, fields: Dict[str, Any]) -> None:
        self.calls['update_ticket'] += 1
        if ticket_id not in self.tickets:
            raise TicketNotFound(ticket_id)
        self.tickets[ticket_id].update(fields)

    def heartbeat(self, node_name: str) -> None:
        self.calls['heartbeat'] += 1
        self.heartbeats.append(node_name)
