"""
HTTP Remote Store Module

RemoteStore over the store's HTTP function API: every operation is a
``POST {url}/api/query`` or ``POST {url}/api/mutation`` naming a server
function and its arguments.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from ..core.errors import DesignNotFound, RemoteStoreError, TicketNotFound
from .store import (
    CommentRecord, CommitRecord, OrchestrationRecord, PhaseRecord, PlanRecord,
    RemoteStore, TaskEventRecord, TeamMemberRecord, TeamRecord
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECS = 10


class HttpRemoteStore(RemoteStore):
    """
    Remote store client built on requests.

    Features:
    - Bearer-token authentication
    - Uniform error mapping to RemoteStoreError
    - Reused HTTP session per client
    """

    def __init__(self, base_url: str, auth_token: Optional[str] = None,
                 timeout: float = DEFAULT_TIMEOUT_SECS,
                 session: Optional[requests.Session] = None):
        """
        Initialize the client.

        Args:
            base_url: Deployment URL (e.g. ``https://example.convex.cloud``)
            auth_token: Optional bearer token
            timeout: Per-request timeout in seconds
            session: Pre-configured requests session (tests inject one)
        """
        if not base_url:
            raise RemoteStoreError("No remote store URL configured (set convex_url)")
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers['Content-Type'] = 'application/json'
        if auth_token:
            self.session.headers['Authorization'] = f"Bearer {auth_token}"

    def query(self, path: str, args: Dict[str, Any]) -> Any:
        return self._call('query', path, args)

    def mutation(self, path: str, args: Dict[str, Any]) -> Any:
        return self._call('mutation', path, args)

    def fetch_orchestration(self, feature: str) -> Optional[Dict[str, Any]]:
        return self.query('orchestrations:getByFeature', {'featureName': feature})

    def upsert_orchestration(self, record: OrchestrationRecord) -> str:
        return self.mutation('orchestrations:upsertOrchestration', record.to_args())

    def upsert_phase(self, record: PhaseRecord) -> str:
        return self.mutation('phases:upsertPhase', record.to_args())

    def register_team(self, record: TeamRecord) -> str:
        return self.mutation('teams:registerTeam', record.to_args())

    def upsert_team_member(self, record: TeamMemberRecord) -> str:
        return self.mutation('teamMembers:upsertTeamMember', record.to_args())

    def record_task_event(self, record: TaskEventRecord) -> str:
        return self.mutation('tasks:recordTaskEvent', record.to_args())

    def upsert_commit(self, record: CommitRecord) -> str:
        return self.mutation('commits:recordCommit', record.to_args())

    def upsert_plan(self, record: PlanRecord) -> str:
        return self.mutation('plans:upsertPlan', record.to_args())

    def add_comment(self, record: CommentRecord) -> str:
        return self.mutation('workComments:addComment', record.to_args())

    def list_comments(self, target_type: str, target_id: str) -> List[Dict[str, Any]]:
        return self.query('workComments:listComments',
                          {'targetType': target_type, 'targetId': target_id}) or []

    def get_design(self, design_id: str) -> Dict[str, Any]:
        design = self.query('designs:getDesign', {'designId': design_id})
        if design is None:
            raise DesignNotFound(design_id)
        return design

    def update_design(self, design_id: str, fields: Dict[str, Any]) -> None:
        self.mutation('designs:updateDesign', dict(fields, designId=design_id))

    def get_ticket(self, ticket_id: str) -> Dict[str, Any]:
        ticket = self.query('tickets:getTicket', {'ticketId': ticket_id})
        if ticket is None:
            raise TicketNotFound(ticket_id)
        return ticket

    def update_ticket(self, ticket_id: str, fields: Dict[str, Any]) -> None:
        self.mutation('tickets:updateTicket', dict(fields, ticketId=ticket_id))

    def heartbeat(self, node_name: str) -> None:
        self.mutation('nodes:heartbeat', {'nodeName': node_name})

    def _call(self, kind: str, path: str, args: Dict[str, Any]) -> Any:
        url = f"{self.base_url}/api/{kind}"
        payload = {'path': path, 'args': args, 'format': 'json'}

        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise RemoteStoreError(f"{kind} {path} failed: {e}") from e

        if response.status_code != 200:
            raise RemoteStoreError(
                f"{kind} {path} failed: HTTP {response.status_code} {response.text[:200]}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise RemoteStoreError(f"{kind} {path} returned invalid JSON") from e

        if not isinstance(body, dict):
            raise RemoteStoreError(f"{kind} {path} returned {type(body).__name__}, expected an object")

        if body.get('status') != 'success':
            raise RemoteStoreError(
                f"{kind} {path} failed: {body.get('errorMessage', 'unknown error')}"
            )

        logger.debug(f"{kind} {path} ok")
        return body.get('value')
