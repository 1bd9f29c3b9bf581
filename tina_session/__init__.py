"""
tina-session - Phased Agent Orchestration in tmux

Runs each phase of a feature as a team-lead agent inside its own tmux
session, watches the phase's status artifact until it finishes, keeps the
supervisor state in the feature's git worktree, and mirrors orchestration
progress into a remote store through a background sync daemon.

Version: 0.4.0
"""

from .core.errors import TinaError
from .core.naming import session_name
from .core.orchestrator import Orchestrator
from .core.registry import SessionLookup, SessionRegistry
from .core.schema import OrchestrationStatus, PhaseStatus, SupervisorState
from .core.state_machine import OrchestrationStateMachine, StateStore

# Infrastructure
from .git.worktree_manager import WorktreeManager
from .tmux.session_controller import ProcessController, TmuxSessionController
from .tmux.readiness import ReadinessDetector
from .monitoring.status_watcher import StatusWatcher, StatusUpdate, WaitResult

# Sync
from .daemon.sync_loop import DaemonSync
from .remote.store import RemoteStore

from .utils.config_loader import ConfigLoader, TinaConfig
from .main import TinaContext, create_context, create_orchestrator

__version__ = "0.4.0"
__description__ = "Phased agent orchestration in tmux sessions"

__all__ = [
    # Core
    'Orchestrator',
    'OrchestrationStateMachine', 'StateStore',
    'OrchestrationStatus', 'PhaseStatus', 'SupervisorState',
    'SessionLookup', 'SessionRegistry',
    'TinaError',
    'session_name',

    # Infrastructure
    'WorktreeManager',
    'ProcessController', 'TmuxSessionController',
    'ReadinessDetector',
    'StatusWatcher', 'StatusUpdate', 'WaitResult',

    # Sync
    'DaemonSync',
    'RemoteStore',

    # Wiring
    'ConfigLoader', 'TinaConfig',
    'TinaContext', 'create_context', 'create_orchestrator',

    '__version__',
    '__description__',
]


def get_version():
    """Get the current version of tina-session."""
    return __version__
