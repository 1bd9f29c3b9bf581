"""
Main wiring for tina-session.

Builds the explicit context object that every command receives instead of
reaching for process-wide singletons, so tests can run isolated instances
side by side.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .core.orchestrator import Orchestrator
from .core.registry import SessionRegistry
from .core.state_machine import StateStore
from .remote.http_store import HttpRemoteStore
from .remote.store import RemoteStore
from .tmux.session_controller import ProcessController, TmuxSessionController
from .utils.clock import Clock, SystemClock
from .utils.config_loader import ConfigLoader, TinaConfig

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class TinaContext:
    """Everything a command needs, constructed once per invocation"""
    config: TinaConfig
    registry: SessionRegistry
    controller: ProcessController
    clock: Clock
    state_store: StateStore = field(default_factory=StateStore)
    store: Optional[RemoteStore] = None

    def remote_store(self) -> RemoteStore:
        """The configured remote store, created on first use."""
        if self.store is None:
            self.store = HttpRemoteStore(self.config.convex_url, self.config.auth_token)
        return self.store


def create_context(config: Optional[TinaConfig] = None,
                   config_dir: Optional[Path] = None,
                   profile: Optional[str] = None,
                   controller: Optional[ProcessController] = None,
                   store: Optional[RemoteStore] = None,
                   clock: Optional[Clock] = None) -> TinaContext:
    """
    Create a fully wired context.

    Args:
        config: Pre-built configuration (skips loading from disk)
        config_dir: Directory holding config.yaml
        profile: Config profile name
        controller: Session controller override (tests pass a fake)
        store: Remote store override
        clock: Clock override

    Returns:
        TinaContext
    """
    if config is None:
        config = ConfigLoader(config_dir=config_dir).load(profile)

    return TinaContext(
        config=config,
        registry=SessionRegistry(config.registry_dir),
        controller=controller or TmuxSessionController(),
        clock=clock or SystemClock(),
        store=store,
    )


def create_orchestrator(context: Optional[TinaContext] = None, **kwargs) -> Orchestrator:
    """Create an Orchestrator, building a default context if none is given."""
    return Orchestrator(context or create_context(**kwargs))


def configure_logging(level: str = 'INFO', log_file: Optional[Path] = None) -> None:
    """
    Configure root logging the way the daemon and CLI share it.

    Args:
        level: Logging level name
        log_file: Optional file receiving the same records as stderr
    """
    handlers = [logging.StreamHandler()]
    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
