"""
Test doubles shared by the test modules: an in-memory tmux controller and a
scripted git repository.
"""

from pathlib import Path
from typing import Dict, List, Optional

from tina_session.core.errors import GitError, ProcessControlError, SessionAlreadyExists
from tina_session.core.registry import SessionRegistry
from tina_session.git.repository import GitCommit
from tina_session.main import TinaContext
from tina_session.tmux.session_controller import ProcessController
from tina_session.utils.clock import ManualClock
from tina_session.utils.config_loader import TinaConfig

READY_PROMPT = "❯ "


class FakeController(ProcessController):
    """
    tmux stand-in keeping sessions in a dict.

    When ``agent_starts`` is set, typing the agent launch command makes a
    ready prompt appear in the pane, like the real agent does.
    """

    def __init__(self, agent_starts: bool = True):
        self.agent_starts = agent_starts
        self.sessions: Dict[str, Path] = {}
        self.panes: Dict[str, str] = {}
        self.sent: List[tuple] = []
        self.killed: List[str] = []
        self.attached: List[str] = []
        self.fail_exists = False

    def exists(self, name: str) -> bool:
        if self.fail_exists:
            raise ProcessControlError('has-session', 'error connecting to server')
        return name in self.sessions

    def create(self, name: str, cwd: Path, command: Optional[str] = None) -> None:
        if name in self.sessions:
            raise SessionAlreadyExists(name)
        self.sessions[name] = Path(cwd)
        self.panes[name] = ""

    def attach(self, name: str) -> None:
        self._require(name, 'attach-session')
        self.attached.append(name)

    def send_keys(self, name: str, text: str) -> None:
        self._require(name, 'send-keys')
        self.sent.append((name, text, True))
        if self.agent_starts and text.startswith('claude '):
            self.panes[name] += f"\n{READY_PROMPT}"

    def send_raw(self, name: str, text: str) -> None:
        self._require(name, 'send-keys')
        self.sent.append((name, text, False))

    def capture(self, name: str, max_lines: int = 100) -> str:
        self._require(name, 'capture-pane')
        return "\n".join(self.panes[name].splitlines()[-max_lines:])

    def kill(self, name: str) -> None:
        self.sessions.pop(name, None)
        self.panes.pop(name, None)
        self.killed.append(name)

    def list_sessions(self) -> List[str]:
        return sorted(self.sessions)

    def texts_sent_to(self, name: str) -> List[str]:
        return [text for session, text, _ in self.sent if session == name]

    def _require(self, name: str, command: str) -> None:
        if name not in self.sessions:
            raise ProcessControlError(command, f"can't find session: {name}")


class FakeRepo:
    """
    Scripted repository: ``commits`` is the full history, newest first.

    ``fail_since`` makes logging from a given SHA fail, as after a rebase.
    """

    def __init__(self, commits: Optional[List[GitCommit]] = None, fail_since: Optional[str] = None):
        self.commits = commits or []
        self.fail_since = fail_since
        self.log_calls: List[Optional[str]] = []

    def head_sha(self) -> str:
        if not self.commits:
            raise GitError("Cannot resolve HEAD")
        return self.commits[0].sha

    def commits_since(self, since_sha: Optional[str] = None, limit: int = 10) -> List[GitCommit]:
        self.log_calls.append(since_sha)
        if since_sha is None:
            return list(self.commits[:limit])
        if since_sha == self.fail_since:
            raise GitError(f"bad revision '{since_sha}..HEAD'")
        shas = [c.sha for c in self.commits]
        if since_sha not in shas:
            raise GitError(f"bad revision '{since_sha}..HEAD'")
        return list(self.commits[:shas.index(since_sha)])

    def last_commit(self) -> Optional[str]:
        if not self.commits:
            return None
        head = self.commits[0]
        return f"{head.short_sha} {head.subject}"

    def add(self, commit: GitCommit) -> None:
        self.commits.insert(0, commit)


def make_commit(n: int, timestamp: str = "2024-01-01T00:10:00+00:00", subject: str = None) -> GitCommit:
    sha = f"{n:040x}"
    return GitCommit(
        sha=sha,
        short_sha=sha[:7],
        subject=subject or f"commit {n}",
        author="Dev <dev@example.com>",
        timestamp=timestamp,
        insertions=n,
        deletions=1,
    )


class FakeWorktreeManager:
    """Creates plain directories where a WorktreeManager would run ``git worktree add``."""

    def __init__(self, project_path: Path):
        self.repo_root = Path(project_path)

    def create_feature_worktree(self, feature: str, branch: Optional[str] = None):
        path = self.repo_root / ".worktrees" / feature
        path.mkdir(parents=True)
        return path, branch or f"tina/{feature}"


def make_context(root: Path, controller: Optional[FakeController] = None, clock=None, store=None):
    """A TinaContext whose directories all live under ``root``."""
    root = Path(root)
    config = TinaConfig(
        node_name="test-node",
        registry_dir=root / "sessions",
        teams_dir=root / "teams",
        tasks_dir=root / "tasks",
        pid_file=root / "daemon.pid",
        log_file=root / "daemon.log",
    )
    return TinaContext(
        config=config,
        registry=SessionRegistry(config.registry_dir),
        controller=controller or FakeController(),
        clock=clock or ManualClock(),
        store=store,
    )
