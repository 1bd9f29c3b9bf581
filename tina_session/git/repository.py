"""
Git Repository Module

Read-only queries against a worktree: HEAD, commits since a SHA with
line statistics, and the latest commit summary used in status snapshots.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from git import Repo, GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from ..core.errors import GitError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%H|%h|%s|%an <%ae>|%aI"
FIRST_SYNC_LIMIT = 10
LAST_COMMIT_MAX_CHARS = 60

_HEADER_RE = re.compile(r'^[0-9a-f]{40}\|')


@dataclass
class GitCommit:
    """A commit as reported by ``git log --numstat``"""
    sha: str
    short_sha: str
    subject: str
    author: str
    timestamp: str
    insertions: int = 0
    deletions: int = 0


def parse_git_log_output(output: str) -> List[GitCommit]:
    """
    Parse ``git log --numstat --format=LOG_FORMAT`` output.

    Subjects may contain '|', so the first two and last two fields are
    fixed and the subject is whatever lies between them.
    """
    commits: List[GitCommit] = []
    current: Optional[GitCommit] = None

    for line in output.splitlines():
        if not line.strip():
            continue

        if _HEADER_RE.match(line):
            parts = line.split('|')
            if len(parts) < 5:
                logger.warning(f"Unparseable git log header: {line!r}")
                current = None
                continue
            current = GitCommit(
                sha=parts[0],
                short_sha=parts[1],
                subject='|'.join(parts[2:-2]),
                author=parts[-2],
                timestamp=parts[-1],
            )
            commits.append(current)
            continue

        if current is None:
            continue

        stats = line.split('\t')
        if len(stats) >= 3:
            # binary files report "-" for both counts
            if stats[0].isdigit():
                current.insertions += int(stats[0])
            if stats[1].isdigit():
                current.deletions += int(stats[1])

    return commits


class GitRepository:
    """
    Query wrapper around a GitPython Repo.

    All git failures surface as GitError so callers only need to handle
    one exception type.
    """

    def __init__(self, path: Path):
        """
        Open a repository or worktree.

        Args:
            path: Any directory inside the working tree

        Raises:
            GitError: if ``path`` is not inside a git working tree
        """
        self.path = Path(path)
        try:
            self.repo = Repo(str(self.path), search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise GitError(f"Not a git repository: {self.path}") from e

    @property
    def root(self) -> Path:
        return Path(self.repo.working_tree_dir)

    def head_sha(self) -> str:
        """
        Full SHA of HEAD.

        Raises:
            GitError: if HEAD cannot be resolved (e.g. no commits yet)
        """
        try:
            return self.repo.head.commit.hexsha
        except (ValueError, GitCommandError) as e:
            raise GitError(f"Cannot resolve HEAD in {self.path}: {e}") from e

    def commits_since(self, since_sha: Optional[str] = None,
                      limit: int = FIRST_SYNC_LIMIT) -> List[GitCommit]:
        """
        Commits after ``since_sha`` up to HEAD, newest first (git log order).

        Args:
            since_sha: Last synced SHA; None means "first sync"
            limit: How many commits to read on first sync

        Returns:
            List of commits in reverse chronological order
        """
        if since_sha:
            args = [f"{since_sha}..HEAD"]
        else:
            args = ['-n', str(limit), 'HEAD']

        try:
            output = self.repo.git.log(*args, '--numstat', f'--format={LOG_FORMAT}')
        except GitCommandError as e:
            raise GitError(f"git log failed in {self.path}: {e.stderr or e}") from e

        return parse_git_log_output(output)

    def last_commit(self) -> Optional[str]:
        """
        Short summary ("<short sha> <subject>") of HEAD for status snapshots.

        Returns:
            Summary truncated to LAST_COMMIT_MAX_CHARS, or None without commits
        """
        try:
            summary = self.repo.git.log('-1', '--format=%h %s')
        except GitCommandError:
            return None

        summary = summary.strip()
        if not summary:
            return None
        return truncate(summary, LAST_COMMIT_MAX_CHARS)


def truncate(text: str, max_chars: int) -> str:
    """Cut ``text`` to ``max_chars`` including a trailing '...'."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars - 3] + "..."
