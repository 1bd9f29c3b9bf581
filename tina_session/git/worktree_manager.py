"""
Git Worktree Manager Module

Creates the per-feature worktree an orchestration runs in. Worktrees live
under ``{repo}/.worktrees/{feature}`` on a dedicated branch, and the
``.worktrees`` directory is kept out of version control.
"""

import logging
import subprocess
import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from ..core.errors import GitError

logger = logging.getLogger(__name__)

WORKTREES_DIR = '.worktrees'


class WorktreeManager:
    """
    Manages git worktrees for feature isolation.

    Features:
    - Dedicated branch per feature with a timestamped fallback name
    - ``.gitignore`` maintenance for the worktrees directory
    - Repository root detection
    """

    def __init__(self, project_path: Path, timestamp: Callable[[], int] = None):
        """
        Initialize worktree manager for a project.

        Args:
            project_path: Any directory inside the main repository
            timestamp: Source for fallback branch suffixes (defaults to epoch seconds)
        """
        self.project_path = Path(project_path).resolve()
        self.timestamp = timestamp or (lambda: int(time.time()))
        self.repo_root = self._find_repo_root()

    def worktree_path_for(self, feature: str) -> Path:
        return self.repo_root / WORKTREES_DIR / feature

    def create_feature_worktree(self, feature: str,
                                branch: Optional[str] = None) -> Tuple[Path, str]:
        """
        Create the worktree for a feature.

        Tries the requested branch first; if git refuses because the branch
        already exists, retries once with a ``-{timestamp}`` suffix.

        Args:
            feature: Feature name
            branch: Branch to create (defaults to ``tina/{feature}``)

        Returns:
            Tuple[Path, str]: (worktree_path, branch actually used)

        Raises:
            GitError: if the worktree path is taken or git fails
        """
        worktree_path = self.worktree_path_for(feature)
        if worktree_path.exists():
            raise GitError(f"Worktree path already exists: {worktree_path}")

        self.ensure_gitignored()
        worktree_path.parent.mkdir(parents=True, exist_ok=True)

        branch = branch or f"tina/{feature}"
        candidates = [branch, f"{branch}-{self.timestamp()}"]

        last_error = ""
        for candidate in candidates:
            result = self._git(['worktree', 'add', str(worktree_path), '-b', candidate])
            if result.returncode == 0:
                logger.info(f"Created worktree {worktree_path} on branch {candidate}")
                return worktree_path, candidate

            last_error = result.stderr.strip()
            if 'already exists' not in last_error:
                break
            logger.warning(f"Branch {candidate} exists, trying a fallback name")

        raise GitError(f"Failed to create worktree at {worktree_path}: {last_error}")

    def ensure_gitignored(self) -> bool:
        """
        Add ``.worktrees`` to the repository's .gitignore if missing.

        Returns:
            bool: True if the file was changed
        """
        gitignore = self.repo_root / '.gitignore'
        text = gitignore.read_text(encoding='utf-8') if gitignore.exists() else ''
        entries = text.splitlines()

        wanted = {WORKTREES_DIR, f"{WORKTREES_DIR}/", f"/{WORKTREES_DIR}", f"/{WORKTREES_DIR}/"}
        if any(line.strip() in wanted for line in entries):
            return False

        with open(gitignore, 'a', encoding='utf-8') as f:
            if text and not text.endswith('\n'):
                f.write("\n")
            f.write(f"{WORKTREES_DIR}/\n")
        return True

    def _find_repo_root(self) -> Path:
        result = self._git(['rev-parse', '--show-toplevel'], cwd=self.project_path)
        if result.returncode != 0:
            raise GitError(f"Not a git repository: {self.project_path}")
        return Path(result.stdout.strip())

    def _git(self, args: List[str], cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
        cwd = cwd or self.repo_root
        try:
            return subprocess.run(
                ['git', '-C', str(cwd)] + args, capture_output=True, text=True
            )
        except OSError as e:
            raise GitError(f"Failed to run git: {e}") from e
