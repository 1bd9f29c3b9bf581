"""
Session Registry Module

Directory-backed feature -> session lookup table. One JSON file per feature
lets short-lived CLI invocations and the daemon find orchestrations created
by other, already-exited processes.
"""

import json
import logging
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import List, Optional

from .errors import AlreadyInitialized, NotInitialized
from .naming import validate_feature
from .schema import utc_now_iso
from ..utils.file_utils import FileUtils

logger = logging.getLogger(__name__)


@dataclass
class SessionLookup:
    """Registry record for one active orchestration"""
    feature: str
    worktree_path: str
    repo_root: Optional[str] = None
    created_at: str = ""

    def __post_init__(self):
        if not self.created_at:
            self.created_at = utc_now_iso()

    @classmethod
    def from_dict(cls, data: dict) -> 'SessionLookup':
        worktree = data.get('worktree_path') or data.get('cwd')
        if not data.get('feature') or not worktree:
            raise ValueError("lookup record needs 'feature' and 'worktree_path'")
        return cls(
            feature=data['feature'],
            worktree_path=worktree,
            repo_root=data.get('repo_root'),
            created_at=data.get('created_at', ''),
        )


class SessionRegistry:
    """
    Feature-keyed store of SessionLookup records.

    Handles:
    - Atomic registration (write temp file, rename)
    - Listing that skips individually corrupt entries
    - Idempotent deletion
    """

    def __init__(self, registry_dir: Path):
        """
        Initialize session registry.

        Args:
            registry_dir: Directory holding one ``{feature}.json`` per orchestration
        """
        self.registry_dir = Path(registry_dir)

    def path_for(self, feature: str) -> Path:
        validate_feature(feature)
        return self.registry_dir / f"{feature}.json"

    def register(self, lookup: SessionLookup, overwrite: bool = False) -> Path:
        """
        Save a lookup record.

        Args:
            lookup: Record to save
            overwrite: Replace an existing record instead of failing

        Raises:
            AlreadyInitialized: if the feature is registered and overwrite is False
        """
        path = self.path_for(lookup.feature)
        if path.exists() and not overwrite:
            raise AlreadyInitialized(lookup.feature)
        FileUtils.write_json_atomic(path, asdict(lookup))
        logger.info(f"Registered {lookup.feature} -> {lookup.worktree_path}")
        return path

    def find(self, feature: str) -> Optional[SessionLookup]:
        path = self.path_for(feature)
        try:
            return SessionLookup.from_dict(FileUtils.load_json(path))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring corrupt registry entry {path}: {e}")
            return None

    def load(self, feature: str) -> SessionLookup:
        """
        Load the record for a feature.

        Raises:
            NotInitialized: if no usable record exists
        """
        lookup = self.find(feature)
        if lookup is None:
            raise NotInitialized(feature)
        return lookup

    def exists(self, feature: str) -> bool:
        return self.find(feature) is not None

    def has_entry(self, feature: str) -> bool:
        """True if a record file is present, readable or not."""
        return self.path_for(feature).exists()

    def list(self) -> List[SessionLookup]:
        """
        Read every record, skipping corrupt ones.

        Returns:
            Records sorted by feature name
        """
        if not self.registry_dir.exists():
            return []

        lookups = []
        for path in sorted(self.registry_dir.glob('*.json')):
            try:
                lookups.append(SessionLookup.from_dict(FileUtils.load_json(path)))
            except (OSError, json.JSONDecodeError, ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping corrupt registry entry {path}: {e}")
        return sorted(lookups, key=lambda lookup: lookup.feature)

    def delete(self, feature: str) -> bool:
        """
        Remove a feature's record.

        Returns:
            bool: False if there was nothing to delete
        """
        removed = FileUtils.remove_if_exists(self.path_for(feature))
        if removed:
            logger.info(f"Removed registry entry for {feature}")
        return removed

    def find_by_worktree(self, worktree_path: Path) -> Optional[SessionLookup]:
        target = Path(worktree_path).resolve()
        for lookup in self.list():
            if Path(lookup.worktree_path).resolve() == target:
                return lookup
        return None
