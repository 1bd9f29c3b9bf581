"""Git queries and feature worktrees."""

__all__ = ["repository", "worktree_manager"]
