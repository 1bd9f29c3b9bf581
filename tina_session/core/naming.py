"""
Session Naming Module

Deterministic names for tmux sessions and agent teams. Every process that
needs a phase's session recomputes it from (feature, phase); the name is
never persisted on its own.
"""

import re
from typing import Optional

from .errors import InvalidName

SESSION_PREFIX = "tina"

_FEATURE_RE = re.compile(r'^[A-Za-z0-9_-]+$')
_PHASE_NUMBER_RE = re.compile(r'(?:^|-)phase-(\d+(?:\.\d+)*)(?:-|$)')


def validate_feature(feature: str) -> None:
    """
    Reject feature names that would make session names ambiguous.

    tmux rewrites '.' and ':' in session names, so only letters, digits,
    '-' and '_' are accepted.
    """
    if not feature:
        raise InvalidName("Feature name cannot be empty")
    if not _FEATURE_RE.match(feature):
        raise InvalidName(
            f"Invalid feature name '{feature}': use only letters, digits, '-' and '_'"
        )


def validate_phase(phase: str) -> None:
    """
    Validate a phase token such as "1", "2" or remediation phases "1.5", "1.5.5".

    Raises:
        InvalidName: if the phase is not a dotted sequence of integers
    """
    if not phase:
        raise InvalidName("Phase cannot be empty")

    if 'retry' in phase.lower():
        raise InvalidName(
            f"Invalid phase '{phase}': retry phases are not supported, "
            "use decimal phases like 1.5 for remediation"
        )

    if phase.startswith('.') or phase.endswith('.') or '..' in phase:
        raise InvalidName(f"Invalid phase '{phase}': malformed decimal")

    if not all(ch.isdigit() or ch == '.' for ch in phase):
        raise InvalidName(
            f"Invalid phase '{phase}': must be an integer or decimal like 1.5"
        )


def session_name(feature: str, phase) -> str:
    """
    Canonical tmux session name for a phase.

    Args:
        feature: Feature name
        phase: Phase token ("1", "1.5"); ints are accepted

    Returns:
        str: e.g. ``tina-auth-phase-1`` or ``tina-auth-phase-1_5``
    """
    phase_token = str(phase).replace('.', '_')
    return f"{SESSION_PREFIX}-{feature}-phase-{phase_token}"


def orchestration_session_name(feature: str) -> str:
    return f"{SESSION_PREFIX}-{feature}-orchestration"


def orchestration_team_name(feature: str) -> str:
    return f"{feature}-orchestration"


def phase_team_name(feature: str, phase) -> str:
    return f"{feature}-phase-{phase}"


def is_feature_session(feature: str, name: str) -> bool:
    """
    True if ``name`` is one of this feature's sessions.

    An exact match is required so ``auth`` never claims ``auth-v2``'s sessions.
    """
    if name == orchestration_session_name(feature):
        return True
    prefix = f"{SESSION_PREFIX}-{feature}-phase-"
    token = name[len(prefix):] if name.startswith(prefix) else ''
    return bool(token) and all(ch.isdigit() or ch == '_' for ch in token)


def extract_phase_number(team_name: str) -> Optional[str]:
    """Pull the phase number out of names like ``auth-phase-2`` or ``auth-phase-2-execution``."""
    match = _PHASE_NUMBER_RE.search(team_name)
    return match.group(1) if match else None


def phase_sort_key(phase: str):
    """Order phase keys numerically: 1 < 1.5 < 2 < 10."""
    return tuple(int(part) for part in phase.split('.') if part.isdigit())
