"""
Validation Module

Checks supervisor state files and phase plan documents before they are
trusted by the rest of the system, and runs a project's own tests and
linter for `check verify`.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import ArtifactNotFound, InvalidName
from .naming import validate_phase
from ..utils.system_utils import SystemUtils

logger = logging.getLogger(__name__)

MAX_MODEL_CHARS = 50


@dataclass
class ValidationIssue:
    path: Path
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.field} - {self.message}"


@dataclass
class ValidationResult:
    """Errors make a file invalid; warnings are informational"""
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def add_error(self, path: Path, field_name: str, message: str) -> None:
        self.errors.append(ValidationIssue(Path(path), field_name, message))

    def add_warning(self, path: Path, field_name: str, message: str) -> None:
        self.warnings.append(ValidationIssue(Path(path), field_name, message))


def validate_supervisor_state(path: Path) -> ValidationResult:
    """
    Validate a ``supervisor-state.json`` file.

    Args:
        path: State file to check

    Returns:
        ValidationResult with errors for broken invariants and warnings for
        references to files that no longer exist
    """
    path = Path(path)
    result = ValidationResult()

    if not path.exists():
        result.add_error(path, "file", "File does not exist")
        return result

    try:
        data = json.loads(path.read_text(encoding='utf-8'))
    except OSError as e:
        result.add_error(path, "file", f"Failed to read file: {e}")
        return result
    except json.JSONDecodeError as e:
        result.add_error(path, "json", f"Invalid JSON: {e}")
        return result

    if not isinstance(data, dict):
        result.add_error(path, "json", "Top-level value must be an object")
        return result

    if data.get('version', 0) == 0:
        result.add_warning(path, "version", "Version is 0, expected 1 or higher")

    if not data.get('feature'):
        result.add_error(path, "feature", "Feature name is empty")

    total = data.get('total_phases') or 0
    current = data.get('current_phase') or 0
    numeric = True
    for name, value in (('total_phases', total), ('current_phase', current)):
        if not isinstance(value, int) or isinstance(value, bool):
            result.add_error(path, name, f"Must be an integer, got {value!r}")
            numeric = False

    if numeric:
        if total == 0:
            result.add_error(path, "total_phases", "Total phases is 0")
        if current == 0:
            result.add_error(path, "current_phase", "Current phase is 0 (phases are 1-indexed)")
        if total and current > total:
            result.add_error(
                path, "current_phase", f"Current phase {current} exceeds total phases {total}"
            )

    design_doc = data.get('design_doc')
    if design_doc and not Path(design_doc).exists():
        result.add_warning(path, "design_doc", f"Design doc does not exist: {design_doc}")

    worktree = data.get('worktree_path')
    if worktree and not Path(worktree).exists():
        result.add_warning(path, "worktree_path", f"Worktree path does not exist: {worktree}")

    for key, phase in (data.get('phases') or {}).items():
        try:
            validate_phase(str(key))
        except InvalidName as e:
            result.add_error(path, f"phases.{key}", str(e))

        plan_path = (phase or {}).get('plan_path')
        if plan_path and not Path(plan_path).exists():
            result.add_warning(
                path, f"phases.{key}.plan_path", f"Plan path does not exist: {plan_path}"
            )

    return result


def validate_plan(path: Path) -> ValidationResult:
    """
    Validate a phase plan document.

    Every ``### Task`` needs a ``**Model:**`` line with a sane value, and the
    plan must carry a Complexity Budget section containing a markdown table.
    """
    path = Path(path)
    result = ValidationResult()

    try:
        contents = path.read_text(encoding='utf-8')
    except FileNotFoundError:
        result.add_error(path, "file", "File does not exist")
        return result

    task_count = contents.count("### Task")
    model_count = contents.count("**Model:**")
    if model_count < task_count:
        result.add_error(
            path, "model",
            f"Missing model specifications ({task_count} tasks, {model_count} model specs)"
        )

    for line in contents.splitlines():
        stripped = line.strip()
        if not stripped.startswith("**Model:**"):
            continue
        model = stripped[len("**Model:**"):].strip().lower()
        if not model:
            result.add_error(path, "model", "Empty model specification found")
        elif '`' in model:
            result.add_error(path, "model", f"Model '{model}' contains backticks")
        elif len(model) > MAX_MODEL_CHARS:
            result.add_error(path, "model", f"Model '{model}' exceeds {MAX_MODEL_CHARS} characters")

    if "## Complexity Budget" not in contents:
        result.add_error(path, "complexity_budget", "Missing Complexity Budget section")
    elif not has_complexity_budget_table(contents):
        result.add_error(
            path, "complexity_budget",
            "Complexity Budget section must contain a table with metrics"
        )

    return result


def has_complexity_budget_table(contents: str) -> bool:
    """True if the Complexity Budget section holds a header row followed by a separator row."""
    lines = contents.splitlines()
    in_section = False

    for i, line in enumerate(lines):
        stripped = line.strip()
        if stripped.startswith(("### Complexity Budget", "## Complexity Budget")):
            in_section = True
            continue
        if in_section and stripped.startswith(("# ", "## ", "### ")):
            break
        if in_section and stripped.startswith('|') and stripped.endswith('|'):
            if i + 1 < len(lines):
                following = lines[i + 1].strip()
                if following.startswith('|') and '---' in following:
                    return True
    return False


@dataclass
class VerifyStep:
    label: str
    command: List[str]
    required: bool = True


@dataclass
class VerifyResult:
    """Outcome of running a project's tests and linter"""
    cwd: Path
    project_type: Optional[str] = None
    passed: bool = True
    failures: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


# marker file, project type, steps; the first matching marker wins
PROJECT_CHECKS = [
    (('Cargo.toml',), 'rust', [
        VerifyStep('Tests', ['cargo', 'test', '--no-fail-fast']),
        VerifyStep('Clippy', ['cargo', 'clippy', '--', '-D', 'warnings']),
    ]),
    (('package.json',), 'node', [
        VerifyStep('Tests', ['npm', 'test']),
        VerifyStep('Lint', ['npm', 'run', 'lint'], required=False),
    ]),
    (('pyproject.toml', 'setup.py'), 'python', [
        VerifyStep('Tests', ['pytest']),
        VerifyStep('Flake8', ['flake8', '.'], required=False),
    ]),
    (('go.mod',), 'go', [
        VerifyStep('Tests', ['go', 'test', './...']),
        VerifyStep('Lint', ['golangci-lint', 'run'], required=False),
    ]),
]


def detect_project_type(cwd: Path) -> Tuple[Optional[str], List[VerifyStep]]:
    """Project type and verification steps for a directory, or (None, []) if unknown."""
    for markers, project_type, steps in PROJECT_CHECKS:
        if any((Path(cwd) / marker).exists() for marker in markers):
            return project_type, steps
    return None, []


def verify_project(cwd: Path) -> VerifyResult:
    """
    Run the tests and linter for the project in ``cwd``.

    Stops at the first failing step. A linter that is not installed is
    skipped; missing test tooling is a failure. Unknown project types pass
    with nothing run.

    Raises:
        ArtifactNotFound: if ``cwd`` does not exist
    """
    cwd = Path(cwd)
    if not cwd.is_dir():
        raise ArtifactNotFound(cwd)

    project_type, steps = detect_project_type(cwd)
    result = VerifyResult(cwd=cwd, project_type=project_type)
    if project_type is None:
        logger.info(f"Unknown project type in {cwd}, skipping verification")
        return result

    for step in steps:
        logger.info(f"Running {' '.join(step.command)} in {cwd}")
        code, _, _ = SystemUtils.run_command(step.command, cwd=cwd, capture_output=False)
        if code == 127 and not step.required:
            result.skipped.append(step.label)
            continue
        if code != 0:
            result.passed = False
            result.failures.append(f"{step.label} failed (exit {code})")
            break
    return result
