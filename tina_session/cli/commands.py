"""
CLI Commands Module

Click command group for tina-session. Human-facing feedback goes to stderr
through rich; machine-readable output (session names, JSON results) goes to
stdout so callers can pipe it.
"""

import functools
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from ..core.errors import TinaError
from ..core.naming import session_name, validate_feature, validate_phase
from ..core.orchestrator import DEFAULT_START_TIMEOUT_SECS, Orchestrator
from ..core.schema import OrchestrationStatus
from ..core.state_machine import valid_next_states
from ..core.validation import (
    ValidationResult, validate_plan, validate_supervisor_state, verify_project
)
from ..daemon.process import DaemonProcess
from ..daemon.sync_loop import DaemonSync
from ..main import TinaContext, configure_logging, create_context
from ..monitoring.status_watcher import WaitResult, exit_code_for
from ..remote.memory_store import InMemoryRemoteStore
from ..remote.store import CommentRecord

console = Console(stderr=True)


def error(message: str) -> None:
    console.print(f"[red]❌ {message}[/red]")


def success(message: str) -> None:
    console.print(f"[green]✅ {message}[/green]")


def warning(message: str) -> None:
    console.print(f"[yellow]⚠️  {message}[/yellow]")


def info(message: str) -> None:
    console.print(f"[blue]ℹ️  {message}[/blue]")


def handle_errors(func):
    """Turn TinaError into a red message and exit code 1."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except TinaError as e:
            error(str(e))
            sys.exit(1)
    return wrapper


def get_context(ctx: click.Context) -> TinaContext:
    """TinaContext for this invocation, built on first use."""
    obj = ctx.ensure_object(dict)
    if obj.get('context') is None:
        obj['context'] = create_context(config_dir=obj.get('config_dir'),
                                        profile=obj.get('profile'))
    return obj['context']


def get_orchestrator(ctx: click.Context) -> Orchestrator:
    obj = ctx.ensure_object(dict)
    if obj.get('orchestrator') is None:
        obj['orchestrator'] = Orchestrator(get_context(ctx))
    return obj['orchestrator']


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def report_validation(result: ValidationResult, label: str) -> None:
    for issue in result.errors:
        error(str(issue))
    for issue in result.warnings:
        warning(str(issue))
    if result.is_valid:
        success(f"{label} is valid")
    else:
        sys.exit(1)


def parse_fields(pairs: Tuple[str, ...]) -> Dict[str, Any]:
    """``key=value`` pairs; values that parse as JSON keep their JSON type."""
    fields = {}
    for pair in pairs:
        if '=' not in pair:
            raise click.BadParameter(f"expected key=value, got '{pair}'", param_hint='--set')
        key, value = pair.split('=', 1)
        try:
            fields[key] = json.loads(value)
        except ValueError:
            fields[key] = value
    return fields


feature_option = click.option('--feature', '-f', required=True, help='Feature name')
phase_option = click.option('--phase', '-p', required=True, help='Phase number (e.g. 1 or 1.5)')


@click.group()
@click.option('--config-dir', type=click.Path(file_okay=False, path_type=Path), default=None,
              help='Directory containing config.yaml (default: ~/.config/tina)')
@click.option('--profile', type=str, default=None,
              help='Config profile to use (default: $TINA_ENV or prod)')
@click.option('--verbose', '-v', is_flag=True, help='Log debug output to stderr')
@click.pass_context
def cli(ctx: click.Context, config_dir: Optional[Path], profile: Optional[str], verbose: bool):
    """Run and supervise phased agent orchestrations in tmux sessions."""
    obj = ctx.ensure_object(dict)
    obj.setdefault('config_dir', config_dir)
    obj.setdefault('profile', profile)
    if verbose:
        configure_logging('DEBUG')


@cli.command()
@click.argument('feature')
@click.argument('phase')
@handle_errors
def name(feature: str, phase: str):
    """Print the tmux session name for FEATURE and PHASE."""
    validate_feature(feature)
    validate_phase(phase)
    click.echo(session_name(feature, phase))


@cli.command()
@feature_option
@click.option('--cwd', type=click.Path(exists=True, file_okay=False, path_type=Path),
              default=Path('.'), help='Directory inside the main repository')
@click.option('--design-doc', required=True, type=click.Path(path_type=Path),
              help='Design document for the feature')
@click.option('--total-phases', required=True, type=click.IntRange(min=1),
              help='Number of implementation phases')
@click.option('--branch', type=str, default=None, help='Branch name (default: tina/<feature>)')
@click.pass_context
@handle_errors
def init(ctx, feature: str, cwd: Path, design_doc: Path, total_phases: int, branch: Optional[str]):
    """Create the worktree and supervisor state for a new feature."""
    worktree = get_orchestrator(ctx).init(feature, cwd, design_doc, total_phases, branch)
    success(f"Initialized {feature} ({total_phases} phases)")
    click.echo(str(worktree))


@cli.command()
@feature_option
@phase_option
@click.option('--plan', required=True, type=click.Path(path_type=Path), help='Phase plan document')
@click.option('--timeout', type=float, default=DEFAULT_START_TIMEOUT_SECS, show_default=True,
              help='Seconds to wait for the agent prompt')
@click.pass_context
@handle_errors
def start(ctx, feature: str, phase: str, plan: Path, timeout: float):
    """Start the team lead session for a phase."""
    name = get_orchestrator(ctx).start_phase(feature, phase, plan, timeout)
    success(f"Phase {phase} running in {name}")
    click.echo(name)


@cli.command()
@feature_option
@phase_option
@click.option('--timeout', type=float, default=None, help='Give up after N seconds (default: never)')
@click.option('--stream', 'stream_interval', type=click.IntRange(min=1), default=None,
              help='Print a JSON status update every N seconds')
@click.option('--team', type=str, default=None, help='Team whose tasks feed progress counts')
@click.pass_context
@handle_errors
def wait(ctx, feature: str, phase: str, timeout: Optional[float], stream_interval: Optional[int],
         team: Optional[str]):
    """Wait for a phase to complete, block, time out or lose its session.

    Exit codes: 0 complete, 1 blocked, 2 timeout, 3 session died.
    """
    result: WaitResult = get_orchestrator(ctx).wait_phase(
        feature, phase,
        timeout_secs=timeout if timeout is not None else float('inf'),
        stream_interval=stream_interval,
        emit=lambda update: click.echo(update.to_json()),
        team=team,
    )
    click.echo(result.to_json())
    sys.exit(exit_code_for(result))


@cli.command()
@feature_option
@click.option('--phase', '-p', default=None, help='Show a phase progress snapshot instead')
@click.pass_context
@handle_errors
def status(ctx, feature: str, phase: Optional[str]):
    """Print supervisor state (or one phase's progress) as JSON."""
    orchestrator = get_orchestrator(ctx)
    if phase:
        click.echo(orchestrator.phase_status(feature, phase).to_json())
    else:
        echo_json(orchestrator.status(feature))


@cli.command()
@feature_option
@phase_option
@click.pass_context
@handle_errors
def stop(ctx, feature: str, phase: str):
    """Kill a phase's tmux session."""
    name = get_orchestrator(ctx).stop_phase(feature, phase)
    success(f"Stopped {name}")


@cli.command()
@feature_option
@phase_option
@click.option('--raw', is_flag=True, help='Do not press Enter after the text')
@click.argument('text')
@click.pass_context
@handle_errors
def send(ctx, feature: str, phase: str, raw: bool, text: str):
    """Type TEXT into a phase's session."""
    get_orchestrator(ctx).send(feature, phase, text, raw=raw)


@cli.command()
@feature_option
@phase_option
@click.option('--lines', type=click.IntRange(min=1), default=100, show_default=True,
              help='Scrollback lines to capture')
@click.pass_context
@handle_errors
def capture(ctx, feature: str, phase: str, lines: int):
    """Print the recent pane contents of a phase's session."""
    click.echo(get_orchestrator(ctx).capture(feature, phase, lines))


@cli.command()
@feature_option
@phase_option
@click.pass_context
@handle_errors
def attach(ctx, feature: str, phase: str):
    """Attach this terminal to a phase's session."""
    get_orchestrator(ctx).attach(feature, phase)


@cli.command(name='list')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON instead of a table')
@click.pass_context
@handle_errors
def list_command(ctx, as_json: bool):
    """List registered orchestrations."""
    rows = get_orchestrator(ctx).list_orchestrations()
    if as_json:
        echo_json(rows)
        return

    if not rows:
        console.print("[yellow]No orchestrations registered[/yellow]")
        return

    table = Table(title="Orchestrations", show_header=True)
    table.add_column("Feature", style="bright_blue")
    table.add_column("Status", style="yellow")
    table.add_column("Phase", style="cyan")
    table.add_column("Sessions", style="green")
    table.add_column("Worktree", style="white")

    for row in rows:
        phase = f"{row['current_phase']}/{row['total_phases']}" if row['total_phases'] else "-"
        table.add_row(row['feature'], row['status'], phase,
                      "\n".join(row['sessions']) or "-", row['worktree_path'])
    console.print(table)


@cli.command()
@feature_option
@click.pass_context
@handle_errors
def cleanup(ctx, feature: str):
    """Kill a feature's sessions and remove its registry record."""
    validate_feature(feature)
    if not get_orchestrator(ctx).cleanup(feature):
        error(f"Feature '{feature}' not found")
        sys.exit(1)
    success(f"Cleaned up {feature}")


@cli.group()
def state():
    """Inspect and change supervisor state directly."""


@state.command()
@feature_option
@click.option('--status', 'target', required=True,
              type=click.Choice([s.value for s in OrchestrationStatus]),
              help='Target orchestration status')
@click.pass_context
@handle_errors
def transition(ctx, feature: str, target: str):
    """Move the orchestration to a new status."""
    new_status = OrchestrationStatus.parse(target)
    updated = get_orchestrator(ctx).update_state(feature, lambda m: m.transition(new_status))
    nxt = ", ".join(s.value for s in valid_next_states(updated.status)) or "none"
    success(f"{feature} is now {updated.status.value} (next: {nxt})")


@state.command(name='start-phase')
@feature_option
@phase_option
@click.option('--plan', type=click.Path(path_type=Path), default=None, help='Plan document')
@click.pass_context
@handle_errors
def start_phase(ctx, feature: str, phase: str, plan: Optional[Path]):
    """Mark a phase running. Its tmux session must exist."""
    orchestrator = get_orchestrator(ctx)
    alive = orchestrator.session_alive(feature, phase)
    orchestrator.update_state(feature, lambda m: m.start_phase(
        phase, session_alive=alive, plan_path=str(plan) if plan else None,
        now=orchestrator.clock.now()))
    success(f"Phase {phase} running")


@state.command(name='complete-phase')
@feature_option
@phase_option
@click.option('--git-range', required=True, help='Commit range produced by the phase (a..b)')
@click.pass_context
@handle_errors
def complete_phase(ctx, feature: str, phase: str, git_range: str):
    """Mark a running phase complete."""
    orchestrator = get_orchestrator(ctx)
    result = WaitResult(status='complete', git_range=git_range)
    orchestrator.update_state(
        feature, lambda m: m.complete_phase(phase, result, now=orchestrator.clock.now()))
    success(f"Phase {phase} complete ({git_range})")


@state.command(name='block-phase')
@feature_option
@phase_option
@click.option('--reason', required=True, help='Why the phase is blocked')
@click.pass_context
@handle_errors
def block_phase(ctx, feature: str, phase: str, reason: str):
    """Mark a running phase (and the orchestration) blocked."""
    get_orchestrator(ctx).update_state(feature, lambda m: m.block_phase(phase, reason))
    warning(f"Phase {phase} blocked: {reason}")


@state.command(name='retry-phase')
@feature_option
@phase_option
@click.pass_context
@handle_errors
def retry_phase(ctx, feature: str, phase: str):
    """Resume a blocked phase. Its tmux session must exist."""
    orchestrator = get_orchestrator(ctx)
    alive = orchestrator.session_alive(feature, phase)
    orchestrator.update_state(feature, lambda m: m.retry_phase(phase, session_alive=alive))
    success(f"Phase {phase} running again")


@state.command()
@feature_option
@click.pass_context
@handle_errors
def advance(ctx, feature: str):
    """Move current_phase forward after the current phase completed."""
    updated = get_orchestrator(ctx).update_state(feature, lambda m: m.advance())
    success(f"{feature} advanced to phase {updated.current_phase}")


@state.command(name='reset-phase')
@feature_option
@phase_option
@click.pass_context
@handle_errors
def reset_phase(ctx, feature: str, phase: str):
    """Recovery: rewind to PHASE and clear its record."""
    get_orchestrator(ctx).update_state(feature, lambda m: m.reset_phase(phase))
    warning(f"{feature} reset to phase {phase}")


@state.command()
@click.option('--feature', '-f', default=None, help='Validate a registered feature')
@click.option('--path', 'state_path', type=click.Path(path_type=Path), default=None,
              help='Validate a state file directly')
@click.pass_context
@handle_errors
def validate(ctx, feature: Optional[str], state_path: Optional[Path]):
    """Check a supervisor-state.json file."""
    if state_path is None:
        if not feature:
            raise click.UsageError("Pass --feature or --path")
        lookup = get_context(ctx).registry.load(feature)
        state_path = get_context(ctx).state_store.path_for(Path(lookup.worktree_path))
    report_validation(validate_supervisor_state(state_path), str(state_path))


@cli.group()
def check():
    """Validate documents before they are used."""


@check.command()
@click.argument('path', type=click.Path(path_type=Path))
def plan(path: Path):
    """Check a phase plan document."""
    report_validation(validate_plan(path), str(path))


@check.command()
@click.option('--cwd', type=click.Path(path_type=Path), default=Path('.'),
              help='Project directory (default: current directory)')
@handle_errors
def verify(cwd: Path):
    """Run the project's tests and linter (Rust, Node, Python or Go)."""
    result = verify_project(cwd)
    if result.project_type is None:
        warning(f"Unknown project type in {cwd}, nothing to verify")
        return
    info(f"Detected {result.project_type} project")
    for label in result.skipped:
        warning(f"{label} skipped: tool not installed")
    if not result.passed:
        for failure in result.failures:
            error(failure)
        sys.exit(1)
    success("All verification checks passed")


@cli.group()
def remote():
    """Read and update records in the remote store."""


@remote.command(name='get-design')
@click.argument('design_id')
@click.pass_context
@handle_errors
def get_design(ctx, design_id: str):
    echo_json(get_context(ctx).remote_store().get_design(design_id))


@remote.command(name='update-design')
@click.argument('design_id')
@click.option('--set', 'pairs', multiple=True, required=True, help='key=value to update')
@click.pass_context
@handle_errors
def update_design(ctx, design_id: str, pairs: Tuple[str, ...]):
    get_context(ctx).remote_store().update_design(design_id, parse_fields(pairs))
    success(f"Updated design {design_id}")


@remote.command(name='get-ticket')
@click.argument('ticket_id')
@click.pass_context
@handle_errors
def get_ticket(ctx, ticket_id: str):
    echo_json(get_context(ctx).remote_store().get_ticket(ticket_id))


@remote.command(name='update-ticket')
@click.argument('ticket_id')
@click.option('--set', 'pairs', multiple=True, required=True, help='key=value to update')
@click.pass_context
@handle_errors
def update_ticket(ctx, ticket_id: str, pairs: Tuple[str, ...]):
    get_context(ctx).remote_store().update_ticket(ticket_id, parse_fields(pairs))
    success(f"Updated ticket {ticket_id}")


@remote.command()
@click.option('--project-id', required=True)
@click.option('--target-type', required=True, type=click.Choice(['design', 'ticket']))
@click.option('--target-id', required=True)
@click.option('--author', default='tina-session', show_default=True)
@click.option('--author-type', default='agent', type=click.Choice(['human', 'agent']),
              show_default=True)
@click.argument('body')
@click.pass_context
@handle_errors
def comment(ctx, project_id: str, target_type: str, target_id: str, author: str,
            author_type: str, body: str):
    """Attach a comment to a design or ticket."""
    comment_id = get_context(ctx).remote_store().add_comment(CommentRecord(
        project_id=project_id, target_type=target_type, target_id=target_id,
        author_type=author_type, author_name=author, body=body,
    ))
    click.echo(comment_id)


@remote.command()
@click.option('--target-type', required=True, type=click.Choice(['design', 'ticket']))
@click.option('--target-id', required=True)
@click.pass_context
@handle_errors
def comments(ctx, target_type: str, target_id: str):
    """List comments on a design or ticket."""
    echo_json(get_context(ctx).remote_store().list_comments(target_type, target_id))


@cli.group()
def daemon():
    """Control the background sync daemon."""


def _daemon_process(context: TinaContext) -> DaemonProcess:
    return DaemonProcess(context.config.pid_file)


@daemon.command(name='start')
@click.option('--interval', type=click.IntRange(min=1), default=None,
              help='Seconds between sync cycles')
@click.pass_context
@handle_errors
def daemon_start(ctx, interval: Optional[int]):
    """Start the daemon in the background."""
    obj = ctx.ensure_object(dict)
    global_args = []
    if obj.get('config_dir'):
        global_args += ['--config-dir', str(obj['config_dir'])]
    if obj.get('profile'):
        global_args += ['--profile', obj['profile']]
    run_args = ['--interval', str(interval)] if interval else []
    pid = _daemon_process(get_context(ctx)).start(run_args, global_args=global_args)
    success(f"Daemon started (pid {pid})")


@daemon.command(name='stop')
@click.pass_context
@handle_errors
def daemon_stop(ctx):
    """Stop the background daemon."""
    if _daemon_process(get_context(ctx)).stop():
        success("Daemon stopped")
    else:
        info("Daemon is not running")


@daemon.command(name='status')
@click.pass_context
@handle_errors
def daemon_status(ctx):
    """Report whether the daemon is running."""
    pid = _daemon_process(get_context(ctx)).status()
    if pid is None:
        info("Daemon is not running")
        sys.exit(1)
    success(f"Daemon running (pid {pid})")


@daemon.command(name='run')
@click.option('--interval', type=click.IntRange(min=1), default=None,
              help='Seconds between sync cycles (default from config)')
@click.option('--once', is_flag=True, help='Run a single cycle and print its report')
@click.option('--dry-run', is_flag=True, help='Sync into an in-memory store instead of the remote')
@click.pass_context
@handle_errors
def daemon_run(ctx, interval: Optional[int], once: bool, dry_run: bool):
    """Run the sync loop in the foreground."""
    context = get_context(ctx)
    config = context.config
    configure_logging(config.log_level, None if once else config.log_file)

    store = InMemoryRemoteStore() if dry_run else context.remote_store()
    sync = DaemonSync(
        registry=context.registry,
        store=store,
        node_name=config.node_name,
        teams_dir=config.teams_dir,
        tasks_dir=config.tasks_dir,
        state_store=context.state_store,
        clock=context.clock,
    )

    if once:
        report = sync.run_cycle()
        echo_json({
            'worktrees': report.worktrees,
            'upserts': report.upserts,
            'commits_upserted': report.commits_upserted,
            'plans_upserted': report.plans_upserted,
            'tasks_recorded': report.tasks_recorded,
            'members_upserted': report.members_upserted,
            'failures': report.failures,
        })
        if report.failures:
            sys.exit(1)
        return

    _daemon_process(context).run_foreground(sync, interval or config.sync_interval_secs)


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
