"""
TASKLOOP CLI — The Interface

  taskloop run "<prompt>" --workspace <path>      (drive one task to completion)

Plus utilities:
  - taskloop status        (check config + API keys)
  - taskloop init <path>   (bootstrap .taskloop in a workspace)
  - taskloop checkpoint    (create / list / restore / diff / cleanup snapshots)
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from taskloop import __codename__, __tagline__, __version__
from taskloop.audit_logger import AuditLogger
from taskloop.checkpoints import CheckpointStore
from taskloop.config_loader import load_config, validate_api_keys
from taskloop.controller import TaskController, TaskStatus
from taskloop.errors import AuthError, TaskLoopError
from taskloop.event_bus import TaskEvent
from taskloop.interaction import ConsoleAsker
from taskloop.router import LiteLLMProvider
from taskloop.workspace import Workspace

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".taskloop" / ".env")

app = typer.Typer(
    name="taskloop",
    help=f"{__codename__} — {__tagline__}\nThe agent task loop.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
checkpoint_app = typer.Typer(help="Workspace snapshots: create, list, restore, diff, cleanup.", no_args_is_help=True)
app.add_typer(checkpoint_app, name="checkpoint")

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    prompt: str = typer.Argument(..., help="What the task should accomplish"),
    workspace: Path = typer.Option(Path("."), "--workspace", "-w", help="Workspace root"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model override (LiteLLM model string)"),
    auto_approve: bool = typer.Option(False, "--auto-approve", "-y", help="Force auto-approval of non-dangerous operations"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run one task against a workspace."""
    _configure_logging(verbose)

    workspace = workspace.resolve()
    if not workspace.is_dir():
        console.print(f"[red]Workspace not found: {workspace}[/]")
        raise typer.Exit(1)

    config = _load_or_exit(workspace)
    if model:
        config.model.name = model
    if auto_approve:
        config.approval.enabled = True
        config.approval.always_approve_resubmit = True

    controller = TaskController(
        workspace,
        LiteLLMProvider(config.model),
        config=config,
        asker=ConsoleAsker(console),
    )
    audit = AuditLogger(str(workspace / ".taskloop" / "logs" / f"{controller.task_id}.jsonl"), controller.bus)
    controller.subscribe(_print_event)

    console.print(f"[bold]{__codename__}[/] task [cyan]{controller.task_id}[/] → {config.model.name}")
    try:
        outcome = controller.start(prompt)
    except AuthError as e:
        console.print(f"[red]Authentication failed: {e}[/]")
        raise typer.Exit(1)
    finally:
        audit.close()
        controller.dispose()

    color = "green" if outcome.status == TaskStatus.COMPLETED else "yellow"
    if outcome.result:
        console.print(Panel(outcome.result, title="Result", border_style=color))
    console.print(f"\n[bold {color}]Status: {outcome.status.value}[/] after {outcome.iterations} iteration(s)")
    _print_usage(outcome.usage)

    if outcome.status != TaskStatus.COMPLETED:
        raise typer.Exit(2)


@app.command()
def status(
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w"),
):
    """Check TASKLOOP configuration and readiness."""
    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")

    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)

    console.print(key_table)

    config = _load_or_exit(workspace.resolve() if workspace else None)
    console.print(f"\n[bold]Model:[/]")
    console.print(f"  Name:            {config.model.name}")
    console.print(f"  Context window:  {config.model.context_window:,}")
    console.print(f"  Output reserve:  {config.model.max_output_tokens:,}")

    console.print(f"\n[bold]Limits:[/]")
    console.print(f"  Mistakes before guidance: {config.limits.consecutive_mistake_limit}")
    console.print(f"  Repetition limit:         {config.repetition.consecutive_limit} in {config.repetition.window_seconds:.0f}s")
    console.print(f"  Shell timeout:            {config.tools.shell_timeout_seconds:.0f}s")

    console.print(f"\n[bold]Approval:[/]")
    console.print(f"  Auto-approval:   {'on' if config.approval.enabled else 'off'}")
    console.print(
        f"  Cap:             {config.approval.max_auto_approvals} per "
        f"{config.approval.window_seconds:.0f}s"
    )
    console.print(f"  Danger patterns: {len(config.approval.dangerous_command_patterns)} commands, "
                  f"{len(config.approval.protected_path_prefixes)} protected paths")


@app.command()
def init(
    workspace: Optional[Path] = typer.Argument(None, help="Path to workspace"),
):
    """Initialize .taskloop directory in a workspace."""
    workspace = (workspace or Path.cwd()).resolve()
    tl_dir = workspace / ".taskloop"
    tl_dir.mkdir(exist_ok=True)
    (tl_dir / "logs").mkdir(exist_ok=True)

    config_path = tl_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# TASKLOOP workspace-level config overrides
# These merge with the built-in defaults.

# model:
#   name: "anthropic/claude-sonnet-4-20250514"
#   context_window: 200000

# limits:
#   consecutive_mistake_limit: 3

# approval:
#   max_auto_approvals: 50
#   protected_path_prefixes:
#     - "/etc/"
""")

    gitignore = workspace / ".gitignore"
    ignore_entries = [".taskloop/logs/", ".taskloop/checkpoints/"]
    if gitignore.exists():
        content = gitignore.read_text()
        additions = [e for e in ignore_entries if e not in content]
        if additions:
            with open(gitignore, "a") as f:
                f.write("\n# TASKLOOP\n")
                for e in additions:
                    f.write(f"{e}\n")
    else:
        gitignore.write_text("# TASKLOOP\n" + "\n".join(ignore_entries) + "\n")

    console.print(f"[green]✅ Initialized TASKLOOP in {tl_dir}[/]")
    console.print(f"  Config: {config_path}")
    console.print(f"  Logs:   {tl_dir / 'logs'}")


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------

_WORKSPACE_OPT = typer.Option(Path("."), "--workspace", "-w", help="Workspace root")


@checkpoint_app.command("create")
def checkpoint_create(
    description: Optional[str] = typer.Argument(None, help="What this snapshot captures"),
    workspace: Path = _WORKSPACE_OPT,
    task: str = typer.Option("cli", "--task", "-t", help="Task id owning the checkpoint"),
):
    """Snapshot the workspace."""
    store = _store(workspace, task)
    checkpoint_id = store.create(description)
    checkpoint = store.get(checkpoint_id)
    console.print(f"[green]✅ Checkpoint {checkpoint_id}[/] ({len(checkpoint.files)} files)")


@checkpoint_app.command("list")
def checkpoint_list(
    workspace: Path = _WORKSPACE_OPT,
    task: Optional[str] = typer.Option(None, "--task", "-t", help="Only this task's checkpoints"),
):
    """List checkpoints, newest first."""
    store = _store(workspace, task)
    checkpoints = store.list()
    if not checkpoints:
        console.print("[dim]No checkpoints.[/]")
        return

    table = Table(title=f"Checkpoints ({len(checkpoints)})", border_style="cyan")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Created")
    table.add_column("Task", style="dim")
    table.add_column("Files", justify="right")
    table.add_column("Description")
    for c in checkpoints:
        table.add_row(c.id, c.timestamp.strftime("%Y-%m-%d %H:%M:%S"), c.task_id, str(len(c.files)), c.description)
    console.print(table)


@checkpoint_app.command("restore")
def checkpoint_restore(
    checkpoint_id: str = typer.Argument(..., help="Checkpoint to restore"),
    workspace: Path = _WORKSPACE_OPT,
    task: Optional[str] = typer.Option(None, "--task", "-t"),
):
    """Replace the workspace contents with a checkpoint."""
    store = _store(workspace, task)
    _or_exit(lambda: store.restore(checkpoint_id))
    console.print(f"[green]✅ Restored {checkpoint_id}[/]")


@checkpoint_app.command("diff")
def checkpoint_diff(
    checkpoint_id: str = typer.Argument(..., help="Base checkpoint"),
    other_id: Optional[str] = typer.Argument(None, help="Compare against this checkpoint instead of the workspace"),
    workspace: Path = _WORKSPACE_OPT,
    task: Optional[str] = typer.Option(None, "--task", "-t"),
):
    """Show what changed since a checkpoint."""
    store = _store(workspace, task)
    if other_id:
        diff = _or_exit(lambda: store.diff(checkpoint_id, other_id))
    else:
        diff = _or_exit(lambda: store.diff_with_current(checkpoint_id))

    if diff.is_empty:
        console.print("[dim]No changes.[/]")
        return
    for path in diff.added:
        console.print(f"[green]+ {path}[/]")
    for path in diff.modified:
        console.print(f"[yellow]~ {path}[/]")
    for path in diff.deleted:
        console.print(f"[red]- {path}[/]")


@checkpoint_app.command("cleanup")
def checkpoint_cleanup(
    workspace: Path = _WORKSPACE_OPT,
    task: Optional[str] = typer.Option(None, "--task", "-t"),
    max_age_days: Optional[float] = typer.Option(None, "--max-age-days", help="Defaults to checkpoints.max_age_days"),
):
    """Delete checkpoints older than the configured age."""
    workspace = workspace.resolve()
    config = _load_or_exit(workspace)
    days = max_age_days if max_age_days is not None else config.checkpoints.max_age_days
    store = _store(workspace, task)
    deleted = _or_exit(lambda: store.cleanup(timedelta(days=days)))
    console.print(f"[green]Deleted {len(deleted)} checkpoint(s) older than {days:g} day(s)[/]")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _store(workspace: Path, task: Optional[str]) -> CheckpointStore:
    workspace = workspace.resolve()
    config = _load_or_exit(workspace)
    ws = _or_exit(lambda: Workspace(workspace))
    return CheckpointStore(ws, task, directory=config.checkpoints.directory)


def _or_exit(fn):
    try:
        return fn()
    except TaskLoopError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)


def _load_or_exit(workspace: Optional[Path]):
    return _or_exit(lambda: load_config(workspace))


def _print_event(event: TaskEvent) -> None:
    if event.kind == "tool_requested":
        console.print(f"[cyan]→ {event.tool_name}[/] [dim]{_brief(event.args)}[/]", highlight=False)
    elif event.kind == "tool_result" and not event.success:
        console.print(f"[red]✗ {event.tool_name}: {event.error}[/]", highlight=False)
    elif event.kind == "repetition_warning":
        console.print(f"[yellow]⚠ {event.tool_name} repeated {event.count} times[/]")
    elif event.kind == "context_condensed":
        console.print(f"[dim]Context condensed: dropped {event.dropped} message(s)[/]")
    elif event.kind == "subtask_started":
        console.print(f"[magenta]⇢ subtask {event.subtask_id}[/]")


def _brief(args: dict[str, str]) -> str:
    parts = [f"{k}={v!r}" for k, v in args.items() if k not in ("content", "diff", "search", "replace")]
    text = " ".join(parts)
    return text if len(text) <= 100 else text[:97] + "..."


def _print_usage(usage: dict[str, int]) -> None:
    table = Table(title="Usage", border_style="dim")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key, value in usage.items():
        table.add_row(key.replace("_", " "), f"{value:,}")
    console.print(table)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(str(msg), style="dim", markup=False, highlight=False, end=""),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(str(msg), style="dim", markup=False, highlight=False, end=""),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
