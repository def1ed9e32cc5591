"""
CLI for the utask task queue.

Usage:
    ut create --title "Write release notes" --tag docs --tag release
    ut list --tags urgent,ops --status open
    ut close 3fa9c2
"""

import contextlib
import json
import logging
import os
from pathlib import Path
from typing import Iterator, Optional

import typer
from typing_extensions import Annotated

from .config import UtaskConfig, load_config, save_config
from .errors import (
    AmbiguousPrefixError,
    IndexMaintenanceError,
    InvalidInputError,
    UtaskError,
)
from .logging_config import (
    configure_ops_log,
    configure_quiet_mode,
    enable_debug_mode,
    is_verbose_env,
)
from .resolve import short_id
from .store import TaskStore
from .types import Status, Task, TaskInput, UpdateSet

# Quiet by default; UTASK_VERBOSE=1 turns on debug logging
if is_verbose_env():
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"ut {version('utask')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_config_path: Optional[Path] = None
_overrides: dict[str, Optional[str]] = {}


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


app = typer.Typer(
    name="ut",
    help="Minimal task queue on a shared key-value store.",
    no_args_is_help=False,
    invoke_without_command=True,
    rich_markup_mode=None,
)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    config: Annotated[Optional[Path], typer.Option(
        "--config", "-c",
        help="Path to config file (default: ~/.utask/config.toml)",
    )] = None,
    backend: Annotated[Optional[str], typer.Option(
        "--backend",
        help="Substrate backend: sqlite, etcd, memory, or a plugin name",
    )] = None,
    url: Annotated[Optional[str], typer.Option(
        "--url",
        help="Substrate URL (etcd gateway)",
    )] = None,
    profile: Annotated[Optional[str], typer.Option(
        "--profile", "-p",
        help="Profile (namespace) to operate on",
    )] = None,
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
):
    """Minimal task queue on a shared key-value store."""
    global _config_path, _overrides
    _config_path = config
    _overrides = {"backend": backend, "url": url, "profile": profile}
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

IdArgument = Annotated[
    str,
    typer.Argument(help="Task id or unique prefix")
]

StatusOption = Annotated[
    Optional[str],
    typer.Option(
        "--status", "-s",
        help="Filter by status: open|closed"
    )
]

TagOption = Annotated[
    Optional[str],
    typer.Option(
        "--tag", "-t",
        help="Filter by a single tag"
    )
]


# -----------------------------------------------------------------------------
# Store Access
# -----------------------------------------------------------------------------

def _load_config() -> UtaskConfig:
    try:
        return load_config(_config_path, **_overrides)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@contextlib.contextmanager
def _handle_errors() -> Iterator[None]:
    """Map store errors to messages and exit codes (2 = invalid input)."""
    try:
        yield
    except AmbiguousPrefixError as e:
        typer.echo(f"Error: {e}", err=True)
        for candidate in e.candidates:
            typer.echo(f"  {candidate}", err=True)
        raise typer.Exit(1)
    except InvalidInputError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)
    except IndexMaintenanceError as e:
        typer.echo(f"Warning: {e}", err=True)
        raise typer.Exit(1)
    except UtaskError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@contextlib.contextmanager
def _open_store() -> Iterator[TaskStore]:
    """Open the configured store for one command, with error mapping."""
    cfg = _load_config()
    handler = configure_ops_log(cfg.path.parent) if cfg.backend == "sqlite" else None
    store = None
    try:
        with _handle_errors():
            try:
                store = TaskStore.open(cfg)
            except ValueError as e:
                typer.echo(f"Error: {e}", err=True)
                raise typer.Exit(1)
            yield store
    finally:
        if store is not None:
            store.close()
        if handler is not None:
            logging.getLogger("utask").removeHandler(handler)
            handler.close()


def _parse_csv_tags(value: Optional[str]) -> list[str]:
    if not value or not value.strip():
        return []
    return [p for p in (part.strip() for part in value.split(",")) if p]


# -----------------------------------------------------------------------------
# Output Formatting
# -----------------------------------------------------------------------------

def _dump(data) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def _format_task_line(task: Task) -> str:
    """Two-line listing: id, status, created, tags; then the title."""
    tags = ",".join(task.tags)
    return f"{short_id(task.id)}\t{task.status.value}\t{task.created}\t[{tags}]\n   {task.short}"


def _format_tasks(tasks: list[Task], as_json: bool) -> str:
    if as_json:
        return _dump([t.to_dict() for t in tasks])
    return "\n".join(_format_task_line(t) for t in tasks)


def _format_task(task: Task) -> str:
    """Full view of one task: JSON when --json, else a readable block."""
    if _get_json_output():
        return _dump(task.to_dict())
    lines = [
        f"id: {task.id}",
        f"status: {task.status.value}",
        f"created: {task.created}",
        f"tags: [{', '.join(task.tags)}]",
    ]
    if task.priority:
        lines.append(f"priority: {task.priority}")
    if task.estimate_minutes:
        lines.append(f"estimate_minutes: {task.estimate_minutes}")
    lines.append("")
    lines.append(task.text)
    return "\n".join(lines)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def create(
    title: Annotated[str, typer.Option(
        "--title",
        help="Task text; the first line is the title"
    )] = "",
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t",
        help="Task tag (repeatable)"
    )] = None,
    priority: Annotated[int, typer.Option(
        "--priority",
        help="Priority (1=highest)"
    )] = 1,
    estimate_min: Annotated[int, typer.Option(
        "--estimate-min",
        help="Estimate in minutes"
    )] = 0,
):
    """
    Create a task.

    Creating the same text and tags again returns the existing task.

    \b
    Examples:
        ut create --title "Fix login redirect" --tag bug --tag web
        ut create --title "Quarterly review" --priority 2 --estimate-min 90
    """
    if not title.strip():
        typer.echo("Error: --title is required", err=True)
        raise typer.Exit(2)

    with _open_store() as store:
        task, existed = store.create(TaskInput(
            text=title,
            tags=tag or [],
            priority=priority,
            estimate_minutes=estimate_min,
        ))

    if _get_json_output():
        typer.echo(_dump(task.to_dict()))
    elif existed:
        typer.echo(f"{task.id} (exists)")
    else:
        typer.echo(task.id)


@app.command("list")
def list_tasks(
    tag: TagOption = None,
    tags: Annotated[Optional[str], typer.Option(
        "--tags",
        help="Match ANY of these tags (comma-separated)"
    )] = None,
    all_tags: Annotated[Optional[str], typer.Option(
        "--all-tags",
        help="Match ALL of these tags (comma-separated)"
    )] = None,
    status: StatusOption = None,
    limit: Annotated[int, typer.Option(
        "--limit", "-n",
        help="Maximum results with --tags/--all-tags (0 = no limit)"
    )] = 0,
):
    """
    List tasks.

    \b
    Examples:
        ut list                          # Everything, oldest first
        ut list --tag work --status open
        ut list --tags urgent,ops        # urgent OR ops
        ut list --all-tags work,urgent   # work AND urgent
    """
    any_tags = _parse_csv_tags(tags)
    every_tags = _parse_csv_tags(all_tags)
    with _open_store() as store:
        status_filter = Status.parse(status)
        if any_tags or every_tags:
            tasks = store.query(any_tags, every_tags, limit=limit, status=status_filter)
        else:
            tasks = store.list(tag=tag, status=status_filter)

    output = _format_tasks(tasks, _get_json_output())
    if output:
        typer.echo(output)


@app.command()
def get(id: IdArgument):
    """Show one task."""
    with _open_store() as store:
        task, _ = store.get(store.resolve(id))
    typer.echo(_format_task(task))


@app.command("close")
def close_task(id: IdArgument):
    """Mark a task done."""
    with _open_store() as store:
        task, changed = store.close_task(store.resolve(id))
    if _get_json_output():
        typer.echo(_dump(task.to_dict()))
    else:
        typer.echo(f"{task.id} {'closed' if changed else 'already closed'}")


@app.command()
def reopen(id: IdArgument):
    """Mark a closed task open again."""
    with _open_store() as store:
        task, changed = store.reopen(store.resolve(id))
    if _get_json_output():
        typer.echo(_dump(task.to_dict()))
    else:
        typer.echo(f"{task.id} {'reopened' if changed else 'already open'}")


@app.command()
def update(
    id: IdArgument,
    text: Annotated[Optional[str], typer.Option(
        "--text",
        help="New task text"
    )] = None,
    title: Annotated[Optional[str], typer.Option(
        "--title",
        help="Alias for --text"
    )] = None,
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t",
        help="Replace tags (repeatable)"
    )] = None,
    tags: Annotated[Optional[str], typer.Option(
        "--tags",
        help="Replace tags (comma-separated)"
    )] = None,
    done: Annotated[Optional[bool], typer.Option(
        "--done/--not-done",
        help="Set completion state"
    )] = None,
    priority: Annotated[Optional[int], typer.Option(
        "--priority",
        help="New priority"
    )] = None,
):
    """
    Update a task's text, tags, completion or priority.

    The id stays the same. --tag/--tags replace the whole tag set.
    """
    new_text = text if text and text.strip() else title
    replace_tags = _parse_csv_tags(tags) + list(tag or [])
    changes = UpdateSet(
        text=new_text if new_text and new_text.strip() else None,
        done=done,
        tags=replace_tags or None,
        priority=priority,
    )
    if changes.is_empty():
        typer.echo("Error: nothing to update (use --text, --tag, --tags, --done or --priority)", err=True)
        raise typer.Exit(2)

    with _open_store() as store:
        task = store.update(store.resolve(id), changes)

    if _get_json_output():
        typer.echo(_dump(task.to_dict()))
    else:
        typer.echo(f"{task.id} updated")


@app.command()
def delete(id: IdArgument):
    """Delete a task."""
    with _open_store() as store:
        deleted = store.delete(store.resolve(id))
    typer.echo(f"{deleted} deleted")


@app.command("rm", hidden=True)
def rm(id: IdArgument):
    """Alias for delete."""
    delete(id)


@app.command()
def tags():
    """List tags with the number of tasks in each."""
    with _open_store() as store:
        counts = store.list_tags()
    if _get_json_output():
        typer.echo(_dump(counts))
        return
    for name, count in counts.items():
        typer.echo(f"{name}\t{count}")


@app.command("rebuild-index")
def rebuild_index():
    """Regenerate the tag index from the stored tasks."""
    with _open_store() as store:
        counts = store.rebuild_index()
    if _get_json_output():
        typer.echo(_dump(counts))
        return
    typer.echo(f"Rebuilt {len(counts)} tags", err=True)
    typer.echo("OK")


@app.command()
def check(
    tag: TagOption = None,
    status: StatusOption = None,
):
    """
    Report tasks whose trailer block has malformed lines.

    Prints OK when there is nothing to report.
    """
    with _open_store() as store:
        tasks = store.list(tag=tag, status=Status.parse(status))

    flagged = [t for t in tasks if t.trailer_drops]
    if _get_json_output():
        typer.echo(_dump([
            {"id": t.id, "title": t.short, "drops": t.trailer_drops}
            for t in flagged
        ]))
        return
    for task in flagged:
        typer.echo(f"{task.id}\t{task.short}")
        typer.echo("  Dropped lines from trailer block:")
        for line in task.trailer_drops:
            typer.echo(f"   - {line}")
    if not flagged:
        typer.echo("OK")


@app.command()
def config(
    init: Annotated[bool, typer.Option(
        "--init",
        help="Write the resolved settings to the config file"
    )] = False,
    force: Annotated[bool, typer.Option(
        "--force",
        help="With --init, overwrite an existing file"
    )] = False,
):
    """Show the resolved configuration, or write a config file."""
    from .config import default_config_path

    cfg = _load_config()
    if init:
        target = Path(_config_path).expanduser() if _config_path else default_config_path()
        if target.exists() and not force:
            typer.echo(f"Error: {target} already exists (use --force to overwrite)", err=True)
            raise typer.Exit(1)
        path = save_config(cfg, target)
        typer.echo(f"Wrote {path}")
        return

    data = {
        "backend": cfg.backend,
        "url": cfg.url,
        "path": str(cfg.path),
        "profile": cfg.profile,
        "max_retries": cfg.max_retries,
        "file": str(cfg.source) if cfg.source else None,
    }
    if _get_json_output():
        typer.echo(_dump(data))
        return
    for key, value in data.items():
        typer.echo(f"{key}: {value if value is not None else '(none)'}")


@app.command()
def mcp():
    """Start MCP stdio server for AI agent integration."""
    if _config_path is not None:
        os.environ["UTASK_CONFIG"] = str(_config_path)
    for key, env in (("backend", "UTASK_BACKEND"), ("url", "UTASK_URL"), ("profile", "UTASK_PROFILE")):
        if _overrides.get(key):
            os.environ[env] = _overrides[key]
    from .mcp import main as mcp_main
    mcp_main()


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="ut CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
