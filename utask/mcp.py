"""
MCP stdio server for utask: task queue tools for AI agents.

Usage:
    ut mcp                                # stdio server (via CLI)
    claude --mcp-server utask="ut mcp"    # agent integration

All store calls are serialized through a single asyncio.Lock. Cross-client
safety comes from the substrate's compare-and-swap, not from this lock.
"""

import asyncio
import json
from typing import Annotated, Any, Optional

from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field

from .config import load_config
from .errors import AmbiguousPrefixError, UtaskError
from .store import TaskStore
from .types import Status, Task, TaskInput, UpdateSet

# ---------------------------------------------------------------------------
# Server setup
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "utask",
    instructions=(
        "Shared task queue. Create tasks with tags, list and query them by "
        "tag, and close them when done. Task ids may be shortened to any "
        "unique prefix."
    ),
)

_store: Optional[TaskStore] = None
_lock = asyncio.Lock()


def _get_store() -> TaskStore:
    """Lazy-open the store from configuration (file + UTASK_* env).

    Must be called inside ``async with _lock``.
    """
    global _store
    if _store is None:
        _store = TaskStore.open(load_config())
    return _store


def _json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def _tasks_json(tasks: list[Task]) -> str:
    return _json([t.to_dict() for t in tasks])


def _error(e: Exception) -> str:
    if isinstance(e, AmbiguousPrefixError):
        return f"Error: {e}; candidates: {', '.join(e.candidates)}"
    return f"Error: {e}"


# ---------------------------------------------------------------------------
# Tool annotations
# ---------------------------------------------------------------------------

_READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False)
_IDEMPOTENT = ToolAnnotations(idempotentHint=True, destructiveHint=False)
_DESTRUCTIVE = ToolAnnotations(destructiveHint=True, idempotentHint=False)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool(
    description=(
        "Create a task. The id is derived from the text and tags, so "
        "creating the same task twice returns the existing one."
    ),
    annotations=_IDEMPOTENT,
)
async def task_create(
    text: Annotated[str, Field(
        description="Task text. First line is the title; an optional trailer block (Key: value lines) may end it.",
    )],
    tags: Annotated[Optional[list[str]], Field(
        description='Tags, e.g. ["work", "urgent"]. Case and order do not matter.',
    )] = None,
    priority: Annotated[int, Field(
        description="Priority, 1 = highest. 0 leaves it unset.",
    )] = 0,
    estimate_minutes: Annotated[int, Field(
        description="Estimated effort in minutes. 0 leaves it unset.",
    )] = 0,
) -> str:
    """Create a task."""
    async with _lock:
        try:
            task, existed = _get_store().create(TaskInput(
                text=text,
                tags=tags or [],
                priority=priority,
                estimate_minutes=estimate_minutes,
            ))
        except (UtaskError, ValueError) as e:
            return _error(e)
    return _json({"task": task.to_dict(), "existed": existed})


@mcp.tool(
    description="List tasks, optionally those carrying one tag and/or with a given status.",
    annotations=_READ_ONLY,
)
async def task_list(
    tag: Annotated[Optional[str], Field(
        description="Only tasks with this tag.",
    )] = None,
    status: Annotated[Optional[str], Field(
        description='"open" or "closed". Omit for both.',
    )] = None,
) -> str:
    """List tasks."""
    async with _lock:
        try:
            tasks = _get_store().list(tag=tag or None, status=Status.parse(status))
        except (UtaskError, ValueError) as e:
            return _error(e)
    return _tasks_json(tasks)


@mcp.tool(
    description=(
        "Query tasks by tags: tasks with ANY of any_tags (all tasks if empty) "
        "that also carry ALL of all_tags."
    ),
    annotations=_READ_ONLY,
)
async def task_query(
    any_tags: Annotated[Optional[list[str]], Field(
        description="Match tasks having at least one of these tags.",
    )] = None,
    all_tags: Annotated[Optional[list[str]], Field(
        description="Match only tasks having every one of these tags.",
    )] = None,
    limit: Annotated[int, Field(
        description="Maximum results; 0 for no limit.",
    )] = 0,
    status: Annotated[Optional[str], Field(
        description='"open" or "closed". Omit for both.',
    )] = None,
) -> str:
    """Query tasks by tag set algebra."""
    async with _lock:
        try:
            tasks = _get_store().query(
                any_tags or [], all_tags or [], limit=limit, status=Status.parse(status),
            )
        except (UtaskError, ValueError) as e:
            return _error(e)
    return _tasks_json(tasks)


@mcp.tool(
    description="Get one task by id or unique id prefix.",
    annotations=_READ_ONLY,
)
async def task_get(
    id: Annotated[str, Field(description="Task id or unique prefix.")],
) -> str:
    """Get a task."""
    async with _lock:
        try:
            store = _get_store()
            task, _ = store.get(store.resolve(id))
        except (UtaskError, ValueError) as e:
            return _error(e)
    return _json(task.to_dict())


@mcp.tool(
    description="Mark a task done. Closing a closed task changes nothing.",
    annotations=_IDEMPOTENT,
)
async def task_close(
    id: Annotated[str, Field(description="Task id or unique prefix.")],
) -> str:
    """Close a task."""
    async with _lock:
        try:
            store = _get_store()
            task, changed = store.close_task(store.resolve(id))
        except (UtaskError, ValueError) as e:
            return _error(e)
    return _json({"task": task.to_dict(), "changed": changed})


@mcp.tool(
    description="Mark a closed task open again.",
    annotations=_IDEMPOTENT,
)
async def task_reopen(
    id: Annotated[str, Field(description="Task id or unique prefix.")],
) -> str:
    """Reopen a task."""
    async with _lock:
        try:
            store = _get_store()
            task, changed = store.reopen(store.resolve(id))
        except (UtaskError, ValueError) as e:
            return _error(e)
    return _json({"task": task.to_dict(), "changed": changed})


@mcp.tool(
    description=(
        "Update a task. Only the fields given change; tags replaces the "
        "whole tag set. The id stays the same."
    ),
    annotations=_IDEMPOTENT,
)
async def task_update(
    id: Annotated[str, Field(description="Task id or unique prefix.")],
    text: Annotated[Optional[str], Field(description="New text.")] = None,
    tags: Annotated[Optional[list[str]], Field(description="New tag set.")] = None,
    done: Annotated[Optional[bool], Field(description="New completion state.")] = None,
    priority: Annotated[Optional[int], Field(description="New priority.")] = None,
) -> str:
    """Update a task."""
    changes = UpdateSet(text=text, done=done, tags=tags, priority=priority)
    if changes.is_empty():
        return "Error: nothing to update"
    async with _lock:
        try:
            store = _get_store()
            task = store.update(store.resolve(id), changes)
        except (UtaskError, ValueError) as e:
            return _error(e)
    return _json(task.to_dict())


@mcp.tool(
    description="Delete a task permanently.",
    annotations=_DESTRUCTIVE,
)
async def task_delete(
    id: Annotated[str, Field(description="Task id or unique prefix.")],
) -> str:
    """Delete a task."""
    async with _lock:
        try:
            store = _get_store()
            deleted = store.delete(store.resolve(id))
        except (UtaskError, ValueError) as e:
            return _error(e)
    return f"Deleted: {deleted}"


@mcp.tool(
    description="List tags with the number of tasks carrying each.",
    annotations=_READ_ONLY,
)
async def task_tags() -> str:
    """List tags with counts."""
    async with _lock:
        try:
            counts = _get_store().list_tags()
        except (UtaskError, ValueError) as e:
            return _error(e)
    return _json(counts)


def main():
    """Run the MCP stdio server."""
    import os
    import signal
    # The stdio reader thread ignores task cancellation; exit hard on Ctrl+C
    signal.signal(signal.SIGINT, lambda *_: os._exit(130))

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
