"""
Task store: entities plus a derived tag index on a key-value substrate.

Two buckets per profile (namespace):

- ``utask_tasks_<profile>``: task id -> task JSON (authoritative)
- ``utask_tags_<profile>``: tag -> newline-separated task ids (derived)

Every write is a single-key operation. Entity and index writes are not
atomic together: a failure between them leaves the index stale until
``rebuild_index()`` regenerates it from the entities. Reads tolerate that
drift by skipping index ids that no longer resolve.

Fetch-modify-write cycles (task updates, close/reopen, index edits) are
conditional on the revision that was read and are retried on conflict, up
to ``max_retries`` attempts.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Iterable, Optional, TypeVar

from .errors import (
    AlreadyExistsError,
    ConflictError,
    ConflictRetryExhaustedError,
    CorruptRecordError,
    IndexMaintenanceError,
    InvalidInputError,
    NotFoundError,
    UtaskError,
)
from .normalize import canonical_tags, normalize_input, normalize_tags
from .protocol import Entry, Substrate, bucket_names, validate_namespace
from .resolve import match_prefix
from .types import Status, Task, TaskInput, UpdateSet, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 8
DEFAULT_RETRY_BACKOFF = 0.005  # seconds, doubled per attempt
MAX_RETRY_DELAY = 0.25


def decode_ids(value: bytes) -> list[str]:
    """Parse a tag index value: one id per line, blanks ignored, deduped."""
    seen: set[str] = set()
    ids: list[str] = []
    for line in value.decode("utf-8").split("\n"):
        line = line.strip()
        if line and line not in seen:
            seen.add(line)
            ids.append(line)
    return ids


def encode_ids(ids: Iterable[str]) -> bytes:
    """Render a tag index value, dropping blank entries."""
    return "\n".join(i.strip() for i in ids if i.strip()).encode("utf-8")


class TaskStore:
    """
    CAS-coordinated task store.

    Example:
        with TaskStore.open(load_config()) as store:
            task, existed = store.create(TaskInput("Buy milk", ["errand"]))
            store.close_task(task.id)
    """

    def __init__(
        self,
        substrate: Substrate,
        namespace: Optional[str] = None,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
        owns_substrate: bool = False,
        clock: Callable[[], str] = utc_now,
    ) -> None:
        """
        Args:
            substrate: Open substrate connection
            namespace: Profile partitioning the buckets (default "default")
            max_retries: Attempts per fetch-modify-write cycle before
                ConflictRetryExhaustedError
            retry_backoff: Base delay between attempts; 0 disables sleeping
            owns_substrate: Close the substrate when the store is closed
            clock: Source of creation timestamps
        """
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries}")
        self._substrate = substrate
        self._namespace = validate_namespace(namespace)
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff
        self._owns_substrate = owns_substrate
        self._clock = clock

        tasks_name, tags_name = bucket_names(self._namespace)
        self._tasks = substrate.bucket(tasks_name)
        self._tags = substrate.bucket(tags_name)

    @classmethod
    def open(cls, config) -> "TaskStore":
        """Connect to the configured substrate and open the profile's buckets."""
        from .backend import create_substrate

        substrate = create_substrate(config)
        try:
            store = cls(
                substrate,
                config.profile,
                max_retries=config.max_retries,
                owns_substrate=True,
            )
        except BaseException:
            substrate.close()
            raise
        logger.debug("TaskStore open backend=%s profile=%s", config.backend, config.profile)
        return store

    @property
    def namespace(self) -> str:
        return self._namespace

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _with_retries(self, key: str, attempt: Callable[[], T]) -> T:
        """Run attempt() until it returns without a ConflictError."""
        last: Optional[ConflictError] = None
        for n in range(1, self._max_retries + 1):
            try:
                return attempt()
            except ConflictError as e:
                last = e
                if n == self._max_retries:
                    break
                delay = min(self._retry_backoff * (2 ** (n - 1)), MAX_RETRY_DELAY)
                logger.info("CAS conflict on %s (attempt %d/%d): %s",
                            key, n, self._max_retries, e)
                if delay > 0:
                    time.sleep(random.uniform(0, delay))
        logger.warning("Giving up on %s after %d attempts", key, self._max_retries)
        raise ConflictRetryExhaustedError(key, self._max_retries) from last

    @staticmethod
    def _decode(entry: Entry) -> Task:
        try:
            return Task.from_json(entry.value)
        except (ValueError, KeyError, TypeError) as e:
            raise CorruptRecordError(f"task {entry.key}: {e}") from e

    def _fetch(self, id: str) -> Optional[Task]:
        """Get a task, or None if the id no longer resolves (index drift)."""
        try:
            task, _ = self.get(id)
        except NotFoundError:
            logger.warning("Skipping stale index entry %s", id[:12])
            return None
        return task

    def _scan(self) -> list[Task]:
        """Every task in the entity bucket, oldest first."""
        tasks = []
        for key in self._tasks.keys():
            try:
                task, _ = self.get(key)
            except NotFoundError:
                continue  # deleted since keys() was read
            tasks.append(task)
        tasks.sort(key=lambda t: (t.created, t.id))
        return tasks

    # -- Tag index --

    def _tag_ids(self, tag: str) -> list[str]:
        try:
            entry = self._tags.get(tag)
        except NotFoundError:
            return []
        return decode_ids(entry.value)

    def _append_tag_id(self, tag: str, id: str) -> None:
        """Add id to the tag's index entry, creating the entry if absent."""
        def attempt() -> None:
            try:
                entry = self._tags.get(tag)
            except NotFoundError:
                try:
                    self._tags.create(tag, encode_ids([id]))
                    return
                except AlreadyExistsError as e:
                    # Lost the race to create it; go round and append
                    raise ConflictError(str(e)) from e
            ids = decode_ids(entry.value)
            if id in ids:
                return
            ids.append(id)
            try:
                self._tags.update(tag, encode_ids(ids), entry.revision)
            except NotFoundError as e:
                raise ConflictError(str(e)) from e

        self._with_retries(f"tag {tag!r}", attempt)

    def _remove_tag_id(self, tag: str, id: str) -> None:
        """Drop id from the tag's index entry. An emptied entry stays until rebuild."""
        def attempt() -> None:
            try:
                entry = self._tags.get(tag)
            except NotFoundError:
                return
            ids = decode_ids(entry.value)
            if id not in ids:
                return
            remaining = [i for i in ids if i != id]
            try:
                self._tags.update(tag, encode_ids(remaining), entry.revision)
            except NotFoundError:
                return

        self._with_retries(f"tag {tag!r}", attempt)

    def _apply_tag_diff(self, id: str, before: Iterable[str], after: Iterable[str]) -> None:
        """Bring the index in line with a tag change; raise if any edit failed."""
        old, new = set(before), set(after)
        failures: dict[str, Exception] = {}
        for tag in sorted(new - old):
            try:
                self._append_tag_id(tag, id)
            except UtaskError as e:
                failures[tag] = e
        for tag in sorted(old - new):
            try:
                self._remove_tag_id(tag, id)
            except UtaskError as e:
                failures[tag] = e
        if failures:
            for tag, e in failures.items():
                logger.warning("Tag index update failed for %s on %s: %s", tag, id[:12], e)
            raise IndexMaintenanceError(id, failures)

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def create(self, task_input: TaskInput) -> tuple[Task, bool]:
        """
        Create a task idempotently.

        The id is derived from the normalized content, so repeating a
        creation (in any tag order or case) finds the existing task.

        Returns:
            (task, existed): existed is True when the task was already
            stored; the stored copy is returned and the index is untouched.

        Raises:
            InvalidInputError: text is empty after trimming
            IndexMaintenanceError: task stored but the tag index is degraded
        """
        canonical, id = normalize_input(task_input)
        if not canonical.text:
            raise InvalidInputError("task text is empty")

        task = Task(
            id=id,
            text=canonical.text,
            done=False,
            tags=list(canonical.tags),
            created=self._clock(),
            priority=canonical.priority,
            estimate_minutes=canonical.estimate_minutes,
        )

        def attempt() -> tuple[Task, bool]:
            try:
                self._tasks.create(id, task.to_json())
                return task, False
            except AlreadyExistsError:
                pass
            try:
                existing, _ = self.get(id)
            except NotFoundError as e:
                # Deleted between our create and get; try the insert again
                raise ConflictError(str(e)) from e
            return existing, True

        stored, existed = self._with_retries(f"task {id[:12]}", attempt)
        if existed:
            logger.debug("Create %s: already exists", id[:12])
            return stored, True

        self._apply_tag_diff(id, (), stored.tags)
        logger.info("Created task %s tags=%s", id[:12], ",".join(stored.tags))
        return stored, False

    def update(self, id: str, changes: UpdateSet) -> Task:
        """
        Apply a sparse patch to a task.

        Only fields set in ``changes`` are replaced. The id does not change.
        The tag index is adjusted for tags added and removed.

        Raises:
            NotFoundError: no such task
            ConflictRetryExhaustedError: concurrent writers kept winning
            InvalidInputError: new text is empty after trimming
            IndexMaintenanceError: task updated but the tag index is degraded
        """
        if changes.text is not None and not changes.text.strip():
            raise InvalidInputError("task text is empty")

        def attempt() -> tuple[Task, Task]:
            before, revision = self.get(id)
            after = _patched(before, changes)
            if after == before:
                return before, after
            self._tasks.update(id, after.to_json(), revision)
            return before, after

        before, after = self._with_retries(f"task {id[:12]}", attempt)
        if after == before:
            logger.debug("Update %s: no changes", id[:12])
            return after

        self._apply_tag_diff(id, before.tags, after.tags)
        logger.info("Updated task %s", id[:12])
        return after

    def delete(self, id: str) -> str:
        """
        Delete a task and remove it from the index of every tag it had.

        Raises:
            NotFoundError: no such task
            IndexMaintenanceError: task deleted but some index entries still list it
        """
        task, _ = self.get(id)
        self._tasks.delete(id)
        self._apply_tag_diff(id, task.tags, ())
        logger.info("Deleted task %s", id[:12])
        return id

    def _set_done(self, id: str, done: bool) -> tuple[Task, bool]:
        def attempt() -> tuple[Task, bool]:
            task, revision = self.get(id)
            if task.done is done:
                return task, False
            task.done = done
            self._tasks.update(id, task.to_json(), revision)
            return task, True

        task, changed = self._with_retries(f"task {id[:12]}", attempt)
        if changed:
            logger.info("%s task %s", "Closed" if done else "Reopened", id[:12])
        return task, changed

    def close_task(self, id: str) -> tuple[Task, bool]:
        """Mark a task done. Returns (task, changed); no write if already done."""
        return self._set_done(id, True)

    def reopen(self, id: str) -> tuple[Task, bool]:
        """Mark a task open. Returns (task, changed); no write if already open."""
        return self._set_done(id, False)

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, id: str) -> tuple[Task, int]:
        """
        Fetch a task by full id.

        Returns:
            (task, revision): revision is the substrate's CAS token

        Raises:
            NotFoundError: no such task
        """
        entry = self._tasks.get(id)
        return self._decode(entry), entry.revision

    def resolve(self, prefix: str) -> str:
        """Resolve a short id prefix to a full id (see ``resolve.match_prefix``)."""
        return match_prefix(self._tasks.keys(), prefix)

    def list(
        self,
        tag: Optional[str] = None,
        status: Optional[Status] = None,
    ) -> list[Task]:
        """
        List tasks, optionally by tag and completion status.

        With a tag, reads the tag index and fetches each listed task in
        index order; ids that no longer resolve are skipped. Without one,
        scans every task, oldest first.
        """
        if tag is not None:
            normalized = normalize_tags([tag])
            if not normalized:
                raise InvalidInputError("empty tag filter")
            tasks = [t for t in map(self._fetch, self._tag_ids(normalized[0])) if t]
        else:
            tasks = self._scan()
        if status is not None:
            tasks = [t for t in tasks if status.matches(t)]
        return tasks

    def query(
        self,
        any_tags: Optional[Iterable[str]] = None,
        all_tags: Optional[Iterable[str]] = None,
        limit: int = 0,
        status: Optional[Status] = None,
    ) -> list[Task]:
        """
        Tag set-algebra query.

        Starts from the union of the ``any_tags`` index entries (every task
        when ``any_tags`` is empty), then intersects with the entry of each
        tag in ``all_tags``. Matches are fetched in id order; stale ids
        are skipped.

        Args:
            any_tags: Match tasks carrying at least one of these
            all_tags: Match only tasks carrying every one of these
            limit: Maximum tasks to return; 0 or negative means no limit
            status: Optional open/closed filter
        """
        any_n = normalize_tags(any_tags)
        all_n = normalize_tags(all_tags)

        if any_n:
            matched: set[str] = set()
            for tag in any_n:
                matched.update(self._tag_ids(tag))
        else:
            matched = set(self._tasks.keys())

        for tag in all_n:
            if not matched:
                break
            matched.intersection_update(self._tag_ids(tag))

        out: list[Task] = []
        for id in sorted(matched):
            task = self._fetch(id)
            if task is None:
                continue
            if status is not None and not status.matches(task):
                continue
            out.append(task)
            if limit > 0 and len(out) >= limit:
                break
        return out

    def list_tags(self) -> dict[str, int]:
        """Tag name -> non-blank lines in its index entry (approximate until rebuild)."""
        counts: dict[str, int] = {}
        for tag in sorted(self._tags.keys()):
            try:
                entry = self._tags.get(tag)
            except NotFoundError:
                continue
            counts[tag] = sum(1 for line in entry.value.decode("utf-8").split("\n") if line.strip())
        return counts

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def rebuild_index(self) -> dict[str, int]:
        """
        Regenerate the tag index from the entity bucket.

        Deletes index entries for tags no task carries, then overwrites
        every remaining entry with the freshly computed ids. This is the
        repair path for drift left by interrupted writes.

        Returns:
            Tag name -> number of ids written
        """
        acc: dict[str, list[str]] = {}
        for key in sorted(self._tasks.keys()):
            try:
                task, _ = self.get(key)
            except NotFoundError:
                continue
            for tag in normalize_tags(task.tags):
                acc.setdefault(tag, []).append(key)

        removed = 0
        for tag in self._tags.keys():
            if tag not in acc:
                self._tags.delete(tag)
                removed += 1

        for tag in sorted(acc):
            self._tags.put(tag, encode_ids(acc[tag]))

        logger.info("Rebuilt tag index: %d tags written, %d removed", len(acc), removed)
        return {tag: len(ids) for tag, ids in sorted(acc.items())}

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the substrate if this store opened it."""
        if self._owns_substrate and self._substrate is not None:
            self._substrate.close()
            self._substrate = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def _patched(task: Task, changes: UpdateSet) -> Task:
    """Copy of task with the set fields of changes applied."""
    return Task(
        id=task.id,
        text=changes.text.strip() if changes.text is not None else task.text,
        done=changes.done if changes.done is not None else task.done,
        tags=canonical_tags(changes.tags) if changes.tags is not None else list(task.tags),
        created=task.created,
        priority=int(changes.priority) if changes.priority is not None else task.priority,
        estimate_minutes=task.estimate_minutes,
    )
