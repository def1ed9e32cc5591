"""
Error types and error logging for utask.

The store raises these typed errors; the CLI turns them into exit codes and
logs full stack traces for anything unexpected while showing clean messages
to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class UtaskError(Exception):
    """Base class for all utask errors."""


class NotFoundError(UtaskError):
    """No entity, tag entry, or prefix match."""


class AmbiguousPrefixError(UtaskError):
    """A short id prefix matched more than one task."""

    def __init__(self, prefix: str, candidates: list[str]):
        self.prefix = prefix
        self.candidates = list(candidates)
        super().__init__(
            f"ambiguous prefix {prefix!r}: {len(self.candidates)} candidates"
        )


class AlreadyExistsError(UtaskError):
    """Insert-if-absent found the key already present."""


class ConflictError(UtaskError):
    """A conditional write was rejected: the key's revision moved on."""


class ConflictRetryExhaustedError(UtaskError):
    """A CAS cycle could not commit within the retry bound."""

    def __init__(self, key: str, attempts: int):
        self.key = key
        self.attempts = attempts
        super().__init__(
            f"write to {key!r} still conflicting after {attempts} attempts"
        )


class SubstrateUnavailableError(UtaskError):
    """The key-value substrate could not be reached or failed."""


class InvalidInputError(UtaskError):
    """Caller supplied unusable input (empty prefix, bad filter value)."""


class CorruptRecordError(UtaskError):
    """A stored task value could not be decoded."""


class IndexMaintenanceError(UtaskError):
    """The task write committed but one or more tag index updates failed.

    The task is durable; the tag index is degraded until ``rebuild_index``.
    """

    def __init__(self, task_id: str, failures: dict[str, Exception]):
        self.task_id = task_id
        self.failures = dict(failures)
        tags = ", ".join(sorted(self.failures))
        super().__init__(
            f"task {task_id[:12]} stored but tag index update failed for: {tags} "
            f"(run 'ut rebuild-index' to repair)"
        )


def _error_log_path() -> Path:
    """Resolve error log path, respecting UTASK_HOME."""
    home = os.environ.get("UTASK_HOME")
    if home:
        return Path(home) / "utask-errors.log"
    return Path.home() / ".utask" / "utask-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(exc)))
    except OSError:
        pass  # error log is best effort
    return log_path
