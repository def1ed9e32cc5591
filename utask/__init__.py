"""
utask: a minimal task queue on a shared key-value store.

Tasks are content-addressed records with tags, kept in a strongly
consistent key-value substrate that every client talks to directly.
Clients coordinate through per-key compare-and-swap; there is no server.

Quick Start:
    from utask import TaskStore, TaskInput, load_config

    with TaskStore.open(load_config()) as store:
        task, existed = store.create(TaskInput("Renew TLS certs", ["ops"]))
        store.query(any_tags=["ops"], all_tags=["urgent"])
        store.close_task(task.id)

CLI Usage:
    ut create --title "Renew TLS certs" --tag ops
    ut list --tags ops,urgent --status open
    ut close 3fa9c2

Environment Variables:
    UTASK_HOME         - Config/data directory (default ~/.utask)
    UTASK_CONFIG       - Config file path
    UTASK_BACKEND      - Substrate backend (sqlite, etcd, memory, plugin)
    UTASK_URL          - etcd gateway URL
    UTASK_DB_PATH      - SQLite database file
    UTASK_PROFILE      - Profile (namespace)
    UTASK_MAX_RETRIES  - CAS attempts per write
    UTASK_VERBOSE      - Debug logging to stderr
"""

from .config import UtaskConfig, load_config
from .errors import (
    AmbiguousPrefixError,
    ConflictRetryExhaustedError,
    IndexMaintenanceError,
    InvalidInputError,
    NotFoundError,
    SubstrateUnavailableError,
    UtaskError,
)
from .store import TaskStore
from .types import Status, Task, TaskInput, UpdateSet

__version__ = "0.1.0"
__all__ = [
    "TaskStore",
    "Task",
    "TaskInput",
    "UpdateSet",
    "Status",
    "UtaskConfig",
    "load_config",
    "UtaskError",
    "NotFoundError",
    "AmbiguousPrefixError",
    "ConflictRetryExhaustedError",
    "SubstrateUnavailableError",
    "InvalidInputError",
    "IndexMaintenanceError",
]
