"""
Pluggable substrate factory.

Creates the key-value substrate named by ``config.backend``. Built-in
backends are ``memory``, ``sqlite`` and ``etcd``. External substrates
(NATS JetStream KV, Consul, ...) register via the ``utask.backends`` entry
point group.

External backend packages provide a factory function::

    def create_substrate(config: UtaskConfig) -> Substrate:
        ...

and register it in their pyproject.toml::

    [project.entry-points."utask.backends"]
    nats = "utask_nats.backend:create_substrate"
"""

from .config import UtaskConfig
from .protocol import Substrate

BUILTIN_BACKENDS = ("memory", "sqlite", "etcd")


def create_substrate(config: UtaskConfig) -> Substrate:
    """Create the configured substrate connection."""
    if config.backend == "memory":
        from .memory_kv import MemorySubstrate
        return MemorySubstrate()
    if config.backend == "sqlite":
        from .sqlite_kv import SqliteSubstrate
        return SqliteSubstrate(config.path)
    if config.backend == "etcd":
        from .etcd_kv import EtcdSubstrate
        return EtcdSubstrate(config.url)
    return _load_backend(config.backend, config)


def _load_backend(name: str, config: UtaskConfig) -> Substrate:
    """Load a backend by entry point name."""
    from importlib.metadata import entry_points

    eps = entry_points(group="utask.backends")
    for ep in eps:
        if ep.name == name:
            factory = ep.load()
            return factory(config)

    available = list(BUILTIN_BACKENDS) + [ep.name for ep in eps]
    raise ValueError(
        f"Unknown backend: {name!r}. Available: {', '.join(available)}"
    )
