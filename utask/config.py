"""
Configuration management for utask.

Settings are resolved in layers, lowest precedence first:

1. built-in defaults
2. TOML file (``~/.utask/config.toml``, or ``$UTASK_HOME/config.toml``,
   or the path in ``UTASK_CONFIG`` / ``--config``)
3. environment variables (``UTASK_BACKEND``, ``UTASK_URL``,
   ``UTASK_DB_PATH``, ``UTASK_PROFILE``, ``UTASK_MAX_RETRIES``)
4. explicit overrides (command-line flags)

Example file::

    [substrate]
    backend = "etcd"
    url = "http://etcd.internal:2379"

    [ui]
    profile = "work"
"""

import os
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

import tomli_w

CONFIG_FILENAME = "config.toml"
CONFIG_VERSION = 1

DEFAULT_BACKEND = "sqlite"
DEFAULT_URL = "http://localhost:2379"
DEFAULT_PROFILE = "default"
DEFAULT_MAX_RETRIES = 8


def get_config_dir() -> Path:
    """Directory holding config, the default SQLite store and logs."""
    home = os.environ.get("UTASK_HOME")
    if home:
        return Path(home).expanduser()
    return Path.home() / ".utask"


def default_config_path() -> Path:
    env = os.environ.get("UTASK_CONFIG")
    if env:
        return Path(env).expanduser()
    return get_config_dir() / CONFIG_FILENAME


@dataclass
class UtaskConfig:
    """Resolved client configuration."""
    backend: str = DEFAULT_BACKEND
    url: str = DEFAULT_URL
    path: Path = field(default_factory=lambda: get_config_dir() / "utask.db")
    profile: str = DEFAULT_PROFILE
    max_retries: int = DEFAULT_MAX_RETRIES
    version: int = CONFIG_VERSION
    source: Optional[Path] = None  # file the settings were read from, if any

    @property
    def is_local(self) -> bool:
        """True for backends whose data lives on this machine."""
        return self.backend in ("sqlite", "memory")

    def with_overrides(self, **overrides: Any) -> "UtaskConfig":
        """Copy with the non-None overrides applied."""
        values = {k: v for k, v in overrides.items() if v is not None}
        if "path" in values:
            values["path"] = Path(values["path"]).expanduser()
        return replace(self, **values)


def _parse_int(name: str, value: Any) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer, got {value!r}") from None
    if n < 1:
        raise ValueError(f"{name} must be at least 1, got {n}")
    return n


def load_config_file(path: Path, base: Optional[UtaskConfig] = None) -> UtaskConfig:
    """
    Overlay settings from a TOML file onto ``base`` (defaults if None).

    A missing file is not an error: ``base`` is returned unchanged.

    Raises:
        ValueError: If the file is unreadable, not valid TOML, or newer
            than this version understands
    """
    cfg = base if base is not None else UtaskConfig()
    if not path.exists():
        return cfg

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"parse config {path}: {e}") from e
    except OSError as e:
        raise ValueError(f"read config {path}: {e}") from e

    version = data.get("utask", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    substrate = data.get("substrate", {})
    ui = data.get("ui", {})
    store = data.get("store", {})

    overrides: dict[str, Any] = {
        "backend": substrate.get("backend"),
        "url": substrate.get("url"),
        "path": substrate.get("path"),
        "profile": ui.get("profile"),
    }
    if "max_retries" in store:
        overrides["max_retries"] = _parse_int("store.max_retries", store["max_retries"])
    return cfg.with_overrides(source=path, version=version, **overrides)


def overlay_env(cfg: UtaskConfig) -> UtaskConfig:
    """Apply environment variables onto cfg."""
    overrides: dict[str, Any] = {
        "backend": os.environ.get("UTASK_BACKEND") or None,
        "url": os.environ.get("UTASK_URL") or None,
        "path": os.environ.get("UTASK_DB_PATH") or None,
        "profile": os.environ.get("UTASK_PROFILE") or None,
    }
    retries = os.environ.get("UTASK_MAX_RETRIES")
    if retries:
        overrides["max_retries"] = _parse_int("UTASK_MAX_RETRIES", retries)
    return cfg.with_overrides(**overrides)


def load_config(
    config_path: Optional[Path] = None,
    **overrides: Any,
) -> UtaskConfig:
    """
    Resolve configuration: defaults < file < environment < overrides.

    This is the main entry point for config management.

    Args:
        config_path: Explicit config file (else UTASK_CONFIG or the default)
        **overrides: Highest-precedence values; None entries are ignored
    """
    path = config_path if config_path is not None else default_config_path()
    cfg = load_config_file(Path(path).expanduser())
    cfg = overlay_env(cfg)
    cfg = cfg.with_overrides(**overrides)
    if not cfg.profile.strip():
        cfg = replace(cfg, profile=DEFAULT_PROFILE)
    return cfg


def save_config(cfg: UtaskConfig, path: Optional[Path] = None) -> Path:
    """
    Write configuration as TOML.

    Creates the directory if it doesn't exist. Returns the path written.
    """
    target = path if path is not None else default_config_path()
    target.parent.mkdir(parents=True, exist_ok=True)

    data = {
        "utask": {"version": cfg.version},
        "substrate": {
            "backend": cfg.backend,
            "url": cfg.url,
            "path": str(cfg.path),
        },
        "ui": {"profile": cfg.profile},
        "store": {"max_retries": cfg.max_retries},
    }
    with open(target, "wb") as f:
        tomli_w.dump(data, f)
    return target
