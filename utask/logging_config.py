"""
Logging configuration for utask.

Quiet by default: library chatter (httpx, the MCP server) stays off the
terminal unless --verbose or UTASK_VERBOSE asks for it.
"""

import os
import sys
import warnings


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose library output.

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    if quiet:
        warnings.filterwarnings("ignore")

        import logging
        logging.getLogger("httpx").setLevel(logging.ERROR)
        logging.getLogger("httpcore").setLevel(logging.ERROR)
        logging.getLogger("mcp").setLevel(logging.ERROR)


def is_verbose_env() -> bool:
    return os.environ.get("UTASK_VERBOSE", "").strip().lower() in ("1", "true", "yes")


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    import logging

    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("utask", "httpx"):
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(log_dir):
    """Configure a persistent operations log.

    Writes to {log_dir}/utask-ops.log using a rotating file handler
    (1MB max, 3 backups). Records every create, update, close and index
    repair regardless of --verbose. Returns the handler so callers can
    remove it.
    """
    import logging
    from logging.handlers import RotatingFileHandler
    from pathlib import Path

    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "utask-ops.log"

    utask_logger = logging.getLogger("utask")
    for existing in utask_logger.handlers:
        if getattr(existing, "baseFilename", None) == str(log_path.resolve()):
            return existing

    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    utask_logger.addHandler(handler)
    # Let INFO through to the file even in quiet mode
    if utask_logger.level == logging.NOTSET or utask_logger.level > logging.INFO:
        utask_logger.setLevel(logging.INFO)

    return handler
