"""Logging setup for Goldfish.

Library code logs through module loggers (``logging.getLogger(__name__)``)
and never configures handlers itself. Hosts (the CLI, an agent front end)
call ``configure_logging`` once and optionally ``configure_ops_log`` to keep
a persistent record of background embedding work.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPS_LOG_FILENAME = "goldfish.log"

_NOISY_LIBRARIES = ("sentence_transformers", "transformers", "urllib3", "filelock")


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the goldfish namespace."""
    if not name.startswith("goldfish"):
        name = f"goldfish.{name}"
    return logging.getLogger(name)


def configure_logging(verbose: bool = False) -> None:
    """Attach a stderr handler to the goldfish logger.

    Args:
        verbose: DEBUG level and library output when True, WARNING otherwise
    """
    level = logging.DEBUG if verbose else logging.WARNING
    root_logger = logging.getLogger("goldfish")
    root_logger.setLevel(level)

    # Replace our previous handler; sys.stderr may have been swapped since
    for h in list(root_logger.handlers):
        if getattr(h, "_goldfish_stderr", False):
            root_logger.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    handler._goldfish_stderr = True
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root_logger.addHandler(handler)

    for name in _NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.ERROR)


def configure_ops_log(root: Path) -> logging.Handler:
    """Write INFO+ goldfish records to ``<root>/goldfish.log``.

    Uses a rotating file handler (1MB max, 3 backups). Returns the handler
    so the host can remove it on shutdown.
    """
    root.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(root / OPS_LOG_FILENAME),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    goldfish_logger = logging.getLogger("goldfish")
    goldfish_logger.addHandler(handler)
    if goldfish_logger.level == logging.NOTSET or goldfish_logger.level > logging.INFO:
        goldfish_logger.setLevel(logging.INFO)

    return handler


# =============================================================================
# Structured sync events
# =============================================================================

_sync_logger = get_logger("goldfish.sync")


def log_sync_started(workspace: str, source: str) -> None:
    _sync_logger.info(f"sync started workspace={workspace} source={source}")


def log_sync_completed(
    workspace: str,
    total: int,
    generated: int,
    failed: int,
    duration_ms: int,
) -> None:
    _sync_logger.info(
        f"sync completed workspace={workspace} total={total} "
        f"generated={generated} failed={failed} duration_ms={duration_ms}"
    )


def log_sync_failed(workspace: str, error: str) -> None:
    _sync_logger.warning(f"sync failed workspace={workspace} error={error}")
