"""Logging for the ``python -m callback_tunnel`` embedder.

The library modules only call ``logging.getLogger(__name__)``; handlers are
installed here, once, by the CLI. Every line carries the ``[op:req]`` prefix
from `callback_tunnel.log_context`.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from callback_tunnel.log_context import ContextFilter

LOG_FILE_NAME = "callback-tunnel.log"
LOG_FILE_MAX_BYTES = 1024 * 1024
LOG_FILE_BACKUPS = 2

LOG_FMT = "%(asctime)s %(levelname)-7s %(name)s: %(ctx)s%(message)s"
DATE_FMT = "%H:%M:%S"

# Third-party loggers that drown out callback traffic at INFO.
QUIET_LOGGERS = ("aiohttp.access", "aiohttp.server", "ngrok")

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, log_dir: Path | None = None) -> None:
    """Route logs to stderr, plus a rotating file when *log_dir* is set.

    Replaces handlers installed by an earlier call, so repeated calls never
    duplicate output.
    """
    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
        if isinstance(old, logging.FileHandler):
            old.close()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    handlers: list[logging.Handler] = []
    if sys.stderr is not None:
        handlers.append(logging.StreamHandler(sys.stderr))
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_dir / LOG_FILE_NAME,
                maxBytes=LOG_FILE_MAX_BYTES,
                backupCount=LOG_FILE_BACKUPS,
                encoding="utf-8",
            )
        )

    formatter = logging.Formatter(LOG_FMT, datefmt=DATE_FMT)
    ctx_filter = ContextFilter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(ctx_filter)
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("Logging to %d handler(s)", len(handlers))
