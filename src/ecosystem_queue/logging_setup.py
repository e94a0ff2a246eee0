"""Process-wide logging configuration for the CLI entrypoints."""

from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(default_level: str = "INFO") -> None:
    """Configure root logging once; later calls only reapply per-logger overrides.

    ``ECOSYSTEM_QUEUE_LOG_LEVEL`` sets the root level and
    ``ECOSYSTEM_QUEUE_LOG_LEVELS="telethon=WARNING,ecosystem_queue.queue=DEBUG"``
    tunes individual loggers.
    """

    level_name = os.environ.get("ECOSYSTEM_QUEUE_LOG_LEVEL", default_level).upper()
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, level_name, logging.INFO),
            format=LOG_FORMAT,
        )
    _apply_log_overrides()


def _apply_log_overrides() -> None:
    overrides = os.environ.get("ECOSYSTEM_QUEUE_LOG_LEVELS", "")
    if not overrides:
        return
    for item in overrides.split(","):
        if not item.strip() or "=" not in item:
            continue
        name, level = item.split("=", 1)
        logging.getLogger(name.strip()).setLevel(
            getattr(logging, level.strip().upper(), logging.INFO),
        )
