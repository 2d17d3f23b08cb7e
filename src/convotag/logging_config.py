"""
Logging setup for Convotag.

Console output plus an optional rotating log file per process context
(e.g. ``worker``), configured from settings.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone

from convotag.config import settings

_configured_contexts: set[str] = set()


class JsonFormatter(logging.Formatter):
    """Format records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _build_formatter() -> logging.Formatter:
    if settings.log_format == "json":
        return JsonFormatter()
    return logging.Formatter(
        fmt="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def setup_logging(context: str = "engine") -> None:
    """
    Configure the ``convotag`` logger hierarchy.

    Safe to call more than once; each context is configured only once.

    Args:
        context: Name used for the log file (``{context}.log``)
    """
    if context in _configured_contexts:
        return

    root = logging.getLogger("convotag")
    root.setLevel(settings.log_level.upper())
    formatter = _build_formatter()

    if settings.log_console_enabled and not _configured_contexts:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        root.addHandler(console)

    if settings.log_file_enabled:
        log_dir = settings.log_directory
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / f"{context}.log",
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    _configured_contexts.add(context)
    root.debug(f"Logging configured for context '{context}'")
