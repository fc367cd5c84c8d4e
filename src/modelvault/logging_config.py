"""Central logging configuration for library consumers."""

from __future__ import annotations

import logging
import os
from pathlib import Path

_CONFIGURED = False


def configure_logging(level: int | None = None, log_file: str | None = None) -> None:
    """Configure logging from arguments, falling back to MODELVAULT_LOG_LEVEL/MODELVAULT_LOG_FILE."""
    global _CONFIGURED
    if _CONFIGURED:
        return

    if level is None:
        level = _read_level(os.getenv("MODELVAULT_LOG_LEVEL", "0"))
    if log_file is None:
        log_file = os.getenv("MODELVAULT_LOG_FILE")

    if level is None or level <= 0:
        # Silent mode; leave the root logger alone.
        _CONFIGURED = True
        return

    kwargs: dict[str, object] = {
        "level": _map_level(level),
        "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
    }
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        kwargs["filename"] = path
        kwargs["filemode"] = "a"

    logging.basicConfig(**kwargs)  # type: ignore[arg-type]
    _CONFIGURED = True


def _read_level(raw: str) -> int | None:
    try:
        return int(raw)
    except ValueError:
        return None


def _map_level(level: int) -> int:
    if level >= 2:
        return logging.DEBUG
    return logging.INFO
