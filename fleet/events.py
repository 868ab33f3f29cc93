from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from .settings import settings

logger = logging.getLogger("fleet")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "FATAL": logging.CRITICAL,
    "CRITICAL": logging.CRITICAL,
}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Event:
    ts: str
    level: str
    message: str
    identity: str | None = None


_events: deque[Event] = deque(maxlen=max(1, settings.event_buffer))


def log_event(level: str, message: str, identity: str | None = None, exc_info: bool = False) -> None:
    """Log a lifecycle event and keep it in the in-memory buffer served by /events."""
    level = level.upper()
    ev = Event(ts=utc_now(), level=level, message=message, identity=identity)
    _events.append(ev)
    text = f"{message} [agent={identity}]" if identity else message
    logger.log(_LEVELS.get(level, logging.INFO), text, exc_info=exc_info)


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    """Most recent events first."""
    if limit <= 0:
        return []
    return [asdict(e) for e in list(reversed(_events))[:limit]]


def clear_events() -> None:
    _events.clear()
