"""Human-readable progress reporting.

The engine reports stage start, completion and zero-work outcomes through a
StatusSink passed in by the caller. Sinks are observational: emit() never
lets a sink failure reach the operation that reported the event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class StatusLevel(str, Enum):
    """Severity of a status update."""

    INFO = "info"
    PROGRESS = "progress"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class StatusUpdate:
    """A single progress event."""

    level: StatusLevel
    message: str
    resource: str = ""
    action: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def with_resource(self, resource: str) -> StatusUpdate:
        return replace(self, resource=resource)

    def with_action(self, action: str) -> StatusUpdate:
        return replace(self, action=action)

    def with_metadata(self, key: str, value: Any) -> StatusUpdate:
        return replace(self, metadata={**self.metadata, key: value})


class StatusSink(Protocol):
    """Receives status updates. Implementations must not block."""

    def send(self, update: StatusUpdate) -> None: ...


class NullStatusSink:
    """Drops every update."""

    def send(self, update: StatusUpdate) -> None:
        pass


class LoggingStatusSink:
    """Writes updates to the structured log."""

    _LEVELS = {
        StatusLevel.INFO: logging.INFO,
        StatusLevel.PROGRESS: logging.INFO,
        StatusLevel.SUCCESS: logging.INFO,
        StatusLevel.WARNING: logging.WARNING,
        StatusLevel.ERROR: logging.ERROR,
    }

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logging.getLogger("provisioner.progress")

    def send(self, update: StatusUpdate) -> None:
        extra: dict[str, Any] = {"status": update.level.value}
        if update.resource:
            extra["resource"] = update.resource
        if update.action:
            extra["action"] = update.action
        if update.metadata:
            extra["metadata"] = update.metadata
        self._log.log(self._LEVELS[update.level], update.message, extra=extra)


class CollectingStatusSink:
    """Keeps every update in memory, in order."""

    def __init__(self) -> None:
        self.updates: list[StatusUpdate] = []

    def send(self, update: StatusUpdate) -> None:
        self.updates.append(update)

    def messages(self, level: StatusLevel | None = None) -> list[str]:
        return [u.message for u in self.updates if level is None or u.level == level]


def emit(
    sink: StatusSink | None,
    level: StatusLevel,
    message: str,
    resource: str = "",
    action: str = "",
    **metadata: Any,
) -> None:
    """Send an update to the sink without ever failing the caller."""
    if sink is None:
        return
    update = StatusUpdate(level=level, message=message, resource=resource, action=action)
    if metadata:
        update = replace(update, metadata=dict(metadata))
    try:
        sink.send(update)
    except Exception:
        logger.warning("Status sink rejected update", exc_info=True, extra={"update": message})
