"""Span-per-operation instrumentation.

A Tracer hands out Span context managers. Spans record attributes (counts,
ids, existence flags) and errors; they never change control flow. The
LoggingTracer writes one structured debug record per finished span, which is
enough to reconstruct what a deletion run did from the JSON log alone.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass
class Span:
    """One traced operation."""

    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)
    ended_at: float | None = None

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def set_attributes(self, **attributes: Any) -> None:
        self.attributes.update(attributes)

    def record_error(self, error: BaseException | str) -> None:
        self.errors.append(str(error))

    @property
    def duration_seconds(self) -> float:
        end = self.ended_at if self.ended_at is not None else time.monotonic()
        return end - self.started_at


class Tracer(Protocol):
    """Creates spans. The span ends when its context exits."""

    def span(self, name: str, **attributes: Any) -> Any: ...


class NoopTracer:
    """Tracer that records into throwaway spans."""

    @contextmanager
    def span(self, name: str, **attributes: Any) -> Iterator[Span]:
        yield Span(name=name, attributes=dict(attributes))


class LoggingTracer:
    """Tracer that logs every finished span.

    Exceptions escaping the span are recorded on it and re-raised unchanged.
    Finished spans are also kept in memory when keep_finished is set, which
    tests use to assert on recorded attributes.
    """

    def __init__(self, log: logging.Logger | None = None, keep_finished: bool = False) -> None:
        self._log = log or logger
        self._keep_finished = keep_finished
        self.finished: list[Span] = []

    @contextmanager
    def span(self, name: str, **attributes: Any) -> Iterator[Span]:
        current = Span(name=name, attributes=dict(attributes))
        try:
            yield current
        except BaseException as e:
            current.record_error(e)
            raise
        finally:
            current.ended_at = time.monotonic()
            self._log.debug(
                "span finished",
                extra={
                    "span": current.name,
                    "duration_seconds": round(current.duration_seconds, 3),
                    "attributes": current.attributes,
                    "errors": current.errors,
                },
            )
            if self._keep_finished:
                self.finished.append(current)

    def find(self, name: str) -> list[Span]:
        return [s for s in self.finished if s.name == name]
