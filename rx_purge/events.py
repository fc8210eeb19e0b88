"""
Event and error sinks for purge runs.

Begin/end/failure events and error code/message pairs are handed to an
EventSink. Sinks either write through the logging module or persist to the
sql_event_log and sql_error_log tables.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .schema import SqlError, SqlEvent

logger = logging.getLogger(__name__)

# Event category used by maintenance procedures
CATEGORY_MAINTENANCE = "A"


class EventSink(ABC):
    """Receives run events and errors."""

    @abstractmethod
    def event(
        self,
        name: str,
        outcome: str = "",
        notes: str = "",
        source: str = "",
        category: str = CATEGORY_MAINTENANCE,
    ) -> None:
        """
        Record a begin or end event.

        Args:
            name: Event name, e.g. "PurgeOldData Beg"
            outcome: "" for begin events, "Successful" or "Failed" for end events
            notes: Free text (parameter echo or row counts)
            source: Component that raised the event
            category: Event category
        """
        pass

    @abstractmethod
    def error(self, name: str, code: int, message: str, source: str = "") -> None:
        """Record an error code/message pair."""
        pass


class LoggingEventSink(EventSink):
    """Writes events and errors through the logging module."""

    def __init__(self, name: str = "rx_purge.events"):
        self.log = logging.getLogger(name)

    def event(
        self,
        name: str,
        outcome: str = "",
        notes: str = "",
        source: str = "",
        category: str = CATEGORY_MAINTENANCE,
    ) -> None:
        level = logging.ERROR if outcome == "Failed" else logging.INFO
        self.log.log(
            level,
            f"[{category}] {name} {outcome}".rstrip() + (f": {notes}" if notes else ""),
            extra={"event_name": name, "outcome": outcome, "source": source},
        )

    def error(self, name: str, code: int, message: str, source: str = "") -> None:
        self.log.error(
            f"{name} error {code}: {message}",
            extra={"event_name": name, "error_code": code, "source": source},
        )


class SqlEventLog(EventSink):
    """Persists events and errors to the event log tables."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def event(
        self,
        name: str,
        outcome: str = "",
        notes: str = "",
        source: str = "",
        category: str = CATEGORY_MAINTENANCE,
    ) -> None:
        self._write(
            insert(SqlEvent).values(
                logged_at=datetime.now(),
                category=category,
                event_name=name,
                outcome=outcome,
                notes=notes[:255],
                source=source,
            )
        )

    def error(self, name: str, code: int, message: str, source: str = "") -> None:
        self._write(
            insert(SqlError).values(
                logged_at=datetime.now(),
                event_name=name,
                error_code=code,
                error_message=message,
                source=source,
            )
        )

    def _write(self, stmt) -> None:
        # A broken event log must not turn a finished purge into a failed one
        try:
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"Failed to write event log entry: {e}")


class CompositeEventSink(EventSink):
    """Fans every event out to several sinks."""

    def __init__(self, sinks: Optional[Iterable[EventSink]] = None):
        self.sinks: List[EventSink] = list(sinks or [])

    def add(self, sink: EventSink) -> None:
        self.sinks.append(sink)

    def event(
        self,
        name: str,
        outcome: str = "",
        notes: str = "",
        source: str = "",
        category: str = CATEGORY_MAINTENANCE,
    ) -> None:
        for sink in self.sinks:
            sink.event(name, outcome=outcome, notes=notes, source=source, category=category)

    def error(self, name: str, code: int, message: str, source: str = "") -> None:
        for sink in self.sinks:
            sink.error(name, code, message, source=source)
