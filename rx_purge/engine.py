"""
History purge engine.

One invocation removes history Rxs older than a retention cutoff (or inside
an explicit window), oldest first, in bounded batches, until the window is
empty or the delete cap is reached. It then ages out accept/reject records
over the same window. Repeating the invocation resumes where the last one
stopped.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy import extract, func, select
from sqlalchemy.engine import Engine

from .block_delete import StepRunner
from .cascade import CascadeExecutor
from .config import PurgeConfig
from .events import CompositeEventSink, EventSink, LoggingEventSink, SqlEventLog
from .exceptions import PurgeDisabledError, PurgeError
from .models import (
    BacklogBucket,
    BacklogReport,
    PurgeRequest,
    PurgeResult,
    PurgeStatus,
    PurgeWindow,
)
from .reclaimer import SharedObjectReclaimer
from .schema import OrderAcceptReject, OrderHistory
from .secondary import AcceptRejectStream
from .selector import RootSetSelector, window_predicate

logger = logging.getLogger(__name__)


def default_event_sink(engine: Engine, config: PurgeConfig) -> EventSink:
    """Logging sink, plus the event log tables when configured."""
    sinks = [LoggingEventSink()]
    if config.event_log_to_database:
        sinks.append(SqlEventLog(engine))
    return CompositeEventSink(sinks)


class HistoryPurgeEngine:
    """Bounded, resumable purge of history Rxs and their owned data.

    Attributes:
        config (PurgeConfig): Values used for every invocation unless the
            request overrides them.
        event_sink (EventSink): Receives begin/end/error events.

    Example:
        >>> from sqlalchemy import create_engine
        >>> engine = create_engine("sqlite:///pharmacy.db")
        >>> purge = HistoryPurgeEngine(engine, PurgeConfig(retention_days=730))
        >>> result = purge.run(PurgeRequest(block_size=1000))
        >>> result.history_rows_deleted
        250
    """

    EVENT_BEGIN = "PurgeOldData Beg"
    EVENT_END = "PurgeOldData End"
    SOURCE = "rx_purge.engine"

    def __init__(
        self,
        engine: Engine,
        config: Optional[PurgeConfig] = None,
        event_sink: Optional[EventSink] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the purge engine.

        Args:
            engine: SQLAlchemy engine for the pharmacy database
            config: Purge configuration (defaults apply if omitted)
            event_sink: Event sink (logging plus event tables if omitted)
            clock: Source of "now" for age-based cutoffs
        """
        self.engine = engine
        self.config = config or PurgeConfig()
        self.event_sink = event_sink or default_event_sink(engine, self.config)
        self.clock = clock

        self.runner = StepRunner(engine, chunk_size=self.config.reference_check_chunk_size)
        self.selector = RootSetSelector(self.runner)
        self.cascade = CascadeExecutor(
            self.runner,
            SharedObjectReclaimer(self.runner),
            max_group_depth=self.config.max_group_depth,
            reclaim_prescribers=self.config.reclaim_prescribers,
        )
        self.accept_reject = AcceptRejectStream(self.runner)

    def limits(self, request: PurgeRequest) -> Tuple[int, int]:
        """Effective (block_size, max_to_delete) for ``request``."""
        block_size = request.block_size or self.config.block_size
        max_to_delete = request.max_to_delete or self.config.max_to_delete
        return block_size, max_to_delete

    def purge(self, request: Optional[PurgeRequest] = None) -> PurgeResult:
        """
        Run one bounded purge invocation.

        Args:
            request: Window and limits; configuration defaults fill the gaps

        Returns:
            Counts for both streams

        Raises:
            PurgeDisabledError: The purge is disabled by configuration
            InvalidParameterError: Bad window or retention period
            DeleteFailureError: A delete step failed; earlier steps stay
                committed. The partial result is attached as ``result``.
        """
        if not self.config.purge_enabled:
            raise PurgeDisabledError()

        request = request or PurgeRequest()
        block_size, max_to_delete = self.limits(request)
        result = PurgeResult()

        self.event_sink.event(
            self.EVENT_BEGIN,
            notes=request.describe(block_size, max_to_delete),
            source=self.SOURCE,
        )

        try:
            window = request.resolve_window(self.clock(), self.config.retention_days)
            result.window = window
            logger.info(
                f"Purging history Rxs in {window} "
                f"(block_size={block_size}, max_to_delete={max_to_delete})"
            )

            self._purge_history(window, block_size, max_to_delete, result)

            self.runner.reset_tally()
            result.accept_reject_rows_deleted = self.accept_reject.purge(
                window, block_size, max_to_delete
            )
            self._merge_tally(result, self.runner.reset_tally())
        except PurgeError as e:
            result.status = PurgeStatus.FAILED
            result.error_code = e.code
            result.error_message = e.message
            result.finished_at = datetime.now()
            self._merge_tally(result, self.runner.reset_tally())
            self.event_sink.error(self.EVENT_END, e.code, e.message, source=self.SOURCE)
            self.event_sink.event(
                self.EVENT_END, "Failed", notes=result.summary(), source=self.SOURCE
            )
            e.result = result  # type: ignore[attr-defined]
            raise

        result.finished_at = datetime.now()
        self.event_sink.event(
            self.EVENT_END, "Successful", notes=result.summary(), source=self.SOURCE
        )
        logger.info(f"Purge complete: {result.summary()}")
        return result

    def run(self, request: Optional[PurgeRequest] = None) -> PurgeResult:
        """Like purge(), but report failure as a FAILED result instead of raising."""
        try:
            return self.purge(request)
        except PurgeError as e:
            result = getattr(e, "result", None)
            if result is None:
                result = PurgeResult(
                    status=PurgeStatus.FAILED,
                    error_code=e.code,
                    error_message=e.message,
                    finished_at=datetime.now(),
                )
            logger.error(f"Purge failed ({e.code}): {e.message}")
            return result

    def _purge_history(
        self, window: PurgeWindow, block_size: int, max_to_delete: int, result: PurgeResult
    ) -> None:
        total = 0
        while total < max_to_delete and self.selector.has_remaining(window):
            limit = min(block_size, max_to_delete - total)
            batch = self.selector.next_batch(window, limit)
            if not batch:
                break

            outcome = self.cascade.process(batch)
            result.batches += 1
            self._merge_tally(result, outcome.rows_by_table)

            total += outcome.root_rows_deleted
            result.history_rows_deleted = total

            if outcome.root_rows_deleted == 0:
                logger.warning(
                    f"Batch of {len(batch)} history Rxs removed nothing; "
                    "stopping to avoid reprocessing it"
                )
                break

        if total >= max_to_delete:
            result.cap_reached = True
            logger.info(f"Reached max_to_delete ({max_to_delete}); remaining backlog left")

    @staticmethod
    def _merge_tally(result: PurgeResult, tally: Dict[str, int]) -> None:
        for table, count in tally.items():
            result.add_rows(table, count)

    def count_backlog(
        self, window: Optional[PurgeWindow] = None, older_than_days: Optional[int] = None
    ) -> BacklogReport:
        """
        Count rows eligible for purge, per calendar month.

        Args:
            window: Explicit window; derived from the retention period if omitted
            older_than_days: Retention override used when ``window`` is omitted

        Returns:
            Monthly buckets of history Rx and accept/reject counts
        """
        if window is None:
            window = PurgeRequest(older_than_days=older_than_days).resolve_window(
                self.clock(), self.config.retention_days
            )

        buckets: Dict[str, BacklogBucket] = {}
        streams = (
            (OrderHistory.__table__.c.history_dttm, "history_rows"),
            (OrderAcceptReject.__table__.c.reject_dttm, "accept_reject_rows"),
        )

        with self.runner.step("count backlog") as conn:
            for column, attr in streams:
                year = extract("year", column)
                month = extract("month", column)
                stmt = (
                    select(year, month, func.count())
                    .where(window_predicate(column, window))
                    .group_by(year, month)
                )
                for y, m, count in conn.execute(stmt):
                    period = f"{int(y):04d}-{int(m):02d}"
                    bucket = buckets.setdefault(period, BacklogBucket(period=period))
                    setattr(bucket, attr, count)

        return BacklogReport(
            window=window, buckets=[buckets[key] for key in sorted(buckets)]
        )
