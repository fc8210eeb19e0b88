"""
Windowed chunk driver.

Walks a wide date range in fixed-size sub-ranges and repeats purge passes on
each sub-range until a pass removes nothing from either stream.

States::

    Idle -> SelectingSubrange -> RunningPass (repeats while progress > 0)
         -> SubrangeExhausted -> SelectingSubrange ... -> Done
    any delete failure or tripped safety cap -> Aborted
"""

import logging
import threading
import time
from datetime import timedelta
from typing import Callable, Optional

from .config import PurgeConfig
from .engine import HistoryPurgeEngine
from .exceptions import InvalidParameterError, PurgeError, SafetyCapExceededError
from .models import ChunkReport, DriverReport, DriverRequest, DriverState, PurgeRequest

logger = logging.getLogger(__name__)


class WindowedChunkDriver:
    """Runs the purge engine over a wide range, one sub-range at a time."""

    def __init__(
        self,
        purge_engine: HistoryPurgeEngine,
        config: Optional[PurgeConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.purge_engine = purge_engine
        self.config = config or purge_engine.config
        self.sleep = sleep
        self._stop = threading.Event()

    def stop(self) -> None:
        """Request cancellation; honoured before the next pass starts."""
        self._stop.set()

    def drive(self, request: DriverRequest) -> DriverReport:
        """
        Purge ``[wide_from, wide_to)`` chunk by chunk.

        Args:
            request: Wide range and per-pass limits

        Returns:
            Report with per-chunk counts, the transition log and final state.
            Failures end in ABORTED with the error code and message set.

        Raises:
            InvalidParameterError: Inverted range or chunk_days below 1,
                raised before anything is deleted
        """
        chunk_days = request.chunk_days if request.chunk_days is not None else self.config.chunk_days
        max_execs = request.max_execs_per_chunk or self.config.max_execs_per_chunk

        if request.wide_to <= request.wide_from:
            raise InvalidParameterError(
                "wide_to must be greater than wide_from.",
                code=InvalidParameterError.INVERTED_WINDOW,
            )
        if chunk_days < 1:
            raise InvalidParameterError(
                "chunk_days must be >= 1.", code=InvalidParameterError.CHUNK_DAYS
            )

        self._stop.clear()
        report = DriverReport()
        pause = self.config.inter_chunk_pause_seconds

        try:
            self._enter(report, DriverState.SELECTING_SUBRANGE)
            cursor = request.wide_from
            while cursor < request.wide_to and not report.cancelled:
                chunk_to = min(cursor + timedelta(days=chunk_days), request.wide_to)
                chunk = ChunkReport(chunk_from=cursor, chunk_to=chunk_to)
                report.chunks.append(chunk)
                logger.info(f"=== Purging window [{cursor}, {chunk_to}) ===")

                self._exhaust_chunk(request, chunk, max_execs, report)
                if report.cancelled:
                    break

                self._enter(report, DriverState.SUBRANGE_EXHAUSTED)
                cursor = chunk_to
                if cursor < request.wide_to:
                    if pause > 0:
                        self.sleep(pause)
                    self._enter(report, DriverState.SELECTING_SUBRANGE)
        except PurgeError as e:
            report.error_code = e.code
            report.error_message = e.message
            self._enter(report, DriverState.ABORTED)
            logger.error(f"Chunk driver aborted ({e.code}): {e.message}")
            return report

        self._enter(report, DriverState.DONE)
        logger.info(
            f"Chunk driver finished: history={report.history_rows_deleted}; "
            f"accept_reject={report.accept_reject_rows_deleted}"
            + ("; cancelled" if report.cancelled else "")
        )
        return report

    def _exhaust_chunk(
        self,
        request: DriverRequest,
        chunk: ChunkReport,
        max_execs: int,
        report: DriverReport,
    ) -> None:
        while True:
            if self._stop.is_set():
                report.cancelled = True
                logger.info("Chunk driver stopped between passes")
                return
            if chunk.passes >= max_execs:
                raise SafetyCapExceededError(chunk.chunk_from, chunk.chunk_to, max_execs)

            self._enter(report, DriverState.RUNNING_PASS)
            result = self.purge_engine.purge(
                PurgeRequest(
                    history_from=chunk.chunk_from,
                    history_to=chunk.chunk_to,
                    block_size=request.block_size,
                    max_to_delete=request.max_to_delete_per_exec,
                )
            )
            chunk.passes += 1
            chunk.history_rows_deleted += result.history_rows_deleted
            chunk.accept_reject_rows_deleted += result.accept_reject_rows_deleted
            chunk.pass_history_counts.append(result.history_rows_deleted)
            logger.info(
                f"   Pass {chunk.passes} deleted: History={result.history_rows_deleted}; "
                f"AcceptReject={result.accept_reject_rows_deleted}"
            )

            if result.history_rows_deleted == 0 and result.accept_reject_rows_deleted == 0:
                return

    @staticmethod
    def _enter(report: DriverReport, state: DriverState) -> None:
        report.state = state
        report.transitions.append(state)
