"""
Data models for history purge operations.

These models define the invocation parameters and the reported outcome of
purge passes, driver runs and backlog reports.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import InvalidParameterError

# Lower bound used when only a retention period is supplied.
LEGACY_WINDOW_START = datetime(1900, 1, 1)


class PurgeStatus(str, Enum):
    """Outcome of one engine invocation."""

    SUCCESS = "success"
    FAILED = "failed"


class DriverState(str, Enum):
    """States of the windowed chunk driver."""

    IDLE = "idle"
    SELECTING_SUBRANGE = "selecting_subrange"
    RUNNING_PASS = "running_pass"
    SUBRANGE_EXHAUSTED = "subrange_exhausted"
    DONE = "done"
    ABORTED = "aborted"


class PurgeWindow(BaseModel):
    """Half-open interval [from_dttm, to_dttm) of eligible history timestamps."""

    model_config = ConfigDict(frozen=True)

    from_dttm: datetime = Field(..., description="Inclusive lower bound")
    to_dttm: datetime = Field(..., description="Exclusive upper bound")

    def __str__(self) -> str:
        return f"[{self.from_dttm:%Y-%m-%d %H:%M:%S}, {self.to_dttm:%Y-%m-%d %H:%M:%S})"


class PurgeRequest(BaseModel):
    """Parameters for one engine invocation.

    Supply either ``older_than_days`` or both window bounds. Unset block size
    and cap fall back to the engine's configuration.
    """

    older_than_days: Optional[int] = Field(
        None, description="Purge roots moved to history more than N days ago"
    )
    history_from: Optional[datetime] = Field(
        None, description="Inclusive lower bound of an explicit window"
    )
    history_to: Optional[datetime] = Field(
        None, description="Exclusive upper bound of an explicit window"
    )
    block_size: Optional[int] = Field(
        None, description="Maximum rows per block delete", gt=0
    )
    max_to_delete: Optional[int] = Field(
        None, description="Maximum root rows deleted by this invocation", gt=0
    )

    def resolve_window(self, now: datetime, default_days: int) -> PurgeWindow:
        """
        Compute the effective purge window.

        Args:
            now: Reference time for an age-based cutoff
            default_days: Retention period used when none was requested

        Returns:
            The effective window

        Raises:
            InvalidParameterError: Partial or inverted window, or a
                non-positive retention period
        """
        if (self.history_from is None) != (self.history_to is None):
            raise InvalidParameterError(
                "Invalid parameter values. Provide BOTH history_from and "
                "history_to, or neither.",
                code=InvalidParameterError.PARTIAL_WINDOW,
            )

        if self.history_from is not None and self.history_to is not None:
            if self.history_to <= self.history_from:
                raise InvalidParameterError(
                    "Invalid parameter values. history_to must be greater "
                    "than history_from.",
                    code=InvalidParameterError.INVERTED_WINDOW,
                )
            return PurgeWindow(from_dttm=self.history_from, to_dttm=self.history_to)

        days = self.older_than_days if self.older_than_days is not None else default_days
        if days <= 0:
            raise InvalidParameterError(
                f"Invalid parameter value. (older_than_days = {days})"
            )

        return PurgeWindow(from_dttm=LEGACY_WINDOW_START, to_dttm=now - timedelta(days=days))

    def describe(self, block_size: int, max_to_delete: int) -> str:
        """Parameter echo recorded in the begin event."""
        notes = (
            f"older_than_days={self.older_than_days};block_size={block_size};"
            f"max_to_delete={max_to_delete}"
        )
        if self.history_from is not None:
            notes += f";history_from={self.history_from:%Y-%m-%d %H:%M:%S}"
        if self.history_to is not None:
            notes += f";history_to={self.history_to:%Y-%m-%d %H:%M:%S}"
        return notes


class PurgeResult(BaseModel):
    """Outcome of one engine invocation."""

    status: PurgeStatus = Field(PurgeStatus.SUCCESS, description="Invocation outcome")
    window: Optional[PurgeWindow] = Field(None, description="Effective window")
    history_rows_deleted: int = Field(0, description="Root rows removed")
    accept_reject_rows_deleted: int = Field(
        0, description="Secondary stream rows removed"
    )
    batches: int = Field(0, description="Root batches processed")
    cap_reached: bool = Field(False, description="Whether max_to_delete stopped the run")
    rows_by_table: Dict[str, int] = Field(
        default_factory=dict, description="Rows removed per table"
    )
    error_code: Optional[int] = Field(None, description="Error code on failure")
    error_message: Optional[str] = Field(None, description="Error message on failure")
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == PurgeStatus.SUCCESS

    @property
    def made_progress(self) -> bool:
        return self.history_rows_deleted > 0 or self.accept_reject_rows_deleted > 0

    def add_rows(self, table: str, count: int) -> None:
        """Add removed rows to the per-table totals."""
        if count:
            self.rows_by_table[table] = self.rows_by_table.get(table, 0) + count

    def summary(self) -> str:
        """Row counts recorded in the end event."""
        return (
            f"history_rows_deleted={self.history_rows_deleted};"
            f"accept_reject_rows_deleted={self.accept_reject_rows_deleted};"
            f"batches={self.batches}"
        )


class DriverRequest(BaseModel):
    """Parameters for a chunked run over a wide date range."""

    wide_from: datetime = Field(..., description="Inclusive start of the wide range")
    wide_to: datetime = Field(..., description="Exclusive end of the wide range")
    chunk_days: Optional[int] = Field(None, description="Days per sub-range")
    block_size: Optional[int] = Field(None, description="Rows per block delete", gt=0)
    max_to_delete_per_exec: Optional[int] = Field(
        None, description="Root rows capped per engine invocation", gt=0
    )
    max_execs_per_chunk: Optional[int] = Field(
        None, description="Safety guard on invocations per sub-range", gt=0
    )


class ChunkReport(BaseModel):
    """Work done on one driver sub-range."""

    chunk_from: datetime
    chunk_to: datetime
    passes: int = 0
    history_rows_deleted: int = 0
    accept_reject_rows_deleted: int = 0
    pass_history_counts: List[int] = Field(default_factory=list)


class DriverReport(BaseModel):
    """Outcome of a chunked run."""

    state: DriverState = DriverState.IDLE
    chunks: List[ChunkReport] = Field(default_factory=list)
    transitions: List[DriverState] = Field(default_factory=list)
    cancelled: bool = False
    error_code: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def history_rows_deleted(self) -> int:
        return sum(chunk.history_rows_deleted for chunk in self.chunks)

    @property
    def accept_reject_rows_deleted(self) -> int:
        return sum(chunk.accept_reject_rows_deleted for chunk in self.chunks)


class BacklogBucket(BaseModel):
    """Eligible rows for one calendar month."""

    period: str = Field(..., description="Month as YYYY-MM")
    history_rows: int = 0
    accept_reject_rows: int = 0


class BacklogReport(BaseModel):
    """Rows eligible for purge in a window, bucketed by month."""

    window: PurgeWindow
    buckets: List[BacklogBucket] = Field(default_factory=list)

    @property
    def history_rows(self) -> int:
        return sum(bucket.history_rows for bucket in self.buckets)

    @property
    def accept_reject_rows(self) -> int:
        return sum(bucket.accept_reject_rows for bucket in self.buckets)
