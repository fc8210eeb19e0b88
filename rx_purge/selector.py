"""Root batch selection for the history purge."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator, List, Tuple

from sqlalchemy import and_, exists, select
from sqlalchemy.sql.elements import ColumnElement

from .block_delete import StepRunner, chunked
from .models import PurgeWindow
from .schema import Group, OrderHistory

logger = logging.getLogger(__name__)

RootKey = Tuple[int, datetime]


def window_predicate(column: Any, window: PurgeWindow) -> ColumnElement[bool]:
    """Half-open [from, to) predicate on a timestamp column."""
    return and_(column >= window.from_dttm, column < window.to_dttm)


@dataclass
class Batch:
    """
    A bounded working set of history Rxs, captured before any deletion.

    The shared-object candidates are read from the root rows up front,
    because those columns are gone once the roots are deleted.
    """

    keys: List[RootKey] = field(default_factory=list)
    group_nums: List[int] = field(default_factory=list)
    patient_ids: List[int] = field(default_factory=list)
    prescriber_ids: List[int] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.keys)

    def __iter__(self) -> Iterator[RootKey]:
        return iter(self.keys)

    @property
    def order_ids(self) -> List[int]:
        return sorted({order_id for order_id, _ in self.keys})

    @property
    def oldest(self) -> datetime:
        return self.keys[0][1]

    @property
    def newest(self) -> datetime:
        return self.keys[-1][1]


class RootSetSelector:
    """Picks the oldest unprocessed history Rxs in a purge window."""

    def __init__(self, runner: StepRunner):
        self.runner = runner
        self.table = OrderHistory.__table__

    def has_remaining(self, window: PurgeWindow) -> bool:
        """Whether any history Rx is left in the window."""
        with self.runner.step("check remaining history") as conn:
            return bool(
                conn.execute(
                    select(exists().where(window_predicate(self.table.c.history_dttm, window)))
                ).scalar()
            )

    def next_batch(self, window: PurgeWindow, limit: int) -> Batch:
        """
        Capture the oldest ``limit`` history Rxs in ``window``.

        Args:
            window: Eligible history timestamps
            limit: Maximum roots in the batch

        Returns:
            The batch, empty when the window is exhausted
        """
        oh = self.table
        batch = Batch()
        if limit <= 0:
            return batch

        with self.runner.step("select history batch") as conn:
            rows = conn.execute(
                select(
                    oh.c.order_id,
                    oh.c.history_dttm,
                    oh.c.group_num,
                    oh.c.pat_cust_id,
                    oh.c.prescr_id,
                )
                .where(window_predicate(oh.c.history_dttm, window))
                .order_by(oh.c.history_dttm, oh.c.order_id)
                .limit(limit)
            ).all()

            groups = set()
            patients = set()
            prescribers = set()
            for row in rows:
                batch.keys.append((row.order_id, row.history_dttm))
                if row.group_num is not None:
                    groups.add(row.group_num)
                if row.pat_cust_id is not None:
                    patients.add(row.pat_cust_id)
                if row.prescr_id is not None:
                    prescribers.add(row.prescr_id)

            # Group patients (order customers) count as patient candidates too
            group_table = Group.__table__
            for chunk in chunked(sorted(groups), self.runner.chunk_size):
                for pat_cust_id in conn.execute(
                    select(group_table.c.pat_cust_id)
                    .distinct()
                    .where(group_table.c.group_num.in_(chunk))
                    .where(group_table.c.pat_cust_id.is_not(None))
                ).scalars():
                    patients.add(pat_cust_id)

        batch.group_nums = sorted(groups)
        batch.patient_ids = sorted(patients)
        batch.prescriber_ids = sorted(prescribers)

        if batch.keys:
            logger.info(
                f"Selected batch of {len(batch)} history Rxs "
                f"({batch.oldest:%Y-%m-%d %H:%M:%S} .. {batch.newest:%Y-%m-%d %H:%M:%S})"
            )
        return batch
