"""Accept/reject record aging, independent of the history Rx cascade."""

import logging

from .block_delete import BlockDeleter, StepRunner
from .models import PurgeWindow
from .schema import OrderAcceptReject
from .selector import window_predicate

logger = logging.getLogger(__name__)


class AcceptRejectStream:
    """Purges aged accept/reject records in bounded blocks, oldest first."""

    def __init__(self, runner: StepRunner):
        self.deleter = BlockDeleter(runner)
        self.table = OrderAcceptReject.__table__

    def purge(self, window: PurgeWindow, block_size: int, max_to_delete: int) -> int:
        """
        Delete accept/reject rows whose reject time falls in ``window``.

        Args:
            window: Eligible reject timestamps
            block_size: Maximum rows per block
            max_to_delete: Cap for this stream alone

        Returns:
            Rows actually removed
        """
        table = self.table
        predicate = window_predicate(table.c.reject_dttm, window)
        total = 0

        while total < max_to_delete:
            limit = min(block_size, max_to_delete - total)
            removed = self.deleter.delete_block(
                table,
                predicate,
                order_by=(table.c.id,),
                limit=limit,
                step="delete accept/reject block",
            )
            total += removed
            if removed < limit:
                break

        logger.info(f"Deleted {total} accept/reject rows in {window}")
        return total
