"""
Tests for the accept/reject aging stream.
"""

from datetime import datetime, timedelta

from rx_purge.block_delete import StepRunner
from rx_purge.models import PurgeWindow
from rx_purge.schema import OrderAcceptReject
from rx_purge.secondary import AcceptRejectStream

T0 = datetime(2020, 1, 1)


def window(days):
    return PurgeWindow(from_dttm=T0, to_dttm=T0 + timedelta(days=days))


class TestAcceptRejectStream:
    """Test bounded purge of accept/reject records."""

    def test_purges_window_in_blocks(self, db_engine, seed):
        seed.accept_reject(25, T0)
        stream = AcceptRejectStream(StepRunner(db_engine))

        assert stream.purge(window(30), block_size=10, max_to_delete=1000) == 25
        assert seed.count(OrderAcceptReject) == 0

    def test_own_cap(self, db_engine, seed):
        seed.accept_reject(25, T0)
        stream = AcceptRejectStream(StepRunner(db_engine))

        assert stream.purge(window(30), block_size=10, max_to_delete=12) == 12
        assert seed.count(OrderAcceptReject) == 13
        # Lowest ids go first
        assert seed.count(OrderAcceptReject, order_id=0) == 0
        assert seed.count(OrderAcceptReject, order_id=24) == 1

    def test_rows_outside_window_untouched(self, db_engine, seed):
        seed.accept_reject(10, T0, spacing=timedelta(days=1))
        stream = AcceptRejectStream(StepRunner(db_engine))

        assert stream.purge(window(4), block_size=100, max_to_delete=100) == 4
        assert seed.count(OrderAcceptReject) == 6

    def test_exact_block_multiple_stops_on_empty_block(self, db_engine, seed):
        seed.accept_reject(20, T0)
        runner = StepRunner(db_engine)

        assert AcceptRejectStream(runner).purge(window(30), block_size=10, max_to_delete=100) == 20
        assert runner.deleted["oe_order_accept_reject"] == 20
