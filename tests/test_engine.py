"""
Tests for the history purge engine.
"""

from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import select

from rx_purge.config import PurgeConfig
from rx_purge.engine import HistoryPurgeEngine
from rx_purge.events import EventSink
from rx_purge.exceptions import (
    DeleteFailureError,
    InvalidParameterError,
    PurgeDisabledError,
)
from rx_purge.models import LEGACY_WINDOW_START, PurgeRequest, PurgeStatus, PurgeWindow
from rx_purge.schema import (
    OWNED_DEPENDENT_TABLES,
    OrderAcceptReject,
    OrderHistory,
    SqlError,
    SqlEvent,
)


@pytest.fixture
def sink():
    return Mock(spec=EventSink)


@pytest.fixture
def make_engine(db_engine, now, sink):
    def factory(**config):
        config.setdefault("event_log_to_database", False)
        return HistoryPurgeEngine(
            db_engine, PurgeConfig(**config), event_sink=sink, clock=lambda: now
        )

    return factory


@pytest.mark.purge
class TestPurgeScenarios:
    """Test whole invocations against seeded backlogs."""

    def test_backlog_removed_then_repeat_is_zero(self, make_engine, seed, now):
        """250 Rxs over the last 400 days, block 100, cap 10,000."""
        start = now - timedelta(days=400)
        seed.spread_history(250, start, now)
        engine = make_engine()
        request = PurgeRequest(
            history_from=start, history_to=now, block_size=100, max_to_delete=10000
        )

        first = engine.purge(request)
        second = engine.purge(request)

        assert first.history_rows_deleted == 250
        assert first.batches == 3
        assert not first.cap_reached
        assert second.history_rows_deleted == 0
        assert second.batches == 0
        assert seed.count(OrderHistory) == 0
        for table in OWNED_DEPENDENT_TABLES:
            assert seed.count(table) == 0

    def test_empty_window_succeeds_with_zero_counts(self, make_engine, seed, now):
        seed.history_rx(1, now - timedelta(days=10))

        result = make_engine().purge(PurgeRequest(older_than_days=30))

        assert result.succeeded
        assert result.history_rows_deleted == 0
        assert result.accept_reject_rows_deleted == 0
        assert seed.count(OrderHistory) == 1

    def test_exhausted_window_selects_no_batch(self, make_engine, seed, now):
        seed.spread_history(10, now - timedelta(days=100), now - timedelta(days=40))
        engine = make_engine(block_size=10)

        with patch.object(
            engine.selector, "next_batch", wraps=engine.selector.next_batch
        ) as next_batch:
            result = engine.purge(PurgeRequest(older_than_days=30))

        assert result.history_rows_deleted == 10
        assert result.batches == 1
        assert next_batch.call_count == 1

    def test_exact_block_multiple(self, make_engine, seed, now):
        """One block's worth of Rxs is removed in a single batch."""
        seed.spread_history(100, now - timedelta(days=100), now - timedelta(days=40))
        engine = make_engine(block_size=100)

        first = engine.purge(PurgeRequest(older_than_days=30))
        second = engine.purge(PurgeRequest(older_than_days=30))

        assert first.history_rows_deleted == 100
        assert first.batches == 1
        assert second.history_rows_deleted == 0

    def test_cap_stops_oldest_first(self, make_engine, seed, now):
        start = now - timedelta(days=100)
        seed.spread_history(25, start, now - timedelta(days=50))
        engine = make_engine(block_size=10, max_to_delete=15)

        result = engine.purge(PurgeRequest(older_than_days=30))

        assert result.history_rows_deleted == 15
        assert result.cap_reached
        assert result.batches == 2
        # The newest ten remain, everything older is gone
        with engine.engine.connect() as conn:
            remaining = conn.execute(select(OrderHistory.history_dttm)).scalars().all()
        assert len(remaining) == 10
        assert min(remaining) > start + (now - timedelta(days=50) - start) / 25 * 14

    def test_default_window_uses_retention_days(self, make_engine, seed, now):
        seed.history_rx(1, now - timedelta(days=800))
        seed.history_rx(2, now - timedelta(days=100))

        result = make_engine(retention_days=365).purge()

        assert result.window == PurgeWindow(
            from_dttm=LEGACY_WINDOW_START, to_dttm=now - timedelta(days=365)
        )
        assert result.history_rows_deleted == 1
        assert seed.count(OrderHistory, order_id=2) == 1

    def test_accept_reject_stream_reported_separately(self, make_engine, seed, now):
        seed.history_rx(1, now - timedelta(days=100))
        seed.accept_reject(5, now - timedelta(days=60))
        seed.accept_reject(1, now - timedelta(days=1))

        result = make_engine().purge(PurgeRequest(older_than_days=30))

        assert result.history_rows_deleted == 1
        assert result.accept_reject_rows_deleted == 5
        assert result.rows_by_table["oe_order_accept_reject"] == 5
        assert seed.count(OrderAcceptReject) == 1


class TestInvalidParameters:
    """Test validation before any deletion."""

    @pytest.mark.parametrize(
        "request_kwargs, code",
        [
            ({"older_than_days": 0}, 51000),
            ({"older_than_days": -5}, 51000),
            ({"history_from": datetime(2020, 1, 1)}, 51004),
            ({"history_to": datetime(2020, 1, 1)}, 51004),
            (
                {"history_from": datetime(2020, 2, 1), "history_to": datetime(2020, 1, 1)},
                51001,
            ),
        ],
    )
    def test_rejected_without_deleting(self, make_engine, seed, now, request_kwargs, code):
        seed.history_rx(1, datetime(2000, 1, 1))

        with pytest.raises(InvalidParameterError) as exc_info:
            make_engine().purge(PurgeRequest(**request_kwargs))

        assert exc_info.value.code == code
        assert seed.count(OrderHistory) == 1

    def test_run_returns_failed_status(self, make_engine, sink):
        result = make_engine().run(PurgeRequest(older_than_days=0))

        assert result.status == PurgeStatus.FAILED
        assert result.error_code == 51000
        sink.error.assert_called_once()

    def test_disabled_purge(self, make_engine, sink):
        engine = make_engine(purge_enabled=False)

        with pytest.raises(PurgeDisabledError):
            engine.purge()

        result = engine.run()
        assert result.error_code == 51020
        sink.event.assert_not_called()


class TestEvents:
    """Test begin/end events and error reporting."""

    def test_begin_and_end_events(self, make_engine, sink, seed, now):
        seed.history_rx(1, now - timedelta(days=100))

        make_engine().purge(PurgeRequest(older_than_days=30, block_size=10, max_to_delete=50))

        begin, end = sink.event.call_args_list
        assert begin.args[0] == "PurgeOldData Beg"
        assert begin.kwargs["notes"] == "older_than_days=30;block_size=10;max_to_delete=50"
        assert end.args[0] == "PurgeOldData End"
        assert end.args[1] == "Successful"
        assert "history_rows_deleted=1" in end.kwargs["notes"]

    def test_delete_failure_reports_partial_result(self, make_engine, sink, seed, now):
        seed.history_rx(1, now - timedelta(days=100))
        engine = make_engine()

        with patch.object(
            engine.cascade,
            "delete_roots",
            side_effect=DeleteFailureError("delete history Rxs", RuntimeError("locked")),
        ):
            result = engine.run(PurgeRequest(older_than_days=30))

        assert result.status == PurgeStatus.FAILED
        assert result.error_code == 51010
        assert "delete history Rxs" in result.error_message
        # Steps before the failure stay committed
        assert result.rows_by_table["ca_audit"] == 1
        assert seed.count(OrderHistory) == 1
        assert sink.event.call_args_list[-1].args[1] == "Failed"

    def test_events_persisted_to_database(self, db_engine, now, seed):
        engine = HistoryPurgeEngine(
            db_engine, PurgeConfig(event_log_to_database=True), clock=lambda: now
        )

        engine.run(PurgeRequest(older_than_days=30))
        engine.run(PurgeRequest(older_than_days=-1))

        with db_engine.connect() as conn:
            events = conn.execute(
                select(SqlEvent.event_name, SqlEvent.outcome).order_by(SqlEvent.id)
            ).all()
            errors = conn.execute(select(SqlError.error_code)).scalars().all()

        assert [tuple(e) for e in events] == [
            ("PurgeOldData Beg", ""),
            ("PurgeOldData End", "Successful"),
            ("PurgeOldData Beg", ""),
            ("PurgeOldData End", "Failed"),
        ]
        assert errors == [51000]


class TestBacklog:
    """Test the monthly backlog report."""

    def test_counts_per_month(self, make_engine, seed, now):
        seed.history_rx(1, datetime(2023, 1, 5), with_dependents=False)
        seed.history_rx(2, datetime(2023, 1, 20), with_dependents=False)
        seed.history_rx(3, datetime(2023, 3, 1), with_dependents=False)
        seed.history_rx(4, now - timedelta(days=1), with_dependents=False)
        seed.accept_reject(2, datetime(2023, 3, 2))

        report = make_engine().count_backlog(older_than_days=30)

        assert [b.period for b in report.buckets] == ["2023-01", "2023-03"]
        assert report.buckets[0].history_rows == 2
        assert report.buckets[1].accept_reject_rows == 2
        assert report.history_rows == 3
        assert report.accept_reject_rows == 2
