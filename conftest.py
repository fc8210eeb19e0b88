"""Pytest configuration for Rx History Purge."""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

import pytest
from sqlalchemy import create_engine, func, insert, select

from rx_purge.schema import (
    OWNED_DEPENDENT_TABLES,
    Group,
    OrderAcceptReject,
    OrderHistory,
    PatientCust,
    Prescriber,
    init_db,
)


def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line("markers", "purge: mark test as exercising a full purge pass")


# Fixed reference time so age-based windows are deterministic
NOW = datetime(2024, 6, 1, 12, 0, 0)


class Seeder:
    """Inserts pharmacy rows for tests."""

    def __init__(self, engine):
        self.engine = engine

    def insert(self, table: Any, rows: Iterable[Dict[str, Any]]) -> None:
        table = getattr(table, "__table__", table)
        rows = list(rows)
        if not rows:
            return
        with self.engine.begin() as conn:
            conn.execute(insert(table), rows)

    def count(self, table: Any, **where: Any) -> int:
        table = getattr(table, "__table__", table)
        stmt = select(func.count()).select_from(table)
        for name, value in where.items():
            stmt = stmt.where(table.c[name] == value)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar_one()

    def history_rx(
        self,
        order_id: int,
        history_dttm: datetime,
        group_num: Optional[int] = None,
        pat_cust_id: Optional[int] = None,
        prescr_id: Optional[int] = None,
        with_dependents: bool = True,
    ) -> None:
        """Insert a history Rx, one row in every owned dependent table."""
        self.insert(
            OrderHistory,
            [
                {
                    "order_id": order_id,
                    "history_dttm": history_dttm,
                    "group_num": group_num,
                    "pat_cust_id": pat_cust_id,
                    "prescr_id": prescr_id,
                }
            ],
        )
        if with_dependents:
            for table in OWNED_DEPENDENT_TABLES:
                self.insert(
                    table,
                    [{"order_id": order_id, "history_dttm": history_dttm, "data": "x"}],
                )

    def spread_history(self, count: int, start: datetime, end: datetime, **kwargs: Any) -> None:
        """Insert ``count`` history Rxs evenly spread over [start, end)."""
        step = (end - start) / count
        for i in range(count):
            self.history_rx(1000 + i, start + step * i, **kwargs)

    def patient(self, pat_cust_id: int) -> None:
        self.insert(PatientCust, [{"pat_cust_id": pat_cust_id, "name": f"patient {pat_cust_id}"}])

    def prescriber(self, prescr_id: int) -> None:
        self.insert(Prescriber, [{"prescr_id": prescr_id, "name": f"prescriber {prescr_id}"}])

    def group(self, group_num: int, parent: Optional[int] = None, pat_cust_id: Optional[int] = None) -> None:
        self.insert(
            Group,
            [{"group_num": group_num, "parent_group_num": parent, "pat_cust_id": pat_cust_id}],
        )

    def accept_reject(self, count: int, start: datetime, spacing: timedelta = timedelta(hours=1)) -> None:
        self.insert(
            OrderAcceptReject,
            [
                {"order_id": i, "reject_dttm": start + spacing * i, "reason": "rejected"}
                for i in range(count)
            ],
        )


@pytest.fixture
def now():
    """Reference time used by age-based windows."""
    return NOW


@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite database with every purge table created."""
    engine = create_engine(f"sqlite:///{tmp_path / 'pharmacy.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def seed(db_engine):
    """Row seeding helper bound to the test database."""
    return Seeder(db_engine)
