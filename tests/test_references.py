"""
Tests for reference checking by exclusion.
"""

from datetime import datetime

import pytest
from sqlalchemy import delete

from rx_purge.references import ReferenceChecker, Referrer
from rx_purge.schema import (
    CanisterHistory,
    Group,
    Order,
    OrderCanReplenAssoc,
    OrderHistory,
    PatientCust,
)

T0 = datetime(2020, 1, 1)


@pytest.fixture
def patient_checker():
    return ReferenceChecker(
        "patient",
        [
            Referrer(OrderHistory.__table__, ("pat_cust_id",)),
            Referrer(Order.__table__, ("pat_cust_id",)),
        ],
        chunk_size=2,
    )


class TestReferenceChecker:
    """Test unreferenced candidate detection."""

    def test_excludes_candidates_named_by_any_referrer(self, db_engine, seed, patient_checker):
        seed.history_rx(1, T0, pat_cust_id=10, with_dependents=False)
        seed.insert(Order, [{"order_id": 2, "pat_cust_id": 11}])

        with db_engine.connect() as conn:
            free = patient_checker.unreferenced(conn, [10, 11, 12, 13, 12])

        assert free == [12, 13]

    def test_composite_keys(self, db_engine, seed):
        checker = ReferenceChecker(
            "canister replenishment",
            [Referrer(OrderCanReplenAssoc.__table__, ("canister_sn", "replen_dttm"))],
        )
        seed.insert(
            OrderCanReplenAssoc,
            [{"order_id": 1, "history_dttm": T0, "canister_sn": "C1", "replen_dttm": T0}],
        )

        with db_engine.connect() as conn:
            free = checker.unreferenced(conn, [("C1", T0), ("C2", T0)])

        assert free == [("C2", T0)]

    def test_referrers_must_agree_on_arity(self):
        with pytest.raises(ValueError):
            ReferenceChecker(
                "broken",
                [
                    Referrer(OrderHistory.__table__, ("order_id",)),
                    Referrer(OrderCanReplenAssoc.__table__, ("canister_sn", "replen_dttm")),
                ],
            )

    def test_empty_candidates(self, db_engine, patient_checker):
        with db_engine.connect() as conn:
            assert patient_checker.unreferenced(conn, []) == []


class TestDeleteTimeRecheck:
    """Test the predicate that protects rows referenced after the check."""

    def test_delete_skips_row_referenced_after_check(self, db_engine, seed, patient_checker):
        seed.patient(10)
        seed.patient(11)

        with db_engine.begin() as conn:
            free = patient_checker.unreferenced(conn, [10, 11])
            assert free == [10, 11]
            # A new order for patient 10 arrives between check and delete
            conn.execute(Order.__table__.insert().values(order_id=99, pat_cust_id=10))
            table = PatientCust.__table__
            conn.execute(
                delete(table)
                .where(table.c.pat_cust_id.in_(free))
                .where(patient_checker.not_referenced(table, ("pat_cust_id",)))
            )

        assert seed.count(PatientCust, pat_cust_id=10) == 1
        assert seed.count(PatientCust, pat_cust_id=11) == 0

    def test_self_reference_uses_alias(self, db_engine, seed):
        """A group is protected by a child group, not by its own parent column."""
        checker = ReferenceChecker(
            "group", [Referrer(Group.__table__, ("parent_group_num",))]
        )
        seed.group(1)
        seed.group(2, parent=1)
        seed.group(3, parent=99)

        table = Group.__table__
        with db_engine.begin() as conn:
            conn.execute(
                delete(table)
                .where(table.c.group_num.in_([1, 3]))
                .where(checker.not_referenced(table, ("group_num",)))
            )

        assert seed.count(Group, group_num=1) == 1
        assert seed.count(Group, group_num=3) == 0

    def test_composite_recheck(self, db_engine, seed):
        checker = ReferenceChecker(
            "canister replenishment",
            [Referrer(OrderCanReplenAssoc.__table__, ("canister_sn", "replen_dttm"))],
        )
        seed.insert(
            CanisterHistory,
            [
                {"canister_sn": "C1", "last_replen_dttm": T0},
                {"canister_sn": "C2", "last_replen_dttm": T0},
            ],
        )
        seed.insert(
            OrderCanReplenAssoc,
            [{"order_id": 1, "history_dttm": T0, "canister_sn": "C1", "replen_dttm": T0}],
        )

        table = CanisterHistory.__table__
        with db_engine.begin() as conn:
            conn.execute(
                delete(table).where(
                    checker.not_referenced(table, ("canister_sn", "last_replen_dttm"))
                )
            )

        assert seed.count(CanisterHistory, canister_sn="C1") == 1
        assert seed.count(CanisterHistory, canister_sn="C2") == 0
