"""
Reference checking for shared objects.

The schema enforces no foreign keys, so whether a shared object may be
removed is decided here: a candidate is reclaimable only when no row in any
referencing table still names it.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import Table, and_, exists, select
from sqlalchemy.engine import Connection
from sqlalchemy.sql.elements import ColumnElement

from .block_delete import chunked, key_filter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Referrer:
    """A table whose ``columns`` may hold the key of a shared object."""

    table: Table
    columns: Tuple[str, ...]

    def __str__(self) -> str:
        return f"{self.table.name}({', '.join(self.columns)})"


@dataclass
class ReferenceChecker:
    """
    Reference counting by exclusion.

    Given a candidate key set, removes every key still named by at least one
    referrer. What remains is unreferenced at the time of the check.

    Usage:
        checker = ReferenceChecker(
            "shipment",
            [Referrer(oe_order_shipment_assoc, ("shipment_id",))],
        )
        with engine.begin() as conn:
            free = checker.unreferenced(conn, [10, 11, 12])
    """

    name: str
    referrers: Sequence[Referrer]
    chunk_size: int = 500
    _arity: Optional[int] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        arities = {len(ref.columns) for ref in self.referrers}
        if len(arities) > 1:
            raise ValueError(f"Referrers of {self.name} disagree on key arity")
        self._arity = arities.pop() if arities else None

    def still_referenced(self, conn: Connection, candidates: Iterable[Any]) -> Set[Any]:
        """Return the candidates named by at least one referrer."""
        candidates = list(candidates)
        referenced: Set[Any] = set()
        if not candidates:
            return referenced

        for ref in self.referrers:
            cols = [ref.table.c[name] for name in ref.columns]
            pending = [key for key in candidates if key not in referenced]
            for chunk in chunked(pending, self.chunk_size):
                stmt = (
                    select(*cols)
                    .distinct()
                    .where(key_filter(ref.table, ref.columns, chunk, conn.dialect.name))
                )
                for row in conn.execute(stmt):
                    referenced.add(row[0] if len(cols) == 1 else tuple(row))

        return referenced

    def unreferenced(self, conn: Connection, candidates: Iterable[Any]) -> List[Any]:
        """Return the candidates no referrer names, in sorted order."""
        candidates = sorted(set(candidates))
        referenced = self.still_referenced(conn, candidates)
        free = [key for key in candidates if key not in referenced]
        logger.debug(
            f"{self.name}: {len(free)} of {len(candidates)} candidates unreferenced"
        )
        return free

    def not_referenced(
        self, table: Table, key_columns: Sequence[str]
    ) -> ColumnElement[bool]:
        """
        Predicate re-checking, inside a delete, that no referrer names the row.

        Used so the delete itself refuses a row that picked up a new
        reference after ``unreferenced`` ran.
        """
        target_cols = [table.c[name] for name in key_columns]
        clauses = []
        for ref in self.referrers:
            # Self references (child group -> parent group) need their own alias
            source = ref.table.alias() if ref.table is table else ref.table
            ref_cols = [source.c[name] for name in ref.columns]
            clauses.append(
                ~exists().where(
                    and_(*[rc == tc for rc, tc in zip(ref_cols, target_cols)])
                )
            )
        return and_(*clauses)
