"""
Bounded delete primitives.

Every delete step runs as its own committed unit of work. A failing step
aborts the pass; steps committed before it stay committed.
"""

import logging
from collections import Counter
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Sequence, Set

from sqlalchemy import Table, and_, delete, or_, select, tuple_
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.elements import ColumnElement

from .exceptions import DeleteFailureError

logger = logging.getLogger(__name__)

# Dialects without row-value IN support get an OR of ANDs instead.
_NO_TUPLE_IN = {"mssql"}


def chunked(values: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    """Yield successive slices of at most ``size`` values."""
    for start in range(0, len(values), size):
        yield values[start : start + size]


def key_filter(
    table: Table, columns: Sequence[str], keys: Sequence[Any], dialect: str
) -> ColumnElement[bool]:
    """
    Build a predicate matching rows whose key columns equal one of ``keys``.

    Single-column keys are plain values; composite keys are tuples in the
    order of ``columns``.
    """
    cols = [table.c[name] for name in columns]
    if len(cols) == 1:
        return cols[0].in_(list(keys))
    if dialect in _NO_TUPLE_IN:
        return or_(
            *[and_(*[col == value for col, value in zip(cols, key)]) for key in keys]
        )
    return tuple_(*cols).in_([tuple(key) for key in keys])


def select_by_keys(
    conn: Connection,
    table: Table,
    key_columns: Sequence[str],
    keys: Sequence[Any],
    result_columns: Sequence[str],
    chunk_size: int,
    where: Any = None,
) -> Set[Any]:
    """
    Collect distinct ``result_columns`` values from rows matching ``keys``.

    Returns scalars for a single result column and tuples otherwise.
    """
    found: Set[Any] = set()
    cols = [table.c[name] for name in result_columns]
    for chunk in chunked(list(keys), chunk_size):
        stmt = select(*cols).distinct().where(
            key_filter(table, key_columns, chunk, conn.dialect.name)
        )
        if where is not None:
            stmt = stmt.where(where)
        for row in conn.execute(stmt):
            found.add(row[0] if len(cols) == 1 else tuple(row))
    return found


def delete_by_keys(
    conn: Connection,
    table: Table,
    key_columns: Sequence[str],
    keys: Sequence[Any],
    chunk_size: int,
    where: Any = None,
) -> int:
    """Delete rows matching ``keys`` and return the rows actually removed."""
    removed = 0
    for chunk in chunked(list(keys), chunk_size):
        stmt = delete(table).where(
            key_filter(table, key_columns, chunk, conn.dialect.name)
        )
        if where is not None:
            stmt = stmt.where(where)
        removed += conn.execute(stmt).rowcount or 0
    return removed


class StepRunner:
    """Runs named delete steps, each in its own transaction."""

    def __init__(self, engine: Engine, chunk_size: int = 500):
        """
        Initialize the step runner.

        Args:
            engine: SQLAlchemy engine for the purge database
            chunk_size: Maximum identifiers per IN-list
        """
        self.engine = engine
        self.chunk_size = chunk_size
        self.deleted: Counter[str] = Counter()

    def record(self, table: str, count: int) -> None:
        """Add rows actually removed from ``table`` to the running tally."""
        if count:
            self.deleted[table] += count

    def reset_tally(self) -> Dict[str, int]:
        """Return the per-table tally and start a new one."""
        tally = dict(self.deleted)
        self.deleted = Counter()
        return tally

    @contextmanager
    def step(self, name: str) -> Iterator[Connection]:
        """
        Open a unit of work for one step.

        The transaction commits when the block exits normally. Any database
        error rolls the step back and is raised as DeleteFailureError.
        """
        logger.debug(f"Step '{name}' starting")
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as e:
            logger.error(f"Step '{name}' failed: {e}")
            raise DeleteFailureError(name, e) from e

    def delete_keys(
        self,
        name: str,
        table: Table,
        key_columns: Sequence[str],
        keys: Iterable[Any],
        where: Any = None,
    ) -> int:
        """Delete rows of ``table`` matching ``keys`` as one step."""
        keys = list(keys)
        if not keys:
            return 0
        logger.info(f"Deleting {table.name} rows...")
        with self.step(name) as conn:
            removed = delete_by_keys(
                conn, table, key_columns, keys, self.chunk_size, where=where
            )
        self.record(table.name, removed)
        return removed

    def select_keys(
        self,
        name: str,
        table: Table,
        key_columns: Sequence[str],
        keys: Iterable[Any],
        result_columns: Sequence[str],
        where: Any = None,
    ) -> List[Any]:
        """Collect distinct values for ``keys`` in a read-only step."""
        keys = list(keys)
        if not keys:
            return []
        with self.step(name) as conn:
            found = select_by_keys(
                conn,
                table,
                key_columns,
                keys,
                result_columns,
                self.chunk_size,
                where=where,
            )
        return sorted(found)


class BlockDeleter:
    """Deletes at most N rows matching a predicate, oldest first."""

    def __init__(self, runner: StepRunner):
        self.runner = runner

    def delete_block(
        self,
        table: Table,
        predicate: Any,
        order_by: Sequence[Any],
        limit: int,
        step: str = "",
    ) -> int:
        """
        Delete one bounded block in a single transaction.

        Args:
            table: Table to delete from (single-column primary key)
            predicate: Eligibility predicate
            order_by: Ordering that picks the oldest rows first
            limit: Maximum rows to remove
            step: Step name for failure reporting

        Returns:
            Number of rows actually removed, which is less than ``limit`` on
            the final block of a range
        """
        if limit <= 0:
            return 0

        pk_cols = list(table.primary_key.columns)
        if len(pk_cols) != 1:
            raise ValueError(f"Block delete requires a single-column key on {table.name}")
        pk = pk_cols[0]

        oldest = select(pk).where(predicate).order_by(*order_by).limit(limit)
        with self.runner.step(step or f"block delete {table.name}") as conn:
            # Materialize the ids first: some engines refuse LIMIT inside IN.
            ids = list(conn.execute(oldest).scalars())
            removed = 0
            for chunk in chunked(ids, self.runner.chunk_size):
                removed += conn.execute(delete(table).where(pk.in_(chunk))).rowcount or 0
        self.runner.record(table.name, removed)
        return removed
