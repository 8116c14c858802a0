"""Dialect-aware INSERT ... ON CONFLICT helpers.

WHAT:
    `upsert_rows` writes a batch of row dicts with a single atomic
    `INSERT ... ON CONFLICT (<natural key>) DO UPDATE` statement.

WHY:
    Every write in the pipeline is keyed by a declared UniqueConstraint and
    must tolerate overlapping ticks, so we never read-then-write. PostgreSQL
    runs production; SQLite runs the test suite. Both dialects expose the
    same `on_conflict_do_update(index_elements=...)` API.

REFERENCES:
    - adsync/models.py (UniqueConstraints targeted here)
    - https://docs.sqlalchemy.org/en/20/dialects/postgresql.html#insert-on-conflict-upsert
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from adsync.services.sync_errors import PersistenceError
from adsync.telemetry import capture_exception

logger = logging.getLogger(__name__)

BATCH_SIZE = 500


def _insert_for(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect '{dialect}'")


def chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def upsert_rows(
    db: Session,
    model,
    rows: List[Dict[str, Any]],
    index_elements: Sequence[str],
    update_columns: Optional[Sequence[str]] = None,
) -> int:
    """Upsert `rows` into `model`'s table on the `index_elements` key.

    Args:
        db: Session (statement runs inside its current transaction)
        model: Declarative model class
        rows: Row dicts; all rows must carry the same keys
        index_elements: Columns of the conflict target (a UniqueConstraint)
        update_columns: Columns overwritten on conflict. Defaults to every
            column present in the rows except the key and `id`, so an
            existing row keeps its primary key.

    Returns:
        Number of rows sent.
    """
    if not rows:
        return 0

    if update_columns is None:
        update_columns = [
            col for col in rows[0].keys()
            if col not in index_elements and col != "id"
        ]

    stmt = _insert_for(db, model).values(rows)
    if update_columns:
        stmt = stmt.on_conflict_do_update(
            index_elements=list(index_elements),
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(index_elements))

    db.execute(stmt)
    return len(rows)


def upsert_in_batches(
    db: Session,
    model,
    rows: List[Dict[str, Any]],
    index_elements: Sequence[str],
    update_columns: Optional[Sequence[str]] = None,
    batch_size: int = BATCH_SIZE,
    insert_only: bool = False,
) -> Tuple[int, List[PersistenceError]]:
    """Write rows in independent batches, each inside its own SAVEPOINT.

    A failing batch is rolled back, logged and returned as a PersistenceError;
    the remaining batches still run.

    Returns:
        (rows written, errors of failed batches)
    """
    written = 0
    errors: List[PersistenceError] = []
    table = model.__tablename__

    for batch in chunked(rows, batch_size):
        try:
            with db.begin_nested():
                if insert_only:
                    insert_missing(db, model, list(batch), index_elements)
                else:
                    upsert_rows(db, model, list(batch), index_elements, update_columns)
            written += len(batch)
        except SQLAlchemyError as e:
            error = PersistenceError(f"Upsert into {table} failed for {len(batch)} rows: {e}", table=table, rows=len(batch))
            logger.error("[UPSERT] %s", error)
            capture_exception(e, extra={"table": table, "rows": len(batch)})
            errors.append(error)

    return written, errors


def insert_missing(
    db: Session,
    model,
    rows: List[Dict[str, Any]],
    index_elements: Sequence[str],
) -> int:
    """Insert rows whose key is absent; existing rows are left untouched."""
    if not rows:
        return 0

    stmt = _insert_for(db, model).values(rows).on_conflict_do_nothing(
        index_elements=list(index_elements),
    )
    db.execute(stmt)
    return len(rows)
