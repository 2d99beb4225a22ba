"""Dialect-aware idempotent write helpers.

PostgreSQL and SQLite both understand ``INSERT ... ON CONFLICT``; other
backends fall back to a savepoint per row and treat ``IntegrityError`` as a
duplicate.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session

# Keeps multi-row VALUES clauses under SQLite's bound-parameter limit.
INSERT_CHUNK_SIZE = 100

_ON_CONFLICT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _chunks(rows: Sequence[Mapping[str, Any]], size: int) -> Iterable[Sequence[Mapping[str, Any]]]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


def insert_ignore(
    session: Session,
    model: type[DeclarativeBase],
    rows: Sequence[Mapping[str, Any]],
    conflict_columns: Sequence[str],
) -> int:
    """Insert ``rows`` skipping those that collide on ``conflict_columns``.

    Returns:
        The number of rows actually inserted.
    """
    if not rows:
        return 0

    dialect = session.get_bind().dialect.name
    insert_fn = _ON_CONFLICT_INSERTS.get(dialect)
    inserted = 0

    if insert_fn is not None:
        for chunk in _chunks(rows, INSERT_CHUNK_SIZE):
            stmt = insert_fn(model).values(list(chunk))
            stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
            result = session.execute(stmt)
            inserted += max(result.rowcount or 0, 0)
        return inserted

    table = model.__table__  # type: ignore[attr-defined]
    for row in rows:
        try:
            with session.begin_nested():
                session.execute(table.insert().values(**row))
            inserted += 1
        except IntegrityError:
            continue
    return inserted


def upsert(
    session: Session,
    model: type[DeclarativeBase],
    values: Mapping[str, Any],
    conflict_columns: Sequence[str],
    update_columns: Sequence[str],
) -> None:
    """Insert ``values`` or, on conflict, overwrite only ``update_columns``."""
    dialect = session.get_bind().dialect.name
    insert_fn = _ON_CONFLICT_INSERTS.get(dialect)

    if insert_fn is not None:
        stmt = insert_fn(model).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(conflict_columns),
            set_={column: getattr(stmt.excluded, column) for column in update_columns},
        )
        session.execute(stmt)
        return

    lookup = select(model).filter_by(**{column: values[column] for column in conflict_columns})
    existing = session.execute(lookup).scalar_one_or_none()
    if existing is None:
        session.add(model(**values))
    else:
        for column in update_columns:
            setattr(existing, column, values[column])
    session.flush()
