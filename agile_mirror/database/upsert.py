"""
Upsert Helpers
Idempotent write primitives shared by the sync and metrics components.
"""

from typing import Any, Dict, List, Tuple

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

INSERTED = 'inserted'
UPDATED = 'updated'
UNCHANGED = 'unchanged'

_INSERT_BY_DIALECT = {
    'postgresql': pg_insert,
    'sqlite': sqlite_insert,
}


def _dialect_insert(session: Session, model):
    dialect = session.get_bind().dialect.name
    try:
        return _INSERT_BY_DIALECT[dialect](model)
    except KeyError:
        raise NotImplementedError(f"ON CONFLICT inserts are not supported on {dialect}")


def reconcile(
    session: Session,
    model,
    key: Dict[str, Any],
    values: Dict[str, Any]
) -> Tuple[Any, str]:
    """
    Insert or update one row identified by its natural key.

    Only columns whose value actually differs are written, so reconciling the
    same payload twice reports UNCHANGED the second time.

    Args:
        session: Active session
        model: Mapped class
        key: Natural key columns and values (e.g. {'jira_id': 42})
        values: Remaining column values

    Returns:
        Tuple of (instance, INSERTED | UPDATED | UNCHANGED)
    """
    instance = session.query(model).filter_by(**key).one_or_none()

    if instance is None:
        instance = model(**key, **values)
        session.add(instance)
        session.flush()
        return instance, INSERTED

    changed = {
        column: value for column, value in values.items()
        if getattr(instance, column) != value
    }
    if not changed:
        return instance, UNCHANGED

    for column, value in changed.items():
        setattr(instance, column, value)
    session.flush()
    return instance, UPDATED


def upsert_by_key(
    session: Session,
    model,
    values: Dict[str, Any],
    index_elements: List[str]
) -> None:
    """
    INSERT ... ON CONFLICT DO UPDATE for derived records overwritten by key.

    Args:
        session: Active session
        model: Mapped class
        values: Full column values including the key
        index_elements: Columns of the unique key
    """
    stmt = _dialect_insert(session, model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={
            column: stmt.excluded[column]
            for column in values if column not in index_elements
        }
    )
    session.execute(stmt)


def insert_if_absent(
    session: Session,
    model,
    values: Dict[str, Any],
    index_elements: List[str]
) -> None:
    """INSERT ... ON CONFLICT DO NOTHING for append-only rows."""
    stmt = _dialect_insert(session, model).values(**values)
    session.execute(stmt.on_conflict_do_nothing(index_elements=index_elements))
