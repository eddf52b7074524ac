"""
Migration Operations
Existence-guarded DDL helpers used by the migration units.
"""

from typing import Dict, Iterable, Optional

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection
from sqlalchemy.schema import CreateTable

from agile_mirror.database.models import Base
from agile_mirror.utils.logger import get_logger

logger = get_logger(__name__)


def create_tables(
    conn: Connection,
    names: Iterable[str],
    later_columns: Optional[Dict[str, Iterable[str]]] = None
) -> None:
    """
    Create the named model tables that do not exist yet.

    Args:
        conn: Connection inside the unit's transaction
        names: Model table names, in creation order
        later_columns: Per table, model columns left out because a later
            unit adds them with add_column
    """
    later_columns = later_columns or {}
    for name in names:
        table = Base.metadata.tables[name]
        if inspect(conn).has_table(name):
            logger.debug(f"Table {name} already exists, skipping")
            continue

        skipped = set(later_columns.get(name, ()))
        if not skipped:
            table.create(conn)
        else:
            ddl = CreateTable(table)
            ddl.columns = [column for column in ddl.columns if column.element.name not in skipped]
            conn.execute(ddl)
            for index in table.indexes:
                index.create(conn)
        logger.info(f"Created table {name}")


def drop_tables(conn: Connection, names: Iterable[str]) -> None:
    """Drop the named model tables that exist, in the given order."""
    for name in names:
        if not inspect(conn).has_table(name):
            continue
        Base.metadata.tables[name].drop(conn)
        logger.info(f"Dropped table {name}")


def add_column(conn: Connection, table_name: str, column_name: str) -> None:
    """Add a model column to an existing table unless it is already there."""
    existing = {column['name'] for column in inspect(conn).get_columns(table_name)}
    if column_name in existing:
        logger.debug(f"Column {table_name}.{column_name} already exists, skipping")
        return

    column = Base.metadata.tables[table_name].c[column_name]
    column_type = column.type.compile(dialect=conn.dialect)
    conn.execute(text(f'ALTER TABLE {table_name} ADD COLUMN {column_name} {column_type}'))
    logger.info(f"Added column {table_name}.{column_name}")


def drop_column(conn: Connection, table_name: str, column_name: str) -> None:
    """Drop a column if present."""
    existing = {column['name'] for column in inspect(conn).get_columns(table_name)}
    if column_name not in existing:
        return
    conn.execute(text(f'ALTER TABLE {table_name} DROP COLUMN {column_name}'))
    logger.info(f"Dropped column {table_name}.{column_name}")
