"""Lease table backing the lock manager."""

from agile_mirror.database.migrations.operations import create_tables, drop_tables


def up(conn):
    create_tables(conn, ['distributed_locks'])


def down(conn):
    drop_tables(conn, ['distributed_locks'])
