"""Sync run audit table."""

from agile_mirror.database.migrations.operations import create_tables, drop_tables


def up(conn):
    create_tables(conn, ['sync_operations'])


def down(conn):
    drop_tables(conn, ['sync_operations'])
