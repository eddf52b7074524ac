"""Append-only issue field transitions."""

from agile_mirror.database.migrations.operations import create_tables, drop_tables


def up(conn):
    create_tables(conn, ['issue_changelog'])


def down(conn):
    drop_tables(conn, ['issue_changelog'])
