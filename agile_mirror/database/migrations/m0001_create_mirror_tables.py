"""Projects, boards, sprints and issues."""

from agile_mirror.database.migrations.operations import create_tables, drop_tables

TABLES = ['projects', 'boards', 'sprints', 'issues']


def up(conn):
    create_tables(conn, TABLES)


def down(conn):
    drop_tables(conn, reversed(TABLES))
