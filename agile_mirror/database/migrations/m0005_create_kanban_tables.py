"""Kanban boards, column membership and flow metrics."""

from agile_mirror.database.migrations.operations import create_tables, drop_tables

TABLES = ['kanban_boards', 'kanban_issues', 'kanban_metrics']

# Added by m0007_add_kanban_weekly_throughput
LATER_COLUMNS = {'kanban_metrics': ['weekly_throughput']}


def up(conn):
    create_tables(conn, TABLES, later_columns=LATER_COLUMNS)


def down(conn):
    drop_tables(conn, reversed(TABLES))
