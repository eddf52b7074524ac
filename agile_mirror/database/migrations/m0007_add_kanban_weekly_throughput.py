"""Weekly throughput history on kanban metrics."""

from agile_mirror.database.migrations.operations import add_column, drop_column


def up(conn):
    add_column(conn, 'kanban_metrics', 'weekly_throughput')


def down(conn):
    drop_column(conn, 'kanban_metrics', 'weekly_throughput')
