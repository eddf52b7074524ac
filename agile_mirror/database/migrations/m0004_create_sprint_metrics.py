"""Sprint and board metrics."""

from agile_mirror.database.migrations.m0008_add_quality_metrics import COLUMNS as QUALITY_COLUMNS
from agile_mirror.database.migrations.operations import create_tables, drop_tables

TABLES = ['sprint_metrics', 'board_metrics']


def up(conn):
    create_tables(conn, TABLES, later_columns=QUALITY_COLUMNS)


def down(conn):
    drop_tables(conn, reversed(TABLES))
