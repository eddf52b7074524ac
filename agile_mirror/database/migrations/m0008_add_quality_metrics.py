"""Defect quality and story point size breakdown on sprint and board metrics."""

from agile_mirror.database.migrations.operations import add_column, drop_column

COLUMNS = {
    'sprint_metrics': [
        'total_defects', 'completed_defects', 'defect_leakage_rate', 'quality_rate',
        'story_points_breakdown',
    ],
    'board_metrics': ['average_defect_leakage_rate', 'average_quality_rate', 'total_defects'],
}


def up(conn):
    for table_name, columns in COLUMNS.items():
        for column_name in columns:
            add_column(conn, table_name, column_name)


def down(conn):
    for table_name, columns in COLUMNS.items():
        for column_name in reversed(columns):
            drop_column(conn, table_name, column_name)
