"""
Migration Registry
Ordered, statically registered schema-change units.
"""

from collections import namedtuple

from agile_mirror.database.migrations import (
    m0001_create_mirror_tables,
    m0002_create_sync_operations,
    m0003_create_issue_changelog,
    m0004_create_sprint_metrics,
    m0005_create_kanban_tables,
    m0006_create_distributed_locks,
    m0007_add_kanban_weekly_throughput,
    m0008_add_quality_metrics,
)

Migration = namedtuple('Migration', ['name', 'up', 'down'])


def _unit(module) -> Migration:
    return Migration(module.__name__.rsplit('.', 1)[-1], module.up, module.down)


MIGRATIONS = [
    _unit(m0001_create_mirror_tables),
    _unit(m0002_create_sync_operations),
    _unit(m0003_create_issue_changelog),
    _unit(m0004_create_sprint_metrics),
    _unit(m0005_create_kanban_tables),
    _unit(m0006_create_distributed_locks),
    _unit(m0007_add_kanban_weekly_throughput),
    _unit(m0008_add_quality_metrics),
]

__all__ = ['Migration', 'MIGRATIONS']
