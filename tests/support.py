"""
Shared Test Fixtures
In-memory mirror built by the migration runner, plus row and payload factories.
"""

import unittest
from datetime import datetime, timedelta

from agile_mirror.config_manager import ConfigManager
from agile_mirror.database.connection import DatabaseConnection
from agile_mirror.database.migrations.runner import MigrationRunner
from agile_mirror.database.models import (
    Board, Issue, IssueChangelog, KanbanBoard, KanbanIssue, Project, Sprint
)
from agile_mirror.lock_manager import LockManager

NOW = datetime(2026, 3, 2, 12, 0, 0)


def jira_time(value: datetime) -> str:
    """Render a naive UTC datetime the way Jira does."""
    return value.strftime('%Y-%m-%dT%H:%M:%S.000+0000')


class MirrorTestCase(unittest.TestCase):
    """Fresh in-memory store per test, schema applied through the migration registry."""

    def setUp(self):
        self.now = NOW
        self.config = ConfigManager()
        self.db = DatabaseConnection(url='sqlite://')
        MigrationRunner(self.db.engine).run()
        self.locks = LockManager(self.db, holder_id='test-holder', clock=self.clock)

    def tearDown(self):
        self.db.dispose()

    def clock(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)

    # ========================================
    # Row Factories
    # ========================================

    def add(self, instance):
        with self.db.session_scope() as session:
            session.add(instance)
            session.flush()
        return instance

    def make_project(self, key='ALPHA', jira_id='10000'):
        return self.add(Project(jira_id=jira_id, project_key=key, name=f'{key} project'))

    def make_board(self, jira_id=1, board_type='scrum', project_id=None, column_config=None):
        return self.add(Board(
            jira_id=jira_id, name=f'Board {jira_id}', board_type=board_type,
            project_id=project_id, column_config=column_config
        ))

    def make_kanban_board(self, board, column_config=None):
        return self.add(KanbanBoard(
            board_id=board.id, jira_id=board.jira_id, name=board.name,
            project_id=board.project_id, column_config=column_config
        ))

    def make_sprint(self, board_id, jira_id, state='closed', start=None, end=None, name=None):
        return self.add(Sprint(
            jira_id=jira_id, board_id=board_id, name=name or f'Sprint {jira_id}',
            state=state, start_date=start, end_date=end
        ))

    def make_issue(self, key, sprint_id=None, status='To Do', points=None, **fields):
        values = {
            'jira_id': fields.pop('jira_id', key.split('-')[-1] + '00'),
            'issue_key': key,
            'sprint_id': sprint_id,
            'status': status,
            'story_points': points,
            'issue_type': 'Story',
        }
        values.update(fields)
        return self.add(Issue(**values))

    def make_membership(self, kanban_board, issue, column_name, status_category=None):
        return self.add(KanbanIssue(
            kanban_board_id=kanban_board.id, issue_id=issue.id, column_name=column_name,
            status=issue.status, status_category=status_category
        ))

    def make_status_change(self, issue, when, from_status, to_status, from_id=None, to_id=None):
        return self.add(IssueChangelog(
            issue_id=issue.id, dedup_key=f'{when.isoformat()}:status', field_name='status',
            change_type='status_changed', from_value=from_id, from_string=from_status,
            to_value=to_id, to_string=to_status, change_date=when
        ))


# ========================================
# Jira Payload Factories
# ========================================

def sprint_payload(sprint_id, state='closed', start=None, end=None):
    payload = {'id': sprint_id, 'name': f'Sprint {sprint_id}', 'state': state}
    if start is not None:
        payload['startDate'] = jira_time(start)
    if end is not None:
        payload['endDate'] = jira_time(end)
    return payload


def board_payload(board_id, board_type='scrum', project_id=10000, project_key='ALPHA'):
    return {
        'id': board_id,
        'name': f'Board {board_id}',
        'type': board_type,
        'location': {'projectId': project_id, 'projectKey': project_key, 'projectName': 'Alpha'},
    }


def issue_payload(issue_id, key, status='To Do', category='new', points=None, sprints=None,
                  status_id='1', resolved=None):
    return {
        'id': str(issue_id),
        'key': key,
        'fields': {
            'summary': f'Summary of {key}',
            'issuetype': {'name': 'Story', 'subtask': False},
            'priority': {'name': 'Medium'},
            'status': {'id': status_id, 'name': status, 'statusCategory': {'key': category}},
            'assignee': {'displayName': 'Dana Lee', 'accountId': 'acc-1'},
            'project': {'id': '10000', 'key': 'ALPHA', 'name': 'Alpha'},
            'created': '2026-01-05T09:00:00.000+0000',
            'updated': '2026-01-06T09:00:00.000+0000',
            'resolutiondate': jira_time(resolved) if resolved else None,
            'labels': ['backend'],
            'customfield_10016': points,
            'customfield_10020': sprints or [],
        },
    }
