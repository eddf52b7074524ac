"""
Unit Tests for the Sync Orchestrator
Idempotent reconciliation, lock contention, per-unit failures and cancellation.
"""

import unittest
from datetime import datetime, timedelta
from unittest.mock import Mock

from agile_mirror.database.models import Board, Issue, KanbanBoard, KanbanIssue, Project, Sprint, SyncOperation
from agile_mirror.errors import Busy, JiraAPIError, TransientFetchError
from agile_mirror.lock_manager import LockManager
from agile_mirror.sync.orchestrator import SyncOrchestrator
from tests.support import MirrorTestCase, board_payload, issue_payload, sprint_payload

COLUMNS = {
    'columnConfig': {
        'columns': [
            {'name': 'To Do', 'statuses': [{'id': '1'}]},
            {'name': 'In Progress', 'statuses': [{'id': '3'}], 'max': 2},
            {'name': 'Done', 'statuses': [{'id': '10001'}]},
        ]
    }
}


class SyncTestCase(MirrorTestCase):

    def setUp(self):
        super().setUp()
        self.jira = Mock()
        self.jira.fetch_projects.return_value = [
            {'id': '10000', 'key': 'ALPHA', 'name': 'Alpha', 'projectTypeKey': 'software'}
        ]
        self.jira.fetch_boards.return_value = [board_payload(1, 'scrum')]
        self.jira.fetch_board_configuration.return_value = COLUMNS
        self.jira.fetch_board_issues.return_value = []
        self.orchestrator = SyncOrchestrator(self.db, self.jira, self.locks, self.config)

    def count(self, model):
        with self.db.session_scope() as session:
            return session.query(model).count()

    def operations(self, **filters):
        with self.db.session_scope() as session:
            return session.query(SyncOperation).filter_by(**filters).order_by(SyncOperation.id).all()


class TestFullSync(SyncTestCase):
    """Test a full pass over a board with a long sprint history."""

    def setUp(self):
        super().setUp()
        base = datetime(2024, 1, 1, 9, 0)
        self.sprints = []
        for index in range(53):
            start = base + timedelta(weeks=2 * index)
            self.sprints.append(sprint_payload(1000 + index, 'closed', start, start + timedelta(days=14)))
        active_start = base + timedelta(weeks=106)
        self.sprints.append(sprint_payload(2000, 'active', active_start, active_start + timedelta(days=14)))
        self.sprints.append(sprint_payload(2001, 'active', active_start, active_start + timedelta(days=14)))
        self.sprints.append(sprint_payload(3000, 'future'))
        self.jira.fetch_sprints.return_value = self.sprints
        self.jira.fetch_sprint_issues.side_effect = self.sprint_issues

    def sprint_issues(self, sprint_id):
        sprint = next(s for s in self.sprints if s['id'] == sprint_id)
        ref = {'id': sprint_id, 'state': sprint['state'], 'startDate': sprint.get('startDate')}
        return [
            issue_payload(sprint_id * 10 + n, f'ALPHA-{sprint_id * 10 + n}', points=float(n + 1), sprints=[ref])
            for n in range(2)
        ]

    def test_sync_all_mirrors_selected_sprints(self):
        summary = self.orchestrator.sync_all()

        # projects, boards, board sprints, 8 sprint issue syncs
        self.assertEqual(summary['operations'], 11)
        self.assertEqual(summary['completed'], 11)
        self.assertEqual(summary['failed'], 0)
        self.assertFalse(summary['cancelled'])
        self.assertEqual(self.count(Sprint), 8)
        self.assertEqual(self.count(Issue), 16)

        with self.db.session_scope() as session:
            board = session.query(Board).one()
            self.assertEqual(board.column_config[1], {'name': 'In Progress', 'statuses': ['3'], 'min': None, 'max': 2})
            self.assertEqual(session.query(Project).one().project_key, 'ALPHA')
            issue = session.query(Issue).filter(Issue.issue_key == 'ALPHA-20000').one()
            sprint = session.query(Sprint).filter(Sprint.jira_id == 2000).one()
            self.assertEqual(issue.sprint_id, sprint.id)
            self.assertEqual(issue.story_points, 1.0)

    def test_second_sync_without_changes_is_an_empty_diff(self):
        self.orchestrator.sync_all()
        first_ids = {op.id for op in self.operations()}

        summary = self.orchestrator.sync_all()

        second = [op for op in self.operations() if op.id not in first_ids]
        self.assertEqual(summary['completed'], 11)
        self.assertEqual(len(second), 11)
        self.assertEqual(sum(op.inserted_count for op in second), 0)
        self.assertEqual(sum(op.updated_count for op in second), 0)
        self.assertEqual(
            sum(op.unchanged_count for op in second),
            sum(op.fetched_count for op in second)
        )
        self.assertEqual(self.count(Sprint), 8)
        self.assertEqual(self.count(Issue), 16)

    def test_changed_issue_is_reported_as_updated(self):
        self.orchestrator.sync_all()
        payloads = self.sprint_issues(2000)
        payloads[0]['fields']['customfield_10016'] = 8.0
        self.jira.fetch_sprint_issues.side_effect = None
        self.jira.fetch_sprint_issues.return_value = payloads

        operation = self.orchestrator.sync_sprint_issues(2000)

        self.assertEqual(operation.status, 'completed')
        self.assertEqual((operation.inserted_count, operation.updated_count, operation.unchanged_count), (0, 1, 1))

    def test_evicted_sprints_stay_in_the_mirror(self):
        self.orchestrator.sync_all()
        later = datetime(2026, 2, 2, 9, 0)
        self.sprints.append(sprint_payload(4000, 'closed', later, later + timedelta(days=14)))

        self.orchestrator.sync_board_sprints(1)

        self.assertEqual(self.count(Sprint), 9)


class TestSprintSync(SyncTestCase):
    """Test sprint reconciliation rules."""

    def setUp(self):
        super().setUp()
        self.orchestrator.sync_projects()
        self.orchestrator.sync_boards()

    def test_closed_sprint_never_reopens(self):
        start = datetime(2026, 1, 5, 9, 0)
        self.jira.fetch_sprints.return_value = [sprint_payload(10, 'closed', start, start + timedelta(days=14))]
        self.orchestrator.sync_board_sprints(1)

        self.jira.fetch_sprints.return_value = [sprint_payload(10, 'active', start, start + timedelta(days=14))]
        operation = self.orchestrator.sync_board_sprints(1)

        self.assertEqual(operation.status, 'completed')
        self.assertEqual(operation.unchanged_count, 1)
        self.assertEqual(self.orchestrator._require(Sprint, 10).state, 'closed')

    def test_failing_unit_is_counted_and_run_continues(self):
        start = datetime(2026, 1, 5, 9, 0)
        broken = sprint_payload(11, 'closed', start, start + timedelta(days=14))
        broken['name'] = None
        self.jira.fetch_sprints.return_value = [
            sprint_payload(10, 'closed', start - timedelta(days=14), start),
            broken,
            sprint_payload(12, 'active', start + timedelta(days=14)),
        ]

        operation = self.orchestrator.sync_board_sprints(1)

        self.assertEqual(operation.status, 'completed')
        self.assertEqual(operation.inserted_count, 2)
        self.assertEqual(operation.failed_count, 1)
        self.assertEqual(len(operation.errors), 1)
        self.assertIn('sprint 11', operation.errors[0])
        self.assertEqual(self.count(Sprint), 2)

    def test_sync_of_unmirrored_board_fails_the_operation(self):
        operation = self.orchestrator.sync_board_sprints(999)

        self.assertEqual(operation.status, 'failed')
        self.assertIn('not mirrored', operation.error_message)
        self.jira.fetch_sprints.assert_not_called()

    def test_tracker_error_fails_the_operation(self):
        self.jira.fetch_sprints.side_effect = JiraAPIError('Access forbidden', 403)

        operation = self.orchestrator.sync_board_sprints(1)

        self.assertEqual(operation.status, 'failed')
        self.assertEqual(operation.error_message, 'Access forbidden')

    def test_board_without_sprint_support(self):
        self.jira.fetch_boards.return_value = [board_payload(1, 'scrum'), board_payload(2, 'simple')]
        self.orchestrator.sync_boards()
        self.jira.fetch_sprints.side_effect = JiraAPIError('board does not support sprints', 400)

        operation = self.orchestrator.sync_board_sprints(2)

        self.assertEqual(operation.status, 'completed')
        self.assertEqual(operation.fetched_count, 0)


class TestLockingAndLifecycle(SyncTestCase):
    """Test contention, cancellation and orphan recovery."""

    def setUp(self):
        super().setUp()
        self.other = LockManager(self.db, holder_id='other-worker', clock=self.clock)
        self.jira.fetch_sprints.return_value = [
            sprint_payload(10, 'active', datetime(2026, 2, 23, 9, 0), datetime(2026, 3, 9, 9, 0))
        ]
        self.jira.fetch_sprint_issues.return_value = [
            issue_payload(1, 'ALPHA-1'), issue_payload(2, 'ALPHA-2')
        ]

    def test_busy_resource_raises(self):
        self.other.acquire('boards:all')

        with self.assertRaises(Busy):
            self.orchestrator.sync_boards()
        self.assertEqual(self.operations(), [])

    def test_sync_all_skips_busy_steps(self):
        self.other.acquire('projects:all')

        summary = self.orchestrator.sync_all()

        self.assertEqual(summary['skipped'], 1)
        self.assertEqual(summary['completed'], 3)
        self.assertEqual(self.count(Issue), 2)

    def test_cancel_stops_between_units(self):
        def cancel_then_return(sprint_id):
            self.orchestrator.cancel()
            return [issue_payload(1, 'ALPHA-1'), issue_payload(2, 'ALPHA-2')]
        self.jira.fetch_sprint_issues.side_effect = cancel_then_return

        summary = self.orchestrator.sync_all()

        self.assertTrue(summary['cancelled'])
        cancelled = self.operations(sync_type='sprint_issues')[0]
        self.assertEqual(cancelled.status, 'failed')
        self.assertEqual(cancelled.error_message, 'cancelled')
        self.assertEqual(self.count(Issue), 0)

        # The next run starts clean
        self.jira.fetch_sprint_issues.side_effect = None
        summary = self.orchestrator.sync_all()
        self.assertFalse(summary['cancelled'])
        self.assertEqual(self.count(Issue), 2)

    def test_unreachable_jira_aborts_before_any_operation(self):
        self.jira.test_connection.return_value = False

        with self.assertRaises(JiraAPIError):
            self.orchestrator.sync_all()
        self.assertEqual(self.operations(), [])
        self.jira.fetch_projects.assert_not_called()

    def test_lock_is_released_after_each_operation(self):
        self.orchestrator.sync_all()
        self.assertEqual(self.locks.active_locks(), [])

    def test_orphaned_operations_are_failed(self):
        self.add(SyncOperation(sync_type='boards', resource_key='boards:all', status='running'))
        self.add(SyncOperation(sync_type='board_sprints', resource_key='board_sprints:1', status='running'))
        self.other.acquire('board_sprints:1')

        recovered = self.orchestrator.recover_orphaned_operations()

        self.assertEqual(recovered, 1)
        statuses = {op.resource_key: op.status for op in self.operations()}
        self.assertEqual(statuses, {'boards:all': 'failed', 'board_sprints:1': 'running'})


class TestKanbanSync(SyncTestCase):
    """Test kanban board issue mirroring."""

    def setUp(self):
        super().setUp()
        self.jira.fetch_boards.return_value = [board_payload(5, 'kanban')]
        self.orchestrator.sync_boards()

    def test_kanban_board_row_carries_wip_limits(self):
        with self.db.session_scope() as session:
            kanban_board = session.query(KanbanBoard).one()
            self.assertEqual(kanban_board.jira_id, 5)
            self.assertEqual(kanban_board.column_config[1]['max'], 2)

    def test_failed_configuration_fetch_keeps_stored_columns(self):
        self.jira.fetch_board_configuration.side_effect = TransientFetchError('Service unavailable', 503)

        operation = self.orchestrator.sync_boards()

        self.assertEqual(operation.status, 'completed')
        with self.db.session_scope() as session:
            board = session.query(Board).one()
            kanban_board = session.query(KanbanBoard).one()
            self.assertEqual([c['name'] for c in board.column_config], ['To Do', 'In Progress', 'Done'])
            self.assertEqual(kanban_board.column_config[1]['max'], 2)

    def test_issues_are_placed_in_columns(self):
        self.jira.fetch_board_issues.return_value = [
            issue_payload(1, 'ALPHA-1', status='In Progress', category='indeterminate', status_id='3'),
            issue_payload(2, 'ALPHA-2', status='Done', category='done', status_id='10001',
                          resolved=datetime(2026, 2, 20, 12, 0)),
            issue_payload(3, 'ALPHA-3', status='Triage', category='new', status_id='77'),
        ]

        operation = self.orchestrator.sync_kanban_board_issues(5)

        self.assertEqual(operation.inserted_count, 3)
        with self.db.session_scope() as session:
            rows = session.query(Issue.issue_key, KanbanIssue.column_name, KanbanIssue.status_category).join(
                KanbanIssue, KanbanIssue.issue_id == Issue.id
            ).order_by(Issue.issue_key).all()
        self.assertEqual(rows, [
            ('ALPHA-1', 'In Progress', 'in_progress'),
            ('ALPHA-2', 'Done', 'done'),
            ('ALPHA-3', None, 'to_do'),
        ])

    def test_kanban_issue_resync_is_unchanged(self):
        payloads = [issue_payload(1, 'ALPHA-1', status='In Progress', category='indeterminate', status_id='3')]
        self.jira.fetch_board_issues.return_value = payloads
        self.orchestrator.sync_kanban_board_issues(5)

        operation = self.orchestrator.sync_kanban_board_issues(5)

        self.assertEqual(operation.unchanged_count, 1)
        self.assertEqual(operation.updated_count, 0)


if __name__ == '__main__':
    unittest.main()
