"""
Unit Tests for the HTTP API
Flask test client over an in-memory engine context with a mocked Jira client.
"""

import unittest
from datetime import datetime
from unittest.mock import Mock

from agile_mirror.app import create_app
from agile_mirror.config_manager import ConfigManager
from agile_mirror.context import EngineContext
from agile_mirror.database.models import Issue, IssueChangelog
from agile_mirror.lock_manager import LockManager


class APITestCase(unittest.TestCase):

    def setUp(self):
        self.jira = Mock()
        self.jira.fetch_projects.return_value = [
            {'id': '10000', 'key': 'ALPHA', 'name': 'Alpha'},
        ]
        self.context = EngineContext(
            config=ConfigManager(), database_url='sqlite://', jira=self.jira
        ).start(scheduler=False)
        self.client = create_app(self.context).test_client()

    def tearDown(self):
        self.context.stop()

    def hold_elsewhere(self, resource_key):
        LockManager(self.context.db, holder_id='other-worker').acquire(resource_key)


class TestHealth(APITestCase):

    def test_health(self):
        response = self.client.get('/health')
        data = response.get_json()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(data['status'], 'healthy')
        self.assertEqual(data['database'], 'connected')
        self.assertEqual(data['scheduler'], 'stopped')

    def test_unknown_route(self):
        response = self.client.get('/api/nothing-here')

        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.get_json()['success'])


class TestSyncRoutes(APITestCase):

    def test_project_sync_then_status(self):
        response = self.client.post('/api/sync/projects')
        data = response.get_json()

        self.assertEqual(response.status_code, 200)
        self.assertTrue(data['success'])
        self.assertEqual(data['operation']['inserted_count'], 1)

        status = self.client.get('/api/sync/status?type=projects').get_json()
        self.assertEqual(len(status['operations']), 1)
        self.assertEqual(status['last_successful']['id'], data['operation']['id'])

        detail = self.client.get(f"/api/sync/status/{data['operation']['id']}")
        self.assertEqual(detail.get_json()['operation']['status'], 'completed')

    def test_unknown_operation(self):
        response = self.client.get('/api/sync/status/999')

        self.assertEqual(response.status_code, 404)

    def test_cancel(self):
        response = self.client.post('/api/sync/cancel')

        self.assertTrue(response.get_json()['success'])


class TestMetricsRoutes(APITestCase):

    def test_missing_sprint(self):
        self.assertEqual(self.client.get('/api/metrics/sprint/42').status_code, 404)
        self.assertEqual(self.client.post('/api/metrics/sprint/42/calculate').status_code, 404)

    def test_missing_board(self):
        self.assertEqual(self.client.get('/api/metrics/board/42').status_code, 404)

    def test_unknown_kanban_board_is_skipped(self):
        response = self.client.post('/api/metrics/kanban/42/calculate')
        data = response.get_json()

        self.assertEqual(response.status_code, 200)
        self.assertTrue(data['skipped'])
        self.assertIsNone(data['metrics'])

    def test_locked_resource_is_conflict(self):
        self.hold_elsewhere('sprint_metrics:42')

        response = self.client.post('/api/metrics/sprint/42/calculate')
        data = response.get_json()

        self.assertEqual(response.status_code, 409)
        self.assertEqual(data['resource_key'], 'sprint_metrics:42')

    def test_recompute_everything_on_empty_mirror(self):
        data = self.client.post('/api/metrics/calculate').get_json()

        self.assertTrue(data['success'])
        self.assertEqual(data['boards']['calculated'], [])
        self.assertEqual(data['kanban_boards']['calculated'], [])


class TestDataRoutes(APITestCase):

    def test_projects_after_sync(self):
        self.client.post('/api/sync/projects')

        data = self.client.get('/api/data/projects').get_json()

        self.assertEqual(data['count'], 1)
        self.assertEqual(data['projects'][0]['project_key'], 'ALPHA')

    def test_issue_with_changelog(self):
        with self.context.db.session_scope() as session:
            session.add(Issue(jira_id='100', issue_key='ALPHA-1', status='To Do'))
            session.flush()
            session.add(IssueChangelog(
                issue_id=session.query(Issue.id).scalar(), dedup_key='7:status', field_name='status',
                change_type='status_changed', from_string='To Do', to_string='In Progress',
                change_date=datetime(2026, 1, 5, 9, 0)
            ))

        data = self.client.get('/api/data/issues/ALPHA-1').get_json()

        self.assertEqual(data['issue']['issue_key'], 'ALPHA-1')
        self.assertEqual([entry['to_string'] for entry in data['changelog']], ['In Progress'])
        self.assertEqual(data['changelog'][0]['change_date'], '2026-01-05T09:00:00')

    def test_missing_resources(self):
        self.assertEqual(self.client.get('/api/data/issues/NOPE-1').status_code, 404)
        self.assertEqual(self.client.get('/api/data/boards/5/sprints').status_code, 404)
        self.assertEqual(self.client.get('/api/data/sprints/5/issues').status_code, 404)

    def test_empty_listings(self):
        self.assertEqual(self.client.get('/api/data/boards?type=kanban').get_json()['count'], 0)
        self.assertEqual(self.client.get('/api/data/kanban').get_json()['kanban_boards'], [])
        self.assertEqual(self.client.get('/api/data/kanban/3/issues').get_json()['issues'], [])


class TestLockRoutes(APITestCase):

    def test_status_and_cleanup(self):
        self.hold_elsewhere('board_metrics:1')

        status = self.client.get('/api/locks/status').get_json()
        self.assertEqual(status['count'], 1)
        self.assertEqual(status['locks'][0]['resource_key'], 'board_metrics:1')

        cleanup = self.client.post('/api/locks/cleanup').get_json()
        self.assertEqual(cleanup['removed'], 0)


if __name__ == '__main__':
    unittest.main()
