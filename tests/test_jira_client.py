"""
Unit Tests for the Jira Client
Offset pagination, the page cap and transient failure handling.
"""

import unittest
from unittest.mock import Mock, patch

import requests

from agile_mirror.errors import JiraAPIError, TransientFetchError
from agile_mirror.jira_client import JiraClient


def make_client(**overrides):
    config = {
        'url': 'https://example.atlassian.net',
        'username': 'bot@example.com',
        'api_token': 'token',
        'requests_per_second': 0,
        'page_size': 50,
        'max_pages': 200,
        'page_retries': 2,
        'retry_delay': 1,
    }
    config.update(overrides)
    return JiraClient(config)


def page(start, count, is_last=None, key='values'):
    response = {key: [{'id': start + i} for i in range(count)]}
    if is_last is not None:
        response['isLast'] = is_last
    return response


class TestPagination(unittest.TestCase):
    """Test offset pagination over list endpoints."""

    def setUp(self):
        self.client = make_client()

    def test_follows_pages_until_is_last(self):
        responses = [page(0, 50, False), page(50, 50, False), page(100, 50, True)]
        with patch.object(self.client, '_make_request', side_effect=responses) as request:
            sprints = self.client.fetch_sprints(7)

        self.assertEqual(len(sprints), 150)
        start_ats = [call.kwargs['params']['startAt'] for call in request.call_args_list]
        self.assertEqual(start_ats, [0, 50, 100])
        self.assertTrue(all(call.kwargs['params']['maxResults'] == 50 for call in request.call_args_list))

    def test_short_page_ends_pagination(self):
        responses = [page(0, 50, key='issues'), page(50, 12, key='issues')]
        with patch.object(self.client, '_make_request', side_effect=responses) as request:
            issues = self.client.fetch_sprint_issues(3)

        self.assertEqual(len(issues), 62)
        self.assertEqual(request.call_count, 2)

    def test_empty_first_page(self):
        with patch.object(self.client, '_make_request', return_value={'values': [], 'isLast': True}):
            self.assertEqual(self.client.fetch_boards(), [])

    def test_page_cap_stops_runaway_pagination(self):
        client = make_client(max_pages=200)
        with patch.object(client, '_make_request', side_effect=lambda endpoint, params: page(params['startAt'], 50, False)) as request:
            sprints = client.fetch_sprints(7)

        self.assertEqual(request.call_count, 200)
        self.assertEqual(len(sprints), 200 * 50)


class TestTransientFailures(unittest.TestCase):
    """Test bounded retries of transient page failures."""

    def setUp(self):
        self.client = make_client()

    @patch('agile_mirror.jira_client.time.sleep')
    def test_transient_failure_is_retried(self, sleep):
        responses = [TransientFetchError('busy', 503), page(0, 3, True)]
        with patch.object(self.client, '_make_request', side_effect=responses):
            boards = self.client.fetch_boards()

        self.assertEqual(len(boards), 3)
        sleep.assert_called_once_with(1)

    @patch('agile_mirror.jira_client.time.sleep')
    def test_retry_budget_is_bounded(self, sleep):
        failure = TransientFetchError('down', 502)
        with patch.object(self.client, '_make_request', side_effect=[failure] * 5) as request:
            with self.assertRaises(TransientFetchError):
                self.client.fetch_boards()

        self.assertEqual(request.call_count, 3)
        self.assertEqual([call.args[0] for call in sleep.call_args_list], [1, 2])

    @patch('agile_mirror.jira_client.time.sleep')
    def test_permanent_errors_are_not_retried(self, sleep):
        with patch.object(self.client, '_make_request', side_effect=JiraAPIError('nope', 404)) as request:
            with self.assertRaises(JiraAPIError):
                self.client.fetch_boards()

        self.assertEqual(request.call_count, 1)
        sleep.assert_not_called()


class TestResponseMapping(unittest.TestCase):
    """Test how HTTP outcomes map onto error types."""

    def setUp(self):
        self.client = make_client()
        self.client._session = Mock()

    def respond(self, status_code, body=None):
        response = Mock(status_code=status_code, text='{}' if body is not None else '')
        response.json.return_value = body
        self.client._session.request.return_value = response

    def test_success_returns_json(self):
        self.respond(200, {'values': []})
        self.assertEqual(self.client._make_request('agile/1.0/board'), {'values': []})

    def test_server_error_is_transient(self):
        self.respond(503)
        with self.assertRaises(TransientFetchError) as ctx:
            self.client._make_request('agile/1.0/board')
        self.assertEqual(ctx.exception.status_code, 503)

    def test_rate_limit_is_transient(self):
        self.respond(429)
        with self.assertRaises(TransientFetchError):
            self.client._make_request('agile/1.0/board')

    def test_not_found_is_permanent(self):
        self.respond(404)
        with self.assertRaises(JiraAPIError) as ctx:
            self.client._make_request('agile/1.0/board/9')
        self.assertNotIsInstance(ctx.exception, TransientFetchError)
        self.assertEqual(ctx.exception.status_code, 404)

    def test_connection_error_is_transient(self):
        self.client._session.request.side_effect = requests.exceptions.ConnectionError('reset')
        with self.assertRaises(TransientFetchError):
            self.client._make_request('agile/1.0/board')


if __name__ == '__main__':
    unittest.main()
