"""
Unit Tests for the Flow Metrics Engine
Evaluation period fallbacks, column load and cycle/lead time.
"""

import unittest
from datetime import datetime, timedelta

from agile_mirror.database.models import KanbanBoard, KanbanMetrics
from agile_mirror.errors import Busy
from agile_mirror.lock_manager import LockManager
from agile_mirror.metrics.flow_metrics import (
    NATIVE_SPRINT, SPRINT_ALIGNED, TRAILING, FlowMetricsEngine
)
from tests.support import MirrorTestCase

COLUMNS = [
    {'name': 'To Do', 'statuses': ['1']},
    {'name': 'In Progress', 'statuses': ['3', '4'], 'max': 1},
    {'name': 'Done', 'statuses': ['10001']},
]


def at(day, hour=12):
    return datetime(2026, 2, day, hour, 0)


class FlowMetricsTestCase(MirrorTestCase):

    def setUp(self):
        super().setUp()
        self.project = self.make_project()
        board = self.make_board(jira_id=5, board_type='kanban', project_id=self.project.id)
        self.board = board
        self.kanban = self.make_kanban_board(board, column_config=COLUMNS)
        self.engine = FlowMetricsEngine(self.db, self.locks, self.config, clock=self.clock)

        # Done in 5 days of cycle time, one of which was spent Blocked
        self.finished = self.make_issue(
            'FLOW-1', status='Done', created_date=at(16), resolution_date=at(23)
        )
        self.make_status_change(self.finished, at(18), 'To Do', 'In Progress', '1', '3')
        self.make_status_change(self.finished, at(20), 'In Progress', 'Blocked', '3', '4')
        self.make_status_change(self.finished, at(21), 'Blocked', 'In Progress', '4', '3')
        self.make_status_change(self.finished, at(23), 'In Progress', 'Done', '3', '10001')
        self.make_membership(self.kanban, self.finished, 'Done')

        for key, created in (('FLOW-2', at(20, 0)), ('FLOW-3', at(25, 0))):
            issue = self.make_issue(key, status='In Progress', created_date=created)
            self.make_membership(self.kanban, issue, 'In Progress')


class TestFlowCalculation(FlowMetricsTestCase):
    """Test the computed flow values over the trailing period."""

    def test_flow_values(self):
        metrics = self.engine.calculate_metrics_for_board(self.kanban.id)

        self.assertEqual(metrics.period_source, TRAILING)
        self.assertEqual((metrics.period_start, metrics.period_end), (self.now - timedelta(days=14), self.now))
        self.assertEqual(metrics.total_issues, 3)
        self.assertEqual((metrics.to_do_issues, metrics.in_progress_issues, metrics.done_issues), (0, 2, 1))
        self.assertEqual(metrics.throughput, 1)
        self.assertEqual(metrics.evaluated_issues, 1)
        self.assertEqual(metrics.average_cycle_time, 5.0)
        self.assertEqual(metrics.median_lead_time, 7.0)
        self.assertEqual(metrics.flow_efficiency, 80.0)
        self.assertEqual(metrics.data_flags, [])

    def test_column_load_and_wip(self):
        metrics = self.engine.calculate_metrics_for_board(self.kanban.id)
        columns = {column['name']: column for column in metrics.column_metrics}

        self.assertEqual([column['name'] for column in metrics.column_metrics], ['To Do', 'In Progress', 'Done'])
        self.assertEqual(columns['In Progress']['issue_count'], 2)
        self.assertTrue(columns['In Progress']['wip_violation'])
        self.assertEqual(columns['In Progress']['average_age_days'], 8.0)
        self.assertEqual(columns['Done']['average_age_days'], 7.0)
        self.assertIsNone(columns['To Do']['average_age_days'])
        self.assertFalse(columns['To Do']['wip_violation'])
        self.assertEqual(metrics.wip_violations, 1)

    def test_weekly_throughput(self):
        metrics = self.engine.calculate_metrics_for_board(self.kanban.id)

        self.assertEqual(len(metrics.weekly_throughput), 12)
        self.assertEqual(sum(week['count'] for week in metrics.weekly_throughput), 1)
        self.assertEqual(metrics.weekly_throughput[-2]['count'], 1)

    def test_resolution_falls_back_to_done_transition(self):
        issue = self.make_issue('FLOW-4', status='Done', created_date=at(17))
        self.make_status_change(issue, at(19), 'To Do', 'In Progress', '1', '3')
        self.make_status_change(issue, at(22), 'In Progress', 'Done', '3', '10001')
        self.make_membership(self.kanban, issue, 'Done')

        metrics = self.engine.calculate_metrics_for_board(self.kanban.id)

        self.assertEqual(metrics.throughput, 2)
        self.assertEqual(metrics.average_cycle_time, 4.0)

    def test_issue_without_cycle_start_is_flagged(self):
        issue = self.make_issue('FLOW-5', status='Done', created_date=at(17), resolution_date=at(24))
        self.make_membership(self.kanban, issue, 'Done')

        metrics = self.engine.calculate_metrics_for_board(self.kanban.id)

        self.assertIn('missing_cycle_start', metrics.data_flags)
        self.assertEqual(metrics.throughput, 2)
        self.assertEqual(metrics.evaluated_issues, 1)
        self.assertEqual(metrics.average_lead_time, 7.0)

    def test_sub_tasks_are_left_out(self):
        finished = self.make_issue('FLOW-6', status='Done', created_date=at(18), resolution_date=at(22),
                                   issue_type='Sub-task', is_subtask=True)
        self.make_status_change(finished, at(19), 'To Do', 'In Progress', '1', '3')
        self.make_membership(self.kanban, finished, 'Done')
        started = self.make_issue('FLOW-7', status='In Progress', created_date=at(24),
                                  issue_type='Sub-task', is_subtask=True)
        self.make_membership(self.kanban, started, 'In Progress')

        metrics = self.engine.calculate_metrics_for_board(self.kanban.id)
        columns = {column['name']: column for column in metrics.column_metrics}

        self.assertEqual(metrics.total_issues, 3)
        self.assertEqual((metrics.in_progress_issues, metrics.done_issues), (2, 1))
        self.assertEqual(columns['In Progress']['issue_count'], 2)
        self.assertEqual(metrics.throughput, 1)
        self.assertEqual(metrics.average_cycle_time, 5.0)

    def test_recalculation_overwrites_the_record(self):
        self.engine.calculate_metrics_for_board(self.kanban.id)
        self.advance(days=30)

        metrics = self.engine.calculate_metrics_for_board(self.kanban.id)

        with self.db.session_scope() as session:
            self.assertEqual(session.query(KanbanMetrics).count(), 1)
        self.assertEqual(metrics.period_end, self.now)
        self.assertEqual(metrics.throughput, 0)
        self.assertIn('no_resolved_issues', metrics.data_flags)

    def test_locked_board_is_busy(self):
        LockManager(self.db, holder_id='other', clock=self.clock).acquire(f'kanban_metrics:{self.kanban.id}')

        with self.assertRaises(Busy):
            self.engine.calculate_metrics_for_board(self.kanban.id)


class TestEvaluationPeriod(FlowMetricsTestCase):
    """Test the native, sprint-aligned and trailing fallbacks."""

    def period(self):
        with self.db.session_scope() as session:
            board = session.get(KanbanBoard, self.kanban.id)
            return self.engine.resolve_evaluation_period(session, board)

    def test_native_sprint(self):
        self.make_sprint(self.board.id, 70, 'closed', at(1), at(14))
        self.make_sprint(self.board.id, 71, 'active', at(15), None)

        start, end, source = self.period()

        self.assertEqual(source, NATIVE_SPRINT)
        self.assertEqual((start, end), (at(15), at(15) + timedelta(days=14)))

    def test_aligned_to_project_sprint(self):
        scrum = self.make_board(jira_id=6, board_type='scrum', project_id=self.project.id)
        self.make_sprint(scrum.id, 80, 'active', at(9), at(23))

        start, end, source = self.period()

        self.assertEqual(source, SPRINT_ALIGNED)
        self.assertEqual((start, end), (at(23), at(23) + timedelta(days=14)))

    def test_other_projects_are_ignored(self):
        other = self.make_project(key='BETA', jira_id='20000')
        scrum = self.make_board(jira_id=7, board_type='scrum', project_id=other.id)
        self.make_sprint(scrum.id, 90, 'active', at(9), at(23))

        _, _, source = self.period()

        self.assertEqual(source, TRAILING)

    def test_trailing_window_moves_with_the_clock(self):
        first = self.period()
        self.advance(days=3)
        second = self.period()

        self.assertEqual(second[0] - first[0], timedelta(days=3))
        self.assertEqual(second[1], self.now)


class TestAllBoards(FlowMetricsTestCase):
    """Test batch calculation."""

    def test_empty_board_is_skipped(self):
        empty_board = self.make_board(jira_id=8, board_type='kanban')
        empty = self.make_kanban_board(empty_board)

        result = self.engine.calculate_metrics_for_all_boards()

        self.assertEqual(result, {'calculated': [self.kanban.id], 'skipped': [empty.id], 'failed': []})
        self.assertIsNone(self.engine.calculate_metrics_for_board(empty.id))

    def test_unknown_board_returns_none(self):
        self.assertIsNone(self.engine.calculate_metrics_for_board(999))


if __name__ == '__main__':
    unittest.main()
