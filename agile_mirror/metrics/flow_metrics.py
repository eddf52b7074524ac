"""
Flow Metrics Engine
Column load, WIP limits, cycle/lead time and flow efficiency for kanban boards.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from agile_mirror.config_manager import ConfigManager
from agile_mirror.database.connection import DatabaseConnection
from agile_mirror.database.models import (
    Board, Issue, IssueChangelog, KanbanBoard, KanbanIssue, KanbanMetrics, Sprint
)
from agile_mirror.database.upsert import upsert_by_key
from agile_mirror.errors import Busy
from agile_mirror.lock_manager import LockManager, lock_key
from agile_mirror.metrics.status import DONE, IN_PROGRESS, TO_DO, StatusClassifier
from agile_mirror.utils.helpers import (
    duration_days, mean_or_none, median_or_none, round_metric, utcnow, window_for
)
from agile_mirror.utils.logger import get_logger

logger = get_logger(__name__)

NATIVE_SPRINT = 'native_sprint'
SPRINT_ALIGNED = 'sprint_aligned'
TRAILING = 'trailing'


class FlowMetricsEngine:
    """Computes KanbanMetrics from the mirror."""

    def __init__(
        self,
        db: DatabaseConnection,
        locks: LockManager,
        config: ConfigManager = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db = db
        self.locks = locks
        self.clock = clock

        config = config or ConfigManager()
        self.classifier = StatusClassifier(config)
        self.lock_ttl = config.get_minutes('metrics', 'lock_ttl_minutes', 15)
        self.period = timedelta(days=int(config.get('metrics', 'flow_period_days', 14)))
        self.throughput_weeks = int(config.get('metrics', 'throughput_weeks', 12))

    # ========================================
    # Public Operations
    # ========================================

    def calculate_metrics_for_board(self, kanban_board_id: int) -> Optional[KanbanMetrics]:
        """
        Compute and store flow metrics for one kanban board.

        Args:
            kanban_board_id: Local kanban board id

        Returns:
            The stored KanbanMetrics, or None when the board is unknown or
            holds no issues

        Raises:
            Busy: The board's metrics are being computed elsewhere
        """
        with self.locks.hold(lock_key('kanban_metrics', kanban_board_id), self.lock_ttl):
            with self.db.session_scope() as session:
                board = session.get(KanbanBoard, kanban_board_id)
                if board is None:
                    logger.warning(f"Kanban board {kanban_board_id} not found")
                    return None

                memberships = session.query(KanbanIssue, Issue).join(
                    Issue, Issue.id == KanbanIssue.issue_id
                ).filter(
                    KanbanIssue.kanban_board_id == kanban_board_id,
                    Issue.is_subtask.isnot(True)
                ).order_by(Issue.id).all()

                if not memberships:
                    logger.info(f"Kanban board {kanban_board_id} has no issues, skipping")
                    return None

                values = self.compute(session, board, memberships)
                upsert_by_key(session, KanbanMetrics, values, ['kanban_board_id'])

            with self.db.session_scope() as session:
                metrics = session.query(KanbanMetrics).filter(
                    KanbanMetrics.kanban_board_id == kanban_board_id
                ).one()

        logger.info(
            f"Kanban board {kanban_board_id} metrics ({metrics.period_source}): "
            f"throughput={metrics.throughput} cycle={metrics.average_cycle_time} "
            f"wip_violations={metrics.wip_violations}"
        )
        return metrics

    def calculate_metrics_for_all_boards(self) -> Dict[str, List[int]]:
        """
        Compute flow metrics for every kanban board.

        Returns:
            Dict with 'calculated', 'skipped' (no issues or locked) and
            'failed' kanban board ids
        """
        result = {'calculated': [], 'skipped': [], 'failed': []}

        with self.db.session_scope() as session:
            board_ids = [row[0] for row in session.query(KanbanBoard.id).order_by(KanbanBoard.id)]

        for board_id in board_ids:
            try:
                metrics = self.calculate_metrics_for_board(board_id)
            except Busy as e:
                logger.info(f"Skipping kanban board {board_id}: {e}")
                result['skipped'].append(board_id)
                continue
            except OperationalError:
                raise
            except Exception as e:
                logger.warning(f"Flow metrics for kanban board {board_id} failed: {e}")
                result['failed'].append(board_id)
                continue

            if metrics is None:
                result['skipped'].append(board_id)
            else:
                result['calculated'].append(board_id)

        logger.info(
            f"Flow metrics: {len(result['calculated'])} calculated, "
            f"{len(result['skipped'])} skipped, {len(result['failed'])} failed"
        )
        return result

    # ========================================
    # Evaluation Period
    # ========================================

    def resolve_evaluation_period(self, session: Session, board: KanbanBoard) -> Tuple[datetime, datetime, str]:
        """
        Pick the window flow metrics are evaluated over.

        1. The board's own sprints (active, else most recent).
        2. A period of the configured length aligned to the start of the
           project's active sprint (else most recent sprint) on another board.
        3. The trailing period ending now.

        Returns:
            Tuple of (start, end, source)
        """
        now = self.clock()

        native = session.query(Sprint).filter(
            Sprint.board_id == board.board_id,
            Sprint.start_date.isnot(None)
        ).all()
        if native:
            sprint = self._latest(native)
            return sprint.start_date, sprint.end_date or sprint.start_date + self.period, NATIVE_SPRINT

        if board.project_id is not None:
            siblings = session.query(Sprint).join(Board, Sprint.board_id == Board.id).filter(
                Board.project_id == board.project_id,
                Sprint.start_date.isnot(None)
            ).all()
            if siblings:
                start, end = window_for(self._latest(siblings).start_date, now, self.period)
                return start, end, SPRINT_ALIGNED

        return now - self.period, now, TRAILING

    @staticmethod
    def _latest(sprints: List[Sprint]) -> Sprint:
        active = [s for s in sprints if s.state == 'active']
        return max(active or sprints, key=lambda s: (s.start_date, s.id))

    # ========================================
    # Calculation
    # ========================================

    def compute(self, session: Session, board: KanbanBoard, memberships: List[Tuple[KanbanIssue, Issue]]) -> Dict:
        """Build the KanbanMetrics column values for a board."""
        now = self.clock()
        flags = []
        start, end, source = self.resolve_evaluation_period(session, board)
        transitions = self._status_transitions(session, [issue.id for _, issue in memberships])

        distribution = {TO_DO: 0, IN_PROGRESS: 0, DONE: 0}
        for membership, issue in memberships:
            category = membership.status_category or self.classifier.category(issue.status, issue.status_category)
            if category in distribution:
                distribution[category] += 1

        if not board.column_config:
            flags.append('missing_column_config')
        column_metrics = self._column_metrics(board, memberships, transitions, now)

        cycle_times, lead_times = [], []
        active_days = total_days = 0.0
        resolved_times = []
        missing_cycle_start = 0

        for _, issue in memberships:
            resolved_at = self._resolved_at(issue, transitions[issue.id])
            if resolved_at is None:
                continue
            resolved_times.append(resolved_at)
            if not start <= resolved_at <= end:
                continue

            lead = duration_days(issue.created_date, resolved_at)
            if lead is not None:
                lead_times.append(lead)

            cycle_start = self._cycle_start(transitions[issue.id])
            if cycle_start is None or cycle_start > resolved_at:
                missing_cycle_start += 1
                continue
            cycle_times.append(duration_days(cycle_start, resolved_at))
            total_days += duration_days(cycle_start, resolved_at)
            active_days += self._active_days(transitions[issue.id], cycle_start, resolved_at)

        throughput = sum(1 for resolved_at in resolved_times if start <= resolved_at <= end)
        if throughput == 0:
            flags.append('no_resolved_issues')
        if missing_cycle_start:
            flags.append('missing_cycle_start')

        return {
            'kanban_board_id': board.id,
            'period_start': start,
            'period_end': end,
            'period_source': source,
            'total_issues': len(memberships),
            'to_do_issues': distribution[TO_DO],
            'in_progress_issues': distribution[IN_PROGRESS],
            'done_issues': distribution[DONE],
            'column_metrics': column_metrics,
            'wip_violations': sum(1 for column in column_metrics if column['wip_violation']),
            'throughput': throughput,
            'weekly_throughput': self._weekly_throughput(resolved_times, now),
            'evaluated_issues': len(cycle_times),
            'average_cycle_time': round_metric(mean_or_none(cycle_times)),
            'median_cycle_time': round_metric(median_or_none(cycle_times)),
            'average_lead_time': round_metric(mean_or_none(lead_times)),
            'median_lead_time': round_metric(median_or_none(lead_times)),
            'flow_efficiency': round_metric(active_days / total_days * 100) if total_days > 0 else None,
            'data_flags': sorted(flags),
            'calculated_at': now,
        }

    def _status_transitions(self, session: Session, issue_ids: List[int]) -> Dict[int, List[IssueChangelog]]:
        transitions = defaultdict(list)
        if not issue_ids:
            return transitions

        for entry in session.query(IssueChangelog).filter(
            IssueChangelog.issue_id.in_(issue_ids),
            func.lower(IssueChangelog.field_name) == 'status'
        ).order_by(IssueChangelog.change_date, IssueChangelog.id):
            transitions[entry.issue_id].append(entry)
        return transitions

    def _column_metrics(
        self,
        board: KanbanBoard,
        memberships: List[Tuple[KanbanIssue, Issue]],
        transitions: Dict[int, List[IssueChangelog]],
        now: datetime
    ) -> List[Dict]:
        columns = []
        for column in board.column_config or []:
            statuses = set(column.get('statuses') or [])
            members = [issue for membership, issue in memberships if membership.column_name == column.get('name')]

            ages = []
            for issue in members:
                entered = self._entered_column(transitions[issue.id], statuses) or issue.created_date
                age = duration_days(entered, now)
                if age is not None:
                    ages.append(age)

            wip_limit = column.get('max')
            columns.append({
                'name': column.get('name'),
                'issue_count': len(members),
                'average_age_days': round_metric(mean_or_none(ages)),
                'wip_limit': wip_limit,
                'wip_violation': wip_limit is not None and len(members) > wip_limit,
            })
        return columns

    @staticmethod
    def _entered_column(entries: List[IssueChangelog], statuses: set) -> Optional[datetime]:
        """Last time the issue moved into the column from outside it."""
        entered = None
        for entry in entries:
            if entry.to_value in statuses and entry.from_value not in statuses:
                entered = entry.change_date
        return entered

    def _resolved_at(self, issue: Issue, entries: List[IssueChangelog]) -> Optional[datetime]:
        if issue.resolution_date is not None:
            return issue.resolution_date
        if not self.classifier.is_done(issue.status, issue.status_category):
            return None
        into_done = [e.change_date for e in entries if self.classifier.is_done(e.to_string)]
        return into_done[-1] if into_done else None

    def _cycle_start(self, entries: List[IssueChangelog]) -> Optional[datetime]:
        """First transition into an in-progress status."""
        for entry in entries:
            if self.classifier.is_in_progress(entry.to_string):
                return entry.change_date
        return None

    def _active_days(self, entries: List[IssueChangelog], start: datetime, end: datetime) -> float:
        """Days between start and end spent in actively worked statuses."""
        active = 0.0
        for index, entry in enumerate(entries):
            if entry.change_date >= end:
                break
            next_change = entries[index + 1].change_date if index + 1 < len(entries) else end
            segment_start = max(entry.change_date, start)
            segment_end = min(next_change, end)
            if segment_end > segment_start and self.classifier.is_active(entry.to_string):
                active += duration_days(segment_start, segment_end)
        return active

    def _weekly_throughput(self, resolved_times: List[datetime], now: datetime) -> List[Dict]:
        weeks = []
        for offset in range(self.throughput_weeks, 0, -1):
            week_end = now - timedelta(weeks=offset - 1)
            week_start = week_end - timedelta(weeks=1)
            weeks.append({
                'week_start': week_start.isoformat(),
                'count': sum(1 for resolved_at in resolved_times if week_start < resolved_at <= week_end),
            })
        return weeks
