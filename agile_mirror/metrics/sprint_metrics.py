"""
Sprint Metrics Engine
Velocity, churn, scope change and defect quality per sprint, rolled up per scrum board.
"""

from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from agile_mirror.config_manager import ConfigManager
from agile_mirror.database.connection import DatabaseConnection
from agile_mirror.database.models import Board, BoardMetrics, Issue, IssueChangelog, Sprint, SprintMetrics
from agile_mirror.database.upsert import upsert_by_key
from agile_mirror.errors import Busy, IncompleteData
from agile_mirror.lock_manager import LockManager, lock_key
from agile_mirror.metrics.status import StatusClassifier
from agile_mirror.utils.helpers import mean_or_none, round_metric, split_id_list, utcnow
from agile_mirror.utils.logger import get_logger

logger = get_logger(__name__)

MISSING_WINDOW = 'missing_sprint_window'
NO_ISSUES = 'no_issues'
MISSING_STORY_POINTS = 'missing_story_points'

# Flags that make the record unusable for churn/velocity comparisons
INSUFFICIENT_FLAGS = {MISSING_WINDOW, NO_ISSUES}


def trend(values: List[float], window: int, threshold: float) -> str:
    """
    Compare the mean of the last `window` values against the `window` before.

    Returns:
        'up', 'down' or 'stable' ('stable' when there is not enough history)
    """
    if len(values) < window * 2:
        return 'stable'

    recent = sum(values[-window:]) / window
    previous = sum(values[-window * 2:-window]) / window

    if recent > previous * (1 + threshold):
        return 'up'
    elif recent < previous * (1 - threshold):
        return 'down'
    return 'stable'


class SprintMetricsEngine:
    """Computes SprintMetrics and BoardMetrics from the mirror."""

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
        self.trend_window = int(config.get('metrics', 'trend_window', 3))
        self.trend_threshold = float(config.get('metrics', 'trend_threshold_percent', 10)) / 100
        self.defect_types = set(config.get('metrics', 'defect_issue_types', ['Defect']))
        self.quality_excluded_types = set(
            config.get('metrics', 'quality_excluded_issue_types', ['Release', 'Sub-task', 'Spike', 'Bug'])
        )

    # ========================================
    # Sprint Metrics
    # ========================================

    def calculate_sprint_metrics(self, sprint_id: int) -> Optional[SprintMetrics]:
        """
        Compute and store the metrics of one sprint.

        Args:
            sprint_id: Local sprint id

        Returns:
            The stored SprintMetrics, or None when the sprint is not mirrored

        Raises:
            Busy: The sprint's metrics are being computed elsewhere
        """
        with self.locks.hold(lock_key('sprint_metrics', sprint_id), self.lock_ttl):
            return self._calculate_sprint(sprint_id)

    def _calculate_sprint(self, sprint_id: int) -> Optional[SprintMetrics]:
        with self.db.session_scope() as session:
            sprint = session.get(Sprint, sprint_id)
            if sprint is None:
                logger.warning(f"Sprint {sprint_id} not found")
                return None

            values = self.compute(session, sprint)
            upsert_by_key(session, SprintMetrics, values, ['sprint_id'])

        with self.db.session_scope() as session:
            metrics = session.query(SprintMetrics).filter(SprintMetrics.sprint_id == sprint_id).one()

        logger.info(
            f"Sprint {sprint_id} metrics: velocity={metrics.velocity} churn={metrics.churn_rate} "
            f"flags={metrics.data_flags}"
        )
        return metrics

    def compute(self, session: Session, sprint: Sprint) -> Dict:
        """
        Build the SprintMetrics column values for a sprint.

        Sub-tasks are left out. Missing data never raises: it leaves the
        affected fields null and adds a flag.
        """
        flags = []
        issues = session.query(Issue).filter(
            Issue.sprint_id == sprint.id,
            Issue.is_subtask.isnot(True)
        ).order_by(Issue.id).all()
        if not issues:
            flags.append(NO_ISSUES)
        if any(issue.story_points is None for issue in issues):
            flags.append(MISSING_STORY_POINTS)

        done = [issue for issue in issues if self.classifier.is_done(issue.status, issue.status_category)]
        total_points = sum(issue.story_points or 0.0 for issue in issues)
        velocity = sum(issue.story_points or 0.0 for issue in done)

        values = {
            'sprint_id': sprint.id,
            'velocity': round_metric(velocity),
            'total_issues': len(issues),
            'completed_issues': len(done),
            'total_story_points': round_metric(total_points),
            'completed_story_points': round_metric(velocity),
            'completion_rate': round_metric(len(done) / len(issues) * 100 if issues else 0.0),
            'start_story_points': None,
            'added_issues': None,
            'added_story_points': None,
            'removed_issues': None,
            'removed_story_points': None,
            'churn_rate': None,
            'scope_change_percent': None,
            'issue_type_breakdown': self._issue_type_breakdown(issues, done),
            'story_points_breakdown': self._story_points_breakdown(issues),
            'team_members': sorted({issue.assignee_name for issue in issues if issue.assignee_name}),
            'window_start': sprint.start_date,
            'window_end': sprint.end_date,
            'calculated_at': self.clock(),
        }
        values.update(self.compute_quality(issues, done))

        try:
            start, end = self._sprint_window(sprint)
            values.update(self.compute_churn(session, sprint, start, end))
        except IncompleteData as e:
            logger.info(f"Sprint {sprint.id}: {e}")
            flags.append(e.flag)

        values['data_flags'] = sorted(flags)
        values['insufficient_data'] = bool(INSUFFICIENT_FLAGS.intersection(flags))
        return values

    def _sprint_window(self, sprint: Sprint) -> Tuple[datetime, datetime]:
        if sprint.start_date is None or sprint.end_date is None:
            raise IncompleteData(MISSING_WINDOW, f"sprint {sprint.id} has no start/end date")
        return sprint.start_date, sprint.end_date

    def _issue_type_breakdown(self, issues: List[Issue], done: List[Issue]) -> Dict:
        done_ids = {issue.id for issue in done}
        breakdown = {}
        for issue in issues:
            entry = breakdown.setdefault(issue.issue_type or 'Unknown', {
                'total': 0, 'completed': 0, 'story_points': 0.0
            })
            entry['total'] += 1
            entry['story_points'] = round_metric(entry['story_points'] + (issue.story_points or 0.0))
            if issue.id in done_ids:
                entry['completed'] += 1
        return dict(sorted(breakdown.items()))

    @staticmethod
    def _story_points_breakdown(issues: List[Issue]) -> Dict[str, float]:
        """Story points summed by issue size: small up to 3, medium up to 5, large above."""
        breakdown = {'small': 0.0, 'medium': 0.0, 'large': 0.0}
        for issue in issues:
            points = issue.story_points or 0.0
            if points <= 0:
                continue
            if points <= 3:
                size = 'small'
            elif points <= 5:
                size = 'medium'
            else:
                size = 'large'
            breakdown[size] = round_metric(breakdown[size] + points)
        return breakdown

    def compute_quality(self, issues: List[Issue], done: List[Issue]) -> Dict:
        """
        Defect counts and rates for a sprint's issues.

        Leakage is the share of defects among the quality-relevant issues
        (typed, and not of an excluded type). Quality rate is the remainder,
        100 when there is nothing relevant to measure.
        """
        done_ids = {issue.id for issue in done}
        defects = [issue for issue in issues if issue.issue_type in self.defect_types]
        relevant = [
            issue for issue in issues
            if issue.issue_type and issue.issue_type not in self.quality_excluded_types
        ]

        if relevant:
            leakage = len(defects) / len(relevant) * 100
            quality = (len(relevant) - len(defects)) / len(relevant) * 100
        else:
            leakage, quality = 0.0, 100.0

        return {
            'total_defects': len(defects),
            'completed_defects': sum(1 for issue in defects if issue.id in done_ids),
            'defect_leakage_rate': round_metric(leakage),
            'quality_rate': round_metric(quality),
        }

    def compute_churn(self, session: Session, sprint: Sprint, start: datetime, end: datetime) -> Dict:
        """
        Added/removed scope inside [start, end] and the churn rate.

        Added entries move an issue into the sprint, removed entries move one
        out. The rate divides both against the points present at sprint
        start and is 0 when nothing was present.
        """
        entries = session.query(IssueChangelog, Issue.story_points).join(
            Issue, Issue.id == IssueChangelog.issue_id
        ).filter(
            or_(IssueChangelog.to_sprint_id == sprint.id, IssueChangelog.from_sprint_id == sprint.id),
            IssueChangelog.change_date >= start,
            IssueChangelog.change_date <= end,
            Issue.is_subtask.isnot(True)
        ).order_by(IssueChangelog.change_date, IssueChangelog.id).all()

        added_issues = removed_issues = 0
        added_points = removed_points = 0.0
        for entry, points in entries:
            if entry.to_sprint_id == sprint.id:
                added_issues += 1
                added_points += points or 0.0
            if entry.from_sprint_id == sprint.id:
                removed_issues += 1
                removed_points += points or 0.0

        start_points = self.start_scope(session, sprint, start)
        if start_points > 0:
            churn_rate = (added_points + removed_points) / start_points * 100
            scope_change = (added_points - removed_points) / start_points * 100
        else:
            churn_rate = scope_change = 0.0

        return {
            'start_story_points': round_metric(start_points),
            'added_issues': added_issues,
            'added_story_points': round_metric(added_points),
            'removed_issues': removed_issues,
            'removed_story_points': round_metric(removed_points),
            'churn_rate': round_metric(churn_rate),
            'scope_change_percent': round_metric(scope_change),
        }

    def start_scope(self, session: Session, sprint: Sprint, at: datetime) -> float:
        """
        Story points of the issues that were in the sprint at `at`.

        Membership comes from the last Sprint transition before `at`, else the
        first one after it, else the issue's current sprint.
        """
        candidates = {
            row[0] for row in session.query(Issue.id).filter(Issue.sprint_id == sprint.id)
        }
        candidates.update(
            row[0] for row in session.query(IssueChangelog.issue_id).filter(
                or_(IssueChangelog.to_sprint_id == sprint.id, IssueChangelog.from_sprint_id == sprint.id)
            )
        )
        if not candidates:
            return 0.0

        issues = {
            issue_id: (points, current_sprint_id)
            for issue_id, points, current_sprint_id in session.query(
                Issue.id, Issue.story_points, Issue.sprint_id
            ).filter(Issue.id.in_(candidates), Issue.is_subtask.isnot(True))
        }

        transitions = defaultdict(list)
        for entry in session.query(IssueChangelog).filter(
            IssueChangelog.issue_id.in_(candidates),
            func.lower(IssueChangelog.field_name) == 'sprint'
        ).order_by(IssueChangelog.change_date, IssueChangelog.id):
            transitions[entry.issue_id].append(entry)

        total = 0.0
        for issue_id in sorted(issues):
            points, current_sprint_id = issues[issue_id]
            if self._in_sprint_at(sprint, transitions[issue_id], at, current_sprint_id == sprint.id):
                total += points or 0.0
        return total

    @staticmethod
    def _in_sprint_at(sprint: Sprint, entries: List[IssueChangelog], at: datetime, currently_in: bool) -> bool:
        def mentions(ids: Optional[str], names: Optional[str]) -> bool:
            if ids:
                return str(sprint.jira_id) in split_id_list(ids)
            return sprint.name in split_id_list(names)

        before = [entry for entry in entries if entry.change_date < at]
        if before:
            return mentions(before[-1].to_value, before[-1].to_string)
        if entries:
            return mentions(entries[0].from_value, entries[0].from_string)
        return currently_in

    # ========================================
    # Board Metrics
    # ========================================

    def calculate_board_metrics(self, board_id: int) -> Optional[BoardMetrics]:
        """
        Recompute every sprint of a board, then its rollup.

        Sprints whose metrics are locked elsewhere keep their last stored
        record.

        Args:
            board_id: Local board id

        Raises:
            Busy: The board rollup is being computed elsewhere
        """
        with self.locks.hold(lock_key('board_metrics', board_id), self.lock_ttl):
            with self.db.session_scope() as session:
                if session.get(Board, board_id) is None:
                    logger.warning(f"Board {board_id} not found")
                    return None
                sprints = session.query(Sprint).filter(Sprint.board_id == board_id).all()

            sprints.sort(key=lambda s: (s.start_date or s.end_date or datetime.min, s.id))
            for sprint in sprints:
                try:
                    self.calculate_sprint_metrics(sprint.id)
                except Busy as e:
                    logger.info(f"Keeping previous metrics: {e}")

            return self._rollup(board_id, sprints)

    def _rollup(self, board_id: int, sprints: List[Sprint]) -> BoardMetrics:
        with self.db.session_scope() as session:
            stored = {
                m.sprint_id: m for m in session.query(SprintMetrics).filter(
                    SprintMetrics.sprint_id.in_([s.id for s in sprints])
                )
            } if sprints else {}

            measured = [
                (sprint, stored[sprint.id]) for sprint in sprints
                if sprint.id in stored and not stored[sprint.id].insufficient_data
            ]
            closed_velocities = [m.velocity or 0.0 for s, m in measured if s.state == 'closed']
            churn_rates = [m.churn_rate for _, m in measured if m.churn_rate is not None]
            average_velocity = mean_or_none(m.velocity or 0.0 for _, m in measured) or 0.0

            if len(closed_velocities) >= self.trend_window:
                predicted = mean_or_none(closed_velocities[-self.trend_window:])
            else:
                predicted = average_velocity

            quality_rates = [m.quality_rate for _, m in measured if m.quality_rate is not None]

            members = set()
            for _, m in measured:
                members.update(m.team_members or [])

            values = {
                'board_id': board_id,
                'total_sprints': len(sprints),
                'active_sprints': sum(1 for s in sprints if s.state == 'active'),
                'closed_sprints': sum(1 for s in sprints if s.state == 'closed'),
                'measured_sprints': len(measured),
                'average_velocity': round_metric(average_velocity),
                'average_churn_rate': round_metric(mean_or_none(churn_rates) or 0.0),
                'average_completion_rate': round_metric(
                    mean_or_none(m.completion_rate or 0.0 for _, m in measured) or 0.0
                ),
                'total_story_points': round_metric(sum(m.total_story_points or 0.0 for _, m in measured)),
                'average_defect_leakage_rate': round_metric(
                    mean_or_none(m.defect_leakage_rate or 0.0 for _, m in measured) or 0.0
                ),
                'average_quality_rate': round_metric(mean_or_none(quality_rates) if quality_rates else 100.0),
                'total_defects': sum(m.total_defects or 0 for _, m in measured),
                'predicted_velocity': round_metric(predicted),
                'velocity_trend': trend(closed_velocities, self.trend_window, self.trend_threshold),
                'churn_rate_trend': trend(
                    [m.churn_rate for s, m in measured if s.state == 'closed' and m.churn_rate is not None],
                    self.trend_window, self.trend_threshold
                ),
                'team_members': sorted(members),
                'calculated_at': self.clock(),
            }
            upsert_by_key(session, BoardMetrics, values, ['board_id'])

        with self.db.session_scope() as session:
            metrics = session.query(BoardMetrics).filter(BoardMetrics.board_id == board_id).one()

        logger.info(
            f"Board {board_id} metrics: avg velocity={metrics.average_velocity} "
            f"trend={metrics.velocity_trend} over {metrics.measured_sprints} sprint(s)"
        )
        return metrics

    def calculate_all_boards(self) -> Dict[str, List[int]]:
        """
        Recompute metrics for every sprint-capable board.

        Returns:
            Dict with 'calculated', 'skipped' (locked) and 'failed' board ids
        """
        result = {'calculated': [], 'skipped': [], 'failed': []}

        with self.db.session_scope() as session:
            board_ids = [
                row[0] for row in session.query(Board.id).filter(
                    Board.board_type.in_(['scrum', 'simple'])
                ).order_by(Board.id)
            ]

        for board_id in board_ids:
            try:
                self.calculate_board_metrics(board_id)
                result['calculated'].append(board_id)
            except Busy as e:
                logger.info(f"Skipping board {board_id}: {e}")
                result['skipped'].append(board_id)
            except OperationalError:
                raise
            except Exception as e:
                logger.warning(f"Metrics for board {board_id} failed: {e}")
                result['failed'].append(board_id)

        logger.info(
            f"Board metrics: {len(result['calculated'])} calculated, "
            f"{len(result['skipped'])} skipped, {len(result['failed'])} failed"
        )
        return result
