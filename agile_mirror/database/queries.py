"""
Database Query Helpers Module
Read-only accessors over the mirror, metrics and coordination tables.
"""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from agile_mirror.database.models import (
    Board, BoardMetrics, Issue, IssueChangelog, KanbanBoard, KanbanIssue,
    KanbanMetrics, Project, Sprint, SprintMetrics, SyncOperation
)
from agile_mirror.utils.logger import get_logger

logger = get_logger(__name__)


def to_dict(instance) -> Optional[Dict]:
    """
    Convert a model instance to a JSON-ready dict of its columns.

    Datetimes are rendered as ISO 8601 strings.
    """
    if instance is None:
        return None

    result = {}
    for column in instance.__table__.columns:
        value = getattr(instance, column.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        result[column.name] = value
    return result


class QueryHelpers:
    """Query helper functions for database operations."""

    def __init__(self, session: Session):
        """Initialize with database session."""
        self.session = session

    # ========================================
    # Mirror Queries
    # ========================================

    def get_projects(self) -> List[Project]:
        return self.session.query(Project).order_by(Project.project_key).all()

    def get_boards(self, board_type: str = None) -> List[Board]:
        """Get all boards, optionally of one type."""
        query = self.session.query(Board)
        if board_type:
            query = query.filter(Board.board_type == board_type)
        return query.order_by(Board.id).all()

    def get_board(self, board_id: int) -> Optional[Board]:
        return self.session.get(Board, board_id)

    def get_sprints_by_board(self, board_id: int, state: str = None) -> List[Sprint]:
        """
        Get a board's sprints, newest first.

        Sprints no longer refreshed by sync are still returned.
        """
        query = self.session.query(Sprint).filter(Sprint.board_id == board_id)
        if state:
            query = query.filter(Sprint.state == state)
        sprints = query.all()
        sprints.sort(key=lambda s: (s.start_date or s.end_date or datetime.min, s.id), reverse=True)
        return sprints

    def get_sprint(self, sprint_id: int) -> Optional[Sprint]:
        return self.session.get(Sprint, sprint_id)

    def get_issues_by_sprint(self, sprint_id: int) -> List[Issue]:
        return self.session.query(Issue).filter(Issue.sprint_id == sprint_id).order_by(Issue.issue_key).all()

    def get_issue_by_key(self, issue_key: str) -> Optional[Issue]:
        return self.session.query(Issue).filter(Issue.issue_key == issue_key).first()

    def get_changelog(self, issue_id: int) -> List[IssueChangelog]:
        """Get an issue's change history in timestamp order."""
        return self.session.query(IssueChangelog).filter(
            IssueChangelog.issue_id == issue_id
        ).order_by(IssueChangelog.change_date, IssueChangelog.id).all()

    def get_kanban_boards(self) -> List[KanbanBoard]:
        return self.session.query(KanbanBoard).order_by(KanbanBoard.id).all()

    def get_kanban_issues(self, kanban_board_id: int) -> List[KanbanIssue]:
        return self.session.query(KanbanIssue).filter(
            KanbanIssue.kanban_board_id == kanban_board_id
        ).order_by(KanbanIssue.id).all()

    # ========================================
    # Metrics Queries
    # ========================================

    def get_sprint_metrics(self, sprint_id: int) -> Optional[SprintMetrics]:
        return self.session.query(SprintMetrics).filter(SprintMetrics.sprint_id == sprint_id).first()

    def get_board_sprint_metrics(self, board_id: int) -> List[Dict]:
        """
        Get stored sprint metrics for a board's sprints.

        Returns:
            List of dicts with sprint name, state and metrics (None when
            never calculated), newest sprint first
        """
        results = []
        for sprint in self.get_sprints_by_board(board_id):
            results.append({
                'sprint_id': sprint.id,
                'sprint_name': sprint.name,
                'state': sprint.state,
                'metrics': to_dict(self.get_sprint_metrics(sprint.id)),
            })
        return results

    def get_board_metrics(self, board_id: int) -> Optional[BoardMetrics]:
        return self.session.query(BoardMetrics).filter(BoardMetrics.board_id == board_id).first()

    def get_kanban_metrics(self, kanban_board_id: int) -> Optional[KanbanMetrics]:
        return self.session.query(KanbanMetrics).filter(
            KanbanMetrics.kanban_board_id == kanban_board_id
        ).first()

    # ========================================
    # Sync Tracking
    # ========================================

    def get_sync_operation(self, operation_id: int) -> Optional[SyncOperation]:
        return self.session.get(SyncOperation, operation_id)

    def get_recent_sync_operations(self, limit: int = 10, sync_type: str = None) -> List[SyncOperation]:
        """Get the most recent sync operations."""
        query = self.session.query(SyncOperation)
        if sync_type:
            query = query.filter(SyncOperation.sync_type == sync_type)
        return query.order_by(desc(SyncOperation.id)).limit(limit).all()

    def get_last_successful_sync(self, sync_type: str = None) -> Optional[SyncOperation]:
        """Get the most recent completed sync operation."""
        query = self.session.query(SyncOperation).filter(SyncOperation.status == 'completed')
        if sync_type:
            query = query.filter(SyncOperation.sync_type == sync_type)
        return query.order_by(desc(SyncOperation.finished_at), desc(SyncOperation.id)).first()
