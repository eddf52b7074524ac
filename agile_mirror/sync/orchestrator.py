"""
Sync Orchestrator Module
Mirrors projects, boards, sprints and issues from Jira into the local store.
"""

from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from agile_mirror.config_manager import ConfigManager
from agile_mirror.database.connection import DatabaseConnection
from agile_mirror.database.models import (
    Board, Issue, KanbanBoard, KanbanIssue, Project, Sprint, SyncOperation
)
from agile_mirror.database.upsert import UNCHANGED, reconcile
from agile_mirror.errors import Busy, JiraAPIError, ReconciliationError
from agile_mirror.jira_client import JiraClient
from agile_mirror.lock_manager import LockManager
from agile_mirror.metrics.status import StatusClassifier
from agile_mirror.sync.operations import OperationStats, SyncOperationMixin
from agile_mirror.sync.selection import select_sprints_to_sync, sprint_recency
from agile_mirror.utils.helpers import (
    parse_float, parse_jira_datetime, safe_get, sanitize_string, utcnow
)
from agile_mirror.utils.logger import get_logger

logger = get_logger(__name__)

SPRINT_BOARD_TYPES = ('scrum', 'simple')
FLOW_BOARD_TYPES = ('kanban', 'simple')


class SyncOrchestrator(SyncOperationMixin):
    """
    Lock-guarded, idempotent sync of tracker entities into the mirror.

    Every public sync takes a lease keyed by (operation, resource id), writes
    a SyncOperation row, reconciles unit by unit and releases the lease. A
    unit that fails is logged and counted; the run carries on.
    """

    def __init__(
        self,
        db: DatabaseConnection,
        jira: JiraClient,
        locks: LockManager,
        config: ConfigManager = None,
        changelog=None
    ):
        self.db = db
        self.jira = jira
        self.locks = locks
        self.changelog = changelog

        config = config or ConfigManager()
        self.classifier = StatusClassifier(config)
        self.closed_sprint_limit = config.get('sync', 'closed_sprint_limit', 6)
        self.sync_changelogs = config.get('sync', 'sync_changelogs', True)
        self.lock_ttl = config.get_minutes('sync', 'lock_ttl_minutes', 30)
        self.story_points_field = config.get('jira', 'story_points_field', 'customfield_10016')
        self.sprint_field = config.get('jira', 'sprint_field', 'customfield_10020')

        self._init_operations()

    # ========================================
    # Public Sync Operations
    # ========================================

    def sync_projects(self) -> SyncOperation:
        """Mirror every accessible project."""
        def work(stats: OperationStats) -> None:
            projects = self.jira.fetch_projects()
            stats.fetched = len(projects)
            for data in projects:
                self._reconcile_unit(
                    stats, 'project', data.get('id'),
                    lambda session, data=data: self._upsert_project(session, data)
                )

        return self._run_operation('projects', 'all', work)

    def sync_boards(self) -> SyncOperation:
        """Mirror every board and its column configuration."""
        def work(stats: OperationStats) -> None:
            boards = self.jira.fetch_boards()
            stats.fetched = len(boards)
            for data in boards:
                self._check_cancelled()
                column_config = self._fetch_column_config(data)
                self._reconcile_unit(
                    stats, 'board', data.get('id'),
                    lambda session, data=data: self._upsert_board(session, data, column_config)
                )

        return self._run_operation('boards', 'all', work)

    def sync_board_sprints(self, board_id: int) -> SyncOperation:
        """
        Mirror the active and most recent closed sprints of a board.

        Args:
            board_id: Jira board id
        """
        def work(stats: OperationStats) -> None:
            board = self._require(Board, board_id)
            try:
                sprints = self.jira.fetch_sprints(board_id)
            except JiraAPIError as e:
                if e.status_code == 400 and board.board_type != 'scrum':
                    logger.info(f"Board {board_id} ({board.board_type}) does not support sprints")
                    return
                raise

            selected = select_sprints_to_sync(sprints, self.closed_sprint_limit)
            stats.fetched = len(selected)
            logger.info(f"Board {board_id}: {len(selected)} of {len(sprints)} sprints selected")

            for data in selected:
                self._reconcile_unit(
                    stats, 'sprint', data.get('id'),
                    lambda session, data=data: self._upsert_sprint(session, board.id, data)
                )

        return self._run_operation('board_sprints', board_id, work)

    def sync_sprint_issues(self, sprint_id: int) -> SyncOperation:
        """
        Mirror the issues of a sprint.

        Args:
            sprint_id: Jira sprint id
        """
        def work(stats: OperationStats) -> None:
            sprint = self._require(Sprint, sprint_id)
            issues = self.jira.fetch_sprint_issues(sprint_id)
            stats.fetched = len(issues)
            for data in issues:
                self._reconcile_unit(
                    stats, 'issue', data.get('key'),
                    lambda session, data=data: self._upsert_issue(session, data, sprint.id)[1]
                )

        return self._run_operation('sprint_issues', sprint_id, work)

    def sync_kanban_board_issues(self, board_id: int) -> SyncOperation:
        """
        Mirror the issues of a kanban board with their column membership.

        Args:
            board_id: Jira board id
        """
        def work(stats: OperationStats) -> None:
            kanban_board = self._require(KanbanBoard, board_id)
            issues = self.jira.fetch_board_issues(board_id)
            stats.fetched = len(issues)
            for data in issues:
                self._reconcile_unit(
                    stats, 'kanban issue', data.get('key'),
                    lambda session, data=data: self._upsert_kanban_issue(session, kanban_board, data)
                )

        return self._run_operation('kanban_issues', board_id, work)

    def sync_all(self) -> Dict:
        """
        Run a full mirror pass.

        Order: projects, boards, sprints of sprint-capable boards, issues of
        each refreshed sprint, kanban board issues, then changelogs.

        Returns:
            Summary dict with operation counts

        Raises:
            JiraAPIError: Jira is unreachable before the pass starts
        """
        if not self.jira.test_connection():
            raise JiraAPIError("Failed to connect to Jira")

        summary = {'operations': 0, 'completed': 0, 'failed': 0, 'skipped': 0, 'cancelled': False}

        self._enter_run()
        try:
            self._sync_all_steps(summary)
        finally:
            self._exit_run()

        logger.info(f"Full sync finished: {summary}")
        return summary

    def _sync_all_steps(self, summary: Dict) -> None:
        if self._run_step(summary, self.sync_projects) is False:
            return
        if self._run_step(summary, self.sync_boards) is False:
            return

        with self.db.session_scope() as session:
            boards = session.query(Board.jira_id, Board.board_type).order_by(Board.jira_id).all()
            kanban_ids = [row[0] for row in session.query(KanbanBoard.jira_id).order_by(KanbanBoard.jira_id)]

        for board_jira_id, board_type in boards:
            if board_type not in SPRINT_BOARD_TYPES:
                continue
            operation = self._run_step(summary, self.sync_board_sprints, board_jira_id)
            if operation is False:
                return
            if operation is None or operation.status != 'completed':
                continue
            for sprint_jira_id in self._refreshed_sprints(board_jira_id, operation):
                if self._run_step(summary, self.sync_sprint_issues, sprint_jira_id) is False:
                    return

        for board_jira_id in kanban_ids:
            if self._run_step(summary, self.sync_kanban_board_issues, board_jira_id) is False:
                return

        if self.changelog is not None and self.sync_changelogs:
            self._run_step(summary, self.changelog.sync_all_issue_changelogs)

    def cancel(self) -> None:
        """Request the running sync (and its changelog pass) to stop."""
        super().cancel()
        if self.changelog is not None:
            self.changelog.cancel()

    def recover_orphaned_operations(self) -> int:
        """
        Fail operations left running by a crashed process.

        An operation counts as orphaned when it is pending or running and no
        live lease exists for its resource key.

        Returns:
            Number of operations marked failed
        """
        live_keys = {lease.resource_key for lease in self.locks.active_locks()}
        recovered = 0
        with self.db.session_scope() as session:
            stale = session.query(SyncOperation).filter(
                SyncOperation.status.in_(['pending', 'running'])
            ).all()
            for operation in stale:
                if operation.resource_key in live_keys:
                    continue
                operation.status = 'failed'
                operation.finished_at = utcnow()
                operation.error_message = 'interrupted: no live lock at recovery'
                recovered += 1

        if recovered:
            logger.warning(f"Marked {recovered} orphaned sync operation(s) as failed")
        return recovered

    # ========================================
    # Sync Helpers
    # ========================================

    def _run_step(self, summary: Dict, operation: Callable, *args):
        """
        Run one operation inside sync_all.

        Returns:
            The SyncOperation, None when skipped as busy, False when the
            pass was cancelled
        """
        if self._cancel_event.is_set():
            summary['cancelled'] = True
            return False

        try:
            result = operation(*args)
        except Busy as e:
            logger.info(f"Skipping: {e}")
            summary['skipped'] += 1
            return None

        summary['operations'] += 1
        if result.status == 'completed':
            summary['completed'] += 1
        else:
            summary['failed'] += 1
            if result.error_message == 'cancelled':
                summary['cancelled'] = True
                return False
        return result

    def _refreshed_sprints(self, board_jira_id: int, operation: SyncOperation) -> List[int]:
        """Jira ids of the sprints written by a board sprint sync."""
        with self.db.session_scope() as session:
            rows = session.query(Sprint.jira_id).join(Board, Sprint.board_id == Board.id).filter(
                Board.jira_id == board_jira_id,
                Sprint.last_synced_at >= operation.started_at
            ).order_by(Sprint.jira_id).all()
        return [row[0] for row in rows]

    def _require(self, model, jira_id: int):
        with self.db.session_scope() as session:
            instance = session.query(model).filter(model.jira_id == jira_id).one_or_none()
        if instance is None:
            raise ReconciliationError(model.__tablename__, jira_id, 'not mirrored yet')
        return instance

    def _fetch_column_config(self, data: Dict) -> Optional[List[Dict]]:
        """Normalized column configuration, or None when Jira will not give it."""
        try:
            configuration = self.jira.fetch_board_configuration(data.get('id'))
        except JiraAPIError as e:
            logger.warning(f"No column configuration for board {data.get('id')}: {e}")
            return None

        columns = []
        for column in safe_get(configuration, 'columnConfig', 'columns', default=[]):
            columns.append({
                'name': column.get('name'),
                'statuses': sorted(str(status.get('id')) for status in column.get('statuses', [])),
                'min': column.get('min'),
                'max': column.get('max'),
            })
        return columns

    # ========================================
    # Entity Upserts
    # ========================================

    def _upsert_project(self, session: Session, data: Dict) -> str:
        project, outcome = reconcile(session, Project, {'jira_id': str(data.get('id'))}, {
            'project_key': data.get('key'),
            'name': data.get('name'),
            'description': sanitize_string(data.get('description'), 5000),
            'project_type': data.get('projectTypeKey'),
            'lead_name': safe_get(data, 'lead', 'displayName'),
        })
        project.last_synced_at = utcnow()
        return outcome

    def _project_id_for(self, session: Session, project_jira_id, key: str, name: str) -> Optional[int]:
        """Local id of a project referenced from a board or issue, creating a stub when new."""
        if project_jira_id is None and not key:
            return None

        if project_jira_id is None:
            project = session.query(Project).filter(Project.project_key == key).one_or_none()
            return project.id if project else None

        project = session.query(Project).filter(Project.jira_id == str(project_jira_id)).one_or_none()
        if project is None:
            project = Project(jira_id=str(project_jira_id), project_key=key, name=name or key)
            session.add(project)
            session.flush()
        return project.id

    def _upsert_board(self, session: Session, data: Dict, column_config: Optional[List[Dict]]) -> str:
        location = data.get('location') or {}
        project_id = self._project_id_for(
            session, location.get('projectId'), location.get('projectKey'), location.get('projectName')
        )
        board_type = data.get('type', 'kanban')

        values = {
            'name': data.get('name'),
            'board_type': board_type,
            'project_id': project_id,
        }
        # A failed configuration fetch keeps the stored columns
        if column_config is not None:
            values['column_config'] = column_config

        board, outcome = reconcile(session, Board, {'jira_id': data.get('id')}, values)
        board.last_synced_at = utcnow()

        if board_type in FLOW_BOARD_TYPES:
            kanban_values = {
                'jira_id': board.jira_id,
                'name': board.name,
                'project_id': project_id,
            }
            if column_config is not None:
                kanban_values['column_config'] = column_config
            kanban_board, kanban_outcome = reconcile(
                session, KanbanBoard, {'board_id': board.id}, kanban_values
            )
            kanban_board.last_synced_at = utcnow()
            if outcome == UNCHANGED:
                outcome = kanban_outcome

        return outcome

    def _upsert_sprint(self, session: Session, board_id: int, data: Dict) -> str:
        state = data.get('state')
        current_state = session.query(Sprint.state).filter(Sprint.jira_id == data.get('id')).scalar()
        if current_state == 'closed' and state != 'closed':
            logger.warning(f"Sprint {data.get('id')} reported as {state} after closing; keeping closed")
            state = 'closed'

        sprint, outcome = reconcile(session, Sprint, {'jira_id': data.get('id')}, {
            'board_id': board_id,
            'name': data.get('name'),
            'state': state,
            'start_date': parse_jira_datetime(data.get('startDate')),
            'end_date': parse_jira_datetime(data.get('endDate')),
            'complete_date': parse_jira_datetime(data.get('completeDate')),
            'goal': data.get('goal'),
        })
        sprint.last_synced_at = utcnow()
        return outcome

    def _resolve_sprint_id(self, session: Session, fields: Dict, default_sprint_id: Optional[int]) -> Optional[int]:
        """
        Current sprint of an issue: its active sprint, else its most recent
        mirrored one, else the sprint being synced.
        """
        sprints = [s for s in (fields.get(self.sprint_field) or []) if isinstance(s, dict) and s.get('id')]
        if not sprints:
            return default_sprint_id

        local_ids = dict(session.query(Sprint.jira_id, Sprint.id).filter(
            Sprint.jira_id.in_([s['id'] for s in sprints])
        ).all())

        candidates = [s for s in sprints if s['id'] in local_ids]
        if not candidates:
            return default_sprint_id

        active = [s for s in candidates if s.get('state') == 'active']
        chosen = active[0] if active else max(candidates, key=lambda s: (sprint_recency(s), s['id']))
        return local_ids[chosen['id']]

    def _upsert_issue(self, session: Session, data: Dict, default_sprint_id: Optional[int] = None):
        fields = data.get('fields') or {}
        project = fields.get('project') or {}

        issue, outcome = reconcile(session, Issue, {'jira_id': str(data.get('id'))}, {
            'issue_key': data.get('key'),
            'project_id': self._project_id_for(session, project.get('id'), project.get('key'), project.get('name')),
            'sprint_id': self._resolve_sprint_id(session, fields, default_sprint_id),
            'summary': sanitize_string(fields.get('summary'), 2000),
            'issue_type': safe_get(fields, 'issuetype', 'name'),
            'priority': safe_get(fields, 'priority', 'name'),
            'status': safe_get(fields, 'status', 'name'),
            'status_category': safe_get(fields, 'status', 'statusCategory', 'key'),
            'assignee_name': safe_get(fields, 'assignee', 'displayName'),
            'assignee_account_id': safe_get(fields, 'assignee', 'accountId'),
            'story_points': parse_float(fields.get(self.story_points_field)),
            'parent_key': safe_get(fields, 'parent', 'key'),
            'is_subtask': bool(safe_get(fields, 'issuetype', 'subtask', default=False)),
            'labels': sorted(fields.get('labels') or []),
            'created_date': parse_jira_datetime(fields.get('created')),
            'updated_date': parse_jira_datetime(fields.get('updated')),
            'resolution_date': parse_jira_datetime(fields.get('resolutiondate')),
        })
        issue.last_synced_at = utcnow()
        return issue, outcome

    def _upsert_kanban_issue(self, session: Session, kanban_board: KanbanBoard, data: Dict) -> str:
        issue, outcome = self._upsert_issue(session, data)
        fields = data.get('fields') or {}
        status_id = str(safe_get(fields, 'status', 'id', default=''))

        column_name = None
        for column in kanban_board.column_config or []:
            if status_id in column.get('statuses', []):
                column_name = column.get('name')
                break

        membership, membership_outcome = reconcile(
            session, KanbanIssue,
            {'kanban_board_id': kanban_board.id, 'issue_id': issue.id},
            {
                'column_name': column_name,
                'status': issue.status,
                'status_category': self.classifier.category(issue.status, issue.status_category),
                'flagged': bool(fields.get('flagged')),
            }
        )
        membership.last_synced_at = utcnow()
        return outcome if outcome != UNCHANGED else membership_outcome
