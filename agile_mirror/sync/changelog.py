"""
Change History Ingestor Module
Appends per-issue field transitions from the Jira changelog to the mirror.
"""

from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from agile_mirror.config_manager import ConfigManager
from agile_mirror.database.connection import DatabaseConnection
from agile_mirror.database.models import Issue, IssueChangelog, Sprint, SyncOperation
from agile_mirror.database.upsert import INSERTED, UNCHANGED, insert_if_absent
from agile_mirror.errors import ReconciliationError
from agile_mirror.jira_client import JiraClient
from agile_mirror.lock_manager import LockManager, lock_key
from agile_mirror.sync.operations import OperationStats, SyncOperationMixin
from agile_mirror.utils.helpers import (
    parse_float, parse_jira_datetime, safe_get, sanitize_string, split_id_list
)
from agile_mirror.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_TRACKED_FIELDS = ('Sprint', 'Story Points', 'status')

SPRINT_ADDED = 'sprint_added'
SPRINT_REMOVED = 'sprint_removed'
SPRINT_CHANGED = 'sprint_changed'
STATUS_CHANGED = 'status_changed'
STORY_POINTS_CHANGED = 'story_points_changed'
OTHER = 'other'


class SprintLookup:
    """Maps tracker sprint ids and names onto local sprint ids."""

    def __init__(self, session: Session):
        rows = session.query(Sprint.id, Sprint.jira_id, Sprint.name).all()
        self._by_jira_id = {str(jira_id): local_id for local_id, jira_id, _ in rows}
        self._by_name = {name: local_id for local_id, _, name in rows}

    def resolve(self, jira_id: Optional[str], name: Optional[str] = None) -> Optional[int]:
        if jira_id and jira_id in self._by_jira_id:
            return self._by_jira_id[jira_id]
        if name:
            return self._by_name.get(name)
        return None


def classify_sprint_change(item: Dict, sprints: SprintLookup) -> Tuple[str, Optional[int], Optional[int]]:
    """
    Classify a Sprint changelog item.

    Jira lists every sprint the issue belongs to on each side, e.g.
    from='12' to='12, 15' for an issue carried into sprint 15.

    Returns:
        Tuple of (change_type, from_sprint_id, to_sprint_id) with local ids
    """
    from_ids = split_id_list(item.get('from'))
    to_ids = split_id_list(item.get('to'))
    use_names = not from_ids and not to_ids
    if use_names:
        from_ids = split_id_list(item.get('fromString'))
        to_ids = split_id_list(item.get('toString'))

    added = [value for value in to_ids if value not in from_ids]
    removed = [value for value in from_ids if value not in to_ids]

    def resolve(value: str) -> Optional[int]:
        return sprints.resolve(None, value) if use_names else sprints.resolve(value)

    to_sprint_id = resolve(added[-1]) if added else None
    from_sprint_id = resolve(removed[-1]) if removed else None

    if added and removed:
        return SPRINT_CHANGED, from_sprint_id, to_sprint_id
    elif added:
        return SPRINT_ADDED, None, to_sprint_id
    elif removed:
        return SPRINT_REMOVED, from_sprint_id, None
    return OTHER, None, None


def history_sort_key(history: Dict) -> Tuple[datetime, str]:
    return parse_jira_datetime(history.get('created')) or datetime.min, str(history.get('id') or '')


class ChangeHistoryIngestor(SyncOperationMixin):
    """
    Fetches issue changelogs and appends entries not already stored.

    Entries are de-duplicated per issue on the history id and field name, or
    on timestamp and field name when the history carries no id.
    """

    def __init__(
        self,
        db: DatabaseConnection,
        jira: JiraClient,
        locks: LockManager,
        config: ConfigManager = None
    ):
        self.db = db
        self.jira = jira
        self.locks = locks

        config = config or ConfigManager()
        fields = config.get('sync', 'tracked_changelog_fields', DEFAULT_TRACKED_FIELDS)
        self.tracked_fields = {name.lower() for name in fields}
        self.lock_ttl = config.get_minutes('sync', 'lock_ttl_minutes', 30)

        self._init_operations()

    def sync_changelog_for(self, issue_id: int) -> int:
        """
        Ingest the changelog of one issue.

        Args:
            issue_id: Local issue id

        Returns:
            Number of entries appended

        Raises:
            Busy: The issue's changelog is already being ingested
        """
        with self.locks.hold(lock_key('issue_changelog', issue_id), self.lock_ttl):
            issue_key = self._issue_key(issue_id)
            histories = self.jira.fetch_issue_changelog(issue_key)
            with self.db.session_scope() as session:
                added = self.ingest(session, issue_id, histories)

        logger.info(f"Appended {added} changelog entries for {issue_key}")
        return added

    def sync_all_issue_changelogs(self) -> SyncOperation:
        """
        Ingest changelogs for every mirrored issue.

        One failing issue is counted and skipped.
        """
        def work(stats: OperationStats) -> None:
            with self.db.session_scope() as session:
                issues = session.query(Issue.id, Issue.issue_key).order_by(Issue.id).all()
            stats.fetched = len(issues)

            for issue_id, issue_key in issues:
                self._check_cancelled()
                try:
                    histories = self.jira.fetch_issue_changelog(issue_key)
                except Exception as e:
                    logger.warning(f"Failed to fetch changelog for {issue_key}: {e}")
                    stats.fail(f"{issue_key}: {e}"[:500])
                    continue

                self._reconcile_unit(
                    stats, 'changelog', issue_key,
                    lambda session, issue_id=issue_id, histories=histories: (
                        INSERTED if self.ingest(session, issue_id, histories) else UNCHANGED
                    )
                )

        return self._run_operation('changelog', 'all', work)

    def _issue_key(self, issue_id: int) -> str:
        with self.db.session_scope() as session:
            issue_key = session.query(Issue.issue_key).filter(Issue.id == issue_id).scalar()
        if issue_key is None:
            raise ReconciliationError('issue', issue_id, 'not mirrored yet')
        return issue_key

    # ========================================
    # Ingestion
    # ========================================

    def ingest(self, session: Session, issue_id: int, histories: List[Dict]) -> int:
        """
        Append the tracked items of a list of changelog histories.

        Args:
            session: Active session
            issue_id: Local issue id
            histories: Changelog histories as returned by Jira

        Returns:
            Number of entries appended
        """
        existing = {
            row[0] for row in session.query(IssueChangelog.dedup_key).filter(
                IssueChangelog.issue_id == issue_id
            )
        }
        sprints = SprintLookup(session)
        added = 0

        for history in sorted(histories, key=history_sort_key):
            change_date = parse_jira_datetime(history.get('created'))
            if change_date is None:
                logger.debug(f"Skipping changelog history {history.get('id')} without timestamp")
                continue

            for item in history.get('items', []):
                field_name = item.get('field') or ''
                if field_name.lower() not in self.tracked_fields:
                    continue

                history_id = history.get('id')
                if history_id is not None:
                    dedup_key = f"{history_id}:{field_name}"
                else:
                    dedup_key = f"{change_date.isoformat()}:{field_name}"
                if dedup_key in existing:
                    continue
                existing.add(dedup_key)

                values = self._entry_values(item, sprints)
                values.update({
                    'issue_id': issue_id,
                    'jira_id': str(history_id) if history_id is not None else None,
                    'dedup_key': dedup_key,
                    'field_name': field_name,
                    'author_name': safe_get(history, 'author', 'displayName'),
                    'change_date': change_date,
                })
                insert_if_absent(session, IssueChangelog, values, ['issue_id', 'dedup_key'])
                added += 1

        return added

    def _entry_values(self, item: Dict, sprints: SprintLookup) -> Dict:
        field_name = (item.get('field') or '').lower()
        values = {
            'change_type': OTHER,
            'from_value': sanitize_string(item.get('from'), 1000),
            'from_string': sanitize_string(item.get('fromString'), 1000),
            'to_value': sanitize_string(item.get('to'), 1000),
            'to_string': sanitize_string(item.get('toString'), 1000),
            'from_sprint_id': None,
            'to_sprint_id': None,
            'story_points_change': None,
        }

        if field_name == 'sprint':
            change_type, from_sprint_id, to_sprint_id = classify_sprint_change(item, sprints)
            values.update({
                'change_type': change_type,
                'from_sprint_id': from_sprint_id,
                'to_sprint_id': to_sprint_id,
            })
        elif field_name == 'status':
            values['change_type'] = STATUS_CHANGED
        elif field_name == 'story points':
            before = parse_float(item.get('fromString')) or 0.0
            after = parse_float(item.get('toString')) or 0.0
            values['change_type'] = STORY_POINTS_CHANGED
            values['story_points_change'] = after - before

        return values
