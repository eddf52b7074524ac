"""
Sprint Selection
Chooses which of a board's sprints a sync refreshes.
"""

from datetime import datetime
from typing import Dict, List

from agile_mirror.utils.helpers import parse_jira_datetime

CLOSED_SPRINT_LIMIT = 6


def sprint_recency(sprint: Dict) -> datetime:
    """
    Sort key for closed sprints: startDate, else endDate, else oldest.
    """
    value = parse_jira_datetime(sprint.get('startDate')) or parse_jira_datetime(sprint.get('endDate'))
    return value or datetime.min


def select_sprints_to_sync(sprints: List[Dict], closed_limit: int = CLOSED_SPRINT_LIMIT) -> List[Dict]:
    """
    Select every active sprint plus the most recent closed ones.

    Args:
        sprints: Sprint payloads as returned by the board sprint listing
        closed_limit: How many closed sprints to keep

    Returns:
        Active sprints followed by the selected closed sprints (newest first),
        de-duplicated by sprint id
    """
    active = [s for s in sprints if s.get('state') == 'active']
    closed = sorted(
        (s for s in sprints if s.get('state') == 'closed'),
        key=sprint_recency,
        reverse=True
    )[:closed_limit]

    selected = []
    seen = set()
    for sprint in active + closed:
        if sprint.get('id') in seen:
            continue
        seen.add(sprint.get('id'))
        selected.append(sprint)
    return selected
