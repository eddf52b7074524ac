"""
SQLAlchemy ORM Models
Defines the mirror, derived metrics and coordination tables.

Relations are plain foreign-key columns resolved through lookups; the models
carry no relationship graphs.
"""

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index,
    Integer, String, Text, UniqueConstraint, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

from agile_mirror.utils.helpers import utcnow

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), 'postgresql')


# ============================================
# MIRROR MODELS
# ============================================

class Project(Base):
    """Tracker project."""
    __tablename__ = 'projects'

    id = Column(Integer, primary_key=True)
    jira_id = Column(String(50), nullable=False, unique=True)
    project_key = Column(String(50), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    project_type = Column(String(50))
    lead_name = Column(String(255))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_synced_at = Column(DateTime)


class Board(Base):
    """Scrum, kanban or simple board."""
    __tablename__ = 'boards'

    id = Column(Integer, primary_key=True)
    jira_id = Column(Integer, nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    board_type = Column(String(20), nullable=False)  # 'scrum', 'kanban', 'simple'
    project_id = Column(Integer, ForeignKey('projects.id'), index=True)
    column_config = Column(JSONType)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_synced_at = Column(DateTime)


class Sprint(Base):
    """Time-boxed iteration on a board."""
    __tablename__ = 'sprints'

    id = Column(Integer, primary_key=True)
    jira_id = Column(Integer, nullable=False, unique=True)
    board_id = Column(Integer, ForeignKey('boards.id'), index=True)
    name = Column(String(255), nullable=False)
    state = Column(String(20))  # 'active', 'closed', 'future'
    start_date = Column(DateTime)
    end_date = Column(DateTime)
    complete_date = Column(DateTime)
    goal = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_synced_at = Column(DateTime)


class Issue(Base):
    """Work item."""
    __tablename__ = 'issues'

    id = Column(Integer, primary_key=True)
    jira_id = Column(String(50), nullable=False, unique=True)
    issue_key = Column(String(50), nullable=False, index=True)
    project_id = Column(Integer, ForeignKey('projects.id'), index=True)
    sprint_id = Column(Integer, ForeignKey('sprints.id'), index=True)
    summary = Column(Text)
    issue_type = Column(String(100))
    priority = Column(String(100))
    status = Column(String(100))
    status_category = Column(String(50))  # 'new', 'indeterminate', 'done'
    assignee_name = Column(String(255))
    assignee_account_id = Column(String(255))
    story_points = Column(Float)
    parent_key = Column(String(50))
    is_subtask = Column(Boolean, default=False)
    labels = Column(JSONType)
    created_date = Column(DateTime)
    updated_date = Column(DateTime)
    resolution_date = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_synced_at = Column(DateTime)


class IssueChangelog(Base):
    """One field transition of an issue. Append-only."""
    __tablename__ = 'issue_changelog'

    id = Column(Integer, primary_key=True)
    issue_id = Column(Integer, ForeignKey('issues.id', ondelete='CASCADE'), nullable=False)
    jira_id = Column(String(50))  # history id, absent on some sources
    dedup_key = Column(String(255), nullable=False)
    field_name = Column(String(255), nullable=False)
    change_type = Column(String(50), nullable=False, default='other')
    from_value = Column(Text)
    from_string = Column(Text)
    to_value = Column(Text)
    to_string = Column(Text)
    from_sprint_id = Column(Integer, ForeignKey('sprints.id'), index=True)
    to_sprint_id = Column(Integer, ForeignKey('sprints.id'), index=True)
    story_points_change = Column(Float)
    author_name = Column(String(255))
    change_date = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint('issue_id', 'dedup_key', name='uq_issue_changelog_entry'),
        Index('ix_issue_changelog_issue_date', 'issue_id', 'change_date'),
    )


# ============================================
# KANBAN MODELS
# ============================================

class KanbanBoard(Base):
    """Continuous-flow view of a kanban or simple board."""
    __tablename__ = 'kanban_boards'

    id = Column(Integer, primary_key=True)
    board_id = Column(Integer, ForeignKey('boards.id'), nullable=False, unique=True)
    jira_id = Column(Integer, nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    project_id = Column(Integer, ForeignKey('projects.id'), index=True)
    # [{"name": ..., "statuses": [...], "min": int|None, "max": int|None}]
    column_config = Column(JSONType)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_synced_at = Column(DateTime)


class KanbanIssue(Base):
    """Column membership of an issue on a kanban board."""
    __tablename__ = 'kanban_issues'

    id = Column(Integer, primary_key=True)
    kanban_board_id = Column(Integer, ForeignKey('kanban_boards.id', ondelete='CASCADE'), nullable=False)
    issue_id = Column(Integer, ForeignKey('issues.id', ondelete='CASCADE'), nullable=False)
    column_name = Column(String(255))
    status = Column(String(100))
    status_category = Column(String(50))
    flagged = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_synced_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint('kanban_board_id', 'issue_id', name='uq_kanban_issue_board'),
    )


# ============================================
# METRICS MODELS
# ============================================

class SprintMetrics(Base):
    """Derived aggregate for one sprint, overwritten on each calculation."""
    __tablename__ = 'sprint_metrics'

    id = Column(Integer, primary_key=True)
    sprint_id = Column(Integer, ForeignKey('sprints.id', ondelete='CASCADE'), nullable=False, unique=True)

    velocity = Column(Float, default=0)
    total_issues = Column(Integer, default=0)
    completed_issues = Column(Integer, default=0)
    total_story_points = Column(Float, default=0)
    completed_story_points = Column(Float, default=0)
    completion_rate = Column(Float, default=0)

    # Churn (null when the sprint window is unknown)
    start_story_points = Column(Float)
    added_issues = Column(Integer)
    added_story_points = Column(Float)
    removed_issues = Column(Integer)
    removed_story_points = Column(Float)
    churn_rate = Column(Float)
    scope_change_percent = Column(Float)

    # Quality, added by m0008
    total_defects = Column(Integer, default=0)
    completed_defects = Column(Integer, default=0)
    defect_leakage_rate = Column(Float, default=0)
    quality_rate = Column(Float, default=100)

    issue_type_breakdown = Column(JSONType)
    story_points_breakdown = Column(JSONType)  # {"small", "medium", "large"}, added by m0008
    team_members = Column(JSONType)
    window_start = Column(DateTime)
    window_end = Column(DateTime)
    insufficient_data = Column(Boolean, default=False, nullable=False)
    data_flags = Column(JSONType)
    calculated_at = Column(DateTime, nullable=False, default=utcnow)


class BoardMetrics(Base):
    """Rollup of sprint metrics for one scrum board."""
    __tablename__ = 'board_metrics'

    id = Column(Integer, primary_key=True)
    board_id = Column(Integer, ForeignKey('boards.id', ondelete='CASCADE'), nullable=False, unique=True)

    total_sprints = Column(Integer, default=0)
    active_sprints = Column(Integer, default=0)
    closed_sprints = Column(Integer, default=0)
    measured_sprints = Column(Integer, default=0)
    average_velocity = Column(Float, default=0)
    average_churn_rate = Column(Float, default=0)
    average_completion_rate = Column(Float, default=0)
    total_story_points = Column(Float, default=0)
    average_defect_leakage_rate = Column(Float, default=0)  # added by m0008
    average_quality_rate = Column(Float, default=100)
    total_defects = Column(Integer, default=0)
    predicted_velocity = Column(Float, default=0)
    velocity_trend = Column(String(10), default='stable')  # 'up', 'down', 'stable'
    churn_rate_trend = Column(String(10), default='stable')
    team_members = Column(JSONType)
    calculated_at = Column(DateTime, nullable=False, default=utcnow)


class KanbanMetrics(Base):
    """Derived flow aggregate for one kanban board."""
    __tablename__ = 'kanban_metrics'

    id = Column(Integer, primary_key=True)
    kanban_board_id = Column(
        Integer, ForeignKey('kanban_boards.id', ondelete='CASCADE'), nullable=False, unique=True
    )

    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    period_source = Column(String(20), nullable=False)  # 'native_sprint', 'sprint_aligned', 'trailing'

    total_issues = Column(Integer, default=0)
    to_do_issues = Column(Integer, default=0)
    in_progress_issues = Column(Integer, default=0)
    done_issues = Column(Integer, default=0)
    column_metrics = Column(JSONType)
    wip_violations = Column(Integer, default=0)

    # Time metrics (in days)
    throughput = Column(Integer, default=0)
    weekly_throughput = Column(JSONType)  # [{"week_start": iso, "count": int}], added by m0007
    evaluated_issues = Column(Integer, default=0)
    average_cycle_time = Column(Float)
    median_cycle_time = Column(Float)
    average_lead_time = Column(Float)
    median_lead_time = Column(Float)
    flow_efficiency = Column(Float)

    data_flags = Column(JSONType)
    calculated_at = Column(DateTime, nullable=False, default=utcnow)


# ============================================
# COORDINATION MODELS
# ============================================

class SyncOperation(Base):
    """Record of one sync run."""
    __tablename__ = 'sync_operations'

    id = Column(Integer, primary_key=True)
    sync_type = Column(String(50), nullable=False)  # 'projects', 'boards', 'board_sprints', ...
    resource_key = Column(String(255), nullable=False, index=True)
    status = Column(String(20), nullable=False, default='pending')  # 'pending', 'running', 'completed', 'failed'
    holder_id = Column(String(255))
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    fetched_count = Column(Integer, default=0)
    inserted_count = Column(Integer, default=0)
    updated_count = Column(Integer, default=0)
    unchanged_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)
    errors = Column(JSONType)
    error_message = Column(Text)
    created_at = Column(DateTime, default=utcnow)


class DistributedLock(Base):
    """Exclusive, expiring lease on a resource key."""
    __tablename__ = 'distributed_locks'

    id = Column(Integer, primary_key=True)
    resource_key = Column(String(255), nullable=False, unique=True)
    holder_id = Column(String(255), nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)


class MigrationRecord(Base):
    """Ledger row for an applied migration unit."""
    __tablename__ = 'schema_migrations'

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, unique=True)
    executed_at = Column(DateTime, nullable=False, default=utcnow)
