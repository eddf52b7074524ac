"""
Engine Context Module
Process-scoped owner of the store handle, engines and background jobs.
"""

from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from agile_mirror.config_manager import ConfigManager
from agile_mirror.database.connection import DatabaseConnection
from agile_mirror.database.migrations.runner import MigrationRunner
from agile_mirror.jira_client import JiraClient
from agile_mirror.lock_manager import LockManager
from agile_mirror.metrics.flow_metrics import FlowMetricsEngine
from agile_mirror.metrics.sprint_metrics import SprintMetricsEngine
from agile_mirror.sync.changelog import ChangeHistoryIngestor
from agile_mirror.sync.orchestrator import SyncOrchestrator
from agile_mirror.utils.logger import get_logger

logger = get_logger(__name__)

SWEEP_JOB_ID = 'lock_sweep'


class LockSweeper:
    """Removes expired leases on a fixed interval."""

    def __init__(self, locks: LockManager, scheduler: BackgroundScheduler, interval: timedelta):
        self.locks = locks
        self.scheduler = scheduler
        self.interval = interval

    def sweep(self) -> int:
        try:
            return self.locks.sweep_expired()
        except Exception as e:
            logger.error(f"Lock sweep failed: {e}")
            return 0

    def schedule(self) -> None:
        self.scheduler.add_job(
            self.sweep,
            'interval',
            seconds=self.interval.total_seconds(),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1
        )
        logger.info(f"Lock sweep scheduled every {self.interval}")


class EngineContext:
    """
    Holds everything one process needs: connection, locks, tracker client,
    sync and metrics engines, and the scheduler running background jobs.

    Usage:
        with EngineContext() as context:
            context.sync.sync_all()
    """

    def __init__(
        self,
        config: ConfigManager = None,
        database_url: str = None,
        jira: JiraClient = None
    ):
        self.config = config or ConfigManager()
        self.db = DatabaseConnection(url=database_url) if database_url else DatabaseConnection()

        locks_config = self.config.get_locks_config()
        self.locks = LockManager(
            self.db,
            default_ttl=self.config.get_minutes('locks', 'default_ttl_minutes', 30)
        )
        self.scheduler = BackgroundScheduler()
        self.sweeper = LockSweeper(
            self.locks,
            self.scheduler,
            timedelta(minutes=locks_config.get('sweep_interval_minutes', 10))
        )

        self._jira = jira
        self._sync: Optional[SyncOrchestrator] = None
        self._changelog: Optional[ChangeHistoryIngestor] = None
        self.sprint_metrics = SprintMetricsEngine(self.db, self.locks, self.config)
        self.flow_metrics = FlowMetricsEngine(self.db, self.locks, self.config)
        self.started = False

    # ========================================
    # Lazily Built Components
    # ========================================

    @property
    def jira(self) -> JiraClient:
        """Tracker client, built on first use so offline commands need no credentials."""
        if self._jira is None:
            self._jira = JiraClient(self.config.get_jira_config())
        return self._jira

    @property
    def changelog(self) -> ChangeHistoryIngestor:
        if self._changelog is None:
            self._changelog = ChangeHistoryIngestor(self.db, self.jira, self.locks, self.config)
        return self._changelog

    @property
    def sync(self) -> SyncOrchestrator:
        if self._sync is None:
            self._sync = SyncOrchestrator(self.db, self.jira, self.locks, self.config, changelog=self.changelog)
        return self._sync

    def migrations(self) -> MigrationRunner:
        return MigrationRunner(self.db.engine)

    # ========================================
    # Lifecycle
    # ========================================

    def start(self, scheduler: bool = True) -> 'EngineContext':
        """
        Bring the process up.

        Runs pending migrations (a MigrationFailure propagates and nothing
        else starts), sweeps expired leases, fails orphaned sync operations
        and starts the background scheduler.

        Args:
            scheduler: Start the background scheduler
        """
        executed = self.migrations().run()
        if executed:
            logger.info(f"Applied {len(executed)} migration(s)")

        self.locks.sweep_expired()
        self.sync.recover_orphaned_operations()

        if scheduler:
            self.sweeper.schedule()
            self._schedule_jobs()
            self.scheduler.start()

        self.started = True
        logger.info("Engine context started")
        return self

    def stop(self) -> None:
        """Stop background jobs and release the connection pool."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        if self._sync is not None:
            self._sync.cancel()
        if self._jira is not None:
            self._jira.close()
        self.db.dispose()
        self.started = False
        logger.info("Engine context stopped")

    def __enter__(self) -> 'EngineContext':
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def _schedule_jobs(self) -> None:
        scheduler_config = self.config.get_scheduler_config()
        if not scheduler_config.get('enabled', True):
            logger.info("Scheduled sync and metrics jobs are disabled")
            return

        sync_schedule = scheduler_config.get('sync_schedule')
        if sync_schedule:
            self.scheduler.add_job(
                self.run_scheduled_sync, CronTrigger.from_crontab(sync_schedule),
                id='sync', replace_existing=True, max_instances=1
            )
            logger.info(f"Sync scheduled: {sync_schedule}")

        metrics_schedule = scheduler_config.get('metrics_schedule')
        if metrics_schedule:
            self.scheduler.add_job(
                self.run_scheduled_metrics, CronTrigger.from_crontab(metrics_schedule),
                id='metrics', replace_existing=True, max_instances=1
            )
            logger.info(f"Metrics recompute scheduled: {metrics_schedule}")

    # ========================================
    # Scheduled Jobs
    # ========================================

    def run_scheduled_sync(self) -> None:
        """Scheduled sync job."""
        logger.info("Running scheduled sync")
        try:
            self.sync.sync_all()
        except Exception as e:
            logger.error(f"Scheduled sync failed: {e}")

    def run_scheduled_metrics(self) -> None:
        """Scheduled metrics recompute job."""
        logger.info("Running scheduled metrics recompute")
        try:
            self.sprint_metrics.calculate_all_boards()
            self.flow_metrics.calculate_metrics_for_all_boards()
        except Exception as e:
            logger.error(f"Scheduled metrics recompute failed: {e}")
