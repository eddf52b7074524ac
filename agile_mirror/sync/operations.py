"""
Sync Operation Lifecycle
Lock, record, run and finalize a SyncOperation; shared by the sync components.
"""

import threading
from dataclasses import dataclass, field
from typing import Callable, List

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from agile_mirror.database.models import SyncOperation
from agile_mirror.database.upsert import INSERTED, UPDATED
from agile_mirror.errors import JiraAPIError, ReconciliationError, SyncCancelled
from agile_mirror.lock_manager import lock_key
from agile_mirror.utils.helpers import utcnow
from agile_mirror.utils.logger import get_logger

logger = get_logger(__name__)

MAX_RECORDED_ERRORS = 20


@dataclass
class OperationStats:
    """Counters for one sync operation."""
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def record(self, outcome: str) -> None:
        if outcome == INSERTED:
            self.inserted += 1
        elif outcome == UPDATED:
            self.updated += 1
        else:
            self.unchanged += 1

    def fail(self, message: str) -> None:
        self.failed += 1
        if len(self.errors) < MAX_RECORDED_ERRORS:
            self.errors.append(message)


class SyncOperationMixin:
    """
    Operation lifecycle for classes holding `db`, `locks` and `lock_ttl`.

    Tracker failures and missing parents fail the operation record and are
    returned; anything else fails the record and propagates.
    """

    def _init_operations(self) -> None:
        self._cancel_event = threading.Event()
        self._active_runs = 0
        self._runs_guard = threading.Lock()

    def cancel(self) -> None:
        """Request the running sync to stop at the next unit boundary."""
        logger.info(f"Cancellation requested for {self.__class__.__name__}")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise SyncCancelled()

    def _run_operation(
        self,
        sync_type: str,
        resource_id,
        work: Callable[[OperationStats], None]
    ) -> SyncOperation:
        """
        Run one sync operation under a lease.

        Raises:
            Busy: The resource is already being synced
        """
        resource_key = lock_key(sync_type, resource_id)

        with self.locks.hold(resource_key, self.lock_ttl) as lease:
            self._enter_run()
            try:
                operation_id = self._start_operation(sync_type, resource_key, lease.holder_id)
                stats = OperationStats()
                try:
                    work(stats)
                except SyncCancelled:
                    logger.warning(f"Sync {resource_key} cancelled")
                    return self._finish_operation(operation_id, stats, 'failed', 'cancelled')
                except (JiraAPIError, ReconciliationError) as e:
                    logger.error(f"Sync {resource_key} failed: {e}")
                    return self._finish_operation(operation_id, stats, 'failed', str(e)[:1000])
                except Exception as e:
                    logger.error(f"Sync {resource_key} aborted: {e}")
                    self._finish_operation(operation_id, stats, 'failed', str(e)[:1000])
                    raise

                logger.info(
                    f"Sync {resource_key} completed: fetched={stats.fetched} inserted={stats.inserted} "
                    f"updated={stats.updated} unchanged={stats.unchanged} failed={stats.failed}"
                )
                return self._finish_operation(operation_id, stats, 'completed')
            finally:
                self._exit_run()

    def _enter_run(self) -> None:
        with self._runs_guard:
            # A fresh top-level run clears any earlier cancellation
            if self._active_runs == 0:
                self._cancel_event.clear()
            self._active_runs += 1

    def _exit_run(self) -> None:
        with self._runs_guard:
            self._active_runs -= 1

    def _start_operation(self, sync_type: str, resource_key: str, holder_id: str) -> int:
        with self.db.session_scope() as session:
            operation = SyncOperation(
                sync_type=sync_type,
                resource_key=resource_key,
                status='running',
                holder_id=holder_id,
                started_at=utcnow()
            )
            session.add(operation)
            session.flush()
            return operation.id

    def _finish_operation(
        self,
        operation_id: int,
        stats: OperationStats,
        status: str,
        error_message: str = None
    ) -> SyncOperation:
        with self.db.session_scope() as session:
            operation = session.get(SyncOperation, operation_id)
            operation.status = status
            operation.finished_at = utcnow()
            operation.fetched_count = stats.fetched
            operation.inserted_count = stats.inserted
            operation.updated_count = stats.updated
            operation.unchanged_count = stats.unchanged
            operation.failed_count = stats.failed
            operation.errors = list(stats.errors) or None
            operation.error_message = error_message
        return operation

    def _reconcile_unit(
        self,
        stats: OperationStats,
        entity: str,
        external_id,
        write: Callable[[Session], str]
    ) -> None:
        """Write one entity in its own transaction; failures are counted, not raised."""
        self._check_cancelled()
        try:
            with self.db.session_scope() as session:
                outcome = write(session)
            stats.record(outcome)
        except OperationalError:
            raise
        except Exception as e:
            error = e if isinstance(e, ReconciliationError) else ReconciliationError(entity, external_id, e)
            logger.warning(str(error))
            stats.fail(str(error)[:500])
