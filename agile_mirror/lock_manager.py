"""
Distributed Lock Module
Time-bounded, resource-scoped leases stored in the shared database.
"""

import os
import socket
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Generator, List, Optional

from sqlalchemy.exc import IntegrityError

from agile_mirror.database.connection import DatabaseConnection
from agile_mirror.database.models import DistributedLock
from agile_mirror.errors import Busy
from agile_mirror.utils.helpers import utcnow
from agile_mirror.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_TTL = timedelta(minutes=30)


def lock_key(operation: str, resource_id) -> str:
    """Build the resource key for an (operation-type, resource-id) pair."""
    return f"{operation}:{resource_id}"


def default_holder_id() -> str:
    """Identify this process: hostname, pid and a random suffix."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class LeaseHandle:
    """Proof of a granted lease, needed to release or renew it."""
    resource_key: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime

    def to_dict(self) -> dict:
        return {
            'resource_key': self.resource_key,
            'holder_id': self.holder_id,
            'acquired_at': self.acquired_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
        }


class LockManager:
    """
    Grants exclusive leases on resource keys.

    Acquisition never waits: a live lease held by anyone (this process
    included) makes acquire return None. A lease whose expires_at has passed
    is dead and is displaced by the next acquire.
    """

    def __init__(
        self,
        db: DatabaseConnection,
        default_ttl: timedelta = DEFAULT_TTL,
        holder_id: str = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db = db
        self.default_ttl = default_ttl
        self.holder_id = holder_id or default_holder_id()
        self.clock = clock

    def acquire(self, resource_key: str, ttl: timedelta = None) -> Optional[LeaseHandle]:
        """
        Try to take the lease on a resource key.

        Args:
            resource_key: Key from lock_key()
            ttl: Lease duration; defaults to the manager's default TTL

        Returns:
            LeaseHandle, or None when a live lease already exists
        """
        now = self.clock()
        expires_at = now + (ttl or self.default_ttl)

        session = self.db.get_session()
        try:
            displaced = session.query(DistributedLock).filter(
                DistributedLock.resource_key == resource_key,
                DistributedLock.expires_at < now
            ).delete(synchronize_session=False)
            if displaced:
                logger.warning(f"Displaced expired lock on {resource_key}")

            session.add(DistributedLock(
                resource_key=resource_key,
                holder_id=self.holder_id,
                acquired_at=now,
                expires_at=expires_at
            ))
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info(f"Lock on {resource_key} is held elsewhere, skipping")
            return None
        finally:
            session.close()

        logger.debug(f"Acquired lock on {resource_key} until {expires_at.isoformat()}")
        return LeaseHandle(resource_key, self.holder_id, now, expires_at)

    def release(self, handle: LeaseHandle) -> bool:
        """
        Release a lease.

        Returns:
            False when the lease had already expired and been displaced
        """
        with self.db.session_scope() as session:
            deleted = session.query(DistributedLock).filter(
                DistributedLock.resource_key == handle.resource_key,
                DistributedLock.holder_id == handle.holder_id,
                DistributedLock.acquired_at == handle.acquired_at
            ).delete(synchronize_session=False)

        if not deleted:
            logger.warning(f"Lock on {handle.resource_key} was no longer held at release")
        return bool(deleted)

    def renew(self, handle: LeaseHandle, ttl: timedelta = None) -> Optional[LeaseHandle]:
        """Extend a still-live lease. Returns the new handle, or None if it was lost."""
        now = self.clock()
        expires_at = now + (ttl or self.default_ttl)

        with self.db.session_scope() as session:
            updated = session.query(DistributedLock).filter(
                DistributedLock.resource_key == handle.resource_key,
                DistributedLock.holder_id == handle.holder_id,
                DistributedLock.acquired_at == handle.acquired_at,
                DistributedLock.expires_at >= now
            ).update({'expires_at': expires_at}, synchronize_session=False)

        if not updated:
            logger.warning(f"Cannot renew lock on {handle.resource_key}: lease lost")
            return None
        return LeaseHandle(handle.resource_key, handle.holder_id, handle.acquired_at, expires_at)

    def sweep_expired(self) -> int:
        """
        Delete every lease whose expires_at is in the past.

        Returns:
            Number of leases removed
        """
        now = self.clock()
        with self.db.session_scope() as session:
            removed = session.query(DistributedLock).filter(
                DistributedLock.expires_at < now
            ).delete(synchronize_session=False)

        if removed:
            logger.info(f"Swept {removed} expired lock(s)")
        return removed

    def get_lock(self, resource_key: str) -> Optional[LeaseHandle]:
        """The live lease on a key, if any."""
        with self.db.session_scope() as session:
            lock = session.query(DistributedLock).filter(
                DistributedLock.resource_key == resource_key,
                DistributedLock.expires_at >= self.clock()
            ).one_or_none()
            if lock is None:
                return None
            return LeaseHandle(lock.resource_key, lock.holder_id, lock.acquired_at, lock.expires_at)

    def active_locks(self) -> List[LeaseHandle]:
        """All live leases, oldest first."""
        with self.db.session_scope() as session:
            locks = session.query(DistributedLock).filter(
                DistributedLock.expires_at >= self.clock()
            ).order_by(DistributedLock.acquired_at).all()
            return [
                LeaseHandle(lock.resource_key, lock.holder_id, lock.acquired_at, lock.expires_at)
                for lock in locks
            ]

    @contextmanager
    def hold(self, resource_key: str, ttl: timedelta = None) -> Generator[LeaseHandle, None, None]:
        """
        Hold a lease for the duration of a block.

        Raises:
            Busy: A live lease already exists for the key
        """
        handle = self.acquire(resource_key, ttl)
        if handle is None:
            current = self.get_lock(resource_key)
            raise Busy(resource_key, current.holder_id if current else None)
        try:
            yield handle
        finally:
            self.release(handle)
