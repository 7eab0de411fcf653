"""
Lock Store - lease-based distributed mutex on a relational table

Mutual exclusion comes from the unique constraint on distributed_locks.key:
acquiring is an optimistic INSERT, and a unique violation means somebody
else holds the key. Expired leases are reclaimed with a conditional UPDATE
that only matches while the row is still expired, so of several racing
reclaimers exactly one sees rowcount == 1.

Every acquire mints a new fencing token. Release, extend and the holder
checks all require the token, so a holder whose lease already expired (and
was reclaimed by someone else) cannot release or refresh the new holder's
lock.
"""
import uuid
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models import DistributedLock
from ..utils.logger import get_logger
from ..utils.timeutil import utcnow

logger = get_logger('lock_store')


class LockStore:
    """Table-backed lease lock.

    Example:
        >>> store = LockStore()
        >>> token = store.acquire('sync:gh_123', ttl=1800)
        >>> if token:
        ...     try:
        ...         do_work()
        ...     finally:
        ...         store.release('sync:gh_123', token)
    """

    DEFAULT_TTL = 60

    def __init__(self, session=None, clock: Callable = utcnow):
        """
        Args:
            session: SQLAlchemy session; defaults to the Flask-SQLAlchemy scoped session
            clock: Returns the current naive UTC time (injectable for tests)
        """
        self._session = session
        self._clock = clock

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    def acquire(self, key: str, ttl: int = DEFAULT_TTL) -> Optional[str]:
        """Try to take the lock on ``key`` for ``ttl`` seconds.

        Returns:
            The fencing token on success, None if an unexpired lease is held
            by someone else.

        Raises:
            SQLAlchemyError: if the lock table itself is unavailable
        """
        now = self._clock()
        token = uuid.uuid4().hex
        expires_at = now + timedelta(seconds=ttl)

        self.sweep_expired()

        try:
            self.session.add(DistributedLock(key=key, token=token, expires_at=expires_at, created_at=now))
            self.session.commit()
            logger.info(f"[LockStore] Acquired {key} (ttl={ttl}s)")
            return token
        except IntegrityError:
            self.session.rollback()
        except SQLAlchemyError:
            self.session.rollback()
            raise

        # A row exists: reclaim it only if its lease has run out
        try:
            reclaimed = self.session.query(DistributedLock).filter(
                DistributedLock.key == key,
                DistributedLock.expires_at <= now
            ).update(
                {'token': token, 'expires_at': expires_at, 'created_at': now},
                synchronize_session=False
            )
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

        if reclaimed == 1:
            logger.info(f"[LockStore] Reclaimed expired lease on {key} (ttl={ttl}s)")
            return token

        logger.info(f"[LockStore] {key} is held by another worker")
        return None

    def is_locked(self, key: str) -> bool:
        """True iff an unexpired lease exists for ``key``"""
        now = self._clock()
        lock = self.session.query(DistributedLock).filter(
            DistributedLock.key == key,
            DistributedLock.expires_at > now
        ).first()
        return lock is not None

    def is_held_by(self, key: str, token: str) -> bool:
        """True iff ``token`` is the current, unexpired holder of ``key``"""
        now = self._clock()
        lock = self.session.query(DistributedLock).filter(
            DistributedLock.key == key,
            DistributedLock.token == token,
            DistributedLock.expires_at > now
        ).first()
        return lock is not None

    def release(self, key: str, token: str) -> bool:
        """Delete the lock row if ``token`` still owns it.

        A token mismatch is a no-op. Errors are logged and swallowed: a lock
        that is not released simply expires.
        """
        try:
            deleted = self.session.query(DistributedLock).filter(
                DistributedLock.key == key,
                DistributedLock.token == token
            ).delete(synchronize_session=False)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[LockStore] Failed to release {key}: {e}")
            return False

        if deleted:
            logger.info(f"[LockStore] Released {key}")
        else:
            logger.warning(f"[LockStore] Release of {key} ignored, token no longer owns the lock")
        return deleted > 0

    def extend(self, key: str, token: str, ttl: int = DEFAULT_TTL) -> bool:
        """Refresh the lease; only the current unexpired holder may do this"""
        now = self._clock()
        try:
            updated = self.session.query(DistributedLock).filter(
                DistributedLock.key == key,
                DistributedLock.token == token,
                DistributedLock.expires_at > now
            ).update(
                {'expires_at': now + timedelta(seconds=ttl)},
                synchronize_session=False
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[LockStore] Failed to extend {key}: {e}")
            return False

        if not updated:
            logger.warning(f"[LockStore] Cannot extend {key}, lease lost")
        return updated > 0

    def force_release(self, key: str) -> bool:
        """Operator escape hatch: delete the row regardless of token"""
        try:
            deleted = self.session.query(DistributedLock).filter(
                DistributedLock.key == key
            ).delete(synchronize_session=False)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[LockStore] Failed to force-release {key}: {e}")
            return False

        if deleted:
            logger.warning(f"[LockStore] Force-released {key}")
        return deleted > 0

    def sweep_expired(self) -> int:
        """Delete every expired lease. Idempotent; errors are swallowed.

        Returns:
            Number of rows removed
        """
        now = self._clock()
        try:
            deleted = self.session.query(DistributedLock).filter(
                DistributedLock.expires_at <= now
            ).delete(synchronize_session=False)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[LockStore] Expired lock sweep failed: {e}")
            return 0

        if deleted:
            logger.info(f"[LockStore] Swept {deleted} expired locks")
        return deleted

    def get_lock(self, key: str) -> Optional[Dict]:
        lock = self.session.query(DistributedLock).filter(DistributedLock.key == key).first()
        return lock.to_dict(self._clock()) if lock else None

    def list_locks(self) -> List[Dict]:
        now = self._clock()
        locks = self.session.query(DistributedLock).order_by(DistributedLock.key).all()
        return [lock.to_dict(now) for lock in locks]
