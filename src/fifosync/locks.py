"""TTL-bounded distributed locks backed by the Lock table.

A lock row is held until released by its token or until `expires_at`
passes, after which any contender may take it over.
"""
import contextlib
import logging
import random
import time
import uuid
from dataclasses import dataclass

from sqlalchemy import text

from fifosync.config import FifoConfig
from fifosync.db import DatabaseContext
from fifosync.exceptions import LockNotAcquired

logger = logging.getLogger(__name__)


@dataclass
class LockHandle:
    """Proof of a held lock.
    """
    key: str
    token: str
    expires_at: float

    @property
    def expired(self) -> bool:
        return time.time() >= self.expires_at


class LockCoordinator:
    """Lock primitive plus the fleet and per-queue lock scopes.
    """

    def __init__(self, db: DatabaseContext, config: FifoConfig):
        """Initialize lock coordinator.

        Args:
            db: Database context
            config: Fifo configuration (TTL and retry budget)
        """
        self.db = db
        self.table = db.tables['Lock']
        self.ttl_ms = config.lock_ttl_ms
        self.retry_count = config.lock_retry_count
        self.retry_delay_ms = config.lock_retry_delay_ms
        self.retry_jitter_ms = config.lock_retry_jitter_ms

    def lock(self, key: str, ttl_ms: int) -> LockHandle | None:
        """Single acquisition attempt.

        Args:
            key: Lock name
            ttl_ms: Time to live in milliseconds

        Returns
            LockHandle if acquired, None if held by someone else
        """
        now = time.time()
        token = uuid.uuid4().hex
        expires_at = now + ttl_ms / 1000.0

        with self.db.connect() as conn:
            cleared = conn.execute(text(f"""
            DELETE FROM {self.table}
            WHERE name = :name AND expires_at <= :now
            """), {'name': key, 'now': now})
            if cleared.rowcount:
                logger.warning(f'Expired lock {key} taken over')

            result = conn.execute(text(f"""
            INSERT INTO {self.table} (name, token, acquired_at, expires_at)
            VALUES (:name, :token, :acquired_at, :expires_at)
            ON CONFLICT (name) DO NOTHING
            """), {'name': key, 'token': token, 'acquired_at': now, 'expires_at': expires_at})
            conn.commit()

        if result.rowcount > 0:
            logger.debug(f'Lock {key} acquired')
            return LockHandle(key, token, expires_at)
        return None

    def unlock(self, handle: LockHandle) -> bool:
        """Release lock if still owned by this handle.

        Returns
            True if released, False if it had already expired and been taken over
        """
        sql = f'DELETE FROM {self.table} WHERE name = :name AND token = :token'
        result = self.db.execute(sql, {'name': handle.key, 'token': handle.token})
        if result.rowcount == 0:
            logger.warning(f'Lock {handle.key} was no longer held at release (TTL exceeded)')
            return False
        logger.debug(f'Lock {handle.key} released')
        return True

    def is_locked(self, key: str) -> bool:
        sql = f'SELECT COUNT(*) FROM {self.table} WHERE name = :name AND expires_at > :now'
        return bool(self.db.scalar(sql, {'name': key, 'now': time.time()}))

    @contextlib.contextmanager
    def lock_with_retry(self, key: str, ttl_ms: int = None, retry_count: int = None,
                        retry_delay_ms: int = None, jitter_ms: int = None):
        """Context manager acquiring lock with bounded retries.

        Each failed attempt sleeps `retry_delay_ms` plus a random jitter of up
        to `jitter_ms`.

        Raises
            LockNotAcquired: If all attempts fail
        """
        ttl_ms = self.ttl_ms if ttl_ms is None else ttl_ms
        retry_count = self.retry_count if retry_count is None else retry_count
        retry_delay_ms = self.retry_delay_ms if retry_delay_ms is None else retry_delay_ms
        jitter_ms = self.retry_jitter_ms if jitter_ms is None else jitter_ms

        handle = None
        attempts = max(retry_count, 1)
        for attempt in range(1, attempts + 1):
            handle = self.lock(key, ttl_ms)
            if handle is not None:
                break
            if attempt < attempts:
                time.sleep((retry_delay_ms + random.uniform(0, jitter_ms)) / 1000.0)

        if handle is None:
            raise LockNotAcquired(f'Lock {key} not acquired after {attempts} attempts')

        try:
            yield handle
        finally:
            self.unlock(handle)

    def fleet_lock(self, queue_prefix: str):
        """Serializes rebalancing for one topic.
        """
        return self.lock_with_retry(f'fifo_queue_lock-{queue_prefix}')

    def queue_lock(self, queue: str):
        """Guards pausing and draining a single queue.
        """
        return self.lock_with_retry(f'queue_lock-{queue}')
