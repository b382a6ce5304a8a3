"""Tests for the TTL lock primitive and lock scopes.

USE THIS FILE FOR:
- Single-attempt acquisition and release
- TTL expiry and takeover
- Bounded retry behaviour
- Fleet and per-queue lock naming
"""
import logging
import threading
import time

import pytest
from fixtures import *  # noqa: F401, F403

from fifosync.exceptions import LockNotAcquired
from fifosync.locks import LockCoordinator

logger = logging.getLogger(__name__)


def create_locks(engine, **overrides) -> LockCoordinator:
    config = make_config(**overrides)
    return LockCoordinator(create_db(engine, config), config)


class TestLockPrimitive:
    """Test single lock attempts."""

    def test_lock_acquired_once(self, engine):
        """Verify second contender is refused while the lock is held.
        """
        locks = create_locks(engine)

        handle = locks.lock('resource', 5000)
        assert handle is not None
        assert locks.lock('resource', 5000) is None
        assert locks.is_locked('resource')

    def test_unlock_allows_reacquire(self, engine):
        """Verify release frees the lock for the next contender.
        """
        locks = create_locks(engine)

        handle = locks.lock('resource', 5000)
        assert locks.unlock(handle)
        assert not locks.is_locked('resource')
        assert locks.lock('resource', 5000) is not None

    def test_independent_keys(self, engine):
        """Verify locks on different keys do not interfere.
        """
        locks = create_locks(engine)

        assert locks.lock('a', 5000) is not None
        assert locks.lock('b', 5000) is not None

    def test_expired_lock_taken_over(self, engine):
        """Verify a crashed holder's lock is reclaimed after its TTL.
        """
        locks = create_locks(engine)

        stale = locks.lock('resource', 10)
        time.sleep(0.05)
        assert stale.expired

        fresh = locks.lock('resource', 5000)
        assert fresh is not None, 'Expired lock should be reclaimable'
        assert fresh.token != stale.token

    def test_unlock_after_takeover_is_refused(self, engine):
        """Verify a holder that overran its TTL cannot release the new owner's lock.
        """
        locks = create_locks(engine)

        stale = locks.lock('resource', 10)
        time.sleep(0.05)
        fresh = locks.lock('resource', 5000)

        assert not locks.unlock(stale)
        assert locks.is_locked('resource')
        assert locks.unlock(fresh)


class TestLockWithRetry:
    """Test bounded retry acquisition."""

    def test_gives_up_after_retry_budget(self, engine):
        """Verify LockNotAcquired after retry_count attempts.
        """
        locks = create_locks(engine)
        locks.lock('resource', 5000)

        start = time.time()
        with pytest.raises(LockNotAcquired):
            with locks.lock_with_retry('resource', retry_count=3, retry_delay_ms=50, jitter_ms=0):
                pass
        elapsed = time.time() - start

        assert elapsed >= 0.1, 'Should sleep between attempts'

    def test_releases_on_exit(self, engine):
        """Verify the lock is released when the block exits, even on error.
        """
        locks = create_locks(engine)

        with pytest.raises(ValueError):
            with locks.lock_with_retry('resource'):
                assert locks.is_locked('resource')
                raise ValueError('inside critical section')

        assert not locks.is_locked('resource')

    def test_waits_for_release(self, engine):
        """Verify a contender acquires once the holder releases within the budget.
        """
        locks = create_locks(engine)
        holder = locks.lock('resource', 5000)

        def release_later():
            time.sleep(0.2)
            locks.unlock(holder)

        thread = threading.Thread(target=release_later)
        thread.start()
        try:
            with locks.lock_with_retry('resource', retry_count=40, retry_delay_ms=25, jitter_ms=5) as handle:
                assert handle.token != holder.token
        finally:
            thread.join()


class TestLockScopes:
    """Test fleet and queue lock naming."""

    def test_fleet_lock_name(self, engine):
        """Verify fleet lock is keyed by queue prefix.
        """
        locks = create_locks(engine)

        with locks.fleet_lock('fifo-orders') as handle:
            assert handle.key == 'fifo_queue_lock-fifo-orders'

    def test_queue_lock_nested_in_fleet_lock(self, engine):
        """Verify per-queue lock can be taken while the fleet lock is held.
        """
        locks = create_locks(engine)

        with locks.fleet_lock('fifo-fifo'):
            with locks.queue_lock('fifo-fifo-abc') as handle:
                assert handle.key == 'queue_lock-fifo-fifo-abc'
                assert locks.is_locked('fifo_queue_lock-fifo-fifo')
