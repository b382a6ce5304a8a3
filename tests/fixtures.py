"""Shared test fixtures, utilities, and helpers.

USE THIS FILE FOR:
- Config builders and object factories
- Fake worker registration (registry rows without a running process)
- Job classes importable by dotted path from workers
- Wait helpers used by threaded tests
"""
import json
import logging
import threading
import time

import pytest

from fifosync.config import FifoConfig
from fifosync.db import DatabaseContext
from fifosync.manager import QueueManager
from fifosync.queues import JobEnvelope
from fifosync.registry import WorkerRecord

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIG BUILDERS - Create test configurations
# ============================================================================

def make_config(**overrides) -> FifoConfig:
    """Create FifoConfig with test-optimized values.

    Short lock retry budget and fast heartbeats keep failing paths quick.

    Usage:
        config = make_config()
        config = make_config(inline=True, lock_retry_count=1)
    """
    defaults = {
        'lock_ttl_ms': 5000,
        'lock_retry_count': 3,
        'lock_retry_delay_ms': 50,
        'lock_retry_jitter_ms': 10,
        'heartbeat_interval_sec': 0.2,
        'heartbeat_timeout_sec': 3,
        'poll_interval_sec': 0.05,
    }
    defaults.update(overrides)
    return FifoConfig(**defaults)


# ============================================================================
# FACTORIES - Create test objects with sensible defaults
# ============================================================================

def create_db(engine, config: FifoConfig = None) -> DatabaseContext:
    return DatabaseContext(config or make_config(), engine=engine)


def create_manager(engine, topic: str = 'fifo', **config_overrides) -> QueueManager:
    """Create QueueManager bound to the test engine.

    Usage:
        manager = create_manager(engine)
        manager = create_manager(engine, 'orders', inline=True)
    """
    config = make_config(**config_overrides)
    return QueueManager(topic, config, create_db(engine, config))


def register_fake_worker(manager: QueueManager, queue: str = None, name: str = None,
                         extras: list[str] = None) -> tuple[str, str]:
    """Register a worker row owning a topic queue.

    Returns
        Tuple of (worker name, worker queue)
    """
    queue = queue or manager.topic.new_worker_queue()
    name = name or f'fake-host:1:{queue}'
    queues = [manager.config.refresh_queue, queue] + (extras or [])
    manager.workers.register(WorkerRecord(name, 'fake-host', 1, queues))
    return name, queue


def expire_worker(manager: QueueManager, name: str, age_seconds: float = 3600) -> None:
    """Age a worker heartbeat past the timeout.
    """
    sql = f'UPDATE {manager.db.tables["Worker"]} SET last_heartbeat = :ts WHERE name = :name'
    manager.db.execute(sql, {'ts': time.time() - age_seconds, 'name': name})


def make_envelope(key: str, *args, job_class: str = None, enqueue_ts: int = None) -> JobEnvelope:
    return JobEnvelope(job_class or 'fixtures.RecordingJob', list(args), key,
                       int(time.time()) if enqueue_ts is None else enqueue_ts)


def queue_keys(manager: QueueManager, queue: str) -> list[tuple]:
    """(fifo_key, args) of every envelope in queue, head first.
    """
    items = []
    for payload in manager.queues.peek(queue, 0, 0):
        data = json.loads(payload)
        items.append((data.get('fifo_key'), data.get('args')))
    return items


# ============================================================================
# JOB CLASSES - Importable as fixtures.<Name>
# ============================================================================

class RecordingJob:
    """Records every perform call in class-level list.
    """
    calls = []

    @staticmethod
    def perform(*args):
        RecordingJob.calls.append(list(args))


class FailingJob:

    @staticmethod
    def perform(*args):
        raise RuntimeError(f'boom {args}')


class BoundJob:
    bind = True
    workers = []

    @staticmethod
    def perform(worker, *args):
        BoundJob.workers.append(worker)


class HookedJob:
    """Job with enqueue hooks; `allow` controls the before hook.
    """
    allow = True
    events = []

    @classmethod
    def before_enqueue_check(cls, *args):
        cls.events.append(('before', list(args)))
        return cls.allow

    @classmethod
    def after_enqueue_record(cls, *args):
        cls.events.append(('after', list(args)))

    @staticmethod
    def perform(*args):
        pass


@pytest.fixture(autouse=True)
def reset_job_records():
    RecordingJob.calls.clear()
    BoundJob.workers.clear()
    HookedJob.events.clear()
    HookedJob.allow = True
    yield


# ============================================================================
# WAIT HELPERS - Poll for conditions with timeout
# ============================================================================

def wait_for(condition: callable, timeout_sec: float = 5.0, check_interval: float = 0.05) -> bool:
    """Wait for condition function to return True.

    Usage:
        assert wait_for(lambda: manager.pending_total() == 0)
    """
    start = time.time()
    while time.time() - start < timeout_sec:
        if condition():
            return True
        time.sleep(check_interval)
    return False


class ConcurrencyTracker:
    """Tracks how many threads are inside a wrapped call at once.
    """

    def __init__(self, func: callable, hold_sec: float = 0.1):
        self.func = func
        self.hold_sec = hold_sec
        self.active = 0
        self.max_active = 0
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, *args, **kwargs):
        with self._lock:
            self.active += 1
            self.calls += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.hold_sec)
            return self.func(*args, **kwargs)
        finally:
            with self._lock:
                self.active -= 1
