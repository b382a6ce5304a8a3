"""Topic-level facade: producer routing, refresh requests and operator views.
"""
import json
import logging
import time

from fifosync.config import FifoConfig
from fifosync.db import DatabaseContext
from fifosync.jobs import after_enqueue_hooks, before_enqueue_hooks, class_path
from fifosync.jobs import perform_job
from fifosync.locks import LockCoordinator
from fifosync.queues import JobEnvelope, JobQueue
from fifosync.rebalance import Rebalancer
from fifosync.registry import WorkerRecord, WorkerRegistry
from fifosync.ring import RingStore, Topic
from fifosync.router import route
from fifosync.stats import StatsAggregator

logger = logging.getLogger(__name__)

__all__ = ['QueueManager', 'RefreshJob', 'enqueue_to', 'enqueue_topic']


class QueueManager:
    """FIFO routing manager for one topic.

    Composes the ring store, job queues, worker registry, lock coordinator
    and stats over a shared database context.
    """

    def __init__(self, topic: str = 'fifo', config: FifoConfig = None, db: DatabaseContext = None):
        """Initialize queue manager.

        Args:
            topic: Logical FIFO domain name
            config: Fifo configuration (defaults to FifoConfig())
            db: Optional shared database context (created from config if omitted)
        """
        self.config = config or FifoConfig()
        self.topic = Topic(topic, self.config.namespace)

        if db is None:
            db = DatabaseContext(self.config)
            db.ensure_ready()
        self.db = db

        self.ring = RingStore(db, self.topic)
        self.queues = JobQueue(db)
        self.workers = WorkerRegistry(db, self.config.heartbeat_timeout_sec)
        self.locks = LockCoordinator(db, self.config)
        self.stats = StatsAggregator(db)
        self.rebalancer = Rebalancer(self.topic, self.ring, self.queues, self.workers, self.locks, self.stats)

    @property
    def queue_prefix(self) -> str:
        return self.topic.queue_prefix

    @property
    def pending_queue_name(self) -> str:
        return self.topic.pending_queue

    @property
    def poison_queue_name(self) -> str:
        return self.topic.poison_queue

    @property
    def fifo_hash_table_name(self) -> str:
        return self.topic.ring_key

    def compute_queue_name(self, key: str) -> str:
        """Destination queue for a routing key against the latest ring.
        """
        return route(self.ring.load(), str(key), self.pending_queue_name)

    def enqueue(self, key: str, job_class, *args) -> str:
        """Route and push a job keyed for FIFO processing.

        Returns
            Destination queue name
        """
        key = str(key)
        queue = self.compute_queue_name(key)
        self.queues.validate(job_class, queue)

        if self.config.inline:
            args = json.loads(json.dumps(list(args)))
            perform_job(job_class, args)
            self.stats.record_processed(queue)
            return queue

        envelope = JobEnvelope(class_path(job_class), list(args), key, int(time.time()))
        self.queues.push(queue, envelope)
        logger.debug(f'{key}: enqueued {envelope.job_class} on {queue}')
        return queue

    def request_refresh(self) -> None:
        """Ask for the ring to be reconciled with the live worker set.

        Inline mode converges synchronously; otherwise the refresh timestamp
        is bumped and a RefreshJob is pushed on the shared refresh queue.
        """
        if self.config.inline:
            self.update_workers()
            return
        self.rebalancer.mark_refresh_requested()
        self.queues.push(self.config.refresh_queue, JobEnvelope(class_path(RefreshJob), [self.topic.name]))

    def update_workers(self) -> bool:
        return self.rebalancer.update_workers()

    def reset_ring(self) -> bool:
        """Drop every slot and rebuild the ring from the live workers.

        Existing worker queues become orphans and are swept into pending by
        the rebuild.
        """
        with self.locks.fleet_lock(self.queue_prefix):
            self.ring.clear()
        return self.update_workers()

    def clear_stats(self) -> int:
        return self.stats.clear(self.dump_queue_names())

    def all_stats(self) -> dict:
        return self.stats.snapshot(self.dump_queue_names())

    def get_stats_max_delay(self) -> int:
        return self.stats.max_delay()

    def get_stats_avg_delay(self) -> float:
        return self.stats.avg_delay()

    def get_stats_avg_dht_recalc(self) -> float:
        return self.stats.avg_recalc()

    def dht_times_rehashed(self) -> int:
        return self.stats.rehash_count()

    def get_processed_count(self, queue: str) -> int:
        return self.stats.get_processed_count(queue)

    def dump_dht(self) -> list[tuple[int, str]]:
        return [(slot.slice, slot.queue) for slot in self.ring.load()]

    def pretty_dump(self) -> list[str]:
        lines = [f'Slice #{slot.slice} -> {slot.queue}' for slot in self.ring.load()]
        for line in lines:
            logger.info(line)
        return lines

    def dump_queue_names(self) -> list[str]:
        return self.ring.queue_names()

    def peek_pending(self) -> list[str]:
        return self.queues.peek(self.pending_queue_name, 0, 0)

    def pending_total(self) -> int:
        return self.queues.length(self.pending_queue_name)

    def worker_for_queue(self, queue: str) -> WorkerRecord | None:
        return self.rebalancer.worker_for_queue(queue)

    def dump_queues(self) -> dict[str, list[str]]:
        """Backlog of every live worker queue.
        """
        return {queue: self.queues.peek(queue, 0, 0) for queue in self.rebalancer.available_queues()}

    def dump_queues_with_slices(self) -> list[dict]:
        """Per-slot operator view joined with worker and queue state.
        """
        rows = []
        for slot in self.ring.load():
            worker = self.worker_for_queue(slot.queue)
            row = {
                'slice': slot.slice,
                'queue': slot.queue,
                'hostname': '?',
                'pid': '?',
                'status': '?',
                'started': '?',
                'heartbeat': '?',
                'processed': self.get_processed_count(slot.queue),
                'pending': self.queues.length(slot.queue),
            }
            if worker:
                row.update({
                    'hostname': worker.hostname,
                    'pid': worker.pid,
                    'status': 'paused' if worker.paused else worker.state,
                    'started': worker.started_on,
                    'heartbeat': worker.last_heartbeat,
                })
            rows.append(row)
        return rows

    def orphaned_queues(self) -> list[str]:
        return self.rebalancer.orphaned_queues()


class RefreshJob:
    """Trigger job consumed from the shared refresh queue.
    """
    bind = True

    @staticmethod
    def perform(worker, topic: str = 'fifo'):
        manager = QueueManager(topic, worker.config, worker.db)
        manager.update_workers()


def enqueue_topic(topic: str, key: str, job_class, *args, config: FifoConfig = None,
                  db: DatabaseContext = None) -> bool | None:
    """Enqueue with the job class's enqueue hooks.

    Any `before_enqueue*` hook returning False cancels the enqueue.

    Returns
        True if enqueued, None if cancelled by a hook
    """
    before_hooks = [hook(*args) for hook in before_enqueue_hooks(job_class)]
    if any(result is False for result in before_hooks):
        logger.debug(f'Enqueue of {class_path(job_class)} cancelled by before_enqueue hook')
        return None

    manager = QueueManager(topic, config, db)
    manager.enqueue(key, job_class, *args)

    for hook in after_enqueue_hooks(job_class):
        hook(*args)

    return True


def enqueue_to(key: str, job_class, *args, config: FifoConfig = None, db: DatabaseContext = None) -> bool | None:
    return enqueue_topic('fifo', key, job_class, *args, config=config, db=db)
