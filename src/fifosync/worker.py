"""Generic polling worker and the fifo coordinator plugged into it.

The worker knows nothing about rings. A `WorkerCoordinator` is handed to
it and invoked at fixed hook points:

- subscriptions(extras): queue list in priority order
- before_reserve(worker, queue): False skips the queue for this poll
- after_reserve(worker, envelope, queue): a job was claimed
- after_perform(worker, envelope, queue): a job completed successfully
- after_register(worker) / after_unregister(worker): lifecycle
- after_expire(worker, names): dead workers were removed from the registry
"""
import json
import logging
import os
import socket
import threading
import time
from dataclasses import dataclass

from fifosync.config import FifoConfig
from fifosync.db import DatabaseContext
from fifosync.exceptions import MalformedEnvelope
from fifosync.jobs import perform_job
from fifosync.manager import QueueManager
from fifosync.queues import JobEnvelope, JobQueue
from fifosync.registry import WorkerRecord, WorkerRegistry

logger = logging.getLogger(__name__)

__all__ = ['Worker', 'WorkerCoordinator', 'FifoWorkerCoordinator', 'fifo_worker',
           'Found', 'NotFound', 'Failed', 'NOT_FOUND', 'HeartbeatMonitor', 'DeadWorkerMonitor']


# ============================================================
# RESERVE RESULTS
# ============================================================

@dataclass
class Found:
    envelope: JobEnvelope
    queue: str


@dataclass
class NotFound:
    pass


NOT_FOUND = NotFound()


@dataclass
class Failed:
    """Reserve failure.

    kind is 'reserve' for backend errors (fatal for the loop) or
    'malformed' for an undecodable payload (parked, loop continues).
    """
    kind: str
    error: Exception
    queue: str = None
    payload: str = None


# ============================================================
# MONITORS
# ============================================================

class Monitor:
    """Base class for background monitoring threads.
    """

    def __init__(self, name: str, interval: float, shutdown_event: threading.Event):
        """Initialize monitor.

        Args:
            name: Monitor name
            interval: Check interval in seconds
            shutdown_event: Event to signal shutdown
        """
        self.name = name
        self.interval = interval
        self.shutdown_event = shutdown_event
        self.thread = None
        self._stop_requested = threading.Event()

    def start(self) -> None:
        self.thread = threading.Thread(target=self._run, daemon=True, name=self.name)
        self.thread.start()
        logger.info(f'{self.name} monitor started')

    def stop(self, timeout: float = 5.0) -> None:
        """Request the monitor to stop and wait for an in-flight check to finish.
        """
        self._stop_requested.set()
        if self.thread is not None and self.thread is not threading.current_thread():
            self.thread.join(timeout=timeout)

    def _run(self) -> None:
        while not self.shutdown_event.is_set() and not self._stop_requested.is_set():
            try:
                self.check()
            except Exception as e:
                logger.error(f'{self.name} monitor error: {e}', exc_info=True)
                if self._stop_requested.wait(timeout=1.0):
                    break
                continue

            if self._stop_requested.wait(timeout=self.interval):
                break

    def check(self) -> None:
        raise NotImplementedError


class HeartbeatMonitor(Monitor):
    """Sends periodic heartbeats to keep the worker live.
    """

    def __init__(self, worker: 'Worker', shutdown_event: threading.Event):
        super().__init__(f'heartbeat-{worker.name}', worker.config.heartbeat_interval_sec, shutdown_event)
        self.worker = worker

    def check(self) -> None:
        if self.worker.registry.heartbeat(self.worker.name):
            return
        logger.warning(f'Worker {self.worker.name} was removed as expired, registering again')
        self.worker.registry.register(self.worker.record())
        self.worker.coordinator.after_register(self.worker)


class DeadWorkerMonitor(Monitor):
    """Removes registry rows of workers whose heartbeat expired.

    Every worker runs one; deletes are conditional so concurrent monitors
    remove each row once.
    """

    def __init__(self, worker: 'Worker', shutdown_event: threading.Event):
        super().__init__(f'dead-worker-{worker.name}', worker.config.dead_worker_check_interval_sec,
                         shutdown_event)
        self.worker = worker

    def check(self) -> None:
        removed = self.worker.registry.remove_expired(keep=self.worker.name)
        if removed:
            logger.warning(f'Detected dead workers: {removed}')
            self.worker.coordinator.after_expire(self.worker, removed)


# ============================================================
# COORDINATORS
# ============================================================

class WorkerCoordinator:
    """No-op hook implementation; subclass or duck-type to plug in.
    """

    def subscriptions(self, extras: list[str]) -> list[str]:
        return list(extras)

    def before_reserve(self, worker: 'Worker', queue: str) -> bool:
        return True

    def after_reserve(self, worker: 'Worker', envelope: JobEnvelope, queue: str) -> None:
        pass

    def after_perform(self, worker: 'Worker', envelope: JobEnvelope, queue: str) -> None:
        pass

    def after_register(self, worker: 'Worker') -> None:
        pass

    def after_unregister(self, worker: 'Worker') -> None:
        pass

    def after_expire(self, worker: 'Worker', names: list[str]) -> None:
        pass


class FifoWorkerCoordinator(WorkerCoordinator):
    """Hooks that tie a worker into a topic's ring.

    Subscribes to the shared refresh queue first, then a queue unique to
    this process, then any extras.
    """

    def __init__(self, manager: QueueManager):
        self.manager = manager
        self.main_queue_name = manager.topic.new_worker_queue()

    def subscriptions(self, extras: list[str]) -> list[str]:
        return [self.manager.config.refresh_queue, self.main_queue_name] + list(extras)

    def before_reserve(self, worker: 'Worker', queue: str) -> bool:
        if queue == self.main_queue_name and worker.paused():
            logger.debug(f'{queue} paused, not claiming')
            return False
        return True

    def after_reserve(self, worker: 'Worker', envelope: JobEnvelope, queue: str) -> None:
        if not envelope.enqueue_ts:
            return
        delay = int(time.time()) - int(envelope.enqueue_ts)
        self.manager.stats.record_delay(delay)

    def after_perform(self, worker: 'Worker', envelope: JobEnvelope, queue: str) -> None:
        if queue == self.main_queue_name:
            self.manager.stats.record_processed(queue)

    def after_register(self, worker: 'Worker') -> None:
        logger.info('Fifo Startup - Updating worker list')
        self.manager.request_refresh()

    def after_unregister(self, worker: 'Worker') -> None:
        logger.info('Fifo Shutdown - Updating worker list')
        self.manager.request_refresh()

    def after_expire(self, worker: 'Worker', names: list[str]) -> None:
        logger.info(f'Fifo Dead Workers {names} - Updating worker list')
        self.manager.request_refresh()


# ============================================================
# WORKER
# ============================================================

class Worker:
    """Polls its queues in priority order and performs jobs.
    """

    def __init__(
        self,
        queues: list[str] = None,
        config: FifoConfig = None,
        db: DatabaseContext = None,
        coordinator: WorkerCoordinator = None,
        hostname: str = None,
    ):
        """Initialize worker.

        Args:
            queues: Extra queues to subscribe to (after coordinator queues)
            config: Fifo configuration
            db: Optional shared database context
            coordinator: Hook implementation (defaults to a no-op coordinator)
            hostname: Reported hostname (defaults to socket.gethostname())
        """
        self.config = config or FifoConfig()
        if db is None:
            db = DatabaseContext(self.config)
            db.ensure_ready()
        self.db = db
        self.job_queue = JobQueue(db)
        self.registry = WorkerRegistry(db, self.config.heartbeat_timeout_sec)
        self.coordinator = coordinator or WorkerCoordinator()

        subscriptions = self.coordinator.subscriptions([q.strip() for q in (queues or [])])
        self.queues = list(dict.fromkeys(q for q in subscriptions if q))
        if not self.queues:
            raise ValueError('Worker must subscribe to at least one queue')

        self.hostname = hostname or socket.gethostname()
        self.pid = os.getpid()
        self.name = f'{self.hostname}:{self.pid}:{",".join(self.queues)}'
        self.processed = 0
        self.failed = 0
        self._shutdown_event = threading.Event()
        self._monitors = []

    def __repr__(self) -> str:
        return self.name

    def record(self) -> WorkerRecord:
        return WorkerRecord(self.name, self.hostname, self.pid, self.queues, state='idle')

    def register_worker(self) -> None:
        """Enter the registry, start monitors, run the register hook.
        """
        self.registry.register(self.record())
        self._monitors = [
            HeartbeatMonitor(self, self._shutdown_event),
            DeadWorkerMonitor(self, self._shutdown_event),
        ]
        for monitor in self._monitors:
            monitor.start()
        self.coordinator.after_register(self)

    def unregister_worker(self) -> None:
        """Stop monitors before deleting the row so no heartbeat re-registers it.
        """
        for monitor in self._monitors:
            monitor.stop()
        self._monitors = []
        self.registry.unregister(self.name)
        self.coordinator.after_unregister(self)

    def paused(self) -> bool:
        return self.registry.is_paused(self.name)

    def shutdown(self) -> None:
        logger.info(f'Shutdown requested for {self.name}')
        self._shutdown_event.set()

    def reserve(self) -> Found | NotFound | Failed:
        """Claim the first available job across subscribed queues.
        """
        for queue in self.queues:
            if not self.coordinator.before_reserve(self, queue):
                continue
            logger.debug(f'Checking {queue}')
            try:
                payload = self.job_queue.reserve(queue)
            except Exception as e:
                logger.exception(f'Error reserving job: {e!r}')
                return Failed('reserve', e, queue)
            if payload is None:
                continue

            try:
                envelope = JobEnvelope.decode(payload)
            except MalformedEnvelope as e:
                logger.error(f'Malformed job on {queue}: {e}')
                return Failed('malformed', e, queue, payload)

            logger.debug(f'Found job on {queue}')
            try:
                self.coordinator.after_reserve(self, envelope, queue)
            except Exception as e:
                logger.warning(f'after_reserve hook failed for job on {queue}: {e}')
            return Found(envelope, queue)

        return NOT_FOUND

    def process(self, found: Found) -> bool:
        """Perform a claimed job; failures are parked on the failed queue.

        Returns
            True if the job succeeded
        """
        envelope = found.envelope
        self.registry.set_state(self.name, 'working')
        try:
            perform_job(envelope.job_class, envelope.args, worker=self)
        except Exception as e:
            logger.error(f'{envelope.job_class} failed on {found.queue}: {e}', exc_info=True)
            self.failed += 1
            self.park_failed(envelope.encode(), e, found.queue)
            return False
        finally:
            self.registry.set_state(self.name, 'idle')

        self.processed += 1
        self.coordinator.after_perform(self, envelope, found.queue)
        return True

    def park_failed(self, payload: str, error: Exception, queue: str) -> None:
        record = {
            'failed_at': time.time(),
            'payload': payload,
            'exception': type(error).__name__,
            'error': str(error),
            'worker': self.name,
            'queue': queue,
        }
        self.job_queue.push(self.config.failed_queue, json.dumps(record))

    def work(self, interval: float = None, burst: bool = False, max_jobs: int = None) -> int:
        """Main processing loop.

        Args:
            interval: Seconds to sleep when no job is found
            burst: Return as soon as all queues are empty
            max_jobs: Return after this many jobs were attempted

        Returns
            Number of jobs attempted

        Raises
            Exception: Backend errors from reserve are re-raised
        """
        interval = self.config.poll_interval_sec if interval is None else interval
        attempted = 0
        self.register_worker()
        try:
            while not self._shutdown_event.is_set():
                result = self.reserve()
                if isinstance(result, Found):
                    self.process(result)
                    attempted += 1
                    if max_jobs and attempted >= max_jobs:
                        break
                elif isinstance(result, Failed):
                    if result.kind != 'malformed':
                        raise result.error
                    self.park_failed(result.payload, result.error, result.queue)
                else:
                    if burst:
                        break
                    self._shutdown_event.wait(interval)
        finally:
            self.unregister_worker()
            self.db.dispose()
        return attempted


def fifo_worker(topic: str = 'fifo', queues: list[str] = None, config: FifoConfig = None,
                db: DatabaseContext = None, hostname: str = None) -> Worker:
    """Build a worker participating in a topic's ring.
    """
    manager = QueueManager(topic, config, db)
    coordinator = FifoWorkerCoordinator(manager)
    return Worker(queues, manager.config, manager.db, coordinator, hostname)
