"""Ring convergence against the live worker set.

One pass, run under the topic's fleet lock:

1. Compare queues of live workers with the queues in the ring; stop if equal.
2. Remove slots of gone workers, moving their backlog to pending.
3. Insert slots for new workers. Each insertion shrinks exactly one
   neighbour's range, so that neighbour is paused and drained to pending
   before the new slot becomes visible.
4. Re-route everything that was in pending when the drain started.
5. Sweep namespaced queues that have no slot into pending.

A refresh request arriving while a pass runs bumps the refresh timestamp and
causes another pass.
"""
import contextlib
import logging
import time

from fifosync.db import log_duration
from fifosync.exceptions import LockNotAcquired, MalformedEnvelope
from fifosync.locks import LockCoordinator
from fifosync.queues import JobEnvelope, JobQueue
from fifosync.registry import WorkerRecord, WorkerRegistry
from fifosync.ring import RingStore, Topic
from fifosync.router import Slot, generate_slice, route, split_neighbor
from fifosync.stats import StatsAggregator

logger = logging.getLogger(__name__)


class Rebalancer:
    """Mutates the ring of one topic and migrates affected backlog.
    """

    def __init__(self, topic: Topic, ring: RingStore, queues: JobQueue, workers: WorkerRegistry,
                 locks: LockCoordinator, stats: StatsAggregator):
        self.topic = topic
        self.ring = ring
        self.queues = queues
        self.workers = workers
        self.locks = locks
        self.stats = stats

    @property
    def pending_queue(self) -> str:
        return self.topic.pending_queue

    def update_workers(self) -> bool:
        """Converge the ring, repeating while refresh requests keep arriving.

        Returns
            True if the ring converged, False if the attempt was abandoned
            because a lock could not be acquired
        """
        while True:
            start_time = time.time()
            try:
                with self.locks.fleet_lock(self.topic.queue_prefix):
                    start_timestamp = self.refresh_timestamp()
                    self.converge()
                    current_timestamp = self.refresh_timestamp()
            except LockNotAcquired as e:
                logger.warning(f'unable to lock DHT for {self.topic.queue_prefix}, skipping rebalance: {e}')
                return False

            self.stats.record_recalc(time.time() - start_time)

            if start_timestamp == current_timestamp:
                return True
            logger.info('refresh requested during rebalance, recomputing')

    def converge(self) -> None:
        """Single pass; caller must hold the fleet lock.
        """
        self.process_ring()
        logger.info('reinserting items from pending')
        self.reinsert_pending_items()
        if self.cleanup_queues():
            self.mark_refresh_requested()

    def refresh_timestamp(self) -> float | None:
        return self.stats.counters.get(self.topic.update_timestamp_key, None)

    def mark_refresh_requested(self) -> None:
        self.stats.counters.set(self.topic.update_timestamp_key, time.time())

    def available_queues(self) -> list[str]:
        """Distinct topic queue of every live worker, in registration order.
        """
        queues = []
        for worker in self.workers.live_workers():
            queue = self._worker_queue(worker)
            if queue and queue not in queues:
                queues.append(queue)
        return queues

    def _worker_queue(self, worker: WorkerRecord) -> str | None:
        return next((q for q in worker.queues if self.topic.is_worker_queue(q)), None)

    def worker_for_queue(self, queue: str) -> WorkerRecord | None:
        for worker in self.workers.list_workers():
            if self._worker_queue(worker) == queue:
                return worker
        return None

    def process_ring(self) -> bool:
        """Apply slot removals and insertions.

        Returns
            True if membership changed
        """
        slots = self.ring.load()
        current_queues = {slot.queue for slot in slots}
        available_queues = self.available_queues()

        if set(available_queues) == current_queues:
            return False

        self.stats.record_rehash()

        for slot in slots:
            if slot.queue not in available_queues:
                self.remove_slot(slot)

        for queue in available_queues:
            if queue not in current_queues:
                self.insert_slot(queue)
                logger.info(f'queue {queue} was added.')

        return True

    def remove_slot(self, slot: Slot) -> None:
        with self.locks.queue_lock(slot.queue):
            self.queues.transfer(slot.queue, self.pending_queue)
            self.ring.remove(slot)
            self.stats.forget_queue(slot.queue)
        logger.info(f'queue {slot.queue} removed.')

    def insert_slot(self, queue: str, new_slice: int = None) -> Slot:
        """Insert queue at a (random) slice, draining the neighbour it splits.
        """
        if new_slice is None:
            new_slice = generate_slice()
        slot = Slot(new_slice, queue)
        slots = self.ring.load()

        position, split_queue = split_neighbor(slots, new_slice)
        logger.info(f'insert {queue} -> {new_slice}')

        if split_queue is None:
            self.ring.insert(slot)
            return slot

        if position is None:
            logger.debug(f'{queue} becomes the highest slot, splitting wrap-around owner {split_queue}')
        else:
            logger.debug(f'{queue} inserted before {slots[position].queue}, splitting {split_queue}')

        with self.locks.queue_lock(split_queue), self.pause_queues([split_queue]):
            self.queues.transfer(split_queue, self.pending_queue)
            self.ring.insert(slot)

        return slot

    @contextlib.contextmanager
    def pause_queues(self, queue_names: list[str]):
        """Pause the workers owning queues for the duration of the block.

        Queues without a registered worker are skipped.
        """
        try:
            for queue_name in queue_names:
                worker = self.worker_for_queue(queue_name)
                if worker:
                    self.workers.pause(worker.name)
            yield
        finally:
            for queue_name in queue_names:
                worker = self.worker_for_queue(queue_name)
                if worker:
                    self.workers.resume(worker.name)

    def _destination(self, ring: list[Slot], payload: str) -> str:
        try:
            envelope = JobEnvelope.decode(payload)
            if not isinstance(envelope.fifo_key, str):
                raise MalformedEnvelope(f'fifo_key must be a string, got {type(envelope.fifo_key).__name__}')
        except MalformedEnvelope as e:
            logger.warning(f'parking poison item from {self.pending_queue}: {e}')
            return self.topic.poison_queue
        return route(ring, envelope.fifo_key, self.pending_queue)

    @log_duration('reinsert_pending_items')
    def reinsert_pending_items(self) -> int:
        """Route every item present in pending at call time.

        Returns
            Number of items routed to a worker queue
        """
        ring = self.ring.load()
        moved = 0
        for _ in range(self.queues.length(self.pending_queue)):
            result = self.queues.move_head(self.pending_queue, lambda payload: self._destination(ring, payload))
            if result is None:
                continue
            _, destination = result
            if destination == self.topic.poison_queue:
                self.stats.record_poison()
            elif destination != self.pending_queue:
                moved += 1
            logger.debug(f'{self.pending_queue} -> {destination}')
        return moved

    def orphaned_queues(self) -> list[str]:
        current_queues = set(self.ring.queue_names())
        return [queue for queue in self.queues.list_queue_names()
                if self.topic.is_worker_queue(queue) and queue not in current_queues]

    def cleanup_queues(self) -> int:
        """Drain and remove orphaned queues.

        Returns
            Number of items moved to pending
        """
        moved = 0
        for queue in self.orphaned_queues():
            if self.queues.length(queue) > 0:
                logger.info(f'transfer non empty orphaned queue {queue} items to pending')
            logger.info(f'remove orphaned queue {queue}.')
            moved += self.queues.retire(queue, self.pending_queue)
        return moved
