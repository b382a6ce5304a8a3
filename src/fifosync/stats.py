"""Operator counters for queueing delay and rebalance cost.

Counter updates from concurrent workers race; the aggregates are
approximate.
"""
import logging

from sqlalchemy import text

from fifosync.db import DatabaseContext

logger = logging.getLogger(__name__)

MAX_DELAY = 'fifo-stats-max-delay'
ACCUMULATED_DELAY = 'fifo-stats-accumulated-delay'
ACCUMULATED_COUNT = 'fifo-stats-accumulated-count'
REHASH_COUNT = 'fifo-stats-dht-rehash'
ACCUMULATED_RECALC_TIME = 'fifo-stats-accumulated-recalc-time'
RECALC_COUNT = 'fifo-stats-accumulated-recalc-count'
POISON_COUNT = 'fifo-stats-poison-count'

GLOBAL_COUNTERS = [
    MAX_DELAY,
    ACCUMULATED_DELAY,
    ACCUMULATED_COUNT,
    REHASH_COUNT,
    ACCUMULATED_RECALC_TIME,
    RECALC_COUNT,
    POISON_COUNT,
]


def processed_counter(queue: str) -> str:
    return f'queue-stats-{queue}'


class CounterStore:
    """Named numeric counters in the Counter table.
    """

    def __init__(self, db: DatabaseContext):
        self.db = db
        self.table = db.tables['Counter']

    def get(self, name: str, default: float = 0) -> float:
        value = self.db.scalar(f'SELECT value FROM {self.table} WHERE name = :name', {'name': name})
        return default if value is None else value

    def set(self, name: str, value: float) -> None:
        sql = f"""
        INSERT INTO {self.table} (name, value) VALUES (:name, :value)
        ON CONFLICT (name) DO UPDATE SET value = EXCLUDED.value
        """
        self.db.execute(sql, {'name': name, 'value': value})

    def incr(self, name: str, by: float = 1) -> None:
        sql = f"""
        INSERT INTO {self.table} (name, value) VALUES (:name, :by)
        ON CONFLICT (name) DO UPDATE SET value = {self.table}.value + EXCLUDED.value
        """
        self.db.execute(sql, {'name': name, 'by': by})

    def set_max(self, name: str, value: float) -> bool:
        """Raise counter to value if it is higher.

        Returns
            True if the stored value changed
        """
        sql = f"""
        INSERT INTO {self.table} (name, value) VALUES (:name, :value)
        ON CONFLICT (name) DO UPDATE SET value = EXCLUDED.value
        WHERE {self.table}.value < EXCLUDED.value
        """
        return self.db.execute(sql, {'name': name, 'value': value}).rowcount > 0

    def delete(self, name: str) -> None:
        self.db.execute(f'DELETE FROM {self.table} WHERE name = :name', {'name': name})

    def delete_many(self, names: list[str]) -> int:
        """Delete several counters in one transaction.
        """
        deleted = 0
        with self.db.connect() as conn:
            for name in names:
                result = conn.execute(text(f'DELETE FROM {self.table} WHERE name = :name'), {'name': name})
                deleted += result.rowcount
            conn.commit()
        return deleted


class StatsAggregator:
    """Delay and rebalance statistics plus per-queue processed counts.
    """

    def __init__(self, db: DatabaseContext):
        self.counters = CounterStore(db)

    def record_delay(self, delay: int) -> None:
        """Record queueing delay (seconds) of a claimed job.
        """
        self.counters.incr(ACCUMULATED_DELAY, delay)
        self.counters.incr(ACCUMULATED_COUNT)
        if self.counters.set_max(MAX_DELAY, delay):
            logger.debug(f'New max queueing delay {delay}s')

    def record_rehash(self) -> None:
        self.counters.incr(REHASH_COUNT)

    def record_recalc(self, duration: float) -> None:
        self.counters.incr(ACCUMULATED_RECALC_TIME, duration)
        self.counters.incr(RECALC_COUNT)

    def record_poison(self) -> None:
        self.counters.incr(POISON_COUNT)

    def record_processed(self, queue: str) -> None:
        self.counters.incr(processed_counter(queue))

    def forget_queue(self, queue: str) -> None:
        self.counters.delete(processed_counter(queue))

    def get_processed_count(self, queue: str) -> int:
        return int(self.counters.get(processed_counter(queue)))

    def max_delay(self) -> int:
        return int(self.counters.get(MAX_DELAY))

    def avg_delay(self) -> float:
        total_items = self.counters.get(ACCUMULATED_COUNT)
        if not total_items:
            return 0
        return self.counters.get(ACCUMULATED_DELAY) / total_items

    def avg_recalc(self) -> float:
        total = self.counters.get(RECALC_COUNT)
        if not total:
            return 0
        return self.counters.get(ACCUMULATED_RECALC_TIME) / total

    def rehash_count(self) -> int:
        return int(self.counters.get(REHASH_COUNT))

    def poison_count(self) -> int:
        return int(self.counters.get(POISON_COUNT))

    def clear(self, queues: list[str]) -> int:
        """Reset global counters and the processed counters of queues.
        """
        deleted = self.counters.delete_many(GLOBAL_COUNTERS + [processed_counter(q) for q in queues])
        logger.info(f'Cleared {deleted} stats counters')
        return deleted

    def snapshot(self, queues: list[str]) -> dict:
        """Read-only consolidated view for operators.
        """
        return {
            'dht_times_rehashed': self.rehash_count(),
            'avg_delay': self.avg_delay(),
            'avg_dht_recalc': self.avg_recalc(),
            'max_delay': self.max_delay(),
            'poison_count': self.poison_count(),
            'processed': {q: self.get_processed_count(q) for q in queues},
        }
