import logging
import re
import secrets
from dataclasses import dataclass

from fifosync.db import DatabaseContext
from fifosync.router import Slot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Topic:
    """Naming for one logical FIFO domain.

    Worker queues, the pending queue and the poison queue all live under
    `<namespace>-<name>-`.
    """
    name: str = 'fifo'
    namespace: str = 'fifo'

    @property
    def queue_prefix(self) -> str:
        return f'{self.namespace}-{self.name}'

    @property
    def ring_key(self) -> str:
        return f'fifo-queue-lookup-{self.name}'

    @property
    def pending_queue(self) -> str:
        return f'{self.queue_prefix}-pending'

    @property
    def poison_queue(self) -> str:
        return f'{self.queue_prefix}-poison'

    @property
    def update_timestamp_key(self) -> str:
        return f'fifo_update_timestamp-{self.queue_prefix}'

    def is_worker_queue(self, queue: str) -> bool:
        """Only names shaped like `new_worker_queue` output belong to this topic.

        Topic `orders` must not claim queues of topic `orders-eu`.
        """
        return re.fullmatch(rf'{re.escape(self.queue_prefix)}-[0-9a-f]{{20}}', queue) is not None

    def new_worker_queue(self) -> str:
        """Unique per process start: 20 random hex characters.
        """
        return f'{self.queue_prefix}-{secrets.token_hex(10)}'


class RingStore:
    """Persisted ring of slots for one topic.

    Rows are read back ordered by slice, so a slot becomes visible to routing
    at its sorted position the moment its row is committed.
    """

    def __init__(self, db: DatabaseContext, topic: Topic):
        self.db = db
        self.key = topic.ring_key
        self.table = db.tables['Ring']

    def load(self) -> list[Slot]:
        """Return the committed ring snapshot, empty if never written.
        """
        sql = f'SELECT slice, queue FROM {self.table} WHERE ring_key = :key ORDER BY slice, queue'
        return [Slot(int(row[0]), row[1]) for row in self.db.query(sql, {'key': self.key})]

    def queue_names(self) -> list[str]:
        return [slot.queue for slot in self.load()]

    def insert(self, slot: Slot) -> None:
        sql = f'INSERT INTO {self.table} (ring_key, slice, queue) VALUES (:key, :slice, :queue)'
        self.db.execute(sql, {'key': self.key, 'slice': slot.slice, 'queue': slot.queue})
        logger.debug(f'Ring {self.key}: inserted {slot.encode()}')

    def remove(self, slot: Slot) -> bool:
        sql = f'DELETE FROM {self.table} WHERE ring_key = :key AND queue = :queue AND slice = :slice'
        result = self.db.execute(sql, {'key': self.key, 'queue': slot.queue, 'slice': slot.slice})
        logger.debug(f'Ring {self.key}: removed {slot.encode()}')
        return result.rowcount > 0

    def clear(self) -> int:
        result = self.db.execute(f'DELETE FROM {self.table} WHERE ring_key = :key', {'key': self.key})
        logger.warning(f'Cleared ring {self.key} ({result.rowcount} slots)')
        return result.rowcount
