"""Named FIFO job queues stored in the Item table.

Items are ordered by their monotonic id; pushing always appends at the tail
and reserving always takes the head.
"""
import json
import logging
import time
from dataclasses import dataclass, field

from sqlalchemy import text

from fifosync.db import DatabaseContext
from fifosync.exceptions import MalformedEnvelope, NoClassError, NoQueueError
from fifosync.jobs import class_path

logger = logging.getLogger(__name__)


@dataclass
class JobEnvelope:
    """Stored job. Only `fifo_key` and `enqueue_ts` matter to routing.
    """
    job_class: str
    args: list = field(default_factory=list)
    fifo_key: str = None
    enqueue_ts: int = None

    def encode(self) -> str:
        data = {'class': self.job_class, 'args': self.args}
        if self.fifo_key is not None:
            data['fifo_key'] = self.fifo_key
        if self.enqueue_ts is not None:
            data['enqueue_ts'] = self.enqueue_ts
        return json.dumps(data)

    @classmethod
    def decode(cls, payload: str) -> 'JobEnvelope':
        """Parse a stored payload.

        Raises
            MalformedEnvelope: If payload is not a JSON object with a class
        """
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, TypeError) as e:
            raise MalformedEnvelope(f'Undecodable payload: {e}') from e
        if not isinstance(data, dict) or not data.get('class'):
            raise MalformedEnvelope(f'Payload is not a job envelope: {payload[:100]!r}')
        args = data.get('args') or []
        if not isinstance(args, list):
            raise MalformedEnvelope(f'Job args must be a list, got {type(args).__name__}')
        return cls(data['class'], args, data.get('fifo_key'), data.get('enqueue_ts'))


class JobQueue:
    """Queue primitives consumed by the router, rebalancer and workers.
    """

    def __init__(self, db: DatabaseContext):
        self.db = db
        self.queue_table = db.tables['Queue']
        self.item_table = db.tables['Item']

    def _watch(self, conn, queue: str) -> None:
        conn.execute(text(f"""
        INSERT INTO {self.queue_table} (name, created_on)
        VALUES (:name, :now)
        ON CONFLICT (name) DO NOTHING
        """), {'name': queue, 'now': time.time()})

    def _append(self, conn, queue: str, payload: str) -> None:
        conn.execute(text(f"""
        INSERT INTO {self.item_table} (queue, payload, created_on)
        VALUES (:queue, :payload, :now)
        """), {'queue': queue, 'payload': payload, 'now': time.time()})

    def _pop_head(self, conn, queue: str) -> str | None:
        row = conn.execute(text(f"""
        DELETE FROM {self.item_table}
        WHERE id = (
            SELECT id FROM {self.item_table}
            WHERE queue = :queue
            ORDER BY id
            LIMIT 1
        )
        RETURNING payload
        """), {'queue': queue}).first()
        return row[0] if row else None

    def validate(self, job_class, queue: str) -> None:
        """Raises
            NoQueueError: If queue is empty
            NoClassError: If job class is missing
        """
        if not queue:
            raise NoQueueError(f'Jobs must be placed onto a queue, got {queue!r}')
        if not job_class or not class_path(job_class).strip():
            raise NoClassError('Jobs must be given a class')

    def push(self, queue: str, envelope: JobEnvelope | str) -> None:
        """Append an envelope (or raw payload) at the tail of queue.
        """
        payload = envelope if isinstance(envelope, str) else envelope.encode()
        with self.db.connect() as conn:
            self._watch(conn, queue)
            self._append(conn, queue, payload)
            conn.commit()

    def reserve(self, queue: str) -> str | None:
        """Atomically remove and return the head payload, None if empty.
        """
        with self.db.connect() as conn:
            payload = self._pop_head(conn, queue)
            conn.commit()
        return payload

    def move_head(self, from_queue: str, to_queue: callable) -> tuple[str, str] | None:
        """Atomically pop the head of one queue and append it to another.

        Args:
            from_queue: Source queue name
            to_queue: Destination name, or callable(payload) -> destination name

        Returns
            Tuple of (payload, destination) or None if source was empty
        """
        with self.db.connect() as conn:
            payload = self._pop_head(conn, from_queue)
            if payload is None:
                conn.rollback()
                return None
            destination = to_queue(payload) if callable(to_queue) else to_queue
            self._watch(conn, destination)
            self._append(conn, destination, payload)
            conn.commit()
        return payload, destination

    def transfer(self, from_queue: str, to_queue: str) -> int:
        """Move the current backlog of one queue to the tail of another.

        The number of move attempts is fixed by the source length at call time.

        Returns
            Number of items moved
        """
        moved = 0
        for _ in range(self.length(from_queue)):
            # A concurrent reserve may win the head; keep going for the full count.
            if self.move_head(from_queue, to_queue) is None:
                continue
            moved += 1
        logger.info(f'transfer: {from_queue} -> {to_queue} ({moved} items)')
        return moved

    def peek(self, queue: str, start: int = 0, count: int = 1) -> list[str]:
        """Payloads from `start`; count 0 returns everything from start.
        """
        sql = f'SELECT payload FROM {self.item_table} WHERE queue = :queue ORDER BY id'
        if not count:
            return [row[0] for row in self.db.query(sql, {'queue': queue})][start:]
        sql += ' LIMIT :count OFFSET :offset'
        return [row[0] for row in self.db.query(sql, {'queue': queue, 'count': count, 'offset': start})]

    def length(self, queue: str) -> int:
        sql = f'SELECT COUNT(*) FROM {self.item_table} WHERE queue = :queue'
        return int(self.db.scalar(sql, {'queue': queue}) or 0)

    def list_queue_names(self) -> list[str]:
        """Watched queue names plus any queue still holding items.
        """
        sql = f"""
        SELECT name FROM {self.queue_table}
        UNION
        SELECT DISTINCT queue FROM {self.item_table}
        ORDER BY 1
        """
        return [row[0] for row in self.db.query(sql)]

    def retire(self, queue: str, to_queue: str) -> int:
        """Move every item of queue to the tail of another and forget the name.

        Runs in one transaction and drains until empty, so items pushed after
        the caller last looked at the queue are moved, never deleted.

        Returns
            Number of items moved
        """
        moved = 0
        with self.db.connect() as conn:
            while True:
                payload = self._pop_head(conn, queue)
                if payload is None:
                    break
                if not moved:
                    self._watch(conn, to_queue)
                self._append(conn, to_queue, payload)
                moved += 1
            conn.execute(text(f'DELETE FROM {self.queue_table} WHERE name = :queue'), {'queue': queue})
            conn.commit()
        logger.info(f'retire: {queue} -> {to_queue} ({moved} items)')
        return moved

    def remove_queue(self, queue: str) -> None:
        """Forget a queue and delete its items.
        """
        with self.db.connect() as conn:
            conn.execute(text(f'DELETE FROM {self.item_table} WHERE queue = :queue'), {'queue': queue})
            conn.execute(text(f'DELETE FROM {self.queue_table} WHERE name = :queue'), {'queue': queue})
            conn.commit()
        logger.debug(f'Removed queue {queue}')
