"""Worker registry: membership, heartbeats and cooperative pause flags.
"""
import json
import logging
import time
from dataclasses import dataclass, field

from sqlalchemy import text

from fifosync.db import DatabaseContext, retry_with_backoff

logger = logging.getLogger(__name__)


@dataclass
class WorkerRecord:
    name: str
    hostname: str
    pid: int
    queues: list[str] = field(default_factory=list)
    started_on: float = None
    last_heartbeat: float = None
    paused: bool = False
    state: str = 'idle'


class WorkerRegistry:
    """Handles worker registration, heartbeats and pause/resume.
    """

    def __init__(self, db: DatabaseContext, heartbeat_timeout: float):
        """Initialize worker registry.

        Args:
            db: Database context
            heartbeat_timeout: Seconds without heartbeat before a worker is expired
        """
        self.db = db
        self.table = db.tables['Worker']
        self.heartbeat_timeout = heartbeat_timeout

    def _record(self, row) -> WorkerRecord:
        return WorkerRecord(
            name=row.name,
            hostname=row.hostname,
            pid=row.pid,
            queues=json.loads(row.queues),
            started_on=row.started_on,
            last_heartbeat=row.last_heartbeat,
            paused=bool(row.paused),
            state=row.state,
        )

    @retry_with_backoff()
    def register(self, record: WorkerRecord) -> None:
        """Register worker with initial heartbeat.
        """
        now = time.time()
        record.started_on = record.started_on or now
        record.last_heartbeat = now
        sql = f"""
        INSERT INTO {self.table} (name, hostname, pid, queues, started_on, last_heartbeat, paused, state)
        VALUES (:name, :hostname, :pid, :queues, :started_on, :heartbeat, :paused, :state)
        ON CONFLICT (name) DO UPDATE
        SET last_heartbeat = EXCLUDED.last_heartbeat, queues = EXCLUDED.queues, state = EXCLUDED.state
        """
        self.db.execute(sql, {
            'name': record.name,
            'hostname': record.hostname,
            'pid': record.pid,
            'queues': json.dumps(record.queues),
            'started_on': record.started_on,
            'heartbeat': record.last_heartbeat,
            'paused': record.paused,
            'state': record.state,
        })
        logger.info(f'Worker {record.name} registered with heartbeat')

    def unregister(self, name: str) -> None:
        self.db.execute(f'DELETE FROM {self.table} WHERE name = :name', {'name': name})
        logger.info(f'Worker {name} unregistered')

    def heartbeat(self, name: str) -> bool:
        """Refresh last_heartbeat.

        Returns
            False if the row is gone (worker was pruned as expired)
        """
        sql = f'UPDATE {self.table} SET last_heartbeat = :now WHERE name = :name'
        result = self.db.execute(sql, {'now': time.time(), 'name': name})
        logger.debug(f'Heartbeat sent by {name}')
        return result.rowcount > 0

    def set_state(self, name: str, state: str) -> None:
        sql = f'UPDATE {self.table} SET state = :state WHERE name = :name'
        self.db.execute(sql, {'state': state, 'name': name})

    def get(self, name: str) -> WorkerRecord | None:
        rows = self.db.query(f'SELECT * FROM {self.table} WHERE name = :name', {'name': name})
        return self._record(rows[0]) if rows else None

    def list_workers(self) -> list[WorkerRecord]:
        rows = self.db.query(f'SELECT * FROM {self.table} ORDER BY started_on, name')
        return [self._record(row) for row in rows]

    def list_expired_workers(self) -> list[WorkerRecord]:
        """Workers whose last heartbeat is older than the timeout (or missing).
        """
        sql = f"""
        SELECT * FROM {self.table}
        WHERE last_heartbeat IS NULL OR last_heartbeat <= :cutoff
        ORDER BY started_on, name
        """
        rows = self.db.query(sql, {'cutoff': time.time() - self.heartbeat_timeout})
        return [self._record(row) for row in rows]

    def remove_expired(self, keep: str = None) -> list[str]:
        """Delete rows of workers whose heartbeat expired.

        The expiry condition is re-checked in the DELETE, so a worker that
        heartbeats between the scan and the delete keeps its row.

        Args:
            keep: Worker name never removed (the caller itself)

        Returns
            Names of removed workers
        """
        expired = [w.name for w in self.list_expired_workers() if w.name != keep]
        if not expired:
            return []

        removed = []
        sql = f"""
        DELETE FROM {self.table}
        WHERE name = :name AND (last_heartbeat IS NULL OR last_heartbeat <= :cutoff)
        """
        cutoff = time.time() - self.heartbeat_timeout
        with self.db.connect() as conn:
            for name in expired:
                if conn.execute(text(sql), {'name': name, 'cutoff': cutoff}).rowcount:
                    removed.append(name)
            conn.commit()
        for name in removed:
            logger.info(f'Removed expired worker {name}')
        return removed

    def live_workers(self) -> list[WorkerRecord]:
        expired = {w.name for w in self.list_expired_workers()}
        return [w for w in self.list_workers() if w.name not in expired]

    def pause(self, name: str) -> None:
        self.db.execute(f'UPDATE {self.table} SET paused = :paused WHERE name = :name',
                        {'paused': True, 'name': name})
        logger.info(f'Worker {name} paused')

    def resume(self, name: str) -> None:
        self.db.execute(f'UPDATE {self.table} SET paused = :paused WHERE name = :name',
                        {'paused': False, 'name': name})
        logger.info(f'Worker {name} resumed')

    def is_paused(self, name: str) -> bool:
        sql = f'SELECT paused FROM {self.table} WHERE name = :name'
        return bool(self.db.scalar(sql, {'name': name}))
