"""Database access shared by every fifosync service.
"""
import contextlib
import functools
import logging
import time

from sqlalchemy import Engine, create_engine, make_url, text

from fifosync.config import FifoConfig, connection_string
from fifosync.schema import ensure_database_ready, get_table_names

logger = logging.getLogger(__name__)


def retry_with_backoff(max_attempts: int = 5, base_delay: float = 1.0, operation_name: str = None):
    """Decorator to retry function with exponential backoff on database errors.

    Args:
        max_attempts: Maximum retry attempts
        base_delay: Base delay in seconds (doubles each retry)
        operation_name: Name for logging (defaults to function name)

    Returns
        Decorated function
    """
    def decorator(func: callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            name = operation_name or func.__name__
            last_exception = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    last_exception = e
                    if attempt == max_attempts:
                        logger.error(f'{name} failed after {max_attempts} attempts: {e}')
                        raise
                    delay = base_delay * (2 ** (attempt - 1))
                    logger.warning(f'{name} attempt {attempt}/{max_attempts} failed: {e}, retrying in {delay:.1f}s')
                    time.sleep(delay)
            raise last_exception
        return wrapper
    return decorator


def log_duration(operation_name: str = None):
    """Decorator to log method execution duration.

    Args:
        operation_name: Custom name for logging (defaults to function name)

    Returns
        Decorated function
    """
    def decorator(func: callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            name = operation_name or func.__name__
            start = time.time()
            result = func(*args, **kwargs)
            duration_ms = int((time.time() - start) * 1000)
            logger.info(f'{name} completed in {duration_ms}ms')
            return result
        return wrapper
    return decorator


def create_db_engine(url: str) -> Engine:
    """Create engine with pooling suited to the backend.
    """
    if make_url(url).get_backend_name() == 'sqlite':
        return create_engine(url, connect_args={'timeout': 30})
    return create_engine(url, pool_pre_ping=True, pool_size=10, max_overflow=5)


class DatabaseContext:
    """Manages database engine, connections, and table names.
    """

    def __init__(self, config: FifoConfig, engine: Engine = None):
        """Initialize database context.

        Args:
            config: Fifo configuration with connection parameters
            engine: Optional existing engine (skips engine creation)
        """
        self.engine = engine if engine is not None else create_db_engine(connection_string(config))
        self.tables = get_table_names(config.appname)
        self.appname = config.appname
        self._owns_engine = engine is None

    def ensure_ready(self) -> None:
        ensure_database_ready(self.engine, self.appname)

    def connect(self):
        """Open a connection for multi-statement transactions.

        Callers are responsible for committing.
        """
        return self.engine.connect()

    def execute(self, sql: str, params: dict = None):
        """Execute SQL statement with automatic commit.

        Args:
            sql: SQL statement to execute
            params: Optional parameters for the statement

        Returns
            Result proxy object
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), params or {})
            conn.commit()
            return result

    def query(self, sql: str, params: dict = None) -> list:
        """Execute query and return all rows.

        Args:
            sql: SQL query to execute
            params: Optional parameters for the query

        Returns
            List of row objects
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), params or {})
            return list(result)

    def scalar(self, sql: str, params: dict = None):
        rows = self.query(sql, params)
        return rows[0][0] if rows else None

    def dispose(self) -> None:
        """Dispose of engine resources.
        """
        if not self._owns_engine:
            return
        with contextlib.suppress(Exception):
            self.engine.dispose()
