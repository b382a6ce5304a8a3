from dataclasses import dataclass


@dataclass
class FifoConfig:
    """Configuration for fifo queue routing and rebalancing.

    All timing parameters are in seconds unless suffixed with `_ms`.
    Connection parameters for database access.
    """
    namespace: str = 'fifo'
    refresh_queue: str = 'fifo_refresh'
    failed_queue: str = 'failed'
    inline: bool = False

    lock_ttl_ms: int = 30000
    lock_retry_count: int = 30
    lock_retry_delay_ms: int = 1000
    lock_retry_jitter_ms: int = 100

    heartbeat_interval_sec: float = 5
    heartbeat_timeout_sec: float = 15
    dead_worker_check_interval_sec: float = 10
    poll_interval_sec: float = 5

    host: str = 'localhost'
    port: int = 5432
    dbname: str = 'fifosync'
    user: str = 'postgres'
    password: str = 'postgres'
    appname: str = 'fifo_'
    url: str = None


def build_connection_string(host: str, port: int, dbname: str, user: str, password: str) -> str:
    """Build PostgreSQL connection string from parameters.
    """
    return (
        f'postgresql+psycopg://{user}:{password}'
        f'@{host}:{port}/{dbname}'
    )


def connection_string(config: FifoConfig) -> str:
    """Explicit `url` wins over the individual connection parameters.
    """
    if config.url:
        return config.url
    return build_connection_string(config.host, config.port, config.dbname, config.user, config.password)
