import logging

from sqlalchemy import Engine, inspect, text

logger = logging.getLogger(__name__)

TABLE_KEYS = ['Queue', 'Item', 'Ring', 'Worker', 'Lock', 'Counter']


def get_table_names(appname: str = 'fifo_') -> dict[str, str]:
    """Get table names based on appname prefix.

    Args
        appname: Application name prefix for tables

    Returns
        Dictionary containing table names
    """
    return get_table_names_for_appname(appname)


def get_table_names_for_appname(appname: str) -> dict[str, str]:
    """Get table names for a specific appname prefix.
    """
    return {
        'Queue': f'{appname}queue',
        'Item': f'{appname}queue_item',
        'Ring': f'{appname}ring',
        'Worker': f'{appname}worker',
        'Lock': f'{appname}lock',
        'Counter': f'{appname}counter',
    }


def verify_tables_exist(engine: Engine, appname: str = 'fifo_') -> dict[str, bool]:
    """Verify which required tables exist in the database.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables

    Returns
        Dictionary mapping table keys to existence status (True if exists, False otherwise)
    """
    tables = get_table_names(appname)
    inspector = inspect(engine)
    return {key: inspector.has_table(tables[key]) for key in TABLE_KEYS}


def _serial_column(engine: Engine) -> str:
    """Monotonic surrogate key; item order within a queue follows it.
    """
    if engine.dialect.name == 'postgresql':
        return 'id bigserial primary key'
    return 'id integer primary key autoincrement'


def _create_queue_tables(engine: Engine, tables: dict[str, str]) -> None:
    """Create job queue tables (Queue, Item).
    """
    Queue = tables['Queue']
    Item = tables['Item']

    with engine.connect() as conn:
        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Queue} (
    name varchar not null,
    created_on double precision not null,
    primary key (name)
);
        """))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Item} (
    {_serial_column(engine)},
    queue varchar not null,
    payload text not null,
    created_on double precision not null
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Item}_queue ON {Item}(queue, id)'))

        conn.commit()

    logger.debug(f'Queue tables verified: {Queue}, {Item}')


def _create_coordination_tables(engine: Engine, tables: dict[str, str]) -> None:
    """Create coordination tables (Ring, Worker, Lock, Counter).
    """
    Ring = tables['Ring']
    Worker = tables['Worker']
    Lock = tables['Lock']
    Counter = tables['Counter']

    with engine.connect() as conn:
        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Ring} (
    ring_key varchar not null,
    slice bigint not null,
    queue varchar not null,
    primary key (ring_key, queue)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Ring}_slice ON {Ring}(ring_key, slice)'))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Worker} (
    name varchar not null,
    hostname varchar not null,
    pid integer not null,
    queues text not null,
    started_on double precision not null,
    last_heartbeat double precision,
    paused boolean not null default false,
    state varchar not null,
    primary key (name)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Worker}_heartbeat ON {Worker}(last_heartbeat)'))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Lock} (
    name varchar not null,
    token varchar not null,
    acquired_at double precision not null,
    expires_at double precision not null,
    primary key (name)
);
        """))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Counter} (
    name varchar not null,
    value double precision not null,
    primary key (name)
);
        """))

        conn.commit()

    logger.debug(f'Coordination tables verified: {Ring}, {Worker}, {Lock}, {Counter}')


def ensure_database_ready(engine: Engine, appname: str = 'fifo_') -> None:
    """Ensure database has all required tables with correct structure.

    This function checks which tables exist and creates any missing tables.
    Safe to call repeatedly - uses CREATE TABLE IF NOT EXISTS.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables
    """
    tables = get_table_names(appname)

    logger.debug('Verifying database structure')

    table_status = verify_tables_exist(engine, appname)

    missing_tables = [k for k in TABLE_KEYS if not table_status.get(k, False)]
    if missing_tables:
        logger.info(f'Creating missing tables: {missing_tables}')

    try:
        _create_queue_tables(engine, tables)
        _create_coordination_tables(engine, tables)
        logger.info('Database tables ready')
    except Exception as e:
        logger.error(f'Failed to create tables: {e}')
        raise

    logger.info('Database structure verified and ready')


def drop_tables(engine: Engine, appname: str = 'fifo_') -> None:
    """Drop all fifosync tables.
    """
    tables = get_table_names(appname)
    with engine.connect() as conn:
        for key in reversed(TABLE_KEYS):
            conn.execute(text(f'DROP TABLE IF EXISTS {tables[key]}'))
        conn.commit()
