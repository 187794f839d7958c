import threading

from psycopg2 import pool as pg_pool

from config import Settings, load_settings

_POOL: pg_pool.ThreadedConnectionPool | None = None
_SETTINGS: Settings | None = None
_POOL_LOCK = threading.Lock()


def configure(settings: Settings) -> None:
    """Use ``settings`` for the pool; the first connection request opens it."""
    global _SETTINGS
    with _POOL_LOCK:
        _SETTINGS = settings


def _pool() -> pg_pool.ThreadedConnectionPool:
    global _POOL
    with _POOL_LOCK:
        if _POOL is None:
            settings = _SETTINGS or load_settings()
            if not settings.database_url:
                raise RuntimeError("DATABASE_URL environment variable is not set")
            _POOL = pg_pool.ThreadedConnectionPool(
                settings.db_pool_min,
                settings.db_pool_max,
                dsn=settings.database_url,
                sslmode=settings.db_sslmode,
                connect_timeout=10,
            )
        return _POOL


def get_connection():
    return _pool().getconn()


def release_connection(conn):
    if conn:
        _pool().putconn(conn)
