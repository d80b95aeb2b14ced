from contextlib import contextmanager

from psycopg.rows import dict_row
# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import settings

# Opened lazily so importing the app (tests, scripts) never dials the database.
_pool = ConnectionPool(
    conninfo=settings.db_url,
    min_size=settings.db_pool_min,
    max_size=settings.db_pool_max,
    kwargs={"row_factory": dict_row},
    open=False,
)


def open_pool() -> None:
    _pool.open()


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # `with get_conn() as conn:` commits on success, rolls back on exception
    # and hands the connection back to the pool.
    with pool.connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_pool)


def close_pool() -> None:
    # Best-effort shutdown hook (uvicorn shutdown).
    try:
        _pool.close()
    except Exception:
        pass
