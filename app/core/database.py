import logging
from typing import Any, List, Optional, Sequence, Tuple
from psycopg_pool import AsyncConnectionPool
from psycopg.rows import dict_row
from psycopg import OperationalError, DatabaseError

from .config import settings

log = logging.getLogger(__name__)

pool: Optional[AsyncConnectionPool] = None


def _connection_kwargs():
    """Build connection kwargs for psycopg"""
    kwargs = {}

    if settings.postgres_ssl is False:
        kwargs["sslmode"] = "disable"
    else:
        kwargs["sslmode"] = "require"

    kwargs["connect_timeout"] = 10
    kwargs["application_name"] = "allocation_reports_backend"

    return kwargs


def _mask_conninfo(conninfo: str) -> str:
    if "@" not in conninfo:
        return "postgresql://****"
    credentials, host = conninfo.split("@", 1)
    return credentials.rsplit(":", 1)[0] + ":****@" + host


def _diagnose(error_msg: str) -> Optional[str]:
    lowered = error_msg.lower()
    if "timeout" in lowered:
        return "connection timeout: check the Cloud SQL instance, CLOUD_SQL_CONNECTION_NAME and firewall rules"
    if "password" in lowered or "authentication" in lowered:
        return "authentication failed: check POSTGRES_USER / POSTGRES_PASSWORD"
    if "database" in lowered and "does not exist" in lowered:
        return f"database '{settings.postgres_db}' does not exist"
    if "connection refused" in lowered:
        return "connection refused: check POSTGRES_HOST / POSTGRES_PORT"
    return None


async def get_pool() -> AsyncConnectionPool:
    """
    Get or create the database connection pool.
    Optimized for Cloud Run with proper error handling.
    """
    global pool

    if pool is not None:
        return pool

    conninfo = settings.build_db_url()

    if not conninfo:
        raise RuntimeError(
            "Database configuration is missing. "
            "Set DATABASE_URL or POSTGRES_* environment variables."
        )

    log.info("Initializing database pool (%s, ssl %s)",
             _mask_conninfo(conninfo),
             "disabled" if settings.postgres_ssl is False else "required")

    try:
        pool = AsyncConnectionPool(
            conninfo=conninfo,
            open=False,
            kwargs=_connection_kwargs(),
            min_size=1,
            max_size=10,
            timeout=30,
            max_idle=300,
            max_lifetime=3600,
        )

        await pool.open(wait=True, timeout=30)

        async with pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT version()")
                version = await cur.fetchone()
                log.info("Connected to: %s", version[0][:80])

        log.info("Database pool initialized")
        return pool

    except OperationalError as e:
        hint = _diagnose(str(e))
        log.exception(
            "Database connection error%s (host=%s port=%s db=%s user=%s password=%s cloud_sql=%s url=%s)",
            f" - {hint}" if hint else "",
            settings.postgres_host,
            settings.postgres_port,
            settings.postgres_db,
            settings.postgres_user,
            "set" if settings.postgres_password else "NOT SET",
            settings.cloud_sql_connection_name,
            "set" if settings.database_url else "NOT SET",
        )
        pool = None
        raise

    except DatabaseError:
        log.exception("Database error while opening the pool")
        pool = None
        raise


async def close_pool():
    """Close the database connection pool"""
    global pool

    if pool:
        log.info("Closing database pool")
        await pool.close()
        pool = None


async def fetch(query: str, params: Any = None) -> List[dict]:
    """Execute a SELECT query and return all rows as dictionaries"""
    pool_instance = await get_pool()
    async with pool_instance.connection() as conn:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(query, params or [])
            rows = await cur.fetchall()
            return [dict(r) for r in rows]


async def fetchrow(query: str, params: Any = None) -> Optional[dict]:
    """Execute a query and return a single row as a dictionary"""
    pool_instance = await get_pool()
    async with pool_instance.connection() as conn:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(query, params or [])
            row = await cur.fetchone()
            return dict(row) if row else None


async def execute(query: str, params: Any = None) -> int:
    """Execute an INSERT/UPDATE/DELETE query and return affected row count"""
    pool_instance = await get_pool()
    async with pool_instance.connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute(query, params or [])
            await conn.commit()
            return cur.rowcount


async def execute_all(statements: Sequence[Tuple[str, Any]]) -> int:
    """Run several statements on one connection in one transaction; any failure rolls back all of them"""
    pool_instance = await get_pool()
    affected = 0
    async with pool_instance.connection() as conn:
        async with conn.transaction():
            async with conn.cursor() as cur:
                for query, params in statements:
                    await cur.execute(query, params or [])
                    affected += max(cur.rowcount, 0)
    return affected
