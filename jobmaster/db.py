import sqlite3
import logging
import re
from contextlib import contextmanager, asynccontextmanager
from typing import Any, List, Optional, Tuple

logger = logging.getLogger(__name__)

# '?' placeholders outside of quoted literals
_PLACEHOLDER = re.compile(r"(\'[^\']*\'|\"[^\"]*\")|\?")


def to_pg_placeholders(sql: str, style: str = "format") -> str:
    """
    Rewrite sqlite-style '?' placeholders for PostgreSQL drivers.
    style="format" -> %s (psycopg2), style="numeric" -> $1, $2 ... (asyncpg).
    """
    counter = 0

    def replace(match):
        nonlocal counter
        if match.group(1):
            return match.group(1)
        counter += 1
        return "%s" if style == "format" else f"${counter}"

    return _PLACEHOLDER.sub(replace, sql)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS jobs (
        job_id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        status TEXT NOT NULL,
        data TEXT NOT NULL,
        result TEXT,
        error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        completed_at TEXT,
        version INTEGER DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at)",
]


# ─── PostgreSQL Wrappers ─────────────────────────────────────────────────────
class PostgresConnection:
    """psycopg2 connection that accepts '?' placeholders and exposes rowcount."""
    def __init__(self, conn, pool):
        self.conn = conn
        self.pool = pool

    def execute(self, sql: str, params: Tuple = ()):
        cursor = self.conn.cursor()
        cursor.execute(to_pg_placeholders(sql), params)
        return cursor

    def commit(self):
        self.conn.commit()

    def rollback(self):
        self.conn.rollback()

    def close(self):
        self.pool.putconn(self.conn)


class AsyncPostgresCursor:
    def __init__(self, rows: List[Any]):
        self._rows = rows

    async def fetchone(self) -> Optional[Any]:
        return self._rows[0] if self._rows else None

    async def fetchall(self) -> List[Any]:
        return self._rows


class AsyncPostgresConnection:
    """asyncpg connection with the same execute/commit surface as aiosqlite."""
    def __init__(self, conn):
        self.conn = conn

    async def execute(self, sql: str, params: Tuple = ()) -> AsyncPostgresCursor:
        rows = await self.conn.fetch(to_pg_placeholders(sql, style="numeric"), *params)
        return AsyncPostgresCursor(rows)

    async def commit(self):
        pass # asyncpg autocommits outside explicit transactions


# ─── Database ────────────────────────────────────────────────────────────────
class Database:
    """
    Owns the connections to the job store.

    SQLite (default) opens a connection per use; PostgreSQL (database_url set)
    uses a psycopg2 pool for sync callers (Celery worker) and an asyncpg pool
    for async callers (FastAPI). Call init_schema() once before use and
    close()/aclose() on shutdown.
    """

    def __init__(self, database_url: str = "", sqlite_path: str = "jobs.db"):
        self.database_url = database_url
        self.sqlite_path = sqlite_path
        self._pg_pool = None
        self._async_pg_pool = None

    @property
    def is_postgres(self) -> bool:
        return bool(self.database_url)

    def init_schema(self) -> None:
        with self.connect() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()
        logger.info(f"Job store ready ({'postgres' if self.is_postgres else self.sqlite_path})")

    # ─── Sync (Celery worker) ────────────────────────────────────────────
    def _ensure_pg_pool(self):
        if self._pg_pool is None:
            from psycopg2 import pool
            from psycopg2.extras import RealDictCursor
            self._pg_pool = pool.ThreadedConnectionPool(
                minconn=1, maxconn=10,
                dsn=self.database_url,
                cursor_factory=RealDictCursor,
            )
            logger.info("Sync PostgreSQL pool initialized.")
        return self._pg_pool

    @contextmanager
    def connect(self):
        if self.is_postgres:
            pg_pool = self._ensure_pg_pool()
            conn = PostgresConnection(pg_pool.getconn(), pg_pool)
            try:
                yield conn
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
        else:
            conn = sqlite3.connect(self.sqlite_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()

    def close(self) -> None:
        if self._pg_pool is not None:
            self._pg_pool.closeall()
            self._pg_pool = None
            logger.info("Sync PostgreSQL pool closed.")

    # ─── Async (FastAPI) ─────────────────────────────────────────────────
    @asynccontextmanager
    async def aconnect(self):
        if self.is_postgres:
            if self._async_pg_pool is None:
                import asyncpg
                self._async_pg_pool = await asyncpg.create_pool(
                    dsn=self.database_url, min_size=1, max_size=10
                )
                logger.info("Async PostgreSQL pool initialized.")
            async with self._async_pg_pool.acquire() as conn:
                yield AsyncPostgresConnection(conn)
        else:
            import aiosqlite
            async with aiosqlite.connect(self.sqlite_path) as conn:
                conn.row_factory = aiosqlite.Row
                yield conn

    async def aclose(self) -> None:
        if self._async_pg_pool is not None:
            await self._async_pg_pool.close()
            self._async_pg_pool = None
            logger.info("Async PostgreSQL pool closed.")
