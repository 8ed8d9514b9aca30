import sqlite3
import logging
import re
from contextlib import contextmanager, asynccontextmanager
from typing import Any, List, Optional, Tuple

from subocr.core.config import settings

logger = logging.getLogger(__name__)

DB_PATH = settings.SQLITE_PATH

# Global Connection Pools
pg_pool = None
async_pg_pool = None

# ─── SYNC PostgreSQL Wrapper (Celery) ────────────────────────────────────────
class PostgresCursor:
    """Wraps psycopg2 cursor for Sync contexts"""
    def __init__(self, cursor):
        self.cursor = cursor

    def execute(self, sql: str, params: Tuple = ()) -> Any:
        def replace_placeholder(match):
            if match.group(1): return match.group(1)
            return "%s"
        pattern = r"(\'[^\']*\'|\"[^\"]*\")|\?"
        pg_sql = re.sub(pattern, replace_placeholder, sql)
        self.cursor.execute(pg_sql, params)
        return self

    def fetchone(self) -> Optional[Any]:
        return self.cursor.fetchone()

    def fetchall(self) -> List[Any]:
        return self.cursor.fetchall()

    def close(self):
        self.cursor.close()

    def __getattr__(self, name):
        return getattr(self.cursor, name)

class PostgresConnection:
    """Wraps psycopg2 connection for Sync contexts"""
    def __init__(self, conn, pool=None):
        self.conn = conn
        self.pool = pool

    def cursor(self):
        return PostgresCursor(self.conn.cursor())

    def execute(self, sql: str, params: Tuple = ()) -> PostgresCursor:
        cursor = self.cursor()
        cursor.execute(sql, params)
        return cursor

    def executemany(self, sql: str, seq_of_params) -> None:
        cursor = self.cursor()
        for params in seq_of_params:
            cursor.execute(sql, params)

    def commit(self):
        self.conn.commit()

    def rollback(self):
        self.conn.rollback()

    def close(self):
        if self.pool:
            self.pool.putconn(self.conn)
        else:
            self.conn.close()

    def __getattr__(self, name):
        return getattr(self.conn, name)

# ─── ASYNC PostgreSQL Wrapper (FastAPI) ──────────────────────────────────────
class AsyncPostgresCursor:
    """Wraps asyncpg connection to support '?' placeholders"""
    def __init__(self, conn):
        self.conn = conn
        self._last_result = None

    async def execute(self, sql: str, params: Tuple = ()) -> Any:
        # asyncpg uses $1, $2, $3. We must convert ? -> $n
        params = list(params)

        counter = 0
        def replace_placeholder(match):
            nonlocal counter
            if match.group(1): return match.group(1)
            counter += 1
            return f"${counter}"

        pattern = r"(\'[^\']*\'|\"[^\"]*\")|\?"
        pg_sql = re.sub(pattern, replace_placeholder, sql)

        self._last_result = await self.conn.fetch(pg_sql, *params)
        return self

    async def fetchone(self) -> Optional[Any]:
        if self._last_result and len(self._last_result) > 0:
            return self._last_result[0]
        return None

    async def fetchall(self) -> List[Any]:
        return self._last_result or []

class AsyncPostgresConnection:
    """Wraps asyncpg pool connection"""
    def __init__(self, conn, pool=None):
        self.conn = conn
        self.pool = pool

    def cursor(self):
        return AsyncPostgresCursor(self.conn)

    async def execute(self, sql: str, params: Tuple = ()) -> AsyncPostgresCursor:
        cursor = self.cursor()
        await cursor.execute(sql, params)
        return cursor

    async def commit(self):
        pass # asyncpg auto-commits outside explicit transactions

# ─── ASYNC SQLite Wrapper (FastAPI) ──────────────────────────────────────────
class AsyncSqliteConnection:
    """Wraps aiosqlite connection"""
    def __init__(self, conn):
        self.conn = conn

    async def execute(self, sql: str, params: Tuple = ()):
        return await self.conn.execute(sql, params)

    async def commit(self):
        await self.conn.commit()

# ─── Initialization ──────────────────────────────────────────────────────────
def init_db():
    """Sync Initialization (Schema Creation) - Runs on Startup"""
    if settings.DATABASE_URL:
        _init_postgres_sync()
    else:
        _init_sqlite_sync()

async def init_async_db():
    """Async Initialization (Pool Creation)"""
    if settings.DATABASE_URL:
        global async_pg_pool
        import asyncpg
        if not async_pg_pool:
            async_pg_pool = await asyncpg.create_pool(
                dsn=settings.DATABASE_URL,
                min_size=1,
                max_size=20
            )
            logger.info("Async PostgreSQL Pool initialized.")

def close_db():
    """Sync Cleanup"""
    global pg_pool
    if pg_pool:
        pg_pool.closeall()
        pg_pool = None
        logger.info("Sync PostgreSQL Pool closed.")

async def close_async_db():
    """Async Cleanup"""
    global async_pg_pool
    if async_pg_pool:
        await async_pg_pool.close()
        async_pg_pool = None
        logger.info("Async PostgreSQL Pool closed.")

# ─── Sync Implementation Details ─────────────────────────────────────────────
def _init_sqlite_sync():
    conn = sqlite3.connect(DB_PATH)
    cursor = conn.cursor()
    _create_schema(cursor, timestamp_type="DATETIME")
    conn.commit()
    conn.close()

def _init_postgres_sync():
    global pg_pool
    try:
        import psycopg2
        from psycopg2 import pool
        from psycopg2.extras import RealDictCursor

        if not pg_pool:
            pg_pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=1, maxconn=20,
                dsn=settings.DATABASE_URL,
                cursor_factory=RealDictCursor
            )

        conn = pg_pool.getconn()
        try:
            cursor = conn.cursor()
            _create_schema(cursor, timestamp_type="TIMESTAMP")
            conn.commit()
        finally:
            pg_pool.putconn(conn)
    except Exception as e:
        logger.error(f"Postgres Init Failed: {e}")
        raise e

def _create_schema(cursor, timestamp_type: str):
    """Jobs + frames schema, shared by SQLite and Postgres."""
    cursor.execute(f"""
    CREATE TABLE IF NOT EXISTS ocr_jobs (
        job_id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        job_kind TEXT NOT NULL DEFAULT 'OCR',
        parent_job_id TEXT,
        status TEXT NOT NULL DEFAULT 'PENDING',
        step TEXT NOT NULL DEFAULT 'PREPROCESSING',
        error TEXT,
        zip_key TEXT NOT NULL,
        total_images INTEGER NOT NULL DEFAULT 0,
        processed_images INTEGER NOT NULL DEFAULT 0,
        total_batches INTEGER NOT NULL DEFAULT 0,
        batches_completed INTEGER NOT NULL DEFAULT 0,
        submitted_images INTEGER NOT NULL DEFAULT 0,
        batch_id TEXT,
        batch_input_id TEXT,
        batch_output_id TEXT,
        raw_zip_key TEXT,
        raw_zip_size_bytes INTEGER,
        cropped_zip_key TEXT,
        cropped_zip_size_bytes INTEGER,
        thumbnail_key TEXT,
        txt_key TEXT,
        txt_size_bytes INTEGER,
        docx_key TEXT,
        docx_size_bytes INTEGER,
        created_at {timestamp_type} DEFAULT CURRENT_TIMESTAMP,
        updated_at {timestamp_type} DEFAULT CURRENT_TIMESTAMP,
        version INTEGER DEFAULT 0,
        locked_by TEXT,
        locked_until DOUBLE PRECISION
    )
    """)
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS ocr_job_frames (
        frame_id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL REFERENCES ocr_jobs(job_id) ON DELETE CASCADE,
        filename TEXT NOT NULL,
        base_key TEXT NOT NULL,
        frame_index INTEGER NOT NULL,
        text TEXT NOT NULL
    )
    """)
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_ocr_jobs_owner ON ocr_jobs(owner_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_ocr_jobs_status ON ocr_jobs(status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_ocr_job_frames_job_id ON ocr_job_frames(job_id)")

# ─── Context Factories ───────────────────────────────────────────────────────
@contextmanager
def get_db_connection():
    """Sync Connection (Celery workers)"""
    if settings.DATABASE_URL:
        global pg_pool
        if not pg_pool: _init_postgres_sync()
        conn = pg_pool.getconn()
        pg_conn = PostgresConnection(conn, pg_pool)
        try: yield pg_conn
        finally: pg_conn.close()
    else:
        conn = sqlite3.connect(DB_PATH, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try: yield conn
        finally: conn.close()

@asynccontextmanager
async def get_async_db_connection():
    """Async Connection (FastAPI)"""
    if settings.DATABASE_URL:
        global async_pg_pool
        if not async_pg_pool: await init_async_db()
        async with async_pg_pool.acquire() as conn:
            yield AsyncPostgresConnection(conn, async_pg_pool)
    else:
        import aiosqlite
        async with aiosqlite.connect(DB_PATH) as conn:
            conn.row_factory = aiosqlite.Row
            yield AsyncSqliteConnection(conn)
