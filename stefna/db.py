"""
Database utilities for the Stefna backend.
Provides connection management, common query helpers and the schema bootstrap.

All functions raise meaningful exceptions on failure - no silent failures.

Usage:
    from stefna.db import transaction, fetch_one, Tables

    # Transaction with automatic commit/rollback
    with transaction() as cur:
        cur.execute(f"SELECT * FROM {Tables.USER_CREDITS} WHERE user_id = %s FOR UPDATE", (user_id,))
        row = fetch_one(cur)
"""

import os
from contextlib import contextmanager
from typing import Optional, Any, Dict, List
from datetime import datetime, timezone

import psycopg
from psycopg.rows import dict_row

# Read from the environment directly; importing db never imports config.
_DATABASE_URL = os.getenv("DATABASE_URL", "")
if _DATABASE_URL.startswith("postgres://"):
    _DATABASE_URL = _DATABASE_URL.replace("postgres://", "postgresql://", 1)
_HAS_DATABASE = bool(_DATABASE_URL)
_DB_CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "5"))
_APP_SCHEMA = os.getenv("APP_SCHEMA", "stefna")


# ─────────────────────────────────────────────────────────────
# Custom Exceptions
# ─────────────────────────────────────────────────────────────
class DatabaseError(Exception):
    """Base exception for database errors."""
    pass


class DatabaseNotConfiguredError(DatabaseError):
    """Raised when database is not configured but an operation requires it."""
    def __init__(self, message: str = "Database is not configured"):
        super().__init__(message)


class DatabaseConnectionError(DatabaseError):
    """Raised when unable to connect to the database."""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.original_error = original_error


class DatabaseQueryError(DatabaseError):
    """Raised when a query fails."""
    def __init__(self, message: str, query: str = None, original_error: Exception = None):
        super().__init__(message)
        self.query = query
        self.original_error = original_error


class DatabaseIntegrityError(DatabaseError):
    """Raised on constraint violations (unique, check, etc.)."""
    def __init__(self, message: str, constraint: str = None, original_error: Exception = None):
        super().__init__(message)
        self.constraint = constraint
        self.original_error = original_error


# ─────────────────────────────────────────────────────────────
# Connection State
# ─────────────────────────────────────────────────────────────
USE_DB = _HAS_DATABASE

print(f"[DB] DATABASE_URL configured: {_HAS_DATABASE}, schema: {_APP_SCHEMA}")


# ─────────────────────────────────────────────────────────────
# Time Helpers
# ─────────────────────────────────────────────────────────────
def now_utc() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────
# Connection Management
# ─────────────────────────────────────────────────────────────
def _create_connection():
    """
    Create a new database connection.
    Internal function - raises exceptions on failure.
    """
    if not _DATABASE_URL:
        raise DatabaseNotConfiguredError("DATABASE_URL is not set")

    try:
        conn = psycopg.connect(
            _DATABASE_URL,
            connect_timeout=_DB_CONNECT_TIMEOUT,
            row_factory=dict_row,
        )
        with conn.cursor() as cur:
            cur.execute(f"SET search_path TO {_APP_SCHEMA}, public;")
        return conn
    except psycopg.OperationalError as e:
        raise DatabaseConnectionError(f"Failed to connect to database: {e}", original_error=e)


@contextmanager
def get_conn():
    """
    Context manager for database connections.
    Connection is NOT auto-committed - caller must commit explicitly or use transaction().

    Raises:
        DatabaseNotConfiguredError: If database is not configured
        DatabaseConnectionError: If connection fails
    """
    conn = _create_connection()
    try:
        yield conn
    finally:
        try:
            conn.close()
        except psycopg.Error:
            pass


@contextmanager
def transaction():
    """
    Context manager for database transactions.
    Automatically commits on success, rolls back on exception.
    Yields a cursor with dict_row factory.

    Raises:
        DatabaseNotConfiguredError: If database is not configured
        DatabaseConnectionError: If connection fails (or drops mid-transaction)
        DatabaseQueryError: If a query fails
        DatabaseIntegrityError: On constraint violations

    Usage:
        with transaction() as cur:
            cur.execute("UPDATE user_credits SET balance = balance - %s WHERE user_id = %s", (2, uid))
        # Auto-committed here if no exception
    """
    conn = _create_connection()
    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except (psycopg.errors.UniqueViolation, psycopg.errors.CheckViolation) as e:
        conn.rollback()
        constraint = getattr(e.diag, "constraint_name", None)
        raise DatabaseIntegrityError(
            f"Constraint violation: {e}",
            constraint=constraint,
            original_error=e
        )
    except psycopg.OperationalError as e:
        try:
            conn.rollback()
        except psycopg.Error:
            pass
        raise DatabaseConnectionError(f"Database connection lost: {e}", original_error=e)
    except psycopg.Error as e:
        conn.rollback()
        raise DatabaseQueryError(f"Database error: {e}", original_error=e)
    except Exception:
        conn.rollback()
        raise
    finally:
        try:
            conn.close()
        except psycopg.Error:
            pass


# ─────────────────────────────────────────────────────────────
# Cursor Helpers (for use within transaction/get_conn blocks)
# ─────────────────────────────────────────────────────────────
def fetch_one(cur) -> Optional[Dict[str, Any]]:
    """
    Fetch one row from cursor as dict.
    Returns None if no rows available.
    """
    row = cur.fetchone()
    if row is None:
        return None
    if isinstance(row, dict):
        return row
    if cur.description:
        columns = [desc[0] for desc in cur.description]
        return dict(zip(columns, row))
    return None


def fetch_all(cur) -> List[Dict[str, Any]]:
    """
    Fetch all rows from cursor as list of dicts.
    Returns empty list if no rows.
    """
    rows = cur.fetchall()
    if not rows:
        return []
    if isinstance(rows[0], dict):
        return list(rows)
    if cur.description:
        columns = [desc[0] for desc in cur.description]
        return [dict(zip(columns, row)) for row in rows]
    return []


def fetch_scalar(cur) -> Any:
    """
    Fetch a single scalar value from cursor.
    Returns None if no rows.
    """
    row = cur.fetchone()
    if row is None:
        return None
    if isinstance(row, dict):
        return next(iter(row.values()), None)
    return row[0] if row else None


# ─────────────────────────────────────────────────────────────
# Standalone Query Helpers (open their own transaction)
# ─────────────────────────────────────────────────────────────
def query_one(sql: str, params: tuple = None) -> Optional[Dict[str, Any]]:
    """
    Execute a query and return one row as dict.
    Opens its own transaction.
    """
    with transaction() as cur:
        cur.execute(sql, params or ())
        return fetch_one(cur)


def query_all(sql: str, params: tuple = None) -> List[Dict[str, Any]]:
    """
    Execute a query and return all rows as list of dicts.
    Opens its own transaction.
    """
    with transaction() as cur:
        cur.execute(sql, params or ())
        return fetch_all(cur)


def execute_returning(sql: str, params: tuple = None) -> Optional[Dict[str, Any]]:
    """
    Execute an INSERT/UPDATE with RETURNING clause.
    Opens its own transaction.
    """
    with transaction() as cur:
        cur.execute(sql, params or ())
        return fetch_one(cur)


# ─────────────────────────────────────────────────────────────
# Schema-aware Table References
# ─────────────────────────────────────────────────────────────
class Tables:
    """Table name constants with schema prefixes."""
    USER_CREDITS = f"{_APP_SCHEMA}.user_credits"
    CREDITS_LEDGER = f"{_APP_SCHEMA}.credits_ledger"
    APP_CONFIG = f"{_APP_SCHEMA}.app_config"
    GENERATION_JOBS = f"{_APP_SCHEMA}.generation_jobs"
    MEDIA_ASSETS = f"{_APP_SCHEMA}.media_assets"
    RATE_LIMITS = f"{_APP_SCHEMA}.rate_limits"


# ─────────────────────────────────────────────────────────────
# Utility Functions
# ─────────────────────────────────────────────────────────────
def verify_connection() -> bool:
    """
    Test database connectivity.
    Returns True if connected, False otherwise.
    """
    if not USE_DB:
        return False
    try:
        result = query_one("SELECT 1 AS ok")
        return result is not None and result.get("ok") == 1
    except DatabaseError as e:
        print(f"[DB] verify_connection failed: {e}")
        return False


def init_db() -> bool:
    """
    Initialize database connection and verify connectivity.
    Called at app startup.
    Returns True if database is ready.

    Raises:
        DatabaseConnectionError: If database is configured but connection fails
    """
    if not _HAS_DATABASE:
        print("[DB] DATABASE_URL not set - running without database")
        return False

    if verify_connection():
        print("[DB] Database connection verified successfully")
        ensure_schema()
        return True
    raise DatabaseConnectionError("Connection test query failed")


_SCHEMA_STATEMENTS = [
    f"CREATE SCHEMA IF NOT EXISTS {_APP_SCHEMA}",
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.USER_CREDITS} (
        user_id TEXT PRIMARY KEY,
        balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.CREDITS_LEDGER} (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL,
        request_id TEXT NOT NULL,
        action TEXT NOT NULL,
        amount INTEGER NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('reserved', 'committed', 'refunded')),
        meta JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        resolved_at TIMESTAMPTZ
    )
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS uq_credits_ledger_user_request
    ON {Tables.CREDITS_LEDGER}(user_id, request_id)
    """,
    f"""
    CREATE INDEX IF NOT EXISTS ix_credits_ledger_status_created
    ON {Tables.CREDITS_LEDGER}(status, created_at)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.APP_CONFIG} (
        key TEXT PRIMARY KEY,
        value JSONB NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.GENERATION_JOBS} (
        job_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        request_id TEXT,
        model TEXT NOT NULL,
        vendor TEXT NOT NULL,
        source_url TEXT,
        prompt TEXT,
        status TEXT NOT NULL DEFAULT 'processing'
            CHECK (status IN ('processing', 'completed', 'failed')),
        result_url TEXT,
        error TEXT,
        progress INTEGER,
        meta JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS ix_generation_jobs_user_request
    ON {Tables.GENERATION_JOBS}(user_id, request_id)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.MEDIA_ASSETS} (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL,
        job_id TEXT NOT NULL,
        final_url TEXT NOT NULL,
        public_id TEXT,
        media_type TEXT NOT NULL CHECK (media_type IN ('image', 'video')),
        status TEXT NOT NULL DEFAULT 'ready',
        is_public BOOLEAN NOT NULL DEFAULT FALSE,
        allow_remix BOOLEAN NOT NULL DEFAULT FALSE,
        prompt TEXT,
        preset_key TEXT,
        meta JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS uq_media_assets_job
    ON {Tables.MEDIA_ASSETS}(job_id)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.RATE_LIMITS} (
        key TEXT PRIMARY KEY,
        count INTEGER NOT NULL,
        reset_at TIMESTAMPTZ NOT NULL
    )
    """,
]


def ensure_schema() -> None:
    """
    Ensure tables and idempotency indexes exist.
    Called at app startup after connection is verified.
    """
    try:
        with transaction() as cur:
            for stmt in _SCHEMA_STATEMENTS:
                cur.execute(stmt)
        print("[DB] Schema ensured")
    except DatabaseError as e:
        # DB user may lack DDL permissions when tables are managed externally
        print(f"[DB] Warning: Could not ensure schema: {e}")


__all__ = [
    "dict_row",
    "USE_DB",
    # Exceptions
    "DatabaseError",
    "DatabaseNotConfiguredError",
    "DatabaseConnectionError",
    "DatabaseQueryError",
    "DatabaseIntegrityError",
    # Connection management
    "get_conn",
    "transaction",
    "now_utc",
    # Cursor helpers
    "fetch_one",
    "fetch_all",
    "fetch_scalar",
    # Standalone query helpers
    "query_one",
    "query_all",
    "execute_returning",
    "Tables",
    # Utilities
    "verify_connection",
    "init_db",
    "ensure_schema",
]
