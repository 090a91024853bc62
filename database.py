#!/usr/bin/env python3
"""
Tonkotsu – PostgreSQL storage backend

• psycopg2 ThreadedConnectionPool (falls back to direct connects)
• Two tables:
    records   (namespace, key) -> JSONB value
    messages  per-thread append-only log, trimmed to the newest N rows
• PostgresStore implements storage.Store, so the engine does not care which
  backend it runs on.
"""

import logging
from contextlib import contextmanager

import psycopg2
from psycopg2.extras import Json
from psycopg2.pool import ThreadedConnectionPool

from constants import get_db_connection_string, sanitize_postgres_dsn, redact_postgres_dsn
from storage import Store


# ----------------------------------------------------------------------
# Connection helpers
# ----------------------------------------------------------------------

# Optional global connection pool. Enabled by calling init_db_pool().
_POOL: ThreadedConnectionPool | None = None
_DSN: str | None = None


def init_db_pool(minconn: int = 1, maxconn: int = 10, dsn: str | None = None) -> None:
    """Initialise a global ThreadedConnectionPool.

    Safe to call multiple times (no-op after first init).
    """
    global _POOL
    if _POOL is not None:
        return

    global _DSN
    _DSN = str(sanitize_postgres_dsn(dsn or get_db_connection_string()))

    try:
        _POOL = ThreadedConnectionPool(
            minconn=int(minconn),
            maxconn=int(maxconn),
            dsn=_DSN,
        )
        logging.info("✅  Postgres connection pool ready (min=%s max=%s)", minconn, maxconn)
    except psycopg2.Error as e:
        _POOL = None
        logging.warning("⚠️  Could not initialise Postgres pool; falling back to direct connects: %s", e)


def _acquire_conn():
    """Acquire a connection either from the pool or by direct connect.

    Returns (conn, from_pool: bool)
    """
    if _POOL is not None:
        return _POOL.getconn(), True
    return psycopg2.connect(_DSN or get_db_connection_string()), False


def _release_conn(conn, from_pool: bool) -> None:
    if conn is None:
        return
    if _POOL is not None and from_pool:
        try:
            # Ensure a clean connection is returned to the pool.
            conn.rollback()
        except psycopg2.Error:
            pass
        _POOL.putconn(conn)
    else:
        conn.close()


@contextmanager
def db_cursor():
    """Yield a cursor; commit on success, roll back on error."""
    conn, from_pool = _acquire_conn()
    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        _release_conn(conn, from_pool)


def close_db_pool() -> None:
    global _POOL
    if _POOL is not None:
        _POOL.closeall()
        _POOL = None


# ----------------------------------------------------------------------
# Schema
# ----------------------------------------------------------------------
_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS records (
        namespace  TEXT        NOT NULL,
        key        TEXT        NOT NULL,
        value      JSONB       NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (namespace, key)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        seq        BIGSERIAL PRIMARY KEY,
        message_id TEXT      NOT NULL UNIQUE,
        thread_id  TEXT      NOT NULL,
        sender_id  TEXT      NOT NULL,
        client_id  TEXT,
        value      JSONB     NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_thread_seq ON messages (thread_id, seq);",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_dedupe
        ON messages (thread_id, sender_id, client_id)
     WHERE client_id IS NOT NULL;
    """,
)


def init_database() -> None:
    """Create the schema if missing. Called once at application startup."""
    logging.info("🔧  Initialising DB…")
    with db_cursor() as cur:
        for stmt in _SCHEMA:
            cur.execute(stmt)
    logging.info("✅  DB ready at %s", redact_postgres_dsn(_DSN or get_db_connection_string()))


def get_db_identity() -> dict:
    """Return runtime identity information for the current DB connection.

    Helps detect 'wrong database / wrong role' mistakes quickly.
    """
    out = {"current_user": None, "current_database": None, "server_addr": None, "server_port": None}
    with db_cursor() as cur:
        cur.execute("SELECT current_user, current_database(), inet_server_addr(), inet_server_port();")
        row = cur.fetchone()
    if row:
        out["current_user"] = row[0]
        out["current_database"] = row[1]
        out["server_addr"] = str(row[2]) if row[2] is not None else None
        out["server_port"] = int(row[3]) if row[3] is not None else None
    return out


# ----------------------------------------------------------------------
# Store implementation
# ----------------------------------------------------------------------
def _message_from_row(value, seq):
    rec = dict(value)
    rec["seq"] = int(seq)
    return rec


class PostgresStore(Store):
    """storage.Store on top of the records/messages tables."""

    def get(self, ns, key, default=None):
        with db_cursor() as cur:
            cur.execute("SELECT value FROM records WHERE namespace = %s AND key = %s;", (ns, key))
            row = cur.fetchone()
        return row[0] if row else default

    def put(self, ns, key, value):
        with db_cursor() as cur:
            cur.execute(
                """
                INSERT INTO records (namespace, key, value)
                VALUES (%s, %s, %s)
                ON CONFLICT (namespace, key)
                DO UPDATE SET value = EXCLUDED.value, updated_at = NOW();
                """,
                (ns, key, Json(value)),
            )

    def delete(self, ns, key):
        with db_cursor() as cur:
            cur.execute("DELETE FROM records WHERE namespace = %s AND key = %s;", (ns, key))
            return cur.rowcount > 0

    def items(self, ns):
        with db_cursor() as cur:
            cur.execute("SELECT key, value FROM records WHERE namespace = %s ORDER BY key;", (ns,))
            return [(r[0], r[1]) for r in cur.fetchall()]

    def append_message(self, thread_id, record, keep):
        with db_cursor() as cur:
            cur.execute(
                """
                INSERT INTO messages (message_id, thread_id, sender_id, client_id, value)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING seq;
                """,
                (record["id"], thread_id, record["sender_id"], record.get("client_id"), Json(record)),
            )
            seq = cur.fetchone()[0]
            cur.execute(
                """
                DELETE FROM messages
                 WHERE thread_id = %s
                   AND seq NOT IN (
                        SELECT seq FROM messages
                         WHERE thread_id = %s
                         ORDER BY seq DESC
                         LIMIT %s
                   );
                """,
                (thread_id, thread_id, max(1, int(keep))),
            )
        return _message_from_row(record, seq)

    def get_message(self, message_id):
        with db_cursor() as cur:
            cur.execute("SELECT value, seq FROM messages WHERE message_id = %s;", (message_id,))
            row = cur.fetchone()
        return _message_from_row(row[0], row[1]) if row else None

    def find_message(self, thread_id, sender_id, client_id):
        if not client_id:
            return None
        with db_cursor() as cur:
            cur.execute(
                """
                SELECT value, seq FROM messages
                 WHERE thread_id = %s AND sender_id = %s AND client_id = %s;
                """,
                (thread_id, sender_id, client_id),
            )
            row = cur.fetchone()
        return _message_from_row(row[0], row[1]) if row else None

    def update_message(self, record):
        with db_cursor() as cur:
            cur.execute(
                "UPDATE messages SET value = %s WHERE message_id = %s;",
                (Json(record), record["id"]),
            )

    def read_messages(self, thread_id, limit):
        with db_cursor() as cur:
            cur.execute(
                """
                SELECT value, seq FROM (
                    SELECT value, seq FROM messages
                     WHERE thread_id = %s
                     ORDER BY seq DESC
                     LIMIT %s
                ) newest
                ORDER BY seq ASC;
                """,
                (thread_id, max(0, int(limit))),
            )
            return [_message_from_row(r[0], r[1]) for r in cur.fetchall()]

    def drop_messages(self, thread_id):
        with db_cursor() as cur:
            cur.execute("DELETE FROM messages WHERE thread_id = %s;", (thread_id,))
            return cur.rowcount

    def close(self):
        close_db_pool()
