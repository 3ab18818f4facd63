#!/usr/bin/env python3
"""
Pulse realtime server – database helpers (PostgreSQL)

• Global ThreadedConnectionPool (init_db_pool), fresh connection fallback
• Idempotent schema creation at boot (init_database)
• PostgresChatStore: messages, conversations, calls, notifications, users

Delivery/read bookkeeping is done with single UPDATE statements that append to
the TEXT[] columns only when the id is not already present. Row locks make
concurrent acknowledgements of the same message serialize, so no update is
ever lost. Call status changes are compare-and-transition UPDATEs.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from typing import Iterable

import psycopg2
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from constants import get_db_connection_string, sanitize_postgres_dsn, redact_postgres_dsn


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
    global _POOL, _DSN
    if _POOL is not None:
        return

    _DSN = str(sanitize_postgres_dsn(dsn or get_db_connection_string()))

    try:
        _POOL = ThreadedConnectionPool(minconn=int(minconn), maxconn=int(maxconn), dsn=_DSN)
        logging.info("Postgres connection pool ready (min=%s max=%s)", minconn, maxconn)
    except psycopg2.Error as e:
        _POOL = None
        logging.warning("Could not initialise Postgres pool; falling back to direct connects: %s", e)


def close_db_pool() -> None:
    global _POOL
    if _POOL is not None:
        _POOL.closeall()
        _POOL = None


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
def db_cursor(dict_rows: bool = True):
    """Yield a cursor on a fresh connection; commit on success, roll back on error.

    Works outside Flask request contexts (Socket.IO background tasks, janitor).
    """
    conn, from_pool = _acquire_conn()
    try:
        with conn.cursor(cursor_factory=RealDictCursor if dict_rows else None) as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        _release_conn(conn, from_pool)


# ----------------------------------------------------------------------
# Schema
# ----------------------------------------------------------------------
_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id            TEXT PRIMARY KEY,
        user_name     TEXT NOT NULL,
        full_name     TEXT NOT NULL DEFAULT '',
        profile_photo TEXT,
        created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id              TEXT PRIMARY KEY,
        is_group        BOOLEAN NOT NULL DEFAULT FALSE,
        group_name      TEXT,
        last_message_id TEXT,
        created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_participants (
        conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
        user_id         TEXT NOT NULL,
        PRIMARY KEY (conversation_id, user_id)
    );
    """,
    "CREATE INDEX IF NOT EXISTS conversation_participants_user_idx ON conversation_participants (user_id);",
    """
    CREATE TABLE IF NOT EXISTS calls (
        id              TEXT PRIMARY KEY,
        conversation_id TEXT REFERENCES conversations(id) ON DELETE SET NULL,
        participants    TEXT[] NOT NULL DEFAULT '{}',
        initiator_id    TEXT NOT NULL,
        call_type       TEXT NOT NULL CHECK (call_type IN ('audio', 'video')),
        status          TEXT NOT NULL DEFAULT 'initiated'
                        CHECK (status IN ('initiated', 'ongoing', 'ended', 'missed')),
        created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        started_at      TIMESTAMPTZ,
        ended_at        TIMESTAMPTZ
    );
    """,
    "CREATE INDEX IF NOT EXISTS calls_status_created_idx ON calls (status, created_at);",
    "CREATE INDEX IF NOT EXISTS calls_initiator_idx ON calls (initiator_id);",
    """
    CREATE TABLE IF NOT EXISTS messages (
        id              TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
        sender_id       TEXT NOT NULL,
        text            TEXT NOT NULL DEFAULT '',
        media           TEXT[] NOT NULL DEFAULT '{}',
        call_id         TEXT REFERENCES calls(id) ON DELETE SET NULL,
        delivered_to    TEXT[] NOT NULL DEFAULT '{}',
        read_by         TEXT[] NOT NULL DEFAULT '{}',
        status          TEXT NOT NULL DEFAULT 'sent' CHECK (status IN ('sent', 'delivered', 'seen')),
        created_at      TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
    );
    """,
    "CREATE INDEX IF NOT EXISTS messages_conversation_created_idx ON messages (conversation_id, created_at);",
    "CREATE INDEX IF NOT EXISTS messages_sender_status_idx ON messages (sender_id, status);",
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id              TEXT PRIMARY KEY,
        user_id         TEXT NOT NULL,
        type            TEXT NOT NULL,
        actor_id        TEXT,
        conversation_id TEXT,
        message_id      TEXT,
        post_id         TEXT,
        comment_id      TEXT,
        extra           TEXT,
        read            BOOLEAN NOT NULL DEFAULT FALSE,
        created_at      TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
    );
    """,
    "CREATE INDEX IF NOT EXISTS notifications_user_read_idx ON notifications (user_id, read);",
    "CREATE INDEX IF NOT EXISTS notifications_user_created_idx ON notifications (user_id, created_at DESC);",
)


def init_database() -> None:
    """Create any missing tables/indexes. Called once at application startup."""
    logging.info("Initialising DB…")
    with db_cursor(dict_rows=False) as cur:
        for stmt in _SCHEMA:
            cur.execute(stmt)
    logging.info("DB ready at %s", redact_postgres_dsn(_DSN or get_db_connection_string()))


# ----------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------
_MESSAGE_COLUMNS = (
    "id, conversation_id, sender_id, text, media, call_id, delivered_to, read_by, status, created_at"
)

# Shared guard: acks from the sender or from non-participants are no-ops.
_RECIPIENT_GUARD = """
       m.sender_id <> %(user)s
   AND EXISTS (SELECT 1 FROM conversation_participants p
                WHERE p.conversation_id = m.conversation_id AND p.user_id = %(user)s)
"""


def _new_id() -> str:
    return uuid.uuid4().hex


class PostgresChatStore:
    """Chat persistence on PostgreSQL. Same interface as memory_store.MemoryChatStore."""

    # ---------------- users ----------------
    def create_user(self, user_name: str, full_name: str = "", profile_photo: str | None = None,
                    user_id: str | None = None) -> dict:
        with db_cursor() as cur:
            cur.execute(
                """
                INSERT INTO users (id, user_name, full_name, profile_photo)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE
                   SET user_name = EXCLUDED.user_name,
                       full_name = EXCLUDED.full_name,
                       profile_photo = EXCLUDED.profile_photo
                RETURNING *;
                """,
                (str(user_id or _new_id()), user_name, full_name, profile_photo),
            )
            return dict(cur.fetchone())

    def get_user(self, user_id: str) -> dict | None:
        with db_cursor() as cur:
            cur.execute("SELECT * FROM users WHERE id = %s;", (str(user_id),))
            row = cur.fetchone()
        return dict(row) if row else None

    def user_exists(self, user_id: str) -> bool:
        with db_cursor(dict_rows=False) as cur:
            cur.execute("SELECT 1 FROM users WHERE id = %s LIMIT 1;", (str(user_id),))
            return cur.fetchone() is not None

    # ---------------- conversations ----------------
    def create_conversation(self, participants: Iterable[str], is_group: bool = False,
                            group_name: str | None = None) -> dict:
        members = list(dict.fromkeys(str(p) for p in participants))
        conv_id = _new_id()
        with db_cursor() as cur:
            cur.execute(
                "INSERT INTO conversations (id, is_group, group_name) VALUES (%s, %s, %s);",
                (conv_id, bool(is_group), group_name),
            )
            cur.executemany(
                "INSERT INTO conversation_participants (conversation_id, user_id) VALUES (%s, %s);",
                [(conv_id, m) for m in members],
            )
        return self.get_conversation(conv_id)

    def get_conversation(self, conversation_id: str) -> dict | None:
        with db_cursor() as cur:
            cur.execute(
                """
                SELECT c.*,
                       COALESCE(ARRAY(SELECT p.user_id FROM conversation_participants p
                                       WHERE p.conversation_id = c.id ORDER BY p.user_id), '{}') AS participants
                  FROM conversations c
                 WHERE c.id = %s;
                """,
                (str(conversation_id),),
            )
            row = cur.fetchone()
        return dict(row) if row else None

    def list_conversations(self, user_id: str) -> list[dict]:
        with db_cursor() as cur:
            cur.execute(
                """
                SELECT c.*,
                       COALESCE(ARRAY(SELECT p.user_id FROM conversation_participants p
                                       WHERE p.conversation_id = c.id ORDER BY p.user_id), '{}') AS participants
                  FROM conversations c
                  JOIN conversation_participants me
                    ON me.conversation_id = c.id AND me.user_id = %s
                 ORDER BY c.updated_at DESC, c.created_at DESC;
                """,
                (str(user_id),),
            )
            return [dict(r) for r in cur.fetchall()]

    def set_last_message(self, conversation_id: str, message_id: str) -> None:
        with db_cursor(dict_rows=False) as cur:
            cur.execute(
                "UPDATE conversations SET last_message_id = %s, updated_at = NOW() WHERE id = %s;",
                (message_id, str(conversation_id)),
            )

    # ---------------- messages ----------------
    def create_message(self, conversation_id: str, sender_id: str, text: str = "",
                       media: list[str] | None = None, call_id: str | None = None) -> dict:
        with db_cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO messages (id, conversation_id, sender_id, text, media, call_id)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING {_MESSAGE_COLUMNS};
                """,
                (_new_id(), str(conversation_id), str(sender_id), text or "", list(media or []), call_id),
            )
            return dict(cur.fetchone())

    def get_message(self, message_id: str) -> dict | None:
        with db_cursor() as cur:
            cur.execute(f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = %s;", (str(message_id),))
            row = cur.fetchone()
        return dict(row) if row else None

    def list_messages(self, conversation_id: str, offset: int = 0, limit: int = 50) -> list[dict]:
        with db_cursor() as cur:
            cur.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                  FROM messages
                 WHERE conversation_id = %s
                 ORDER BY created_at ASC, id ASC
                 OFFSET %s LIMIT %s;
                """,
                (str(conversation_id), int(offset), int(limit)),
            )
            return [dict(r) for r in cur.fetchall()]

    def count_messages(self, conversation_id: str) -> int:
        with db_cursor(dict_rows=False) as cur:
            cur.execute("SELECT COUNT(*) FROM messages WHERE conversation_id = %s;", (str(conversation_id),))
            return int(cur.fetchone()[0])

    def add_delivered(self, message_id: str, user_id: str) -> tuple[dict | None, bool]:
        params = {"id": str(message_id), "user": str(user_id)}
        with db_cursor() as cur:
            cur.execute(
                f"""
                UPDATE messages m
                   SET delivered_to = array_append(m.delivered_to, %(user)s),
                       status = CASE WHEN m.status = 'sent' THEN 'delivered' ELSE m.status END
                 WHERE m.id = %(id)s
                   AND NOT (%(user)s = ANY(m.delivered_to))
                   AND {_RECIPIENT_GUARD}
                RETURNING m.id;
                """,
                params,
            )
            changed = cur.fetchone() is not None
            cur.execute(f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = %(id)s;", params)
            row = cur.fetchone()
        return (dict(row) if row else None), changed

    def add_read(self, message_id: str, user_id: str) -> tuple[dict | None, bool]:
        params = {"id": str(message_id), "user": str(user_id)}
        with db_cursor() as cur:
            cur.execute(
                f"""
                UPDATE messages m
                   SET read_by = array_append(m.read_by, %(user)s)
                 WHERE m.id = %(id)s
                   AND NOT (%(user)s = ANY(m.read_by))
                   AND {_RECIPIENT_GUARD}
                RETURNING m.id;
                """,
                params,
            )
            changed = cur.fetchone() is not None
            if changed:
                # Same transaction: sees our own append and holds the row lock.
                cur.execute(
                    """
                    UPDATE messages m
                       SET status = 'seen'
                     WHERE m.id = %(id)s
                       AND m.status <> 'seen'
                       AND NOT EXISTS (
                           SELECT 1 FROM conversation_participants p
                            WHERE p.conversation_id = m.conversation_id
                              AND p.user_id <> m.sender_id
                              AND NOT (p.user_id = ANY(m.read_by))
                       );
                    """,
                    params,
                )
            cur.execute(f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = %(id)s;", params)
            row = cur.fetchone()
        return (dict(row) if row else None), changed

    # ---------------- calls ----------------
    def create_call(self, conversation_id: str | None, participants: Iterable[str], initiator_id: str,
                    call_type: str) -> dict:
        with db_cursor() as cur:
            cur.execute(
                """
                INSERT INTO calls (id, conversation_id, participants, initiator_id, call_type)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *;
                """,
                (
                    _new_id(),
                    conversation_id,
                    list(dict.fromkeys(str(p) for p in participants)),
                    str(initiator_id),
                    call_type,
                ),
            )
            return dict(cur.fetchone())

    def get_call(self, call_id: str) -> dict | None:
        with db_cursor() as cur:
            cur.execute("SELECT * FROM calls WHERE id = %s;", (str(call_id),))
            row = cur.fetchone()
        return dict(row) if row else None

    def transition_call(self, call_id: str, status: str, allowed_from: Iterable[str]) -> dict | None:
        sets = ["status = %(status)s"]
        if status == "ongoing":
            sets.append("started_at = NOW()")
        elif status == "ended":
            sets.append("ended_at = NOW()")
        with db_cursor() as cur:
            cur.execute(
                f"""
                UPDATE calls
                   SET {", ".join(sets)}
                 WHERE id = %(id)s
                   AND status = ANY(%(allowed)s)
                RETURNING *;
                """,
                {"id": str(call_id), "status": status, "allowed": list(allowed_from)},
            )
            row = cur.fetchone()
        return dict(row) if row else None

    def list_stale_initiated_calls(self, older_than_seconds: float) -> list[str]:
        with db_cursor(dict_rows=False) as cur:
            cur.execute(
                """
                SELECT id FROM calls
                 WHERE status = 'initiated'
                   AND created_at < NOW() - make_interval(secs => %s);
                """,
                (float(older_than_seconds),),
            )
            return [r[0] for r in cur.fetchall()]

    # ---------------- notifications ----------------
    _NOTIFICATION_SELECT = """
        SELECT n.*,
               CASE WHEN u.id IS NULL THEN NULL ELSE json_build_object(
                   'id', u.id, 'user_name', u.user_name, 'full_name', u.full_name,
                   'profile_photo', u.profile_photo) END AS actor,
               CASE WHEN c.id IS NULL THEN NULL ELSE json_build_object(
                   'id', c.id, 'is_group', c.is_group, 'group_name', c.group_name) END AS conversation
          FROM notifications n
          LEFT JOIN users u ON u.id = n.actor_id
          LEFT JOIN conversations c ON c.id = n.conversation_id
    """

    def create_notifications(self, items: Iterable[dict]) -> list[dict]:
        ids = []
        with db_cursor() as cur:
            for item in items:
                nid = _new_id()
                cur.execute(
                    """
                    INSERT INTO notifications
                        (id, user_id, type, actor_id, conversation_id, message_id, post_id, comment_id, extra)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s);
                    """,
                    (
                        nid,
                        str(item["user_id"]),
                        item["type"],
                        item.get("actor_id"),
                        item.get("conversation_id"),
                        item.get("message_id"),
                        item.get("post_id"),
                        item.get("comment_id"),
                        item.get("extra"),
                    ),
                )
                ids.append(nid)
            if not ids:
                return []
            cur.execute(self._NOTIFICATION_SELECT + " WHERE n.id = ANY(%s) ORDER BY n.created_at;", (ids,))
            return [dict(r) for r in cur.fetchall()]

    def list_notifications(self, user_id: str, offset: int = 0, limit: int = 20) -> list[dict]:
        with db_cursor() as cur:
            cur.execute(
                self._NOTIFICATION_SELECT + " WHERE n.user_id = %s ORDER BY n.created_at DESC OFFSET %s LIMIT %s;",
                (str(user_id), int(offset), int(limit)),
            )
            return [dict(r) for r in cur.fetchall()]

    def count_notifications(self, user_id: str) -> int:
        with db_cursor(dict_rows=False) as cur:
            cur.execute("SELECT COUNT(*) FROM notifications WHERE user_id = %s;", (str(user_id),))
            return int(cur.fetchone()[0])

    def get_notification(self, notification_id: str) -> dict | None:
        with db_cursor() as cur:
            cur.execute(self._NOTIFICATION_SELECT + " WHERE n.id = %s;", (str(notification_id),))
            row = cur.fetchone()
        return dict(row) if row else None

    def mark_notifications_read(self, notification_ids: Iterable[str]) -> int:
        ids = [str(i) for i in notification_ids]
        if not ids:
            return 0
        with db_cursor(dict_rows=False) as cur:
            cur.execute("UPDATE notifications SET read = TRUE WHERE id = ANY(%s) AND read = FALSE;", (ids,))
            return cur.rowcount
