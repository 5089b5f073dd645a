"""PostgreSQL document stores for email configuration and conversations."""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from webmail.config import PostgresConfig
from webmail.conversations import ConversationStore
from webmail.credentials import UserConfigStore
from webmail.models import Conversation, utcnow

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS user_email_config (
        user_id TEXT PRIMARY KEY,
        config JSONB NOT NULL,
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        conversation_id TEXT NOT NULL,
        status TEXT NOT NULL,
        subject TEXT NOT NULL DEFAULT '',
        last_message_at TIMESTAMPTZ NOT NULL,
        document JSONB NOT NULL,
        UNIQUE (owner, conversation_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_conversations_owner_status
    ON conversations (owner, status, last_message_at DESC)
    """,
]


class PostgresDatabase:
    """Owns the connection pool and schema."""

    def __init__(self, config: PostgresConfig, min_size: int = 1, max_size: int = 10):
        self.config = config
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[ConnectionPool] = None

    def initialize(self) -> None:
        self._pool = ConnectionPool(
            self.config.connection_string,
            min_size=self.min_size,
            max_size=self.max_size,
            open=True,
        )
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                for statement in SCHEMA:
                    cur.execute(statement)
            conn.commit()
        logger.info(f"PostgreSQL initialized at {self.config.host}:{self.config.port}")

    @contextmanager
    def connection(self) -> Iterator[Any]:
        if not self._pool:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        with self._pool.connection() as conn:
            yield conn

    def close(self) -> None:
        if self._pool:
            self._pool.close()
            self._pool = None


class PostgresUserConfigStore(UserConfigStore):
    def __init__(self, db: PostgresDatabase):
        self.db = db

    def get_email_config(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self.db.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    "SELECT config FROM user_email_config WHERE user_id = %s", (user_id,)
                )
                row = cur.fetchone()
        return row["config"] if row else None

    def save_email_config(self, user_id: str, config: Dict[str, Any]) -> None:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO user_email_config (user_id, config, updated_at)
                    VALUES (%s, %s, NOW())
                    ON CONFLICT (user_id) DO UPDATE SET
                        config = EXCLUDED.config,
                        updated_at = NOW()
                    """,
                    (user_id, Jsonb(config)),
                )
            conn.commit()


def _escape_like(text: str) -> str:
    """Make ``%`` and ``_`` match literally, like the in-memory substring search."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresConversationStore(ConversationStore):
    """Conversations as JSONB documents, one row per (owner, conversation id)."""

    def __init__(self, db: PostgresDatabase):
        self.db = db

    def append_message(
        self,
        owner,
        conversation_id,
        participants,
        subject,
        status,
        message,
        to_email=None,
    ) -> Tuple[Conversation, bool]:
        fresh = Conversation(
            conversation_id=conversation_id,
            owner=owner,
            subject=subject,
            status=status,
            participants=sorted(set(participants)),
            last_message_at=message.created_at,
            to_email=to_email,
        )
        with self.db.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    """
                    INSERT INTO conversations
                        (id, owner, conversation_id, status, subject, last_message_at, document)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (owner, conversation_id) DO NOTHING
                    """,
                    (
                        fresh.id,
                        owner,
                        conversation_id,
                        status,
                        subject,
                        fresh.last_message_at,
                        Jsonb(fresh.to_dict()),
                    ),
                )
                # Row lock serializes concurrent appends to the same thread
                cur.execute(
                    """
                    SELECT document FROM conversations
                    WHERE owner = %s AND conversation_id = %s
                    FOR UPDATE
                    """,
                    (owner, conversation_id),
                )
                conversation = Conversation.from_dict(cur.fetchone()["document"])

                if conversation.has_external_id(message.external_id):
                    conn.commit()
                    return conversation, False

                conversation.messages.append(message)
                if message.created_at > conversation.last_message_at:
                    conversation.last_message_at = message.created_at
                cur.execute(
                    """
                    UPDATE conversations
                    SET last_message_at = %s, document = %s
                    WHERE id = %s
                    """,
                    (conversation.last_message_at, Jsonb(conversation.to_dict()), conversation.id),
                )
            conn.commit()
        return conversation, True

    def get(self, owner, id) -> Optional[Conversation]:
        with self.db.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    "SELECT document FROM conversations WHERE owner = %s AND id = %s",
                    (owner, id),
                )
                row = cur.fetchone()
        return Conversation.from_dict(row["document"]) if row else None

    def list_conversations(
        self, owner, status, offset, limit, search=""
    ) -> Tuple[List[Conversation], int]:
        conditions = ["owner = %s", "status = %s"]
        params: List[Any] = [owner, status]
        if search:
            pattern = f"%{_escape_like(search)}%"
            conditions.append(
                """(
                    subject ILIKE %s ESCAPE '\\'
                    OR EXISTS (
                        SELECT 1 FROM jsonb_array_elements(document->'messages') m
                        WHERE m->>'content' ILIKE %s ESCAPE '\\'
                    )
                )"""
            )
            params.extend([pattern, pattern])
        where = " AND ".join(conditions)

        with self.db.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(f"SELECT COUNT(*) AS total FROM conversations WHERE {where}", params)
                total = cur.fetchone()["total"]
                cur.execute(
                    f"""
                    SELECT document FROM conversations
                    WHERE {where}
                    ORDER BY last_message_at DESC
                    OFFSET %s LIMIT %s
                    """,
                    params + [offset, limit],
                )
                rows = cur.fetchall()
        return [Conversation.from_dict(r["document"]) for r in rows], int(total)

    def set_status(self, owner, ids, status) -> int:
        if not ids:
            return 0
        deleted_at = utcnow().isoformat() if status == "trash" else None
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE conversations
                    SET status = %s,
                        document = document || jsonb_build_object(
                            'status', %s::text, 'deletedAt', %s::text
                        )
                    WHERE owner = %s AND id = ANY(%s)
                    """,
                    (status, status, deleted_at, owner, list(ids)),
                )
                moved = cur.rowcount
            conn.commit()
        return moved

    def delete_from_trash(self, owner, id) -> bool:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM conversations WHERE owner = %s AND id = %s AND status = 'trash'",
                    (owner, id),
                )
                deleted = cur.rowcount > 0
            conn.commit()
        return deleted
