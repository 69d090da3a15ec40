"""
SQLite storage for conversations and API key accounting.
Single portable file. Conversations are JSON documents with a time-to-live;
credentials persist until deleted.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path

from redbox.models import Conversation, Credential
from redbox.storage.base import ConversationStore

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_name TEXT NOT NULL DEFAULT 'User',
    data TEXT NOT NULL,
    last_active INTEGER NOT NULL,
    expires_at REAL DEFAULT NULL
);

CREATE TABLE IF NOT EXISTS credentials (
    key TEXT PRIMARY KEY,
    queries INTEGER NOT NULL DEFAULT 0,
    tokens INTEGER NOT NULL DEFAULT 0,
    balance REAL NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_conversations_expires
    ON conversations(expires_at);
"""


class SQLiteStore(ConversationStore):
    """SQLite-backed store. Blocking sqlite calls run in a worker thread."""

    def __init__(self, db_path: str, conversation_ttl_days: float | None = 30):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.ttl_seconds = conversation_ttl_days * 86400 if conversation_ttl_days else None
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ── conversations ────────────────────────────────────────────────────

    def _get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data, expires_at FROM conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
            if row is None:
                return None
            if row["expires_at"] is not None and row["expires_at"] <= time.time():
                conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
                logger.debug("Conversation %s expired, purged", conversation_id)
                return None
        return Conversation.from_dict(json.loads(row["data"]))

    def _set_conversation(self, conversation: Conversation):
        expires_at = time.time() + self.ttl_seconds if self.ttl_seconds else None
        with self._connect() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO conversations
                   (id, user_name, data, last_active, expires_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    conversation.id,
                    conversation.user_name,
                    json.dumps(conversation.to_dict(), ensure_ascii=False),
                    conversation.last_active,
                    expires_at,
                ),
            )
        logger.debug(
            "Stored conversation %s (%d messages)", conversation.id, len(conversation.messages)
        )

    def _delete_conversation(self, conversation_id: str):
        with self._connect() as conn:
            conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))

    def _list_conversation_ids(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM conversations WHERE expires_at IS NULL OR expires_at > ? "
                "ORDER BY last_active DESC",
                (time.time(),),
            ).fetchall()
        return [r["id"] for r in rows]

    # ── credentials ──────────────────────────────────────────────────────

    def _get_credential(self, key: str) -> Credential | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM credentials WHERE key = ?", (key,)).fetchone()
        return Credential.from_dict(dict(row)) if row else None

    def _set_credential(self, credential: Credential):
        with self._connect() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO credentials (key, queries, tokens, balance)
                   VALUES (?, ?, ?, ?)""",
                (credential.key, credential.queries, credential.tokens, credential.balance),
            )

    def _list_credentials(self) -> list[Credential]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM credentials ORDER BY rowid").fetchall()
        return [Credential.from_dict(dict(r)) for r in rows]

    def _delete_credential(self, key: str):
        with self._connect() as conn:
            conn.execute("DELETE FROM credentials WHERE key = ?", (key,))

    # ── async surface ────────────────────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return await asyncio.to_thread(self._get_conversation, conversation_id)

    async def set_conversation(self, conversation: Conversation) -> None:
        await asyncio.to_thread(self._set_conversation, conversation)

    async def delete_conversation(self, conversation_id: str) -> None:
        await asyncio.to_thread(self._delete_conversation, conversation_id)

    async def list_conversation_ids(self) -> list[str]:
        return await asyncio.to_thread(self._list_conversation_ids)

    async def get_credential(self, key: str) -> Credential | None:
        return await asyncio.to_thread(self._get_credential, key)

    async def set_credential(self, credential: Credential) -> None:
        await asyncio.to_thread(self._set_credential, credential)

    async def list_credentials(self) -> list[Credential]:
        return await asyncio.to_thread(self._list_credentials)

    async def delete_credential(self, key: str) -> None:
        await asyncio.to_thread(self._delete_credential, key)
