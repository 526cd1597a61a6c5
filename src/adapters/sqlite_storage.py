"""SQLite storage adapter.

Implements the core CheckpointPort, PreferencePort, and DedupStorePort
using a single SQLite database.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from core.preferences import NotificationPreferences

LOGGER = logging.getLogger(__name__)

CURSOR_KEY = "lastProcessedTimestamp"


class SQLiteStorage:
    """Thin SQLite wrapper backing the cursor, subscriptions, and dedup keys."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - system_state: small key/value store, holds the polling cursor
        - subscriptions: per-address delivery target and preferences
        - dedup_keys: scheduler notifications already sent this week
        """

        with self._connect() as conn:
            # system_state survives restarts so polling resumes where it
            # stopped instead of skipping to "now".
            # Fields:
            # - key: setting name (PRIMARY KEY)
            # - value: stringified value
            # - updated_at: last write, for debugging
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS system_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
                """
            )
            # subscriptions maps a lowercase ledger address to a bot chat.
            # Fields:
            # - user_address: lowercase address (PRIMARY KEY)
            # - chat_id: Telegram chat that receives the pushes
            # - preferences: JSON object of camelCase boolean flags
            # - created_at / updated_at: bookkeeping timestamps
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    user_address TEXT PRIMARY KEY,
                    chat_id TEXT NOT NULL,
                    preferences TEXT NOT NULL DEFAULT '{}',
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
                """
            )
            # dedup_keys mirrors the in-memory registry; cleared weekly.
            # Fields:
            # - key: formatted condition key (PRIMARY KEY)
            # - created_at: when the notification went out
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS dedup_keys (
                    key TEXT PRIMARY KEY,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )

    def load_cursor(self) -> Optional[int]:
        """Return the persisted polling cursor, if any."""

        with self._connect() as conn:
            row = conn.execute("SELECT value FROM system_state WHERE key = ?", (CURSOR_KEY,)).fetchone()
        if not row:
            return None
        try:
            return int(row["value"])
        except ValueError:
            LOGGER.warning("Ignoring unparsable cursor value %r", row["value"])
            return None

    def save_cursor(self, cursor: int) -> None:
        """Upsert the polling cursor."""

        now = datetime.now(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO system_state (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (CURSOR_KEY, str(cursor), now.isoformat()),
            )

    def upsert_subscription(
        self,
        address: str,
        chat_id: str,
        preferences: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Create or replace the subscription for an address."""

        now = datetime.now(timezone.utc).isoformat()
        prefs_json = json.dumps(NotificationPreferences.from_dict(preferences or {}).to_dict())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO subscriptions (user_address, chat_id, preferences, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_address) DO UPDATE SET
                    chat_id = excluded.chat_id,
                    preferences = excluded.preferences,
                    updated_at = excluded.updated_at
                """,
                (address.lower(), str(chat_id), prefs_json, now, now),
            )

    def get_preferences(self, address: str) -> Optional[NotificationPreferences]:
        """Return the address's preferences, or None when it never subscribed."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT preferences FROM subscriptions WHERE user_address = ?",
                (address.lower(),),
            ).fetchone()
        if not row:
            return None
        try:
            raw = json.loads(row["preferences"] or "{}")
        except json.JSONDecodeError:
            LOGGER.warning("Corrupt preferences for %s; using defaults", address)
            raw = {}
        return NotificationPreferences.from_dict(raw if isinstance(raw, dict) else {})

    def get_chat_id(self, address: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT chat_id FROM subscriptions WHERE user_address = ?",
                (address.lower(),),
            ).fetchone()
        return row["chat_id"] if row else None

    def load_dedup_keys(self) -> set[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT key FROM dedup_keys").fetchall()
        return {row["key"] for row in rows}

    def add_dedup_key(self, key: str) -> None:
        now = datetime.now(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO dedup_keys (key, created_at) VALUES (?, ?)",
                (key, now.isoformat()),
            )

    def clear_dedup_keys(self) -> int:
        """Delete every dedup key and return the number removed."""

        with self._connect() as conn:
            cur = conn.execute("DELETE FROM dedup_keys")
            return cur.rowcount

    def count_dedup_keys(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM dedup_keys").fetchone()
        return int(row["total"])
