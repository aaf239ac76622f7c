from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from .utils import _sqlite_memory_connection


class MemorySchemaMixin:
    SCHEMA_VERSION = 2

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if version > self.SCHEMA_VERSION:
                if has_tables and self._allow_destructive_reset_on_mismatch():
                    await self._reset_schema(db)
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
                    await db.commit()
                    return
                raise RuntimeError(
                    "SQLite schema version mismatch detected (database is newer than this build). "
                    f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                    "Set MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                )

            if not has_tables:
                await self._create_schema(db)
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            elif version != self.SCHEMA_VERSION and self._allow_destructive_reset_on_mismatch():
                await self._reset_schema(db)
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            else:
                await self._create_schema(db)
                await self._migrate_schema(db, version)
                if version != self.SCHEMA_VERSION:
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")

            await db.commit()

    async def close(self) -> None:
        # Connections are opened per call; nothing to release.
        return None

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        tables = (
            "message_emotions",
            "messages",
            "conversation_emotion_states",
            "user_emotion_profiles",
            "user_memory_facts",
            "user_accounts",
        )
        for table in tables:
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)

    async def _table_columns(self, db: aiosqlite.Connection, table_name: str) -> set[str]:
        cols: set[str] = set()
        async with db.execute(f"PRAGMA table_info({table_name})") as cursor:
            rows = await cursor.fetchall()
        for row in rows:
            cols.add(str(row[1]))
        return cols

    async def _add_column_if_missing(self, db: aiosqlite.Connection, table_name: str, column_sql: str) -> None:
        column_name = str(column_sql.split()[0]).strip()
        if not column_name:
            return
        cols = await self._table_columns(db, table_name)
        if column_name in cols:
            return
        await db.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_sql}")

    async def _migrate_schema(self, db: aiosqlite.Connection, from_version: int) -> None:
        if from_version < 2:
            await self._migrate_v2_record_versions(db)

    async def _migrate_v2_record_versions(self, db: aiosqlite.Connection) -> None:
        await self._add_column_if_missing(
            db, "conversation_emotion_states", "version INTEGER NOT NULL DEFAULT 1"
        )
        await self._add_column_if_missing(db, "user_emotion_profiles", "version INTEGER NOT NULL DEFAULT 1")
        await self._add_column_if_missing(db, "message_emotions", "is_kernel_relevant INTEGER NOT NULL DEFAULT 1")

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS user_accounts (
                user_id TEXT PRIMARY KEY,
                display_name TEXT NOT NULL,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS messages (
                message_id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'user',
                content TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS message_emotions (
                emotion_id INTEGER PRIMARY KEY AUTOINCREMENT,
                message_id INTEGER NOT NULL UNIQUE,
                primary_emotion TEXT NOT NULL,
                intensity REAL NOT NULL,
                confidence REAL NOT NULL DEFAULT 0.0,
                intensity_delta REAL,
                trend TEXT,
                secondary_emotion TEXT,
                emotion_vector TEXT,
                topic_tags TEXT NOT NULL DEFAULT '[]',
                detector_version TEXT,
                is_kernel_relevant INTEGER NOT NULL DEFAULT 1,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(message_id) REFERENCES messages(message_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS conversation_emotion_states (
                conversation_id TEXT PRIMARY KEY,
                user_id TEXT,
                window_size INTEGER NOT NULL DEFAULT 20,
                rolling_emotion_stats TEXT,
                rolling_topic_stats TEXT,
                active_threads TEXT,
                session_baseline_emotion TEXT,
                current_baseline_emotion TEXT,
                stability_score REAL,
                last_kernel_update_at TEXT,
                dominant_emotion TEXT,
                avg_intensity REAL NOT NULL DEFAULT 0.0,
                sadness_score REAL NOT NULL DEFAULT 0.0,
                anxiety_score REAL NOT NULL DEFAULT 0.0,
                anger_score REAL NOT NULL DEFAULT 0.0,
                loneliness_score REAL NOT NULL DEFAULT 0.0,
                version INTEGER NOT NULL DEFAULT 1,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS user_emotion_profiles (
                user_id TEXT PRIMARY KEY,
                emotion_stats TEXT NOT NULL DEFAULT '{}',
                topic_profile TEXT NOT NULL DEFAULT '{}',
                persona_affinity TEXT NOT NULL DEFAULT '{}',
                volatility_index REAL,
                emotional_anchors TEXT NOT NULL DEFAULT '[]',
                recent_kernel_snapshot TEXT,
                avg_intensity REAL NOT NULL DEFAULT 0.0,
                sadness_score REAL NOT NULL DEFAULT 0.0,
                anxiety_score REAL NOT NULL DEFAULT 0.0,
                anger_score REAL NOT NULL DEFAULT 0.0,
                loneliness_score REAL NOT NULL DEFAULT 0.0,
                hope_score REAL NOT NULL DEFAULT 0.0,
                gratitude_score REAL NOT NULL DEFAULT 0.0,
                version INTEGER NOT NULL DEFAULT 1,
                last_updated_at TEXT,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS user_memory_facts (
                fact_id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                value TEXT NOT NULL,
                confidence REAL NOT NULL DEFAULT 1.0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(user_id, kind, value)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conversation_user
            ON messages(conversation_id, user_id, created_at DESC);

            CREATE INDEX IF NOT EXISTS idx_facts_user_kind_updated
            ON user_memory_facts(user_id, kind, updated_at DESC);
            """
        )
