from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

try:
    import asyncpg
except Exception:  # pragma: no cover - optional dependency at runtime
    asyncpg = None  # type: ignore[assignment]

from ..common import to_iso, utc_now
from .storage.profiles import SCALAR_SCORE_FIELDS, user_profile_row_to_dict
from .storage.states import conversation_state_row_to_dict
from .storage.utils import (
    _clamp,
    _dump_json,
    _load_json,
    message_emotion_row_to_dict,
    normalize_fact_kind,
    normalize_fact_value,
    prepare_message_emotion_fields,
)


def _affected_rows(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1" or "INSERT 0 1".
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except ValueError:
        return 0


_EMOTION_SELECT = """
    SELECT me.message_id, m.conversation_id, m.user_id, me.primary_emotion, me.intensity,
           me.confidence, me.intensity_delta, me.trend, me.secondary_emotion, me.topic_tags,
           m.created_at
    FROM message_emotions me
    JOIN messages m ON m.message_id = me.message_id
"""

_STATE_COLUMNS = """
    conversation_id, user_id, window_size, rolling_emotion_stats, rolling_topic_stats,
    active_threads, session_baseline_emotion, current_baseline_emotion, stability_score,
    last_kernel_update_at, dominant_emotion, avg_intensity, sadness_score, anxiety_score,
    anger_score, loneliness_score, version
"""

_PROFILE_COLUMNS = """
    user_id, emotion_stats, topic_profile, persona_affinity, volatility_index,
    emotional_anchors, recent_kernel_snapshot, avg_intensity, sadness_score, anxiety_score,
    anger_score, loneliness_score, hope_score, gratitude_score, version, last_updated_at
"""


class PostgresMemoryStore:
    """Postgres-backed memory store implementing the same API as MemoryStore."""

    SCHEMA_VERSION = 2
    backend_name = "postgres"

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("MEMORY_POSTGRES_DSN cannot be empty")
        self._pool: "asyncpg.Pool | None" = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_pool(self) -> "asyncpg.Pool":
        if asyncpg is None:
            raise RuntimeError(
                "Postgres memory backend requires asyncpg. Install with: pip install asyncpg"
            )
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=1,
                max_size=6,
                command_timeout=30.0,
            )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def ping(self) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute("SELECT 1")

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    version = await self._get_schema_version(conn)
                    if version > self.SCHEMA_VERSION:
                        raise RuntimeError(
                            f"Postgres memory schema version {version} is newer than supported {self.SCHEMA_VERSION}. "
                            "Upgrade before starting."
                        )
                    await self._create_schema(conn)
                    await self._migrate_schema(conn, version)
                    if version != self.SCHEMA_VERSION:
                        await self._set_schema_version(conn, self.SCHEMA_VERSION)
            self._initialized = True

    async def _migrate_schema(self, conn: "asyncpg.Connection", from_version: int) -> None:
        # v2: record versions for compare-and-set aggregate writes (additive).
        await conn.execute(
            """
            ALTER TABLE conversation_emotion_states
            ADD COLUMN IF NOT EXISTS version INTEGER NOT NULL DEFAULT 1;

            ALTER TABLE user_emotion_profiles
            ADD COLUMN IF NOT EXISTS version INTEGER NOT NULL DEFAULT 1;

            ALTER TABLE message_emotions
            ADD COLUMN IF NOT EXISTS is_kernel_relevant BOOLEAN NOT NULL DEFAULT TRUE;
            """
        )

    async def _get_schema_version(self, conn: "asyncpg.Connection") -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS memory_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        row = await conn.fetchrow("SELECT value FROM memory_meta WHERE key = 'schema_version'")
        if row is None:
            return 0
        try:
            return int(str(row["value"]))
        except ValueError:
            return 0

    async def _set_schema_version(self, conn: "asyncpg.Connection", version: int) -> None:
        await conn.execute(
            """
            INSERT INTO memory_meta (key, value, updated_at)
            VALUES ('schema_version', $1, NOW())
            ON CONFLICT(key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = NOW()
            """,
            str(int(version)),
        )

    async def _create_schema(self, conn: "asyncpg.Connection") -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS user_accounts (
                user_id TEXT PRIMARY KEY,
                display_name TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS messages (
                message_id BIGSERIAL PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'user',
                content TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS message_emotions (
                emotion_id BIGSERIAL PRIMARY KEY,
                message_id BIGINT NOT NULL UNIQUE REFERENCES messages(message_id) ON DELETE CASCADE,
                primary_emotion TEXT NOT NULL,
                intensity DOUBLE PRECISION NOT NULL,
                confidence DOUBLE PRECISION NOT NULL DEFAULT 0.0,
                intensity_delta DOUBLE PRECISION,
                trend TEXT,
                secondary_emotion TEXT,
                emotion_vector JSONB,
                topic_tags JSONB NOT NULL DEFAULT '[]'::jsonb,
                detector_version TEXT,
                is_kernel_relevant BOOLEAN NOT NULL DEFAULT TRUE,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS conversation_emotion_states (
                conversation_id TEXT PRIMARY KEY,
                user_id TEXT,
                window_size INTEGER NOT NULL DEFAULT 20,
                rolling_emotion_stats JSONB,
                rolling_topic_stats JSONB,
                active_threads JSONB,
                session_baseline_emotion TEXT,
                current_baseline_emotion TEXT,
                stability_score DOUBLE PRECISION,
                last_kernel_update_at TEXT,
                dominant_emotion TEXT,
                avg_intensity DOUBLE PRECISION NOT NULL DEFAULT 0.0,
                sadness_score DOUBLE PRECISION NOT NULL DEFAULT 0.0,
                anxiety_score DOUBLE PRECISION NOT NULL DEFAULT 0.0,
                anger_score DOUBLE PRECISION NOT NULL DEFAULT 0.0,
                loneliness_score DOUBLE PRECISION NOT NULL DEFAULT 0.0,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS user_emotion_profiles (
                user_id TEXT PRIMARY KEY,
                emotion_stats JSONB NOT NULL DEFAULT '{}'::jsonb,
                topic_profile JSONB NOT NULL DEFAULT '{}'::jsonb,
                persona_affinity JSONB NOT NULL DEFAULT '{}'::jsonb,
                volatility_index DOUBLE PRECISION,
                emotional_anchors JSONB NOT NULL DEFAULT '[]'::jsonb,
                recent_kernel_snapshot JSONB,
                avg_intensity DOUBLE PRECISION NOT NULL DEFAULT 0.0,
                sadness_score DOUBLE PRECISION NOT NULL DEFAULT 0.0,
                anxiety_score DOUBLE PRECISION NOT NULL DEFAULT 0.0,
                anger_score DOUBLE PRECISION NOT NULL DEFAULT 0.0,
                loneliness_score DOUBLE PRECISION NOT NULL DEFAULT 0.0,
                hope_score DOUBLE PRECISION NOT NULL DEFAULT 0.0,
                gratitude_score DOUBLE PRECISION NOT NULL DEFAULT 0.0,
                version INTEGER NOT NULL DEFAULT 1,
                last_updated_at TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );

            CREATE TABLE IF NOT EXISTS user_memory_facts (
                fact_id BIGSERIAL PRIMARY KEY,
                user_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                value TEXT NOT NULL,
                confidence DOUBLE PRECISION NOT NULL DEFAULT 1.0,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                UNIQUE(user_id, kind, value)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conversation_user
            ON messages(conversation_id, user_id, created_at DESC);

            CREATE INDEX IF NOT EXISTS idx_facts_user_kind_updated
            ON user_memory_facts(user_id, kind, updated_at DESC);
            """
        )

    # Messages and per-message emotions

    async def save_message(
        self,
        conversation_id: str,
        user_id: str,
        content: str,
        role: str = "user",
        created_at: datetime | None = None,
    ) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            message_id = await conn.fetchval(
                """
                INSERT INTO messages (conversation_id, user_id, role, content, created_at)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING message_id
                """,
                str(conversation_id),
                str(user_id),
                role,
                content,
                created_at or utc_now(),
            )
        return int(message_id)

    async def save_message_emotion(
        self,
        message_id: int,
        primary_emotion: str,
        intensity: float,
        confidence: float = 0.0,
        topic_tags: list[str] | None = None,
    ) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO message_emotions (message_id, primary_emotion, intensity, confidence, topic_tags)
                VALUES ($1, $2, $3, $4, $5::jsonb)
                ON CONFLICT(message_id) DO UPDATE SET
                    primary_emotion = EXCLUDED.primary_emotion,
                    intensity = EXCLUDED.intensity,
                    confidence = EXCLUDED.confidence,
                    topic_tags = EXCLUDED.topic_tags
                """,
                int(message_id),
                str(primary_emotion or "NEUTRAL").upper(),
                float(intensity),
                _clamp(float(confidence), 0.0, 1.0),
                _dump_json(list(topic_tags or [])),
            )

    async def update_message_emotion(self, message_id: int, **fields: Any) -> bool:
        prepared = prepare_message_emotion_fields(fields)
        if not prepared:
            return False
        assignments: list[str] = []
        args: list[Any] = []
        for index, (name, value) in enumerate(prepared.items(), start=1):
            if name in {"emotion_vector", "topic_tags"}:
                assignments.append(f"{name} = ${index}::jsonb")
            elif name == "is_kernel_relevant":
                assignments.append(f"{name} = ${index}")
                value = bool(value)
            else:
                assignments.append(f"{name} = ${index}")
            args.append(value)
        args.append(int(message_id))
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                f"UPDATE message_emotions SET {', '.join(assignments)} WHERE message_id = ${len(args)}",
                *args,
            )
        return _affected_rows(status) > 0

    async def get_previous_user_emotion(
        self,
        conversation_id: str,
        user_id: str,
        exclude_message_id: int,
    ) -> Optional[Dict[str, Any]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                _EMOTION_SELECT
                + """
                WHERE m.conversation_id = $1 AND m.user_id = $2 AND m.role = 'user'
                  AND me.message_id <> $3
                ORDER BY me.emotion_id DESC
                LIMIT 1
                """,
                str(conversation_id),
                str(user_id),
                int(exclude_message_id),
            )
        if row is None:
            return None
        return message_emotion_row_to_dict(row)

    async def get_recent_user_emotions(
        self,
        conversation_id: str,
        user_id: str,
        limit: int,
    ) -> List[Dict[str, Any]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                _EMOTION_SELECT
                + """
                WHERE m.conversation_id = $1 AND m.user_id = $2
                ORDER BY me.emotion_id DESC
                LIMIT $3
                """,
                str(conversation_id),
                str(user_id),
                max(1, int(limit)),
            )
        return [message_emotion_row_to_dict(row) for row in rows]

    async def get_message_text(self, message_id: int) -> str | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            content = await conn.fetchval(
                "SELECT content FROM messages WHERE message_id = $1",
                int(message_id),
            )
        return None if content is None else str(content)

    # Conversation states

    async def get_conversation_state(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_STATE_COLUMNS} FROM conversation_emotion_states WHERE conversation_id = $1",
                str(conversation_id),
            )
        if row is None:
            return None
        return conversation_state_row_to_dict(row)

    async def create_conversation_state(self, record: Dict[str, Any]) -> Dict[str, Any]:
        conversation_id = str(record["conversation_id"])
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO conversation_emotion_states (
                    conversation_id, user_id, window_size, dominant_emotion, avg_intensity,
                    sadness_score, anxiety_score, anger_score, loneliness_score, version
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, 1)
                ON CONFLICT(conversation_id) DO NOTHING
                """,
                conversation_id,
                record.get("user_id"),
                int(record.get("window_size") or 20),
                record.get("dominant_emotion"),
                float(record.get("avg_intensity") or 0.0),
                float(record.get("sadness_score") or 0.0),
                float(record.get("anxiety_score") or 0.0),
                float(record.get("anger_score") or 0.0),
                float(record.get("loneliness_score") or 0.0),
            )
        stored = await self.get_conversation_state(conversation_id)
        if stored is None:
            raise RuntimeError(f"Conversation state {conversation_id} vanished after insert")
        return stored

    async def update_conversation_state(self, record: Dict[str, Any], expected_version: int) -> bool:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE conversation_emotion_states
                SET window_size = $1,
                    rolling_emotion_stats = $2::jsonb,
                    rolling_topic_stats = $3::jsonb,
                    active_threads = $4::jsonb,
                    session_baseline_emotion = $5,
                    current_baseline_emotion = $6,
                    stability_score = $7,
                    last_kernel_update_at = $8,
                    version = version + 1,
                    updated_at = NOW()
                WHERE conversation_id = $9 AND version = $10
                """,
                int(record["window_size"]),
                _dump_json(record.get("rolling_emotion_stats")),
                _dump_json(record.get("rolling_topic_stats")),
                _dump_json(record.get("active_threads") or []),
                record.get("session_baseline_emotion"),
                record.get("current_baseline_emotion"),
                record.get("stability_score"),
                record.get("last_kernel_update_at"),
                str(record["conversation_id"]),
                int(expected_version),
            )
        return _affected_rows(status) == 1

    # User profiles

    async def get_user_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_PROFILE_COLUMNS} FROM user_emotion_profiles WHERE user_id = $1",
                str(user_id),
            )
        if row is None:
            return None
        return user_profile_row_to_dict(row)

    async def upsert_user_profile(self, record: Dict[str, Any], expected_version: int) -> bool:
        values = (
            _dump_json(record.get("emotion_stats") or {}),
            _dump_json(record.get("topic_profile") or {}),
            _dump_json(record.get("persona_affinity") or {}),
            record.get("volatility_index"),
            _dump_json(record.get("emotional_anchors") or []),
            _dump_json(record.get("recent_kernel_snapshot")),
            record.get("last_updated_at"),
        )
        user_id = str(record["user_id"])
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            if int(expected_version) <= 0:
                status = await conn.execute(
                    """
                    INSERT INTO user_emotion_profiles (
                        emotion_stats, topic_profile, persona_affinity, volatility_index,
                        emotional_anchors, recent_kernel_snapshot, last_updated_at, user_id, version
                    )
                    VALUES ($1::jsonb, $2::jsonb, $3::jsonb, $4, $5::jsonb, $6::jsonb, $7, $8, 1)
                    ON CONFLICT(user_id) DO NOTHING
                    """,
                    *values,
                    user_id,
                )
            else:
                status = await conn.execute(
                    """
                    UPDATE user_emotion_profiles
                    SET emotion_stats = $1::jsonb,
                        topic_profile = $2::jsonb,
                        persona_affinity = $3::jsonb,
                        volatility_index = $4,
                        emotional_anchors = $5::jsonb,
                        recent_kernel_snapshot = $6::jsonb,
                        last_updated_at = $7,
                        version = version + 1
                    WHERE user_id = $8 AND version = $9
                    """,
                    *values,
                    user_id,
                    int(expected_version),
                )
        return _affected_rows(status) == 1

    async def set_user_profile_scores(self, user_id: str, **scores: float) -> None:
        unknown = sorted(set(scores) - set(SCALAR_SCORE_FIELDS))
        if unknown:
            raise ValueError(f"Unsupported profile score fields: {', '.join(unknown)}")
        if not scores:
            return
        names = list(scores)
        columns = ", ".join(names)
        placeholders = ", ".join(f"${index}" for index in range(2, len(names) + 2))
        updates = ", ".join(f"{name} = EXCLUDED.{name}" for name in names)
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO user_emotion_profiles (user_id, {columns})
                VALUES ($1, {placeholders})
                ON CONFLICT(user_id) DO UPDATE SET {updates}
                """,
                str(user_id),
                *(float(scores[name]) for name in names),
            )

    # Semantic facts and accounts

    async def upsert_memory_fact(
        self,
        user_id: str,
        kind: str,
        value: str,
        confidence: float = 1.0,
        updated_at: datetime | None = None,
    ) -> int | None:
        kind_clean = normalize_fact_kind(kind)
        value_clean = normalize_fact_value(value)
        if not kind_clean or not value_clean:
            return None
        stamp = updated_at or utc_now()
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            fact_id = await conn.fetchval(
                """
                INSERT INTO user_memory_facts (user_id, kind, value, confidence, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $5)
                ON CONFLICT(user_id, kind, value) DO UPDATE SET
                    confidence = GREATEST(user_memory_facts.confidence, EXCLUDED.confidence),
                    updated_at = EXCLUDED.updated_at
                RETURNING fact_id
                """,
                str(user_id),
                kind_clean,
                value_clean,
                _clamp(float(confidence), 0.0, 1.0),
                stamp,
            )
        return int(fact_id) if fact_id is not None else None

    async def get_memory_facts(
        self,
        user_id: str,
        kinds: Iterable[str],
        limit: int = 96,
    ) -> List[Dict[str, Any]]:
        kind_list = [kind for kind in dict.fromkeys(normalize_fact_kind(k) for k in kinds) if kind]
        if not kind_list:
            return []
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT fact_id, user_id, kind, value, confidence, updated_at
                FROM user_memory_facts
                WHERE user_id = $1 AND kind = ANY($2::text[])
                ORDER BY updated_at DESC, fact_id DESC
                LIMIT $3
                """,
                str(user_id),
                kind_list,
                max(1, int(limit)),
            )
        return [
            {
                "fact_id": int(row["fact_id"]),
                "user_id": str(row["user_id"]),
                "kind": str(row["kind"]),
                "value": str(row["value"]),
                "confidence": float(row["confidence"]),
                "updated_at": to_iso(row["updated_at"]),
            }
            for row in rows
        ]

    async def upsert_user_account(self, user_id: str, display_name: str) -> None:
        display = " ".join(str(display_name or "").split())
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_accounts (user_id, display_name, created_at, updated_at)
                VALUES ($1, $2, NOW(), NOW())
                ON CONFLICT(user_id) DO UPDATE SET
                    display_name = EXCLUDED.display_name,
                    updated_at = NOW()
                """,
                str(user_id),
                display,
            )

    async def get_user_account(self, user_id: str) -> Optional[Dict[str, str]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT user_id, display_name FROM user_accounts WHERE user_id = $1",
                str(user_id),
            )
        if row is None:
            return None
        return {
            "user_id": str(row["user_id"]),
            "display_name": str(row["display_name"] or ""),
        }

    async def get_message_emotion(self, message_id: int) -> Optional[Dict[str, Any]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT message_id, intensity_delta, trend, secondary_emotion, emotion_vector,
                       topic_tags, detector_version, is_kernel_relevant
                FROM message_emotions
                WHERE message_id = $1
                """,
                int(message_id),
            )
        if row is None:
            return None
        return {
            "message_id": int(row["message_id"]),
            "intensity_delta": row["intensity_delta"],
            "trend": row["trend"],
            "secondary_emotion": row["secondary_emotion"],
            "emotion_vector": _load_json(row["emotion_vector"], None),
            "topic_tags": _load_json(row["topic_tags"], []),
            "detector_version": row["detector_version"],
            "is_kernel_relevant": bool(row["is_kernel_relevant"]),
        }
