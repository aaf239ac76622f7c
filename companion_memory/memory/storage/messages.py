from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

import aiosqlite

from ...common import to_iso, utc_now
from .utils import (
    _clamp,
    _dump_json,
    _load_json,
    _sqlite_memory_connection,
    message_emotion_row_to_dict,
    prepare_message_emotion_fields,
)

_EMOTION_SELECT = """
    SELECT me.message_id, m.conversation_id, m.user_id, me.primary_emotion, me.intensity,
           me.confidence, me.intensity_delta, me.trend, me.secondary_emotion, me.topic_tags,
           m.created_at
    FROM message_emotions me
    JOIN messages m ON m.message_id = me.message_id
"""


class MemoryMessagesMixin:
    async def save_message(
        self,
        conversation_id: str,
        user_id: str,
        content: str,
        role: str = "user",
        created_at: datetime | None = None,
    ) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO messages (conversation_id, user_id, role, content, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    str(conversation_id),
                    str(user_id),
                    role,
                    content,
                    to_iso(created_at or utc_now()),
                ),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def save_message_emotion(
        self,
        message_id: int,
        primary_emotion: str,
        intensity: float,
        confidence: float = 0.0,
        topic_tags: list[str] | None = None,
    ) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO message_emotions (message_id, primary_emotion, intensity, confidence, topic_tags)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(message_id) DO UPDATE SET
                    primary_emotion = excluded.primary_emotion,
                    intensity = excluded.intensity,
                    confidence = excluded.confidence,
                    topic_tags = excluded.topic_tags
                """,
                (
                    int(message_id),
                    str(primary_emotion or "NEUTRAL").upper(),
                    float(intensity),
                    _clamp(float(confidence), 0.0, 1.0),
                    _dump_json(list(topic_tags or [])),
                ),
            )
            await db.commit()

    async def update_message_emotion(self, message_id: int, **fields: Any) -> bool:
        prepared = prepare_message_emotion_fields(fields)
        if not prepared:
            return False
        assignments = ", ".join(f"{name} = ?" for name in prepared)
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                f"UPDATE message_emotions SET {assignments} WHERE message_id = ?",
                (*prepared.values(), int(message_id)),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def get_previous_user_emotion(
        self,
        conversation_id: str,
        user_id: str,
        exclude_message_id: int,
    ) -> Optional[Dict[str, Any]]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                _EMOTION_SELECT
                + """
                WHERE m.conversation_id = ? AND m.user_id = ? AND m.role = 'user'
                  AND me.message_id <> ?
                ORDER BY me.emotion_id DESC
                LIMIT 1
                """,
                (str(conversation_id), str(user_id), int(exclude_message_id)),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return message_emotion_row_to_dict(row)

    async def get_recent_user_emotions(
        self,
        conversation_id: str,
        user_id: str,
        limit: int,
    ) -> List[Dict[str, Any]]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                _EMOTION_SELECT
                + """
                WHERE m.conversation_id = ? AND m.user_id = ?
                ORDER BY me.emotion_id DESC
                LIMIT ?
                """,
                (str(conversation_id), str(user_id), max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [message_emotion_row_to_dict(row) for row in rows]

    async def get_message_emotion(self, message_id: int) -> Optional[Dict[str, Any]]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT message_id, intensity_delta, trend, secondary_emotion, emotion_vector,
                       topic_tags, detector_version, is_kernel_relevant
                FROM message_emotions
                WHERE message_id = ?
                """,
                (int(message_id),),
            ) as cursor:
                row = await cursor.fetchone()
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

    async def get_message_text(self, message_id: int) -> str | None:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                "SELECT content FROM messages WHERE message_id = ?",
                (int(message_id),),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return str(row[0])
