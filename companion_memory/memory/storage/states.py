from __future__ import annotations

from typing import Any, Dict, Optional

import aiosqlite

from .utils import _dump_json, _load_json, _optional_float, _optional_str, _sqlite_memory_connection

_STATE_COLUMNS = """
    conversation_id, user_id, window_size, rolling_emotion_stats, rolling_topic_stats,
    active_threads, session_baseline_emotion, current_baseline_emotion, stability_score,
    last_kernel_update_at, dominant_emotion, avg_intensity, sadness_score, anxiety_score,
    anger_score, loneliness_score, version
"""


def conversation_state_row_to_dict(row: Any) -> Dict[str, Any]:
    return {
        "conversation_id": str(row["conversation_id"]),
        "user_id": _optional_str(row["user_id"]),
        "window_size": int(row["window_size"] or 0),
        "rolling_emotion_stats": _load_json(row["rolling_emotion_stats"], None),
        "rolling_topic_stats": _load_json(row["rolling_topic_stats"], None),
        "active_threads": _load_json(row["active_threads"], []),
        "session_baseline_emotion": _optional_str(row["session_baseline_emotion"]),
        "current_baseline_emotion": _optional_str(row["current_baseline_emotion"]),
        "stability_score": _optional_float(row["stability_score"]),
        "last_kernel_update_at": _optional_str(row["last_kernel_update_at"]),
        "dominant_emotion": _optional_str(row["dominant_emotion"]),
        "avg_intensity": float(row["avg_intensity"] or 0.0),
        "sadness_score": float(row["sadness_score"] or 0.0),
        "anxiety_score": float(row["anxiety_score"] or 0.0),
        "anger_score": float(row["anger_score"] or 0.0),
        "loneliness_score": float(row["loneliness_score"] or 0.0),
        "version": int(row["version"] or 0),
    }


class MemoryConversationStatesMixin:
    async def get_conversation_state(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_STATE_COLUMNS} FROM conversation_emotion_states WHERE conversation_id = ?",
                (str(conversation_id),),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return conversation_state_row_to_dict(row)

    async def create_conversation_state(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a fresh state row unless one already exists; returns the stored row."""
        conversation_id = str(record["conversation_id"])
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO conversation_emotion_states (
                    conversation_id, user_id, window_size, dominant_emotion, avg_intensity,
                    sadness_score, anxiety_score, anger_score, loneliness_score, version
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                ON CONFLICT(conversation_id) DO NOTHING
                """,
                (
                    conversation_id,
                    record.get("user_id"),
                    int(record.get("window_size") or 20),
                    record.get("dominant_emotion"),
                    float(record.get("avg_intensity") or 0.0),
                    float(record.get("sadness_score") or 0.0),
                    float(record.get("anxiety_score") or 0.0),
                    float(record.get("anger_score") or 0.0),
                    float(record.get("loneliness_score") or 0.0),
                ),
            )
            await db.commit()
        stored = await self.get_conversation_state(conversation_id)
        if stored is None:
            raise RuntimeError(f"Conversation state {conversation_id} vanished after insert")
        return stored

    async def update_conversation_state(self, record: Dict[str, Any], expected_version: int) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE conversation_emotion_states
                SET window_size = ?,
                    rolling_emotion_stats = ?,
                    rolling_topic_stats = ?,
                    active_threads = ?,
                    session_baseline_emotion = ?,
                    current_baseline_emotion = ?,
                    stability_score = ?,
                    last_kernel_update_at = ?,
                    version = version + 1,
                    updated_at = CURRENT_TIMESTAMP
                WHERE conversation_id = ? AND version = ?
                """,
                (
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
                ),
            )
            await db.commit()
            return cursor.rowcount == 1
