from __future__ import annotations

from typing import Any, Dict, Optional

import aiosqlite

from .utils import _dump_json, _load_json, _optional_float, _optional_str, _sqlite_memory_connection

_PROFILE_COLUMNS = """
    user_id, emotion_stats, topic_profile, persona_affinity, volatility_index,
    emotional_anchors, recent_kernel_snapshot, avg_intensity, sadness_score, anxiety_score,
    anger_score, loneliness_score, hope_score, gratitude_score, version, last_updated_at
"""

SCALAR_SCORE_FIELDS = (
    "avg_intensity",
    "sadness_score",
    "anxiety_score",
    "anger_score",
    "loneliness_score",
    "hope_score",
    "gratitude_score",
)


def user_profile_row_to_dict(row: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "user_id": str(row["user_id"]),
        "emotion_stats": _load_json(row["emotion_stats"], {}),
        "topic_profile": _load_json(row["topic_profile"], {}),
        "persona_affinity": _load_json(row["persona_affinity"], {}),
        "volatility_index": _optional_float(row["volatility_index"]),
        "emotional_anchors": _load_json(row["emotional_anchors"], []),
        "recent_kernel_snapshot": _load_json(row["recent_kernel_snapshot"], None),
        "version": int(row["version"] or 0),
        "last_updated_at": _optional_str(row["last_updated_at"]),
    }
    for name in SCALAR_SCORE_FIELDS:
        payload[name] = float(row[name] or 0.0)
    return payload


class MemoryProfilesMixin:
    async def get_user_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_PROFILE_COLUMNS} FROM user_emotion_profiles WHERE user_id = ?",
                (str(user_id),),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return user_profile_row_to_dict(row)

    async def upsert_user_profile(self, record: Dict[str, Any], expected_version: int) -> bool:
        """Write kernel-owned profile columns; scalar scores are left untouched.

        ``expected_version`` 0 means the caller saw no row and the write only succeeds
        as a fresh insert.
        """
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
        async with _sqlite_memory_connection(self.db_path) as db:
            if int(expected_version) <= 0:
                cursor = await db.execute(
                    """
                    INSERT INTO user_emotion_profiles (
                        emotion_stats, topic_profile, persona_affinity, volatility_index,
                        emotional_anchors, recent_kernel_snapshot, last_updated_at, user_id, version
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1)
                    ON CONFLICT(user_id) DO NOTHING
                    """,
                    (*values, user_id),
                )
            else:
                cursor = await db.execute(
                    """
                    UPDATE user_emotion_profiles
                    SET emotion_stats = ?,
                        topic_profile = ?,
                        persona_affinity = ?,
                        volatility_index = ?,
                        emotional_anchors = ?,
                        recent_kernel_snapshot = ?,
                        last_updated_at = ?,
                        version = version + 1
                    WHERE user_id = ? AND version = ?
                    """,
                    (*values, user_id, int(expected_version)),
                )
            await db.commit()
            return cursor.rowcount == 1

    async def set_user_profile_scores(self, user_id: str, **scores: float) -> None:
        """Seed the scalar scores maintained by the upstream emotional engine."""
        unknown = sorted(set(scores) - set(SCALAR_SCORE_FIELDS))
        if unknown:
            raise ValueError(f"Unsupported profile score fields: {', '.join(unknown)}")
        if not scores:
            return
        columns = ", ".join(scores)
        placeholders = ", ".join("?" for _ in scores)
        updates = ", ".join(f"{name} = excluded.{name}" for name in scores)
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                f"""
                INSERT INTO user_emotion_profiles (user_id, {columns})
                VALUES (?, {placeholders})
                ON CONFLICT(user_id) DO UPDATE SET {updates}
                """,
                (str(user_id), *(float(value) for value in scores.values())),
            )
            await db.commit()
