from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List

import aiosqlite

from ...common import to_iso, utc_now
from .utils import _clamp, _sqlite_memory_connection, normalize_fact_kind, normalize_fact_value


class MemoryFactsMixin:
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
        stamp = to_iso(updated_at or utc_now())
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO user_memory_facts (user_id, kind, value, confidence, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, kind, value) DO UPDATE SET
                    confidence = MAX(user_memory_facts.confidence, excluded.confidence),
                    updated_at = excluded.updated_at
                """,
                (
                    str(user_id),
                    kind_clean,
                    value_clean,
                    _clamp(float(confidence), 0.0, 1.0),
                    stamp,
                    stamp,
                ),
            )
            async with db.execute(
                "SELECT fact_id FROM user_memory_facts WHERE user_id = ? AND kind = ? AND value = ?",
                (str(user_id), kind_clean, value_clean),
            ) as cursor:
                row = await cursor.fetchone()
            await db.commit()
        return int(row[0]) if row else None

    async def get_memory_facts(
        self,
        user_id: str,
        kinds: Iterable[str],
        limit: int = 96,
    ) -> List[Dict[str, Any]]:
        kind_list = [normalize_fact_kind(kind) for kind in kinds]
        kind_list = [kind for kind in dict.fromkeys(kind_list) if kind]
        if not kind_list:
            return []
        placeholders = ", ".join("?" for _ in kind_list)
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT fact_id, user_id, kind, value, confidence, updated_at
                FROM user_memory_facts
                WHERE user_id = ? AND kind IN ({placeholders})
                ORDER BY updated_at DESC, fact_id DESC
                LIMIT ?
                """,
                (str(user_id), *kind_list, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            {
                "fact_id": int(row["fact_id"]),
                "user_id": str(row["user_id"]),
                "kind": str(row["kind"]),
                "value": str(row["value"]),
                "confidence": float(row["confidence"]),
                "updated_at": str(row["updated_at"]),
            }
            for row in rows
        ]
