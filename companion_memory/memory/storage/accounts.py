from __future__ import annotations

from typing import Dict, Optional

import aiosqlite

from .utils import _sqlite_memory_connection


class MemoryAccountsMixin:
    async def upsert_user_account(self, user_id: str, display_name: str) -> None:
        display = " ".join(str(display_name or "").split())
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO user_accounts (user_id, display_name, created_at, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                ON CONFLICT(user_id) DO UPDATE SET
                    display_name = excluded.display_name,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (str(user_id), display),
            )
            await db.commit()

    async def get_user_account(self, user_id: str) -> Optional[Dict[str, str]]:
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT user_id, display_name FROM user_accounts WHERE user_id = ?",
                (str(user_id),),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return {
            "user_id": str(row["user_id"]),
            "display_name": str(row["display_name"] or ""),
        }
