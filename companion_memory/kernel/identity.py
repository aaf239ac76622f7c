from __future__ import annotations

import logging
import re
from typing import Any

from ..common import as_optional_float

logger = logging.getLogger("companion_memory")

IDENTITY_KIND = "identity.name"
ACCOUNT_NAME_CONFIDENCE = 0.7

_NAME_LETTER = re.compile(r"[A-Za-z؀-ۿ]")
# Filler tokens the fact extractor sometimes captures instead of a name.
_BANNED_NAMES = frozenset({"رح", "من", "اليوم", "اسمي", "انا", "أنا", "name", "my name", "call me"})


def is_plausible_name(value: str) -> bool:
    if not 2 <= len(value) <= 40:
        return False
    if not _NAME_LETTER.search(value):
        return False
    return value.lower() not in _BANNED_NAMES


class IdentityResolver:
    def __init__(self, store: Any) -> None:
        self.store = store

    async def _from_fact(self, user_id: str) -> dict[str, Any] | None:
        getter = getattr(self.store, "get_memory_facts", None)
        if not callable(getter):
            return None
        try:
            rows = await getter(user_id, [IDENTITY_KIND], 1)
        except Exception as exc:
            logger.error("Identity fact query failed user=%s: %s", user_id, exc)
            return None
        if not rows:
            return None

        value = rows[0].get("value")
        name = value.strip() if isinstance(value, str) else ""
        if not name or not is_plausible_name(name):
            return None
        confidence = as_optional_float(rows[0].get("confidence"))
        return {
            "name": name,
            "kind": IDENTITY_KIND,
            "confidence": confidence if confidence is not None else 1.0,
            "source": "semantic_fact",
        }

    async def _from_account(self, user_id: str) -> dict[str, Any] | None:
        getter = getattr(self.store, "get_user_account", None)
        if not callable(getter):
            return None
        try:
            account = await getter(user_id)
        except Exception as exc:
            logger.error("Identity account fallback failed user=%s: %s", user_id, exc)
            return None
        name = str((account or {}).get("display_name") or "").strip()
        if not name:
            return None
        return {
            "name": name,
            "kind": IDENTITY_KIND,
            "confidence": ACCOUNT_NAME_CONFIDENCE,
            "source": "user_account",
        }

    async def resolve(self, user_id: str) -> dict[str, Any] | None:
        if not user_id:
            return None
        result = await self._from_fact(user_id)
        if result is None:
            result = await self._from_account(user_id)
        logger.debug(
            "Identity memory user=%s has_name=%s source=%s",
            user_id,
            result is not None,
            result["source"] if result else None,
        )
        return result
