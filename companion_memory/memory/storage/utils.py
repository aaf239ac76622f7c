from __future__ import annotations

import json
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

try:
    import aiosqlite
except Exception:  # pragma: no cover - optional in Postgres-only deployments
    aiosqlite = None  # type: ignore[assignment]


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("MEMORY_SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


@asynccontextmanager
async def _sqlite_memory_connection(db_path: str | Path) -> AsyncIterator["aiosqlite.Connection"]:
    if aiosqlite is None:
        raise RuntimeError("SQLite memory backend requires aiosqlite")
    async with aiosqlite.connect(db_path) as db:  # type: ignore[union-attr]
        await db.execute("PRAGMA foreign_keys=ON")
        timeout_ms = _sqlite_busy_timeout_ms()
        if timeout_ms > 0:
            await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
        yield db


def _dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _load_json(raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    if isinstance(raw, (dict, list)):
        return raw
    try:
        value = json.loads(str(raw))
    except (TypeError, ValueError):
        return default
    if isinstance(default, dict) and not isinstance(value, dict):
        return default
    if isinstance(default, list) and not isinstance(value, list):
        return default
    return value


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_fact_kind(kind: str) -> str:
    return ".".join(part for part in str(kind or "").strip().casefold().split(".") if part)


def normalize_fact_value(value: str, *, max_chars: int = 280) -> str:
    cleaned = " ".join(str(value or "").strip().split())
    return cleaned[: max(1, int(max_chars))]


# Columns accepted by update_message_emotion, mapped to their JSON-ness.
MESSAGE_EMOTION_FIELDS: dict[str, bool] = {
    "intensity_delta": False,
    "trend": False,
    "secondary_emotion": False,
    "emotion_vector": True,
    "topic_tags": True,
    "detector_version": False,
    "is_kernel_relevant": False,
}


def prepare_message_emotion_fields(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = sorted(set(fields) - set(MESSAGE_EMOTION_FIELDS))
    if unknown:
        raise ValueError(f"Unsupported message emotion fields: {', '.join(unknown)}")
    prepared: dict[str, Any] = {}
    for name, value in fields.items():
        if value is None:
            continue
        if MESSAGE_EMOTION_FIELDS[name]:
            prepared[name] = _dump_json(value)
        elif name == "is_kernel_relevant":
            prepared[name] = 1 if value else 0
        elif name == "intensity_delta":
            prepared[name] = float(value)
        else:
            prepared[name] = str(value)
    return prepared


def message_emotion_row_to_dict(row: Any) -> dict[str, Any]:
    return {
        "message_id": int(row["message_id"]),
        "conversation_id": str(row["conversation_id"]),
        "user_id": str(row["user_id"]),
        "primary_emotion": str(row["primary_emotion"] or "NEUTRAL"),
        "intensity": _optional_float(row["intensity"]),
        "confidence": _optional_float(row["confidence"]),
        "intensity_delta": _optional_float(row["intensity_delta"]),
        "trend": _optional_str(row["trend"]),
        "secondary_emotion": _optional_str(row["secondary_emotion"]),
        "topic_tags": [str(tag) for tag in _load_json(row["topic_tags"], []) if tag],
        "created_at": row["created_at"],
    }
