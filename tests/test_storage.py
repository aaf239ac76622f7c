from __future__ import annotations

import asyncio
import os
import sqlite3
import sys
import uuid
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_memory.config import Settings  # noqa: E402
from companion_memory.kernel.models import ConversationEmotionState, EmotionReading  # noqa: E402
from companion_memory.memory.factory import build_memory_store  # noqa: E402
from companion_memory.memory.storage.schema import MemorySchemaMixin  # noqa: E402
from companion_memory.memory.store import MemoryStore  # noqa: E402


def test_schema_mismatch_raises_without_opt_in(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", raising=False)
    db_path = tmp_path / "memory.db"

    asyncio.run(MemorySchemaMixin(db_path).init())
    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA user_version = 999")
        conn.commit()

    with pytest.raises(RuntimeError, match="schema version mismatch"):
        asyncio.run(MemorySchemaMixin(db_path).init())


def test_schema_mismatch_can_reset_with_explicit_opt_in(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_path = tmp_path / "memory.db"
    asyncio.run(MemorySchemaMixin(db_path).init())

    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA user_version = 999")
        conn.commit()

    monkeypatch.setenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "1")
    asyncio.run(MemorySchemaMixin(db_path).init())

    with sqlite3.connect(db_path) as conn:
        version = conn.execute("PRAGMA user_version").fetchone()[0]
    assert version == MemorySchemaMixin.SCHEMA_VERSION


def test_v1_database_gains_record_version_columns(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.db"
    with sqlite3.connect(db_path) as conn:
        conn.executescript(
            """
            CREATE TABLE conversation_emotion_states (conversation_id TEXT PRIMARY KEY, window_size INTEGER);
            CREATE TABLE user_emotion_profiles (user_id TEXT PRIMARY KEY);
            CREATE TABLE messages (
                message_id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'user',
                content TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE TABLE message_emotions (emotion_id INTEGER PRIMARY KEY AUTOINCREMENT, message_id INTEGER);
            PRAGMA user_version = 1;
            """
        )

    asyncio.run(MemoryStore(db_path).init())

    with sqlite3.connect(db_path) as conn:
        state_cols = {row[1] for row in conn.execute("PRAGMA table_info(conversation_emotion_states)")}
        emotion_cols = {row[1] for row in conn.execute("PRAGMA table_info(message_emotions)")}
        version = conn.execute("PRAGMA user_version").fetchone()[0]
    assert "version" in state_cols
    assert "is_kernel_relevant" in emotion_cols
    assert version == MemorySchemaMixin.SCHEMA_VERSION


def test_conversation_state_compare_and_set(tmp_path: Path) -> None:
    async def scenario() -> tuple[bool, bool, dict | None]:
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        seeded = ConversationEmotionState.seeded("c1", EmotionReading("SAD", 3), user_id="u1")
        created = await store.create_conversation_state(seeded.to_record())
        again = await store.create_conversation_state(seeded.to_record())
        assert again["version"] == created["version"] == 1

        state = ConversationEmotionState.from_record(created)
        state.current_baseline_emotion = "SAD"
        first = await store.update_conversation_state(state.to_record(), 1)
        stale = await store.update_conversation_state(state.to_record(), 1)
        return first, stale, await store.get_conversation_state("c1")

    first, stale, record = asyncio.run(scenario())

    assert first is True
    assert stale is False
    assert record is not None
    assert record["version"] == 2
    assert record["dominant_emotion"] == "SAD"
    assert record["sadness_score"] == pytest.approx(0.6)


def test_profile_insert_only_when_expected_version_is_zero(tmp_path: Path) -> None:
    async def scenario() -> tuple[bool, bool]:
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        record = {"user_id": "u1", "emotion_stats": {}, "volatility_index": 0.2}
        return (
            await store.upsert_user_profile(record, 0),
            await store.upsert_user_profile(record, 0),
        )

    assert asyncio.run(scenario()) == (True, False)


def test_memory_facts_dedupe_and_keep_highest_confidence(tmp_path: Path) -> None:
    async def scenario() -> list[dict]:
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        await store.upsert_memory_fact("u1", " Preference.Season.Like ", "winter", confidence=0.9)
        await store.upsert_memory_fact("u1", "preference.season.like", "winter", confidence=0.4)
        await store.upsert_memory_fact("u1", "preference.season.like", "   ", confidence=1.0)
        await store.upsert_memory_fact("u2", "preference.season.like", "summer")
        return await store.get_memory_facts("u1", ["preference.season.like"], 10)

    facts = asyncio.run(scenario())

    assert len(facts) == 1
    assert facts[0]["kind"] == "preference.season.like"
    assert facts[0]["confidence"] == pytest.approx(0.9)


def test_update_message_emotion_rejects_unknown_fields(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    asyncio.run(store.init())

    with pytest.raises(ValueError, match="Unsupported message emotion fields"):
        asyncio.run(store.update_message_emotion(1, mood="grumpy"))


def _settings(**overrides) -> Settings:  # type: ignore[no-untyped-def]
    values = dict(
        sqlite_path=Path("./data/test.db"),
        memory_backend="sqlite",
        postgres_dsn="",
        window_size=20,
        active_thread_limit=5,
        topic_score_decay=0.9,
        topic_score_cap=10.0,
        volatility_alpha=0.1,
        max_update_retries=3,
        memory_block_max_chars=2200,
        persona_snapshot_max_lines=6,
        persona_fact_limit=96,
        preference_fact_limit=64,
        default_response_language="en",
        log_level="INFO",
    )
    values.update(overrides)
    return Settings(**values)


def test_settings_from_env_reads_values_and_aliases(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ROLLING_WINDOW_SIZE", "12")
    monkeypatch.delenv("SHORT_TERM_WINDOW_SIZE", raising=False)
    monkeypatch.setenv("MEMORY_BLOCK_MAX_CHARS", "not-a-number")
    monkeypatch.setenv("DEFAULT_RESPONSE_LANGUAGE", "AR")
    monkeypatch.setenv("MEMORY_BACKEND", "sqlite")

    settings = Settings.from_env()

    assert settings.window_size == 12
    assert settings.memory_block_max_chars == 2200
    assert settings.default_response_language == "ar"
    settings.validate()


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"memory_backend": "mongo"}, "MEMORY_BACKEND"),
        ({"memory_backend": "postgres"}, "MEMORY_POSTGRES_DSN"),
        ({"window_size": 1}, "SHORT_TERM_WINDOW_SIZE"),
        ({"volatility_alpha": 0.0}, "VOLATILITY_ALPHA"),
        ({"max_update_retries": 0}, "KERNEL_MAX_UPDATE_RETRIES"),
        ({"memory_block_max_chars": 100}, "MEMORY_BLOCK_MAX_CHARS"),
        ({"default_response_language": "fr"}, "DEFAULT_RESPONSE_LANGUAGE"),
    ],
)
def test_settings_validate_names_the_bad_variable(overrides: dict, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        _settings(**overrides).validate()


def test_factory_builds_sqlite_and_rejects_unknown_backend(tmp_path: Path) -> None:
    store = build_memory_store(_settings(sqlite_path=tmp_path / "memory.db"))
    assert isinstance(store, MemoryStore)
    assert store.backend_name == "sqlite"

    with pytest.raises(ValueError):
        build_memory_store(_settings(memory_backend="mongo"))
    with pytest.raises(ValueError):
        build_memory_store(_settings(memory_backend="postgres"))


@pytest.mark.skipif(not os.getenv("MEMORY_POSTGRES_TEST_DSN"), reason="MEMORY_POSTGRES_TEST_DSN not set")
def test_postgres_store_roundtrip() -> None:
    pytest.importorskip("asyncpg")
    from companion_memory.memory.postgres_store import PostgresMemoryStore

    user_id = f"u-{uuid.uuid4().hex[:8]}"
    conversation_id = f"c-{uuid.uuid4().hex[:8]}"

    async def scenario() -> tuple[dict | None, list[dict], bool]:
        store = PostgresMemoryStore(os.environ["MEMORY_POSTGRES_TEST_DSN"])
        try:
            await store.init()
            message_id = await store.save_message(conversation_id, user_id, "hi")
            await store.save_message_emotion(message_id, "SAD", 3, topic_tags=["exams"])
            await store.update_message_emotion(message_id, trend="UP", intensity_delta=1.0)
            previous = await store.get_recent_user_emotions(conversation_id, user_id, 5)
            seeded = ConversationEmotionState.seeded(conversation_id, EmotionReading("SAD", 3), user_id=user_id)
            created = await store.create_conversation_state(seeded.to_record())
            updated = await store.update_conversation_state(created, created["version"])
            return await store.get_conversation_state(conversation_id), previous, updated
        finally:
            await store.close()

    state, recent, updated = asyncio.run(scenario())

    assert updated is True
    assert state is not None and state["version"] == 2
    assert recent[0]["trend"] == "UP"
    assert recent[0]["topic_tags"] == ["exams"]
