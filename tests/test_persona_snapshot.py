from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_memory.kernel.identity import IdentityResolver, is_plausible_name  # noqa: E402
from companion_memory.kernel.persona_snapshot import (  # noqa: E402
    PersonaSnapshot,
    PersonaSnapshotBuilder,
    personality_keywords,
)
from companion_memory.memory.store import MemoryStore  # noqa: E402

BASE = datetime(2026, 1, 1, tzinfo=timezone.utc)


async def _seed(store: MemoryStore, facts: list[tuple[str, str]]) -> None:
    for offset, (kind, value) in enumerate(facts):
        await store.upsert_memory_fact("u1", kind, value, updated_at=BASE + timedelta(minutes=offset))


def _build(tmp_path: Path, facts: list[tuple[str, str]], **kwargs) -> PersonaSnapshot:  # type: ignore[no-untyped-def]
    async def scenario() -> PersonaSnapshot:
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        await _seed(store, facts)
        return await PersonaSnapshotBuilder(store, **kwargs).build("u1")

    return asyncio.run(scenario())


def test_snapshot_renders_parallel_english_and_arabic_lines(tmp_path: Path) -> None:
    snapshot = _build(
        tmp_path,
        [
            ("profile.age", "23"),
            ("profile.location.country", "Jordan"),
            ("profile.location.city", "Amman"),
            ("profile.language.primary", "Arabic"),
            ("profile.language.dialect", "Levantine"),
        ],
    )

    assert snapshot.lines_en == [
        "They seem to be around 23 years old (approximate).",
        "They are based in Amman, Jordan.",
        "They mainly use Arabic and prefer a Levantine style when speaking.",
    ]
    assert snapshot.lines_ar[1] == "يعيش في Amman، Jordan."
    assert len(snapshot.lines_ar) == len(snapshot.lines_en)
    assert snapshot.lines_for("ar") == snapshot.lines_ar
    assert snapshot.lines_for("mixed") == snapshot.lines_en


def test_snapshot_uses_latest_scalar_value_and_skips_orphan_parts(tmp_path: Path) -> None:
    snapshot = _build(
        tmp_path,
        [
            ("profile.role", "student"),
            ("profile.role", "junior engineer"),
            ("profile.language.dialect", "Gulf"),
            ("profile.job.field", "logistics"),
        ],
    )

    assert snapshot.lines_en == ["They describe themselves mainly as junior engineer."]


def test_snapshot_priority_order_and_cap(tmp_path: Path) -> None:
    snapshot = _build(
        tmp_path,
        [
            ("trait.mental.main", "tired but hopeful"),
            ("trait.mental.secondary", "tired but hopeful"),
            ("trait.coping.style", "journaling"),
            ("trait.personality.keywords", "calm, curious، calm ,stubborn"),
            ("profile.theme.family", "caring for a parent"),
            ("profile.theme.health", "sleep"),
            ("profile.goal.secondary", "learn piano"),
            ("profile.goal.primary", "finish university"),
            ("goal.long_term", "open a bakery"),
            ("profile.job.title", "barista"),
            ("profile.role", "student"),
            ("profile.domain", "nursing"),
        ],
        max_lines=20,
    )

    assert snapshot.lines_en == [
        "Their current role looks like student in nursing.",
        "They mentioned a job title similar to barista.",
        "They described a longer-term dream or direction: open a bakery.",
        "One important life direction they mentioned is: finish university.",
        "They also talked about another direction or dream: learn piano.",
        "Recurring life themes they talk about: sleep, caring for a parent.",
        "They use words like calm, curious, stubborn when describing their own personality.",
        "For coping, they sometimes lean on: journaling.",
        "They describe their longer-term mental state with phrases like: tired but hopeful.",
    ]

    capped = _build(tmp_path / "capped", [("profile.age", "30"), ("goal.long_term", "x"), ("profile.role", "r"),
                                          ("trait.coping.style", "c"), ("profile.goal.primary", "p"),
                                          ("profile.theme.work", "w"), ("trait.mental.main", "m")])
    assert len(capped.lines_en) == 6
    assert len(capped.lines_ar) == 6
    assert capped.lines_en[-1].startswith("For coping")


def test_preferences_are_collected_but_not_rendered_as_hints(tmp_path: Path) -> None:
    snapshot = _build(
        tmp_path,
        [
            ("preference.season.like", "winter"),
            ("preference.season.like", "autumn"),
            ("preference.crowds", "dislike"),
        ],
    )

    assert snapshot.is_empty
    assert snapshot.facts["preferences"]["seasons_like"] == ["autumn", "winter"]
    assert snapshot.facts["preferences"]["crowds"] == "dislike"


def test_personality_keywords_split_on_both_commas() -> None:
    assert personality_keywords("kind،  shy , kind,") == ["kind", "shy"]
    assert personality_keywords(None) == []


def test_snapshot_degrades_to_empty_without_fact_support(caplog: pytest.LogCaptureFixture) -> None:
    class _NoFacts:
        pass

    class _BrokenFacts:
        async def get_memory_facts(self, user_id, kinds, limit):  # type: ignore[no-untyped-def]
            raise RuntimeError("facts table missing")

    with caplog.at_level("WARNING", logger="companion_memory"):
        missing = asyncio.run(PersonaSnapshotBuilder(_NoFacts()).build("u1"))
        broken = asyncio.run(PersonaSnapshotBuilder(_BrokenFacts()).build("u1"))

    assert missing == PersonaSnapshot.empty()
    assert broken.is_empty
    assert "Persona fact query failed" in caplog.text


@pytest.mark.parametrize(
    ("value", "expected"),
    [("Layla", True), ("ليلى", True), ("A", False), ("x" * 41, False), ("1234", False), ("My Name", False),
     ("اسمي", False)],
)
def test_identity_name_validation(value: str, expected: bool) -> None:
    assert is_plausible_name(value) is expected


def test_identity_prefers_semantic_fact_then_account_name(tmp_path: Path) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        resolver = IdentityResolver(store)
        await store.upsert_user_account("u1", "  Sam  ")
        from_account = await resolver.resolve("u1")
        await store.upsert_memory_fact("u1", "identity.name", "call me", confidence=0.9)
        banned_fact = await resolver.resolve("u1")
        await store.upsert_memory_fact(
            "u1", "identity.name", "Samira", confidence=0.85, updated_at=datetime.now(timezone.utc) + timedelta(days=1)
        )
        from_fact = await resolver.resolve("u1")
        nobody = await resolver.resolve("u2")
        return from_account, banned_fact, from_fact, nobody

    from_account, banned_fact, from_fact, nobody = asyncio.run(scenario())

    assert from_account == {"name": "Sam", "kind": "identity.name", "confidence": 0.7, "source": "user_account"}
    assert banned_fact["source"] == "user_account"
    assert from_fact == {"name": "Samira", "kind": "identity.name", "confidence": 0.85, "source": "semantic_fact"}
    assert nobody is None


def test_identity_failures_return_none(caplog: pytest.LogCaptureFixture) -> None:
    class _Broken:
        async def get_memory_facts(self, user_id, kinds, limit):  # type: ignore[no-untyped-def]
            raise RuntimeError("down")

        async def get_user_account(self, user_id):  # type: ignore[no-untyped-def]
            raise RuntimeError("down")

    with caplog.at_level("ERROR", logger="companion_memory"):
        result = asyncio.run(IdentityResolver(_Broken()).resolve("u1"))

    assert result is None
    assert "Identity account fallback failed" in caplog.text
