from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_memory.kernel.composer import (  # noqa: E402
    MemoryBlockComposer,
    long_term_lines,
    preference_lines,
    short_term_lines,
)
from companion_memory.kernel.models import (  # noqa: E402
    ConversationEmotionState,
    EmotionStat,
    PersonaAffinity,
    RollingEmotionStats,
    TopicStat,
    TopicThread,
    UserEmotionProfile,
)
from companion_memory.memory.store import MemoryStore  # noqa: E402
from companion_memory.prompts.memory_block import block_templates  # noqa: E402

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
EN = block_templates("en")
FOOTER_TITLE = "Guidelines for using this context:"


def _store(tmp_path: Path) -> MemoryStore:
    store = MemoryStore(tmp_path / "memory.db")
    asyncio.run(store.init())
    return store


def test_empty_when_nothing_is_stored(tmp_path: Path) -> None:
    store = _store(tmp_path)

    block = asyncio.run(MemoryBlockComposer(store).build("u1", conversation_id="c1"))

    assert block == ""


def test_volatile_profile_without_conversation_gives_long_term_only_block(tmp_path: Path) -> None:
    store = _store(tmp_path)
    profile = UserEmotionProfile(user_id="u1", volatility_index=0.85)
    assert asyncio.run(store.upsert_user_profile(profile.to_record(), 0))

    block = asyncio.run(MemoryBlockComposer(store).build("u1"))

    assert "frequently changing" in block
    assert "Longer-term patterns" in block
    assert "Context from recent messages" not in block
    assert block.startswith("Additional internal context from the memory kernel")
    assert FOOTER_TITLE in block


def test_profile_with_no_signal_still_gets_continuity_line_and_footer(tmp_path: Path) -> None:
    store = _store(tmp_path)
    assert asyncio.run(store.upsert_user_profile(UserEmotionProfile.empty("u1").to_record(), 0))

    block = asyncio.run(MemoryBlockComposer(store).build("u1"))

    assert "still thin" in block
    assert block.rstrip().endswith("keep it brief and focused on support, not analysis.")


def test_block_never_exceeds_budget_and_keeps_footer(tmp_path: Path) -> None:
    store = _store(tmp_path)

    async def seed() -> None:
        profile = UserEmotionProfile(user_id="u1", volatility_index=0.5)
        for i in range(40):
            profile.topic_profile[f"topic number {i} with a long descriptive name"] = TopicStat(count=1, score=i / 4)
        profile.emotion_stats["SAD"] = EmotionStat(count=5, avg_intensity=0.7)
        await store.upsert_user_profile(profile.to_record(), 0)
        for kind, value in (
            ("profile.age", "24"),
            ("profile.location.country", "Jordan"),
            ("profile.location.city", "Amman"),
            ("profile.role", "a final-year engineering student " * 4),
            ("profile.domain", "civil engineering"),
            ("goal.long_term", "to build bridges that outlast everyone " * 4),
            ("profile.goal.primary", "graduate with honours " * 4),
            ("trait.coping.style", "long walks and music"),
        ):
            await store.upsert_memory_fact("u1", kind, value)
        for season in ("winter", "autumn", "spring"):
            await store.upsert_memory_fact("u1", "preference.season.like", season)

    asyncio.run(seed())
    composer = MemoryBlockComposer(store, max_chars=600)

    block = asyncio.run(composer.build("u1", language="en", persona_id="p1"))

    assert len(block) <= 600
    assert FOOTER_TITLE in block
    assert block.rstrip().endswith("keep it brief and focused on support, not analysis.")


def test_short_term_lines_grounding_trend_stability_and_topics() -> None:
    state = ConversationEmotionState.empty("c1")
    state.rolling_emotion_stats = RollingEmotionStats(
        total_count=4,
        recent_avg_intensity=0.75,
        trend_delta=0.4,
        emotions={"ANXIOUS": EmotionStat(count=3, avg_intensity=0.8), "SAD": EmotionStat(count=1, avg_intensity=0.4)},
    )
    state.stability_score = 0.3
    state.active_threads = [TopicThread(topic=name) for name in ("exams", "family", "sleep", "money")]

    lines = short_term_lines(state, EN)

    assert lines[0] == "Recent window (4 turns): mostly ANXIOUS with average intensity 4.0/5."
    assert lines[1].startswith("Right now, keep the pace slow and grounding.")
    assert lines[2].startswith("Recent signals suggest emotional intensity is climbing")
    assert lines[3] == "Emotion pattern in this conversation is very up-and-down."
    assert lines[4] == "Current active themes: exams, family, sleep."


def test_short_term_lines_fall_back_to_seeded_scalars() -> None:
    state = ConversationEmotionState.empty("c1")
    state.dominant_emotion = "SAD"
    state.avg_intensity = 0.6

    lines = short_term_lines(state, EN)

    assert lines == [
        "So far in this conversation, the overall emotional centre has tended toward SAD. "
        "Typical intensity across turns so far is around 3.0/5."
    ]


def test_long_term_lines_capped_at_three_with_persona_guidance() -> None:
    profile = UserEmotionProfile(user_id="u1", volatility_index=0.2)
    profile.emotion_stats = {
        "SAD": EmotionStat(count=2, avg_intensity=0.9),
        "ANXIOUS": EmotionStat(count=5, avg_intensity=0.6),
    }
    profile.topic_profile = {
        "exams": TopicStat(count=3, score=2.5),
        "family": TopicStat(count=1, score=0.4),
        "work": TopicStat(count=2, score=1.1),
        "sleep": TopicStat(count=1, score=0.1),
    }
    profile.persona_affinity["p1"] = PersonaAffinity(uses=4, avg_outcome=0.5)

    lines = long_term_lines(profile, EN, "p1")

    assert len(lines) == 3
    assert lines[0] == "Across many conversations, this user often presents as anxious in an emotional sense."
    assert lines[1].startswith("Common recurring topics over time: exams, work, family.")
    assert lines[2] == "Long-term emotional trajectory tends to be relatively steady; avoid sudden shifts in tone."


def test_long_term_lines_scalar_fallbacks() -> None:
    heavy = UserEmotionProfile(user_id="u1", sadness_score=0.0, avg_intensity=0.5)
    heavy.emotion_stats = {}
    assert long_term_lines(heavy, EN, None) == [
        "Typical emotional intensity across conversations is around 2.5/5; match your pacing to that level "
        "unless the current message clearly calls for a different depth."
    ]

    sums = UserEmotionProfile(user_id="u1")
    sums.emotion_stats = {"NEUTRAL": EmotionStat(count=0, avg_intensity=0.0)}
    sums.hope_score = 0.4
    sums.gratitude_score = 0.3
    assert long_term_lines(sums, EN, None)[0].startswith("Over time the user often shows hopeful or grateful tones")


def test_negative_persona_outcome_asks_for_extra_gentleness() -> None:
    profile = UserEmotionProfile(user_id="u1")
    profile.persona_affinity["p1"] = PersonaAffinity(uses=2, avg_outcome=-0.5)

    assert long_term_lines(profile, EN, "p1") == [
        "Be extra gentle: past interactions with this companion style sometimes aligned "
        "with higher emotional intensity."
    ]
    assert long_term_lines(profile, EN, "other") == []


def test_preference_lines_render_lists_crowds_and_social_style() -> None:
    rows = [
        {"kind": "preference.season.like", "value": "winter"},
        {"kind": "preference.season.like", "value": "autumn"},
        {"kind": "preference.season.like", "value": "winter"},
        {"kind": "preference.pets.dislike", "value": "snakes"},
        {"kind": "preference.crowds", "value": "dislike"},
        {"kind": "trait.social.style", "value": "Introvert"},
    ]

    lines = preference_lines(rows, EN)

    assert lines == [
        "They have said they enjoy these seasons: winter, autumn.",
        "They are not fond of these animals or pets: snakes.",
        "Crowded places tend to make them uncomfortable; avoid casually suggesting busy settings.",
        "They describe their social style as Introvert.",
    ]


def test_arabic_block_uses_arabic_templates(tmp_path: Path) -> None:
    store = _store(tmp_path)
    profile = UserEmotionProfile(user_id="u1", volatility_index=0.85)
    profile.emotion_stats["SAD"] = EmotionStat(count=3, avg_intensity=0.6)
    asyncio.run(store.upsert_user_profile(profile.to_record(), 0))

    block = asyncio.run(
        MemoryBlockComposer(store).build("u1", language="ar", identity_memory={"name": "ليلى"})
    )

    assert "الحزن" in block
    assert "كثير التغير" in block
    assert "اسم المستخدم ليلى" in block
    assert "إرشادات لاستخدام هذا السياق:" in block
    assert "Guidelines for using this context:" not in block


def test_failed_reads_are_logged_and_treated_as_absent(caplog: pytest.LogCaptureFixture) -> None:
    class _BrokenStore:
        async def get_conversation_state(self, conversation_id: str):  # type: ignore[no-untyped-def]
            raise RuntimeError("no state table")

        async def get_user_profile(self, user_id: str):  # type: ignore[no-untyped-def]
            return UserEmotionProfile(user_id=user_id, volatility_index=0.1).to_record()

    with caplog.at_level("ERROR", logger="companion_memory"):
        block = asyncio.run(MemoryBlockComposer(_BrokenStore()).build("u1", conversation_id="c1"))

    assert "relatively steady" in block
    assert "Failed to load conversation state" in caplog.text
