from __future__ import annotations

import asyncio
import math
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_memory.kernel.models import (  # noqa: E402
    ConversationEmotionState,
    EmotionEvent,
    EmotionReading,
    TopicThread,
    intensity01,
)
from companion_memory.kernel.results import StageStatus  # noqa: E402
from companion_memory.kernel.short_term import (  # noqa: E402
    ShortTermTracker,
    aggregate_window,
    classify_trend,
    rank_active_threads,
    stability_from_intensities,
)
from companion_memory.memory.store import MemoryStore  # noqa: E402

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def _save_turn(
    store: MemoryStore,
    conversation_id: str,
    user_id: str,
    label: str,
    intensity: float,
    *,
    topics: list[str] | None = None,
    text: str = "hello",
) -> int:
    message_id = await store.save_message(conversation_id, user_id, text)
    await store.save_message_emotion(message_id, label, intensity, confidence=0.9, topic_tags=topics)
    return message_id


def _event(message_id: int, label: str, intensity: float, **kwargs) -> EmotionEvent:  # type: ignore[no-untyped-def]
    return EmotionEvent(
        user_id=kwargs.pop("user_id", "u1"),
        conversation_id=kwargs.pop("conversation_id", "c1"),
        message_id=message_id,
        emotion=EmotionReading(label=label, intensity=intensity, confidence=0.9),
        **kwargs,
    )


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(-3, 0.0), (0, 0.0), (1, 0.2), (2.5, 0.5), (4, 0.8), (5, 1.0), (9, 1.0)],
)
def test_intensity01_scales_and_clamps(raw: float, expected: float) -> None:
    assert intensity01(raw) == pytest.approx(expected)


@pytest.mark.parametrize(
    ("delta", "expected"),
    [(None, None), (math.nan, None), (0.3, "STABLE"), (-0.4, "STABLE"), (3, "VOLATILE"), (-3.5, "VOLATILE"),
     (1.5, "UP"), (-2, "DOWN"), (0.5, "UP")],
)
def test_classify_trend_thresholds(delta: float | None, expected: str | None) -> None:
    assert classify_trend(delta) == expected


def test_stability_is_one_for_flat_window_and_zero_for_wide_variance() -> None:
    assert stability_from_intensities([0.6, 0.6, 0.6]) == pytest.approx(1.0)
    # Population variance of [0, 1] is 0.25.
    assert stability_from_intensities([0.0, 1.0]) == pytest.approx(0.0)
    assert stability_from_intensities([]) is None


def test_aggregate_window_tracks_labels_topics_and_newest_minus_oldest() -> None:
    rows = [
        {"primary_emotion": "ANXIOUS", "intensity": 4, "topic_tags": ["exams"], "created_at": NOW.isoformat()},
        {
            "primary_emotion": "SAD",
            "intensity": 2,
            "topic_tags": ["family", "exams"],
            "created_at": (NOW - timedelta(minutes=5)).isoformat(),
        },
        {
            "primary_emotion": "ANXIOUS",
            "intensity": 1,
            "topic_tags": [],
            "created_at": (NOW - timedelta(minutes=10)).isoformat(),
        },
    ]

    window = aggregate_window(rows, now=NOW)

    assert window.stats.total_count == 3
    assert window.stats.recent_avg_intensity == pytest.approx((0.8 + 0.4 + 0.2) / 3)
    assert window.stats.trend_delta == pytest.approx(0.8 - 0.2)
    assert window.stats.emotions["ANXIOUS"].count == 2
    assert window.stats.emotions["ANXIOUS"].avg_intensity == pytest.approx(0.5)
    assert window.stats.emotions["ANXIOUS"].last_seen_at == NOW
    assert window.baseline_emotion == "ANXIOUS"

    exams = next(thread for thread in window.topics if thread.topic == "exams")
    assert exams.count == 2
    assert exams.first_seen_at == NOW - timedelta(minutes=5)
    assert exams.last_seen_at == NOW
    assert exams.peak_intensity == pytest.approx(0.8)


def test_aggregate_window_single_sample_has_zero_trend_delta() -> None:
    window = aggregate_window([{"primary_emotion": "SAD", "intensity": 3, "topic_tags": []}], now=NOW)

    assert window.stats.trend_delta == 0.0
    assert window.stability_score == pytest.approx(1.0)


def test_baseline_tie_goes_to_first_seen_label() -> None:
    rows = [
        {"primary_emotion": "SAD", "intensity": 2, "topic_tags": []},
        {"primary_emotion": "ANGRY", "intensity": 2, "topic_tags": []},
    ]

    assert aggregate_window(rows, now=NOW).baseline_emotion == "SAD"


def test_rank_active_threads_orders_by_recency_and_caps() -> None:
    threads = [
        TopicThread(topic=f"t{i}", count=1, last_seen_at=NOW - timedelta(minutes=i)) for i in range(7)
    ]

    ranked = rank_active_threads(list(reversed(threads)), 5)

    assert [thread.topic for thread in ranked] == ["t0", "t1", "t2", "t3", "t4"]


def test_first_message_seeds_conversation_state(tmp_path: Path) -> None:
    async def scenario() -> tuple[object, dict]:
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        message_id = await _save_turn(store, "c1", "u1", "ANXIOUS", 4, topics=["exams"])
        tracker = ShortTermTracker(store, clock=lambda: NOW)
        result = await tracker.update(_event(message_id, "ANXIOUS", 4))
        state = await store.get_conversation_state("c1")
        return result, state

    result, record = asyncio.run(scenario())

    assert result.status == StageStatus.SUCCESS
    assert result.payload.intensity_delta is None
    assert result.payload.trend is None

    state = ConversationEmotionState.from_record(record)
    assert state.dominant_emotion == "ANXIOUS"
    assert state.avg_intensity == pytest.approx(0.8)
    assert state.anxiety_score == pytest.approx(0.8)
    assert state.session_baseline_emotion == "ANXIOUS"
    assert state.current_baseline_emotion == "ANXIOUS"
    assert state.rolling_emotion_stats is not None
    assert state.rolling_emotion_stats.total_count == 1
    assert [thread.topic for thread in state.active_threads] == ["exams"]
    assert state.version == 2


def test_second_message_computes_delta_and_persists_trend(tmp_path: Path) -> None:
    async def scenario() -> tuple[object, dict | None, dict]:
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        tracker = ShortTermTracker(store, clock=lambda: NOW)
        first = await _save_turn(store, "c1", "u1", "ANXIOUS", 4)
        await tracker.update(_event(first, "ANXIOUS", 4))
        second = await _save_turn(store, "c1", "u1", "ANXIOUS", 2)
        result = await tracker.update(_event(second, "ANXIOUS", 2))
        return result, await store.get_message_emotion(second), await store.get_conversation_state("c1")

    result, emotion_row, record = asyncio.run(scenario())

    assert result.payload.intensity_delta == pytest.approx(-2.0)
    assert result.payload.trend == "DOWN"
    assert emotion_row is not None
    assert emotion_row["trend"] == "DOWN"
    assert emotion_row["intensity_delta"] == pytest.approx(-2.0)

    state = ConversationEmotionState.from_record(record)
    assert state.rolling_emotion_stats.total_count == 2
    assert state.rolling_emotion_stats.trend_delta == pytest.approx(0.4 - 0.8)
    assert state.session_baseline_emotion == "ANXIOUS"


def test_rolling_window_never_exceeds_window_size(tmp_path: Path) -> None:
    async def scenario() -> dict:
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        tracker = ShortTermTracker(store, window_size=3, clock=lambda: NOW)
        for intensity in (1, 2, 3, 4, 5, 5):
            message_id = await _save_turn(store, "c1", "u1", "SAD", intensity)
            await tracker.update(_event(message_id, "SAD", intensity))
        return await store.get_conversation_state("c1")

    state = ConversationEmotionState.from_record(asyncio.run(scenario()))

    assert state.window_size == 3
    assert state.rolling_emotion_stats.total_count == 3
    assert state.rolling_emotion_stats.emotions["SAD"].count == 3
    assert state.rolling_emotion_stats.recent_avg_intensity == pytest.approx((0.8 + 1.0 + 1.0) / 3)


def test_window_only_counts_the_same_user(tmp_path: Path) -> None:
    async def scenario() -> dict:
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        tracker = ShortTermTracker(store, clock=lambda: NOW)
        await _save_turn(store, "c1", "someone-else", "ANGRY", 5)
        message_id = await _save_turn(store, "c1", "u1", "SAD", 2)
        await tracker.update(_event(message_id, "SAD", 2))
        return await store.get_conversation_state("c1")

    state = ConversationEmotionState.from_record(asyncio.run(scenario()))

    assert set(state.rolling_emotion_stats.emotions) == {"SAD"}


class _ConflictingStateStore:
    """Conversation store whose first compare-and-set write loses to a concurrent writer."""

    def __init__(self, conflicts: int) -> None:
        self.conflicts = conflicts
        self.record: dict | None = None
        self.loads = 0
        self.writes = 0

    async def get_conversation_state(self, conversation_id: str) -> dict | None:
        self.loads += 1
        return dict(self.record) if self.record is not None else None

    async def create_conversation_state(self, record: dict) -> dict:
        self.record = {**record, "version": 1}
        return dict(self.record)

    async def update_conversation_state(self, record: dict, expected_version: int) -> bool:
        self.writes += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            self.record = {**self.record, "version": self.record["version"] + 1}
            return False
        if self.record["version"] != expected_version:
            return False
        self.record = {**record, "version": expected_version + 1}
        return True

    async def get_previous_user_emotion(self, conversation_id, user_id, exclude_message_id):  # type: ignore[no-untyped-def]
        return None

    async def get_recent_user_emotions(self, conversation_id, user_id, limit):  # type: ignore[no-untyped-def]
        return [{"primary_emotion": "SAD", "intensity": 3, "topic_tags": []}]

    async def update_message_emotion(self, message_id, **fields):  # type: ignore[no-untyped-def]
        return True


def test_version_conflict_reloads_and_recomputes() -> None:
    store = _ConflictingStateStore(conflicts=1)
    tracker = ShortTermTracker(store, max_update_retries=3, clock=lambda: NOW)

    result = asyncio.run(tracker.update(_event(7, "SAD", 3)))

    assert result.status == StageStatus.SUCCESS
    assert store.writes == 2
    # Initial load plus one reload after the conflict.
    assert store.loads == 2
    assert store.record["version"] == 3
    assert store.record["rolling_emotion_stats"]["total_count"] == 1


def test_exhausted_version_retries_degrade_but_return_summary() -> None:
    store = _ConflictingStateStore(conflicts=10)
    tracker = ShortTermTracker(store, max_update_retries=2, clock=lambda: NOW)

    result = asyncio.run(tracker.update(_event(7, "SAD", 3)))

    assert result.status == StageStatus.DEGRADED
    assert result.error == "version conflict retries exhausted"
    assert result.payload is not None
    assert store.writes == 2


def test_trend_write_failure_is_logged_and_ignored(caplog: pytest.LogCaptureFixture) -> None:
    class _Store(_ConflictingStateStore):
        async def update_message_emotion(self, message_id, **fields):  # type: ignore[no-untyped-def]
            raise RuntimeError("disk full")

    tracker = ShortTermTracker(_Store(conflicts=0), clock=lambda: NOW)

    with caplog.at_level("WARNING", logger="companion_memory"):
        result = asyncio.run(tracker.update(_event(7, "SAD", 3)))

    assert result.status == StageStatus.SUCCESS
    assert "Failed to store trend on message emotion" in caplog.text
