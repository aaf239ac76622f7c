from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

from ..common import as_optional_float, clamp, parse_timestamp, utc_now
from .models import (
    DEFAULT_EMOTION_LABEL,
    DEFAULT_WINDOW_SIZE,
    ConversationEmotionState,
    EmotionEvent,
    EmotionStat,
    RollingEmotionStats,
    ShortTermSummary,
    TopicThread,
    intensity01,
)
from .results import StageResult, error_text

logger = logging.getLogger("companion_memory")

STAGE = "short_term"
STABLE_DELTA = 0.5
VOLATILE_DELTA = 3.0
MAX_WINDOW_VARIANCE = 0.25

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def classify_trend(delta: float | None) -> str | None:
    if delta is None or math.isnan(delta):
        return None
    magnitude = abs(delta)
    if magnitude < STABLE_DELTA:
        return "STABLE"
    if magnitude >= VOLATILE_DELTA:
        return "VOLATILE"
    return "UP" if delta > 0 else "DOWN"


def stability_from_intensities(intensities: Sequence[float]) -> float | None:
    if not intensities:
        return None
    mean = sum(intensities) / len(intensities)
    variance = sum((value - mean) ** 2 for value in intensities) / len(intensities)
    return clamp(1.0 - min(variance / MAX_WINDOW_VARIANCE, 1.0), 0.0, 1.0)


@dataclass(slots=True)
class WindowAggregate:
    stats: RollingEmotionStats
    topics: list[TopicThread] = field(default_factory=list)
    baseline_emotion: str | None = None
    stability_score: float | None = None


def aggregate_window(rows: Sequence[Mapping[str, Any]], *, now: datetime) -> WindowAggregate:
    """Aggregate newest-first emotion rows into per-label and per-topic window stats."""
    buckets: dict[str, dict[str, Any]] = {}
    topics: dict[str, TopicThread] = {}
    intensities: list[float] = []

    for row in rows:
        label = str(row.get("primary_emotion") or DEFAULT_EMOTION_LABEL)
        level = intensity01(row.get("intensity") or 0)
        intensities.append(level)
        seen_at = parse_timestamp(row.get("created_at")) or now

        bucket = buckets.setdefault(label, {"count": 0, "sum": 0.0, "last_seen_at": None})
        bucket["count"] += 1
        bucket["sum"] += level
        if bucket["last_seen_at"] is None or seen_at > bucket["last_seen_at"]:
            bucket["last_seen_at"] = seen_at

        for tag in row.get("topic_tags") or []:
            if not tag:
                continue
            thread = topics.get(tag)
            if thread is None:
                thread = TopicThread(
                    topic=str(tag),
                    first_seen_at=seen_at,
                    last_seen_at=seen_at,
                    peak_intensity=level,
                )
                topics[tag] = thread
            thread.count += 1
            if thread.first_seen_at is None or seen_at < thread.first_seen_at:
                thread.first_seen_at = seen_at
            if thread.last_seen_at is None or seen_at > thread.last_seen_at:
                thread.last_seen_at = seen_at
            thread.peak_intensity = max(thread.peak_intensity, level)

    total = len(intensities)
    stats = RollingEmotionStats(
        total_count=total,
        recent_avg_intensity=sum(intensities) / total if total else 0.0,
        trend_delta=intensities[0] - intensities[-1] if total >= 2 else 0.0,
        emotions={
            label: EmotionStat(
                count=bucket["count"],
                avg_intensity=bucket["sum"] / bucket["count"] if bucket["count"] else 0.0,
                last_seen_at=bucket["last_seen_at"],
            )
            for label, bucket in buckets.items()
        },
    )

    baseline: str | None = None
    best_count = -1
    for label, bucket in buckets.items():
        if bucket["count"] > best_count:
            best_count = bucket["count"]
            baseline = label

    return WindowAggregate(
        stats=stats,
        topics=list(topics.values()),
        baseline_emotion=baseline,
        stability_score=stability_from_intensities(intensities),
    )


def rank_active_threads(topics: Sequence[TopicThread], limit: int) -> list[TopicThread]:
    ranked = sorted(topics, key=lambda thread: thread.last_seen_at or _EPOCH, reverse=True)
    return ranked[: max(0, limit)]


class ShortTermTracker:
    """Maintains the per-conversation rolling emotion window."""

    def __init__(
        self,
        store: Any,
        *,
        window_size: int = DEFAULT_WINDOW_SIZE,
        active_thread_limit: int = 5,
        max_update_retries: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.window_size = max(1, int(window_size))
        self.active_thread_limit = max(1, int(active_thread_limit))
        self.max_update_retries = max(1, int(max_update_retries))
        self._clock = clock

    async def _load_or_create(self, event: EmotionEvent) -> ConversationEmotionState:
        record = await self.store.get_conversation_state(event.conversation_id)
        if record is not None:
            return ConversationEmotionState.from_record(record)
        seeded = ConversationEmotionState.seeded(
            event.conversation_id,
            event.emotion,
            user_id=event.user_id,
            window_size=self.window_size,
        )
        created = await self.store.create_conversation_state(seeded.to_record())
        return ConversationEmotionState.from_record(created)

    async def _intensity_delta(self, event: EmotionEvent) -> float | None:
        previous = await self.store.get_previous_user_emotion(
            event.conversation_id,
            event.user_id,
            event.message_id,
        )
        if previous is None:
            return None
        prior_intensity = as_optional_float(previous.get("intensity"))
        if prior_intensity is None:
            return None
        return float(event.emotion.intensity) - prior_intensity

    def apply_window(
        self,
        state: ConversationEmotionState,
        rows: Sequence[Mapping[str, Any]],
        event: EmotionEvent,
        now: datetime,
    ) -> ConversationEmotionState:
        window = aggregate_window(rows, now=now)
        state.window_size = state.window_size or self.window_size
        state.rolling_emotion_stats = window.stats
        state.rolling_topics = window.topics
        state.active_threads = rank_active_threads(window.topics, self.active_thread_limit)
        if state.session_baseline_emotion is None and event.emotion is not None and event.emotion.label:
            state.session_baseline_emotion = event.emotion.label
        if window.baseline_emotion is not None:
            state.current_baseline_emotion = window.baseline_emotion
        if window.stability_score is not None:
            state.stability_score = window.stability_score
        state.last_kernel_update_at = now
        return state

    async def update(self, event: EmotionEvent) -> StageResult:
        now = self._clock()
        state = await self._load_or_create(event)

        delta = await self._intensity_delta(event)
        summary = ShortTermSummary(intensity_delta=delta, trend=classify_trend(delta))

        try:
            await self.store.update_message_emotion(
                event.message_id,
                intensity_delta=summary.intensity_delta,
                trend=summary.trend,
            )
        except Exception as exc:
            logger.warning(
                "Failed to store trend on message emotion message=%s: %s",
                event.message_id,
                exc,
            )

        try:
            for attempt in range(1, self.max_update_retries + 1):
                rows = await self.store.get_recent_user_emotions(
                    event.conversation_id,
                    event.user_id,
                    state.window_size or self.window_size,
                )
                self.apply_window(state, rows, event, now)
                if await self.store.update_conversation_state(state.to_record(), state.version):
                    state.version += 1
                    logger.debug(
                        "Short-term window updated conversation=%s samples=%s trend=%s",
                        event.conversation_id,
                        len(rows),
                        summary.trend,
                    )
                    return StageResult.success(STAGE, summary)
                logger.info(
                    "Conversation state version conflict conversation=%s attempt=%s/%s",
                    event.conversation_id,
                    attempt,
                    self.max_update_retries,
                )
                state = await self._load_or_create(event)
        except Exception as exc:
            logger.error(
                "Failed to persist conversation state conversation=%s: %s",
                event.conversation_id,
                exc,
            )
            return StageResult.degraded(STAGE, error_text(exc), summary)

        logger.warning(
            "Dropped short-term update after %s version conflicts conversation=%s",
            self.max_update_retries,
            event.conversation_id,
        )
        return StageResult.degraded(STAGE, "version conflict retries exhausted", summary)
