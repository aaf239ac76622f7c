from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import Any, Callable

from ..common import clamp, utc_now
from .models import (
    DEFAULT_EMOTION_LABEL,
    EmotionEvent,
    EmotionStat,
    KernelSnapshot,
    PersonaAffinity,
    ShortTermSummary,
    TopicStat,
    UserEmotionProfile,
    intensity01,
)
from .reasoning import AnchorDetector, ReasonDeriver, derive_emotional_reason, detect_anchors_from_message
from .results import StageResult, error_text

logger = logging.getLogger("companion_memory")

STAGE = "long_term"


def outcome_score_for(event: EmotionEvent, delta: float | None) -> float:
    if event.outcome is not None:
        return float(event.outcome.score)
    if delta is None:
        return 0.0
    # Falling intensity counts as an improvement.
    if delta < 0:
        return 1.0
    if delta > 0:
        return -1.0
    return 0.0


class LongTermAggregator:
    """Folds each emotion event into the user's cross-conversation profile."""

    def __init__(
        self,
        store: Any,
        *,
        anchor_detector: AnchorDetector | None = detect_anchors_from_message,
        reason_deriver: ReasonDeriver | None = derive_emotional_reason,
        topic_score_decay: float = 0.9,
        topic_score_cap: float = 10.0,
        volatility_alpha: float = 0.1,
        max_update_retries: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.anchor_detector = anchor_detector
        self.reason_deriver = reason_deriver
        self.topic_score_decay = topic_score_decay
        self.topic_score_cap = topic_score_cap
        self.volatility_alpha = volatility_alpha
        self.max_update_retries = max(1, int(max_update_retries))
        self._clock = clock

    def apply_event(
        self,
        profile: UserEmotionProfile,
        event: EmotionEvent,
        topics: list[str],
        summary: ShortTermSummary | None,
        now: datetime,
    ) -> UserEmotionProfile:
        reading = event.emotion
        label = reading.label or DEFAULT_EMOTION_LABEL
        level = intensity01(reading.intensity)
        delta = summary.intensity_delta if summary is not None else None

        stat = profile.emotion_stats.get(label) or EmotionStat()
        count = stat.count + 1
        profile.emotion_stats[label] = EmotionStat(
            count=count,
            avg_intensity=(stat.avg_intensity * stat.count + level) / count,
            last_seen_at=now,
        )

        for topic in topics:
            topic_stat = profile.topic_profile.get(topic) or TopicStat()
            topic_stat.count += 1
            topic_stat.last_seen_at = now
            topic_stat.score = min(topic_stat.score * self.topic_score_decay + level, self.topic_score_cap)
            profile.topic_profile[topic] = topic_stat

        if event.persona_id:
            affinity = profile.persona_affinity.get(event.persona_id) or PersonaAffinity()
            uses = affinity.uses + 1
            score = outcome_score_for(event, delta)
            profile.persona_affinity[event.persona_id] = PersonaAffinity(
                uses=uses,
                avg_outcome=clamp((affinity.avg_outcome * affinity.uses + score) / uses, -1.0, 1.0),
                last_used_at=now,
                last_trend=(summary.trend if summary is not None else None) or affinity.last_trend,
            )

        if delta is not None:
            sample = min(abs(delta) / 5.0, 1.0)
            if profile.volatility_index is None:
                volatility = sample
            else:
                alpha = self.volatility_alpha
                volatility = (1.0 - alpha) * profile.volatility_index + alpha * sample
            profile.volatility_index = clamp(volatility, 0.0, 1.0)

        return profile

    async def _message_text(self, event: EmotionEvent) -> str:
        getter = getattr(self.store, "get_message_text", None)
        if not callable(getter):
            return ""
        try:
            text = await getter(event.message_id)
        except Exception as exc:
            logger.warning("Failed to load message text message=%s: %s", event.message_id, exc)
            return ""
        return str(text or "")

    def _detect_anchors(self, text: str, event: EmotionEvent) -> list[str]:
        if self.anchor_detector is None or not text:
            return []
        try:
            detected = self.anchor_detector(text, event.emotion.label, event.emotion.intensity)
        except Exception as exc:
            logger.warning("Anchor detector failed user=%s: %s", event.user_id, exc)
            return []
        return [str(anchor) for anchor in detected or [] if anchor]

    def _derive_reason(
        self,
        text: str,
        anchors: list[str],
        prior: UserEmotionProfile | None,
        event: EmotionEvent,
    ) -> str | None:
        if self.reason_deriver is None:
            return None
        try:
            reason = self.reason_deriver(text, list(anchors), [], prior)
        except Exception as exc:
            logger.warning("Reason deriver failed user=%s: %s", event.user_id, exc)
            return None
        return str(reason) if reason else None

    async def update(
        self,
        event: EmotionEvent,
        topics: list[str],
        summary: ShortTermSummary | None = None,
    ) -> StageResult:
        now = self._clock()
        text = await self._message_text(event)
        detected = self._detect_anchors(text, event)

        profile: UserEmotionProfile | None = None
        try:
            for attempt in range(1, self.max_update_retries + 1):
                record = await self.store.get_user_profile(event.user_id)
                if record is None:
                    prior = None
                    profile = UserEmotionProfile.empty(event.user_id)
                else:
                    profile = UserEmotionProfile.from_record(record)
                    prior = copy.deepcopy(profile)

                self.apply_event(profile, event, topics, summary, now)
                for anchor in detected:
                    if anchor not in profile.emotional_anchors:
                        profile.emotional_anchors.append(anchor)

                profile.recent_kernel_snapshot = KernelSnapshot(
                    last_emotion=event.emotion.label or DEFAULT_EMOTION_LABEL,
                    last_intensity=float(event.emotion.intensity),
                    last_updated_at=now,
                    reason_label=self._derive_reason(text, profile.emotional_anchors, prior, event),
                )
                profile.last_updated_at = now

                if await self.store.upsert_user_profile(profile.to_record(), profile.version):
                    profile.version += 1
                    logger.debug(
                        "Long-term profile updated user=%s label=%s anchors=%s",
                        event.user_id,
                        event.emotion.label,
                        len(profile.emotional_anchors),
                    )
                    return StageResult.success(STAGE, profile)
                logger.info(
                    "User profile version conflict user=%s attempt=%s/%s",
                    event.user_id,
                    attempt,
                    self.max_update_retries,
                )
        except Exception as exc:
            logger.error("Failed to update user profile user=%s: %s", event.user_id, exc)
            if profile is None:
                return StageResult.failed(STAGE, error_text(exc))
            return StageResult.degraded(STAGE, error_text(exc), profile)

        logger.warning(
            "Dropped long-term update after %s version conflicts user=%s",
            self.max_update_retries,
            event.user_id,
        )
        return StageResult.degraded(STAGE, "version conflict retries exhausted", profile)
