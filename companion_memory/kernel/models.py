from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from ..common import as_float, as_int, as_optional_float, clamp, parse_timestamp, to_iso

DEFAULT_WINDOW_SIZE = 20
DEFAULT_EMOTION_LABEL = "NEUTRAL"

# Named scalar scores seeded from the triggering emotion label.
SCALAR_SCORE_BY_LABEL = {
    "SAD": "sadness_score",
    "ANXIOUS": "anxiety_score",
    "ANGRY": "anger_score",
    "LONELY": "loneliness_score",
}


def intensity01(intensity: object) -> float:
    """Map a 1..5 intensity onto [0, 1]; out-of-range values are clamped."""
    return clamp(as_float(intensity) / 5.0, 0.0, 1.0)


def _clean_label(value: object) -> str | None:
    text = str(value or "").strip().upper()
    return text or None


def _clean_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _topic_list(value: object) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


@dataclass(slots=True)
class EmotionReading:
    label: str
    intensity: float
    confidence: float = 0.0

    @classmethod
    def from_payload(cls, payload: Any) -> "EmotionReading | None":
        if isinstance(payload, EmotionReading):
            return payload
        if not isinstance(payload, Mapping):
            return None
        label = _clean_label(payload.get("label") or payload.get("primary_emotion"))
        if label is None:
            return None
        return cls(
            label=label,
            intensity=as_float(payload.get("intensity"), 0.0),
            confidence=as_float(payload.get("confidence"), 0.0),
        )


@dataclass(slots=True)
class Outcome:
    score: float


@dataclass(slots=True)
class EmotionEvent:
    user_id: str
    conversation_id: str
    message_id: int | None
    emotion: EmotionReading | None
    persona_id: str | None = None
    topics: list[str] = field(default_factory=list)
    secondary_emotion: str | None = None
    emotion_vector: dict[str, float] | None = None
    detector_version: str | None = None
    is_kernel_relevant: bool | None = None
    outcome: Outcome | None = None
    problems: list[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "EmotionEvent":
        problems: list[str] = []
        outcome = payload.get("outcome")
        outcome_score = as_optional_float(outcome.get("score")) if isinstance(outcome, Mapping) else None
        raw_message_id = payload.get("message_id")
        message_id = as_int(raw_message_id, 0) if raw_message_id is not None else 0
        if raw_message_id is not None and not message_id:
            problems.append(f"message_id {raw_message_id!r} is not an integer")
        vector = payload.get("emotion_vector")
        relevant = payload.get("is_kernel_relevant")
        return cls(
            user_id=str(payload.get("user_id") or "").strip(),
            conversation_id=str(payload.get("conversation_id") or "").strip(),
            message_id=message_id or None,
            emotion=EmotionReading.from_payload(payload.get("emotion")),
            persona_id=_clean_text(payload.get("persona_id")),
            topics=_topic_list(payload.get("topics")),
            secondary_emotion=_clean_label(payload.get("secondary_emotion")),
            emotion_vector=dict(vector) if isinstance(vector, Mapping) else None,
            detector_version=_clean_text(payload.get("detector_version")),
            is_kernel_relevant=relevant if isinstance(relevant, bool) else None,
            outcome=Outcome(score=outcome_score) if outcome_score is not None else None,
            problems=problems,
        )

    def is_valid(self) -> bool:
        return bool(self.user_id and self.conversation_id and self.message_id and self.emotion is not None)

    def validation_errors(self) -> list[str]:
        errors = list(self.problems)
        if not self.user_id:
            errors.append("missing user_id")
        if not self.conversation_id:
            errors.append("missing conversation_id")
        if not self.message_id and not self.problems:
            errors.append("missing message_id")
        if self.emotion is None:
            errors.append("missing or unlabeled emotion")
        return errors

    def cleaned_topics(self) -> list[str]:
        cleaned: list[str] = []
        for topic in self.topics:
            if not topic:
                continue
            text = str(topic).strip()
            if text:
                cleaned.append(text)
        return cleaned


@dataclass(slots=True)
class ShortTermSummary:
    intensity_delta: float | None = None
    trend: str | None = None


@dataclass(slots=True)
class EmotionStat:
    count: int = 0
    avg_intensity: float = 0.0
    last_seen_at: datetime | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> "EmotionStat":
        if not isinstance(payload, Mapping):
            return cls()
        return cls(
            count=max(0, as_int(payload.get("count"), 0)),
            avg_intensity=clamp(as_float(payload.get("avg_intensity"), 0.0), 0.0, 1.0),
            last_seen_at=parse_timestamp(payload.get("last_seen_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "avg_intensity": self.avg_intensity,
            "last_seen_at": to_iso(self.last_seen_at),
        }


@dataclass(slots=True)
class RollingEmotionStats:
    total_count: int = 0
    recent_avg_intensity: float = 0.0
    trend_delta: float = 0.0
    emotions: dict[str, EmotionStat] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Any) -> "RollingEmotionStats | None":
        if not isinstance(payload, Mapping):
            return None
        emotions = payload.get("emotions")
        return cls(
            total_count=max(0, as_int(payload.get("total_count"), 0)),
            recent_avg_intensity=as_float(payload.get("recent_avg_intensity"), 0.0),
            trend_delta=as_float(payload.get("trend_delta"), 0.0),
            emotions={
                str(label): EmotionStat.from_dict(stat)
                for label, stat in (emotions.items() if isinstance(emotions, Mapping) else ())
            },
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_count": self.total_count,
            "recent_avg_intensity": self.recent_avg_intensity,
            "trend_delta": self.trend_delta,
            "emotions": {label: stat.to_dict() for label, stat in self.emotions.items()},
        }


@dataclass(slots=True)
class TopicThread:
    topic: str
    count: int = 0
    first_seen_at: datetime | None = None
    last_seen_at: datetime | None = None
    peak_intensity: float = 0.0

    @classmethod
    def from_dict(cls, payload: Any) -> "TopicThread | None":
        if not isinstance(payload, Mapping):
            return None
        topic = _clean_text(payload.get("topic"))
        if topic is None:
            return None
        return cls(
            topic=topic,
            count=max(0, as_int(payload.get("count"), 0)),
            first_seen_at=parse_timestamp(payload.get("first_seen_at")),
            last_seen_at=parse_timestamp(payload.get("last_seen_at")),
            peak_intensity=as_float(payload.get("peak_intensity"), 0.0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "count": self.count,
            "first_seen_at": to_iso(self.first_seen_at),
            "last_seen_at": to_iso(self.last_seen_at),
            "peak_intensity": self.peak_intensity,
        }


def _threads_from_list(payload: Any) -> list[TopicThread]:
    if not isinstance(payload, list):
        return []
    threads = [TopicThread.from_dict(item) for item in payload]
    return [thread for thread in threads if thread is not None]


@dataclass(slots=True)
class ConversationEmotionState:
    conversation_id: str
    user_id: str | None = None
    window_size: int = DEFAULT_WINDOW_SIZE
    rolling_emotion_stats: RollingEmotionStats | None = None
    rolling_topics: list[TopicThread] = field(default_factory=list)
    active_threads: list[TopicThread] = field(default_factory=list)
    session_baseline_emotion: str | None = None
    current_baseline_emotion: str | None = None
    stability_score: float | None = None
    last_kernel_update_at: datetime | None = None
    dominant_emotion: str | None = None
    avg_intensity: float = 0.0
    sadness_score: float = 0.0
    anxiety_score: float = 0.0
    anger_score: float = 0.0
    loneliness_score: float = 0.0
    version: int = 0

    @classmethod
    def empty(
        cls,
        conversation_id: str,
        *,
        user_id: str | None = None,
        window_size: int = DEFAULT_WINDOW_SIZE,
    ) -> "ConversationEmotionState":
        return cls(conversation_id=str(conversation_id), user_id=user_id, window_size=window_size)

    @classmethod
    def seeded(
        cls,
        conversation_id: str,
        reading: EmotionReading,
        *,
        user_id: str | None = None,
        window_size: int = DEFAULT_WINDOW_SIZE,
    ) -> "ConversationEmotionState":
        state = cls.empty(conversation_id, user_id=user_id, window_size=window_size)
        level = intensity01(reading.intensity)
        state.dominant_emotion = reading.label or DEFAULT_EMOTION_LABEL
        state.avg_intensity = level
        score_field = SCALAR_SCORE_BY_LABEL.get(state.dominant_emotion)
        if score_field is not None:
            setattr(state, score_field, level)
        return state

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "ConversationEmotionState":
        topic_stats = record.get("rolling_topic_stats")
        stability = as_optional_float(record.get("stability_score"))
        return cls(
            conversation_id=str(record.get("conversation_id") or ""),
            user_id=_clean_text(record.get("user_id")),
            window_size=as_int(record.get("window_size"), 0) or DEFAULT_WINDOW_SIZE,
            rolling_emotion_stats=RollingEmotionStats.from_dict(record.get("rolling_emotion_stats")),
            rolling_topics=_threads_from_list(
                topic_stats.get("topics") if isinstance(topic_stats, Mapping) else None
            ),
            active_threads=_threads_from_list(record.get("active_threads")),
            session_baseline_emotion=_clean_label(record.get("session_baseline_emotion")),
            current_baseline_emotion=_clean_label(record.get("current_baseline_emotion")),
            stability_score=clamp(stability, 0.0, 1.0) if stability is not None else None,
            last_kernel_update_at=parse_timestamp(record.get("last_kernel_update_at")),
            dominant_emotion=_clean_label(record.get("dominant_emotion")),
            avg_intensity=as_float(record.get("avg_intensity"), 0.0),
            sadness_score=as_float(record.get("sadness_score"), 0.0),
            anxiety_score=as_float(record.get("anxiety_score"), 0.0),
            anger_score=as_float(record.get("anger_score"), 0.0),
            loneliness_score=as_float(record.get("loneliness_score"), 0.0),
            version=as_int(record.get("version"), 0),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "window_size": self.window_size,
            "rolling_emotion_stats": (
                self.rolling_emotion_stats.to_dict() if self.rolling_emotion_stats is not None else None
            ),
            "rolling_topic_stats": {"topics": [thread.to_dict() for thread in self.rolling_topics]},
            "active_threads": [thread.to_dict() for thread in self.active_threads],
            "session_baseline_emotion": self.session_baseline_emotion,
            "current_baseline_emotion": self.current_baseline_emotion,
            "stability_score": self.stability_score,
            "last_kernel_update_at": to_iso(self.last_kernel_update_at),
            "dominant_emotion": self.dominant_emotion,
            "avg_intensity": self.avg_intensity,
            "sadness_score": self.sadness_score,
            "anxiety_score": self.anxiety_score,
            "anger_score": self.anger_score,
            "loneliness_score": self.loneliness_score,
            "version": self.version,
        }


@dataclass(slots=True)
class TopicStat:
    count: int = 0
    score: float = 0.0
    last_seen_at: datetime | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> "TopicStat":
        if not isinstance(payload, Mapping):
            return cls()
        return cls(
            count=max(0, as_int(payload.get("count"), 0)),
            score=as_float(payload.get("score"), 0.0),
            last_seen_at=parse_timestamp(payload.get("last_seen_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"count": self.count, "score": self.score, "last_seen_at": to_iso(self.last_seen_at)}


@dataclass(slots=True)
class PersonaAffinity:
    uses: int = 0
    avg_outcome: float = 0.0
    last_used_at: datetime | None = None
    last_trend: str | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> "PersonaAffinity":
        if not isinstance(payload, Mapping):
            return cls()
        return cls(
            uses=max(0, as_int(payload.get("uses"), 0)),
            avg_outcome=clamp(as_float(payload.get("avg_outcome"), 0.0), -1.0, 1.0),
            last_used_at=parse_timestamp(payload.get("last_used_at")),
            last_trend=_clean_label(payload.get("last_trend")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "uses": self.uses,
            "avg_outcome": self.avg_outcome,
            "last_used_at": to_iso(self.last_used_at),
            "last_trend": self.last_trend,
        }


@dataclass(slots=True)
class KernelSnapshot:
    last_emotion: str
    last_intensity: float
    last_updated_at: datetime | None = None
    reason_label: str | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> "KernelSnapshot | None":
        if not isinstance(payload, Mapping):
            return None
        return cls(
            last_emotion=_clean_label(payload.get("last_emotion")) or DEFAULT_EMOTION_LABEL,
            last_intensity=as_float(payload.get("last_intensity"), 0.0),
            last_updated_at=parse_timestamp(payload.get("last_updated_at")),
            reason_label=_clean_text(payload.get("reason_label")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_emotion": self.last_emotion,
            "last_intensity": self.last_intensity,
            "last_updated_at": to_iso(self.last_updated_at),
            "reason_label": self.reason_label,
        }


@dataclass(slots=True)
class UserEmotionProfile:
    user_id: str
    emotion_stats: dict[str, EmotionStat] = field(default_factory=dict)
    topic_profile: dict[str, TopicStat] = field(default_factory=dict)
    persona_affinity: dict[str, PersonaAffinity] = field(default_factory=dict)
    volatility_index: float | None = None
    emotional_anchors: list[str] = field(default_factory=list)
    recent_kernel_snapshot: KernelSnapshot | None = None
    avg_intensity: float = 0.0
    sadness_score: float = 0.0
    anxiety_score: float = 0.0
    anger_score: float = 0.0
    loneliness_score: float = 0.0
    hope_score: float = 0.0
    gratitude_score: float = 0.0
    last_updated_at: datetime | None = None
    version: int = 0

    @classmethod
    def empty(cls, user_id: str) -> "UserEmotionProfile":
        return cls(user_id=str(user_id))

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "UserEmotionProfile":
        def _mapping(key: str) -> Mapping[str, Any]:
            value = record.get(key)
            return value if isinstance(value, Mapping) else {}

        anchors: list[str] = []
        for anchor in record.get("emotional_anchors") or []:
            text = str(anchor or "").strip()
            if text and text not in anchors:
                anchors.append(text)

        volatility = as_optional_float(record.get("volatility_index"))
        return cls(
            user_id=str(record.get("user_id") or ""),
            emotion_stats={str(k): EmotionStat.from_dict(v) for k, v in _mapping("emotion_stats").items()},
            topic_profile={str(k): TopicStat.from_dict(v) for k, v in _mapping("topic_profile").items()},
            persona_affinity={
                str(k): PersonaAffinity.from_dict(v) for k, v in _mapping("persona_affinity").items()
            },
            volatility_index=clamp(volatility, 0.0, 1.0) if volatility is not None else None,
            emotional_anchors=anchors,
            recent_kernel_snapshot=KernelSnapshot.from_dict(record.get("recent_kernel_snapshot")),
            avg_intensity=as_float(record.get("avg_intensity"), 0.0),
            sadness_score=as_float(record.get("sadness_score"), 0.0),
            anxiety_score=as_float(record.get("anxiety_score"), 0.0),
            anger_score=as_float(record.get("anger_score"), 0.0),
            loneliness_score=as_float(record.get("loneliness_score"), 0.0),
            hope_score=as_float(record.get("hope_score"), 0.0),
            gratitude_score=as_float(record.get("gratitude_score"), 0.0),
            last_updated_at=parse_timestamp(record.get("last_updated_at")),
            version=as_int(record.get("version"), 0),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "emotion_stats": {label: stat.to_dict() for label, stat in self.emotion_stats.items()},
            "topic_profile": {topic: stat.to_dict() for topic, stat in self.topic_profile.items()},
            "persona_affinity": {pid: aff.to_dict() for pid, aff in self.persona_affinity.items()},
            "volatility_index": self.volatility_index,
            "emotional_anchors": list(self.emotional_anchors),
            "recent_kernel_snapshot": (
                self.recent_kernel_snapshot.to_dict() if self.recent_kernel_snapshot is not None else None
            ),
            "last_updated_at": to_iso(self.last_updated_at),
            "version": self.version,
        }
