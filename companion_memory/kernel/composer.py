from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Sequence

from ..common import clamp, truncate
from ..prompts.memory_block import block_templates, emotion_label, social_style
from .models import ConversationEmotionState, UserEmotionProfile
from .persona_snapshot import PersonaSnapshot, PersonaSnapshotBuilder

logger = logging.getLogger("companion_memory")

DEFAULT_MAX_CHARS = 2200
DEFAULT_PREFERENCE_FACT_LIMIT = 64
MAX_LONG_TERM_LINES = 3
MAX_SHORT_TERM_TOPICS = 3
MAX_LONG_TERM_TOPICS = 3

GROUNDING_LABELS = {"ANXIOUS", "STRESSED"}
GROUNDING_MIN_INTENSITY = 0.7
GROUNDING_MAX_STABILITY = 0.4
TREND_HINT_THRESHOLD = 0.2
PERSONA_OUTCOME_THRESHOLD = 0.1
NEGATIVE_SUM_THRESHOLD = 0.9
POSITIVE_SUM_THRESHOLD = 0.6

PREFERENCE_FACT_KINDS = (
    "preference.season.like",
    "preference.season.dislike",
    "preference.weather.like",
    "preference.weather.dislike",
    "preference.pets.like",
    "preference.pets.dislike",
    "preference.crowds",
    "trait.social.style",
)

_PREFERENCE_LIST_TEMPLATES = (
    ("preference.season.like", "pref_season_like"),
    ("preference.season.dislike", "pref_season_dislike"),
    ("preference.weather.like", "pref_weather_like"),
    ("preference.weather.dislike", "pref_weather_dislike"),
    ("preference.pets.like", "pref_pets_like"),
    ("preference.pets.dislike", "pref_pets_dislike"),
)

SOCIAL_STYLES = {"introvert", "extrovert", "ambivert"}


def _fmt5(value: float) -> str:
    return f"{value * 5:.1f}"


def _text(templates: Mapping[str, object], key: str, **values: object) -> str:
    template = templates.get(key)
    if not isinstance(template, str):
        return ""
    return template.format(**values) if values else template


def _join(templates: Mapping[str, object], items: Sequence[str]) -> str:
    separator = templates.get("list_separator")
    return (separator if isinstance(separator, str) else ", ").join(items)


def short_term_lines(state: ConversationEmotionState, templates: Mapping[str, object]) -> list[str]:
    rolling = state.rolling_emotion_stats
    lines: list[str] = []

    dominant: str | None = None
    dominant_intensity = 0.0
    if rolling is not None:
        for label, stat in rolling.emotions.items():
            if stat.avg_intensity > dominant_intensity:
                dominant_intensity = stat.avg_intensity
                dominant = label

    stability = clamp(state.stability_score, 0.0, 1.0) if state.stability_score is not None else None

    if rolling is not None and rolling.total_count > 0 and dominant:
        lines.append(
            _text(
                templates,
                "short_dominant",
                turns=rolling.total_count,
                label=emotion_label(templates, dominant),
                intensity=_fmt5(dominant_intensity),
            )
        )

    if (
        dominant in GROUNDING_LABELS
        and dominant_intensity >= GROUNDING_MIN_INTENSITY
        and stability is not None
        and stability < GROUNDING_MAX_STABILITY
    ):
        lines.append(_text(templates, "short_grounding"))

    if rolling is not None and abs(rolling.trend_delta) >= TREND_HINT_THRESHOLD:
        key = "short_trend_calming" if rolling.trend_delta < 0 else "short_trend_climbing"
        lines.append(_text(templates, key))

    if stability is not None:
        if stability > 0.75:
            descriptor = _text(templates, "stability_stable")
        elif stability < 0.35:
            descriptor = _text(templates, "stability_very_variable")
        else:
            descriptor = _text(templates, "stability_somewhat_variable")
        lines.append(_text(templates, "short_stability", descriptor=descriptor))

    topics = [thread.topic for thread in state.active_threads[:MAX_SHORT_TERM_TOPICS] if thread.topic]
    if topics:
        lines.append(_text(templates, "short_themes", topics=_join(templates, topics)))

    if not lines:
        # Window not populated yet; fall back to the scalars seeded on creation.
        bits: list[str] = []
        if state.dominant_emotion:
            bits.append(
                _text(
                    templates,
                    "short_scalar_dominant",
                    label=emotion_label(templates, state.dominant_emotion),
                )
            )
        if state.avg_intensity > 0:
            bits.append(_text(templates, "short_scalar_intensity", intensity=_fmt5(state.avg_intensity)))
        if bits:
            lines.append(" ".join(bits))

    return [line for line in lines if line]


def long_term_dominant(profile: UserEmotionProfile) -> str | None:
    dominant: str | None = None
    best = 0.0
    if profile.emotion_stats:
        for label, stat in profile.emotion_stats.items():
            score = stat.count * stat.avg_intensity
            if score > best:
                best = score
                dominant = label
        return dominant

    for label, score in (
        ("SAD", profile.sadness_score),
        ("ANXIOUS", profile.anxiety_score),
        ("ANGRY", profile.anger_score),
        ("LONELY", profile.loneliness_score),
        ("HOPEFUL", profile.hope_score),
        ("GRATEFUL", profile.gratitude_score),
    ):
        if score > best:
            best = score
            dominant = label
    return dominant


def long_term_lines(
    profile: UserEmotionProfile,
    templates: Mapping[str, object],
    persona_id: str | None,
) -> list[str]:
    lines: list[str] = []

    dominant = long_term_dominant(profile)
    if dominant:
        label = emotion_label(templates, dominant)
        lines.append(_text(templates, "long_dominant", label=label, label_lower=label.lower()))

    ranked = sorted(profile.topic_profile.items(), key=lambda item: item[1].score, reverse=True)
    topics = [topic for topic, _ in ranked[:MAX_LONG_TERM_TOPICS]]
    if topics:
        lines.append(
            _text(templates, "long_topics", topics=_join(templates, topics))
            + " "
            + _text(templates, "long_topics_nudge")
        )

    if profile.volatility_index is not None:
        volatility = clamp(profile.volatility_index, 0.0, 1.0)
        if volatility > 0.7:
            descriptor = _text(templates, "volatility_frequent")
        elif volatility < 0.3:
            descriptor = _text(templates, "volatility_steady")
        else:
            descriptor = _text(templates, "volatility_moderate")
        lines.append(_text(templates, "long_volatility", descriptor=descriptor))

    affinity = profile.persona_affinity.get(persona_id) if persona_id else None
    if affinity is not None:
        if affinity.avg_outcome > PERSONA_OUTCOME_THRESHOLD:
            lines.append(_text(templates, "persona_positive"))
        elif affinity.avg_outcome < -PERSONA_OUTCOME_THRESHOLD:
            lines.append(_text(templates, "persona_negative"))

    if not lines:
        negative = profile.sadness_score + profile.anxiety_score + profile.loneliness_score
        positive = profile.hope_score + profile.gratitude_score
        if negative >= NEGATIVE_SUM_THRESHOLD:
            lines.append(_text(templates, "fallback_negative"))
        elif positive >= POSITIVE_SUM_THRESHOLD:
            lines.append(_text(templates, "fallback_positive"))
        if profile.avg_intensity > 0:
            lines.append(_text(templates, "fallback_pacing", intensity=_fmt5(profile.avg_intensity)))

    return [line for line in lines if line][:MAX_LONG_TERM_LINES]


def preference_lines(rows: Sequence[Mapping[str, Any]], templates: Mapping[str, object]) -> list[str]:
    values: dict[str, list[str]] = {}
    for row in rows:
        kind = row.get("kind")
        value = row.get("value")
        if not isinstance(kind, str) or not isinstance(value, str) or not value.strip():
            continue
        bucket = values.setdefault(kind, [])
        if value.strip() not in bucket:
            bucket.append(value.strip())

    lines: list[str] = []
    for kind, key in _PREFERENCE_LIST_TEMPLATES:
        if values.get(kind):
            lines.append(_text(templates, key, values=_join(templates, values[kind])))

    crowds = (values.get("preference.crowds") or [None])[0]
    if crowds and crowds.casefold() == "dislike":
        lines.append(_text(templates, "pref_crowds_dislike"))

    style = (values.get("trait.social.style") or [None])[0]
    if style and style.casefold() in SOCIAL_STYLES:
        lines.append(_text(templates, "pref_social_style", style=social_style(templates, style)))

    return [line for line in lines if line]


class MemoryBlockComposer:
    """Merges conversation, profile, persona and identity signals into one capped text block."""

    def __init__(
        self,
        store: Any,
        snapshot_builder: PersonaSnapshotBuilder | None = None,
        *,
        max_chars: int = DEFAULT_MAX_CHARS,
        preference_fact_limit: int = DEFAULT_PREFERENCE_FACT_LIMIT,
    ) -> None:
        self.store = store
        self.snapshot_builder = snapshot_builder or PersonaSnapshotBuilder(store)
        self.max_chars = max(1, int(max_chars))
        self.preference_fact_limit = max(1, int(preference_fact_limit))

    async def _load_state(self, conversation_id: str | None) -> ConversationEmotionState | None:
        if not conversation_id:
            return None
        record = await self.store.get_conversation_state(conversation_id)
        return ConversationEmotionState.from_record(record) if record is not None else None

    async def _load_profile(self, user_id: str) -> UserEmotionProfile | None:
        record = await self.store.get_user_profile(user_id)
        return UserEmotionProfile.from_record(record) if record is not None else None

    async def _load_preferences(self, user_id: str) -> list[dict[str, Any]]:
        getter = getattr(self.store, "get_memory_facts", None)
        if not callable(getter):
            return []
        try:
            return list(await getter(user_id, PREFERENCE_FACT_KINDS, self.preference_fact_limit) or [])
        except Exception as exc:
            logger.warning("Preference fact query failed user=%s: %s", user_id, exc)
            return []

    async def load(
        self,
        user_id: str,
        conversation_id: str | None,
    ) -> tuple[ConversationEmotionState | None, UserEmotionProfile | None, PersonaSnapshot]:
        state, profile, snapshot = await asyncio.gather(
            self._load_state(conversation_id),
            self._load_profile(user_id),
            self.snapshot_builder.build(user_id),
            return_exceptions=True,
        )
        if isinstance(state, BaseException):
            logger.error("Failed to load conversation state conversation=%s: %s", conversation_id, state)
            state = None
        if isinstance(profile, BaseException):
            logger.error("Failed to load user profile user=%s: %s", user_id, profile)
            profile = None
        if isinstance(snapshot, BaseException):
            logger.error("Failed to build persona snapshot user=%s: %s", user_id, snapshot)
            snapshot = PersonaSnapshot.empty()
        return state, profile, snapshot

    def _finish(self, body_lines: list[str], templates: Mapping[str, object]) -> str:
        hints = templates.get("safety_hints")
        footer = "\n".join([_text(templates, "footer_title"), *(hints if isinstance(hints, list) else [])])
        body = "\n".join([_text(templates, "header"), "", *body_lines])

        budget = self.max_chars - len(footer) - 2
        if budget <= 0:
            return truncate(footer, self.max_chars)
        return f"{truncate(body, budget)}\n\n{footer}"

    async def build(
        self,
        user_id: str,
        conversation_id: str | None = None,
        language: str = "en",
        persona_id: str | None = None,
        identity_memory: Mapping[str, Any] | None = None,
    ) -> str:
        if not user_id:
            return ""

        state, profile, snapshot = await self.load(user_id, conversation_id)
        if state is None and profile is None and snapshot.is_empty:
            return ""

        templates = block_templates(language)
        lines: list[str] = []

        if state is not None:
            short = short_term_lines(state, templates)
            if short:
                lines.extend([_text(templates, "short_term_header"), *short])

        if profile is not None:
            long = long_term_lines(profile, templates, persona_id)
            if long:
                lines.extend([_text(templates, "long_term_header"), *long])

        name = str((identity_memory or {}).get("name") or "").strip()
        if name:
            lines.append(_text(templates, "identity", name=name))

        persona = snapshot.lines_for(language)
        if persona:
            lines.extend([_text(templates, "persona_preamble"), *persona])

        preferences = preference_lines(await self._load_preferences(user_id), templates)
        if preferences:
            lines.extend([_text(templates, "preferences_header"), *preferences])

        if not lines:
            lines.append(_text(templates, "continuity_fallback"))

        block = self._finish(lines, templates)
        logger.debug(
            "Memory block composed user=%s conversation=%s language=%s chars=%s",
            user_id,
            conversation_id,
            language,
            len(block),
        )
        return block
