from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from ..prompts.persona import render_persona_hint

logger = logging.getLogger("companion_memory")

PERSONA_FACT_KINDS = (
    "profile.age",
    "profile.location.country",
    "profile.location.city",
    "profile.language.primary",
    "profile.language.dialect",
    "profile.role",
    "profile.domain",
    "profile.goal.primary",
    "profile.goal.secondary",
    "profile.theme.health",
    "profile.theme.academic",
    "profile.theme.family",
    "profile.theme.work",
    "profile.job.title",
    "profile.job.field",
    "goal.long_term",
    "trait.personality.keywords",
    "trait.coping.style",
    "trait.mental.main",
    "trait.mental.secondary",
    "preference.season.like",
    "preference.season.dislike",
    "preference.weather.like",
    "preference.weather.dislike",
    "preference.pets.like",
    "preference.pets.dislike",
    "preference.crowds",
    "trait.social.style",
    "preference.drink.like",
    "preference.food.like",
    "preference.hobby.like",
)

_LIST_PREFERENCES = {
    "seasons_like": "preference.season.like",
    "seasons_dislike": "preference.season.dislike",
    "weather_like": "preference.weather.like",
    "weather_dislike": "preference.weather.dislike",
    "pets_like": "preference.pets.like",
    "pets_dislike": "preference.pets.dislike",
    "drink_like": "preference.drink.like",
    "food_like": "preference.food.like",
    "hobby_like": "preference.hobby.like",
}

_THEME_KINDS = (
    "profile.theme.health",
    "profile.theme.academic",
    "profile.theme.family",
    "profile.theme.work",
)

_KEYWORD_SPLIT = re.compile(r"[,،]")

DEFAULT_FACT_LIMIT = 96
DEFAULT_MAX_LINES = 6


@dataclass(slots=True)
class PersonaHint:
    tag: str
    fields: dict[str, str | list[str]] = field(default_factory=dict)


@dataclass(slots=True)
class PersonaSnapshot:
    facts: dict[str, Any] = field(default_factory=dict)
    hints: list[PersonaHint] = field(default_factory=list)
    lines_en: list[str] = field(default_factory=list)
    lines_ar: list[str] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "PersonaSnapshot":
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.lines_en and not self.lines_ar

    def lines_for(self, language: str | None) -> list[str]:
        return list(self.lines_ar if str(language or "").lower() == "ar" else self.lines_en)


class _FactView:
    """Newest-first fact rows grouped by kind."""

    def __init__(self, rows: Sequence[Mapping[str, Any]]) -> None:
        self._values: dict[str, list[str]] = {}
        for row in rows:
            if not isinstance(row, Mapping):
                continue
            kind = row.get("kind")
            value = row.get("value")
            if not isinstance(kind, str) or not isinstance(value, str):
                continue
            text = value.strip()
            if not text:
                continue
            values = self._values.setdefault(kind, [])
            if text not in values:
                values.append(text)

    def latest(self, kind: str) -> str | None:
        values = self._values.get(kind)
        return values[0] if values else None

    def all(self, kind: str) -> list[str]:
        return list(self._values.get(kind) or [])


def personality_keywords(raw: str | None) -> list[str]:
    keywords: list[str] = []
    for part in _KEYWORD_SPLIT.split(raw or ""):
        word = part.strip()
        if word and word not in keywords:
            keywords.append(word)
    return keywords


def structured_facts(view: _FactView) -> dict[str, Any]:
    return {
        "profile": {
            "age": view.latest("profile.age"),
            "location": {
                "country": view.latest("profile.location.country"),
                "city": view.latest("profile.location.city"),
            },
            "language": {
                "primary": view.latest("profile.language.primary"),
                "dialect": view.latest("profile.language.dialect"),
            },
            "role": view.latest("profile.role"),
            "domain": view.latest("profile.domain"),
            "job": {
                "title": view.latest("profile.job.title"),
                "field": view.latest("profile.job.field"),
            },
            "goals": {
                "primary": view.latest("profile.goal.primary"),
                "secondary": view.latest("profile.goal.secondary"),
                "long_term": view.latest("goal.long_term"),
            },
            "themes": {kind.rsplit(".", 1)[-1]: view.latest(kind) for kind in _THEME_KINDS},
        },
        "traits": {
            "personality_keywords": personality_keywords(view.latest("trait.personality.keywords")),
            "coping_style": view.latest("trait.coping.style"),
            "mental": {
                "main": view.latest("trait.mental.main"),
                "secondary": view.latest("trait.mental.secondary"),
            },
        },
        "preferences": {
            **{name: view.all(kind) for name, kind in _LIST_PREFERENCES.items()},
            "crowds": view.latest("preference.crowds"),
            "social_style": view.latest("trait.social.style"),
        },
    }


def collect_hints(facts: Mapping[str, Any]) -> list[PersonaHint]:
    """Ordered persona hints; the order is the rendering priority."""
    profile = facts.get("profile") or {}
    traits = facts.get("traits") or {}
    hints: list[PersonaHint] = []

    age = profile.get("age")
    if age:
        hints.append(PersonaHint("age", {"age": age}))

    location = profile.get("location") or {}
    if location.get("country") and location.get("city"):
        hints.append(
            PersonaHint("location.city_country", {"city": location["city"], "country": location["country"]})
        )
    elif location.get("country"):
        hints.append(PersonaHint("location.country", {"country": location["country"]}))

    language = profile.get("language") or {}
    if language.get("primary") and language.get("dialect"):
        hints.append(
            PersonaHint(
                "language.primary_dialect",
                {"language": language["primary"], "dialect": language["dialect"]},
            )
        )
    elif language.get("primary"):
        hints.append(PersonaHint("language.primary", {"language": language["primary"]}))

    role = profile.get("role")
    domain = profile.get("domain")
    if role and domain:
        hints.append(PersonaHint("role.domain", {"role": role, "domain": domain}))
    elif role:
        hints.append(PersonaHint("role", {"role": role}))

    job = profile.get("job") or {}
    if job.get("title") and job.get("field"):
        hints.append(PersonaHint("job.title_field", {"title": job["title"], "field": job["field"]}))
    elif job.get("title"):
        hints.append(PersonaHint("job.title", {"title": job["title"]}))

    goals = profile.get("goals") or {}
    if goals.get("long_term"):
        hints.append(PersonaHint("goal.long_term", {"goal": goals["long_term"]}))
    if goals.get("primary"):
        hints.append(PersonaHint("goal.primary", {"goal": goals["primary"]}))
    if goals.get("secondary") and goals.get("secondary") != goals.get("primary"):
        hints.append(PersonaHint("goal.secondary", {"goal": goals["secondary"]}))

    themes = [value for value in (profile.get("themes") or {}).values() if value]
    if themes:
        hints.append(PersonaHint("themes", {"themes": themes}))

    keywords = traits.get("personality_keywords") or []
    if keywords:
        hints.append(PersonaHint("personality", {"keywords": list(keywords)}))

    if traits.get("coping_style"):
        hints.append(PersonaHint("coping", {"style": traits["coping_style"]}))

    mental = traits.get("mental") or {}
    phrases: list[str] = []
    if mental.get("main"):
        phrases.append(mental["main"])
    if mental.get("secondary") and mental.get("secondary") != mental.get("main"):
        phrases.append(mental["secondary"])
    if phrases:
        hints.append(PersonaHint("mental", {"phrases": phrases}))

    return hints


def render_hints(hints: Sequence[PersonaHint], language: str, max_lines: int) -> list[str]:
    lines: list[str] = []
    for hint in hints:
        if len(lines) >= max_lines:
            break
        line = render_persona_hint(hint.tag, hint.fields, language)
        if line:
            lines.append(line)
    return lines


class PersonaSnapshotBuilder:
    def __init__(
        self,
        store: Any,
        *,
        fact_limit: int = DEFAULT_FACT_LIMIT,
        max_lines: int = DEFAULT_MAX_LINES,
    ) -> None:
        self.store = store
        self.fact_limit = max(1, int(fact_limit))
        self.max_lines = max(1, int(max_lines))

    async def build(self, user_id: str) -> PersonaSnapshot:
        if not user_id:
            return PersonaSnapshot.empty()

        getter = getattr(self.store, "get_memory_facts", None)
        if not callable(getter):
            logger.warning("Persona snapshot skipped: store has no fact support")
            return PersonaSnapshot.empty()

        try:
            rows = await getter(user_id, PERSONA_FACT_KINDS, self.fact_limit)
        except Exception as exc:
            logger.error("Persona fact query failed user=%s: %s", user_id, exc)
            return PersonaSnapshot.empty()

        if not rows:
            return PersonaSnapshot.empty()

        facts = structured_facts(_FactView(rows))
        hints = collect_hints(facts)
        snapshot = PersonaSnapshot(
            facts=facts,
            hints=hints,
            lines_en=render_hints(hints, "en", self.max_lines),
            lines_ar=render_hints(hints, "ar", self.max_lines),
        )
        logger.debug(
            "Persona snapshot built user=%s facts=%s lines_en=%s lines_ar=%s",
            user_id,
            len(rows),
            len(snapshot.lines_en),
            len(snapshot.lines_ar),
        )
        return snapshot
