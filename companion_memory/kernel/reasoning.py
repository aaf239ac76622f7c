"""Rule-based anchor detection and reason labelling.

Both functions are the default collaborators of the long-term aggregator and can be
swapped for any callables with the same signatures.
"""

from __future__ import annotations

import re
from typing import Iterable, Protocol

from ..common import as_float
from .models import UserEmotionProfile


class AnchorDetector(Protocol):
    def __call__(self, text: str, label: str | None, intensity: float | None) -> list[str]: ...


class ReasonDeriver(Protocol):
    def __call__(
        self,
        text: str,
        anchors: Iterable[str],
        history: Iterable[str],
        profile: UserEmotionProfile | None,
    ) -> str | None: ...


_ANCHOR_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("family_pressure", re.compile(r"(family|my parents|my mom|my mother|my dad|home|parents)")),
    ("comparison", re.compile(r"(compare|comparison|better than me|everyone else|others are|behind everyone)")),
    ("future_anxiety", re.compile(r"(future|next year|after graduation|career|job|i don't know what to do|what if)")),
    ("self_worth", re.compile(r"(worthless|not enough|not good enough|failure|i hate myself|i'm a failure)")),
    ("loneliness", re.compile(r"(lonely|alone|no one understands|nobody cares|no friends)")),
    (
        "academic_fear",
        re.compile(r"(exam|exams|test|tests|study|studying|university|college|school|grades|gpa|assignment|homework)"),
    ),
)

_ANXIOUS_BIAS = re.compile(r"(worry|worried|anxious|panic|overthinking)")
_SAD_BIAS = re.compile(r"(useless|no value|don't matter)")
_OVERTHINKING = re.compile(r"overthink|overthinking|spiral|loop")

# Anchor (or upstream trigger tag) -> reason label, highest priority first.
_REASON_PRIORITY: tuple[tuple[frozenset[str], str], ...] = (
    (frozenset({"family_pressure", "family_conflict"}), "family_pressure"),
    (frozenset({"academic_fear", "academic_pressure"}), "academic_fear"),
    (frozenset({"future_anxiety", "future_fear"}), "future_uncertainty"),
    (frozenset({"comparison"}), "comparison_anxiety"),
    (frozenset({"self_worth"}), "self_worth"),
    (frozenset({"loneliness"}), "loneliness"),
)

_PROFILE_REASON_BY_LABEL = (
    ("SAD", "family_pressure"),
    ("ANXIOUS", "future_uncertainty"),
    ("LONELY", "loneliness"),
    ("ANGRY", "self_worth"),
)
PROFILE_REASON_MIN_INTENSITY = 0.3


def detect_anchors_from_message(text: str, label: str | None, intensity: float | None) -> list[str]:
    lowered = str(text or "").lower()
    if not lowered.strip():
        return []

    anchors: list[str] = []
    for anchor, pattern in _ANCHOR_PATTERNS:
        if pattern.search(lowered):
            anchors.append(anchor)

    strong = (as_float(intensity, 2.0) if intensity is not None else 2.0) >= 3
    emotion = str(label or "").upper()
    if strong and emotion == "ANXIOUS" and "future_anxiety" not in anchors and _ANXIOUS_BIAS.search(lowered):
        anchors.append("future_anxiety")
    if strong and emotion == "SAD" and "self_worth" not in anchors and _SAD_BIAS.search(lowered):
        anchors.append("self_worth")
    return anchors


def derive_emotional_reason(
    text: str,
    anchors: Iterable[str],
    history: Iterable[str],
    profile: UserEmotionProfile | None,
) -> str | None:
    signals = set(anchors or ()) | set(history or ())
    for tags, reason in _REASON_PRIORITY:
        if signals & tags:
            return reason

    if profile is not None and profile.emotion_stats:
        best: str | None = None
        best_score = 0.0
        for label, reason in _PROFILE_REASON_BY_LABEL:
            stat = profile.emotion_stats.get(label)
            score = stat.avg_intensity if stat is not None else 0.0
            if score > best_score:
                best_score = score
                best = reason
        if best is not None and best_score >= PROFILE_REASON_MIN_INTENSITY:
            return best

    if _OVERTHINKING.search(str(text or "").lower()):
        return "overthinking_pattern"
    return None
