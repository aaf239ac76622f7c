from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Mapping

from ..common import utc_now
from ..config import Settings
from .composer import MemoryBlockComposer
from .identity import IdentityResolver
from .long_term import STAGE as LONG_TERM_STAGE
from .long_term import LongTermAggregator
from .models import EmotionEvent
from .persona_snapshot import PersonaSnapshot, PersonaSnapshotBuilder
from .reasoning import AnchorDetector, ReasonDeriver, derive_emotional_reason, detect_anchors_from_message
from .results import KernelRunReport, StageResult, error_text
from .short_term import STAGE as SHORT_TERM_STAGE
from .short_term import ShortTermTracker

logger = logging.getLogger("companion_memory")

VALIDATE_STAGE = "validate"
ENRICH_STAGE = "enrich"


class MemoryKernel:
    """Entry point for recording emotion events and composing memory blocks."""

    def __init__(
        self,
        store: Any,
        settings: Settings | None = None,
        *,
        anchor_detector: AnchorDetector | None = detect_anchors_from_message,
        reason_deriver: ReasonDeriver | None = derive_emotional_reason,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings
        self.default_language = settings.default_response_language if settings is not None else "en"

        self.short_term = ShortTermTracker(
            store,
            window_size=settings.window_size if settings is not None else 20,
            active_thread_limit=settings.active_thread_limit if settings is not None else 5,
            max_update_retries=settings.max_update_retries if settings is not None else 3,
            clock=clock,
        )
        self.long_term = LongTermAggregator(
            store,
            anchor_detector=anchor_detector,
            reason_deriver=reason_deriver,
            topic_score_decay=settings.topic_score_decay if settings is not None else 0.9,
            topic_score_cap=settings.topic_score_cap if settings is not None else 10.0,
            volatility_alpha=settings.volatility_alpha if settings is not None else 0.1,
            max_update_retries=settings.max_update_retries if settings is not None else 3,
            clock=clock,
        )
        self.snapshot_builder = PersonaSnapshotBuilder(
            store,
            fact_limit=settings.persona_fact_limit if settings is not None else 96,
            max_lines=settings.persona_snapshot_max_lines if settings is not None else 6,
        )
        self.composer = MemoryBlockComposer(
            store,
            self.snapshot_builder,
            max_chars=settings.memory_block_max_chars if settings is not None else 2200,
            preference_fact_limit=settings.preference_fact_limit if settings is not None else 64,
        )
        self.identity = IdentityResolver(store)

    @staticmethod
    def _coerce_event(event: EmotionEvent | Mapping[str, Any]) -> EmotionEvent | None:
        if isinstance(event, EmotionEvent):
            return event
        if not isinstance(event, Mapping):
            return None
        try:
            return EmotionEvent.from_payload(event)
        except (TypeError, ValueError) as exc:
            logger.warning("Rejected malformed emotion event: %s", exc)
            return None

    async def _enrich(self, event: EmotionEvent, topics: list[str]) -> StageResult:
        updater = getattr(self.store, "update_message_emotion", None)
        if not callable(updater):
            return StageResult.skipped(ENRICH_STAGE, "store cannot update message emotions")
        try:
            updated = await updater(
                event.message_id,
                secondary_emotion=event.secondary_emotion,
                emotion_vector=event.emotion_vector,
                topic_tags=topics or None,
                detector_version=event.detector_version,
                is_kernel_relevant=event.is_kernel_relevant is not False,
            )
        except Exception as exc:
            logger.warning("Failed to enrich message emotion message=%s: %s", event.message_id, exc)
            return StageResult.degraded(ENRICH_STAGE, error_text(exc))
        if not updated:
            logger.debug("No message emotion row to enrich message=%s", event.message_id)
        return StageResult.success(ENRICH_STAGE, bool(updated))

    async def record_event(self, event: EmotionEvent | Mapping[str, Any]) -> KernelRunReport:
        normalized = self._coerce_event(event)
        if normalized is None or not normalized.is_valid():
            report = KernelRunReport(
                user_id=normalized.user_id if normalized is not None else None,
                conversation_id=normalized.conversation_id if normalized is not None else None,
                message_id=normalized.message_id if normalized is not None else None,
            )
            reasons = normalized.validation_errors() if normalized is not None else ["payload is not a mapping"]
            report.add(StageResult.skipped(VALIDATE_STAGE, "; ".join(reasons)))
            logger.debug("Skipped emotion event: %s", "; ".join(reasons))
            return report

        report = KernelRunReport(
            user_id=normalized.user_id,
            conversation_id=normalized.conversation_id,
            message_id=normalized.message_id,
        )
        topics = normalized.cleaned_topics()
        report.add(await self._enrich(normalized, topics))

        try:
            short = report.add(await self.short_term.update(normalized))
        except Exception as exc:
            logger.exception("Short-term update failed conversation=%s", normalized.conversation_id)
            short = report.add(StageResult.failed(SHORT_TERM_STAGE, error_text(exc)))

        summary = short.payload if short.has_payload else None
        try:
            report.add(await self.long_term.update(normalized, topics, summary))
        except Exception as exc:
            logger.exception("Long-term update failed user=%s", normalized.user_id)
            report.add(StageResult.failed(LONG_TERM_STAGE, error_text(exc)))

        logger.info(
            "Kernel event recorded user=%s conversation=%s message=%s stages=%s",
            normalized.user_id,
            normalized.conversation_id,
            normalized.message_id,
            ",".join(f"{result.stage}:{result.status.value}" for result in report.stages),
        )
        return report

    async def get_identity_memory(self, user_id: str) -> dict[str, Any] | None:
        try:
            return await self.identity.resolve(user_id)
        except Exception as exc:
            logger.error("Identity memory lookup failed user=%s: %s", user_id, exc)
            return None

    async def get_persona_snapshot(self, user_id: str) -> PersonaSnapshot:
        return await self.snapshot_builder.build(user_id)

    async def build_memory_block(
        self,
        user_id: str,
        conversation_id: str | None = None,
        language: str | None = None,
        persona_id: str | None = None,
        identity_memory: Mapping[str, Any] | None = None,
    ) -> str:
        if identity_memory is None:
            identity_memory = await self.get_identity_memory(user_id)
        return await self.composer.build(
            user_id,
            conversation_id=conversation_id,
            language=language or self.default_language,
            persona_id=persona_id,
            identity_memory=identity_memory,
        )
