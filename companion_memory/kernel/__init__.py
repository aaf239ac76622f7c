from .composer import MemoryBlockComposer
from .identity import IdentityResolver
from .kernel import MemoryKernel
from .long_term import LongTermAggregator
from .models import (
    ConversationEmotionState,
    EmotionEvent,
    EmotionReading,
    Outcome,
    ShortTermSummary,
    UserEmotionProfile,
)
from .persona_snapshot import PersonaSnapshot, PersonaSnapshotBuilder
from .results import KernelRunReport, StageResult, StageStatus
from .short_term import ShortTermTracker

__all__ = [
    "ConversationEmotionState",
    "EmotionEvent",
    "EmotionReading",
    "IdentityResolver",
    "KernelRunReport",
    "LongTermAggregator",
    "MemoryBlockComposer",
    "MemoryKernel",
    "Outcome",
    "PersonaSnapshot",
    "PersonaSnapshotBuilder",
    "ShortTermSummary",
    "ShortTermTracker",
    "StageResult",
    "StageStatus",
    "UserEmotionProfile",
]
