from .config import Settings
from .kernel import EmotionEvent, KernelRunReport, MemoryKernel, StageResult, StageStatus
from .memory import MemoryStore, PostgresMemoryStore, build_memory_store

__all__ = [
    "EmotionEvent",
    "KernelRunReport",
    "MemoryKernel",
    "MemoryStore",
    "PostgresMemoryStore",
    "Settings",
    "StageResult",
    "StageStatus",
    "build_memory_store",
]
