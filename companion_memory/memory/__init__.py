from .factory import build_memory_store
from .postgres_store import PostgresMemoryStore
from .store import MemoryStore

__all__ = ["MemoryStore", "PostgresMemoryStore", "build_memory_store"]
