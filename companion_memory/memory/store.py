from __future__ import annotations

from .storage.accounts import MemoryAccountsMixin
from .storage.facts import MemoryFactsMixin
from .storage.messages import MemoryMessagesMixin
from .storage.profiles import MemoryProfilesMixin
from .storage.schema import MemorySchemaMixin
from .storage.states import MemoryConversationStatesMixin
from .storage.utils import _sqlite_memory_connection


class MemoryStore(
    MemorySchemaMixin,
    MemoryAccountsMixin,
    MemoryMessagesMixin,
    MemoryConversationStatesMixin,
    MemoryProfilesMixin,
    MemoryFactsMixin,
):
    """Persistent emotional memory store: message emotions, conversation windows, user profiles and facts."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("SELECT 1")
