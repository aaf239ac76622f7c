from .accounts import MemoryAccountsMixin
from .facts import MemoryFactsMixin
from .messages import MemoryMessagesMixin
from .profiles import MemoryProfilesMixin
from .schema import MemorySchemaMixin
from .states import MemoryConversationStatesMixin

__all__ = [
    "MemoryAccountsMixin",
    "MemoryConversationStatesMixin",
    "MemoryFactsMixin",
    "MemoryMessagesMixin",
    "MemoryProfilesMixin",
    "MemorySchemaMixin",
]
