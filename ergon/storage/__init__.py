"""Session storage and durable memory collaborators.

Public API:
    SessionStore, DurableMemory  - protocols the agent core consumes
    InMemorySessionStore         - process-local store with compare-and-swap
    InMemoryDurableMemory        - word-overlap fact memory
    SqlSessionStore, Database    - SQLAlchemy async store
"""

from ergon.storage.database import Database
from ergon.storage.memory import InMemoryDurableMemory, InMemorySessionStore
from ergon.storage.protocols import DurableMemory, MemoryExcerpt, SessionStore
from ergon.storage.sessions import SqlSessionStore

__all__ = [
    "Database",
    "DurableMemory",
    "InMemoryDurableMemory",
    "InMemorySessionStore",
    "MemoryExcerpt",
    "SessionStore",
    "SqlSessionStore",
]
