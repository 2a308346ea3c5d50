"""Collaborator contracts consumed by the agent core.

The core never assumes a concrete backend: anything satisfying these
protocols can stand in for session storage or long-term memory.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from ergon.agent.models import Message, Session


@dataclass
class MemoryExcerpt:
    """One ranked hit from durable memory."""

    text: str
    score: float
    source: str | None = None


class SessionStore(Protocol):
    """Durable session storage with compare-and-swap saves.

    ``save`` must raise ConcurrentModificationError when the stored version
    differs from ``session.version``, and bump ``session.version`` on success.
    """

    async def load(self, session_id: str) -> Session: ...

    async def create(self, session_id: str, metadata: dict | None = None) -> Session: ...

    async def save(self, session: Session) -> None: ...

    async def append_messages(self, session_id: str, messages: list[Message]) -> None: ...


class DurableMemory(Protocol):
    """Long-term memory: ranked search plus fact append."""

    async def search(self, query: str, top_k: int = 5) -> list[MemoryExcerpt]: ...

    async def append(self, fact_text: str) -> None: ...
