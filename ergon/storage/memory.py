"""In-process session store and durable memory.

Both are reference collaborators: the session store keeps serialized
snapshots (so callers can never alias stored state) and enforces
compare-and-swap on ``version``; the memory ranks facts by word overlap.
"""

from __future__ import annotations

import asyncio
import logging
from ergon.agent.models import Message, Session
from ergon.errors import ConcurrentModificationError, SessionNotFoundError
from ergon.storage.protocols import MemoryExcerpt
from ergon.utils import text_overlap

logger = logging.getLogger(__name__)


class InMemorySessionStore:
    def __init__(self) -> None:
        self._rows: dict[str, tuple[int, dict]] = {}
        self._lock = asyncio.Lock()

    async def load(self, session_id: str) -> Session:
        row = self._rows.get(session_id)
        if row is None:
            raise SessionNotFoundError(session_id)
        version, data = row
        return Session.from_dict(data, version=version)

    async def create(self, session_id: str, metadata: dict | None = None) -> Session:
        async with self._lock:
            if session_id in self._rows:
                version, data = self._rows[session_id]
                return Session.from_dict(data, version=version)
            session = Session(id=session_id, metadata=dict(metadata or {}))
            self._rows[session_id] = (session.version, session.to_dict())
            return session

    async def save(self, session: Session) -> None:
        async with self._lock:
            current = self._rows.get(session.id)
            current_version = current[0] if current else 0
            if current is not None and current_version != session.version:
                raise ConcurrentModificationError(session.id, session.version, current_version)
            session.version = current_version + 1
            self._rows[session.id] = (session.version, session.to_dict())

    async def append_messages(self, session_id: str, messages: list[Message]) -> None:
        async with self._lock:
            row = self._rows.get(session_id)
            if row is None:
                raise SessionNotFoundError(session_id)
            version, data = row
            session = Session.from_dict(data, version=version)
            for message in messages:
                session.append(message)
            self._rows[session_id] = (version + 1, session.to_dict())


class InMemoryDurableMemory:
    """Fact list with word-overlap search."""

    def __init__(self, facts: list[str] | None = None) -> None:
        self._facts: list[str] = list(facts or [])

    @property
    def facts(self) -> list[str]:
        return list(self._facts)

    async def search(self, query: str, top_k: int = 5) -> list[MemoryExcerpt]:
        scored = [
            MemoryExcerpt(text=fact, score=text_overlap(query, fact), source="memory")
            for fact in self._facts
        ]
        ranked = sorted((e for e in scored if e.score > 0), key=lambda e: e.score, reverse=True)
        return ranked[:top_k]

    async def append(self, fact_text: str) -> None:
        fact_text = fact_text.strip()
        if not fact_text:
            return
        if fact_text in self._facts:
            logger.debug("Skipping duplicate fact: %s", fact_text[:50])
            return
        self._facts.append(fact_text)
