"""SQL-backed session store with optimistic concurrency.

Each session is one row holding the serialized session plus a ``version``
column. Saves are a conditional UPDATE on the version the caller loaded,
so a concurrent read-modify-write loses loudly instead of silently.
"""

from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from ergon.agent.models import Message, Session
from ergon.errors import ConcurrentModificationError, SessionNotFoundError
from ergon.storage.database import Database
from ergon.storage.models import SessionRow

logger = logging.getLogger(__name__)


class SqlSessionStore:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def load(self, session_id: str) -> Session:
        async with self._db.session() as db:
            row = await db.get(SessionRow, session_id)
            if row is None:
                raise SessionNotFoundError(session_id)
            return Session.from_dict(row.data, version=row.version)

    async def create(self, session_id: str, metadata: dict | None = None) -> Session:
        session = Session(id=session_id, metadata=dict(metadata or {}))
        async with self._db.session() as db:
            existing = await db.get(SessionRow, session_id)
            if existing is not None:
                return Session.from_dict(existing.data, version=existing.version)
            db.add(SessionRow(id=session_id, version=0, data=session.to_dict()))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return await self.load(session_id)
        return session

    async def save(self, session: Session) -> None:
        async with self._db.session() as db:
            result = await db.execute(
                update(SessionRow)
                .where(SessionRow.id == session.id, SessionRow.version == session.version)
                .values(data=session.to_dict(), version=session.version + 1)
            )
            if result.rowcount == 1:
                await db.commit()
                session.version += 1
                return

            current = await db.scalar(select(SessionRow.version).where(SessionRow.id == session.id))
            if current is not None:
                await db.rollback()
                raise ConcurrentModificationError(session.id, session.version, current)

            db.add(SessionRow(id=session.id, version=session.version + 1, data=session.to_dict()))
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise ConcurrentModificationError(session.id, session.version, -1) from e
            session.version += 1

    async def append_messages(self, session_id: str, messages: list[Message]) -> None:
        """Append under the row's current version, retrying once on a lost race."""
        for attempt in range(2):
            session = await self.load(session_id)
            for message in messages:
                session.append(message)
            try:
                await self.save(session)
                return
            except ConcurrentModificationError:
                if attempt == 1:
                    raise
                logger.warning("append_messages raced on %s, retrying", session_id)
