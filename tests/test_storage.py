"""Tests for ergon/storage -- session stores (in-memory and SQLite) and durable memory.

The same contract tests run against both session store backends.
"""

import pytest
import pytest_asyncio

from ergon.agent.models import Message, Session, TextBlock, ToolUseBlock
from ergon.errors import ConcurrentModificationError, SessionNotFoundError
from ergon.storage import Database, InMemoryDurableMemory, InMemorySessionStore, SqlSessionStore


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def session_store(request, tmp_path):
    if request.param == "memory":
        yield InMemorySessionStore()
        return
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'sessions.db'}")
    await database.connect()
    try:
        yield SqlSessionStore(database)
    finally:
        await database.disconnect()


class TestSessionStore:
    @pytest.mark.asyncio
    async def test_load_missing(self, session_store):
        with pytest.raises(SessionNotFoundError):
            await session_store.load("nope")

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, session_store):
        first = await session_store.create("s1", {"channel": "cli"})
        first.append(Message(role="user", content="hi"))
        await session_store.save(first)

        again = await session_store.create("s1")
        assert again.metadata == {"channel": "cli"}
        assert [m.text for m in again.messages] == ["hi"]

    @pytest.mark.asyncio
    async def test_round_trip_preserves_blocks(self, session_store):
        session = await session_store.create("s1")
        session.append(Message(role="user", content="run ls"))
        session.append(
            Message(
                role="assistant",
                content=[TextBlock(text="Running."), ToolUseBlock(id="call_1", name="bash", input={"command": "ls"})],
            )
        )
        session.append(Message(role="tool", content="a.txt", tool_call_id="call_1", is_error=False))
        session.compaction_count = 2
        await session_store.save(session)

        loaded = await session_store.load("s1")
        assert loaded.to_dict() == session.to_dict()
        assert loaded.messages[1].tool_uses[0].id == "call_1"
        assert loaded.version == session.version

    @pytest.mark.asyncio
    async def test_save_bumps_version(self, session_store):
        session = await session_store.create("s1")
        start = session.version
        await session_store.save(session)
        await session_store.save(session)
        assert session.version == start + 2
        assert (await session_store.load("s1")).version == start + 2

    @pytest.mark.asyncio
    async def test_stale_save_rejected(self, session_store):
        await session_store.create("s1")
        a = await session_store.load("s1")
        b = await session_store.load("s1")

        a.append(Message(role="user", content="from a"))
        await session_store.save(a)

        b.append(Message(role="user", content="from b"))
        with pytest.raises(ConcurrentModificationError):
            await session_store.save(b)

        assert [m.text for m in (await session_store.load("s1")).messages] == ["from a"]

    @pytest.mark.asyncio
    async def test_append_messages(self, session_store):
        session = await session_store.create("s1")
        await session_store.append_messages("s1", [Message(role="user", content="one")])
        await session_store.append_messages("s1", [Message(role="assistant", content="two")])

        loaded = await session_store.load("s1")
        assert [m.text for m in loaded.messages] == ["one", "two"]
        # the holder of the old copy now loses the race
        with pytest.raises(ConcurrentModificationError):
            await session_store.save(session)

    @pytest.mark.asyncio
    async def test_append_to_missing_session(self, session_store):
        with pytest.raises(SessionNotFoundError):
            await session_store.append_messages("ghost", [Message(role="user", content="x")])

    @pytest.mark.asyncio
    async def test_loaded_copies_do_not_alias(self, session_store):
        await session_store.create("s1")
        loaded = await session_store.load("s1")
        loaded.messages.append(Message(role="user", content="unsaved"))
        assert (await session_store.load("s1")).messages == []


class TestDurableMemory:
    @pytest.mark.asyncio
    async def test_search_ranks_by_overlap(self):
        memory = InMemoryDurableMemory([
            "The staging database runs on port 5433.",
            "The user likes green tea.",
            "Production database backups run nightly at 02:00.",
        ])
        results = await memory.search("which port does staging database use", top_k=2)
        assert [r.text for r in results][0] == "The staging database runs on port 5433."
        assert all(r.score > 0 for r in results)
        assert "green tea" not in " ".join(r.text for r in results)

    @pytest.mark.asyncio
    async def test_append_skips_blank_and_duplicates(self):
        memory = InMemoryDurableMemory()
        await memory.append("  Likes tabs.  ")
        await memory.append("Likes tabs.")
        await memory.append("   ")
        assert memory.facts == ["Likes tabs."]


def test_session_from_dict_defaults():
    session = Session(id="s1")
    restored = Session.from_dict(session.to_dict(), version=7)
    assert restored.id == "s1"
    assert restored.version == 7
    assert restored.messages == []
