"""Conversation compaction: memory flush, history summarization, tool output pruning.

Two phases run when the token accountant says compaction is due:
  1. Memory flush: durable facts from the recent window go to durable memory.
  2. Message compaction: everything but the last N messages collapses into
     one synthetic system-role summary message.

Tool output pruning is separate and cheap: it trims old oversized tool
results in the outgoing provider request only. Session history is never
touched by pruning.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import time

from ergon.agent.models import Message, Session
from ergon.agent.tokens import TokenAccountant, TokenEstimator
from ergon.config import Settings
from ergon.errors import ProviderError
from ergon.providers.base import ProviderRequest, ReasoningProvider
from ergon.storage.protocols import DurableMemory

__all__ = ["ConversationCompactor", "TokenAccountant", "TokenEstimator", "NO_REPLY"]

logger = logging.getLogger(__name__)

NO_REPLY = "NO_REPLY"

# ------------------------------------------------------------------
# Prompts
# ------------------------------------------------------------------

CHECKPOINT_SYSTEM_PROMPT = """\
You are a conversation summarizer. Output ONLY a structured summary.
TARGET LENGTH: 400-1000 words. Prioritize precision over completeness.

## Goal
[1-2 sentences]

## Constraints & Preferences
- [Requirements, technical constraints]

## Progress
### Done
- [x] [Completed items]
### In Progress
- [ ] [Current work]

## Key Decisions
- **[Decision]**: [Rationale]

## Next Steps
1. [Ordered list]

## Critical Context
- [File paths, error messages, tool outputs that matter, identifiers]
"""

UPDATE_SYSTEM_PROMPT = """\
You are updating a conversation summary with new messages.
TARGET LENGTH: 400-1000 words.

RULES:
1. PRESERVE existing info unless explicitly superseded
2. ADD new progress, decisions, context
3. MOVE In Progress -> Done when completed
4. PRESERVE exact file paths, function names, error messages
5. Use SAME format as existing summary

Output ONLY the updated summary."""

FLUSH_SYSTEM_PROMPT = f"""\
Extract durable facts worth remembering across conversations from the
messages below: user preferences, stable facts about the user or their
environment, decisions that will matter later.

Output one fact per line, each a complete sentence. Do not include
transient task state or anything already obvious from general knowledge.
If nothing is worth remembering, output exactly {NO_REPLY}."""

_TOOL_RESULT_PREVIEW = 2000


def serialize_for_summary(messages: list[Message]) -> str:
    """Render messages as readable text for a summarization prompt."""
    lines = []
    for msg in messages:
        if msg.role == "tool":
            text = msg.text
            if len(text) > _TOOL_RESULT_PREVIEW:
                text = text[:_TOOL_RESULT_PREVIEW] + " [...]"
            status = "error" if msg.is_error else "ok"
            lines.append(f"**Tool result ({msg.tool_call_id}, {status}):** {text}")
            continue
        if msg.role == "system":
            lines.append(f"**Summary:** {msg.text}")
            continue
        role = "User" if msg.role == "user" else "Assistant"
        if msg.text:
            lines.append(f"**{role}:** {msg.text}")
        for block in msg.tool_uses:
            lines.append(f"**{role} called {block.name}:** {json.dumps(block.input)}")
    return "\n\n".join(lines)


def parse_facts(reply: str) -> list[str]:
    """Split a flush reply into facts. The NO_REPLY sentinel yields none."""
    text = reply.strip()
    if not text or text == NO_REPLY:
        return []
    facts = []
    for line in text.splitlines():
        line = line.strip().lstrip("-*").strip()
        if line and line != NO_REPLY:
            facts.append(line)
    return facts


class ConversationCompactor:
    """Summarizes aging history and flushes durable facts.

    ``compact`` mutates and returns the session it is given. It is a no-op
    when nothing new has aged past the last ``keep_recent_messages``.
    """

    def __init__(
        self,
        settings: Settings,
        provider: ReasoningProvider,
        memory: DurableMemory | None = None,
    ) -> None:
        self._settings = settings
        self._provider = provider
        self._memory = memory

    # ------------------------------------------------------------------
    # Tool output pruning (request only)
    # ------------------------------------------------------------------

    def prune_tool_results(self, messages: list[Message]) -> list[Message]:
        """Return a copy of ``messages`` with old oversized tool results trimmed.

        The last ``keep_last_tool_results`` tool messages are left whole.
        """
        s = self._settings
        if not s.tool_pruning_enabled:
            return messages
        tool_indices = [i for i, m in enumerate(messages) if m.role == "tool"]
        if s.keep_last_tool_results > 0:
            tool_indices = tool_indices[: -s.keep_last_tool_results]
        if not tool_indices:
            return messages

        pruned = list(messages)
        trimmed = 0
        for idx in tool_indices:
            text = pruned[idx].text
            if len(text) <= s.tool_soft_trim_chars:
                continue
            head, tail = s.tool_soft_trim_head, s.tool_soft_trim_tail
            pruned[idx] = dataclasses.replace(
                pruned[idx],
                content=(
                    f"{text[:head]}\n\n"
                    f"--- trimmed (kept {head} head + {tail} tail of {len(text)} chars) ---\n\n"
                    f"{text[-tail:]}"
                ),
            )
            trimmed += 1
        if trimmed:
            logger.info("Pruned %d old tool results for the outgoing request", trimmed)
        return pruned

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def find_cut_point(self, messages: list[Message]) -> int:
        """Index where the kept recent range starts; 0 means nothing to compact.

        The recent range never starts with a tool message, so every tool
        result stays next to the call it answers.
        """
        keep = self._settings.keep_recent_messages
        if len(messages) <= keep:
            return 0
        cut = len(messages) - keep
        while cut > 0 and cut < len(messages) and messages[cut].role == "tool":
            cut -= 1
        prefix = messages[:cut]
        if len(prefix) == 1 and prefix[0].is_summary:
            return 0
        return cut

    async def compact(self, session: Session) -> Session:
        cut = self.find_cut_point(session.messages)
        if cut <= 0:
            logger.debug("Nothing to compact for %s", session.id)
            return session

        start = time.monotonic()
        await self.flush_memory(session)

        prefix = session.messages[:cut]
        existing_summary = prefix[0].text if prefix[0].is_summary else None
        to_summarize = prefix[1:] if existing_summary is not None else prefix

        try:
            summary = await self._summarize(to_summarize, existing_summary)
        except ProviderError as e:
            logger.error("Compaction failed for %s, history left intact: %s", session.id, e)
            return session
        if not summary.strip():
            logger.error("Compaction produced an empty summary for %s, history left intact", session.id)
            return session

        summary_msg = Message(
            role="system",
            content=summary,
            metadata={"summary": True, "summarized_messages": len(to_summarize)},
        )
        before = len(session.messages)
        session.messages = [summary_msg, *session.messages[cut:]]
        session.compaction_count += 1

        logger.info(
            "Compacted session %s: %d messages -> %d (summary %d chars, %d ms, compaction #%d)",
            session.id, before, len(session.messages), len(summary),
            int((time.monotonic() - start) * 1000), session.compaction_count,
        )
        return session

    async def flush_memory(self, session: Session) -> int:
        """Ask the provider for durable facts from the recent window and store them.

        Returns the number of facts stored.
        """
        if self._memory is None or not self._settings.memory_flush_enabled:
            return 0
        window = [m for m in session.messages[-self._settings.memory_flush_window:] if not m.is_summary]
        if not window:
            return 0
        request = ProviderRequest(
            system=FLUSH_SYSTEM_PROMPT,
            messages=[Message(role="user", content=serialize_for_summary(window))],
            max_tokens=self._settings.summary_max_tokens,
            model=self._settings.model,
        )
        try:
            response = await self._provider.chat(request)
        except ProviderError as e:
            logger.warning("Memory flush failed for %s: %s", session.id, e)
            return 0

        facts = parse_facts(response.text)
        if not facts:
            logger.debug("Memory flush for %s: nothing notable", session.id)
            return 0
        for fact in facts:
            await self._memory.append(fact)
        logger.info("Memory flush stored %d facts from session %s", len(facts), session.id)
        return len(facts)

    async def _summarize(self, messages: list[Message], existing_summary: str | None) -> str:
        if existing_summary:
            user_content = (
                f"## Existing Summary\n\n{existing_summary}\n\n"
                f"## New Conversation\n\n{serialize_for_summary(messages)}"
            )
            system = UPDATE_SYSTEM_PROMPT
        else:
            user_content = serialize_for_summary(messages)
            system = CHECKPOINT_SYSTEM_PROMPT

        response = await self._provider.chat(
            ProviderRequest(
                system=system,
                messages=[Message(role="user", content=user_content)],
                max_tokens=self._settings.summary_max_tokens,
                model=self._settings.model,
            )
        )
        return response.text
