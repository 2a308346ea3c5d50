"""Context assembly: builds the exact provider request for one iteration.

Sections are laid out in a fixed order (instructions, persona, memory
excerpts), each under its own character cap, followed by the session
history and the tool schemas exposed for this session.
"""

from __future__ import annotations

import logging

from ergon.agent.models import Message, Session
from ergon.agent.tokens import TokenAccountant
from ergon.agent.tools import ToolExecutor
from ergon.config import Settings
from ergon.providers.base import ProviderRequest
from ergon.storage.protocols import DurableMemory, MemoryExcerpt
from ergon.utils import cap_section

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = """\
You are an autonomous assistant that completes tasks by reasoning and \
calling tools.
- Use a tool when it gets you closer to the answer; otherwise answer directly.
- Tool results may report errors such as [policy_denied] or [timeout]. \
Adapt instead of repeating the same call.
- Stay inside the workspace. Never invent tool output."""


def _latest_user_text(messages: list[Message]) -> str:
    for msg in reversed(messages):
        if msg.role == "user" and msg.text:
            return msg.text
    return ""


class ContextAssembler:
    """Builds ProviderRequests within per-section budgets."""

    def __init__(
        self,
        settings: Settings,
        memory: DurableMemory | None = None,
        accountant: TokenAccountant | None = None,
    ) -> None:
        self._settings = settings
        self._memory = memory
        self._accountant = accountant or TokenAccountant(
            settings.context_window, settings.compaction_threshold
        )

    def _capped(self, label: str, text: str, max_chars: int) -> str:
        capped = cap_section(text, max_chars)
        if capped != text:
            logger.warning(
                "%s section capped at %d chars (was %d)", label, max_chars, len(text)
            )
        return capped

    async def _memory_section(self, messages: list[Message]) -> str:
        if self._memory is None:
            return ""
        query = _latest_user_text(messages)
        if not query:
            return ""
        excerpts: list[MemoryExcerpt] = await self._memory.search(query, self._settings.memory_top_k)
        if not excerpts:
            return ""
        lines = [f"- {e.text}" for e in excerpts]
        return "## Relevant Memory\n" + "\n".join(lines)

    async def build_system_prompt(self, messages: list[Message]) -> str:
        s = self._settings
        sections: list[str] = []

        # 1. Behavioural instructions (never dropped, only capped)
        sections.append(
            self._capped("Instructions", s.instructions or DEFAULT_INSTRUCTIONS, s.instructions_max_chars)
        )

        # 2. Persona
        if s.persona:
            sections.append(self._capped("Persona", f"## Persona\n{s.persona}", s.persona_max_chars))

        # 3. Memory excerpts
        memory_text = await self._memory_section(messages)
        if memory_text:
            sections.append(self._capped("Memory", memory_text, s.memory_max_chars))

        return "\n\n".join(sections)

    async def assemble(self, session: Session, executor: ToolExecutor) -> ProviderRequest:
        """Build the request for ``session`` with the tools ``executor`` exposes."""
        system = await self.build_system_prompt(session.messages)
        tools = executor.exposed_schemas()
        messages = list(session.messages)
        estimated = self._accountant.estimate(system, messages, tools)
        logger.debug(
            "Assembled request for %s: %d messages, %d tools, ~%d tokens",
            session.id, len(messages), len(tools), estimated,
        )
        return ProviderRequest(
            system=system,
            messages=messages,
            tools=tools,
            max_tokens=self._settings.max_tokens,
            model=self._settings.model,
            estimated_tokens=estimated,
        )
