"""Memory tools: memory_search and memory_save over the DurableMemory collaborator."""

from __future__ import annotations

import logging
from typing import Any

from ergon.agent.tools import ToolContext, ToolDefinition, ToolRegistry, mcp_response
from ergon.storage.protocols import DurableMemory

logger = logging.getLogger(__name__)

MEMORY_SEARCH = ToolDefinition(
    name="memory_search",
    description="Search long-term memory for facts and preferences relevant to a query",
    group="memory",
    input_schema={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Search query string"},
            "limit": {
                "type": "integer",
                "description": "Maximum results to return (default 5)",
                "minimum": 1,
                "maximum": 20,
                "default": 5,
            },
        },
        "required": ["query"],
        "additionalProperties": False,
    },
)

MEMORY_SAVE = ToolDefinition(
    name="memory_save",
    description="Store a durable fact or preference in long-term memory",
    group="memory",
    input_schema={
        "type": "object",
        "properties": {
            "fact": {"type": "string", "minLength": 1, "description": "The fact, stated clearly"},
        },
        "required": ["fact"],
        "additionalProperties": False,
    },
)


def register_memory_tools(registry: ToolRegistry, memory: DurableMemory) -> None:
    """Register memory tools with the memory collaborator captured in closures."""

    async def memory_search(query: str, limit: int = 5, *, _context: ToolContext) -> dict[str, Any]:
        results = await memory.search(query, limit)
        if not results:
            return mcp_response(f"No memories found for: {query}")
        lines = [f"{i}. {r.text} (score: {r.score:.3f})" for i, r in enumerate(results, 1)]
        return mcp_response("\n".join(lines))

    async def memory_save(fact: str, *, _context: ToolContext) -> dict[str, Any]:
        await memory.append(fact)
        logger.info("Stored fact from session %s", _context.session_id)
        return mcp_response(f"Fact stored: {fact}")

    registry.register(MEMORY_SEARCH, memory_search)
    registry.register(MEMORY_SAVE, memory_save)
