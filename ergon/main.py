"""Ergon entry point.

Wires the components in dependency order:
  Settings -> Database -> SessionStore -> Provider -> Tools -> Runner

``python -m ergon.main "utterance"`` runs one turn against the configured
provider and prints streamed text to stdout.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import httpx

from ergon.agent.builtin_tools import register_builtin_tools
from ergon.agent.memory_tools import register_memory_tools
from ergon.agent.policy import Approver, PolicyEngine
from ergon.agent.runner import AgentRunner
from ergon.agent.tools import ToolExecutor, ToolRegistry
from ergon.agent.web_tools import register_web_tools
from ergon.config import Settings
from ergon.providers import create_provider
from ergon.storage import Database, DurableMemory, InMemoryDurableMemory, SqlSessionStore

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


async def create_components(
    settings: Settings,
    *,
    memory: DurableMemory | None = None,
    approver: Approver | None = None,
) -> dict:
    """Initialize all components in dependency order.

    Returns a dict of components; pass it to shutdown_components().
    """
    database = Database(settings.db_url)
    await database.connect()
    store = SqlSessionStore(database)

    if memory is None:
        memory = InMemoryDurableMemory()

    provider = create_provider(settings)
    await provider.start()

    Path(settings.workspace_dir).mkdir(parents=True, exist_ok=True)

    registry = ToolRegistry()
    register_builtin_tools(registry, settings)
    register_memory_tools(registry, memory)

    # Web tools httpx client (separate from provider, no API auth headers)
    web_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=30, write=10, pool=10),
        limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
    )
    rate_limiter = register_web_tools(registry, settings, web_http)

    executor = ToolExecutor(
        registry,
        PolicyEngine(settings.policy, approver=approver),
        default_timeout=settings.tool_timeout,
        max_output_chars=settings.tool_output_max_chars,
    )
    runner = AgentRunner(settings, provider, store, executor, memory=memory)

    logger.info(
        "Ergon agent %s ready: provider=%s model=%s tools=%d",
        settings.agent_id, provider.name, settings.model, len(registry),
    )
    return {
        "database": database,
        "store": store,
        "memory": memory,
        "provider": provider,
        "registry": registry,
        "executor": executor,
        "rate_limiter": rate_limiter,
        "web_http": web_http,
        "runner": runner,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Ergon...")

    web_http = components.get("web_http")
    if web_http:
        await web_http.aclose()

    provider = components.get("provider")
    if provider:
        await provider.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Ergon shutdown complete")


async def _run_once(settings: Settings, session_id: str, utterance: str) -> int:
    components = await create_components(settings)
    runner: AgentRunner = components["runner"]
    exit_code = 0
    try:
        async for event in runner.run(session_id, utterance):
            if event.type == "text_delta":
                sys.stdout.write(event.text)
                sys.stdout.flush()
            elif event.type == "tool_started":
                logger.info("-> %s %s", event.tool_name, event.input)
            elif event.type == "terminal":
                sys.stdout.write("\n")
                if event.reason != "completed":
                    logger.warning("Run ended: %s %s", event.reason, event.error)
                    exit_code = 1
    finally:
        await shutdown_components(components)
    return exit_code


def main() -> None:
    settings = Settings()
    configure_logging(settings)

    utterance = " ".join(sys.argv[1:]).strip()
    if not utterance:
        sys.stderr.write('usage: python -m ergon.main "your request"\n')
        sys.exit(2)

    if settings.provider == "anthropic" and not (
        settings.anthropic_api_key or settings.anthropic_auth_token
    ):
        logger.warning("Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set")

    sys.exit(asyncio.run(_run_once(settings, f"cli-{settings.agent_id}", utterance)))


if __name__ == "__main__":
    main()
