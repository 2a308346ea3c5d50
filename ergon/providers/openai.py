"""OpenAI-compatible chat completions adapter.

Targets any server speaking the ``/chat/completions`` dialect: OpenAI
itself and local runtimes such as Ollama or llama.cpp's server.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from ergon.agent.models import ContentBlock, Message, TextBlock, TokenUsage, ToolUseBlock
from ergon.agent.tokens import TokenEstimator
from ergon.config import Settings
from ergon.errors import ProviderError
from ergon.providers.base import (
    ProviderRequest,
    ProviderResponse,
    StopReason,
    StreamChunk,
    summary_preamble,
)

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})

_FINISH_REASONS = {
    "stop": StopReason.NATURAL_STOP,
    "tool_calls": StopReason.TOOL_REQUESTED,
    "function_call": StopReason.TOOL_REQUESTED,
    "length": StopReason.LENGTH_LIMIT,
}


def map_finish_reason(raw: str | None) -> StopReason:
    return _FINISH_REASONS.get(raw or "", StopReason.NATURAL_STOP)


def to_openai_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert name/description/input_schema definitions to function tools."""
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema", {"type": "object", "properties": {}}),
            },
        }
        for t in tools
    ]


def to_openai_messages(system: str, messages: list[Message]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    if system:
        converted.append({"role": "system", "content": system})
    for msg in messages:
        if msg.role == "tool":
            converted.append({
                "role": "tool",
                "tool_call_id": msg.tool_call_id,
                "content": msg.text,
            })
        elif msg.role == "system":
            converted.append({"role": "system", "content": summary_preamble(msg)})
        elif msg.role == "assistant":
            entry: dict[str, Any] = {"role": "assistant", "content": msg.text or None}
            if msg.tool_uses:
                entry["tool_calls"] = [
                    {
                        "id": block.id,
                        "type": "function",
                        "function": {"name": block.name, "arguments": json.dumps(block.input)},
                    }
                    for block in msg.tool_uses
                ]
            converted.append(entry)
        else:
            converted.append({"role": "user", "content": msg.text})
    return converted


def _parse_arguments(name: str, raw: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Malformed tool arguments for %s", name)
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"_raw": raw}


def _tool_block(call: dict[str, Any]) -> ToolUseBlock:
    function = call.get("function", {})
    name = function.get("name", "")
    return ToolUseBlock(
        # Some local servers omit call ids
        id=call.get("id") or f"call_{uuid.uuid4().hex[:12]}",
        name=name,
        input=_parse_arguments(name, function.get("arguments", "")),
    )


def _usage(data: dict[str, Any] | None) -> TokenUsage:
    data = data or {}
    return TokenUsage(
        input_tokens=data.get("prompt_tokens", 0) or 0,
        output_tokens=data.get("completion_tokens", 0) or 0,
    )


@dataclass
class ToolCallAccumulator:
    """Reassembles streamed tool_call fragments keyed by index."""

    calls: dict[int, dict[str, Any]] = field(default_factory=dict)

    def update(self, fragments: list[dict[str, Any]]) -> None:
        for frag in fragments:
            slot = self.calls.setdefault(
                frag.get("index", 0), {"id": "", "function": {"name": "", "arguments": ""}}
            )
            if frag.get("id"):
                slot["id"] = frag["id"]
            function = frag.get("function") or {}
            if function.get("name"):
                slot["function"]["name"] += function["name"]
            if function.get("arguments"):
                slot["function"]["arguments"] += function["arguments"]

    def blocks(self) -> list[ToolUseBlock]:
        return [_tool_block(self.calls[i]) for i in sorted(self.calls)]


class OpenAICompatibleProvider:
    """ReasoningProvider for OpenAI-style chat completion endpoints."""

    name = "openai"

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http
        self._owns_http = http is None
        self._estimator = TokenEstimator()

    @property
    def context_window(self) -> int:
        return self._settings.context_window

    async def start(self) -> None:
        if self._http is not None:
            return
        settings = self._settings
        headers = {"content-type": "application/json"}
        if settings.openai_api_key:
            headers["authorization"] = f"Bearer {settings.openai_api_key}"
        self._http = httpx.AsyncClient(
            base_url=settings.openai_base_url.rstrip("/") + "/",
            headers=headers,
            timeout=httpx.Timeout(
                connect=settings.api_timeout_connect,
                read=settings.api_timeout_read,
                write=10.0,
                pool=10.0,
            ),
        )
        logger.info("OpenAI-compatible client initialized (base_url=%s)", settings.openai_base_url)

    async def close(self) -> None:
        if self._http and self._owns_http:
            await self._http.aclose()
            self._http = None

    def _client(self) -> httpx.AsyncClient:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    def build_payload(self, request: ProviderRequest, stream: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model or self._settings.model,
            "max_tokens": request.max_tokens or self._settings.max_tokens,
            "messages": to_openai_messages(request.system, request.messages),
        }
        if request.tools:
            payload["tools"] = to_openai_tools(request.tools)
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    @staticmethod
    def _error(status: int, body: str) -> ProviderError:
        try:
            error = json.loads(body).get("error", {})
            detail = error.get("message", body[:500]) if isinstance(error, dict) else str(error)
        except (ValueError, AttributeError):
            detail = body[:500]
        return ProviderError(
            f"Chat completions error ({status}): {detail}",
            retryable=status in _RETRYABLE_STATUS,
            status_code=status,
        )

    async def chat(self, request: ProviderRequest) -> ProviderResponse:
        try:
            response = await self._client().post("chat/completions", json=self.build_payload(request))
        except httpx.TimeoutException as e:
            raise ProviderError(f"API request timed out: {e}", kind="timeout") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"HTTP error: {e}") from e
        if response.status_code != 200:
            raise self._error(response.status_code, response.text)

        data = response.json()
        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        content: list[ContentBlock] = []
        if message.get("content"):
            content.append(TextBlock(text=message["content"]))
        content.extend(_tool_block(call) for call in message.get("tool_calls") or [])
        stop_reason = map_finish_reason(choice.get("finish_reason"))
        if any(isinstance(b, ToolUseBlock) for b in content):
            stop_reason = StopReason.TOOL_REQUESTED
        return ProviderResponse(content=content, stop_reason=stop_reason, usage=_usage(data.get("usage")))

    async def chat_stream(self, request: ProviderRequest) -> AsyncIterator[StreamChunk]:
        """Stream ``data:`` lines, emitting text as it arrives and tool calls at the end."""
        payload = self.build_payload(request, stream=True)
        tool_calls = ToolCallAccumulator()
        finish_reason: str | None = None
        usage = TokenUsage()

        try:
            async with self._client().stream("POST", "chat/completions", json=payload) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode(errors="replace")
                    raise self._error(response.status_code, body)

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data_str = line[5:].strip()
                    if data_str == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data_str)
                    except ValueError as e:
                        raise ProviderError(f"Malformed stream chunk: {data_str[:200]!r}") from e
                    if chunk.get("usage"):
                        usage = _usage(chunk["usage"])
                    for choice in chunk.get("choices") or []:
                        delta = choice.get("delta") or {}
                        if delta.get("content"):
                            yield StreamChunk(type="text_delta", text=delta["content"])
                        if delta.get("tool_calls"):
                            tool_calls.update(delta["tool_calls"])
                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]
        except httpx.TimeoutException as e:
            raise ProviderError(f"API stream timed out: {e}", kind="timeout") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"HTTP error: {e}") from e

        blocks = tool_calls.blocks()
        for block in blocks:
            yield StreamChunk(type="tool_use", block=block)
        stop_reason = StopReason.TOOL_REQUESTED if blocks else map_finish_reason(finish_reason)
        yield StreamChunk(type="done", stop_reason=stop_reason, usage=usage)

    async def count_tokens(self, messages: list[Message], system: str = "") -> int:
        # No standard counting endpoint in this dialect
        return self._estimator.estimate(system) + self._estimator.estimate_messages(messages)
