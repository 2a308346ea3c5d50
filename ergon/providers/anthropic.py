"""Anthropic Messages API adapter over httpx.

Handles auth header selection, payload building, SSE parsing and
message-shape conversion. Retries are the loop's job; this adapter makes
exactly one attempt per call and classifies failures as retryable or not.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from ergon.agent.tokens import TokenEstimator
from ergon.agent.models import ContentBlock, Message, TextBlock, TokenUsage, ToolUseBlock
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

_API_VERSION = "2023-06-01"
_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504, 529})

_STOP_REASONS = {
    "end_turn": StopReason.NATURAL_STOP,
    "stop_sequence": StopReason.NATURAL_STOP,
    "tool_use": StopReason.TOOL_REQUESTED,
    "max_tokens": StopReason.LENGTH_LIMIT,
    "model_context_window_exceeded": StopReason.LENGTH_LIMIT,
}


def map_stop_reason(raw: str | None) -> StopReason:
    return _STOP_REASONS.get(raw or "", StopReason.NATURAL_STOP)


@dataclass
class SSEEvent:
    """A single parsed event from the streaming API response."""

    type: str  # text_delta, tool_start, tool_input_delta, block_stop, usage, done, message_stop, error
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    stop_reason: str = ""
    block_index: int = 0
    usage: dict[str, int] = field(default_factory=dict)


def parse_sse_event(data: dict[str, Any]) -> SSEEvent | None:
    """Parse Anthropic SSE event dict into SSEEvent.

    Skips ping keepalives. stop_reason arrives in message_delta.delta, not
    message_start. In-stream error events (HTTP 200 with an error body)
    become ``error`` events.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return SSEEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
            stop_reason=error.get("type", ""),
        )

    if event_type == "message_start":
        usage = data.get("message", {}).get("usage", {}) or {}
        return SSEEvent(type="usage", usage={"input_tokens": usage.get("input_tokens", 0)})

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        block_index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return SSEEvent(
                type="tool_start",
                tool_name=block.get("name", ""),
                tool_id=block.get("id", ""),
                block_index=block_index,
            )
        return SSEEvent(type="text_block_start", block_index=block_index)

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        block_index = data.get("index", 0)
        if delta.get("type") == "text_delta":
            return SSEEvent(type="text_delta", text=delta.get("text", ""), block_index=block_index)
        if delta.get("type") == "input_json_delta":
            return SSEEvent(
                type="tool_input_delta",
                text=delta.get("partial_json", ""),
                block_index=block_index,
            )
        return None

    if event_type == "content_block_stop":
        return SSEEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        usage = data.get("usage", {}) or {}
        return SSEEvent(
            type="done",
            stop_reason=data.get("delta", {}).get("stop_reason", "") or "",
            usage={"output_tokens": usage.get("output_tokens", 0)},
        )

    if event_type == "message_stop":
        return SSEEvent(type="message_stop")

    return None


def _content_to_blocks(content: str | list[ContentBlock]) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}] if content else []
    return [b.to_dict() for b in content]


def to_api_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert session messages to Messages API format.

    Tool results become user-role tool_result blocks; summary (system)
    messages become a user-role preamble. Consecutive same-role messages
    are merged so the user/assistant alternation holds.
    """
    converted: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == "tool":
            role = "user"
            blocks = [{
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id,
                "content": msg.text,
                "is_error": msg.is_error,
            }]
        elif msg.role == "system":
            role = "user"
            blocks = [{"type": "text", "text": summary_preamble(msg)}]
        else:
            role = msg.role
            blocks = _content_to_blocks(msg.content)
        if not blocks:
            continue
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": blocks})
    return converted


def _parse_content(raw: list[dict[str, Any]]) -> list[ContentBlock]:
    blocks: list[ContentBlock] = []
    for block in raw:
        if block.get("type") == "text":
            blocks.append(TextBlock(text=block.get("text", "")))
        elif block.get("type") == "tool_use":
            blocks.append(ToolUseBlock(id=block["id"], name=block["name"], input=block.get("input") or {}))
    return blocks


def build_auth_headers(api_key: str, auth_token: str) -> dict[str, str]:
    """Pick x-api-key or Bearer auth.

    OAT tokens (sk-ant-oat*) require Bearer auth plus beta headers even
    when supplied as an API key.
    """
    headers: dict[str, str] = {
        "anthropic-version": _API_VERSION,
        "content-type": "application/json",
    }
    token = auth_token or (api_key if "sk-ant-oat" in api_key else "")
    if token:
        headers["authorization"] = f"Bearer {token}"
        if "sk-ant-oat" in token:
            headers["anthropic-beta"] = "oauth-2025-04-20"
            headers["anthropic-dangerous-direct-browser-access"] = "true"
    elif api_key:
        headers["x-api-key"] = api_key
    else:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "API calls will fail"
        )
    return headers


def _error_from_response(status: int, body: str, headers: httpx.Headers) -> ProviderError:
    try:
        error = json.loads(body).get("error", {})
        detail = f"{error.get('type', 'unknown')} - {error.get('message', 'unknown error')}"
    except (ValueError, AttributeError):
        detail = f"HTTP {status}: {body[:500]}"
    retry_after = None
    if "retry-after" in headers:
        try:
            retry_after = float(headers["retry-after"])
        except ValueError:
            retry_after = None
    return ProviderError(
        f"Anthropic API error ({status}): {detail}",
        kind="transport_error",
        retryable=status in _RETRYABLE_STATUS,
        status_code=status,
        retry_after=retry_after,
    )


class AnthropicProvider:
    """ReasoningProvider for the Anthropic Messages API."""

    name = "anthropic"

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http
        self._owns_http = http is None
        self._estimator = TokenEstimator()

    @property
    def context_window(self) -> int:
        return self._settings.context_window

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=build_auth_headers(settings.anthropic_api_key, settings.anthropic_auth_token),
            timeout=timeout,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
        logger.info("Anthropic client initialized (base_url=%s)", settings.api_base_url)

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
            "messages": to_api_messages(request.messages),
        }
        if request.system:
            payload["system"] = [
                {
                    "type": "text",
                    "text": request.system,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        if request.tools:
            payload["tools"] = request.tools
        if stream:
            payload["stream"] = True
        return payload

    async def chat(self, request: ProviderRequest) -> ProviderResponse:
        payload = self.build_payload(request)
        try:
            response = await self._client().post("/v1/messages", json=payload)
        except httpx.TimeoutException as e:
            raise ProviderError(f"API request timed out: {e}", kind="timeout") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"HTTP error: {e}") from e

        if response.status_code != 200:
            raise _error_from_response(response.status_code, response.text, response.headers)

        data = response.json()
        usage = data.get("usage") or {}
        return ProviderResponse(
            content=_parse_content(data.get("content", [])),
            stop_reason=map_stop_reason(data.get("stop_reason")),
            usage=TokenUsage(
                input_tokens=usage.get("input_tokens", 0),
                output_tokens=usage.get("output_tokens", 0),
            ),
        )

    async def chat_stream(self, request: ProviderRequest) -> AsyncIterator[StreamChunk]:
        """Stream a response as normalised chunks.

        Tool input arrives as JSON fragments per block index and is
        reassembled at block_stop. Closing this generator closes the HTTP
        stream.
        """
        payload = self.build_payload(request, stream=True)
        usage = TokenUsage()
        stop_reason = StopReason.NATURAL_STOP
        accumulators: dict[int, dict[str, Any]] = {}

        try:
            async with self._client().stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode(errors="replace")
                    raise _error_from_response(response.status_code, body, response.headers)

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        data = json.loads(line[6:])
                    except ValueError as e:
                        raise ProviderError(f"Malformed stream event: {line[6:200]!r}") from e
                    event = parse_sse_event(data)
                    if event is None:
                        continue

                    if event.type == "error":
                        raise ProviderError(
                            f"Stream error: {event.text}",
                            retryable=event.stop_reason in ("overloaded_error", "api_error"),
                        )
                    elif event.type == "usage":
                        usage.input_tokens = event.usage.get("input_tokens", 0)
                    elif event.type == "text_delta":
                        if event.text:
                            yield StreamChunk(type="text_delta", text=event.text)
                    elif event.type == "tool_start":
                        accumulators[event.block_index] = {
                            "id": event.tool_id,
                            "name": event.tool_name,
                            "parts": [],
                        }
                    elif event.type == "tool_input_delta":
                        acc = accumulators.get(event.block_index)
                        if acc:
                            acc["parts"].append(event.text)
                    elif event.type == "block_stop":
                        acc = accumulators.pop(event.block_index, None)
                        if acc:
                            raw = "".join(acc["parts"])
                            try:
                                tool_input = json.loads(raw) if raw else {}
                            except json.JSONDecodeError:
                                logger.warning("Malformed tool input JSON for %s", acc["name"])
                                tool_input = {"_raw": raw}
                            yield StreamChunk(
                                type="tool_use",
                                block=ToolUseBlock(id=acc["id"], name=acc["name"], input=tool_input),
                            )
                    elif event.type == "done":
                        stop_reason = map_stop_reason(event.stop_reason)
                        usage.output_tokens = event.usage.get("output_tokens", 0)
                    elif event.type == "message_stop":
                        break
        except httpx.TimeoutException as e:
            raise ProviderError(f"API stream timed out: {e}", kind="timeout") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"HTTP error: {e}") from e

        yield StreamChunk(type="done", stop_reason=stop_reason, usage=usage)

    async def count_tokens(self, messages: list[Message], system: str = "") -> int:
        """Count input tokens via the count_tokens endpoint, estimating on failure."""
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "messages": to_api_messages(messages),
        }
        if system:
            payload["system"] = system
        try:
            response = await self._client().post("/v1/messages/count_tokens", json=payload)
            if response.status_code == 200:
                return int(response.json().get("input_tokens", 0))
            logger.warning("count_tokens failed (HTTP %d), estimating", response.status_code)
        except httpx.HTTPError as e:
            logger.warning("count_tokens failed (%s), estimating", e)
        return self._estimator.estimate(system) + self._estimator.estimate_messages(messages)
