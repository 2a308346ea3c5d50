"""Network tool: web_fetch.

Uses a separate httpx client from the provider adapter (that one carries
API credentials). Every hop of a redirect chain is checked against the
SSRF block list. Request budgets live in an injected RateLimiter with
explicit per-key state rather than module globals.
"""

from __future__ import annotations

import asyncio
import html as html_module
import ipaddress
import logging
import re
import socket
import time
from collections import defaultdict, deque
from collections.abc import Callable
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx

from ergon.agent.tools import ToolContext, ToolDefinition, ToolRegistry, mcp_response
from ergon.config import Settings

logger = logging.getLogger(__name__)

Resolver = Callable[[str], list[str]]

# Blocked IP ranges for SSRF protection
_BLOCKED_NETWORKS = [
    ipaddress.ip_network("127.0.0.0/8"),       # Loopback
    ipaddress.ip_network("10.0.0.0/8"),         # RFC1918
    ipaddress.ip_network("172.16.0.0/12"),      # RFC1918
    ipaddress.ip_network("192.168.0.0/16"),     # RFC1918
    ipaddress.ip_network("169.254.0.0/16"),     # Link-local
    ipaddress.ip_network("0.0.0.0/8"),          # "This" network
    ipaddress.ip_network("::1/128"),            # IPv6 loopback
    ipaddress.ip_network("fc00::/7"),           # IPv6 unique local
    ipaddress.ip_network("fe80::/10"),          # IPv6 link-local
]

_BLOCKED_HOSTNAMES = {"localhost", "metadata.google.internal"}

_MAX_REDIRECTS = 5
_MAX_FETCH_CHARS = 50_000


class RateLimiter:
    """Sliding-window request budget with explicit per-key state.

    ``clock`` is injectable so tests can drive time.
    """

    def __init__(
        self,
        limit: int,
        window: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limit = limit
        self._window = window
        self._clock = clock
        self._hits: dict[str, deque[float]] = defaultdict(deque)

    def check(self, key: str) -> str | None:
        """Consume one unit for ``key``. Returns an error message if over budget."""
        now = self._clock()
        hits = self._hits[key]
        while hits and now - hits[0] >= self._window:
            hits.popleft()
        if len(hits) >= self._limit:
            return f"Rate limit reached ({self._limit} requests per {self._window:g}s)"
        hits.append(now)
        if len(hits) >= int(self._limit * 0.8):
            logger.warning("Rate limit for %s at %d/%d", key, len(hits), self._limit)
        return None

    def remaining(self, key: str) -> int:
        return max(0, self._limit - len(self._hits.get(key, ())))


def _system_resolver(hostname: str) -> list[str]:
    return [info[4][0] for info in socket.getaddrinfo(hostname, None)]


def is_url_safe(url: str, resolver: Resolver = _system_resolver) -> tuple[bool, str]:
    """Check if URL is safe from SSRF attacks.

    Resolves hostname to IP and checks against blocked ranges.
    Returns (is_safe, error_message).
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return False, "URL must start with http:// or https://"

    hostname = parsed.hostname
    if not hostname:
        return False, "Could not parse hostname from URL"
    if hostname.lower() in _BLOCKED_HOSTNAMES:
        return False, f"Blocked hostname: {hostname}"

    try:
        addresses = resolver(hostname)
    except (socket.gaierror, UnicodeError):
        return False, f"Could not resolve hostname: {hostname}"

    for address in addresses:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
        for network in _BLOCKED_NETWORKS:
            if ip in network:
                return False, f"URL resolves to blocked IP range ({network})"
    return True, ""


def extract_readable(html: str) -> str:
    """Extract readable text from HTML using stdlib."""
    text = re.sub(
        r"<(script|style|noscript|nav|header|footer)[^>]*>.*?</\1>",
        "", html, flags=re.DOTALL | re.IGNORECASE,
    )
    text = re.sub(r"<!--.*?-->", "", text, flags=re.DOTALL)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html_module.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


async def web_fetch_tool(
    url: str,
    max_chars: int | None = None,
    *,
    _context: ToolContext,
    _http: httpx.AsyncClient,
    _limiter: RateLimiter,
    _default_max_chars: int = 10_000,
    _resolver: Resolver = _system_resolver,
) -> dict[str, Any]:
    """Fetch a URL and return its readable text."""
    if not _context.sandbox.network and _context.sandbox.mode != "host":
        return mcp_response("Network access is disabled in this sandbox", is_error=True)

    rate_error = _limiter.check(_context.session_id)
    if rate_error:
        return mcp_response(f"Rate limit: {rate_error}", is_error=True)

    safe, error = await asyncio.to_thread(is_url_safe, url, _resolver)
    if not safe:
        return mcp_response(f"Blocked: {error}", is_error=True)

    effective_max = min(max_chars or _default_max_chars, _MAX_FETCH_CHARS)

    try:
        current_url = url
        response: httpx.Response | None = None
        for _ in range(_MAX_REDIRECTS + 1):
            response = await _http.get(
                current_url,
                headers={"User-Agent": "Ergon/0.1 (agent)"},
                follow_redirects=False,
                timeout=15,
            )
            if response.status_code not in (301, 302, 303, 307, 308):
                break
            location = response.headers.get("location", "")
            if not location:
                break
            redirect_url = urljoin(current_url, location)
            safe, error = await asyncio.to_thread(is_url_safe, redirect_url, _resolver)
            if not safe:
                return mcp_response(f"Blocked redirect to unsafe URL: {error}", is_error=True)
            current_url = redirect_url
        else:
            return mcp_response(f"Too many redirects (max {_MAX_REDIRECTS})", is_error=True)
    except httpx.TimeoutException:
        return mcp_response(f"Fetch timed out for: {url}", is_error=True)
    except httpx.HTTPError as e:
        return mcp_response(f"Could not fetch {url}: {e}", is_error=True)

    if response is None:
        return mcp_response("No response received", is_error=True)
    if response.status_code >= 400:
        return mcp_response(f"Fetch failed (HTTP {response.status_code}) for: {url}", is_error=True)

    content_type = response.headers.get("content-type", "")
    is_text = any(t in content_type for t in ("text/", "application/json", "application/xml", "application/xhtml"))
    if content_type and not is_text:
        return mcp_response(
            f"Cannot extract text from binary content (content-type: {content_type})",
            is_error=True,
        )

    text = extract_readable(response.text) if "html" in content_type else response.text
    if len(text) > effective_max:
        text = text[:effective_max] + "\n\n[... truncated]"

    return mcp_response(f"Content from {current_url} ({len(text)} chars):\n\n{text}")


WEB_FETCH = ToolDefinition(
    name="web_fetch",
    description="Fetch and extract readable content from a URL. Returns clean text.",
    group="network",
    timeout=60.0,
    input_schema={
        "type": "object",
        "properties": {
            "url": {"type": "string", "description": "URL to fetch (must be http or https)"},
            "max_chars": {
                "type": "integer",
                "description": "Maximum characters to return (default from config, max 50000)",
                "minimum": 1,
                "maximum": _MAX_FETCH_CHARS,
            },
        },
        "required": ["url"],
        "additionalProperties": False,
    },
)


def register_web_tools(
    registry: ToolRegistry,
    settings: Settings,
    http_client: httpx.AsyncClient,
    limiter: RateLimiter | None = None,
) -> RateLimiter:
    """Register web_fetch with the registry.

    Creates a closure that injects the httpx client and rate limiter.
    Returns the limiter so callers can share or inspect it.
    """
    limiter = limiter or RateLimiter(settings.web_fetch_hourly_limit)
    default_max = settings.web_fetch_max_chars

    async def _fetch(url: str, max_chars: int | None = None, *, _context: ToolContext) -> dict[str, Any]:
        return await web_fetch_tool(
            url,
            max_chars,
            _context=_context,
            _http=http_client,
            _limiter=limiter,
            _default_max_chars=default_max,
        )

    registry.register(WEB_FETCH, _fetch)
    return limiter
