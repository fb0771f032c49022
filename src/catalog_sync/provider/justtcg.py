"""JustTCG catalog provider over httpx."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from ..config import Settings, get_settings
from ..data.models.records import EntityKind
from ..exceptions import PermanentProviderError, TransientProviderError
from .backoff import BackoffPolicy, retry_async
from .base import Page

logger = logging.getLogger(__name__)

# Provider slug -> internal slug, for games whose names differ
GAME_SLUG_MAP: dict[str, str] = {
    "magic-the-gathering": "mtg",
    "yu-gi-oh": "yugioh",
    "dragon-ball-super": "dbs",
    "one-piece": "onepiece",
}

_PROVIDER_SLUGS = {internal: external for external, internal in GAME_SLUG_MAP.items()}


def normalize_game_slug(slug: str) -> str:
    """Map a provider or user supplied game slug to the internal one."""
    cleaned = slug.strip().lower()
    return GAME_SLUG_MAP.get(cleaned, cleaned)


def provider_game_slug(game: str) -> str:
    """Map an internal game slug back to the provider's."""
    return _PROVIDER_SLUGS.get(game, game)


def _retry_after_seconds(response: httpx.Response) -> float | None:
    """Parse Retry-After as seconds or as an HTTP date."""
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_page(body: dict[str, Any]) -> Page:
    """Build a Page from a list response.

    Accepts ``nextCursor``/``next_cursor`` and ``hasMore``/``has_more`` at the
    top level or under ``meta``. An empty page always ends the stream.
    """
    items = body.get("data")
    if items is None:
        items = []
    if not isinstance(items, list):
        raise PermanentProviderError("response field 'data' is not a list")

    meta = body.get("meta") if isinstance(body.get("meta"), dict) else {}
    next_cursor = body.get("nextCursor", body.get("next_cursor", meta.get("nextCursor")))
    has_more = body.get("hasMore", body.get("has_more", meta.get("hasMore")))
    if has_more is False or not items:
        next_cursor = None

    total = _as_int(body.get("total", meta.get("total")))
    return Page(items=items, next_cursor=next_cursor, total=total)


class JustTCGClient:
    """ProviderClient for the JustTCG REST API.

    Lists are served from ``GET /{kind}?game=&parent=&cursor=&limit=``.
    Requests are spaced by a minimum interval and retried with the shared
    backoff policy on 429, 5xx and network errors. A 404 on a list endpoint
    means the parent has no children and yields an empty final page.
    """

    retries_requests = True

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        policy: BackoffPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self._settings = settings or get_settings()
        self._policy = policy or BackoffPolicy.from_settings(self._settings)
        self._sleep = sleep

        headers = {"Accept": "application/json"}
        if self._settings.provider_api_key:
            headers["X-API-Key"] = self._settings.provider_api_key

        timeout = httpx.Timeout(self._settings.provider_timeout_seconds, connect=10.0)
        self._client = httpx.AsyncClient(
            base_url=self._settings.provider_base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

        self._min_interval = self._settings.provider_min_request_interval_ms / 1000
        self._throttle_lock = asyncio.Lock()
        self._last_request = 0.0
        self.request_count = 0

    async def __aenter__(self) -> JustTCGClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def list_page(
        self,
        kind: EntityKind,
        game: str,
        parent_id: str | None = None,
        cursor: Any = None,
    ) -> Page:
        """Fetch one page of ``kind`` records."""
        params: dict[str, Any] = {"limit": self._settings.provider_page_size}
        if kind is not EntityKind.GAMES:
            params["game"] = provider_game_slug(game)
        if parent_id is not None:
            params["parent"] = parent_id
        if cursor is not None:
            params["cursor"] = cursor

        path = f"/{kind.value}"
        body = await retry_async(
            lambda: self._get(path, params),
            self._policy,
            description=f"GET {path} ({game}/{parent_id or '-'})",
            sleep=self._sleep,
        )
        if body is None:
            return Page()
        return parse_page(body)

    async def _throttle(self) -> None:
        async with self._throttle_lock:
            wait = self._min_interval - (time.monotonic() - self._last_request)
            if wait > 0:
                await self._sleep(wait)
            self._last_request = time.monotonic()
            self.request_count += 1

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any] | None:
        """One GET attempt. Returns None on 404."""
        await self._throttle()
        try:
            response = await self._client.get(path, params=params)
        except httpx.TransportError as e:
            raise TransientProviderError(f"GET {path} failed: {e}") from e

        status = response.status_code
        if status == 404:
            logger.info("GET %s returned 404, treating as empty", path)
            return None
        if status == 429:
            raise TransientProviderError(
                f"GET {path} rate limited", status, retry_after=_retry_after_seconds(response)
            )
        if status >= 500:
            raise TransientProviderError(f"GET {path} returned {status}", status)
        if status >= 400:
            raise PermanentProviderError(
                f"GET {path} returned {status}: {response.text[:200]}", status
            )

        try:
            body = response.json()
        except ValueError as e:
            raise TransientProviderError(f"GET {path} returned invalid JSON") from e
        if isinstance(body, list):
            return {"data": body}
        if not isinstance(body, dict):
            raise PermanentProviderError(f"GET {path} returned {type(body).__name__}, not an object")
        return body
