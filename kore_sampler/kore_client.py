"""
Kore.ai public API client.

Every call is rate-limited and carries a freshly signed JWT in the `auth`
header. Status handling:
- 200: parsed JSON body; anything but a JSON object is a RemoteApiError
- 429: wait a fixed cooldown and retry (bounded by rate_limit_retries),
       then RateLimitedError
- 401: AuthenticationError, never retried
- other: RemoteApiError(status, body)
- timeouts: RequestTimeoutError, never swallowed

Use as an async context manager to share one aiohttp session across the
calls of a pipeline run:

    async with KoreApiClient(config) as client:
        body = await client.post(client.sessions_url(OutcomeCategory.AGENT), payload)
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import aiohttp

from .auth import AUTH_HEADER, AuthTokenIssuer
from .config import KoreConfig
from .errors import AuthenticationError, RateLimitedError, RemoteApiError, RequestTimeoutError
from .models import OutcomeCategory
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class KoreApiClient:
    """Authenticated, rate-limited POST client for one bot."""

    # Safety ceiling for moreAvailable pagination loops
    MAX_PAGES = 100

    def __init__(
        self,
        config: KoreConfig,
        rate_limiter: Optional[RateLimiter] = None,
        token_issuer: Optional[AuthTokenIssuer] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        config.require_credentials()
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.timeout = config.request_timeout_seconds
        self.rate_limit_retries = config.rate_limit_retries
        self.rate_limit_cooldown = config.rate_limit_cooldown_seconds

        self.rate_limiter = rate_limiter or RateLimiter(
            per_minute=config.rate_limit_per_minute,
            per_hour=config.hourly_limit,
        )
        self.token_issuer = token_issuer or AuthTokenIssuer(audience=config.audience)
        self._sleep = sleep or asyncio.sleep
        self._session: Optional[aiohttp.ClientSession] = None

    # ==================== SESSION LIFECYCLE ====================

    def _get_aiohttp_session(self) -> aiohttp.ClientSession:
        """Create an aiohttp session. Per-call timeouts are applied on each request."""
        return aiohttp.ClientSession(headers={"Content-Type": "application/json"})

    async def __aenter__(self) -> "KoreApiClient":
        if self._session is None:
            self._session = self._get_aiohttp_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None:
            session, self._session = self._session, None
            await session.close()

    @asynccontextmanager
    async def _session_scope(self) -> AsyncIterator[aiohttp.ClientSession]:
        """Yield the shared session, or a short-lived one outside `async with`."""
        if self._session is not None:
            yield self._session
            return
        async with self._get_aiohttp_session() as session:
            yield session

    # ==================== URLS ====================

    def sessions_url(self, category: OutcomeCategory) -> str:
        return f"{self.base_url}/bot/{self.config.bot_id}/getSessions?containmentType={category.value}"

    def messages_url(self) -> str:
        return f"{self.base_url}/bot/{self.config.bot_id}/getMessagesV2"

    # ==================== REQUESTS ====================

    def _auth_headers(self) -> Dict[str, str]:
        token = self.token_issuer.issue(
            self.config.client_id, self.config.bot_id, self.config.client_secret
        )
        return {"Content-Type": "application/json", AUTH_HEADER: token}

    async def post(self, url: str, payload: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        POST a JSON payload and return the parsed JSON body.

        Args:
            url: Absolute endpoint URL
            payload: JSON body
            timeout: Per-call timeout in seconds (default: config.request_timeout_seconds)

        Raises:
            AuthenticationError: On 401
            RateLimitedError: On 429 after the cooldown retries
            RemoteApiError: On any other non-200 status or connection failure,
                or a 200 whose body is not a JSON object
            RequestTimeoutError: When the call exceeds its timeout
        """
        effective_timeout = timeout if timeout is not None else self.timeout

        async with self._session_scope() as session:
            for attempt in range(self.rate_limit_retries + 1):
                await self.rate_limiter.acquire()
                headers = self._auth_headers()

                try:
                    async with session.post(
                        url,
                        json=payload,
                        headers=headers,
                        timeout=aiohttp.ClientTimeout(total=effective_timeout),
                    ) as response:
                        status = response.status
                        body = await response.text()
                except asyncio.TimeoutError as e:
                    logger.warning(f"Request to {url} timed out after {effective_timeout}s")
                    raise RequestTimeoutError(url, effective_timeout) from e
                except aiohttp.ClientError as e:
                    logger.warning(f"Connection error on {url}: {e}")
                    raise RemoteApiError(None, str(e), url) from e

                if status == 200:
                    return _decode_object(body, url)

                if status == 401:
                    logger.error(f"Authentication failed (401) on {url}")
                    raise AuthenticationError(body, url)

                if status == 429:
                    if attempt < self.rate_limit_retries:
                        logger.warning(
                            f"Rate limit exceeded (429) on {url}. Waiting {self.rate_limit_cooldown:.0f} "
                            f"seconds before retrying (attempt {attempt + 1}/{self.rate_limit_retries + 1})"
                        )
                        await self._sleep(self.rate_limit_cooldown)
                        continue
                    logger.error(f"Rate limit (429) persisted on {url} after {attempt + 1} attempts")
                    raise RateLimitedError(body, url)

                raise RemoteApiError(status, body, url)

        # Every iteration returns, raises or continues; the last one cannot continue
        raise RuntimeError("Unexpected retry loop exit")

    async def post_paginated(
        self,
        url: str,
        payload: Dict[str, Any],
        items_key: str = "messages",
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        """
        Walk a skip/limit endpoint while the response reports moreAvailable.

        Stops on an empty page, when moreAvailable is false, or after MAX_PAGES.
        """
        limit = page_size or self.config.message_page_limit
        skip = int(payload.get("skip", 0))
        items: List[Dict[str, Any]] = []

        for page in range(self.MAX_PAGES):
            body = await self.post(url, {**payload, "skip": skip, "limit": limit}, timeout=timeout)
            page_items = body.get(items_key) or []
            if not isinstance(page_items, list):
                raise RemoteApiError(200, f"{items_key} is not a list", url)
            items.extend(page_items)
            logger.debug(f"Page {page + 1}: {len(page_items)} {items_key} (total {len(items)})")

            if not body.get("moreAvailable") or not page_items:
                break
            skip += limit
        else:
            logger.warning(f"Stopped paginating {url} after {self.MAX_PAGES} pages")

        return items


def _decode_object(body: str, url: str) -> Dict[str, Any]:
    """Parse a 200 body, rejecting empty, non-JSON and non-object payloads."""
    try:
        decoded = json.loads(body)
    except ValueError as e:
        logger.warning(f"Unparseable 200 response from {url}: {body[:200]!r}")
        raise RemoteApiError(200, body, url) from e
    if not isinstance(decoded, dict):
        logger.warning(f"200 response from {url} is {type(decoded).__name__}, expected an object")
        raise RemoteApiError(200, body, url)
    return decoded
