"""
Batched, concurrent message retrieval.

getMessagesV2 accepts at most 20 session IDs per call. Large ID sets are
split into batches that run concurrently under a semaphore. A failing batch
(timeout, API error) is logged and left out of the result; if every batch
fails, one unbatched fallback call is attempted before giving up. The batch
timeout bounds a whole batch, pages and rate-limit waits included, as well
as each request inside it.
Authentication failures always propagate.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .errors import AuthenticationError, ConfigurationError
from .kore_client import KoreApiClient
from .models import KoreMessage, to_iso
from .swt_builder import group_by_session

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 20
DEFAULT_CONCURRENCY = 10
DEFAULT_BATCH_TIMEOUT_SECONDS = 30.0
DEFAULT_LOOKBACK = timedelta(days=7)

DateRange = Tuple[str, str]
ProgressCallback = Callable[[int, int], None]


def split_into_batches(session_ids: Sequence[str], batch_size: int = MAX_BATCH_SIZE) -> List[List[str]]:
    """Split IDs into contiguous batches of at most batch_size, preserving order."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    return [list(session_ids[i:i + batch_size]) for i in range(0, len(session_ids), batch_size)]


def default_date_range(now: Optional[datetime] = None) -> DateRange:
    """The last seven days, ending now."""
    now = now or datetime.now(timezone.utc)
    return to_iso(now - DEFAULT_LOOKBACK), to_iso(now)


class BatchMessageFetcher:
    """Fetches raw messages for many sessions with bounded concurrency."""

    def __init__(
        self,
        client: KoreApiClient,
        batch_size: int = MAX_BATCH_SIZE,
        concurrency: int = DEFAULT_CONCURRENCY,
        batch_timeout: float = DEFAULT_BATCH_TIMEOUT_SECONDS,
        page_limit: Optional[int] = None,
    ):
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {batch_size}")
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.client = client
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.batch_timeout = batch_timeout
        self.page_limit = page_limit

    async def _fetch_ids(self, session_ids: List[str], date_range: DateRange) -> List[KoreMessage]:
        date_from, date_to = date_range
        payload = {
            "dateFrom": date_from,
            "dateTo": date_to,
            "skip": 0,
            "limit": self.page_limit or self.client.config.message_page_limit,
            "sessionId": session_ids,
        }
        raw_messages = await self.client.post_paginated(
            self.client.messages_url(),
            payload,
            items_key="messages",
            page_size=payload["limit"],
            timeout=self.batch_timeout,
        )
        return [KoreMessage.from_api(raw) for raw in raw_messages if isinstance(raw, dict)]

    async def fetch(
        self,
        session_ids: Sequence[str],
        date_range: Optional[DateRange] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> List[KoreMessage]:
        """
        Fetch messages for the given sessions.

        Args:
            session_ids: Session IDs to fetch messages for
            date_range: (dateFrom, dateTo) ISO strings; defaults to the last 7 days
            progress_callback: Called with (batches_completed, total_batches)
                after each batch settles

        Returns:
            Raw messages from every successful batch, concatenated in batch order.

        Raises:
            AuthenticationError: If any batch is rejected with 401.
        """
        session_ids = [sid for sid in session_ids if sid and sid.strip()]
        if not session_ids:
            return []

        date_range = date_range or default_date_range()
        batches = split_into_batches(session_ids, self.batch_size)
        total = len(batches)
        logger.info(
            f"Fetching messages for {len(session_ids)} sessions in {total} batches "
            f"(concurrency={self.concurrency}) from {date_range[0]} to {date_range[1]}"
        )

        semaphore = asyncio.Semaphore(self.concurrency)
        completed = 0

        async def fetch_batch(index: int, batch: List[str]) -> Optional[List[KoreMessage]]:
            nonlocal completed
            async with semaphore:
                try:
                    messages = await asyncio.wait_for(self._fetch_ids(batch, date_range), self.batch_timeout)
                    logger.debug(f"Batch {index + 1}/{total}: {len(messages)} messages for {len(batch)} sessions")
                    return messages
                except (AuthenticationError, ConfigurationError):
                    raise
                except Exception as e:
                    logger.warning(f"Batch {index + 1}/{total} failed ({len(batch)} sessions): {e!r}")
                    return None
                finally:
                    completed += 1
                    if progress_callback:
                        progress_callback(completed, total)

        tasks = [asyncio.create_task(fetch_batch(i, b)) for i, b in enumerate(batches)]
        try:
            results = await asyncio.gather(*tasks)
        except Exception as e:
            for task in tasks:
                if not task.done():
                    task.cancel()
                elif not task.cancelled():
                    task.exception()
            if isinstance(e, AuthenticationError):
                logger.error("Authentication failed - aborting message fetch")
            raise

        succeeded = [r for r in results if r is not None]
        if not succeeded:
            logger.warning(f"All {total} batches failed; attempting one unbatched fallback request")
            return await self._fallback(session_ids, date_range)

        messages: List[KoreMessage] = []
        for batch_messages in succeeded:
            messages.extend(batch_messages)

        failed = total - len(succeeded)
        if failed:
            logger.warning(f"{failed}/{total} batches failed; returning {len(messages)} messages from the rest")
        else:
            logger.info(f"Retrieved {len(messages)} messages for {len(session_ids)} sessions")
        return messages

    async def _fallback(self, session_ids: List[str], date_range: DateRange) -> List[KoreMessage]:
        try:
            messages = await self._fetch_ids(session_ids, date_range)
        except (AuthenticationError, ConfigurationError):
            raise
        except Exception as e:
            logger.error(f"Fallback message request failed, returning no messages: {e!r}")
            return []
        logger.info(f"Fallback request retrieved {len(messages)} messages")
        return messages

    async def fetch_grouped(
        self,
        session_ids: Sequence[str],
        date_range: Optional[DateRange] = None,
    ) -> Dict[str, List[KoreMessage]]:
        """Fetch and partition messages by session ID."""
        return group_by_session(await self.fetch(session_ids, date_range))
