"""
Session metadata retrieval across outcome categories.

getSessions only returns one containment type per call, so each fetch fans
out one request per category concurrently and merges the results. Failed
categories are logged and skipped; an authentication failure aborts the
whole fetch at once since no category can succeed without valid credentials.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Union

from .errors import AuthenticationError, ConfigurationError
from .kore_client import KoreApiClient
from .models import FETCHABLE_CATEGORIES, OutcomeCategory, SessionMetadata, to_iso

logger = logging.getLogger(__name__)

DateLike = Union[str, datetime]


@dataclass
class CategoryOutcome:
    """Settled result of one category request: sessions on success, error on failure."""

    category: OutcomeCategory
    sessions: Optional[List[SessionMetadata]] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _as_date_string(value: DateLike) -> str:
    return to_iso(value) if isinstance(value, datetime) else value


class SessionMetadataFetcher:
    """Fetches session metadata (no messages) for every outcome category in parallel."""

    def __init__(
        self,
        client: KoreApiClient,
        categories: Sequence[OutcomeCategory] = FETCHABLE_CATEGORIES,
    ):
        self.client = client
        self.categories = tuple(categories)
        self.last_outcomes: Dict[OutcomeCategory, CategoryOutcome] = {}

    async def _fetch_category(
        self,
        category: OutcomeCategory,
        payload: Dict[str, object],
    ) -> List[SessionMetadata]:
        url = self.client.sessions_url(category)
        logger.debug(f"Requesting {category.value} session metadata from {url} with {payload}")
        body = await self.client.post(url, payload)

        sessions = body.get("sessions") or []
        metadata = [
            SessionMetadata.from_api(raw, category)
            for raw in sessions
            if isinstance(raw, dict)
        ]
        logger.info(f"Retrieved {len(metadata)} {category.value} sessions")
        return metadata

    async def _settle(self, category: OutcomeCategory, payload: Dict[str, object]) -> CategoryOutcome:
        """Run one category request, turning non-fatal failures into a CategoryOutcome."""
        try:
            sessions = await self._fetch_category(category, payload)
            return CategoryOutcome(category=category, sessions=sessions)
        except (AuthenticationError, ConfigurationError):
            raise
        except Exception as e:
            logger.warning(f"{category.value} session request failed: {e!r}")
            return CategoryOutcome(category=category, error=e)

    async def fetch(
        self,
        date_from: DateLike,
        date_to: DateLike,
        skip: int = 0,
        limit: int = 10000,
    ) -> List[SessionMetadata]:
        """
        Fetch session metadata for all categories over a date range.

        Args:
            date_from: Range start (ISO-8601 string or datetime)
            date_to: Range end (ISO-8601 string or datetime)
            skip: Records to skip per category
            limit: Max records per category

        Returns:
            Sessions from every category that succeeded, in category order.

        Raises:
            AuthenticationError: As soon as any category reports 401.
        """
        payload = {
            "dateFrom": _as_date_string(date_from),
            "dateTo": _as_date_string(date_to),
            "skip": skip,
            "limit": limit,
        }
        logger.info(
            f"Fetching session metadata for {len(self.categories)} categories "
            f"from {payload['dateFrom']} to {payload['dateTo']}"
        )

        tasks = [asyncio.create_task(self._settle(c, payload)) for c in self.categories]
        outcomes: Dict[OutcomeCategory, CategoryOutcome] = {}
        try:
            for next_done in asyncio.as_completed(tasks):
                outcome = await next_done
                outcomes[outcome.category] = outcome
        except AuthenticationError:
            logger.error("Authentication failed - aborting session metadata fetch")
            raise
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
                elif not task.cancelled():
                    task.exception()  # mark a second auth failure as retrieved

        self.last_outcomes = outcomes

        merged: List[SessionMetadata] = []
        for category in self.categories:
            outcome = outcomes[category]
            if outcome.ok:
                merged.extend(outcome.sessions or [])

        failed = [c.value for c, o in outcomes.items() if not o.ok]
        if failed:
            logger.warning(
                f"Session metadata is partial: {', '.join(failed)} failed; "
                f"returning {len(merged)} sessions from the remaining categories"
            )
        else:
            logger.info(f"Total session metadata retrieved: {len(merged)}")
        return merged

    @property
    def degraded_categories(self) -> List[OutcomeCategory]:
        """Categories that failed in the latest fetch."""
        return [c for c, o in self.last_outcomes.items() if not o.ok]
