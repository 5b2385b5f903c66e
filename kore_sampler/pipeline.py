"""
Retrieval pipeline entry points.

    sample_sessions       - sample N sessions near an anchor, with transcripts
    fetch_transcripts_for - transcripts for an explicit list of session IDs
    classify_sessions     - fan an async classifier out over SWTs

The module-level coroutines build a SessionSource from a KoreConfig and own
it (and its HTTP session) for the duration of one call. TranscriptPipeline
runs the same steps against a source the caller already holds.
"""
import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .config import KoreConfig
from .message_fetcher import DateRange, default_date_range
from .models import OutcomeCategory, SessionMetadata, SessionWithTranscript, TimeWindow, parse_instant, to_iso
from .sampler import ProgressCallback, SamplingResult, TimeWindowSampler
from .sources import SessionSource, create_session_source
from .swt_builder import assemble_many

logger = logging.getLogger(__name__)

# Padding around the sampled sessions' span when fetching their messages
MESSAGE_RANGE_PADDING = timedelta(hours=1)

Classifier = Callable[[SessionWithTranscript], Awaitable[Any]]


@dataclass
class SamplingOutcome:
    """Sampled SWTs plus the search that produced them."""

    swts: List[SessionWithTranscript]
    windows_tried: List[TimeWindow] = field(default_factory=list)
    total_found_across_windows: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessions": [swt.to_dict() for swt in self.swts],
            "windows_tried": [w.model_dump(mode="json") for w in self.windows_tried],
            "total_found_across_windows": self.total_found_across_windows,
        }


def message_range_for(
    sessions: Sequence[SessionMetadata],
    windows: Sequence[TimeWindow] = (),
) -> DateRange:
    """
    Message query range covering every session, padded by one hour each side.

    Falls back to the searched windows when no session timestamp parses,
    and to the last seven days when there are no windows either.
    """
    starts = [t for t in (parse_instant(s.start_time) for s in sessions) if t is not None]
    ends = [t for t in (parse_instant(s.end_time) for s in sessions) if t is not None]

    if starts or ends:
        earliest = min(starts or ends)
        latest = max(ends or starts)
    elif windows:
        earliest = min(w.start for w in windows)
        latest = max(w.end for w in windows)
    else:
        return default_date_range()

    return to_iso(earliest - MESSAGE_RANGE_PADDING), to_iso(latest + MESSAGE_RANGE_PADDING)


class TranscriptPipeline:
    """Sampling and transcript assembly over one SessionSource."""

    def __init__(
        self,
        source: SessionSource,
        min_messages: int = 2,
        min_sessions: int = 10,
        rng: Optional[random.Random] = None,
        page_limit: int = 10000,
    ):
        self.source = source
        self.page_limit = page_limit
        self.sampler = TimeWindowSampler(
            source,
            min_messages=min_messages,
            min_sessions=min_sessions,
            rng=rng,
            page_limit=page_limit,
        )

    @classmethod
    def from_config(
        cls,
        config: KoreConfig,
        source: SessionSource,
        rng: Optional[random.Random] = None,
    ) -> "TranscriptPipeline":
        return cls(
            source,
            min_messages=config.min_messages_per_session,
            min_sessions=config.min_session_count,
            rng=rng,
            page_limit=config.metadata_page_limit,
        )

    async def sample_sessions(
        self,
        anchor: datetime,
        target_count: int,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> SamplingOutcome:
        """Sample target_count sessions starting at anchor and attach their transcripts.

        Messages are fetched only for the sampled sessions.
        """
        result: SamplingResult = await self.sampler.sample(anchor, target_count, progress_callback)

        session_ids = [s.session_id for s in result.sessions]
        date_range = message_range_for(result.sessions, result.windows_tried)
        logger.info(
            f"Fetching messages for {len(session_ids)} sampled sessions "
            f"from {date_range[0]} to {date_range[1]}"
        )
        messages = await self.source.fetch_messages(session_ids, date_range)
        logger.info(f"Retrieved {len(messages)} messages for sampled sessions")

        return SamplingOutcome(
            swts=assemble_many(result.sessions, messages),
            windows_tried=result.windows_tried,
            total_found_across_windows=result.total_found,
        )

    async def fetch_transcripts_for(
        self,
        session_ids: Sequence[str],
        date_range: Optional[DateRange] = None,
    ) -> List[SessionWithTranscript]:
        """
        Transcripts for explicit session IDs, in the order requested.

        Metadata is looked up over the same date range; IDs the platform does
        not list get a placeholder record with an unknown outcome category.
        """
        ordered_ids = list(dict.fromkeys(sid for sid in session_ids if sid and sid.strip()))
        if not ordered_ids:
            return []

        date_range = date_range or default_date_range()
        listed = await self.source.fetch_session_metadata(date_range[0], date_range[1], limit=self.page_limit)
        by_id = {m.session_id: m for m in listed}

        metadata = []
        for session_id in ordered_ids:
            if session_id in by_id:
                metadata.append(by_id[session_id])
            else:
                logger.debug(f"No metadata for session {session_id}; using placeholder")
                metadata.append(SessionMetadata(session_id=session_id, outcome_category=OutcomeCategory.UNKNOWN))

        missing = len(ordered_ids) - sum(1 for sid in ordered_ids if sid in by_id)
        if missing:
            logger.warning(f"{missing}/{len(ordered_ids)} sessions had no metadata in {date_range[0]} - {date_range[1]}")

        messages = await self.source.fetch_messages(ordered_ids, date_range)
        return assemble_many(metadata, messages)


async def sample_sessions(
    config: KoreConfig,
    anchor: datetime,
    target_count: int,
    progress_callback: Optional[ProgressCallback] = None,
    source: Optional[SessionSource] = None,
    rng: Optional[random.Random] = None,
) -> SamplingOutcome:
    """Run one sampling invocation with its own source and HTTP session."""
    async with (source or create_session_source(config)) as active:
        pipeline = TranscriptPipeline.from_config(config, active, rng=rng)
        return await pipeline.sample_sessions(anchor, target_count, progress_callback)


async def fetch_transcripts_for(
    config: KoreConfig,
    session_ids: Sequence[str],
    date_range: Optional[DateRange] = None,
    source: Optional[SessionSource] = None,
) -> List[SessionWithTranscript]:
    """Fetch transcripts for explicit session IDs with their own source and HTTP session."""
    async with (source or create_session_source(config)) as active:
        pipeline = TranscriptPipeline.from_config(config, active)
        return await pipeline.fetch_transcripts_for(session_ids, date_range)


async def classify_sessions(
    swts: Sequence[SessionWithTranscript],
    classifier: Classifier,
    concurrency: int = 5,
) -> List[Tuple[SessionWithTranscript, Any]]:
    """
    Run an async classifier over SWTs with bounded concurrency.

    Failures are logged and skipped; results keep input order.

    Returns:
        (swt, classification) pairs for every SWT that classified successfully
    """
    semaphore = asyncio.Semaphore(concurrency)

    async def classify_one(swt: SessionWithTranscript) -> Any:
        async with semaphore:
            return await classifier(swt)

    results = await asyncio.gather(*(classify_one(s) for s in swts), return_exceptions=True)

    classified = []
    for swt, result in zip(swts, results):
        if isinstance(result, Exception):
            logger.error(f"Classification error for {swt.session_id}: {result}", exc_info=result)
            continue
        classified.append((swt, result))

    logger.info(f"Classified {len(classified)}/{len(swts)} sessions")
    return classified
