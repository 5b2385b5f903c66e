"""
Time-window session sampler.

Finds a target number of sessions around an anchor instant by searching an
escalating sequence of windows (3h, 6h, 12h, 6 days). Windows are searched
one at a time; sessions accumulate across windows, deduplicated by session
ID. As soon as enough qualifying sessions exist, exactly `target_count` of
them are drawn uniformly at random without replacement.

Sampling is strict: if every window is exhausted before the target is met,
InsufficientSessionsError is raised, even when more than the absolute
minimum was found. Downstream analysis never receives a smaller set than
it asked for.
"""
import logging
import random
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .errors import AuthenticationError, ConfigurationError, InsufficientSessionsError, KoreSamplerError
from .models import SessionMetadata, TimeWindow
from .sources import SessionSource

logger = logging.getLogger(__name__)

# (duration_hours, label)
EXPANSION_STRATEGY: Tuple[Tuple[int, str], ...] = (
    (3, "Initial 3-hour window"),
    (6, "Extended to 6 hours"),
    (12, "Extended to 12 hours"),
    (144, "Extended to 6 days"),
)
MAX_EXPANSIONS = 8

MIN_SESSION_COUNT = 10
MIN_MESSAGES_PER_SESSION = 2

# (step, sessions_found, window_index, window_label)
ProgressCallback = Callable[[str, int, int, str], None]


class SamplingState(str, Enum):
    SEARCHING = "searching"
    SUFFICIENT = "sufficient"
    EXHAUSTED = "exhausted"


@dataclass
class SamplingResult:
    """Sampled metadata plus the windows that were searched to find it."""

    sessions: List[SessionMetadata]
    windows_tried: List[TimeWindow]
    total_found: int
    state: SamplingState = SamplingState.SUFFICIENT


def et_offset_hours(day: date) -> int:
    """
    Hours to add to US Eastern wall-clock time to get UTC.

    Fixed approximation: daylight time (UTC-4) for March through October,
    standard time (UTC-5) otherwise. Transition days are not modelled.
    """
    return 4 if 3 <= day.month <= 10 else 5


def parse_et_datetime(date_str: str, time_str: str) -> datetime:
    """Convert an Eastern 'YYYY-MM-DD' + 'HH:MM' pair into an aware UTC datetime."""
    try:
        local = datetime.strptime(f"{date_str} {time_str}", "%Y-%m-%d %H:%M")
    except ValueError as e:
        raise ValueError(f"Invalid date/time '{date_str} {time_str}', expected YYYY-MM-DD and HH:MM") from e
    utc = local + timedelta(hours=et_offset_hours(local.date()))
    return utc.replace(tzinfo=timezone.utc)


def generate_time_windows(
    anchor: datetime,
    strategy: Sequence[Tuple[int, str]] = EXPANSION_STRATEGY,
) -> List[TimeWindow]:
    """Windows starting at the anchor, one per strategy step."""
    if anchor.tzinfo is None:
        anchor = anchor.replace(tzinfo=timezone.utc)
    anchor = anchor.astimezone(timezone.utc)
    return [
        TimeWindow(
            start=anchor,
            end=anchor + timedelta(hours=hours),
            duration_hours=hours,
            label=label,
        )
        for hours, label in strategy
    ]


@dataclass
class _Accumulator:
    sessions: Dict[str, SessionMetadata] = field(default_factory=dict)

    def merge(self, batch: Sequence[SessionMetadata]) -> int:
        """Add sessions not seen before. First sighting wins. Returns the number added."""
        added = 0
        for session in batch:
            if session.session_id and session.session_id not in self.sessions:
                self.sessions[session.session_id] = session
                added += 1
        return added

    def __len__(self) -> int:
        return len(self.sessions)


class TimeWindowSampler:
    """Adaptive window search over a SessionSource."""

    def __init__(
        self,
        source: SessionSource,
        min_messages: int = MIN_MESSAGES_PER_SESSION,
        min_sessions: int = MIN_SESSION_COUNT,
        strategy: Sequence[Tuple[int, str]] = EXPANSION_STRATEGY,
        rng: Optional[random.Random] = None,
        page_limit: int = 10000,
    ):
        if not strategy:
            raise ValueError("Expansion strategy must contain at least one window")
        if len(strategy) > MAX_EXPANSIONS:
            raise ValueError(f"Expansion strategy allows at most {MAX_EXPANSIONS} windows, got {len(strategy)}")
        self.source = source
        self.min_messages = min_messages
        self.min_sessions = min_sessions
        self.strategy = tuple(strategy)
        self.rng = rng or random.Random()
        self.page_limit = page_limit

    def is_qualifying(self, session: SessionMetadata) -> bool:
        """Sessions with fewer than min_messages are too shallow to analyze."""
        return session.message_counts.total >= self.min_messages

    async def _sessions_in_window(self, window: TimeWindow) -> List[SessionMetadata]:
        logger.info(f"Fetching sessions for {window.label} from {window.start.isoformat()} to {window.end.isoformat()}")
        try:
            sessions = await self.source.fetch_session_metadata(
                window.start, window.end, skip=0, limit=self.page_limit
            )
        except (AuthenticationError, ConfigurationError):
            raise
        except KoreSamplerError as e:
            logger.warning(f"Error fetching sessions for window {window.label}: {e}")
            return []
        logger.info(f"Found {len(sessions)} sessions in window {window.label}")
        return sessions

    async def sample(
        self,
        anchor: datetime,
        target_count: int,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> SamplingResult:
        """
        Search windows around the anchor until target_count sessions qualify.

        Args:
            anchor: Window start instant (aware, or naive UTC)
            target_count: Exact number of sessions to return
            progress_callback: Receives (step, sessions_found, window_index, window_label)

        Returns:
            SamplingResult in the SUFFICIENT state with exactly target_count sessions

        Raises:
            ValueError: If target_count is below the absolute minimum
            InsufficientSessionsError: If every window is exhausted first
        """
        if target_count < self.min_sessions:
            raise ValueError(
                f"Requested session count {target_count} is below the minimum of {self.min_sessions}"
            )

        def report(step: str, index: int, label: str) -> None:
            if progress_callback:
                progress_callback(step, len(found), index, label)

        found = _Accumulator()
        windows_tried: List[TimeWindow] = []
        state = SamplingState.SEARCHING

        for index, window in enumerate(generate_time_windows(anchor, self.strategy)):
            report(f"Searching in {window.label}...", index, window.label)

            sessions = await self._sessions_in_window(window)
            qualifying = [s for s in sessions if self.is_qualifying(s)]
            added = found.merge(qualifying)
            windows_tried.append(window)

            logger.info(
                f"{window.label}: {len(qualifying)}/{len(sessions)} qualifying, "
                f"{added} new, {len(found)} total"
            )
            report(f"Found {len(found)} sessions in {window.label}", index, window.label)

            if len(found) >= target_count:
                report(f"Found sufficient sessions ({len(found)}), completing search...", index, window.label)
                state = SamplingState.SUFFICIENT
                break
        else:
            state = SamplingState.EXHAUSTED

        if state == SamplingState.EXHAUSTED:
            logger.error(
                f"Exhausted {len(windows_tried)} windows with {len(found)} sessions; needed {target_count}"
            )
            raise InsufficientSessionsError(len(found), target_count, self.min_sessions)

        pool = list(found.sessions.values())
        sampled = pool if len(pool) == target_count else self.rng.sample(pool, target_count)
        logger.info(f"Sampled {len(sampled)} of {len(pool)} sessions across {len(windows_tried)} windows")

        return SamplingResult(
            sessions=sampled,
            windows_tried=windows_tried,
            total_found=len(pool),
            state=state,
        )
