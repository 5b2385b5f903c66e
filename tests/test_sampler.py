"""Time-window sampler tests: expansion, dedup, strict thresholds and ET conversion."""
import random
from datetime import date, datetime, timezone

import pytest

from kore_sampler.errors import AuthenticationError, InsufficientSessionsError, RemoteApiError
from kore_sampler.models import MessageCounts, OutcomeCategory, SessionMetadata
from kore_sampler.sampler import (
    EXPANSION_STRATEGY,
    MAX_EXPANSIONS,
    SamplingState,
    TimeWindowSampler,
    et_offset_hours,
    generate_time_windows,
    parse_et_datetime,
)
from kore_sampler.sources import SessionSource

ANCHOR = datetime(2026, 3, 14, 13, 0, tzinfo=timezone.utc)


def _session(session_id, total=4):
    return SessionMetadata(
        session_id=session_id,
        outcome_category=OutcomeCategory.SELF_SERVICE,
        message_counts=MessageCounts(total=total),
    )


class ScriptedSource(SessionSource):
    """Returns one scripted response per window, in order."""

    def __init__(self, *windows):
        self.windows = list(windows)
        self.calls = []

    @property
    def source_name(self):
        return "scripted"

    async def fetch_session_metadata(self, date_from, date_to, skip=0, limit=10000):
        self.calls.append((date_from, date_to))
        response = self.windows.pop(0) if self.windows else []
        if isinstance(response, Exception):
            raise response
        return response

    async def fetch_messages(self, session_ids, date_range=None):
        return []


class TestTimeWindows:

    def test_default_strategy(self):
        windows = generate_time_windows(ANCHOR)

        assert [w.duration_hours for w in windows] == [3, 6, 12, 144]
        assert all(w.start == ANCHOR for w in windows)
        assert windows[-1].end == datetime(2026, 3, 20, 13, 0, tzinfo=timezone.utc)
        assert windows[0].label == "Initial 3-hour window"

    def test_naive_anchor_treated_as_utc(self):
        windows = generate_time_windows(datetime(2026, 3, 14, 13, 0))

        assert windows[0].start == ANCHOR

    @pytest.mark.parametrize("month,offset", [(1, 5), (2, 5), (3, 4), (7, 4), (10, 4), (11, 5), (12, 5)])
    def test_et_offset_table(self, month, offset):
        assert et_offset_hours(date(2026, month, 15)) == offset

    def test_parse_et_summer(self):
        assert parse_et_datetime("2026-07-01", "09:30") == datetime(2026, 7, 1, 13, 30, tzinfo=timezone.utc)

    def test_parse_et_rolls_over_midnight(self):
        assert parse_et_datetime("2026-12-31", "21:00") == datetime(2027, 1, 1, 2, 0, tzinfo=timezone.utc)

    def test_parse_et_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_et_datetime("14/03/2026", "9am")


class TestTimeWindowSampler:

    @pytest.mark.asyncio
    async def test_stops_at_first_sufficient_window(self):
        source = ScriptedSource([_session(f"s{i}") for i in range(12)])
        sampler = TimeWindowSampler(source, rng=random.Random(1))

        result = await sampler.sample(ANCHOR, 10)

        assert result.state == SamplingState.SUFFICIENT
        assert len(result.sessions) == 10
        assert len(result.windows_tried) == 1
        assert result.total_found == 12
        assert len(source.calls) == 1

    @pytest.mark.asyncio
    async def test_sample_is_subset_without_duplicates(self):
        pool = [_session(f"s{i}") for i in range(40)]
        sampler = TimeWindowSampler(ScriptedSource(pool), rng=random.Random(3))

        result = await sampler.sample(ANCHOR, 15)

        ids = [s.session_id for s in result.sessions]
        assert len(ids) == 15
        assert len(set(ids)) == 15
        assert set(ids) <= {s.session_id for s in pool}

    @pytest.mark.asyncio
    async def test_exact_count_returns_whole_pool(self):
        pool = [_session(f"s{i}") for i in range(10)]
        sampler = TimeWindowSampler(ScriptedSource(pool))

        result = await sampler.sample(ANCHOR, 10)

        assert {s.session_id for s in result.sessions} == {s.session_id for s in pool}

    @pytest.mark.asyncio
    async def test_overlapping_windows_count_sessions_once(self):
        first = [_session(f"s{i}") for i in range(6)]
        # Second window repeats the first plus five new sessions
        second = first + [_session(f"t{i}") for i in range(5)]
        sampler = TimeWindowSampler(ScriptedSource(first, second))

        result = await sampler.sample(ANCHOR, 11)

        assert result.total_found == 11
        assert len(result.windows_tried) == 2

    @pytest.mark.asyncio
    async def test_duplicate_does_not_reach_threshold(self):
        first = [_session(f"s{i}") for i in range(9)]
        sampler = TimeWindowSampler(ScriptedSource(first, first + [_session("s0")], [], []))

        with pytest.raises(InsufficientSessionsError) as exc_info:
            await sampler.sample(ANCHOR, 10)

        assert exc_info.value.found == 9

    @pytest.mark.asyncio
    async def test_shallow_sessions_filtered(self):
        sessions = [_session(f"s{i}", total=4) for i in range(10)] + [_session(f"x{i}", total=1) for i in range(5)]
        sampler = TimeWindowSampler(ScriptedSource(sessions))

        result = await sampler.sample(ANCHOR, 10)

        assert all(s.session_id.startswith("s") for s in result.sessions)
        assert result.total_found == 10

    @pytest.mark.asyncio
    async def test_five_sessions_after_all_windows_is_insufficient(self):
        source = ScriptedSource([_session(f"s{i}") for i in range(5)], [], [], [])
        sampler = TimeWindowSampler(source)

        with pytest.raises(InsufficientSessionsError) as exc_info:
            await sampler.sample(ANCHOR, 10)

        assert exc_info.value.found == 5
        assert exc_info.value.required == 10
        assert len(source.calls) == len(EXPANSION_STRATEGY)

    @pytest.mark.asyncio
    async def test_between_minimum_and_target_still_fails(self):
        source = ScriptedSource([_session(f"s{i}") for i in range(15)], [], [], [])
        sampler = TimeWindowSampler(source)

        with pytest.raises(InsufficientSessionsError) as exc_info:
            await sampler.sample(ANCHOR, 20)

        assert exc_info.value.found == 15

    @pytest.mark.asyncio
    async def test_target_below_minimum_rejected(self):
        with pytest.raises(ValueError):
            await TimeWindowSampler(ScriptedSource()).sample(ANCHOR, 5)

    @pytest.mark.asyncio
    async def test_failed_window_counts_as_empty(self):
        source = ScriptedSource(RemoteApiError(500, "boom"), [_session(f"s{i}") for i in range(10)])

        result = await TimeWindowSampler(source).sample(ANCHOR, 10)

        assert len(result.windows_tried) == 2

    @pytest.mark.asyncio
    async def test_auth_failure_propagates(self):
        source = ScriptedSource(AuthenticationError("bad token"))

        with pytest.raises(AuthenticationError):
            await TimeWindowSampler(source).sample(ANCHOR, 10)

    @pytest.mark.asyncio
    async def test_progress_callback(self):
        events = []
        source = ScriptedSource([_session(f"s{i}") for i in range(10)])

        await TimeWindowSampler(source).sample(
            ANCHOR, 10, progress_callback=lambda *args: events.append(args)
        )

        assert events[0] == ("Searching in Initial 3-hour window...", 0, 0, "Initial 3-hour window")
        assert events[-1][1] == 10
        assert "sufficient" in events[-1][0]

    def test_strategy_capped(self):
        with pytest.raises(ValueError):
            TimeWindowSampler(ScriptedSource(), strategy=[(h, f"{h}h") for h in range(1, MAX_EXPANSIONS + 2)])

    @pytest.mark.asyncio
    async def test_custom_strategy(self):
        source = ScriptedSource([], [_session(f"s{i}") for i in range(10)])
        sampler = TimeWindowSampler(source, strategy=[(1, "One hour"), (2, "Two hours")])

        result = await sampler.sample(ANCHOR, 10)

        assert [w.label for w in result.windows_tried] == ["One hour", "Two hours"]
