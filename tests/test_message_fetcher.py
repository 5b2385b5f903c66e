"""Batch message fetcher tests: batching, bounded concurrency, partial failure and fallback."""
import asyncio
from unittest.mock import AsyncMock

import pytest
from aiohttp import web

from kore_sampler.errors import AuthenticationError, RateLimitedError, RemoteApiError, RequestTimeoutError
from kore_sampler.kore_client import KoreApiClient
from kore_sampler.message_fetcher import BatchMessageFetcher, default_date_range, split_into_batches
from kore_sampler.models import KoreMessage, parse_instant

DATE_RANGE = ("2026-03-14T00:00:00.000Z", "2026-03-15T00:00:00.000Z")


def _messages_for(ids):
    return [
        {"sessionId": sid, "createdOn": "2026-03-14T13:05:00.000Z", "type": "incoming",
         "components": [{"cT": "text", "data": {"text": f"hello from {sid}"}}]}
        for sid in ids
    ]


@pytest.fixture
def client(kore_config):
    return KoreApiClient(kore_config)


class TestSplitIntoBatches:

    def test_47_ids_split_20_20_7(self):
        ids = [f"s{i}" for i in range(47)]

        batches = split_into_batches(ids, 20)

        assert [len(b) for b in batches] == [20, 20, 7]
        assert [sid for batch in batches for sid in batch] == ids

    def test_exact_multiple(self):
        assert [len(b) for b in split_into_batches([str(i) for i in range(40)], 20)] == [20, 20]

    def test_empty(self):
        assert split_into_batches([], 20) == []

    def test_rejects_zero_size(self):
        with pytest.raises(ValueError):
            split_into_batches(["a"], 0)


class TestBatchMessageFetcher:

    @pytest.mark.asyncio
    async def test_empty_input_makes_no_call(self, client):
        client.post_paginated = AsyncMock()

        assert await BatchMessageFetcher(client).fetch([]) == []
        client.post_paginated.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_batches_sent_with_ids_and_range(self, client):
        async def fake_paginated(url, payload, items_key="messages", page_size=None, timeout=None):
            return _messages_for(payload["sessionId"])

        client.post_paginated = AsyncMock(side_effect=fake_paginated)
        ids = [f"s{i}" for i in range(47)]

        messages = await BatchMessageFetcher(client).fetch(ids, DATE_RANGE)

        assert client.post_paginated.await_count == 3
        sent = sorted(len(call.args[1]["sessionId"]) for call in client.post_paginated.await_args_list)
        assert sent == [7, 20, 20]
        first_payload = client.post_paginated.await_args_list[0].args[1]
        assert (first_payload["dateFrom"], first_payload["dateTo"]) == DATE_RANGE
        assert all(call.kwargs["timeout"] == 30.0 for call in client.post_paginated.await_args_list)
        assert [m.session_id for m in messages] == ids
        assert all(isinstance(m, KoreMessage) for m in messages)

    @pytest.mark.asyncio
    async def test_concatenates_in_batch_order_not_completion_order(self, client):
        async def fake_paginated(url, payload, items_key="messages", page_size=None, timeout=None):
            ids = payload["sessionId"]
            # First batch finishes last
            await asyncio.sleep(0.03 if ids[0] == "s0" else 0.0)
            return _messages_for(ids)

        client.post_paginated = AsyncMock(side_effect=fake_paginated)
        ids = [f"s{i}" for i in range(25)]

        messages = await BatchMessageFetcher(client).fetch(ids, DATE_RANGE)

        assert [m.session_id for m in messages] == ids

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, client):
        in_flight = 0
        peak = 0

        async def fake_paginated(url, payload, items_key="messages", page_size=None, timeout=None):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return []

        client.post_paginated = AsyncMock(side_effect=fake_paginated)
        ids = [f"s{i}" for i in range(200)]  # 10 batches

        await BatchMessageFetcher(client, batch_size=20, concurrency=3).fetch(ids, DATE_RANGE)

        assert client.post_paginated.await_count == 10
        assert peak == 3

    @pytest.mark.asyncio
    async def test_failed_batches_excluded_others_kept(self, client):
        async def fake_paginated(url, payload, items_key="messages", page_size=None, timeout=None):
            ids = payload["sessionId"]
            if ids[0] == "s20":
                raise RequestTimeoutError(url, 30)
            if ids[0] == "s40":
                raise RateLimitedError("quota", url)
            return _messages_for(ids)

        client.post_paginated = AsyncMock(side_effect=fake_paginated)
        ids = [f"s{i}" for i in range(47)]

        messages = await BatchMessageFetcher(client).fetch(ids, DATE_RANGE)

        assert [m.session_id for m in messages] == ids[:20]
        assert client.post_paginated.await_count == 3  # no fallback: one batch succeeded

    @pytest.mark.asyncio
    async def test_all_batches_fail_triggers_single_fallback(self, client):
        async def fake_paginated(url, payload, items_key="messages", page_size=None, timeout=None):
            ids = payload["sessionId"]
            if len(ids) <= 20:
                raise RemoteApiError(502, "bad gateway", url)
            return _messages_for(ids)

        client.post_paginated = AsyncMock(side_effect=fake_paginated)
        ids = [f"s{i}" for i in range(47)]

        messages = await BatchMessageFetcher(client).fetch(ids, DATE_RANGE)

        assert client.post_paginated.await_count == 4
        fallback_payload = client.post_paginated.await_args_list[-1].args[1]
        assert fallback_payload["sessionId"] == ids
        assert len(messages) == 47

    @pytest.mark.asyncio
    async def test_fallback_failure_returns_empty(self, client):
        client.post_paginated = AsyncMock(side_effect=RemoteApiError(500, "down"))

        messages = await BatchMessageFetcher(client).fetch(["a", "b"], DATE_RANGE)

        assert messages == []
        assert client.post_paginated.await_count == 2

    @pytest.mark.asyncio
    async def test_auth_error_propagates(self, client):
        client.post_paginated = AsyncMock(side_effect=AuthenticationError("bad token"))

        with pytest.raises(AuthenticationError):
            await BatchMessageFetcher(client).fetch([f"s{i}" for i in range(47)], DATE_RANGE)

    @pytest.mark.asyncio
    async def test_progress_callback_reports_each_batch(self, client):
        client.post_paginated = AsyncMock(return_value=[])
        progress = []

        await BatchMessageFetcher(client).fetch(
            [f"s{i}" for i in range(47)], DATE_RANGE, progress_callback=lambda done, total: progress.append((done, total))
        )

        assert progress == [(1, 3), (2, 3), (3, 3)]

    @pytest.mark.asyncio
    async def test_default_range_is_last_seven_days(self, client):
        client.post_paginated = AsyncMock(return_value=[])

        await BatchMessageFetcher(client).fetch(["a"])

        payload = client.post_paginated.await_args.args[1]
        span = parse_instant(payload["dateTo"]) - parse_instant(payload["dateFrom"])
        assert span.days == 7

    @pytest.mark.asyncio
    async def test_grouped_partitions_by_session(self, client):
        client.post_paginated = AsyncMock(return_value=_messages_for(["a", "b", "a"]))

        grouped = await BatchMessageFetcher(client).fetch_grouped(["a", "b"], DATE_RANGE)

        assert {k: len(v) for k, v in grouped.items()} == {"a": 2, "b": 1}

    def test_batch_size_above_platform_limit_rejected(self, client):
        with pytest.raises(ValueError):
            BatchMessageFetcher(client, batch_size=21)

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_only_its_batch(self, client):
        async def fake_paginated(url, payload, items_key="messages", page_size=None, timeout=None):
            ids = payload["sessionId"]
            if ids[0] == "s0":
                raise ValueError("Expecting value: line 1 column 1 (char 0)")
            return _messages_for(ids)

        client.post_paginated = AsyncMock(side_effect=fake_paginated)
        ids = [f"s{i}" for i in range(40)]

        messages = await BatchMessageFetcher(client).fetch(ids, DATE_RANGE)

        assert [m.session_id for m in messages] == ids[20:]
        assert client.post_paginated.await_count == 2

    @pytest.mark.asyncio
    async def test_batch_timeout_covers_whole_batch(self, client):
        async def fake_paginated(url, payload, items_key="messages", page_size=None, timeout=None):
            ids = payload["sessionId"]
            if ids[0] == "s0":
                # Each page is quick but the batch as a whole overruns
                for _ in range(5):
                    await asyncio.sleep(0.05)
            return _messages_for(ids)

        client.post_paginated = AsyncMock(side_effect=fake_paginated)
        ids = [f"s{i}" for i in range(40)]

        messages = await BatchMessageFetcher(client, batch_timeout=0.1).fetch(ids, DATE_RANGE)

        assert [m.session_id for m in messages] == ids[20:]


class TestAgainstLocalServer:

    @pytest.mark.medium
    @pytest.mark.asyncio
    async def test_html_success_body_fails_one_batch(self, platform_server):
        async def handler(request):
            ids = (await request.json())["sessionId"]
            if "s0" in ids:
                return web.Response(status=200, text="<html>gateway</html>", content_type="text/html")
            return web.json_response({"messages": _messages_for(["s20"]), "moreAvailable": False})

        async with platform_server(handler) as config:
            async with KoreApiClient(config) as client:
                messages = await BatchMessageFetcher(client).fetch([f"s{i}" for i in range(40)], DATE_RANGE)

        assert [m.session_id for m in messages] == ["s20"]

    @pytest.mark.medium
    @pytest.mark.asyncio
    async def test_every_batch_unusable_falls_back_once(self, platform_server):
        requests = []

        async def handler(request):
            ids = (await request.json())["sessionId"]
            requests.append(len(ids))
            if len(ids) <= 20:
                return web.Response(status=200, text="null")
            return web.json_response({"messages": _messages_for(ids[:2]), "moreAvailable": False})

        async with platform_server(handler) as config:
            async with KoreApiClient(config) as client:
                messages = await BatchMessageFetcher(client).fetch([f"s{i}" for i in range(40)], DATE_RANGE)

        assert sorted(requests) == [20, 20, 40]
        assert [m.session_id for m in messages] == ["s0", "s1"]


def test_default_date_range_format():
    date_from, date_to = default_date_range(parse_instant("2026-03-14T12:00:00Z"))

    assert date_from == "2026-03-07T12:00:00.000Z"
    assert date_to == "2026-03-14T12:00:00.000Z"
