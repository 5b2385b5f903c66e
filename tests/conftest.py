"""
Pytest configuration for kore_sampler tests.

Test Tier System:
- fast (default): Pure unit tests, no I/O
- medium: Mocked aiohttp sessions, synthetic source, filesystem ops
- slow: End-to-end pipeline runs

Run tiers:
- pytest                          # All tiers
- pytest -m fast                  # Fast only (quick feedback)
- pytest -m "not slow"            # Fast + Medium (pre-merge)
- pytest -m slow                  # Slow only

Note: Unmarked tests are auto-assigned to 'fast' tier. To add a new test:
- No marker needed for fast (unit) tests
- Add @pytest.mark.medium for mocked-HTTP tests
- Add @pytest.mark.slow for pipeline tests
- Tests marked @pytest.mark.integration (without tier) default to 'medium'

Credential Safety:
- KORE_* variables are cleared for every test so a developer's .env or shell
  can never route a test to the live platform.
"""

import sys
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from kore_sampler.config import ENV_OVERRIDES, KoreConfig  # noqa: E402


# =============================================================================
# Tier Auto-Assignment
# =============================================================================

def pytest_collection_modifyitems(config, items):
    """
    Automatically assign tier markers to unmarked tests.

    Tests are fast by default unless explicitly marked as medium or slow.
    Tests marked with @pytest.mark.integration (but no tier) are assigned
    to 'medium'.
    """
    for item in items:
        has_tier = (
            list(item.iter_markers(name='fast')) or
            list(item.iter_markers(name='medium')) or
            list(item.iter_markers(name='slow'))
        )
        if has_tier:
            continue

        # Skip if test is marked as skip (don't assign tier to skipped tests)
        if list(item.iter_markers(name='skip')):
            continue

        if list(item.iter_markers(name='integration')):
            item.add_marker(pytest.mark.medium)
            continue

        item.add_marker(pytest.mark.fast)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def clean_kore_env(monkeypatch):
    """Remove KORE_* variables and stop load_dotenv from reading a local .env."""
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("kore_sampler.config.load_dotenv", lambda *args, **kwargs: False)


@pytest.fixture(scope="session")
def project_root():
    """Return project root path (session-scoped for efficiency)."""
    return PROJECT_ROOT


@pytest.fixture
def kore_config():
    """Config with fake credentials and no 429 cooldown."""
    return KoreConfig(
        bot_id="st-test-bot",
        client_id="cs-test-client",
        client_secret="test-secret-value-for-hs256-signing",
        name="Test Bot",
        rate_limit_cooldown_seconds=0,
    )


@pytest.fixture
def synthetic_config():
    return KoreConfig(source="synthetic", synthetic_seed=7)


@pytest.fixture
def platform_server(kore_config):
    """
    Factory serving a request handler on a local aiohttp server.

    Usage:
        async with platform_server(handler) as config:
            client = KoreApiClient(config)
    """
    @asynccontextmanager
    async def serve(handler):
        app = web.Application()
        app.router.add_post("/api/public/bot/{bot_id}/{endpoint}", handler)
        async with TestServer(app) as server:
            yield kore_config.model_copy(update={"base_url": str(server.make_url("/api/public"))})

    return serve


def _raw_session(session_id, total=4, start="2026-03-14T13:05:00.000Z", end="2026-03-14T13:10:00.000Z"):
    """A getSessions record in the vendor's shape."""
    return {
        "sessionId": session_id,
        "userId": f"u-{session_id}",
        "start_time": start,
        "end_time": end,
        "tags": {"userTags": [{"name": "intent", "value": "billing"}], "sessionTags": []},
        "metrics": {"total_messages": total, "user_messages": total // 2, "bot_messages": total - total // 2},
    }


def _raw_message(session_id, text, created_on, incoming=False, component="text"):
    """A getMessagesV2 record in the vendor's shape."""
    return {
        "sessionId": session_id,
        "createdBy": "u-1" if incoming else "st-test-bot",
        "createdOn": created_on,
        "type": "incoming" if incoming else "outgoing",
        "components": [{"cT": component, "data": {"text": text}}],
    }


@pytest.fixture
def raw_session():
    """Factory for vendor session records."""
    return _raw_session


@pytest.fixture
def raw_message():
    """Factory for vendor message records."""
    return _raw_message
