"""
Session sources.

The sampler and pipeline read sessions through a SessionSource, chosen
explicitly by configuration (`source: remote | synthetic`):

- RemoteSessionSource talks to the Kore.ai public API.
- SyntheticSessionSource generates deterministic sessions offline, in the
  vendor's raw message shape, for demos and tests.
"""
import json
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .config import KoreConfig
from .kore_client import KoreApiClient
from .message_fetcher import BatchMessageFetcher, DateRange
from .models import (
    KoreMessage,
    MessageCounts,
    OutcomeCategory,
    SessionMetadata,
    SessionTag,
    parse_instant,
    to_iso,
)
from .session_fetcher import SessionMetadataFetcher

logger = logging.getLogger(__name__)

DateLike = Union[str, datetime]


class SessionSource(ABC):
    """Where sessions and their messages come from."""

    @property
    @abstractmethod
    def source_name(self) -> str:
        """Return the name of this source."""
        pass

    @abstractmethod
    async def fetch_session_metadata(
        self,
        date_from: DateLike,
        date_to: DateLike,
        skip: int = 0,
        limit: int = 10000,
    ) -> List[SessionMetadata]:
        """
        List sessions (no messages) that started within a date range.

        Args:
            date_from: Range start
            date_to: Range end
            skip: Records to skip per category
            limit: Max records per category

        Returns:
            SessionMetadata tagged with its outcome category
        """
        pass

    @abstractmethod
    async def fetch_messages(
        self,
        session_ids: Sequence[str],
        date_range: Optional[DateRange] = None,
    ) -> List[KoreMessage]:
        """
        Fetch raw messages for the given sessions.

        Args:
            session_ids: Sessions to fetch
            date_range: (dateFrom, dateTo) ISO strings bounding message times

        Returns:
            Flat list of raw messages across all sessions
        """
        pass

    async def __aenter__(self) -> "SessionSource":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        pass


class RemoteSessionSource(SessionSource):
    """Sessions from the Kore.ai public API."""

    def __init__(self, config: KoreConfig, client: Optional[KoreApiClient] = None):
        self.config = config
        self.client = client or KoreApiClient(config)
        self.metadata_fetcher = SessionMetadataFetcher(self.client)
        self.message_fetcher = BatchMessageFetcher(
            self.client,
            batch_size=config.batch_size,
            concurrency=config.batch_concurrency,
            batch_timeout=config.request_timeout_seconds,
            page_limit=config.message_page_limit,
        )

    @property
    def source_name(self) -> str:
        return "remote"

    async def __aenter__(self) -> "RemoteSessionSource":
        await self.client.__aenter__()
        return self

    async def close(self) -> None:
        await self.client.close()

    async def fetch_session_metadata(
        self,
        date_from: DateLike,
        date_to: DateLike,
        skip: int = 0,
        limit: int = 10000,
    ) -> List[SessionMetadata]:
        return await self.metadata_fetcher.fetch(date_from, date_to, skip=skip, limit=limit)

    async def fetch_messages(
        self,
        session_ids: Sequence[str],
        date_range: Optional[DateRange] = None,
    ) -> List[KoreMessage]:
        return await self.message_fetcher.fetch(session_ids, date_range)


# ==================== SYNTHETIC SESSIONS ====================

HANGUP_COMMAND = {"type": "command", "command": "redirect", "data": [{"verb": "hangup"}]}
WELCOME_TASK = "Welcome Task"
GREETING = (
    '<speak><prosody rate="medium">Thank you for calling Member Services.</prosody>'
    '<break time="300ms"/>How can I help you today?</speak>'
)
CLOSING = (
    "I am closing our current conversation as I have not received any input from you. "
    "We can start over when you need."
)


@dataclass(frozen=True)
class ConversationTemplate:
    intent: str
    outcome: OutcomeCategory
    turns: Tuple[Tuple[str, str], ...]


CONVERSATION_TEMPLATES: Tuple[ConversationTemplate, ...] = (
    ConversationTemplate(
        intent="Claim Status",
        outcome=OutcomeCategory.SELF_SERVICE,
        turns=(
            ("user", "I need to check the status of my claim"),
            ("bot", "I can help you check your claim status. Please provide your claim number."),
            ("user", "My claim number is 123456789"),
            ("bot", 'I found claim 123456789. The status is currently "Under Review".'),
            ("user", "How long does the review process take?"),
            ("bot", "The typical review process takes 5-7 business days."),
        ),
    ),
    ConversationTemplate(
        intent="Billing",
        outcome=OutcomeCategory.AGENT,
        turns=(
            ("user", "I have a question about my bill"),
            ("bot", "I can help with billing questions. Please provide your member ID."),
            ("user", "My member ID is MEM123456"),
            ("bot", "I couldn&#39;t find a member with ID MEM123456. Could you verify it?"),
            ("user", "Let me check my card... I think it might be MEM654321"),
            ("bot", "I&#39;m still unable to locate your account. Let me transfer you to a representative."),
        ),
    ),
    ConversationTemplate(
        intent="Eligibility",
        outcome=OutcomeCategory.SELF_SERVICE,
        turns=(
            ("user", "I need to check if a procedure is covered under my plan"),
            ("bot", "Please provide your member ID and the procedure name."),
            ("user", "My member ID is 987654321 and I need coverage for an MRI"),
            ("bot", "MRIs are covered at 80% after your deductible is met."),
        ),
    ),
    ConversationTemplate(
        intent="Appointment Scheduling",
        outcome=OutcomeCategory.DROP_OFF,
        turns=(
            ("user", "I want to schedule an appointment"),
            ("bot", "Sure. Which provider would you like to see?"),
        ),
    ),
    ConversationTemplate(
        intent="Password Reset",
        outcome=OutcomeCategory.AGENT,
        turns=(
            ("user", "I forgot my password for the member portal"),
            ("bot", "I can send a reset link. Please confirm the email on your account."),
            ("user", "I don't have access to that email anymore"),
            ("bot", "Updating your email requires identity verification &amp; a representative. Transferring you now."),
        ),
    ),
)


@dataclass(frozen=True)
class SyntheticSession:
    metadata: SessionMetadata
    messages: Tuple[Dict[str, Any], ...]


def _raw_message(session_id: str, speaker: str, text: str, at: datetime) -> Dict[str, Any]:
    return {
        "sessionId": session_id,
        "createdBy": "u-synthetic" if speaker == "user" else "st-synthetic-bot",
        "createdOn": to_iso(at),
        "type": "incoming" if speaker == "user" else "outgoing",
        "timestampValue": int(at.timestamp() * 1000),
        "components": [{"cT": "text", "data": {"text": text}}],
    }


class SyntheticSessionSource(SessionSource):
    """
    Deterministic offline sessions.

    Time is divided into hour slots; each slot holds 0-3 sessions derived
    from (seed, slot), so overlapping windows see the same sessions and
    messages can be regenerated from a session ID alone. Transcripts carry
    the same artifacts the platform produces: welcome-task markers, SSML,
    HTML entities, hangup commands, MAX_NO_INPUT and the inactivity closing
    message.
    """

    MAX_SESSIONS_PER_SLOT = 3
    ID_PREFIX = "synthetic"

    def __init__(self, seed: int = 42):
        self.seed = seed
        self._slots: Dict[datetime, List[SyntheticSession]] = {}

    @property
    def source_name(self) -> str:
        return "synthetic"

    def _session_id(self, slot: datetime, index: int) -> str:
        return f"{self.ID_PREFIX}-{slot:%Y%m%d%H}-{index}"

    def _parse_session_id(self, session_id: str) -> Optional[Tuple[datetime, int]]:
        parts = session_id.split("-")
        if len(parts) != 3 or parts[0] != self.ID_PREFIX:
            return None
        try:
            slot = datetime.strptime(parts[1] + "+0000", "%Y%m%d%H%z")
            return slot, int(parts[2])
        except ValueError:
            return None

    def _build_session(self, rng: random.Random, slot: datetime, index: int) -> SyntheticSession:
        session_id = self._session_id(slot, index)
        template = rng.choice(CONVERSATION_TEMPLATES)
        start = slot + timedelta(seconds=rng.randint(0, 3599))

        at = start
        script: List[Tuple[str, str]] = [("bot", WELCOME_TASK), ("bot", GREETING)]
        script.extend(template.turns)
        if template.outcome == OutcomeCategory.AGENT:
            script.append(("bot", json.dumps(HANGUP_COMMAND)))

        messages = []
        for speaker, text in script:
            messages.append(_raw_message(session_id, speaker, text, at))
            at += timedelta(seconds=rng.randint(5, 40))

        if template.outcome == OutcomeCategory.DROP_OFF:
            messages.append(_raw_message(session_id, "user", "MAX_NO_INPUT", at))
            at += timedelta(seconds=30)
            messages.append(_raw_message(session_id, "bot", CLOSING, at))

        user_count = sum(1 for m in messages if m["type"] == "incoming")
        metadata = SessionMetadata(
            session_id=session_id,
            user_id=f"u-{rng.randint(1000, 9999)}",
            start_time=to_iso(start),
            end_time=to_iso(at),
            outcome_category=template.outcome,
            tags=(SessionTag(name="intent", value=template.intent),),
            message_counts=MessageCounts(
                total=len(messages), user=user_count, bot=len(messages) - user_count
            ),
            duration_seconds=(at - start).total_seconds(),
        )
        return SyntheticSession(metadata=metadata, messages=tuple(messages))

    def _slot_sessions(self, slot: datetime) -> List[SyntheticSession]:
        if slot not in self._slots:
            rng = random.Random(f"{self.seed}:{slot:%Y%m%d%H}")
            count = rng.randint(0, self.MAX_SESSIONS_PER_SLOT)
            self._slots[slot] = [self._build_session(rng, slot, i) for i in range(count)]
        return self._slots[slot]

    async def fetch_session_metadata(
        self,
        date_from: DateLike,
        date_to: DateLike,
        skip: int = 0,
        limit: int = 10000,
    ) -> List[SessionMetadata]:
        start = parse_instant(date_from)
        end = parse_instant(date_to)
        if start is None or end is None:
            raise ValueError(f"Invalid date range: {date_from!r} - {date_to!r}")

        found: List[SessionMetadata] = []
        slot = start.replace(minute=0, second=0, microsecond=0)
        while slot < end:
            for session in self._slot_sessions(slot):
                session_start = parse_instant(session.metadata.start_time)
                if start <= session_start < end:
                    found.append(session.metadata)
            slot += timedelta(hours=1)

        # Per-category skip/limit, like the remote API
        result: List[SessionMetadata] = []
        for category in (OutcomeCategory.AGENT, OutcomeCategory.SELF_SERVICE, OutcomeCategory.DROP_OFF):
            in_category = [m for m in found if m.outcome_category == category]
            result.extend(in_category[skip:skip + limit])

        logger.info(f"Generated {len(result)} synthetic sessions from {to_iso(start)} to {to_iso(end)}")
        return result

    async def fetch_messages(
        self,
        session_ids: Sequence[str],
        date_range: Optional[DateRange] = None,
    ) -> List[KoreMessage]:
        bounds = None
        if date_range:
            bounds = (parse_instant(date_range[0]), parse_instant(date_range[1]))

        messages: List[KoreMessage] = []
        for session_id in session_ids:
            parsed = self._parse_session_id(session_id)
            if parsed is None:
                logger.debug(f"Unknown synthetic session ID: {session_id}")
                continue
            slot, index = parsed
            sessions = self._slot_sessions(slot)
            if index >= len(sessions):
                continue
            for raw in sessions[index].messages:
                if bounds and None not in bounds:
                    created = parse_instant(raw["createdOn"])
                    if not bounds[0] <= created <= bounds[1]:
                        continue
                messages.append(KoreMessage.from_api(raw))
        return messages


def create_session_source(config: KoreConfig, client: Optional[KoreApiClient] = None) -> SessionSource:
    """Build the SessionSource selected by config.source."""
    if config.source == "synthetic":
        logger.info(f"Using synthetic sessions (seed={config.synthetic_seed})")
        return SyntheticSessionSource(seed=config.synthetic_seed)
    logger.info(f"Using Kore.ai API for bot: {config.name}")
    return RemoteSessionSource(config, client=client)
