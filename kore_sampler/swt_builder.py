"""
Session With Transcript (SWT) assembly.

Joins one session's metadata with its raw platform messages: each message
is sanitized, dropped messages are discarded, survivors are put in
chronological order, and the counts are computed from what remains.
"""
import logging
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .models import (
    KoreMessage,
    Message,
    OutcomeCategory,
    SessionMetadata,
    SessionWithTranscript,
    Speaker,
    parse_instant,
)
from .sanitizer import drop_trailing_closing_message, sanitize

logger = logging.getLogger(__name__)

RawMessage = Union[KoreMessage, Dict[str, Any]]


def _as_kore_message(raw: RawMessage) -> KoreMessage:
    return raw if isinstance(raw, KoreMessage) else KoreMessage.from_api(raw)


def to_message(raw: RawMessage) -> Optional[Message]:
    """Sanitize one raw message, or None if it carries no conversation content."""
    kore_message = _as_kore_message(raw)
    text = sanitize(kore_message.raw_text, kore_message.speaker)
    if text is None:
        logger.debug(
            f"Filtered out message in session {kore_message.session_id} ({kore_message.speaker.value})"
        )
        return None
    return Message(timestamp=kore_message.created_on, speaker=kore_message.speaker, text=text)


def _chronological_key(message: Message) -> Tuple[int, float]:
    # Unparseable timestamps sort last; sorted() keeps their arrival order
    instant = parse_instant(message.timestamp)
    if instant is None:
        return (1, 0.0)
    return (0, instant.timestamp())


def compute_duration_seconds(start_time: Any, end_time: Any) -> Optional[float]:
    """Seconds between two instants, or None if either fails to parse or end precedes start."""
    start = parse_instant(start_time)
    end = parse_instant(end_time)
    if start is None or end is None:
        return None
    duration = (end - start).total_seconds()
    return duration if duration >= 0 else None


def assemble(metadata: SessionMetadata, raw_messages: Iterable[RawMessage]) -> SessionWithTranscript:
    """Build the SWT for one session from its metadata and raw messages."""
    messages = [m for m in (to_message(raw) for raw in raw_messages) if m is not None]
    messages = sorted(messages, key=_chronological_key)
    messages = drop_trailing_closing_message(messages)

    user_count = sum(1 for m in messages if m.speaker == Speaker.USER)
    bot_count = len(messages) - user_count

    return SessionWithTranscript(
        session_id=metadata.session_id,
        user_id=metadata.user_id,
        start_time=metadata.start_time,
        end_time=metadata.end_time,
        outcome_category=metadata.outcome_category,
        tags=metadata.tags,
        metrics=metadata.message_counts,
        messages=tuple(messages),
        duration_seconds=compute_duration_seconds(metadata.start_time, metadata.end_time),
        message_count=len(messages),
        user_message_count=user_count,
        bot_message_count=bot_count,
    )


def group_by_session(messages: Iterable[RawMessage]) -> Dict[str, List[KoreMessage]]:
    """Partition a flat message list by session ID, preserving order within each session."""
    grouped: Dict[str, List[KoreMessage]] = {}
    for raw in messages:
        message = _as_kore_message(raw)
        if not message.session_id:
            continue
        grouped.setdefault(message.session_id, []).append(message)
    return grouped


def assemble_many(
    metadata: Sequence[SessionMetadata],
    raw_messages: Iterable[RawMessage],
) -> List[SessionWithTranscript]:
    """Assemble SWTs for many sessions from one flat message list, keeping metadata order."""
    by_session = group_by_session(raw_messages)
    swts = [assemble(m, by_session.get(m.session_id, [])) for m in metadata]
    logger.info(
        f"Assembled {len(swts)} SWTs with {sum(s.message_count for s in swts)} messages"
    )
    return swts


def summarize(swts: Sequence[SessionWithTranscript]) -> Dict[str, Any]:
    """Aggregate statistics over a set of SWTs."""
    if not swts:
        return {
            "total_sessions": 0,
            "total_messages": 0,
            "total_user_messages": 0,
            "total_bot_messages": 0,
            "sessions_with_messages": 0,
            "average_messages_per_session": 0.0,
            "average_duration_seconds": 0.0,
            "outcome_category_breakdown": {},
            "average_user_messages_per_session": 0.0,
            "average_bot_messages_per_session": 0.0,
        }

    total_messages = sum(s.message_count for s in swts)
    total_user = sum(s.user_message_count for s in swts)
    total_bot = sum(s.bot_message_count for s in swts)
    durations = [s.duration_seconds for s in swts if s.duration_seconds is not None]
    breakdown = Counter(s.outcome_category.value for s in swts)

    return {
        "total_sessions": len(swts),
        "total_messages": total_messages,
        "total_user_messages": total_user,
        "total_bot_messages": total_bot,
        "sessions_with_messages": sum(1 for s in swts if s.message_count > 0),
        "average_messages_per_session": total_messages / len(swts),
        "average_duration_seconds": sum(durations) / len(durations) if durations else 0.0,
        "outcome_category_breakdown": dict(breakdown),
        "average_user_messages_per_session": total_user / len(swts),
        "average_bot_messages_per_session": total_bot / len(swts),
    }


def filter_swts(
    swts: Iterable[SessionWithTranscript],
    outcome_category: Optional[OutcomeCategory] = None,
    has_messages: Optional[bool] = None,
    min_duration: Optional[float] = None,
    max_duration: Optional[float] = None,
    min_messages: Optional[int] = None,
    max_messages: Optional[int] = None,
) -> List[SessionWithTranscript]:
    """Filter SWTs by category, message presence, duration and message count.

    Duration bounds exclude SWTs whose duration is unknown.
    """
    result = []
    for swt in swts:
        if outcome_category is not None and swt.outcome_category != outcome_category:
            continue
        if has_messages is not None and (swt.message_count > 0) != has_messages:
            continue
        if min_duration is not None and (swt.duration_seconds is None or swt.duration_seconds < min_duration):
            continue
        if max_duration is not None and (swt.duration_seconds is None or swt.duration_seconds > max_duration):
            continue
        if min_messages is not None and swt.message_count < min_messages:
            continue
        if max_messages is not None and swt.message_count > max_messages:
            continue
        result.append(swt)
    return result
