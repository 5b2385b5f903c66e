"""
Data model for session retrieval and transcript assembly.

Pydantic models for the vendor's raw records (sessions, messages and their
content components) and for the cleaned records handed to analysis:
SessionMetadata, Message and SessionWithTranscript (SWT).
"""
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


class OutcomeCategory(str, Enum):
    """How a session concluded (the platform's "containment type")."""

    AGENT = "agent"                 # escalated to a human agent
    SELF_SERVICE = "selfService"    # handled end-to-end by the bot
    DROP_OFF = "dropOff"            # abandoned by the user
    UNKNOWN = "unknown"

    @classmethod
    def coerce(cls, value: Any) -> "OutcomeCategory":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


# Categories the getSessions endpoint can be queried with, in merge order
FETCHABLE_CATEGORIES: Tuple[OutcomeCategory, ...] = (
    OutcomeCategory.AGENT,
    OutcomeCategory.SELF_SERVICE,
    OutcomeCategory.DROP_OFF,
)


class Speaker(str, Enum):
    USER = "user"
    BOT = "bot"


def parse_instant(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or datetime into an aware UTC datetime, or None."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    """Format as the platform expects: UTC, millisecond precision, Z suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class TimeWindow(BaseModel):
    """One step of the sampler's expansion strategy."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    duration_hours: float
    label: str


class SessionTag(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    value: str = ""


def parse_tags(raw: Any) -> Tuple[SessionTag, ...]:
    """
    Normalize the vendor's tag payload into an ordered tuple of SessionTag.

    Accepts a list of {name, value} dicts, a list of plain strings, or an
    object with userTags/sessionTags lists (flattened in that order).
    Anything else yields an empty tuple.
    """
    if isinstance(raw, dict):
        items = []
        for key in ("userTags", "sessionTags"):
            section = raw.get(key)
            if isinstance(section, list):
                items.extend(section)
        raw = items
    if not isinstance(raw, list):
        return ()

    tags = []
    for item in raw:
        if isinstance(item, str):
            tags.append(SessionTag(name=item))
        elif isinstance(item, dict) and item.get("name") is not None:
            value = item.get("value")
            if isinstance(value, list):
                value = ",".join(str(v) for v in value)
            tags.append(SessionTag(name=str(item["name"]), value="" if value is None else str(value)))
    return tuple(tags)


class MessageCounts(BaseModel):
    """Message totals. On metadata these are vendor-reported, pre-filter counts."""

    model_config = ConfigDict(frozen=True)

    total: int = 0
    user: int = 0
    bot: int = 0

    @classmethod
    def from_api(cls, raw: Any) -> "MessageCounts":
        if not isinstance(raw, dict):
            return cls()
        return cls(
            total=_as_int(raw.get("total_messages")),
            user=_as_int(raw.get("user_messages")),
            bot=_as_int(raw.get("bot_messages")),
        )


class SessionMetadata(BaseModel):
    """A session as listed by getSessions. Never carries messages."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    user_id: str = ""
    start_time: str = ""
    end_time: str = ""
    outcome_category: OutcomeCategory = OutcomeCategory.UNKNOWN
    tags: Tuple[SessionTag, ...] = ()
    message_counts: MessageCounts = Field(default_factory=MessageCounts)
    duration_seconds: float = 0.0

    @classmethod
    def from_api(cls, raw: Dict[str, Any], category: Optional[OutcomeCategory] = None) -> "SessionMetadata":
        """Map a raw getSessions record, tagging it with the category it was fetched under."""
        if category is None:
            category = OutcomeCategory.coerce(raw.get("containment_type"))
        return cls(
            session_id=str(raw.get("sessionId") or raw.get("session_id") or ""),
            user_id=str(raw.get("userId") or raw.get("user_id") or ""),
            start_time=str(raw.get("start_time") or raw.get("startTime") or ""),
            end_time=str(raw.get("end_time") or raw.get("endTime") or ""),
            outcome_category=category,
            tags=parse_tags(raw.get("tags")),
            message_counts=MessageCounts.from_api(raw.get("metrics")),
            duration_seconds=_as_float(raw.get("duration_seconds")),
        )


# ==================== RAW MESSAGE COMPONENTS ====================
# The platform wraps message content in components keyed by "cT".
# Each known shape maps totally to the sanitizer's input: str or None.

class TextComponent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    text: Optional[str] = None

    def readable_text(self) -> Optional[str]:
        return self.text if isinstance(self.text, str) and self.text else None


class CardComponent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["card"] = "card"
    title: Optional[str] = None
    text: Optional[str] = None

    def readable_text(self) -> Optional[str]:
        return self.text or self.title or None


class PostbackComponent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["postback"] = "postback"
    title: Optional[str] = None
    payload: Optional[str] = None

    def readable_text(self) -> Optional[str]:
        return self.title or self.payload or None


class TemplateComponent(BaseModel):
    """Rich bot output. The payload is handed on as JSON for the sanitizer to extract from."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["template"] = "template"
    payload: Any = None

    def readable_text(self) -> Optional[str]:
        if isinstance(self.payload, str):
            return self.payload or None
        if isinstance(self.payload, (dict, list)):
            return json.dumps(self.payload)
        return None


class UnknownComponent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["unknown"] = "unknown"
    content_type: str = ""

    def readable_text(self) -> Optional[str]:
        return None


MessageComponent = Union[TextComponent, CardComponent, PostbackComponent, TemplateComponent, UnknownComponent]


def parse_component(raw: Any) -> MessageComponent:
    """Map one raw {"cT": ..., "data": ...} component onto its variant."""
    if not isinstance(raw, dict):
        return UnknownComponent()
    content_type = str(raw.get("cT") or "")
    data = raw.get("data")
    data = data if isinstance(data, dict) else {}

    def _str(value: Any) -> Optional[str]:
        return value if isinstance(value, str) else None

    if content_type == "text":
        return TextComponent(text=_str(data.get("text")))
    if content_type == "card":
        return CardComponent(title=_str(data.get("title")), text=_str(data.get("text")))
    if content_type == "postback":
        return PostbackComponent(title=_str(data.get("title")), payload=_str(data.get("payload")))
    if content_type == "template":
        payload = data.get("payload", data.get("text"))
        return TemplateComponent(payload=payload)
    return UnknownComponent(content_type=content_type)


class KoreMessage(BaseModel):
    """One raw record from getMessagesV2."""

    model_config = ConfigDict(frozen=True)

    session_id: str = ""
    created_by: str = ""
    created_on: str = ""
    direction: Literal["incoming", "outgoing"] = "outgoing"
    timestamp_value: Optional[int] = None
    components: Tuple[MessageComponent, ...] = ()

    @property
    def speaker(self) -> Speaker:
        return Speaker.USER if self.direction == "incoming" else Speaker.BOT

    @property
    def raw_text(self) -> Optional[str]:
        """First readable text across components, in order."""
        for component in self.components:
            text = component.readable_text()
            if text:
                return text
        return None

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "KoreMessage":
        components = raw.get("components")
        timestamp_value = raw.get("timestampValue")
        return cls(
            session_id=str(raw.get("sessionId") or ""),
            created_by=str(raw.get("createdBy") or ""),
            created_on=str(raw.get("createdOn") or ""),
            direction="incoming" if raw.get("type") == "incoming" else "outgoing",
            timestamp_value=timestamp_value if isinstance(timestamp_value, int) else None,
            components=tuple(parse_component(c) for c in components) if isinstance(components, list) else (),
        )


# ==================== ASSEMBLED RECORDS ====================

class Message(BaseModel):
    """One sanitized transcript line."""

    model_config = ConfigDict(frozen=True)

    timestamp: str
    speaker: Speaker
    text: str = Field(min_length=1)


class SessionWithTranscript(BaseModel):
    """Session metadata joined with its sanitized transcript (an "SWT").

    Counts are computed from `messages`, never copied from the vendor; the
    vendor's own counts are kept in `metrics`.
    """

    model_config = ConfigDict(frozen=True)

    session_id: str
    user_id: str = ""
    start_time: str = ""
    end_time: str = ""
    outcome_category: OutcomeCategory = OutcomeCategory.UNKNOWN
    tags: Tuple[SessionTag, ...] = ()
    metrics: MessageCounts = Field(default_factory=MessageCounts)
    messages: Tuple[Message, ...] = ()
    duration_seconds: Optional[float] = None
    message_count: int = 0
    user_message_count: int = 0
    bot_message_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Plain JSON-ready dict for export and routing layers."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionWithTranscript":
        return cls.model_validate(data)

    def summary(self) -> str:
        if not self.messages:
            return "No messages in this session"
        return (
            f"Session with {self.message_count} messages "
            f"({self.user_message_count} user, {self.bot_message_count} bot)"
        )
