"""
Transcript sanitization.

Turns the text of one raw bot-platform message into clean conversation
text, or None when the message is a system artifact rather than content.

Rules, applied in order:
1. Platform JSON payloads (say, command and template shapes): hangup
   commands are dropped; otherwise the first human-readable text is
   extracted, and a payload without any is dropped. Other JSON, such as
   a user typing "[1, 2, 3]", is ordinary text.
2. Sentinels: exact placeholder values are dropped or replaced from a
   fixed lookup table ("Welcome Task", "MAX_NO_INPUT").
3. SSML markup is stripped, keeping the spoken text.
4. HTML entities are decoded.
5. Empty or whitespace-only results are dropped.

`sanitize` is pure and total: it never raises and never returns "".
"""
import html
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from .models import Message, Speaker, parse_instant

logger = logging.getLogger(__name__)

SpeakerLike = Union[Speaker, str]

USER_SILENT_PLACEHOLDER = "<User is silent>"

# Sentinel -> {speaker: replacement}. A None replacement drops the message.
# "*" applies to any speaker; speakers not listed keep the text as-is.
SENTINELS: Dict[str, Dict[str, Optional[str]]] = {
    "welcome task": {"*": None},
    "max_no_input": {Speaker.USER.value: USER_SILENT_PLACEHOLDER},
}

# The platform's inactivity timeout message
CLOSING_MESSAGE = (
    "I am closing our current conversation as I have not received any input from you. "
    "We can start over when you need."
)
CLOSING_MESSAGE_THRESHOLD_SECONDS = 8.0

# SSML vocabulary (W3C SSML 1.1 plus Amazon extensions)
SSML_TAGS = (
    "speak", "prosody", "break", "emphasis", "say-as", "audio", "voice",
    "sub", "phoneme", "lang", "mark", "p", "s", r"amazon:[a-z\-]+",
)
SSML_TAG_PATTERN = re.compile(
    r"</?(?:" + "|".join(SSML_TAGS) + r")(?:\s[^<>]*)?/?>",
    re.IGNORECASE,
)
# <break/> separates words; other tags wrap them
SSML_BREAK_PATTERN = re.compile(r"<break\b[^<>]*/?>", re.IGNORECASE)
WHITESPACE_PATTERN = re.compile(r"\s+")

# ReDoS/memory guard: payloads beyond this are not JSON-parsed
MAX_JSON_CHARS = 200_000


@dataclass(frozen=True)
class SanitizationResult:
    """Outcome of sanitizing one message, with the rule that decided it."""

    text: Optional[str]
    reason: str

    @property
    def dropped(self) -> bool:
        return self.text is None


def _speaker_value(speaker: SpeakerLike) -> str:
    return speaker.value if isinstance(speaker, Speaker) else str(speaker)


def _load_json_object(text: str) -> Optional[Any]:
    """Parse text as a JSON object/array, or None if it is not one."""
    stripped = text.strip()
    if len(stripped) > MAX_JSON_CHARS:
        return None
    if not ((stripped.startswith("{") and stripped.endswith("}"))
            or (stripped.startswith("[") and stripped.endswith("]"))):
        return None
    try:
        parsed = json.loads(stripped)
    except (ValueError, RecursionError):
        return None
    return parsed if isinstance(parsed, (dict, list)) else None


def is_hangup_command(payload: Any) -> bool:
    """{"type": "command", "command": "redirect", "data": [{"verb": "hangup"}]}"""
    if not isinstance(payload, dict):
        return False
    if payload.get("type") != "command" or payload.get("command") != "redirect":
        return False
    data = payload.get("data")
    if not isinstance(data, list):
        return False
    return any(isinstance(item, dict) and item.get("verb") == "hangup" for item in data)


def is_platform_payload(payload: Any) -> bool:
    """Say, command or template payload, as opposed to JSON-looking user text."""
    if not isinstance(payload, dict):
        return False
    if "say" in payload or "payload" in payload:
        return True
    if payload.get("type") in ("command", "template"):
        return True
    data = payload.get("data")
    return isinstance(data, list) and any(
        isinstance(item, dict) and ("say" in item or "verb" in item) for item in data
    )


def _say_text(node: Any) -> Optional[str]:
    if not isinstance(node, dict):
        return None
    say = node.get("say")
    if not isinstance(say, dict):
        return None
    text = say.get("text")
    if isinstance(text, list):
        parts = [str(t) for t in text if isinstance(t, (str, int, float)) and str(t).strip()]
        return " ".join(parts) or None
    if isinstance(text, (str, int, float)) and str(text).strip():
        return str(text)
    return None


def _find_text_field(node: Any, depth: int = 0) -> Optional[str]:
    """Depth-first search for the first non-empty string "text" field."""
    if depth > 50:
        return None
    if isinstance(node, dict):
        text = node.get("text")
        if isinstance(text, str) and text.strip():
            return text
        for value in node.values():
            found = _find_text_field(value, depth + 1)
            if found:
                return found
    elif isinstance(node, list):
        for item in node:
            found = _find_text_field(item, depth + 1)
            if found:
                return found
    return None


def extract_text_from_payload(payload: Any) -> Optional[str]:
    """First human-readable text in a say/command payload: say.text, data[].say.text, then any text field."""
    direct = _say_text(payload)
    if direct:
        return direct

    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        for item in payload["data"]:
            nested = _say_text(item)
            if nested:
                return nested

    return _find_text_field(payload)


def strip_ssml(text: str) -> str:
    """Remove SSML tags, keeping enclosed text."""
    cleaned = SSML_BREAK_PATTERN.sub(" ", text)
    cleaned = SSML_TAG_PATTERN.sub("", cleaned)
    return WHITESPACE_PATTERN.sub(" ", cleaned).strip()


def _sanitize(raw_text: Any, speaker: SpeakerLike) -> SanitizationResult:
    if not isinstance(raw_text, str) or not raw_text.strip():
        return SanitizationResult(None, "empty or invalid text")

    text = raw_text

    payload = _load_json_object(text)
    if is_platform_payload(payload):
        if is_hangup_command(payload):
            return SanitizationResult(None, "hangup command")
        extracted = extract_text_from_payload(payload)
        if not extracted:
            return SanitizationResult(None, "JSON payload without readable text")
        text = extracted

    sentinel = SENTINELS.get(text.strip().lower())
    if sentinel is not None:
        speaker_key = _speaker_value(speaker)
        if "*" in sentinel:
            replacement = sentinel["*"]
        elif speaker_key in sentinel:
            replacement = sentinel[speaker_key]
        else:
            replacement = text
        if replacement is None:
            return SanitizationResult(None, f"sentinel '{text.strip()}'")
        text = replacement

    if SSML_TAG_PATTERN.search(text):
        text = strip_ssml(text)

    if "&" in text:
        text = html.unescape(text)

    text = text.strip()
    if not text:
        return SanitizationResult(None, "empty after cleaning")

    reason = "no sanitization needed" if text == raw_text else "text extracted and cleaned"
    return SanitizationResult(text, reason)


def sanitize_with_reason(raw_text: Any, speaker: SpeakerLike) -> SanitizationResult:
    """Like `sanitize`, also reporting which rule applied."""
    try:
        return _sanitize(raw_text, speaker)
    except Exception as e:  # keep sanitize total on pathological input
        logger.warning(f"Sanitizer failed on message, dropping it: {e}")
        return SanitizationResult(None, "sanitizer error")


def sanitize(raw_text: Any, speaker: SpeakerLike) -> Optional[str]:
    """Clean one message's text, or None if the message should be dropped."""
    return sanitize_with_reason(raw_text, speaker).text


def _seconds_between(earlier: str, later: str) -> Optional[float]:
    first = parse_instant(earlier)
    second = parse_instant(later)
    if first is None or second is None:
        return None
    return abs((second - first).total_seconds())


def drop_trailing_closing_message(messages: Sequence[Message]) -> List[Message]:
    """
    Remove the inactivity closing message when it ends the transcript.

    The platform appends it after a silence timeout; it is dropped only when
    it is the last message, comes from the bot, and arrives more than 8
    seconds after the message before it.
    """
    result = list(messages)
    if len(result) < 2:
        return result

    last, previous = result[-1], result[-2]
    if last.speaker != Speaker.BOT or last.text.strip() != CLOSING_MESSAGE:
        return result

    gap = _seconds_between(previous.timestamp, last.timestamp)
    if gap is not None and gap > CLOSING_MESSAGE_THRESHOLD_SECONDS:
        return result[:-1]
    return result
