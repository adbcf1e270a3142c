"""
Chat export parser.

Turns a plain-text chat export ("12/03/24, 9:15 am - Alice: hi") into
structured messages. Multi-line bodies are rebuilt from continuation lines and
system notices (encryption banners, group membership changes, ...) are dropped.

The parser is pure: no I/O, no shared state, and it never raises for
malformed input. Lines that don't look like a message header are either
appended to the message in flight or ignored.
"""
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from dateutil.relativedelta import relativedelta

logger = logging.getLogger(__name__)

PREVIEW_LINES = 30

HEADER_RE = re.compile(
    r"^\[?(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}),?\s+"
    r"(\d{1,2}:\d{2}(?::\d{2})?(?:\s*[AaPp][Mm])?)\]?\s*[-–—]?\s*"
    r"(.+?):\s([\s\S]*)"
)
DATE_SEPARATORS_RE = re.compile(r"[/\-.]")
MERIDIEM_RE = re.compile(r"\s*[AaPp][Mm]")

SYSTEM_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"messages and calls are end-to-end encrypted",
        r"created group",
        r"added you",
        r"changed the subject",
        r"changed this group",
        r"left$",
        r"removed ",
        r"joined using",
        r"changed the group",
        r"your security code",
        r"disappeared message",
        r"message was deleted",
        r"you were added",
    )
]

PHONE_RE = re.compile(r"\b\d{10,}\b")
EMAIL_RE = re.compile(r"[\w.-]+@[\w.-]+\.\w+")
CARD_RE = re.compile(r"\b(?:\d{4}[\s-]?){3}\d{4}\b")


@dataclass
class ParsedMessage:
    """A single message recovered from the export"""
    id: str
    timestamp: datetime
    sender: str
    text: str
    is_system: bool = False


@dataclass
class ParseResult:
    messages: List[ParsedMessage] = field(default_factory=list)
    participants: List[str] = field(default_factory=list)
    preview: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.messages


def is_system_message(text: str) -> bool:
    return any(p.search(text) for p in SYSTEM_PATTERNS)


def _resolve_date_parts(date_str: str) -> tuple[int, int, int]:
    """
    Return (year, month, day) from a numeric date.

    First part > 12 means day-first; otherwise second part > 12 means
    month-first; otherwise month-first. 01/02/03 is therefore always
    January 2nd 2003; the export doesn't carry enough information to do better.
    """
    first, second, third = (int(p) for p in DATE_SEPARATORS_RE.split(date_str))
    if first > 12:
        day, month = first, second
    elif second > 12:
        month, day = first, second
    else:
        month, day = first, second

    year = third
    if year < 100:
        year += 2000
    return year, month, day


def _resolve_time_parts(time_str: str) -> tuple[int, int, int]:
    raw = time_str.strip()
    is_pm = re.search(r"pm", raw, re.IGNORECASE) is not None
    is_am = re.search(r"am", raw, re.IGNORECASE) is not None
    raw = MERIDIEM_RE.sub("", raw)

    parts = [int(p) for p in raw.split(":")]
    hours, minutes = parts[0], parts[1]
    seconds = parts[2] if len(parts) > 2 else 0

    if is_pm and hours != 12:
        hours += 12
    if is_am and hours == 12:
        hours = 0
    return hours, minutes, seconds


def parse_timestamp(date_str: str, time_str: str) -> Optional[datetime]:
    """
    Build a naive datetime from the header's date and time tokens.

    Month/day/hour values are not range-checked: month 13 rolls into January
    of the next year, day 0 into the last day of the previous month, and so
    on. Returns None only if the result falls outside datetime's range.
    """
    year, month, day = _resolve_date_parts(date_str)
    hours, minutes, seconds = _resolve_time_parts(time_str)
    try:
        start_of_month = datetime(year, 1, 1) + relativedelta(months=month - 1)
        return start_of_month + timedelta(days=day - 1, hours=hours, minutes=minutes, seconds=seconds)
    except (ValueError, OverflowError):
        return None


def parse_chat_export(content: str) -> ParseResult:
    """
    Parse a chat export into messages, participants and a raw preview.

    System notices are classified when their header line is read and are
    excluded from `messages` and `participants`, but the raw lines stay in
    `preview`. An export with no recognizable header lines yields no messages;
    callers should report that as "could not parse".
    """
    if not content:
        return ParseResult()

    lines = content.split("\n")
    preview = lines[:PREVIEW_LINES]
    committed: List[ParsedMessage] = []
    current: Optional[ParsedMessage] = None

    for line in lines:
        match = HEADER_RE.match(line)
        timestamp = parse_timestamp(match.group(1), match.group(2)) if match else None

        if match and timestamp is not None:
            if current is not None:
                committed.append(current)

            _, _, sender, body = match.groups()
            body = body.strip()
            current = ParsedMessage(
                id=uuid.uuid4().hex,
                timestamp=timestamp,
                sender=sender.strip(),
                text=body,
                is_system=is_system_message(body),
            )
        elif current is not None and line.strip():
            current.text += "\n" + line

    if current is not None:
        committed.append(current)

    messages = [m for m in committed if not m.is_system]
    participants = list(dict.fromkeys(m.sender for m in messages))

    logger.info(
        "[Parser] %d lines -> %d messages (%d system notices dropped), participants=%d",
        len(lines), len(messages), len(committed) - len(messages), len(participants),
    )
    return ParseResult(messages=messages, participants=participants, preview=preview)


def mask_sensitive_info(text: str) -> str:
    """
    Best-effort redaction of phone numbers, email addresses and card numbers.

    Not applied by parse_chat_export; call it explicitly on text that leaves
    the service (e.g. before sending samples to the LLM).
    """
    text = PHONE_RE.sub("***PHONE***", text)
    text = EMAIL_RE.sub("***EMAIL***", text)
    return CARD_RE.sub("***CARD***", text)
