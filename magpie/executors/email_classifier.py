"""Heuristic email classifier: scheduling relevance, importance, AI gate.

Pure and deterministic. Decides which messages are worth sending to the
(slow, fallible) AI analyzer and produces an ordering key for the queue.
No LLM calls. Never raises: missing fields degrade to conservative,
low-confidence defaults.
"""

import html
import logging
import re
from datetime import UTC, datetime

from magpie.schemas.email import (
    Classification,
    ImportanceLevel,
    InboundMessage,
    MessageCategory,
)

logger = logging.getLogger(__name__)

SCHEDULING_KEYWORDS = (
    "meeting", "meet", "appointment", "schedule", "calendar", "event",
    "conference", "call", "deadline", "due date", "reminder", "invite",
    "rsvp", "booking", "reservation", "interview", "demo", "presentation",
    "webinar", "training",
)

STRONG_SCHEDULING_KEYWORDS = frozenset({"meeting", "meet", "appointment", "schedule", "deadline"})

HIGH_PRIORITY_KEYWORDS = (
    "urgent", "asap", "emergency", "critical", "deadline", "important",
    "action required", "time sensitive", "immediate", "priority",
)

LOW_PRIORITY_INDICATORS = (
    "newsletter", "notification", "no-reply", "automated", "unsubscribe",
    "marketing", "promotional", "advertisement", "spam", "bulk",
)

# Senders whose mail is almost always actionable (calendar invites etc.)
HIGH_SIGNAL_SENDERS = (
    "calendar-notification@google.com",
    "no-reply@calendly.com",
    "noreply@zoom.us",
    "noreply@microsoft.com",
    "notifications@slack.com",
)

NO_REPLY_MARKERS = ("no-reply", "noreply", "donotreply", "do-not-reply")

BUSINESS_INDICATORS = ("meeting", "project", "team", "client", "proposal", "invoice")

MARKETING_SUBJECT_MARKERS = ("unsubscribe", "promotional")

IMPORTANT_LABEL = "IMPORTANT"

MIN_CONTENT_CHARS = 20
HTML_FALLBACK_BELOW = 50
MAX_LISTED_KEYWORDS = 5

_DATE_TIME_PATTERNS = (
    re.compile(r"\b\d{1,2}/\d{1,2}/\d{2,4}\b"),
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    re.compile(r"\b\d{1,2}(:\d{2})?\s*(am|pm)\b", re.IGNORECASE),
    re.compile(r"\b\d{1,2}:\d{2}\b"),
    re.compile(r"\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b", re.IGNORECASE),
    re.compile(
        r"\b(january|february|march|april|may|june|july|august|september|october|november|december)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(tomorrow|today|tonight|next week|this week|next month)\b", re.IGNORECASE),
)

def _keyword_pattern(keyword: str) -> re.Pattern:
    """Match a keyword with common inflections and a 're' prefix (meetings, rescheduled)."""
    if keyword.endswith("e"):
        body = re.escape(keyword[:-1]) + r"(?:e|es|ed|ing|ings)"
    else:
        body = re.escape(keyword) + r"(?:s|es|ed|ing|ings)?"
    return re.compile(rf"\b(?:re)?{body}\b")


_KEYWORD_PATTERNS = {kw: _keyword_pattern(kw) for kw in SCHEDULING_KEYWORDS}

_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")


def html_to_text(markup: str) -> str:
    """Crude tag strip for HTML-only bodies."""
    text = _TAG_RE.sub(" ", markup)
    text = html.unescape(text).replace("\xa0", " ")
    return _WS_RE.sub(" ", text).strip()


def extract_content(message: InboundMessage) -> str:
    """Subject plus the best available body text.

    The text body is preferred; HTML is converted when the text body is
    shorter than 50 chars; the snippet is the last resort.
    """
    body = message.body_text or ""
    if len(body) < HTML_FALLBACK_BELOW and message.body_html:
        body = html_to_text(message.body_html)
    if not body and message.snippet:
        body = message.snippet
    return f"{message.subject or ''} {body}".strip()


def _matched_keywords(text: str) -> list[str]:
    """Keywords found in *text*, each word counted once.

    A word matched by a longer keyword ("meetings") is not also credited to
    a keyword it starts with ("meet").
    """
    hits = {kw: {m.start() for m in pattern.finditer(text)} for kw, pattern in _KEYWORD_PATTERNS.items()}
    matched = []
    for kw, starts in hits.items():
        covered = set()
        for other, other_starts in hits.items():
            if other != kw and other.startswith(kw):
                covered |= other_starts
        if starts - covered:
            matched.append(kw)
    return matched


def _is_no_reply(address: str) -> bool:
    address = address.lower()
    return any(marker in address for marker in NO_REPLY_MARKERS)


def scheduling_score(content: str) -> float:
    """Score 0-1 for how much the text looks like it involves a time commitment."""
    text = content.lower()
    matched = _matched_keywords(text)

    score = sum(0.15 if kw in STRONG_SCHEDULING_KEYWORDS else 0.1 for kw in matched)
    if len(matched) >= 2:
        score += 0.1
    if any(p.search(text) for p in _DATE_TIME_PATTERNS):
        score += 0.1

    return round(min(score, 1.0), 4)


def importance_score(message: InboundMessage, owner_address: str | None = None) -> float:
    subject = (message.subject or "").lower()
    sender = (message.from_address or "").lower()

    score = 0.5
    if any(kw in subject for kw in HIGH_PRIORITY_KEYWORDS):
        score += 0.2
    if any(s in sender for s in HIGH_SIGNAL_SENDERS):
        score += 0.3
    if IMPORTANT_LABEL in message.labels:
        score += 0.3
    if any(ind in sender or ind in subject for ind in LOW_PRIORITY_INDICATORS):
        score -= 0.3
    if owner_address and owner_address.lower() in sender:
        score += 0.1

    return round(max(0.0, min(score, 1.0)), 4)


def recency_score(received_at: datetime, now: datetime) -> float:
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=UTC)
    hours = (now - received_at).total_seconds() / 3600
    if hours < 1:
        return 1.0
    if hours < 6:
        return 0.8
    if hours < 24:
        return 0.6
    if hours < 72:
        return 0.4
    return 0.2


def _importance_level(score: float, message: InboundMessage) -> ImportanceLevel:
    if score >= 0.7 or IMPORTANT_LABEL in message.labels:
        return ImportanceLevel.HIGH
    if score <= 0.3 or _is_no_reply(message.from_address or ""):
        return ImportanceLevel.LOW
    return ImportanceLevel.NORMAL


def _should_analyze(
    content_length: int,
    level: ImportanceLevel,
    has_scheduling: bool,
    sched: float,
) -> bool:
    if content_length < MIN_CONTENT_CHARS:
        return False
    if level == ImportanceLevel.HIGH:
        return True
    if has_scheduling and sched >= 0.5:
        return True
    if level == ImportanceLevel.LOW and not has_scheduling:
        return False
    return sched >= 0.3


def _category(message: InboundMessage, sched: float) -> MessageCategory:
    subject = (message.subject or "").lower()
    if sched >= 0.5:
        return MessageCategory.SCHEDULING
    if _is_no_reply(message.from_address or ""):
        return MessageCategory.NOTIFICATION
    if any(m in subject for m in MARKETING_SUBJECT_MARKERS):
        return MessageCategory.MARKETING
    if any(ind in subject for ind in BUSINESS_INDICATORS):
        return MessageCategory.WORK
    return MessageCategory.GENERAL


def _confidence(sched: float, importance: float, content_length: int) -> float:
    confidence = 0.5
    if sched >= 0.7 or importance >= 0.7:
        confidence += 0.3
    if content_length >= 100:
        confidence += 0.1
    if content_length < MIN_CONTENT_CHARS:
        confidence -= 0.2
    return round(max(0.1, min(confidence, 1.0)), 4)


def classify(
    message: InboundMessage,
    owner_address: str | None = None,
    *,
    now: datetime | None = None,
) -> Classification:
    """Classify a message for scheduling relevance, importance, and AI-worthiness.

    Args:
        message: The inbound message.
        owner_address: The mailbox owner's address (self-sent mail gets a boost).
        now: Reference time for the recency component. Defaults to utcnow.

    Returns:
        A Classification value object.
    """
    now = now or datetime.now(UTC)
    content = extract_content(message)

    sched = scheduling_score(content)
    importance = importance_score(message, owner_address)
    has_scheduling = sched >= 0.3
    level = _importance_level(importance, message)

    keywords = _matched_keywords(content.lower())[:MAX_LISTED_KEYWORDS] if has_scheduling else []
    priority = 0.4 * sched + 0.4 * importance + 0.2 * recency_score(message.received_at, now)

    result = Classification(
        importance_level=level,
        has_scheduling_content=has_scheduling,
        scheduling_keywords=keywords,
        should_analyze_with_ai=_should_analyze(len(content), level, has_scheduling, sched),
        priority_score=round(min(priority, 1.0), 4),
        category=_category(message, sched),
        confidence=_confidence(sched, importance, len(content)),
        scheduling_score=sched,
        importance_score=importance,
    )

    logger.debug(
        "Classified %s: sched=%.2f importance=%.2f level=%s ai=%s",
        message.id,
        sched,
        importance,
        level.value,
        result.should_analyze_with_ai,
    )
    return result


def has_valid_content(message: InboundMessage) -> bool:
    """True if the message carries enough text to be worth processing at all."""
    content = extract_content(message)
    return len(content) >= 10 and (bool(message.subject) or len(content) >= MIN_CONTENT_CHARS)
