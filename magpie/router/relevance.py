"""Pre-enqueue relevance filter driven by per-user automation settings.

Decides whether an inbound message enters the work queue at all. Runs
before classification, so it only looks at sender, text, and timing.
"""

import logging

from pydantic import BaseModel, Field

from magpie.executors.email_classifier import extract_content
from magpie.schemas.email import InboundMessage
from magpie.schemas.settings import AutomationSettings

logger = logging.getLogger(__name__)


class RelevanceDecision(BaseModel):
    should_process: bool
    reasons: list[str] = Field(default_factory=list)


def should_process(message: InboundMessage, settings: AutomationSettings) -> RelevanceDecision:
    """Apply enable flag, excluded senders, keyword filters, and time window.

    A message received outside the processing time window is still processed;
    the decision only notes it.
    """
    if not settings.enabled:
        return RelevanceDecision(should_process=False, reasons=["Automation is disabled"])

    sender = (message.from_address or "").lower()
    if any(pattern.lower() in sender for pattern in settings.excluded_senders if pattern):
        return RelevanceDecision(should_process=False, reasons=["Sender is excluded"])

    text = extract_content(message).lower()
    if not any(kw.lower() in text for kw in settings.keyword_filters if kw):
        return RelevanceDecision(should_process=False, reasons=["No relevant keywords found"])

    reasons = []
    window = settings.processing_time_window
    hour = message.received_at.hour
    if hour < window.start_hour or hour > window.end_hour:
        reasons.append("Outside processing time window")

    reasons.append("Passed all filters")
    return RelevanceDecision(should_process=True, reasons=reasons)
