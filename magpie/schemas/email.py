"""Schemas for inbound mail and its heuristic classification.

Covers the front of the pipeline:
  provider fetch -> InboundMessage -> Classification -> AI analysis gate
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class InboundMessage(BaseModel):
    """A raw message as fetched from the mail provider. Immutable once fetched."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Provider message id (natural key)")
    thread_id: str = ""
    subject: str = ""
    from_address: str = ""
    from_name: str = ""
    to_address: str = ""
    body_text: str = ""
    body_html: str = ""
    snippet: str = ""
    received_at: datetime
    labels: list[str] = Field(default_factory=list)
    attachment_count: int = 0


class ImportanceLevel(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class MessageCategory(StrEnum):
    """Coarse category assigned by the heuristic classifier."""

    SCHEDULING = "scheduling"
    NOTIFICATION = "notification"
    MARKETING = "marketing"
    WORK = "work"
    GENERAL = "general"


class Classification(BaseModel):
    """Heuristic classifier output. Derived per message, never persisted alone."""

    importance_level: ImportanceLevel
    has_scheduling_content: bool
    scheduling_keywords: list[str] = Field(default_factory=list)
    should_analyze_with_ai: bool
    priority_score: float = Field(ge=0.0, le=1.0)
    category: MessageCategory
    confidence: float = Field(ge=0.0, le=1.0)
    scheduling_score: float = Field(default=0.0, ge=0.0, le=1.0)
    importance_score: float = Field(default=0.5, ge=0.0, le=1.0)
