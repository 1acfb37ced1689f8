"""Schemas for AI task extraction, suggestions, and tasks.

Covers the back half of the pipeline:
  LLM extraction -> boundary validation -> Suggestion -> (auto-)conversion -> Task

The LLM returns loosely shaped JSON. Every field of TaskExtraction is coerced
by a ``before`` validator: unknown enum values fall back to conservative
defaults, numbers are clamped, and unparsable dates are dropped.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class ExtractionType(StrEnum):
    MEETING = "meeting"
    TASK = "task"
    DEADLINE = "deadline"
    REMINDER = "reminder"


class TaskPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TaskCategory(StrEnum):
    WORK = "work"
    PERSONAL = "personal"
    HEALTH = "health"
    FINANCE = "finance"
    EDUCATION = "education"
    SOCIAL = "social"
    HOUSEHOLD = "household"
    TRAVEL = "travel"
    PROJECT = "project"
    OTHER = "other"


class EmailType(StrEnum):
    REQUEST = "request"
    NOTIFICATION = "notification"
    REMINDER = "reminder"
    INFORMATION = "information"
    OTHER = "other"


class Complexity(StrEnum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class RecurrenceFrequency(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


# --- Coercion helpers ---


def _choice(value: Any, enum_cls: type[StrEnum], default: StrEnum | None) -> StrEnum | None:
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            pass
    return default


def _clamp_number(value: Any, low: float, high: float, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return default
    try:
        number = float(value)
    except ValueError:
        return default
    if number != number:  # NaN
        return default
    return max(low, min(high, number))


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _str_list(value: Any, limit: int | None = None) -> list[str] | None:
    if not isinstance(value, list):
        return None
    items = [str(v) for v in value if v is not None and str(v).strip()]
    return items[:limit] if limit is not None else items


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or datetime) into an aware datetime, else None.

    Naive values are assumed to be UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


# --- Extraction (LLM boundary) ---


class RecurringInfo(BaseModel):
    is_recurring: bool = False
    pattern: str | None = None
    frequency: RecurrenceFrequency | None = None

    @field_validator("is_recurring", mode="before")
    @classmethod
    def _bool(cls, v: Any) -> bool:
        return bool(v)

    @field_validator("pattern", mode="before")
    @classmethod
    def _pattern(cls, v: Any) -> str | None:
        return _optional_str(v)

    @field_validator("frequency", mode="before")
    @classmethod
    def _frequency(cls, v: Any) -> RecurrenceFrequency | None:
        return _choice(v, RecurrenceFrequency, None)


class TaskExtraction(BaseModel):
    """One candidate actionable item produced by the AI analyzer."""

    type: ExtractionType = ExtractionType.TASK
    title: str = "Untitled Task"
    description: str | None = None
    suggested_datetime: datetime | None = None
    duration: int | None = Field(default=None, description="Minutes")
    location: str | None = None
    participants: list[str] | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = "No reasoning provided"
    category: TaskCategory = TaskCategory.OTHER
    estimated_duration: int = Field(default=30, ge=5, le=480, description="Minutes")
    suggested_due_date: datetime | None = None
    energy_level: int = Field(default=3, ge=1, le=5)
    suggested_tags: list[str] = Field(default_factory=list)
    context: str = ""
    recurring: RecurringInfo | None = None
    dependencies: list[str] | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, v: Any) -> ExtractionType:
        return _choice(v, ExtractionType, ExtractionType.TASK)

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, v: Any) -> str:
        return _optional_str(v) or "Untitled Task"

    @field_validator("description", "location", mode="before")
    @classmethod
    def _optional_text(cls, v: Any) -> str | None:
        return _optional_str(v)

    @field_validator("reasoning", mode="before")
    @classmethod
    def _reasoning(cls, v: Any) -> str:
        return _optional_str(v) or "No reasoning provided"

    @field_validator("context", mode="before")
    @classmethod
    def _context(cls, v: Any) -> str:
        return _optional_str(v) or ""

    @field_validator("suggested_datetime", "suggested_due_date", mode="before")
    @classmethod
    def _dates(cls, v: Any) -> datetime | None:
        return parse_datetime(v)

    @field_validator("duration", mode="before")
    @classmethod
    def _duration(cls, v: Any) -> int | None:
        if v is None:
            return None
        minutes = _clamp_number(v, 0, 24 * 60, -1)
        return int(minutes) if minutes > 0 else None

    @field_validator("participants", "dependencies", mode="before")
    @classmethod
    def _lists(cls, v: Any) -> list[str] | None:
        return _str_list(v)

    @field_validator("suggested_tags", mode="before")
    @classmethod
    def _tags(cls, v: Any) -> list[str]:
        return _str_list(v, limit=10) or []

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, v: Any) -> TaskPriority:
        return _choice(v, TaskPriority, TaskPriority.MEDIUM)

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v: Any) -> TaskCategory:
        return _choice(v, TaskCategory, TaskCategory.OTHER)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v: Any) -> float:
        return _clamp_number(v, 0.0, 1.0, 0.0)

    @field_validator("estimated_duration", mode="before")
    @classmethod
    def _estimated_duration(cls, v: Any) -> int:
        return int(_clamp_number(v, 5, 480, 30))

    @field_validator("energy_level", mode="before")
    @classmethod
    def _energy(cls, v: Any) -> int:
        return int(round(_clamp_number(v, 1, 5, 3)))

    @field_validator("recurring", mode="before")
    @classmethod
    def _recurring(cls, v: Any) -> Any:
        return v if isinstance(v, (dict, RecurringInfo)) else None


class AnalysisInsights(BaseModel):
    email_type: EmailType = EmailType.OTHER
    urgency: TaskPriority = TaskPriority.MEDIUM
    complexity: Complexity = Complexity.MODERATE
    stakeholders: list[str] = Field(default_factory=list)
    follow_up_required: bool = False

    @field_validator("email_type", mode="before")
    @classmethod
    def _email_type(cls, v: Any) -> EmailType:
        return _choice(v, EmailType, EmailType.OTHER)

    @field_validator("urgency", mode="before")
    @classmethod
    def _urgency(cls, v: Any) -> TaskPriority:
        return _choice(v, TaskPriority, TaskPriority.MEDIUM)

    @field_validator("complexity", mode="before")
    @classmethod
    def _complexity(cls, v: Any) -> Complexity:
        return _choice(v, Complexity, Complexity.MODERATE)

    @field_validator("stakeholders", mode="before")
    @classmethod
    def _stakeholders(cls, v: Any) -> list[str]:
        return _str_list(v) or []

    @field_validator("follow_up_required", mode="before")
    @classmethod
    def _follow_up(cls, v: Any) -> bool:
        return bool(v)


class TaskAnalysis(BaseModel):
    """Full analyzer output for one message."""

    has_task_content: bool = False
    extractions: list[TaskExtraction] = Field(default_factory=list)
    summary: str = "No summary available"
    overall_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    insights: AnalysisInsights = Field(default_factory=AnalysisInsights)
    dropped: int = Field(default=0, description="Extractions rejected at the boundary")

    @field_validator("overall_confidence", mode="before")
    @classmethod
    def _overall(cls, v: Any) -> float:
        return _clamp_number(v, 0.0, 1.0, 0.0)


# --- Suggestions and tasks ---


class SuggestionStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSED = "processed"
    CONVERTED = "converted"
    AUTO_CONVERTED = "auto_converted"


class Suggestion(BaseModel):
    """An AI-proposed task awaiting approval or auto-conversion."""

    id: str
    user_id: str
    work_item_id: str | None = None
    message_id: str
    type: ExtractionType
    title: str
    description: str | None = None
    suggested_time: datetime | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    priority: TaskPriority
    status: SuggestionStatus = SuggestionStatus.PENDING
    task_id: str | None = None
    extraction: TaskExtraction
    created_at: datetime
    updated_at: datetime | None = None


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Task(BaseModel):
    """The durable actionable unit."""

    id: str
    user_id: str
    title: str
    description: str | None = None
    category: TaskCategory = TaskCategory.WORK
    priority: TaskPriority = TaskPriority.MEDIUM
    priority_score: int | None = None
    estimated_duration: int = 60
    actual_duration: int | None = None
    due_date: datetime | None = None
    scheduled_start: datetime | None = None
    scheduled_end: datetime | None = None
    ai_generated: bool = False
    confidence_score: float | None = None
    source_message_id: str | None = None
    source_suggestion_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    notes: str = ""
    energy_level: int = 3
    location: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    priority_reasoning: dict | None = None
    created_at: datetime
    completed_at: datetime | None = None


# --- Scheduling ---


class ScheduleConflict(BaseModel):
    """An existing scheduled task overlapping a suggested window."""

    task_id: str
    title: str
    start: datetime
    end: datetime
    overlap_minutes: int


class SchedulingWindow(BaseModel):
    suggested_start: datetime
    suggested_end: datetime
    auto_schedule: bool
    conflicts: list[ScheduleConflict] = Field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)
