"""Schemas for per-user automation settings.

Every field carries a default so that stored overrides written by an older
release still validate after new fields are added.
"""

from pydantic import BaseModel, Field, field_validator

from magpie.schemas.tasks import TaskCategory, TaskPriority


class TimeWindow(BaseModel):
    start: str = "09:00"
    end: str = "18:00"

    @field_validator("start", "end")
    @classmethod
    def _hhmm(cls, v: str) -> str:
        hours, _, minutes = v.partition(":")
        if not (hours.isdigit() and minutes.isdigit()):
            raise ValueError(f"expected HH:MM, got {v!r}")
        if not (0 <= int(hours) <= 23 and 0 <= int(minutes) <= 59):
            raise ValueError(f"time out of range: {v!r}")
        return v

    @property
    def start_hour(self) -> int:
        return int(self.start.split(":")[0])

    @property
    def end_hour(self) -> int:
        return int(self.end.split(":")[0])


class PrioritySettings(BaseModel):
    urgent_keywords: list[str] = Field(
        default_factory=lambda: ["urgent", "asap", "emergency", "critical", "immediate"]
    )
    important_senders: list[str] = Field(default_factory=list)
    high_priority_domains: list[str] = Field(default_factory=list)


class SchedulingWindowSettings(BaseModel):
    hours: float = Field(default=24, ge=0, description="Offset for high priority")
    urgent_hours: float = Field(default=2, ge=0, description="Offset for urgent priority")


class TaskDefaults(BaseModel):
    default_category: TaskCategory = TaskCategory.WORK
    default_priority: TaskPriority = TaskPriority.MEDIUM
    default_duration: int = Field(default=60, ge=5, description="Minutes")
    auto_schedule_high_priority: bool = True
    scheduling_window: SchedulingWindowSettings = Field(default_factory=SchedulingWindowSettings)


class NotificationSettings(BaseModel):
    email_on_task_creation: bool = False
    email_on_errors: bool = True
    daily_summary: bool = True
    weekly_report: bool = False


class AutomationSettings(BaseModel):
    """Per-user automation configuration read by every pipeline stage."""

    enabled: bool = True
    auto_create_tasks: bool = True
    confidence_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    auto_schedule_tasks: bool = True
    daily_processing: bool = True
    max_emails_per_day: int = Field(default=50, ge=0)
    categories: list[str] = Field(default_factory=lambda: ["work", "personal", "project"])
    excluded_senders: list[str] = Field(
        default_factory=lambda: ["noreply@", "no-reply@", "donotreply@"]
    )
    keyword_filters: list[str] = Field(
        default_factory=lambda: [
            "meeting", "schedule", "appointment", "call", "conference",
            "task", "todo", "action item", "deadline", "due", "reminder",
            "follow up", "check in", "review", "deliver", "complete",
        ]
    )
    processing_time_window: TimeWindow = Field(default_factory=TimeWindow)
    priority_settings: PrioritySettings = Field(default_factory=PrioritySettings)
    task_defaults: TaskDefaults = Field(default_factory=TaskDefaults)
    notification_settings: NotificationSettings = Field(default_factory=NotificationSettings)
