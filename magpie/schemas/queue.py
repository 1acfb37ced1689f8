"""Schemas for the work queue, its results, and the audit trail."""

from datetime import datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field


class WorkItemStatus(StrEnum):
    """Work item lifecycle.

    pending -> processing -> completed | failed; failed -> pending via retry.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ErrorKind(StrEnum):
    TRANSIENT = "transient"
    FATAL = "fatal"


class WorkItem(BaseModel):
    """A queued unit of work for one inbound message and one user."""

    id: str = Field(description="Unique work item ID")
    user_id: str
    message_id: str
    status: WorkItemStatus = WorkItemStatus.PENDING
    error_message: str | None = None
    error_kind: ErrorKind | None = None
    retry_count: int = 0
    created_at: datetime
    claimed_at: datetime | None = None
    processed_at: datetime | None = None


class DrainResult(BaseModel):
    """Outcome of one drain_pending batch."""

    processed: int = 0
    suggestions_created: int = 0
    tasks_created: int = 0
    errors: int = 0
    skipped_ai: int = 0
    conflicts: int = 0
    failed_items: dict[str, str] = Field(default_factory=dict)  # work item id -> error


class IngestResult(BaseModel):
    """Outcome of pulling messages from the provider into the queue."""

    fetched: int = 0
    enqueued: int = 0
    duplicates: int = 0
    filtered: int = 0
    errors: int = 0


class QueueStats(BaseModel):
    """Read-only counters for dashboards."""

    queue: dict[str, int] = Field(default_factory=dict)  # status -> count
    suggestions: dict[str, int] = Field(default_factory=dict)  # status -> count
    ai_tasks: int = 0

    @property
    def queue_pending(self) -> int:
        return self.queue.get(WorkItemStatus.PENDING.value, 0)

    @property
    def queue_failed(self) -> int:
        return self.queue.get(WorkItemStatus.FAILED.value, 0)


class AuditEntry(BaseModel):
    """A record of something the pipeline did (or failed to do)."""

    timestamp: datetime
    action: Literal[
        "task_auto_created",
        "suggestion_queued",
        "suggestion_approved",
        "suggestion_rejected",
        "work_item_failed",
        "provider_error",
    ]
    user_id: str | None = None
    operation: str
    message_id: str | None = None
    work_item_id: str | None = None
    suggestion_id: str | None = None
    task_id: str | None = None
    error_kind: str | None = None
    detail: str = ""
    context: dict = Field(default_factory=dict)
