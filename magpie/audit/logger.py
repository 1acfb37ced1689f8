"""Append-only audit log for the email-to-task pipeline.

Writes AuditEntry records as JSON Lines (one JSON object per line).
Audit writes are a side effect: a failed write is logged and swallowed so
it never aborts the pipeline step that triggered it.
"""

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from magpie.integrations.retry import ProviderError
from magpie.schemas.queue import AuditEntry, WorkItem
from magpie.schemas.tasks import Suggestion, Task

logger = logging.getLogger(__name__)


class PipelineAuditLog:
    """Append-only JSONL audit log for conversions, queueing, and errors.

    Usage::

        audit = PipelineAuditLog("/path/to/pipeline_audit.jsonl")
        audit.log_task_auto_created(task, suggestion)

        entries = audit.read_entries(since=some_datetime)
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def log(self, entry: AuditEntry) -> bool:
        """Append a single audit entry. Returns False if the write failed."""
        try:
            with self._path.open("a") as f:
                f.write(entry.model_dump_json() + "\n")
        except OSError:
            logger.warning("Failed to write audit entry %s", entry.action, exc_info=True)
            return False
        logger.debug(
            "Pipeline audit: %s op=%s message=%s item=%s",
            entry.action,
            entry.operation,
            entry.message_id,
            entry.work_item_id,
        )
        return True

    def log_task_auto_created(self, task: Task, suggestion: Suggestion) -> AuditEntry:
        entry = AuditEntry(
            timestamp=datetime.now(UTC),
            action="task_auto_created",
            user_id=task.user_id,
            operation="drain_pending",
            message_id=suggestion.message_id,
            work_item_id=suggestion.work_item_id,
            suggestion_id=suggestion.id,
            task_id=task.id,
            detail=task.title,
            context={
                "confidence": suggestion.confidence,
                "priority": task.priority.value,
                "priority_score": task.priority_score,
                "scheduled": task.scheduled_start is not None,
            },
        )
        self.log(entry)
        return entry

    def log_suggestion_queued(self, suggestion: Suggestion) -> AuditEntry:
        entry = AuditEntry(
            timestamp=datetime.now(UTC),
            action="suggestion_queued",
            user_id=suggestion.user_id,
            operation="drain_pending",
            message_id=suggestion.message_id,
            work_item_id=suggestion.work_item_id,
            suggestion_id=suggestion.id,
            detail=suggestion.title,
            context={"confidence": suggestion.confidence},
        )
        self.log(entry)
        return entry

    def log_suggestion_approved(self, suggestion: Suggestion, task: Task) -> AuditEntry:
        entry = AuditEntry(
            timestamp=datetime.now(UTC),
            action="suggestion_approved",
            user_id=suggestion.user_id,
            operation="approve_suggestion",
            message_id=suggestion.message_id,
            work_item_id=suggestion.work_item_id,
            suggestion_id=suggestion.id,
            task_id=task.id,
            detail=suggestion.title,
        )
        self.log(entry)
        return entry

    def log_suggestion_rejected(self, suggestion: Suggestion) -> AuditEntry:
        entry = AuditEntry(
            timestamp=datetime.now(UTC),
            action="suggestion_rejected",
            user_id=suggestion.user_id,
            operation="reject_suggestion",
            message_id=suggestion.message_id,
            work_item_id=suggestion.work_item_id,
            suggestion_id=suggestion.id,
            detail=suggestion.title,
        )
        self.log(entry)
        return entry

    def log_work_item_failed(self, item: WorkItem, error_kind: str, detail: str) -> AuditEntry:
        entry = AuditEntry(
            timestamp=datetime.now(UTC),
            action="work_item_failed",
            user_id=item.user_id,
            operation="drain_pending",
            message_id=item.message_id,
            work_item_id=item.id,
            error_kind=error_kind,
            detail=detail,
            context={"retry_count": item.retry_count},
        )
        self.log(entry)
        return entry

    def log_provider_error(
        self,
        operation: str,
        error: ProviderError,
        context: dict[str, Any],
    ) -> AuditEntry:
        """Record a mail provider failure. Signature matches RetryPolicy's error hook."""
        entry = AuditEntry(
            timestamp=datetime.now(UTC),
            action="provider_error",
            user_id=context.get("user_id"),
            operation=operation,
            message_id=context.get("message_id"),
            error_kind=error.kind.value,
            detail=error.message,
            context={
                **context,
                "status": error.status,
                "retryable": error.retryable,
                "retry_after": error.retry_after,
            },
        )
        self.log(entry)
        return entry

    def read_entries(
        self,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        """Read audit entries, optionally filtered by timestamp.

        Args:
            since: Only return entries after this timestamp.
            limit: Maximum number of entries to return (newest after filtering).

        Returns:
            List of AuditEntry objects, oldest first.
        """
        if not self._path.exists():
            return []

        entries: list[AuditEntry] = []
        with self._path.open() as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                entry = AuditEntry.model_validate_json(line)
                if since and entry.timestamp <= since:
                    continue
                entries.append(entry)

        if limit is not None:
            entries = entries[-limit:]

        return entries
