"""Work queue orchestrator for the email-to-task pipeline.

Sequences one work item at a time through:

    claim -> classify -> (AI analysis) -> score -> schedule -> persist -> complete | failed

Work item lifecycle::

    pending --claim--> processing --ok--> completed
                                  \\--error--> failed --retry_failed--> pending

The orchestrator never retries on its own. ``retry_failed`` is an explicit
operator action, bounded by ``retry_count < max_retries`` and skipped for
fatal failures (missing source message, analyzer timeout).

All collaborators (store, analyzer, settings, priority engine, audit log)
are injected so tests can substitute fakes.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from functools import partial

from magpie.audit.logger import PipelineAuditLog
from magpie.executors.email_classifier import classify
from magpie.executors.priority_engine import TaskPriorityEngine, factors_from_extraction
from magpie.queue.store import DEFAULT_STALE_AFTER, PipelineStore, new_id
from magpie.router.scheduling import check_window, get_scheduling_window
from magpie.schemas.email import InboundMessage
from magpie.schemas.priority import PriorityResult
from magpie.schemas.queue import DrainResult, ErrorKind, QueueStats, WorkItem
from magpie.schemas.settings import AutomationSettings
from magpie.schemas.tasks import (
    ExtractionType,
    SchedulingWindow,
    Suggestion,
    SuggestionStatus,
    Task,
    TaskAnalysis,
    TaskCategory,
    TaskExtraction,
    TaskPriority,
)
from magpie.settings import SettingsManager

logger = logging.getLogger(__name__)

Analyzer = Callable[[InboundMessage], Awaitable[TaskAnalysis]]

PRIORITY_RANK = {
    TaskPriority.LOW: 0,
    TaskPriority.MEDIUM: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.URGENT: 3,
}


class MissingSourceError(Exception):
    """The message a work item refers to is not in the store."""


class AnalyzerTimeoutError(Exception):
    """The AI analyzer did not answer within the configured timeout."""


FATAL_ERRORS = (MissingSourceError, AnalyzerTimeoutError)


def effective_priority(ai_priority: TaskPriority, scored: TaskPriority) -> TaskPriority:
    """The higher of the AI-assessed and engine-scored priority levels."""
    return max(ai_priority, scored, key=PRIORITY_RANK.__getitem__)


def build_task(
    extraction: TaskExtraction,
    *,
    user_id: str,
    message_id: str,
    suggestion_id: str,
    priority: TaskPriority,
    window: SchedulingWindow,
    settings: AutomationSettings,
    now: datetime,
    priority_result: PriorityResult | None = None,
) -> Task:
    """Create a Task from an extraction. Scheduled only if the window says so."""
    category = extraction.category
    if category == TaskCategory.OTHER:
        category = settings.task_defaults.default_category

    due_date = extraction.suggested_due_date
    if due_date is None and extraction.type == ExtractionType.DEADLINE:
        due_date = extraction.suggested_datetime

    return Task(
        id=new_id(),
        user_id=user_id,
        title=extraction.title,
        description=extraction.description,
        category=category,
        priority=priority,
        priority_score=priority_result.priority_score if priority_result else None,
        estimated_duration=extraction.estimated_duration,
        due_date=due_date,
        scheduled_start=window.suggested_start if window.auto_schedule else None,
        scheduled_end=window.suggested_end if window.auto_schedule else None,
        ai_generated=True,
        confidence_score=extraction.confidence,
        source_message_id=message_id,
        source_suggestion_id=suggestion_id,
        tags=extraction.suggested_tags,
        notes=f"Confidence: {round(extraction.confidence * 100)}%\nReasoning: {extraction.reasoning}",
        energy_level=extraction.energy_level,
        location=extraction.location,
        priority_reasoning=priority_result.reasoning.model_dump() if priority_result else None,
        created_at=now,
    )


def should_auto_convert(extraction: TaskExtraction, settings: AutomationSettings) -> bool:
    return (
        settings.enabled
        and settings.auto_create_tasks
        and extraction.confidence >= settings.confidence_threshold
    )


@dataclass
class _ItemOutcome:
    suggestions: list[Suggestion] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    skipped_ai: bool = False
    conflicts: int = 0


class WorkQueue:
    """Persisted per-message work queue and its orchestrator.

    Usage::

        queue = WorkQueue(store, analyzer=analyzer, settings=SettingsManager(store))
        queue.enqueue(message, user_id)
        result = await queue.drain_pending(user_id, max_items=10)
    """

    def __init__(
        self,
        store: PipelineStore,
        *,
        analyzer: Analyzer,
        settings: SettingsManager,
        audit_log: PipelineAuditLog | None = None,
        priority_engine: TaskPriorityEngine | None = None,
        owner_address: str | None = None,
        analyzer_timeout: float = 120.0,
        max_retries: int = 3,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._analyzer = analyzer
        self._settings = settings
        self._audit = audit_log
        self._priority_engine = priority_engine
        self._owner_address = owner_address
        self._analyzer_timeout = analyzer_timeout
        self._max_retries = max_retries
        self._stale_after = stale_after
        self._clock = clock or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def enqueue(self, message: InboundMessage, user_id: str) -> WorkItem | None:
        """Store the message and create a pending work item.

        Returns None (skip) if a work item already exists for this
        message and user.
        """
        self._store.upsert_message(user_id, message)
        item = self._store.enqueue_work_item(user_id, message.id)
        if item is None:
            logger.debug("Message %s already queued for %s, skipping", message.id, user_id)
            return None
        logger.info("Queued message %s for %s (item %s)", message.id, user_id, item.id)
        return item

    def is_queued(self, message_id: str, user_id: str) -> bool:
        return self._store.find_work_item(user_id, message_id) is not None

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    async def drain_pending(
        self,
        user_id: str,
        max_items: int = 10,
        *,
        overrides: dict | None = None,
        on_progress: Callable[[str], None] | None = None,
    ) -> DrainResult:
        """Process up to *max_items* pending items, oldest first.

        A failure on one item marks that item failed and the batch continues.
        """

        def _emit(msg: str) -> None:
            if on_progress:
                on_progress(msg)

        settings = self._settings.get(user_id, overrides)
        engine = self._priority_engine or TaskPriorityEngine(
            completion_history=partial(self._store.average_completion_time, user_id)
        )
        result = DrainResult()

        for i in range(1, max_items + 1):
            item = self._store.claim_next_pending(user_id)
            if item is None:
                break

            _emit(f"[{i}] work item {item.id} (message {item.message_id})")
            try:
                outcome = await self._process(item, settings, engine)
            except Exception as exc:
                self._record_failure(item, exc, result)
                _emit(f"  FAILED: {result.failed_items[item.id]}")
                continue

            result.processed += 1
            result.suggestions_created += len(outcome.suggestions)
            result.tasks_created += len(outcome.tasks)
            result.conflicts += outcome.conflicts
            if outcome.skipped_ai:
                result.skipped_ai += 1
                _emit("  Skipped AI analysis")
            else:
                _emit(f"  {len(outcome.suggestions)} suggestion(s), {len(outcome.tasks)} task(s)")

        logger.info(
            "Drain for %s: processed=%d suggestions=%d tasks=%d errors=%d skipped_ai=%d",
            user_id,
            result.processed,
            result.suggestions_created,
            result.tasks_created,
            result.errors,
            result.skipped_ai,
        )
        return result

    async def _analyze(self, message: InboundMessage) -> TaskAnalysis:
        try:
            return await asyncio.wait_for(self._analyzer(message), timeout=self._analyzer_timeout)
        except asyncio.TimeoutError as exc:
            raise AnalyzerTimeoutError(
                f"AI analysis timed out after {self._analyzer_timeout:g}s"
            ) from exc

    async def _process(
        self,
        item: WorkItem,
        settings: AutomationSettings,
        engine: TaskPriorityEngine,
    ) -> _ItemOutcome:
        message = self._store.get_message(item.user_id, item.message_id)
        if message is None:
            raise MissingSourceError(f"Message {item.message_id} not found")

        now = self._clock()
        outcome = _ItemOutcome()
        classification = classify(message, self._owner_address, now=now)

        if not classification.should_analyze_with_ai:
            outcome.skipped_ai = True
            self._store.complete_work_item(item.id)
            logger.info(
                "Message %s not AI-worthy (sched=%.2f importance=%s)",
                message.id,
                classification.scheduling_score,
                classification.importance_level.value,
            )
            return outcome

        analysis = await self._analyze(message)

        scheduled = self._store.list_scheduled_tasks(item.user_id)
        for extraction in analysis.extractions:
            factors = factors_from_extraction(
                extraction,
                message=message,
                classification=classification,
                insights=analysis.insights,
                settings=settings,
            )
            scored = engine.score(factors, now=now)
            priority = effective_priority(extraction.priority, scored.final_priority)

            window = get_scheduling_window(priority, settings, now=now)
            window = check_window(window, scheduled)
            outcome.conflicts += len(window.conflicts)

            suggestion = Suggestion(
                id=new_id(),
                user_id=item.user_id,
                work_item_id=item.id,
                message_id=message.id,
                type=extraction.type,
                title=extraction.title,
                description=extraction.description,
                suggested_time=extraction.suggested_datetime or window.suggested_start,
                confidence=extraction.confidence,
                priority=priority,
                extraction=extraction,
                created_at=now,
            )

            if should_auto_convert(extraction, settings):
                task = build_task(
                    extraction,
                    user_id=item.user_id,
                    message_id=message.id,
                    suggestion_id=suggestion.id,
                    priority=priority,
                    window=window,
                    settings=settings,
                    now=now,
                    priority_result=scored,
                )
                suggestion = suggestion.model_copy(
                    update={
                        "status": SuggestionStatus.AUTO_CONVERTED,
                        "task_id": task.id,
                        "updated_at": now,
                    }
                )
                outcome.tasks.append(task)
                if task.scheduled_start is not None:
                    scheduled.append(task)

            outcome.suggestions.append(suggestion)

        # Suggestions, tasks, and the completed transition commit together.
        self._store.complete_work_item(item.id, suggestions=outcome.suggestions, tasks=outcome.tasks)
        self._audit_outcome(outcome)
        return outcome

    def _record_failure(self, item: WorkItem, exc: Exception, result: DrainResult) -> None:
        kind = ErrorKind.FATAL if isinstance(exc, FATAL_ERRORS) else ErrorKind.TRANSIENT
        message = str(exc) or type(exc).__name__
        logger.exception("Work item %s failed (%s)", item.id, kind.value)

        try:
            failed = self._store.mark_failed(item.id, message, kind)
        except Exception:
            logger.exception("Could not mark work item %s failed", item.id)
            failed = item

        result.errors += 1
        result.failed_items[item.id] = message
        if self._audit is not None:
            try:
                self._audit.log_work_item_failed(failed, kind.value, message)
            except Exception:
                logger.warning("Could not audit failure of work item %s", item.id, exc_info=True)

    def _audit_outcome(self, outcome: _ItemOutcome) -> None:
        if self._audit is None:
            return
        tasks = {t.id: t for t in outcome.tasks}
        for suggestion in outcome.suggestions:
            if suggestion.task_id in tasks:
                self._audit.log_task_auto_created(tasks[suggestion.task_id], suggestion)
            else:
                self._audit.log_suggestion_queued(suggestion)

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    def retry_failed(self, user_id: str, max_retries: int | None = None) -> int:
        """Reset eligible failed items to pending. Returns how many were reset.

        Items abandoned in ``processing`` longer than ``stale_after`` are
        failed first, so they rejoin the queue under the same ceiling.
        """
        ceiling = self._max_retries if max_retries is None else max_retries
        self._store.reclaim_stale(user_id, self._stale_after, now=self._clock())
        count = self._store.reset_failed(user_id, ceiling)
        logger.info("Reset %d failed work item(s) for %s (max_retries=%d)", count, user_id, ceiling)
        return count

    # ------------------------------------------------------------------
    # Suggestion review
    # ------------------------------------------------------------------

    def approve_suggestion(self, suggestion_id: str) -> Task:
        """Convert a pending suggestion into a Task.

        Raises:
            ValueError: If the suggestion doesn't exist or isn't pending.
        """
        suggestion = self._store.get_suggestion(suggestion_id)
        if suggestion is None:
            raise ValueError(f"Suggestion not found: {suggestion_id}")

        settings = self._settings.get(suggestion.user_id)
        now = self._clock()
        window = get_scheduling_window(suggestion.priority, settings, now=now)
        window = check_window(window, self._store.list_scheduled_tasks(suggestion.user_id))

        task = build_task(
            suggestion.extraction,
            user_id=suggestion.user_id,
            message_id=suggestion.message_id,
            suggestion_id=suggestion.id,
            priority=suggestion.priority,
            window=window,
            settings=settings,
            now=now,
        )
        updated = self._store.set_suggestion_status(suggestion_id, SuggestionStatus.CONVERTED, task=task)
        logger.info("Approved suggestion %s -> task %s", suggestion_id, task.id)
        if self._audit is not None:
            self._audit.log_suggestion_approved(updated, task)
        return task

    def reject_suggestion(self, suggestion_id: str) -> Suggestion:
        """Reject a pending suggestion.

        Raises:
            ValueError: If the suggestion doesn't exist or isn't pending.
        """
        updated = self._store.set_suggestion_status(suggestion_id, SuggestionStatus.REJECTED)
        logger.info("Rejected suggestion %s", suggestion_id)
        if self._audit is not None:
            self._audit.log_suggestion_rejected(updated)
        return updated

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    def stats(self, user_id: str) -> QueueStats:
        return self._store.stats(user_id)
