"""Auto-scheduling policy: priority + settings -> suggested time window.

No LLM calls — pure Python logic. Conflicts with already-scheduled tasks
are reported to the caller, never enforced.
"""

import logging
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from magpie.schemas.settings import AutomationSettings
from magpie.schemas.tasks import ScheduleConflict, SchedulingWindow, Task, TaskPriority

logger = logging.getLogger(__name__)

MEDIUM_OFFSET_HOURS = 48
LOW_OFFSET_HOURS = 168

AUTO_SCHEDULE_PRIORITIES = frozenset({TaskPriority.URGENT, TaskPriority.HIGH})


def offset_hours(priority: TaskPriority, settings: AutomationSettings) -> float:
    """Hours from now to the suggested start for a priority level.

    Configured offsets are clamped so that urgent <= high <= medium <= low
    holds for any settings.
    """
    window = settings.task_defaults.scheduling_window
    high = min(window.hours, MEDIUM_OFFSET_HOURS)
    urgent = min(window.urgent_hours, high)
    return {
        TaskPriority.URGENT: urgent,
        TaskPriority.HIGH: high,
        TaskPriority.MEDIUM: MEDIUM_OFFSET_HOURS,
        TaskPriority.LOW: LOW_OFFSET_HOURS,
    }[priority]


def get_scheduling_window(
    priority: TaskPriority,
    settings: AutomationSettings,
    *,
    now: datetime | None = None,
) -> SchedulingWindow:
    """Suggest a start/end window and decide whether to commit it automatically.

    Only urgent and high priority tasks are auto-scheduled, and only when both
    ``auto_schedule_tasks`` and ``task_defaults.auto_schedule_high_priority``
    are enabled. Everything else is left for manual scheduling.
    """
    now = now or datetime.now(UTC)
    start = now + timedelta(hours=offset_hours(priority, settings))
    end = start + timedelta(minutes=settings.task_defaults.default_duration)

    auto = (
        priority in AUTO_SCHEDULE_PRIORITIES
        and settings.auto_schedule_tasks
        and settings.task_defaults.auto_schedule_high_priority
    )
    return SchedulingWindow(suggested_start=start, suggested_end=end, auto_schedule=auto)


def _task_span(task: Task) -> tuple[datetime, datetime] | None:
    if task.scheduled_start is None:
        return None
    end = task.scheduled_end or task.scheduled_start + timedelta(minutes=task.estimated_duration)
    return task.scheduled_start, end


def find_conflicts(window: SchedulingWindow, scheduled: Iterable[Task]) -> list[ScheduleConflict]:
    """Existing scheduled tasks that overlap the suggested window."""
    conflicts = []
    for task in scheduled:
        span = _task_span(task)
        if span is None:
            continue
        start, end = span
        overlap_start = max(start, window.suggested_start)
        overlap_end = min(end, window.suggested_end)
        if overlap_start < overlap_end:
            conflicts.append(
                ScheduleConflict(
                    task_id=task.id,
                    title=task.title,
                    start=start,
                    end=end,
                    overlap_minutes=int((overlap_end - overlap_start).total_seconds() // 60),
                )
            )
    return conflicts


def check_window(window: SchedulingWindow, scheduled: Iterable[Task]) -> SchedulingWindow:
    """Return *window* with any conflicts attached. Best effort, never blocks."""
    conflicts = find_conflicts(window, scheduled)
    if conflicts:
        logger.info(
            "Suggested window %s-%s overlaps %d scheduled task(s): %s",
            window.suggested_start.isoformat(),
            window.suggested_end.isoformat(),
            len(conflicts),
            [c.task_id for c in conflicts],
        )
    return window.model_copy(update={"conflicts": conflicts})
