"""Multi-factor task priority engine.

Turns contextual signals (deadline, content keywords, sender, AI assessment,
user history) into a priority level and a 0-100 score with an explainable
breakdown. Five sub-scores, each 0-100, are combined with fixed weights:

    0.35 * time + 0.25 * content + 0.20 * context + 0.15 * ai + 0.05 * user

The reasoning (factor impacts and recommendations) is part of the contract:
it is stored on the Task and written to the audit log.
"""

import logging
import math
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime

from magpie.schemas.email import Classification, ImportanceLevel, InboundMessage
from magpie.schemas.priority import (
    DynamicFactors,
    PriorityFactors,
    PriorityReasoning,
    PriorityResult,
)
from magpie.schemas.settings import AutomationSettings
from magpie.schemas.tasks import (
    AnalysisInsights,
    EmailType,
    ExtractionType,
    TaskExtraction,
    TaskPriority,
)

logger = logging.getLogger(__name__)

# (category, estimated_duration) -> average actual minutes for similar completed tasks
CompletionHistory = Callable[[str, int], float | None]

WEIGHTS = {"time": 0.35, "content": 0.25, "context": 0.20, "ai": 0.15, "user": 0.05}

URGENT_KEYWORDS = (
    "urgent", "asap", "immediate", "emergency", "critical", "deadline",
    "rush", "priority", "important", "escalate", "overdue", "late",
)

IMPORTANT_KEYWORDS = (
    "meeting", "presentation", "client", "customer", "board", "ceo",
    "director", "manager", "project", "launch", "release", "milestone",
    "revenue", "budget", "contract", "legal", "compliance",
)

CATEGORY_BONUS = {
    "work": 10,
    "project": 15,
    "finance": 12,
    "health": 8,
    "education": 6,
    "personal": 5,
    "social": 3,
    "household": 4,
    "travel": 7,
    "other": 0,
}

EMAIL_TYPE_BONUS = {
    EmailType.REQUEST: 15,
    EmailType.REMINDER: 12,
    EmailType.NOTIFICATION: 8,
    EmailType.INFORMATION: 5,
}

BUSINESS_IMPACT_BONUS = {"high": 20, "medium": 10, "low": 0}

AI_URGENCY_BONUS = {
    TaskPriority.URGENT: 30,
    TaskPriority.HIGH: 20,
    TaskPriority.MEDIUM: 10,
    TaskPriority.LOW: 0,
}

SENDER_IMPORTANCE = {
    ImportanceLevel.HIGH: 5,
    ImportanceLevel.NORMAL: 3,
    ImportanceLevel.LOW: 1,
}

_DAY_SECONDS = 24 * 60 * 60


def _clamp(score: float) -> float:
    return max(0.0, min(100.0, score))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def score_to_priority(score: float) -> TaskPriority:
    if score >= 80:
        return TaskPriority.URGENT
    if score >= 65:
        return TaskPriority.HIGH
    if score >= 40:
        return TaskPriority.MEDIUM
    return TaskPriority.LOW


def _days_until(moment: datetime, now: datetime) -> float:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return (moment - now).total_seconds() / _DAY_SECONDS


def default_result(note: str) -> PriorityResult:
    """Neutral medium/50 result used when scoring an item fails."""
    return PriorityResult(
        final_priority=TaskPriority.MEDIUM,
        priority_score=50,
        reasoning=PriorityReasoning(
            recommendations=["Priority calculation failed - defaulting to medium"],
            adjustment_reasons=[note],
        ),
        dynamic_factors=DynamicFactors(),
    )


class TaskPriorityEngine:
    """Weighted priority scorer.

    Args:
        completion_history: Optional lookup of the user's average actual
            duration for similar completed tasks. Enables the
            quick-completion bonus.
    """

    def __init__(self, completion_history: CompletionHistory | None = None) -> None:
        self._completion_history = completion_history

    def score(self, factors: PriorityFactors, *, now: datetime | None = None) -> PriorityResult:
        now = now or datetime.now(UTC)
        reasoning = PriorityReasoning()

        dynamic = DynamicFactors(
            time_factor_score=self._time_score(factors, reasoning, now),
            content_factor_score=self._content_score(factors, reasoning),
            context_factor_score=self._context_score(factors, reasoning),
            ai_factor_score=self._ai_score(factors, reasoning),
            user_factor_score=self._user_score(factors, reasoning),
        )

        combined = (
            dynamic.time_factor_score * WEIGHTS["time"]
            + dynamic.content_factor_score * WEIGHTS["content"]
            + dynamic.context_factor_score * WEIGHTS["context"]
            + dynamic.ai_factor_score * WEIGHTS["ai"]
            + dynamic.user_factor_score * WEIGHTS["user"]
        )
        priority_score = max(0, min(100, _round_half_up(combined)))

        self._recommend(factors, priority_score, reasoning, now)

        return PriorityResult(
            final_priority=score_to_priority(priority_score),
            priority_score=priority_score,
            reasoning=reasoning,
            dynamic_factors=dynamic,
        )

    def score_batch(
        self,
        factors_list: Iterable[PriorityFactors],
        *,
        now: datetime | None = None,
    ) -> list[PriorityResult]:
        """Score each item; a failure yields a default medium/50 result for that item."""
        results = []
        for i, factors in enumerate(factors_list):
            try:
                results.append(self.score(factors, now=now))
            except Exception as exc:
                logger.exception("Priority calculation failed for item %d", i)
                results.append(default_result(f"Calculation error: {exc}"))
        return results

    def recalculate_with_context(
        self,
        factors_list: list[PriorityFactors],
        *,
        new_deadlines: Mapping[int, datetime] | None = None,
        urgent_indices: Iterable[int] = (),
        now: datetime | None = None,
    ) -> list[PriorityResult]:
        """Re-score after context changes (moved deadlines, escalations).

        Args:
            factors_list: The original factors, by position.
            new_deadlines: Position -> new due date.
            urgent_indices: Positions escalated to urgent by the user.
        """
        new_deadlines = new_deadlines or {}
        urgent = set(urgent_indices)
        updated = []
        for i, factors in enumerate(factors_list):
            changes: dict = {}
            if i in new_deadlines:
                changes["due_date"] = new_deadlines[i]
            if i in urgent:
                changes["ai_urgency"] = TaskPriority.URGENT
                changes["urgent_keywords"] = [*factors.urgent_keywords, "urgent request"]
            updated.append(factors.model_copy(update=changes) if changes else factors)
        return self.score_batch(updated, now=now)

    # --- Sub-scores ---

    def _time_score(self, factors: PriorityFactors, reasoning: PriorityReasoning, now: datetime) -> float:
        score = 30.0

        if factors.due_date is not None:
            days = _days_until(factors.due_date, now)
            if days < 0:
                score += 40
                reasoning.add("Overdue", 40, f"Task is {abs(round(days))} days overdue")
            elif days <= 1:
                score += 35
                reasoning.add("Due Soon", 35, "Task due within 24 hours")
            elif days <= 3:
                score += 25
                reasoning.add("Due This Week", 25, "Task due within 3 days")
            elif days <= 7:
                score += 15
                reasoning.add("Due Next Week", 15, "Task due within a week")

        age_days = -_days_until(factors.created_date, now)
        if age_days > 7:
            score += 10
            reasoning.add("Task Age", 10, f"Task created {round(age_days)} days ago")

        if factors.estimated_duration > 240:
            score += 5
            reasoning.add("Long Duration", 5, "Long tasks need early scheduling")

        return _clamp(score)

    def _content_score(self, factors: PriorityFactors, reasoning: PriorityReasoning) -> float:
        score = 30.0

        urgent_count = sum(
            1 for kw in factors.urgent_keywords if any(u in kw.lower() for u in URGENT_KEYWORDS)
        )
        if urgent_count:
            bonus = min(urgent_count * 15, 30)
            score += bonus
            reasoning.add("Urgent Keywords", bonus, f"Found {urgent_count} urgency indicators in content")

        important_count = sum(
            1 for kw in factors.important_keywords if any(i in kw.lower() for i in IMPORTANT_KEYWORDS)
        )
        if important_count:
            bonus = min(important_count * 10, 20)
            score += bonus
            reasoning.add(
                "Important Keywords", bonus, f"Found {important_count} importance indicators in content"
            )

        category_bonus = CATEGORY_BONUS.get(factors.category, 0)
        if category_bonus:
            score += category_bonus
            reasoning.add("Category", category_bonus, f"{factors.category} category adds priority weight")

        return _clamp(score)

    def _context_score(self, factors: PriorityFactors, reasoning: PriorityReasoning) -> float:
        score = 30.0

        if factors.sender_importance:
            bonus = factors.sender_importance * 4
            score += bonus
            reasoning.add(
                "Sender Importance", bonus, f"Important sender (level {factors.sender_importance}/5)"
            )

        if factors.email_type is not None:
            bonus = EMAIL_TYPE_BONUS.get(factors.email_type, 0)
            score += bonus
            reasoning.add("Email Type", bonus, f"{factors.email_type.value} type email")

        if factors.stakeholder_count and factors.stakeholder_count > 1:
            bonus = min(factors.stakeholder_count * 3, 15)
            score += bonus
            reasoning.add("Multiple Stakeholders", bonus, f"{factors.stakeholder_count} people involved")

        if factors.business_impact is not None:
            bonus = BUSINESS_IMPACT_BONUS[factors.business_impact]
            score += bonus
            if bonus:
                reasoning.add("Business Impact", bonus, f"{factors.business_impact} business impact")

        if factors.dependencies:
            bonus = min(len(factors.dependencies) * 5, 15)
            score += bonus
            reasoning.add("Dependent Tasks", bonus, f"{len(factors.dependencies)} tasks depend on this")

        if factors.blockers:
            penalty = max(len(factors.blockers) * -5, -15)
            score += penalty
            reasoning.add("Blocked by Dependencies", penalty, f"Blocked by {len(factors.blockers)} tasks")

        return _clamp(score)

    def _ai_score(self, factors: PriorityFactors, reasoning: PriorityReasoning) -> float:
        score = 30.0

        if factors.ai_confidence:
            bonus = factors.ai_confidence * 20
            score += bonus
            reasoning.add(
                "AI Confidence", round(bonus, 2), f"AI analysis confidence: {round(factors.ai_confidence * 100)}%"
            )

        if factors.ai_urgency is not None:
            bonus = AI_URGENCY_BONUS[factors.ai_urgency]
            score += bonus
            if bonus:
                reasoning.add(
                    "AI Urgency Assessment", bonus, f"AI assessed urgency as {factors.ai_urgency.value}"
                )

        return _clamp(score)

    def _user_score(self, factors: PriorityFactors, reasoning: PriorityReasoning) -> float:
        score = 30.0

        if factors.user_engagement:
            bonus = min(factors.user_engagement * 10, 50)
            score += bonus
            reasoning.add("User Engagement", round(bonus, 2), "High engagement with similar tasks")

        if self._completion_history is not None:
            try:
                average = self._completion_history(factors.category, factors.estimated_duration)
            except Exception:
                logger.warning("Completion history lookup failed", exc_info=True)
                average = None
            if average is not None and average <= factors.estimated_duration * 0.8:
                score += 10
                reasoning.add(
                    "Quick Completion History", 10, "User typically completes similar tasks quickly"
                )

        return _clamp(score)

    # --- Recommendations ---

    def _recommend(
        self,
        factors: PriorityFactors,
        score: int,
        reasoning: PriorityReasoning,
        now: datetime,
    ) -> None:
        recs = reasoning.recommendations

        if factors.due_date is not None:
            days = _days_until(factors.due_date, now)
            if days <= 1:
                recs.append("Schedule immediately due to tight deadline")
            elif days <= 3 and factors.estimated_duration > 120:
                recs.append("Large task with near deadline - consider breaking into smaller parts")

        if factors.estimated_duration > 240:
            recs.append("Consider breaking this task into smaller, manageable chunks")
        if factors.blockers:
            recs.append("Resolve blocking dependencies before scheduling this task")
        if factors.dependencies:
            recs.append("Priority task - other tasks are waiting on completion")
        if factors.user_engagement and factors.user_engagement < 0.3:
            recs.append("Consider delegating or breaking down - low historical engagement")
        if factors.ai_confidence < 0.6:
            recs.append("Review task details - AI confidence is low, may need clarification")

        if score >= 80:
            recs.append("Urgent priority - schedule within next 4 hours if possible")
        elif score >= 65:
            recs.append("High priority - schedule within next 24 hours")
        elif score >= 40:
            recs.append("Medium priority - schedule within next 3 days")
        else:
            recs.append("Low priority - schedule when convenient")


def _sender_domain(address: str) -> str:
    return address.rpartition("@")[2].lower().strip("> ")


def factors_from_extraction(
    extraction: TaskExtraction,
    *,
    message: InboundMessage,
    classification: Classification,
    insights: AnalysisInsights,
    settings: AutomationSettings,
) -> PriorityFactors:
    """Build priority factors for one extraction from its message context."""
    prefs = settings.priority_settings
    text = " ".join(
        part for part in (extraction.title, extraction.description, extraction.context, message.subject) if part
    ).lower()

    urgent_vocab = dict.fromkeys([*URGENT_KEYWORDS, *(k.lower() for k in prefs.urgent_keywords)])
    urgent = [kw for kw in urgent_vocab if kw and kw in text]
    important = [kw for kw in IMPORTANT_KEYWORDS if kw in text]

    sender = (message.from_address or "").lower()
    sender_importance = SENDER_IMPORTANCE[classification.importance_level]
    if any(s.lower() in sender for s in prefs.important_senders if s):
        sender_importance = 5

    domain = _sender_domain(sender)
    business_impact = None
    if domain and domain in {d.lower().lstrip("@") for d in prefs.high_priority_domains}:
        business_impact = "high"

    due_date = extraction.suggested_due_date
    if due_date is None and extraction.type == ExtractionType.DEADLINE:
        due_date = extraction.suggested_datetime

    stakeholders = extraction.participants or insights.stakeholders

    return PriorityFactors(
        due_date=due_date,
        created_date=message.received_at,
        estimated_duration=extraction.estimated_duration,
        urgent_keywords=urgent,
        important_keywords=important,
        category=extraction.category.value,
        sender_importance=sender_importance,
        email_type=insights.email_type if insights.email_type != EmailType.OTHER else None,
        stakeholder_count=len(stakeholders) if stakeholders else None,
        business_impact=business_impact,
        blockers=list(extraction.dependencies or []),
        ai_confidence=extraction.confidence,
        ai_urgency=extraction.priority,
    )
