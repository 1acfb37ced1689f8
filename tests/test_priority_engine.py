"""Tests for the multi-factor task priority engine."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from magpie.executors.priority_engine import (
    TaskPriorityEngine,
    factors_from_extraction,
    score_to_priority,
)
from magpie.schemas.email import Classification, ImportanceLevel, InboundMessage, MessageCategory
from magpie.schemas.priority import PriorityFactors
from magpie.schemas.settings import AutomationSettings, PrioritySettings
from magpie.schemas.tasks import (
    AnalysisInsights,
    EmailType,
    ExtractionType,
    TaskExtraction,
    TaskPriority,
)

NOW = datetime(2024, 6, 3, 12, 0, tzinfo=UTC)


# --- Helpers ---


def _make_factors(**overrides) -> PriorityFactors:
    defaults = dict(created_date=NOW, estimated_duration=30, category="other")
    defaults.update(overrides)
    return PriorityFactors(**defaults)


def _make_classification(level: ImportanceLevel = ImportanceLevel.NORMAL) -> Classification:
    return Classification(
        importance_level=level,
        has_scheduling_content=True,
        should_analyze_with_ai=True,
        priority_score=0.5,
        category=MessageCategory.WORK,
        confidence=0.6,
    )


def _make_message(**overrides) -> InboundMessage:
    defaults = dict(
        id="msg-1",
        subject="Quarterly budget",
        from_address="boss@acme.com",
        body_text="Please review the budget before Friday.",
        received_at=NOW - timedelta(hours=1),
    )
    defaults.update(overrides)
    return InboundMessage(**defaults)


@pytest.fixture()
def engine():
    return TaskPriorityEngine()


class TestScoreToPriority:
    @pytest.mark.parametrize(
        "score, expected",
        [
            (100, TaskPriority.URGENT),
            (80, TaskPriority.URGENT),
            (79, TaskPriority.HIGH),
            (65, TaskPriority.HIGH),
            (64, TaskPriority.MEDIUM),
            (40, TaskPriority.MEDIUM),
            (39, TaskPriority.LOW),
            (0, TaskPriority.LOW),
        ],
    )
    def test_thresholds(self, score, expected):
        assert score_to_priority(score) == expected


class TestScore:
    def test_baseline(self, engine):
        """Every sub-score starts at 30, so a bare task scores 30 (low)."""
        result = engine.score(_make_factors(), now=NOW)
        assert result.priority_score == 30
        assert result.final_priority == TaskPriority.LOW
        assert result.dynamic_factors.time_factor_score == 30
        assert "Low priority - schedule when convenient" in result.reasoning.recommendations

    def test_score_bounded(self, engine):
        factors = _make_factors(
            due_date=NOW - timedelta(days=3),
            created_date=NOW - timedelta(days=30),
            estimated_duration=300,
            urgent_keywords=["urgent", "asap", "critical"],
            important_keywords=["client", "budget", "contract"],
            category="project",
            sender_importance=5,
            email_type=EmailType.REQUEST,
            stakeholder_count=10,
            business_impact="high",
            dependencies=["a", "b", "c", "d"],
            ai_confidence=1.0,
            ai_urgency=TaskPriority.URGENT,
            user_engagement=5.0,
        )
        result = engine.score(factors, now=NOW)
        assert 0 <= result.priority_score <= 100
        assert result.final_priority == TaskPriority.URGENT
        for value in result.dynamic_factors.model_dump().values():
            assert 0 <= value <= 100

    def test_urgent_keywords_never_lower_score(self, engine):
        base = engine.score(_make_factors(), now=NOW).priority_score
        one = engine.score(_make_factors(urgent_keywords=["urgent"]), now=NOW).priority_score
        two = engine.score(_make_factors(urgent_keywords=["urgent", "asap"]), now=NOW).priority_score
        assert base <= one <= two

    def test_overdue_scores_at_least_due_later(self, engine):
        scores = [
            engine.score(_make_factors(due_date=NOW + delta), now=NOW).priority_score
            for delta in (timedelta(days=30), timedelta(days=5), timedelta(days=2), timedelta(hours=6), -timedelta(days=1))
        ]
        assert scores == sorted(scores)

    def test_ai_urgency_monotonic(self, engine):
        scores = [
            engine.score(_make_factors(ai_urgency=level), now=NOW).priority_score
            for level in (TaskPriority.LOW, TaskPriority.MEDIUM, TaskPriority.HIGH, TaskPriority.URGENT)
        ]
        assert scores == sorted(scores)

    def test_overdue_reasoning(self, engine):
        result = engine.score(_make_factors(due_date=NOW - timedelta(days=2)), now=NOW)
        names = [f.factor for f in result.reasoning.factors]
        assert "Overdue" in names
        assert "Schedule immediately due to tight deadline" in result.reasoning.recommendations

    def test_blockers_penalty_capped(self, engine):
        factors = _make_factors(blockers=[str(i) for i in range(10)])
        result = engine.score(factors, now=NOW)
        blocker = next(f for f in result.reasoning.factors if f.factor == "Blocked by Dependencies")
        assert blocker.impact == -15
        assert result.dynamic_factors.context_factor_score == 15
        assert "Resolve blocking dependencies before scheduling this task" in result.reasoning.recommendations

    def test_engagement_bonus_capped(self, engine):
        result = engine.score(_make_factors(user_engagement=5.0), now=NOW)
        assert result.dynamic_factors.user_factor_score == 80

    def test_long_task_recommendations(self, engine):
        factors = _make_factors(due_date=NOW + timedelta(days=2), estimated_duration=300)
        recs = engine.score(factors, now=NOW).reasoning.recommendations
        assert "Large task with near deadline - consider breaking into smaller parts" in recs
        assert "Consider breaking this task into smaller, manageable chunks" in recs

    def test_low_ai_confidence_recommendation(self, engine):
        recs = engine.score(_make_factors(ai_confidence=0.4), now=NOW).reasoning.recommendations
        assert "Review task details - AI confidence is low, may need clarification" in recs


class TestCompletionHistory:
    def test_quick_completion_bonus(self):
        history = MagicMock(return_value=20.0)
        engine = TaskPriorityEngine(completion_history=history)
        result = engine.score(_make_factors(category="work", estimated_duration=60), now=NOW)
        history.assert_called_once_with("work", 60)
        assert result.dynamic_factors.user_factor_score == 40
        assert any(f.factor == "Quick Completion History" for f in result.reasoning.factors)

    def test_no_bonus_when_slow(self):
        engine = TaskPriorityEngine(completion_history=lambda category, minutes: 90.0)
        result = engine.score(_make_factors(estimated_duration=60), now=NOW)
        assert result.dynamic_factors.user_factor_score == 30

    def test_lookup_failure_ignored(self):
        def broken(category, minutes):
            raise RuntimeError("db locked")

        engine = TaskPriorityEngine(completion_history=broken)
        result = engine.score(_make_factors(), now=NOW)
        assert result.dynamic_factors.user_factor_score == 30


class TestBatch:
    def test_failure_isolated(self, engine):
        factors = [_make_factors(), _make_factors(urgent_keywords=["urgent"]), _make_factors()]
        original = engine._content_score
        calls = {"n": 0}

        def flaky(f, reasoning):
            calls["n"] += 1
            if calls["n"] == 2:
                raise ValueError("boom")
            return original(f, reasoning)

        with patch.object(engine, "_content_score", side_effect=flaky):
            results = engine.score_batch(factors, now=NOW)

        assert len(results) == 3
        assert results[0].priority_score == 30
        assert results[1].final_priority == TaskPriority.MEDIUM
        assert results[1].priority_score == 50
        assert "Calculation error: boom" in results[1].reasoning.adjustment_reasons
        assert results[2].priority_score == 30

    def test_recalculate_with_new_deadline_and_escalation(self, engine):
        factors = [_make_factors(), _make_factors()]
        before = engine.score_batch(factors, now=NOW)
        after = engine.recalculate_with_context(
            factors,
            new_deadlines={0: NOW + timedelta(hours=2)},
            urgent_indices=[1],
            now=NOW,
        )
        assert after[0].priority_score > before[0].priority_score
        assert after[1].priority_score > before[1].priority_score
        assert any(f.factor == "AI Urgency Assessment" for f in after[1].reasoning.factors)
        # Inputs are not mutated.
        assert factors[0].due_date is None
        assert factors[1].urgent_keywords == []


class TestFactorsFromExtraction:
    def test_collects_signals(self):
        extraction = TaskExtraction(
            type=ExtractionType.DEADLINE,
            title="Urgent: send budget to client",
            suggested_datetime=NOW + timedelta(days=1),
            confidence=0.9,
            priority=TaskPriority.HIGH,
            category="work",
            estimated_duration=45,
            participants=["a@acme.com", "b@acme.com"],
            dependencies=["legal sign-off"],
        )
        settings = AutomationSettings(
            priority_settings=PrioritySettings(
                urgent_keywords=["urgent"],
                important_senders=["boss@acme.com"],
                high_priority_domains=["acme.com"],
            )
        )
        factors = factors_from_extraction(
            extraction,
            message=_make_message(),
            classification=_make_classification(),
            insights=AnalysisInsights(email_type="request"),
            settings=settings,
        )
        assert "urgent" in factors.urgent_keywords
        assert factors.urgent_keywords.count("urgent") == 1
        assert {"client", "budget"} <= set(factors.important_keywords)
        assert factors.sender_importance == 5
        assert factors.business_impact == "high"
        assert factors.due_date == NOW + timedelta(days=1)
        assert factors.stakeholder_count == 2
        assert factors.blockers == ["legal sign-off"]
        assert factors.email_type == EmailType.REQUEST
        assert factors.ai_urgency == TaskPriority.HIGH
        assert factors.created_date == NOW - timedelta(hours=1)

    def test_defaults_from_classification(self):
        factors = factors_from_extraction(
            TaskExtraction(title="File receipts"),
            message=_make_message(from_address="someone@else.org", subject="Receipts"),
            classification=_make_classification(ImportanceLevel.LOW),
            insights=AnalysisInsights(stakeholders=["x"]),
            settings=AutomationSettings(),
        )
        assert factors.sender_importance == 1
        assert factors.business_impact is None
        assert factors.email_type is None
        assert factors.stakeholder_count == 1
        assert factors.due_date is None
