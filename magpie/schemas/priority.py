"""Schemas for the task priority engine."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from magpie.schemas.tasks import EmailType, TaskPriority


class PriorityFactors(BaseModel):
    """Contextual signals the priority engine scores."""

    # Time
    due_date: datetime | None = None
    created_date: datetime
    estimated_duration: int = Field(default=30, ge=0, description="Minutes")

    # Content
    urgent_keywords: list[str] = Field(default_factory=list)
    important_keywords: list[str] = Field(default_factory=list)
    category: str = "other"

    # Context
    sender_importance: int | None = Field(default=None, ge=1, le=5)
    email_type: EmailType | None = None
    stakeholder_count: int | None = Field(default=None, ge=0)
    business_impact: Literal["low", "medium", "high"] | None = None
    dependencies: list[str] = Field(default_factory=list, description="Tasks waiting on this one")
    blockers: list[str] = Field(default_factory=list, description="Tasks this one waits on")

    # AI
    ai_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    ai_urgency: TaskPriority | None = None

    # User behavior
    user_engagement: float | None = Field(default=None, ge=0.0, le=5.0)


class FactorImpact(BaseModel):
    factor: str
    impact: float
    explanation: str


class PriorityReasoning(BaseModel):
    factors: list[FactorImpact] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    adjustment_reasons: list[str] = Field(default_factory=list)

    def add(self, factor: str, impact: float, explanation: str) -> None:
        self.factors.append(FactorImpact(factor=factor, impact=impact, explanation=explanation))


class DynamicFactors(BaseModel):
    time_factor_score: float = 30
    content_factor_score: float = 30
    context_factor_score: float = 30
    ai_factor_score: float = 30
    user_factor_score: float = 30


class PriorityResult(BaseModel):
    final_priority: TaskPriority
    priority_score: int = Field(ge=0, le=100)
    reasoning: PriorityReasoning
    dynamic_factors: DynamicFactors
