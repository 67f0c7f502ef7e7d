"""Pydantic request/response schemas for the SISTUR API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, field_validator


class CalculateRequest(BaseModel):
    assessment_id: int

    @field_validator("assessment_id")
    @classmethod
    def id_must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("assessment_id must be a positive integer")
        return v


class PillarScoreOut(BaseModel):
    pillar: str
    score: float
    severity: str


class CalculationOut(BaseModel):
    success: bool
    assessment_id: int
    pillar_scores: list[PillarScoreOut]
    critical_pillar: str | None = None
    critical_score: float | None = None
    issues_created: int
    recommendations_created: int
    prescriptions_created: int = 0
    action_plans_created: int = 0
    alerts_raised: int = 0
    igma: dict[str, Any] = {}


class IssueOut(BaseModel):
    id: int
    pillar: str
    theme: str
    severity: str
    interpretation: str
    title: str
    evidence: dict[str, Any] = {}


class PrescriptionOut(BaseModel):
    id: int
    issue_id: int
    course_id: int | None = None
    training_id: str | None = None
    course_title: str = ""
    training_title: str = ""
    pillar: str
    status: str
    interpretation: str
    justification: str
    target_agent: str
    priority: int


class AssessmentDetail(BaseModel):
    id: int
    destination_id: int
    title: str
    tier: str
    status: str
    calculated_at: str | None = None
    next_review_recommended_at: str | None = None
    igma_flags: list[str] = []
    pillar_scores: list[PillarScoreOut] = []
    issues: list[IssueOut] = []
    prescriptions: list[PrescriptionOut] = []


class AlertOut(BaseModel):
    id: int
    destination_id: int
    assessment_id: int | None = None
    pillar: str
    alert_type: str
    consecutive_cycles: int
    message: str
    is_read: bool
    is_dismissed: bool
