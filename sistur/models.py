from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class Indicator(Base):
    __tablename__ = "indicators"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    pillar: Mapped[str] = mapped_column(String(2), nullable=False)  # "RA" | "OE" | "AO"
    theme: Mapped[str] = mapped_column(String(200), default="")
    direction: Mapped[str] = mapped_column(String(20), default="HIGH_IS_BETTER")
    normalization: Mapped[str] = mapped_column(String(20), default="MIN_MAX")
    min_ref: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_ref: Mapped[float | None] = mapped_column(Float, nullable=True)
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    minimum_tier: Mapped[str] = mapped_column(String(20), default="COMPLETE")
    intersectoral_dependency: Mapped[bool] = mapped_column(Boolean, default=False)


class CompositeRule(Base):
    __tablename__ = "composite_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    composite_code: Mapped[str] = mapped_column(String(50), nullable=False)
    component_code: Mapped[str] = mapped_column(String(50), nullable=False)
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    transform: Mapped[str] = mapped_column(String(20), default="NONE")  # NONE | INVERT | LOG | SQRT


class Course(Base):
    __tablename__ = "courses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    level: Mapped[str] = mapped_column(String(20), default="BASICO")
    pillar: Mapped[str | None] = mapped_column(String(2), nullable=True)
    tags_json: Mapped[str] = mapped_column(Text, default="[]")  # legacy [{"pillar", "theme"}]


class Training(Base):
    __tablename__ = "trainings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    training_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    pillar: Mapped[str] = mapped_column(String(2), nullable=False)
    level: Mapped[str | None] = mapped_column(String(20), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)


class IndicatorTrainingMap(Base):
    """Which training addresses a weak indicator, and how to word the reason."""
    __tablename__ = "indicator_training_map"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    indicator_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    training_id: Mapped[str] = mapped_column(String(100), ForeignKey("trainings.training_id"), nullable=False)
    pillar: Mapped[str] = mapped_column(String(2), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=1)
    reason_template: Mapped[str] = mapped_column(Text, default="")  # {indicator} {status} {pillar}


# ---------------------------------------------------------------------------
# Destinations and assessments
# ---------------------------------------------------------------------------


class Destination(Base):
    __tablename__ = "destinations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    uf: Mapped[str] = mapped_column(String(2), default="")

    assessments: Mapped[list[Assessment]] = relationship("Assessment", back_populates="destination")


class Assessment(Base):
    __tablename__ = "assessments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    destination_id: Mapped[int] = mapped_column(Integer, ForeignKey("destinations.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(300), default="")
    tier: Mapped[str] = mapped_column(String(20), default="COMPLETE")  # SMALL | MEDIUM | COMPLETE
    status: Mapped[str] = mapped_column(String(20), default="DRAFT")  # DRAFT | DATA_READY | CALCULATED
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    calculated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_review_recommended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    igma_flags_json: Mapped[str] = mapped_column(Text, default="[]")
    igma_interpretation_json: Mapped[str] = mapped_column(Text, default="{}")

    destination: Mapped[Destination] = relationship("Destination", back_populates="assessments")
    values: Mapped[list[IndicatorValue]] = relationship(
        "IndicatorValue", back_populates="assessment", cascade="all, delete-orphan",
    )


class IndicatorValue(Base):
    __tablename__ = "indicator_values"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=False)
    indicator_id: Mapped[int] = mapped_column(Integer, ForeignKey("indicators.id"), nullable=False)
    value_raw: Mapped[float | None] = mapped_column(Float, nullable=True)

    assessment: Mapped[Assessment] = relationship("Assessment", back_populates="values")
    indicator: Mapped[Indicator] = relationship("Indicator")


# ---------------------------------------------------------------------------
# Derived rows (replaced on every calculation)
# ---------------------------------------------------------------------------


class IndicatorScore(Base):
    __tablename__ = "indicator_scores"
    __table_args__ = (UniqueConstraint("assessment_id", "indicator_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=False)
    indicator_id: Mapped[int] = mapped_column(Integer, ForeignKey("indicators.id"), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    min_ref_used: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_ref_used: Mapped[float | None] = mapped_column(Float, nullable=True)
    weight_used: Mapped[float] = mapped_column(Float, default=1.0)
    computed_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class PillarScore(Base):
    __tablename__ = "pillar_scores"
    __table_args__ = (UniqueConstraint("assessment_id", "pillar"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=False)
    pillar: Mapped[str] = mapped_column(String(2), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)  # CRITICO | MODERADO | BOM


class Issue(Base):
    __tablename__ = "issues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=False)
    pillar: Mapped[str] = mapped_column(String(2), nullable=False)
    theme: Mapped[str] = mapped_column(String(200), default="")
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    interpretation: Mapped[str] = mapped_column(String(20), nullable=False)  # ESTRUTURAL | GESTAO | ENTREGA
    title: Mapped[str] = mapped_column(Text, default="")
    evidence_json: Mapped[str] = mapped_column(Text, default="{}")

    prescriptions: Mapped[list[Prescription]] = relationship("Prescription", back_populates="issue")


class Prescription(Base):
    __tablename__ = "prescriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=False)
    issue_id: Mapped[int] = mapped_column(Integer, ForeignKey("issues.id"), nullable=False)
    course_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("courses.id"), nullable=True)
    training_id: Mapped[str | None] = mapped_column(String(100), ForeignKey("trainings.training_id"), nullable=True)
    pillar: Mapped[str] = mapped_column(String(2), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    interpretation: Mapped[str] = mapped_column(String(20), nullable=False)
    justification: Mapped[str] = mapped_column(Text, nullable=False)
    target_agent: Mapped[str] = mapped_column(String(20), nullable=False)  # GESTORES | TECNICOS | TRADE
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    cycle_number: Mapped[int] = mapped_column(Integer, default=1)

    issue: Mapped[Issue] = relationship("Issue", back_populates="prescriptions")
    course: Mapped[Course | None] = relationship("Course")
    training: Mapped[Training | None] = relationship("Training")


class Recommendation(Base):
    __tablename__ = "recommendations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=False)
    issue_id: Mapped[int] = mapped_column(Integer, ForeignKey("issues.id"), nullable=False)
    course_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("courses.id"), nullable=True)
    training_id: Mapped[str | None] = mapped_column(String(100), ForeignKey("trainings.training_id"), nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)


class ActionPlan(Base):
    __tablename__ = "action_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    pillar: Mapped[str] = mapped_column(String(2), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    linked_issue_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("issues.id"), nullable=True)
    linked_prescription_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("prescriptions.id"), nullable=True,
    )
    due_date: Mapped[date] = mapped_column(Date, nullable=False)


# ---------------------------------------------------------------------------
# Destination-scoped state (survives recalculation)
# ---------------------------------------------------------------------------


class Alert(Base):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    destination_id: Mapped[int] = mapped_column(Integer, ForeignKey("destinations.id"), nullable=False)
    assessment_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=True)
    pillar: Mapped[str] = mapped_column(String(2), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(50), default="REGRESSION")
    consecutive_cycles: Mapped[int] = mapped_column(Integer, default=0)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    is_dismissed: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
