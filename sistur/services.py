"""Assessment calculation and the read-side views of its results.

``calculate`` is the only write path. It loads one assessment's data, runs
the pipeline (normalize, aggregate, detect, prescribe), and replaces every
derived row of the assessment inside a single transaction. Destination
alerts are upserted afterwards in a transaction of their own.
"""
from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Generator, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from sistur.aggregator import PillarResult, ScoredIndicator, aggregate_pillars, critical_pillar
from sistur.detector import IssueDraft, detect_issues
from sistur.errors import AssessmentNotFoundError, NoIndicatorDataError, PersistenceError
from sistur.igma import IgmaResult, alert_instructions, interpret
from sistur.models import (
    ActionPlan, Alert, Assessment, AuditEvent, CompositeRule, Course, Indicator, IndicatorScore,
    IndicatorTrainingMap, IndicatorValue, Issue, PillarScore, Prescription, Recommendation, Training,
)
from sistur.normalizer import (
    COMPOSITE_MAX_REF, COMPOSITE_MIN_REF, COMPOSITE_WEIGHT, apply_transform, composite_score, normalize,
)
from sistur.prescriber import (
    ActionPlanDraft, CourseOption, PrescriptionDraft, TrainingMapping, plan_actions, prescribe,
    weak_indicator_codes,
)
from sistur.regression import apply_alert_upserts, detect_regressions, load_history
from sistur.utils import json_parse

log = logging.getLogger(__name__)

CALCULATED = "CALCULATED"
AUDIT_EVENT_CALCULATED = "ASSESSMENT_CALCULATED"

ALLOWED_TIERS: dict[str, tuple[str, ...]] = {
    "SMALL": ("SMALL",),
    "MEDIUM": ("SMALL", "MEDIUM"),
    "COMPLETE": ("SMALL", "MEDIUM", "COMPLETE"),
}

# Derived tables, in the order their rows must be deleted.
DERIVED_MODELS = (ActionPlan, Prescription, Recommendation, Issue, PillarScore, IndicatorScore)


# ---------------------------------------------------------------------------
# Per-assessment serialization
# ---------------------------------------------------------------------------

_locks_guard = threading.Lock()
# assessment id -> (lock, number of callers holding or waiting for it)
_assessment_locks: dict[int, tuple[threading.Lock, int]] = {}


@contextmanager
def assessment_lock(assessment_id: int) -> Generator[None, None, None]:
    """Serialize calculations of the same assessment within this process.

    The registry entry is dropped once no caller holds or waits for it.
    """
    with _locks_guard:
        lock, users = _assessment_locks.get(assessment_id, (None, 0))
        if lock is None:
            lock = threading.Lock()
        _assessment_locks[assessment_id] = (lock, users + 1)
    try:
        with lock:
            yield
    finally:
        with _locks_guard:
            lock, users = _assessment_locks[assessment_id]
            if users <= 1:
                del _assessment_locks[assessment_id]
            else:
                _assessment_locks[assessment_id] = (lock, users - 1)


# ---------------------------------------------------------------------------
# Loading and scoring
# ---------------------------------------------------------------------------


def get_entity(session: Session, model, entity_id: int):
    return session.execute(select(model).where(model.id == entity_id)).scalars().first()


def allowed_tiers(tier: str | None) -> tuple[str, ...]:
    return ALLOWED_TIERS.get(tier or "COMPLETE", ALLOWED_TIERS["COMPLETE"])


def load_indicator_values(session: Session, assessment: Assessment) -> list[IndicatorValue]:
    """Indicator values of the assessment whose indicator is allowed for its tier."""
    values = session.execute(
        select(IndicatorValue)
        .options(selectinload(IndicatorValue.indicator))
        .where(IndicatorValue.assessment_id == assessment.id)
        .order_by(IndicatorValue.id)
    ).scalars().all()
    tiers = allowed_tiers(assessment.tier)
    return [v for v in values if v.indicator is not None and (v.indicator.minimum_tier or "COMPLETE") in tiers]


def score_indicators(values: Sequence[IndicatorValue]) -> list[ScoredIndicator]:
    scored: list[ScoredIndicator] = []
    for iv in values:
        ind = iv.indicator
        scored.append(ScoredIndicator(
            indicator_id=ind.id,
            code=ind.code,
            name=ind.name,
            pillar=ind.pillar,
            theme=ind.theme,
            score=normalize(iv.value_raw, ind.min_ref, ind.max_ref, ind.direction, ind.normalization),
            weight=ind.weight,
            min_ref=ind.min_ref,
            max_ref=ind.max_ref,
        ))
    return scored


def score_composites(session: Session, values: Sequence[IndicatorValue]) -> list[ScoredIndicator]:
    """Composite indicator scores built from the components present in *values*."""
    rules = session.execute(select(CompositeRule).order_by(CompositeRule.id)).scalars().all()
    if not rules:
        return []

    rules_by_code: dict[str, list[CompositeRule]] = {}
    for rule in rules:
        rules_by_code.setdefault(rule.composite_code, []).append(rule)
    catalog = {
        ind.code: ind
        for ind in session.execute(select(Indicator).where(Indicator.code.in_(list(rules_by_code)))).scalars()
    }
    values_by_code = {iv.indicator.code: iv for iv in values}

    composites: list[ScoredIndicator] = []
    for code, comp_rules in rules_by_code.items():
        components: list[tuple[float, float]] = []
        for rule in comp_rules:
            iv = values_by_code.get(rule.component_code)
            if iv is None or iv.value_raw is None:
                continue
            ind = iv.indicator
            score = normalize(iv.value_raw, ind.min_ref, ind.max_ref, ind.direction, ind.normalization)
            components.append((apply_transform(score, rule.transform), rule.weight))
        if not components:
            continue
        indicator = catalog.get(code)
        if indicator is None:
            log.warning("Composite rules reference unknown indicator %s; skipped", code)
            continue
        composites.append(ScoredIndicator(
            indicator_id=indicator.id,
            code=code,
            name=f"Índice Composto {code}",
            pillar=indicator.pillar,
            theme=indicator.theme,
            score=composite_score(components),
            weight=COMPOSITE_WEIGHT,
            min_ref=COMPOSITE_MIN_REF,
            max_ref=COMPOSITE_MAX_REF,
        ))
        log.info("Calculated composite %s: %.3f", code, composites[-1].score)
    return composites


def merge_scores(*groups: Sequence[ScoredIndicator]) -> list[ScoredIndicator]:
    """One score per indicator; later groups (and later rows) win."""
    merged: dict[int, ScoredIndicator] = {}
    for group in groups:
        for item in group:
            merged.pop(item.indicator_id, None)
            merged[item.indicator_id] = item
    return list(merged.values())


def load_courses(session: Session) -> list[CourseOption]:
    courses = session.execute(select(Course).order_by(Course.id)).scalars().all()
    options: list[CourseOption] = []
    for c in courses:
        tags = json_parse(c.tags_json, [])
        if not isinstance(tags, list):
            tags = []
        options.append(CourseOption(
            id=c.id, title=c.title, level=c.level, pillar=c.pillar,
            tags=tuple(
                (str(t.get("pillar", "")), str(t.get("theme", "")))
                for t in tags if isinstance(t, dict)
            ),
        ))
    return options


def load_training_catalog(
    session: Session, indicator_codes: Sequence[str],
) -> tuple[list[TrainingMapping], set[str]]:
    """Map rows for the given indicator codes, by priority, plus the ids of active trainings."""
    if not indicator_codes:
        return [], set()
    rows = session.execute(
        select(IndicatorTrainingMap)
        .where(IndicatorTrainingMap.indicator_code.in_(list(indicator_codes)))
        .order_by(IndicatorTrainingMap.priority, IndicatorTrainingMap.id)
    ).scalars().all()
    mappings = [
        TrainingMapping(
            indicator_code=r.indicator_code, training_id=r.training_id, pillar=r.pillar,
            priority=r.priority, reason_template=r.reason_template or "",
        )
        for r in rows
    ]
    if not mappings:
        return [], set()
    active = set(session.execute(
        select(Training.training_id).where(
            Training.training_id.in_({m.training_id for m in mappings}),
            Training.active.is_(True),
        )
    ).scalars())
    return mappings, active


# ---------------------------------------------------------------------------
# Calculation
# ---------------------------------------------------------------------------


@dataclass
class CalculationResult:
    success: bool
    assessment_id: int
    pillar_scores: list[dict[str, Any]]
    critical_pillar: str | None
    critical_score: float | None
    issues_created: int
    recommendations_created: int
    prescriptions_created: int = 0
    action_plans_created: int = 0
    alerts_raised: int = 0
    igma: dict[str, Any] = field(default_factory=dict)


def _replace_derived_rows(
    session: Session,
    assessment_id: int,
    scored: list[ScoredIndicator],
    pillars: list[PillarResult],
    issues: list[IssueDraft],
    prescriptions: list[PrescriptionDraft],
    plans: list[ActionPlanDraft],
    now: datetime,
) -> None:
    """Delete then re-insert every derived row of the assessment (caller must commit)."""
    for model in DERIVED_MODELS:
        session.execute(delete(model).where(model.assessment_id == assessment_id))

    session.add_all([
        IndicatorScore(
            assessment_id=assessment_id, indicator_id=s.indicator_id, score=s.score,
            min_ref_used=s.min_ref, max_ref_used=s.max_ref, weight_used=s.weight, computed_at=now,
        )
        for s in scored
    ])
    session.add_all([
        PillarScore(assessment_id=assessment_id, pillar=p.pillar, score=p.score, severity=p.severity)
        for p in pillars
    ])
    issue_rows = [
        Issue(
            assessment_id=assessment_id, pillar=d.pillar, theme=d.theme, severity=d.severity,
            interpretation=d.interpretation, title=d.title, evidence_json=json.dumps(d.evidence),
        )
        for d in issues
    ]
    session.add_all(issue_rows)
    session.flush()

    prescription_rows = [
        Prescription(
            assessment_id=assessment_id, issue_id=issue_rows[p.issue_index].id,
            course_id=p.course_id, training_id=p.training_id,
            pillar=p.pillar, status=p.status, interpretation=p.interpretation,
            justification=p.justification, target_agent=p.target_agent, priority=p.priority,
        )
        for p in prescriptions
    ]
    session.add_all(prescription_rows)
    session.add_all([
        Recommendation(
            assessment_id=assessment_id, issue_id=issue_rows[p.issue_index].id,
            course_id=p.course_id, training_id=p.training_id,
            reason=p.reason, priority=p.priority,
        )
        for p in prescriptions
    ])
    session.flush()

    first_prescription: dict[int, int] = {}
    for draft, row in sorted(zip(prescriptions, prescription_rows), key=lambda pair: pair[0].priority):
        first_prescription.setdefault(draft.issue_index, row.id)
    session.add_all([
        ActionPlan(
            assessment_id=assessment_id, title=plan.title, description=plan.description,
            pillar=plan.pillar, priority=plan.priority, linked_issue_id=issue_rows[plan.issue_index].id,
            linked_prescription_id=first_prescription.get(plan.issue_index), due_date=plan.due_date,
        )
        for plan in plans
    ])


def _mark_calculated(assessment: Assessment, igma_result: IgmaResult, now: datetime) -> None:
    assessment.status = CALCULATED
    assessment.calculated_at = now
    assessment.next_review_recommended_at = igma_result.next_review_at
    assessment.igma_flags_json = json.dumps(igma_result.active_flags)
    assessment.igma_interpretation_json = json.dumps(igma_result.to_dict())


def _pillar_dicts(pillars: list[PillarResult]) -> list[dict[str, Any]]:
    return [{"pillar": p.pillar, "score": p.score, "severity": p.severity} for p in pillars]


def calculate(session: Session, assessment_id: int, *, now: datetime | None = None) -> CalculationResult:
    """Run the full scoring pipeline for one assessment and persist the results.

    Safe to call repeatedly: every derived row of the assessment is replaced,
    never accumulated.

    Raises:
        AssessmentNotFoundError: the id does not resolve.
        NoIndicatorDataError: no indicator value survives the tier filter.
        CatalogInconsistencyError: an indicator carries an unknown pillar.
        PersistenceError: writing failed; nothing from this run was kept.
    """
    now = now or datetime.now(UTC)
    with assessment_lock(assessment_id):
        assessment = get_entity(session, Assessment, assessment_id)
        if assessment is None:
            raise AssessmentNotFoundError(f"Assessment {assessment_id} not found", assessment_id)

        values = load_indicator_values(session, assessment)
        if not values:
            raise NoIndicatorDataError(
                "No indicator values found for this assessment and tier level; fill in data first",
                assessment_id,
            )
        log.info("Calculating assessment %d: %d indicator values (tier %s)",
                 assessment_id, len(values), assessment.tier)

        scored = merge_scores(score_indicators(values), score_composites(session, values))
        pillars = aggregate_pillars(scored)
        issues = detect_issues(scored)
        mappings, active_trainings = load_training_catalog(session, weak_indicator_codes(issues))
        prescriptions = prescribe(issues, mappings, active_trainings, load_courses(session))
        plans = plan_actions(issues, now.date())
        history = load_history(session, assessment)
        intersectoral = sum(1 for v in values if v.indicator.intersectoral_dependency)
        igma_result = interpret(pillars, history[0] if history else None, now, intersectoral)
        critical = critical_pillar(pillars)

        try:
            _replace_derived_rows(session, assessment_id, scored, pillars, issues, prescriptions, plans, now)
            _mark_calculated(assessment, igma_result, now)
            session.add(AuditEvent(
                event_type=AUDIT_EVENT_CALCULATED,
                entity_type="assessment",
                entity_id=assessment_id,
                metadata_json=json.dumps({
                    "pillar_scores": _pillar_dicts(pillars),
                    "critical_pillar": critical.pillar if critical else None,
                    "issues_count": len(issues),
                    "recommendations_count": len(prescriptions),
                    "igma_flags": igma_result.flags,
                    "igma_blocked_actions": igma_result.blocked_actions,
                    "next_review_at": igma_result.next_review_at.isoformat(),
                }),
                created_at=now,
            ))
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            log.exception("Storing results for assessment %d failed", assessment_id)
            raise PersistenceError(f"Failed to store calculation results: {exc}", assessment_id) from exc

        log.info("Assessment %d: %d pillars, %d issues, %d prescriptions",
                 assessment_id, len(pillars), len(issues), len(prescriptions))
        alerts = raise_alerts(session, assessment, pillars, history, igma_result)

    return CalculationResult(
        success=True,
        assessment_id=assessment_id,
        pillar_scores=_pillar_dicts(pillars),
        critical_pillar=critical.pillar if critical else None,
        critical_score=critical.score if critical else None,
        issues_created=len(issues),
        recommendations_created=len(prescriptions),
        prescriptions_created=len(prescriptions),
        action_plans_created=len(plans),
        alerts_raised=len(alerts),
        igma=igma_result.to_dict(),
    )


def raise_alerts(
    session: Session,
    assessment: Assessment,
    pillars: list[PillarResult],
    history: list[dict[str, float]],
    igma_result: IgmaResult,
) -> list[Alert]:
    """Upsert regression and systemic alerts for the assessment's destination.

    Runs after the assessment's own results are committed.
    """
    current = {p.pillar: p.score for p in pillars}
    instructions = detect_regressions(current, history) + alert_instructions(igma_result)
    if not instructions:
        return []
    try:
        alerts = apply_alert_upserts(session, assessment.destination_id, assessment.id, instructions)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        log.exception("Raising alerts for destination %d failed", assessment.destination_id)
        raise PersistenceError(f"Failed to store destination alerts: {exc}", assessment.id) from exc
    return alerts


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def issue_summary(issue: Issue) -> dict[str, Any]:
    return {
        "id": issue.id, "pillar": issue.pillar, "theme": issue.theme,
        "severity": issue.severity, "interpretation": issue.interpretation,
        "title": issue.title, "evidence": json_parse(issue.evidence_json),
    }


def prescription_summary(p: Prescription) -> dict[str, Any]:
    return {
        "id": p.id, "issue_id": p.issue_id, "course_id": p.course_id, "training_id": p.training_id,
        "course_title": p.course.title if p.course else "",
        "training_title": p.training.title if p.training else "",
        "pillar": p.pillar, "status": p.status, "interpretation": p.interpretation,
        "justification": p.justification, "target_agent": p.target_agent, "priority": p.priority,
    }


def alert_summary(alert: Alert) -> dict[str, Any]:
    return {
        "id": alert.id, "destination_id": alert.destination_id, "assessment_id": alert.assessment_id,
        "pillar": alert.pillar, "alert_type": alert.alert_type,
        "consecutive_cycles": alert.consecutive_cycles, "message": alert.message,
        "is_read": alert.is_read, "is_dismissed": alert.is_dismissed,
    }


def assessment_detail(session: Session, assessment: Assessment) -> dict[str, Any]:
    aid = assessment.id
    pillars = session.execute(select(PillarScore).where(PillarScore.assessment_id == aid)).scalars().all()
    issues = session.execute(
        select(Issue).where(Issue.assessment_id == aid).order_by(Issue.id)
    ).scalars().all()
    prescriptions = session.execute(
        select(Prescription).where(Prescription.assessment_id == aid).order_by(Prescription.priority)
    ).scalars().all()
    return {
        "id": aid, "destination_id": assessment.destination_id, "title": assessment.title,
        "tier": assessment.tier, "status": assessment.status,
        "calculated_at": _iso(assessment.calculated_at),
        "next_review_recommended_at": _iso(assessment.next_review_recommended_at),
        "igma_flags": json_parse(assessment.igma_flags_json, []),
        "pillar_scores": [{"pillar": p.pillar, "score": p.score, "severity": p.severity} for p in pillars],
        "issues": [issue_summary(i) for i in issues],
        "prescriptions": [prescription_summary(p) for p in prescriptions],
    }


def list_open_alerts(session: Session, destination_id: int) -> list[dict[str, Any]]:
    alerts = session.execute(
        select(Alert)
        .where(Alert.destination_id == destination_id, Alert.is_dismissed.is_(False))
        .order_by(Alert.id)
    ).scalars().all()
    return [alert_summary(a) for a in alerts]


def dismiss_alert(session: Session, alert: Alert) -> dict[str, Any]:
    """Dismiss an alert (caller must commit). Later regressions open a new one."""
    alert.is_dismissed = True
    alert.is_read = True
    return alert_summary(alert)
