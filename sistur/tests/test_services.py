"""End-to-end tests of the calculation pipeline against an in-memory database."""
from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, date, datetime

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from conftest import (
    add_calculated_assessment, add_course, add_indicator, add_training, add_training_map, add_value,
)
from sistur import services
from sistur.errors import (
    AssessmentNotFoundError, CatalogInconsistencyError, NoIndicatorDataError, PersistenceError,
)
from sistur.models import (
    ActionPlan, Alert, Assessment, AuditEvent, Base, CompositeRule, Destination, IndicatorScore, Issue,
    PillarScore, Prescription, Recommendation,
)

DERIVED = (IndicatorScore, PillarScore, Issue, Prescription, Recommendation, ActionPlan)


def _count(session, model) -> int:
    return session.execute(select(func.count()).select_from(model)).scalar_one()


def _critical_environment(session, assessment):
    """Two RA/ambiental indicators at 20 and 40 out of 0..100, plus one RA course."""
    a = add_indicator(session, "RA_AMB_1", min_ref=0, max_ref=100)
    b = add_indicator(session, "RA_AMB_2", min_ref=0, max_ref=100)
    add_value(session, assessment, a, 20)
    add_value(session, assessment, b, 40)
    course = add_course(session, "Gestão ambiental do destino", pillar="RA")
    session.commit()
    return course


def _derived_rows(session) -> dict[str, list[tuple]]:
    """Column values of every derived row, with row ids left out and issues referenced by position."""
    issues = session.execute(
        select(Issue.id, Issue.pillar, Issue.theme, Issue.severity, Issue.interpretation, Issue.title,
               Issue.evidence_json).order_by(Issue.id)
    ).all()
    position = {row.id: n for n, row in enumerate(issues)}
    prescriptions = session.execute(
        select(Prescription.issue_id, Prescription.course_id, Prescription.training_id, Prescription.pillar,
               Prescription.status, Prescription.justification, Prescription.target_agent,
               Prescription.priority).order_by(Prescription.priority)
    ).all()
    recommendations = session.execute(
        select(Recommendation.issue_id, Recommendation.course_id, Recommendation.training_id,
               Recommendation.reason, Recommendation.priority).order_by(Recommendation.priority)
    ).all()
    plans = session.execute(
        select(ActionPlan.linked_issue_id, ActionPlan.title, ActionPlan.pillar, ActionPlan.priority,
               ActionPlan.due_date).order_by(ActionPlan.id)
    ).all()
    return {
        "indicator_scores": [tuple(r) for r in session.execute(
            select(IndicatorScore.indicator_id, IndicatorScore.score, IndicatorScore.min_ref_used,
                   IndicatorScore.max_ref_used, IndicatorScore.weight_used).order_by(IndicatorScore.indicator_id)
        )],
        "pillar_scores": [tuple(r) for r in session.execute(
            select(PillarScore.pillar, PillarScore.score, PillarScore.severity).order_by(PillarScore.pillar)
        )],
        "issues": [tuple(r)[1:] for r in issues],
        "prescriptions": [(position[r[0]], *r[1:]) for r in prescriptions],
        "recommendations": [(position[r[0]], *r[1:]) for r in recommendations],
        "action_plans": [(position[r[0]], *r[1:]) for r in plans],
    }


# ---------------------------------------------------------------------------
# Full pipeline
# ---------------------------------------------------------------------------


class TestCalculate:
    def test_critical_environment_scenario(self, session, assessment, fixed_now):
        course = _critical_environment(session, assessment)

        result = services.calculate(session, assessment.id, now=fixed_now)

        assert result.success is True
        assert result.pillar_scores == [{"pillar": "RA", "score": pytest.approx(0.3), "severity": "CRITICO"}]
        assert result.critical_pillar == "RA"
        assert result.issues_created == 1
        assert result.prescriptions_created == 1
        assert result.recommendations_created == 1
        assert result.action_plans_created == 1

        issue = session.execute(select(Issue)).scalars().one()
        assert (issue.pillar, issue.theme, issue.severity, issue.interpretation) == (
            "RA", "ambiental", "CRITICO", "ESTRUTURAL",
        )
        evidence = json.loads(issue.evidence_json)
        assert [i["code"] for i in evidence["indicators"]] == ["RA_AMB_1", "RA_AMB_2"]

        prescription = session.execute(select(Prescription)).scalars().one()
        assert prescription.course_id == course.id
        assert prescription.issue_id == issue.id
        assert prescription.target_agent == "GESTORES"
        assert prescription.priority == 1
        for fragment in ("ambiental", "Crítico", "Relações Ambientais", "Estrutural"):
            assert fragment in prescription.justification

        plan = session.execute(select(ActionPlan)).scalars().one()
        assert plan.linked_issue_id == issue.id
        assert plan.linked_prescription_id == prescription.id
        assert plan.due_date == date(2026, 4, 15)

    def test_marks_assessment_calculated(self, session, assessment, fixed_now):
        _critical_environment(session, assessment)
        services.calculate(session, assessment.id, now=fixed_now)

        stored = session.get(Assessment, assessment.id)
        assert stored.status == "CALCULATED"
        assert stored.calculated_at.replace(tzinfo=None) == fixed_now.replace(tzinfo=None)
        assert json.loads(stored.igma_flags_json) == ["RA_LIMITATION", "MARKETING_BLOCKED"]
        assert stored.next_review_recommended_at.replace(tzinfo=None) == datetime(2026, 7, 15, 12, 0)

    def test_writes_audit_event(self, session, assessment, fixed_now):
        _critical_environment(session, assessment)
        services.calculate(session, assessment.id, now=fixed_now)

        event = session.execute(select(AuditEvent)).scalars().one()
        assert event.event_type == "ASSESSMENT_CALCULATED"
        assert (event.entity_type, event.entity_id) == ("assessment", assessment.id)
        meta = json.loads(event.metadata_json)
        assert meta["critical_pillar"] == "RA"
        assert meta["issues_count"] == 1
        assert meta["igma_blocked_actions"] == ["EDU_OE", "MARKETING"]

    def test_recalculation_replaces_rows(self, session, assessment, fixed_now):
        _critical_environment(session, assessment)
        services.calculate(session, assessment.id, now=fixed_now)
        first_counts = {m.__name__: _count(session, m) for m in DERIVED}
        first_rows = _derived_rows(session)

        services.calculate(session, assessment.id, now=fixed_now)

        assert {m.__name__: _count(session, m) for m in DERIVED} == first_counts
        assert _derived_rows(session) == first_rows
        # systemic alerts are not duplicated
        assert _count(session, Alert) == 2

    def test_not_found(self, session):
        with pytest.raises(AssessmentNotFoundError) as exc_info:
            services.calculate(session, 9999)
        assert exc_info.value.status_code == 404

    def test_no_indicator_data(self, session, assessment):
        session.commit()
        with pytest.raises(NoIndicatorDataError) as exc_info:
            services.calculate(session, assessment.id)
        assert exc_info.value.status_code == 400
        assert _count(session, PillarScore) == 0

    def test_unknown_pillar_is_reported(self, session, assessment):
        ind = add_indicator(session, "BROKEN", pillar="ZZ")
        add_value(session, assessment, ind, 50)
        session.commit()
        with pytest.raises(CatalogInconsistencyError):
            services.calculate(session, assessment.id)


# ---------------------------------------------------------------------------
# Tier filter and composites
# ---------------------------------------------------------------------------


class TestTierFilter:
    def test_small_tier_keeps_only_small_indicators(self, session, assessment, fixed_now):
        small = add_indicator(session, "SMALL_1", minimum_tier="SMALL", min_ref=0, max_ref=100)
        full = add_indicator(session, "FULL_1", minimum_tier="COMPLETE", min_ref=0, max_ref=100)
        add_value(session, assessment, small, 90)
        add_value(session, assessment, full, 10)
        assessment.tier = "SMALL"
        session.commit()

        services.calculate(session, assessment.id, now=fixed_now)

        scored = session.execute(select(IndicatorScore.indicator_id)).scalars().all()
        assert scored == [small.id]

    def test_everything_filtered_out_means_no_data(self, session, assessment):
        full = add_indicator(session, "FULL_1", minimum_tier="COMPLETE")
        add_value(session, assessment, full, 10)
        assessment.tier = "MEDIUM"
        session.commit()

        with pytest.raises(NoIndicatorDataError):
            services.calculate(session, assessment.id)

    @pytest.mark.parametrize("tier,expected", [
        ("SMALL", ("SMALL",)),
        ("MEDIUM", ("SMALL", "MEDIUM")),
        ("COMPLETE", ("SMALL", "MEDIUM", "COMPLETE")),
        (None, ("SMALL", "MEDIUM", "COMPLETE")),
    ])
    def test_allowed_tiers(self, tier, expected):
        assert services.allowed_tiers(tier) == expected


class TestComposites:
    def test_composite_replaces_raw_score(self, session, assessment, fixed_now):
        a = add_indicator(session, "COMP_A", min_ref=0, max_ref=100)
        b = add_indicator(session, "COMP_B", min_ref=0, max_ref=100)
        idx = add_indicator(session, "IDX", pillar="OE", theme="governanca", min_ref=0, max_ref=100)
        session.add_all([
            CompositeRule(composite_code="IDX", component_code="COMP_A", weight=1.0, transform="NONE"),
            CompositeRule(composite_code="IDX", component_code="COMP_B", weight=1.0, transform="INVERT"),
        ])
        add_value(session, assessment, a, 80)
        add_value(session, assessment, b, 40)
        add_value(session, assessment, idx, 10)
        session.commit()

        services.calculate(session, assessment.id, now=fixed_now)

        row = session.execute(
            select(IndicatorScore).where(IndicatorScore.indicator_id == idx.id)
        ).scalars().one()
        assert row.score == pytest.approx(0.7)
        assert row.weight_used == 1.5
        assert (row.min_ref_used, row.max_ref_used) == (0, 100)
        assert _count(session, IndicatorScore) == 3

    def test_composite_without_components_is_skipped(self, session, assessment, fixed_now):
        ind = add_indicator(session, "ONLY", min_ref=0, max_ref=100)
        add_indicator(session, "IDX", pillar="OE")
        session.add(CompositeRule(composite_code="IDX", component_code="MISSING"))
        add_value(session, assessment, ind, 50)
        session.commit()

        services.calculate(session, assessment.id, now=fixed_now)

        assert _count(session, IndicatorScore) == 1


class TestTrainingMap:
    def test_mapped_training_is_preferred_over_courses(self, session, assessment, fixed_now):
        _critical_environment(session, assessment)
        add_training(session, "TR_SANEAMENTO")
        add_training(session, "TR_RESIDUOS")
        add_training_map(session, "RA_AMB_1", "TR_SANEAMENTO", priority=1,
                         reason_template="{indicator} está em nível {status} no pilar {pillar}.")
        add_training_map(session, "RA_AMB_2", "TR_RESIDUOS", priority=2)
        session.commit()

        result = services.calculate(session, assessment.id, now=fixed_now)

        assert result.prescriptions_created == 2
        rows = session.execute(select(Prescription).order_by(Prescription.priority)).scalars().all()
        assert [(p.training_id, p.course_id, p.priority) for p in rows] == [
            ("TR_SANEAMENTO", None, 1), ("TR_RESIDUOS", None, 2),
        ]
        assert rows[0].justification == "Indicador RA_AMB_1 está em nível Crítico no pilar Relações Ambientais."
        assert rows[0].target_agent == "GESTORES"
        recommendations = session.execute(
            select(Recommendation.training_id).order_by(Recommendation.priority)
        ).scalars().all()
        assert recommendations == ["TR_SANEAMENTO", "TR_RESIDUOS"]

        detail = services.assessment_detail(session, session.get(Assessment, assessment.id))
        assert detail["prescriptions"][0]["training_title"] == "Formação TR_SANEAMENTO"

    def test_inactive_or_other_pillar_training_falls_back_to_courses(self, session, assessment, fixed_now):
        course = _critical_environment(session, assessment)
        add_training(session, "TR_OFF", active=False)
        add_training(session, "TR_AO", pillar="AO")
        add_training_map(session, "RA_AMB_1", "TR_OFF")
        add_training_map(session, "RA_AMB_2", "TR_AO", pillar="AO")
        session.commit()

        services.calculate(session, assessment.id, now=fixed_now)

        prescription = session.execute(select(Prescription)).scalars().one()
        assert (prescription.course_id, prescription.training_id) == (course.id, None)


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrentCalculation:
    def test_parallel_calls_leave_one_result_set(self, tmp_path, fixed_now):
        engine = create_engine(f"sqlite:///{tmp_path / 'sistur.db'}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(engine)
        factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

        with factory() as seed:
            dest = Destination(name="Bonito", uf="MS")
            seed.add(dest)
            seed.flush()
            target = Assessment(destination_id=dest.id, title="Diagnóstico 2026", status="DATA_READY")
            seed.add(target)
            seed.flush()
            _critical_environment(seed, target)
            ind = add_indicator(seed, "OE_GOV_1", pillar="OE", theme="governanca", min_ref=0, max_ref=100)
            add_value(seed, target, ind, 90)
            seed.commit()
            assessment_id = target.id

        def run() -> None:
            with factory() as s:
                services.calculate(s, assessment_id, now=fixed_now)

        with ThreadPoolExecutor(max_workers=8) as executor:
            futures = [executor.submit(run) for _ in range(8)]
            errors = [f.exception() for f in as_completed(futures) if f.exception() is not None]

        assert errors == []
        with factory() as s:
            assert _count(s, IndicatorScore) == 3
            assert sorted(s.execute(select(PillarScore.pillar)).scalars()) == ["OE", "RA"]
            assert _count(s, Issue) == 1
            assert _count(s, Prescription) == 1
            assert _count(s, AuditEvent) == 8
            assert _count(s, Alert) == 2
        assert services._assessment_locks == {}
        engine.dispose()

    def test_lock_registry_entry_is_released(self):
        with services.assessment_lock(4242):
            assert 4242 in services._assessment_locks
        assert 4242 not in services._assessment_locks

    def test_lock_registry_is_empty_after_calculation(self, session, assessment, fixed_now):
        _critical_environment(session, assessment)
        services.calculate(session, assessment.id, now=fixed_now)
        assert assessment.id not in services._assessment_locks

    def test_failed_calculation_releases_lock(self, session):
        with pytest.raises(AssessmentNotFoundError):
            services.calculate(session, 9999)
        assert 9999 not in services._assessment_locks


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class TestPersistenceFailure:
    def test_failed_replace_keeps_previous_results(self, session, assessment, fixed_now, monkeypatch):
        _critical_environment(session, assessment)
        services.calculate(session, assessment.id, now=fixed_now)
        before = session.execute(select(PillarScore.pillar, PillarScore.score)).all()

        value = assessment.values[0]
        value.value_raw = 95
        session.commit()

        real_replace = services._replace_derived_rows

        def broken_replace(sess, *args, **kwargs):
            real_replace(sess, *args, **kwargs)
            sess.flush()
            raise SQLAlchemyError("disk I/O error")

        monkeypatch.setattr(services, "_replace_derived_rows", broken_replace)

        with pytest.raises(PersistenceError) as exc_info:
            services.calculate(session, assessment.id, now=fixed_now)
        assert exc_info.value.status_code == 500

        assert session.execute(select(PillarScore.pillar, PillarScore.score)).all() == before
        assert _count(session, AuditEvent) == 1


# ---------------------------------------------------------------------------
# Destination alerts
# ---------------------------------------------------------------------------


class TestAlerts:
    def test_three_cycle_regression_raises_alert(self, session, destination, assessment, fixed_now):
        add_calculated_assessment(session, destination, datetime(2024, 1, 10, tzinfo=UTC), {"RA": 0.80})
        add_calculated_assessment(session, destination, datetime(2024, 7, 10, tzinfo=UTC), {"RA": 0.75})
        add_calculated_assessment(session, destination, datetime(2025, 1, 10, tzinfo=UTC), {"RA": 0.70})
        ind = add_indicator(session, "RA_1", min_ref=0, max_ref=100)
        add_value(session, assessment, ind, 65)
        session.commit()

        result = services.calculate(session, assessment.id, now=fixed_now)

        assert result.alerts_raised == 1
        alert = session.execute(select(Alert)).scalars().one()
        assert (alert.pillar, alert.alert_type, alert.consecutive_cycles) == ("RA", "REGRESSION", 3)
        assert alert.assessment_id == assessment.id
        assert alert.destination_id == destination.id

    def test_improvement_raises_nothing(self, session, destination, assessment, fixed_now):
        add_calculated_assessment(session, destination, datetime(2025, 1, 10, tzinfo=UTC), {"RA": 0.60})
        ind = add_indicator(session, "RA_1", min_ref=0, max_ref=100)
        add_value(session, assessment, ind, 80)
        session.commit()

        result = services.calculate(session, assessment.id, now=fixed_now)

        assert result.alerts_raised == 0
        assert _count(session, Alert) == 0

    def test_dismissed_alert_stays_dismissed(self, session, destination, assessment, fixed_now):
        _critical_environment(session, assessment)
        services.calculate(session, assessment.id, now=fixed_now)
        for alert in session.execute(select(Alert)).scalars():
            services.dismiss_alert(session, alert)
        session.commit()

        services.calculate(session, assessment.id, now=fixed_now)

        assert _count(session, Alert) == 4
        assert len(services.list_open_alerts(session, destination.id)) == 2

    def test_read_systemic_alert_is_not_rewritten(self, session, destination, assessment, fixed_now):
        _critical_environment(session, assessment)
        services.calculate(session, assessment.id, now=fixed_now)
        before = {}
        for alert in session.execute(select(Alert)).scalars():
            alert.is_read = True
            before[alert.id] = alert.message
        session.commit()

        result = services.calculate(session, assessment.id, now=fixed_now)

        assert result.alerts_raised == 0
        alerts = session.execute(select(Alert)).scalars().all()
        assert {a.id: a.message for a in alerts} == before
        assert all(a.is_read for a in alerts)


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


class TestAssessmentDetail:
    def test_detail_after_calculation(self, session, assessment, fixed_now):
        course = _critical_environment(session, assessment)
        services.calculate(session, assessment.id, now=fixed_now)

        detail = services.assessment_detail(session, session.get(Assessment, assessment.id))

        assert detail["status"] == "CALCULATED"
        assert detail["igma_flags"] == ["RA_LIMITATION", "MARKETING_BLOCKED"]
        assert [p["pillar"] for p in detail["pillar_scores"]] == ["RA"]
        assert detail["issues"][0]["evidence"]["avg_score"] == pytest.approx(0.3)
        assert detail["prescriptions"][0]["course_title"] == course.title
