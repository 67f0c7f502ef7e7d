from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from sistur.models import (
    Assessment, Base, Course, Destination, Indicator, IndicatorTrainingMap, IndicatorValue, PillarScore, Training,
)

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory) -> Session:
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def destination(session: Session) -> Destination:
    dest = Destination(name="Bonito", uf="MS")
    session.add(dest)
    session.flush()
    return dest


@pytest.fixture()
def assessment(session: Session, destination: Destination) -> Assessment:
    a = Assessment(destination_id=destination.id, title="Diagnóstico 2026", status="DATA_READY")
    session.add(a)
    session.flush()
    return a


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def add_indicator(session: Session, code: str, pillar: str = "RA", theme: str = "ambiental", **kwargs) -> Indicator:
    ind = Indicator(code=code, name=kwargs.pop("name", f"Indicador {code}"), pillar=pillar, theme=theme, **kwargs)
    session.add(ind)
    session.flush()
    return ind


def add_value(session: Session, assessment: Assessment, indicator: Indicator, value: float | None) -> IndicatorValue:
    iv = IndicatorValue(assessment_id=assessment.id, indicator_id=indicator.id, value_raw=value)
    session.add(iv)
    session.flush()
    return iv


def add_course(session: Session, title: str, level: str = "BASICO", pillar: str | None = None,
               tags: list[dict[str, str]] | None = None) -> Course:
    course = Course(title=title, level=level, pillar=pillar, tags_json=json.dumps(tags or []))
    session.add(course)
    session.flush()
    return course


def add_training(session: Session, training_id: str, pillar: str = "RA", active: bool = True) -> Training:
    training = Training(training_id=training_id, title=f"Formação {training_id}", pillar=pillar, active=active)
    session.add(training)
    session.flush()
    return training


def add_training_map(session: Session, indicator_code: str, training_id: str, pillar: str = "RA",
                     priority: int = 1, reason_template: str = "") -> IndicatorTrainingMap:
    mapping = IndicatorTrainingMap(indicator_code=indicator_code, training_id=training_id, pillar=pillar,
                                   priority=priority, reason_template=reason_template)
    session.add(mapping)
    session.flush()
    return mapping


def add_calculated_assessment(session: Session, destination: Destination, calculated_at: datetime,
                              scores: dict[str, float]) -> Assessment:
    """A past assessment with pillar scores already in place."""
    a = Assessment(destination_id=destination.id, title=f"Ciclo {calculated_at.year}",
                   status="CALCULATED", calculated_at=calculated_at)
    session.add(a)
    session.flush()
    for pillar, score in scores.items():
        session.add(PillarScore(assessment_id=a.id, pillar=pillar, score=score, severity="MODERADO"))
    session.flush()
    return a


@pytest.fixture()
def fixed_now() -> datetime:
    return datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
