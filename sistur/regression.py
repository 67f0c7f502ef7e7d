"""Regression monitoring across a destination's assessment history.

Alerts live at destination level and outlive any single assessment: they are
upserted after an assessment's own transaction commits and are never removed
by recalculation. A dismissed alert is left alone; the next regression opens
a new one.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from sistur.aggregator import PILLAR_NAMES, PILLARS
from sistur.models import Alert, Assessment, PillarScore

log = logging.getLogger(__name__)

REGRESSION = "REGRESSION"
REGRESSION_TOLERANCE = 0.02
MIN_CONSECUTIVE_REGRESSIONS = 2


@dataclass
class AlertInstruction:
    """What should be true of a destination's open alert after an upsert."""
    pillar: str
    alert_type: str
    consecutive_cycles: int
    message: str
    scoped_to_pillar: bool = True
    refresh_existing: bool = True  # False: an open alert is left as the user last saw it


def count_consecutive_regressions(current: float, history: Iterable[float | None]) -> int:
    """Count regressions walking *history* newest to oldest.

    A cycle regresses when the later score sits more than the tolerance below
    the earlier one. Counting stops at the first cycle that does not regress;
    cycles without a score for the pillar are skipped.
    """
    count = 0
    last_score = current
    for prior in history:
        if prior is None:
            continue
        if last_score < prior - REGRESSION_TOLERANCE:
            count += 1
            last_score = prior
        else:
            break
    return count


def regression_message(pillar: str, cycles: int) -> str:
    return (
        f"O pilar {PILLAR_NAMES[pillar]} ({pillar}) apresentou regressão em {cycles} "
        f"ciclos consecutivos. Ação corretiva urgente é recomendada."
    )


def detect_regressions(
    current_scores: dict[str, float], history: Sequence[dict[str, float]],
) -> list[AlertInstruction]:
    """Alert instructions for every pillar with enough consecutive regressions.

    Args:
        current_scores: ``{pillar: score}`` of the assessment just calculated.
        history: ``{pillar: score}`` per prior calculated assessment, newest first.
    """
    instructions: list[AlertInstruction] = []
    for pillar in PILLARS:
        current = current_scores.get(pillar)
        if current is None:
            continue
        cycles = count_consecutive_regressions(current, (h.get(pillar) for h in history))
        if cycles >= MIN_CONSECUTIVE_REGRESSIONS:
            instructions.append(AlertInstruction(
                pillar=pillar,
                alert_type=REGRESSION,
                consecutive_cycles=cycles,
                message=regression_message(pillar, cycles),
            ))
    return instructions


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def load_history(session: Session, assessment: Assessment) -> list[dict[str, float]]:
    """Pillar scores of the destination's other calculated assessments, newest first."""
    prior_ids = session.execute(
        select(Assessment.id)
        .where(
            Assessment.destination_id == assessment.destination_id,
            Assessment.status == "CALCULATED",
            Assessment.id != assessment.id,
        )
        .order_by(Assessment.calculated_at.desc(), Assessment.id.desc())
    ).scalars().all()
    if not prior_ids:
        return []

    by_assessment: dict[int, dict[str, float]] = {aid: {} for aid in prior_ids}
    rows = session.execute(
        select(PillarScore.assessment_id, PillarScore.pillar, PillarScore.score)
        .where(PillarScore.assessment_id.in_(prior_ids))
    ).all()
    for assessment_id, pillar, score in rows:
        by_assessment[assessment_id][pillar] = score
    return [by_assessment[aid] for aid in prior_ids]


def apply_alert_upserts(
    session: Session,
    destination_id: int,
    assessment_id: int,
    instructions: Sequence[AlertInstruction],
) -> list[Alert]:
    """Update the open alert for each instruction, or insert one (caller must commit).

    Instructions with ``refresh_existing`` off only insert; an open alert of
    their type is left untouched and not returned.
    """
    touched: list[Alert] = []
    for inst in instructions:
        query = select(Alert).where(
            Alert.destination_id == destination_id,
            Alert.alert_type == inst.alert_type,
            Alert.is_dismissed.is_(False),
        )
        if inst.scoped_to_pillar:
            query = query.where(Alert.pillar == inst.pillar)
        existing = session.execute(query.order_by(Alert.id)).scalars().first()

        if existing is not None and not inst.refresh_existing:
            log.debug("%s alert %d already open for destination %d", inst.alert_type, existing.id, destination_id)
            continue
        if existing is not None:
            existing.consecutive_cycles = inst.consecutive_cycles
            existing.assessment_id = assessment_id
            existing.message = inst.message
            existing.is_read = False
            touched.append(existing)
            log.info("Updated %s alert %d for destination %d", inst.alert_type, existing.id, destination_id)
            continue

        alert = Alert(
            destination_id=destination_id,
            assessment_id=assessment_id,
            pillar=inst.pillar,
            alert_type=inst.alert_type,
            consecutive_cycles=inst.consecutive_cycles,
            message=inst.message,
        )
        session.add(alert)
        touched.append(alert)
        log.info("Created %s alert for destination %d pillar %s", inst.alert_type, destination_id, inst.pillar)
    return touched
