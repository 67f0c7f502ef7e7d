"""Prescription generation: issues matched to trainings.

Two sources feed prescriptions. The indicator training map links weak
indicators to trainings and is preferred; the course catalog is used only
when the map yields nothing for the whole calculation.

The generators are pure. The priority counter runs across the whole
calculation, so it is threaded through ``prescribe_for_issue`` and
``prescribe_trainings_for_issue`` as an explicit accumulator rather than
shared state.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Collection, Sequence

from sistur.aggregator import CRITICO, PILLAR_NAMES, SEVERITY_LABELS, SEVERITY_RANK
from sistur.detector import ADEQUATE_THRESHOLD, ENTREGA, ESTRUTURAL, GESTAO, INTERPRETATION_LABELS, IssueDraft
from sistur.utils import add_months

log = logging.getLogger(__name__)

GESTORES = "GESTORES"
TECNICOS = "TECNICOS"
TRADE = "TRADE"

TARGET_AGENTS = {ESTRUTURAL: GESTORES, GESTAO: TECNICOS, ENTREGA: TRADE}

LEVEL_ORDER = {"BASICO": 1, "INTERMEDIARIO": 2, "AVANCADO": 3}
UNKNOWN_LEVEL_RANK = 99

MAX_COURSES_PER_ISSUE = 2
MAX_TRAININGS_PER_ISSUE = 3
FIRST_PRIORITY = 1

DEFAULT_REASON_TEMPLATE = (
    "Esta capacitação foi prescrita porque o indicador {indicator} está {status} no pilar {pillar}."
)


@dataclass(frozen=True)
class CourseOption:
    """Catalog view of a course, detached from the ORM session."""
    id: int
    title: str
    level: str
    pillar: str | None = None
    tags: tuple[tuple[str, str], ...] = ()  # legacy (pillar, theme) pairs


@dataclass(frozen=True)
class TrainingMapping:
    indicator_code: str
    training_id: str
    pillar: str
    priority: int
    reason_template: str = ""


@dataclass
class PrescriptionDraft:
    issue_index: int  # position in the issue list given to the generator
    course_id: int | None
    pillar: str
    status: str
    interpretation: str
    justification: str
    target_agent: str
    priority: int
    training_id: str | None = None

    @property
    def reason(self) -> str:
        """Text carried by the flattened legacy recommendation."""
        return self.justification


@dataclass
class ActionPlanDraft:
    issue_index: int
    title: str
    description: str
    pillar: str
    priority: int
    due_date: date


def target_agent_for(interpretation: str) -> str:
    return TARGET_AGENTS[interpretation]


def build_justification(theme: str, severity: str, pillar: str, interpretation: str) -> str:
    return (
        f"Esta capacitação foi prescrita porque o indicador de {theme} está em nível "
        f"{SEVERITY_LABELS.get(severity, severity)}, classificado no pilar "
        f"{PILLAR_NAMES.get(pillar, pillar)}, com interpretação territorial "
        f"{INTERPRETATION_LABELS.get(interpretation, interpretation)}."
    )


def course_matches(course: CourseOption, issue: IssueDraft) -> bool:
    if course.pillar == issue.pillar:
        return True
    theme = issue.theme.lower()
    return any(p == issue.pillar and t.lower() == theme for p, t in course.tags)


def matching_courses(issue: IssueDraft, courses: Sequence[CourseOption]) -> list[CourseOption]:
    """Courses for an issue, most basic first, catalog order within a level."""
    matches = [c for c in courses if course_matches(c, issue)]
    matches.sort(key=lambda c: LEVEL_ORDER.get(c.level, UNKNOWN_LEVEL_RANK))
    return matches[:MAX_COURSES_PER_ISSUE]


def prescribe_for_issue(
    issue_index: int,
    issue: IssueDraft,
    courses: Sequence[CourseOption],
    next_priority: int,
) -> tuple[list[PrescriptionDraft], int]:
    """Prescriptions for one issue, and the priority the next one should take."""
    drafts: list[PrescriptionDraft] = []
    justification = build_justification(issue.theme, issue.severity, issue.pillar, issue.interpretation)
    target_agent = target_agent_for(issue.interpretation)
    for course in matching_courses(issue, courses):
        drafts.append(PrescriptionDraft(
            issue_index=issue_index,
            course_id=course.id,
            pillar=issue.pillar,
            status=issue.severity,
            interpretation=issue.interpretation,
            justification=justification,
            target_agent=target_agent,
            priority=next_priority,
        ))
        next_priority += 1
    return drafts, next_priority


def by_severity(issues: Sequence[IssueDraft]) -> list[tuple[int, IssueDraft]]:
    """``(index, issue)`` pairs, critical issues first, original order otherwise."""
    return sorted(enumerate(issues), key=lambda pair: SEVERITY_RANK.get(pair[1].severity, 99))


def generate_prescriptions(
    issues: Sequence[IssueDraft], courses: Sequence[CourseOption],
) -> list[PrescriptionDraft]:
    """Prescribe up to two courses per issue, critical issues first."""
    prescriptions: list[PrescriptionDraft] = []
    priority = FIRST_PRIORITY
    for index, issue in by_severity(issues):
        drafts, priority = prescribe_for_issue(index, issue, courses, priority)
        if not drafts:
            log.info("No course matches issue %s/%s", issue.pillar, issue.theme)
        prescriptions.extend(drafts)
    return prescriptions


# ---------------------------------------------------------------------------
# Indicator training map
# ---------------------------------------------------------------------------


def fill_reason(template: str, indicator: str, severity: str, pillar: str) -> str:
    """Fill the first ``{indicator}``, ``{status}`` and ``{pillar}`` placeholders."""
    text = template or DEFAULT_REASON_TEMPLATE
    text = text.replace("{indicator}", indicator, 1)
    text = text.replace("{status}", SEVERITY_LABELS.get(severity, severity), 1)
    return text.replace("{pillar}", PILLAR_NAMES.get(pillar, pillar), 1)


def weak_indicator_codes(issues: Sequence[IssueDraft]) -> list[str]:
    """Codes of issue indicators scoring below the adequate threshold, first-seen order."""
    codes: dict[str, None] = {}
    for issue in issues:
        for ind in issue.indicators:
            if ind["score"] < ADEQUATE_THRESHOLD:
                codes.setdefault(ind["code"], None)
    return list(codes)


def prescribe_trainings_for_issue(
    issue_index: int,
    issue: IssueDraft,
    mappings_by_code: dict[str, list[TrainingMapping]],
    active_trainings: Collection[str],
    used_trainings: Collection[str],
    next_priority: int,
) -> tuple[list[PrescriptionDraft], int]:
    """Up to three mapped trainings for one issue, lowest mapping priority first.

    Only weak indicators of the issue count, the mapping must belong to the
    issue's pillar, and a training already prescribed for an earlier issue
    is not offered again.
    """
    candidates: list[tuple[TrainingMapping, str]] = []
    for ind in issue.indicators:
        if ind["score"] >= ADEQUATE_THRESHOLD:
            continue
        for mapping in mappings_by_code.get(ind["code"], ()):
            if mapping.pillar != issue.pillar:
                continue
            if mapping.training_id not in active_trainings or mapping.training_id in used_trainings:
                continue
            candidates.append((mapping, ind.get("name") or issue.theme))
    candidates.sort(key=lambda pair: pair[0].priority)

    target_agent = target_agent_for(issue.interpretation)
    drafts: list[PrescriptionDraft] = []
    picked: set[str] = set()
    for mapping, indicator_name in candidates:
        if len(drafts) == MAX_TRAININGS_PER_ISSUE:
            break
        if mapping.training_id in picked:
            continue
        picked.add(mapping.training_id)
        drafts.append(PrescriptionDraft(
            issue_index=issue_index,
            course_id=None,
            training_id=mapping.training_id,
            pillar=issue.pillar,
            status=issue.severity,
            interpretation=issue.interpretation,
            justification=fill_reason(mapping.reason_template, indicator_name, issue.severity, issue.pillar),
            target_agent=target_agent,
            priority=next_priority,
        ))
        next_priority += 1
    return drafts, next_priority


def generate_training_prescriptions(
    issues: Sequence[IssueDraft],
    mappings: Sequence[TrainingMapping],
    active_trainings: Collection[str],
) -> list[PrescriptionDraft]:
    """Prescribe mapped trainings, critical issues first, each training at most once."""
    mappings_by_code: dict[str, list[TrainingMapping]] = {}
    for mapping in mappings:
        mappings_by_code.setdefault(mapping.indicator_code, []).append(mapping)

    prescriptions: list[PrescriptionDraft] = []
    used: set[str] = set()
    priority = FIRST_PRIORITY
    for index, issue in by_severity(issues):
        drafts, priority = prescribe_trainings_for_issue(
            index, issue, mappings_by_code, active_trainings, used, priority,
        )
        used.update(d.training_id for d in drafts if d.training_id)
        prescriptions.extend(drafts)
    return prescriptions


def prescribe(
    issues: Sequence[IssueDraft],
    mappings: Sequence[TrainingMapping],
    active_trainings: Collection[str],
    courses: Sequence[CourseOption],
) -> list[PrescriptionDraft]:
    """Training-map prescriptions, or course prescriptions when the map yields none."""
    drafts = generate_training_prescriptions(issues, mappings, active_trainings)
    if drafts:
        log.info("Prescribed %d mapped trainings", len(drafts))
        return drafts
    return generate_prescriptions(issues, courses)


# ---------------------------------------------------------------------------
# Action plans
# ---------------------------------------------------------------------------

CRITICAL_DUE_MONTHS = 3
MODERATE_DUE_MONTHS = 6


def plan_actions(issues: Sequence[IssueDraft], today: date) -> list[ActionPlanDraft]:
    """One corrective action plan per issue, due sooner for critical ones."""
    plans: list[ActionPlanDraft] = []
    for index, issue in enumerate(issues):
        critical = issue.severity == CRITICO
        pillar_name = PILLAR_NAMES.get(issue.pillar, issue.pillar)
        plans.append(ActionPlanDraft(
            issue_index=index,
            title=f"Plano de Ação: {issue.theme} ({pillar_name})",
            description=(
                f"Ação corretiva para o gargalo identificado: {issue.title}. "
                f"Interpretação territorial: {issue.interpretation}."
            ),
            pillar=issue.pillar,
            priority=1 if critical else 2,
            due_date=add_months(today, CRITICAL_DUE_MONTHS if critical else MODERATE_DUE_MONTHS),
        ))
    return plans
