"""Issue detection and territorial interpretation.

Indicators are grouped by (pillar, theme). Every group whose mean score is
below the adequate threshold becomes an issue, classified as one of three
territorial interpretations:

- ``ESTRUTURAL``: structural root cause of the territory
- ``GESTAO``: management or planning gap
- ``ENTREGA``: service delivery gap

Classification is driven by ``INTERPRETATION_RULES``, an ordered table of
``(pillar, keywords, outcome)`` rows evaluated top to bottom. Keywords match
the theme as case-insensitive substrings; a row with no keywords matches any
theme of its pillar.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from sistur.aggregator import (
    BOM, CRITICAL_MAX, MODERADO, PILLAR_NAMES, PILLARS, SEVERITY_LABELS, SEVERITY_RANK, ScoredIndicator,
    check_pillar, severity_for,
)
from sistur.errors import CatalogInconsistencyError
from sistur.utils import mean

log = logging.getLogger(__name__)

ADEQUATE_THRESHOLD = 0.67

ESTRUTURAL = "ESTRUTURAL"
GESTAO = "GESTAO"
ENTREGA = "ENTREGA"

INTERPRETATION_LABELS = {ESTRUTURAL: "Estrutural", GESTAO: "Gestão", ENTREGA: "Entrega"}

THEME_LABELS = {
    "ambiental": "Sustentabilidade ambiental",
    "governanca": "Governança e gestão pública",
    "infraestrutura": "Infraestrutura turística",
    "marketing": "Marketing e promoção",
    "desempenho": "Desempenho de mercado",
    "oferta": "Oferta turística",
    "social": "Aspectos socioculturais",
    "economico": "Desenvolvimento econômico",
}


# ---------------------------------------------------------------------------
# Interpretation rule table
# ---------------------------------------------------------------------------


def _always(result: str) -> Callable[[float], str]:
    return lambda avg_score: result


def _critical_or(critical: str, otherwise: str) -> Callable[[float], str]:
    return lambda avg_score: critical if avg_score < CRITICAL_MAX else otherwise


@dataclass(frozen=True)
class InterpretationRule:
    pillar: str
    keywords: tuple[str, ...]
    outcome: Callable[[float], str]

    def matches(self, pillar: str, theme_lower: str) -> bool:
        if pillar != self.pillar:
            return False
        return not self.keywords or any(k in theme_lower for k in self.keywords)


INTERPRETATION_RULES: tuple[InterpretationRule, ...] = (
    # RA: historical and socioeconomic constraints of the territory
    InterpretationRule("RA", ("social", "economico", "gini"), _always(ESTRUTURAL)),
    InterpretationRule("RA", ("ambiental", "cultural"), _critical_or(ESTRUTURAL, GESTAO)),
    InterpretationRule("RA", (), _always(ESTRUTURAL)),
    # OE: governance and planning
    InterpretationRule("OE", ("infraestrutura", "superestrutura"), _critical_or(ESTRUTURAL, GESTAO)),
    InterpretationRule("OE", ("governanca", "institucional"), _always(GESTAO)),
    InterpretationRule("OE", (), _always(GESTAO)),
    # AO: execution and delivery
    InterpretationRule("AO", ("oferta", "demanda"), _critical_or(GESTAO, ENTREGA)),
    InterpretationRule("AO", ("marketing", "promocao"), _always(ENTREGA)),
    InterpretationRule("AO", ("desempenho", "mercado"), _always(ENTREGA)),
    InterpretationRule("AO", (), _always(ENTREGA)),
)


def classify_interpretation(pillar: str, theme: str, avg_score: float) -> str:
    """Classify why a (pillar, theme) group underperforms."""
    theme_lower = theme.lower()
    for rule in INTERPRETATION_RULES:
        if rule.matches(pillar, theme_lower):
            return rule.outcome(avg_score)
    raise CatalogInconsistencyError(f"No interpretation rule for pillar {pillar!r} (theme {theme!r})")


def theme_label(theme: str) -> str:
    return THEME_LABELS.get(theme.lower(), theme)


def issue_title(pillar: str, theme: str, severity: str, interpretation: str) -> str:
    return (
        f"{theme_label(theme)} em nível {SEVERITY_LABELS[severity]} ({PILLAR_NAMES[pillar]})"
        f" - Interpretação: {INTERPRETATION_LABELS[interpretation]}"
    )


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


@dataclass
class IssueDraft:
    """An issue ready to be persisted, with the evidence behind it."""
    pillar: str
    theme: str
    severity: str
    interpretation: str
    title: str
    avg_score: float
    indicators: list[dict[str, Any]] = field(default_factory=list)

    @property
    def evidence(self) -> dict[str, Any]:
        return {"indicators": self.indicators, "avg_score": self.avg_score}


def group_by_theme(scored: list[ScoredIndicator]) -> dict[tuple[str, str], list[ScoredIndicator]]:
    """Group indicators by (pillar, theme), in pillar order then first-seen theme order."""
    groups: dict[tuple[str, str], list[ScoredIndicator]] = {}
    for pillar in PILLARS:
        for item in scored:
            if item.pillar == pillar:
                groups.setdefault((pillar, item.theme), []).append(item)
    return groups


def detect_issues(scored: list[ScoredIndicator]) -> list[IssueDraft]:
    """Find underperforming themes, most severe first."""
    for item in scored:
        check_pillar(item.pillar)

    groups = group_by_theme(scored)
    drafts: list[IssueDraft] = []
    for (pillar, theme), items in groups.items():
        avg_score = mean(i.score for i in items)
        if avg_score >= ADEQUATE_THRESHOLD:
            continue
        # severity_for says BOM in the 0.66-0.67 gap; such issues are stored as MODERADO instead of BOM
        severity = severity_for(avg_score)
        if severity == BOM:
            severity = MODERADO
        interpretation = classify_interpretation(pillar, theme, avg_score)
        drafts.append(IssueDraft(
            pillar=pillar,
            theme=theme,
            severity=severity,
            interpretation=interpretation,
            title=issue_title(pillar, theme, severity, interpretation),
            avg_score=avg_score,
            indicators=[{"name": i.name, "code": i.code, "score": i.score} for i in items],
        ))

    drafts.sort(key=lambda d: SEVERITY_RANK[d.severity])
    log.debug("Detected %d issues across %d theme groups", len(drafts), len(groups))
    return drafts
