"""Pillar aggregation: weighted indicator scores to one score per pillar."""
from __future__ import annotations

from dataclasses import dataclass

from sistur.errors import CatalogInconsistencyError
from sistur.utils import mean

# ---------------------------------------------------------------------------
# Pillars and severity tiers
# ---------------------------------------------------------------------------

PILLARS: tuple[str, ...] = ("RA", "OE", "AO")

PILLAR_NAMES = {
    "RA": "Relações Ambientais",
    "OE": "Organização Estrutural",
    "AO": "Ações Operacionais",
}

CRITICO = "CRITICO"
MODERADO = "MODERADO"
BOM = "BOM"

SEVERITY_LABELS = {CRITICO: "Crítico", MODERADO: "Atenção", BOM: "Adequado"}
SEVERITY_RANK = {CRITICO: 1, MODERADO: 2, BOM: 3}

CRITICAL_MAX = 0.33
MODERATE_MAX = 0.66


def severity_for(score: float) -> str:
    """Map a score in [0, 1] to its severity tier."""
    if score <= CRITICAL_MAX:
        return CRITICO
    if score <= MODERATE_MAX:
        return MODERADO
    return BOM


def check_pillar(pillar: str) -> str:
    if pillar not in PILLARS:
        raise CatalogInconsistencyError(f"Unknown pillar {pillar!r}; expected one of {', '.join(PILLARS)}")
    return pillar


@dataclass
class ScoredIndicator:
    """A normalized indicator score plus the catalog facts used to produce it."""
    indicator_id: int
    code: str
    name: str
    pillar: str
    theme: str
    score: float
    weight: float
    min_ref: float | None = None
    max_ref: float | None = None


@dataclass
class PillarResult:
    pillar: str
    score: float
    severity: str


def weighted_mean(scores: list[float], weights: list[float]) -> float:
    """Weighted mean, falling back to the plain mean when the weights sum to 0."""
    total_weight = sum(weights)
    if total_weight == 0:
        return mean(scores)
    return sum(s * w for s, w in zip(scores, weights)) / total_weight


def aggregate_pillars(scored: list[ScoredIndicator]) -> list[PillarResult]:
    """Aggregate indicator scores into pillar scores, in RA, OE, AO order.

    Pillars without any indicator produce no result at all.
    """
    grouped: dict[str, list[ScoredIndicator]] = {}
    for item in scored:
        grouped.setdefault(check_pillar(item.pillar), []).append(item)

    results: list[PillarResult] = []
    for pillar in PILLARS:
        items = grouped.get(pillar)
        if not items:
            continue
        score = weighted_mean([i.score for i in items], [i.weight for i in items])
        results.append(PillarResult(pillar=pillar, score=score, severity=severity_for(score)))
    return results


def critical_pillar(results: list[PillarResult]) -> PillarResult | None:
    """Lowest-scoring pillar; the earlier pillar wins ties."""
    if not results:
        return None
    return min(results, key=lambda r: r.score)
