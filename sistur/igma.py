"""Systemic interpretation rules (IGMA) over a destination's pillar scores.

The rules read the current pillar severities and, where available, the
previous calculated assessment. The outcome is advisory: it is stored on the
assessment and raised as destination alerts, but it does not remove
prescriptions.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from sistur.aggregator import CRITICO, MODERADO, PillarResult
from sistur.detector import ENTREGA, ESTRUTURAL, GESTAO
from sistur.regression import AlertInstruction
from sistur.utils import add_months

RA_LIMITATION = "RA_LIMITATION"
GOVERNANCE_BLOCK = "GOVERNANCE_BLOCK"
EXTERNALITY_WARNING = "EXTERNALITY_WARNING"
MARKETING_BLOCKED = "MARKETING_BLOCKED"
INTERSECTORAL_DEPENDENCY = "INTERSECTORAL_DEPENDENCY"

FLAGS = (RA_LIMITATION, GOVERNANCE_BLOCK, EXTERNALITY_WARNING, MARKETING_BLOCKED, INTERSECTORAL_DEPENDENCY)

# message types that become destination alerts
ALERTING_TYPES = ("critical", "warning")


@dataclass
class IgmaMessage:
    type: str  # "critical" | "warning" | "info"
    flag: str
    title: str
    message: str


@dataclass
class IgmaResult:
    flags: dict[str, bool]
    allowed_actions: dict[str, bool]
    blocked_actions: list[str]
    messages: list[IgmaMessage]
    interpretation_type: str
    next_review_at: datetime
    critical_pillar: str | None = None
    active_flags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["next_review_at"] = self.next_review_at.isoformat()
        return data


def _trend(current: float, previous: float) -> str:
    if current > previous:
        return "UP"
    if current < previous:
        return "DOWN"
    return "STABLE"


def next_review_months(severities: dict[str, str]) -> int:
    if severities.get("RA") == CRITICO:
        return 6
    if severities.get("AO") == CRITICO:
        return 12
    if severities.get("OE") == CRITICO:
        return 9
    if MODERADO in severities.values():
        return 12
    return 18


def interpret(
    pillars: list[PillarResult],
    previous_scores: dict[str, float] | None,
    assessed_at: datetime,
    intersectoral_count: int = 0,
) -> IgmaResult:
    """Apply the systemic rules to one assessment's pillar results."""
    flags = {f: False for f in FLAGS}
    messages: list[IgmaMessage] = []
    blocked: list[str] = []

    severities = {p.pillar: p.severity for p in pillars}
    scores = {p.pillar: p.score for p in pillars}
    ra_critical = severities.get("RA") == CRITICO
    ao_critical = severities.get("AO") == CRITICO

    if ra_critical:
        interpretation_type = ESTRUTURAL
    elif ao_critical:
        interpretation_type = GESTAO
    elif severities.get("OE") == CRITICO:
        interpretation_type = ENTREGA
    else:
        interpretation_type = GESTAO

    if ra_critical:
        flags[RA_LIMITATION] = True
        blocked.append("EDU_OE")
        messages.append(IgmaMessage(
            "critical", RA_LIMITATION, "Limitação Estrutural do Território",
            "O território apresenta limitações estruturais que comprometem a sustentabilidade do "
            "turismo, independentemente de ações de mercado ou gestão isoladas.",
        ))

    if ao_critical:
        flags[GOVERNANCE_BLOCK] = True
        if "EDU_OE" not in blocked:
            blocked.append("EDU_OE")
        messages.append(IgmaMessage(
            "critical", GOVERNANCE_BLOCK, "Fragilidade de Governança",
            "Fragilidades de governança comprometem a efetividade de ações de mercado e "
            "investimento no turismo.",
        ))

    prev = previous_scores or {}
    if all(k in prev for k in ("RA", "OE")) and all(k in scores for k in ("RA", "OE")):
        if _trend(scores["OE"], prev["OE"]) == "UP" and _trend(scores["RA"], prev["RA"]) == "DOWN":
            flags[EXTERNALITY_WARNING] = True
            messages.append(IgmaMessage(
                "warning", EXTERNALITY_WARNING, "Alerta de Externalidades Negativas",
                "O crescimento da oferta turística está ocorrendo sem a correspondente "
                "sustentabilidade territorial.",
            ))

    if ra_critical or ao_critical:
        flags[MARKETING_BLOCKED] = True
        blocked.append("MARKETING")
        messages.append(IgmaMessage(
            "warning", MARKETING_BLOCKED, "Marketing Bloqueado",
            "A promoção turística deve ser precedida pela consolidação territorial e institucional.",
        ))

    if intersectoral_count > 0:
        flags[INTERSECTORAL_DEPENDENCY] = True
        messages.append(IgmaMessage(
            "info", INTERSECTORAL_DEPENDENCY, "Dependência Intersetorial",
            f"{intersectoral_count} indicador(es) dependem de articulação intersetorial "
            f"(saúde, segurança, educação).",
        ))

    allowed = {
        "EDU_RA": True,
        "EDU_AO": not flags[RA_LIMITATION],
        "EDU_OE": not flags[RA_LIMITATION] and not flags[GOVERNANCE_BLOCK],
        "MARKETING": not flags[MARKETING_BLOCKED],
    }
    critical = min(pillars, key=lambda p: p.score).pillar if pillars else None

    return IgmaResult(
        flags=flags,
        allowed_actions=allowed,
        blocked_actions=blocked,
        messages=messages,
        interpretation_type=interpretation_type,
        next_review_at=add_months(assessed_at, next_review_months(severities)),
        critical_pillar=critical,
        active_flags=[f for f in FLAGS if flags[f]],
    )


def alert_instructions(result: IgmaResult) -> list[AlertInstruction]:
    """Destination alerts for the critical and warning messages of *result*."""
    pillar = result.critical_pillar or "RA"
    return [
        AlertInstruction(
            pillar=pillar,
            alert_type=f"IGMA_{msg.flag}",
            consecutive_cycles=0,
            message=f"{msg.title}: {msg.message}",
            scoped_to_pillar=False,
            refresh_existing=False,
        )
        for msg in result.messages
        if msg.type in ALERTING_TYPES
    ]
