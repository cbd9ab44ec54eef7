"""IGMA systemic rule engine: cross-pillar rules over one pillar snapshot.

Six fixed rules read the current pillar severities (and, for the externality
rule, a previous snapshot of the same destination):

1. **RA_LIMITATION** — RA critical: structural limits, blocks ``EDU_OE``.
2. **GOVERNANCE_BLOCK** — AO critical: weak governance, blocks ``EDU_OE``.
3. **EXTERNALITY_WARNING** — OE rising while RA falls between snapshots.
4. **MARKETING_BLOCKED** — RA or AO critical: blocks ``MARKETING``.
5. **INTERSECTORAL_DEPENDENCY** — advisory, never blocks.
6. Next-review scheduling by severity precedence.

Rules are evaluated independently. A pillar missing from the snapshot is
never critical, so rules that reference it simply do not fire.
"""
from __future__ import annotations

import calendar
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sistur.scoring import (
    CRITICO,
    ENTREGA,
    ESTRUTURAL,
    GESTAO,
    MODERADO,
    PILLARS,
    classify_severity,
    pillar_trend,
)

RA_LIMITATION = "RA_LIMITATION"
GOVERNANCE_BLOCK = "GOVERNANCE_BLOCK"
EXTERNALITY_WARNING = "EXTERNALITY_WARNING"
MARKETING_BLOCKED = "MARKETING_BLOCKED"
INTERSECTORAL_DEPENDENCY = "INTERSECTORAL_DEPENDENCY"
FLAGS = (RA_LIMITATION, GOVERNANCE_BLOCK, EXTERNALITY_WARNING, MARKETING_BLOCKED, INTERSECTORAL_DEPENDENCY)

EDU_RA = "EDU_RA"
EDU_AO = "EDU_AO"
EDU_OE = "EDU_OE"
MARKETING = "MARKETING"

# Review offsets in months, by precedence.
REVIEW_RA_CRITICAL = 6
REVIEW_AO_CRITICAL = 12
REVIEW_OE_CRITICAL = 9
REVIEW_MODERATE = 12
REVIEW_ADEQUATE = 18

# ---------------------------------------------------------------------------
# UI messages
# ---------------------------------------------------------------------------

_MESSAGES = {
    RA_LIMITATION: (
        "critical",
        "Limitação Estrutural do Território",
        "O território apresenta limitações estruturais que comprometem a sustentabilidade "
        "do turismo, independentemente de ações de mercado ou gestão isoladas. "
        "Priorize capacitações em Relações Ambientais (RA).",
        "AlertTriangle",
    ),
    GOVERNANCE_BLOCK: (
        "critical",
        "Fragilidade de Governança",
        "Fragilidades de governança comprometem a efetividade de ações de mercado e "
        "investimento no turismo. Priorize capacitações em Ações Operacionais (AO) antes de OE.",
        "ShieldAlert",
    ),
    EXTERNALITY_WARNING: (
        "warning",
        "Alerta de Externalidades Negativas",
        "O crescimento da oferta turística está ocorrendo sem a correspondente "
        "sustentabilidade territorial, gerando riscos de externalidades negativas. "
        "Recomenda-se equilibrar o desenvolvimento.",
        "TrendingUp",
    ),
    MARKETING_BLOCKED: (
        "warning",
        "Marketing Temporariamente Bloqueado",
        "A promoção turística deve ser precedida pela consolidação territorial e "
        "institucional. Resolva primeiro os gargalos de RA e/ou AO.",
        "Ban",
    ),
    INTERSECTORAL_DEPENDENCY: (
        "info",
        "Dependência Intersetorial",
        "{count} indicador(es) dependem de articulação intersetorial além da política de "
        "turismo (saúde, segurança, educação, saneamento).",
        "Users",
    ),
}


@dataclass(frozen=True)
class PillarContext:
    """One pillar in a snapshot. Severity is derived from score when omitted."""
    pillar: str
    score: float | None
    severity: str | None = None

    def __post_init__(self):
        if self.severity is None and self.score is not None:
            object.__setattr__(self, "severity", classify_severity(self.score))

    @property
    def present(self) -> bool:
        return self.score is not None


@dataclass
class IGMAInput:
    pillar_scores: Sequence[PillarContext]
    # None means there is no prior snapshot, not that nothing changed.
    previous_pillar_scores: Sequence[PillarContext] | None
    assessment_date: date
    intersectoral_indicator_count: int = 0


@dataclass(frozen=True)
class IGMAMessage:
    type: str
    flag: str
    title: str
    message: str
    icon: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "flag": self.flag, "title": self.title,
                "message": self.message, "icon": self.icon}


@dataclass
class IGMAOutput:
    flags: dict[str, bool]
    allowed_actions: dict[str, bool]
    blocked_actions: list[str]
    ui_messages: list[IGMAMessage]
    interpretation_type: str
    next_review_months: int
    next_review_date: date
    critical_pillar: str | None
    trends: dict[str, str] = field(default_factory=dict)

    @property
    def active_flags(self) -> list[str]:
        return [f for f in FLAGS if self.flags.get(f)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "flags": dict(self.flags),
            "allowed_actions": dict(self.allowed_actions),
            "blocked_actions": list(self.blocked_actions),
            "ui_messages": [m.to_dict() for m in self.ui_messages],
            "interpretation_type": self.interpretation_type,
            "next_review_months": self.next_review_months,
            "next_review_date": self.next_review_date.isoformat(),
            "critical_pillar": self.critical_pillar,
            "trends": dict(self.trends),
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def add_months(start: date, months: int) -> date:
    """Shift a date by whole months, clamping to the last day of the target month.

    >>> add_months(date(2024, 8, 31), 6)
    datetime.date(2025, 2, 28)
    """
    index = start.month - 1 + months
    year = start.year + index // 12
    month = index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _by_pillar(snapshot: Sequence[PillarContext] | None) -> dict[str, PillarContext]:
    """First present context per pillar; absent or scoreless pillars are dropped."""
    found: dict[str, PillarContext] = {}
    for ctx in snapshot or ():
        if ctx.present and ctx.pillar not in found:
            found[ctx.pillar] = ctx
    return found


def _message(flag: str, **fmt: Any) -> IGMAMessage:
    kind, title, text, icon = _MESSAGES[flag]
    return IGMAMessage(type=kind, flag=flag, title=title, message=text.format(**fmt) if fmt else text, icon=icon)


def _critical_pillar(snapshot: Sequence[PillarContext]) -> str | None:
    lowest: PillarContext | None = None
    for ctx in snapshot:
        if not ctx.present:
            continue
        if lowest is None or ctx.score < lowest.score:
            lowest = ctx
    return lowest.pillar if lowest else None


def _review_months(severity: dict[str, str | None]) -> int:
    if severity.get("RA") == CRITICO:
        return REVIEW_RA_CRITICAL
    if severity.get("AO") == CRITICO:
        return REVIEW_AO_CRITICAL
    if severity.get("OE") == CRITICO:
        return REVIEW_OE_CRITICAL
    if MODERADO in severity.values():
        return REVIEW_MODERATE
    return REVIEW_ADEQUATE


def _interpretation(severity: dict[str, str | None]) -> str:
    if severity.get("RA") == CRITICO:
        return ESTRUTURAL
    if severity.get("AO") == CRITICO:
        return GESTAO
    if severity.get("OE") == CRITICO:
        return ENTREGA
    return GESTAO


# ---------------------------------------------------------------------------
# Rule engine
# ---------------------------------------------------------------------------


def interpret_systemic_rules(data: IGMAInput) -> IGMAOutput:
    """Apply the six systemic rules to one pillar snapshot.

    Never raises for incomplete input: pillars that are missing (or carry no
    score) are treated as not critical, and the externality rule only runs
    when both snapshots carry RA and OE.
    """
    current = _by_pillar(data.pillar_scores)
    previous = _by_pillar(data.previous_pillar_scores) if data.previous_pillar_scores is not None else None
    severity = {p: ctx.severity for p, ctx in current.items()}
    ra_critical = severity.get("RA") == CRITICO
    ao_critical = severity.get("AO") == CRITICO

    flags = {f: False for f in FLAGS}
    blocked: list[str] = []
    messages: list[IGMAMessage] = []

    def block(action: str) -> None:
        if action not in blocked:
            blocked.append(action)

    if ra_critical:
        flags[RA_LIMITATION] = True
        block(EDU_OE)
        messages.append(_message(RA_LIMITATION))

    if ao_critical:
        flags[GOVERNANCE_BLOCK] = True
        block(EDU_OE)
        messages.append(_message(GOVERNANCE_BLOCK))

    trends: dict[str, str] = {}
    if previous is not None:
        for pillar in PILLARS:
            if pillar in current and pillar in previous:
                trends[pillar] = pillar_trend(current[pillar].score, previous[pillar].score)
        if trends.get("OE") == "UP" and trends.get("RA") == "DOWN":
            flags[EXTERNALITY_WARNING] = True
            messages.append(_message(EXTERNALITY_WARNING))

    if ra_critical or ao_critical:
        flags[MARKETING_BLOCKED] = True
        block(MARKETING)
        messages.append(_message(MARKETING_BLOCKED))

    count = data.intersectoral_indicator_count or 0
    if count > 0:
        flags[INTERSECTORAL_DEPENDENCY] = True
        messages.append(_message(INTERSECTORAL_DEPENDENCY, count=count))

    months = _review_months(severity)
    allowed = {
        EDU_RA: True,
        EDU_AO: not flags[RA_LIMITATION],
        EDU_OE: not flags[RA_LIMITATION] and not flags[GOVERNANCE_BLOCK],
        MARKETING: not flags[MARKETING_BLOCKED],
    }

    return IGMAOutput(
        flags=flags,
        allowed_actions=allowed,
        blocked_actions=blocked,
        ui_messages=messages,
        interpretation_type=_interpretation(severity),
        next_review_months=months,
        next_review_date=add_months(data.assessment_date, months),
        critical_pillar=_critical_pillar(data.pillar_scores),
        trends=trends,
    )


def contexts_from_scores(scores: dict[str, float | None]) -> list[PillarContext]:
    """Build an RA, OE, AO ordered snapshot from ``{pillar: score}``."""
    return [PillarContext(pillar=p, score=scores[p]) for p in PILLARS if scores.get(p) is not None]
