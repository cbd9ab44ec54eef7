"""Deterministic aggregation: indicator scores -> pillar scores and diagnostics.

Architecture
------------
Every destination is assessed on three pillars:

- **RA** — Relações Ambientais (environmental relations)
- **OE** — Organização Estrutural (structural organization)
- **AO** — Ações Operacionais (operational actions)

Indicator scores (already normalized to [0, 1]) are combined per pillar as a
weighted mean. A pillar with no scored indicator has no score at all: it is
reported as ``None`` and must never be read as 0 or as adequate.

The same inputs also feed a few table-driven diagnostics:

- ``detect_issues``      — themes whose mean score is below adequate
- ``compute_composites`` — composite indices built from component indicators
- ``detect_regressions`` — pillars falling for consecutive assessment cycles

All severity boundaries live in :data:`THRESHOLDS`.
"""
from __future__ import annotations

import math
import unicodedata
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from sistur.utils import get_field

# ---------------------------------------------------------------------------
# Pillars and severities
# ---------------------------------------------------------------------------

PILLARS = ("RA", "OE", "AO")

PILLAR_NAMES = {
    "RA": "Relações Ambientais",
    "OE": "Organização Estrutural",
    "AO": "Ações Operacionais",
}

CRITICO = "CRITICO"
MODERADO = "MODERADO"
BOM = "BOM"

SEVERITY_LABELS = {CRITICO: "Crítico", MODERADO: "Atenção", BOM: "Adequado"}

ESTRUTURAL = "ESTRUTURAL"
GESTAO = "GESTAO"
ENTREGA = "ENTREGA"

INTERPRETATION_LABELS = {ESTRUTURAL: "Estrutural", GESTAO: "Gestão", ENTREGA: "Entrega"}


@dataclass(frozen=True)
class Thresholds:
    """Fixed score boundaries.

    Pillar severity uses inclusive upper bounds (<= 0.33 critical,
    <= 0.66 moderate). Recommendation matching uses exclusive cutoffs
    (< 0.34 critical, < 0.67 attention). Both variants exist in production
    and are kept side by side until product owners pick one.
    """
    severity_critical_max: float = 0.33
    severity_moderate_max: float = 0.66
    match_critical_below: float = 0.34
    match_attention_below: float = 0.67
    issue_below: float = 0.67


THRESHOLDS = Thresholds()

# ---------------------------------------------------------------------------
# Assessment tiers
# ---------------------------------------------------------------------------

TIER_SMALL = "SMALL"
TIER_MEDIUM = "MEDIUM"
TIER_COMPLETE = "COMPLETE"
VALID_TIERS = (TIER_SMALL, TIER_MEDIUM, TIER_COMPLETE)

_TIER_MEMBERS = {
    TIER_SMALL: {TIER_SMALL},
    TIER_MEDIUM: {TIER_SMALL, TIER_MEDIUM},
    TIER_COMPLETE: {TIER_SMALL, TIER_MEDIUM, TIER_COMPLETE},
}

# Weight given to a composite index inside its pillar.
COMPOSITE_WEIGHT = 1.5

REGRESSION_TOLERANCE = 0.02
REGRESSION_MIN_CYCLES = 2


@dataclass(frozen=True)
class ScoredIndicator:
    """One indicator's normalized score, carrying what aggregation needs."""
    code: str
    pillar: str
    score: float | None
    weight: float = 1.0
    name: str = ""
    theme: str = ""
    indicator_id: int | None = None


@dataclass(frozen=True)
class PillarResult:
    pillar: str
    score: float | None
    severity: str | None

    @property
    def defined(self) -> bool:
        return self.score is not None


@dataclass
class IssueFinding:
    """A pillar theme whose mean indicator score is below adequate."""
    pillar: str
    theme: str
    score: float
    severity: str
    interpretation: str
    title: str
    indicators: list[dict[str, Any]] = field(default_factory=list)

    @property
    def indicator_codes(self) -> list[str]:
        return [i["code"] for i in self.indicators]


# ---------------------------------------------------------------------------
# Severity and pillar aggregation
# ---------------------------------------------------------------------------


def classify_severity(score: float | None) -> str | None:
    """Map a pillar score to CRITICO / MODERADO / BOM (None stays None)."""
    if score is None:
        return None
    if score <= THRESHOLDS.severity_critical_max:
        return CRITICO
    if score <= THRESHOLDS.severity_moderate_max:
        return MODERADO
    return BOM


def aggregate_pillar(scored_indicators: Iterable[Any], pillar_code: str) -> PillarResult:
    """Weighted mean of the defined scores handed in for one pillar.

    Entries need ``score`` and ``weight`` attributes (or keys). Entries with a
    ``None`` score are left out of both numerator and denominator. When no
    weight remains the pillar is undefined: score and severity are None.
    """
    total = 0.0
    total_weight = 0.0
    for item in scored_indicators:
        score = get_field(item, "score")
        if score is None:
            continue
        weight = get_field(item, "weight")
        weight = 1.0 if weight is None else float(weight)
        total += float(score) * weight
        total_weight += weight
    if total_weight <= 0:
        return PillarResult(pillar=pillar_code, score=None, severity=None)
    score = total / total_weight
    return PillarResult(pillar=pillar_code, score=score, severity=classify_severity(score))


def aggregate_pillars(scored_indicators: Sequence[ScoredIndicator]) -> dict[str, PillarResult]:
    """Aggregate every pillar; only defined pillars are returned, in RA, OE, AO order."""
    results: dict[str, PillarResult] = {}
    for pillar in PILLARS:
        result = aggregate_pillar((s for s in scored_indicators if s.pillar == pillar), pillar)
        if result.defined:
            results[pillar] = result
    return results


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------


def filter_by_tier(indicators: Iterable[Any], tier: str | None) -> list[Any]:
    """Keep the indicators that belong to an assessment of the given tier.

    SMALL assessments only use SMALL indicators, MEDIUM adds MEDIUM ones and
    COMPLETE (or an unknown tier) uses everything. Indicators without a
    ``minimum_tier`` count as COMPLETE.
    """
    allowed = _TIER_MEMBERS.get(tier or TIER_COMPLETE, _TIER_MEMBERS[TIER_COMPLETE])
    return [i for i in indicators if (getattr(i, "minimum_tier", None) or TIER_COMPLETE) in allowed]


# ---------------------------------------------------------------------------
# Composite indices
# ---------------------------------------------------------------------------


def apply_transform(score: float, transform: str | None) -> float:
    t = (transform or "NONE").upper()
    if t == "INVERT":
        return 1.0 - score
    if t == "LOG":
        return math.log1p(score) / math.log1p(1.0)
    if t == "SQRT":
        return math.sqrt(score)
    return score


def compute_composites(
    rules: Iterable[Any],
    scored_by_code: Mapping[str, float | None],
    indicators_by_code: Mapping[str, Any],
) -> list[ScoredIndicator]:
    """Compute composite index scores from component indicator scores.

    Each rule exposes ``composite_code``, ``component_code``, ``weight`` and
    ``transform``. Components without a score are skipped; a composite with
    no usable component (or zero total weight) is omitted, as is one whose
    code is not in the indicator catalog (its pillar and theme come from
    there). Composites enter their pillar with :data:`COMPOSITE_WEIGHT`.
    """
    grouped: dict[str, list[Any]] = {}
    for rule in rules:
        grouped.setdefault(rule.composite_code, []).append(rule)

    composites: list[ScoredIndicator] = []
    for composite_code, members in grouped.items():
        indicator = indicators_by_code.get(composite_code)
        if indicator is None:
            continue
        total = 0.0
        total_weight = 0.0
        for rule in members:
            score = scored_by_code.get(rule.component_code)
            if score is None:
                continue
            weight = float(rule.weight or 0)
            total += apply_transform(score, rule.transform) * weight
            total_weight += weight
        if total_weight <= 0:
            continue
        composites.append(ScoredIndicator(
            code=composite_code,
            pillar=indicator.pillar,
            theme=indicator.theme or "",
            name=f"Índice Composto {composite_code}",
            score=total / total_weight,
            weight=COMPOSITE_WEIGHT,
            indicator_id=getattr(indicator, "id", None),
        ))
    return composites


# ---------------------------------------------------------------------------
# Theme issues and territorial interpretation
# ---------------------------------------------------------------------------

_THEME_DESCRIPTIONS = {
    "ambiental": "Sustentabilidade ambiental",
    "governanca": "Governança e gestão pública",
    "infraestrutura": "Infraestrutura turística",
    "marketing": "Marketing e promoção",
    "desempenho": "Desempenho de mercado",
    "oferta": "Oferta turística",
    "social": "Aspectos socioculturais",
    "economico": "Desenvolvimento econômico",
}


def _fold(text: str) -> str:
    """Lowercase and strip accents so 'Governança' matches 'governanca'."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(c for c in decomposed if not unicodedata.combining(c)).lower()


def determine_interpretation(pillar: str, theme: str, score: float) -> str:
    """Territorial interpretation of a weak theme, by pillar and theme keywords."""
    t = _fold(theme)
    critical = score < THRESHOLDS.severity_critical_max
    if pillar == "RA":
        if any(k in t for k in ("social", "economico", "gini")):
            return ESTRUTURAL
        if "ambiental" in t or "cultural" in t:
            return ESTRUTURAL if critical else GESTAO
        return ESTRUTURAL
    if pillar == "OE":
        if "infraestrutura" in t or "superestrutura" in t:
            return ESTRUTURAL if critical else GESTAO
        return GESTAO
    if pillar == "AO":
        if "oferta" in t or "demanda" in t:
            return GESTAO if critical else ENTREGA
        return ENTREGA
    return GESTAO


def issue_title(pillar: str, theme: str, score: float, interpretation: str) -> str:
    severity_label = "Crítico" if score <= THRESHOLDS.severity_critical_max else "Atenção"
    description = _THEME_DESCRIPTIONS.get(_fold(theme), theme)
    return (
        f"{description} em nível {severity_label} ({PILLAR_NAMES.get(pillar, pillar)})"
        f" - Interpretação: {INTERPRETATION_LABELS.get(interpretation, interpretation)}"
    )


def detect_issues(scored_indicators: Sequence[ScoredIndicator]) -> list[IssueFinding]:
    """Group scored indicators by (pillar, theme) and report themes below adequate.

    Theme score is the plain mean of its indicators. Output order follows
    pillar order (RA, OE, AO), then first appearance of the theme.
    """
    themes: dict[tuple[str, str], list[ScoredIndicator]] = {}
    for s in scored_indicators:
        if s.score is None or s.pillar not in PILLARS:
            continue
        themes.setdefault((s.pillar, s.theme), []).append(s)

    issues: list[IssueFinding] = []
    for pillar in PILLARS:
        for (p, theme), members in themes.items():
            if p != pillar:
                continue
            mean = sum(m.score for m in members) / len(members)
            if mean >= THRESHOLDS.issue_below:
                continue
            interpretation = determine_interpretation(pillar, theme, mean)
            issues.append(IssueFinding(
                pillar=pillar,
                theme=theme,
                score=mean,
                severity=classify_severity(mean),
                interpretation=interpretation,
                title=issue_title(pillar, theme, mean, interpretation),
                indicators=[{"code": m.code, "name": m.name, "score": m.score} for m in members],
            ))
    return issues


# ---------------------------------------------------------------------------
# Trends and regressions
# ---------------------------------------------------------------------------


def pillar_trend(current: float | None, previous: float | None) -> str | None:
    """UP / DOWN / STABLE against a previous score; None when either is missing."""
    if current is None or previous is None:
        return None
    if current > previous:
        return "UP"
    if current < previous:
        return "DOWN"
    return "STABLE"


def detect_regressions(
    current: Mapping[str, float],
    history: Sequence[Mapping[str, float]],
    *,
    tolerance: float = REGRESSION_TOLERANCE,
    min_cycles: int = REGRESSION_MIN_CYCLES,
) -> dict[str, int]:
    """Count consecutive regressions per pillar.

    Args:
        current: ``{pillar: score}`` for the assessment just calculated.
        history: earlier calculated assessments, newest first, each as
            ``{pillar: score}``. Snapshots lacking the pillar are skipped.
        tolerance: a drop must exceed this to count as a regression.
        min_cycles: only pillars with at least this many consecutive
            regressions are reported.

    Returns:
        ``{pillar: consecutive_cycles}`` for pillars at or above ``min_cycles``.
    """
    found: dict[str, int] = {}
    for pillar in PILLARS:
        last = current.get(pillar)
        if last is None:
            continue
        cycles = 0
        for snapshot in history:
            previous = snapshot.get(pillar)
            if previous is None:
                continue
            if last < previous - tolerance:
                cycles += 1
                last = previous
            else:
                break
        if cycles >= min_cycles:
            found[pillar] = cycles
    return found
