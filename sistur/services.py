"""Shared business logic for the SISTUR API and MCP server."""
from __future__ import annotations

import json
import logging
import os
from collections import Counter
from datetime import UTC, date, datetime
from types import SimpleNamespace
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from sistur.igma import IGMAInput, IGMAOutput, add_months, contexts_from_scores, interpret_systemic_rules
from sistur.models import (
    ActionPlan, Alert, Assessment, CompositeRule, Destination, IGMAInterpretation, Indicator,
    IndicatorScore, IndicatorValue, Issue, LearningRecommendation, LearningRun,
    LearningTrack, PillarScore, Prescription, Training, TrainingMapping,
)
from sistur.normalizer import ConfigError, normalize_indicator, validate_indicator
from sistur.recommender import MappingIndex, match_recommendations, score_learning_paths
from sistur.scoring import (
    CRITICO,
    MODERADO,
    PILLAR_NAMES,
    PILLARS,
    ScoredIndicator,
    aggregate_pillars,
    compute_composites,
    detect_issues,
    detect_regressions,
    filter_by_tier,
)
from sistur.utils import json_parse

log = logging.getLogger(__name__)

DRAFT = "DRAFT"
DATA_READY = "DATA_READY"
CALCULATED = "CALCULATED"

DEFAULT_ALGO_VERSION = "igma-1"


class AssessmentStateError(Exception):
    """The assessment's lifecycle state does not allow the operation."""


def algo_version() -> str:
    return os.environ.get("SISTUR_ALGO_VERSION", "").strip() or DEFAULT_ALGO_VERSION


# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

INDICATOR_FIELDS = (
    "code", "name", "pillar", "theme", "description", "unit", "normalization",
    "direction", "min_ref", "max_ref", "target", "weight",
    "intersectoral_dependency", "minimum_tier",
)

INDICATOR_UPDATABLE = tuple(f for f in INDICATOR_FIELDS if f != "code")

INDICATOR_DEFAULTS = {
    "theme": "", "normalization": "MIN_MAX", "direction": "HIGH_IS_BETTER",
    "weight": 1.0, "intersectoral_dependency": False, "minimum_tier": "COMPLETE",
}

DESTINATION_FIELDS = ("name", "uf", "ibge_code")

TRAINING_FIELDS = ("training_id", "title", "type", "pillar", "level", "description", "active")

ASSESSMENT_FLAG_FIELDS = ("ra_limitation", "governance_block", "marketing_blocked", "externality_warning")

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value else None


def indicator_dict(ind: Indicator) -> dict:
    return {"id": ind.id, **{f: getattr(ind, f) for f in INDICATOR_FIELDS}}


def destination_dict(dest: Destination) -> dict:
    return {
        "id": dest.id, **{f: getattr(dest, f) for f in DESTINATION_FIELDS},
        "assessment_count": len(dest.assessments),
    }


def assessment_summary(a: Assessment) -> dict:
    return {
        "id": a.id, "destination_id": a.destination_id, "title": a.title,
        "tier": a.tier, "status": a.status, "algo_version": a.algo_version,
        "calculation_version": a.calculation_version,
        "calculated_at": _iso(a.calculated_at),
        "next_review_recommended_at": _iso(a.next_review_recommended_at),
        **{f: getattr(a, f) for f in ASSESSMENT_FLAG_FIELDS},
        "pillars": {p.pillar: round(p.score, 4) for p in a.pillar_scores},
    }


def assessment_detail(a: Assessment) -> dict:
    base = assessment_summary(a)
    base["destination"] = a.destination.name if a.destination else None
    base["values"] = [
        {"indicator_id": v.indicator_id, "indicator_code": v.indicator.code,
         "value_raw": v.value_raw, "source": v.source, "confidence": v.confidence}
        for v in sorted(a.values, key=lambda v: v.indicator.code)
    ]
    return base


def training_dict(t: Training) -> dict:
    return {"id": t.id, **{f: getattr(t, f) for f in TRAINING_FIELDS}}


def mapping_dict(m: TrainingMapping) -> dict:
    return {
        "id": m.id, "indicator_code": m.indicator_code, "training_id": m.training_id,
        "pillar": m.pillar, "status_trigger": m.status_trigger,
        "interpretation_trigger": m.interpretation_trigger, "priority": m.priority,
        "reason_template": m.reason_template,
    }


def track_dict(t: LearningTrack) -> dict:
    return {"id": t.id, "name": t.name, "description": t.description, "training_ids": t.training_ids}


def alert_dict(a: Alert) -> dict:
    return {
        "id": a.id, "destination_id": a.destination_id, "assessment_id": a.assessment_id,
        "alert_type": a.alert_type, "pillar": a.pillar, "message": a.message,
        "consecutive_cycles": a.consecutive_cycles, "is_dismissed": a.is_dismissed,
    }


def interpretation_dict(row: IGMAInterpretation) -> dict:
    return {
        "calculation_version": row.calculation_version,
        "algo_version": row.algo_version,
        "flags": json_parse(row.flags_json),
        "allowed_actions": json_parse(row.allowed_actions_json),
        "blocked_actions": json_parse(row.blocked_actions_json, []),
        "ui_messages": json_parse(row.ui_messages_json, []),
        "interpretation_type": row.interpretation_type,
        "next_review_date": _iso(row.next_review_date),
        "critical_pillar": row.critical_pillar,
        "pillar_context": json_parse(row.pillar_context_json),
    }


def learning_run_dict(run: LearningRun) -> dict:
    grouped: dict[str, list[dict]] = {"courses": [], "lives": [], "tracks": []}
    keys = {"course": "courses", "live": "lives", "track": "tracks"}
    for rec in run.recommendations:
        grouped[keys[rec.entity_type]].append({
            "entity_type": rec.entity_type, "entity_id": rec.entity_id, "title": rec.title,
            "score": rec.score, "reasons": json_parse(rec.reasons_json, []),
        })
    return {
        "id": run.id, "destination_id": run.destination_id,
        "inputs": json_parse(run.inputs_json), "created_at": _iso(run.created_at),
        **grouped,
    }


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


def create_indicator(session: Session, data: dict[str, Any]) -> Indicator:
    """Validate and add a new indicator (caller must commit). Raises ConfigError."""
    fields = {**INDICATOR_DEFAULTS, **{f: data[f] for f in INDICATOR_FIELDS if data.get(f) is not None}}
    ind = Indicator(**fields)
    validate_indicator(ind)
    session.add(ind)
    return ind


def update_indicator(ind: Indicator, updates: dict[str, Any]) -> Indicator:
    """Validate the merged definition, then apply it. Raises ConfigError, leaving *ind* untouched."""
    merged = {f: getattr(ind, f) for f in INDICATOR_FIELDS}
    merged.update({f: updates[f] for f in INDICATOR_UPDATABLE if updates.get(f) is not None})
    validate_indicator(SimpleNamespace(**merged))
    apply_updates(ind, updates, INDICATOR_UPDATABLE)
    return ind


def refresh_status(assessment: Assessment) -> str:
    """DRAFT <-> DATA_READY from collected values; a CALCULATED assessment keeps its status."""
    if assessment.status != CALCULATED:
        has_data = any(v.value_raw is not None for v in assessment.values)
        assessment.status = DATA_READY if has_data else DRAFT
    return assessment.status


def upsert_values(session: Session, assessment: Assessment, rows: list[dict[str, Any]]) -> dict:
    """Write raw values by ``indicator_id`` or ``indicator_code``; later writes win.

    Returns counts plus the references that matched no indicator
    (caller must commit).
    """
    by_code = {i.code: i for i in session.execute(select(Indicator)).scalars()}
    by_id = {i.id: i for i in by_code.values()}
    existing = {v.indicator_id: v for v in assessment.values}
    written = 0
    skipped: list[str] = []
    for row in rows:
        ind = by_id.get(row.get("indicator_id")) or by_code.get(row.get("indicator_code") or "")
        if ind is None:
            skipped.append(str(row.get("indicator_code") or row.get("indicator_id")))
            continue
        value = existing.get(ind.id)
        if value is None:
            value = IndicatorValue(indicator_id=ind.id, indicator=ind)
            assessment.values.append(value)
            existing[ind.id] = value
        value.value_raw = row.get("value_raw")
        if row.get("source") is not None:
            value.source = row["source"]
        if row.get("confidence") is not None:
            value.confidence = row["confidence"]
        written += 1
    if skipped:
        log.warning("Assessment %s: %d values reference unknown indicators: %s",
                    assessment.id, len(skipped), ", ".join(skipped))
    refresh_status(assessment)
    return {"written": written, "skipped": skipped, "status": assessment.status}


# ---------------------------------------------------------------------------
# History lookups
# ---------------------------------------------------------------------------


def earlier_calculated(session: Session, assessment: Assessment) -> list[Assessment]:
    """Calculated assessments of the same destination created before this one, newest first."""
    return list(session.execute(
        select(Assessment)
        .where(
            Assessment.destination_id == assessment.destination_id,
            Assessment.status == CALCULATED,
            Assessment.id < assessment.id,
        )
        .order_by(Assessment.id.desc())
    ).scalars())


def pillar_map(assessment: Assessment) -> dict[str, float]:
    return {p.pillar: p.score for p in assessment.pillar_scores}


def load_mapping_index(session: Session) -> MappingIndex:
    mappings = session.execute(select(TrainingMapping).order_by(TrainingMapping.id)).scalars().all()
    trainings = session.execute(select(Training)).scalars().all()
    return MappingIndex(mappings, trainings)


def scored_from_rows(assessment: Assessment) -> list[ScoredIndicator]:
    """Rebuild scored indicators from a calculated assessment's snapshot rows."""
    return [
        ScoredIndicator(
            code=row.indicator.code, name=row.indicator.name, pillar=row.indicator.pillar,
            theme=row.indicator.theme, score=row.score, weight=row.weight_used,
            indicator_id=row.indicator_id,
        )
        for row in sorted(assessment.indicator_scores, key=lambda r: r.id)
    ]


# ---------------------------------------------------------------------------
# Calculation pipeline
# ---------------------------------------------------------------------------


def _score_indicators(
    assessment: Assessment, indicators: list[Indicator],
) -> tuple[list[ScoredIndicator], list[dict]]:
    values = {v.indicator_id: v.value_raw for v in assessment.values}
    scored: list[ScoredIndicator] = []
    config_errors: list[dict] = []
    for ind in indicators:
        if ind.id not in values:
            continue
        try:
            score = normalize_indicator(values[ind.id], ind)
        except ConfigError as exc:
            log.warning("Assessment %s: skipping indicator %s: %s", assessment.id, ind.code, exc)
            config_errors.append({"indicator_code": exc.indicator_code or ind.code, "error": str(exc)})
            continue
        if score is None:
            continue
        scored.append(ScoredIndicator(
            code=ind.code, name=ind.name, pillar=ind.pillar, theme=ind.theme or "",
            score=score, weight=ind.weight if ind.weight is not None else 1.0,
            indicator_id=ind.id,
        ))
    return scored, config_errors


def _clear_derived(session: Session, assessment: Assessment) -> None:
    assessment.action_plans.clear()
    assessment.prescriptions.clear()
    assessment.issues.clear()
    assessment.pillar_scores.clear()
    assessment.indicator_scores.clear()
    session.flush()


ACTION_PLAN_MONTHS = {CRITICO: 3, MODERADO: 6}


def _write_action_plans(assessment: Assessment, issues: list[Issue], today: date) -> None:
    """One plan per critical or moderate issue, linked to its first prescription."""
    for issue in issues:
        months = ACTION_PLAN_MONTHS.get(issue.severity)
        if months is None:
            continue
        prescription = next(
            (p for p in sorted(assessment.prescriptions, key=lambda p: p.id) if p.issue_id == issue.id),
            None,
        )
        assessment.action_plans.append(ActionPlan(
            issue_id=issue.id,
            prescription_id=prescription.id if prescription else None,
            title=f"Plano de Ação: {issue.theme} ({PILLAR_NAMES.get(issue.pillar, issue.pillar)})",
            description=(
                f"Ação corretiva para o gargalo identificado: {issue.title}. "
                f"Interpretação territorial: {issue.interpretation}."
            ),
            pillar=issue.pillar,
            priority=1 if issue.severity == CRITICO else 2,
            due_date=add_months(today, months),
        ))


def _write_alerts(session: Session, assessment: Assessment, igma: IGMAOutput,
                  regressions: dict[str, int]) -> int:
    open_alerts = {
        (a.alert_type, a.pillar): a
        for a in session.execute(
            select(Alert).where(Alert.destination_id == assessment.destination_id, Alert.is_dismissed.is_(False))
        ).scalars()
    }
    open_types = {alert_type for alert_type, _ in open_alerts}
    created = 0

    for pillar, cycles in regressions.items():
        message = (
            f"O pilar {PILLAR_NAMES[pillar]} ({pillar}) apresentou regressão em {cycles} "
            "ciclos consecutivos. Ação corretiva urgente é recomendada."
        )
        existing = open_alerts.get(("REGRESSION", pillar))
        if existing is not None:
            existing.consecutive_cycles = cycles
            existing.assessment_id = assessment.id
            existing.message = message
            continue
        session.add(Alert(
            destination_id=assessment.destination_id, assessment_id=assessment.id,
            alert_type="REGRESSION", pillar=pillar, message=message, consecutive_cycles=cycles,
        ))
        created += 1

    raised: dict[str, Any] = {}
    for msg in igma.ui_messages:
        if msg.type in ("critical", "warning"):
            raised.setdefault(f"IGMA_{msg.flag}", msg)

    # Only the destination's latest calculation may clear IGMA alerts.
    later = session.execute(
        select(func.count(Assessment.id)).where(
            Assessment.destination_id == assessment.destination_id,
            Assessment.status == CALCULATED,
            Assessment.id > assessment.id,
        )
    ).scalar()
    if not later:
        for (alert_type, _), alert in open_alerts.items():
            if alert_type.startswith("IGMA_") and alert_type not in raised:
                alert.is_dismissed = True
                log.info("Destination %s: %s alert cleared by assessment %s",
                         assessment.destination_id, alert_type, assessment.id)

    for alert_type, msg in raised.items():
        if alert_type in open_types:
            continue
        session.add(Alert(
            destination_id=assessment.destination_id, assessment_id=assessment.id,
            alert_type=alert_type, pillar=igma.critical_pillar,
            message=f"{msg.title}: {msg.message}",
        ))
        created += 1
    return created


def calculate_assessment(
    session: Session, assessment: Assessment, *, force: bool = False, today: date | None = None,
) -> dict:
    """Score an assessment and persist every derived row (caller must commit).

    Steps: tier filter, normalization (bad indicators are skipped and
    reported), composites, pillar aggregation, IGMA against the previous
    calculated assessment, theme issues, IGMA-gated prescriptions, action
    plans for critical and moderate issues, alerts.

    Raises:
        AssessmentStateError: no values collected, or the assessment is
            already CALCULATED and ``force`` is not set.
    """
    if assessment.status == CALCULATED and not force:
        raise AssessmentStateError(
            f"Assessment {assessment.id} is already calculated; pass force=True to recalculate"
        )
    if not any(v.value_raw is not None for v in assessment.values):
        raise AssessmentStateError(f"Assessment {assessment.id} has no indicator values")

    catalog = session.execute(select(Indicator).order_by(Indicator.id)).scalars().all()
    indicators = filter_by_tier(catalog, assessment.tier)
    scored, config_errors = _score_indicators(assessment, indicators)

    rules = session.execute(select(CompositeRule).order_by(CompositeRule.id)).scalars().all()
    composites = compute_composites(
        rules, {s.code: s.score for s in scored}, {i.code: i for i in indicators},
    )
    all_scored = scored + composites
    pillars = aggregate_pillars(all_scored)
    current = {p: r.score for p, r in pillars.items()}

    run_date = today or date.today()
    history = earlier_calculated(session, assessment)
    previous = contexts_from_scores(pillar_map(history[0])) if history else None
    by_id = {i.id: i for i in indicators}
    intersectoral = sum(1 for s in scored if by_id[s.indicator_id].intersectoral_dependency)

    igma = interpret_systemic_rules(IGMAInput(
        pillar_scores=contexts_from_scores(current),
        previous_pillar_scores=previous,
        assessment_date=run_date,
        intersectoral_indicator_count=intersectoral,
    ))

    _clear_derived(session, assessment)

    for s in scored:
        ind = by_id[s.indicator_id]
        assessment.indicator_scores.append(IndicatorScore(
            indicator_id=s.indicator_id, score=s.score, weight_used=s.weight,
            min_ref_used=ind.min_ref, max_ref_used=ind.max_ref,
        ))
    for s in composites:
        assessment.indicator_scores.append(IndicatorScore(
            indicator_id=s.indicator_id, score=s.score, weight_used=s.weight,
        ))
    for pillar, result in pillars.items():
        assessment.pillar_scores.append(PillarScore(
            pillar=pillar, score=result.score, severity=result.severity, trend=igma.trends.get(pillar),
        ))

    findings = detect_issues(all_scored)
    issues: list[Issue] = []
    for f in findings:
        issue = Issue(
            pillar=f.pillar, theme=f.theme, severity=f.severity, interpretation=f.interpretation,
            title=f.title, score=f.score, evidence_json=json.dumps({"indicators": f.indicators}),
        )
        assessment.issues.append(issue)
        issues.append(issue)
    session.flush()

    index = load_mapping_index(session)
    recommendations = match_recommendations(
        all_scored, (), (), index=index,
        mapping_filter=lambda m: igma.allowed_actions.get(f"EDU_{m.pillar}", True),
    )
    prescribed = {rec.training_id for rec in recommendations}
    blocked = sum(
        1 for rec in match_recommendations(all_scored, (), (), index=index)
        if rec.training_id not in prescribed
    )
    for rec in recommendations:
        issue_id = next(
            (i.id for i, f in zip(issues, findings)
             if f.pillar == rec.pillar and rec.indicator_code in f.indicator_codes),
            None,
        )
        assessment.prescriptions.append(Prescription(
            issue_id=issue_id, training_id=rec.training_id, indicator_code=rec.indicator_code,
            pillar=rec.pillar, status=rec.status, priority=rec.priority, justification=rec.reason,
        ))
    if blocked:
        log.info("Assessment %s: %d prescriptions held back by IGMA gates", assessment.id, blocked)
    session.flush()

    _write_action_plans(assessment, issues, run_date)

    assessment.calculation_version = (assessment.calculation_version or 0) + 1
    assessment.status = CALCULATED
    assessment.algo_version = algo_version()
    assessment.calculated_at = datetime.now(UTC)
    assessment.next_review_recommended_at = igma.next_review_date
    assessment.ra_limitation = igma.flags["RA_LIMITATION"]
    assessment.governance_block = igma.flags["GOVERNANCE_BLOCK"]
    assessment.marketing_blocked = igma.flags["MARKETING_BLOCKED"]
    assessment.externality_warning = igma.flags["EXTERNALITY_WARNING"]

    assessment.interpretations.append(IGMAInterpretation(
        calculation_version=assessment.calculation_version,
        algo_version=assessment.algo_version,
        flags_json=json.dumps(igma.flags),
        allowed_actions_json=json.dumps(igma.allowed_actions),
        blocked_actions_json=json.dumps(igma.blocked_actions),
        ui_messages_json=json.dumps([m.to_dict() for m in igma.ui_messages], ensure_ascii=False),
        interpretation_type=igma.interpretation_type,
        next_review_date=igma.next_review_date,
        critical_pillar=igma.critical_pillar,
        pillar_context_json=json.dumps({
            "current": current,
            "previous": pillar_map(history[0]) if history else None,
        }),
    ))

    regressions = detect_regressions(current, [pillar_map(a) for a in history])
    alerts_created = _write_alerts(session, assessment, igma, regressions)
    session.flush()

    log.info(
        "Calculated assessment %s v%d: %s, %d issues, %d prescriptions",
        assessment.id, assessment.calculation_version,
        ", ".join(f"{p}={s:.3f}" for p, s in current.items()) or "no pillars",
        len(findings), len(assessment.prescriptions),
    )
    return {
        "assessment_id": assessment.id,
        "status": assessment.status,
        "calculation_version": assessment.calculation_version,
        "algo_version": assessment.algo_version,
        "pillars": {
            p: {"score": r.score, "severity": r.severity, "trend": igma.trends.get(p)}
            for p, r in pillars.items()
        },
        "igma": igma.to_dict(),
        "indicators_scored": len(scored),
        "composites": [c.code for c in composites],
        "issues": len(findings),
        "prescriptions": len(assessment.prescriptions),
        "prescriptions_blocked": blocked,
        "action_plans": len(assessment.action_plans),
        "alerts_created": alerts_created,
        "config_errors": config_errors,
    }


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


def latest_interpretation(assessment: Assessment) -> IGMAInterpretation | None:
    return assessment.interpretations[-1] if assessment.interpretations else None


def assessment_results(session: Session, assessment: Assessment) -> dict:
    """Everything the last calculation produced for one assessment."""
    interp = latest_interpretation(assessment)
    alerts = session.execute(
        select(Alert)
        .where(Alert.destination_id == assessment.destination_id, Alert.is_dismissed.is_(False))
        .order_by(Alert.id)
    ).scalars().all()
    return {
        **assessment_summary(assessment),
        "pillar_scores": [
            {"pillar": p.pillar, "name": PILLAR_NAMES.get(p.pillar, p.pillar),
             "score": p.score, "severity": p.severity, "trend": p.trend}
            for p in sorted(assessment.pillar_scores, key=lambda p: PILLARS.index(p.pillar))
        ],
        "indicator_scores": [
            {"indicator_code": s.indicator.code, "indicator_name": s.indicator.name,
             "pillar": s.indicator.pillar, "score": s.score, "weight_used": s.weight_used}
            for s in sorted(assessment.indicator_scores, key=lambda s: s.id)
        ],
        "issues": [
            {"id": i.id, "pillar": i.pillar, "theme": i.theme, "severity": i.severity,
             "interpretation": i.interpretation, "title": i.title, "score": i.score,
             "evidence": json_parse(i.evidence_json)}
            for i in assessment.issues
        ],
        "prescriptions": [
            {"training_id": p.training_id, "indicator_code": p.indicator_code, "pillar": p.pillar,
             "status": p.status, "priority": p.priority, "justification": p.justification,
             "issue_id": p.issue_id}
            for p in sorted(assessment.prescriptions, key=lambda p: (p.priority, p.id))
        ],
        "action_plans": [
            {"id": ap.id, "title": ap.title, "description": ap.description, "pillar": ap.pillar,
             "priority": ap.priority, "due_date": _iso(ap.due_date), "issue_id": ap.issue_id,
             "prescription_id": ap.prescription_id}
            for ap in assessment.action_plans
        ],
        "igma": interpretation_dict(interp) if interp else None,
        "alerts": [alert_dict(a) for a in alerts],
    }


def assessment_recommendations(session: Session, assessment: Assessment) -> dict:
    """Ranked training matches for a calculated assessment, with their IGMA gate."""
    recs = match_recommendations(scored_from_rows(assessment), (), (), index=load_mapping_index(session))
    interp = latest_interpretation(assessment)
    allowed = json_parse(interp.allowed_actions_json) if interp else {}
    return {
        "assessment_id": assessment.id,
        "blocked_actions": json_parse(interp.blocked_actions_json, []) if interp else [],
        "recommendations": [
            {**r.to_dict(), "allowed": allowed.get(f"EDU_{r.pillar}", True)} for r in recs
        ],
    }


def run_learning(session: Session, indicator_codes: list[str], destination_id: int | None = None) -> LearningRun:
    """Score learning paths for the selected indicators and store the run (caller must commit)."""
    names = dict(session.execute(
        select(Indicator.code, Indicator.name).where(Indicator.code.in_(indicator_codes))
    ).all())
    tracks = session.execute(select(LearningTrack).order_by(LearningTrack.id)).scalars().all()
    paths = score_learning_paths(
        indicator_codes, (), (), indicator_names=names, tracks=tracks, index=load_mapping_index(session),
    )
    run = LearningRun(
        destination_id=destination_id,
        inputs_json=json.dumps({"indicator_codes": list(indicator_codes)}),
    )
    for candidate in paths.all():
        run.recommendations.append(LearningRecommendation(
            entity_type=candidate.entity_type, entity_id=candidate.entity_id, title=candidate.title,
            score=candidate.score, reasons_json=json.dumps(candidate.reasons, ensure_ascii=False),
        ))
    session.add(run)
    log.info("Learning run for %d indicators: %d courses, %d lives, %d tracks",
             len(indicator_codes), len(paths.courses), len(paths.lives), len(paths.tracks))
    return run


def compute_stats(session: Session) -> dict:
    assessments = session.execute(select(Assessment)).scalars().all()
    by_status: Counter[str] = Counter(a.status for a in assessments)
    by_severity: Counter[str] = Counter(
        p.severity for p in session.execute(select(PillarScore)).scalars()
    )
    return {
        "destinations": session.execute(select(func.count(Destination.id))).scalar() or 0,
        "indicators": session.execute(select(func.count(Indicator.id))).scalar() or 0,
        "assessments": len(assessments),
        "by_status": dict(by_status),
        "by_severity": dict(by_severity),
        "trainings": session.execute(select(func.count(Training.id))).scalar() or 0,
        "active_alerts": session.execute(
            select(func.count(Alert.id)).where(Alert.is_dismissed.is_(False))
        ).scalar() or 0,
    }
