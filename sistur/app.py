from __future__ import annotations

import json
import logging
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Generator

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from sistur import services
from sistur.db import init_db, session_generator
from sistur.igma import IGMAInput, PillarContext, interpret_systemic_rules
from sistur.importer import import_xlsx
from sistur.models import (
    ActionPlan, Alert, Assessment, CompositeRule, Destination, IGMAInterpretation, Indicator,
    IndicatorScore, IndicatorValue, Issue, LearningRecommendation, LearningRun,
    LearningTrack, PillarScore, Prescription, Training, TrainingMapping,
)
from sistur.normalizer import ConfigError, normalize_indicator
from sistur.recommender import match_recommendations
from sistur.scoring import aggregate_pillar
from sistur.schemas import (
    AggregateRequest,
    AssessmentCreate,
    AssessmentOut,
    CompositeRuleCreate,
    DestinationCreate,
    DestinationOut,
    ImportResult,
    IndicatorCreate,
    IndicatorOut,
    IndicatorUpdate,
    InterpretRequest,
    LearningRunCreate,
    MatchRequest,
    NormalizeRequest,
    StatsOut,
    TrackCreate,
    TrainingCreate,
    TrainingMappingCreate,
    ValuesUpdate,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="SISTUR",
    version="0.1.0",
    description=(
        "Tourism destination assessment API. Normalizes indicator measurements, "
        "aggregates RA / OE / AO pillar scores, applies the IGMA systemic rules "
        "and prescribes trainings. All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Indicators", "description": "Indicator catalog (reference data)."},
        {"name": "Destinations", "description": "Tourism destinations under assessment."},
        {"name": "Assessments", "description": "Assessment rounds, values, calculation and results."},
        {"name": "Trainings", "description": "Training catalog, indicator mappings and tracks."},
        {"name": "Learning", "description": "Exploratory 'what should I learn' runs."},
        {"name": "Engine", "description": "Stateless access to the scoring engine."},
        {"name": "Stats", "description": "Aggregate statistics."},
        {"name": "Admin", "description": "Administrative operations."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


def _config_error(exc: ConfigError) -> HTTPException:
    return HTTPException(422, {"error": str(exc), "indicator_code": exc.indicator_code})


# ---------------------------------------------------------------------------
# Routes: Indicators
# ---------------------------------------------------------------------------


@app.get("/api/indicators", response_model=list[IndicatorOut],
         tags=["Indicators"], summary="List indicators, optionally by pillar")
async def list_indicators(
    pillar: str | None = Query(None, description="RA, OE or AO"),
    session: Session = Depends(db_session),
):
    query = select(Indicator).order_by(Indicator.pillar, Indicator.code)
    if pillar:
        query = query.where(Indicator.pillar == pillar.upper())
    return [services.indicator_dict(i) for i in session.execute(query).scalars()]


@app.post("/api/indicators", response_model=IndicatorOut, status_code=201,
          tags=["Indicators"], summary="Create an indicator (reference data is validated)")
async def create_indicator(body: IndicatorCreate, session: Session = Depends(db_session)):
    if session.execute(select(Indicator).where(Indicator.code == body.code)).scalars().first():
        raise HTTPException(409, f"Indicator '{body.code}' already exists")
    try:
        ind = services.create_indicator(session, body.model_dump())
    except ConfigError as exc:
        raise _config_error(exc) from exc
    session.commit()
    return services.indicator_dict(ind)


@app.get("/api/indicators/{indicator_id}", response_model=IndicatorOut,
         tags=["Indicators"], summary="Get one indicator")
async def get_indicator(indicator_id: int, session: Session = Depends(db_session)):
    return services.indicator_dict(_get_or_404(session, Indicator, indicator_id, "Indicator"))


@app.put("/api/indicators/{indicator_id}", response_model=IndicatorOut,
         tags=["Indicators"], summary="Update indicator fields (partial update, null fields ignored)")
async def update_indicator(indicator_id: int, body: IndicatorUpdate, session: Session = Depends(db_session)):
    ind = _get_or_404(session, Indicator, indicator_id, "Indicator")
    try:
        services.update_indicator(ind, body.model_dump())
    except ConfigError as exc:
        raise _config_error(exc) from exc
    session.commit()
    return services.indicator_dict(ind)


# ---------------------------------------------------------------------------
# Routes: Destinations
# ---------------------------------------------------------------------------


@app.get("/api/destinations", response_model=list[DestinationOut],
         tags=["Destinations"], summary="List destinations")
async def list_destinations(session: Session = Depends(db_session)):
    dests = session.execute(select(Destination).order_by(Destination.name)).scalars()
    return [services.destination_dict(d) for d in dests]


@app.post("/api/destinations", response_model=DestinationOut, status_code=201,
          tags=["Destinations"], summary="Create a destination")
async def create_destination(body: DestinationCreate, session: Session = Depends(db_session)):
    dest = Destination(name=body.name, uf=body.uf.upper(), ibge_code=body.ibge_code)
    session.add(dest)
    session.commit()
    session.refresh(dest)
    return services.destination_dict(dest)


@app.get("/api/destinations/{destination_id}/alerts", tags=["Destinations"],
         summary="List open (undismissed) alerts for a destination")
async def list_alerts(destination_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Destination, destination_id, "Destination")
    alerts = session.execute(
        select(Alert)
        .where(Alert.destination_id == destination_id, Alert.is_dismissed.is_(False))
        .order_by(Alert.id)
    ).scalars()
    return [services.alert_dict(a) for a in alerts]


@app.post("/api/alerts/{alert_id}/dismiss", tags=["Destinations"], summary="Dismiss an alert")
async def dismiss_alert(alert_id: int, session: Session = Depends(db_session)):
    alert = _get_or_404(session, Alert, alert_id, "Alert")
    alert.is_dismissed = True
    session.commit()
    return services.alert_dict(alert)


# ---------------------------------------------------------------------------
# Routes: Assessments
# ---------------------------------------------------------------------------


@app.get("/api/assessments", response_model=list[AssessmentOut],
         tags=["Assessments"], summary="List assessments, optionally for one destination")
async def list_assessments(
    destination_id: int | None = Query(None),
    session: Session = Depends(db_session),
):
    query = select(Assessment).order_by(Assessment.id)
    if destination_id is not None:
        query = query.where(Assessment.destination_id == destination_id)
    return [services.assessment_summary(a) for a in session.execute(query).scalars()]


@app.post("/api/assessments", response_model=AssessmentOut, status_code=201,
          tags=["Assessments"], summary="Open a new assessment round (DRAFT)")
async def create_assessment(body: AssessmentCreate, session: Session = Depends(db_session)):
    _get_or_404(session, Destination, body.destination_id, "Destination")
    assessment = Assessment(
        destination_id=body.destination_id, title=body.title, tier=body.tier,
        status=services.DRAFT, calculation_version=0,
    )
    session.add(assessment)
    session.commit()
    session.refresh(assessment)
    return services.assessment_summary(assessment)


@app.get("/api/assessments/{assessment_id}", tags=["Assessments"],
         summary="Get an assessment with its raw values")
async def get_assessment(assessment_id: int, session: Session = Depends(db_session)):
    return services.assessment_detail(_get_or_404(session, Assessment, assessment_id, "Assessment"))


@app.put("/api/assessments/{assessment_id}/values", tags=["Assessments"],
         summary="Upsert raw indicator values (later writes overwrite earlier ones)")
async def put_values(assessment_id: int, body: ValuesUpdate, session: Session = Depends(db_session)):
    assessment = _get_or_404(session, Assessment, assessment_id, "Assessment")
    result = services.upsert_values(session, assessment, [v.model_dump() for v in body.values])
    session.commit()
    return result


@app.post("/api/assessments/{assessment_id}/import", response_model=ImportResult,
          tags=["Assessments"], summary="Import indicator catalog and values from XLSX")
async def import_file(assessment_id: int, file: UploadFile = File(...), session: Session = Depends(db_session)):
    assessment = _get_or_404(session, Assessment, assessment_id, "Assessment")
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        return import_xlsx(tmp_path, session, assessment)
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


@app.post("/api/assessments/{assessment_id}/calculate", tags=["Assessments"],
          summary="Calculate scores, IGMA interpretation and prescriptions")
async def calculate(
    assessment_id: int,
    force: bool = Query(False, description="Recalculate a CALCULATED assessment (new version)"),
    session: Session = Depends(db_session),
):
    assessment = _get_or_404(session, Assessment, assessment_id, "Assessment")
    try:
        result = services.calculate_assessment(session, assessment, force=force)
    except services.AssessmentStateError as exc:
        raise HTTPException(409, str(exc)) from exc
    session.commit()
    return result


@app.get("/api/assessments/{assessment_id}/results", tags=["Assessments"],
         summary="Pillar scores, issues, IGMA interpretation and prescriptions")
async def get_results(assessment_id: int, session: Session = Depends(db_session)):
    assessment = _get_or_404(session, Assessment, assessment_id, "Assessment")
    if assessment.status != services.CALCULATED:
        raise HTTPException(409, f"Assessment {assessment_id} has not been calculated")
    return services.assessment_results(session, assessment)


@app.get("/api/assessments/{assessment_id}/recommendations", tags=["Assessments"],
         summary="Ranked training recommendations with their IGMA gate")
async def get_recommendations(assessment_id: int, session: Session = Depends(db_session)):
    assessment = _get_or_404(session, Assessment, assessment_id, "Assessment")
    if assessment.status != services.CALCULATED:
        raise HTTPException(409, f"Assessment {assessment_id} has not been calculated")
    return services.assessment_recommendations(session, assessment)


# ---------------------------------------------------------------------------
# Routes: Trainings
# ---------------------------------------------------------------------------


@app.get("/api/trainings", tags=["Trainings"], summary="List the training catalog")
async def list_trainings(session: Session = Depends(db_session)):
    trainings = session.execute(select(Training).order_by(Training.training_id)).scalars()
    return [services.training_dict(t) for t in trainings]


@app.post("/api/trainings", tags=["Trainings"], status_code=201, summary="Add a training")
async def create_training(body: TrainingCreate, session: Session = Depends(db_session)):
    if session.execute(select(Training).where(Training.training_id == body.training_id)).scalars().first():
        raise HTTPException(409, f"Training '{body.training_id}' already exists")
    training = Training(**body.model_dump())
    session.add(training)
    session.commit()
    return services.training_dict(training)


@app.get("/api/training-mappings", tags=["Trainings"], summary="List indicator -> training mappings")
async def list_mappings(
    indicator_code: str | None = Query(None),
    session: Session = Depends(db_session),
):
    query = select(TrainingMapping).order_by(TrainingMapping.priority, TrainingMapping.id)
    if indicator_code:
        query = query.where(TrainingMapping.indicator_code == indicator_code.upper())
    return [services.mapping_dict(m) for m in session.execute(query).scalars()]


@app.post("/api/training-mappings", tags=["Trainings"], status_code=201, summary="Add a mapping")
async def create_mapping(body: TrainingMappingCreate, session: Session = Depends(db_session)):
    data = body.model_dump()
    mapping = TrainingMapping(
        status_trigger_json=json.dumps(data.pop("status_trigger")), **data,
    )
    session.add(mapping)
    session.commit()
    return services.mapping_dict(mapping)


@app.post("/api/tracks", tags=["Trainings"], status_code=201, summary="Create a learning track")
async def create_track(body: TrackCreate, session: Session = Depends(db_session)):
    track = LearningTrack(
        name=body.name, description=body.description, training_ids_json=json.dumps(body.training_ids),
    )
    session.add(track)
    session.commit()
    return services.track_dict(track)


@app.post("/api/composite-rules", tags=["Indicators"], status_code=201,
          summary="Add a component to a composite indicator")
async def create_composite_rule(body: CompositeRuleCreate, session: Session = Depends(db_session)):
    rule = CompositeRule(**body.model_dump())
    session.add(rule)
    session.commit()
    return {"id": rule.id, **body.model_dump()}


# ---------------------------------------------------------------------------
# Routes: Learning
# ---------------------------------------------------------------------------


@app.post("/api/learning/runs", tags=["Learning"], status_code=201,
          summary="Score courses, lives and tracks for a set of indicators")
async def create_learning_run(body: LearningRunCreate, session: Session = Depends(db_session)):
    if body.destination_id is not None:
        _get_or_404(session, Destination, body.destination_id, "Destination")
    codes = [c.strip().upper() for c in body.indicator_codes]
    run = services.run_learning(session, codes, body.destination_id)
    session.commit()
    return services.learning_run_dict(run)


@app.get("/api/learning/runs/{run_id}", tags=["Learning"], summary="Get a stored learning run")
async def get_learning_run(run_id: int, session: Session = Depends(db_session)):
    return services.learning_run_dict(_get_or_404(session, LearningRun, run_id, "Learning run"))


# ---------------------------------------------------------------------------
# Routes: Engine (stateless)
# ---------------------------------------------------------------------------


@app.post("/api/engine/normalize", tags=["Engine"], summary="Normalize one raw value")
async def engine_normalize(body: NormalizeRequest):
    try:
        score = normalize_indicator(body.raw_value, body.indicator)
    except ConfigError as exc:
        raise _config_error(exc) from exc
    return {"score": score}


@app.post("/api/engine/aggregate", tags=["Engine"], summary="Weighted pillar aggregation")
async def engine_aggregate(body: AggregateRequest):
    result = aggregate_pillar(body.indicators, body.pillar)
    return {"pillar": result.pillar, "score": result.score, "severity": result.severity}


@app.post("/api/engine/interpret", tags=["Engine"], summary="Apply the IGMA systemic rules")
async def engine_interpret(body: InterpretRequest):
    previous = None
    if body.previous_pillar_scores is not None:
        previous = [PillarContext(pillar=p.pillar, score=p.score) for p in body.previous_pillar_scores]
    output = interpret_systemic_rules(IGMAInput(
        pillar_scores=[PillarContext(pillar=p.pillar, score=p.score) for p in body.pillar_scores],
        previous_pillar_scores=previous,
        assessment_date=body.assessment_date,
        intersectoral_indicator_count=body.intersectoral_indicator_count,
    ))
    return output.to_dict()


@app.post("/api/engine/match", tags=["Engine"], summary="Match indicator scores to trainings")
async def engine_match(body: MatchRequest):
    recs = match_recommendations(body.indicator_scores, body.training_mappings, body.training_catalog)
    return [r.to_dict() for r in recs]


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut,
         tags=["Stats"], summary="Get aggregate statistics and breakdowns")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Routes: Reset
# ---------------------------------------------------------------------------


@app.delete("/api/reset", tags=["Admin"], summary="Delete all data (catalogs, destinations, assessments, runs)")
async def reset_db(session: Session = Depends(db_session)):
    for model in (
        ActionPlan, LearningRecommendation, LearningRun, Alert, Prescription, Issue, IGMAInterpretation,
        PillarScore, IndicatorScore, IndicatorValue, Assessment, Destination,
        TrainingMapping, LearningTrack, Training, CompositeRule, Indicator,
    ):
        session.execute(delete(model))
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("sistur.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
