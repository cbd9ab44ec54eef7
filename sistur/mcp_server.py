from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date

from mcp.server.fastmcp import FastMCP
from sqlalchemy import select

from sistur import services
from sistur.db import init_db, session_scope
from sistur.igma import IGMAInput, PillarContext, interpret_systemic_rules
from sistur.models import Assessment
from sistur.scoring import PILLAR_NAMES, PILLARS

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def sistur_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "SISTUR",
    instructions=(
        "SISTUR assesses tourism destinations on three pillars (RA, OE, AO). "
        "Use these tools to list assessments, run calculations and read the IGMA "
        "interpretation and training prescriptions. Start with get_stats() for an "
        "overview, then list_assessments() to browse, then get_results(id)."
    ),
    lifespan=sistur_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_or_error(session, model, entity_id, label="Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        return None, {"error": f"{label} {entity_id} not found"}
    return obj, None


def _not_calculated(assessment: Assessment) -> dict | None:
    if assessment.status != services.CALCULATED:
        return {"error": f"Assessment {assessment.id} has not been calculated (status {assessment.status})"}
    return None


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("sistur://overview")
def sistur_overview() -> str:
    """Overview of SISTUR: pillars, workflow, severities and IGMA flags."""
    return json.dumps({
        "system": "SISTUR: tourism destination assessment engine",
        "description": (
            "Raw indicator measurements are normalized to [0, 1], aggregated per pillar "
            "as a weighted mean, classified by severity and run through six systemic "
            "rules (IGMA) that gate which trainings and actions are allowed."
        ),
        "pillars": {p: PILLAR_NAMES[p] for p in PILLARS},
        "workflow": [
            "1. get_stats() to see destinations, assessments and open alerts.",
            "2. list_assessments() to browse, optionally by destination.",
            "3. get_assessment(id) for raw values and lifecycle status.",
            "4. calculate(id) to score a DATA_READY assessment (force=True to recalculate).",
            "5. get_results(id) for pillar scores, issues, IGMA flags, prescriptions and action plans.",
            "6. get_recommendations(id) for ranked trainings with their IGMA gate.",
            "7. interpret(ra, oe, ao) to try the systemic rules on ad-hoc scores.",
        ],
        "severities": {
            "CRITICO": "score <= 0.33",
            "MODERADO": "0.33 < score <= 0.66",
            "BOM": "score > 0.66",
        },
        "flags": {
            "RA_LIMITATION": "RA critical. Blocks EDU_OE.",
            "GOVERNANCE_BLOCK": "AO critical. Blocks EDU_OE.",
            "EXTERNALITY_WARNING": "OE rising while RA falls since the previous assessment.",
            "MARKETING_BLOCKED": "RA or AO critical. Blocks MARKETING.",
            "INTERSECTORAL_DEPENDENCY": "Advisory only.",
        },
    }, indent=2, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Tools: Assessments
# ---------------------------------------------------------------------------


@mcp.tool()
def list_assessments(destination_id: int | None = None, status: str | None = None, limit: int = 50) -> list[dict]:
    """List assessments, newest first.

    Args:
        destination_id: Only assessments of this destination.
        status: Filter by lifecycle status: DRAFT, DATA_READY or CALCULATED.
        limit: Max results (default 50, max 500).
    """
    with session_scope() as session:
        query = select(Assessment).order_by(Assessment.id.desc())
        if destination_id is not None:
            query = query.where(Assessment.destination_id == destination_id)
        if status:
            query = query.where(Assessment.status == status.strip().upper())
        query = query.limit(max(1, min(limit, 500)))
        return [services.assessment_summary(a) for a in session.execute(query).scalars()]


@mcp.tool()
def get_assessment(assessment_id: int) -> dict:
    """Get one assessment with its raw indicator values."""
    with session_scope() as session:
        assessment, err = _get_or_error(session, Assessment, assessment_id, "Assessment")
        return err if err else services.assessment_detail(assessment)


@mcp.tool()
def calculate(assessment_id: int, force: bool = False) -> dict:
    """Score an assessment: pillar scores, IGMA flags, issues and prescriptions.

    A CALCULATED assessment is only recalculated with force=True, which bumps
    its calculation version.
    """
    with session_scope() as session:
        assessment, err = _get_or_error(session, Assessment, assessment_id, "Assessment")
        if err:
            return err
        try:
            result = services.calculate_assessment(session, assessment, force=force)
        except services.AssessmentStateError as exc:
            return {"error": str(exc)}
        session.commit()
        return result


@mcp.tool()
def get_results(assessment_id: int) -> dict:
    """Pillar scores, theme issues, IGMA interpretation, prescriptions, action plans and open alerts."""
    with session_scope() as session:
        assessment, err = _get_or_error(session, Assessment, assessment_id, "Assessment")
        if err:
            return err
        return _not_calculated(assessment) or services.assessment_results(session, assessment)


@mcp.tool()
def get_recommendations(assessment_id: int) -> dict:
    """Ranked training recommendations for a calculated assessment.

    Each entry carries ``allowed``: False when the IGMA rules currently block
    education actions for its pillar.
    """
    with session_scope() as session:
        assessment, err = _get_or_error(session, Assessment, assessment_id, "Assessment")
        if err:
            return err
        return _not_calculated(assessment) or services.assessment_recommendations(session, assessment)


# ---------------------------------------------------------------------------
# Tools: Engine
# ---------------------------------------------------------------------------


@mcp.tool()
def interpret(
    ra: float | None = None, oe: float | None = None, ao: float | None = None,
    previous_ra: float | None = None, previous_oe: float | None = None, previous_ao: float | None = None,
    assessment_date: str | None = None, intersectoral_indicator_count: int = 0,
) -> dict:
    """Apply the IGMA systemic rules to ad-hoc pillar scores (nothing is stored).

    Args:
        ra, oe, ao: Current pillar scores in [0, 1]. Omit a pillar that has no data.
        previous_ra, previous_oe, previous_ao: Prior snapshot; omit all three when
            there is none.
        assessment_date: ISO date (default today), base for the next review date.
        intersectoral_indicator_count: Indicators depending on other sectors.
    """
    try:
        when = date.fromisoformat(assessment_date) if assessment_date else date.today()
    except ValueError:
        return {"error": f"Invalid assessment_date {assessment_date!r}, expected YYYY-MM-DD"}
    current = {"RA": ra, "OE": oe, "AO": ao}
    previous = {"RA": previous_ra, "OE": previous_oe, "AO": previous_ao}
    has_previous = any(v is not None for v in previous.values())
    output = interpret_systemic_rules(IGMAInput(
        pillar_scores=[PillarContext(pillar=p, score=s) for p, s in current.items()],
        previous_pillar_scores=(
            [PillarContext(pillar=p, score=s) for p, s in previous.items()] if has_previous else None
        ),
        assessment_date=when,
        intersectoral_indicator_count=max(0, intersectoral_indicator_count),
    ))
    return output.to_dict()


# ---------------------------------------------------------------------------
# Tools: Stats
# ---------------------------------------------------------------------------


@mcp.tool()
def get_stats() -> dict:
    """Get summary statistics: destinations, assessments by status, severities, alerts."""
    with session_scope() as session:
        return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the SISTUR MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
