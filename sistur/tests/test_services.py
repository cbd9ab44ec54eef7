"""Tests for the assessment service layer: values, lifecycle, calculation pipeline, read models.

Each test runs against a fresh in-memory SQLite database.
"""
from __future__ import annotations

import json
from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from sistur import services
from sistur.models import (
    ActionPlan, Alert, Assessment, Base, CompositeRule, Destination, IGMAInterpretation, Indicator,
    IndicatorScore, LearningTrack, Training, TrainingMapping,
)
from sistur.normalizer import ConfigError

TODAY = date(2024, 3, 15)

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def catalog(session: Session) -> dict[str, Indicator]:
    """Four MIN_MAX 0-100 indicators and a small training catalog."""
    rows = [
        {"code": "RA1", "name": "Coleta seletiva", "pillar": "RA", "theme": "Ambiental",
         "intersectoral_dependency": True},
        {"code": "OE1", "name": "Conselho de turismo", "pillar": "OE", "theme": "Governança"},
        {"code": "OE2", "name": "Leitos por habitante", "pillar": "OE", "theme": "Infraestrutura"},
        {"code": "AO1", "name": "Oferta de roteiros", "pillar": "AO", "theme": "Oferta",
         "minimum_tier": "SMALL"},
    ]
    inds = {}
    for row in rows:
        inds[row["code"]] = services.create_indicator(session, {"min_ref": 0.0, "max_ref": 100.0, **row})
    session.add_all([
        Training(training_id="T-RA", title="Gestão de Resíduos", type="course", pillar="RA"),
        Training(training_id="T-OE", title="Planejamento de Infraestrutura", type="course", pillar="OE"),
        Training(training_id="T-LIVE", title="Live: Roteiros", type="live", pillar="AO"),
        TrainingMapping(indicator_code="RA1", training_id="T-RA", pillar="RA", priority=1),
        TrainingMapping(indicator_code="OE2", training_id="T-OE", pillar="OE", priority=2),
        TrainingMapping(indicator_code="AO1", training_id="T-LIVE", pillar="AO", priority=3),
    ])
    session.flush()
    return inds


@pytest.fixture()
def destination(session: Session) -> Destination:
    dest = Destination(name="Bonito", uf="MS", ibge_code="5002209")
    session.add(dest)
    session.flush()
    return dest


def _assessment(session: Session, destination: Destination, tier: str = "COMPLETE") -> Assessment:
    assessment = Assessment(destination_id=destination.id, title="Ciclo", tier=tier)
    session.add(assessment)
    session.flush()
    return assessment


def _calculated(session: Session, destination: Destination, values: dict[str, float]) -> Assessment:
    assessment = _assessment(session, destination)
    services.upsert_values(session, assessment, [{"indicator_code": c, "value_raw": v} for c, v in values.items()])
    services.calculate_assessment(session, assessment, today=TODAY)
    session.commit()
    return assessment


SCENARIO = {"RA1": 20, "OE1": 100, "OE2": 60, "AO1": 75}


# ---------------------------------------------------------------------------
# Indicators
# ---------------------------------------------------------------------------


class TestIndicatorCatalog:
    def test_create_applies_defaults(self, session):
        ind = services.create_indicator(session, {"code": "X", "name": "x", "pillar": "RA",
                                                  "min_ref": 0, "max_ref": 1})
        assert ind.normalization == "MIN_MAX"
        assert ind.weight == 1.0
        assert ind.minimum_tier == "COMPLETE"

    def test_create_rejects_bad_reference(self, session):
        with pytest.raises(ConfigError):
            services.create_indicator(session, {"code": "X", "name": "x", "pillar": "RA",
                                                "min_ref": 5, "max_ref": 5})

    def test_update_leaves_indicator_untouched_on_error(self, session, catalog):
        ind = catalog["RA1"]
        with pytest.raises(ConfigError):
            services.update_indicator(ind, {"name": "Renamed", "max_ref": 0.0})
        assert ind.name == "Coleta seletiva"
        assert ind.max_ref == 100.0

    def test_update_switch_to_binary_without_range(self, session, catalog):
        services.update_indicator(catalog["OE1"], {"normalization": "BINARY"})
        assert catalog["OE1"].normalization == "BINARY"


# ---------------------------------------------------------------------------
# Values and lifecycle
# ---------------------------------------------------------------------------


class TestUpsertValues:
    def test_status_follows_values(self, session, catalog, destination):
        assessment = _assessment(session, destination)
        result = services.upsert_values(session, assessment, [{"indicator_code": "RA1", "value_raw": None}])
        assert result["status"] == services.DRAFT
        result = services.upsert_values(session, assessment, [{"indicator_code": "RA1", "value_raw": 10}])
        assert result["status"] == services.DATA_READY

    def test_later_write_wins(self, session, catalog, destination):
        assessment = _assessment(session, destination)
        services.upsert_values(session, assessment, [{"indicator_code": "RA1", "value_raw": 10, "source": "ibge"}])
        services.upsert_values(session, assessment, [{"indicator_id": catalog["RA1"].id, "value_raw": 30}])
        session.flush()
        assert len(assessment.values) == 1
        assert assessment.values[0].value_raw == 30
        assert assessment.values[0].source == "ibge"

    def test_unknown_indicator_reported(self, session, catalog, destination):
        assessment = _assessment(session, destination)
        result = services.upsert_values(session, assessment, [
            {"indicator_code": "NOPE", "value_raw": 1}, {"indicator_code": "AO1", "value_raw": 2},
        ])
        assert result["written"] == 1
        assert result["skipped"] == ["NOPE"]

    def test_calculated_stays_calculated(self, session, catalog, destination):
        assessment = _calculated(session, destination, SCENARIO)
        services.upsert_values(session, assessment, [{"indicator_code": "RA1", "value_raw": 90}])
        assert assessment.status == services.CALCULATED


class TestLifecycle:
    def test_draft_cannot_be_calculated(self, session, catalog, destination):
        assessment = _assessment(session, destination)
        with pytest.raises(services.AssessmentStateError):
            services.calculate_assessment(session, assessment, today=TODAY)

    def test_recalculation_requires_force(self, session, catalog, destination):
        assessment = _calculated(session, destination, SCENARIO)
        with pytest.raises(services.AssessmentStateError, match="force"):
            services.calculate_assessment(session, assessment, today=TODAY)

    def test_forced_recalculation_versions(self, session, catalog, destination):
        assessment = _calculated(session, destination, SCENARIO)
        first_scores = len(assessment.indicator_scores)
        services.upsert_values(session, assessment, [{"indicator_code": "RA1", "value_raw": 90}])
        result = services.calculate_assessment(session, assessment, force=True, today=TODAY)
        session.commit()
        assert result["calculation_version"] == 2
        assert len(assessment.indicator_scores) == first_scores
        assert len(assessment.pillar_scores) == 3
        history = session.execute(
            select(IGMAInterpretation).where(IGMAInterpretation.assessment_id == assessment.id)
        ).scalars().all()
        assert [h.calculation_version for h in history] == [1, 2]
        assert assessment.ra_limitation is False

    def test_algo_version_from_environment(self, session, catalog, destination, monkeypatch):
        monkeypatch.setenv("SISTUR_ALGO_VERSION", "igma-test")
        assessment = _calculated(session, destination, SCENARIO)
        assert assessment.algo_version == "igma-test"


# ---------------------------------------------------------------------------
# Calculation pipeline
# ---------------------------------------------------------------------------


class TestCalculate:
    def test_end_to_end_scenario(self, session, catalog, destination):
        assessment = _assessment(session, destination)
        services.upsert_values(session, assessment, [{"indicator_code": c, "value_raw": v} for c, v in SCENARIO.items()])
        result = services.calculate_assessment(session, assessment, today=TODAY)
        session.commit()

        pillars = result["pillars"]
        assert pillars["RA"]["score"] == pytest.approx(0.20)
        assert pillars["OE"]["score"] == pytest.approx(0.80)
        assert pillars["AO"]["score"] == pytest.approx(0.75)
        assert pillars["RA"]["severity"] == "CRITICO"

        igma = result["igma"]
        assert igma["flags"]["RA_LIMITATION"] is True
        assert igma["flags"]["GOVERNANCE_BLOCK"] is False
        assert igma["flags"]["MARKETING_BLOCKED"] is True
        assert igma["flags"]["INTERSECTORAL_DEPENDENCY"] is True
        assert igma["interpretation_type"] == "ESTRUTURAL"
        assert igma["critical_pillar"] == "RA"
        assert igma["blocked_actions"] == ["EDU_OE", "MARKETING"]

        assert assessment.status == services.CALCULATED
        assert assessment.calculation_version == 1
        assert assessment.next_review_recommended_at == date(2024, 9, 15)
        assert assessment.ra_limitation and assessment.marketing_blocked
        assert not assessment.governance_block

    def test_prescriptions_gated_by_igma(self, session, catalog, destination):
        assessment = _assessment(session, destination)
        services.upsert_values(session, assessment, [{"indicator_code": c, "value_raw": v} for c, v in SCENARIO.items()])
        result = services.calculate_assessment(session, assessment, today=TODAY)
        session.flush()
        assert [p.training_id for p in assessment.prescriptions] == ["T-RA"]
        assert result["prescriptions_blocked"] == 1
        prescription = assessment.prescriptions[0]
        assert prescription.status == "CRÍTICO"
        assert "Coleta seletiva" in prescription.justification
        ra_issue = next(i for i in assessment.issues if i.pillar == "RA")
        assert prescription.issue_id == ra_issue.id

    def test_shared_training_prescribed_through_allowed_pillar(self, session, catalog, destination):
        session.add_all([
            Training(training_id="T-SHARED", title="Gestão Integrada", type="course"),
            TrainingMapping(indicator_code="OE2", training_id="T-SHARED", pillar="OE", priority=0),
            TrainingMapping(indicator_code="RA1", training_id="T-SHARED", pillar="RA", priority=4),
        ])
        session.flush()
        assessment = _assessment(session, destination)
        services.upsert_values(session, assessment, [{"indicator_code": c, "value_raw": v} for c, v in SCENARIO.items()])
        result = services.calculate_assessment(session, assessment, today=TODAY)
        session.flush()

        by_training = {p.training_id: p for p in assessment.prescriptions}
        assert sorted(by_training) == ["T-RA", "T-SHARED"]
        assert by_training["T-SHARED"].pillar == "RA"
        assert by_training["T-SHARED"].indicator_code == "RA1"
        assert result["prescriptions_blocked"] == 1

    def test_issues_written(self, session, catalog, destination):
        assessment = _calculated(session, destination, SCENARIO)
        themes = sorted((i.pillar, i.theme) for i in assessment.issues)
        assert themes == [("OE", "Infraestrutura"), ("RA", "Ambiental")]
        evidence = json.loads(next(i for i in assessment.issues if i.pillar == "RA").evidence_json)
        assert evidence["indicators"][0]["code"] == "RA1"

    def test_undefined_pillar_has_no_row(self, session, catalog, destination):
        assessment = _calculated(session, destination, {"RA1": 50, "AO1": 50})
        assert sorted(p.pillar for p in assessment.pillar_scores) == ["AO", "RA"]

    def test_tier_filter(self, session, catalog, destination):
        assessment = _assessment(session, destination, tier="SMALL")
        services.upsert_values(session, assessment, [{"indicator_code": c, "value_raw": v} for c, v in SCENARIO.items()])
        result = services.calculate_assessment(session, assessment, today=TODAY)
        assert list(result["pillars"]) == ["AO"]
        assert result["indicators_scored"] == 1

    def test_bad_indicator_skipped_and_reported(self, session, catalog, destination):
        broken = Indicator(code="RA9", name="Quebrado", pillar="RA", normalization="MIN_MAX",
                           direction="HIGH_IS_BETTER", min_ref=10.0, max_ref=10.0)
        session.add(broken)
        session.flush()
        assessment = _assessment(session, destination)
        services.upsert_values(session, assessment, [
            {"indicator_code": "RA1", "value_raw": 40}, {"indicator_code": "RA9", "value_raw": 3},
        ])
        result = services.calculate_assessment(session, assessment, today=TODAY)
        assert [e["indicator_code"] for e in result["config_errors"]] == ["RA9"]
        assert result["pillars"]["RA"]["score"] == pytest.approx(0.4)

    def test_composite_enters_pillar(self, session, catalog, destination):
        services.create_indicator(session, {"code": "IDX", "name": "Índice", "pillar": "AO",
                                            "theme": "Oferta", "min_ref": 0, "max_ref": 1})
        session.add_all([
            CompositeRule(composite_code="IDX", component_code="RA1", weight=1.0, transform="INVERT"),
        ])
        session.flush()
        assessment = _assessment(session, destination)
        services.upsert_values(session, assessment, [
            {"indicator_code": "RA1", "value_raw": 20}, {"indicator_code": "AO1", "value_raw": 50},
        ])
        result = services.calculate_assessment(session, assessment, today=TODAY)
        assert result["composites"] == ["IDX"]
        # (0.5 * 1 + 0.8 * 1.5) / 2.5
        assert result["pillars"]["AO"]["score"] == pytest.approx(0.68)
        codes = {s.indicator.code for s in assessment.indicator_scores}
        assert "IDX" in codes


# ---------------------------------------------------------------------------
# History: trends, externality, regressions, alerts
# ---------------------------------------------------------------------------


class TestHistory:
    def test_trend_and_externality_against_previous(self, session, catalog, destination):
        _calculated(session, destination, {"RA1": 50, "OE1": 70, "OE2": 70, "AO1": 80})
        second = _assessment(session, destination)
        services.upsert_values(session, second, [{"indicator_code": c, "value_raw": v}
                                                 for c, v in {"RA1": 45, "OE1": 90, "OE2": 90, "AO1": 80}.items()])
        result = services.calculate_assessment(session, second, today=TODAY)
        assert result["igma"]["flags"]["EXTERNALITY_WARNING"] is True
        assert result["pillars"]["RA"]["trend"] == "DOWN"
        assert result["pillars"]["AO"]["trend"] == "STABLE"
        assert second.externality_warning is True

    def test_first_assessment_has_no_trend(self, session, catalog, destination):
        assessment = _calculated(session, destination, SCENARIO)
        assert all(p.trend is None for p in assessment.pillar_scores)

    def test_regression_alert_after_two_drops(self, session, catalog, destination):
        for ra in (80, 60):
            _calculated(session, destination, {"RA1": ra, "AO1": 90})
        third = _calculated(session, destination, {"RA1": 40, "AO1": 90})
        alerts = session.execute(select(Alert).where(Alert.alert_type == "REGRESSION")).scalars().all()
        assert len(alerts) == 1
        assert alerts[0].pillar == "RA"
        assert alerts[0].consecutive_cycles == 2
        assert alerts[0].assessment_id == third.id

    def test_igma_alerts_not_duplicated(self, session, catalog, destination):
        _calculated(session, destination, SCENARIO)
        _calculated(session, destination, SCENARIO)
        types = [a.alert_type for a in session.execute(select(Alert)).scalars()]
        assert sorted(types) == ["IGMA_MARKETING_BLOCKED", "IGMA_RA_LIMITATION"]

    def test_igma_alerts_dismissed_when_flags_clear(self, session, catalog, destination):
        assessment = _calculated(session, destination, SCENARIO)
        services.upsert_values(session, assessment, [{"indicator_code": "RA1", "value_raw": 90}])
        services.calculate_assessment(session, assessment, force=True, today=TODAY)
        session.commit()
        alerts = session.execute(select(Alert)).scalars().all()
        assert sorted(a.alert_type for a in alerts) == ["IGMA_MARKETING_BLOCKED", "IGMA_RA_LIMITATION"]
        assert all(a.is_dismissed for a in alerts)
        assert services.compute_stats(session)["active_alerts"] == 0

    def test_older_recalculation_keeps_newer_alerts(self, session, catalog, destination):
        older = _calculated(session, destination, {"RA1": 90, "OE1": 100, "OE2": 60, "AO1": 75})
        _calculated(session, destination, SCENARIO)
        services.calculate_assessment(session, older, force=True, today=TODAY)
        session.commit()
        open_types = [
            a.alert_type for a in session.execute(select(Alert).where(Alert.is_dismissed.is_(False))).scalars()
        ]
        assert sorted(open_types) == ["IGMA_MARKETING_BLOCKED", "IGMA_RA_LIMITATION"]


# ---------------------------------------------------------------------------
# Action plans
# ---------------------------------------------------------------------------


class TestActionPlans:
    def test_one_plan_per_weak_issue(self, session, catalog, destination):
        assessment = _calculated(session, destination, SCENARIO)
        plans = {p.pillar: p for p in assessment.action_plans}
        assert sorted(plans) == ["OE", "RA"]

        ra = plans["RA"]
        assert ra.priority == 1
        assert ra.due_date == date(2024, 6, 15)
        assert ra.title == "Plano de Ação: Ambiental (Relações Ambientais)"
        assert ra.description.startswith("Ação corretiva para o gargalo identificado: ")
        assert ra.description.endswith("Interpretação territorial: ESTRUTURAL.")
        ra_issue = next(i for i in assessment.issues if i.pillar == "RA")
        assert ra.issue_id == ra_issue.id
        assert ra.prescription_id == assessment.prescriptions[0].id

        oe = plans["OE"]
        assert oe.priority == 2
        assert oe.due_date == date(2024, 9, 15)
        assert oe.prescription_id is None

    def test_recalculation_replaces_plans(self, session, catalog, destination):
        assessment = _calculated(session, destination, SCENARIO)
        result = services.calculate_assessment(session, assessment, force=True, today=TODAY)
        session.commit()
        assert result["action_plans"] == 2
        rows = session.execute(select(ActionPlan)).scalars().all()
        assert len(rows) == 2
        assert {r.issue_id for r in rows} == {i.id for i in assessment.issues}

    def test_healthy_assessment_has_no_plans(self, session, catalog, destination):
        assessment = _calculated(session, destination, {"RA1": 90, "OE1": 90, "OE2": 90, "AO1": 90})
        assert assessment.action_plans == []

    def test_results_list_plans(self, session, catalog, destination):
        assessment = _calculated(session, destination, SCENARIO)
        data = services.assessment_results(session, assessment)
        assert [(p["pillar"], p["priority"], p["due_date"]) for p in data["action_plans"]] == [
            ("RA", 1, "2024-06-15"), ("OE", 2, "2024-09-15"),
        ]


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


class TestReadModels:
    def test_results(self, session, catalog, destination):
        assessment = _calculated(session, destination, SCENARIO)
        data = services.assessment_results(session, assessment)
        assert [p["pillar"] for p in data["pillar_scores"]] == ["RA", "OE", "AO"]
        assert data["igma"]["calculation_version"] == 1
        assert data["igma"]["next_review_date"] == "2024-09-15"
        assert data["prescriptions"][0]["training_id"] == "T-RA"
        assert len(data["alerts"]) == 2

    def test_recommendations_carry_gate(self, session, catalog, destination):
        assessment = _calculated(session, destination, SCENARIO)
        data = services.assessment_recommendations(session, assessment)
        allowed = {r["training_id"]: r["allowed"] for r in data["recommendations"]}
        assert allowed == {"T-RA": True, "T-OE": False}
        assert data["blocked_actions"] == ["EDU_OE", "MARKETING"]

    def test_learning_run_is_stored(self, session, catalog, destination):
        session.add(LearningTrack(name="Trilha", training_ids_json=json.dumps(["T-RA"])))
        session.flush()
        run = services.run_learning(session, ["RA1", "AO1"], destination.id)
        session.commit()
        data = services.learning_run_dict(run)
        assert data["inputs"] == {"indicator_codes": ["RA1", "AO1"]}
        assert [c["entity_id"] for c in data["courses"]] == ["T-RA"]
        assert [c["entity_id"] for c in data["lives"]] == ["T-LIVE"]
        assert data["tracks"][0]["title"] == "Trilha"
        assert data["courses"][0]["reasons"][0]["indicator_name"] == "Coleta seletiva"

    def test_stats(self, session, catalog, destination):
        _calculated(session, destination, SCENARIO)
        _assessment(session, destination)
        session.commit()
        stats = services.compute_stats(session)
        assert stats["destinations"] == 1
        assert stats["indicators"] == 4
        assert stats["assessments"] == 2
        assert stats["by_status"] == {"CALCULATED": 1, "DRAFT": 1}
        assert stats["by_severity"] == {"CRITICO": 1, "BOM": 2}
        assert stats["active_alerts"] == 2
        assert stats["trainings"] == 3

    def test_indicator_scores_snapshot_refs(self, session, catalog, destination):
        assessment = _calculated(session, destination, SCENARIO)
        row = session.execute(
            select(IndicatorScore).where(IndicatorScore.assessment_id == assessment.id)
        ).scalars().first()
        assert row.min_ref_used == 0.0
        assert row.max_ref_used == 100.0
