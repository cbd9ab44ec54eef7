from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel
from sqlalchemy import (
    Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from sistur.utils import json_parse


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------


class Destination(Base):
    __tablename__ = "destinations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    uf: Mapped[str] = mapped_column(String(2), default="")
    ibge_code: Mapped[str] = mapped_column(String(20), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    assessments: Mapped[list[Assessment]] = relationship("Assessment", back_populates="destination", cascade="all, delete-orphan")
    alerts: Mapped[list[Alert]] = relationship("Alert", back_populates="destination", cascade="all, delete-orphan")


class Indicator(Base):
    __tablename__ = "indicators"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    pillar: Mapped[str] = mapped_column(String(2), nullable=False)  # RA | OE | AO
    theme: Mapped[str] = mapped_column(String(100), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    unit: Mapped[str] = mapped_column(String(50), default="")
    normalization: Mapped[str] = mapped_column(String(20), default="MIN_MAX")  # MIN_MAX | BANDS | BINARY
    direction: Mapped[str] = mapped_column(String(20), default="HIGH_IS_BETTER")
    min_ref: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_ref: Mapped[float | None] = mapped_column(Float, nullable=True)
    target: Mapped[float | None] = mapped_column(Float, nullable=True)
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    intersectoral_dependency: Mapped[bool] = mapped_column(Boolean, default=False)
    minimum_tier: Mapped[str] = mapped_column(String(20), default="COMPLETE")  # SMALL | MEDIUM | COMPLETE


class Training(Base):
    __tablename__ = "trainings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    training_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    type: Mapped[str] = mapped_column(String(20), default="course")  # course | live
    pillar: Mapped[str] = mapped_column(String(2), default="")
    level: Mapped[str] = mapped_column(String(50), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    active: Mapped[bool] = mapped_column(Boolean, default=True)


class TrainingMapping(Base):
    __tablename__ = "training_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    indicator_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    training_id: Mapped[str] = mapped_column(String(100), nullable=False)
    pillar: Mapped[str] = mapped_column(String(2), default="")
    status_trigger_json: Mapped[str] = mapped_column(Text, default="[]")
    interpretation_trigger: Mapped[str | None] = mapped_column(String(20), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=5)  # lower = more important
    reason_template: Mapped[str] = mapped_column(Text, default="")

    @property
    def status_trigger(self) -> list[str]:
        return json_parse(self.status_trigger_json, [])


class LearningTrack(Base):
    __tablename__ = "learning_tracks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    training_ids_json: Mapped[str] = mapped_column(Text, default="[]")

    @property
    def training_ids(self) -> list[str]:
        return json_parse(self.training_ids_json, [])


class CompositeRule(Base):
    __tablename__ = "composite_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    composite_code: Mapped[str] = mapped_column(String(50), nullable=False)
    component_code: Mapped[str] = mapped_column(String(50), nullable=False)
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    transform: Mapped[str] = mapped_column(String(10), default="NONE")  # NONE | INVERT | LOG | SQRT


# ---------------------------------------------------------------------------
# Assessments and their derived rows
# ---------------------------------------------------------------------------


class Assessment(Base):
    __tablename__ = "assessments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    destination_id: Mapped[int] = mapped_column(Integer, ForeignKey("destinations.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(300), default="")
    tier: Mapped[str] = mapped_column(String(20), default="COMPLETE")
    status: Mapped[str] = mapped_column(String(20), default="DRAFT")  # DRAFT | DATA_READY | CALCULATED
    algo_version: Mapped[str] = mapped_column(String(50), default="")
    calculation_version: Mapped[int] = mapped_column(Integer, default=0)
    calculated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_review_recommended_at: Mapped[date | None] = mapped_column(Date, nullable=True)
    ra_limitation: Mapped[bool] = mapped_column(Boolean, default=False)
    governance_block: Mapped[bool] = mapped_column(Boolean, default=False)
    marketing_blocked: Mapped[bool] = mapped_column(Boolean, default=False)
    externality_warning: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    destination: Mapped[Destination] = relationship("Destination", back_populates="assessments")
    values: Mapped[list[IndicatorValue]] = relationship("IndicatorValue", back_populates="assessment", cascade="all, delete-orphan")
    indicator_scores: Mapped[list[IndicatorScore]] = relationship("IndicatorScore", cascade="all, delete-orphan")
    pillar_scores: Mapped[list[PillarScore]] = relationship("PillarScore", cascade="all, delete-orphan")
    issues: Mapped[list[Issue]] = relationship("Issue", cascade="all, delete-orphan")
    prescriptions: Mapped[list[Prescription]] = relationship("Prescription", cascade="all, delete-orphan")
    action_plans: Mapped[list[ActionPlan]] = relationship(
        "ActionPlan", cascade="all, delete-orphan", order_by="ActionPlan.id",
    )
    interpretations: Mapped[list[IGMAInterpretation]] = relationship(
        "IGMAInterpretation", cascade="all, delete-orphan", order_by="IGMAInterpretation.calculation_version",
    )


class IndicatorValue(Base):
    __tablename__ = "indicator_values"
    __table_args__ = (UniqueConstraint("assessment_id", "indicator_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=False)
    indicator_id: Mapped[int] = mapped_column(Integer, ForeignKey("indicators.id"), nullable=False)
    value_raw: Mapped[float | None] = mapped_column(Float, nullable=True)
    source: Mapped[str] = mapped_column(String(200), default="")
    confidence: Mapped[str] = mapped_column(String(20), default="")
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    assessment: Mapped[Assessment] = relationship("Assessment", back_populates="values")
    indicator: Mapped[Indicator] = relationship("Indicator")


class IndicatorScore(Base):
    __tablename__ = "indicator_scores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=False)
    indicator_id: Mapped[int] = mapped_column(Integer, ForeignKey("indicators.id"), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    min_ref_used: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_ref_used: Mapped[float | None] = mapped_column(Float, nullable=True)
    weight_used: Mapped[float] = mapped_column(Float, default=1.0)
    computed_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    indicator: Mapped[Indicator] = relationship("Indicator")


class PillarScore(Base):
    __tablename__ = "pillar_scores"
    __table_args__ = (UniqueConstraint("assessment_id", "pillar"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=False)
    pillar: Mapped[str] = mapped_column(String(2), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    trend: Mapped[str | None] = mapped_column(String(10), nullable=True)  # UP | DOWN | STABLE


class IGMAInterpretation(Base):
    __tablename__ = "igma_interpretations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=False)
    calculation_version: Mapped[int] = mapped_column(Integer, nullable=False)
    algo_version: Mapped[str] = mapped_column(String(50), default="")
    flags_json: Mapped[str] = mapped_column(Text, default="{}")
    allowed_actions_json: Mapped[str] = mapped_column(Text, default="{}")
    blocked_actions_json: Mapped[str] = mapped_column(Text, default="[]")
    ui_messages_json: Mapped[str] = mapped_column(Text, default="[]")
    interpretation_type: Mapped[str] = mapped_column(String(20), default="")
    next_review_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    critical_pillar: Mapped[str | None] = mapped_column(String(2), nullable=True)
    pillar_context_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Issue(Base):
    __tablename__ = "issues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=False)
    pillar: Mapped[str] = mapped_column(String(2), nullable=False)
    theme: Mapped[str] = mapped_column(String(100), default="")
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    interpretation: Mapped[str] = mapped_column(String(20), default="")
    title: Mapped[str] = mapped_column(Text, default="")
    score: Mapped[float] = mapped_column(Float, default=0.0)
    evidence_json: Mapped[str] = mapped_column(Text, default="[]")


class Prescription(Base):
    __tablename__ = "prescriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=False)
    issue_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("issues.id"), nullable=True)
    training_id: Mapped[str] = mapped_column(String(100), nullable=False)
    indicator_code: Mapped[str] = mapped_column(String(50), default="")
    pillar: Mapped[str] = mapped_column(String(2), default="")
    status: Mapped[str] = mapped_column(String(20), default="")  # CRÍTICO | ATENÇÃO
    priority: Mapped[int] = mapped_column(Integer, default=5)
    justification: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ActionPlan(Base):
    __tablename__ = "action_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=False)
    issue_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("issues.id"), nullable=True)
    prescription_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("prescriptions.id"), nullable=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    pillar: Mapped[str] = mapped_column(String(2), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=2)  # 1 = CRITICO, 2 = MODERADO
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Alert(Base):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    destination_id: Mapped[int] = mapped_column(Integer, ForeignKey("destinations.id"), nullable=False)
    assessment_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("assessments.id"), nullable=True)
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)  # REGRESSION | IGMA_<FLAG>
    pillar: Mapped[str | None] = mapped_column(String(2), nullable=True)
    message: Mapped[str] = mapped_column(Text, default="")
    consecutive_cycles: Mapped[int] = mapped_column(Integer, default=0)
    is_dismissed: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    destination: Mapped[Destination] = relationship("Destination", back_populates="alerts")


# ---------------------------------------------------------------------------
# Learning runs
# ---------------------------------------------------------------------------


class LearningRun(Base):
    __tablename__ = "learning_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    destination_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("destinations.id"), nullable=True)
    inputs_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    recommendations: Mapped[list[LearningRecommendation]] = relationship(
        "LearningRecommendation", back_populates="run", cascade="all, delete-orphan",
        order_by="LearningRecommendation.id",
    )


class LearningRecommendation(Base):
    __tablename__ = "learning_recommendations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, ForeignKey("learning_runs.id"), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)  # course | live | track
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(String(300), default="")
    score: Mapped[float] = mapped_column(Float, default=0.0)
    reasons_json: Mapped[str] = mapped_column(Text, default="[]")

    run: Mapped[LearningRun] = relationship("LearningRun", back_populates="recommendations")


# ---------------------------------------------------------------------------
# Pydantic schemas for API responses
# ---------------------------------------------------------------------------


class ImportResult(BaseModel):
    indicators_created: int = 0
    indicators_updated: int = 0
    values_written: int = 0
    skipped: list[str] = []


class StatsOut(BaseModel):
    destinations: int
    indicators: int
    assessments: int
    by_status: dict[str, int]
    by_severity: dict[str, int]
    trainings: int
    active_alerts: int
