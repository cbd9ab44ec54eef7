"""Pydantic request/response schemas for the SISTUR API."""
from __future__ import annotations

import re
from datetime import date

from pydantic import BaseModel, Field, field_validator

from sistur.models import ImportResult, StatsOut  # noqa: F401
from sistur.normalizer import VALID_DIRECTIONS, VALID_NORMALIZATIONS
from sistur.scoring import PILLARS, VALID_TIERS

CODE_RE = re.compile(r"^[A-Z0-9_.-]+$")
TRAINING_TYPES = ("course", "live")
TRANSFORMS = ("NONE", "INVERT", "LOG", "SQRT")


def _one_of(value: str | None, allowed: tuple[str, ...], label: str) -> str | None:
    if value is None:
        return None
    value = value.strip().upper()
    if value not in allowed:
        raise ValueError(f"{label} must be one of {', '.join(allowed)}")
    return value


# ---------------------------------------------------------------------------
# Indicators
# ---------------------------------------------------------------------------


class _IndicatorFields(BaseModel):
    @field_validator("pillar", check_fields=False)
    @classmethod
    def pillar_valid(cls, v: str | None) -> str | None:
        return _one_of(v, PILLARS, "pillar")

    @field_validator("normalization", check_fields=False)
    @classmethod
    def normalization_valid(cls, v: str | None) -> str | None:
        return _one_of(v, VALID_NORMALIZATIONS, "normalization")

    @field_validator("direction", check_fields=False)
    @classmethod
    def direction_valid(cls, v: str | None) -> str | None:
        return _one_of(v, VALID_DIRECTIONS, "direction")

    @field_validator("minimum_tier", check_fields=False)
    @classmethod
    def tier_valid(cls, v: str | None) -> str | None:
        return _one_of(v, VALID_TIERS, "minimum_tier")


class IndicatorCreate(_IndicatorFields):
    code: str
    name: str
    pillar: str
    theme: str = ""
    description: str = ""
    unit: str = ""
    normalization: str = "MIN_MAX"
    direction: str = "HIGH_IS_BETTER"
    min_ref: float | None = None
    max_ref: float | None = None
    target: float | None = None
    weight: float = Field(1.0, ge=0)
    intersectoral_dependency: bool = False
    minimum_tier: str = "COMPLETE"

    @field_validator("code")
    @classmethod
    def code_must_be_safe(cls, v: str) -> str:
        v = v.strip().upper()
        if not CODE_RE.match(v):
            raise ValueError("code must contain only letters, numbers, dots, hyphens, and underscores")
        return v


class IndicatorUpdate(_IndicatorFields):
    name: str | None = None
    pillar: str | None = None
    theme: str | None = None
    description: str | None = None
    unit: str | None = None
    normalization: str | None = None
    direction: str | None = None
    min_ref: float | None = None
    max_ref: float | None = None
    target: float | None = None
    weight: float | None = Field(None, ge=0)
    intersectoral_dependency: bool | None = None
    minimum_tier: str | None = None


class IndicatorOut(BaseModel):
    id: int
    code: str
    name: str
    pillar: str
    theme: str
    description: str
    unit: str
    normalization: str
    direction: str
    min_ref: float | None = None
    max_ref: float | None = None
    target: float | None = None
    weight: float
    intersectoral_dependency: bool
    minimum_tier: str


# ---------------------------------------------------------------------------
# Destinations and assessments
# ---------------------------------------------------------------------------


class DestinationCreate(BaseModel):
    name: str
    uf: str = ""
    ibge_code: str = ""


class DestinationOut(BaseModel):
    id: int
    name: str
    uf: str
    ibge_code: str
    assessment_count: int = 0


class AssessmentCreate(BaseModel):
    destination_id: int
    title: str = ""
    tier: str = "COMPLETE"

    @field_validator("tier")
    @classmethod
    def tier_valid(cls, v: str) -> str:
        return _one_of(v, VALID_TIERS, "tier")


class AssessmentOut(BaseModel):
    id: int
    destination_id: int
    title: str
    tier: str
    status: str
    algo_version: str
    calculation_version: int
    calculated_at: str | None = None
    next_review_recommended_at: str | None = None
    ra_limitation: bool
    governance_block: bool
    marketing_blocked: bool
    externality_warning: bool
    pillars: dict[str, float] = {}


class ValueIn(BaseModel):
    indicator_id: int | None = None
    indicator_code: str | None = None
    value_raw: float | None = None
    source: str | None = None
    confidence: str | None = None

    @field_validator("indicator_code")
    @classmethod
    def code_upper(cls, v: str | None) -> str | None:
        return v.strip().upper() if v else v


class ValuesUpdate(BaseModel):
    values: list[ValueIn]


# ---------------------------------------------------------------------------
# Trainings
# ---------------------------------------------------------------------------


class TrainingCreate(BaseModel):
    training_id: str
    title: str
    type: str = "course"
    pillar: str = ""
    level: str = ""
    description: str = ""
    active: bool = True

    @field_validator("type")
    @classmethod
    def type_valid(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in TRAINING_TYPES:
            raise ValueError("type must be course or live")
        return v


class TrainingMappingCreate(BaseModel):
    indicator_code: str
    training_id: str
    pillar: str
    status_trigger: list[str] = ["CRITICO", "MODERADO"]
    interpretation_trigger: str | None = None
    priority: int = 5
    reason_template: str = ""

    @field_validator("pillar")
    @classmethod
    def pillar_valid(cls, v: str) -> str:
        return _one_of(v, PILLARS, "pillar")

    @field_validator("indicator_code")
    @classmethod
    def code_upper(cls, v: str) -> str:
        return v.strip().upper()


class TrackCreate(BaseModel):
    name: str
    description: str = ""
    training_ids: list[str]


class CompositeRuleCreate(BaseModel):
    composite_code: str
    component_code: str
    weight: float = Field(1.0, ge=0)
    transform: str = "NONE"

    @field_validator("composite_code", "component_code")
    @classmethod
    def code_upper(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("transform")
    @classmethod
    def transform_valid(cls, v: str) -> str:
        return _one_of(v, TRANSFORMS, "transform")


class LearningRunCreate(BaseModel):
    indicator_codes: list[str] = Field(..., min_length=1)
    destination_id: int | None = None


# ---------------------------------------------------------------------------
# Stateless engine
# ---------------------------------------------------------------------------


class IndicatorConfig(_IndicatorFields):
    code: str = "?"
    normalization: str
    direction: str = "HIGH_IS_BETTER"
    min_ref: float | None = None
    max_ref: float | None = None
    weight: float | None = None


class NormalizeRequest(BaseModel):
    raw_value: float | None = None
    indicator: IndicatorConfig


class WeightedScore(BaseModel):
    score: float | None = None
    weight: float = Field(1.0, ge=0)


class AggregateRequest(BaseModel):
    pillar: str
    indicators: list[WeightedScore]

    @field_validator("pillar")
    @classmethod
    def pillar_valid(cls, v: str) -> str:
        return _one_of(v, PILLARS, "pillar")


class PillarIn(BaseModel):
    pillar: str
    score: float | None = None

    @field_validator("pillar")
    @classmethod
    def pillar_valid(cls, v: str) -> str:
        return _one_of(v, PILLARS, "pillar")


class InterpretRequest(BaseModel):
    pillar_scores: list[PillarIn]
    previous_pillar_scores: list[PillarIn] | None = None
    assessment_date: date
    intersectoral_indicator_count: int = Field(0, ge=0)


class ScoredIn(BaseModel):
    code: str
    name: str = ""
    score: float | None = None


class MappingIn(BaseModel):
    indicator_code: str
    training_id: str
    pillar: str = ""
    priority: int = 5
    reason_template: str = ""


class TrainingIn(BaseModel):
    training_id: str
    title: str = ""
    type: str = "course"
    active: bool = True


class MatchRequest(BaseModel):
    indicator_scores: list[ScoredIn]
    training_mappings: list[MappingIn]
    training_catalog: list[TrainingIn]
