"""Training recommendations from low indicator scores.

Two strategies share one lookup over the mapping table and training catalog
(:class:`MappingIndex`):

- :func:`match_recommendations` — assessment-driven prescriptions. Critical
  and attention indicators pick up their mapped trainings, each training at
  most once (highest-priority mapping wins), ranked by priority.
- :func:`score_learning_paths` — exploratory "what should I learn" runs.
  Every mapping adds points to its training; courses and lives are ranked
  separately and tracks are suggested by how many top courses they cover.

Reason templates are rendered strictly: an unknown ``{placeholder}`` raises
:class:`TemplateError` instead of leaking into user-facing text.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from sistur.scoring import THRESHOLDS
from sistur.utils import get_field

log = logging.getLogger(__name__)

DEFAULT_REASON_TEMPLATE = (
    "Esta capacitação foi prescrita porque o indicador {indicator} está {status} no pilar {pillar}."
)
REASON_PLACEHOLDERS = ("indicator", "status", "pillar")

STATUS_CRITICAL = "CRÍTICO"
STATUS_ATTENTION = "ATENÇÃO"

COURSE = "course"
LIVE = "live"
TRACK = "track"

MAX_PRIORITY_POINTS = 10
TOP_COURSES = 10
TOP_LIVES = 15
TOP_TRACKS = 3
TRACK_MIN_COVERAGE = 0.3

_PLACEHOLDER_RE = re.compile(r"\{([^{}]*)\}")


class TemplateError(ValueError):
    """Reason template references a placeholder that cannot be filled."""


def render_reason(template: str, **values: str) -> str:
    """Substitute every ``{name}`` in *template* from *values*.

    Raises TemplateError for a placeholder with no value, e.g. ``{indicatr}``.
    """
    def _sub(match: re.Match) -> str:
        name = match.group(1)
        if name not in values:
            raise TemplateError(f"Unknown placeholder {{{name}}} in reason template")
        return str(values[name])

    return _PLACEHOLDER_RE.sub(_sub, template or "")


# ---------------------------------------------------------------------------
# Shared lookup
# ---------------------------------------------------------------------------


class MappingIndex:
    """Read-only view of the mapping table and the training catalog.

    ``training_catalog`` may be a sequence of trainings or a dict keyed by
    ``training_id``. Rows can be ORM objects or plain dicts.
    """

    def __init__(self, training_mappings: Iterable[Any], training_catalog: Iterable[Any] | Mapping[str, Any]):
        self._mappings = list(training_mappings)
        if isinstance(training_catalog, Mapping):
            self._catalog = dict(training_catalog)
        else:
            self._catalog = {get_field(t, "training_id"): t for t in training_catalog}

    def mappings_for(self, codes: Iterable[str]) -> list[Any]:
        """Mappings for the given indicator codes in table order."""
        wanted = set(codes)
        return [m for m in self._mappings if get_field(m, "indicator_code") in wanted]

    def training(self, training_id: str) -> Any | None:
        """The catalog entry, or None when it is missing or inactive."""
        training = self._catalog.get(training_id)
        if training is None or get_field(training, "active", True) is False:
            return None
        return training


def _priority(mapping: Any) -> int:
    value = get_field(mapping, "priority")
    return MAX_PRIORITY_POINTS if value is None else int(value)


# ---------------------------------------------------------------------------
# Strategy A: assessment-driven prescriptions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Recommendation:
    training_id: str
    title: str
    training_type: str | None
    indicator_code: str
    indicator_name: str
    pillar: str
    priority: int
    status: str
    reason: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "training_id": self.training_id,
            "title": self.title,
            "type": self.training_type,
            "indicator_code": self.indicator_code,
            "indicator_name": self.indicator_name,
            "pillar": self.pillar,
            "priority": self.priority,
            "status": self.status,
            "reason": self.reason,
            "score": self.score,
        }


def status_label(score: float) -> str | None:
    """CRÍTICO below 0.34, ATENÇÃO below 0.67, None otherwise."""
    if score < THRESHOLDS.match_critical_below:
        return STATUS_CRITICAL
    if score < THRESHOLDS.match_attention_below:
        return STATUS_ATTENTION
    return None


def _reason(mapping: Any, indicator_name: str, status: str) -> str:
    values = {"indicator": indicator_name, "status": status, "pillar": get_field(mapping, "pillar") or ""}
    template = get_field(mapping, "reason_template") or DEFAULT_REASON_TEMPLATE
    try:
        return render_reason(template, **values)
    except TemplateError as exc:
        log.warning(
            "Mapping %s -> %s: %s; using default reason",
            get_field(mapping, "indicator_code"), get_field(mapping, "training_id"), exc,
        )
        return render_reason(DEFAULT_REASON_TEMPLATE, **values)


def match_recommendations(
    indicator_scores: Iterable[Any],
    training_mappings: Iterable[Any],
    training_catalog: Iterable[Any] | Mapping[str, Any],
    *,
    index: MappingIndex | None = None,
    mapping_filter: Callable[[Any], bool] | None = None,
) -> list[Recommendation]:
    """Rank trainings for the critical and attention indicators of one assessment.

    Args:
        indicator_scores: rows exposing ``code``, ``name`` and ``score``
            (e.g. :class:`~sistur.scoring.ScoredIndicator`). ``None`` scores
            and scores of 0.67 or more contribute nothing.
        training_mappings: mapping rows (``indicator_code``, ``training_id``,
            ``pillar``, ``priority``, ``reason_template``).
        training_catalog: trainings; missing or inactive ones are skipped.
        index: prebuilt :class:`MappingIndex` (the other two tables are then
            ignored).
        mapping_filter: optional predicate over mappings. Rejected mappings
            are dropped before deduplication, so a training blocked through
            one pillar can still be picked up through another.

    Returns:
        One recommendation per training id, ascending by priority. Empty
        when nothing qualifies.
    """
    index = index or MappingIndex(training_mappings, training_catalog)

    contributing: dict[str, tuple[str, float, str]] = {}
    for item in indicator_scores:
        score = get_field(item, "score")
        if score is None:
            continue
        label = status_label(score)
        if label is None:
            continue
        code = get_field(item, "code")
        contributing.setdefault(code, (get_field(item, "name") or code, score, label))
    if not contributing:
        return []

    candidates = index.mappings_for(contributing)
    if mapping_filter is not None:
        candidates = [m for m in candidates if mapping_filter(m)]
    candidates.sort(key=_priority)

    seen: set[str] = set()
    results: list[Recommendation] = []
    for mapping in candidates:
        training_id = get_field(mapping, "training_id")
        if training_id in seen:
            continue
        training = index.training(training_id)
        if training is None:
            continue
        name, score, label = contributing[get_field(mapping, "indicator_code")]
        seen.add(training_id)
        results.append(Recommendation(
            training_id=training_id,
            title=get_field(training, "title") or training_id,
            training_type=get_field(training, "type"),
            indicator_code=get_field(mapping, "indicator_code"),
            indicator_name=name,
            pillar=get_field(mapping, "pillar") or "",
            priority=_priority(mapping),
            status=label,
            reason=_reason(mapping, name, label),
            score=score,
        ))

    results.sort(key=lambda r: r.priority)
    return results


# ---------------------------------------------------------------------------
# Strategy B: exploratory learning paths
# ---------------------------------------------------------------------------


@dataclass
class LearningCandidate:
    entity_type: str
    entity_id: str
    title: str
    score: float = 0.0
    reasons: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "title": self.title,
            "score": round(self.score, 2),
            "reasons": list(self.reasons),
        }


@dataclass
class LearningPaths:
    courses: list[LearningCandidate] = field(default_factory=list)
    lives: list[LearningCandidate] = field(default_factory=list)
    tracks: list[LearningCandidate] = field(default_factory=list)

    def all(self) -> list[LearningCandidate]:
        return [*self.courses, *self.lives, *self.tracks]

    def to_dict(self) -> dict[str, Any]:
        return {
            "courses": [c.to_dict() for c in self.courses],
            "lives": [c.to_dict() for c in self.lives],
            "tracks": [c.to_dict() for c in self.tracks],
        }


def priority_points(priority: int | None) -> int:
    """Points one mapping adds to its training: (10 - min(priority, 10)) * 10."""
    value = MAX_PRIORITY_POINTS if priority is None else int(priority)
    return (MAX_PRIORITY_POINTS - min(value, MAX_PRIORITY_POINTS)) * 10


def _suggest_tracks(tracks: Iterable[Any], top_course_ids: Sequence[str]) -> list[LearningCandidate]:
    top = set(top_course_ids)
    suggested: list[LearningCandidate] = []
    for track in tracks:
        training_ids = list(get_field(track, "training_ids") or [])
        if not training_ids:
            continue
        coverage = sum(1 for t in training_ids if t in top) / len(training_ids)
        if coverage <= TRACK_MIN_COVERAGE:
            continue
        score = coverage * 100
        suggested.append(LearningCandidate(
            entity_type=TRACK,
            entity_id=str(get_field(track, "id")),
            title=get_field(track, "name") or "",
            score=score,
            reasons=[{
                "indicator_code": None,
                "indicator_name": f"{round(score)}% dos cursos recomendados",
                "contribution_score": score,
            }],
        ))
    suggested.sort(key=lambda c: c.score, reverse=True)
    return suggested[:TOP_TRACKS]


def score_learning_paths(
    indicator_codes: Iterable[str],
    training_mappings: Iterable[Any],
    training_catalog: Iterable[Any] | Mapping[str, Any],
    indicator_names: Mapping[str, str] | None = None,
    tracks: Iterable[Any] = (),
    *,
    index: MappingIndex | None = None,
) -> LearningPaths:
    """Score trainings for a free selection of indicators.

    Every mapping of a selected indicator adds :func:`priority_points` to its
    training and is kept as a reason. Scores are scaled to 0-100 against the
    best candidate overall. Courses (top 10) and lives (top 15) are ranked
    independently; ties keep mapping-table order. Tracks covering more than
    30% of the top courses are suggested (top 3).
    """
    index = index or MappingIndex(training_mappings, training_catalog)
    names = indicator_names or {}

    candidates: dict[str, LearningCandidate] = {}
    for mapping in index.mappings_for(indicator_codes):
        training_id = get_field(mapping, "training_id")
        training = index.training(training_id)
        if training is None:
            continue
        kind = get_field(training, "type")
        if kind not in (COURSE, LIVE):
            continue
        code = get_field(mapping, "indicator_code")
        points = priority_points(get_field(mapping, "priority"))
        candidate = candidates.get(training_id)
        if candidate is None:
            candidate = candidates[training_id] = LearningCandidate(
                entity_type=kind,
                entity_id=training_id,
                title=get_field(training, "title") or training_id,
            )
        candidate.score += points
        candidate.reasons.append({
            "indicator_code": code,
            "indicator_name": names.get(code, code),
            "contribution_score": points,
        })

    best = max((c.score for c in candidates.values()), default=0)
    for candidate in candidates.values():
        candidate.score = candidate.score / best * 100 if best > 0 else 0.0

    ranked = sorted(candidates.values(), key=lambda c: c.score, reverse=True)
    courses = [c for c in ranked if c.entity_type == COURSE][:TOP_COURSES]
    lives = [c for c in ranked if c.entity_type == LIVE][:TOP_LIVES]
    return LearningPaths(
        courses=courses,
        lives=lives,
        tracks=_suggest_tracks(tracks, [c.entity_id for c in courses]),
    )
