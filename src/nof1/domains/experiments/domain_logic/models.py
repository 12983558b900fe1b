"""Entity graph for N-of-1 experiments.

An Experiment owns one Intervention, an ordered list of TrackedMetrics and an
ordered list of ExperimentPhases generated from its design. Each phase owns
the DataPoints logged while it was current. Results are produced by the
analysis engine and never mutated afterwards.

All timestamps are timezone-aware UTC datetimes; identifiers are UUID4
strings.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from nof1.domains.experiments.domain_logic.designs import (
    ExperimentDesign,
    ExperimentStatus,
    PhaseType,
)


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Tagged variants
# ---------------------------------------------------------------------------

class InterventionCategory(str, Enum):
    SUPPLEMENT = "supplement"
    DIET = "diet"
    EXERCISE = "exercise"
    SLEEP = "sleep"
    STRESS = "stress"
    COLD = "cold"        # cold exposure
    HEAT = "heat"        # sauna
    FASTING = "fasting"
    OTHER = "other"


class MetricKind(str, Enum):
    HRV = "hrv"
    RESTING_HR = "resting_hr"
    SLEEP_SCORE = "sleep_score"
    SLEEP_DURATION = "sleep_duration"
    GLUCOSE = "glucose"
    WEIGHT = "weight"
    ENERGY = "energy"    # subjective 1-10
    MOOD = "mood"        # subjective 1-10
    FOCUS = "focus"      # subjective 1-10
    CUSTOM = "custom"


class MetricSource(str, Enum):
    HEALTH_KIT = "health_kit"
    MANUAL = "manual"
    CGM = "cgm"
    SURVEY = "survey"


class EffectTrend(str, Enum):
    IMPROVED = "improved"
    WORSENED = "worsened"
    NO_CHANGE = "no_change"
    INCONCLUSIVE = "inconclusive"


class Conclusion(str, Enum):
    BENEFICIAL = "beneficial"
    HARMFUL = "harmful"
    NEUTRAL = "neutral"
    INCONCLUSIVE = "inconclusive"

    @property
    def label(self) -> str:
        return _CONCLUSION_LABELS[self]


_CONCLUSION_LABELS = {
    Conclusion.BENEFICIAL: "Intervention appears beneficial",
    Conclusion.HARMFUL: "Intervention may be harmful",
    Conclusion.NEUTRAL: "No significant effect detected",
    Conclusion.INCONCLUSIVE: "Results inconclusive",
}


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@dataclass
class Intervention:
    """What the user changes during intervention phases."""

    name: str
    category: InterventionCategory
    description: str = ""
    dosage: str | None = None          # e.g. "500mg 2x daily"
    timing: str | None = None          # e.g. "Morning with food"
    expected_effect: str = ""


@dataclass
class TrackedMetric:
    """A health metric observed throughout the experiment.

    ``higher_is_better`` decides whether an increase counts as an
    improvement. Unit and kind are advisory; values are never range-checked.
    """

    name: str
    kind: MetricKind
    unit: str
    source: MetricSource = MetricSource.HEALTH_KIT
    higher_is_better: bool = True
    id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class DataPoint:
    """A single observation. Immutable; corrections are logged as new points."""

    metric_id: str
    value: float
    timestamp: datetime = field(default_factory=utc_now)
    note: str | None = None
    id: str = field(default_factory=new_id)


@dataclass
class ExperimentPhase:
    """A dated segment of the experiment timeline with its own observations."""

    type: PhaseType
    duration_days: int = 7
    start_date: datetime | None = None
    end_date: datetime | None = None
    data_points: list[DataPoint] = field(default_factory=list)
    is_complete: bool = False
    id: str = field(default_factory=new_id)

    @property
    def is_current(self) -> bool:
        return self.start_date is not None and not self.is_complete

    def values_for(self, metric_id: str) -> list[float]:
        """Values logged against one metric, in logging order."""
        return [p.value for p in self.data_points if p.metric_id == metric_id]

    def days_elapsed(self, now: datetime | None = None) -> int:
        """Whole days since the phase started (0 if it has not started)."""
        if self.start_date is None:
            return 0
        end = self.end_date or now or utc_now()
        return max(0, (end - self.start_date).days)

    def days_remaining(self, now: datetime | None = None) -> int:
        if self.is_complete:
            return 0
        return max(0, self.duration_days - self.days_elapsed(now))

    def is_due(self, now: datetime | None = None) -> bool:
        """Whether the planned duration has elapsed for the running phase.

        Advisory only: phases advance exclusively through an explicit call.
        """
        return self.is_current and self.days_elapsed(now) >= self.duration_days


@dataclass
class Experiment:
    """A single-subject trial. ``phases`` is fixed in length and order once created."""

    name: str
    hypothesis: str
    intervention: Intervention
    metrics: list[TrackedMetric]
    design: ExperimentDesign = ExperimentDesign.ABAB
    status: ExperimentStatus = ExperimentStatus.DRAFT
    phases: list[ExperimentPhase] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    id: str = field(default_factory=new_id)

    @property
    def is_in_progress(self) -> bool:
        return self.started_at is not None and not self.status.is_terminal

    def current_phase_index(self) -> int | None:
        """Index of the first incomplete phase, if it has been started."""
        for index, phase in enumerate(self.phases):
            if not phase.is_complete:
                return index if phase.start_date is not None else None
        return None

    def current_phase(self) -> ExperimentPhase | None:
        index = self.current_phase_index()
        return self.phases[index] if index is not None else None

    def metric(self, metric_id: str) -> TrackedMetric | None:
        for metric in self.metrics:
            if metric.id == metric_id:
                return metric
        return None

    def phases_of_type(self, phase_type: PhaseType) -> list[ExperimentPhase]:
        return [p for p in self.phases if p.type == phase_type]

    def total_data_points(self) -> int:
        return sum(len(p.data_points) for p in self.phases)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MetricAnalysis:
    """Baseline vs intervention comparison for one metric."""

    metric_id: str
    metric_name: str
    baseline_mean: float
    baseline_std_dev: float
    baseline_count: int
    intervention_mean: float
    intervention_std_dev: float
    intervention_count: int
    effect_size: float          # Cohen's d-like standardized difference
    percent_change: float
    is_significant: bool
    trend: EffectTrend
    p_value: float | None = None  # no hypothesis test is performed


@dataclass(frozen=True)
class ExperimentResults:
    """Outcome of analyzing one experiment. Replaces any prior result for it."""

    experiment_id: str
    metric_analyses: tuple[MetricAnalysis, ...]
    overall_conclusion: Conclusion
    confidence_level: float     # 0-1
    confounders: tuple[str, ...]
    generated_at: datetime = field(default_factory=utc_now)
