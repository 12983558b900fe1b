"""Quick-start experiment templates."""

from __future__ import annotations

import copy
from dataclasses import dataclass

from nof1.domains.experiments.domain_logic.models import (
    Intervention,
    InterventionCategory,
    MetricKind,
    MetricSource,
    TrackedMetric,
    new_id,
)


@dataclass(frozen=True)
class ExperimentTemplate:
    """A ready-made intervention plus the metrics worth tracking for it."""

    name: str
    intervention: Intervention
    metrics: tuple[TrackedMetric, ...]

    @property
    def default_hypothesis(self) -> str:
        return f"Testing effect of {self.intervention.name}"

    def instantiate(self) -> tuple[Intervention, list[TrackedMetric]]:
        """Fresh copies with new metric ids, safe to attach to an experiment."""
        intervention = copy.deepcopy(self.intervention)
        metrics = []
        for metric in self.metrics:
            fresh = copy.deepcopy(metric)
            fresh.id = new_id()
            metrics.append(fresh)
        return intervention, metrics


TEMPLATES: tuple[ExperimentTemplate, ...] = (
    ExperimentTemplate(
        name="Creatine & HRV",
        intervention=Intervention(
            name="Creatine Monohydrate",
            category=InterventionCategory.SUPPLEMENT,
            dosage="5g daily",
            timing="Morning",
            expected_effect="Improved HRV and recovery",
        ),
        metrics=(
            TrackedMetric(name="HRV", kind=MetricKind.HRV, unit="ms"),
            TrackedMetric(
                name="Energy", kind=MetricKind.ENERGY, unit="/10", source=MetricSource.SURVEY
            ),
        ),
    ),
    ExperimentTemplate(
        name="Cold Exposure & Sleep",
        intervention=Intervention(
            name="Cold Shower",
            category=InterventionCategory.COLD,
            dosage="2-3 min cold finish",
            timing="Morning",
            expected_effect="Improved sleep quality",
        ),
        metrics=(
            TrackedMetric(name="Sleep Score", kind=MetricKind.SLEEP_SCORE, unit="/100"),
            TrackedMetric(
                name="Resting HR",
                kind=MetricKind.RESTING_HR,
                unit="bpm",
                higher_is_better=False,
            ),
        ),
    ),
    ExperimentTemplate(
        name="Intermittent Fasting & Glucose",
        intervention=Intervention(
            name="16:8 Intermittent Fasting",
            category=InterventionCategory.FASTING,
            dosage="16hr fast / 8hr eating window",
            timing="Eating 12pm-8pm",
            expected_effect="Improved glucose variability",
        ),
        metrics=(
            TrackedMetric(
                name="Fasting Glucose",
                kind=MetricKind.GLUCOSE,
                unit="mg/dL",
                source=MetricSource.CGM,
                higher_is_better=False,
            ),
            TrackedMetric(
                name="Energy", kind=MetricKind.ENERGY, unit="/10", source=MetricSource.SURVEY
            ),
        ),
    ),
)


def get_template(name: str) -> ExperimentTemplate | None:
    for template in TEMPLATES:
        if template.name == name:
            return template
    return None
