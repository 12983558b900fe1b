"""Baseline vs intervention analysis for completed experiments.

For every tracked metric the engine pools observations from all baseline
phases and all intervention phases, computes descriptive statistics and a
Cohen's-d-like effect size, and applies a significance heuristic (not a
t-test): ``|d| > 0.5`` with at least five points on each side. Confidence
values are calibrated against this rule.

``analyze`` is pure and total: it never raises and always returns a
complete result, possibly neutral or inconclusive.
"""

from __future__ import annotations

import logging
import math
import statistics
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from nof1.domains.experiments.domain_logic.designs import ExperimentDesign, PhaseType
from nof1.domains.experiments.domain_logic.models import (
    Conclusion,
    EffectTrend,
    Experiment,
    ExperimentResults,
    MetricAnalysis,
    TrackedMetric,
    utc_now,
)

logger = logging.getLogger(__name__)

# Significance heuristic
EFFECT_SIZE_THRESHOLD = 0.5
MIN_POINTS_PER_GROUP = 5

# Confidence calibration
BENEFICIAL_BASE_CONFIDENCE = 0.70
HARMFUL_BASE_CONFIDENCE = 0.60
CONFIDENCE_STEP = 0.05
MAX_CONFIDENCE = 0.95
NEUTRAL_CONFIDENCE = 0.50
INCONCLUSIVE_CONFIDENCE = 0.30

# Confounder heuristics
MIN_RELIABLE_PHASE_DAYS = 7
MIN_POINTS_PER_METRIC_PHASE = 5

SHORT_PHASE_WARNING = "Short phase duration may limit data reliability"
LOW_DATA_WARNING = "Limited data points - results may not be representative"
CARRYOVER_WARNING = "Missing washout period may cause carryover effects"


@dataclass(frozen=True)
class ValueSummary:
    """Mean, sample standard deviation and size of one group of values."""

    mean: float
    std_dev: float
    count: int


def summarize_values(values: Sequence[float]) -> ValueSummary:
    """Describe a group of observations.

    The mean of an empty group is 0; the standard deviation uses the
    ``n - 1`` divisor and is 0 for fewer than two values. Values near the
    float limit are summarized on a rescaled copy, and a standard deviation
    that still exceeds the float range is capped at ``sys.float_info.max``.
    """
    count = len(values)
    if count == 0:
        return ValueSummary(mean=0.0, std_dev=0.0, count=0)
    try:
        mean = statistics.fmean(values)
        std_dev = statistics.stdev(values) if count > 1 else 0.0
    except OverflowError:
        mean, std_dev = _rescaled_summary(values)
    if not math.isfinite(std_dev):
        std_dev = sys.float_info.max
    return ValueSummary(mean=mean, std_dev=std_dev, count=count)


def _rescaled_summary(values: Sequence[float]) -> tuple[float, float]:
    scale = max(abs(v) for v in values)
    scaled = [v / scale for v in values]
    mean = statistics.fmean(scaled) * scale
    std_dev = statistics.stdev(scaled) * scale if len(scaled) > 1 else 0.0
    return mean, std_dev


def pooled_std_dev(first: float, second: float) -> float:
    """Root mean square of two standard deviations, without overflow."""
    largest = max(first, second)
    if largest == 0:
        return 0.0
    return largest * math.sqrt(((first / largest) ** 2 + (second / largest) ** 2) / 2)


def _finite_or_zero(value: float) -> float:
    return value if math.isfinite(value) else 0.0


def analyze_metric(
    metric: TrackedMetric,
    baseline_values: Sequence[float],
    intervention_values: Sequence[float],
) -> MetricAnalysis:
    """Compare one metric's baseline and intervention observations.

    An effect size or percent change that leaves the float range (a huge
    difference over a tiny spread or baseline) is reported as 0, so the
    metric is not significant rather than infinitely so.
    """
    baseline = summarize_values(baseline_values)
    intervention = summarize_values(intervention_values)
    difference = intervention.mean - baseline.mean

    pooled = pooled_std_dev(baseline.std_dev, intervention.std_dev)
    effect_size = _finite_or_zero(difference / pooled) if pooled > 0 else 0.0
    percent_change = (
        _finite_or_zero(difference / baseline.mean * 100) if baseline.mean != 0 else 0.0
    )

    enough_data = (
        baseline.count >= MIN_POINTS_PER_GROUP
        and intervention.count >= MIN_POINTS_PER_GROUP
    )
    is_significant = abs(effect_size) > EFFECT_SIZE_THRESHOLD and enough_data

    return MetricAnalysis(
        metric_id=metric.id,
        metric_name=metric.name,
        baseline_mean=baseline.mean,
        baseline_std_dev=baseline.std_dev,
        baseline_count=baseline.count,
        intervention_mean=intervention.mean,
        intervention_std_dev=intervention.std_dev,
        intervention_count=intervention.count,
        effect_size=effect_size,
        percent_change=percent_change,
        is_significant=is_significant,
        trend=_classify_trend(effect_size, is_significant, metric.higher_is_better),
    )


def _classify_trend(
    effect_size: float, is_significant: bool, higher_is_better: bool
) -> EffectTrend:
    if not is_significant:
        return EffectTrend.INCONCLUSIVE
    if effect_size == 0:
        return EffectTrend.NO_CHANGE
    went_up = effect_size > 0
    return EffectTrend.IMPROVED if went_up == higher_is_better else EffectTrend.WORSENED


def _conclude(analyses: Sequence[MetricAnalysis]) -> tuple[Conclusion, float]:
    improvements = sum(
        1 for a in analyses if a.is_significant and a.trend == EffectTrend.IMPROVED
    )
    worsenings = sum(
        1 for a in analyses if a.is_significant and a.trend == EffectTrend.WORSENED
    )

    if improvements > worsenings and improvements > 0:
        confidence = BENEFICIAL_BASE_CONFIDENCE + CONFIDENCE_STEP * improvements
        return Conclusion.BENEFICIAL, min(MAX_CONFIDENCE, confidence)
    if worsenings > improvements and worsenings > 0:
        confidence = HARMFUL_BASE_CONFIDENCE + CONFIDENCE_STEP * worsenings
        return Conclusion.HARMFUL, min(MAX_CONFIDENCE, confidence)
    if all(not a.is_significant for a in analyses):
        return Conclusion.NEUTRAL, NEUTRAL_CONFIDENCE
    return Conclusion.INCONCLUSIVE, INCONCLUSIVE_CONFIDENCE


def detect_confounders(experiment: Experiment) -> list[str]:
    """Design and data-sufficiency weaknesses that undermine causal reading."""
    confounders: list[str] = []

    if any(p.duration_days < MIN_RELIABLE_PHASE_DAYS for p in experiment.phases):
        confounders.append(SHORT_PHASE_WARNING)

    expected = len(experiment.metrics) * len(experiment.phases) * MIN_POINTS_PER_METRIC_PHASE
    if experiment.total_data_points() < expected:
        confounders.append(LOW_DATA_WARNING)

    if experiment.design == ExperimentDesign.ABAB and not experiment.phases_of_type(
        PhaseType.WASHOUT
    ):
        confounders.append(CARRYOVER_WARNING)

    return confounders


def analyze(experiment: Experiment, *, now: datetime | None = None) -> ExperimentResults:
    """Analyze an experiment's full phase and data-point set.

    Washout and control observations stay in the record but are excluded
    from the comparison.

    Args:
        experiment: The experiment to analyze. It is not modified.
        now: Timestamp for ``generated_at``; defaults to the current time.

    Returns:
        A new, immutable ExperimentResults.
    """
    baseline_phases = experiment.phases_of_type(PhaseType.BASELINE)
    intervention_phases = experiment.phases_of_type(PhaseType.INTERVENTION)

    analyses = []
    for metric in experiment.metrics:
        baseline_values = [v for p in baseline_phases for v in p.values_for(metric.id)]
        intervention_values = [
            v for p in intervention_phases for v in p.values_for(metric.id)
        ]
        analyses.append(analyze_metric(metric, baseline_values, intervention_values))

    conclusion, confidence = _conclude(analyses)
    confounders = detect_confounders(experiment)

    logger.info(
        "Analyzed experiment %s: %s (confidence=%.2f, %d metrics, %d confounders)",
        experiment.id,
        conclusion.value,
        confidence,
        len(analyses),
        len(confounders),
    )

    return ExperimentResults(
        experiment_id=experiment.id,
        metric_analyses=tuple(analyses),
        overall_conclusion=conclusion,
        confidence_level=confidence,
        confounders=tuple(confounders),
        generated_at=now or utc_now(),
    )
