"""Tests for the analysis engine: effect sizes, trends, conclusions, confounders."""

from __future__ import annotations

import dataclasses
import json
import math

import pytest

from nof1.domains.experiments.domain_logic.analysis import (
    CARRYOVER_WARNING,
    LOW_DATA_WARNING,
    SHORT_PHASE_WARNING,
    analyze,
    analyze_metric,
    detect_confounders,
    pooled_std_dev,
    summarize_values,
)
from nof1.domains.experiments.domain_logic.designs import ExperimentDesign, PhaseType
from nof1.domains.experiments.domain_logic.models import (
    Conclusion,
    DataPoint,
    EffectTrend,
    Experiment,
    ExperimentPhase,
    Intervention,
    InterventionCategory,
    MetricKind,
    TrackedMetric,
)
from nof1.domains.experiments.domain_logic.serialization import results_to_dict

BASELINE = [40, 42, 41, 39, 43]
IMPROVED = [55, 57, 56, 54, 58]
UNCHANGED = [41, 40, 42, 39, 43]


def _metric(name: str = "HRV", higher_is_better: bool = True) -> TrackedMetric:
    return TrackedMetric(
        name=name, kind=MetricKind.HRV, unit="ms", higher_is_better=higher_is_better
    )


def _run_ab(controller, metric_values, duration=7, design=ExperimentDesign.AB):
    """Run an experiment, logging one list of values per phase for each metric.

    ``metric_values`` is a list of (TrackedMetric, per-phase value lists) pairs.
    """
    metrics = [metric for metric, _ in metric_values]
    exp = controller.create(
        "Trial",
        "It helps",
        Intervention(name="Creatine", category=InterventionCategory.SUPPLEMENT),
        metrics,
        design,
        duration,
    )
    controller.start(exp.id)
    for phase_index in range(len(exp.phases)):
        for metric, per_phase in metric_values:
            if phase_index < len(per_phase):
                for value in per_phase[phase_index]:
                    controller.record_data_point(exp.id, metric.id, value)
        controller.advance_phase(exp.id)
    return exp


class TestSummarizeValues:
    def test_empty_group(self):
        summary = summarize_values([])
        assert summary.mean == 0
        assert summary.std_dev == 0
        assert summary.count == 0

    def test_single_value_has_zero_std_dev(self):
        summary = summarize_values([7.0])
        assert summary.mean == 7.0
        assert summary.std_dev == 0

    def test_sample_std_dev(self):
        summary = summarize_values(BASELINE)
        assert summary.mean == pytest.approx(41.0)
        assert summary.std_dev == pytest.approx(math.sqrt(2.5))

    def test_values_near_float_limit_do_not_overflow(self):
        summary = summarize_values([1e308] * 5)
        assert summary.mean == pytest.approx(1e308)
        assert summary.std_dev == 0

    def test_huge_spread_stays_finite(self):
        summary = summarize_values([-1.7e308, 1.7e308])
        assert summary.mean == pytest.approx(0.0, abs=1e293)
        assert math.isfinite(summary.std_dev)


class TestPooledStdDev:
    def test_equal_spreads(self):
        assert pooled_std_dev(2.0, 2.0) == 2.0

    def test_root_mean_square(self):
        assert pooled_std_dev(3.0, 4.0) == pytest.approx(math.sqrt(12.5))

    def test_zero_spreads(self):
        assert pooled_std_dev(0.0, 0.0) == 0

    def test_large_spreads_do_not_overflow(self):
        assert pooled_std_dev(1.5e200, 1.5e200) == pytest.approx(1.5e200)


class TestAnalyzeMetric:
    def test_improvement_higher_is_better(self):
        analysis = analyze_metric(_metric(), BASELINE, IMPROVED)
        assert analysis.baseline_mean == pytest.approx(41.0)
        assert analysis.intervention_mean == pytest.approx(56.0)
        assert analysis.effect_size == pytest.approx(15 / math.sqrt(2.5))
        assert analysis.percent_change == pytest.approx(15 / 41 * 100)
        assert analysis.is_significant
        assert analysis.trend == EffectTrend.IMPROVED
        assert analysis.p_value is None

    def test_same_change_lower_is_better_worsens(self):
        analysis = analyze_metric(_metric(higher_is_better=False), BASELINE, IMPROVED)
        assert analysis.is_significant
        assert analysis.trend == EffectTrend.WORSENED

    def test_decrease_lower_is_better_improves(self):
        analysis = analyze_metric(_metric(higher_is_better=False), IMPROVED, BASELINE)
        assert analysis.effect_size < 0
        assert analysis.trend == EffectTrend.IMPROVED

    def test_fewer_than_five_points_is_inconclusive(self):
        analysis = analyze_metric(_metric(), BASELINE, IMPROVED[:4])
        assert analysis.effect_size > 0.5
        assert not analysis.is_significant
        assert analysis.trend == EffectTrend.INCONCLUSIVE

    def test_effect_below_threshold_is_inconclusive(self):
        baseline = [9, 11, 9, 11, 9, 11]
        sd = summarize_values(baseline).std_dev
        shifted = [v + 0.4 * sd for v in baseline]
        analysis = analyze_metric(_metric(), baseline, shifted)
        assert analysis.effect_size == pytest.approx(0.4)
        assert analysis.trend == EffectTrend.INCONCLUSIVE

    def test_zero_pooled_std_dev_gives_zero_effect(self):
        analysis = analyze_metric(_metric(), [40] * 5, [50] * 5)
        assert analysis.effect_size == 0
        assert analysis.percent_change == pytest.approx(25.0)
        assert not analysis.is_significant
        assert analysis.trend == EffectTrend.INCONCLUSIVE

    def test_zero_baseline_mean_gives_zero_percent_change(self):
        analysis = analyze_metric(_metric(), [], IMPROVED)
        assert analysis.baseline_mean == 0
        assert analysis.percent_change == 0

    def test_counts_recorded(self):
        analysis = analyze_metric(_metric(), BASELINE, IMPROVED[:3])
        assert analysis.baseline_count == 5
        assert analysis.intervention_count == 3

    def test_effect_exactly_at_threshold_is_not_significant(self):
        # both groups have a sample standard deviation of exactly 1
        analysis = analyze_metric(_metric(), [0, 0, 1, 2, 2], [0.5, 0.5, 1.5, 2.5, 2.5])
        assert analysis.effect_size == 0.5
        assert not analysis.is_significant
        assert analysis.trend == EffectTrend.INCONCLUSIVE

    def test_negative_baseline_uses_plain_percent_change(self):
        analysis = analyze_metric(_metric(), [-10] * 5, [-5] * 5)
        assert analysis.baseline_mean == -10
        assert analysis.percent_change == pytest.approx(-50.0)

    def test_tiny_baseline_mean_gives_zero_percent_change(self):
        analysis = analyze_metric(_metric(), [1e-310] * 5, [1e10] * 5)
        assert analysis.percent_change == 0
        assert analysis.trend == EffectTrend.INCONCLUSIVE

    @pytest.mark.parametrize(
        ("baseline", "intervention"),
        [
            ([1e308] * 5, [1e308] * 5),
            ([-1.7e308] * 5, [1.7e308] * 5),
            ([-1.7e308, 1.7e308] * 3, [1.0] * 6),
            ([1e200, 2e200, 3e200, 4e200, 5e200], [6e200] * 5),
        ],
    )
    def test_extreme_values_give_finite_results(self, baseline, intervention):
        analysis = analyze_metric(_metric(), baseline, intervention)
        for value in dataclasses.asdict(analysis).values():
            if isinstance(value, float):
                assert math.isfinite(value)


class TestScenarios:
    def test_hrv_improvement_is_beneficial(self, controller):
        hrv = _metric()
        exp = _run_ab(controller, [(hrv, [BASELINE, IMPROVED])])
        results = analyze(exp)

        (analysis,) = results.metric_analyses
        assert analysis.baseline_mean == pytest.approx(41.0)
        assert analysis.intervention_mean == pytest.approx(56.0)
        assert analysis.effect_size > 0.5
        assert analysis.is_significant
        assert analysis.trend == EffectTrend.IMPROVED
        assert results.overall_conclusion == Conclusion.BENEFICIAL
        assert results.confidence_level == pytest.approx(0.75)
        assert results.confounders == ()

    def test_no_real_change_is_neutral(self, controller):
        hrv = _metric()
        exp = _run_ab(controller, [(hrv, [BASELINE, UNCHANGED])])
        results = analyze(exp)

        (analysis,) = results.metric_analyses
        assert not analysis.is_significant
        assert analysis.trend == EffectTrend.INCONCLUSIVE
        assert results.overall_conclusion == Conclusion.NEUTRAL
        assert results.confidence_level == pytest.approx(0.5)

    def test_worsening_is_harmful(self, controller):
        rhr = _metric("Resting HR", higher_is_better=False)
        exp = _run_ab(controller, [(rhr, [BASELINE, IMPROVED])])
        results = analyze(exp)
        assert results.overall_conclusion == Conclusion.HARMFUL
        assert results.confidence_level == pytest.approx(0.65)

    def test_mixed_results_are_inconclusive(self, controller):
        hrv = _metric("HRV")
        rhr = _metric("Resting HR", higher_is_better=False)
        exp = _run_ab(controller, [(hrv, [BASELINE, IMPROVED]), (rhr, [BASELINE, IMPROVED])])
        results = analyze(exp)
        assert results.overall_conclusion == Conclusion.INCONCLUSIVE
        assert results.confidence_level == pytest.approx(0.3)

    def test_confidence_grows_with_improvements(self, controller):
        metrics = [(_metric(f"M{i}"), [BASELINE, IMPROVED]) for i in range(2)]
        results = analyze(_run_ab(controller, metrics))
        assert results.confidence_level == pytest.approx(0.80)

    def test_confidence_is_capped(self, controller):
        metrics = [(_metric(f"M{i}"), [BASELINE, IMPROVED]) for i in range(6)]
        results = analyze(_run_ab(controller, metrics))
        assert results.overall_conclusion == Conclusion.BENEFICIAL
        assert results.confidence_level == pytest.approx(0.95)

    def test_no_data_is_neutral(self, controller):
        exp = _run_ab(controller, [(_metric(), [])])
        results = analyze(exp)
        assert results.overall_conclusion == Conclusion.NEUTRAL
        assert results.confidence_level == pytest.approx(0.5)
        assert LOW_DATA_WARNING in results.confounders

    def test_no_metrics_is_neutral(self, controller):
        exp = _run_ab(controller, [])
        results = analyze(exp)
        assert results.metric_analyses == ()
        assert results.overall_conclusion == Conclusion.NEUTRAL

    def test_washout_and_control_data_excluded(self, controller):
        hrv = _metric()
        # Crossover: baseline, intervention, washout, control, washout, intervention
        exp = _run_ab(
            controller,
            [(hrv, [BASELINE, IMPROVED, [100] * 5, [0] * 5, [100] * 5, IMPROVED])],
            design=ExperimentDesign.CROSSOVER,
        )
        (analysis,) = analyze(exp).metric_analyses
        assert analysis.baseline_mean == pytest.approx(41.0)
        assert analysis.intervention_mean == pytest.approx(56.0)
        assert analysis.intervention_count == 10
        # excluded points stay in the record
        assert exp.total_data_points() == 30

    def test_repeated_baselines_are_pooled(self, controller):
        hrv = _metric()
        exp = _run_ab(
            controller,
            [(hrv, [BASELINE, IMPROVED, [45, 45, 45, 45, 45]])],
            design=ExperimentDesign.ABA,
        )
        (analysis,) = analyze(exp).metric_analyses
        assert analysis.baseline_count == 10
        assert analysis.baseline_mean == pytest.approx(43.0)

    def test_analyze_does_not_mutate(self, controller):
        hrv = _metric()
        exp = _run_ab(controller, [(hrv, [BASELINE, IMPROVED])])
        status_before = exp.status
        analyze(exp)
        assert exp.status == status_before

    def test_extreme_values_complete_and_serialize(self, controller):
        hrv = _metric()
        exp = _run_ab(
            controller, [(hrv, [[1e200, 2e200, 3e200, 4e200, 5e200], [6e200] * 5])]
        )
        results = controller.complete(exp.id)

        (analysis,) = results.metric_analyses
        assert analysis.baseline_mean == pytest.approx(3e200)
        assert analysis.trend == EffectTrend.IMPROVED
        assert results.overall_conclusion == Conclusion.BENEFICIAL
        json.dumps(results_to_dict(results), allow_nan=False)

    def test_values_at_float_limit_are_neutral(self, controller):
        hrv = _metric()
        exp = _run_ab(controller, [(hrv, [[1e308] * 5, [1e308] * 5])])
        results = controller.complete(exp.id)
        assert results.overall_conclusion == Conclusion.NEUTRAL
        json.dumps(results_to_dict(results), allow_nan=False)


def _bare_experiment(design, phase_types, duration=7) -> Experiment:
    return Experiment(
        name="x",
        hypothesis="y",
        intervention=Intervention(name="z", category=InterventionCategory.OTHER),
        metrics=[_metric()],
        design=design,
        phases=[ExperimentPhase(type=t, duration_days=duration) for t in phase_types],
    )


class TestConfounders:
    def test_short_phase_warning(self):
        exp = _bare_experiment(ExperimentDesign.AB, [PhaseType.BASELINE, PhaseType.INTERVENTION], 5)
        assert SHORT_PHASE_WARNING in detect_confounders(exp)

    def test_seven_day_phases_are_not_short(self):
        exp = _bare_experiment(ExperimentDesign.AB, [PhaseType.BASELINE, PhaseType.INTERVENTION])
        assert SHORT_PHASE_WARNING not in detect_confounders(exp)

    def test_low_data_threshold(self):
        exp = _bare_experiment(ExperimentDesign.AB, [PhaseType.BASELINE, PhaseType.INTERVENTION])
        metric_id = exp.metrics[0].id
        exp.phases[0].data_points.extend(DataPoint(metric_id, 1.0) for _ in range(9))
        assert LOW_DATA_WARNING in detect_confounders(exp)
        exp.phases[1].data_points.append(DataPoint(metric_id, 1.0))
        assert LOW_DATA_WARNING not in detect_confounders(exp)

    def test_abab_without_washout_warns_of_carryover(self):
        exp = _bare_experiment(
            ExperimentDesign.ABAB,
            [PhaseType.BASELINE, PhaseType.INTERVENTION, PhaseType.BASELINE, PhaseType.INTERVENTION],
        )
        assert CARRYOVER_WARNING in detect_confounders(exp)

    def test_generated_abab_has_washout(self, controller):
        exp = controller.create(
            "t", "h", Intervention(name="z", category=InterventionCategory.OTHER),
            [_metric()], ExperimentDesign.ABAB,
        )
        assert CARRYOVER_WARNING not in detect_confounders(exp)

    def test_multiple_warnings_accumulate(self):
        exp = _bare_experiment(
            ExperimentDesign.ABAB, [PhaseType.BASELINE, PhaseType.INTERVENTION], 3
        )
        assert detect_confounders(exp) == [SHORT_PHASE_WARNING, LOW_DATA_WARNING, CARRYOVER_WARNING]
