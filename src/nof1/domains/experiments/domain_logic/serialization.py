"""Convert experiment records to and from JSON-compatible dicts.

Enum members are written as their string values and datetimes as ISO 8601
strings. Decoding an encoded record reproduces an identical entity graph:
same ids, values and ordering.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from nof1.domains.experiments.domain_logic.designs import (
    ExperimentDesign,
    ExperimentStatus,
    PhaseType,
)
from nof1.domains.experiments.domain_logic.models import (
    Conclusion,
    DataPoint,
    EffectTrend,
    Experiment,
    ExperimentPhase,
    ExperimentResults,
    Intervention,
    InterventionCategory,
    MetricAnalysis,
    MetricKind,
    MetricSource,
    TrackedMetric,
)

FORMAT_VERSION = 1


class SerializationError(Exception):
    """Raised when a stored payload cannot be decoded into entities."""


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


# ---------------------------------------------------------------------------
# Encode
# ---------------------------------------------------------------------------

def _intervention_to_dict(intervention: Intervention) -> dict[str, Any]:
    return {
        "name": intervention.name,
        "category": intervention.category.value,
        "description": intervention.description,
        "dosage": intervention.dosage,
        "timing": intervention.timing,
        "expected_effect": intervention.expected_effect,
    }


def _metric_to_dict(metric: TrackedMetric) -> dict[str, Any]:
    return {
        "id": metric.id,
        "name": metric.name,
        "kind": metric.kind.value,
        "source": metric.source.value,
        "unit": metric.unit,
        "higher_is_better": metric.higher_is_better,
    }


def _data_point_to_dict(point: DataPoint) -> dict[str, Any]:
    return {
        "id": point.id,
        "timestamp": _iso(point.timestamp),
        "metric_id": point.metric_id,
        "value": point.value,
        "note": point.note,
    }


def _phase_to_dict(phase: ExperimentPhase) -> dict[str, Any]:
    return {
        "id": phase.id,
        "type": phase.type.value,
        "duration_days": phase.duration_days,
        "start_date": _iso(phase.start_date),
        "end_date": _iso(phase.end_date),
        "is_complete": phase.is_complete,
        "data_points": [_data_point_to_dict(p) for p in phase.data_points],
    }


def experiment_to_dict(experiment: Experiment) -> dict[str, Any]:
    """Encode an experiment with its nested phases and data points."""
    return {
        "id": experiment.id,
        "name": experiment.name,
        "hypothesis": experiment.hypothesis,
        "intervention": _intervention_to_dict(experiment.intervention),
        "metrics": [_metric_to_dict(m) for m in experiment.metrics],
        "design": experiment.design.value,
        "status": experiment.status.value,
        "phases": [_phase_to_dict(p) for p in experiment.phases],
        "created_at": _iso(experiment.created_at),
        "started_at": _iso(experiment.started_at),
        "completed_at": _iso(experiment.completed_at),
    }


def _analysis_to_dict(analysis: MetricAnalysis) -> dict[str, Any]:
    return {
        "metric_id": analysis.metric_id,
        "metric_name": analysis.metric_name,
        "baseline_mean": analysis.baseline_mean,
        "baseline_std_dev": analysis.baseline_std_dev,
        "baseline_count": analysis.baseline_count,
        "intervention_mean": analysis.intervention_mean,
        "intervention_std_dev": analysis.intervention_std_dev,
        "intervention_count": analysis.intervention_count,
        "effect_size": analysis.effect_size,
        "percent_change": analysis.percent_change,
        "p_value": analysis.p_value,
        "is_significant": analysis.is_significant,
        "trend": analysis.trend.value,
    }


def results_to_dict(results: ExperimentResults) -> dict[str, Any]:
    return {
        "experiment_id": results.experiment_id,
        "metric_analyses": [_analysis_to_dict(a) for a in results.metric_analyses],
        "overall_conclusion": results.overall_conclusion.value,
        "confidence_level": results.confidence_level,
        "confounders": list(results.confounders),
        "generated_at": _iso(results.generated_at),
    }


def dump_collection(
    experiments: Iterable[Experiment],
    latest_results: ExperimentResults | None = None,
) -> dict[str, Any]:
    """Encode the full experiment collection plus the most recent results."""
    return {
        "format_version": FORMAT_VERSION,
        "experiments": [experiment_to_dict(e) for e in experiments],
        "latest_results": results_to_dict(latest_results) if latest_results else None,
    }


# ---------------------------------------------------------------------------
# Decode
# ---------------------------------------------------------------------------

def experiment_from_dict(data: dict[str, Any]) -> Experiment:
    """Decode an experiment record.

    Raises:
        SerializationError: If a field is missing or holds an unknown value.
    """
    try:
        intervention_data = data["intervention"]
        return Experiment(
            id=data["id"],
            name=data["name"],
            hypothesis=data["hypothesis"],
            intervention=Intervention(
                name=intervention_data["name"],
                category=InterventionCategory(intervention_data["category"]),
                description=intervention_data.get("description", ""),
                dosage=intervention_data.get("dosage"),
                timing=intervention_data.get("timing"),
                expected_effect=intervention_data.get("expected_effect", ""),
            ),
            metrics=[
                TrackedMetric(
                    id=m["id"],
                    name=m["name"],
                    kind=MetricKind(m["kind"]),
                    source=MetricSource(m["source"]),
                    unit=m["unit"],
                    higher_is_better=bool(m["higher_is_better"]),
                )
                for m in data["metrics"]
            ],
            design=ExperimentDesign(data["design"]),
            status=ExperimentStatus(data["status"]),
            phases=[
                ExperimentPhase(
                    id=p["id"],
                    type=PhaseType(p["type"]),
                    duration_days=int(p["duration_days"]),
                    start_date=_parse_dt(p.get("start_date")),
                    end_date=_parse_dt(p.get("end_date")),
                    is_complete=bool(p["is_complete"]),
                    data_points=[
                        DataPoint(
                            id=dp["id"],
                            timestamp=_parse_dt(dp["timestamp"]),
                            metric_id=dp["metric_id"],
                            value=float(dp["value"]),
                            note=dp.get("note"),
                        )
                        for dp in p["data_points"]
                    ],
                )
                for p in data["phases"]
            ],
            created_at=_parse_dt(data["created_at"]),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise SerializationError(f"Invalid experiment record: {exc}") from exc


def results_from_dict(data: dict[str, Any]) -> ExperimentResults:
    """Decode an analysis result.

    Raises:
        SerializationError: If a field is missing or holds an unknown value.
    """
    try:
        return ExperimentResults(
            experiment_id=data["experiment_id"],
            metric_analyses=tuple(
                MetricAnalysis(
                    metric_id=a["metric_id"],
                    metric_name=a["metric_name"],
                    baseline_mean=float(a["baseline_mean"]),
                    baseline_std_dev=float(a["baseline_std_dev"]),
                    baseline_count=int(a["baseline_count"]),
                    intervention_mean=float(a["intervention_mean"]),
                    intervention_std_dev=float(a["intervention_std_dev"]),
                    intervention_count=int(a["intervention_count"]),
                    effect_size=float(a["effect_size"]),
                    percent_change=float(a["percent_change"]),
                    p_value=a.get("p_value"),
                    is_significant=bool(a["is_significant"]),
                    trend=EffectTrend(a["trend"]),
                )
                for a in data["metric_analyses"]
            ),
            overall_conclusion=Conclusion(data["overall_conclusion"]),
            confidence_level=float(data["confidence_level"]),
            confounders=tuple(data["confounders"]),
            generated_at=_parse_dt(data["generated_at"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise SerializationError(f"Invalid results record: {exc}") from exc


def load_collection(
    payload: dict[str, Any],
) -> tuple[list[Experiment], ExperimentResults | None]:
    """Decode a payload produced by :func:`dump_collection`."""
    if not isinstance(payload, dict) or "experiments" not in payload:
        raise SerializationError("Payload is missing the 'experiments' list")
    version = payload.get("format_version", FORMAT_VERSION)
    if version != FORMAT_VERSION:
        raise SerializationError(f"Unsupported format version: {version!r}")

    experiments = [experiment_from_dict(e) for e in payload["experiments"]]
    latest = payload.get("latest_results")
    return experiments, results_from_dict(latest) if latest else None
