"""MCP tools for running N-of-1 experiments.

Each tool maps onto one ExperimentController operation. After a mutating
operation the touched experiment (and any new results) is saved through the
repository when persistence is enabled, then an audit event is written.
If the save fails the controller is reloaded from storage and the tool
reports a ``storage`` error. Unknown experiment ids are reported as ``not_found`` errors at this edge even
though the controller itself treats them as no-ops.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from nof1.core.storage.database import DatabaseError
from nof1.core.storage.encryption import EncryptionError
from nof1.core.storage.repository import RepositoryError
from nof1.domains.experiments.domain_logic.designs import ExperimentDesign
from nof1.domains.experiments.domain_logic.errors import (
    ExperimentError,
    NotFoundError,
    ValidationError,
)
from nof1.domains.experiments.domain_logic.models import (
    Experiment,
    ExperimentResults,
    Intervention,
    InterventionCategory,
    MetricKind,
    MetricSource,
    TrackedMetric,
    utc_now,
)
from nof1.domains.experiments.domain_logic.serialization import (
    SerializationError,
    results_to_dict,
)
from nof1.domains.experiments.domain_logic.templates import TEMPLATES

if TYPE_CHECKING:
    from nof1.core.audit.logger import AuditLogger
    from nof1.core.storage.repository import ExperimentRepository
    from nof1.domains.experiments.domain_logic.lifecycle import ExperimentController

logger = logging.getLogger(__name__)

STORAGE_ERRORS = (DatabaseError, EncryptionError, RepositoryError, sqlite3.Error)


# ---------------------------------------------------------------------------
# Input parsing
# ---------------------------------------------------------------------------

def parse_design(value: str) -> ExperimentDesign:
    """Accept a design label ("A-B-A-B") or name ("abab", "crossover")."""
    normalized = value.strip()
    for design in ExperimentDesign:
        if normalized.upper() in (design.name, design.value.upper()):
            return design
    valid = [d.value for d in ExperimentDesign]
    raise ValidationError(f"Unknown design {value!r}. Valid: {valid}")


def parse_metric(descriptor: dict[str, Any]) -> TrackedMetric:
    """Build a TrackedMetric from a tool-supplied descriptor dict."""
    try:
        metric = TrackedMetric(
            name=str(descriptor["name"]),
            kind=MetricKind(descriptor.get("kind", MetricKind.CUSTOM.value)),
            unit=str(descriptor.get("unit", "")),
            source=MetricSource(descriptor.get("source", MetricSource.MANUAL.value)),
            higher_is_better=bool(descriptor.get("higher_is_better", True)),
        )
    except KeyError as exc:
        raise ValidationError(f"Metric descriptor missing field: {exc}") from exc
    except ValueError as exc:
        raise ValidationError(f"Invalid metric descriptor: {exc}") from exc
    if descriptor.get("id"):
        metric.id = str(descriptor["id"])
    return metric


# ---------------------------------------------------------------------------
# Output shaping
# ---------------------------------------------------------------------------

def experiment_view(
    experiment: Experiment,
    *,
    now: datetime | None = None,
    include_data_points: bool = False,
) -> dict[str, Any]:
    """Summarize an experiment for display: phase progress and data counts."""
    now = now or utc_now()
    current_index = experiment.current_phase_index()
    phases = []
    for index, phase in enumerate(experiment.phases):
        entry: dict[str, Any] = {
            "index": index,
            "type": phase.type.value,
            "duration_days": phase.duration_days,
            "start_date": phase.start_date.isoformat() if phase.start_date else None,
            "end_date": phase.end_date.isoformat() if phase.end_date else None,
            "is_complete": phase.is_complete,
            "is_current": index == current_index,
            "data_point_count": len(phase.data_points),
        }
        if index == current_index:
            entry["days_remaining"] = phase.days_remaining(now)
            entry["is_due"] = phase.is_due(now)
        if include_data_points:
            entry["data_points"] = [
                {
                    "id": p.id,
                    "metric_id": p.metric_id,
                    "value": p.value,
                    "timestamp": p.timestamp.isoformat(),
                    "note": p.note,
                }
                for p in phase.data_points
            ]
        phases.append(entry)

    return {
        "id": experiment.id,
        "name": experiment.name,
        "hypothesis": experiment.hypothesis,
        "design": experiment.design.value,
        "status": experiment.status.value,
        "status_label": experiment.status.label,
        "intervention": {
            "name": experiment.intervention.name,
            "category": experiment.intervention.category.value,
            "dosage": experiment.intervention.dosage,
            "timing": experiment.intervention.timing,
        },
        "metrics": [
            {
                "id": m.id,
                "name": m.name,
                "kind": m.kind.value,
                "unit": m.unit,
                "higher_is_better": m.higher_is_better,
            }
            for m in experiment.metrics
        ],
        "phases": phases,
        "created_at": experiment.created_at.isoformat(),
        "started_at": experiment.started_at.isoformat() if experiment.started_at else None,
        "completed_at": (
            experiment.completed_at.isoformat() if experiment.completed_at else None
        ),
    }


def results_view(results: ExperimentResults) -> dict[str, Any]:
    view = results_to_dict(results)
    view["conclusion_label"] = results.overall_conclusion.label
    return view


def _error(exc: ExperimentError) -> str:
    kind = "not_found" if isinstance(exc, NotFoundError) else "validation"
    return json.dumps({"status": "error", "error": kind, "message": str(exc)})


def _ignored(experiment: Experiment, reason: str) -> str:
    return json.dumps({
        "status": "ignored",
        "experiment_id": experiment.id,
        "experiment_status": experiment.status.value,
        "reason": reason,
    })


def _storage_failure(experiment_id: str) -> str:
    return json.dumps({
        "status": "error",
        "error": "storage",
        "message": f"Could not save experiment {experiment_id!r}; see the server log",
    })


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

def register_experiment_tools(
    mcp: FastMCP,
    controller: ExperimentController,
    repository: ExperimentRepository | None = None,
    audit_logger: AuditLogger | None = None,
    *,
    default_phase_duration_days: int = 7,
) -> None:
    """Register experiment lifecycle tools on the MCP server."""

    def _persist(
        experiment: Experiment, results: ExperimentResults | None = None
    ) -> str | None:
        """Save the touched experiment and any new results in one transaction.

        Returns the error type name when storage fails. The controller is then
        reloaded from storage so memory never runs ahead of the data bank.
        """
        if repository is None:
            return None
        try:
            repository.save_all([experiment], [results] if results is not None else [])
        except STORAGE_ERRORS as exc:
            logger.error("Failed to save experiment %s: %s", experiment.id, exc)
            _reload()
            return type(exc).__name__
        return None

    def _reload() -> None:
        try:
            experiments, stored_results = repository.load_controller_state()
        except STORAGE_ERRORS + (SerializationError,) as exc:
            logger.error("Failed to reload experiments from storage: %s", exc)
            return
        controller.load(experiments, stored_results)

    def _phase_days(requested: int | None) -> int:
        return default_phase_duration_days if requested is None else requested

    def _audit(
        tool_name: str,
        tool_input: dict[str, Any],
        started: float,
        *,
        experiment_id: str | None = None,
        status: str = "success",
        error_type: str | None = None,
        transition: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if audit_logger is None:
            return
        audit_logger.log_tool_call(
            tool_name,
            tool_input,
            experiment_id=experiment_id,
            duration_ms=(time.monotonic() - started) * 1000,
            status=status,
            error_type=error_type,
        )
        if transition is not None and experiment_id is not None and status == "success":
            audit_logger.log_lifecycle(transition, experiment_id, metadata=metadata)

    @mcp.tool
    async def list_experiment_templates(ctx: Context) -> str:
        """List quick-start experiment templates with their interventions and metrics."""
        return json.dumps({
            "status": "ok",
            "templates": [
                {
                    "name": t.name,
                    "intervention": t.intervention.name,
                    "category": t.intervention.category.value,
                    "dosage": t.intervention.dosage,
                    "timing": t.intervention.timing,
                    "expected_effect": t.intervention.expected_effect,
                    "metrics": [m.name for m in t.metrics],
                }
                for t in TEMPLATES
            ],
            "designs": [
                {"design": d.value, "description": d.description} for d in ExperimentDesign
            ],
        }, indent=2)

    @mcp.tool
    async def create_experiment(
        ctx: Context,
        name: str,
        hypothesis: str,
        intervention_name: str,
        metrics: list[dict[str, Any]],
        intervention_category: str = "other",
        design: str = "A-B-A-B",
        phase_duration_days: int | None = None,
        dosage: str = "",
        timing: str = "",
        expected_effect: str = "",
        description: str = "",
    ) -> str:
        """Design a new N-of-1 experiment (created as a draft).

        Args:
            name: Experiment name.
            hypothesis: What you expect the intervention to do.
            intervention_name: e.g. 'Creatine Monohydrate'.
            metrics: Metric descriptors: {"name", "kind", "unit", "source",
                "higher_is_better"}. Kinds: hrv, resting_hr, sleep_score,
                sleep_duration, glucose, weight, energy, mood, focus, custom.
            intervention_category: supplement, diet, exercise, sleep, stress,
                cold, heat, fasting or other.
            design: 'A-B', 'A-B-A-B', 'A-B-A' or 'Crossover'.
            phase_duration_days: Days per phase, a positive integer (defaults to
                the server setting).
            dosage: e.g. '5g daily'.
            timing: e.g. 'Morning with food'.
            expected_effect: Free-text expected effect.
            description: Free-text intervention description.
        """
        started = time.monotonic()
        tool_input = {"name": name, "design": design, "metric_count": len(metrics)}
        try:
            intervention = Intervention(
                name=intervention_name,
                category=InterventionCategory(intervention_category),
                description=description,
                dosage=dosage or None,
                timing=timing or None,
                expected_effect=expected_effect,
            )
            experiment = controller.create(
                name,
                hypothesis,
                intervention,
                [parse_metric(m) for m in metrics],
                parse_design(design),
                _phase_days(phase_duration_days),
            )
        except ValueError as exc:
            _audit("create_experiment", tool_input, started, status="failure",
                   error_type="ValidationError")
            return _error(ValidationError(f"Invalid intervention category: {exc}"))
        except ExperimentError as exc:
            _audit("create_experiment", tool_input, started, status="failure",
                   error_type=type(exc).__name__)
            return _error(exc)

        storage_error = _persist(experiment)
        if storage_error:
            _audit("create_experiment", tool_input, started, experiment_id=experiment.id,
                   status="failure", error_type=storage_error)
            return _storage_failure(experiment.id)

        _audit("create_experiment", tool_input, started, experiment_id=experiment.id,
               transition="created", metadata={"design": experiment.design.value})
        return json.dumps({"status": "created", "experiment": experiment_view(experiment)},
                          indent=2)

    @mcp.tool
    async def create_experiment_from_template(
        ctx: Context,
        template_name: str,
        design: str = "A-B-A-B",
        phase_duration_days: int | None = None,
    ) -> str:
        """Create a draft experiment from a quick-start template.

        Args:
            template_name: One of the names from list_experiment_templates.
            design: 'A-B', 'A-B-A-B', 'A-B-A' or 'Crossover'.
            phase_duration_days: Days per phase, a positive integer (defaults to
                the server setting).
        """
        started = time.monotonic()
        tool_input = {"template_name": template_name, "design": design}
        try:
            experiment = controller.create_from_template(
                template_name,
                design=parse_design(design),
                phase_duration_days=_phase_days(phase_duration_days),
            )
        except ExperimentError as exc:
            _audit("create_experiment_from_template", tool_input, started,
                   status="failure", error_type=type(exc).__name__)
            return _error(exc)
        if experiment is None:
            _audit("create_experiment_from_template", tool_input, started,
                   status="failure", error_type="NotFoundError")
            return json.dumps({
                "status": "error",
                "error": "not_found",
                "message": f"Unknown template: {template_name!r}",
            })

        storage_error = _persist(experiment)
        if storage_error:
            _audit("create_experiment_from_template", tool_input, started,
                   experiment_id=experiment.id, status="failure", error_type=storage_error)
            return _storage_failure(experiment.id)

        _audit("create_experiment_from_template", tool_input, started,
               experiment_id=experiment.id, transition="created",
               metadata={"template": template_name})
        return json.dumps({"status": "created", "experiment": experiment_view(experiment)},
                          indent=2)

    @mcp.tool
    async def start_experiment(ctx: Context, experiment_id: str) -> str:
        """Start a draft experiment: its first (baseline) phase begins now."""
        started = time.monotonic()
        tool_input = {"experiment_id": experiment_id}
        try:
            experiment = controller.require(experiment_id)
        except NotFoundError as exc:
            _audit("start_experiment", tool_input, started, status="failure",
                   error_type="NotFoundError")
            return _error(exc)

        if controller.start(experiment_id) is None:
            _audit("start_experiment", tool_input, started, experiment_id=experiment_id,
                   status="ignored")
            return _ignored(experiment, "Only draft experiments can be started")

        storage_error = _persist(experiment)
        if storage_error:
            _audit("start_experiment", tool_input, started, experiment_id=experiment.id,
                   status="failure", error_type=storage_error)
            return _storage_failure(experiment.id)

        _audit("start_experiment", tool_input, started, experiment_id=experiment_id,
               transition="started")
        return json.dumps({"status": "started", "experiment": experiment_view(experiment)},
                          indent=2)

    @mcp.tool
    async def record_data_point(
        ctx: Context,
        experiment_id: str,
        metric_id: str,
        value: float,
        note: str = "",
    ) -> str:
        """Log an observation for a tracked metric into the current phase.

        Args:
            experiment_id: The running experiment.
            metric_id: Id of one of the experiment's tracked metrics.
            value: The observed value (any finite number).
            note: Optional free-text note.
        """
        started = time.monotonic()
        tool_input = {"experiment_id": experiment_id, "metric_id": metric_id}
        try:
            experiment = controller.require(experiment_id)
            point = controller.record_data_point(experiment_id, metric_id, value, note or None)
        except ExperimentError as exc:
            _audit("record_data_point", tool_input, started, status="failure",
                   error_type=type(exc).__name__)
            return _error(exc)

        if point is None:
            _audit("record_data_point", tool_input, started, experiment_id=experiment_id,
                   status="ignored")
            if experiment.metric(metric_id) is None:
                reason = f"Metric {metric_id!r} is not tracked by this experiment"
            else:
                reason = "Experiment has no running phase"
            return _ignored(experiment, reason)

        storage_error = _persist(experiment)
        if storage_error:
            _audit("record_data_point", tool_input, started, experiment_id=experiment.id,
                   status="failure", error_type=storage_error)
            return _storage_failure(experiment.id)

        _audit("record_data_point", tool_input, started, experiment_id=experiment_id)
        phase = experiment.current_phase()
        return json.dumps({
            "status": "recorded",
            "data_point_id": point.id,
            "timestamp": point.timestamp.isoformat(),
            "phase": phase.type.value if phase else None,
            "phase_data_points": len(phase.data_points) if phase else 0,
        })

    @mcp.tool
    async def advance_phase(ctx: Context, experiment_id: str) -> str:
        """Finish the current phase and begin the next one (or move to analysis)."""
        started = time.monotonic()
        tool_input = {"experiment_id": experiment_id}
        try:
            experiment = controller.require(experiment_id)
        except NotFoundError as exc:
            _audit("advance_phase", tool_input, started, status="failure",
                   error_type="NotFoundError")
            return _error(exc)

        if controller.advance_phase(experiment_id) is None:
            _audit("advance_phase", tool_input, started, experiment_id=experiment_id,
                   status="ignored")
            return _ignored(experiment, "Experiment has no running phase")

        storage_error = _persist(experiment)
        if storage_error:
            _audit("advance_phase", tool_input, started, experiment_id=experiment.id,
                   status="failure", error_type=storage_error)
            return _storage_failure(experiment.id)

        _audit("advance_phase", tool_input, started, experiment_id=experiment_id,
               transition="phase_advanced",
               metadata={"status": experiment.status.value})
        return json.dumps({"status": "advanced", "experiment": experiment_view(experiment)},
                          indent=2)

    @mcp.tool
    async def complete_experiment(ctx: Context, experiment_id: str) -> str:
        """Analyze the experiment and mark it completed."""
        started = time.monotonic()
        tool_input = {"experiment_id": experiment_id}
        try:
            experiment = controller.require(experiment_id)
        except NotFoundError as exc:
            _audit("complete_experiment", tool_input, started, status="failure",
                   error_type="NotFoundError")
            return _error(exc)

        results = controller.complete(experiment_id)
        if results is None:
            _audit("complete_experiment", tool_input, started, experiment_id=experiment_id,
                   status="ignored")
            return _ignored(experiment, "Experiment is already completed or cancelled")

        storage_error = _persist(experiment, results)
        if storage_error:
            _audit("complete_experiment", tool_input, started, experiment_id=experiment.id,
                   status="failure", error_type=storage_error)
            return _storage_failure(experiment.id)

        _audit("complete_experiment", tool_input, started, experiment_id=experiment_id,
               transition="completed",
               metadata={"conclusion": results.overall_conclusion.value})
        return json.dumps({"status": "completed", "results": results_view(results)}, indent=2)

    @mcp.tool
    async def cancel_experiment(ctx: Context, experiment_id: str) -> str:
        """Abort an experiment. No analysis is performed."""
        started = time.monotonic()
        tool_input = {"experiment_id": experiment_id}
        try:
            experiment = controller.require(experiment_id)
        except NotFoundError as exc:
            _audit("cancel_experiment", tool_input, started, status="failure",
                   error_type="NotFoundError")
            return _error(exc)

        if controller.cancel(experiment_id) is None:
            _audit("cancel_experiment", tool_input, started, experiment_id=experiment_id,
                   status="ignored")
            return _ignored(experiment, "Completed experiments cannot be cancelled")

        storage_error = _persist(experiment)
        if storage_error:
            _audit("cancel_experiment", tool_input, started, experiment_id=experiment.id,
                   status="failure", error_type=storage_error)
            return _storage_failure(experiment.id)

        _audit("cancel_experiment", tool_input, started, experiment_id=experiment_id,
               transition="cancelled")
        return json.dumps({"status": "cancelled", "experiment_id": experiment_id})

    @mcp.tool
    async def get_experiment(
        ctx: Context,
        experiment_id: str,
        include_data_points: bool = False,
    ) -> str:
        """Show an experiment's phase progress, optionally with every data point."""
        try:
            experiment = controller.require(experiment_id)
        except NotFoundError as exc:
            return _error(exc)
        return json.dumps({
            "status": "ok",
            "experiment": experiment_view(experiment, include_data_points=include_data_points),
        }, indent=2)

    @mcp.tool
    async def list_experiments(ctx: Context, status: str = "") -> str:
        """List experiments, optionally filtered by status (e.g. 'intervention')."""
        experiments = controller.experiments
        if status:
            experiments = [e for e in experiments if e.status.value == status]
        active = controller.active_experiment
        return json.dumps({
            "status": "ok",
            "count": len(experiments),
            "active_experiment_id": active.id if active else None,
            "in_progress_ids": [e.id for e in controller.active_experiments()],
            "experiments": [
                {
                    "id": e.id,
                    "name": e.name,
                    "design": e.design.value,
                    "status": e.status.value,
                    "data_points": e.total_data_points(),
                }
                for e in experiments
            ],
        }, indent=2)

    @mcp.tool
    async def get_experiment_results(ctx: Context, experiment_id: str = "") -> str:
        """Show analysis results for an experiment, or the latest results overall."""
        if experiment_id:
            try:
                controller.require(experiment_id)
            except NotFoundError as exc:
                return _error(exc)
            results = controller.results_for(experiment_id)
        else:
            results = controller.latest_results
        if results is None:
            return json.dumps({"status": "no_results", "experiment_id": experiment_id or None})
        return json.dumps({"status": "ok", "results": results_view(results)}, indent=2)
