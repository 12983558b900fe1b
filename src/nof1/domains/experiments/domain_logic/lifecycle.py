"""Experiment lifecycle controller — create, start, record, advance, complete.

The controller owns an in-memory arena of experiments keyed by id, the
latest analysis results, and the "active experiment" reference. It never
touches storage: callers persist the touched experiment through
:class:`~nof1.core.storage.repository.ExperimentRepository` after each
mutating call.

Lookups by unknown id are silent no-ops (they return ``None``). Malformed
input raises :class:`ValidationError` before anything is mutated, so every
operation is atomic with respect to the experiment it touches. Use
:meth:`ExperimentController.require` at an API edge that needs an explicit
:class:`NotFoundError`.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Callable, Iterable, Sequence

from nof1.domains.experiments.domain_logic.analysis import analyze
from nof1.domains.experiments.domain_logic.designs import (
    ExperimentDesign,
    ExperimentStatus,
    status_for_phase,
)
from nof1.domains.experiments.domain_logic.errors import NotFoundError, ValidationError
from nof1.domains.experiments.domain_logic.models import (
    DataPoint,
    Experiment,
    ExperimentPhase,
    ExperimentResults,
    Intervention,
    TrackedMetric,
    utc_now,
)
from nof1.domains.experiments.domain_logic.templates import get_template

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

DEFAULT_PHASE_DURATION_DAYS = 7


class ExperimentController:
    """Drives experiments through their phases.

    Usage::

        controller = ExperimentController()
        exp = controller.create("Creatine", "HRV goes up", intervention, metrics,
                                ExperimentDesign.AB)
        controller.start(exp.id)
        controller.record_data_point(exp.id, metrics[0].id, 42.0)
        controller.advance_phase(exp.id)
        ...
        results = controller.complete(exp.id)

    Not thread-safe: callers must serialize mutations.
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or utc_now
        self._experiments: dict[str, Experiment] = {}
        self._results: dict[str, ExperimentResults] = {}
        self._latest_results: ExperimentResults | None = None
        self._active_id: str | None = None

    # ------------------------------------------------------------------
    # Collection access
    # ------------------------------------------------------------------

    @property
    def experiments(self) -> list[Experiment]:
        """All experiments in creation order."""
        return list(self._experiments.values())

    @property
    def active_experiment(self) -> Experiment | None:
        """The most recently started experiment that is still running."""
        if self._active_id is None:
            return None
        return self._experiments.get(self._active_id)

    def active_experiments(self) -> list[Experiment]:
        """Every started experiment that has not completed or been cancelled."""
        return [e for e in self._experiments.values() if e.is_in_progress]

    @property
    def latest_results(self) -> ExperimentResults | None:
        return self._latest_results

    def results_for(self, experiment_id: str) -> ExperimentResults | None:
        return self._results.get(experiment_id)

    def all_results(self) -> list[ExperimentResults]:
        return list(self._results.values())

    def get(self, experiment_id: str) -> Experiment | None:
        return self._experiments.get(experiment_id)

    def require(self, experiment_id: str) -> Experiment:
        """Strict lookup.

        Raises:
            NotFoundError: If no experiment has this id.
        """
        experiment = self._experiments.get(experiment_id)
        if experiment is None:
            raise NotFoundError(experiment_id)
        return experiment

    def load(
        self,
        experiments: Iterable[Experiment],
        results: Iterable[ExperimentResults] = (),
    ) -> None:
        """Replace the in-memory collection, e.g. after reading from storage.

        The active reference is restored to the first in-progress experiment.
        """
        self._experiments = {e.id: e for e in experiments}
        self._results = {}
        self._latest_results = None
        for result in sorted(results, key=lambda r: r.generated_at):
            if result.experiment_id in self._experiments:
                self._results[result.experiment_id] = result
                self._latest_results = result

        in_progress = self.active_experiments()
        self._active_id = in_progress[0].id if in_progress else None
        logger.info(
            "Loaded %d experiments (%d in progress, %d results)",
            len(self._experiments),
            len(in_progress),
            len(self._results),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        name: str,
        hypothesis: str,
        intervention: Intervention,
        metrics: Sequence[TrackedMetric],
        design: ExperimentDesign,
        phase_duration_days: int = DEFAULT_PHASE_DURATION_DAYS,
    ) -> Experiment:
        """Create a draft experiment with phases generated from its design.

        Raises:
            ValidationError: On duplicate metric ids or a non-positive
                phase duration.
        """
        if (
            isinstance(phase_duration_days, bool)
            or not isinstance(phase_duration_days, int)
            or phase_duration_days <= 0
        ):
            raise ValidationError(
                f"Phase duration must be a positive number of days, got {phase_duration_days!r}"
            )
        metric_ids = [m.id for m in metrics]
        if len(set(metric_ids)) != len(metric_ids):
            raise ValidationError("Metric identifiers must be unique within an experiment")

        experiment = Experiment(
            name=name,
            hypothesis=hypothesis,
            intervention=intervention,
            metrics=list(metrics),
            design=design,
            created_at=self._clock(),
        )
        experiment.phases = [
            ExperimentPhase(type=phase_type, duration_days=phase_duration_days)
            for phase_type in design.phase_template
        ]

        self._experiments[experiment.id] = experiment
        logger.info(
            "Created experiment %s (design=%s, %d phases, %d metrics)",
            experiment.id,
            design.value,
            len(experiment.phases),
            len(experiment.metrics),
        )
        return experiment

    def create_from_template(
        self,
        template_name: str,
        *,
        design: ExperimentDesign = ExperimentDesign.ABAB,
        phase_duration_days: int = DEFAULT_PHASE_DURATION_DAYS,
        hypothesis: str | None = None,
    ) -> Experiment | None:
        """Create a draft experiment from a quick-start template.

        Returns:
            The new experiment, or None if the template name is unknown.
        """
        template = get_template(template_name)
        if template is None:
            logger.warning("Unknown experiment template: %r", template_name)
            return None
        intervention, metrics = template.instantiate()
        return self.create(
            template.name,
            hypothesis or template.default_hypothesis,
            intervention,
            metrics,
            design,
            phase_duration_days,
        )

    def start(self, experiment_id: str) -> Experiment | None:
        """Start the first phase of a draft experiment and mark it active.

        Starting another experiment does not stop this one.
        """
        experiment = self._lookup(experiment_id, "start")
        if experiment is None:
            return None
        if experiment.status != ExperimentStatus.DRAFT or not experiment.phases:
            logger.warning(
                "Ignoring start of experiment %s in status %s",
                experiment_id,
                experiment.status.value,
            )
            return None

        now = self._clock()
        first = experiment.phases[0]
        experiment.status = status_for_phase(first.type)
        experiment.started_at = now
        first.start_date = now

        if self._active_id is not None and self._active_id != experiment_id:
            logger.info(
                "Experiment %s replaces %s as the active experiment",
                experiment_id,
                self._active_id,
            )
        self._active_id = experiment_id
        logger.info("Started experiment %s (%s phase)", experiment_id, first.type.value)
        return experiment

    def record_data_point(
        self,
        experiment_id: str,
        metric_id: str,
        value: float,
        note: str | None = None,
    ) -> DataPoint | None:
        """Append an observation to the experiment's current phase.

        Returns:
            The new data point, or None when there is nothing to record into.

        Raises:
            ValidationError: If ``value`` is not a finite number.
        """
        if (
            isinstance(value, bool)
            or not isinstance(value, (int, float))
            or not math.isfinite(value)
        ):
            raise ValidationError(f"Data point value must be a finite number, got {value!r}")

        experiment = self._lookup(experiment_id, "record_data_point")
        if experiment is None or experiment.status.is_terminal:
            return None
        if experiment.metric(metric_id) is None:
            logger.warning(
                "Ignoring data point for untracked metric %s on experiment %s",
                metric_id,
                experiment_id,
            )
            return None

        phase = experiment.current_phase()
        if phase is None:
            logger.debug("Experiment %s has no current phase; data point dropped", experiment_id)
            return None

        point = DataPoint(
            metric_id=metric_id,
            value=float(value),
            timestamp=self._clock(),
            note=note,
        )
        phase.data_points.append(point)
        return point

    def advance_phase(self, experiment_id: str) -> Experiment | None:
        """Complete the current phase and start the next one.

        After the last phase the experiment moves to ``analysis``. With no
        current phase (draft, fully advanced, terminal) this is a no-op.
        """
        experiment = self._lookup(experiment_id, "advance_phase")
        if experiment is None or experiment.status.is_terminal:
            return None
        index = experiment.current_phase_index()
        if index is None:
            return None

        now = self._clock()
        current = experiment.phases[index]
        current.is_complete = True
        current.end_date = now

        if index + 1 < len(experiment.phases):
            upcoming = experiment.phases[index + 1]
            upcoming.start_date = now
            experiment.status = status_for_phase(upcoming.type)
            logger.info(
                "Experiment %s advanced to phase %d/%d (%s)",
                experiment_id,
                index + 2,
                len(experiment.phases),
                upcoming.type.value,
            )
        else:
            experiment.status = ExperimentStatus.ANALYSIS
            logger.info("Experiment %s finished all phases; ready for analysis", experiment_id)
        return experiment

    def complete(self, experiment_id: str) -> ExperimentResults | None:
        """Analyze the experiment, store the results and mark it completed."""
        experiment = self._lookup(experiment_id, "complete")
        if experiment is None or experiment.status.is_terminal:
            return None

        now = self._clock()
        results = analyze(experiment, now=now)
        self._results[experiment_id] = results
        self._latest_results = results

        experiment.status = ExperimentStatus.COMPLETED
        experiment.completed_at = now
        self._release_active(experiment_id)
        logger.info(
            "Completed experiment %s: %s",
            experiment_id,
            results.overall_conclusion.value,
        )
        return results

    def cancel(self, experiment_id: str) -> Experiment | None:
        """Abort an experiment at any point before completion. No analysis runs."""
        experiment = self._lookup(experiment_id, "cancel")
        if experiment is None or experiment.status == ExperimentStatus.COMPLETED:
            return None

        experiment.status = ExperimentStatus.CANCELLED
        self._release_active(experiment_id)
        logger.info("Cancelled experiment %s", experiment_id)
        return experiment

    def remove(self, experiment_id: str) -> bool:
        """Drop an experiment and its results from the collection."""
        experiment = self._experiments.pop(experiment_id, None)
        if experiment is None:
            return False
        removed = self._results.pop(experiment_id, None)
        if removed is not None and removed is self._latest_results:
            remaining = sorted(self._results.values(), key=lambda r: r.generated_at)
            self._latest_results = remaining[-1] if remaining else None
        self._release_active(experiment_id)
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _lookup(self, experiment_id: str, operation: str) -> Experiment | None:
        experiment = self._experiments.get(experiment_id)
        if experiment is None:
            logger.warning("%s: unknown experiment %s", operation, experiment_id)
        return experiment

    def _release_active(self, experiment_id: str) -> None:
        if self._active_id == experiment_id:
            self._active_id = None
