"""Exceptions raised by the experiment domain."""

from __future__ import annotations


class ExperimentError(Exception):
    """Base class for experiment domain errors."""


class NotFoundError(ExperimentError):
    """Raised by strict lookups when an experiment id is unknown."""

    def __init__(self, experiment_id: str) -> None:
        super().__init__(f"Experiment not found: {experiment_id!r}")
        self.experiment_id = experiment_id


class ValidationError(ExperimentError):
    """Raised when input is rejected before it reaches the model."""
