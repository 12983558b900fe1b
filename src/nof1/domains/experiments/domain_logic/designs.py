"""Trial design catalog: supported N-of-1 designs and their phase templates.

Pure data. Each design maps deterministically to an ordered list of phase
types; the lifecycle controller turns that list into ExperimentPhase records
when an experiment is created.
"""

from __future__ import annotations

from enum import Enum


class PhaseType(str, Enum):
    """Kind of a dated segment in an experiment timeline."""

    BASELINE = "baseline"
    INTERVENTION = "intervention"
    WASHOUT = "washout"
    CONTROL = "control"


class ExperimentStatus(str, Enum):
    """Lifecycle status of an experiment."""

    DRAFT = "draft"
    BASELINE = "baseline"
    INTERVENTION = "intervention"
    WASHOUT = "washout"
    ANALYSIS = "analysis"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @property
    def is_terminal(self) -> bool:
        return self in (ExperimentStatus.COMPLETED, ExperimentStatus.CANCELLED)


class ExperimentDesign(str, Enum):
    """Supported trial designs. Values are the display labels."""

    AB = "A-B"
    ABAB = "A-B-A-B"
    ABA = "A-B-A"
    CROSSOVER = "Crossover"

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]

    @property
    def phase_template(self) -> list[PhaseType]:
        return phase_template(self)


_TEMPLATES: dict[ExperimentDesign, tuple[PhaseType, ...]] = {
    ExperimentDesign.AB: (PhaseType.BASELINE, PhaseType.INTERVENTION),
    ExperimentDesign.ABAB: (
        PhaseType.BASELINE,
        PhaseType.INTERVENTION,
        PhaseType.WASHOUT,
        PhaseType.INTERVENTION,
    ),
    ExperimentDesign.ABA: (
        PhaseType.BASELINE,
        PhaseType.INTERVENTION,
        PhaseType.BASELINE,
    ),
    ExperimentDesign.CROSSOVER: (
        PhaseType.BASELINE,
        PhaseType.INTERVENTION,
        PhaseType.WASHOUT,
        PhaseType.CONTROL,
        PhaseType.WASHOUT,
        PhaseType.INTERVENTION,
    ),
}

_DESCRIPTIONS: dict[ExperimentDesign, str] = {
    ExperimentDesign.AB: "Simple comparison of baseline vs intervention",
    ExperimentDesign.ABAB: "Repeated baseline-intervention with washout periods",
    ExperimentDesign.ABA: "Baseline -> Intervention -> Return to baseline",
    ExperimentDesign.CROSSOVER: "Alternating intervention/control periods",
}

# Control phases report the baseline status while running.
_PHASE_STATUS: dict[PhaseType, ExperimentStatus] = {
    PhaseType.BASELINE: ExperimentStatus.BASELINE,
    PhaseType.INTERVENTION: ExperimentStatus.INTERVENTION,
    PhaseType.WASHOUT: ExperimentStatus.WASHOUT,
    PhaseType.CONTROL: ExperimentStatus.BASELINE,
}


def phase_template(design: ExperimentDesign) -> list[PhaseType]:
    """Return the ordered phase types implied by a design (a fresh list)."""
    return list(_TEMPLATES[design])


def status_for_phase(phase_type: PhaseType) -> ExperimentStatus:
    """Return the experiment status shown while a phase of this type runs."""
    return _PHASE_STATUS[phase_type]
