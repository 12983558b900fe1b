"""Tests for the trial design catalog."""

from __future__ import annotations

import pytest

from nof1.domains.experiments.domain_logic.designs import (
    ExperimentDesign,
    ExperimentStatus,
    PhaseType,
    phase_template,
    status_for_phase,
)

B, I, W, C = PhaseType.BASELINE, PhaseType.INTERVENTION, PhaseType.WASHOUT, PhaseType.CONTROL


class TestPhaseTemplates:
    @pytest.mark.parametrize(
        "design, expected",
        [
            (ExperimentDesign.AB, [B, I]),
            (ExperimentDesign.ABAB, [B, I, W, I]),
            (ExperimentDesign.ABA, [B, I, B]),
            (ExperimentDesign.CROSSOVER, [B, I, W, C, W, I]),
        ],
    )
    def test_template_order(self, design, expected):
        assert phase_template(design) == expected
        assert design.phase_template == expected

    def test_template_is_a_fresh_list(self):
        template = phase_template(ExperimentDesign.AB)
        template.append(PhaseType.CONTROL)
        assert phase_template(ExperimentDesign.AB) == [B, I]

    def test_every_design_starts_with_baseline(self):
        for design in ExperimentDesign:
            assert design.phase_template[0] == PhaseType.BASELINE

    def test_every_design_has_description(self):
        for design in ExperimentDesign:
            assert design.description

    def test_design_values_are_labels(self):
        assert ExperimentDesign("A-B-A-B") is ExperimentDesign.ABAB
        assert ExperimentDesign("Crossover") is ExperimentDesign.CROSSOVER


class TestStatusForPhase:
    def test_control_maps_to_baseline(self):
        assert status_for_phase(PhaseType.CONTROL) == ExperimentStatus.BASELINE

    def test_direct_mappings(self):
        assert status_for_phase(PhaseType.BASELINE) == ExperimentStatus.BASELINE
        assert status_for_phase(PhaseType.INTERVENTION) == ExperimentStatus.INTERVENTION
        assert status_for_phase(PhaseType.WASHOUT) == ExperimentStatus.WASHOUT


class TestExperimentStatus:
    def test_terminal_statuses(self):
        terminal = {s for s in ExperimentStatus if s.is_terminal}
        assert terminal == {ExperimentStatus.COMPLETED, ExperimentStatus.CANCELLED}

    def test_label(self):
        assert ExperimentStatus.WASHOUT.label == "Washout"
