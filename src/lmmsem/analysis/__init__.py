"""End-to-end equivalence study over configured scenarios."""

from .equivalence_study import (
    ScenarioResult, run_scenario, run_study, write_scenario_outputs, study_overview,
)
