"""
Tests for occupancy_pipeline/step_runner.py and pipeline_types.py.

Verifies the generic step execution framework: timing, error handling,
the skip path for documented per-species outcomes, StepResult
construction and provenance round-trips.

CRITICAL: Every species and every output write flows through
run_step(). A bug here silently swallows errors or misreports which
species were skipped.
"""

import time

import pandas as pd

from occupancy_pipeline.exceptions import (
    FitNonConvergence,
    NoQualifyingData,
    UnfittableSpecies,
)
from occupancy_pipeline.pipeline_types import PipelineRunResult, StepResult
from occupancy_pipeline.step_runner import run_step


class TestRunStepSuccess:
    """Tests for successful step execution."""

    def test_basic_success(self):
        result, data = run_step("test_step", lambda: 42)
        assert isinstance(result, StepResult)
        assert result.status == "success"
        assert result.ok
        assert result.error is None
        assert result.reason is None
        assert data == 42

    def test_timing_recorded(self):
        def slow_fn():
            time.sleep(0.05)
            return "done"

        result, _ = run_step("timed_step", slow_fn)
        assert result.timing_seconds >= 0.04

    def test_args_and_kwargs_passed(self):
        def adder(a, b, multiplier=1):
            return (a + b) * multiplier

        _, data = run_step("adder", adder, 3, 4, multiplier=2)
        assert data == 14

    def test_summaries_recorded(self):
        result, _ = run_step(
            "summarized",
            lambda: [1, 2, 3],
            input_summary={"species": "Anas acuta"},
            output_summary_fn=lambda x: {"count": len(x)},
        )
        assert result.input_summary == {"species": "Anas acuta"}
        assert result.output_summary == {"count": 3}

    def test_output_summary_skipped_for_none(self):
        called = []
        _, data = run_step(
            "none_result",
            lambda: None,
            output_summary_fn=lambda x: called.append(True) or {"n": 0},
        )
        assert data is None
        assert called == []

    def test_falsy_result_still_summarised(self):
        """Only None skips the summary; an empty table is a real result."""
        result, data = run_step(
            "empty_df",
            pd.DataFrame,
            output_summary_fn=lambda df: {"rows": len(df)},
        )
        assert result.status == "success"
        assert data is not None
        assert result.output_summary == {"rows": 0}


class TestRunStepSkips:
    """Documented per-species outcomes are skips, not errors."""

    def test_no_qualifying_data_skipped(self):
        def no_data():
            raise NoQualifyingData("No site with >= 1 qualifying checklists")

        result, data = run_step("species:Anas acuta", no_data)
        assert result.status == "skipped"
        assert result.skipped
        assert result.reason.startswith("NoQualifyingData:")
        assert result.error is None
        assert data is None

    def test_unfittable_species_skipped(self):
        def unfittable():
            raise UnfittableSpecies("None of 8 candidate models converged")

        result, _ = run_step("species:Aythya ferina", unfittable)
        assert result.status == "skipped"
        assert "8 candidate models" in result.reason

    def test_custom_skip_exceptions(self):
        def fails():
            raise NoQualifyingData("empty")

        result, _ = run_step("strict", fails, skip_exceptions=())
        assert result.status == "error"


class TestRunStepErrorHandling:
    """Tests for error handling in step execution."""

    def test_expected_exception_caught(self):
        def fails():
            raise FileNotFoundError("checklists.csv not found")

        result, data = run_step("load_checklists", fails)
        assert result.status == "error"
        assert "checklists.csv not found" in result.error
        assert "FileNotFoundError" in result.reason
        assert data is None

    def test_non_convergence_is_error_outside_dredge(self):
        def fails():
            raise FitNonConvergence("p(.) psi(.): iteration limit")

        result, _ = run_step("refit_global", fails)
        assert result.status == "error"

    def test_empty_data_error_caught(self):
        def empty_csv():
            raise pd.errors.EmptyDataError("No columns to parse")

        result, _ = run_step("empty_csv", empty_csv)
        assert result.status == "error"

    def test_unexpected_exception_also_caught(self):
        def unexpected():
            raise RuntimeError("unexpected crash")

        result, _ = run_step("unexpected", unexpected)
        assert result.status == "error"
        assert "unexpected crash" in result.error

    def test_error_timing_still_recorded(self):
        def fails_slowly():
            time.sleep(0.05)
            raise ValueError("slow fail")

        result, _ = run_step("slow_fail", fails_slowly)
        assert result.timing_seconds >= 0.04


class TestProvenance:
    """StepResult / PipelineRunResult serialisation."""

    def test_step_result_round_trip(self):
        result, _ = run_step("species:X", lambda: 1, input_summary={"a": 1})
        restored = StepResult.from_dict(result.to_dict())
        assert restored.to_dict() == result.to_dict()

    def test_run_result_tracks_failures(self):
        def no_data():
            raise NoQualifyingData("x")

        ok, _ = run_step("ok", lambda: 1)
        skipped, _ = run_step("skip", no_data)
        failed, _ = run_step("bad", lambda: 1 / 0)

        run = PipelineRunResult(step_results=[ok, skipped, failed],
                                species_skipped={"X": skipped.reason})
        assert not run.all_ok
        assert [s.step_name for s in run.failed_steps] == ["bad"]

        restored = PipelineRunResult.from_dict(run.to_dict())
        assert restored.species_skipped == {"X": "NoQualifyingData: x"}
        assert [s.status for s in restored.step_results] == ["success", "skipped", "error"]
