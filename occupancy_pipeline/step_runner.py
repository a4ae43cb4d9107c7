"""
Generic step executor for pipeline steps.

Wraps a work function with timing, logging, and StepResult construction
so each step (build histories, dredge, average, GoF, persist) only
provides the work itself. Exceptions listed as *skip* exceptions are
documented per-species outcomes (no data, nothing converged) and are
reported as ``skipped`` with a reason instead of ``error``.
"""

import traceback
from typing import TypeVar, Callable

import pandas as pd

from occupancy_pipeline.exceptions import (
    FitNonConvergence,
    NoQualifyingData,
    UnfittableSpecies,
)
from occupancy_pipeline.logging_config import (
    StepTimer,
    get_pipeline_logger,
    log_step_summary,
)
from occupancy_pipeline.pipeline_types import StepResult, StepStatus

T = TypeVar("T")

log = get_pipeline_logger(__name__)

_DEFAULT_EXPECTED = (
    FileNotFoundError,
    ValueError,
    KeyError,
    FitNonConvergence,
    pd.errors.EmptyDataError,
)

_DEFAULT_SKIP = (
    NoQualifyingData,
    UnfittableSpecies,
)


def run_step(
    step_name: str,
    fn: Callable[..., T],
    *args,
    input_summary: dict | None = None,
    output_summary_fn: Callable[[T], dict] | None = None,
    expected_exceptions: tuple[type[Exception], ...] = _DEFAULT_EXPECTED,
    skip_exceptions: tuple[type[Exception], ...] = _DEFAULT_SKIP,
    **kwargs,
) -> tuple[StepResult, T | None]:
    """Execute a pipeline step with standardised error handling and timing.

    Parameters
    ----------
    step_name : str
        Human-readable name stored in StepResult for provenance.
    fn : Callable
        The work function.  Called as ``fn(*args, **kwargs)``.
    input_summary : dict, optional
        Metadata about inputs (logged in StepResult).
    output_summary_fn : callable, optional
        Receives *fn*'s return value and produces an output-summary dict.
        Skipped when *fn* raises or returns None.
    expected_exceptions : tuple
        Exception types that produce a "known error" log message.
    skip_exceptions : tuple
        Exception types that mark the step as skipped; the exception
        message becomes ``StepResult.reason``.

    Returns
    -------
    tuple[StepResult, T | None]
    """
    result_data = None
    error_tb = None
    skip_reason = None

    with StepTimer() as timer:
        try:
            result_data = fn(*args, **kwargs)
        except skip_exceptions as exc:
            skip_reason = f"{type(exc).__name__}: {exc}"
            log.warning("%s skipped: %s", step_name, skip_reason)
        except expected_exceptions as exc:
            error_tb = traceback.format_exc()
            log.error("%s failed: %s", step_name, exc, exc_info=True)
        except Exception:
            error_tb = traceback.format_exc()
            log.error("%s failed unexpectedly", step_name, exc_info=True)

    if skip_reason is not None:
        log_step_summary(log, step_name, StepStatus.SKIPPED.value,
                         timing_seconds=timer.elapsed)
        return StepResult(
            step_name=step_name,
            status=StepStatus.SKIPPED.value,
            input_summary=input_summary or {},
            reason=skip_reason,
            timing_seconds=timer.elapsed,
        ), None

    if error_tb:
        log_step_summary(log, step_name, StepStatus.ERROR.value,
                         timing_seconds=timer.elapsed)
        return StepResult(
            step_name=step_name,
            status=StepStatus.ERROR.value,
            input_summary=input_summary or {},
            error=error_tb,
            reason=error_tb.strip().splitlines()[-1],
            timing_seconds=timer.elapsed,
        ), None

    out_summary = {}
    if output_summary_fn is not None and result_data is not None:
        out_summary = output_summary_fn(result_data)

    log_step_summary(
        log, step_name, StepStatus.SUCCESS.value,
        input_summary=input_summary or {},
        output_summary=out_summary,
        timing_seconds=timer.elapsed,
    )
    return StepResult(
        step_name=step_name,
        status=StepStatus.SUCCESS.value,
        input_summary=input_summary or {},
        output_summary=out_summary,
        timing_seconds=timer.elapsed,
    ), result_data
