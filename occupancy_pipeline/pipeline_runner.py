#!/usr/bin/env python3
"""
Pipeline runner with validation gates for the occupancy analyses.

Orchestrates a full run:
- load the checklist table and check it against the covariate schema
- Pandera validation of the input (``--strict-validation`` aborts on
  violations, otherwise they are logged)
- per-species null / detection / full analyses and GoF, sharing one
  dredge pool and one GoF pool across species
- per-species tables written as each species completes
- run-level GoF summary, species status table and PipelineRunResult
  provenance saved as JSON

Usage:
    # Run every species in the table
    occupancy-pipeline --input data/checklist_covariates.csv

    # Two species, small bootstrap, sequential fitting
    occupancy-pipeline --species "Anas acuta" "Aythya ferina" \\
        --n-boot 200 --dredge-workers 1 --gof-workers 1
"""

import argparse
import os
import sys
import time
from datetime import datetime, timezone

import pandas as pd

from occupancy_pipeline import config
from occupancy_pipeline.covariates import CovariateSchema
from occupancy_pipeline.logging_config import get_pipeline_logger, set_run_id, setup_logging
from occupancy_pipeline.outputs import (
    save_pipeline_result,
    write_run_outputs,
    write_species_outputs,
)
from occupancy_pipeline.pipeline_types import PipelineRunResult
from occupancy_pipeline.schemas import build_checklist_schema, validate_schema
from occupancy_pipeline.species_pipeline import run_all_species, species_labels
from occupancy_pipeline.step_runner import run_step

log = get_pipeline_logger(__name__)


def load_checklists(path, covariate_schema=None):
    """Read the checklist CSV and check that every configured column exists."""
    if covariate_schema is None:
        covariate_schema = CovariateSchema()
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Checklist table not found: {path}")
    cs = covariate_schema
    df = pd.read_csv(path, dtype={cs.site_column: str, cs.time_column: str})
    cs.require_columns(df)
    return df


def validate_checklists(df, covariate_schema=None, strict=False):
    """Validate the checklist table using the Pandera schema."""
    schema = build_checklist_schema(covariate_schema)
    return validate_schema(df, schema, "checklists", strict=strict)


def run_pipeline(args, covariate_schema=None):
    """Run all requested species and persist their results.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command-line arguments.
    covariate_schema : CovariateSchema, optional
        Column names and roles. Default: CovariateSchema().

    Returns
    -------
    PipelineRunResult
    """
    if covariate_schema is None:
        covariate_schema = CovariateSchema()
    strict = getattr(args, "strict_validation", False)
    output_dir = args.output_dir

    pipeline_result = PipelineRunResult(
        run_dir=output_dir,
        input_path=args.input,
        settings={
            "n_boot": args.n_boot,
            "seed": args.seed,
            "delta_threshold": args.delta_threshold,
            "max_obs": args.max_obs,
            "min_obs": args.min_obs,
            "dredge_workers": args.dredge_workers,
            "gof_workers": args.gof_workers,
            "annual_closure": args.annual_closure,
            "strict_validation": strict,
        },
    )
    start_time = time.time()

    step, checklists = run_step(
        "load_checklists", load_checklists, args.input, covariate_schema,
        input_summary={"path": args.input},
        output_summary_fn=lambda df: {"rows": len(df), "columns": len(df.columns)},
    )
    pipeline_result.step_results.append(step)
    if checklists is None:
        pipeline_result.total_time_seconds = time.time() - start_time
        return pipeline_result

    step, validation_warnings = run_step(
        "validate_checklists", validate_checklists, checklists, covariate_schema,
        strict=strict,
    )
    pipeline_result.step_results.append(step)
    if validation_warnings is None:
        pipeline_result.total_time_seconds = time.time() - start_time
        return pipeline_result
    step.warnings.extend(validation_warnings)

    available = species_labels(checklists, covariate_schema)
    requested = list(args.species) if args.species else available
    pipeline_result.species_requested = requested
    missing = [s for s in requested if s not in available]
    if missing:
        log.warning("Requested species not in table: %s", missing)

    def persist(result):
        step, written = run_step(
            f"write_outputs:{result.species}", write_species_outputs,
            result, output_dir, strict=strict,
            output_summary_fn=lambda out: {"files": len(out[0])},
        )
        pipeline_result.step_results.append(step)
        if written is not None:
            paths, warnings = written
            pipeline_result.output_files.extend(paths)
            step.warnings.extend(warnings)

    results, skipped, species_steps = run_all_species(
        checklists,
        species=requested,
        covariate_schema=covariate_schema,
        dredge_workers=args.dredge_workers,
        gof_workers=args.gof_workers,
        on_result=persist,
        n_boot=args.n_boot,
        seed=args.seed,
        threshold=args.delta_threshold,
        min_obs=args.min_obs,
        max_obs=args.max_obs,
        annual_closure=args.annual_closure,
    )
    pipeline_result.step_results.extend(species_steps)
    pipeline_result.species_fitted = list(results)
    pipeline_result.species_skipped = skipped
    pipeline_result.species_warnings = {
        name: list(r.warnings) for name, r in results.items() if r.warnings
    }

    step, written = run_step(
        "write_run_outputs", write_run_outputs,
        requested, results, skipped, output_dir, strict=strict,
    )
    pipeline_result.step_results.append(step)
    if written is not None:
        paths, warnings = written
        pipeline_result.output_files.extend(paths)
        step.warnings.extend(warnings)

    pipeline_result.total_time_seconds = time.time() - start_time
    return pipeline_result


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Checklist occupancy modelling with AICc model selection"
    )
    parser.add_argument(
        "--input",
        default=config.DEFAULT_INPUT_PATH,
        help="Checklist covariate table (CSV)",
    )
    parser.add_argument(
        "--output-dir",
        default=config.DEFAULT_OUTPUT_DIR,
        dest="output_dir",
        help="Base output directory; each run writes to a timestamped subdirectory",
    )
    parser.add_argument(
        "--species",
        nargs="+",
        default=None,
        help="Scientific names to run (default: every species in the table)",
    )
    parser.add_argument(
        "--dredge-workers",
        type=int,
        default=config.DREDGE_WORKERS,
        dest="dredge_workers",
        help="Worker processes for subset fitting (1 = sequential)",
    )
    parser.add_argument(
        "--gof-workers",
        type=int,
        default=config.GOF_WORKERS,
        dest="gof_workers",
        help="Worker processes for bootstrap refits (1 = sequential)",
    )
    parser.add_argument(
        "--n-boot",
        type=int,
        default=config.GOF_BOOTSTRAP_RESAMPLES,
        dest="n_boot",
        help="Goodness-of-fit bootstrap replicates",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=config.GOF_SEED,
        help="Root seed for the bootstrap",
    )
    parser.add_argument(
        "--delta-threshold",
        type=float,
        default=config.DELTA_AICC_THRESHOLD,
        dest="delta_threshold",
        help="Delta-AICc cut-off for the top model set",
    )
    parser.add_argument(
        "--max-obs",
        type=int,
        default=config.MAX_OBS,
        dest="max_obs",
        help="Occasions kept per site (earliest first)",
    )
    parser.add_argument(
        "--min-obs",
        type=int,
        default=config.MIN_OBS,
        dest="min_obs",
        help="Minimum occasions for a site to be retained",
    )
    parser.add_argument(
        "--annual-closure",
        action="store_true",
        default=config.ANNUAL_CLOSURE,
        dest="annual_closure",
        help="Treat each calendar year at a locality as a separate site",
    )
    parser.add_argument(
        "--strict-validation",
        action="store_true",
        default=False,
        dest="strict_validation",
        help="Abort on schema validation failures (default: warn only)",
    )
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    # Generate a fresh run_id for this pipeline invocation
    run_id = set_run_id()

    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    args.output_dir = os.path.join(args.output_dir, f"run_{stamp}_{run_id}")
    os.makedirs(args.output_dir, exist_ok=True)

    setup_logging(
        run_dir=args.output_dir,
        log_dir=os.path.join(args.output_dir, config.OUTPUT_DIRS["logs"]),
    )
    log.info("Occupancy pipeline (run_id=%s) -> %s", run_id, args.output_dir)

    result = run_pipeline(args)
    save_pipeline_result(result, args.output_dir)

    log.info(
        "Pipeline complete in %.1fs: %d fitted, %d skipped",
        result.total_time_seconds, len(result.species_fitted),
        len(result.species_skipped),
    )
    if result.failed_steps:
        log.warning("Failed steps: %s", [s.step_name for s in result.failed_steps])
        return 1
    log.info("All steps succeeded.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
