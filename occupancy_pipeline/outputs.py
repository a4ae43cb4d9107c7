"""
CSV and JSON writers for per-species and run-level results.

Layout under the run's output directory::

    species/<slug>/dredge_<analysis>.csv
    species/<slug>/averaged_<analysis>.csv
    species/<slug>/importance_<analysis>.csv
    species/<slug>/topset_<analysis>.csv
    species/<slug>/best_model_<analysis>.csv
    species/<slug>/filtering.csv
    gof_summary.csv
    species_status.csv
    pipeline_run.json

``averaged_<analysis>.csv`` is the estimate table for an analysis
(coefficient, SE, CI, z, p and importance, with a ``submodel`` column
separating the state and det blocks); it holds the model-averaged values,
or the sole top model's own estimates when the top set has one model.
``best_model_<analysis>.csv`` is the Wald table of the top-ranked model
alone, and ``topset_<analysis>.csv`` lists the top-set formulas with
their Akaike weights.

Tables pass through the pandera validation gates before they are
written; in lenient mode violations are logged and returned as warnings.
"""

import json
import os
import re

import numpy as np
import pandas as pd

from occupancy_pipeline import config
from occupancy_pipeline.detection_history import summarize_filtering
from occupancy_pipeline.logging_config import get_pipeline_logger
from occupancy_pipeline.schemas import (
    DredgeTableSchema,
    EstimateSchema,
    GofSummarySchema,
    validate_schema,
)

log = get_pipeline_logger(__name__)

GOF_COLUMNS = [
    "species", "formula", "chi_square", "p_value", "c_hat",
    "n_boot_requested", "n_boot_effective", "low_confidence",
]


def species_slug(species):
    """Filesystem-safe directory name for a scientific name."""
    slug = re.sub(r"[^0-9a-zA-Z]+", "_", species.strip()).strip("_").lower()
    return slug or "unnamed"


def species_dir(output_dir, species):
    path = os.path.join(output_dir, config.OUTPUT_DIRS["species"], species_slug(species))
    os.makedirs(path, exist_ok=True)
    return path


def _write_csv(df, path):
    df.to_csv(path, index=False)
    log.debug("Wrote %s (%d rows)", path, len(df))
    return path


def write_species_outputs(result, output_dir, strict=False):
    """Write every table for one SpeciesResult.

    Parameters
    ----------
    result : SpeciesResult
    output_dir : str
        Run output directory.
    strict : bool
        Raise on schema violations instead of collecting warnings.

    Returns
    -------
    tuple[list[str], list[str]]
        (written paths, validation warnings).
    """
    out_dir = species_dir(output_dir, result.species)
    paths = []
    warnings = []

    for analysis, analysis_result in result.analyses.items():
        step = f"{result.species}:{analysis}"

        dredge_table = analysis_result.model_set.table()
        warnings += validate_schema(dredge_table, DredgeTableSchema,
                                    f"{step}:dredge", strict=strict)
        paths.append(_write_csv(dredge_table,
                                os.path.join(out_dir, f"dredge_{analysis}.csv")))

        averaged = analysis_result.averaged.table
        warnings += validate_schema(averaged, EstimateSchema,
                                    f"{step}:averaged", strict=strict)
        paths.append(_write_csv(averaged,
                                os.path.join(out_dir, f"averaged_{analysis}.csv")))

        paths.append(_write_csv(analysis_result.averaged.importance_table(),
                                os.path.join(out_dir, f"importance_{analysis}.csv")))

        paths.append(_write_csv(analysis_result.averaged.top_set_table(),
                                os.path.join(out_dir, f"topset_{analysis}.csv")))

        best = analysis_result.best
        best_table = best.model.estimates_table()
        best_table.insert(0, "formula", best.formula.label)
        warnings += validate_schema(best_table, EstimateSchema,
                                    f"{step}:best_model", strict=strict)
        paths.append(_write_csv(best_table,
                                os.path.join(out_dir, f"best_model_{analysis}.csv")))

    filtering = summarize_filtering(result.histories.filter_report)
    paths.append(_write_csv(filtering, os.path.join(out_dir, "filtering.csv")))

    log.info("Saved %d tables for %s to %s", len(paths), result.species, out_dir)
    return paths, warnings


def gof_summary_table(results):
    """One row per species with a goodness-of-fit result."""
    rows = [r.gof.to_dict() for r in results.values() if r.gof is not None]
    return pd.DataFrame(rows, columns=GOF_COLUMNS)


def species_status_table(species, results, skipped):
    """Status of every requested species, in request order."""
    rows = []
    for name in species:
        if name in results:
            rows.append({"species": name, "status": "fitted", "reason": None})
        else:
            rows.append({
                "species": name,
                "status": "skipped",
                "reason": skipped.get(name, "not run"),
            })
    return pd.DataFrame(rows, columns=["species", "status", "reason"])


def write_run_outputs(species, results, skipped, output_dir, strict=False):
    """Write the run-level GoF summary and species status tables.

    Returns
    -------
    tuple[list[str], list[str]]
        (written paths, validation warnings).
    """
    os.makedirs(output_dir, exist_ok=True)
    paths = []
    warnings = []

    gof = gof_summary_table(results)
    if not gof.empty:
        warnings += validate_schema(gof, GofSummarySchema, "gof_summary", strict=strict)
    paths.append(_write_csv(gof, os.path.join(output_dir, "gof_summary.csv")))

    status = species_status_table(species, results, skipped)
    paths.append(_write_csv(status, os.path.join(output_dir, "species_status.csv")))

    n_skipped = int((status["status"] == "skipped").sum())
    if n_skipped:
        log.warning("%d of %d species skipped; see species_status.csv",
                    n_skipped, len(status))
    return paths, warnings


def _json_default(value):
    if isinstance(value, np.generic):
        return value.item()
    return str(value)


def save_pipeline_result(pipeline_result, output_dir):
    """Save PipelineRunResult as JSON for provenance."""
    result_path = os.path.join(output_dir, "pipeline_run.json")
    with open(result_path, "w") as f:
        json.dump(pipeline_result.to_dict(), f, indent=2, default=_json_default)
    log.info("Pipeline result saved: %s", result_path)
    return result_path
