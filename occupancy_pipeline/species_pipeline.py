"""
Per-species orchestration of the three model-selection analyses.

For each species the detection histories are built once, then:

1. ``null``: the intercept-only model, p(.) psi(.).
2. ``detection``: occupancy held at psi(.), every subset of the
   detection covariates dredged.
3. ``full``: detection fixed to the terms of the top-ranked
   detection-only model, every subset of the site covariates dredged.

The global model of the full analysis is then checked with the
MacKenzie-Bailey bootstrap. Each species yields an immutable
``SpeciesResult``; the batch loop collects them into a mapping keyed by
scientific name, in input order, and records every species it could not
fit together with the reason.
"""

from dataclasses import dataclass, field

import pandas as pd

from occupancy_pipeline import config
from occupancy_pipeline.covariates import CovariateSchema
from occupancy_pipeline.detection_history import build_detection_histories
from occupancy_pipeline.dredge import DETECTION, OCCUPANCY, dredge
from occupancy_pipeline.exceptions import FitNonConvergence
from occupancy_pipeline.goodness_of_fit import mb_gof_test
from occupancy_pipeline.logging_config import get_pipeline_logger, species_context
from occupancy_pipeline.model_averaging import average_models
from occupancy_pipeline.occupancy_model import ModelFormula, fit_occupancy_model
from occupancy_pipeline.parallel import scoped_pool
from occupancy_pipeline.step_runner import run_step

log = get_pipeline_logger(__name__)

NULL_ANALYSIS, DETECTION_ANALYSIS, FULL_ANALYSIS = config.ANALYSES


@dataclass(frozen=True, eq=False)
class AnalysisResult:
    """Dredge and averaged estimates for one analysis of one species."""

    analysis: str
    model_set: object
    averaged: object

    @property
    def best(self):
        return self.model_set.best

    def summary(self):
        best = self.best
        return {
            "analysis": self.analysis,
            "n_candidates": self.model_set.n_candidates,
            "n_failed": len(self.model_set.failed),
            "best": best.formula.label if best else None,
            "n_top": self.averaged.n_top,
            "averaged": self.averaged.averaged,
        }


@dataclass(frozen=True, eq=False)
class SpeciesResult:
    """Everything estimated for one species."""

    species: str
    histories: object
    analyses: dict
    gof: object = None
    gof_formula: str = None
    warnings: tuple = field(default_factory=tuple)

    def __getitem__(self, analysis):
        return self.analyses[analysis]

    def summary(self):
        out = {
            **self.histories.summary(),
            "analyses": [a.summary() for a in self.analyses.values()],
        }
        if self.gof is not None:
            out["gof"] = self.gof.to_dict()
        return out


def _run_analysis(histories, global_formula, free, analysis, executor,
                  threshold, max_iter):
    model_set = dredge(
        histories, global_formula, free=free, executor=executor,
        max_iter=max_iter, analysis=analysis,
    )
    averaged = average_models(model_set, threshold=threshold)
    return AnalysisResult(analysis=analysis, model_set=model_set, averaged=averaged)


def _global_model(analysis_result, histories, max_iter):
    """The fitted global model of an analysis, refitted if its entry failed."""
    target = analysis_result.model_set.global_formula
    for entry in analysis_result.model_set.entries:
        if entry.formula == target and entry.converged:
            return entry.model
    return fit_occupancy_model(histories, target, max_iter=max_iter)


def run_species(
    checklists,
    species,
    covariate_schema=None,
    dredge_executor=None,
    gof_executor=None,
    n_boot=None,
    seed=None,
    threshold=None,
    max_iter=None,
    min_obs=None,
    max_obs=None,
    n_days=None,
    annual_closure=None,
):
    """Run the null, detection and full analyses plus GoF for one species.

    Parameters
    ----------
    checklists : pd.DataFrame
        Checklist table holding (at least) this species' rows.
    species : str
        Scientific name.
    covariate_schema : CovariateSchema, optional
        Default: CovariateSchema().
    dredge_executor, gof_executor : Executor, optional
        Pools from parallel.scoped_pool(); None runs sequentially.
    n_boot, seed : int, optional
        GoF bootstrap size and root seed (config defaults).
    threshold : float, optional
        Delta-AICc top-set cut-off (config default).
    max_iter : int, optional
        Optimizer iteration cap (config default).
    min_obs, max_obs, n_days, annual_closure : optional
        Detection-history settings (config defaults).

    Returns
    -------
    SpeciesResult

    Raises
    ------
    NoQualifyingData
        If the species has no qualifying site.
    UnfittableSpecies
        If every candidate of an analysis failed to converge.
    """
    if covariate_schema is None:
        covariate_schema = CovariateSchema()
    cs = covariate_schema

    histories = build_detection_histories(
        checklists, species=species, covariate_schema=cs,
        min_obs=min_obs, max_obs=max_obs, n_days=n_days,
        annual_closure=annual_closure,
    )
    log.info(
        "%s: %d sites, %d occasions, %d detections",
        species, histories.n_sites, histories.n_occasions, histories.n_detections,
        extra={"input_summary": histories.filter_report},
    )

    analyses = {}
    analyses[NULL_ANALYSIS] = _run_analysis(
        histories, ModelFormula(), (OCCUPANCY, DETECTION), NULL_ANALYSIS,
        dredge_executor, threshold, max_iter,
    )

    detection_result = _run_analysis(
        histories, ModelFormula(detection=cs.detection_terms), (DETECTION,),
        DETECTION_ANALYSIS, dredge_executor, threshold, max_iter,
    )
    analyses[DETECTION_ANALYSIS] = detection_result

    selected_detection = detection_result.best.formula.detection
    full_result = _run_analysis(
        histories,
        ModelFormula(detection=selected_detection, occupancy=cs.occupancy_terms),
        (OCCUPANCY,), FULL_ANALYSIS, dredge_executor, threshold, max_iter,
    )
    analyses[FULL_ANALYSIS] = full_result

    warnings = []
    gof = None
    gof_formula = full_result.model_set.global_formula.label
    try:
        global_model = _global_model(full_result, histories, max_iter)
    except FitNonConvergence as exc:
        log.warning("%s: global model did not converge, GoF not run: %s", species, exc)
        warnings.append(f"GoF not run: global model did not converge ({exc})")
    else:
        gof = mb_gof_test(
            global_model, histories, n_boot=n_boot, seed=seed, executor=gof_executor,
        )

    if gof is not None and gof.low_confidence:
        warnings.append(
            f"GoF based on {gof.n_boot_effective}/{gof.n_boot_requested} replicates"
        )
    for result in analyses.values():
        n_failed = len(result.model_set.failed)
        if n_failed:
            warnings.append(
                f"{result.analysis}: {n_failed} of "
                f"{result.model_set.n_candidates} candidates did not converge"
            )

    return SpeciesResult(
        species=species,
        histories=histories,
        analyses=analyses,
        gof=gof,
        gof_formula=gof_formula,
        warnings=tuple(warnings),
    )


def species_labels(checklists, covariate_schema=None):
    """Species names in order of first appearance in the table."""
    if covariate_schema is None:
        covariate_schema = CovariateSchema()
    return [str(s) for s in pd.unique(checklists[covariate_schema.species_column].dropna())]


def run_all_species(
    checklists,
    species=None,
    covariate_schema=None,
    dredge_workers=None,
    gof_workers=None,
    on_result=None,
    **options,
):
    """Run every species sequentially on two shared worker pools.

    Parameters
    ----------
    checklists : pd.DataFrame
        Full checklist table; read-only.
    species : list[str], optional
        Species to run. Default: every label in input order.
    covariate_schema : CovariateSchema, optional
    dredge_workers, gof_workers : int, optional
        Pool sizes. Default: config.DREDGE_WORKERS / config.GOF_WORKERS.
    on_result : callable, optional
        Called with each SpeciesResult as soon as it completes
        (e.g. to persist outputs).
    **options
        Forwarded to run_species().

    Returns
    -------
    tuple[dict, dict, list]
        (results keyed by species, skipped species -> reason,
        per-species StepResults).
    """
    if covariate_schema is None:
        covariate_schema = CovariateSchema()
    if dredge_workers is None:
        dredge_workers = config.DREDGE_WORKERS
    if gof_workers is None:
        gof_workers = config.GOF_WORKERS
    if species is None:
        species = species_labels(checklists, covariate_schema)

    results = {}
    skipped = {}
    step_results = []

    with scoped_pool(dredge_workers, name="dredge pool") as dredge_pool, \
            scoped_pool(gof_workers, name="GoF pool") as gof_pool:
        for i, name in enumerate(species, start=1):
            log.info("[%d/%d] %s", i, len(species), name)
            with species_context(name):
                step, result = run_step(
                    f"species:{name}",
                    run_species,
                    checklists,
                    name,
                    covariate_schema=covariate_schema,
                    dredge_executor=dredge_pool,
                    gof_executor=gof_pool,
                    input_summary={"species": name},
                    output_summary_fn=lambda r: {
                        "n_sites": r.histories.n_sites,
                        "best_full": r[FULL_ANALYSIS].best.formula.label,
                        "gof_p_value": r.gof.p_value if r.gof is not None else None,
                    },
                    **options,
                )
            step_results.append(step)

            if result is None:
                skipped[name] = step.reason or step.status
                continue
            step.warnings.extend(result.warnings)
            results[name] = result
            if on_result is not None:
                on_result(result)

    log.info(
        "Species complete: %d fitted, %d skipped", len(results), len(skipped),
        extra={"output_summary": {"fitted": len(results), "skipped": len(skipped)}},
    )
    return results, skipped, step_results
