"""
Exhaustive subset fitting ("dredging") of a global occupancy model.

Given a global formula and which submodels are free, every combination
of the free terms is fitted independently, with the fixed submodel's
terms always included. For m free terms that is 2^m candidates,
including the intercept-only one. Candidates whose fit does not
converge stay in the model set as non-evaluable entries and are left
out of the delta-AICc and weight denominators.

Ranking is ascending AICc with ties broken by fewer parameters, so the
order in which subsets are enumerated or returned by workers does not
affect the result.
"""

from dataclasses import dataclass
from itertools import chain, combinations

import numpy as np
import pandas as pd

from occupancy_pipeline import config
from occupancy_pipeline.exceptions import FitNonConvergence
from occupancy_pipeline.formulas.information import akaike_weights, delta_aicc
from occupancy_pipeline.logging_config import get_pipeline_logger
from occupancy_pipeline.occupancy_model import ModelFormula, fit_occupancy_model
from occupancy_pipeline.parallel import map_tasks

log = get_pipeline_logger(__name__)

OCCUPANCY = "occupancy"
DETECTION = "detection"

FITTED = "fitted"
NON_CONVERGENT = "non_convergent"


@dataclass(frozen=True, eq=False)
class DredgeEntry:
    """One candidate formula and its fit (or the reason it has none)."""

    formula: ModelFormula
    model: object = None
    error: str = None

    @property
    def converged(self):
        return self.model is not None

    @property
    def status(self):
        return FITTED if self.converged else NON_CONVERGENT

    @property
    def aicc(self):
        return self.model.aicc if self.converged else np.nan

    @property
    def k(self):
        return self.formula.n_params


def all_subsets(terms):
    """Every subset of *terms* (empty first), preserving term order."""
    terms = tuple(terms)
    return [
        tuple(combo)
        for combo in chain.from_iterable(
            combinations(terms, r) for r in range(len(terms) + 1)
        )
    ]


def candidate_formulas(global_formula, free=(OCCUPANCY,)):
    """Enumerate sub-formulas of *global_formula* over the free submodels.

    Parameters
    ----------
    global_formula : ModelFormula
    free : tuple of {"occupancy", "detection"}
        Submodels whose terms are included or excluded. Terms of a
        submodel not listed are held fixed.

    Returns
    -------
    list[ModelFormula]
        2 ** (number of free terms) formulas.
    """
    unknown = set(free) - {OCCUPANCY, DETECTION}
    if unknown:
        raise ValueError(f"Unknown submodel(s): {sorted(unknown)}")

    det_sets = (all_subsets(global_formula.detection) if DETECTION in free
                else [global_formula.detection])
    occ_sets = (all_subsets(global_formula.occupancy) if OCCUPANCY in free
                else [global_formula.occupancy])
    return [ModelFormula(detection=d, occupancy=o) for d in det_sets for o in occ_sets]


def rank_entries(entries):
    """Sort by AICc, then parameter count; failed fits go last."""
    def key(entry):
        if entry.converged:
            return (0, entry.aicc, entry.k)
        return (1, np.inf, entry.k)
    return sorted(entries, key=key)


def _fit_candidate(task):
    """Worker function: fit one candidate formula.

    Args:
        task: Tuple of (histories, formula, max_iter).

    Returns:
        DredgeEntry; non-convergence is captured, not raised.
    """
    histories, formula, max_iter = task
    try:
        model = fit_occupancy_model(histories, formula, max_iter=max_iter)
    except FitNonConvergence as exc:
        return DredgeEntry(formula=formula, error=str(exc))
    return DredgeEntry(formula=formula, model=model)


@dataclass(frozen=True, eq=False)
class ModelSet:
    """Ranked dredge result for one species and one analysis."""

    species: str
    analysis: str
    global_formula: ModelFormula
    entries: tuple

    @property
    def fitted(self):
        return [e for e in self.entries if e.converged]

    @property
    def failed(self):
        return [e for e in self.entries if not e.converged]

    @property
    def n_candidates(self):
        return len(self.entries)

    @property
    def best(self):
        fitted = self.fitted
        return fitted[0] if fitted else None

    def deltas(self):
        """Delta-AICc per entry (NaN for failed fits)."""
        return delta_aicc([e.aicc for e in self.entries])

    def weights(self):
        """Akaike weights over every fitted entry."""
        return akaike_weights(self.deltas())

    def table(self):
        """Dredge table: one row per candidate, one column per coefficient."""
        columns = self.global_formula.coefficient_names
        deltas = self.deltas()
        weights = self.weights()

        rows = []
        for entry, delta, weight in zip(self.entries, deltas, weights):
            row = {"formula": entry.formula.label}
            for name in columns:
                row[name] = entry.model.coef.get(name, np.nan) if entry.converged else np.nan
            row.update({
                "df": entry.k,
                "logLik": entry.model.log_likelihood if entry.converged else np.nan,
                "AICc": entry.aicc,
                "delta": delta,
                "weight": weight,
                "status": entry.status,
                "error": entry.error,
            })
            rows.append(row)
        return pd.DataFrame(rows)


def dredge(
    histories,
    global_formula,
    free=(OCCUPANCY,),
    executor=None,
    max_iter=None,
    max_terms=None,
    analysis="full",
):
    """Fit every sub-model of *global_formula* and rank by AICc.

    Parameters
    ----------
    histories : DetectionHistories
        Shared, read-only input for every fit.
    global_formula : ModelFormula
    free : tuple
        Submodels whose terms vary ("occupancy", "detection", or both).
    executor : concurrent.futures.Executor, optional
        Pool from parallel.scoped_pool(); None fits sequentially.
    max_iter : int, optional
        Optimizer iteration cap. Default: config.MAX_OPTIMIZER_ITERATIONS.
    max_terms : int, optional
        Largest number of free terms allowed. Default: config.MAX_DREDGE_TERMS.
    analysis : str
        Label carried into the result and logs.

    Returns
    -------
    ModelSet
    """
    if max_iter is None:
        max_iter = config.MAX_OPTIMIZER_ITERATIONS
    if max_terms is None:
        max_terms = config.MAX_DREDGE_TERMS

    n_free = (len(global_formula.occupancy) if OCCUPANCY in free else 0) + \
             (len(global_formula.detection) if DETECTION in free else 0)
    if n_free > max_terms:
        raise ValueError(
            f"{n_free} free terms would need {2 ** n_free} fits "
            f"(limit: {max_terms} terms)"
        )

    formulas = candidate_formulas(global_formula, free=free)
    tasks = [(histories, formula, max_iter) for formula in formulas]
    entries = map_tasks(_fit_candidate, tasks, executor=executor)

    model_set = ModelSet(
        species=histories.species,
        analysis=analysis,
        global_formula=global_formula,
        entries=tuple(rank_entries(entries)),
    )
    n_failed = len(model_set.failed)
    log.info(
        "Dredged %s (%s): %d candidates, %d non-convergent, best %s",
        histories.species, analysis, len(formulas), n_failed,
        model_set.best.formula.label if model_set.best else "none",
        extra={"analysis": analysis, "n_models": len(formulas), "n_failed": n_failed},
    )
    return model_set
