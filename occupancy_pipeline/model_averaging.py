"""
Top-set selection and AICc-weighted model averaging.

METHODOLOGY:
Models within ``DELTA_AICC_THRESHOLD`` (4) AICc units of the best form
the top set. When the top set holds a single model its own estimates
pass through unchanged. Otherwise each coefficient is averaged with
Akaike weights recomputed over the top set, using "full" averaging: a
model that omits a term contributes an estimate (and variance) of 0,
which shrinks weakly supported terms toward zero. The unconditional SE
adds between-model spread to within-model variance (Burnham & Anderson
2002, Eq. 4.9). Relative importance of a term is the summed weight of
the top-set models containing it.

Citation: Burnham, K.P. & Anderson, D.R. (2002). Model Selection and
          Multimodel Inference, 2nd ed. Springer, Sections 4.2-4.3.
          Barton, K. (2023). MuMIn: Multi-Model Inference. R package.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import stats

from occupancy_pipeline import config
from occupancy_pipeline.exceptions import UnfittableSpecies
from occupancy_pipeline.formulas.information import (
    akaike_weights,
    delta_aicc,
    unconditional_se,
)
from occupancy_pipeline.logging_config import get_pipeline_logger
from occupancy_pipeline.occupancy_model import submodel_of

log = get_pipeline_logger(__name__)

ESTIMATE_COLUMNS = [
    "coefficient", "submodel", "estimate", "se", "ci_lower", "ci_upper",
    "z", "p_value", "importance", "n_models",
]


@dataclass(frozen=True, eq=False)
class AveragedEstimate:
    """Per-coefficient estimates for one species and analysis.

    The same shape is returned whether or not averaging happened;
    ``averaged`` is False when the top set held one model, in which case
    ``importance`` is NaN.
    """

    species: str
    analysis: str
    table: pd.DataFrame
    averaged: bool
    top_formulas: tuple
    weights: tuple

    @property
    def n_top(self):
        return len(self.top_formulas)

    @property
    def coefficients(self):
        return self.table.set_index("coefficient")["estimate"]

    def block(self, submodel):
        """Rows for one submodel: ``"state"`` (occupancy) or ``"det"``."""
        return self.table[self.table["submodel"] == submodel].reset_index(drop=True)

    def importance_table(self):
        """Relative importance of each non-intercept term."""
        terms = self.table[~self.table["coefficient"].str.endswith("(Int)")]
        return terms[["coefficient", "submodel", "importance", "n_models"]].reset_index(drop=True)

    def top_set_table(self):
        return pd.DataFrame({"formula": list(self.top_formulas), "weight": list(self.weights)})


def select_top_set(model_set, threshold=None):
    """Return ``[(entry, delta), ...]`` for fitted models with delta < threshold.

    Raises
    ------
    UnfittableSpecies
        If no candidate in the set converged, or every converged
        candidate has an undefined (infinite) AICc because there are too
        few sites for its parameter count.
    """
    if threshold is None:
        threshold = config.DELTA_AICC_THRESHOLD

    converged = model_set.fitted
    fitted = [e for e in converged if np.isfinite(e.aicc)]
    if not converged:
        raise UnfittableSpecies(
            f"None of {model_set.n_candidates} candidate models converged "
            f"({model_set.analysis} analysis)"
        )
    if not fitted:
        n_sites = converged[0].model.n_sites
        raise UnfittableSpecies(
            f"AICc undefined for all {len(converged)} converged models: "
            f"{n_sites} sites is too few for k + 1 "
            f"({model_set.analysis} analysis)"
        )
    deltas = delta_aicc([e.aicc for e in fitted])
    return [(e, d) for e, d in zip(fitted, deltas) if d < threshold]


def _single_model_table(model, ci_level):
    table = model.estimates_table(ci_level=ci_level)
    table["importance"] = np.nan
    table["n_models"] = 1
    return table[ESTIMATE_COLUMNS]


def _averaged_table(models, weights, coefficient_order, ci_level):
    z_crit = stats.norm.ppf(0.5 + ci_level / 2)
    present = set().union(*(m.coef.index for m in models))
    names = [c for c in coefficient_order if c in present]

    rows = []
    for name in names:
        contains = np.array([name in m.coef.index for m in models])
        estimates = np.array([m.coef.get(name, 0.0) for m in models], dtype=float)
        variances = np.array(
            [m.se[name] ** 2 if name in m.coef.index else 0.0 for m in models],
            dtype=float,
        )
        estimate = float(np.sum(weights * estimates))
        se = unconditional_se(estimates, variances, weights, estimate)
        with np.errstate(divide="ignore", invalid="ignore"):
            z = estimate / se
        rows.append({
            "coefficient": name,
            "submodel": submodel_of(name),
            "estimate": estimate,
            "se": se,
            "ci_lower": estimate - z_crit * se,
            "ci_upper": estimate + z_crit * se,
            "z": z,
            "p_value": 2 * stats.norm.sf(abs(z)),
            "importance": float(np.sum(weights[contains])),
            "n_models": int(contains.sum()),
        })
    return pd.DataFrame(rows, columns=ESTIMATE_COLUMNS)


def average_models(model_set, threshold=None, ci_level=None):
    """Select the top set of *model_set* and produce averaged estimates.

    Parameters
    ----------
    model_set : dredge.ModelSet
    threshold : float, optional
        Delta-AICc cut-off. Default: config.DELTA_AICC_THRESHOLD (4).
    ci_level : float, optional
        Confidence level. Default: config.CI_LEVEL (0.95).

    Returns
    -------
    AveragedEstimate
    """
    if ci_level is None:
        ci_level = config.CI_LEVEL

    top = select_top_set(model_set, threshold=threshold)
    models = [entry.model for entry, _ in top]
    weights = akaike_weights([delta for _, delta in top])
    formulas = tuple(m.formula.label for m in models)

    if len(models) == 1:
        table = _single_model_table(models[0], ci_level)
        averaged = False
        log.info(
            "%s (%s): single model in top set, no averaging",
            model_set.species, model_set.analysis,
            extra={"analysis": model_set.analysis, "n_models": 1},
        )
    else:
        table = _averaged_table(
            models, weights, model_set.global_formula.coefficient_names, ci_level,
        )
        averaged = True
        log.info(
            "%s (%s): averaged %d models in top set",
            model_set.species, model_set.analysis, len(models),
            extra={"analysis": model_set.analysis, "n_models": len(models)},
        )

    return AveragedEstimate(
        species=model_set.species,
        analysis=model_set.analysis,
        table=table.reset_index(drop=True),
        averaged=averaged,
        top_formulas=formulas,
        weights=tuple(float(w) for w in weights),
    )
