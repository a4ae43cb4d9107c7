"""
MacKenzie-Bailey goodness-of-fit test for occupancy models.

METHODOLOGY:
The discrepancy is a Pearson chi-square between observed and expected
detection-history frequencies. Sites are grouped into cohorts sharing
the same pattern of missing occasions; within a cohort every one of the
2^K possible histories is enumerated and its expected count is the sum,
over the cohort's sites, of that history's probability under the fitted
model. The null distribution comes from a parametric bootstrap: data
are simulated from the fitted model, the same formula is refitted, and
the statistic is recomputed. ``c_hat = observed / mean(bootstrap)``
estimates overdispersion.

Each replicate draws from its own child of a SeedSequence, so results do
not depend on how replicates are spread over workers. Replicates whose
refit fails are excluded; the effective count is reported and a result
built from too few replicates is flagged low-confidence.

Citation: MacKenzie, D.I. & Bailey, L.L. (2004). Assessing the fit of
          site-occupancy models. JABES, 9(3), 300-318.
"""

from dataclasses import dataclass, field

import numpy as np

from occupancy_pipeline import config
from occupancy_pipeline.exceptions import BootstrapRefitFailure, FitNonConvergence
from occupancy_pipeline.logging_config import get_pipeline_logger
from occupancy_pipeline.occupancy_model import fit_occupancy_model, simulate_detections
from occupancy_pipeline.parallel import map_tasks

log = get_pipeline_logger(__name__)

_PROB_FLOOR = 1e-12


@dataclass(frozen=True, eq=False)
class GofResult:
    """Outcome of one bootstrap goodness-of-fit test."""

    species: str
    formula: str
    chi_square: float
    p_value: float
    c_hat: float
    n_boot_requested: int
    n_boot_effective: int
    low_confidence: bool
    bootstrap: np.ndarray = field(default=None, repr=False)

    def to_dict(self):
        return {
            "species": self.species,
            "formula": self.formula,
            "chi_square": self.chi_square,
            "p_value": self.p_value,
            "c_hat": self.c_hat,
            "n_boot_requested": self.n_boot_requested,
            "n_boot_effective": self.n_boot_effective,
            "low_confidence": self.low_confidence,
        }


def _history_matrix(n_occasions):
    """All 2^K histories as rows; row index equals the binary code."""
    codes = np.arange(2 ** n_occasions)[:, None]
    shifts = np.arange(n_occasions)[::-1]
    return ((codes >> shifts) & 1).astype(float)


def history_chisq(y, psi, p):
    """Pearson chi-square over detection-history frequencies.

    Parameters
    ----------
    y : np.ndarray
        n x K detections, NaN for missing occasions.
    psi : np.ndarray
        Occupancy probability per site (n).
    p : np.ndarray
        n x K detection probabilities.

    Returns
    -------
    float
    """
    observed_mask = ~np.isnan(y)
    patterns, cohort = np.unique(observed_mask, axis=0, return_inverse=True)
    cohort = np.ravel(cohort)
    p = np.clip(np.nan_to_num(p, nan=0.5), _PROB_FLOOR, 1 - _PROB_FLOOR)

    chisq = 0.0
    for c, pattern in enumerate(patterns):
        cols = np.flatnonzero(pattern)
        if cols.size == 0:
            continue
        rows = np.flatnonzero(cohort == c)
        yc = y[np.ix_(rows, cols)]
        pc = p[np.ix_(rows, cols)]
        psic = psi[rows]

        H = _history_matrix(cols.size)
        log_hist = np.log(pc) @ H.T + np.log1p(-pc) @ (1.0 - H).T
        probs = psic[:, None] * np.exp(log_hist)
        probs[:, 0] += 1.0 - psic
        expected = probs.sum(axis=0)

        weights = 1 << np.arange(cols.size)[::-1]
        codes = yc.astype(int) @ weights
        observed = np.bincount(codes, minlength=H.shape[0])

        valid = expected > 0
        chisq += float(np.sum((observed[valid] - expected[valid]) ** 2 / expected[valid]))
    return chisq


def mb_chisq(fitted, histories):
    """MacKenzie-Bailey chi-square of *fitted* against *histories*."""
    return history_chisq(
        histories.y, fitted.predict_psi(histories), fitted.predict_p(histories),
    )


def refit_replicate(fitted, histories, seed):
    """Simulate one dataset from *fitted*, refit it and return the statistic.

    A simulated dataset identical to the observed one returns the observed
    statistic without refitting.

    Raises
    ------
    BootstrapRefitFailure
        If the refit does not converge.
    """
    rng = np.random.default_rng(seed)
    simulated = histories.with_detections(simulate_detections(fitted, histories, rng))
    # Same data, same MLE: reuse the observed fit so the statistic ties exactly.
    if np.array_equal(simulated.y, histories.y, equal_nan=True):
        return mb_chisq(fitted, histories)
    try:
        refit = fit_occupancy_model(
            simulated, fitted.formula, start=fitted.params, compute_vcov=False,
        )
    except FitNonConvergence as exc:
        raise BootstrapRefitFailure(str(exc)) from exc
    return mb_chisq(refit, simulated)


def _bootstrap_replicate(task):
    """Worker function: one bootstrap replicate, None if the refit failed."""
    fitted, histories, seed = task
    try:
        return refit_replicate(fitted, histories, seed)
    except BootstrapRefitFailure as exc:
        log.debug("Bootstrap replicate dropped: %s", exc)
        return None


def mb_gof_test(
    fitted,
    histories,
    n_boot=None,
    seed=None,
    executor=None,
    min_effective_fraction=None,
    tie_tolerance=None,
):
    """Parametric bootstrap MacKenzie-Bailey goodness-of-fit test.

    Parameters
    ----------
    fitted : FittedModel
        Usually the global model of the full analysis.
    histories : DetectionHistories
        The data *fitted* was estimated from.
    n_boot : int, optional
        Replicates requested. Default: config.GOF_BOOTSTRAP_RESAMPLES (1000).
    seed : int, optional
        Root seed. Default: config.GOF_SEED.
    executor : concurrent.futures.Executor, optional
        Pool from parallel.scoped_pool(); None runs sequentially.
    min_effective_fraction : float, optional
        Share of successful replicates below which the result is
        low-confidence. Default: config.GOF_MIN_EFFECTIVE_FRACTION.
    tie_tolerance : float, optional
        Bootstrap statistics within this of the observed one count as
        ">=". Default: config.GOF_TIE_TOLERANCE (0, a plain ">=").

    Returns
    -------
    GofResult
    """
    if n_boot is None:
        n_boot = config.GOF_BOOTSTRAP_RESAMPLES
    if seed is None:
        seed = config.GOF_SEED
    if min_effective_fraction is None:
        min_effective_fraction = config.GOF_MIN_EFFECTIVE_FRACTION
    if tie_tolerance is None:
        tie_tolerance = config.GOF_TIE_TOLERANCE
    if n_boot < 1:
        raise ValueError(f"n_boot must be positive, got {n_boot}")

    observed = mb_chisq(fitted, histories)

    seeds = np.random.SeedSequence(seed).spawn(n_boot)
    tasks = [(fitted, histories, s) for s in seeds]
    results = map_tasks(_bootstrap_replicate, tasks, executor=executor)
    boot = np.array([r for r in results if r is not None], dtype=float)
    n_effective = len(boot)

    if n_effective == 0:
        p_value, c_hat = np.nan, np.nan
    else:
        p_value = float(np.mean(boot >= observed - tie_tolerance))
        boot_mean = float(boot.mean())
        c_hat = observed / boot_mean if boot_mean > 0 else np.nan

    low_confidence = n_effective < min_effective_fraction * n_boot
    if n_effective < n_boot:
        log.warning(
            "GoF for %s: %d of %d bootstrap refits failed%s",
            histories.species, n_boot - n_effective, n_boot,
            " (low confidence)" if low_confidence else "",
        )

    result = GofResult(
        species=histories.species,
        formula=fitted.formula.label,
        chi_square=observed,
        p_value=p_value,
        c_hat=c_hat,
        n_boot_requested=n_boot,
        n_boot_effective=n_effective,
        low_confidence=bool(low_confidence),
        bootstrap=boot,
    )
    log.info(
        "GoF for %s: chi2=%.2f p=%.3f c-hat=%.2f (B=%d/%d)",
        histories.species, observed, p_value, c_hat, n_effective, n_boot,
    )
    return result
