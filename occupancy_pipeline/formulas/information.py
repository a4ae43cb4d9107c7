"""
Information-criterion arithmetic for model ranking and averaging.

Citation: Burnham, K.P. & Anderson, D.R. (2002). Model Selection and
          Multimodel Inference, 2nd ed. Springer. Eq. 2.14 (AICc),
          Eq. 4.9 (unconditional SE).
"""

import numpy as np


def aicc(log_likelihood, k, n):
    """Small-sample corrected AIC.

    ``AICc = -2 logL + 2k * n / (n - k - 1)``. When ``n - k - 1 <= 0``
    the correction is undefined and ``inf`` is returned so the model
    ranks last.
    """
    if n - k - 1 <= 0:
        return np.inf
    return -2.0 * log_likelihood + 2.0 * k * (n / (n - k - 1))


def delta_aicc(values):
    """Differences from the minimum finite AICc (NaN entries stay NaN)."""
    values = np.asarray(values, dtype=float)
    finite = np.isfinite(values)
    if not finite.any():
        return np.full(values.shape, np.nan)
    return values - values[finite].min()


def akaike_weights(deltas):
    """Normalised Akaike weights ``exp(-delta/2) / sum(exp(-delta/2))``.

    NaN deltas (failed fits) receive weight 0 and do not enter the
    denominator.
    """
    deltas = np.asarray(deltas, dtype=float)
    rel = np.where(np.isfinite(deltas), np.exp(-0.5 * np.nan_to_num(deltas, nan=np.inf)), 0.0)
    total = rel.sum()
    if total == 0:
        return np.full(deltas.shape, np.nan)
    return rel / total


def unconditional_se(estimates, variances, weights, averaged):
    """Model-averaged unconditional standard error (B&A 2002, Eq. 4.9).

    ``sum_m w_m * sqrt(var_m + (b_m - b_avg)^2)``
    """
    estimates = np.asarray(estimates, dtype=float)
    variances = np.asarray(variances, dtype=float)
    weights = np.asarray(weights, dtype=float)
    return float(np.sum(weights * np.sqrt(variances + (estimates - averaged) ** 2)))
