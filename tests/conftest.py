"""
Shared fixtures for occupancy pipeline tests.

Provides synthetic checklist tables simulated from a known occupancy
process, a reduced covariate schema that keeps dredges small, and
helpers for building detection histories directly from arrays, so each
test module can focus on verifying model logic against known inputs.
"""

import numpy as np
import pandas as pd
import pytest
from scipy.special import expit

from occupancy_pipeline.covariates import CovariateSchema
from occupancy_pipeline.detection_history import DetectionHistories


# ---------------------------------------------------------------------------
# Constants for the synthetic survey
# ---------------------------------------------------------------------------
SPECIES = "Anas acuta"
SURVEY_START = pd.Timestamp("2022-01-05")
VISIT_SPACING_DAYS = 3

# True parameters on the logit scale
PSI_INTERCEPT = 0.3
PSI_ELEVATION = 1.2
P_INTERCEPT = -0.2
P_DURATION = 0.8

SITE_COVARIATE_NAMES = (
    "elevation", "temp_seasonality", "precip_seasonality", "lc_forest",
    "lc_shrubland", "lc_grassland", "lc_cropland", "lc_urban", "lc_water",
)


def make_checklists(n_sites=60, n_visits=5, species=SPECIES, seed=0,
                    psi_intercept=PSI_INTERCEPT, psi_elevation=PSI_ELEVATION,
                    p_intercept=P_INTERCEPT, p_duration=P_DURATION,
                    start=SURVEY_START):
    """Simulate a checklist table with every configured column.

    Occupancy depends on ``elevation`` and detection on
    ``duration_minutes``; every other covariate is noise. Visits are
    ``VISIT_SPACING_DAYS`` apart starting at *start*, all at 07:30.
    Even-numbered visits are Stationary with zero distance.
    """
    rng = np.random.default_rng(seed)
    site_covs = {name: rng.uniform(-2, 2, n_sites) for name in SITE_COVARIATE_NAMES}
    occupied = rng.random(n_sites) < expit(psi_intercept + psi_elevation * site_covs["elevation"])

    rows = []
    for i in range(n_sites):
        for j in range(n_visits):
            duration = rng.uniform(-2, 2)
            stationary = j % 2 == 0
            detected = occupied[i] and rng.random() < expit(p_intercept + p_duration * duration)
            row = {
                "scientific_name": species,
                "locality_id": f"L{i:04d}",
                "observation_date": (start + pd.Timedelta(days=VISIT_SPACING_DAYS * j)).strftime("%Y-%m-%d"),
                "time_observations_started": "07:30:00",
                "protocol_type": "Stationary" if stationary else "Traveling",
                "species_observed": int(detected),
                "duration_minutes": duration,
                "effort_distance_km": 0.0 if stationary else rng.uniform(0.2, 2.0),
                "number_observers": rng.uniform(-1, 1),
                "observer_experience": rng.uniform(-1, 1),
            }
            row.update({name: site_covs[name][i] for name in SITE_COVARIATE_NAMES})
            rows.append(row)
    return pd.DataFrame(rows)


def make_histories(y, site_covs=None, obs_covs=None, species="Test species"):
    """Wrap raw arrays as DetectionHistories (dates left empty)."""
    y = np.asarray(y, dtype=float)
    n = y.shape[0]
    if site_covs is None:
        site_covs = pd.DataFrame(index=range(n))
    return DetectionHistories(
        species=species,
        site_ids=np.array([f"S{i}" for i in range(n)], dtype=object),
        y=y,
        obs_covs=obs_covs or {},
        site_covs=pd.DataFrame(site_covs).reset_index(drop=True),
        dates=np.full(y.shape, np.datetime64("NaT"), dtype="datetime64[ns]"),
    )


def simulate_history_matrix(n_sites, n_occasions, psi, p, seed=0):
    """Detection matrix from constant psi and p."""
    rng = np.random.default_rng(seed)
    occupied = rng.random(n_sites) < psi
    return ((rng.random((n_sites, n_occasions)) < p) & occupied[:, None]).astype(float)


@pytest.fixture
def small_schema():
    """Covariate schema with two detection and two occupancy covariates."""
    return CovariateSchema(
        observation_covariates=("duration_minutes", "effort_distance_km"),
        derived_covariates=(),
        site_covariates=("elevation", "lc_forest"),
    )


@pytest.fixture
def checklists():
    """Sixty sites, five visits each, one species."""
    return make_checklists()


@pytest.fixture
def constant_histories():
    """200 sites x 5 occasions from psi=0.6, p=0.4, no covariates."""
    return make_histories(simulate_history_matrix(200, 5, psi=0.6, p=0.4, seed=7))


@pytest.fixture
def all_zero_histories():
    """50 sites x 5 occasions with no detections at all."""
    return make_histories(np.zeros((50, 5)))
