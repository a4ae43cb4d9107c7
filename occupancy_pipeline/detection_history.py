"""
Repeat-visit detection histories from checklist records.

Turns one species' checklist rows into a site x occasion detection
matrix with aligned observation covariates, following the eBird
repeat-visit conventions:

1. Keep Traveling and Stationary protocols; Stationary checklists get a
   nominal travelled distance.
2. Map the observation date onto a linear season index and the start
   time onto distance-from-midday; rows outside either window drop out.
3. Group by site, order occasions chronologically, enforce the closure
   window, cap at ``max_obs`` occasions and require ``min_obs``.

Rows that fall outside a window are dropped silently (no sentinel), but
each stage's row count is kept in ``filter_report`` and logged.

Citation: Johnston, A. et al. (2021). Analytical guidelines to increase
          the value of community science data. Diversity and
          Distributions, 27(7), 1265-1277.
"""

from dataclasses import dataclass, field, replace

import numpy as np
import pandas as pd

from occupancy_pipeline import config
from occupancy_pipeline.covariates import CovariateSchema
from occupancy_pipeline.exceptions import NoQualifyingData
from occupancy_pipeline.formulas.transforms import (
    minutes_since_midnight,
    rescale_unit,
    season_index,
    time_from_midday,
)
from occupancy_pipeline.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)

_SEASON_COLUMN = "day_of_season"
_MIDDAY_COLUMN = "time_from_midday"
_TIMESTAMP_COLUMN = "_observed_at"
_SITE_KEY_COLUMN = "_site_key"


@dataclass(frozen=True, eq=False)
class DetectionHistories:
    """Site x occasion detection matrix for one species.

    ``y`` holds 0/1 with NaN for occasions a site did not receive;
    ``obs_covs`` arrays share that shape and missingness.
    """

    species: str
    site_ids: np.ndarray
    y: np.ndarray
    obs_covs: dict
    site_covs: pd.DataFrame
    dates: np.ndarray
    filter_report: dict = field(default_factory=dict)

    @property
    def n_sites(self):
        return self.y.shape[0]

    @property
    def n_occasions(self):
        return self.y.shape[1]

    @property
    def observed(self):
        """Boolean mask of occasions that carry an observation."""
        return ~np.isnan(self.y)

    @property
    def occasions_per_site(self):
        return self.observed.sum(axis=1)

    @property
    def n_detections(self):
        return int(np.nansum(self.y))

    @property
    def naive_occupancy(self):
        """Share of sites with at least one detection."""
        if self.n_sites == 0:
            return np.nan
        return float(np.mean(np.nansum(self.y, axis=1) > 0))

    def with_detections(self, y):
        """Copy with a replacement detection matrix (same missingness)."""
        y = np.asarray(y, dtype=float)
        if y.shape != self.y.shape:
            raise ValueError(f"Expected shape {self.y.shape}, got {y.shape}")
        return replace(self, y=y)

    def to_frame(self):
        """Wide table: one row per site, ``y.1..y.K``, per-occasion covariates."""
        k = self.n_occasions
        data = {"site": self.site_ids}
        for j in range(k):
            data[f"y.{j + 1}"] = self.y[:, j]
        for name, values in self.obs_covs.items():
            for j in range(k):
                data[f"{name}.{j + 1}"] = values[:, j]
        wide = pd.DataFrame(data)
        site = self.site_covs.reset_index(drop=True)
        return pd.concat([wide, site], axis=1)

    def summary(self):
        return {
            "species": self.species,
            "n_sites": self.n_sites,
            "n_occasions": self.n_occasions,
            "n_checklists": int(self.observed.sum()),
            "n_detections": self.n_detections,
            "naive_occupancy": round(self.naive_occupancy, 4),
        }


def prepare_checklists(checklists, covariate_schema=None, stationary_distance=None):
    """Filter checklists and derive the season and time-of-day covariates.

    Parameters
    ----------
    checklists : pd.DataFrame
        Checklist rows (any number of species).
    covariate_schema : CovariateSchema, optional
        Default: CovariateSchema().
    stationary_distance : float, optional
        Distance substituted for zero/missing Stationary distances.
        Default: config.STATIONARY_DISTANCE_KM (0.1).

    Returns
    -------
    tuple[pd.DataFrame, dict]
        Filtered rows with ``day_of_season`` and ``time_from_midday``
        added (both rescaled to [0, 1]), and per-stage row counts.
    """
    if covariate_schema is None:
        covariate_schema = CovariateSchema()
    if stationary_distance is None:
        stationary_distance = config.STATIONARY_DISTANCE_KM

    cs = covariate_schema
    cs.require_columns(checklists)
    report = {"input": len(checklists)}

    in_protocol = checklists[cs.protocol_column].isin(config.ALLOWED_PROTOCOLS)
    df = checklists[in_protocol].reset_index(drop=True).copy()
    report["protocol"] = len(df)

    distance = pd.to_numeric(df[cs.distance_column], errors="coerce")
    stationary = df[cs.protocol_column] == config.STATIONARY_PROTOCOL
    no_distance = distance.isna() | (distance == 0)
    df[cs.distance_column] = distance.mask(stationary & no_distance, stationary_distance)

    dates = pd.to_datetime(df[cs.date_column], errors="coerce")
    season = season_index(dates.dt.dayofyear.to_numpy(dtype=float, na_value=np.nan))
    df[_SEASON_COLUMN] = season
    df = df[np.isfinite(season)].copy()
    dates = dates.loc[df.index]
    report["season_window"] = len(df)

    minutes = minutes_since_midnight(df[cs.time_column])
    midday = time_from_midday(minutes)
    df[_MIDDAY_COLUMN] = midday
    df[_TIMESTAMP_COLUMN] = dates + pd.to_timedelta(
        pd.Series(minutes, index=df.index), unit="min",
    )
    keep = np.isfinite(midday)
    df = df[keep].copy()
    report["time_window"] = len(df)

    covariates = list(cs.observation_covariates) + list(cs.site_covariates)
    df = df.dropna(subset=covariates + [cs.detection_column]).copy()
    report["complete_covariates"] = len(df)

    df[_SEASON_COLUMN] = rescale_unit(
        df[_SEASON_COLUMN], config.SEASON_INDEX_MIN, config.SEASON_INDEX_MAX,
    )
    df[_MIDDAY_COLUMN] = rescale_unit(df[_MIDDAY_COLUMN], 0, config.TIME_FROM_MIDDAY_MAX)
    return df, report


def build_detection_histories(
    checklists,
    species=None,
    covariate_schema=None,
    min_obs=None,
    max_obs=None,
    n_days=None,
    annual_closure=None,
):
    """Convert one species' checklists into detection histories.

    Parameters
    ----------
    checklists : pd.DataFrame
        Checklist rows. When *species* is given, rows are first
        restricted to that species.
    species : str, optional
        Scientific name to select and to label the result with.
    covariate_schema : CovariateSchema, optional
        Default: CovariateSchema().
    min_obs : int, optional
        Minimum occasions to retain a site. Default: config.MIN_OBS (1).
    max_obs : int, optional
        Occasions kept per site (earliest first). Default: config.MAX_OBS (10).
    n_days : int, optional
        Closure window length from a site's first checklist.
        Default: config.CLOSURE_DAYS.
    annual_closure : bool, optional
        Treat each calendar year at a locality as its own site.
        Default: config.ANNUAL_CLOSURE (False).

    Returns
    -------
    DetectionHistories

    Raises
    ------
    NoQualifyingData
        If no site retains at least ``min_obs`` occasions.
    """
    if covariate_schema is None:
        covariate_schema = CovariateSchema()
    if min_obs is None:
        min_obs = config.MIN_OBS
    if max_obs is None:
        max_obs = config.MAX_OBS
    if n_days is None:
        n_days = config.CLOSURE_DAYS
    if annual_closure is None:
        annual_closure = config.ANNUAL_CLOSURE
    if min_obs < 1 or max_obs < min_obs:
        raise ValueError(f"Invalid occasion bounds: min_obs={min_obs}, max_obs={max_obs}")

    cs = covariate_schema
    if species is not None:
        checklists = checklists[checklists[cs.species_column] == species]
    else:
        labels = checklists[cs.species_column].unique()
        species = str(labels[0]) if len(labels) == 1 else "all"

    df, report = prepare_checklists(checklists, covariate_schema=cs)
    if df.empty:
        log.info("No qualifying checklists for %s: %s", species, report)
        raise NoQualifyingData(f"No checklists for {species} survive filtering")

    site_key = df[cs.site_column].astype(str)
    if annual_closure:
        site_key = site_key + "_" + df[_TIMESTAMP_COLUMN].dt.year.astype(str)
    df[_SITE_KEY_COLUMN] = site_key
    df = df.sort_values([_SITE_KEY_COLUMN, _TIMESTAMP_COLUMN], kind="stable")

    first_seen = df.groupby(_SITE_KEY_COLUMN)[_TIMESTAMP_COLUMN].transform("min")
    days_open = (df[_TIMESTAMP_COLUMN].dt.normalize() - first_seen.dt.normalize()).dt.days
    df = df[days_open < n_days]
    report["closure_window"] = len(df)

    occasion = df.groupby(_SITE_KEY_COLUMN).cumcount()
    df = df[occasion < max_obs]
    report["max_obs_cap"] = len(df)

    counts = df.groupby(_SITE_KEY_COLUMN)[_SITE_KEY_COLUMN].transform("size")
    df = df[counts >= min_obs]
    report["min_obs"] = len(df)

    if df.empty:
        log.info("No qualifying checklists for %s: %s", species, report)
        raise NoQualifyingData(f"No site with >= {min_obs} qualifying checklists")

    codes, site_ids = pd.factorize(df[_SITE_KEY_COLUMN], sort=True)
    occ = df.groupby(_SITE_KEY_COLUMN).cumcount().to_numpy()
    n_sites = len(site_ids)
    n_occ = int(occ.max()) + 1

    y = np.full((n_sites, n_occ), np.nan)
    y[codes, occ] = df[cs.detection_column].to_numpy(dtype=float)

    obs_covs = {}
    for name in cs.detection_terms:
        values = np.full((n_sites, n_occ), np.nan)
        values[codes, occ] = df[name].to_numpy(dtype=float)
        obs_covs[name] = values

    dates = np.full((n_sites, n_occ), np.datetime64("NaT"), dtype="datetime64[ns]")
    dates[codes, occ] = df[_TIMESTAMP_COLUMN].dt.normalize().to_numpy(dtype="datetime64[ns]")

    grouped = df.groupby(_SITE_KEY_COLUMN, sort=True)[list(cs.site_covariates)]
    varying = grouped.nunique().gt(1).any(axis=1)
    if varying.any():
        log.warning(
            "%d sites have site covariates that vary across checklists; "
            "using each site's first checklist values", int(varying.sum()),
        )
    site_covs = grouped.first().reindex(site_ids).reset_index(drop=True)

    histories = DetectionHistories(
        species=species,
        site_ids=np.asarray(site_ids, dtype=object),
        y=y,
        obs_covs=obs_covs,
        site_covs=site_covs,
        dates=dates,
        filter_report=report,
    )
    log.debug("Filtering report for %s: %s", species, report)
    return histories


def summarize_filtering(report):
    """Tabulate a filter report as rows remaining and dropped per stage.

    Parameters
    ----------
    report : dict
        Ordered stage -> row count mapping, as in
        ``DetectionHistories.filter_report``.

    Returns
    -------
    pd.DataFrame
        Columns ``stage``, ``rows``, ``dropped``.
    """
    stages = list(report)
    rows = [int(report[s]) for s in stages]
    dropped = [0] + [prev - cur for prev, cur in zip(rows, rows[1:])]
    return pd.DataFrame({"stage": stages, "rows": rows, "dropped": dropped})
