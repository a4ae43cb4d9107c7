"""
Calendar and clock transforms for checklist observation covariates.

All functions are pure and vectorised over numpy arrays / pandas Series.
Values outside a transform's domain map to NaN; callers drop those rows.
"""

import numpy as np
import pandas as pd

from occupancy_pipeline import config


def season_index(day_of_year):
    """Map day-of-year onto the linear non-breeding season index.

    December (334..365) becomes 1..32 and January-May (1..152) becomes
    32..183, so 31 December and 1 January share index 32. Days outside
    [1, 152] ∪ [334, 365] return NaN.

    Parameters
    ----------
    day_of_year : array-like of int
        Day-of-year values (1-based).

    Returns
    -------
    np.ndarray
        Float array of season indices, NaN outside the window.
    """
    doy = np.asarray(day_of_year, dtype=float)
    out = np.full(doy.shape, np.nan)

    december = (doy >= config.SEASON_DECEMBER_START) & (doy <= config.SEASON_DECEMBER_END)
    spring = (doy >= 1) & (doy <= config.SEASON_SPRING_END)

    out[december] = doy[december] - (config.SEASON_DECEMBER_START - 1)
    out[spring] = doy[spring] + (config.SEASON_DECEMBER_END - config.SEASON_DECEMBER_START + 1) - 1
    return out


def minutes_since_midnight(clock_times):
    """Parse ``HH:MM`` or ``HH:MM:SS`` strings into minutes since midnight.

    Unparseable or missing entries return NaN.
    """
    text = pd.Series(clock_times, dtype="object")
    text = text.where(text.map(lambda v: isinstance(v, str)).astype(bool), "")
    parts = text.str.extract(r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*$")
    hours, mins, secs = (
        pd.to_numeric(parts[i], errors="coerce").to_numpy(dtype=float, na_value=np.nan)
        for i in range(3)
    )
    secs = np.nan_to_num(secs, nan=0.0)

    valid = (hours < 24) & (mins < 60) & (secs < 60)
    return np.where(valid, hours * 60 + mins + secs / 60.0, np.nan)


def time_from_midday(minutes):
    """Fold minutes-since-midnight onto distance from midday.

    Minutes in [05:00, 19:00] map to ``|minutes - 720|``; anything else
    (night-time checklists, NaN) returns NaN.
    """
    m = np.asarray(minutes, dtype=float)
    in_window = (m >= config.DAY_START_MINUTES) & (m <= config.DAY_END_MINUTES)
    return np.where(in_window, np.abs(m - config.MIDDAY_MINUTES), np.nan)


def rescale_unit(values, lower, upper):
    """Linearly rescale *values* from [lower, upper] onto [0, 1]."""
    return (np.asarray(values, dtype=float) - lower) / (upper - lower)
