"""
Centralized pure formulas used across the occupancy pipeline.

config.py retains run-time parameters and covariate names; this package
holds the calendar transforms and the information-criterion arithmetic.
"""

from occupancy_pipeline.formulas.transforms import (
    season_index,
    minutes_since_midnight,
    time_from_midday,
    rescale_unit,
)
from occupancy_pipeline.formulas.information import (
    aicc,
    delta_aicc,
    akaike_weights,
    unconditional_se,
)

__all__ = [
    # transforms
    "season_index",
    "minutes_since_midnight",
    "time_from_midday",
    "rescale_unit",
    # information criteria
    "aicc",
    "delta_aicc",
    "akaike_weights",
    "unconditional_se",
]
