"""
Explicit covariate schema for the checklist table.

Covariates are selected by exact name and assigned a role (occupancy or
detection) at configuration time. A table missing any configured column
is rejected up front with every absent name listed, rather than matching
zero columns and fitting a silently reduced model.
"""

from dataclasses import dataclass

from occupancy_pipeline import config


@dataclass(frozen=True)
class CovariateSchema:
    """Column names and covariate roles for one modelling run."""

    species_column: str = config.SPECIES_COLUMN
    site_column: str = config.SITE_COLUMN
    date_column: str = config.DATE_COLUMN
    time_column: str = config.TIME_COLUMN
    protocol_column: str = config.PROTOCOL_COLUMN
    detection_column: str = config.DETECTION_COLUMN
    distance_column: str = config.DISTANCE_COLUMN
    observation_covariates: tuple = config.OBSERVATION_COVARIATES
    derived_covariates: tuple = config.DERIVED_OBSERVATION_COVARIATES
    site_covariates: tuple = config.SITE_COVARIATES

    def __post_init__(self):
        overlap = set(self.observation_covariates) & set(self.site_covariates)
        if overlap:
            raise ValueError(
                f"Covariates assigned to both roles: {sorted(overlap)}"
            )
        if self.distance_column not in self.observation_covariates:
            raise ValueError(
                f"Distance column '{self.distance_column}' must be an "
                "observation covariate"
            )

    @property
    def identifier_columns(self):
        return (
            self.species_column,
            self.site_column,
            self.date_column,
            self.time_column,
            self.protocol_column,
            self.detection_column,
        )

    @property
    def required_columns(self):
        return (
            self.identifier_columns
            + tuple(self.observation_covariates)
            + tuple(self.site_covariates)
        )

    @property
    def detection_terms(self):
        """Every term available to the detection submodel."""
        return tuple(self.observation_covariates) + tuple(self.derived_covariates)

    @property
    def occupancy_terms(self):
        """Every term available to the occupancy submodel."""
        return tuple(self.site_covariates)

    def missing_columns(self, df):
        return [c for c in self.required_columns if c not in df.columns]

    def require_columns(self, df):
        """Raise ValueError naming every configured column absent from *df*."""
        missing = self.missing_columns(df)
        if missing:
            raise ValueError(
                f"Checklist table is missing required columns: {missing}"
            )
