"""
Tests for the Pandera validation gates and the explicit covariate schema.

A table that is missing a configured covariate must fail fast with the
absent names listed; out-of-range covariates and invalid detections
must be reported (lenient) or raised (strict).
"""

import numpy as np
import pandas as pd
import pytest

from occupancy_pipeline.covariates import CovariateSchema
from occupancy_pipeline.schemas import (
    DredgeTableSchema,
    GofSummarySchema,
    build_checklist_schema,
    validate_schema,
)


class TestCovariateSchema:

    def test_default_roles(self):
        cs = CovariateSchema()
        assert "day_of_season" in cs.detection_terms
        assert "elevation" in cs.occupancy_terms
        assert "elevation" not in cs.detection_terms

    def test_overlapping_roles_rejected(self):
        with pytest.raises(ValueError, match="both roles"):
            CovariateSchema(observation_covariates=("effort_distance_km", "elevation"))

    def test_distance_must_be_observation_covariate(self):
        with pytest.raises(ValueError, match="Distance column"):
            CovariateSchema(observation_covariates=("duration_minutes",))

    def test_missing_columns_listed(self, checklists):
        cs = CovariateSchema()
        df = checklists.drop(columns=["lc_urban", "number_observers"])
        assert cs.missing_columns(df) == ["number_observers", "lc_urban"]
        with pytest.raises(ValueError, match="number_observers.*lc_urban"):
            cs.require_columns(df)

    def test_extra_columns_ignored(self, checklists):
        checklists["lc_wetland_fraction"] = 0.3
        CovariateSchema().require_columns(checklists)


class TestChecklistSchema:

    def test_valid_table_passes(self, checklists):
        assert validate_schema(checklists, build_checklist_schema(), "checklists") == []

    def test_out_of_range_covariate(self, checklists):
        checklists.loc[3, "elevation"] = 250.0
        warnings = validate_schema(checklists, build_checklist_schema(), "checklists")
        assert any("elevation" in w for w in warnings)

    def test_custom_range(self, checklists):
        schema = build_checklist_schema(scaled_range=(-1.0, 1.0))
        warnings = validate_schema(checklists, schema, "checklists")
        assert warnings

    def test_strict_raises(self, checklists):
        checklists.loc[0, "species_observed"] = 3
        with pytest.raises(ValueError, match="Schema validation failed"):
            validate_schema(checklists, build_checklist_schema(), "checklists", strict=True)

    def test_empty_table(self):
        warnings = validate_schema(pd.DataFrame(), build_checklist_schema(), "checklists")
        assert "empty" in warnings[0]


class TestOutputSchemas:

    def test_negative_delta_rejected(self):
        table = pd.DataFrame({
            "formula": ["p(.) psi(.)"], "df": [2], "AICc": [100.0],
            "delta": [-1.0], "weight": [1.0], "status": ["fitted"],
        })
        assert validate_schema(table, DredgeTableSchema, "dredge")

    def test_gof_summary_allows_missing_c_hat(self):
        table = pd.DataFrame({
            "species": ["Anas acuta"], "p_value": [1.0], "c_hat": [np.nan],
            "n_boot_requested": [1000], "n_boot_effective": [0],
        })
        assert validate_schema(table, GofSummarySchema, "gof") == []
