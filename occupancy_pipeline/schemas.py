"""
Pandera DataFrame schemas for pipeline validation gates.

Covers the checklist input table (built from the configured covariate
schema, so the column list is explicit) and the per-species output
tables: dredge ranking, coefficient estimates and goodness of fit.

Usage:
    from occupancy_pipeline.schemas import build_checklist_schema
    build_checklist_schema().validate(df)  # raises pa.errors.SchemaError
"""

import pandera as pa
from pandera import Column, Check, DataFrameSchema

from occupancy_pipeline import config
from occupancy_pipeline.covariates import CovariateSchema


# ── Checklist input table ────────────────────────────────────────────────

def build_checklist_schema(covariate_schema=None, scaled_range=None):
    """Build the checklist-table schema for a covariate configuration.

    Parameters
    ----------
    covariate_schema : CovariateSchema, optional
        Column names and roles. Default: CovariateSchema().
    scaled_range : tuple, optional
        Allowed (min, max) for every covariate.
        Default: config.COVARIATE_SCALED_RANGE.

    Returns
    -------
    pa.DataFrameSchema
    """
    if covariate_schema is None:
        covariate_schema = CovariateSchema()
    if scaled_range is None:
        scaled_range = config.COVARIATE_SCALED_RANGE

    lo, hi = scaled_range
    cs = covariate_schema
    columns = {
        cs.species_column: Column(str, nullable=False, coerce=True),
        cs.site_column: Column(str, nullable=False, coerce=True),
        cs.date_column: Column(nullable=False),
        cs.time_column: Column(nullable=True),
        cs.protocol_column: Column(str, nullable=False, coerce=True),
        cs.detection_column: Column(int, Check.isin([0, 1]), nullable=False,
                                    coerce=True),
    }
    for name in tuple(cs.observation_covariates) + tuple(cs.site_covariates):
        columns[name] = Column(float, Check.in_range(lo, hi), nullable=True,
                               coerce=True)

    return DataFrameSchema(
        columns=columns,
        strict=False,
        coerce=False,
        name="ChecklistSchema",
    )


# ── Dredge ranking table ─────────────────────────────────────────────────

DredgeTableSchema = DataFrameSchema(
    columns={
        "formula": Column(str, nullable=False, coerce=True),
        "df": Column(int, Check.greater_than_or_equal_to(2), nullable=False,
                     coerce=True),
        "AICc": Column(float, nullable=True),
        "delta": Column(float, Check.greater_than_or_equal_to(0.0), nullable=True),
        "weight": Column(float, Check.in_range(0.0, 1.0), nullable=True),
        "status": Column(str, Check.isin(["fitted", "non_convergent"]),
                         nullable=False, coerce=True),
    },
    strict=False,
    coerce=False,
    name="DredgeTableSchema",
)


# ── Coefficient estimates ────────────────────────────────────────────────

EstimateSchema = DataFrameSchema(
    columns={
        "coefficient": Column(str, nullable=False, coerce=True),
        "submodel": Column(str, Check.isin(["state", "det"]), nullable=False,
                         coerce=True),
        "estimate": Column(float, nullable=False),
        "se": Column(float, Check.greater_than_or_equal_to(0.0), nullable=True),
        "p_value": Column(float, Check.in_range(0.0, 1.0), nullable=True),
        "importance": Column(float, Check.in_range(0.0, 1.0 + 1e-9), nullable=True,
                             required=False),
    },
    strict=False,
    coerce=False,
    name="EstimateSchema",
)


# ── Goodness of fit ──────────────────────────────────────────────────────

GofSummarySchema = DataFrameSchema(
    columns={
        "species": Column(str, nullable=False, coerce=True),
        "p_value": Column(float, Check.in_range(0.0, 1.0), nullable=True),
        "c_hat": Column(float, Check.greater_than_or_equal_to(0.0), nullable=True),
        "n_boot_requested": Column(int, Check.greater_than(0), coerce=True),
        "n_boot_effective": Column(int, Check.greater_than_or_equal_to(0),
                                   coerce=True),
    },
    strict=False,
    coerce=False,
    name="GofSummarySchema",
)


# ── Convenience validation function ─────────────────────────────────────

def validate_schema(df, schema, step_name, strict=False):
    """Validate a DataFrame against a Pandera schema.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame to validate.
    schema : pa.DataFrameSchema
        Schema to validate against.
    step_name : str
        Pipeline step name for error messages.
    strict : bool
        If True, raise on failure. If False, return warnings list.

    Returns
    -------
    list[str]
        Validation warning messages (empty if all pass).

    Raises
    ------
    ValueError
        Only if strict=True and validation fails.
    """
    warnings_list = []

    if df is None:
        msg = f"[{step_name}] DataFrame is None"
        if strict:
            raise ValueError(msg)
        return [msg]

    if len(df) == 0:
        msg = f"[{step_name}] DataFrame is empty (0 rows)"
        if strict:
            raise ValueError(msg)
        return [msg]

    try:
        schema.validate(df, lazy=True)
    except pa.errors.SchemaErrors as exc:
        for failure in exc.failure_cases.itertuples():
            msg = (
                f"[{step_name}] Schema violation: "
                f"column='{failure.column}' check='{failure.check}' "
                f"failure_case={failure.failure_case}"
            )
            warnings_list.append(msg)

        if strict:
            raise ValueError(
                f"[{step_name}] Schema validation failed with "
                f"{len(warnings_list)} errors"
            ) from exc

    return warnings_list
