"""
Exception hierarchy for the occupancy modelling pipeline.

Each class corresponds to one documented failure policy:
- FitNonConvergence: a single model fit; recorded, excluded from ranking
- NoQualifyingData: a species with no usable detection histories; skipped
- UnfittableSpecies: every candidate model failed; species skipped
- BootstrapRefitFailure: a single GoF replicate; excluded from the
  bootstrap distribution
"""


class OccupancyPipelineError(Exception):
    """Base exception for all pipeline errors."""
    pass


class FitNonConvergence(OccupancyPipelineError):
    """Raised when a likelihood fit does not reach a stationary optimum."""

    def __init__(self, message, formula=None, n_iterations=None):
        super().__init__(message)
        self.formula = formula
        self.n_iterations = n_iterations


class NoQualifyingData(OccupancyPipelineError):
    """Raised when filtering leaves no usable checklists or sites."""
    pass


class UnfittableSpecies(OccupancyPipelineError):
    """Raised when no candidate model for a species converged."""
    pass


class BootstrapRefitFailure(OccupancyPipelineError):
    """Raised when a goodness-of-fit bootstrap refit fails."""
    pass
