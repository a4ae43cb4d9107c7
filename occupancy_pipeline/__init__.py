"""
Single-species occupancy modelling for checklist detection data.

Builds repeat-visit detection histories from checklist records, fits
single-season occupancy models by maximum likelihood, dredges covariate
subsets under AICc, model-averages the top set, and checks fit with a
MacKenzie-Bailey parametric bootstrap.
"""

__version__ = "0.1.0"
