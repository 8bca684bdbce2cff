"""Estimation comparison module for the equivalence study."""
from .comparison import (
    EquivalenceSummary,
    compare_parameters,
    compare_variance_components,
    compare_to_truth,
    score_agreement,
    compare_fits,
    EQUIVALENCE_THRESHOLD,
)
