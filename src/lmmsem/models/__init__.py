"""
Models module for the SEM / mixed model equivalence study.

Both fitters take the same declarative GrowthModelSpec and return a
FittedResult keyed by canonical parameter names:

    - specification: GrowthModelSpec (semopy syntax + MixedLM formulas)
    - sem_model: fit_sem, constrained latent growth SEM (semopy)
    - mixed_model: fit_lmm, heterogeneous-variance linear mixed model
      (statsmodels MixedLM)
    - results: FittedResult container

Usage:
    from lmmsem.models import GrowthModelSpec, fit_sem, fit_lmm

    model_spec = GrowthModelSpec.from_latent_spec(spec)
    sem = fit_sem(wide, model_spec)
    lmm = fit_lmm(wide_to_long(wide, model_spec.time_scores), model_spec)
"""

from .results import FittedResult
from .specification import GrowthModelSpec, model_spec_for_items
from .sem_model import fit_sem
from .mixed_model import fit_lmm

__all__ = [
    'FittedResult',
    'GrowthModelSpec',
    'model_spec_for_items',
    'fit_sem',
    'fit_lmm',
]
