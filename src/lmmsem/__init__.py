"""
lmmsem
======

Random intercept / slope linear mixed models as constrained latent growth
structural equation models: simulation, reshaping, fitting with semopy and
statsmodels MixedLM, and comparison of the two fits.
"""

__version__ = "0.1.0"
