"""
Simulation Module
=================

Data generation for the SEM / mixed model equivalence study.

1. latent_simulator.py
   - LatentSpec: generative latent structure (1 or 2 factors, fixed loadings)
   - LatentGrowthSimulator / simulate_wide: wide data with known truth

2. reshape.py
   - wide_to_long / long_to_wide: lossless pivot between the SEM (wide)
     and mixed model (long) data layouts
"""
from .latent_simulator import (
    LatentSpec,
    LatentGrowthSimulator,
    SimulatedData,
    simulate_wide,
    latent_spec_from_config,
    empirical_moments,
)
from .reshape import wide_to_long, long_to_wide
