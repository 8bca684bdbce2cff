"""
Pytest Configuration and Shared Fixtures
=========================================

Provides the two reference scenarios, their simulated data and the
(expensive) SEM / mixed model fits, shared across the session.
"""

import json
import sys
import warnings
from pathlib import Path

import numpy as np
import pytest

# Add src to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT / 'src'))

from lmmsem.models.mixed_model import fit_lmm
from lmmsem.models.sem_model import fit_sem
from lmmsem.models.specification import GrowthModelSpec
from lmmsem.simulation.latent_simulator import LatentGrowthSimulator, LatentSpec
from lmmsem.simulation.reshape import wide_to_long

warnings.filterwarnings('ignore', category=FutureWarning)
warnings.filterwarnings('ignore', message='.*on the boundary.*')


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture(scope="session")
def project_root():
    """Return project root path."""
    return PROJECT_ROOT


@pytest.fixture(scope="session")
def study_config_path():
    return PROJECT_ROOT / 'config' / 'study_config.json'


@pytest.fixture(scope="session")
def study_config(study_config_path):
    with open(study_config_path) as f:
        return json.load(f)


# =============================================================================
# Scenario Fixtures - Known Generative Parameters
# =============================================================================

@pytest.fixture(scope="session")
def intercept_spec():
    """Random intercept, three time points, item variances (5, 6, 7)."""
    return LatentSpec.intercept_only(mean=0.3, sd=2.0,
                                     residual_sd=[1.0, np.sqrt(2.0), np.sqrt(3.0)])


@pytest.fixture(scope="session")
def slope_spec():
    """Correlated random intercept and slope, four time points."""
    return LatentSpec.intercept_slope(means=[0.3, 0.5], sds=[2.0, 1.0], correlation=0.3,
                                      residual_sd=[1.0, np.sqrt(2.0), np.sqrt(3.0), 2.0],
                                      time_scores=[0, 1, 2, 3])


@pytest.fixture(scope="session")
def intercept_data(intercept_spec):
    return LatentGrowthSimulator(intercept_spec, seed=1234).simulate(1000)


@pytest.fixture(scope="session")
def slope_data(slope_spec):
    return LatentGrowthSimulator(slope_spec, seed=4321).simulate(1000)


# =============================================================================
# Fit Fixtures
# =============================================================================

def _fit_both(data, residual_structure='heterogeneous'):
    model_spec = GrowthModelSpec.from_latent_spec(data.spec, residual_structure)
    long = wide_to_long(data.wide, time_scores=data.spec.time_scores)
    sem = fit_sem(data.wide, model_spec, verbose=False)
    lmm = fit_lmm(long, model_spec, verbose=False)
    return sem, lmm


@pytest.fixture(scope="session")
def intercept_fits(intercept_data):
    """(SEM, LMM) results for the random intercept scenario."""
    return _fit_both(intercept_data)


@pytest.fixture(scope="session")
def slope_fits(slope_data):
    """(SEM, LMM) results for the random intercept and slope scenario."""
    return _fit_both(slope_data)


@pytest.fixture(scope="session")
def homogeneous_fits():
    """(SEM, LMM) with residual variances constrained equal."""
    spec = LatentSpec.intercept_only(mean=0.3, sd=2.0, residual_sd=[1.0, 1.0, 1.0])
    data = LatentGrowthSimulator(spec, seed=2024).simulate(1000)
    return _fit_both(data, residual_structure='homogeneous')
