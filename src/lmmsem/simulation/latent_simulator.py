"""
Latent Growth Data Generating Process (DGP)
===========================================

Synthetic wide-format data from a linear latent variable model:

    η_i ~ MVN(μ, Φ)
    y_ik = Λ_k · η_i + ε_ik,   ε_ik ~ N(0, θ_k²)

Where:
    - η_i = latent scores of unit i (intercept, optionally slope)
    - μ, Φ = factor means and covariance
    - Λ = fixed loading matrix (K items x F factors)
    - θ_k = residual standard deviation of item k

With Λ = [1, t_k] this is exactly a random-intercept / random-slope
growth model with heterogeneous residual variance, which is the model
both the SEM and the mixed model are fitted to.

Usage:
    spec = LatentSpec.intercept_only(mean=0.3, sd=2.0,
                                     residual_sd=[1, np.sqrt(2), np.sqrt(3)])
    data = LatentGrowthSimulator(spec, seed=1234).simulate(1000)
    data.wide.var()   # approx (5, 6, 7)
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from lmmsem.utils.logging_config import get_logger

logger = get_logger(__name__)

UNIT_COL = 'unit'
DEFAULT_FACTOR_NAMES = ('intercept', 'slope')


def default_item_names(n_items: int) -> Tuple[str, ...]:
    """Item names y1..yK."""
    return tuple(f'y{k}' for k in range(1, n_items + 1))


# =============================================================================
# LATENT SPECIFICATION
# =============================================================================

@dataclass(frozen=True, eq=False)
class LatentSpec:
    """
    Generative latent structure for one scenario.

    Attributes:
        factor_names: Latent factor names, e.g. ('intercept', 'slope')
        means: Factor means, shape (F,)
        covariance: Factor covariance matrix, shape (F, F)
        loadings: Fixed loading matrix, shape (K, F)
        residual_sd: Residual standard deviation per item, shape (K,)
        item_names: Observed variable names, length K
    """
    factor_names: Tuple[str, ...]
    means: np.ndarray
    covariance: np.ndarray
    loadings: np.ndarray
    residual_sd: np.ndarray
    item_names: Tuple[str, ...] = ()

    def __post_init__(self):
        means = np.atleast_1d(np.array(self.means, dtype=float))
        cov = np.atleast_2d(np.array(self.covariance, dtype=float))
        loadings = np.array(self.loadings, dtype=float)
        if loadings.ndim == 1:
            loadings = loadings[:, None]
        residual_sd = np.atleast_1d(np.array(self.residual_sd, dtype=float))
        factor_names = tuple(self.factor_names)
        item_names = tuple(self.item_names) or default_item_names(loadings.shape[0])

        n_factors = len(factor_names)
        if n_factors not in (1, 2):
            raise ValueError(f"Need 1 or 2 latent factors, got {n_factors}")
        if means.shape != (n_factors,):
            raise ValueError(f"Need {n_factors} factor means, got {means.shape[0]}")
        if cov.shape != (n_factors, n_factors):
            raise ValueError(
                f"Factor covariance must be {n_factors}x{n_factors}, got {cov.shape}"
            )
        if not np.allclose(cov, cov.T):
            raise ValueError("Factor covariance matrix must be symmetric")
        if np.linalg.eigvalsh(cov).min() < -1e-10:
            raise ValueError("Factor covariance matrix must be positive semi-definite")
        if loadings.ndim != 2 or loadings.shape[1] != n_factors:
            raise ValueError(
                f"Loading matrix must have {n_factors} columns, got shape {loadings.shape}"
            )
        if residual_sd.shape[0] != loadings.shape[0]:
            raise ValueError(
                f"Dimension mismatch: {loadings.shape[0]} loading rows but "
                f"{residual_sd.shape[0]} residual standard deviations"
            )
        if len(item_names) != loadings.shape[0]:
            raise ValueError(
                f"Dimension mismatch: {loadings.shape[0]} loading rows but "
                f"{len(item_names)} item names"
            )
        if np.any(residual_sd < 0):
            raise ValueError("Residual standard deviations must be >= 0")

        for arr in (means, cov, loadings, residual_sd):
            arr.setflags(write=False)

        object.__setattr__(self, 'factor_names', factor_names)
        object.__setattr__(self, 'means', means)
        object.__setattr__(self, 'covariance', cov)
        object.__setattr__(self, 'loadings', loadings)
        object.__setattr__(self, 'residual_sd', residual_sd)
        object.__setattr__(self, 'item_names', item_names)

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def intercept_only(cls, mean: float, sd: float,
                       residual_sd: Sequence[float],
                       item_names: Sequence[str] = ()) -> 'LatentSpec':
        """Random-intercept model: every item loads 1 on a single factor."""
        n_items = len(residual_sd)
        return cls(
            factor_names=('intercept',),
            means=[mean],
            covariance=[[sd ** 2]],
            loadings=np.ones((n_items, 1)),
            residual_sd=residual_sd,
            item_names=tuple(item_names),
        )

    @classmethod
    def intercept_slope(cls, means: Sequence[float], sds: Sequence[float],
                        correlation: float, residual_sd: Sequence[float],
                        time_scores: Optional[Sequence[float]] = None,
                        item_names: Sequence[str] = ()) -> 'LatentSpec':
        """
        Random intercept and slope model.

        Args:
            means: (intercept mean, slope mean)
            sds: (intercept sd, slope sd)
            correlation: Intercept-slope correlation
            residual_sd: Residual sd per time point
            time_scores: Slope loadings, default 0..K-1
            item_names: Optional item names

        Returns:
            LatentSpec with loadings [1, t_k]
        """
        if not -1.0 <= correlation <= 1.0:
            raise ValueError(f"Correlation must lie in [-1, 1], got {correlation}")
        n_items = len(residual_sd)
        if time_scores is None:
            time_scores = np.arange(n_items, dtype=float)
        time_scores = np.asarray(time_scores, dtype=float)
        if time_scores.shape[0] != n_items:
            raise ValueError(
                f"Dimension mismatch: {time_scores.shape[0]} time scores but "
                f"{n_items} residual standard deviations"
            )
        sd_i, sd_s = float(sds[0]), float(sds[1])
        cov = np.array([
            [sd_i ** 2, correlation * sd_i * sd_s],
            [correlation * sd_i * sd_s, sd_s ** 2],
        ])
        loadings = np.column_stack([np.ones(n_items), time_scores])
        return cls(
            factor_names=DEFAULT_FACTOR_NAMES,
            means=means,
            covariance=cov,
            loadings=loadings,
            residual_sd=residual_sd,
            item_names=tuple(item_names),
        )

    # -------------------------------------------------------------------------
    # Derived quantities
    # -------------------------------------------------------------------------

    @property
    def n_items(self) -> int:
        return self.loadings.shape[0]

    @property
    def n_factors(self) -> int:
        return len(self.factor_names)

    @property
    def residual_variances(self) -> np.ndarray:
        return self.residual_sd ** 2

    @property
    def time_scores(self) -> np.ndarray:
        """Slope loadings, or the 0-based item positions for intercept-only specs."""
        if 'slope' in self.factor_names:
            return np.asarray(self.loadings[:, self.factor_names.index('slope')])
        return np.arange(self.n_items, dtype=float)

    def implied_covariance(self) -> pd.DataFrame:
        """Model-implied item covariance Σ = Λ Φ Λᵀ + diag(θ²)."""
        sigma = self.loadings @ self.covariance @ self.loadings.T
        sigma = sigma + np.diag(self.residual_variances)
        return pd.DataFrame(sigma, index=list(self.item_names),
                            columns=list(self.item_names))

    def implied_variances(self) -> pd.Series:
        """Model-implied per-item variances (diagonal of Σ)."""
        return pd.Series(np.diag(self.implied_covariance().values),
                         index=list(self.item_names))

    def implied_means(self) -> pd.Series:
        return pd.Series(self.loadings @ self.means, index=list(self.item_names))

    def true_parameters(self) -> Dict[str, float]:
        """True parameter values keyed by canonical parameter name."""
        params = {}
        for f, name in enumerate(self.factor_names):
            params[f'mean_{name}'] = float(self.means[f])
        for f, name in enumerate(self.factor_names):
            params[f'var_{name}'] = float(self.covariance[f, f])
        if self.n_factors == 2:
            a, b = self.factor_names
            params[f'cov_{a}_{b}'] = float(self.covariance[0, 1])
        for k, item in enumerate(self.item_names):
            params[f'resid_{item}'] = float(self.residual_variances[k])
        return params


def latent_spec_from_config(scenario: Dict[str, Any]) -> LatentSpec:
    """
    Build a LatentSpec from a scenario configuration block.

    Expected keys:
        intercept-only:  {"type": "intercept", "mean": .., "sd": .., "residual_sd": [..]}
        intercept+slope: {"type": "intercept_slope", "means": [..], "sds": [..],
                          "correlation": .., "residual_sd": [..], "time_scores": [..]}
    """
    model_type = scenario.get('type', 'intercept')
    items = scenario.get('items', ())
    if model_type == 'intercept':
        return LatentSpec.intercept_only(
            mean=float(scenario['mean']),
            sd=float(scenario['sd']),
            residual_sd=scenario['residual_sd'],
            item_names=items,
        )
    elif model_type == 'intercept_slope':
        return LatentSpec.intercept_slope(
            means=scenario['means'],
            sds=scenario['sds'],
            correlation=float(scenario.get('correlation', 0.0)),
            residual_sd=scenario['residual_sd'],
            time_scores=scenario.get('time_scores'),
            item_names=items,
        )
    else:
        raise ValueError(f"Unknown scenario type: {model_type}")


# =============================================================================
# SIMULATION
# =============================================================================

@dataclass(frozen=True, eq=False)
class SimulatedData:
    """Output of one simulation run."""
    wide: pd.DataFrame
    latent: pd.DataFrame
    spec: LatentSpec
    seed: Optional[int] = None

    @property
    def n_units(self) -> int:
        return len(self.wide)


def draw_latent_scores(spec: LatentSpec, n: int,
                       rng: np.random.Generator) -> np.ndarray:
    """Draw n latent vectors from MVN(μ, Φ). Returns shape (n, F)."""
    return rng.multivariate_normal(spec.means, spec.covariance, size=n)


def simulate_wide(spec: LatentSpec, n: int, seed: Optional[int] = None,
                  rng: Optional[np.random.Generator] = None) -> pd.DataFrame:
    """
    Simulate a wide table of n units x K items.

    Args:
        spec: Generative latent structure
        n: Number of units
        seed: Random seed (ignored when rng is given)
        rng: Optional NumPy generator

    Returns:
        DataFrame indexed by unit (1..n) with one column per item
    """
    return LatentGrowthSimulator(spec, seed=seed, rng=rng).simulate(n).wide


class LatentGrowthSimulator:
    """
    Simulator for the latent growth DGP.

    Example:
        >>> sim = LatentGrowthSimulator(spec, seed=42)
        >>> data = sim.simulate(1000)
        >>> data.wide.shape
        (1000, 3)
    """

    def __init__(self, spec: LatentSpec, seed: Optional[int] = None,
                 rng: Optional[np.random.Generator] = None):
        self.spec = spec
        self.seed = seed
        self.rng = rng if rng is not None else np.random.default_rng(seed)

    def simulate(self, n: int) -> SimulatedData:
        """Draw latent scores and items for n units."""
        if n <= 0:
            raise ValueError(f"Sample size must be positive, got {n}")

        spec = self.spec
        eta = draw_latent_scores(spec, n, self.rng)
        noise = self.rng.standard_normal((n, spec.n_items)) * spec.residual_sd
        values = eta @ spec.loadings.T + noise

        index = pd.RangeIndex(1, n + 1, name=UNIT_COL)
        wide = pd.DataFrame(values, index=index, columns=list(spec.item_names))
        latent = pd.DataFrame(eta, index=index.copy(),
                              columns=list(spec.factor_names))

        logger.debug(f"Simulated {n} units x {spec.n_items} items "
                     f"(factors={spec.factor_names}, seed={self.seed})")

        return SimulatedData(wide=wide, latent=latent, spec=spec, seed=self.seed)


def empirical_moments(wide: pd.DataFrame, spec: LatentSpec) -> pd.DataFrame:
    """
    Compare sample means / variances with their model-implied values.

    Returns:
        DataFrame indexed by item with sample and implied mean and variance
    """
    items = list(spec.item_names)
    return pd.DataFrame({
        'mean': wide[items].mean(),
        'implied_mean': spec.implied_means(),
        'variance': wide[items].var(),
        'implied_variance': spec.implied_variances(),
    })
