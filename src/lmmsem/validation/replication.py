"""
Replication Study
=================

Repeats one scenario over many seeds to check that the SEM and the mixed
model agree beyond a single draw:

- Bias: E[θ̂] - θ, per method and parameter
- RMSE: sqrt(E[(θ̂ - θ)²])
- Coverage of the 95% Wald interval (where a standard error exists)
- Distribution of the per-unit score correlation between the methods

Replications run sequentially. A replication that raises is recorded as
missing (NaN estimates, not converged) and the study continues.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from scipy import stats

from lmmsem.estimation.comparison import score_agreement
from lmmsem.models.mixed_model import fit_lmm
from lmmsem.models.sem_model import fit_sem
from lmmsem.models.specification import GrowthModelSpec
from lmmsem.simulation.latent_simulator import LatentSpec, simulate_wide
from lmmsem.simulation.reshape import wide_to_long
from lmmsem.utils.logging_config import get_logger

logger = get_logger(__name__)

METHODS = ('SEM', 'LMM')


def compute_bias(estimates: np.ndarray, true_value: float) -> float:
    """Bias = E[θ̂] - θ over the non-missing replications."""
    valid = estimates[~np.isnan(estimates)]
    if len(valid) == 0:
        return np.nan
    return float(np.mean(valid) - true_value)


def compute_rmse(estimates: np.ndarray, true_value: float) -> float:
    """RMSE = sqrt(E[(θ̂ - θ)²]) over the non-missing replications."""
    valid = estimates[~np.isnan(estimates)]
    if len(valid) == 0:
        return np.nan
    return float(np.sqrt(np.mean((valid - true_value) ** 2)))


def compute_coverage(estimates: np.ndarray, std_errors: np.ndarray,
                     true_value: float, confidence: float = 0.95) -> float:
    """Share of replications whose Wald interval contains the true value."""
    valid = ~np.isnan(estimates) & ~np.isnan(std_errors) & (std_errors > 0)
    if valid.sum() == 0:
        return np.nan
    z = stats.norm.ppf((1 + confidence) / 2)
    lower = estimates[valid] - z * std_errors[valid]
    upper = estimates[valid] + z * std_errors[valid]
    return float(((lower <= true_value) & (true_value <= upper)).mean())


@dataclass
class ReplicationResult:
    """Container for replication study results."""
    n_replications: int
    n_units: int
    true_values: Dict[str, float]

    # {method: (n_rep, n_params)}
    estimates: Dict[str, np.ndarray]
    std_errors: Dict[str, np.ndarray]
    convergence: Dict[str, np.ndarray]

    # (n_rep, n_factors)
    score_correlations: pd.DataFrame = field(default_factory=pd.DataFrame)

    total_time: float = 0.0

    @property
    def parameter_names(self) -> List[str]:
        return list(self.true_values)

    def summary_table(self) -> pd.DataFrame:
        """Bias, RMSE and coverage per method and parameter."""
        records = []
        for method in self.estimates:
            for i, param in enumerate(self.parameter_names):
                true_val = self.true_values[param]
                est = self.estimates[method][:, i]
                se = self.std_errors[method][:, i]
                bias = compute_bias(est, true_val)
                records.append({
                    'method': method,
                    'parameter': param,
                    'true_value': true_val,
                    'mean_estimate': float(np.nanmean(est)) if np.isfinite(est).any() else np.nan,
                    'bias': bias,
                    'bias_pct': bias / true_val * 100 if true_val != 0 else np.nan,
                    'rmse': compute_rmse(est, true_val),
                    'coverage_95': compute_coverage(est, se, true_val),
                    'empirical_se': float(np.nanstd(est)) if np.isfinite(est).any() else np.nan,
                })
        return pd.DataFrame(records)

    def correlation_summary(self) -> pd.DataFrame:
        """Distribution of the SEM/LMM score correlation per factor."""
        corr = self.score_correlations
        return pd.DataFrame({
            'mean': corr.mean(),
            'min': corr.min(),
            'max': corr.max(),
            'n_valid': corr.notna().sum(),
        })

    def convergence_rate(self) -> Dict[str, float]:
        return {m: float(flags.mean()) for m, flags in self.convergence.items()}


class ReplicationStudy:
    """
    Repeated simulate / fit / compare cycle for one scenario.

    Example:
        >>> study = ReplicationStudy(spec, n_units=500, n_replications=50)
        >>> result = study.run()
        >>> result.summary_table()
    """

    def __init__(self,
                 spec: LatentSpec,
                 n_units: int = 1000,
                 n_replications: int = 100,
                 seed: int = 42,
                 residual_structure: str = 'heterogeneous',
                 verbose: bool = True):
        """
        Args:
            spec: Generative latent specification
            n_units: Units per replication
            n_replications: Number of replications
            seed: Base random seed (replication r uses seed + r)
            residual_structure: Residual structure of both analysis models
            verbose: Print progress
        """
        if n_replications <= 0:
            raise ValueError(f"n_replications must be positive, got {n_replications}")
        self.spec = spec
        self.n_units = n_units
        self.n_replications = n_replications
        self.seed = seed
        self.verbose = verbose
        self.model_spec = GrowthModelSpec.from_latent_spec(spec, residual_structure)

    def _single_replication(self, rep: int, param_names: List[str]):
        rep_seed = self.seed + rep
        n_params = len(param_names)
        outcome = {
            method: (np.full(n_params, np.nan), np.full(n_params, np.nan), False)
            for method in METHODS
        }
        correlations = {factor: np.nan for factor in self.spec.factor_names}

        try:
            wide = simulate_wide(self.spec, self.n_units, seed=rep_seed)
            long = wide_to_long(wide, time_scores=self.spec.time_scores)
            sem = fit_sem(wide, self.model_spec, verbose=False)
            lmm = fit_lmm(long, self.model_spec, verbose=False)
        except Exception as e:
            logger.warning(f"Replication {rep} (seed={rep_seed}) failed: {e}")
            return outcome, correlations

        for method, fit in zip(METHODS, (sem, lmm)):
            est = np.array([fit.estimates.get(p, np.nan) for p in param_names])
            se = np.array([fit.std_errors.get(p, np.nan) for p in param_names])
            outcome[method] = (est, se, fit.converged)

        agreement = score_agreement(sem, lmm)
        correlations = agreement['correlation'].to_dict()
        return outcome, correlations

    def run(self) -> ReplicationResult:
        """Run all replications and compute summary statistics."""
        start_time = time.time()
        true_values = self.spec.true_parameters()
        param_names = list(true_values)
        n_params = len(param_names)

        estimates = {m: np.full((self.n_replications, n_params), np.nan) for m in METHODS}
        std_errors = {m: np.full((self.n_replications, n_params), np.nan) for m in METHODS}
        convergence = {m: np.zeros(self.n_replications, dtype=bool) for m in METHODS}
        correlation_rows = []

        if self.verbose:
            print(f"\nReplications: {self.n_replications} x n={self.n_units}")
            print("-" * 40)

        for rep in range(self.n_replications):
            outcome, correlations = self._single_replication(rep, param_names)
            for method, (est, se, conv) in outcome.items():
                estimates[method][rep] = est
                std_errors[method][rep] = se
                convergence[method][rep] = conv
            correlation_rows.append(correlations)

            if self.verbose and (rep + 1) % 10 == 0:
                rates = ", ".join(f"{m}: {convergence[m][:rep + 1].mean():.0%}" for m in METHODS)
                print(f"  Rep {rep + 1}/{self.n_replications}, Conv: {rates}")

        result = ReplicationResult(
            n_replications=self.n_replications,
            n_units=self.n_units,
            true_values=true_values,
            estimates=estimates,
            std_errors=std_errors,
            convergence=convergence,
            score_correlations=pd.DataFrame(correlation_rows,
                                            columns=list(self.spec.factor_names)),
        )
        result.total_time = time.time() - start_time

        if self.verbose:
            print(f"Replication study complete in {result.total_time:.1f}s")
        logger.info(f"Replication study: {self.n_replications} reps, "
                    f"convergence {result.convergence_rate()}")
        return result


def run_replication_study(spec: LatentSpec, n_units: int, n_replications: int,
                          seed: int = 42, residual_structure: str = 'heterogeneous',
                          verbose: bool = True) -> Optional[ReplicationResult]:
    """Convenience wrapper; returns None when n_replications is 0."""
    if n_replications == 0:
        return None
    study = ReplicationStudy(spec, n_units=n_units, n_replications=n_replications,
                             seed=seed, residual_structure=residual_structure,
                             verbose=verbose)
    return study.run()
