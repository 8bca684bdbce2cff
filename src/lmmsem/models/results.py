"""
Fitted Result Container
=======================

Common output of the SEM and mixed model fitters. Parameters are keyed by
canonical names shared with the generative truth so that results can be
compared by key:

    mean_<factor>             latent mean / fixed effect
    var_<factor>              latent variance / random effect variance
    cov_<factor1>_<factor2>   latent covariance / random effect covariance
    resid_<item>              residual variance of an item / time point
    loading_<factor>_<item>   freely estimated loading (SEM only)
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import numpy as np
import pandas as pd


def mean_name(factor: str) -> str:
    return f'mean_{factor}'


def var_name(factor: str) -> str:
    return f'var_{factor}'


def cov_name(first: str, second: str) -> str:
    return f'cov_{first}_{second}'


def resid_name(item: str) -> str:
    return f'resid_{item}'


def loading_name(factor: str, item: str) -> str:
    return f'loading_{factor}_{item}'


@dataclass(frozen=True, eq=False)
class FittedResult:
    """Container for one model fit."""
    model_name: str
    backend: str
    estimates: Mapping[str, float]
    scores: pd.DataFrame
    std_errors: Mapping[str, float] = field(default_factory=dict)
    fit_statistics: Mapping[str, float] = field(default_factory=dict)
    converged: bool = True
    n_observations: int = 0
    n_units: int = 0
    # fitted backend object (semopy Model or MixedLMResults)
    raw: Any = field(default=None, repr=False)

    def __post_init__(self):
        object.__setattr__(self, 'estimates', MappingProxyType(dict(self.estimates)))
        object.__setattr__(self, 'std_errors', MappingProxyType(dict(self.std_errors)))
        object.__setattr__(self, 'fit_statistics',
                           MappingProxyType(dict(self.fit_statistics)))

    def get(self, name: str) -> float:
        """
        Look up an estimate by canonical name.

        Raises:
            KeyError: If the parameter is not part of this fit
        """
        try:
            return self.estimates[name]
        except KeyError:
            raise KeyError(
                f"{self.model_name}: parameter '{name}' not found. "
                f"Available: {sorted(self.estimates)}"
            ) from None

    def __getitem__(self, name: str) -> float:
        return self.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self.estimates

    @property
    def factors(self) -> List[str]:
        return list(self.scores.columns)

    def variance_components(self) -> Dict[str, float]:
        """Variance / covariance / residual parameters only."""
        return {k: v for k, v in self.estimates.items()
                if k.startswith(('var_', 'cov_', 'resid_'))}

    def to_dataframe(self) -> pd.DataFrame:
        """Convert estimates to a tidy DataFrame."""
        records = []
        for name, value in self.estimates.items():
            se = self.std_errors.get(name, np.nan)
            records.append({
                'model': self.model_name,
                'parameter': name,
                'estimate': value,
                'se': se,
                'z': value / se if se and np.isfinite(se) and se > 0 else np.nan,
            })
        return pd.DataFrame(records)

    def summary(self, digits: int = 4) -> str:
        """Generate summary string."""
        lines = [
            "=" * 60,
            f"{self.model_name} ({self.backend})",
            "=" * 60,
            f"N observations: {self.n_observations}",
            f"N units: {self.n_units}",
            f"Converged: {self.converged}",
            "",
            "Estimates:",
            "-" * 40,
        ]
        for name, value in self.estimates.items():
            se = self.std_errors.get(name, np.nan)
            lines.append(f"  {name:24s}: {value:10.{digits}f} (SE: {se:.{digits}f})")

        if self.fit_statistics:
            lines.extend(["", "Fit statistics:", "-" * 40])
            for name, value in self.fit_statistics.items():
                lines.append(f"  {name:24s}: {value:10.{digits}f}")

        lines.append("=" * 60)
        return "\n".join(lines)


def score_columns(scores: pd.DataFrame, factors: Optional[List[str]] = None) -> pd.DataFrame:
    """Restrict a score table to the requested factors (all by default)."""
    if factors is None:
        return scores
    missing = [f for f in factors if f not in scores.columns]
    if missing:
        raise KeyError(f"Score table has no column(s) {missing}")
    return scores[factors]
