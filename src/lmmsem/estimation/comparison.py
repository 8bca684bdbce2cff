"""
SEM vs Mixed Model Comparison
=============================

Juxtaposes two fitted results (or one result and the generative truth):

- compare_parameters: side-by-side estimates with absolute / relative
  differences
- compare_to_truth: parameter recovery (bias, percent bias)
- score_agreement: correlation of per-unit predictions (SEM latent scores
  vs mixed model fixed effect + BLUP)

Comparisons are strict: a parameter, factor or unit present on one side
only is a KeyError, never silently dropped.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from lmmsem.models.results import FittedResult
from lmmsem.utils.logging_config import ComparisonLogger, get_logger

logger = get_logger(__name__)

EQUIVALENCE_THRESHOLD = 0.99


@dataclass
class EquivalenceSummary:
    """Complete comparison of two fits of the same scenario."""
    parameters: pd.DataFrame
    scores: pd.DataFrame
    recovery: Dict[str, pd.DataFrame] = field(default_factory=dict)
    threshold: float = EQUIVALENCE_THRESHOLD

    @property
    def min_correlation(self) -> float:
        return float(self.scores['correlation'].min())

    @property
    def equivalent(self) -> bool:
        """All per-unit prediction correlations exceed the threshold."""
        return self.min_correlation > self.threshold

    @property
    def max_abs_difference(self) -> float:
        return float(self.parameters['difference'].abs().max())


def _resolve_names(first: Mapping[str, float], second: Mapping[str, float],
                   names: Optional[Sequence[str]]) -> List[str]:
    if names is None:
        names = list(first)
        extra = [n for n in second if n not in first]
        names.extend(extra)
    missing_first = [n for n in names if n not in first]
    missing_second = [n for n in names if n not in second]
    if missing_first or missing_second:
        raise KeyError(
            f"Parameters not present in both results: "
            f"missing in first={missing_first}, missing in second={missing_second}"
        )
    return list(names)


def compare_parameters(first: FittedResult,
                       second: FittedResult,
                       names: Optional[Sequence[str]] = None,
                       labels: Optional[Tuple[str, str]] = None) -> pd.DataFrame:
    """
    Side-by-side table of corresponding estimates.

    Args:
        first: e.g. SEM result
        second: e.g. mixed model result
        names: Canonical parameter names to compare (default: union of both)
        labels: Column labels (default: the two model names)

    Returns:
        DataFrame indexed by parameter with both estimates, difference and
        relative difference (difference / second)

    Raises:
        KeyError: If a parameter is missing from either result
    """
    names = _resolve_names(first.estimates, second.estimates, names)
    if labels is None:
        labels = (first.model_name, second.model_name)
    if labels[0] == labels[1]:
        labels = (f"{labels[0]} (1)", f"{labels[1]} (2)")

    a = np.array([first.get(n) for n in names])
    b = np.array([second.get(n) for n in names])
    with np.errstate(divide='ignore', invalid='ignore'):
        relative = np.where(b != 0, (a - b) / np.abs(b), np.nan)

    table = pd.DataFrame({
        labels[0]: a,
        labels[1]: b,
        'difference': a - b,
        'relative_difference': relative,
    }, index=pd.Index(names, name='parameter'))
    return table


def compare_variance_components(first: FittedResult, second: FittedResult,
                                labels: Optional[Tuple[str, str]] = None) -> pd.DataFrame:
    """compare_parameters restricted to variances, covariances and residual variances."""
    names = list(first.variance_components())
    return compare_parameters(first, second, names=names, labels=labels)


def compare_to_truth(result: FittedResult, truth: Mapping[str, float],
                     names: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """
    Parameter recovery against the generative truth.

    Bias = θ̂ - θ, bias_pct = 100 · (θ̂ - θ) / θ

    Raises:
        KeyError: If a true parameter has no estimate (or vice versa for
                  explicitly requested names)
    """
    if names is None:
        names = list(truth)
    records = []
    for name in names:
        if name not in truth:
            raise KeyError(f"No true value for parameter '{name}'")
        true_val = float(truth[name])
        est = result.get(name)
        se = result.std_errors.get(name, np.nan)
        records.append({
            'parameter': name,
            'true_value': true_val,
            'estimate': est,
            'se': se,
            'bias': est - true_val,
            'bias_pct': (est - true_val) / true_val * 100 if true_val != 0 else np.nan,
        })
    return pd.DataFrame(records).set_index('parameter')


def score_agreement(first: FittedResult, second: FittedResult,
                    factors: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """
    Agreement of per-unit predictions, factor by factor.

    Returns:
        DataFrame indexed by factor with n, Pearson correlation, p-value,
        mean absolute difference and the two prediction standard deviations

    Raises:
        KeyError: If the factor sets or unit sets of the two results differ
    """
    if factors is None:
        if set(first.factors) != set(second.factors):
            raise KeyError(f"Factor mismatch: {first.factors} vs {second.factors}")
        factors = first.factors
    for factor in factors:
        if factor not in first.scores.columns or factor not in second.scores.columns:
            raise KeyError(f"Factor '{factor}' not predicted by both models")

    units_a = first.scores.index
    units_b = second.scores.index
    if len(units_a) != len(units_b) or set(units_a) != set(units_b):
        only_a = units_a.difference(units_b)
        only_b = units_b.difference(units_a)
        raise KeyError(
            f"Unit mismatch: {len(only_a)} units only in {first.model_name}, "
            f"{len(only_b)} only in {second.model_name}"
        )

    aligned_b = second.scores.loc[units_a]
    records = []
    for factor in factors:
        x = first.scores[factor].to_numpy(dtype=float)
        y = aligned_b[factor].to_numpy(dtype=float)
        r, p = stats.pearsonr(x, y)
        records.append({
            'factor': factor,
            'n': len(x),
            'correlation': float(r),
            'p_value': float(p),
            'mean_abs_difference': float(np.mean(np.abs(x - y))),
            f'sd_{first.model_name}': float(np.std(x, ddof=1)),
            f'sd_{second.model_name}': float(np.std(y, ddof=1)),
        })
    return pd.DataFrame(records).set_index('factor')


def compare_fits(sem: FittedResult, lmm: FittedResult,
                 truth: Optional[Mapping[str, float]] = None,
                 threshold: float = EQUIVALENCE_THRESHOLD,
                 verbose: bool = True) -> EquivalenceSummary:
    """
    Full comparison of an SEM fit and a mixed model fit.

    Args:
        sem: SEM result
        lmm: Mixed model result
        truth: Optional generative parameter values
        threshold: Minimum correlation for the predictions to count as equivalent
        verbose: Print the comparison

    Returns:
        EquivalenceSummary
    """
    comparison_log = ComparisonLogger(verbose=verbose)
    comparison_log.header(f"{sem.model_name} vs {lmm.model_name}")

    parameters = compare_parameters(sem, lmm)
    labels = tuple(parameters.columns[:2])
    for name, row in parameters.iterrows():
        comparison_log.parameter(name, row.iloc[0], row.iloc[1], labels=labels)

    scores = score_agreement(sem, lmm)
    for factor, row in scores.iterrows():
        comparison_log.score_correlation(factor, row['correlation'], threshold)

    recovery = {}
    if truth is not None:
        recovery[sem.model_name] = compare_to_truth(sem, truth)
        recovery[lmm.model_name] = compare_to_truth(lmm, truth)

    summary = EquivalenceSummary(parameters=parameters, scores=scores,
                                 recovery=recovery, threshold=threshold)
    if not summary.equivalent:
        logger.warning(f"Predictions not equivalent: min r = {summary.min_correlation:.4f}")
    return summary
