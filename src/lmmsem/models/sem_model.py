"""
Constrained Latent Growth SEM
=============================

Fits the growth model to the wide table with semopy and extracts the
estimates under canonical names.

semopy fits the covariance structure only:

    Σ = Λ Φ Λᵀ + Θ

Latent means are recovered by generalized least squares on the fitted Σ,
which is the ML estimate of μ in the mean structure ȳ = Λ μ given Σ:

    μ̂ = (Λᵀ Σ⁻¹ Λ)⁻¹ Λᵀ Σ⁻¹ ȳ

Per-unit latent scores use the regression (empirical Bayes) predictor

    η̂_i = μ̂ + Φ Λᵀ Σ⁻¹ (y_i - Λ μ̂)

which is the same predictor the mixed model uses for fixed effect plus
random effect (BLUP).
"""

from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import linalg, stats

import semopy
from semopy import Model

from lmmsem.models.results import (
    FittedResult, cov_name, loading_name, mean_name, resid_name, var_name,
)
from lmmsem.models.specification import GrowthModelSpec
from lmmsem.utils.logging_config import EstimationLogger, get_logger

logger = get_logger(__name__)

VALID_SCORE_METHODS = ('regression', 'semopy')

# semopy calc_stats columns carried into FittedResult.fit_statistics. Its
# LogLik/AIC/BIC are on the discrepancy scale; full-information values
# replace them.
FIT_INDICES = ('DoF', 'chi2', 'chi2 p-value', 'CFI', 'TLI', 'RMSEA', 'GFI')


# =============================================================================
# PARAMETER EXTRACTION
# =============================================================================

def _parameter_table(model: Model) -> pd.DataFrame:
    """semopy inspect() output with numeric estimate / SE columns."""
    params = model.inspect()
    params = params.copy()
    params['Estimate'] = pd.to_numeric(params['Estimate'], errors='coerce')
    params['Std. Err'] = pd.to_numeric(params['Std. Err'], errors='coerce')
    return params


def _lookup(params: pd.DataFrame, lval: str, op: str, rval: str,
            symmetric: bool = False) -> Tuple[float, float]:
    """
    Find one parameter row.

    Raises:
        KeyError: If semopy did not report the parameter
    """
    mask = (params['lval'] == lval) & (params['op'] == op) & (params['rval'] == rval)
    if symmetric:
        mask |= (params['lval'] == rval) & (params['op'] == op) & (params['rval'] == lval)
    rows = params[mask]
    if rows.empty:
        raise KeyError(f"semopy parameter '{lval} {op} {rval}' not found")
    row = rows.iloc[0]
    return float(row['Estimate']), float(row['Std. Err'])


def extract_sem_parameters(params: pd.DataFrame, model_spec: GrowthModelSpec
                           ) -> Tuple[Dict[str, float], Dict[str, float]]:
    """
    Map a semopy parameter table to canonical names.

    Returns:
        (estimates, std_errors) keyed by canonical name
    """
    estimates: Dict[str, float] = {}
    std_errors: Dict[str, float] = {}

    for factor in model_spec.factor_names:
        est, se = _lookup(params, factor, '~~', factor)
        estimates[var_name(factor)] = est
        std_errors[var_name(factor)] = se

    if model_spec.n_factors == 2:
        first, second = model_spec.factor_names
        est, se = _lookup(params, first, '~~', second, symmetric=True)
        estimates[cov_name(first, second)] = est
        std_errors[cov_name(first, second)] = se

    for item in model_spec.item_names:
        est, se = _lookup(params, item, '~~', item)
        estimates[resid_name(item)] = est
        std_errors[resid_name(item)] = se

    for factor, items in model_spec.free_loadings.items():
        for item in items:
            # semopy lists measurement paths as "item ~ factor"
            est, se = _lookup(params, item, '~', factor)
            estimates[loading_name(factor, item)] = est
            std_errors[loading_name(factor, item)] = se

    return estimates, std_errors


def implied_matrices(estimates: Dict[str, float], model_spec: GrowthModelSpec
                     ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Rebuild Λ, Φ and Θ from canonical estimates.

    Returns:
        (lambda_, phi, theta) with shapes (K, F), (F, F), (K, K)
    """
    free_values = {
        (factor, item): estimates[loading_name(factor, item)]
        for factor, items in model_spec.free_loadings.items() for item in items
    }
    lambda_ = model_spec.loading_matrix(free_values)

    factors = model_spec.factor_names
    phi = np.diag([estimates[var_name(f)] for f in factors])
    if len(factors) == 2:
        phi[0, 1] = phi[1, 0] = estimates[cov_name(factors[0], factors[1])]

    theta = np.diag([estimates[resid_name(item)] for item in model_spec.item_names])
    return lambda_, phi, theta


def gls_latent_means(y_bar: np.ndarray, lambda_: np.ndarray,
                     sigma: np.ndarray, n: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    GLS latent means and their standard errors given the fitted Σ.

    Returns:
        (mu_hat, se)
    """
    sigma_inv_lambda = linalg.solve(sigma, lambda_, assume_a='pos')
    info = lambda_.T @ sigma_inv_lambda
    info_inv = linalg.inv(info)
    mu_hat = info_inv @ (sigma_inv_lambda.T @ y_bar)
    se = np.sqrt(np.diag(info_inv) / n)
    return mu_hat, se


def regression_scores(y: np.ndarray, mu: np.ndarray, lambda_: np.ndarray,
                      phi: np.ndarray, sigma: np.ndarray) -> np.ndarray:
    """Empirical Bayes latent scores η̂ = μ + Φ Λᵀ Σ⁻¹ (y - Λ μ), shape (n, F)."""
    weights = linalg.solve(sigma, lambda_ @ phi, assume_a='pos')  # (K, F)
    centered = y - lambda_ @ mu
    return mu + centered @ weights


def full_information_loglik(y: np.ndarray, mu: np.ndarray, lambda_: np.ndarray,
                            sigma: np.ndarray, n_params: int) -> Dict[str, float]:
    """
    Multivariate normal log-likelihood of the raw data with mean Λμ and
    covariance Σ, on the same scale as MixedLM's llf.

    Returns:
        {'LogLik', 'AIC', 'BIC'}
    """
    loglik = float(stats.multivariate_normal.logpdf(y, mean=lambda_ @ mu, cov=sigma).sum())
    n = y.shape[0]
    return {
        'LogLik': loglik,
        'AIC': 2 * n_params - 2 * loglik,
        'BIC': float(n_params * np.log(n) - 2 * loglik),
    }


def _fit_statistics(model: Model) -> Dict[str, float]:
    """Fit indices from semopy.calc_stats as plain floats."""
    table = semopy.calc_stats(model).T
    column = table.columns[0]
    result = {}
    for name in FIT_INDICES:
        if name in table.index:
            value = pd.to_numeric(table.loc[name, column], errors='coerce')
            result[name] = float(value)
    return result


# =============================================================================
# FITTING
# =============================================================================

def fit_sem(wide: pd.DataFrame,
            model_spec: GrowthModelSpec,
            model_name: str = 'SEM',
            score_method: str = 'regression',
            obj: str = 'MLW',
            solver: str = 'SLSQP',
            verbose: bool = True) -> FittedResult:
    """
    Fit the constrained growth SEM to a wide table.

    Args:
        wide: DataFrame indexed by unit with one column per item
        model_spec: Growth model specification
        model_name: Label used in logs and tables
        score_method: 'regression' (empirical Bayes on the latent-mean scale)
                      or 'semopy' (Model.predict_factors, shifted by μ̂)
        obj: semopy objective function
        solver: semopy optimizer
        verbose: Print progress

    Returns:
        FittedResult with canonical estimates and per-unit latent scores

    Raises:
        ValueError: If items are missing from the table or score_method is unknown
    """
    if score_method not in VALID_SCORE_METHODS:
        raise ValueError(f"Invalid score method: {score_method}. "
                         f"Must be one of {VALID_SCORE_METHODS}")
    items = list(model_spec.item_names)
    missing = [c for c in items if c not in wide.columns]
    if missing:
        raise ValueError(f"{model_name}: Missing item columns: {missing}\n"
                         f"Available columns: {sorted(wide.columns)}")

    data = wide[items]
    n = len(data)
    description = model_spec.to_semopy()
    logger.debug(f"{model_name} semopy description:\n{description}")

    est_log = EstimationLogger(model_name, verbose=verbose)
    est_log.start()

    model = Model(description)
    try:
        solution = model.fit(data, obj=obj, solver=solver)
    except Exception as e:
        est_log.failed(str(e))
        raise

    converged = bool(getattr(solution, 'success', True))

    params = _parameter_table(model)
    estimates, std_errors = extract_sem_parameters(params, model_spec)

    lambda_, phi, theta = implied_matrices(estimates, model_spec)
    sigma = lambda_ @ phi @ lambda_.T + theta
    y = data.to_numpy(dtype=float)
    mu_hat, mu_se = gls_latent_means(y.mean(axis=0), lambda_, sigma, n)

    # Means first, matching the order of the generative truth
    ordered = {}
    ordered_se = {}
    for f, factor in enumerate(model_spec.factor_names):
        ordered[mean_name(factor)] = float(mu_hat[f])
        ordered_se[mean_name(factor)] = float(mu_se[f])
    ordered.update(estimates)
    ordered_se.update(std_errors)

    if score_method == 'regression':
        scores = regression_scores(y, mu_hat, lambda_, phi, sigma)
        score_frame = pd.DataFrame(scores, index=data.index,
                                   columns=list(model_spec.factor_names))
    else:
        predicted = model.predict_factors(data)
        score_frame = pd.DataFrame(
            predicted[list(model_spec.factor_names)].to_numpy() + mu_hat,
            index=data.index, columns=list(model_spec.factor_names),
        )

    fit_statistics = _fit_statistics(model)
    # covariance parameters plus one mean per factor
    n_params = len(model.param_vals) + model_spec.n_factors
    fit_statistics.update(full_information_loglik(y, mu_hat, lambda_, sigma, n_params))

    if converged:
        est_log.converged(n_obs=n, loglik=fit_statistics.get('LogLik'),
                          aic=fit_statistics.get('AIC'), bic=fit_statistics.get('BIC'))
    else:
        est_log.not_converged(str(getattr(solution, 'message', '')))
    est_log.parameters(ordered, ordered_se)

    return FittedResult(
        model_name=model_name,
        backend=f"semopy ({obj})",
        estimates=ordered,
        std_errors=ordered_se,
        scores=score_frame,
        fit_statistics=fit_statistics,
        converged=converged,
        n_observations=n,
        n_units=n,
        raw=model,
    )
