"""
Linear Mixed Model with Heterogeneous Residual Variance
=======================================================

Fits the growth model to the long table with statsmodels MixedLM:

    y_it = (β₀ + b₀ᵢ) + (β₁ + b₁ᵢ) · t + ε_it,   ε_it ~ N(0, σ²_t)

MixedLM has a single residual scale, so time-specific residual variances
are expressed as variance components: for every item except a reference
item, an indicator column gets one random effect per unit. Each unit has
exactly one observation per item, so that random effect is extra
residual variance for that time point:

    σ²_t = scale + vc_t      (vc_ref = 0)

Variance components cannot be negative, so the reference must be the
item with the smallest residual variance. Unless given, the model is
fitted once per candidate reference and the highest likelihood is kept.
Fitting is by ML (reml=False) so that the estimates are comparable with
the SEM.
"""

from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf

from lmmsem.models.results import (
    FittedResult, cov_name, mean_name, resid_name, var_name,
)
from lmmsem.models.specification import GrowthModelSpec
from lmmsem.simulation.reshape import TIME_COL, UNIT_COL, VALUE_COL, VARIABLE_COL
from lmmsem.utils.logging_config import EstimationLogger, get_logger

logger = get_logger(__name__)

REQUIRED_COLUMNS = [UNIT_COL, VARIABLE_COL, TIME_COL, VALUE_COL]


def _validate_long(long: pd.DataFrame, model_spec: GrowthModelSpec,
                   model_name: str) -> None:
    missing = [c for c in REQUIRED_COLUMNS if c not in long.columns]
    if missing:
        available = sorted(long.columns.tolist())
        raise ValueError(
            f"{model_name}: Missing required columns: {missing}\n"
            f"Available columns: {available}"
        )
    unknown = sorted(set(long[VARIABLE_COL]) - set(model_spec.item_names))
    if unknown:
        raise ValueError(f"{model_name}: Variables {unknown} are not items of the model")


def _indicator_columns(item_names: Sequence[str], reference: str) -> Dict[str, str]:
    """Map every non-reference item to a patsy-safe indicator column name."""
    return {item: f"vc_{k}" for k, item in enumerate(item_names) if item != reference}


def _fit_candidates(long: pd.DataFrame, model_spec: GrowthModelSpec,
                    reml: bool = False,
                    method: Optional[Union[str, List[str]]] = None) -> Dict[str, tuple]:
    """
    Fit the heterogeneous model once per candidate reference item.

    A candidate whose covariance matrix is singular is logged and skipped.

    Returns:
        {item: (fit, {item: variance component name})}

    Raises:
        ValueError: If no candidate could be fitted
    """
    candidates = {}
    for item in model_spec.item_names:
        model, _, vc_items = build_mixed_model(long, model_spec, item)
        try:
            fit = model.fit(reml=reml, method=method)
        except np.linalg.LinAlgError as e:
            logger.warning(f"Reference item {item}: fit failed ({e})")
            continue
        candidates[item] = (fit, vc_items)
    if not candidates:
        raise ValueError("No reference item gave a usable mixed model fit")
    return candidates


def _best_candidate(candidates: Dict[str, tuple]) -> str:
    """Highest log-likelihood, preferring converged fits."""
    converged = {item: pair for item, pair in candidates.items()
                 if getattr(pair[0], 'converged', True)}
    pool = converged or candidates
    loglik = {item: float(pair[0].llf) for item, pair in pool.items()}
    reference = max(loglik, key=loglik.get)
    logger.debug(f"Log-likelihood by reference item: {loglik}; reference={reference}")
    return reference


def select_reference_item(long: pd.DataFrame, model_spec: GrowthModelSpec,
                          reml: bool = False,
                          method: Optional[Union[str, List[str]]] = None) -> str:
    """
    Reference item of the best-fitting heterogeneous model.

    Every other item's variance component is bounded below by zero, so
    only the item with the smallest residual variance leaves the model
    unconstrained; that choice maximises the likelihood.

    Returns:
        Item name to use as the residual variance reference level
    """
    return _best_candidate(_fit_candidates(long, model_spec, reml=reml, method=method))


def build_mixed_model(long: pd.DataFrame, model_spec: GrowthModelSpec,
                      reference_item: Optional[str] = None):
    """
    Construct (but do not fit) the MixedLM for a specification.

    Returns:
        (statsmodels MixedLM, data used, {item: variance component name})
    """
    data = long.copy()
    vc_formula = None
    vc_items: Dict[str, str] = {}

    if model_spec.residual_structure == 'heterogeneous':
        indicators = _indicator_columns(model_spec.item_names, reference_item)
        vc_formula = {}
        for item, column in indicators.items():
            data[column] = (data[VARIABLE_COL] == item).astype(float)
            vc_formula[resid_name(item)] = f"0 + {column}"
            vc_items[item] = resid_name(item)

    model = smf.mixedlm(model_spec.fixed_formula(), data, groups=UNIT_COL,
                        re_formula=model_spec.re_formula(), vc_formula=vc_formula)
    return model, data, vc_items


def _random_effect_table(fit, factor_names: Tuple[str, ...]) -> pd.DataFrame:
    """Per-unit BLUPs of the intercept / slope random effects."""
    k_re = fit.model.k_re
    rows = {group: np.asarray(effects)[:k_re] for group, effects in fit.random_effects.items()}
    table = pd.DataFrame.from_dict(rows, orient='index', columns=list(factor_names))
    table.index.name = UNIT_COL
    return table.sort_index()


def extract_mixed_parameters(fit, model_spec: GrowthModelSpec,
                             vc_items: Dict[str, str]
                             ) -> Tuple[Dict[str, float], Dict[str, float]]:
    """
    Map a MixedLM fit to canonical names.

    Returns:
        (estimates, std_errors) keyed by canonical name
    """
    estimates: Dict[str, float] = {}
    std_errors: Dict[str, float] = {}

    fe_names = model_spec.fixed_effect_names()
    for sm_name, factor in fe_names.items():
        estimates[mean_name(factor)] = float(fit.fe_params[sm_name])
        std_errors[mean_name(factor)] = float(fit.bse_fe[sm_name])

    cov_re = np.asarray(fit.cov_re)
    for f, factor in enumerate(model_spec.factor_names):
        estimates[var_name(factor)] = float(cov_re[f, f])
    if model_spec.n_factors == 2:
        first, second = model_spec.factor_names
        estimates[cov_name(first, second)] = float(cov_re[0, 1])

    scale = float(fit.scale)
    vcomp = dict(zip(fit.model.exog_vc.names, np.asarray(fit.vcomp, dtype=float)))
    for item in model_spec.item_names:
        extra = vcomp.get(vc_items[item], 0.0) if item in vc_items else 0.0
        estimates[resid_name(item)] = scale + extra

    return estimates, std_errors


def fit_lmm(long: pd.DataFrame,
            model_spec: GrowthModelSpec,
            model_name: str = 'LMM',
            reference_item: Optional[str] = None,
            reml: bool = False,
            method: Optional[Union[str, List[str]]] = None,
            verbose: bool = True) -> FittedResult:
    """
    Fit the mixed model to a long table.

    Args:
        long: Long table with unit, variable, time and y columns
        model_spec: Growth model specification (fixed loadings only)
        model_name: Label used in logs and tables
        reference_item: Residual variance reference item (heterogeneous only);
                        the best-fitting candidate when None
        reml: Use REML instead of ML
        method: Optimizer(s) passed to MixedLM.fit
        verbose: Print progress

    Returns:
        FittedResult whose scores are fixed effect + predicted random effect

    Raises:
        ValueError: For free loadings, missing columns or unknown items
    """
    _validate_long(long, model_spec, model_name)
    model_spec.fixed_formula()  # raises for specifications without an LMM form

    est_log = EstimationLogger(model_name, verbose=verbose)
    est_log.start()

    try:
        if model_spec.residual_structure == 'heterogeneous' and reference_item is None:
            candidates = _fit_candidates(long, model_spec, reml=reml, method=method)
            reference_item = _best_candidate(candidates)
            fit, vc_items = candidates[reference_item]
        else:
            if (model_spec.residual_structure == 'heterogeneous'
                    and reference_item not in model_spec.item_names):
                raise ValueError(f"Unknown reference item '{reference_item}'")
            model, _, vc_items = build_mixed_model(long, model_spec, reference_item)
            fit = model.fit(reml=reml, method=method)
    except Exception as e:
        est_log.failed(str(e))
        raise

    if verbose and model_spec.residual_structure == 'heterogeneous':
        print(f"  Residual variance reference item: {reference_item}")

    converged = bool(getattr(fit, 'converged', True))

    estimates, std_errors = extract_mixed_parameters(fit, model_spec, vc_items)

    random_effects = _random_effect_table(fit, model_spec.factor_names)
    scores = random_effects.copy()
    for factor in model_spec.factor_names:
        scores[factor] = scores[factor] + estimates[mean_name(factor)]

    fit_statistics = {
        'LogLik': float(fit.llf),
        'AIC': float(fit.aic),
        'BIC': float(fit.bic),
        'scale': float(fit.scale),
    }

    if converged:
        est_log.converged(n_obs=int(fit.nobs), loglik=fit_statistics['LogLik'],
                          aic=fit_statistics['AIC'], bic=fit_statistics['BIC'])
    else:
        est_log.not_converged("(MixedLM converged=False)")
    est_log.parameters(estimates, std_errors)

    return FittedResult(
        model_name=model_name,
        backend=f"statsmodels MixedLM ({'REML' if reml else 'ML'})",
        estimates=estimates,
        std_errors=std_errors,
        scores=scores,
        fit_statistics=fit_statistics,
        converged=converged,
        n_observations=int(fit.nobs),
        n_units=len(scores),
        raw=fit,
    )
