"""
Tests for SEM and Mixed Model Fitting
=====================================

Both fitters maximise the same marginal likelihood, so their estimates
must agree and their per-unit predictions must be (nearly) identical.
"""

import numpy as np
import pandas as pd
import pytest

from lmmsem.estimation.comparison import score_agreement
from lmmsem.models.mixed_model import fit_lmm, select_reference_item
from lmmsem.models.results import FittedResult
from lmmsem.models.sem_model import fit_sem, gls_latent_means, regression_scores
from lmmsem.models.specification import GrowthModelSpec
from lmmsem.simulation.latent_simulator import LatentGrowthSimulator, LatentSpec
from lmmsem.simulation.reshape import wide_to_long


@pytest.mark.unit
class TestFittedResult:

    @pytest.fixture
    def result(self):
        scores = pd.DataFrame({'intercept': [0.1, 0.2]}, index=pd.Index([1, 2], name='unit'))
        return FittedResult(model_name='M', backend='test',
                            estimates={'mean_intercept': 0.3, 'var_intercept': 4.0,
                                       'resid_y1': 1.0},
                            std_errors={'mean_intercept': 0.1},
                            scores=scores)

    def test_get_missing_raises_key_error(self, result):
        with pytest.raises(KeyError, match="not found"):
            result.get('var_slope')

    def test_mapping_access(self, result):
        assert result['var_intercept'] == 4.0
        assert 'resid_y1' in result
        assert result.factors == ['intercept']

    def test_estimates_read_only(self, result):
        with pytest.raises(TypeError):
            result.estimates['var_intercept'] = 1.0

    def test_variance_components(self, result):
        assert list(result.variance_components()) == ['var_intercept', 'resid_y1']

    def test_to_dataframe(self, result):
        table = result.to_dataframe()
        assert list(table.columns) == ['model', 'parameter', 'estimate', 'se', 'z']
        assert table.loc[0, 'z'] == pytest.approx(3.0)
        assert np.isnan(table.loc[1, 'se'])

    def test_summary_mentions_backend(self, result):
        assert "M (test)" in result.summary()


@pytest.mark.unit
class TestScoringAlgebra:

    def test_gls_means_equal_item_means_for_exchangeable_items(self):
        lam = np.ones((3, 1))
        sigma = 4.0 * lam @ lam.T + np.eye(3)
        mu, se = gls_latent_means(np.array([1.0, 1.0, 1.0]), lam, sigma, n=100)
        assert mu[0] == pytest.approx(1.0)
        assert se[0] > 0

    def test_regression_scores_shrink_towards_mean(self):
        lam = np.ones((2, 1))
        phi = np.array([[1.0]])
        sigma = lam @ phi @ lam.T + np.eye(2)
        y = np.array([[3.0, 3.0]])
        scores = regression_scores(y, np.array([1.0]), lam, phi, sigma)
        # weight = 2 / (2 + 1) on the deviation of the item mean
        assert scores[0, 0] == pytest.approx(1.0 + 2.0 / 3.0 * 2.0)


@pytest.mark.estimation
class TestInterceptScenario:

    def test_both_converged(self, intercept_fits):
        sem, lmm = intercept_fits
        assert sem.converged
        assert lmm.converged
        assert sem.n_units == lmm.n_units == 1000
        assert lmm.n_observations == 3000

    def test_score_correlation(self, intercept_fits):
        sem, lmm = intercept_fits
        agreement = score_agreement(sem, lmm)
        assert agreement.loc['intercept', 'correlation'] > 0.99

    def test_same_parameter_names(self, intercept_fits):
        sem, lmm = intercept_fits
        assert set(sem.estimates) == set(lmm.estimates)

    def test_variance_components_agree(self, intercept_fits):
        sem, lmm = intercept_fits
        for name, value in sem.variance_components().items():
            assert lmm.get(name) == pytest.approx(value, rel=0.05), name

    def test_means_agree(self, intercept_fits):
        sem, lmm = intercept_fits
        assert lmm.get('mean_intercept') == pytest.approx(sem.get('mean_intercept'), abs=0.02)

    def test_recovers_truth(self, intercept_fits, intercept_spec):
        sem, _ = intercept_fits
        for name, true_value in intercept_spec.true_parameters().items():
            se = sem.std_errors[name]
            assert abs(sem.get(name) - true_value) < 4 * se + 1e-6, name

    def test_reference_item_is_smallest_residual(self, intercept_data):
        model_spec = GrowthModelSpec.from_latent_spec(intercept_data.spec)
        long = wide_to_long(intercept_data.wide)
        assert select_reference_item(long, model_spec) == 'y1'

    def test_sem_fit_statistics(self, intercept_fits):
        sem, lmm = intercept_fits
        assert 'chi2' in sem.fit_statistics
        assert {'LogLik', 'AIC', 'BIC'} <= set(sem.fit_statistics)
        assert {'LogLik', 'AIC', 'BIC'} <= set(lmm.fit_statistics)

    def test_log_likelihoods_agree(self, intercept_fits):
        sem, lmm = intercept_fits
        sem_ll = sem.fit_statistics['LogLik']
        lmm_ll = lmm.fit_statistics['LogLik']
        assert sem_ll < -1000
        assert sem_ll == pytest.approx(lmm_ll, rel=1e-3)
        # the mixed model maximises the joint likelihood over the same parameters
        assert sem_ll <= lmm_ll + 0.05

    def test_semopy_factor_scores(self, intercept_data, intercept_fits):
        _, lmm = intercept_fits
        model_spec = GrowthModelSpec.from_latent_spec(intercept_data.spec)
        sem = fit_sem(intercept_data.wide, model_spec, score_method='semopy', verbose=False)
        agreement = score_agreement(sem, lmm)
        assert agreement.loc['intercept', 'correlation'] > 0.99


@pytest.mark.estimation
class TestInterceptSlopeScenario:

    def test_both_converged(self, slope_fits):
        sem, lmm = slope_fits
        assert sem.converged
        assert lmm.converged

    def test_score_correlations(self, slope_fits):
        sem, lmm = slope_fits
        agreement = score_agreement(sem, lmm)
        assert list(agreement.index) == ['intercept', 'slope']
        assert (agreement['correlation'] > 0.99).all()

    def test_variance_components_agree(self, slope_fits):
        sem, lmm = slope_fits
        for name, value in sem.variance_components().items():
            assert lmm.get(name) == pytest.approx(value, rel=0.05, abs=0.02), name

    def test_fixed_effects_agree(self, slope_fits):
        sem, lmm = slope_fits
        for name in ('mean_intercept', 'mean_slope'):
            assert lmm.get(name) == pytest.approx(sem.get(name), abs=0.02), name

    def test_scores_track_true_latents(self, slope_data, slope_fits):
        sem, _ = slope_fits
        r = np.corrcoef(sem.scores['intercept'], slope_data.latent['intercept'])[0, 1]
        assert r > 0.8

    def test_log_likelihoods_agree(self, slope_fits):
        sem, lmm = slope_fits
        assert sem.fit_statistics['LogLik'] == pytest.approx(lmm.fit_statistics['LogLik'],
                                                              rel=1e-3)


@pytest.mark.estimation
class TestHomogeneousResiduals:

    def test_equal_residuals(self, homogeneous_fits):
        sem, lmm = homogeneous_fits
        for fit in (sem, lmm):
            resid = [fit.get(f'resid_y{k}') for k in (1, 2, 3)]
            assert max(resid) - min(resid) < 1e-6

    def test_agreement(self, homogeneous_fits):
        sem, lmm = homogeneous_fits
        assert lmm.get('resid_y1') == pytest.approx(sem.get('resid_y1'), rel=0.05)
        assert score_agreement(sem, lmm).loc['intercept', 'correlation'] > 0.99


@pytest.mark.unit
class TestFitErrors:

    def test_unknown_score_method(self, intercept_data):
        model_spec = GrowthModelSpec.from_latent_spec(intercept_data.spec)
        with pytest.raises(ValueError, match="score method"):
            fit_sem(intercept_data.wide, model_spec, score_method='bartlett', verbose=False)

    def test_sem_missing_items(self, intercept_data):
        model_spec = GrowthModelSpec.from_latent_spec(intercept_data.spec)
        with pytest.raises(ValueError, match="Missing item columns"):
            fit_sem(intercept_data.wide.drop(columns='y2'), model_spec, verbose=False)

    def test_lmm_missing_columns(self, intercept_data):
        model_spec = GrowthModelSpec.from_latent_spec(intercept_data.spec)
        long = wide_to_long(intercept_data.wide).drop(columns='time')
        with pytest.raises(ValueError, match="Missing required columns"):
            fit_lmm(long, model_spec, verbose=False)

    def test_lmm_rejects_free_loadings(self, slope_data):
        model_spec = GrowthModelSpec(('intercept', 'slope'), slope_data.spec.item_names,
                                     slope_data.spec.loadings,
                                     free_loadings={'slope': ('y4',)})
        long = wide_to_long(slope_data.wide, time_scores=slope_data.spec.time_scores)
        with pytest.raises(ValueError, match="Free loadings"):
            fit_lmm(long, model_spec, verbose=False)

    def test_lmm_unknown_reference_item(self, intercept_data):
        model_spec = GrowthModelSpec.from_latent_spec(intercept_data.spec)
        long = wide_to_long(intercept_data.wide)
        with pytest.raises(ValueError, match="reference item"):
            fit_lmm(long, model_spec, reference_item='y9', verbose=False)


@pytest.fixture(scope="module")
def close_residuals_data():
    """Smallest residual at y2, all four within 15% of each other."""
    spec = LatentSpec.intercept_slope(means=[0.3, 0.5], sds=[2.0, 1.0], correlation=0.3,
                                      residual_sd=[1.1, 1.0, 1.05, 1.15],
                                      time_scores=[0, 1, 2, 3])
    return LatentGrowthSimulator(spec, seed=0).simulate(1000)


@pytest.mark.slow
@pytest.mark.estimation
class TestReferenceSelection:

    def test_automatic_choice_has_highest_likelihood(self, close_residuals_data):
        data = close_residuals_data
        model_spec = GrowthModelSpec.from_latent_spec(data.spec)
        long = wide_to_long(data.wide, time_scores=data.spec.time_scores)

        auto = fit_lmm(long, model_spec, verbose=False)
        by_reference = {
            item: fit_lmm(long, model_spec, reference_item=item,
                          verbose=False).fit_statistics['LogLik']
            for item in model_spec.item_names
        }
        assert auto.fit_statistics['LogLik'] >= max(by_reference.values()) - 1e-6
        assert select_reference_item(long, model_spec) == max(by_reference,
                                                              key=by_reference.get)

    def test_residuals_match_sem(self, close_residuals_data):
        data = close_residuals_data
        model_spec = GrowthModelSpec.from_latent_spec(data.spec)
        long = wide_to_long(data.wide, time_scores=data.spec.time_scores)
        sem = fit_sem(data.wide, model_spec, verbose=False)
        lmm = fit_lmm(long, model_spec, verbose=False)
        for item in model_spec.item_names:
            name = f'resid_{item}'
            assert lmm.get(name) == pytest.approx(sem.get(name), abs=0.02), name
        assert lmm.get('resid_y4') == pytest.approx(1.15 ** 2, abs=0.25)


@pytest.fixture(scope="module")
def free_fit(slope_data):
    """SEM with the third slope loading estimated instead of fixed to 2."""
    model_spec = GrowthModelSpec(('intercept', 'slope'), slope_data.spec.item_names,
                                 slope_data.spec.loadings,
                                 free_loadings={'slope': ('y3',)})
    return fit_sem(slope_data.wide, model_spec, verbose=False)


@pytest.mark.estimation
class TestFreeLoadings:

    def test_loading_recovered(self, free_fit):
        assert free_fit.converged
        assert 'loading_slope_y3' in free_fit.estimates
        assert free_fit.get('loading_slope_y3') == pytest.approx(2.0, abs=0.15)
        assert free_fit.std_errors['loading_slope_y3'] > 0

    def test_other_parameters_still_estimated(self, free_fit, slope_fits):
        sem, _ = slope_fits
        assert free_fit.get('var_slope') == pytest.approx(sem.get('var_slope'), abs=0.15)
        assert free_fit.scores.shape == (1000, 2)
