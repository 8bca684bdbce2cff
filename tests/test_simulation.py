"""
Tests for Simulation Module
===========================

Tests for the latent growth data generating process.
"""

import numpy as np
import pandas as pd
import pytest

from lmmsem.simulation.latent_simulator import (
    LatentGrowthSimulator, LatentSpec, empirical_moments, latent_spec_from_config,
    simulate_wide,
)


@pytest.mark.unit
class TestLatentSpec:
    """Validation and derived quantities of LatentSpec."""

    def test_implied_variances_intercept(self, intercept_spec):
        np.testing.assert_allclose(intercept_spec.implied_variances().values, [5.0, 6.0, 7.0])

    def test_implied_covariance_slope(self, slope_spec):
        sigma = slope_spec.implied_covariance()
        # Var(y_t) = 4 + 2 t (0.3 * 2 * 1) + t^2 + theta_t
        expected = [4 + 0 + 0 + 1, 4 + 1.2 + 1 + 2, 4 + 2.4 + 4 + 3, 4 + 3.6 + 9 + 4]
        np.testing.assert_allclose(np.diag(sigma.values), expected)
        assert list(sigma.columns) == ['y1', 'y2', 'y3', 'y4']

    def test_implied_means(self, slope_spec):
        np.testing.assert_allclose(slope_spec.implied_means().values, [0.3, 0.8, 1.3, 1.8])

    def test_true_parameters_order(self, slope_spec):
        params = slope_spec.true_parameters()
        assert list(params)[:5] == ['mean_intercept', 'mean_slope', 'var_intercept',
                                    'var_slope', 'cov_intercept_slope']
        assert params['cov_intercept_slope'] == pytest.approx(0.6)
        assert params['resid_y4'] == pytest.approx(4.0)

    def test_default_item_names(self, intercept_spec):
        assert intercept_spec.item_names == ('y1', 'y2', 'y3')

    def test_time_scores(self, intercept_spec, slope_spec):
        np.testing.assert_array_equal(slope_spec.time_scores, [0, 1, 2, 3])
        np.testing.assert_array_equal(intercept_spec.time_scores, [0, 1, 2])

    def test_inputs_copied_and_read_only(self):
        residual_sd = np.array([1.0, 1.0])
        spec = LatentSpec.intercept_only(0.0, 1.0, residual_sd)
        residual_sd[0] = 5.0
        assert spec.residual_sd[0] == 1.0
        with pytest.raises(ValueError):
            spec.residual_sd[0] = 2.0

    def test_three_factors_rejected(self):
        with pytest.raises(ValueError, match="1 or 2 latent factors"):
            LatentSpec(('a', 'b', 'c'), [0, 0, 0], np.eye(3), np.ones((3, 3)), [1, 1, 1])

    def test_item_count_mismatch_rejected(self):
        with pytest.raises(ValueError, match="Dimension mismatch"):
            LatentSpec(('intercept',), [0.0], [[1.0]], np.ones((3, 1)), [1.0, 1.0])

    def test_time_score_mismatch_rejected(self):
        with pytest.raises(ValueError, match="Dimension mismatch"):
            LatentSpec.intercept_slope([0, 0], [1, 1], 0.0, [1, 1, 1], time_scores=[0, 1])

    def test_asymmetric_covariance_rejected(self):
        with pytest.raises(ValueError, match="symmetric"):
            LatentSpec(('intercept', 'slope'), [0, 0], [[1, 0.5], [0.2, 1]],
                       np.ones((3, 2)), [1, 1, 1])

    def test_indefinite_covariance_rejected(self):
        with pytest.raises(ValueError, match="positive semi-definite"):
            LatentSpec(('intercept', 'slope'), [0, 0], [[1, 2], [2, 1]],
                       np.ones((3, 2)), [1, 1, 1])

    def test_negative_residual_sd_rejected(self):
        with pytest.raises(ValueError, match=">= 0"):
            LatentSpec.intercept_only(0.0, 1.0, [1.0, -1.0])

    def test_correlation_out_of_range_rejected(self):
        with pytest.raises(ValueError, match="Correlation"):
            LatentSpec.intercept_slope([0, 0], [1, 1], 1.5, [1, 1, 1])


@pytest.mark.unit
class TestSpecFromConfig:

    def test_intercept_scenario(self):
        spec = latent_spec_from_config({
            'type': 'intercept', 'mean': 0.3, 'sd': 2.0, 'residual_sd': [1, 1, 1],
            'items': ['a', 'b', 'c'],
        })
        assert spec.factor_names == ('intercept',)
        assert spec.item_names == ('a', 'b', 'c')
        assert spec.covariance[0, 0] == pytest.approx(4.0)

    def test_slope_scenario(self, study_config):
        spec = latent_spec_from_config(study_config['scenarios']['intercept_slope'])
        assert spec.factor_names == ('intercept', 'slope')
        assert spec.n_items == 4

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unknown scenario type"):
            latent_spec_from_config({'type': 'quadratic', 'residual_sd': [1, 1]})


@pytest.mark.simulation
class TestLatentGrowthSimulator:

    def test_shapes_and_index(self, intercept_data):
        wide = intercept_data.wide
        assert wide.shape == (1000, 3)
        assert list(wide.columns) == ['y1', 'y2', 'y3']
        assert wide.index.name == 'unit'
        assert wide.index[0] == 1 and wide.index[-1] == 1000
        assert intercept_data.latent.shape == (1000, 1)
        assert intercept_data.latent.index.equals(wide.index)

    def test_variances_match_implied(self, intercept_data):
        """n=1000, sd=2, residual sds (1, sqrt2, sqrt3): variances near (5, 6, 7)."""
        variances = intercept_data.wide.var().values
        np.testing.assert_allclose(variances, [5.0, 6.0, 7.0], rtol=0.15)

    def test_variances_match_implied_large_n(self, slope_spec):
        wide = simulate_wide(slope_spec, 20000, seed=7)
        implied = slope_spec.implied_variances().values
        np.testing.assert_allclose(wide.var().values, implied, rtol=0.05)

    def test_means_match_implied(self, slope_spec):
        wide = simulate_wide(slope_spec, 20000, seed=8)
        np.testing.assert_allclose(wide.mean().values, slope_spec.implied_means().values,
                                   atol=0.1)

    def test_reproducible_with_seed(self, intercept_spec):
        a = simulate_wide(intercept_spec, 50, seed=99)
        b = simulate_wide(intercept_spec, 50, seed=99)
        pd.testing.assert_frame_equal(a, b)

    def test_different_seeds_differ(self, intercept_spec):
        a = simulate_wide(intercept_spec, 50, seed=1)
        b = simulate_wide(intercept_spec, 50, seed=2)
        assert not np.allclose(a.values, b.values)

    def test_zero_residual_sd_is_exact(self):
        spec = LatentSpec.intercept_only(0.0, 1.0, [0.0, 0.0, 0.0])
        data = LatentGrowthSimulator(spec, seed=3).simulate(20)
        for item in spec.item_names:
            np.testing.assert_allclose(data.wide[item].values, data.latent['intercept'].values)

    @pytest.mark.parametrize("n", [0, -5])
    def test_non_positive_n_rejected(self, intercept_spec, n):
        with pytest.raises(ValueError, match="positive"):
            LatentGrowthSimulator(intercept_spec, seed=1).simulate(n)

    def test_empirical_moments(self, intercept_data):
        moments = empirical_moments(intercept_data.wide, intercept_data.spec)
        assert list(moments.columns) == ['mean', 'implied_mean', 'variance', 'implied_variance']
        np.testing.assert_allclose(moments['implied_variance'].values, [5.0, 6.0, 7.0])
