"""
Tests for Study Configuration
=============================
"""

import copy
import json

import pytest

from lmmsem.simulation.latent_simulator import latent_spec_from_config
from lmmsem.utils.config_schema import load_config, validate_config


@pytest.mark.unit
class TestValidateConfig:

    def test_shipped_config_is_valid(self, study_config):
        result = validate_config(study_config)
        assert result.is_valid, result.errors
        assert result.errors == []

    def test_shipped_scenarios_build_specs(self, study_config):
        for name, scenario in study_config['scenarios'].items():
            spec = latent_spec_from_config(scenario)
            assert spec.n_items == len(scenario['residual_sd']), name

    def test_intercept_scenario_implies_5_6_7(self, study_config):
        spec = latent_spec_from_config(study_config['scenarios']['intercept'])
        assert spec.implied_variances().round(6).tolist() == [5.0, 6.0, 7.0]

    def test_missing_scenarios(self):
        result = validate_config({'study': {}})
        assert not result.is_valid
        assert any('scenarios' in e for e in result.errors)

    def test_invalid_type(self, study_config):
        config = copy.deepcopy(study_config)
        config['scenarios']['intercept']['type'] = 'quadratic'
        result = validate_config(config)
        assert not result.is_valid

    def test_non_positive_n(self, study_config):
        config = copy.deepcopy(study_config)
        config['scenarios']['intercept']['n'] = 0
        assert not validate_config(config).is_valid

    def test_time_scores_length(self, study_config):
        config = copy.deepcopy(study_config)
        config['scenarios']['intercept_slope']['time_scores'] = [0, 1, 2]
        result = validate_config(config)
        assert any('time_scores' in e for e in result.errors)

    def test_correlation_range(self, study_config):
        config = copy.deepcopy(study_config)
        config['scenarios']['intercept_slope']['correlation'] = 1.2
        assert not validate_config(config).is_valid

    def test_invalid_residual_structure(self, study_config):
        config = copy.deepcopy(study_config)
        config['scenarios']['intercept']['residual_structure'] = 'ar1'
        assert not validate_config(config).is_valid

    def test_missing_seed_is_warning(self, study_config):
        config = copy.deepcopy(study_config)
        del config['scenarios']['intercept']['seed']
        result = validate_config(config)
        assert result.is_valid
        assert any('seed' in w for w in result.warnings)

    def test_misspecified_homogeneous_is_warning(self, study_config):
        config = copy.deepcopy(study_config)
        config['scenarios']['intercept']['residual_structure'] = 'homogeneous'
        result = validate_config(config)
        assert result.is_valid
        assert any('misspecified' in w for w in result.warnings)


@pytest.mark.unit
class TestLoadConfig:

    def test_defaults_filled(self, tmp_path, study_config):
        config = copy.deepcopy(study_config)
        del config['study']
        path = tmp_path / 'config.json'
        path.write_text(json.dumps(config))
        loaded = load_config(path)
        assert loaded['study']['threshold'] == 0.99
        assert loaded['study']['output_dir'] == 'output'

    def test_invalid_raises_value_error(self, tmp_path):
        path = tmp_path / 'bad.json'
        path.write_text(json.dumps({'scenarios': {'a': {'type': 'intercept', 'n': -1}}}))
        with pytest.raises(ValueError, match="Invalid configuration"):
            load_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / 'none.json')
