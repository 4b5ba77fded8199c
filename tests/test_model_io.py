"""
Tests for trackhmm.core.model_io module.
"""
import pytest
import numpy as np
import json
import warnings

from trackhmm.core.model import MARHMM, NormalHMM
from trackhmm.core.model_io import (
    FORMAT_VERSION, load_model, load_model_with_metadata, save_fit, save_model,
)
from trackhmm.inference.estimator import fit


class TestLoadSaveRoundTrip:
    @pytest.mark.parametrize('name', ['norm', 'norm_free', 'mvnorm', 'mar', 'mar2'])
    def test_json_round_trip(self, all_models, name, tmp_path):
        model = all_models[name]
        filepath = str(tmp_path / "model.json")
        save_model(model, filepath)

        loaded = load_model(filepath)
        assert type(loaded) is type(model)
        assert loaded.stationary == model.stationary
        np.testing.assert_allclose(loaded.mu, model.mu)
        np.testing.assert_allclose(loaded.sigma, model.sigma)
        np.testing.assert_allclose(loaded.gamma, model.gamma)
        np.testing.assert_allclose(loaded.delta, model.delta)

    def test_phi_preserved(self, mar2_model, tmp_path):
        filepath = str(tmp_path / "mar.json")
        save_model(mar2_model, filepath)
        loaded = load_model(filepath)
        assert isinstance(loaded, MARHMM)
        assert loaded.order == 2
        np.testing.assert_allclose(loaded.phi, mar2_model.phi)

    def test_json_contains_expected_keys(self, norm_model, tmp_path):
        filepath = str(tmp_path / "model.json")
        save_model(norm_model, filepath)

        with open(filepath) as f:
            data = json.load(f)

        assert data['model_type'] == 'norm'
        assert data['version'] == FORMAT_VERSION
        assert data['n_states'] == 2
        assert data['stationary'] is True
        for key in ('mu', 'sigma', 'gamma', 'delta'):
            assert key in data

    def test_hand_written_start_file(self, tmp_path):
        filepath = tmp_path / "start.json"
        filepath.write_text(json.dumps({
            'model_type': 'norm',
            'mu': [0, 5],
            'sigma': [1, 1],
            'gamma': [[0.9, 0.1], [0.2, 0.8]],
        }))
        model = load_model(str(filepath))
        assert isinstance(model, NormalHMM)
        assert model.stationary
        np.testing.assert_allclose(model.delta, [2 / 3, 1 / 3])


class TestFitFiles:
    def test_fit_file_loads_as_model(self, norm_model, norm_data, tmp_path):
        _, x = norm_data
        result = fit(x, norm_model)
        filepath = str(tmp_path / "fit.json")
        save_fit(result, filepath)

        model, metadata = load_model_with_metadata(filepath)
        np.testing.assert_allclose(model.mu, result.model.mu)
        assert metadata['mllk'] == pytest.approx(result.mllk)
        assert metadata['code'] == result.code
        assert metadata['n_obs'] == 500
        assert metadata['n_steps'] == 500
        assert metadata['hessian'] is None

    def test_plain_model_has_no_metadata(self, norm_model, tmp_path):
        filepath = str(tmp_path / "model.json")
        save_model(norm_model, filepath)
        _, metadata = load_model_with_metadata(filepath)
        assert metadata == {}


class TestExtensionHandling:
    def test_non_json_extension_warns(self, norm_model, tmp_path):
        filepath = str(tmp_path / "model.npz")
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            saved = save_model(norm_model, filepath)
            assert len(w) == 1
            assert "JSON" in str(w[0].message)
        assert saved == str(tmp_path / "model.json")
        assert load_model(saved).n_states == 2
