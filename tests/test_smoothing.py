"""
Tests for trackhmm.inference.smoothing (posteriors and pseudo-residuals).
"""
import pytest
import numpy as np
from scipy.special import logsumexp
from scipy.stats import norm

from trackhmm.core.model import NormalHMM
from trackhmm.inference.smoothing import (
    forward_backward, state_probabilities, pseudo_residuals,
)
from trackhmm.inference.estimator import model_negative_log_likelihood


class TestForwardBackward:
    def test_shapes(self, mvnorm_model, mvnorm_data):
        _, x = mvnorm_data
        lalpha, lbeta = forward_backward(mvnorm_model, x)
        assert lalpha.shape == (300, 2)
        assert lbeta.shape == (300, 2)

    def test_likelihood_from_any_step(self, norm_model, norm_data):
        _, x = norm_data
        lalpha, lbeta = forward_backward(norm_model, x)
        llk = -model_negative_log_likelihood(norm_model, x)
        for t in (0, 100, 499):
            assert logsumexp(lalpha[t] + lbeta[t]) == pytest.approx(llk)


class TestStateProbabilities:
    def test_rows_sum_to_one(self, mar_model, mar_data):
        _, x = mar_data
        probs = state_probabilities(mar_model, x)
        assert probs.shape == (300, 2)
        np.testing.assert_allclose(probs.sum(axis=1), 1.0)
        assert np.all(probs >= 0)

    def test_missing_step_is_smoothed_from_neighbours(self, norm_model):
        x = np.array([5.1, 4.8, np.nan, 5.2, 4.9])
        probs = state_probabilities(norm_model, x)
        assert probs[2, 1] > 0.9


class TestPseudoResiduals:
    def test_standard_normal_under_true_model(self, norm_model):
        _, x = norm_model.sample(3000, np.random.default_rng(21))
        for kind in ('ordinary', 'forecast'):
            res = pseudo_residuals(norm_model, x, kind=kind)
            assert res.shape == (3000,)
            assert abs(np.mean(res)) < 0.1
            assert np.std(res) == pytest.approx(1.0, abs=0.1)

    def test_first_step_uses_initial_distribution(self, norm_model):
        x = np.array([1.0, 4.0, 0.5])
        expected = norm.ppf(norm_model.delta @ norm.cdf(1.0, loc=[0.0, 5.0], scale=1.0))
        for kind in ('ordinary', 'forecast'):
            assert pseudo_residuals(norm_model, x, kind=kind)[0] == pytest.approx(expected)

    def test_independent_mixture_kinds_agree(self):
        # identical rows: the chain carries no information between steps
        model = NormalHMM(mu=[0.0, 3.0], sigma=[1.0, 2.0], gamma=[[0.3, 0.7], [0.3, 0.7]])
        x = np.array([0.5, 2.0, -1.0, 4.0, 3.3])
        expected = norm.ppf(norm.cdf(x[:, None], loc=[0.0, 3.0], scale=[1.0, 2.0]) @ model.delta)
        np.testing.assert_allclose(pseudo_residuals(model, x, 'ordinary'), expected)
        np.testing.assert_allclose(pseudo_residuals(model, x, 'forecast'), expected)

    def test_forecast_uses_past_only(self, norm_model, norm_data):
        _, x = norm_data
        full = pseudo_residuals(norm_model, x, kind='forecast')
        prefix = pseudo_residuals(norm_model, x[:200], kind='forecast')
        np.testing.assert_allclose(full[:200], prefix)

    def test_missing_observation_gives_nan(self, norm_model):
        x = np.array([0.1, np.nan, 4.9, 5.2])
        res = pseudo_residuals(norm_model, x)
        assert np.isnan(res[1])
        assert np.all(np.isfinite(res[[0, 2, 3]]))

    def test_multivariate(self, mvnorm_model, mvnorm_data):
        _, x = mvnorm_data
        res = pseudo_residuals(mvnorm_model, x[:50], kind='forecast')
        assert res.shape == (50,)
        assert np.all(np.isfinite(res))

    def test_autoregressive(self, mar_model, mar_data):
        _, x = mar_data
        res = pseudo_residuals(mar_model, x[:50])
        assert res.shape == (50,)
        assert np.all(np.isfinite(res))

    def test_unknown_kind(self, norm_model):
        with pytest.raises(ValueError):
            pseudo_residuals(norm_model, np.zeros(5), kind='deviance')
