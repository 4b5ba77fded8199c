"""
Tests for trackhmm.core.model and trackhmm.core.emissions.

Tests cover:
- Model construction and validation
- Stationary distribution
- Density and CDF matrices, including missing observations
- Autoregressive lag handling
- Simulation
"""
import pytest
import numpy as np
from scipy.stats import multivariate_normal, norm

from trackhmm.core.model import (
    HMMModel, NormalHMM, MVNormalHMM, MARHMM, stationary_distribution,
)
from trackhmm.core.emissions import (
    cholesky_factor, count_observed, density, cdf, mvn_cdf_rows, mvn_logpdf_rows,
)


class TestStationaryDistribution:
    def test_two_state_closed_form(self, two_state_gamma):
        np.testing.assert_allclose(stationary_distribution(two_state_gamma), [2 / 3, 1 / 3])

    def test_is_left_eigenvector(self, three_state_norm_model):
        gamma = three_state_norm_model.gamma
        delta = stationary_distribution(gamma)
        np.testing.assert_allclose(delta @ gamma, delta, atol=1e-12)
        assert delta.sum() == pytest.approx(1.0)

    def test_reducible_chain_is_singular(self):
        with pytest.raises(np.linalg.LinAlgError):
            stationary_distribution(np.eye(2))

    def test_delta_property_follows_gamma(self, norm_model):
        norm_model.gamma = np.array([[0.5, 0.5], [0.5, 0.5]])
        np.testing.assert_allclose(norm_model.delta, [0.5, 0.5])


class TestModelValidation:
    def test_non_stochastic_row(self):
        with pytest.raises(ValueError):
            NormalHMM([0, 1], [1, 1], [[0.9, 0.2], [0.1, 0.9]])

    def test_negative_sigma(self, two_state_gamma):
        with pytest.raises(ValueError):
            NormalHMM([0, 1], [1, -1], two_state_gamma)

    def test_single_state_rejected(self):
        with pytest.raises(ValueError):
            NormalHMM([0], [1], [[1.0]])

    def test_free_delta_required(self, two_state_gamma):
        with pytest.raises(ValueError):
            NormalHMM([0, 1], [1, 1], two_state_gamma, stationary=False)

    def test_negative_delta(self, two_state_gamma):
        with pytest.raises(ValueError):
            NormalHMM([0, 1], [1, 1], two_state_gamma, delta=[1.5, -0.5], stationary=False)

    def test_non_positive_definite_covariance(self, two_state_gamma):
        with pytest.raises(ValueError):
            MVNormalHMM([[0, 0], [1, 1]],
                        [np.eye(2), [[1.0, 2.0], [2.0, 1.0]]],
                        two_state_gamma)

    def test_phi_shape(self, two_state_gamma):
        with pytest.raises(ValueError):
            MARHMM([[0, 0], [1, 1]], [np.eye(2), np.eye(2)], two_state_gamma,
                   phi=np.zeros((2, 2, 3)))

    def test_univariate_shape(self, norm_model):
        with pytest.raises(ValueError):
            norm_model.log_density_matrix(np.zeros((5, 2)))

    def test_unknown_model_type(self):
        with pytest.raises(ValueError):
            HMMModel.from_dict({'model_type': 'poisson'})


class TestDensityMatrix:
    def test_norm_matches_scipy(self, norm_model):
        x = np.array([-1.0, 0.5, 4.0])
        expected = norm.pdf(x[:, None], loc=[0.0, 5.0], scale=[1.0, 1.0])
        np.testing.assert_allclose(norm_model.density_matrix(x), expected)

    def test_mvnorm_matches_scipy(self, mvnorm_model, mvnorm_data):
        _, x = mvnorm_data
        dens = mvnorm_model.density_matrix(x[:20])
        for j in range(2):
            expected = multivariate_normal.pdf(x[:20], mvnorm_model.mu[j], mvnorm_model.sigma[j])
            np.testing.assert_allclose(dens[:, j], expected, rtol=1e-10)

    def test_threaded_states_match_serial(self, mvnorm_model, mvnorm_data):
        _, x = mvnorm_data
        np.testing.assert_allclose(mvnorm_model.log_density_matrix(x, n_workers=2),
                                   mvnorm_model.log_density_matrix(x))

    def test_missing_univariate_is_pass_through(self, norm_model):
        x = np.array([0.0, np.nan, 5.0])
        dens = norm_model.density_matrix(x)
        np.testing.assert_array_equal(dens[1], [1.0, 1.0])
        assert np.all(dens[[0, 2]] < 1.0)

    def test_missing_component_is_pass_through(self, mvnorm_model):
        x = np.array([[0.0, 0.0], [np.nan, 1.0], [4.0, -2.0]])
        np.testing.assert_array_equal(mvnorm_model.log_density_matrix(x)[1], [0.0, 0.0])

    def test_n_obs_counts_scalars(self, mvnorm_model):
        x = np.array([[0.0, 0.0], [np.nan, 1.0], [4.0, -2.0]])
        assert mvnorm_model.n_obs(x) == 5
        assert count_observed(np.array([1.0, np.nan])) == 1


class TestAutoregression:
    def test_lag_matrix_order_one(self, mar_model):
        x = np.arange(8, dtype=float).reshape(4, 2)
        lags = mar_model.lag_matrix(x)
        np.testing.assert_array_equal(lags[0], [0.0, 0.0])
        np.testing.assert_array_equal(lags[1:], x[:-1])

    def test_lag_matrix_order_two(self, mar2_model):
        x = np.arange(8, dtype=float).reshape(4, 2)
        lags = mar2_model.lag_matrix(x)
        assert lags.shape == (4, 4)
        np.testing.assert_array_equal(lags[1], [0, 1, 0, 0])
        np.testing.assert_array_equal(lags[3], [4, 5, 2, 3])

    def test_first_step_uses_mu(self, mar_model):
        x = np.array([[1.0, 2.0], [3.0, 4.0]])
        means = mar_model.conditional_means(x)
        np.testing.assert_allclose(means[:, 0, :], mar_model.mu)
        np.testing.assert_allclose(means[1, 1], mar_model.mu[1] + mar_model.phi[1] @ x[0])

    def test_density_uses_conditional_mean(self, mar_model):
        x = np.array([[1.0, 2.0], [3.0, 4.0]])
        mean = mar_model.mu[0] + mar_model.phi[0] @ x[0]
        expected = multivariate_normal.logpdf(x[1], mean, mar_model.sigma[0])
        assert mar_model.log_density_matrix(x)[1, 0] == pytest.approx(expected)

    def test_missing_lag_passes_through(self, mar_model):
        x = np.array([[1.0, 2.0], [np.nan, 4.0], [3.0, 4.0], [0.0, 1.0]])
        logp = mar_model.log_density_matrix(x)
        np.testing.assert_array_equal(logp[1:3], 0.0)
        assert np.all(logp[[0, 3]] < 0.0)


class TestEmissionPrimitives:
    def test_density_single_point(self):
        cov = np.array([[1.0, 0.5], [0.5, 2.0]])
        value = density([0.3, -0.2], [0.0, 0.0], cov)
        assert value == pytest.approx(multivariate_normal.pdf([0.3, -0.2], [0, 0], cov))

    def test_density_batch_threads(self, rng):
        cov = np.array([[1.0, 0.5], [0.5, 2.0]])
        pts = rng.normal(size=(50, 2))
        np.testing.assert_allclose(density(pts, [0, 0], cov, log=True, n_workers=3),
                                   multivariate_normal.logpdf(pts, [0, 0], cov))

    def test_cdf_matches_scipy(self):
        cov = np.array([[1.0, 0.5], [0.5, 2.0]])
        value = cdf([0.3, -0.2], [0.0, 0.0], cov)
        expected = multivariate_normal.cdf([0.3, -0.2], mean=[0, 0], cov=cov)
        assert value == pytest.approx(expected, abs=1e-4)

    def test_cdf_missing_row(self):
        out = mvn_cdf_rows(np.array([[0.0, np.nan], [0.0, 0.0]]), [0, 0], np.eye(2))
        assert np.isnan(out[0])
        assert out[1] == pytest.approx(0.25, abs=1e-4)

    def test_cdf_process_pool_matches_serial(self, rng):
        pts = rng.normal(size=(8, 2))
        serial = mvn_cdf_rows(pts, [0, 0], np.eye(2))
        parallel = mvn_cdf_rows(pts, [0, 0], np.eye(2), n_workers=2)
        np.testing.assert_allclose(parallel, serial, atol=1e-4)

    def test_logpdf_per_row_means(self):
        x = np.array([[1.0, 1.0], [2.0, 2.0]])
        means = np.array([[1.0, 1.0], [0.0, 0.0]])
        logp = mvn_logpdf_rows(x, means, np.eye(2))
        assert logp[0] == pytest.approx(-np.log(2 * np.pi))
        assert logp[1] == pytest.approx(-np.log(2 * np.pi) - 4.0)

    def test_cholesky_rejects_asymmetric(self):
        with pytest.raises(ValueError):
            cholesky_factor(np.array([[1.0, 0.5], [0.0, 1.0]]))


class TestSimulation:
    def test_shapes(self, norm_model, mvnorm_model, mar2_model, rng):
        states, obs = norm_model.sample(50, rng)
        assert states.shape == (50,) and obs.shape == (50,)
        states, obs = mvnorm_model.sample(50, rng)
        assert obs.shape == (50, 2)
        states, obs = mar2_model.sample(50, rng)
        assert obs.shape == (50, 2)
        assert set(np.unique(states)) <= {0, 1}

    def test_reproducible_with_seed(self, mar_model):
        a = mar_model.sample(30, np.random.default_rng(7))
        b = mar_model.sample(30, np.random.default_rng(7))
        np.testing.assert_array_equal(a[0], b[0])
        np.testing.assert_array_equal(a[1], b[1])

    def test_state_frequencies_follow_stationary(self, norm_model):
        states, _ = norm_model.sample(20000, np.random.default_rng(11))
        assert np.mean(states == 0) == pytest.approx(2 / 3, abs=0.03)

    def test_free_delta_first_state(self, two_state_gamma):
        model = NormalHMM([0, 5], [1, 1], two_state_gamma, delta=[0.0, 1.0], stationary=False)
        for seed in range(5):
            states, _ = model.sample(3, np.random.default_rng(seed))
            assert states[0] == 1


class TestMarginalDensity:
    def test_integrates_to_one(self, norm_model):
        grid = np.linspace(-10, 15, 5001)
        dens = norm_model.marginal_density(grid)
        assert dens.sum() * (grid[1] - grid[0]) == pytest.approx(1.0, abs=1e-4)

    def test_mixture_weights(self, norm_model):
        value = norm_model.marginal_density(np.array([0.0]))[0]
        expected = 2 / 3 * norm.pdf(0.0) + 1 / 3 * norm.pdf(0.0, loc=5.0)
        assert value == pytest.approx(expected)
