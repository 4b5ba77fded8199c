"""
Shared pytest fixtures for TrackHMM tests.
"""
import pytest
import numpy as np

from trackhmm.core.model import NormalHMM, MVNormalHMM, MARHMM


@pytest.fixture
def two_state_gamma():
    """Transition matrix with stationary distribution (2/3, 1/3)."""
    return np.array([[0.9, 0.1], [0.2, 0.8]])


@pytest.fixture
def norm_model(two_state_gamma):
    """Well separated 2-state univariate model (means 0 and 5)."""
    return NormalHMM(mu=[0.0, 5.0], sigma=[1.0, 1.0], gamma=two_state_gamma)


@pytest.fixture
def norm_model_free(two_state_gamma):
    """Same as norm_model but with a free initial distribution."""
    return NormalHMM(mu=[0.0, 5.0], sigma=[1.0, 1.0], gamma=two_state_gamma,
                     delta=[0.3, 0.7], stationary=False)


@pytest.fixture
def three_state_norm_model():
    return NormalHMM(
        mu=[-3.0, 0.0, 4.0],
        sigma=[1.0, 0.5, 2.0],
        gamma=[[0.8, 0.1, 0.1],
               [0.2, 0.7, 0.1],
               [0.05, 0.15, 0.8]],
    )


@pytest.fixture
def mvnorm_model(two_state_gamma):
    """Bivariate normal model with correlated components."""
    return MVNormalHMM(
        mu=[[0.0, 0.0], [4.0, -2.0]],
        sigma=[[[1.0, 0.3], [0.3, 1.0]],
               [[2.0, -0.5], [-0.5, 1.5]]],
        gamma=two_state_gamma,
    )


@pytest.fixture
def mar_model(two_state_gamma):
    """Bivariate first-order autoregressive model."""
    return MARHMM(
        mu=[[0.0, 0.0], [3.0, 1.0]],
        sigma=[[[1.0, 0.2], [0.2, 0.5]],
               [[0.8, 0.0], [0.0, 0.8]]],
        gamma=two_state_gamma,
        phi=[[[0.5, 0.0], [0.1, 0.3]],
             [[0.2, 0.1], [0.0, -0.4]]],
    )


@pytest.fixture
def mar2_model(two_state_gamma):
    """Bivariate second-order autoregressive model."""
    return MARHMM(
        mu=[[0.0, 0.0], [3.0, 1.0]],
        sigma=[[[1.0, 0.2], [0.2, 0.5]],
               [[0.8, 0.0], [0.0, 0.8]]],
        gamma=two_state_gamma,
        phi=[[[0.4, 0.0, 0.1, 0.0], [0.1, 0.3, 0.0, 0.1]],
             [[0.2, 0.1, 0.0, 0.0], [0.0, -0.4, 0.0, 0.2]]],
    )


@pytest.fixture
def rng():
    return np.random.default_rng(2024)


@pytest.fixture
def norm_data(norm_model):
    """500 observations simulated from norm_model, with the true states."""
    states, obs = norm_model.sample(500, np.random.default_rng(1))
    return states, obs


@pytest.fixture
def mvnorm_data(mvnorm_model):
    states, obs = mvnorm_model.sample(300, np.random.default_rng(2))
    return states, obs


@pytest.fixture
def mar_data(mar_model):
    states, obs = mar_model.sample(300, np.random.default_rng(3))
    return states, obs


@pytest.fixture
def all_models(norm_model, norm_model_free, mvnorm_model, mar_model, mar2_model):
    return {
        'norm': norm_model,
        'norm_free': norm_model_free,
        'mvnorm': mvnorm_model,
        'mar': mar_model,
        'mar2': mar2_model,
    }
