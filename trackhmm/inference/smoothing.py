"""
TrackHMM smoothing and pseudo-residuals

Forward-backward matrices, posterior state probabilities and the
normal pseudo-residuals used to check goodness of fit:

- ordinary: Phi^-1 of P(X_t <= x_t | all observations except x_t)
- forecast: Phi^-1 of P(X_t <= x_t | x_1..x_{t-1}), one-step-ahead,
  forward information only

Both are index-aligned with the observations. If the model fits, they are
approximately standard normal. Residuals at missing observations are NaN.
"""

import numpy as np
from typing import Tuple

from scipy.stats import norm

from trackhmm.core.model import HMMModel
from trackhmm.core.forward import log_forward, log_backward

RESIDUAL_TYPES = ('ordinary', 'forecast')


def forward_backward(model: HMMModel, x: np.ndarray,
                     n_workers: int = 1) -> Tuple[np.ndarray, np.ndarray]:
    """
    Log forward and log backward matrices.

    Returns:
        (lalpha, lbeta), each (n, m)
    """
    log_dens = model.log_density_matrix(x, n_workers=n_workers)
    return (log_forward(model.delta, model.gamma, log_dens),
            log_backward(model.gamma, log_dens))


def state_probabilities(model: HMMModel, x: np.ndarray, n_workers: int = 1) -> np.ndarray:
    """
    Posterior state probabilities P(S_t = j | x_1..x_n), shape (n, m).

    Each row sums to 1.
    """
    lalpha, lbeta = forward_backward(model, x, n_workers=n_workers)
    log_post = lalpha + lbeta
    log_post -= np.max(log_post, axis=1, keepdims=True)
    post = np.exp(log_post)
    return post / post.sum(axis=1, keepdims=True)


def _normalised_exp(log_vec: np.ndarray) -> np.ndarray:
    """exp(log_vec) rescaled by its maximum (not summing to 1)."""
    return np.exp(log_vec - np.max(log_vec))


def pseudo_residuals(model: HMMModel, x: np.ndarray, kind: str = 'ordinary',
                     n_workers: int = 1) -> np.ndarray:
    """
    Normal pseudo-residuals.

    Args:
        model: Fitted model
        x: Observations, (n,) or (n, k)
        kind: 'ordinary' (forward and backward information) or
            'forecast' (one-step-ahead, forward information only)
        n_workers: Workers for the density and CDF matrices

    Returns:
        Residuals, shape (n,)
    """
    if kind not in RESIDUAL_TYPES:
        raise ValueError(f"Unknown residual type {kind!r}; expected one of {RESIDUAL_TYPES}")

    x = model.check_observations(x)
    log_dens = model.log_density_matrix(x, n_workers=n_workers)
    cdfs = model.cdf_matrix(x, n_workers=n_workers)
    gamma = model.gamma
    n = len(x)

    lalpha = log_forward(model.delta, gamma, log_dens)
    if kind == 'ordinary':
        lbeta = log_backward(gamma, log_dens)

    probs = np.empty(n)
    probs[0] = model.delta @ cdfs[0]
    for t in range(1, n):
        a = _normalised_exp(lalpha[t - 1])
        if kind == 'ordinary':
            weights = (a @ gamma) * _normalised_exp(lbeta[t])
            weights = weights / weights.sum()
        else:
            weights = (a / a.sum()) @ gamma
        probs[t] = weights @ cdfs[t]

    return norm.ppf(probs)
