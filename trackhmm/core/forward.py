"""
TrackHMM forward engine

Scaled forward recursion for HMMs with arbitrary emission densities:

    alpha_1 = delta * p(x_1)
    alpha_t = (alpha_{t-1} @ gamma) * p(x_t)

At every step the running log-likelihood accumulates log(sum(alpha_t)) and
alpha_t is renormalised to sum to 1, so long sequences never underflow.

The likelihood kernel is compiled with Numba; an equivalent numpy kernel is
kept so the two can be swapped without changing results. The log-alpha and
log-beta matrices used for smoothing are (n, m), time on the first axis.
"""

import numpy as np
from typing import Tuple

from numba import njit


# =============================================================================
# Likelihood kernels
# =============================================================================

@njit(cache=False)
def _forward_numba(delta, gamma, dens):
    """
    Numba-compiled scaled forward recursion.

    Args:
        delta: (m,) initial distribution
        gamma: (m, m) transition matrix
        dens: (n, m) emission densities

    Returns:
        Total log-likelihood (-inf if the sequence has probability 0)
    """
    n, m = dens.shape
    alpha = np.empty(m)
    for j in range(m):
        alpha[j] = delta[j] * dens[0, j]
    total = alpha.sum()
    if total <= 0.0:
        return -np.inf
    lscale = np.log(total)
    for j in range(m):
        alpha[j] /= total

    step = np.empty(m)
    for t in range(1, n):
        for j in range(m):
            acc = 0.0
            for i in range(m):
                acc += alpha[i] * gamma[i, j]
            step[j] = acc * dens[t, j]
        total = step.sum()
        if total <= 0.0:
            return -np.inf
        lscale += np.log(total)
        for j in range(m):
            alpha[j] = step[j] / total

    return lscale


def _forward_numpy(delta, gamma, dens):
    """Pure numpy scaled forward recursion (same contract as _forward_numba)."""
    alpha = delta * dens[0]
    total = alpha.sum()
    if total <= 0.0:
        return -np.inf
    lscale = np.log(total)
    alpha = alpha / total
    for t in range(1, len(dens)):
        alpha = (alpha @ gamma) * dens[t]
        total = alpha.sum()
        if total <= 0.0:
            return -np.inf
        lscale += np.log(total)
        alpha = alpha / total
    return lscale


def forward_log_likelihood(delta: np.ndarray, gamma: np.ndarray,
                           density_matrix: np.ndarray, use_numba: bool = True) -> float:
    """
    Log-likelihood of an observation sequence via the scaled forward recursion.

    Args:
        delta: (m,) initial distribution
        gamma: (m, m) transition matrix
        density_matrix: (n, m) emission densities p(x_t | state)
        use_numba: Use the compiled kernel (False selects the numpy kernel)

    Returns:
        Total log-likelihood
    """
    delta = np.ascontiguousarray(delta, dtype=np.float64)
    gamma = np.ascontiguousarray(gamma, dtype=np.float64)
    dens = np.ascontiguousarray(density_matrix, dtype=np.float64)
    m = gamma.shape[0]
    if dens.ndim != 2 or dens.shape[1] != m or delta.shape != (m,):
        raise ValueError(f"Shape mismatch: delta {delta.shape}, gamma {gamma.shape}, "
                         f"density matrix {dens.shape}")
    if len(dens) == 0:
        return 0.0

    if use_numba:
        return float(_forward_numba(delta, gamma, dens))
    return float(_forward_numpy(delta, gamma, dens))


def scale_log_densities(log_dens: np.ndarray) -> Tuple[np.ndarray, float]:
    """
    Convert log-densities to densities with each row divided by its maximum.

    Rescaling a row by a positive constant changes the likelihood by that
    constant and leaves every normalised forward vector unchanged, so the
    forward recursion can run on the rescaled matrix and add the removed
    log-scale back at the end. This keeps rows where every state density
    underflows from collapsing to zero.

    Returns:
        (densities, total removed log-scale)
    """
    dens, shift = _row_scaled(log_dens)
    return dens, float(shift.sum())


def log_likelihood_from_log_densities(delta: np.ndarray, gamma: np.ndarray,
                                      log_dens: np.ndarray, use_numba: bool = True) -> float:
    """Forward log-likelihood from an (n, m) log-density matrix."""
    dens, shift = scale_log_densities(log_dens)
    return forward_log_likelihood(delta, gamma, dens, use_numba=use_numba) + shift


# =============================================================================
# Forward / backward matrices
# =============================================================================

def log_forward(delta: np.ndarray, gamma: np.ndarray, log_dens: np.ndarray) -> np.ndarray:
    """
    Log forward probabilities log(alpha_t), shape (n, m).

    Each row is the normalised forward vector plus the running log-scale,
    so exp(row) is the unnormalised alpha_t = P(x_1..x_t, S_t = j).
    """
    dens, shift = _row_scaled(log_dens)
    n, m = dens.shape
    lalpha = np.empty((n, m))

    alpha = delta * dens[0]
    total = alpha.sum()
    lscale = np.log(total) + shift[0]
    alpha = alpha / total
    with np.errstate(divide='ignore'):
        lalpha[0] = np.log(alpha) + lscale
        for t in range(1, n):
            alpha = (alpha @ gamma) * dens[t]
            total = alpha.sum()
            lscale += np.log(total) + shift[t]
            alpha = alpha / total
            lalpha[t] = np.log(alpha) + lscale
    return lalpha


def log_backward(gamma: np.ndarray, log_dens: np.ndarray) -> np.ndarray:
    """
    Log backward probabilities log(beta_t), shape (n, m).

    Seeded with beta_n = 1 (log 0) and a uniform 1/m working vector; the
    running log-scale starts at log(m) to undo that seed.
    """
    dens, shift = _row_scaled(log_dens)
    n, m = dens.shape
    lbeta = np.empty((n, m))
    lbeta[n - 1] = 0.0

    beta = np.full(m, 1.0 / m)
    lscale = np.log(m)
    with np.errstate(divide='ignore'):
        for t in range(n - 2, -1, -1):
            beta = gamma @ (dens[t + 1] * beta)
            lscale += shift[t + 1]
            lbeta[t] = np.log(beta) + lscale
            total = beta.sum()
            beta = beta / total
            lscale += np.log(total)
    return lbeta


def _row_scaled(log_dens: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Row-max rescaled densities and the per-row log shifts."""
    log_dens = np.asarray(log_dens, dtype=float)
    shift = np.max(log_dens, axis=1)
    shift = np.where(np.isfinite(shift), shift, 0.0)
    return np.exp(log_dens - shift[:, np.newaxis]), shift
