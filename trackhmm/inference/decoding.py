"""TrackHMM state decoding: Viterbi (global) and posterior (local)."""

import numpy as np

from trackhmm.core.model import HMMModel
from trackhmm.core.forward import scale_log_densities
from trackhmm.inference.smoothing import state_probabilities


def viterbi(model: HMMModel, x: np.ndarray, n_workers: int = 1) -> np.ndarray:
    """
    Most probable state sequence (global decoding).

    The xi vectors are renormalised to sum to 1 at every step, and each
    density row is divided by its maximum first; neither rescaling changes
    the arg-max, but both keep long sequences from underflowing. Ties go to
    the lowest state index.

    Args:
        model: Fitted model
        x: Observations, (n,) or (n, k)

    Returns:
        State path, shape (n,), values in 0..m-1
    """
    log_dens = model.log_density_matrix(x, n_workers=n_workers)
    dens, _ = scale_log_densities(log_dens)
    gamma = model.gamma
    n, m = dens.shape

    xi = np.zeros((n, m))
    step = model.delta * dens[0]
    xi[0] = step / step.sum()
    for t in range(1, n):
        step = np.max(xi[t - 1][:, np.newaxis] * gamma, axis=0) * dens[t]
        xi[t] = step / step.sum()

    path = np.empty(n, dtype=np.int64)
    path[n - 1] = np.argmax(xi[n - 1])
    for t in range(n - 2, -1, -1):
        path[t] = np.argmax(gamma[:, path[t + 1]] * xi[t])
    return path


def local_decoding(model: HMMModel, x: np.ndarray, n_workers: int = 1) -> np.ndarray:
    """Most probable state at each time step individually (posterior mode)."""
    return np.argmax(state_probabilities(model, x, n_workers=n_workers), axis=1)
