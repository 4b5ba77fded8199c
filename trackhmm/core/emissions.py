"""
TrackHMM emission primitives

Density and distribution-function evaluation for the Gaussian emission
families used by the HMM variants:
1. Univariate normal (scipy.stats.norm)
2. Multivariate normal log-density with a different mean per row
   (Cholesky based, so a non positive-definite covariance fails loudly)
3. Multivariate normal CDF (scipy.stats.multivariate_normal)

Row batches can be spread over several workers. Each cell of a density or
CDF matrix is independent, so workers share nothing but read-only inputs.
"""

import numpy as np
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from typing import Callable, List

from scipy import linalg
from scipy.stats import multivariate_normal, norm

_LOG_2PI = np.log(2.0 * np.pi)


def missing_rows(x: np.ndarray) -> np.ndarray:
    """Boolean mask of time steps with at least one missing (NaN) entry."""
    x = np.asarray(x, dtype=float)
    if x.ndim == 1:
        return np.isnan(x)
    return np.isnan(x).any(axis=1)


def count_observed(x: np.ndarray) -> int:
    """Number of non-missing scalar entries (sample size used by BIC)."""
    return int(np.sum(~np.isnan(np.asarray(x, dtype=float))))


def cholesky_factor(cov: np.ndarray) -> np.ndarray:
    """
    Lower Cholesky factor of a covariance matrix.

    Raises:
        ValueError: covariance is not square, not symmetric or not positive-definite
    """
    cov = np.asarray(cov, dtype=float)
    if cov.ndim != 2 or cov.shape[0] != cov.shape[1]:
        raise ValueError(f"Covariance must be a square matrix, got shape {cov.shape}")
    if not np.allclose(cov, cov.T, rtol=1e-10, atol=1e-12):
        raise ValueError("Covariance matrix is not symmetric")
    try:
        return linalg.cholesky(cov, lower=True)
    except linalg.LinAlgError as e:
        raise ValueError(f"Covariance matrix is not positive-definite: {e}") from e


def mvn_logpdf_rows(x: np.ndarray, means: np.ndarray, cov: np.ndarray) -> np.ndarray:
    """
    Multivariate normal log-density, one mean per row.

    Args:
        x: Observations, shape (n, k)
        means: Means, shape (n, k) or (k,)
        cov: Covariance matrix (k, k), must be positive-definite

    Returns:
        Log-densities, shape (n,). NaN where a row of x or means is missing.
    """
    x = np.atleast_2d(np.asarray(x, dtype=float))
    chol = cholesky_factor(cov)
    k = chol.shape[0]
    if x.shape[1] != k:
        raise ValueError(f"Observation dimension {x.shape[1]} does not match covariance {k}x{k}")

    resid = x - np.asarray(means, dtype=float)
    z = linalg.solve_triangular(chol, resid.T, lower=True, check_finite=False)
    log_det = 2.0 * np.sum(np.log(np.diag(chol)))
    return -0.5 * (k * _LOG_2PI + log_det + np.sum(z * z, axis=0))


def density(point, mean, covariance, log: bool = False, n_workers: int = 1):
    """
    Multivariate Gaussian density of one point or a batch of points.

    Args:
        point: k-vector, or (n, k) batch
        mean: k-vector
        covariance: (k, k) positive-definite matrix
        log: Return the log-density
        n_workers: Threads used to evaluate a batch

    Returns:
        Scalar for a single point, array of shape (n,) for a batch
    """
    point = np.asarray(point, dtype=float)
    single = point.ndim == 1
    batch = np.atleast_2d(point)

    def _eval(rows):
        return mvn_logpdf_rows(rows, mean, covariance)

    logp = _map_row_chunks(_eval, batch, n_workers)
    out = logp if log else np.exp(logp)
    return float(out[0]) if single else out


def _mvn_cdf_rows(args) -> np.ndarray:
    """Worker: multivariate normal CDF for a chunk of rows."""
    rows, means, cov = args
    out = np.full(len(rows), np.nan)
    for i in range(len(rows)):
        if np.isnan(rows[i]).any() or np.isnan(means[i]).any():
            continue
        out[i] = multivariate_normal.cdf(rows[i], mean=means[i], cov=cov)
    return out


def mvn_cdf_rows(x: np.ndarray, means: np.ndarray, cov: np.ndarray,
                 n_workers: int = 1) -> np.ndarray:
    """
    Multivariate normal CDF P(X <= x_i) for each row, one mean per row.

    The truncated-normal integral is the expensive primitive in residual
    computation, so rows are spread across a process pool when n_workers > 1.
    """
    x = np.atleast_2d(np.asarray(x, dtype=float))
    means = np.broadcast_to(np.asarray(means, dtype=float), x.shape)
    cholesky_factor(cov)

    if n_workers <= 1 or len(x) < 2 * n_workers:
        return _mvn_cdf_rows((x, means, cov))

    chunks = np.array_split(np.arange(len(x)), n_workers)
    tasks = [(x[idx], means[idx], cov) for idx in chunks if len(idx) > 0]
    with ProcessPoolExecutor(max_workers=n_workers) as executor:
        results = list(executor.map(_mvn_cdf_rows, tasks))
    return np.concatenate(results)


def cdf(x, mean, covariance, n_workers: int = 1):
    """Multivariate normal CDF of one point or a batch of points."""
    x = np.asarray(x, dtype=float)
    single = x.ndim == 1
    out = mvn_cdf_rows(np.atleast_2d(x), mean, covariance, n_workers=n_workers)
    return float(out[0]) if single else out


def norm_logpdf_matrix(x: np.ndarray, mu: np.ndarray, sigma: np.ndarray) -> np.ndarray:
    """Univariate normal log-densities, shape (n, m)."""
    x = np.asarray(x, dtype=float)
    return norm.logpdf(x[:, np.newaxis], loc=mu[np.newaxis, :], scale=sigma[np.newaxis, :])


def norm_cdf_matrix(x: np.ndarray, mu: np.ndarray, sigma: np.ndarray) -> np.ndarray:
    """Univariate normal CDF values, shape (n, m)."""
    x = np.asarray(x, dtype=float)
    return norm.cdf(x[:, np.newaxis], loc=mu[np.newaxis, :], scale=sigma[np.newaxis, :])


def map_states(func: Callable[[int], np.ndarray], n_states: int,
               n_workers: int = 1) -> List[np.ndarray]:
    """
    Evaluate func(state) for every state, optionally on a thread pool.

    The per-state work is dominated by numpy/scipy linear algebra, which
    releases the GIL, so threads avoid the cost of shipping arrays to
    worker processes on every objective evaluation.
    """
    if n_workers <= 1 or n_states == 1:
        return [func(j) for j in range(n_states)]
    with ThreadPoolExecutor(max_workers=min(n_workers, n_states)) as executor:
        return list(executor.map(func, range(n_states)))


def _map_row_chunks(func: Callable[[np.ndarray], np.ndarray], rows: np.ndarray,
                    n_workers: int) -> np.ndarray:
    """Apply func to row chunks on a thread pool and concatenate the results."""
    if n_workers <= 1 or len(rows) < 2 * n_workers:
        return func(rows)
    chunks = [c for c in np.array_split(rows, n_workers) if len(c) > 0]
    with ThreadPoolExecutor(max_workers=n_workers) as pool:
        return np.concatenate(list(pool.map(func, chunks)))
