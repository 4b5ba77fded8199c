"""
TrackHMM model module

Provides the three emission variants sharing one HMM skeleton:
1. NormalHMM   - univariate normal emissions
2. MVNormalHMM - multivariate normal emissions
3. MARHMM      - multivariate autoregressive emissions of order q

Every variant exposes the same capability set used by the forward,
Viterbi and smoothing recursions:
    log_density_matrix(x), density_matrix(x), cdf_matrix(x),
    conditional_means(x), sample(n, rng), n_obs(x)

Observations have time on the first axis: (n,) for univariate models,
(n, k) for multivariate ones. A missing (NaN) observation contributes
density 1 for every state, so the recursion still advances one step.
"""

import numpy as np
from typing import Optional, Tuple, Dict, Any

from trackhmm.core.emissions import (
    cholesky_factor,
    count_observed,
    map_states,
    missing_rows,
    mvn_cdf_rows,
    mvn_logpdf_rows,
    norm_cdf_matrix,
    norm_logpdf_matrix,
)

# Tolerance for row sums of stochastic matrices and vectors
STOCHASTIC_TOL = 1e-8


def stationary_distribution(gamma: np.ndarray) -> np.ndarray:
    """
    Stationary distribution of a transition matrix.

    Solves (I - gamma + U)^T delta = 1, where U is the all-ones matrix.
    This is the left eigenvector of gamma for eigenvalue 1, normalised
    to sum to 1.

    Raises:
        numpy.linalg.LinAlgError: the system is singular (e.g. reducible chain)
    """
    gamma = np.asarray(gamma, dtype=float)
    m = gamma.shape[0]
    system = (np.eye(m) - gamma + np.ones((m, m))).T
    return np.linalg.solve(system, np.ones(m))


def _check_stochastic_vector(v: np.ndarray, name: str):
    if np.any(~np.isfinite(v)) or np.any(v < 0):
        raise ValueError(f"{name} must be finite and nonnegative: {v}")
    if abs(v.sum() - 1.0) > STOCHASTIC_TOL * len(v) * 10:
        raise ValueError(f"{name} must sum to 1 (sum={v.sum():.12g})")


class HMMModel:
    """
    Base class holding the Markov chain part of an HMM.

    Attributes:
        gamma: (m, m) row-stochastic transition matrix
        stationary: If True, delta is the stationary distribution of gamma
            and is recomputed whenever gamma changes. Otherwise delta is a
            free parameter.
    """

    kind: str = ''

    def __init__(self, gamma: np.ndarray, delta: Optional[np.ndarray] = None,
                 stationary: bool = True):
        self.gamma = np.array(gamma, dtype=float)
        self.stationary = bool(stationary)
        self._delta = None if delta is None else np.array(delta, dtype=float)

        if self.gamma.ndim != 2 or self.gamma.shape[0] != self.gamma.shape[1]:
            raise ValueError(f"gamma must be a square matrix, got shape {self.gamma.shape}")
        if self.gamma.shape[0] < 2:
            raise ValueError("An HMM needs at least 2 states")
        for i, row in enumerate(self.gamma):
            _check_stochastic_vector(row, f"gamma row {i}")

        if not self.stationary:
            if self._delta is None:
                raise ValueError("delta is required when stationary=False")
            if self._delta.shape != (self.n_states,):
                raise ValueError(f"delta must have length {self.n_states}, got {self._delta.shape}")
            _check_stochastic_vector(self._delta, "delta")

    @property
    def n_states(self) -> int:
        return self.gamma.shape[0]

    @property
    def delta(self) -> np.ndarray:
        """Initial state distribution."""
        if self.stationary:
            return stationary_distribution(self.gamma)
        return self._delta

    # ------------------------------------------------------------------
    # Emission capability set (implemented per variant)
    # ------------------------------------------------------------------

    def _state_log_densities(self, x: np.ndarray, n_workers: int = 1) -> np.ndarray:
        raise NotImplementedError

    def cdf_matrix(self, x: np.ndarray, n_workers: int = 1) -> np.ndarray:
        """Per-state CDF of each observation, shape (n, m). NaN where missing."""
        raise NotImplementedError

    def conditional_means(self, x: np.ndarray) -> np.ndarray:
        """Per-state emission means at each time step, shape (m, n[, k])."""
        raise NotImplementedError

    def sample(self, n: int, rng: np.random.Generator) -> Tuple[np.ndarray, np.ndarray]:
        """Simulate (states, observations) of length n."""
        raise NotImplementedError

    def check_observations(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def log_density_matrix(self, x: np.ndarray, n_workers: int = 1) -> np.ndarray:
        """
        Log emission densities, shape (n, m).

        Missing observations get log-density 0 (density 1) for all states.
        """
        x = self.check_observations(x)
        logp = self._state_log_densities(x, n_workers=n_workers)
        logp[np.isnan(logp)] = 0.0
        return logp

    def density_matrix(self, x: np.ndarray, n_workers: int = 1) -> np.ndarray:
        """Emission densities, shape (n, m)."""
        return np.exp(self.log_density_matrix(x, n_workers=n_workers))

    def n_obs(self, x: np.ndarray) -> int:
        """Number of non-missing scalar observations."""
        return count_observed(x)

    def _sample_states(self, n: int, rng: np.random.Generator) -> np.ndarray:
        """First-order Markov chain started from delta."""
        m = self.n_states
        states = np.empty(n, dtype=np.int64)
        states[0] = rng.choice(m, p=self.delta)
        for t in range(1, n):
            states[t] = rng.choice(m, p=self.gamma[states[t - 1]])
        return states

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        d = {
            'model_type': self.kind,
            'n_states': self.n_states,
            'stationary': self.stationary,
            'gamma': self.gamma.tolist(),
            'delta': self.delta.tolist(),
        }
        d.update(self._emission_dict())
        return d

    def _emission_dict(self) -> Dict[str, Any]:
        raise NotImplementedError

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> 'HMMModel':
        """Rebuild a model of any variant from to_dict() output."""
        kind = d.get('model_type')
        if kind not in MODEL_TYPES:
            raise ValueError(f"Unknown model_type {kind!r}; expected one of {sorted(MODEL_TYPES)}")
        return MODEL_TYPES[kind]._from_dict(d)

    def copy(self) -> 'HMMModel':
        return HMMModel.from_dict(self.to_dict())

    def __repr__(self):
        return (f"{type(self).__name__}(n_states={self.n_states}, "
                f"stationary={self.stationary})")


class NormalHMM(HMMModel):
    """
    HMM with univariate normal state-dependent distributions.

    Attributes:
        mu: (m,) state means
        sigma: (m,) state standard deviations
    """

    kind = 'norm'

    def __init__(self, mu, sigma, gamma, delta=None, stationary: bool = True):
        super().__init__(gamma, delta=delta, stationary=stationary)
        self.mu = np.array(mu, dtype=float).reshape(-1)
        self.sigma = np.array(sigma, dtype=float).reshape(-1)
        m = self.n_states
        if self.mu.shape != (m,) or self.sigma.shape != (m,):
            raise ValueError(f"mu and sigma must have length {m}")
        if np.any(~np.isfinite(self.sigma)) or np.any(self.sigma <= 0):
            raise ValueError(f"sigma must be positive: {self.sigma}")

    @property
    def n_dims(self) -> int:
        return 1

    def check_observations(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        if x.ndim == 2 and x.shape[1] == 1:
            x = x[:, 0]
        if x.ndim != 1:
            raise ValueError(f"Univariate observations must be 1-D, got shape {x.shape}")
        return x

    def _state_log_densities(self, x, n_workers=1):
        return norm_logpdf_matrix(x, self.mu, self.sigma)

    def cdf_matrix(self, x, n_workers=1):
        x = self.check_observations(x)
        return norm_cdf_matrix(x, self.mu, self.sigma)

    def conditional_means(self, x):
        x = self.check_observations(x)
        return np.repeat(self.mu[:, np.newaxis], len(x), axis=1)

    def sample(self, n, rng):
        states = self._sample_states(n, rng)
        obs = rng.normal(self.mu[states], self.sigma[states])
        return states, obs

    def marginal_density(self, grid: np.ndarray) -> np.ndarray:
        """
        Marginal density of a single observation: the delta-weighted
        mixture of the state-dependent normals, evaluated on a grid.
        """
        grid = np.asarray(grid, dtype=float)
        return np.exp(norm_logpdf_matrix(grid, self.mu, self.sigma)) @ self.delta

    def _emission_dict(self):
        return {'mu': self.mu.tolist(), 'sigma': self.sigma.tolist()}

    @classmethod
    def _from_dict(cls, d):
        return cls(d['mu'], d['sigma'], d['gamma'], delta=d.get('delta'),
                   stationary=d.get('stationary', True))


class MVNormalHMM(HMMModel):
    """
    HMM with multivariate normal state-dependent distributions.

    Attributes:
        mu: (m, k) state means
        sigma: (m, k, k) state covariance matrices (symmetric positive-definite)
    """

    kind = 'mvnorm'

    def __init__(self, mu, sigma, gamma, delta=None, stationary: bool = True):
        super().__init__(gamma, delta=delta, stationary=stationary)
        self.mu = np.array(mu, dtype=float)
        self.sigma = np.array(sigma, dtype=float)
        m = self.n_states
        if self.mu.ndim != 2 or self.mu.shape[0] != m:
            raise ValueError(f"mu must have shape ({m}, k), got {self.mu.shape}")
        k = self.mu.shape[1]
        if self.sigma.shape != (m, k, k):
            raise ValueError(f"sigma must have shape ({m}, {k}, {k}), got {self.sigma.shape}")
        for j in range(m):
            cholesky_factor(self.sigma[j])

    @property
    def n_dims(self) -> int:
        return self.mu.shape[1]

    @property
    def order(self) -> int:
        return 0

    def check_observations(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        if x.ndim == 1 and self.n_dims == 1:
            x = x[:, np.newaxis]
        if x.ndim != 2 or x.shape[1] != self.n_dims:
            raise ValueError(f"Observations must have shape (n, {self.n_dims}), got {x.shape}")
        return x

    def conditional_means(self, x):
        x = self.check_observations(x)
        return np.repeat(self.mu[:, np.newaxis, :], len(x), axis=1)

    def _state_log_densities(self, x, n_workers=1):
        means = self.conditional_means(x)
        missing = missing_rows(x)

        def _column(j):
            col = mvn_logpdf_rows(x, means[j], self.sigma[j])
            col[missing] = np.nan
            return col

        return np.column_stack(map_states(_column, self.n_states, n_workers))

    def cdf_matrix(self, x, n_workers=1):
        x = self.check_observations(x)
        means = self.conditional_means(x)
        return np.column_stack([
            mvn_cdf_rows(x, means[j], self.sigma[j], n_workers=n_workers)
            for j in range(self.n_states)
        ])

    def sample(self, n, rng):
        states = self._sample_states(n, rng)
        obs = np.empty((n, self.n_dims))
        for t in range(n):
            s = states[t]
            obs[t] = rng.multivariate_normal(self.mu[s], self.sigma[s])
        return states, obs

    def _emission_dict(self):
        return {'mu': self.mu.tolist(), 'sigma': self.sigma.tolist()}

    @classmethod
    def _from_dict(cls, d):
        return cls(d['mu'], d['sigma'], d['gamma'], delta=d.get('delta'),
                   stationary=d.get('stationary', True))


class MARHMM(MVNormalHMM):
    """
    HMM with multivariate autoregressive state-dependent distributions.

    In state j the observation at time t is normal with covariance sigma[j]
    and mean

        mu[j] + phi[j] @ [x[t-1], x[t-2], ..., x[t-q]]

    where phi[j] is k x (k*q): the first k columns weight lag 1, the next
    k lag 2, and so on. Lags before the start of the series are dropped,
    so the first observation uses mu[j] alone.

    Attributes:
        phi: (m, k, k*q) autoregressive coefficient matrices
    """

    kind = 'mar'

    def __init__(self, mu, sigma, gamma, phi, delta=None, stationary: bool = True):
        super().__init__(mu, sigma, gamma, delta=delta, stationary=stationary)
        m, k = self.mu.shape
        self.phi = np.array(phi, dtype=float)
        if self.phi.ndim != 3 or self.phi.shape[:2] != (m, k) or self.phi.shape[2] % k != 0:
            raise ValueError(f"phi must have shape ({m}, {k}, {k}*q), got {self.phi.shape}")

    @property
    def order(self) -> int:
        return self.phi.shape[2] // self.n_dims

    def lag_matrix(self, x: np.ndarray) -> np.ndarray:
        """
        Lagged design matrix, shape (n, k*q).

        Row t holds [x[t-1], ..., x[t-q]]; lags before the start of the
        series are zero so they drop out of the conditional mean.
        """
        x = self.check_observations(x)
        n, k = x.shape
        q = self.order
        lags = np.zeros((n, k * q))
        for lag in range(1, min(q, n - 1) + 1):
            lags[lag:, (lag - 1) * k:lag * k] = x[:-lag]
        return lags

    def conditional_means(self, x):
        lags = self.lag_matrix(x)
        return self.mu[:, np.newaxis, :] + np.einsum('nl,jkl->jnk', lags, self.phi)

    def _state_log_densities(self, x, n_workers=1):
        # A NaN in a lag propagates into the conditional mean, so steps
        # that depend on a missing observation pass through as density 1.
        means = self.conditional_means(x)
        missing = missing_rows(x) | np.isnan(means).any(axis=(0, 2))

        def _column(j):
            col = mvn_logpdf_rows(x, means[j], self.sigma[j])
            col[missing] = np.nan
            return col

        return np.column_stack(map_states(_column, self.n_states, n_workers))

    def sample(self, n, rng):
        states = self._sample_states(n, rng)
        k, q = self.n_dims, self.order
        obs = np.zeros((n, k))
        for t in range(n):
            s = states[t]
            mean = self.mu[s].copy()
            for lag in range(1, min(q, t) + 1):
                mean += self.phi[s][:, (lag - 1) * k:lag * k] @ obs[t - lag]
            obs[t] = rng.multivariate_normal(mean, self.sigma[s])
        return states, obs

    def _emission_dict(self):
        d = super()._emission_dict()
        d['phi'] = self.phi.tolist()
        return d

    @classmethod
    def _from_dict(cls, d):
        return cls(d['mu'], d['sigma'], d['gamma'], d['phi'], delta=d.get('delta'),
                   stationary=d.get('stationary', True))


MODEL_TYPES = {
    NormalHMM.kind: NormalHMM,
    MVNormalHMM.kind: MVNormalHMM,
    MARHMM.kind: MARHMM,
}
