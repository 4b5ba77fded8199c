"""
TrackHMM parameter codec

Bijective map between constrained natural parameters (a model object) and
the flat unconstrained working vector handed to the optimizer.

Working vector layout (in order):
    mu     m*k        copied unchanged
    sigma  m*t        t = k(k+1)/2 lower-triangle values per state
                      (numpy.tril_indices order), log on the diagonal
    gamma  m*(m-1)    log(gamma[i, j] / gamma[i, i]), row-major, j != i
    phi    m*k*k*q    copied unchanged (MAR only, C order)
    delta  m-1        log(delta[j] / delta[0]), j = 1..m-1 (free delta only)

For the univariate model k = 1 and sigma is the standard deviation, so the
sigma block is simply log(sigma).
"""

import numpy as np
from typing import Dict, Optional

from scipy.special import softmax

from trackhmm.core.model import (
    HMMModel,
    MARHMM,
    MVNormalHMM,
    NormalHMM,
    MODEL_TYPES,
    stationary_distribution,
)


def triangular_number(k: int) -> int:
    """Number of lower-triangle (including diagonal) entries of a k x k matrix."""
    return k * (k + 1) // 2


# =============================================================================
# Shared structural transforms
# =============================================================================

def transition_to_working(gamma: np.ndarray) -> np.ndarray:
    """Off-diagonal multinomial logits log(gamma[i, j] / gamma[i, i]), row-major."""
    gamma = np.asarray(gamma, dtype=float)
    m = gamma.shape[0]
    with np.errstate(divide='ignore'):
        logits = np.log(gamma / np.diag(gamma)[:, np.newaxis])
    return logits[~np.eye(m, dtype=bool)]


def working_to_transition(tgamma: np.ndarray, m: int) -> np.ndarray:
    """Inverse of transition_to_working: row-wise softmax with a zero logit on the diagonal."""
    logits = np.zeros((m, m))
    logits[~np.eye(m, dtype=bool)] = np.asarray(tgamma, dtype=float)
    return softmax(logits, axis=1)


def initial_to_working(delta: np.ndarray) -> np.ndarray:
    """Logits of delta against the first state as reference category."""
    delta = np.asarray(delta, dtype=float)
    with np.errstate(divide='ignore'):
        return np.log(delta[1:] / delta[0])


def working_to_initial(tdelta: np.ndarray) -> np.ndarray:
    """Inverse of initial_to_working (implicit zero logit for the reference state)."""
    return softmax(np.concatenate([[0.0], np.asarray(tdelta, dtype=float)]))


def covariance_to_working(sigma: np.ndarray) -> np.ndarray:
    """Lower triangle of a covariance matrix with the diagonal log-transformed."""
    sigma = np.asarray(sigma, dtype=float)
    k = sigma.shape[0]
    rows, cols = np.tril_indices(k)
    values = sigma[rows, cols].copy()
    diag = rows == cols
    values[diag] = np.log(values[diag])
    return values


def working_to_covariance(values: np.ndarray, k: int) -> np.ndarray:
    """Inverse of covariance_to_working: exponentiate the diagonal and symmetrise."""
    values = np.asarray(values, dtype=float).copy()
    rows, cols = np.tril_indices(k)
    diag = rows == cols
    values[diag] = np.exp(values[diag])
    sigma = np.zeros((k, k))
    sigma[rows, cols] = values
    sigma[cols, rows] = values
    return sigma


# =============================================================================
# Codec
# =============================================================================

class ParameterCodec:
    """
    Natural <-> working parameter transform for one model structure.

    Args:
        kind: Model variant ('norm', 'mvnorm' or 'mar')
        n_states: Number of states m
        n_dims: Observation dimension k (1 for 'norm')
        order: Autoregressive order q (0 unless 'mar')
        stationary: If True, delta is not part of the working vector
    """

    def __init__(self, kind: str, n_states: int, n_dims: int = 1, order: int = 0,
                 stationary: bool = True):
        if kind not in MODEL_TYPES:
            raise ValueError(f"Unknown model kind {kind!r}")
        if kind == 'norm' and n_dims != 1:
            raise ValueError("Univariate normal model has n_dims == 1")
        if kind != 'mar' and order != 0:
            raise ValueError("Only the 'mar' model has an autoregressive order")
        self.kind = kind
        self.n_states = n_states
        self.n_dims = n_dims
        self.order = order
        self.stationary = stationary

        m, k, q = n_states, n_dims, order
        sizes = [
            ('mu', m * k),
            ('sigma', m * triangular_number(k)),
            ('gamma', m * (m - 1)),
            ('phi', m * k * k * q if kind == 'mar' else 0),
            ('delta', 0 if stationary else m - 1),
        ]
        self.slices: Dict[str, slice] = {}
        start = 0
        for name, size in sizes:
            self.slices[name] = slice(start, start + size)
            start += size
        self.n_working = start

    @classmethod
    def for_model(cls, model: HMMModel, stationary: Optional[bool] = None) -> 'ParameterCodec':
        """Codec matching the structure of an existing model."""
        if stationary is None:
            stationary = model.stationary
        return cls(model.kind, model.n_states, n_dims=model.n_dims,
                   order=getattr(model, 'order', 0), stationary=stationary)

    @property
    def n_natural(self) -> int:
        """Working-vector length without the delta block."""
        return self.n_working - (self.slices['delta'].stop - self.slices['delta'].start)

    def encode(self, model: HMMModel) -> np.ndarray:
        """Natural -> working."""
        if model.kind != self.kind or model.n_states != self.n_states:
            raise ValueError(f"Codec for {self.kind} with {self.n_states} states "
                             f"cannot encode {model!r}")
        if model.n_dims != self.n_dims or getattr(model, 'order', 0) != self.order:
            raise ValueError("Model dimensions do not match the codec")

        parvect = np.empty(self.n_working)
        parvect[self.slices['mu']] = np.ravel(model.mu)
        if self.kind == 'norm':
            parvect[self.slices['sigma']] = np.log(model.sigma)
        else:
            parvect[self.slices['sigma']] = np.concatenate(
                [covariance_to_working(s) for s in model.sigma])
        parvect[self.slices['gamma']] = transition_to_working(model.gamma)
        if self.kind == 'mar':
            parvect[self.slices['phi']] = np.ravel(model.phi)
        if not self.stationary:
            parvect[self.slices['delta']] = initial_to_working(model.delta)
        return parvect

    def decode(self, parvect: np.ndarray) -> HMMModel:
        """
        Working -> natural.

        Raises:
            ValueError: wrong vector length, or a decoded covariance is not
                positive-definite
            numpy.linalg.LinAlgError: stationary distribution is undefined
        """
        parvect = np.asarray(parvect, dtype=float)
        if parvect.shape != (self.n_working,):
            raise ValueError(f"Expected {self.n_working} working parameters, got {parvect.shape}")

        m, k, q = self.n_states, self.n_dims, self.order
        gamma = working_to_transition(parvect[self.slices['gamma']], m)
        if self.stationary:
            delta = stationary_distribution(gamma)
        else:
            delta = working_to_initial(parvect[self.slices['delta']])

        if self.kind == 'norm':
            return NormalHMM(parvect[self.slices['mu']],
                             np.exp(parvect[self.slices['sigma']]),
                             gamma, delta=delta, stationary=self.stationary)

        mu = parvect[self.slices['mu']].reshape(m, k)
        tsigma = parvect[self.slices['sigma']].reshape(m, triangular_number(k))
        sigma = np.array([working_to_covariance(row, k) for row in tsigma])
        if self.kind == 'mvnorm':
            return MVNormalHMM(mu, sigma, gamma, delta=delta, stationary=self.stationary)

        phi = parvect[self.slices['phi']].reshape(m, k, k * q)
        return MARHMM(mu, sigma, gamma, phi, delta=delta, stationary=self.stationary)
