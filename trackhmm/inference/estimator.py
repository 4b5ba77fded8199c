"""
TrackHMM maximum likelihood estimation

Direct numerical maximisation of the HMM likelihood: the model is encoded
to an unconstrained working vector, scipy.optimize.minimize minimises the
negative log-likelihood computed by the scaled forward recursion, and the
estimate is decoded back to natural parameters.

Non-convergence is not an error. It is reported through FitResult.code
(the scipy status, 0 = converged) so callers can retry from other starts.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import numpy as np
from scipy.optimize import minimize

from trackhmm.core.codec import ParameterCodec
from trackhmm.core.forward import log_likelihood_from_log_densities
from trackhmm.core.model import HMMModel

logger = logging.getLogger(__name__)

DEFAULT_METHOD = 'L-BFGS-B'

# Objective value returned for working vectors that decode to an invalid
# model (e.g. a non positive-definite covariance) or a non-finite likelihood
PENALTY = 1e10

# Relative step for the finite-difference Hessian
HESSIAN_STEP = 1e-4


@dataclass(frozen=True)
class FitResult:
    """
    Result of a maximum likelihood fit.

    Attributes:
        model: Fitted model (natural parameters)
        mllk: Minimised negative log-likelihood
        code: Optimizer status (0 = converged)
        n_parameters: Number of working parameters p
        aic: 2 * (mllk + p)
        bic: 2 * mllk + p * log(n_obs)
        n_obs: Non-missing scalar observations
        n_steps: Time steps of the fitted sequence, missing ones included
        estimate: Working-parameter estimate
        message: Optimizer message
        n_iter: Optimizer iterations
        hessian: Hessian of the objective at the estimate (working space),
            only when requested
    """
    model: HMMModel
    mllk: float
    code: int
    n_parameters: int
    aic: float
    bic: float
    n_obs: int
    estimate: np.ndarray
    message: str = ''
    n_iter: int = 0
    hessian: Optional[np.ndarray] = None
    n_steps: Optional[int] = None

    @property
    def converged(self) -> bool:
        return self.code == 0

    @property
    def stationary(self) -> bool:
        return self.model.stationary

    def to_dict(self) -> Dict[str, Any]:
        return {
            'model': self.model.to_dict(),
            'mllk': self.mllk,
            'code': self.code,
            'n_parameters': self.n_parameters,
            'aic': self.aic,
            'bic': self.bic,
            'n_obs': self.n_obs,
            'estimate': self.estimate.tolist(),
            'message': self.message,
            'n_iter': self.n_iter,
            'hessian': None if self.hessian is None else self.hessian.tolist(),
            'n_steps': self.n_steps,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'FitResult':
        hessian = d.get('hessian')
        return cls(
            model=HMMModel.from_dict(d['model']),
            mllk=d['mllk'],
            code=d['code'],
            n_parameters=d['n_parameters'],
            aic=d['aic'],
            bic=d['bic'],
            n_obs=d['n_obs'],
            estimate=np.array(d['estimate']),
            message=d.get('message', ''),
            n_iter=d.get('n_iter', 0),
            hessian=None if hessian is None else np.array(hessian),
            n_steps=d.get('n_steps'),
        )


def negative_log_likelihood(parvect: np.ndarray, x: np.ndarray, codec: ParameterCodec,
                            n_workers: int = 1, use_numba: bool = True) -> float:
    """
    Negative log-likelihood of the observations at a working-parameter vector.

    Raises ValueError / LinAlgError if the vector decodes to an invalid model.
    """
    model = codec.decode(parvect)
    return model_negative_log_likelihood(model, x, n_workers=n_workers, use_numba=use_numba)


def model_negative_log_likelihood(model: HMMModel, x: np.ndarray, n_workers: int = 1,
                                  use_numba: bool = True) -> float:
    """Negative log-likelihood of the observations under a model."""
    log_dens = model.log_density_matrix(x, n_workers=n_workers)
    return -log_likelihood_from_log_densities(model.delta, model.gamma, log_dens,
                                              use_numba=use_numba)


def make_objective(x: np.ndarray, codec: ParameterCodec, n_workers: int = 1,
                   use_numba: bool = True) -> Callable[[np.ndarray], float]:
    """
    Objective closure for the optimizer.

    Invalid working vectors and non-finite likelihoods map to PENALTY so
    the optimizer never sees NaN or inf.
    """
    def objective(parvect):
        try:
            with np.errstate(over='ignore', under='ignore', divide='ignore', invalid='ignore'):
                value = negative_log_likelihood(parvect, x, codec, n_workers=n_workers,
                                                use_numba=use_numba)
        except (ValueError, np.linalg.LinAlgError) as e:
            logger.debug(f"Objective penalised: {e}")
            return PENALTY
        if not np.isfinite(value):
            return PENALTY
        return value

    return objective


def numerical_hessian(func: Callable[[np.ndarray], float], x0: np.ndarray,
                      step: float = HESSIAN_STEP) -> np.ndarray:
    """
    Central finite-difference Hessian of a scalar function.

    Step sizes are relative: h_i = step * max(1, |x0_i|).

    Returns:
        Symmetric (p, p) matrix
    """
    x0 = np.asarray(x0, dtype=float)
    p = len(x0)
    h = step * np.maximum(1.0, np.abs(x0))
    f0 = func(x0)
    hess = np.empty((p, p))

    def _f(offsets):
        return func(x0 + offsets)

    for i in range(p):
        ei = np.zeros(p)
        ei[i] = h[i]
        hess[i, i] = (_f(ei) - 2.0 * f0 + _f(-ei)) / (h[i] * h[i])
        for j in range(i + 1, p):
            ej = np.zeros(p)
            ej[j] = h[j]
            value = (_f(ei + ej) - _f(ei - ej) - _f(-ei + ej) + _f(-ei - ej)) / (4.0 * h[i] * h[j])
            hess[i, j] = value
            hess[j, i] = value
    return hess


def fit(x: np.ndarray, model0: HMMModel, stationary: Optional[bool] = None,
        hessian: bool = False, method: str = DEFAULT_METHOD,
        options: Optional[Dict[str, Any]] = None, n_workers: int = 1,
        use_numba: bool = True) -> FitResult:
    """
    Maximum likelihood fit of an HMM.

    Args:
        x: Observations, (n,) or (n, k)
        model0: Starting values (also fixes variant, m, k and q)
        stationary: Override model0.stationary. If True, delta is the
            stationary distribution of gamma; otherwise it is estimated.
        hessian: Also return the finite-difference Hessian at the estimate
        method: scipy.optimize.minimize method
        options: Extra options for the optimizer
        n_workers: Workers for the density matrix
        use_numba: Use the compiled forward kernel

    Returns:
        FitResult
    """
    x = model0.check_observations(x)
    codec = ParameterCodec.for_model(model0, stationary=stationary)
    parvect0 = codec.encode(model0)
    objective = make_objective(x, codec, n_workers=n_workers, use_numba=use_numba)

    logger.info(f"Fitting {model0.kind} HMM: {model0.n_states} states, "
                f"{codec.n_working} working parameters, {len(x)} observations")

    result = minimize(objective, parvect0, method=method, options=options or {})
    estimate = np.asarray(result.x, dtype=float)
    mllk = float(result.fun)
    code = int(result.status)

    if code != 0:
        warnings.warn(f"Optimizer did not converge (status {code}): {result.message}",
                      RuntimeWarning)
    logger.info(f"Optimizer finished: status={code}, mllk={mllk:.6g}, nit={result.get('nit', 0)}")

    model = codec.decode(estimate)
    n_parameters = codec.n_working
    n_obs = model.n_obs(x)
    aic = 2.0 * (mllk + n_parameters)
    bic = 2.0 * mllk + n_parameters * np.log(n_obs)

    hess = None
    if hessian:
        hess = numerical_hessian(objective, estimate)

    return FitResult(
        model=model,
        mllk=mllk,
        code=code,
        n_parameters=n_parameters,
        aic=aic,
        bic=bic,
        n_obs=n_obs,
        estimate=estimate,
        message=str(result.message),
        n_iter=int(result.get('nit', 0)),
        hessian=hess,
        n_steps=len(x),
    )
