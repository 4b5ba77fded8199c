"""
TrackHMM asymptotic covariance of the natural parameters

The optimizer returns the Hessian of the negative log-likelihood in
working-parameter space. Its inverse is the asymptotic covariance of the
working estimate; the delta method maps it to natural parameters:

    cov = J^T H^-1 J,   J[w, p] = d natural_p / d working_w

Natural parameters are ordered like the working vector without delta:
mu, sigma (lower triangle), off-diagonal gamma (row-major), phi. The
delta block is excluded for models with a free initial distribution.
"""

import numpy as np
from typing import List

from trackhmm.core.codec import ParameterCodec
from trackhmm.core.model import HMMModel


def jacobian(model: HMMModel) -> np.ndarray:
    """
    Jacobian of the working -> natural transform at the model's parameters.

    Returns:
        (p, p) matrix, rows indexed by working parameters and columns by
        natural parameters, p = number of non-delta working parameters
    """
    codec = ParameterCodec.for_model(model, stationary=True)
    p = codec.n_natural
    jac = np.zeros((p, p))

    mu_block = codec.slices['mu']
    jac[mu_block, mu_block] = np.eye(mu_block.stop - mu_block.start)

    # Diagonal covariance entries are exp() of their working value, so the
    # derivative is the entry itself; off-diagonal entries are copied.
    sigma_block = codec.slices['sigma']
    if model.kind == 'norm':
        scale = model.sigma
    else:
        rows, cols = np.tril_indices(model.n_dims)
        scale = np.concatenate([
            np.where(rows == cols, s[rows, cols], 1.0) for s in model.sigma
        ])
    idx = np.arange(sigma_block.start, sigma_block.stop)
    jac[idx, idx] = scale

    # Each gamma row is a softmax of its off-diagonal logits with the
    # diagonal as reference: d gamma[i, j] / d tgamma[i, l]
    #     = gamma[i, j] * (1{j == l} - gamma[i, l]),   j, l != i
    m = model.n_states
    gamma = model.gamma
    offset = codec.slices['gamma'].start
    for i in range(m):
        others = [j for j in range(m) if j != i]
        block = np.array([
            [gamma[i, j] * (float(j == l) - gamma[i, l]) for j in others]
            for l in others
        ])
        start = offset + i * (m - 1)
        jac[start:start + m - 1, start:start + m - 1] = block

    phi_block = codec.slices['phi']
    n_phi = phi_block.stop - phi_block.start
    if n_phi:
        jac[phi_block, phi_block] = np.eye(n_phi)

    return jac


def natural_covariance(fit) -> np.ndarray:
    """
    Asymptotic covariance matrix of the natural parameters of a fit.

    Args:
        fit: FitResult produced with hessian=True

    Raises:
        ValueError: the fit carries no Hessian
        numpy.linalg.LinAlgError: the Hessian is singular
    """
    if fit.hessian is None:
        raise ValueError("FitResult has no Hessian; refit with hessian=True")

    codec = ParameterCodec.for_model(fit.model)
    p = codec.n_natural
    hess = np.asarray(fit.hessian, dtype=float)[:p, :p]

    inv_hess = np.linalg.inv(hess)
    if not np.all(np.isfinite(inv_hess)):
        raise np.linalg.LinAlgError("Hessian inverse is not finite (singular Hessian)")

    jac = jacobian(fit.model)
    return jac.T @ inv_hess @ jac


def standard_errors(fit) -> np.ndarray:
    """Square roots of the diagonal of natural_covariance(); NaN where negative."""
    variances = np.diag(natural_covariance(fit))
    return np.sqrt(np.where(variances >= 0, variances, np.nan))


def natural_parameter_values(model: HMMModel) -> np.ndarray:
    """Natural parameters in covariance order (see module docstring)."""
    m = model.n_states
    values = [np.ravel(model.mu)]
    if model.kind == 'norm':
        values.append(model.sigma)
    else:
        rows, cols = np.tril_indices(model.n_dims)
        values.extend(s[rows, cols] for s in model.sigma)
    values.append(model.gamma[~np.eye(m, dtype=bool)])
    if model.kind == 'mar':
        values.append(np.ravel(model.phi))
    return np.concatenate(values)


def natural_parameter_labels(model: HMMModel) -> List[str]:
    """Labels matching natural_parameter_values(), e.g. 'mu[0]', 'gamma[1,0]'."""
    m = model.n_states
    if model.kind == 'norm':
        labels = [f'mu[{j}]' for j in range(m)]
        labels += [f'sigma[{j}]' for j in range(m)]
    else:
        k = model.n_dims
        labels = [f'mu[{j},{d}]' for j in range(m) for d in range(k)]
        rows, cols = np.tril_indices(k)
        labels += [f'sigma[{j},{r},{c}]' for j in range(m) for r, c in zip(rows, cols)]
    labels += [f'gamma[{i},{j}]' for i in range(m) for j in range(m) if j != i]
    if model.kind == 'mar':
        _, k, kq = model.phi.shape
        labels += [f'phi[{j},{r},{c}]' for j in range(m) for r in range(k) for c in range(kq)]
    return labels
