"""
TrackHMM parametric bootstrap

Replicate sequences are simulated from a fitted model and refitted
starting from the fitted parameters. Confidence intervals use the basic
bootstrap: sample quantiles of the replicates are reflected around the
point estimate,

    lower = 2 * estimate - quantile(replicates, 1 - alpha/2)
    upper = 2 * estimate - quantile(replicates, alpha/2)
"""

import logging
import numpy as np
from typing import Dict, List, Optional, Tuple, Union

import pandas as pd

from trackhmm.core.model import HMMModel
from trackhmm.inference.estimator import DEFAULT_METHOD, FitResult
from trackhmm.inference.parallel import run_replicates

logger = logging.getLogger(__name__)

DEFAULT_ALPHA = 0.05

PARAMETER_NAMES = ('mu', 'sigma', 'gamma', 'phi', 'delta')


def simulate(model: HMMModel, n: int,
             rng: Union[np.random.Generator, int, None] = None) -> Tuple[np.ndarray, np.ndarray]:
    """
    Simulate a state path and observations from a model.

    Args:
        model: Model to simulate from
        n: Sequence length
        rng: numpy Generator, or a seed for a new one

    Returns:
        (states, observations): states (n,) in 0..m-1, observations (n,) or (n, k)
    """
    if n < 1:
        raise ValueError(f"Sequence length must be positive, got {n}")
    if not isinstance(rng, np.random.Generator):
        rng = np.random.default_rng(rng)
    return model.sample(n, rng)


def _model_parameters(model: HMMModel) -> Dict[str, np.ndarray]:
    params = {
        'mu': np.asarray(model.mu),
        'sigma': np.asarray(model.sigma),
        'gamma': model.gamma,
    }
    if model.kind == 'mar':
        params['phi'] = model.phi
    params['delta'] = model.delta
    return params


class BootstrapSample:
    """
    Natural parameters of the bootstrap refits, one entry per replicate.

    Attributes:
        codes: Optimizer status of each refit (0 = converged)
    """

    def __init__(self):
        self._replicates: Dict[str, List[np.ndarray]] = {}
        self.codes: List[int] = []

    def add(self, model: HMMModel, code: int = 0):
        for name, value in _model_parameters(model).items():
            self._replicates.setdefault(name, []).append(np.array(value, dtype=float))
        self.codes.append(int(code))

    def __len__(self):
        return len(self.codes)

    @property
    def parameter_names(self) -> List[str]:
        return [name for name in PARAMETER_NAMES if name in self._replicates]

    def values(self, name: str) -> np.ndarray:
        """Replicates of one parameter stacked on a new first axis, shape (R, ...)."""
        if name not in self._replicates:
            raise KeyError(f"No replicates for parameter {name!r}")
        return np.stack(self._replicates[name])

    def flat(self) -> np.ndarray:
        """Replicate vectors (mu, sigma, gamma, phi, delta) flattened, shape (R, P)."""
        return np.column_stack([
            self.values(name).reshape(len(self), -1) for name in self.parameter_names
        ])

    def labels(self) -> List[str]:
        """Column labels of flat(), e.g. 'mu[1]', 'gamma[1,0]'."""
        labels = []
        for name in self.parameter_names:
            shape = self._replicates[name][0].shape
            labels.extend(f"{name}[{','.join(str(i) for i in idx)}]" for idx in np.ndindex(shape))
        return labels

    def to_frame(self) -> pd.DataFrame:
        """One row per replicate: replicate number, optimizer status, then flat()."""
        table = pd.DataFrame(self.flat(), columns=self.labels())
        table.insert(0, 'code', self.codes)
        table.insert(0, 'replicate', np.arange(len(self)))
        return table

    def covariance(self) -> np.ndarray:
        """Sample covariance of the flattened replicate vectors (denominator R - 1)."""
        if len(self) < 2:
            raise ValueError("At least 2 replicates are needed for a covariance")
        return np.cov(self.flat(), rowvar=False, ddof=1)


def bootstrap_estimates(fit: Union[FitResult, HMMModel], n_replicates: int, length: int,
                        stationary: Optional[bool] = None, seed: Optional[int] = None,
                        method: str = DEFAULT_METHOD, options=None, n_workers: int = 1,
                        verbose: bool = False) -> BootstrapSample:
    """
    Simulate and refit n_replicates sequences of the given length.

    Args:
        fit: FitResult or fitted model; also the starting point of every refit
        n_replicates: Number of replicates
        length: Length of each simulated sequence
        stationary: Override the model's stationary flag for the refits
        seed: Seed for the replicate random streams. Results for a given
            seed do not depend on n_workers.
        method, options: Passed to the optimizer
        n_workers: Worker processes (1 = run in this process)
        verbose: Show a progress bar

    Returns:
        BootstrapSample
    """
    model = fit.model if isinstance(fit, FitResult) else fit
    if n_replicates < 1:
        raise ValueError(f"n_replicates must be positive, got {n_replicates}")
    if length < 1:
        raise ValueError(f"length must be positive, got {length}")
    if stationary is None:
        stationary = model.stationary

    seeds = np.random.SeedSequence(seed).spawn(n_replicates)
    results = run_replicates(model, seeds, length, stationary, method, options,
                             n_workers=n_workers, verbose=verbose)

    sample = BootstrapSample()
    for model_dict, code in results:
        sample.add(HMMModel.from_dict(model_dict), code)

    n_failed = sum(1 for c in sample.codes if c != 0)
    if n_failed:
        logger.warning(f"{n_failed} of {len(sample)} bootstrap refits did not converge")
    logger.info(f"Bootstrap finished: {len(sample)} replicates")
    return sample


def bootstrap_ci(model: HMMModel, sample: BootstrapSample,
                 alpha: float = DEFAULT_ALPHA) -> Dict[str, Tuple[np.ndarray, np.ndarray]]:
    """
    Basic bootstrap confidence intervals.

    Args:
        model: Fitted model (the point estimate)
        sample: Replicates from bootstrap_estimates()
        alpha: 1 - confidence level

    Returns:
        {parameter name: (lower, upper)}, each shaped like the parameter
    """
    if not 0 < alpha < 1:
        raise ValueError(f"alpha must be in (0, 1), got {alpha}")
    if len(sample) == 0:
        raise ValueError("Bootstrap sample is empty")

    estimates = _model_parameters(model)
    intervals = {}
    for name in sample.parameter_names:
        reps = sample.values(name)
        est = np.asarray(estimates[name], dtype=float)
        if reps.shape[1:] != est.shape:
            raise ValueError(f"Replicates of {name} have shape {reps.shape[1:]}, "
                             f"estimate has shape {est.shape}")
        lower = 2.0 * est - np.quantile(reps, 1.0 - alpha / 2.0, axis=0)
        upper = 2.0 * est - np.quantile(reps, alpha / 2.0, axis=0)
        intervals[name] = (lower, upper)
    return intervals


def confidence_table(model: HMMModel, sample: BootstrapSample,
                     alpha: float = DEFAULT_ALPHA) -> pd.DataFrame:
    """One row per scalar parameter: parameter, index, estimate, lower, upper."""
    intervals = bootstrap_ci(model, sample, alpha=alpha)
    estimates = _model_parameters(model)
    rows = []
    for name, (lower, upper) in intervals.items():
        est = np.asarray(estimates[name], dtype=float)
        for idx in np.ndindex(est.shape):
            rows.append({
                'parameter': name,
                'index': ','.join(str(i) for i in idx),
                'estimate': est[idx],
                'lower': lower[idx],
                'upper': upper[idx],
            })
    return pd.DataFrame(rows, columns=['parameter', 'index', 'estimate', 'lower', 'upper'])
