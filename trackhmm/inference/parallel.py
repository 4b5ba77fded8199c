"""TrackHMM worker management for bootstrap replicates."""

import logging
import numpy as np
from concurrent.futures import ProcessPoolExecutor
from typing import Any, Dict, List, Optional, Tuple

from tqdm import tqdm

from trackhmm.core.model import HMMModel
from trackhmm.inference.estimator import fit

logger = logging.getLogger(__name__)

# Globals for worker processes
_worker_model: Optional[HMMModel] = None
_worker_params: Optional[Dict[str, Any]] = None


def _init_bootstrap_worker(model_dict: Dict[str, Any], params: Dict[str, Any]):
    """Initialize worker process with the fitted model and refit options."""
    global _worker_model, _worker_params
    _worker_model = HMMModel.from_dict(model_dict)
    _worker_params = params


def _replicate(model: HMMModel, params: Dict[str, Any],
               seed: np.random.SeedSequence) -> Tuple[Dict[str, Any], int]:
    """
    One replicate: simulate a sequence from the fitted model and refit it,
    starting from the fitted parameters.

    Returns:
        (refitted model as dict, optimizer status)
    """
    rng = np.random.default_rng(seed)
    _, obs = model.sample(params['length'], rng)
    result = fit(obs, model, stationary=params['stationary'],
                 method=params['method'], options=params['options'])
    return result.model.to_dict(), result.code


def _bootstrap_replicate(seed: np.random.SeedSequence) -> Tuple[Dict[str, Any], int]:
    """Worker entry point: one replicate of the model set by the initializer."""
    return _replicate(_worker_model, _worker_params, seed)


def run_replicates(model: HMMModel, seeds: List[np.random.SeedSequence], length: int,
                   stationary: bool, method: str, options: Optional[Dict[str, Any]] = None,
                   n_workers: int = 1,
                   verbose: bool = False) -> List[Tuple[Dict[str, Any], int]]:
    """
    Run bootstrap replicates, in parallel when n_workers > 1.

    Each replicate draws from its own SeedSequence, so the results depend
    only on the seeds, not on how replicates are spread across workers.
    Results come back in seed order.
    """
    params = {
        'length': length,
        'stationary': stationary,
        'method': method,
        'options': options or {},
    }
    model_dict = model.to_dict()

    if n_workers <= 1:
        iterator = tqdm(seeds, desc="Bootstrap", disable=not verbose)
        local_model = HMMModel.from_dict(model_dict)
        return [_replicate(local_model, params, s) for s in iterator]

    logger.info(f"Running {len(seeds)} bootstrap replicates on {n_workers} workers")
    with ProcessPoolExecutor(
        max_workers=n_workers,
        initializer=_init_bootstrap_worker,
        initargs=(model_dict, params)
    ) as executor:
        results = executor.map(_bootstrap_replicate, seeds)
        return list(tqdm(results, total=len(seeds), desc="Bootstrap", disable=not verbose))
