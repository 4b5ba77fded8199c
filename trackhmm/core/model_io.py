"""
TrackHMM model I/O module

Models are saved as human-readable JSON. A file written by save_fit()
nests the model under a 'model' key next to the fit statistics; load_model()
accepts both layouts, so a fitted model can be used directly as the
starting point of another fit or as the input of a bootstrap run.
"""

import json
import os
import warnings
from typing import Any, Dict, Tuple

from trackhmm.core.model import HMMModel

FORMAT_VERSION = '1.0'


def save_model(model: HMMModel, filepath: str):
    """
    Save a model to JSON.

    If the filepath does not end in .json, the extension is replaced with
    .json and a warning is issued.
    """
    filepath = _json_path(filepath)
    data = model.to_dict()
    data['version'] = FORMAT_VERSION
    with open(filepath, 'w') as f:
        json.dump(data, f, indent=2)
    return filepath


def load_model(filepath: str) -> HMMModel:
    """Load a model written by save_model() or save_fit()."""
    model, _ = load_model_with_metadata(filepath)
    return model


def load_model_with_metadata(filepath: str) -> Tuple[HMMModel, Dict[str, Any]]:
    """
    Load a model and whatever fit statistics were saved with it.

    Returns:
        (model, metadata) - metadata is empty for plain model files
    """
    with open(filepath, 'r') as f:
        data = json.load(f)

    if 'model' in data:
        metadata = {k: v for k, v in data.items() if k != 'model'}
        return HMMModel.from_dict(data['model']), metadata
    return HMMModel.from_dict(data), {}


def save_fit(fit, filepath: str):
    """Save a FitResult (model plus statistics, Hessian if present) to JSON."""
    filepath = _json_path(filepath)
    data = fit.to_dict()
    data['version'] = FORMAT_VERSION
    with open(filepath, 'w') as f:
        json.dump(data, f, indent=2)
    return filepath


def _json_path(filepath: str) -> str:
    if filepath.endswith('.json'):
        return filepath
    base, _ = os.path.splitext(filepath)
    new_path = base + '.json'
    warnings.warn(
        f"Only JSON format is supported for saving. "
        f"Saving to '{new_path}' instead of '{filepath}'."
    )
    return new_path
