"""Fitting, decoding, smoothing, covariance and bootstrap for TrackHMM models."""

from trackhmm.inference.estimator import (
    FitResult,
    fit,
    negative_log_likelihood,
    model_negative_log_likelihood,
    numerical_hessian,
)
from trackhmm.inference.decoding import viterbi, local_decoding
from trackhmm.inference.smoothing import (
    forward_backward,
    state_probabilities,
    pseudo_residuals,
)
from trackhmm.inference.covariance import (
    jacobian,
    natural_covariance,
    standard_errors,
)
from trackhmm.inference.bootstrap import (
    BootstrapSample,
    simulate,
    bootstrap_estimates,
    bootstrap_ci,
    confidence_table,
)

__all__ = [
    'FitResult',
    'fit',
    'negative_log_likelihood',
    'model_negative_log_likelihood',
    'numerical_hessian',
    'viterbi',
    'local_decoding',
    'forward_backward',
    'state_probabilities',
    'pseudo_residuals',
    'jacobian',
    'natural_covariance',
    'standard_errors',
    'BootstrapSample',
    'simulate',
    'bootstrap_estimates',
    'bootstrap_ci',
    'confidence_table',
]
