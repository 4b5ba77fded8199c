"""
TrackHMM - Hidden Markov Models for movement and behavioural time series:
maximum likelihood fitting, state decoding, pseudo-residuals and
parametric-bootstrap confidence intervals.
"""

__version__ = "1.0.0"

from trackhmm.core.model import NormalHMM, MVNormalHMM, MARHMM
from trackhmm.core.model_io import load_model, save_model, load_model_with_metadata
from trackhmm.inference.estimator import FitResult, fit
from trackhmm.inference.decoding import viterbi
from trackhmm.inference.smoothing import pseudo_residuals
