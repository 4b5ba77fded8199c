"""Core HMM models, parameter transforms and the forward recursion."""

from trackhmm.core.model import (
    HMMModel,
    NormalHMM,
    MVNormalHMM,
    MARHMM,
    stationary_distribution,
)
from trackhmm.core.codec import ParameterCodec
from trackhmm.core.forward import forward_log_likelihood, log_forward, log_backward
from trackhmm.core.model_io import load_model, save_model, load_model_with_metadata, save_fit
