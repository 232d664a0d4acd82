"""
ARD Network Scale-Up Estimation

Estimators for the sizes of hidden subpopulations from aggregated relational
data ("how many X do you know?"): the two-stage PIMLE/MLE estimators, the
overdispersed negative binomial model and the correlated Poisson log-normal
model, with posterior summaries and a Hamilton pipeline around them.
"""

# Suppress upstream warnings on import
from .utils.warning_suppression import suppress_upstream_warnings
suppress_upstream_warnings()

from .errors import (
    ARDValidationError,
    ValidationError,
    DegenerateRespondentWarning,
    NumericInstabilityWarning,
    ChainExecutionError,
)
from .data import ARDDataset
from .two_stage import TwoStageModel, TwoStageResult, fit_two_stage
from .scaling import ScalingMode, compute_shift, scale_draws
from .overdispersed import OverdispersedFit, fit_overdispersed
from .correlated import CorrelatedFit, fit_correlated
from .summaries import acceptance_table, effective_sample_size, split_rhat, summarize_draws, summarize_fit
from .config import CorrelatedConfig, OverdispersedConfig, TwoStageConfig, load_config
from .execution_config import set_parallel_chains

__version__ = "0.1.0"

__all__ = [
    'ARDDataset',
    'ARDValidationError',
    'ValidationError',
    'DegenerateRespondentWarning',
    'NumericInstabilityWarning',
    'ChainExecutionError',
    'TwoStageModel',
    'TwoStageResult',
    'fit_two_stage',
    'ScalingMode',
    'compute_shift',
    'scale_draws',
    'OverdispersedFit',
    'fit_overdispersed',
    'CorrelatedFit',
    'fit_correlated',
    'summarize_draws',
    'summarize_fit',
    'split_rhat',
    'effective_sample_size',
    'acceptance_table',
    'TwoStageConfig',
    'OverdispersedConfig',
    'CorrelatedConfig',
    'load_config',
    'set_parallel_chains',
]
