"""
Scaling (identifiability) for log-linear ARD models

In every model of the form y_ik ~ f(exp(a_i + b_k)) adding a constant to all
log-degrees and subtracting it from all log-prevalences leaves the likelihood
unchanged. This module computes, for each posterior draw, the constant that
ties the log-prevalences of the known subpopulations to log(N_k / N), and
applies it to the draws.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import logging

import numpy as np
from scipy.special import logsumexp

from .data import ARDDataset
from .errors import ARDValidationError

logger = logging.getLogger(__name__)


class ScalingMode(str, Enum):
    ALL = "all"
    WEIGHTED = "weighted"
    GROUP = "group"

    @classmethod
    def parse(cls, value) -> "ScalingMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError as e:
            raise ARDValidationError(
                f"Unknown scaling mode '{value}', expected one of: all, weighted, group"
            ) from e


def resolve_scaling_mode(mode: Optional[str], dataset: ARDDataset) -> ScalingMode:
    """Default to group scaling when grouping indices are present, else to all."""
    if mode is None:
        return ScalingMode.GROUP if dataset.has_groups else ScalingMode.ALL
    mode = ScalingMode.parse(mode)
    if mode is ScalingMode.GROUP and not dataset.has_groups:
        raise ARDValidationError("Group scaling requires group1_index")
    return mode


@dataclass(frozen=True)
class ScaledDraws:
    """Identified draws. ``shift`` is the per-draw constant that was applied."""
    log_degrees: np.ndarray
    log_prevalences: np.ndarray
    shift: np.ndarray


def _prevalences(dataset: ARDDataset, columns: np.ndarray) -> np.ndarray:
    sizes = dataset.known_size_map
    return np.array([sizes[int(k)] for k in columns]) / dataset.population_total


def _log_sum_ratio(log_prevalences: np.ndarray, dataset: ARDDataset, columns: np.ndarray) -> np.ndarray:
    """log( sum_k exp(b_k) / sum_k P_k ) over the given known columns, per draw."""
    return logsumexp(log_prevalences[:, columns], axis=1) - np.log(_prevalences(dataset, columns).sum())


def _inverse_variance_weights(log_prevalences: np.ndarray, known: np.ndarray) -> np.ndarray:
    # Centring removes the non-identified common drift before measuring spread
    centred = log_prevalences[:, known] - log_prevalences[:, known].mean(axis=1, keepdims=True)
    if centred.shape[0] < 2:
        return np.ones(len(known))
    variances = centred.var(axis=0, ddof=1)
    if len(known) < 2 or not np.all(np.isfinite(variances)) or np.any(variances <= 0):
        return np.ones(len(known))
    return 1.0 / variances


def compute_shift(
    log_prevalences: np.ndarray,
    dataset: ARDDataset,
    mode: ScalingMode = ScalingMode.ALL,
) -> np.ndarray:
    """
    Compute the per-draw scaling constant.

    Args:
        log_prevalences: (n_draws, n_subpopulations) raw log-prevalence draws
        dataset: Dataset holding the known sizes and optional grouping indices
        mode: Scaling mode

    Returns:
        Array of shape (n_draws,); subtract it from the log-prevalences and add
        it to the log-degrees to obtain identified draws
    """
    log_prevalences = np.atleast_2d(log_prevalences)
    mode = ScalingMode.parse(mode)
    known = dataset.known_indices
    log_known_prev = np.log(dataset.known_prevalences)

    if mode is ScalingMode.ALL:
        return (log_prevalences[:, known] - log_known_prev).mean(axis=1)

    if mode is ScalingMode.WEIGHTED:
        weights = _inverse_variance_weights(log_prevalences, known)
        residuals = log_prevalences[:, known] - log_known_prev
        return residuals @ weights / weights.sum()

    if dataset.group1_index is None:
        raise ARDValidationError("Group scaling requires group1_index")

    c1 = _log_sum_ratio(log_prevalences, dataset, dataset.group1_index)
    if dataset.group2_index is None:
        return c1
    c2 = _log_sum_ratio(log_prevalences, dataset, dataset.group2_index)
    if dataset.group2_secondary_index is None:
        return 0.5 * (c1 + c2)
    c_secondary = _log_sum_ratio(log_prevalences, dataset, dataset.group2_secondary_index)
    return c1 + 0.5 * (c_secondary - c2)


def scale_draws(
    log_degrees: np.ndarray,
    log_prevalences: np.ndarray,
    dataset: ARDDataset,
    mode: ScalingMode = ScalingMode.ALL,
) -> ScaledDraws:
    """
    Apply the scaling constant to paired log-degree and log-prevalence draws.

    Args:
        log_degrees: (n_draws, n_respondents) raw draws
        log_prevalences: (n_draws, n_subpopulations) raw draws
        dataset: Dataset holding the known sizes
        mode: Scaling mode

    Returns:
        ScaledDraws with identified draws and the shift applied
    """
    log_degrees = np.atleast_2d(log_degrees)
    log_prevalences = np.atleast_2d(log_prevalences)
    if log_degrees.shape[0] != log_prevalences.shape[0]:
        raise ARDValidationError(
            f"Draw counts differ: {log_degrees.shape[0]} log-degree vs "
            f"{log_prevalences.shape[0]} log-prevalence draws"
        )

    shift = compute_shift(log_prevalences, dataset, mode)
    logger.debug(f"Scaling ({ScalingMode.parse(mode).value}): mean shift {shift.mean():.4f}")
    return ScaledDraws(
        log_degrees=log_degrees + shift[:, None],
        log_prevalences=log_prevalences - shift[:, None],
        shift=shift,
    )
