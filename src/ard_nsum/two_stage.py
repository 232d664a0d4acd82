"""
Two-Stage Network Scale-Up Estimators

This module implements the closed-form plug-in estimators for ARD:

* Stage 1 estimates each respondent's degree from the known subpopulations,
  d_i = N * sum_{k known} y_ik / sum_{k known} N_k.
* Stage 2 estimates every subpopulation size either by averaging
  per-respondent ratios (PIMLE) or by pooling counts (MLE).

Both stages are pure arithmetic; no iterative search is involved.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional
import logging

import numpy as np
import pandas as pd

from .data import ARDDataset, coerce_dataset
from .errors import ARDValidationError, DegenerateRespondentWarning

logger = logging.getLogger(__name__)


class TwoStageModel(str, Enum):
    PIMLE = "pimle"
    MLE = "mle"

    @classmethod
    def parse(cls, value) -> "TwoStageModel":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError as e:
            raise ARDValidationError(f"Unknown two-stage model '{value}', expected one of: pimle, mle") from e


@dataclass(frozen=True)
class TwoStageResult:
    """
    Output of a two-stage fit.

    Attributes:
        model: Estimator used for stage 2
        degrees: Per-respondent degree estimates (stage 1)
        sizes: Per-subpopulation size estimates aligned to the ARD columns
        known_indices: Columns whose size was supplied
        degenerate_respondents: Rows whose stage-1 degree is exactly zero
        n_used: Number of respondents contributing to stage 2
        warnings: Non-fatal warnings raised during the fit
    """
    model: TwoStageModel
    degrees: np.ndarray
    sizes: np.ndarray
    known_indices: np.ndarray
    degenerate_respondents: np.ndarray
    n_used: int
    warnings: List[DegenerateRespondentWarning] = field(default_factory=list)
    subpopulation_names: Optional[List[str]] = None
    known_sizes: Optional[np.ndarray] = None

    @property
    def unknown_sizes(self) -> Dict[int, float]:
        """Estimates for the subpopulations whose size was not supplied, keyed by column index."""
        known = set(self.known_indices.tolist())
        return {k: float(v) for k, v in enumerate(self.sizes) if k not in known}

    def to_frame(self) -> pd.DataFrame:
        """Size estimates as a table (one row per subpopulation)."""
        labels = self.subpopulation_names or [f"subpop_{k}" for k in range(len(self.sizes))]
        known_size = np.full(len(self.sizes), np.nan)
        if self.known_sizes is not None:
            known_size[self.known_indices] = self.known_sizes
        known = np.zeros(len(self.sizes), dtype=bool)
        known[self.known_indices] = True
        return pd.DataFrame({
            'subpopulation': labels,
            'known': known,
            'known_size': known_size,
            'estimate': self.sizes,
        })


def estimate_degrees(dataset: ARDDataset) -> np.ndarray:
    """
    Stage 1: respondent degrees from the known subpopulations.

    Args:
        dataset: Validated ARD data

    Returns:
        Array of degree estimates, exactly 0 for respondents who report no
        contacts in any known subpopulation
    """
    known_counts = dataset.ard[:, dataset.known_indices].sum(axis=1)
    return dataset.population_total * known_counts / dataset.known_sizes.sum()


def _pimle_sizes(dataset: ARDDataset, degrees: np.ndarray) -> np.ndarray:
    used = degrees > 0
    n_used = int(used.sum())
    if n_used == 0:
        raise ARDValidationError(
            "PIMLE is undefined: no respondent reports contacts in any known subpopulation"
        )
    ratios = dataset.ard[used] / degrees[used][:, None]
    return dataset.population_total / n_used * ratios.sum(axis=0)


def _mle_sizes(dataset: ARDDataset, degrees: np.ndarray) -> np.ndarray:
    total_degree = degrees.sum()
    if total_degree <= 0:
        raise ARDValidationError(
            "MLE is undefined: no respondent reports contacts in any known subpopulation"
        )
    return dataset.population_total * dataset.ard.sum(axis=0) / total_degree


def fit_two_stage(
    ard,
    known_sizes=None,
    known_indices=None,
    population_total: Optional[float] = None,
    model: str = "mle",
) -> TwoStageResult:
    """
    Fit the PIMLE or MLE network scale-up estimator.

    Args:
        ard: (n_respondents, n_subpopulations) count matrix or an ARDDataset
        known_sizes: Sizes of the known subpopulations
        known_indices: Column indices of the known subpopulations
        population_total: Total population size
        model: "pimle" or "mle"

    Returns:
        TwoStageResult with degrees, sizes and any DegenerateRespondentWarning

    Raises:
        ARDValidationError: On malformed input, or when stage 2 has no usable respondents
    """
    model = TwoStageModel.parse(model)
    dataset = coerce_dataset(ard, known_sizes, known_indices, population_total)

    degrees = estimate_degrees(dataset)
    degenerate = np.flatnonzero(degrees == 0)

    result_warnings = []
    if len(degenerate) > 0:
        message = (
            f"{len(degenerate)} respondent(s) report no contacts in any known subpopulation; "
            f"their degree estimate is 0"
            + (" and they are excluded from PIMLE stage 2" if model is TwoStageModel.PIMLE else "")
        )
        logger.warning(message)
        result_warnings.append(DegenerateRespondentWarning(message))

    if model is TwoStageModel.PIMLE:
        sizes = _pimle_sizes(dataset, degrees)
        n_used = dataset.n_respondents - len(degenerate)
    else:
        sizes = _mle_sizes(dataset, degrees)
        n_used = dataset.n_respondents

    logger.info(
        f"Two-stage {model.value.upper()} fit: {dataset.n_respondents} respondents "
        f"({n_used} used in stage 2), {dataset.n_subpopulations} subpopulations"
    )

    degrees.setflags(write=False)
    sizes.setflags(write=False)
    return TwoStageResult(
        model=model,
        degrees=degrees,
        sizes=sizes,
        known_indices=dataset.known_indices,
        degenerate_respondents=degenerate,
        n_used=n_used,
        warnings=result_warnings,
        subpopulation_names=dataset.column_labels(),
        known_sizes=dataset.known_sizes,
    )
