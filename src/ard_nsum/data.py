"""
ARD Dataset

This module defines the validated input container shared by every estimator:
the aggregated relational data matrix, the known-size anchors, the total
population size and the optional covariates and grouping indices.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Sequence
import logging

import numpy as np
import pandas as pd
from pandera.errors import SchemaError, SchemaErrors

from .errors import ARDValidationError
from .schemas import ARDResponsesSchema

logger = logging.getLogger(__name__)


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, copy=True)
    arr.setflags(write=False)
    return arr


def _as_count_matrix(ard) -> np.ndarray:
    """Convert an ARD matrix to a non-negative int64 array, failing fast."""
    try:
        values = np.asarray(ard, dtype=float)
    except (TypeError, ValueError) as e:
        raise ARDValidationError(f"ARD matrix is not numeric: {e}") from e

    if values.ndim != 2:
        raise ARDValidationError(f"ARD matrix must be 2-dimensional, got shape {values.shape}")
    if values.shape[0] == 0 or values.shape[1] == 0:
        raise ARDValidationError(f"ARD matrix must be non-empty, got shape {values.shape}")
    if not np.all(np.isfinite(values)):
        raise ARDValidationError("ARD matrix contains missing or non-finite values")
    if np.any(values < 0):
        raise ARDValidationError("ARD matrix contains negative counts")
    if np.any(values != np.round(values)):
        raise ARDValidationError("ARD matrix contains non-integer counts")

    return values.astype(np.int64)


def _as_index(name: str, index, n_columns: int) -> np.ndarray:
    values = np.atleast_1d(np.asarray(index))
    if values.size == 0:
        raise ARDValidationError(f"{name} must contain at least one column index")
    if values.ndim != 1:
        raise ARDValidationError(f"{name} must be 1-dimensional")
    if not np.issubdtype(values.dtype, np.integer):
        if np.issubdtype(values.dtype, np.floating) and np.all(values == np.round(values)):
            values = values.astype(np.int64)
        else:
            raise ARDValidationError(f"{name} must contain integer column indices, got {values.dtype}")
    if np.any(values < 0) or np.any(values >= n_columns):
        raise ARDValidationError(
            f"{name} contains indices outside the column range [0, {n_columns - 1}]: {values.tolist()}"
        )
    if len(np.unique(values)) != len(values):
        raise ARDValidationError(f"{name} contains duplicate indices: {values.tolist()}")
    return values.astype(np.int64)


def _as_covariate(name: str, values, n_rows: int, n_columns: Optional[int] = None) -> Optional[np.ndarray]:
    if values is None:
        return None
    arr = np.asarray(values, dtype=float)
    if arr.ndim == 1:
        arr = arr.reshape(-1, 1)
    if arr.ndim != 2:
        raise ARDValidationError(f"{name} must be 1- or 2-dimensional, got shape {arr.shape}")
    if arr.shape[0] != n_rows:
        raise ARDValidationError(
            f"{name} has {arr.shape[0]} rows but the ARD matrix has {n_rows} respondents"
        )
    if n_columns is not None and arr.shape[1] != n_columns:
        raise ARDValidationError(
            f"{name} has {arr.shape[1]} columns but the ARD matrix has {n_columns} subpopulations"
        )
    if not np.all(np.isfinite(arr)):
        raise ARDValidationError(f"{name} contains missing or non-finite values")
    return arr


@dataclass(frozen=True)
class ARDDataset:
    """
    Validated aggregated relational data.

    All arrays are copied and made read-only on construction, so a dataset can
    be shared between chains (and pickled to worker processes) without any
    chance of mutation.

    Attributes:
        ard: (n_respondents, n_subpopulations) matrix of reported counts
        known_sizes: true sizes of the anchor subpopulations
        known_indices: column indices of the anchor subpopulations (0-based)
        population_total: total size of the reference population
        x: optional (n_respondents, n_subpopulations) covariate with a
            per-subpopulation slope
        z_subpop: optional (n_respondents, p) respondent covariates with
            subpopulation-specific coefficients
        z_global: optional (n_respondents, p) respondent covariates with
            shared coefficients
        group1_index: optional known columns forming scaling group 1
        group2_index: optional known columns forming scaling group 2
        group2_secondary_index: optional known columns used as the secondary
            anchor for group 2
        respondent_ids: optional row labels
        subpopulation_names: optional column labels
    """
    ard: np.ndarray
    known_sizes: np.ndarray
    known_indices: np.ndarray
    population_total: float
    x: Optional[np.ndarray] = None
    z_subpop: Optional[np.ndarray] = None
    z_global: Optional[np.ndarray] = None
    group1_index: Optional[np.ndarray] = None
    group2_index: Optional[np.ndarray] = None
    group2_secondary_index: Optional[np.ndarray] = None
    respondent_ids: Optional[List[str]] = field(default=None, compare=False)
    subpopulation_names: Optional[List[str]] = field(default=None, compare=False)

    def __post_init__(self):
        ard = _as_count_matrix(self.ard)
        n_rows, n_cols = ard.shape

        known_indices = _as_index("known_indices", self.known_indices, n_cols)
        known_sizes = np.atleast_1d(np.asarray(self.known_sizes, dtype=float))
        if known_sizes.ndim != 1 or len(known_sizes) != len(known_indices):
            raise ARDValidationError(
                f"known_sizes has {known_sizes.size} entries but known_indices has {len(known_indices)}"
            )
        if not np.all(np.isfinite(known_sizes)) or np.any(known_sizes <= 0):
            raise ARDValidationError("known_sizes must be positive and finite")

        try:
            population_total = float(self.population_total)
        except (TypeError, ValueError) as e:
            raise ARDValidationError(f"population_total must be a number: {e}") from e
        if not np.isfinite(population_total) or population_total <= 0:
            raise ARDValidationError(f"population_total must be positive, got {self.population_total}")
        if population_total < known_sizes.max():
            raise ARDValidationError(
                f"population_total ({population_total:g}) is smaller than the largest known size "
                f"({known_sizes.max():g})"
            )

        x = _as_covariate("x", self.x, n_rows, n_cols)
        z_subpop = _as_covariate("z_subpop", self.z_subpop, n_rows)
        z_global = _as_covariate("z_global", self.z_global, n_rows)

        groups = {}
        known_set = set(known_indices.tolist())
        for name in ("group1_index", "group2_index", "group2_secondary_index"):
            value = getattr(self, name)
            if value is None:
                groups[name] = None
                continue
            index = _as_index(name, value, n_cols)
            outside = sorted(set(index.tolist()) - known_set)
            if outside:
                raise ARDValidationError(f"{name} must be a subset of known_indices; unknown columns: {outside}")
            groups[name] = _readonly(index)
        if groups["group2_secondary_index"] is not None and groups["group2_index"] is None:
            raise ARDValidationError("group2_secondary_index requires group2_index")
        if groups["group2_index"] is not None and groups["group1_index"] is None:
            raise ARDValidationError("group2_index requires group1_index")

        if self.respondent_ids is not None and len(self.respondent_ids) != n_rows:
            raise ARDValidationError(
                f"respondent_ids has {len(self.respondent_ids)} labels for {n_rows} respondents"
            )
        if self.subpopulation_names is not None and len(self.subpopulation_names) != n_cols:
            raise ARDValidationError(
                f"subpopulation_names has {len(self.subpopulation_names)} labels for {n_cols} subpopulations"
            )

        object.__setattr__(self, "ard", _readonly(ard))
        object.__setattr__(self, "known_indices", _readonly(known_indices))
        object.__setattr__(self, "known_sizes", _readonly(known_sizes))
        object.__setattr__(self, "population_total", population_total)
        object.__setattr__(self, "x", None if x is None else _readonly(x))
        object.__setattr__(self, "z_subpop", None if z_subpop is None else _readonly(z_subpop))
        object.__setattr__(self, "z_global", None if z_global is None else _readonly(z_global))
        for name, value in groups.items():
            object.__setattr__(self, name, value)
        if self.respondent_ids is not None:
            object.__setattr__(self, "respondent_ids", [str(v) for v in self.respondent_ids])
        if self.subpopulation_names is not None:
            object.__setattr__(self, "subpopulation_names", [str(v) for v in self.subpopulation_names])

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_arrays(
        cls,
        ard,
        known_sizes: Sequence[float],
        known_indices: Sequence[int],
        population_total: float,
        **kwargs
    ) -> "ARDDataset":
        """Build a dataset from array-likes. Extra keyword arguments are dataset fields."""
        return cls(
            ard=ard,
            known_sizes=known_sizes,
            known_indices=known_indices,
            population_total=population_total,
            **kwargs
        )

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        known_sizes: Mapping[str, float],
        population_total: float,
        respondent_id_column: Optional[str] = None,
        x: Optional[pd.DataFrame] = None,
        z_subpop: Optional[pd.DataFrame] = None,
        z_global: Optional[pd.DataFrame] = None,
        group1: Optional[Sequence[str]] = None,
        group2: Optional[Sequence[str]] = None,
        group2_secondary: Optional[Sequence[str]] = None,
    ) -> "ARDDataset":
        """
        Build a dataset from a respondents-by-subpopulations DataFrame.

        Args:
            df: One row per respondent, one count column per subpopulation
            known_sizes: Mapping from subpopulation column name to its true size
            population_total: Total population size
            respondent_id_column: Optional column holding respondent ids (dropped from the counts)
            x: Optional covariate frame with the same columns as the counts
            z_subpop: Optional respondent covariates with subpopulation-specific effects
            z_global: Optional respondent covariates with shared effects
            group1, group2, group2_secondary: Optional lists of known column names used
                for group-based scaling

        Returns:
            Validated ARDDataset

        Raises:
            ARDValidationError: If the frame fails schema validation or a known
                subpopulation is not a column of the frame
        """
        counts = df.copy()
        respondent_ids = None
        if respondent_id_column is not None:
            if respondent_id_column not in counts.columns:
                raise ARDValidationError(f"Respondent id column '{respondent_id_column}' not found")
            respondent_ids = counts[respondent_id_column].astype(str).tolist()
            counts = counts.drop(columns=[respondent_id_column])

        try:
            counts = ARDResponsesSchema.validate(counts)
        except (SchemaError, SchemaErrors) as e:
            raise ARDValidationError(f"ARD table failed validation: {e}") from e

        columns = [str(c) for c in counts.columns]
        position = {name: idx for idx, name in enumerate(columns)}

        def _positions(names: Optional[Sequence[str]], label: str) -> Optional[List[int]]:
            if names is None:
                return None
            missing = [n for n in names if n not in position]
            if missing:
                raise ARDValidationError(f"{label} refers to unknown subpopulations: {missing}")
            return [position[n] for n in names]

        known_names = list(known_sizes.keys())
        known_indices = _positions(known_names, "known_sizes")

        if x is not None:
            x = x.reindex(columns=counts.columns) if isinstance(x, pd.DataFrame) else x

        logger.info(
            f"Loaded ARD table: {len(counts)} respondents, {len(columns)} subpopulations, "
            f"{len(known_names)} with known size"
        )

        return cls(
            ard=counts.to_numpy(),
            known_sizes=[known_sizes[n] for n in known_names],
            known_indices=known_indices,
            population_total=population_total,
            x=None if x is None else np.asarray(x, dtype=float),
            z_subpop=None if z_subpop is None else np.asarray(z_subpop, dtype=float),
            z_global=None if z_global is None else np.asarray(z_global, dtype=float),
            group1_index=_positions(group1, "group1"),
            group2_index=_positions(group2, "group2"),
            group2_secondary_index=_positions(group2_secondary, "group2_secondary"),
            respondent_ids=respondent_ids,
            subpopulation_names=columns,
        )

    def with_options(self, **changes) -> "ARDDataset":
        """Return a copy with some fields replaced (re-validated)."""
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            return self
        return replace(self, **changes)

    # ------------------------------------------------------------------
    # Derived quantities
    # ------------------------------------------------------------------

    @property
    def n_respondents(self) -> int:
        return self.ard.shape[0]

    @property
    def n_subpopulations(self) -> int:
        return self.ard.shape[1]

    @property
    def unknown_indices(self) -> np.ndarray:
        mask = np.ones(self.n_subpopulations, dtype=bool)
        mask[self.known_indices] = False
        return np.flatnonzero(mask)

    @property
    def known_prevalences(self) -> np.ndarray:
        """Known sizes as fractions of the total population, aligned to known_indices."""
        return self.known_sizes / self.population_total

    @property
    def known_size_map(self) -> Dict[int, float]:
        return {int(k): float(s) for k, s in zip(self.known_indices, self.known_sizes)}

    @property
    def has_groups(self) -> bool:
        return self.group1_index is not None

    def column_labels(self) -> List[str]:
        if self.subpopulation_names is not None:
            return list(self.subpopulation_names)
        return [f"subpop_{k}" for k in range(self.n_subpopulations)]

    def row_labels(self) -> List[str]:
        if self.respondent_ids is not None:
            return list(self.respondent_ids)
        return [f"respondent_{i}" for i in range(self.n_respondents)]


def coerce_dataset(
    ard,
    known_sizes=None,
    known_indices=None,
    population_total=None,
    **kwargs
) -> ARDDataset:
    """
    Accept either a ready ARDDataset or raw arrays and return a dataset.

    When a dataset is passed, any non-None keyword (covariates, grouping
    indices) is attached to a validated copy; the anchors of the dataset are
    kept unless new ones are given.
    """
    if isinstance(ard, ARDDataset):
        return ard.with_options(
            known_sizes=known_sizes,
            known_indices=known_indices,
            population_total=population_total,
            **kwargs
        )
    if known_sizes is None or known_indices is None or population_total is None:
        raise ARDValidationError(
            "known_sizes, known_indices and population_total are required when ard is not an ARDDataset"
        )
    return ARDDataset(
        ard=ard,
        known_sizes=known_sizes,
        known_indices=known_indices,
        population_total=population_total,
        **{k: v for k, v in kwargs.items() if v is not None}
    )
