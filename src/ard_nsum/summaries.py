"""
Posterior summaries

Turns per-chain draws into tables of point estimates, equal-tailed credible
intervals and ArviZ convergence diagnostics (rank-normalised split R-hat
and bulk effective sample size). Nothing here judges convergence; the
numbers are reported as is.
"""

from itertools import product
from typing import Dict, List, Optional, Sequence
import logging

import arviz as az
import numpy as np
import pandas as pd

from .chains import MCMCFit
from .errors import ARDValidationError

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = ['parameter', 'mean', 'median', 'sd', 'lower', 'upper', 'rhat', 'ess']


def _as_chain_array(draws) -> np.ndarray:
    draws = np.asarray(draws, dtype=float)
    if draws.ndim == 1:
        draws = draws[None, :]
    if draws.ndim < 2:
        raise ARDValidationError(f"Draws must have shape (chains, draws, ...), got {draws.shape}")
    return draws


def _arviz_diagnostic(draws, diagnostic, **kwargs) -> np.ndarray:
    """
    Apply an ArviZ diagnostic to every trailing component of a (chains, draws, ...) array.

    Components with fewer than four draws per chain or no within-chain
    variation are NaN.
    """
    draws = _as_chain_array(draws)
    flat = draws.reshape(draws.shape[0], draws.shape[1], -1)
    values = np.full(flat.shape[2], np.nan)

    if flat.shape[1] >= 4:
        defined = flat.var(axis=1).mean(axis=0) > 0
        if defined.any():
            dataset = az.convert_to_dataset({'x': flat[:, :, defined]})
            values[defined] = diagnostic(dataset, **kwargs)['x'].values
    return values.reshape(draws.shape[2:])


def split_rhat(draws) -> np.ndarray:
    """Rank-normalised split R-hat (``az.rhat``) for every component of a (chains, draws, ...) array."""
    return _arviz_diagnostic(draws, az.rhat, method='rank')


def effective_sample_size(draws) -> np.ndarray:
    """Bulk effective sample size (``az.ess``) for every component of a (chains, draws, ...) array."""
    return _arviz_diagnostic(draws, az.ess, method='bulk')


def summarize_draws(
    draws,
    names: Optional[Sequence[str]] = None,
    interval: float = 0.80,
) -> pd.DataFrame:
    """
    Summarize draws component by component.

    Args:
        draws: Array shaped (chains, draws) or (chains, draws, ...)
        names: Labels for the flattened trailing components
        interval: Width of the equal-tailed credible interval

    Returns:
        DataFrame with columns parameter, mean, median, sd, lower, upper, rhat, ess
    """
    if not 0 < interval < 1:
        raise ARDValidationError(f"interval must be in (0, 1), got {interval}")

    draws = _as_chain_array(draws)
    n_components = int(np.prod(draws.shape[2:], dtype=int))
    flat = draws.reshape(draws.shape[0], draws.shape[1], n_components)
    pooled = flat.reshape(-1, n_components)

    if names is None:
        names = [f"param_{p}" for p in range(n_components)]
    names = list(names)
    if len(names) != n_components:
        raise ARDValidationError(f"Got {len(names)} names for {n_components} components")

    tail = (1.0 - interval) / 2.0
    lower, median, upper = np.quantile(pooled, [tail, 0.5, 1.0 - tail], axis=0)

    return pd.DataFrame({
        'parameter': names,
        'mean': pooled.mean(axis=0),
        'median': median,
        'sd': pooled.std(axis=0, ddof=1) if pooled.shape[0] > 1 else np.zeros(n_components),
        'lower': lower,
        'upper': upper,
        'rhat': split_rhat(flat),
        'ess': effective_sample_size(flat),
    }, columns=SUMMARY_COLUMNS)


def _component_labels(fit: MCMCFit, name: str, values: np.ndarray) -> List[str]:
    dims = fit.dims.get(name, ())[2:]
    axes = []
    for dim, size in zip(dims, values.shape[2:]):
        if dim.startswith('subpopulation'):
            axes.append(fit.dataset.column_labels())
        elif dim == 'respondent':
            axes.append(fit.dataset.row_labels())
        else:
            axes.append([str(j) for j in range(size)])
    if not axes:
        return [name]
    return [",".join(combo) for combo in product(*axes)]


def summarize_fit(fit: MCMCFit, interval: float = 0.80) -> Dict[str, pd.DataFrame]:
    """
    Summary tables for every parameter of a fit.

    Scalar hyperparameters are collected into one ``hyperparameters`` table;
    every other parameter gets its own table labelled with the dataset's
    subpopulation names or respondent ids. Parameters of absent covariates
    are skipped. The ``sizes`` table also flags the known subpopulations.
    """
    tables = {}
    scalars = []
    for name, values in fit.draws.items():
        if values is None:
            continue
        if values.ndim == 2:
            scalars.append((name, values))
            continue
        tables[name] = summarize_draws(values, _component_labels(fit, name, values), interval)

    if scalars:
        tables['hyperparameters'] = summarize_draws(
            np.stack([v for _, v in scalars], axis=-1), [n for n, _ in scalars], interval
        )

    if 'sizes' in tables:
        dataset = fit.dataset
        known_size = np.full(dataset.n_subpopulations, np.nan)
        known_size[dataset.known_indices] = dataset.known_sizes
        tables['sizes']['known'] = ~np.isnan(known_size)
        tables['sizes']['known_size'] = known_size

    worst = max((t['rhat'].max() for t in tables.values() if t['rhat'].notna().any()), default=np.nan)
    logger.info(f"Summarized {len(tables)} parameter table(s); largest split R-hat {worst:.3f}")
    return tables


def acceptance_table(fit: MCMCFit) -> pd.DataFrame:
    """Post-warmup acceptance rate per chain and parameter block."""
    return fit.diagnostics.acceptance_table()
