"""
MCMC chain infrastructure

Shared pieces of the hand-written samplers:

* seeding and execution of independent chains (sequentially or in a
  process pool, with identical results either way),
* the Metropolis accept step and per-block proposal-scale adaptation,
* the diagnostics and fit containers returned to callers.
"""

from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import logging

import numpy as np
import pandas as pd
import xarray as xr

from .data import ARDDataset
from .errors import ChainExecutionError
from .execution_config import parallel_chains_enabled

logger = logging.getLogger(__name__)


# ============================================================================
# CHAIN EXECUTION
# ============================================================================

@dataclass(frozen=True)
class ChainTask:
    """Everything one chain needs. The payload is read-only sampler input."""
    chain_index: int
    seed: np.random.SeedSequence
    payload: Any


def spawn_seeds(seed: Optional[int], n_chains: int) -> List[np.random.SeedSequence]:
    """One independent seed sequence per chain, derived from a single root seed."""
    return np.random.SeedSequence(seed).spawn(n_chains)


def run_chains(
    worker: Callable[[ChainTask], Any],
    tasks: Sequence[ChainTask],
    cores: int = 1,
    parallel: Optional[bool] = None,
) -> List[Any]:
    """
    Run one worker call per chain and return the results in chain order.

    Chains only share the read-only payload, so running them in a process
    pool or one after another gives the same draws. The call returns after
    every chain has finished.

    Args:
        worker: Module-level function taking a ChainTask (must be picklable)
        tasks: One task per chain
        cores: Maximum number of worker processes
        parallel: Override for the process-wide execution mode

    Returns:
        List of worker results indexed by chain

    Raises:
        ChainExecutionError: If any chain raised, after all chains completed
    """
    if parallel is None:
        parallel = parallel_chains_enabled()
    n_chains = len(tasks)
    results: Dict[int, Any] = {}
    failures: Dict[int, BaseException] = {}

    if parallel and cores > 1 and n_chains > 1:
        n_workers = min(cores, n_chains)
        logger.info(f"Running {n_chains} chains in parallel on {n_workers} worker processes")
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            future_to_index = {
                executor.submit(worker, task): task.chain_index
                for task in tasks
            }
            for future in as_completed(future_to_index):
                i = future_to_index[future]
                try:
                    results[i] = future.result()
                    logger.info(f"Chain {i + 1}/{n_chains} completed")
                except Exception as e:
                    logger.error(f"Chain {i + 1}/{n_chains} failed: {e}")
                    failures[i] = e
    else:
        logger.info(f"Running {n_chains} chain(s) sequentially")
        for task in tasks:
            i = task.chain_index
            try:
                results[i] = worker(task)
                logger.info(f"Chain {i + 1}/{n_chains} completed")
            except Exception as e:
                logger.error(f"Chain {i + 1}/{n_chains} failed: {e}")
                failures[i] = e

    if failures:
        first = min(failures)
        raise ChainExecutionError(
            f"{len(failures)} of {n_chains} chain(s) failed; first failure in chain {first + 1}: {failures[first]}"
        ) from failures[first]

    return [results[task.chain_index] for task in tasks]


# ============================================================================
# METROPOLIS BUILDING BLOCKS
# ============================================================================

def metropolis_accept(log_ratio: np.ndarray, rng: np.random.Generator) -> Tuple[np.ndarray, int]:
    """
    Vectorised Metropolis accept step.

    Non-finite ratios (NaN from overflow, or an out-of-support proposal at
    -inf) are rejected. NaN and +inf ratios are counted as numeric
    instabilities.

    Args:
        log_ratio: Log posterior ratio(s) of proposal over current state
        rng: Chain-local generator (one uniform is always consumed per entry)

    Returns:
        Tuple of (boolean accept mask, number of instabilities)
    """
    log_ratio = np.asarray(log_ratio, dtype=float)
    u = rng.random(log_ratio.shape)
    unstable = np.isnan(log_ratio) | np.isposinf(log_ratio)
    finite = np.isfinite(log_ratio)
    with np.errstate(divide='ignore'):
        accept = finite & (np.log(u) < np.minimum(np.where(finite, log_ratio, 0.0), 0.0))
    return accept, int(unstable.sum())


class BlockTuner:
    """
    Per-parameter random-walk scales for one parameter block.

    During warmup the scales are nudged every ``interval`` iterations towards
    ``target`` acceptance; afterwards they stay fixed and acceptance is
    counted for reporting.
    """

    def __init__(self, name: str, initial_scale, size: int, target: float = 0.44, interval: int = 50):
        self.name = name
        self.scale = np.full(size, float(initial_scale)) if np.isscalar(initial_scale) \
            else np.array(initial_scale, dtype=float)
        self.target = target
        self.interval = interval
        self._window_accepts = np.zeros(size)
        self._window_n = 0
        self.accepted = np.zeros(size)
        self.proposed = 0

    def record(self, accepted: np.ndarray, warmup: bool) -> None:
        accepted = np.asarray(accepted, dtype=float)
        if warmup:
            self._window_accepts += accepted
            self._window_n += 1
            if self._window_n >= self.interval:
                rate = self._window_accepts / self._window_n
                self.scale *= np.clip(np.exp(3.0 * (rate - self.target)), 0.5, 2.0)
                logger.debug(f"Block {self.name}: window acceptance {rate.mean():.3f}, "
                             f"mean scale {self.scale.mean():.4f}")
                self._window_accepts[:] = 0
                self._window_n = 0
        else:
            self.accepted += accepted
            self.proposed += 1

    @property
    def acceptance_rate(self) -> float:
        """Mean post-warmup acceptance over the block (NaN before any post-warmup step)."""
        if self.proposed == 0:
            return float('nan')
        return float(self.accepted.sum() / (self.proposed * len(self.accepted)))

    @property
    def parameter_acceptance_rates(self) -> np.ndarray:
        if self.proposed == 0:
            return np.full(len(self.accepted), np.nan)
        return self.accepted / self.proposed


def log_progress(label: str, chain_index: int, iteration: int, total: int, warmup: int, refresh: int) -> None:
    if refresh > 0 and ((iteration + 1) % refresh == 0 or iteration + 1 == total):
        phase = "warmup" if iteration < warmup else "sampling"
        logger.info(f"{label} chain {chain_index + 1}: iteration {iteration + 1}/{total} [{phase}]")


# ============================================================================
# RESULT CONTAINERS
# ============================================================================

@dataclass(frozen=True)
class SamplerDiagnostics:
    """
    Convergence material for external checking. Nothing here is adjudicated.

    Attributes:
        acceptance_rates: block -> (n_chains,) post-warmup acceptance rates
        jump_scales: block -> (n_chains, n_params) final proposal scales
        n_instabilities: (n_chains,) count of rejected non-finite / non-PD proposals
        log_likelihood: (n_chains, n_draws) log-likelihood trace
        scaling_shift: (n_chains, n_draws) identifiability constant per draw
        warmup: Warmup iterations per chain
        iterations: Total iterations per chain
    """
    acceptance_rates: Dict[str, np.ndarray]
    jump_scales: Dict[str, np.ndarray]
    n_instabilities: np.ndarray
    log_likelihood: np.ndarray
    scaling_shift: np.ndarray
    warmup: int
    iterations: int

    def acceptance_table(self) -> pd.DataFrame:
        records = []
        for block, rates in self.acceptance_rates.items():
            for chain, rate in enumerate(rates):
                records.append({'chain': chain, 'block': block, 'acceptance_rate': float(rate)})
        return pd.DataFrame(records, columns=['chain', 'block', 'acceptance_rate'])


def stack_chain_arrays(chain_results: List[Dict[str, Any]], key: str) -> Optional[np.ndarray]:
    """Stack one array per chain into (n_chains, n_draws, ...), or None if absent."""
    values = [result[key] for result in chain_results]
    if any(v is None for v in values):
        return None
    stacked = np.stack(values, axis=0)
    stacked.setflags(write=False)
    return stacked


def collect_diagnostics(
    chain_results: List[Dict[str, Any]],
    shift: np.ndarray,
    warmup: int,
    iterations: int,
) -> SamplerDiagnostics:
    blocks = chain_results[0]['acceptance'].keys()
    return SamplerDiagnostics(
        acceptance_rates={b: np.array([r['acceptance'][b] for r in chain_results]) for b in blocks},
        jump_scales={b: np.stack([r['jump_scales'][b] for r in chain_results]) for b in blocks},
        n_instabilities=np.array([r['n_instabilities'] for r in chain_results]),
        log_likelihood=np.stack([r['log_likelihood'] for r in chain_results]),
        scaling_shift=shift,
        warmup=warmup,
        iterations=iterations,
    )


@dataclass(frozen=True)
class MCMCFit:
    """
    Posterior draws of a Bayesian ARD model.

    ``draws`` maps parameter names to arrays shaped (n_chains, n_draws, ...);
    parameters of absent covariates map to None.
    """
    dataset: ARDDataset
    draws: Dict[str, Optional[np.ndarray]]
    diagnostics: SamplerDiagnostics
    scaling: str
    dims: Dict[str, Tuple[str, ...]] = field(default_factory=dict, repr=False)

    @property
    def n_chains(self) -> int:
        return self.draws['sizes'].shape[0]

    @property
    def n_draws(self) -> int:
        return self.draws['sizes'].shape[1]

    def chain_draws(self, name: str) -> Optional[np.ndarray]:
        """Per-chain draws of a parameter, shaped (n_chains, n_draws, ...)."""
        if name not in self.draws:
            raise KeyError(f"Unknown parameter '{name}'. Available: {sorted(self.draws)}")
        return self.draws[name]

    def pooled(self, name: str) -> Optional[np.ndarray]:
        """Draws of a parameter with chains concatenated, shaped (n_chains * n_draws, ...)."""
        values = self.chain_draws(name)
        if values is None:
            return None
        return values.reshape((-1,) + values.shape[2:])

    @property
    def sizes(self) -> np.ndarray:
        return self.pooled('sizes')

    @property
    def degrees(self) -> np.ndarray:
        return self.pooled('degrees')

    def to_xarray(self) -> xr.Dataset:
        """Draws as an xarray Dataset with chain/draw dimensions."""
        coords = {
            'chain': np.arange(self.n_chains),
            'draw': np.arange(self.n_draws),
            'subpopulation': self.dataset.column_labels(),
            'respondent': self.dataset.row_labels(),
        }
        data_vars = {}
        for name, values in self.draws.items():
            if values is None:
                continue
            dims = self.dims.get(name, ('chain', 'draw') + tuple(
                f"{name}_dim_{d}" for d in range(values.ndim - 2)
            ))
            data_vars[name] = (dims, np.asarray(values))
        dataset = xr.Dataset(data_vars=data_vars, coords=coords)
        dataset.attrs['scaling'] = self.scaling
        dataset.attrs['warmup'] = self.diagnostics.warmup
        dataset.attrs['iterations'] = self.diagnostics.iterations
        return dataset
