"""
Shared fixtures for the ARD estimation tests.

Synthetic ARD is generated here from the binomial, negative binomial and
Poisson log-normal generative models with known ground truth.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pytest

from ard_nsum.data import ARDDataset
from ard_nsum.execution_config import set_parallel_chains


POPULATION_TOTAL = 1e5
TRUE_SIZES = np.array([2000.0, 3000.0, 4000.0, 5000.0, 2500.0])
KNOWN_INDICES = np.array([0, 1, 2])


@dataclass
class SimulatedARD:
    ard: np.ndarray
    degrees: np.ndarray
    sizes: np.ndarray
    known_indices: np.ndarray
    population_total: float

    @property
    def known_sizes(self) -> np.ndarray:
        return self.sizes[self.known_indices]

    def dataset(self, **kwargs) -> ARDDataset:
        return ARDDataset.from_arrays(
            self.ard, self.known_sizes, self.known_indices, self.population_total, **kwargs
        )


def simulate_ard(
    seed: int,
    n_respondents: int,
    sizes: Sequence[float] = TRUE_SIZES,
    known_indices: Sequence[int] = KNOWN_INDICES,
    population_total: float = POPULATION_TOTAL,
    mean_degree: float = 400.0,
    degree_sd: float = 0.4,
    model: str = "binomial",
    omega: Optional[Sequence[float]] = None,
    random_effect_cov: Optional[np.ndarray] = None,
) -> SimulatedARD:
    """Draw an ARD matrix from one of the generative models."""
    rng = np.random.default_rng(seed)
    sizes = np.asarray(sizes, dtype=float)
    prevalences = sizes / population_total
    degrees = np.exp(rng.normal(np.log(mean_degree), degree_sd, n_respondents))
    mean = degrees[:, None] * prevalences[None, :]

    if model == "binomial":
        ard = rng.binomial(np.round(degrees).astype(int)[:, None], prevalences[None, :])
    elif model == "negative_binomial":
        omega = np.full(len(sizes), 3.0) if omega is None else np.asarray(omega, dtype=float)
        ard = rng.negative_binomial(mean / (omega - 1.0), 1.0 / omega)
    elif model == "poisson_lognormal":
        cov = 0.1 * np.eye(len(sizes)) if random_effect_cov is None else random_effect_cov
        b = rng.multivariate_normal(np.zeros(len(sizes)), cov, size=n_respondents)
        ard = rng.poisson(mean * np.exp(b))
    else:
        raise ValueError(f"Unknown model {model}")

    return SimulatedARD(
        ard=ard.astype(np.int64),
        degrees=degrees,
        sizes=sizes,
        known_indices=np.asarray(known_indices),
        population_total=population_total,
    )


@pytest.fixture
def small_ard():
    """Fixed 5x4 matrix; respondent 1 reports nobody in the known columns 0 and 1."""
    return {
        'ard': np.array([
            [2, 1, 0, 3],
            [0, 0, 5, 1],
            [1, 3, 2, 0],
            [4, 2, 1, 2],
            [3, 0, 0, 1],
        ]),
        'known_sizes': np.array([100.0, 200.0]),
        'known_indices': np.array([0, 1]),
        'population_total': 1000.0,
    }


@pytest.fixture(scope="session")
def binomial_ard():
    """N_i = 50 respondents, N_k = 5 subpopulations, N = 1e5."""
    return simulate_ard(seed=20240501, n_respondents=50)


@pytest.fixture(scope="session")
def negative_binomial_ard():
    return simulate_ard(seed=7, n_respondents=80, model="negative_binomial")


@pytest.fixture(scope="session")
def poisson_lognormal_ard():
    cov = 0.1 * (0.5 * np.eye(5) + 0.5 * np.ones((5, 5)))
    return simulate_ard(seed=11, n_respondents=80, model="poisson_lognormal", random_effect_cov=cov)


@pytest.fixture(scope="session")
def paired_random_effects_ard():
    """Random effects of the two hidden subpopulations correlated at 0.9, all others independent."""
    cov = 0.3 * np.eye(5)
    cov[3, 4] = cov[4, 3] = 0.27
    return simulate_ard(seed=12, n_respondents=120, model="poisson_lognormal", random_effect_cov=cov)


@pytest.fixture(autouse=True)
def restore_chain_execution_mode():
    """Pipelines built in a test may switch chains to sequential; reset afterwards."""
    yield
    set_parallel_chains(True)
