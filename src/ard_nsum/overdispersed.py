"""
Overdispersed Network Scale-Up Model

Gibbs-Metropolis sampler for the negative binomial model

    y_ik ~ NegBin(mean = exp(alpha_i + beta_k), variance = omega_k * mean)
    alpha_i ~ N(mu_alpha, sigma_alpha^2),  beta_k ~ N(mu_beta, sigma_beta^2)
    1 / omega_k ~ Uniform(0, 1)

The hierarchical means and variances are drawn from their conjugate full
conditionals; alpha, beta and omega are updated with random-walk Metropolis
steps, vectorised within each block because the components of a block are
conditionally independent.
"""

from typing import Any, Dict, Optional
import logging

import numpy as np
from scipy.special import gammaln

from .chains import (
    BlockTuner, ChainTask, MCMCFit, collect_diagnostics, log_progress,
    metropolis_accept, run_chains, spawn_seeds, stack_chain_arrays,
)
from .config import OverdispersedConfig, resolve_options
from .data import coerce_dataset
from .scaling import resolve_scaling_mode, scale_draws
from .two_stage import fit_two_stage

logger = logging.getLogger(__name__)

OVERDISPERSED_DIMS = {
    'sizes': ('chain', 'draw', 'subpopulation'),
    'degrees': ('chain', 'draw', 'respondent'),
    'omega': ('chain', 'draw', 'subpopulation'),
    'mu_alpha': ('chain', 'draw'),
    'sigma_alpha': ('chain', 'draw'),
    'mu_beta': ('chain', 'draw'),
    'sigma_beta': ('chain', 'draw'),
}


class OverdispersedFit(MCMCFit):
    """Posterior draws of the overdispersed model."""

    @property
    def omega(self) -> np.ndarray:
        return self.pooled('omega')


def negative_binomial_loglik(y: np.ndarray, log_mean: np.ndarray, omega: np.ndarray) -> np.ndarray:
    """
    Elementwise negative binomial log-pmf, dropping the constant -log(y!).

    Parameterised by the mean and the overdispersion omega > 1 (variance
    omega * mean): size xi = mean / (omega - 1), success probability 1 / omega.
    """
    with np.errstate(over='ignore', invalid='ignore', divide='ignore'):
        xi = np.exp(log_mean) / (omega - 1.0)
        return (
            gammaln(y + xi) - gammaln(xi)
            - xi * np.log(omega)
            + y * (np.log(omega - 1.0) - np.log(omega))
        )


def _draw_inverse_gamma(rng: np.random.Generator, shape: float, rate: float) -> float:
    return rate / rng.gamma(shape)


def _run_overdispersed_chain(task: ChainTask) -> Dict[str, Any]:
    """Run one chain. Returns raw (unscaled) post-warmup draws and diagnostics."""
    payload = task.payload
    cfg: OverdispersedConfig = payload['config']
    rng = np.random.default_rng(task.seed)

    y = payload['ard']
    known = payload['known_indices']
    log_known_prev = payload['log_known_prevalences']
    n_resp, n_sub = y.shape
    a0, b0 = cfg.prior_sigma_shape, cfg.prior_sigma_rate

    if cfg.init == 'mle':
        alpha = payload['alpha_init'] + rng.normal(0.0, 0.1, n_resp)
        beta = payload['beta_init'] + rng.normal(0.0, 0.1, n_sub)
        omega = cfg.omega_init * np.exp(rng.normal(0.0, 0.1, n_sub))
    else:
        alpha = np.log(y.sum(axis=1).mean() + 0.5) + rng.normal(0.0, 1.0, n_resp)
        beta = rng.normal(-5.0, 1.0, n_sub)
        omega = rng.uniform(5.0, 50.0, n_sub)
    omega = np.maximum(omega, 1.0 + 1e-6)

    # Anchor the non-identified common shift on the known subpopulations
    shift = np.mean(beta[known] - log_known_prev)
    alpha, beta = alpha + shift, beta - shift
    mu_alpha, sigma_alpha = alpha.mean(), max(alpha.std(), 0.1)
    mu_beta, sigma_beta = beta.mean(), max(beta.std(), 0.1)

    tuners = {
        'alpha': BlockTuner('alpha', cfg.alpha_tune, n_resp, cfg.target_accept, cfg.adapt_interval),
        'beta': BlockTuner('beta', cfg.beta_tune, n_sub, cfg.target_accept, cfg.adapt_interval),
        'omega': BlockTuner('omega', cfg.omega_tune, n_sub, cfg.target_accept, cfg.adapt_interval),
    }

    n_keep = cfg.iterations - cfg.warmup
    out = {
        'alpha': np.empty((n_keep, n_resp)),
        'beta': np.empty((n_keep, n_sub)),
        'omega': np.empty((n_keep, n_sub)),
        'mu_alpha': np.empty(n_keep),
        'sigma_alpha': np.empty(n_keep),
        'mu_beta': np.empty(n_keep),
        'sigma_beta': np.empty(n_keep),
        'log_likelihood': np.empty(n_keep),
    }
    n_instabilities = 0

    ll = negative_binomial_loglik(y, alpha[:, None] + beta[None, :], omega[None, :])

    for t in range(cfg.iterations):
        in_warmup = t < cfg.warmup

        # alpha_i | beta, omega, mu_alpha, sigma_alpha
        proposal = alpha + tuners['alpha'].scale * rng.standard_normal(n_resp)
        ll_prop = negative_binomial_loglik(y, proposal[:, None] + beta[None, :], omega[None, :])
        log_ratio = (
            ll_prop.sum(axis=1) - ll.sum(axis=1)
            - ((proposal - mu_alpha) ** 2 - (alpha - mu_alpha) ** 2) / (2 * sigma_alpha ** 2)
        )
        accept, n_bad = metropolis_accept(log_ratio, rng)
        n_instabilities += n_bad
        alpha = np.where(accept, proposal, alpha)
        ll[accept] = ll_prop[accept]
        tuners['alpha'].record(accept, in_warmup)

        mu_alpha = rng.normal(alpha.mean(), sigma_alpha / np.sqrt(n_resp))
        sigma_alpha = np.sqrt(_draw_inverse_gamma(
            rng, a0 + n_resp / 2, b0 + 0.5 * np.sum((alpha - mu_alpha) ** 2)
        ))

        # beta_k | alpha, omega, mu_beta, sigma_beta
        proposal = beta + tuners['beta'].scale * rng.standard_normal(n_sub)
        ll_prop = negative_binomial_loglik(y, alpha[:, None] + proposal[None, :], omega[None, :])
        log_ratio = (
            ll_prop.sum(axis=0) - ll.sum(axis=0)
            - ((proposal - mu_beta) ** 2 - (beta - mu_beta) ** 2) / (2 * sigma_beta ** 2)
        )
        accept, n_bad = metropolis_accept(log_ratio, rng)
        n_instabilities += n_bad
        beta = np.where(accept, proposal, beta)
        ll[:, accept] = ll_prop[:, accept]
        tuners['beta'].record(accept, in_warmup)

        mu_beta = rng.normal(beta.mean(), sigma_beta / np.sqrt(n_sub))
        sigma_beta = np.sqrt(_draw_inverse_gamma(
            rng, a0 + n_sub / 2, b0 + 0.5 * np.sum((beta - mu_beta) ** 2)
        ))

        # omega_k | alpha, beta; prior density omega^-2 on (1, inf)
        proposal = omega + tuners['omega'].scale * rng.standard_normal(n_sub)
        in_support = proposal > 1.0
        safe_proposal = np.where(in_support, proposal, omega)
        ll_prop = negative_binomial_loglik(y, alpha[:, None] + beta[None, :], safe_proposal[None, :])
        with np.errstate(invalid='ignore'):
            log_ratio = np.where(
                in_support,
                ll_prop.sum(axis=0) - ll.sum(axis=0) - 2.0 * (np.log(safe_proposal) - np.log(omega)),
                -np.inf,
            )
        accept, n_bad = metropolis_accept(log_ratio, rng)
        n_instabilities += n_bad
        omega = np.where(accept, proposal, omega)
        ll[:, accept] = ll_prop[:, accept]
        tuners['omega'].record(accept, in_warmup)

        # Re-anchor: the posterior is flat along (alpha + c, beta - c, mu_alpha + c, mu_beta - c)
        shift = np.mean(beta[known] - log_known_prev)
        alpha, beta = alpha + shift, beta - shift
        mu_alpha, mu_beta = mu_alpha + shift, mu_beta - shift

        if not in_warmup:
            s = t - cfg.warmup
            out['alpha'][s] = alpha
            out['beta'][s] = beta
            out['omega'][s] = omega
            out['mu_alpha'][s] = mu_alpha
            out['sigma_alpha'][s] = sigma_alpha
            out['mu_beta'][s] = mu_beta
            out['sigma_beta'][s] = sigma_beta
            out['log_likelihood'][s] = ll.sum()

        if cfg.verbose:
            log_progress("Overdispersed", task.chain_index, t, cfg.iterations, cfg.warmup, cfg.refresh)

    out['acceptance'] = {name: tuner.acceptance_rate for name, tuner in tuners.items()}
    out['jump_scales'] = {name: tuner.scale.copy() for name, tuner in tuners.items()}
    out['n_instabilities'] = n_instabilities
    return out


def fit_overdispersed(
    ard,
    known_sizes=None,
    known_indices=None,
    population_total: Optional[float] = None,
    group1_index=None,
    group2_index=None,
    group2_secondary_index=None,
    warmup: Optional[int] = None,
    iterations: Optional[int] = None,
    verbose: Optional[bool] = None,
    init: Optional[str] = None,
    config: Optional[OverdispersedConfig] = None,
    **options
) -> OverdispersedFit:
    """
    Fit the overdispersed model with the Gibbs-Metropolis sampler.

    Args:
        ard: (n_respondents, n_subpopulations) count matrix or an ARDDataset
        known_sizes: Sizes of the known subpopulations
        known_indices: Column indices of the known subpopulations
        population_total: Total population size
        group1_index, group2_index, group2_secondary_index: Optional known
            columns used for group-based scaling
        warmup: Warmup iterations per chain
        iterations: Total iterations per chain (draws kept = iterations - warmup)
        verbose: Log progress every ``refresh`` iterations
        init: "mle" (two-stage MLE start) or "random"
        config: Base OverdispersedConfig; keyword arguments override its fields
        **options: Any other OverdispersedConfig field (chains, cores, seed, scaling, ...)

    Returns:
        OverdispersedFit with scaled draws of sizes, degrees, omega and the
        hyperparameters, plus sampler diagnostics

    Raises:
        ARDValidationError: On malformed input, before any chain starts
    """
    dataset = coerce_dataset(
        ard, known_sizes, known_indices, population_total,
        group1_index=group1_index,
        group2_index=group2_index,
        group2_secondary_index=group2_secondary_index,
    )
    cfg = resolve_options(
        OverdispersedConfig, config,
        warmup=warmup, iterations=iterations, verbose=verbose, init=init, **options
    )
    scaling = resolve_scaling_mode(cfg.scaling, dataset)

    payload = {
        'ard': dataset.ard,
        'known_indices': dataset.known_indices,
        'log_known_prevalences': np.log(dataset.known_prevalences),
        'config': cfg,
    }
    if cfg.init == 'mle':
        start = fit_two_stage(dataset, model='mle')
        payload['alpha_init'] = np.log(np.maximum(start.degrees, 1.0))
        payload['beta_init'] = np.log(np.maximum(start.sizes, 1.0) / dataset.population_total)

    logger.info(
        f"Fitting overdispersed model: {dataset.n_respondents} respondents, "
        f"{dataset.n_subpopulations} subpopulations, {cfg.chains} chain(s), "
        f"{cfg.iterations} iterations ({cfg.warmup} warmup), scaling={scaling.value}"
    )

    tasks = [
        ChainTask(chain_index=i, seed=seed, payload=payload)
        for i, seed in enumerate(spawn_seeds(cfg.seed, cfg.chains))
    ]
    chain_results = run_chains(_run_overdispersed_chain, tasks, cores=cfg.cores)

    shifts = []
    for result in chain_results:
        scaled = scale_draws(result['alpha'], result['beta'], dataset, scaling)
        result['degrees'] = np.exp(scaled.log_degrees)
        result['sizes'] = dataset.population_total * np.exp(scaled.log_prevalences)
        result['mu_alpha'] = result['mu_alpha'] + scaled.shift
        result['mu_beta'] = result['mu_beta'] - scaled.shift
        shifts.append(scaled.shift)

    draws = {name: stack_chain_arrays(chain_results, name) for name in OVERDISPERSED_DIMS}
    diagnostics = collect_diagnostics(chain_results, np.stack(shifts), cfg.warmup, cfg.iterations)

    for block, rates in diagnostics.acceptance_rates.items():
        logger.info(f"Overdispersed {block} acceptance by chain: {np.round(rates, 3).tolist()}")

    return OverdispersedFit(
        dataset=dataset,
        draws=draws,
        diagnostics=diagnostics,
        scaling=scaling.value,
        dims=OVERDISPERSED_DIMS,
    )
