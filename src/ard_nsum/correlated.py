"""
Correlated Network Scale-Up Model

Metropolis-within-Gibbs sampler for the Poisson log-normal model

    y_ik ~ Poisson(exp(eta_ik))
    eta_ik = delta_i + rho_k + Z_global[i] . beta_global
             + Z_subpop[i] . beta_subpop[k] + alpha_k * X[i, k] + b_ik
    b_i ~ MVN(0, Sigma)

In the ``correlated`` variant Sigma is a full covariance matrix with an
inverse-Wishart prior; in the ``uncorrelated`` variant it is diagonal with
inverse-gamma variances. Each covariate block is optional and contributes
nothing to eta when its data are absent. Besides Sigma, every kept draw
records the cross-covariance of the random effects over respondents
(b^T b / n), the statistic the Sigma update conditions on.
"""

from typing import Any, Dict, Optional
import logging

import numpy as np
from scipy.stats import invwishart

from .chains import (
    BlockTuner, ChainTask, MCMCFit, collect_diagnostics, log_progress,
    metropolis_accept, run_chains, spawn_seeds, stack_chain_arrays,
)
from .config import CorrelatedConfig, resolve_options
from .data import coerce_dataset
from .scaling import resolve_scaling_mode, scale_draws

logger = logging.getLogger(__name__)

CORRELATED_DIMS = {
    'sizes': ('chain', 'draw', 'subpopulation'),
    'degrees': ('chain', 'draw', 'respondent'),
    'alpha': ('chain', 'draw', 'subpopulation'),
    'beta_global': ('chain', 'draw', 'global_covariate'),
    'beta_subpop': ('chain', 'draw', 'subpopulation', 'subpop_covariate'),
    'sigma': ('chain', 'draw', 'subpopulation', 'subpopulation_other'),
    'b_covariance': ('chain', 'draw', 'subpopulation', 'subpopulation_other'),
    'correlation': ('chain', 'draw', 'subpopulation', 'subpopulation_other'),
    'mu_rho': ('chain', 'draw'),
    'sigma_rho': ('chain', 'draw'),
    'sigma_delta': ('chain', 'draw'),
}


class CorrelatedFit(MCMCFit):
    """Posterior draws of the correlated / uncorrelated Poisson log-normal model."""

    @property
    def alpha(self) -> Optional[np.ndarray]:
        return self.pooled('alpha')

    @property
    def beta_global(self) -> Optional[np.ndarray]:
        return self.pooled('beta_global')

    @property
    def beta_subpop(self) -> Optional[np.ndarray]:
        return self.pooled('beta_subpop')

    @property
    def sigma(self) -> np.ndarray:
        return self.pooled('sigma')

    @property
    def correlation(self) -> np.ndarray:
        return self.pooled('correlation')

    @property
    def b_covariance(self) -> np.ndarray:
        """Cross-covariance of the random effects over respondents, b^T b / n, per draw."""
        return self.pooled('b_covariance')


def poisson_loglik(y: np.ndarray, eta: np.ndarray) -> np.ndarray:
    """Elementwise Poisson log-pmf on the log scale, dropping -log(y!)."""
    with np.errstate(over='ignore', invalid='ignore'):
        return y * eta - np.exp(eta)


def covariance_to_correlation(sigma: np.ndarray) -> np.ndarray:
    sd = np.sqrt(np.diagonal(sigma, axis1=-2, axis2=-1))
    return sigma / (sd[..., :, None] * sd[..., None, :])


def _draw_inverse_gamma(rng: np.random.Generator, shape, rate):
    return rate / rng.gamma(shape, size=np.shape(rate) or None)


def _draw_covariance(rng, b, prior, model):
    """Conjugate draw of Sigma given the random effects, as (problem, draw); problem is None when usable."""
    n_resp, n_sub = b.shape
    if model == 'uncorrelated':
        return None, np.diag(_draw_inverse_gamma(
            rng, prior['shape'] + n_resp / 2, prior['rate'] + 0.5 * np.sum(b ** 2, axis=0)
        ))

    scale = np.eye(n_sub) + b.T @ b
    draw = np.atleast_2d(invwishart.rvs(
        df=prior['nu0'] + n_resp, scale=scale, random_state=rng
    ))
    if not np.all(np.isfinite(draw)):
        return "non-finite", None
    try:
        np.linalg.cholesky(draw)
    except np.linalg.LinAlgError:
        return "not positive-definite", None
    return None, draw


def _run_correlated_chain(task: ChainTask) -> Dict[str, Any]:
    """Run one chain. Returns raw (unscaled) post-warmup draws and diagnostics."""
    payload = task.payload
    cfg: CorrelatedConfig = payload['config']
    rng = np.random.default_rng(task.seed)

    y = payload['ard']
    x, z_subpop, z_global = payload['x'], payload['z_subpop'], payload['z_global']
    n_resp, n_sub = y.shape
    shape0, rate0 = cfg.prior_variance_shape, cfg.prior_variance_rate
    coef_var = cfg.coef_prior_scale ** 2
    sigma_prior = {'shape': shape0, 'rate': rate0, 'nu0': n_sub + cfg.wishart_df_offset}

    row_level = np.log(y.mean(axis=1) + 0.5)
    delta = row_level - row_level.mean() + rng.normal(0.0, 0.1, n_resp)
    rho = np.log(y.mean(axis=0) + 0.5) + rng.normal(0.0, 0.1, n_sub)
    mu_rho, sigma_rho = rho.mean(), max(rho.std(), 0.5)
    sigma_delta = max(delta.std(), 0.5)
    b = np.zeros((n_resp, n_sub))
    sigma = 0.25 * np.eye(n_sub)
    precision = np.linalg.inv(sigma)

    alpha = np.zeros(n_sub) if x is not None else None
    beta_global = np.zeros(z_global.shape[1]) if z_global is not None else None
    beta_subpop = np.zeros((n_sub, z_subpop.shape[1])) if z_subpop is not None else None

    eta = delta[:, None] + rho[None, :] + b
    ll = poisson_loglik(y, eta)

    def tuner(name, scale, size):
        return BlockTuner(name, scale, size, cfg.target_accept, cfg.adapt_interval)

    tuners = {
        'delta': tuner('delta', cfg.delta_tune, n_resp),
        'rho': tuner('rho', cfg.rho_tune, n_sub),
        'b': tuner('b', cfg.b_tune, n_sub),
    }
    if alpha is not None:
        tuners['alpha'] = tuner('alpha', cfg.coef_tune, n_sub)
    if beta_global is not None:
        tuners['beta_global'] = tuner('beta_global', cfg.coef_tune, len(beta_global))
    if beta_subpop is not None:
        tuners['beta_subpop'] = tuner('beta_subpop', cfg.coef_tune, beta_subpop.size)

    n_keep = cfg.iterations - cfg.warmup
    out = {
        'delta': np.empty((n_keep, n_resp)),
        'rho': np.empty((n_keep, n_sub)),
        'alpha': None if alpha is None else np.empty((n_keep, n_sub)),
        'beta_global': None if beta_global is None else np.empty((n_keep, len(beta_global))),
        'beta_subpop': None if beta_subpop is None else np.empty((n_keep,) + beta_subpop.shape),
        'sigma': np.empty((n_keep, n_sub, n_sub)),
        'b_covariance': np.empty((n_keep, n_sub, n_sub)),
        'mu_rho': np.empty(n_keep),
        'sigma_rho': np.empty(n_keep),
        'sigma_delta': np.empty(n_keep),
        'log_likelihood': np.empty(n_keep),
    }
    n_instabilities = 0
    n_rejected_sigma = 0

    for t in range(cfg.iterations):
        in_warmup = t < cfg.warmup

        # delta_i: per-respondent level
        step = tuners['delta'].scale * rng.standard_normal(n_resp)
        proposal = delta + step
        eta_prop = eta + step[:, None]
        ll_prop = poisson_loglik(y, eta_prop)
        log_ratio = (
            ll_prop.sum(axis=1) - ll.sum(axis=1)
            - (proposal ** 2 - delta ** 2) / (2 * sigma_delta ** 2)
        )
        accept, n_bad = metropolis_accept(log_ratio, rng)
        n_instabilities += n_bad
        delta = np.where(accept, proposal, delta)
        eta[accept], ll[accept] = eta_prop[accept], ll_prop[accept]
        tuners['delta'].record(accept, in_warmup)

        sigma_delta = np.sqrt(_draw_inverse_gamma(rng, shape0 + n_resp / 2, rate0 + 0.5 * np.sum(delta ** 2)))

        # rho_k: per-subpopulation level
        step = tuners['rho'].scale * rng.standard_normal(n_sub)
        proposal = rho + step
        eta_prop = eta + step[None, :]
        ll_prop = poisson_loglik(y, eta_prop)
        log_ratio = (
            ll_prop.sum(axis=0) - ll.sum(axis=0)
            - ((proposal - mu_rho) ** 2 - (rho - mu_rho) ** 2) / (2 * sigma_rho ** 2)
        )
        accept, n_bad = metropolis_accept(log_ratio, rng)
        n_instabilities += n_bad
        rho = np.where(accept, proposal, rho)
        eta[:, accept], ll[:, accept] = eta_prop[:, accept], ll_prop[:, accept]
        tuners['rho'].record(accept, in_warmup)

        mu_rho = rng.normal(rho.mean(), sigma_rho / np.sqrt(n_sub))
        sigma_rho = np.sqrt(_draw_inverse_gamma(rng, shape0 + n_sub / 2, rate0 + 0.5 * np.sum((rho - mu_rho) ** 2)))

        # alpha_k: slope on X[:, k]
        if alpha is not None:
            step = tuners['alpha'].scale * rng.standard_normal(n_sub)
            proposal = alpha + step
            eta_prop = eta + step[None, :] * x
            ll_prop = poisson_loglik(y, eta_prop)
            log_ratio = ll_prop.sum(axis=0) - ll.sum(axis=0) - (proposal ** 2 - alpha ** 2) / (2 * coef_var)
            accept, n_bad = metropolis_accept(log_ratio, rng)
            n_instabilities += n_bad
            alpha = np.where(accept, proposal, alpha)
            eta[:, accept], ll[:, accept] = eta_prop[:, accept], ll_prop[:, accept]
            tuners['alpha'].record(accept, in_warmup)

        # beta_global: one coefficient at a time, each touches every cell
        if beta_global is not None:
            accepted = np.zeros(len(beta_global))
            for j in range(len(beta_global)):
                step = tuners['beta_global'].scale[j] * rng.standard_normal()
                eta_prop = eta + step * z_global[:, j][:, None]
                ll_prop = poisson_loglik(y, eta_prop)
                proposal = beta_global[j] + step
                log_ratio = ll_prop.sum() - ll.sum() - (proposal ** 2 - beta_global[j] ** 2) / (2 * coef_var)
                accept, n_bad = metropolis_accept(np.array([log_ratio]), rng)
                n_instabilities += n_bad
                if accept[0]:
                    beta_global[j] = proposal
                    eta, ll = eta_prop, ll_prop
                    accepted[j] = 1.0
            tuners['beta_global'].record(accepted, in_warmup)

        # beta_subpop: one covariate column at a time, vectorised over subpopulations
        if beta_subpop is not None:
            scales = tuners['beta_subpop'].scale.reshape(beta_subpop.shape)
            accepted = np.zeros(beta_subpop.shape)
            for j in range(beta_subpop.shape[1]):
                step = scales[:, j] * rng.standard_normal(n_sub)
                proposal = beta_subpop[:, j] + step
                eta_prop = eta + z_subpop[:, j][:, None] * step[None, :]
                ll_prop = poisson_loglik(y, eta_prop)
                log_ratio = (
                    ll_prop.sum(axis=0) - ll.sum(axis=0)
                    - (proposal ** 2 - beta_subpop[:, j] ** 2) / (2 * coef_var)
                )
                accept, n_bad = metropolis_accept(log_ratio, rng)
                n_instabilities += n_bad
                beta_subpop[:, j] = np.where(accept, proposal, beta_subpop[:, j])
                eta[:, accept], ll[:, accept] = eta_prop[:, accept], ll_prop[:, accept]
                accepted[:, j] = accept
            tuners['beta_subpop'].record(accepted.ravel(), in_warmup)

        # b[:, k] given b[:, -k]: conditional normal from the precision matrix
        accepted = np.zeros(n_sub)
        for k in range(n_sub):
            cond_var = 1.0 / precision[k, k]
            cond_mean = -cond_var * (b @ precision[:, k] - b[:, k] * precision[k, k])
            step = tuners['b'].scale[k] * rng.standard_normal(n_resp)
            proposal = b[:, k] + step
            eta_col = eta[:, k] + step
            ll_col = poisson_loglik(y[:, k], eta_col)
            log_ratio = (
                ll_col - ll[:, k]
                - ((proposal - cond_mean) ** 2 - (b[:, k] - cond_mean) ** 2) / (2 * cond_var)
            )
            accept, n_bad = metropolis_accept(log_ratio, rng)
            n_instabilities += n_bad
            b[accept, k] = proposal[accept]
            eta[accept, k], ll[accept, k] = eta_col[accept], ll_col[accept]
            accepted[k] = accept.mean()
        tuners['b'].record(accepted, in_warmup)

        # Sigma | b
        problem, draw = _draw_covariance(rng, b, sigma_prior, cfg.model)
        if problem is None:
            sigma = draw
            precision = np.linalg.inv(sigma)
        else:
            n_rejected_sigma += 1
            n_instabilities += 1
            logger.debug(f"Chain {task.chain_index + 1}: rejected covariance draw ({problem})")

        if not in_warmup:
            s = t - cfg.warmup
            out['delta'][s] = delta
            out['rho'][s] = rho
            if alpha is not None:
                out['alpha'][s] = alpha
            if beta_global is not None:
                out['beta_global'][s] = beta_global
            if beta_subpop is not None:
                out['beta_subpop'][s] = beta_subpop
            out['sigma'][s] = sigma
            out['b_covariance'][s] = b.T @ b / n_resp
            out['mu_rho'][s] = mu_rho
            out['sigma_rho'][s] = sigma_rho
            out['sigma_delta'][s] = sigma_delta
            out['log_likelihood'][s] = ll.sum()

        if cfg.verbose:
            log_progress("Correlated", task.chain_index, t, cfg.iterations, cfg.warmup, cfg.refresh)

    out['acceptance'] = {name: bt.acceptance_rate for name, bt in tuners.items()}
    out['jump_scales'] = {name: bt.scale.copy() for name, bt in tuners.items()}
    out['n_instabilities'] = n_instabilities
    out['n_rejected_sigma'] = n_rejected_sigma
    return out


def fit_correlated(
    ard,
    known_sizes=None,
    known_indices=None,
    population_total: Optional[float] = None,
    model: Optional[str] = None,
    scaling: Optional[str] = None,
    x=None,
    z_subpop=None,
    z_global=None,
    chains: Optional[int] = None,
    cores: Optional[int] = None,
    warmup: Optional[int] = None,
    iterations: Optional[int] = None,
    config: Optional[CorrelatedConfig] = None,
    **options
) -> CorrelatedFit:
    """
    Fit the correlated or uncorrelated Poisson log-normal model.

    Args:
        ard: (n_respondents, n_subpopulations) count matrix or an ARDDataset
        known_sizes: Sizes of the known subpopulations
        known_indices: Column indices of the known subpopulations
        population_total: Total population size
        model: "correlated" (full Sigma) or "uncorrelated" (diagonal Sigma)
        scaling: "all", "weighted" or "group"
        x: Optional (n_respondents, n_subpopulations) covariate
        z_subpop: Optional respondent covariates with subpopulation-specific effects
        z_global: Optional respondent covariates with shared effects
        chains: Number of chains
        cores: Maximum worker processes
        warmup: Warmup iterations per chain
        iterations: Total iterations per chain
        config: Base CorrelatedConfig; keyword arguments override its fields
        **options: Any other CorrelatedConfig field (seed, verbose, tuning scales, ...)

    Returns:
        CorrelatedFit with per-chain draws and sampler diagnostics

    Raises:
        ARDValidationError: On malformed input, before any chain starts
    """
    group_options = {
        name: options.pop(name) for name in ('group1_index', 'group2_index', 'group2_secondary_index')
        if name in options
    }
    dataset = coerce_dataset(
        ard, known_sizes, known_indices, population_total,
        x=x, z_subpop=z_subpop, z_global=z_global, **group_options
    )
    cfg = resolve_options(
        CorrelatedConfig, config,
        model=model, scaling=scaling, chains=chains, cores=cores,
        warmup=warmup, iterations=iterations, **options
    )
    scaling_mode = resolve_scaling_mode(cfg.scaling, dataset)

    present = [name for name in ('x', 'z_subpop', 'z_global') if getattr(dataset, name) is not None]
    logger.info(
        f"Fitting {cfg.model} model: {dataset.n_respondents} respondents, "
        f"{dataset.n_subpopulations} subpopulations, covariates={present or 'none'}, "
        f"{cfg.chains} chain(s) on up to {cfg.cores} core(s), scaling={scaling_mode.value}"
    )

    payload = {
        'ard': dataset.ard,
        'x': dataset.x,
        'z_subpop': dataset.z_subpop,
        'z_global': dataset.z_global,
        'config': cfg,
    }
    tasks = [
        ChainTask(chain_index=i, seed=seed, payload=payload)
        for i, seed in enumerate(spawn_seeds(cfg.seed, cfg.chains))
    ]
    chain_results = run_chains(_run_correlated_chain, tasks, cores=cfg.cores)

    shifts = []
    for result in chain_results:
        scaled = scale_draws(result['delta'], result['rho'], dataset, scaling_mode)
        result['degrees'] = np.exp(scaled.log_degrees)
        result['sizes'] = dataset.population_total * np.exp(scaled.log_prevalences)
        result['mu_rho'] = result['mu_rho'] - scaled.shift
        result['correlation'] = covariance_to_correlation(result['sigma'])
        shifts.append(scaled.shift)

    rejected = sum(r['n_rejected_sigma'] for r in chain_results)
    if rejected:
        logger.warning(f"{rejected} covariance draw(s) were rejected as numerically unusable")

    draws = {name: stack_chain_arrays(chain_results, name) for name in CORRELATED_DIMS}
    diagnostics = collect_diagnostics(chain_results, np.stack(shifts), cfg.warmup, cfg.iterations)

    for block, rates in diagnostics.acceptance_rates.items():
        logger.info(f"Correlated {block} acceptance by chain: {np.round(rates, 3).tolist()}")

    return CorrelatedFit(
        dataset=dataset,
        draws=draws,
        diagnostics=diagnostics,
        scaling=scaling_mode.value,
        dims=CORRELATED_DIMS,
    )
