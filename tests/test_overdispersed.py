"""
Tests for the overdispersed (negative binomial) sampler.
"""

import numpy as np
import pytest

from ard_nsum.config import OverdispersedConfig
from ard_nsum.errors import ARDValidationError
from ard_nsum.execution_config import set_parallel_chains
from ard_nsum.overdispersed import OverdispersedFit, fit_overdispersed, negative_binomial_loglik

SHORT_RUN = dict(warmup=400, iterations=1000, seed=2024)


@pytest.fixture(scope="module")
def overdispersed_fit(negative_binomial_ard):
    return fit_overdispersed(
        negative_binomial_ard.ard,
        negative_binomial_ard.known_sizes,
        negative_binomial_ard.known_indices,
        negative_binomial_ard.population_total,
        scaling="all",
        **SHORT_RUN,
    )


class TestLikelihood:

    def test_matches_scipy_negative_binomial(self):
        """Up to the dropped -log(y!) term the density is scipy's nbinom."""
        from scipy.special import gammaln
        from scipy.stats import nbinom

        y = np.array([0, 3, 12])
        mean, omega = 4.0, 2.5
        expected = nbinom.logpmf(y, mean / (omega - 1.0), 1.0 / omega) + gammaln(y + 1)
        np.testing.assert_allclose(negative_binomial_loglik(y, np.log(mean), omega), expected)


class TestFitOutput:

    def test_shapes(self, overdispersed_fit, negative_binomial_ard):
        n_draws = SHORT_RUN['iterations'] - SHORT_RUN['warmup']
        assert isinstance(overdispersed_fit, OverdispersedFit)
        assert overdispersed_fit.sizes.shape == (n_draws, 5)
        assert overdispersed_fit.degrees.shape == (n_draws, negative_binomial_ard.ard.shape[0])
        assert overdispersed_fit.omega.shape == (n_draws, 5)
        assert overdispersed_fit.draws['mu_alpha'].shape == (1, n_draws)

    def test_omega_above_one(self, overdispersed_fit):
        assert np.all(overdispersed_fit.omega > 1.0)
        assert np.all(overdispersed_fit.degrees > 0)

    def test_acceptance_rates_in_unit_interval(self, overdispersed_fit):
        table = overdispersed_fit.diagnostics.acceptance_table()
        assert set(table['block']) == {'alpha', 'beta', 'omega'}
        assert table['acceptance_rate'].between(0, 1).all()

    def test_known_columns_anchored_on_average(self, overdispersed_fit, negative_binomial_ard):
        """Under 'all' scaling the log-ratios on the known columns average to zero per draw."""
        known = negative_binomial_ard.known_indices
        log_ratio = np.log(overdispersed_fit.sizes[:, known] / negative_binomial_ard.known_sizes)
        np.testing.assert_allclose(log_ratio.mean(axis=1), 0.0, atol=1e-10)

    def test_to_xarray(self, overdispersed_fit):
        dataset = overdispersed_fit.to_xarray()
        assert dataset['sizes'].dims == ('chain', 'draw', 'subpopulation')
        assert dataset['omega'].sizes['subpopulation'] == 5
        assert dataset.attrs['scaling'] == 'all'


class TestRecovery:

    def test_known_sizes_recovered(self, overdispersed_fit, negative_binomial_ard):
        """Posterior means of the anchor sizes sit near the supplied sizes."""
        means = overdispersed_fit.sizes.mean(axis=0)[negative_binomial_ard.known_indices]
        np.testing.assert_allclose(means, negative_binomial_ard.known_sizes, rtol=0.25)

    def test_unknown_sizes_close_to_truth(self, overdispersed_fit, negative_binomial_ard):
        estimates = np.median(overdispersed_fit.sizes, axis=0)
        for k in (3, 4):
            truth = negative_binomial_ard.sizes[k]
            assert abs(estimates[k] - truth) / truth < 0.3

    @pytest.mark.slow
    @pytest.mark.parametrize("scaling", ["weighted", "group"])
    def test_recovery_in_other_scaling_modes(self, negative_binomial_ard, scaling):
        fit = fit_overdispersed(
            negative_binomial_ard.dataset(group1_index=[0, 1], group2_index=[2]),
            scaling=scaling,
            **SHORT_RUN,
        )
        assert fit.scaling == scaling
        known_means = fit.sizes.mean(axis=0)[negative_binomial_ard.known_indices]
        np.testing.assert_allclose(known_means, negative_binomial_ard.known_sizes, rtol=0.25)
        estimates = np.median(fit.sizes, axis=0)
        for k in (3, 4):
            truth = negative_binomial_ard.sizes[k]
            assert abs(estimates[k] - truth) / truth < 0.3


class TestOptions:

    def test_random_init(self, negative_binomial_ard):
        fit = fit_overdispersed(
            negative_binomial_ard.dataset(), init="random", warmup=50, iterations=100, seed=3
        )
        assert fit.sizes.shape == (50, 5)
        assert np.all(np.isfinite(fit.sizes))

    def test_config_object_with_overrides(self, negative_binomial_ard):
        config = OverdispersedConfig(warmup=20, iterations=40, seed=1)
        fit = fit_overdispersed(negative_binomial_ard.dataset(), config=config, iterations=60)
        assert fit.n_draws == 40

    def test_seed_reproducibility(self, negative_binomial_ard):
        first = fit_overdispersed(negative_binomial_ard.dataset(), warmup=20, iterations=50, seed=9)
        second = fit_overdispersed(negative_binomial_ard.dataset(), warmup=20, iterations=50, seed=9)
        np.testing.assert_array_equal(first.sizes, second.sizes)

    def test_parallel_matches_sequential(self, negative_binomial_ard):
        options = dict(warmup=20, iterations=50, seed=5, chains=2, cores=2)
        set_parallel_chains(False)
        try:
            sequential = fit_overdispersed(negative_binomial_ard.dataset(), **options)
        finally:
            set_parallel_chains(True)
        parallel = fit_overdispersed(negative_binomial_ard.dataset(), **options)
        assert parallel.n_chains == 2
        np.testing.assert_array_equal(sequential.draws['sizes'], parallel.draws['sizes'])


class TestValidation:

    @pytest.mark.parametrize("options, message", [
        (dict(warmup=100, iterations=100), "warmup"),
        (dict(init="zeros"), "init"),
        (dict(adapt_every=10), "Unknown"),
        (dict(scaling="median"), "scaling"),
    ])
    def test_bad_options_fail_before_sampling(self, small_ard, options, message):
        with pytest.raises(ARDValidationError, match=message):
            fit_overdispersed(**small_ard, **options)

    def test_group_scaling_without_groups(self, small_ard):
        with pytest.raises(ARDValidationError, match="Group scaling requires"):
            fit_overdispersed(**small_ard, scaling="group", warmup=5, iterations=10)
