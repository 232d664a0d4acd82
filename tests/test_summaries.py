"""
Tests for posterior summaries and convergence diagnostics.
"""

import arviz as az
import numpy as np
import pandas as pd
import pytest

from ard_nsum.chains import MCMCFit, SamplerDiagnostics
from ard_nsum.data import ARDDataset
from ard_nsum.errors import ARDValidationError
from ard_nsum.schemas import AcceptanceRatesSchema, PosteriorSummarySchema
from ard_nsum.summaries import (
    SUMMARY_COLUMNS, acceptance_table, effective_sample_size, split_rhat, summarize_draws, summarize_fit,
)


def _ar1(rng, n, phi):
    x = np.empty(n)
    x[0] = rng.normal()
    for t in range(1, n):
        x[t] = phi * x[t - 1] + rng.normal()
    return x


class TestDiagnostics:

    def test_rhat_near_one_for_iid_chains(self):
        rng = np.random.default_rng(0)
        rhat = split_rhat(rng.normal(size=(4, 1000)))
        assert rhat == pytest.approx(1.0, abs=0.01)

    def test_rhat_large_for_separated_chains(self):
        rng = np.random.default_rng(1)
        draws = rng.normal(size=(2, 500)) + np.array([[0.0], [5.0]])
        assert split_rhat(draws) > 1.5

    def test_rhat_catches_within_chain_drift(self):
        """Splitting chains exposes a trend a single chain would hide."""
        rng = np.random.default_rng(2)
        draws = np.linspace(0, 10, 1000)[None, :] + rng.normal(size=(1, 1000))
        assert split_rhat(draws) > 1.5

    def test_shifted_heavy_tailed_chain_is_flagged(self):
        """Rank normalisation exposes one offset chain among Cauchy draws."""
        rng = np.random.default_rng(8)
        draws = rng.standard_cauchy(size=(4, 500))
        draws[0] += 3.0
        assert split_rhat(draws) > 1.05
        assert effective_sample_size(draws) < 500

    def test_scalar_components_match_arviz(self):
        rng = np.random.default_rng(9)
        draws = rng.normal(size=(3, 200))
        assert split_rhat(draws) == pytest.approx(az.rhat(draws, method="rank"))
        assert effective_sample_size(draws) == pytest.approx(az.ess(draws, method="bulk"))

    def test_rhat_undefined_cases(self):
        assert np.isnan(split_rhat(np.ones((2, 100))))
        assert np.isnan(split_rhat(np.arange(6.0).reshape(2, 3)))

    def test_ess_close_to_draw_count_for_iid(self):
        rng = np.random.default_rng(3)
        ess = effective_sample_size(rng.normal(size=(4, 1000)))
        assert 3000 < ess < 5000

    def test_ess_small_for_autocorrelated_chain(self):
        rng = np.random.default_rng(4)
        draws = np.stack([_ar1(rng, 2000, 0.95) for _ in range(2)])
        # Integrated autocorrelation time of AR(1) is (1 + phi) / (1 - phi) = 39
        assert effective_sample_size(draws) < 400

    def test_vector_components(self):
        rng = np.random.default_rng(5)
        draws = rng.normal(size=(2, 200, 3, 2))
        assert split_rhat(draws).shape == (3, 2)
        assert effective_sample_size(draws).shape == (3, 2)


class TestSummarizeDraws:

    def test_columns_and_quantiles(self):
        rng = np.random.default_rng(6)
        draws = rng.normal(10.0, 2.0, size=(2, 5000, 2))
        table = summarize_draws(draws, names=['a', 'b'], interval=0.80)
        assert list(table.columns) == SUMMARY_COLUMNS
        assert table['parameter'].tolist() == ['a', 'b']
        row = table.iloc[0]
        assert row['mean'] == pytest.approx(10.0, abs=0.1)
        assert row['sd'] == pytest.approx(2.0, abs=0.1)
        assert row['lower'] == pytest.approx(10.0 - 1.2816 * 2.0, abs=0.15)
        assert row['upper'] == pytest.approx(10.0 + 1.2816 * 2.0, abs=0.15)
        assert row['lower'] < row['median'] < row['upper']

    def test_one_dimensional_input_is_one_chain(self):
        table = summarize_draws(np.arange(100.0))
        assert table['parameter'].tolist() == ['param_0']
        assert table.loc[0, 'median'] == pytest.approx(49.5)

    @pytest.mark.parametrize("interval", [0.0, 1.0, 1.5])
    def test_interval_must_be_open_unit(self, interval):
        with pytest.raises(ARDValidationError, match="interval"):
            summarize_draws(np.zeros((1, 10)), interval=interval)

    def test_name_count_mismatch(self):
        with pytest.raises(ARDValidationError, match="names"):
            summarize_draws(np.zeros((1, 10, 3)), names=['a', 'b'])


class TestSummarizeFit:

    @pytest.fixture
    def fit(self):
        rng = np.random.default_rng(7)
        dataset = ARDDataset.from_arrays(
            np.ones((3, 2), dtype=int), [50.0], [0], 1000.0, subpopulation_names=['known', 'hidden']
        )
        diagnostics = SamplerDiagnostics(
            acceptance_rates={'beta': np.array([0.4, 0.5])},
            jump_scales={'beta': np.full((2, 2), 0.1)},
            n_instabilities=np.zeros(2, dtype=int),
            log_likelihood=rng.normal(size=(2, 100)),
            scaling_shift=np.zeros((2, 100)),
            warmup=100,
            iterations=200,
        )
        return MCMCFit(
            dataset=dataset,
            draws={
                'sizes': rng.normal(100.0, 5.0, (2, 100, 2)),
                'degrees': rng.normal(20.0, 1.0, (2, 100, 3)),
                'mu_beta': rng.normal(size=(2, 100)),
                'sigma_beta': rng.gamma(2.0, size=(2, 100)),
                'alpha': None,
            },
            diagnostics=diagnostics,
            scaling='all',
            dims={
                'sizes': ('chain', 'draw', 'subpopulation'),
                'degrees': ('chain', 'draw', 'respondent'),
                'mu_beta': ('chain', 'draw'),
                'sigma_beta': ('chain', 'draw'),
            },
        )

    def test_tables(self, fit):
        tables = summarize_fit(fit)
        assert set(tables) == {'sizes', 'degrees', 'hyperparameters'}
        assert tables['sizes']['parameter'].tolist() == ['known', 'hidden']
        assert tables['degrees']['parameter'].tolist() == ['respondent_0', 'respondent_1', 'respondent_2']
        assert tables['hyperparameters']['parameter'].tolist() == ['mu_beta', 'sigma_beta']

    def test_sizes_table_flags_known(self, fit):
        sizes = summarize_fit(fit)['sizes']
        assert sizes['known'].tolist() == [True, False]
        assert sizes.loc[0, 'known_size'] == 50.0
        assert np.isnan(sizes.loc[1, 'known_size'])
        PosteriorSummarySchema.validate(sizes)

    def test_matrix_parameter_labels(self, fit):
        draws = dict(fit.draws, sigma=np.ones((2, 100, 2, 2)))
        dims = dict(fit.dims, sigma=('chain', 'draw', 'subpopulation', 'subpopulation_other'))
        matrix_fit = MCMCFit(fit.dataset, draws, fit.diagnostics, fit.scaling, dims)
        labels = summarize_fit(matrix_fit)['sigma']['parameter'].tolist()
        assert labels == ['known,known', 'known,hidden', 'hidden,known', 'hidden,hidden']

    def test_acceptance_table(self, fit):
        table = acceptance_table(fit)
        AcceptanceRatesSchema.validate(table)
        assert table['acceptance_rate'].tolist() == [0.4, 0.5]
        assert isinstance(table, pd.DataFrame)
