"""
Hamilton processors for the ARD estimation pipeline

This module contains the estimation and summary nodes: two-stage estimates,
the overdispersed and correlated model fits, and the posterior summary
tables written to the output directory.
"""

from hamilton.function_modifiers import check_output, save_to, source
from pandera.typing import DataFrame
from typing import Dict
import pandas as pd
import logging

from .config import CorrelatedConfig, OverdispersedConfig
from .correlated import CorrelatedFit, fit_correlated
from .data import ARDDataset
from .overdispersed import OverdispersedFit, fit_overdispersed
from .schemas import AcceptanceRatesSchema, PosteriorSummarySchema, TwoStageEstimatesSchema
from .summaries import acceptance_table, summarize_fit
from .two_stage import TwoStageResult, fit_two_stage

logger = logging.getLogger(__name__)


# ============================================================================
# TWO-STAGE ESTIMATES
# ============================================================================

def two_stage_estimates(ard_dataset: ARDDataset, two_stage_model: str) -> TwoStageResult:
    """Closed-form PIMLE or MLE fit on the pipeline dataset; degenerate rows are logged by the fit."""
    return fit_two_stage(ard_dataset, model=two_stage_model)


@save_to.csv(path=source("two_stage_summary_output_path"))
@check_output(schema=TwoStageEstimatesSchema, importance="fail")
def two_stage_summary(two_stage_estimates: TwoStageResult) -> DataFrame[TwoStageEstimatesSchema]:
    summary = two_stage_estimates.to_frame()
    logger.info(f"Two-stage summary: {len(summary)} subpopulations, {int((~summary['known']).sum())} estimated")
    return summary


# ============================================================================
# OVERDISPERSED MODEL
# ============================================================================

def overdispersed_fit(ard_dataset: ARDDataset, overdispersed_config: OverdispersedConfig) -> OverdispersedFit:
    """Gibbs-Metropolis fit of the negative binomial model."""
    return fit_overdispersed(ard_dataset, config=overdispersed_config)


def overdispersed_summaries(overdispersed_fit: OverdispersedFit, summary_interval_width: float) -> Dict[str, pd.DataFrame]:
    return summarize_fit(overdispersed_fit, interval=summary_interval_width)


@save_to.csv(path=source("overdispersed_size_summary_output_path"))
@check_output(schema=PosteriorSummarySchema, importance="fail")
def overdispersed_size_summary(overdispersed_summaries: Dict[str, pd.DataFrame]) -> DataFrame[PosteriorSummarySchema]:
    return overdispersed_summaries['sizes']


@save_to.csv(path=source("overdispersed_degree_summary_output_path"))
@check_output(schema=PosteriorSummarySchema, importance="fail")
def overdispersed_degree_summary(overdispersed_summaries: Dict[str, pd.DataFrame]) -> DataFrame[PosteriorSummarySchema]:
    return overdispersed_summaries['degrees']


@save_to.csv(path=source("overdispersed_omega_summary_output_path"))
@check_output(schema=PosteriorSummarySchema, importance="fail")
def overdispersed_omega_summary(overdispersed_summaries: Dict[str, pd.DataFrame]) -> DataFrame[PosteriorSummarySchema]:
    return overdispersed_summaries['omega']


@save_to.csv(path=source("overdispersed_acceptance_summary_output_path"))
@check_output(schema=AcceptanceRatesSchema, importance="fail")
def overdispersed_acceptance_summary(overdispersed_fit: OverdispersedFit) -> DataFrame[AcceptanceRatesSchema]:
    return acceptance_table(overdispersed_fit)


# ============================================================================
# CORRELATED MODEL
# ============================================================================

def correlated_fit(ard_dataset: ARDDataset, correlated_config: CorrelatedConfig) -> CorrelatedFit:
    """Poisson log-normal fit (correlated or uncorrelated random effects)."""
    return fit_correlated(ard_dataset, config=correlated_config)


def correlated_summaries(correlated_fit: CorrelatedFit, summary_interval_width: float) -> Dict[str, pd.DataFrame]:
    return summarize_fit(correlated_fit, interval=summary_interval_width)


@save_to.csv(path=source("correlated_size_summary_output_path"))
@check_output(schema=PosteriorSummarySchema, importance="fail")
def correlated_size_summary(correlated_summaries: Dict[str, pd.DataFrame]) -> DataFrame[PosteriorSummarySchema]:
    return correlated_summaries['sizes']


@save_to.csv(path=source("correlated_degree_summary_output_path"))
@check_output(schema=PosteriorSummarySchema, importance="fail")
def correlated_degree_summary(correlated_summaries: Dict[str, pd.DataFrame]) -> DataFrame[PosteriorSummarySchema]:
    return correlated_summaries['degrees']


@save_to.csv(path=source("correlated_covariance_summary_output_path"))
@check_output(schema=PosteriorSummarySchema, importance="fail")
def correlated_covariance_summary(correlated_summaries: Dict[str, pd.DataFrame]) -> DataFrame[PosteriorSummarySchema]:
    return correlated_summaries['sigma']


@save_to.csv(path=source("correlated_hyperparameter_summary_output_path"))
@check_output(schema=PosteriorSummarySchema, importance="fail")
def correlated_hyperparameter_summary(correlated_summaries: Dict[str, pd.DataFrame]) -> DataFrame[PosteriorSummarySchema]:
    """Scalar hyperparameters plus any covariate coefficients that were estimated."""
    tables = [correlated_summaries['hyperparameters']]
    for name in ('alpha', 'beta_global', 'beta_subpop'):
        if name in correlated_summaries:
            table = correlated_summaries[name].copy()
            table['parameter'] = name + '[' + table['parameter'] + ']'
            tables.append(table)
    return pd.concat(tables, ignore_index=True)


@save_to.csv(path=source("correlated_acceptance_summary_output_path"))
@check_output(schema=AcceptanceRatesSchema, importance="fail")
def correlated_acceptance_summary(correlated_fit: CorrelatedFit) -> DataFrame[AcceptanceRatesSchema]:
    return acceptance_table(correlated_fit)
