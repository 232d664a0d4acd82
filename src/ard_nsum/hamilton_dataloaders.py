"""
Hamilton dataloaders for the ARD estimation pipeline

This module contains the functions that load and validate the input tables
(ARD responses, known sizes and optional covariates) and assemble them into
an ARDDataset.
"""

from hamilton.function_modifiers import check_output, load_from, source
from pandera.typing import DataFrame
from typing import List, Optional
import pandas as pd
import logging

from .data import ARDDataset
from .errors import ARDValidationError
from .schemas import KnownSizesSchema

logger = logging.getLogger(__name__)

# ============================================================================
# INPUT DATA CONFIGURATION
# ============================================================================

# Default input files relative to data_dir; the ard_input section of the
# config overrides them. An empty path means the input is not supplied.
# These will be expanded to full paths in hamilton_pipeline.py
INPUT_DATA_CONFIG = {
    "ard_responses": {
        "file_path": "ard_responses.csv"
    },
    "known_sizes_table": {
        "file_path": "known_sizes.csv"
    },
    "x_covariate": {
        "file_path": ""
    },
    "z_subpop_covariates": {
        "file_path": ""
    },
    "z_global_covariates": {
        "file_path": ""
    },
}

# ============================================================================
# OUTPUT DATA CONFIGURATION
# ============================================================================

OUTPUT_DATA_CONFIG = {
    # Two-stage output paths
    "two_stage_summary_output_path": "two_stage_summary.csv",

    # Overdispersed model output paths
    "overdispersed_size_summary_output_path": "overdispersed_size_summary.csv",
    "overdispersed_degree_summary_output_path": "overdispersed_degree_summary.csv",
    "overdispersed_omega_summary_output_path": "overdispersed_omega_summary.csv",
    "overdispersed_acceptance_summary_output_path": "overdispersed_acceptance_summary.csv",

    # Correlated model output paths
    "correlated_size_summary_output_path": "correlated_size_summary.csv",
    "correlated_degree_summary_output_path": "correlated_degree_summary.csv",
    "correlated_covariance_summary_output_path": "correlated_covariance_summary.csv",
    "correlated_hyperparameter_summary_output_path": "correlated_hyperparameter_summary.csv",
    "correlated_acceptance_summary_output_path": "correlated_acceptance_summary.csv",
}


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def _load_optional_table(file_path: str, label: str) -> Optional[pd.DataFrame]:
    """Load an optional CSV; an empty path means the input is absent."""
    if not file_path:
        logger.info(f"No {label} file configured")
        return None
    df = pd.read_csv(file_path)
    df = df.drop(columns=[col for col in df.columns if str(col).startswith('Unnamed:')])
    logger.info(f"Loaded {label}: {df.shape[0]} rows, {df.shape[1]} columns from {file_path}")
    return df


def _align_to_respondents(
    df: Optional[pd.DataFrame],
    label: str,
    respondent_id_column: Optional[str],
    respondent_ids: Optional[List[str]],
) -> Optional[pd.DataFrame]:
    """Order covariate rows like the ARD rows when both tables carry respondent ids."""
    if df is None or respondent_id_column is None or respondent_id_column not in df.columns:
        return df
    indexed = df.assign(**{respondent_id_column: df[respondent_id_column].astype(str)}).set_index(respondent_id_column)
    missing = [rid for rid in respondent_ids if rid not in indexed.index]
    if missing:
        raise ARDValidationError(f"{label} is missing {len(missing)} respondent(s), e.g. {missing[:5]}")
    return indexed.loc[respondent_ids].reset_index(drop=True)


# ============================================================================
# CORE DATALOADERS
# ============================================================================

@load_from.csv(
    path=source('ard_responses_file_path')
)
def ard_responses(df: pd.DataFrame) -> pd.DataFrame:
    # Clean up unnamed columns (index columns written by spreadsheet exports)
    cleaned_data = df.drop(columns=[col for col in df.columns if str(col).startswith('Unnamed:')])
    logger.info(f"Loaded ARD responses: {cleaned_data.shape[0]} rows, {cleaned_data.shape[1]} columns")
    return cleaned_data


@check_output(schema=KnownSizesSchema, importance="fail")
@load_from.csv(
    path=source('known_sizes_table_file_path')
)
def known_sizes_table(df: pd.DataFrame) -> DataFrame[KnownSizesSchema]:
    # Subpopulation names must match ARD column headers, which pandas reads as strings
    df = df.assign(subpopulation=df['subpopulation'].astype(str))
    return df


def x_covariate(x_covariate_file_path: str) -> Optional[pd.DataFrame]:
    """Optional per-subpopulation covariate X[i, k], with the same columns as the ARD table."""
    return _load_optional_table(x_covariate_file_path, "x covariate")


def z_subpop_covariates(z_subpop_covariates_file_path: str) -> Optional[pd.DataFrame]:
    """Optional respondent covariates with subpopulation-specific effects."""
    return _load_optional_table(z_subpop_covariates_file_path, "z_subpop covariates")


def z_global_covariates(z_global_covariates_file_path: str) -> Optional[pd.DataFrame]:
    """Optional respondent covariates with shared effects."""
    return _load_optional_table(z_global_covariates_file_path, "z_global covariates")


def ard_dataset(
    ard_responses: pd.DataFrame,
    known_sizes_table: DataFrame[KnownSizesSchema],
    x_covariate: Optional[pd.DataFrame],
    z_subpop_covariates: Optional[pd.DataFrame],
    z_global_covariates: Optional[pd.DataFrame],
    population_total: float,
    respondent_id_column: Optional[str],
    group1: Optional[List[str]],
    group2: Optional[List[str]],
    group2_secondary: Optional[List[str]],
) -> ARDDataset:
    """
    Assemble the validated ARD dataset.

    Args:
        ard_responses: One row per respondent, one count column per subpopulation
        known_sizes_table: Known subpopulation sizes keyed by ARD column name
        x_covariate: Optional covariate table with the ARD columns
        z_subpop_covariates: Optional respondent covariates (subpopulation-specific effects)
        z_global_covariates: Optional respondent covariates (shared effects)
        population_total: Total population size
        respondent_id_column: Optional respondent id column shared by all tables
        group1, group2, group2_secondary: Optional known subpopulations used for group scaling

    Returns:
        ARDDataset ready for the estimators
    """
    known_sizes = dict(zip(known_sizes_table['subpopulation'], known_sizes_table['size']))

    respondent_ids = None
    if respondent_id_column is not None and respondent_id_column in ard_responses.columns:
        respondent_ids = ard_responses[respondent_id_column].astype(str).tolist()

    covariates = {
        name: _align_to_respondents(df, name, respondent_id_column, respondent_ids)
        for name, df in (("x", x_covariate), ("z_subpop", z_subpop_covariates), ("z_global", z_global_covariates))
    }
    if covariates["x"] is not None:
        count_columns = [c for c in ard_responses.columns if c != respondent_id_column]
        missing = [c for c in count_columns if c not in covariates["x"].columns]
        if missing:
            raise ARDValidationError(f"x covariate is missing subpopulation columns: {missing}")
        covariates["x"] = covariates["x"][count_columns]

    dataset = ARDDataset.from_frame(
        ard_responses,
        known_sizes=known_sizes,
        population_total=population_total,
        respondent_id_column=respondent_id_column,
        x=covariates["x"],
        z_subpop=covariates["z_subpop"],
        z_global=covariates["z_global"],
        group1=group1,
        group2=group2,
        group2_secondary=group2_secondary,
    )
    logger.info(
        f"ARD dataset ready: {dataset.n_respondents} respondents, {dataset.n_subpopulations} subpopulations, "
        f"{len(dataset.known_indices)} known"
    )
    return dataset
