"""
Configuration management for the ARD estimation engine.

This module provides centralized configuration using Pydantic for validation
and YAML for human-readable config files. The estimator option models double
as the explicit option sets of the public fit functions.
"""

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
import yaml
import logging

from .errors import ARDValidationError

logger = logging.getLogger(__name__)

ConfigT = TypeVar("ConfigT", bound=BaseModel)


class MCMCConfig(BaseModel):
    """Options shared by the MCMC samplers."""
    warmup: int = Field(default=1000, ge=0, description="Warmup iterations per chain (discarded)")
    iterations: int = Field(default=2000, gt=0, description="Total iterations per chain, including warmup")
    chains: int = Field(default=1, ge=1, description="Number of independent chains")
    cores: int = Field(default=1, ge=1, description="Maximum worker processes for parallel chains")
    seed: Optional[int] = Field(default=None, ge=0, description="Root seed; each chain gets a spawned child seed")
    target_accept: float = Field(default=0.44, gt=0, lt=1, description="Target Metropolis acceptance during warmup")
    adapt_interval: int = Field(default=50, gt=0, description="Iterations between proposal-scale adjustments")
    scaling: Optional[Literal["all", "weighted", "group"]] = Field(
        default=None, description="Scaling mode; None selects 'group' when grouping indices are given, else 'all'"
    )
    verbose: bool = Field(default=False, description="Log sampler progress")
    refresh: int = Field(default=100, gt=0, description="Iterations between progress messages when verbose")

    @model_validator(mode='after')
    def validate_warmup_below_iterations(self):
        if self.warmup >= self.iterations:
            raise ValueError(f"warmup ({self.warmup}) must be smaller than iterations ({self.iterations})")
        return self


class TwoStageConfig(BaseModel):
    """Configuration for the two-stage estimators."""
    model: Literal["pimle", "mle"] = Field(default="mle", description="Stage-2 estimator")


class OverdispersedConfig(MCMCConfig):
    """Configuration for the overdispersed (negative binomial) Gibbs-Metropolis sampler."""
    init: Literal["mle", "random"] = Field(default="mle", description="Initial values: two-stage MLE or random")
    alpha_tune: float = Field(default=0.4, gt=0, description="Initial random-walk scale for log-degrees")
    beta_tune: float = Field(default=0.2, gt=0, description="Initial random-walk scale for log-prevalences")
    omega_tune: float = Field(default=0.2, gt=0, description="Initial random-walk scale for overdispersion")
    prior_sigma_shape: float = Field(default=1.0, gt=0, description="Inverse-gamma shape for sigma_alpha^2 and sigma_beta^2")
    prior_sigma_rate: float = Field(default=1.0, gt=0, description="Inverse-gamma rate for sigma_alpha^2 and sigma_beta^2")
    omega_init: float = Field(default=20.0, gt=1, description="Initial overdispersion for MLE initialisation")


class CorrelatedConfig(MCMCConfig):
    """Configuration for the Poisson log-normal (correlated / uncorrelated) sampler."""
    model: Literal["correlated", "uncorrelated"] = Field(default="correlated", description="Random-effect covariance structure")
    chains: int = Field(default=4, ge=1, description="Number of independent chains")
    delta_tune: float = Field(default=0.3, gt=0, description="Initial random-walk scale for log-degrees")
    rho_tune: float = Field(default=0.1, gt=0, description="Initial random-walk scale for log-prevalences")
    b_tune: float = Field(default=0.5, gt=0, description="Initial random-walk scale for random effects")
    coef_tune: float = Field(default=0.05, gt=0, description="Initial random-walk scale for covariate coefficients")
    coef_prior_scale: float = Field(default=2.5, gt=0, description="Normal prior sd for covariate coefficients")
    prior_variance_shape: float = Field(default=2.0, gt=0, description="Inverse-gamma shape for variance components")
    prior_variance_rate: float = Field(default=0.5, gt=0, description="Inverse-gamma rate for variance components")
    wishart_df_offset: float = Field(default=2.0, gt=0, description="Inverse-Wishart prior df = n_subpopulations + offset")


class SummaryConfig(BaseModel):
    """Configuration for posterior summaries."""
    interval_width: float = Field(
        default=0.80,
        gt=0,
        lt=1,
        description="Width for credible intervals (e.g., 0.80 = 10% - 90%)"
    )


class DataPathsConfig(BaseModel):
    """Configuration for data paths."""
    data_dir: str = Field(description="Data directory path")
    output_dir: str = Field(description="Output directory path")


class ARDInputConfig(BaseModel):
    """Configuration describing the ARD input files."""
    ard_file: str = Field(description="CSV with one row per respondent and one count column per subpopulation")
    known_sizes_file: str = Field(description="CSV with columns 'subpopulation' and 'size'")
    population_total: float = Field(gt=0, description="Total size of the reference population")
    respondent_id_column: Optional[str] = Field(default=None, description="Respondent id column in the ARD file")
    x_file: Optional[str] = Field(default=None, description="Optional CSV with the per-subpopulation covariate")
    z_subpop_file: Optional[str] = Field(default=None, description="Optional CSV of respondent covariates with subpopulation-specific effects")
    z_global_file: Optional[str] = Field(default=None, description="Optional CSV of respondent covariates with shared effects")
    group1: Optional[List[str]] = Field(default=None, description="Known subpopulations forming scaling group 1")
    group2: Optional[List[str]] = Field(default=None, description="Known subpopulations forming scaling group 2")
    group2_secondary: Optional[List[str]] = Field(default=None, description="Secondary anchors for scaling group 2")

    @field_validator('group2')
    @classmethod
    def validate_group2_requires_group1(cls, v, info):
        if v is not None and info.data.get('group1') is None:
            raise ValueError("group2 requires group1")
        return v


class ExecutionConfig(BaseModel):
    """Configuration for execution settings."""
    parallel_chains: bool = Field(default=True, description="Run chains in a process pool when cores > 1")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO", description="Logging level")


class PipelineConfig(BaseModel):
    """Complete pipeline configuration."""
    data_paths: DataPathsConfig
    ard_input: ARDInputConfig
    two_stage: TwoStageConfig = Field(default_factory=TwoStageConfig)
    overdispersed: OverdispersedConfig = Field(default_factory=OverdispersedConfig)
    correlated: CorrelatedConfig = Field(default_factory=CorrelatedConfig)
    summary: SummaryConfig = Field(default_factory=SummaryConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)

    def to_hamilton_inputs(self) -> Dict[str, Any]:
        """
        Convert config to flat dictionary for Hamilton inputs.

        Returns:
            Dictionary with all config values as Hamilton input parameters
        """
        inputs = {}

        # Data paths
        inputs['data_dir'] = self.data_paths.data_dir
        inputs['output_dir'] = self.data_paths.output_dir

        # Input files (relative to data_dir; empty means not supplied)
        inputs['ard_responses_file'] = self.ard_input.ard_file
        inputs['known_sizes_table_file'] = self.ard_input.known_sizes_file
        inputs['x_covariate_file'] = self.ard_input.x_file or ""
        inputs['z_subpop_covariates_file'] = self.ard_input.z_subpop_file or ""
        inputs['z_global_covariates_file'] = self.ard_input.z_global_file or ""

        # ARD input description
        inputs['population_total'] = self.ard_input.population_total
        inputs['respondent_id_column'] = self.ard_input.respondent_id_column
        inputs['group1'] = self.ard_input.group1
        inputs['group2'] = self.ard_input.group2
        inputs['group2_secondary'] = self.ard_input.group2_secondary

        # Estimator options are passed as whole models
        inputs['two_stage_model'] = self.two_stage.model
        inputs['overdispersed_config'] = self.overdispersed
        inputs['correlated_config'] = self.correlated

        # Summary parameters
        inputs['summary_interval_width'] = self.summary.interval_width

        return inputs


def resolve_options(config_cls: Type[ConfigT], config: Optional[ConfigT] = None, **overrides) -> ConfigT:
    """
    Merge keyword overrides into an options model and re-validate.

    Args:
        config_cls: Options model class
        config: Optional base instance (defaults are used when None)
        **overrides: Field values; None means "keep the base value"

    Returns:
        Validated options instance

    Raises:
        ARDValidationError: If a field is unknown or fails validation
    """
    base = config.model_dump() if config is not None else {}
    unknown = set(overrides) - set(config_cls.model_fields)
    if unknown:
        raise ARDValidationError(f"Unknown {config_cls.__name__} option(s): {sorted(unknown)}")
    merged = {**base, **{k: v for k, v in overrides.items() if v is not None}}
    try:
        return config_cls(**merged)
    except ValidationError as e:
        raise ARDValidationError(f"Invalid {config_cls.__name__}: {e}") from e


def load_config(config_path: Optional[Path] = None) -> PipelineConfig:
    """
    Load pipeline configuration from YAML file.

    Args:
        config_path: Path to YAML config file. If None, uses config/default.yaml

    Returns:
        Validated PipelineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config validation fails
    """
    if config_path is None:
        # Default to config/default.yaml in project root
        project_root = Path(__file__).parent.parent.parent
        config_path = project_root / "config" / "default.yaml"

    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    logger.info(f"Loading configuration from: {config_path}")

    with open(config_path, 'r') as f:
        config_dict = yaml.safe_load(f)

    try:
        config = PipelineConfig(**config_dict)
        logger.info("Configuration loaded and validated successfully")
        return config
    except Exception as e:
        logger.error(f"Configuration validation failed: {e}")
        raise ValueError(f"Invalid configuration: {e}") from e
