"""
Pandera schemas for the ARD estimation pipeline

This module defines data validation schemas using Pandera for the input
tables (ARD responses, known sizes) and the output summary tables.
"""

import pandera.pandas as pa
from pandera.typing import Series

# ============================================================================
# INPUT DATA SCHEMAS
# ============================================================================

class ARDResponsesSchema(pa.DataFrameModel):
    """Schema for the ARD table: one row per respondent, one count column per subpopulation

    Counts are read as floats so that fractional values reach the whole-number
    check instead of being truncated by an integer cast.
    """
    counts: Series[float] = pa.Field(
        ge=0,
        alias=r".+",
        regex=True,
        description="Reported number of acquaintances in the subpopulation"
    )

    @pa.dataframe_check
    def whole_counts(cls, df) -> Series[bool]:
        return df == df.round()

    class Config:
        coerce = True


class KnownSizesSchema(pa.DataFrameModel):
    """Schema for the known-size anchors"""
    subpopulation: Series[str] = pa.Field(unique=True, description="ARD column name of the subpopulation")
    size: Series[float] = pa.Field(gt=0, description="True size of the subpopulation")

    class Config:
        coerce = True
        strict = False

# ============================================================================
# OUTPUT DATA SCHEMAS
# ============================================================================

class TwoStageEstimatesSchema(pa.DataFrameModel):
    """Schema for two-stage (PIMLE / MLE) size estimates"""
    subpopulation: Series[str] = pa.Field(description="Subpopulation label")
    known: Series[bool] = pa.Field(description="Whether the size was supplied as an anchor")
    known_size: Series[float] = pa.Field(nullable=True, gt=0, description="Supplied size, if known")
    estimate: Series[float] = pa.Field(ge=0, description="Estimated size")


class PosteriorSummarySchema(pa.DataFrameModel):
    """Schema for posterior summary tables"""
    parameter: Series[str] = pa.Field(description="Parameter label")
    mean: Series[float] = pa.Field(nullable=True)
    median: Series[float] = pa.Field(nullable=True)
    sd: Series[float] = pa.Field(nullable=True, ge=0)
    lower: Series[float] = pa.Field(nullable=True)
    upper: Series[float] = pa.Field(nullable=True)
    rhat: Series[float] = pa.Field(nullable=True)
    ess: Series[float] = pa.Field(nullable=True, ge=0)

    class Config:
        strict = False


class AcceptanceRatesSchema(pa.DataFrameModel):
    """Schema for per-chain Metropolis acceptance rates"""
    chain: Series[int] = pa.Field(ge=0)
    block: Series[str] = pa.Field()
    acceptance_rate: Series[float] = pa.Field(ge=0, le=1)
