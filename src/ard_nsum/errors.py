"""
Error and warning types for the ARD estimation engine.
"""


class ARDValidationError(ValueError):
    """Raised when input data or options are malformed.

    Always raised before any computation starts, so a failed call never
    returns partial output.
    """


# Public alias used throughout the API docs
ValidationError = ARDValidationError


class DegenerateRespondentWarning(UserWarning):
    """A respondent reports zero contacts in every known subpopulation.

    The stage-1 degree estimate for such a respondent is exactly 0. The
    warning is returned in the result's ``warnings`` list, it is not emitted
    through the global ``warnings`` machinery.
    """


class NumericInstabilityWarning(RuntimeWarning):
    """A proposal produced a non-finite log posterior or a non-PD covariance.

    Instabilities are absorbed as rejected proposals and counted in the
    sampler diagnostics.
    """


class ChainExecutionError(RuntimeError):
    """A chain worker failed for a reason other than numeric instability."""
