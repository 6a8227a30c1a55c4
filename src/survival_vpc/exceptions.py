"""Exception hierarchy for time-to-event VPC computation.

All fatal errors inherit from VPCError and are raised before any numeric
work starts, so callers never receive a partial result. Recoverable data
issues are reported as DataShapeWarning instead.

Example:
    >>> from survival_vpc.exceptions import VPCError
    >>> try:
    ...     vpc_tte(obs=None, sim=None)
    ... except VPCError as e:
    ...     print(e)
"""
from __future__ import annotations
from typing import Optional, Sequence


class VPCError(Exception):
    """Base exception for all survival_vpc errors."""
    pass


class ConfigurationError(VPCError):
    """Configuration is malformed or unsupported.

    Raised when no dataset is supplied, too many stratification variables
    are requested, or an unknown binning policy / software profile is named.
    """
    pass


class AsymmetricCIError(ConfigurationError):
    """Confidence interval is not symmetric around 0.5.

    Attributes:
        ci: The requested (lower, upper) interval
    """

    def __init__(self, message: str, ci: Optional[Sequence[float]] = None):
        super().__init__(message)
        self.ci = tuple(ci) if ci is not None else None


class ColumnNotFoundError(VPCError, KeyError):
    """A required column is absent from a dataset.

    Attributes:
        column: Name of the missing column
        dataset: Which dataset was checked ("observation" or "simulation")
    """

    def __init__(self, column: str, dataset: Optional[str] = None, message: Optional[str] = None):
        if message is None:
            where = f" in {dataset} data" if dataset else ""
            message = f"Column '{column}' not found{where}."
        super().__init__(message)
        self.column = column
        self.dataset = dataset

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return str(self.args[0])


class DataShapeWarning(UserWarning):
    """Input data was coerced into the expected shape.

    Emitted when the dependent variable holds values outside {0, 1} or a
    censoring column is detected and applied.
    """
    pass
