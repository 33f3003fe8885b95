"""
Error and warning categories raised while calibrating the learning rate.

Only CalibrationInputError aborts a tuning call. Everything else is recorded in
the result objects so that a partially informative calibration curve survives.
"""


class CalibrationInputError(ValueError):
    """Malformed request: bad quantile level, empty or duplicated grid, bad bounds."""


class RefitFailure(RuntimeError):
    """Hard numerical failure inside a fitting engine for a single refit."""


class CalibrationDegenerateWarning(UserWarning):
    """A candidate learning rate produced no usable calibration loss."""


class SearchNonConvergenceWarning(UserWarning):
    """The adaptive search ran out of evaluations before reaching its tolerance."""
