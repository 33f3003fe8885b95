"""
Single point of contact with the fitting engine.
"""

import logging

import numpy as np

from qgamcal.bootstrap import count_weights
from qgamcal.exceptions import CalibrationInputError, RefitFailure
from qgamcal.results import FitOutcome

logger = logging.getLogger(__name__)

# Numerical failures turned into a failed FitOutcome instead of a crash
REFIT_ERRORS = (RefitFailure, np.linalg.LinAlgError, FloatingPointError, ArithmeticError, ValueError)


class ModelRefitAdapter:
    """
    Refit the engine on the full data or on one bootstrap replicate.

    The engine must provide ``fit(X, y, weights, qu, width, log_rate)``
    returning a FitOutcome. The adapter keeps no state between calls.

    Args:
        engine: Fitting engine.
        X: Design matrix (n_samples, n_features).
        y: Responses (n_samples,).
        qu: Quantile level.
        width: Loss smoothing width on the response scale (err * sigma).
    """

    def __init__(self, engine, X, y, qu, width):
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float).ravel()
        if X.ndim == 1:
            X = X.reshape(-1, 1)
        if X.shape[0] != len(y):
            raise CalibrationInputError(f"X has {X.shape[0]} rows but y has {len(y)} values")
        if len(y) == 0:
            raise CalibrationInputError("Cannot calibrate on an empty data set")
        if not width > 0:
            raise CalibrationInputError(f"Loss smoothing width must be positive, got {width!r}")
        self.engine = engine
        self.X = X
        self.y = y
        self.qu = qu
        self.width = width

    @property
    def n(self):
        return len(self.y)

    def refit(self, log_rate, indices=None):
        """
        Call the engine once.

        Args:
            log_rate: Log learning rate.
            indices: Bootstrap index multiset, or None for the full data.

        Returns:
            FitOutcome with fitted values at all n observations. Hard numerical
            failures come back as ``convergence == "failed"``.
        """
        if indices is None:
            weights = np.ones(self.n)
        else:
            weights = count_weights(indices, self.n)
        try:
            outcome = self.engine.fit(self.X, self.y, weights, self.qu, self.width, log_rate)
        except REFIT_ERRORS as e:
            logger.debug(f"Refit failed at log rate {log_rate:.4f}: {type(e).__name__}: {e}")
            return FitOutcome.failure(self.n, message=f"{type(e).__name__}: {e}")
        if not outcome.failed and not np.all(np.isfinite(outcome.fitted)):
            logger.debug(f"Refit at log rate {log_rate:.4f} returned non-finite fitted values")
            return FitOutcome.failure(self.n, message="non-finite fitted values")
        return outcome
