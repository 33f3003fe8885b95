"""
qgamcal: calibrated learning rates for additive quantile regression.
"""

from qgamcal.config import DEFAULT_CONTROL, CalibrationRequest
from qgamcal.diagnostics import ConvergenceReport, check_calibration, conditional_exceedance
from qgamcal.engine import SmoothPinballGAM
from qgamcal.evaluator import CalibrationLossEvaluator, anderson_darling_statistic
from qgamcal.exceptions import (CalibrationDegenerateWarning, CalibrationInputError, RefitFailure,
                                SearchNonConvergenceWarning)
from qgamcal.qgam import CalibratedQuantileGAM
from qgamcal.refit import ModelRefitAdapter
from qgamcal.results import CalibrationCurve, CalibrationPoint, CalibrationResult, Convergence, FitOutcome
from qgamcal.tuning import AdaptiveTuner, GridTuner, tune_learn, tune_learn_fast

__version__ = "0.1.0"
