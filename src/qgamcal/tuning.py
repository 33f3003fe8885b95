"""
Search for the log learning rate minimizing the calibration loss.

GridTuner evaluates a fixed sequence of candidates, in parallel if requested.
AdaptiveTuner runs a bounded Brent search (golden section plus parabolic
interpolation) that falls back to bisection when the noisy loss stops looking
unimodal.
"""

import logging
import math
import warnings

import numpy as np
from joblib import Parallel, delayed

from qgamcal.config import validate_bounds, validate_grid
from qgamcal.evaluator import CalibrationLossEvaluator, anderson_darling_statistic
from qgamcal.exceptions import CalibrationInputError, SearchNonConvergenceWarning
from qgamcal.results import CalibrationCurve, CalibrationResult, select_best
from qgamcal.utils import progress

logger = logging.getLogger(__name__)

GOLDEN = 0.5 * (3.0 - math.sqrt(5.0))
SQRT_EPS = math.sqrt(np.finfo(float).eps)


class GridTuner:
    """
    Evaluate the calibration loss at every candidate of a grid.

    Candidates are independent: each owns the random stream of its position in
    the sorted grid, so the curve does not depend on the number of workers or on
    the order in which they finish.
    """

    def __init__(self, evaluator):
        self.evaluator = evaluator

    def tune(self, grid=None):
        request = self.evaluator.request
        grid = request.grid if grid is None else grid
        if grid is None:
            raise CalibrationInputError("Grid tuning needs a sequence of log learning rates")
        grid = validate_grid(grid)

        # Candidates are the unit of parallelism here, replicates stay serial
        serial = CalibrationLossEvaluator(self.evaluator.adapter, request, self.evaluator.statistic, n_jobs=1)
        logger.info(f"Evaluating the calibration loss at {len(grid)} log learning rates in [{grid[0]:.4f}, {grid[-1]:.4f}] with K={request.K}")
        if request.parallel == 1:
            points = [serial.evaluate(lr, i) for i, lr in progress(list(enumerate(grid)), request.progress, desc="log rate")]
        else:
            points = Parallel(n_jobs=request.parallel, backend=request.backend, verbose=5 if request.progress else 0)(
                delayed(serial.evaluate)(lr, i) for i, lr in enumerate(grid)
            )

        curve = CalibrationCurve.from_points(points)
        best = select_best(curve.points)
        decision = [p for p in curve if p.informative]
        converged = best is not None and all(p.converged for p in decision)
        if best is None:
            logger.warning("No candidate produced a calibration loss, no learning rate selected")
        else:
            logger.info(f"Selected log learning rate {best.log_rate:.4f} (loss {best.loss:.6f}), converged={converged}")
        return CalibrationResult(
            mode="grid",
            selected_log_rate=None if best is None else best.log_rate,
            converged=converged,
            curve=curve,
            best=best,
            trace=curve.points,
            n_evals=len(grid),
            search_converged=True,
            request=request,
        )


class AdaptiveTuner:
    """
    Bounded Brent minimization of the calibration loss.

    Each evaluation is expensive and noisy. After a parabolic step the observed
    loss is compared with the parabola's prediction; if they disagree by more
    than ``shape_tol`` (relative), or the interpolation points are not convex,
    the next step bisects the current bracket. Points without a loss never become
    the incumbent and the bracket is contracted on their side.

    The search stops when the bracket is narrower than ``tolerance`` or after
    ``max_evals`` evaluations, in which case the best point so far is returned
    with ``converged=False``.
    """

    def __init__(self, evaluator):
        self.evaluator = evaluator

    def tune(self, bounds=None):
        request = self.evaluator.request
        bounds = request.bounds if bounds is None else bounds
        if bounds is None:
            raise CalibrationInputError("Adaptive tuning needs (lower, upper) bounds on the log learning rate")
        lower, upper = validate_bounds(bounds)
        tolerance = request.tolerance
        logger.info(f"Searching the log learning rate in [{lower:.4f}, {upper:.4f}] with tolerance {tolerance:g} and at most {request.max_evals} evaluations")

        self._trace = []
        self._cache = {}
        self._bar = progress(range(request.max_evals), request.progress, desc="evaluations")
        search_converged = self._brent(lower, upper, tolerance, request.max_evals, request.shape_tol)
        if hasattr(self._bar, "close"):
            self._bar.close()

        trace = tuple(self._trace)
        best = select_best(trace)
        if not search_converged:
            warnings.warn(f"Adaptive search stopped after {len(trace)} evaluations without reaching tolerance {tolerance:g}", SearchNonConvergenceWarning)
        converged = search_converged and best is not None and best.converged
        if best is None:
            logger.warning("No evaluation produced a calibration loss, no learning rate selected")
        else:
            logger.info(f"Selected log learning rate {best.log_rate:.4f} (loss {best.loss:.6f}) after {len(trace)} evaluations, converged={converged}")
        return CalibrationResult(
            mode="adaptive",
            selected_log_rate=None if best is None else best.log_rate,
            converged=converged,
            curve=CalibrationCurve.from_points(trace),
            best=best,
            trace=trace,
            n_evals=len(trace),
            search_converged=search_converged,
            request=request,
        )

    def _loss_at(self, log_rate):
        """Loss at ``log_rate``, evaluating it unless it was visited already."""
        if log_rate in self._cache:
            return self._cache[log_rate].loss
        point = self.evaluator.evaluate(log_rate, candidate_index=len(self._trace))
        self._cache[log_rate] = point
        self._trace.append(point)
        if hasattr(self._bar, "update"):
            self._bar.update(1)
        return point.loss

    def _brent(self, a, b, tolerance, max_evals, shape_tol):
        """
        Run the search on [a, b]. Returns True if the bracket shrank below tolerance.
        """
        x = w = v = a + GOLDEN * (b - a)
        fx = fw = fv = self._loss_at(x)
        d = e = 0.0
        bisect_next = False
        # Guards against loops that only hit cached points
        max_steps = 4 * max_evals + 10

        for _ in range(max_steps):
            m = 0.5 * (a + b)
            tol1 = SQRT_EPS * abs(x) + tolerance / 5.0
            tol2 = 2.0 * tol1
            if (b - a) < tolerance or abs(x - m) <= tol2 - 0.5 * (b - a):
                return True
            if len(self._trace) >= max_evals:
                return False

            parabolic = False
            if bisect_next:
                e = (a - x) if x >= m else (b - x)
                d = m - x
                bisect_next = False
                logger.debug(f"Bisecting bracket [{a:.4f}, {b:.4f}]")
            elif abs(e) > tol1 and None not in (fx, fw, fv):
                r = (x - w) * (fx - fv)
                q = (x - v) * (fx - fw)
                p = (x - v) * q - (x - w) * r
                q = 2.0 * (q - r)
                if q > 0.0:
                    p = -p
                q = abs(q)
                etemp = e
                e = d
                if abs(p) >= abs(0.5 * q * etemp) or p <= q * (a - x) or p >= q * (b - x):
                    e = (a - x) if x >= m else (b - x)
                    d = GOLDEN * e
                else:
                    d = p / q
                    u = x + d
                    if (u - a) < tol2 or (b - u) < tol2:
                        d = math.copysign(tol1, m - x)
                    parabolic = True
            else:
                e = (a - x) if x >= m else (b - x)
                d = GOLDEN * e

            u = x + d if abs(d) >= tol1 else x + math.copysign(tol1, m - x)
            fu = self._loss_at(u)

            if parabolic and fu is not None and not _fits_parabola(x, fx, w, fw, v, fv, u, fu, shape_tol):
                bisect_next = True

            if fu is None:
                # No information at u, search away from it
                if u < x:
                    a = u
                else:
                    b = u
                continue

            if fx is None or fu <= fx:
                if u >= x:
                    a = x
                else:
                    b = x
                v, fv = w, fw
                w, fw = x, fx
                x, fx = u, fu
            else:
                if u < x:
                    a = u
                else:
                    b = u
                if fw is None or fu <= fw or w == x:
                    v, fv = w, fw
                    w, fw = u, fu
                elif fv is None or fu <= fv or v == x or v == w:
                    v, fv = u, fu
        return False


def _fits_parabola(x, fx, w, fw, v, fv, u, fu, shape_tol):
    """
    Check that the loss at u agrees with the convex parabola through x, w and v.
    """
    if len({x, w, v}) < 3:
        return True
    # Second divided difference, twice the leading coefficient
    curvature = 2.0 * ((fv - fx) / (v - x) - (fw - fx) / (w - x)) / (v - w)
    if curvature <= 0:
        return False
    predicted = (fx * (u - w) * (u - v) / ((x - w) * (x - v))
                 + fw * (u - x) * (u - v) / ((w - x) * (w - v))
                 + fv * (u - x) * (u - w) / ((v - x) * (v - w)))
    scale = max(abs(fx), abs(fu), np.finfo(float).tiny)
    return abs(fu - predicted) <= shape_tol * scale


def tune_learn(adapter, request, statistic=anderson_darling_statistic):
    """Grid calibration of the learning rate over ``request.grid``."""
    evaluator = CalibrationLossEvaluator(adapter, request, statistic, n_jobs=1)
    return GridTuner(evaluator).tune()


def tune_learn_fast(adapter, request, statistic=anderson_darling_statistic):
    """Adaptive calibration of the learning rate within ``request.bounds``."""
    evaluator = CalibrationLossEvaluator(adapter, request, statistic, n_jobs=request.parallel)
    return AdaptiveTuner(evaluator).tune()
