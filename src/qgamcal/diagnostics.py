"""
Checks on a calibration run and on the production fit it leads to.

Everything here only reads results; nothing is refitted.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd

from qgamcal.results import Convergence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConvergenceReport:
    """
    Human-checkable summary of a calibration result.

    Attributes:
        fit_converged: Every point that entered the decision (and the production
            fit, when given) fully converged.
        non_converged: Log rates of informative points flagged as not converged.
        degenerate: Log rates where no calibration loss could be computed.
        exceedance: Fraction of responses below the fitted quantile.
        bias: exceedance - qu.
        bias_se: Binomial standard error sqrt(qu(1-qu)/n).
        bias_significant: |bias| > 2 * bias_se.
        n_local_minima: Local minima of the loss along the sorted points.
        curvature_sign_changes: Sign changes of the discrete second derivative.
        single_minimum: The loss has exactly one local minimum.
        minimum_on_boundary: The lowest loss sits on the first or last point.
    """
    fit_converged: bool
    non_converged: List[float] = field(default_factory=list)
    degenerate: List[float] = field(default_factory=list)
    search_converged: bool = True
    selected_log_rate: Optional[float] = None
    exceedance: Optional[float] = None
    bias: Optional[float] = None
    bias_se: Optional[float] = None
    bias_significant: Optional[bool] = None
    n_local_minima: int = 0
    curvature_sign_changes: int = 0
    single_minimum: bool = False
    minimum_on_boundary: bool = False

    def summary(self):
        lines = ["Calibration check"]
        if self.selected_log_rate is None:
            lines.append("  selected log learning rate: none (no usable calibration loss)")
        else:
            lines.append(f"  selected log learning rate: {self.selected_log_rate:.4f}")
        lines.append(f"  inner fits converged: {self.fit_converged}")
        if self.non_converged:
            lines.append(f"  not converged at log rates: {', '.join(f'{r:.4f}' for r in self.non_converged)}")
        if self.degenerate:
            lines.append(f"  no loss at log rates: {', '.join(f'{r:.4f}' for r in self.degenerate)}")
        lines.append(f"  search converged: {self.search_converged}")
        lines.append(f"  local minima: {self.n_local_minima}, curvature sign changes: {self.curvature_sign_changes}")
        if not self.single_minimum:
            lines.append("  WARNING: the calibration loss has no clear single minimum, try a larger K or err")
        if self.minimum_on_boundary:
            lines.append("  WARNING: the minimum lies on the boundary of the searched range")
        if self.bias is not None:
            lines.append(f"  fraction of residuals below the fit: {self.exceedance:.4f} (bias {self.bias:+.4f}, se {self.bias_se:.4f})")
            if self.bias_significant:
                lines.append("  WARNING: the bias exceeds two standard errors, consider decreasing err")
        return "\n".join(lines)

    def log(self, level=logging.INFO):
        for line in self.summary().splitlines():
            logger.log(level, line)


def check_calibration(result=None, y=None, outcome=None, qu=None, fitted=None):
    """
    Summarise the convergence and calibration state of a tuning run.

    Args:
        result: CalibrationResult, optional when only a production fit is checked.
        y: Observed responses, needed for the bias estimate.
        outcome: FitOutcome of the production fit at the selected rate.
        qu: Quantile level; taken from ``result.request`` when missing.
        fitted: Fitted quantiles, overriding ``outcome.fitted``.

    Returns:
        ConvergenceReport
    """
    if qu is None and result is not None and result.request is not None:
        qu = result.request.qu

    non_converged, degenerate = [], []
    fit_converged = True
    n_minima, sign_changes, single, on_boundary = 0, 0, False, False
    if result is not None:
        decision = result.decision_points()
        fit_converged = bool(decision) and all(p.converged for p in decision)
        non_converged = [p.log_rate for p in result.curve if p.informative and not p.converged]
        degenerate = [p.log_rate for p in result.curve if not p.informative]
        rates = np.array([p.log_rate for p in result.curve if p.informative])
        losses = np.array([p.loss for p in result.curve if p.informative])
        n_minima, sign_changes, on_boundary = curve_shape(rates, losses)
        single = n_minima == 1

    if outcome is not None:
        fit_converged = fit_converged and outcome.convergence == Convergence.FULL
        if fitted is None and not outcome.failed:
            fitted = outcome.fitted

    exceedance = bias = bias_se = significant = None
    if y is not None and fitted is not None:
        if qu is None:
            raise ValueError("The quantile level qu is needed to estimate the bias")
        exceedance, bias, bias_se = quantile_bias(y, fitted, qu)
        significant = bool(abs(bias) > 2 * bias_se)

    return ConvergenceReport(
        fit_converged=fit_converged,
        non_converged=non_converged,
        degenerate=degenerate,
        search_converged=True if result is None else result.search_converged,
        selected_log_rate=None if result is None else result.selected_log_rate,
        exceedance=exceedance,
        bias=bias,
        bias_se=bias_se,
        bias_significant=significant,
        n_local_minima=n_minima,
        curvature_sign_changes=sign_changes,
        single_minimum=single,
        minimum_on_boundary=on_boundary,
    )


def quantile_bias(y, fitted, qu):
    """
    Empirical exceedance fraction and its deviation from ``qu``.

    Returns:
        (fraction of y below fitted, fraction - qu, binomial standard error)
    """
    y = np.asarray(y, dtype=float).ravel()
    fitted = np.asarray(fitted, dtype=float).ravel()
    if len(y) != len(fitted):
        raise ValueError(f"y has {len(y)} values but fitted has {len(fitted)}")
    exceedance = float(np.mean(y < fitted))
    return exceedance, exceedance - qu, float(np.sqrt(qu * (1 - qu) / len(y)))


def curve_shape(rates, losses):
    """
    Shape of a loss curve sampled at sorted ``rates``.

    Flat steps are ignored when counting slope and curvature sign changes, so a
    tie between two neighbouring points still counts as one minimum.

    Returns:
        (number of local minima, curvature sign changes, minimum on boundary)
    """
    order = np.argsort(rates)
    rates, losses = np.asarray(rates, dtype=float)[order], np.asarray(losses, dtype=float)[order]
    if len(rates) == 0:
        return 0, 0, False
    if len(rates) == 1:
        return 1, 0, True

    slopes = np.sign(np.diff(losses))
    slopes = slopes[slopes != 0]
    if len(slopes) == 0:
        n_minima = 1
    else:
        n_minima = int(np.sum((slopes[:-1] < 0) & (slopes[1:] > 0)))
        n_minima += int(slopes[0] > 0) + int(slopes[-1] < 0)

    sign_changes = 0
    if len(rates) >= 3:
        first = np.diff(losses) / np.diff(rates)
        second = np.sign(np.diff(first) / (rates[2:] - rates[:-2]))
        second = second[second != 0]
        sign_changes = int(np.sum(second[1:] != second[:-1]))

    best = np.flatnonzero(losses == losses.min())
    on_boundary = bool(best[0] == 0 or best[-1] == len(losses) - 1)
    return n_minima, sign_changes, on_boundary


def conditional_exceedance(y, fitted, v, qu, nbin=10):
    """
    Fraction of responses below the fitted quantile within bins of a covariate.

    Bins are quantile bins of ``v``. A well calibrated fit keeps every bin within
    ``qu +/- 2 * sqrt(qu(1-qu)/n_bin)``.

    Returns:
        pandas.DataFrame with one row per bin: bin, n, exceedance, lower, upper, outside.
    """
    y = np.asarray(y, dtype=float).ravel()
    fitted = np.asarray(fitted, dtype=float).ravel()
    v = np.asarray(v, dtype=float).ravel()
    if not len(y) == len(fitted) == len(v):
        raise ValueError("y, fitted and v must have the same length")
    frame = pd.DataFrame({"below": y < fitted, "bin": pd.qcut(v, q=nbin, duplicates="drop")})
    table = frame.groupby("bin", observed=True)["below"].agg(["size", "mean"]).rename(columns={"size": "n", "mean": "exceedance"})
    band = 2 * np.sqrt(qu * (1 - qu) / table["n"])
    table["lower"] = qu - band
    table["upper"] = qu + band
    table["outside"] = (table["exceedance"] < table["lower"]) | (table["exceedance"] > table["upper"])
    return table.reset_index()
