"""
Result containers for learning-rate calibration.

FitOutcome is produced once per refit and thrown away after aggregation.
CalibrationPoint, CalibrationCurve and CalibrationResult are what callers see.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd


class Convergence(str, Enum):
    """Convergence state reported by the fitting engine for one fit."""
    FULL = "full"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(frozen=True)
class FitOutcome:
    """
    Result of a single call to the fitting engine.

    Attributes:
        fitted: Linear predictor at every original observation.
        edf: Effective degrees of freedom of each smooth term.
        convergence: Convergence state of the inner penalized fit.
        n_iter: Number of outer iterations used by the engine.
        se_fit: Posterior standard deviation of the linear predictor, if available.
        message: Reason for a failed or partial fit.
    """
    fitted: np.ndarray
    edf: Dict[str, float] = field(default_factory=dict)
    convergence: Convergence = Convergence.FULL
    n_iter: int = 0
    se_fit: Optional[np.ndarray] = None
    message: str = ""

    @property
    def failed(self):
        return self.convergence == Convergence.FAILED

    @classmethod
    def failure(cls, n, message=""):
        """Outcome used when the engine could not produce a fit."""
        return cls(fitted=np.full(n, np.nan), convergence=Convergence.FAILED, message=message)


@dataclass(frozen=True)
class CalibrationPoint:
    """One evaluated log learning rate."""
    log_rate: float
    loss: Optional[float]
    se: Optional[float] = None
    edf: Dict[str, float] = field(default_factory=dict)
    converged: bool = False
    n_replicates: int = 0
    n_failed: int = 0
    n_partial: int = 0
    candidate_index: int = 0

    @property
    def informative(self):
        """False when the loss could not be computed at this learning rate."""
        return self.loss is not None


@dataclass(frozen=True)
class CalibrationCurve:
    """
    Calibration points sorted by log learning rate.

    Every point carries the same EDF term names. Use ``from_points`` to build a
    curve from points in arbitrary order.
    """
    points: Tuple[CalibrationPoint, ...]

    def __post_init__(self):
        rates = [p.log_rate for p in self.points]
        if any(b <= a for a, b in zip(rates[:-1], rates[1:])):
            raise ValueError(f"Calibration points must be strictly increasing in log rate, got {rates}")
        term_sets = {tuple(sorted(p.edf)) for p in self.points}
        if len(term_sets) > 1:
            raise ValueError(f"Calibration points disagree on EDF terms: {sorted(term_sets)}")

    @classmethod
    def from_points(cls, points):
        """
        Sort points by log rate and align their EDF vectors.

        Points without EDF information (degenerate candidates) get NaN for every
        term seen elsewhere on the curve.
        """
        points = sorted(points, key=lambda p: p.log_rate)
        terms = None
        for p in points:
            if not p.edf:
                continue
            if terms is None:
                terms = sorted(p.edf)
            elif sorted(p.edf) != terms:
                raise ValueError(f"EDF terms {sorted(p.edf)} at log rate {p.log_rate} differ from {terms}")
        if terms:
            points = [p if p.edf else _with_edf(p, {t: float("nan") for t in terms}) for p in points]
        return cls(points=tuple(points))

    def __len__(self):
        return len(self.points)

    def __iter__(self):
        return iter(self.points)

    @property
    def log_rates(self):
        return np.array([p.log_rate for p in self.points], dtype=float)

    @property
    def losses(self):
        """Losses as floats, NaN where a point is degenerate."""
        return np.array([np.nan if p.loss is None else p.loss for p in self.points], dtype=float)

    @property
    def term_names(self):
        return sorted(self.points[0].edf) if self.points else []

    def edf_matrix(self):
        """EDF values with shape (n_points, n_terms), columns ordered as ``term_names``."""
        terms = self.term_names
        return np.array([[p.edf[t] for t in terms] for p in self.points], dtype=float).reshape(len(self.points), len(terms))

    def to_frame(self):
        """Tabular view keyed by log rate, one ``edf_<term>`` column per smooth term."""
        frame = pd.DataFrame({
            "loss": self.losses,
            "se": [np.nan if p.se is None else p.se for p in self.points],
            "converged": [p.converged for p in self.points],
            "n_failed": [p.n_failed for p in self.points],
        }, index=pd.Index(self.log_rates, name="log_rate"))
        edf = self.edf_matrix()
        for j, term in enumerate(self.term_names):
            frame[f"edf_{term}"] = edf[:, j]
        return frame


@dataclass(frozen=True)
class CalibrationResult:
    """
    Output of a tuning run.

    In grid mode ``curve`` holds every candidate. In adaptive mode ``trace``
    holds the visited points in visiting order and ``curve`` the same points
    sorted by log rate.
    """
    mode: str
    selected_log_rate: Optional[float]
    converged: bool
    curve: CalibrationCurve
    best: Optional[CalibrationPoint] = None
    trace: Tuple[CalibrationPoint, ...] = ()
    n_evals: int = 0
    search_converged: bool = True
    request: object = None

    @property
    def curve_or_trace(self):
        return self.curve if self.mode == "grid" else self.trace

    def decision_points(self):
        """Points that entered the choice of the selected learning rate."""
        if self.mode == "grid":
            return [p for p in self.curve if p.informative]
        return [self.best] if self.best is not None else []


def _with_edf(point, edf):
    return replace(point, edf=edf)


def select_best(points):
    """
    Lowest-loss informative point; ties go to the lower log rate.

    Returns None when no point carries a loss.
    """
    informative = [p for p in points if p.informative]
    if not informative:
        return None
    return min(informative, key=lambda p: (p.loss, p.log_rate))
