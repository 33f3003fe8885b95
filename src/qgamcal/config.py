"""
Configuration of a calibration run.

A CalibrationRequest is built once per tuning call, validated up front and never
modified afterwards. User options arrive as a ``control`` dict which is merged
over DEFAULT_CONTROL.
"""

import math
from dataclasses import dataclass, replace as dc_replace
from typing import Optional, Tuple, Union

import numpy as np

from qgamcal.exceptions import CalibrationInputError

DEFAULT_CONTROL = {
    "K": 50,                    # bootstrap replicates per candidate
    "err": "auto",              # loss smoothing width, or "auto"
    "parallel": 1,              # worker count, 1 = serial
    "tolerance": 1e-3,          # adaptive search stopping width (log scale)
    "max_evals": 30,            # adaptive search evaluation cap
    "max_fail_fraction": 0.5,   # tolerated share of failed replicates per candidate
    "accept_partial": False,    # count partially converged fits as converged
    "shape_tol": 0.25,          # parabola disagreement that triggers bisection
    "backend": "loky",          # joblib backend for the worker pool
    "progress": False,          # show a tqdm progress bar
    "common_replicates": False, # share bootstrap samples across candidates
    "seed": None,
}


@dataclass(frozen=True)
class CalibrationRequest:
    """
    Immutable description of one calibration run.

    Attributes:
        qu: Quantile level in (0, 1).
        err: Loss smoothing width relative to the response scale, or "auto".
        grid: Candidate log learning rates for the grid tuner.
        bounds: (lower, upper) log learning rates for the adaptive tuner.
        K: Number of bootstrap replicates.
        parallel: Number of workers (1 = serial, -1 = all cores).
        seed: Seed from which every random stream is derived.
    """
    qu: float
    err: Union[float, str] = "auto"
    grid: Optional[Tuple[float, ...]] = None
    bounds: Optional[Tuple[float, float]] = None
    K: int = 50
    parallel: int = 1
    seed: int = 0
    tolerance: float = 1e-3
    max_evals: int = 30
    max_fail_fraction: float = 0.5
    accept_partial: bool = False
    shape_tol: float = 0.25
    backend: str = "loky"
    progress: bool = False
    common_replicates: bool = False

    def __post_init__(self):
        _validate(self)

    @classmethod
    def from_control(cls, qu, control=None, grid=None, bounds=None, **overrides):
        """
        Build a request from a qgam-style ``control`` dict.

        Args:
            qu: Quantile level.
            control: Dict of options overriding DEFAULT_CONTROL.
            grid: Optional sequence of candidate log learning rates.
            bounds: Optional (lower, upper) pair for adaptive search.
            **overrides: Options taking precedence over ``control``.

        Returns:
            A validated CalibrationRequest. When no seed is given one is drawn
            from OS entropy and stored, so the run can be repeated exactly.
        """
        options = dict(DEFAULT_CONTROL)
        for source in (control or {}, overrides):
            unknown = set(source) - set(DEFAULT_CONTROL)
            if unknown:
                raise CalibrationInputError(f"Unknown control options: {sorted(unknown)}. Recognised: {sorted(DEFAULT_CONTROL)}")
            options.update(source)
        if options["seed"] is None:
            options["seed"] = int(np.random.SeedSequence().entropy % (2 ** 32))
        return cls(
            qu=qu,
            grid=None if grid is None else tuple(float(g) for g in np.atleast_1d(grid)),
            bounds=None if bounds is None else tuple(float(b) for b in bounds),
            **options,
        )

    def replace(self, **changes):
        """Copy of this request with some fields changed (re-validated)."""
        return dc_replace(self, **changes)


def _validate(request):
    qu = request.qu
    if not isinstance(qu, (int, float, np.floating)) or not 0 < qu < 1:
        raise CalibrationInputError(f"Quantile level qu must lie in (0, 1), got {qu!r}")
    err = request.err
    if isinstance(err, str):
        if err != "auto":
            raise CalibrationInputError(f"err must be a positive number or 'auto', got {err!r}")
    elif not (math.isfinite(err) and err > 0):
        raise CalibrationInputError(f"err must be a positive number or 'auto', got {err!r}")
    if request.grid is not None:
        validate_grid(request.grid)
    if request.bounds is not None:
        validate_bounds(request.bounds)
    if int(request.K) != request.K or request.K < 1:
        raise CalibrationInputError(f"K must be a positive integer, got {request.K!r}")
    if request.parallel == 0 or int(request.parallel) != request.parallel:
        raise CalibrationInputError(f"parallel must be a non-zero integer, got {request.parallel!r}")
    if not request.tolerance > 0:
        raise CalibrationInputError(f"tolerance must be positive, got {request.tolerance!r}")
    if int(request.max_evals) != request.max_evals or request.max_evals < 1:
        raise CalibrationInputError(f"max_evals must be a positive integer, got {request.max_evals!r}")
    if not 0 <= request.max_fail_fraction <= 1:
        raise CalibrationInputError(f"max_fail_fraction must lie in [0, 1], got {request.max_fail_fraction!r}")
    if not request.shape_tol > 0:
        raise CalibrationInputError(f"shape_tol must be positive, got {request.shape_tol!r}")
    if int(request.seed) != request.seed or request.seed < 0:
        raise CalibrationInputError(f"seed must be a non-negative integer, got {request.seed!r}")


def validate_grid(grid):
    """Check a candidate grid and return it as a sorted tuple of floats."""
    values = np.asarray(grid, dtype=float).ravel()
    if values.size == 0:
        raise CalibrationInputError("The grid of log learning rates is empty")
    if not np.all(np.isfinite(values)):
        raise CalibrationInputError(f"The grid of log learning rates must be finite, got {values.tolist()}")
    if np.unique(values).size != values.size:
        raise CalibrationInputError(f"The grid of log learning rates contains duplicates: {values.tolist()}")
    return tuple(np.sort(values).tolist())


def validate_bounds(bounds):
    """Check an adaptive search interval and return it as (lower, upper)."""
    if len(bounds) != 2:
        raise CalibrationInputError(f"bounds must be a (lower, upper) pair, got {bounds!r}")
    lower, upper = float(bounds[0]), float(bounds[1])
    if not (math.isfinite(lower) and math.isfinite(upper)):
        raise CalibrationInputError(f"bounds must be finite, got {bounds!r}")
    if not lower < upper:
        raise CalibrationInputError(f"bounds must satisfy lower < upper, got {bounds!r}")
    return lower, upper
