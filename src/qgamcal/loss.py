"""
Pinball (check) loss and its smooth approximation.

The smooth version is the logistic soft-max blend

    rho_h(r) = h * log(1 + exp(r / h)) - (1 - qu) * r,    r = y - mu,

which exceeds the pinball loss by at most h * log(2) and converges to it as the
width h goes to zero.
"""

import numpy as np
from scipy.special import expit
from scipy.stats import norm

from qgamcal.exceptions import CalibrationInputError

ERR_MIN = 1e-3
ERR_MAX = 1.0


def pinball_loss(y_true, mu, qu):
    """
    Elementwise pinball loss.

    Parameters:
    y_true (array-like): Observed responses.
    mu (array-like): Predicted quantiles.
    qu (float): Quantile level in (0, 1).

    Returns:
    ndarray: max(qu * r, (qu - 1) * r) with r = y_true - mu.
    """
    r = np.asarray(y_true, dtype=float) - np.asarray(mu, dtype=float)
    return np.maximum(qu * r, (qu - 1) * r)


def smooth_pinball_loss(y_true, mu, qu, width):
    """
    Elementwise smoothed pinball loss at smoothing width ``width`` (> 0).

    Computed through logaddexp so large residuals never overflow.
    """
    r = np.asarray(y_true, dtype=float) - np.asarray(mu, dtype=float)
    return width * np.logaddexp(0.0, r / width) - (1 - qu) * r


def smooth_pinball_grad(y_true, mu, qu, width):
    """Derivative of the smoothed pinball loss with respect to ``mu``."""
    r = np.asarray(y_true, dtype=float) - np.asarray(mu, dtype=float)
    return (1 - qu) - expit(r / width)


def smooth_pinball_hess(y_true, mu, qu, width):
    """Second derivative of the smoothed pinball loss with respect to ``mu``."""
    r = np.asarray(y_true, dtype=float) - np.asarray(mu, dtype=float)
    p = expit(r / width)
    return p * (1 - p) / width


def robust_scale(y):
    """
    Robust scale of the response: 1.4826 * MAD.

    Falls back to the standard deviation, then to 1.0, when the data are too
    concentrated for the MAD to be positive.
    """
    y = np.asarray(y, dtype=float).ravel()
    scale = 1.4826 * np.median(np.abs(y - np.median(y)))
    if not scale > 0:
        scale = np.std(y)
    if not scale > 0:
        scale = 1.0
    return float(scale)


def select_err(qu, sigma, n=None, avar=None, err="auto"):
    """
    Choose the loss smoothing parameter ``err`` (width = err * sigma).

    A numeric ``err`` is returned unchanged. With ``err="auto"`` the width is
    chosen so that the worst-case gap between smoothed and exact loss,
    width * log(2), equals one standard error of the quantile estimate:

        err = sqrt(avar) / (sigma * log(2)),  clipped to [1e-3, 1].

    Args:
        qu: Quantile level.
        sigma: Robust scale of the response.
        n: Number of observations, used when avar is not supplied.
        avar: Asymptotic variance of the quantile estimate. When missing the
            Gaussian sample-quantile variance qu(1-qu) sigma^2 / (n phi(z_qu)^2)
            is used.
        err: A positive number or "auto".

    Returns:
        float: The smoothing parameter err.
    """
    if not isinstance(err, str):
        if not err > 0:
            raise CalibrationInputError(f"err must be positive, got {err!r}")
        return float(err)
    if err != "auto":
        raise CalibrationInputError(f"err must be a positive number or 'auto', got {err!r}")
    if avar is None:
        if n is None or n < 1:
            raise CalibrationInputError("Automatic err selection needs either avar or the number of observations n")
        density = norm.pdf(norm.ppf(qu))
        avar = qu * (1 - qu) * sigma ** 2 / (n * density ** 2)
    if not avar > 0:
        raise CalibrationInputError(f"Asymptotic variance must be positive, got {avar!r}")
    value = np.sqrt(avar) / (sigma * np.log(2))
    return float(np.clip(value, ERR_MIN, ERR_MAX))
