"""
Additive quantile model fitted by penalized IRLS on the smoothed pinball loss.

Basis construction, penalties and each penalized least-squares solve are
delegated to pygam. This module only supplies the working response and weights
of the smoothed pinball loss scaled by the learning rate, and reports EDF,
posterior standard errors and convergence in a FitOutcome.
"""

import logging

import numpy as np
from pygam import GAM
from pygam.distributions import NormalDist

from qgamcal.exceptions import RefitFailure
from qgamcal.loss import robust_scale, smooth_pinball_grad
from qgamcal.results import Convergence, FitOutcome

logger = logging.getLogger(__name__)

# rho_h'' <= CURVATURE_BOUND / h everywhere; the fixed IRLS weight majorizes the loss
CURVATURE_BOUND = 0.25


class SmoothPinballGAM:
    """
    Fitting engine for a quantile GAM at a fixed learning rate.

    The objective is

        sum_i w_i * rho_h(y_i - mu_i) / exp(log_rate) + penalty(beta)

    so larger log learning rates shrink the loss relative to the penalty, give
    smoother fits (lower EDF) and wider posterior intervals.

    Args:
        n_splines: Number of splines per smooth term.
        lam: Smoothing parameter passed to every pygam term.
        max_iter: Maximum number of outer IRLS iterations.
        tol: Relative change of the linear predictor declaring full convergence.
        partial_tol: Relative change accepted as partial convergence when max_iter is hit.
        feature_names: Optional names used in the EDF mapping, one per column of X.
    """

    def __init__(self, n_splines=10, lam=0.6, max_iter=50, tol=1e-6, partial_tol=1e-3, feature_names=None):
        self.n_splines = n_splines
        self.lam = lam
        self.max_iter = max_iter
        self.tol = tol
        self.partial_tol = partial_tol
        self.feature_names = feature_names

    def _new_gam(self):
        return GAM(distribution=NormalDist(scale=1.0), link='identity',
                   n_splines=self.n_splines, lam=self.lam)

    def fit(self, X, y, weights, qu, width, log_rate):
        """
        Fit once and summarise the fit. Never raises on numerical trouble.

        Returns:
            FitOutcome with fitted values at every row of X.
        """
        X, y = _as_design(X), np.asarray(y, dtype=float).ravel()
        try:
            _, outcome = self.fit_model(X, y, weights, qu, width, log_rate)
        except (RefitFailure, np.linalg.LinAlgError, FloatingPointError, ValueError) as e:
            logger.debug(f"Fit failed at log rate {log_rate:.4f}: {e}")
            return FitOutcome.failure(len(y), message=str(e))
        return outcome

    def fit_model(self, X, y, weights, qu, width, log_rate):
        """
        Fit and return the pygam model together with its FitOutcome.

        Raises:
            RefitFailure: If the fit produced non-finite values.
        """
        X, y = _as_design(X), np.asarray(y, dtype=float).ravel()
        n = len(y)
        weights = np.ones(n) if weights is None else np.asarray(weights, dtype=float).ravel()
        if len(weights) != n or X.shape[0] != n:
            raise ValueError(f"X, y and weights must have the same length, got {X.shape[0]}, {n}, {len(weights)}")
        rate = np.exp(-log_rate)
        scale = robust_scale(y)
        used = weights > 0

        eta = np.full(n, np.quantile(y[used], qu))
        gam = None
        delta = np.inf
        n_iter = 0
        for n_iter in range(1, self.max_iter + 1):
            grad = smooth_pinball_grad(y, eta, qu, width)
            z = eta - grad * width / CURVATURE_BOUND
            w = weights * rate * CURVATURE_BOUND / width

            gam = self._new_gam()
            gam.fit(X, z, weights=w)
            eta_new = gam.predict(X)
            if not np.all(np.isfinite(eta_new)):
                raise RefitFailure(f"Non-finite linear predictor after {n_iter} iterations")

            delta = np.max(np.abs(eta_new - eta)) / scale
            eta = eta_new
            if delta < self.tol:
                break

        if delta < self.tol:
            convergence = Convergence.FULL
            message = ""
        elif delta < self.partial_tol:
            convergence = Convergence.PARTIAL
            message = f"IRLS stopped after {n_iter} iterations with relative change {delta:.2e}"
        else:
            convergence = Convergence.FAILED
            message = f"IRLS did not converge, relative change {delta:.2e} after {n_iter} iterations"
        if convergence != Convergence.FULL:
            logger.debug(message)

        outcome = FitOutcome(
            fitted=eta,
            edf=self._term_edf(gam),
            convergence=convergence,
            n_iter=n_iter,
            se_fit=_posterior_se(gam, X),
            message=message,
        )
        return gam, outcome

    def _term_edf(self, gam):
        edof = np.asarray(gam.statistics_['edof_per_coef'])
        edf = {}
        for i, term in enumerate(gam.terms):
            if term.isintercept:
                continue
            idx = gam.terms.get_coef_indices(i)
            edf[self._term_name(term)] = float(edof[idx].sum())
        return edf

    def _term_name(self, term):
        feature = getattr(term, 'feature', None)
        if isinstance(feature, (int, np.integer)):
            label = self.feature_names[feature] if self.feature_names is not None else feature
            return f"s({label})"
        return repr(term)


def _as_design(X):
    X = np.asarray(X, dtype=float)
    return X.reshape(-1, 1) if X.ndim == 1 else X


def _posterior_se(gam, X):
    modelmat = gam.terms.build_columns(X).toarray()
    cov = gam.statistics_['cov']
    var = np.einsum('ij,jk,ik->i', modelmat, cov, modelmat)
    return np.sqrt(np.maximum(var, 0.0))
