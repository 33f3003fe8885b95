"""
Calibration loss at a single log learning rate.

The full data and K bootstrap replicates are refitted at the same learning rate.
Each replicate is compared with the full fit through a calibration statistic;
the loss is the replicate average and its standard error the replicate spread.
"""

import logging
import warnings

import numpy as np
from joblib import Parallel, delayed
from scipy.stats import norm

from qgamcal.bootstrap import BootstrapSampler
from qgamcal.exceptions import CalibrationDegenerateWarning
from qgamcal.results import CalibrationPoint, Convergence

logger = logging.getLogger(__name__)


def anderson_darling_statistic(full, replicate, log_rate=None):
    """
    Anderson-Darling distance between standardized bootstrap deviations and N(0, 1).

    The deviation of the replicate fit from the full fit is divided by the
    posterior standard deviation of the full fit. When the posterior intervals
    are calibrated these z-scores are roughly standard normal; intervals that are
    too narrow spread them out and intervals that are too wide squeeze them, both
    of which raise the statistic.

    Args:
        full: FitOutcome of the full-data fit, must carry ``se_fit``.
        replicate: FitOutcome of one bootstrap replicate.
        log_rate: Unused, part of the statistic signature.

    Returns:
        float: The A^2 statistic.
    """
    if full.se_fit is None:
        raise ValueError("The Anderson-Darling calibration statistic needs posterior standard errors (se_fit)")
    se = np.asarray(full.se_fit, dtype=float)
    keep = se > 0
    if not np.any(keep):
        return float("nan")
    z = np.sort((np.asarray(replicate.fitted)[keep] - np.asarray(full.fitted)[keep]) / se[keep])
    n = len(z)
    i = np.arange(1, n + 1)
    terms = (2 * i - 1) * (norm.logcdf(z) + norm.logsf(z[::-1]))
    return float(-n - np.mean(terms))


class CalibrationLossEvaluator:
    """
    Turn many refits at one learning rate into a CalibrationPoint.

    Args:
        adapter: ModelRefitAdapter bound to the data.
        request: CalibrationRequest (K, seed, failure threshold, ...).
        statistic: Callable ``statistic(full, replicate, log_rate) -> float``.
        n_jobs: Workers used for the replicates of one candidate.
    """

    def __init__(self, adapter, request, statistic=anderson_darling_statistic, n_jobs=1):
        self.adapter = adapter
        self.request = request
        self.statistic = statistic
        self.n_jobs = n_jobs

    def sampler(self, candidate_index):
        stream = 0 if self.request.common_replicates else candidate_index
        return BootstrapSampler(self.adapter.n, self.request.K, self.request.seed, stream)

    def evaluate(self, log_rate, candidate_index=0):
        """
        Calibration loss, its standard error and mean EDF at ``log_rate``.

        Replicates are only fitted when the full-data fit succeeded, since the
        statistic cannot be computed without it.
        """
        full = self.adapter.refit(log_rate)
        if full.failed:
            replicates = []
        elif self.n_jobs == 1:
            replicates = [self.adapter.refit(log_rate, idx) for idx in self.sampler(candidate_index)]
        else:
            replicates = Parallel(n_jobs=self.n_jobs, backend=self.request.backend)(
                delayed(self.adapter.refit)(log_rate, idx) for idx in self.sampler(candidate_index)
            )
        return self.aggregate(log_rate, full, replicates, candidate_index)

    def aggregate(self, log_rate, full, replicates, candidate_index=0):
        """Combine the full fit and the replicate fits into one CalibrationPoint."""
        K = self.request.K
        acceptable = {Convergence.FULL, Convergence.PARTIAL} if self.request.accept_partial else {Convergence.FULL}

        ok = [r for r in replicates if not r.failed]
        values = []
        if not full.failed:
            for r in ok:
                values.append(self.statistic(full, r, log_rate))
        values = np.asarray(values, dtype=float)
        finite = np.isfinite(values)
        used = [r for r, keep in zip(ok, finite) if keep]
        values = values[finite]

        n_failed = K - len(used)
        n_partial = sum(r.convergence == Convergence.PARTIAL for r in used + [full])
        edf = _mean_edf(used) if used else (dict(full.edf) if not full.failed else {})

        if full.failed or len(values) == 0:
            reason = "full-data fit failed" if full.failed else "no bootstrap replicate produced a finite statistic"
            message = f"No calibration loss at log rate {log_rate:.4f}: {reason}"
            logger.warning(message)
            warnings.warn(message, CalibrationDegenerateWarning)
            return CalibrationPoint(
                log_rate=float(log_rate), loss=None, se=None, edf=edf, converged=False,
                n_replicates=K, n_failed=n_failed, n_partial=n_partial,
                candidate_index=candidate_index,
            )

        loss = float(np.mean(values))
        se = float(np.std(values, ddof=1) / np.sqrt(len(values))) if len(values) > 1 else None
        within_threshold = n_failed / K <= self.request.max_fail_fraction
        converged = within_threshold and all(r.convergence in acceptable for r in used + [full])
        if not within_threshold:
            logger.info(f"log rate {log_rate:.4f}: {n_failed}/{K} replicates failed, above the tolerated fraction {self.request.max_fail_fraction}")
        logger.debug(f"log rate {log_rate:.4f}: loss={loss:.6f}, converged={converged}")
        return CalibrationPoint(
            log_rate=float(log_rate), loss=loss, se=se, edf=edf, converged=converged,
            n_replicates=K, n_failed=n_failed, n_partial=n_partial,
            candidate_index=candidate_index,
        )


def _mean_edf(outcomes):
    terms = sorted(outcomes[0].edf)
    return {t: float(np.mean([o.edf[t] for o in outcomes])) for t in terms}
