"""
Deterministic bootstrap replicates.

Replicate k of candidate c is drawn from its own generator seeded with
(seed, c, k), so the same replicate comes out no matter which worker asks for it
or in which order.
"""

import numpy as np

from qgamcal.utils import derive_rng


class BootstrapSampler:
    """
    Lazy, finite sequence of K resampled index sets.

    Args:
        n: Number of observations.
        K: Number of replicates.
        seed: Global seed of the calibration run.
        candidate_index: Index of the learning-rate candidate owning these replicates.
    """

    def __init__(self, n, K, seed, candidate_index=0):
        if n < 1:
            raise ValueError(f"Cannot bootstrap {n} observations")
        if K < 1:
            raise ValueError(f"Number of replicates must be positive, got {K}")
        self.n = int(n)
        self.K = int(K)
        self.seed = int(seed)
        self.candidate_index = int(candidate_index)

    def __len__(self):
        return self.K

    def __iter__(self):
        for k in range(self.K):
            yield self.replicate(k)

    def replicate(self, k):
        """Index multiset of replicate ``k`` (size n, drawn with replacement)."""
        if not 0 <= k < self.K:
            raise IndexError(f"Replicate {k} out of range for K={self.K}")
        rng = derive_rng(self.seed, self.candidate_index, k)
        return rng.integers(0, self.n, size=self.n)

    def weights(self, indices):
        """Count of each observation in a replicate, usable as fit weights."""
        return count_weights(indices, self.n)


def count_weights(indices, n):
    """Bootstrap index multiset as a length-n vector of observation counts."""
    return np.bincount(np.asarray(indices), minlength=n).astype(float)
