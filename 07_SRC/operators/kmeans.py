# ==================================================
# ================  MODULE: kmeans  ================
# ==================================================
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np

from core.config import KMeansConfig
from core.errors import ConvergenceError, InvalidInputError
from operators.histogram import Histogram
from utils.logger import get_logger, get_debug_logger

# Public API
__all__ = ["KMeansResult", "KMeansClusterer", "kmeans_histogram_1d", "initial_centers"]

logger = get_logger("nd_thresholder.kmeans")


@dataclass(frozen=True)
class KMeansResult:
    """
    Outcome of a histogram clustering.

    Attributes
    ----------
    centers : np.ndarray
        Bin indices of the class centers, in the order they settled (unsorted,
        duplicates possible for degenerate histograms).
    n_iter : int
        Number of assignment/update passes performed.
    converged : bool
        False only when the iteration cap was hit with `on_no_convergence="warn"`.
    """
    centers: np.ndarray
    n_iter: int
    converged: bool = True

    @property
    def sorted_centers(self) -> np.ndarray:
        return np.sort(self.centers)

    @property
    def k(self) -> int:
        return int(self.centers.size)


def initial_centers(n_bins: int, k: int) -> np.ndarray:
    """k centers evenly spaced strictly inside [0, n_bins - 1]: floor((n-1) * i / (k+1)), i = 1..k."""
    i = np.arange(1, k + 1, dtype=np.float64)
    return np.floor((n_bins - 1) * i / (k + 1)).astype(np.int64)


def kmeans_histogram_1d(
    histogram: Union[np.ndarray, Sequence[float]],
    k: int,
    max_iter: Optional[int] = 1000,
    empty_policy: str = "freeze",
    on_no_convergence: str = "raise",
    init_centers: Optional[Sequence[int]] = None,
) -> KMeansResult:
    """
    K-means on a 1D weighted histogram, bins being the samples and counts the weights.

    Each pass assigns every bin to its nearest center (ties go to the first
    center in index order), then moves each center to the floored weighted
    mean of its bins. Iteration stops once no center moves.

    Parameters
    ----------
    histogram : array-like
        Non-negative counts, one per bin.
    k : int
        Number of classes (1 <= k <= len(histogram)).
    max_iter : int or None, default 1000
        Iteration cap; None iterates until the fixpoint.
    empty_policy : {'freeze', 'reseed'}, default 'freeze'
        Center update for a class that received no weight: keep it where it
        is, or move it to the most populated bin that is not already a center.
    on_no_convergence : {'raise', 'warn'}, default 'raise'
        Behaviour when the cap is reached.
    init_centers : sequence of int, optional
        Starting centers (defaults to `initial_centers`).

    Returns
    -------
    KMeansResult

    Raises
    ------
    InvalidInputError
        On an empty/negative histogram or an invalid `k` / seed.
    ConvergenceError
        If the cap is reached and `on_no_convergence="raise"`.
    """
    counts = np.asarray(histogram, dtype=np.float64).reshape(-1)
    n_bins = counts.size
    if n_bins == 0:
        raise InvalidInputError("[KMeans] empty histogram")
    if np.any(counts < 0) or not np.all(np.isfinite(counts)):
        raise InvalidInputError("[KMeans] histogram counts must be finite and non-negative")
    if not 1 <= int(k) <= n_bins:
        raise InvalidInputError(f"[KMeans] k must be in [1, {n_bins}], got {k}")
    k = int(k)

    if init_centers is None:
        centers = initial_centers(n_bins, k)
    else:
        centers = np.asarray(init_centers, dtype=np.int64).reshape(-1)
        if centers.size != k or np.any(centers < 0) or np.any(centers >= n_bins):
            raise InvalidInputError(f"[KMeans] init_centers must hold {k} bin indices in [0, {n_bins - 1}]")
        centers = centers.copy()

    debug = get_debug_logger()
    bin_index = np.arange(n_bins, dtype=np.float64)
    weighted_bins = bin_index * counts

    n_iter = 0
    while True:
        n_iter += 1

        # Nearest center per bin; argmin keeps the first center on ties
        distances = np.abs(bin_index[:, None] - centers[None, :])
        closest = np.argmin(distances, axis=1)

        sums = np.bincount(closest, weights=weighted_bins, minlength=k)
        weights = np.bincount(closest, weights=counts, minlength=k)

        new_centers = centers.copy()
        filled = weights > 0
        new_centers[filled] = np.floor(sums[filled] / weights[filled]).astype(np.int64)

        empty = np.flatnonzero(~filled)
        if empty.size and empty_policy == "reseed":
            for idx in empty:
                candidates = counts.copy()
                candidates[new_centers] = -1.0
                best = int(np.argmax(candidates))
                if candidates[best] > 0:
                    new_centers[idx] = best

        debug.debug(f"[KMeans] iter={n_iter} centers={new_centers.tolist()} empty={empty.tolist()}")

        if np.array_equal(new_centers, centers):
            return KMeansResult(centers=new_centers, n_iter=n_iter, converged=True)
        centers = new_centers

        if max_iter is not None and n_iter >= max_iter:
            if on_no_convergence == "warn":
                logger.warning(f"[KMeans] No convergence after {max_iter} iterations; returning last centers")
                return KMeansResult(centers=centers, n_iter=n_iter, converged=False)
            raise ConvergenceError(max_iter, centers.tolist())


class KMeansClusterer:
    """Cluster a `Histogram` into k class centers (bin indices)."""

    def __init__(self, kmeans_cfg: KMeansConfig = KMeansConfig()) -> None:
        self.kmeans_cfg: KMeansConfig = kmeans_cfg

    def cluster(
        self,
        histogram: Union[Histogram, np.ndarray, Sequence[float]],
        k: int,
        init_centers: Optional[Sequence[int]] = None,
    ) -> KMeansResult:
        """
        Run the histogram K-means with this clusterer's policies.

        The returned centers are NOT sorted; sort them before deriving thresholds.
        """
        counts = histogram.counts if isinstance(histogram, Histogram) else histogram
        return kmeans_histogram_1d(
            counts,
            k,
            max_iter=self.kmeans_cfg.max_iter,
            empty_policy=self.kmeans_cfg.empty_policy,
            on_no_convergence=self.kmeans_cfg.on_no_convergence,
            init_centers=init_centers,
        )
