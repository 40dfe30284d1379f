# ==================================================
# ==============  MODULE: thresholds  ==============
# ==================================================
from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np

from core.config import (
    DEFAULT_KMEANS_BINS,
    GlobalConfig,
    HistogramConfig,
    KMeansConfig,
    LayoutConfig,
    MAX_KMEANS_CLASSES,
)
from core.errors import InvalidInputError, MissingThresholdsError, OutOfRangeError
from core.operator_core import OperatorCore
from core.volume import VolumeAccessor
from operators.histogram import Histogram, HistogramBuilder
from operators.kmeans import KMeansClusterer

# Public API
__all__ = ["ThresholdDeriver", "compute_kmeans_thresholds"]

ThresholdTable = List[List[float]]


class ThresholdDeriver(OperatorCore):
    """
    Turn cluster centers or percentiles into absolute intensity thresholds,
    and lay them out as one threshold list per time frame.

    Notes
    -----
    - Thresholds are the midpoints between consecutive sorted class centers,
      mapped from bin space back to intensity space.
    - Shared mode computes one list and copies it into every frame slot;
      independent mode recomputes bounds / histograms per frame.
    """

    def __init__(
        self,
        histogram_cfg: HistogramConfig = HistogramConfig(),
        kmeans_cfg: KMeansConfig = KMeansConfig(),
        layout_cfg: LayoutConfig = LayoutConfig(),
        global_cfg: GlobalConfig = GlobalConfig(),
    ) -> None:
        super().__init__(layout_cfg=layout_cfg, global_cfg=global_cfg)
        self.histogram_cfg: HistogramConfig = histogram_cfg
        self.kmeans_cfg: KMeansConfig = kmeans_cfg
        self.histogram_builder = HistogramBuilder(histogram_cfg)
        self.clusterer = KMeansClusterer(kmeans_cfg)

    # -------------------------- Pure conversions --------------------------

    @staticmethod
    def from_centers(centers: Sequence[int], vmin: float, bin_width: float) -> List[float]:
        """
        Midpoint thresholds between sorted centers, in intensity space.

        threshold[k-1] = vmin + (c[k-1] + (c[k] - c[k-1]) / 2) / bin_width, k = 1..K-1
        """
        c = np.sort(np.asarray(centers, dtype=np.float64).reshape(-1))
        if c.size < 2:
            raise InvalidInputError("[ThresholdDeriver] at least 2 centers are needed to derive a threshold")
        mids = c[:-1] + (c[1:] - c[:-1]) / 2.0
        return [float(vmin + m / bin_width) for m in mids]

    @classmethod
    def from_histogram(cls, histogram: Histogram, centers: Sequence[int]) -> List[float]:
        return cls.from_centers(centers, histogram.vmin, histogram.bin_width)

    def from_percentiles(self, values: Sequence[float], vmin: float, vmax: float) -> List[float]:
        """
        Map percentiles in [0, 100] onto [vmin, vmax]: p -> vmin + p * (vmax - vmin) / 100.

        The result is sorted ascending (a warning is logged when the input was not).

        Raises
        ------
        MissingThresholdsError
            If `values` is empty.
        OutOfRangeError
            If any value lies outside [0, 100].
        """
        p = np.asarray(list(values), dtype=np.float64).reshape(-1)
        if p.size == 0:
            raise MissingThresholdsError("[ThresholdDeriver] No threshold(s) indicated")
        bad = p[(p < 0) | (p > 100) | ~np.isfinite(p)]
        if bad.size:
            raise OutOfRangeError(f"[ThresholdDeriver] Percentiles must lie in [0, 100], got {bad.tolist()}")
        if np.any(np.diff(p) < 0):
            self.logger.warning(f"[ThresholdDeriver] Percentiles {p.tolist()} are not ascending; sorting them")
            p = np.sort(p)
        # Exact at both ends for any representable bounds
        f = p / 100.0
        return [float(v) for v in (1.0 - f) * vmin + f * vmax]

    @staticmethod
    def replicate(thresholds: Sequence[float], n_frames: int) -> ThresholdTable:
        """One independent copy of `thresholds` per frame."""
        return [[float(v) for v in thresholds] for _ in range(int(n_frames))]

    # -------------------------- Volume-level --------------------------

    def percentiles_per_frame(
        self,
        volume: VolumeAccessor,
        c: int,
        values: Sequence[float],
        time_dependent: bool = False,
    ) -> ThresholdTable:
        """Percentile thresholds against global (shared) or per-frame bounds."""
        if time_dependent:
            return self.map_frames(
                lambda t: self.from_percentiles(values, *volume.frame_channel_bounds(c, t)),
                range(volume.frame_count),
                desc="percentiles",
            )
        shared = self.from_percentiles(values, *volume.channel_bounds(c))
        return self.replicate(shared, volume.frame_count)

    def kmeans_thresholds(
        self,
        volume: VolumeAccessor,
        c: int,
        num_classes: int,
        bins: Optional[int] = None,
        time_dependent: bool = False,
    ) -> ThresholdTable:
        """
        K-means thresholds for one channel, one list of `num_classes - 1` values per frame.

        Parameters
        ----------
        volume : VolumeAccessor
            Input volume.
        c : int
            Channel index.
        num_classes : int
            Number of classes (2..255).
        bins : int, optional
            Bin precision (defaults to the histogram configuration).
        time_dependent : bool, default False
            Cluster each frame on its own histogram and bounds.
        """
        if not 2 <= int(num_classes) <= MAX_KMEANS_CLASSES:
            raise InvalidInputError(
                f"[ThresholdDeriver] num_classes must be in [2, {MAX_KMEANS_CLASSES}], got {num_classes}"
            )
        if not 0 <= int(c) < volume.channel_count:
            raise InvalidInputError(f"[ThresholdDeriver] invalid channel ({c})")

        if time_dependent:
            return self.map_frames(
                lambda t: self._kmeans_on(self.histogram_builder.from_frame(volume, c, t, bins=bins), num_classes, t),
                range(volume.frame_count),
                desc="kmeans",
            )
        histogram = self.histogram_builder.from_volume(volume, c, bins=bins)
        return self.replicate(self._kmeans_on(histogram, num_classes), volume.frame_count)

    def _kmeans_on(self, histogram: Histogram, num_classes: int, t: Optional[int] = None) -> List[float]:
        result = self.clusterer.cluster(histogram, int(num_classes))
        thresholds = self.from_histogram(histogram, result.centers)
        where = "global" if t is None else f"T={t}"
        self.logger.debug(
            f"[ThresholdDeriver] {where}: range=[{histogram.vmin}, {histogram.vmax}] "
            f"centers={result.sorted_centers.tolist()} iterations={result.n_iter}"
        )
        return thresholds


def compute_kmeans_thresholds(
    volume: VolumeAccessor,
    num_classes: int,
    bins: int = DEFAULT_KMEANS_BINS,
    kmeans_cfg: KMeansConfig = KMeansConfig(),
    global_cfg: GlobalConfig = GlobalConfig(),
) -> List[List[float]]:
    """
    K-means thresholds of every channel, over the whole volume.

    Returns
    -------
    list of list of float
        Shape [channel_count][num_classes - 1].
    """
    deriver = ThresholdDeriver(
        histogram_cfg=HistogramConfig(bins=bins),
        kmeans_cfg=kmeans_cfg,
        global_cfg=global_cfg,
    )
    return [
        deriver.kmeans_thresholds(volume, c, num_classes, bins=bins)[0]
        for c in range(volume.channel_count)
    ]
