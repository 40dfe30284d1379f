# ==================================================
# ==============  MODULE: histogram  ===============
# ==================================================
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from core.config import HistogramConfig
from core.errors import DegenerateRangeError, InvalidInputError, OutOfRangeError
from core.volume import VolumeAccessor
from utils.logger import get_logger

# Public API
__all__ = ["Histogram", "HistogramBuilder", "channel_values"]

logger = get_logger("nd_thresholder.histogram")


@dataclass(frozen=True)
class Histogram:
    """
    Equal-width intensity histogram.

    Attributes
    ----------
    counts : np.ndarray
        Read-only float64 counts, one per bin.
    vmin, vmax : float
        Intensity range the bins span.
    bins : int
        Bin precision.
    """
    counts: np.ndarray
    vmin: float
    vmax: float
    bins: int

    @property
    def bin_width(self) -> float:
        """Scale factor from intensity to bin index: (bins - 1) / (vmax - vmin)."""
        return (self.bins - 1) / (self.vmax - self.vmin)

    @property
    def total(self) -> float:
        return float(self.counts.sum())

    def __len__(self) -> int:
        return self.bins

    def to_intensity(self, bin_position: float) -> float:
        """Map a (fractional) bin position back to intensity space."""
        return self.vmin + bin_position / self.bin_width


def channel_values(volume: VolumeAccessor, c: int, t: Optional[int] = None) -> np.ndarray:
    """
    Flat intensities of one channel (whole volume, or a single frame).

    Uses the vectorised views of `VolumeND` when available and falls back
    on the voxel accessor otherwise.
    """
    if hasattr(volume, "channel_data"):
        data = volume.channel_data(c) if t is None else volume.frame_data(c, t)
        return np.asarray(data).reshape(-1)

    frames = range(volume.frame_count) if t is None else (t,)
    return np.asarray(
        [
            volume.get_voxel(x, y, z, tt, c)
            for tt in frames
            for z in range(volume.depth_at(tt))
            for y in range(volume.height)
            for x in range(volume.width)
        ],
        dtype=np.float64,
    )


class HistogramBuilder:
    """
    Bin channel intensities into a fixed number of equal-width bins.

    Sourcing modes
    --------------
    - global (`from_volume`): every voxel of the channel, channel bounds.
    - per-frame (`from_frame`): voxels of one frame, that frame's bounds.
    """

    def __init__(self, histogram_cfg: HistogramConfig = HistogramConfig()) -> None:
        self.histogram_cfg: HistogramConfig = histogram_cfg
        self.bins: int = int(histogram_cfg.bins)
        self.clamp: bool = bool(histogram_cfg.clamp)

    def build(
        self,
        samples: np.ndarray,
        vmin: float,
        vmax: float,
        bins: Optional[int] = None,
    ) -> Histogram:
        """
        Build a histogram of `samples` over [vmin, vmax].

        Bin index of a value v is floor((v - vmin) * (bins - 1) / (vmax - vmin)).

        Raises
        ------
        InvalidInputError
            If `bins < 1`.
        DegenerateRangeError
            If `vmax <= vmin`.
        OutOfRangeError
            If a sample falls outside the range and clamping is disabled.
        """
        bins = self.bins if bins is None else int(bins)
        if bins < 1:
            raise InvalidInputError(f"[HistogramBuilder] bins must be >= 1, got {bins}")
        vmin, vmax = float(vmin), float(vmax)
        if not vmax > vmin:
            raise DegenerateRangeError(vmin, vmax, context="HistogramBuilder")

        values = np.asarray(samples, dtype=np.float64).reshape(-1)
        finite = np.isfinite(values)
        if not finite.all():
            logger.warning(f"[HistogramBuilder] Ignoring {int((~finite).sum())} non-finite sample(s)")
            values = values[finite]

        fact = (bins - 1) / (vmax - vmin)
        indices = np.floor((values - vmin) * fact).astype(np.int64)

        outside = (indices < 0) | (indices > bins - 1)
        n_outside = int(outside.sum())
        if n_outside:
            if not self.clamp:
                raise OutOfRangeError(
                    f"[HistogramBuilder] {n_outside} sample(s) outside [{vmin}, {vmax}]"
                )
            logger.warning(f"[HistogramBuilder] Clamping {n_outside} sample(s) outside [{vmin}, {vmax}]")
            np.clip(indices, 0, bins - 1, out=indices)

        counts = np.bincount(indices, minlength=bins).astype(np.float64)
        counts.setflags(write=False)
        return Histogram(counts=counts, vmin=vmin, vmax=vmax, bins=bins)

    def from_volume(self, volume: VolumeAccessor, c: int, bins: Optional[int] = None) -> Histogram:
        """Histogram of a whole channel, over its global bounds."""
        vmin, vmax = volume.channel_bounds(c)
        return self.build(channel_values(volume, c), vmin, vmax, bins=bins)

    def from_frame(self, volume: VolumeAccessor, c: int, t: int, bins: Optional[int] = None) -> Histogram:
        """Histogram of one frame of a channel, over that frame's bounds."""
        vmin, vmax = volume.frame_channel_bounds(c, t)
        return self.build(channel_values(volume, c, t), vmin, vmax, bins=bins)

    def __repr__(self) -> str:
        return f"HistogramBuilder(bins={self.bins}, clamp={self.clamp})"
