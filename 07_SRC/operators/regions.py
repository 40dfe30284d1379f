# ==================================================
# ===============  MODULE: regions  ================
# ==================================================
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy import ndimage
from skimage.measure import label as sk_label

from core.config import GlobalConfig, LayoutConfig, RegionConfig
from core.errors import InvalidInputError, MissingThresholdsError
from core.operator_core import OperatorCore
from core.volume import VolumeAccessor
from operators.classifier import LabeledVolume, VoxelClassifier
from utils.decorators import log_exceptions

# Public API
__all__ = ["Region", "LabelExtractor", "RegionExtractor"]


@dataclass
class Region:
    """
    Spatial extent of one class tier at one time index.

    Attributes
    ----------
    t : int
        Time index.
    tier : int
        Threshold tier (class = tier + 1).
    threshold : float
        Threshold value the tier starts at.
    slices : Dict[int, np.ndarray]
        Slice index -> (Y, X) boolean mask; only non-empty slices are kept.
    channel : int
        Source channel.
    component : Optional[int]
        Connected-component number when the tier was split into blobs.
    """
    t: int
    tier: int
    threshold: float
    slices: Dict[int, np.ndarray] = field(default_factory=dict)
    channel: int = 0
    component: Optional[int] = None

    @property
    def class_index(self) -> int:
        return self.tier + 1

    @property
    def name(self) -> str:
        base = f"[T={self.t}] threshold: {self.threshold}"
        return base if self.component is None else f"{base} #{self.component}"

    @property
    def z_indices(self) -> List[int]:
        return sorted(self.slices)

    @property
    def is_3d(self) -> bool:
        """True when the region spans more than one non-empty slice."""
        return len(self.slices) > 1

    @property
    def mask(self) -> np.ndarray:
        """(Y, X) mask for a flat region, (n_slices, Y, X) stack ordered by slice otherwise."""
        if not self.slices:
            raise InvalidInputError(f"[Region] {self.name} has no slice")
        if not self.is_3d:
            return self.slices[self.z_indices[0]]
        return np.stack([self.slices[z] for z in self.z_indices], axis=0)

    @property
    def area(self) -> int:
        """Number of voxels in the region."""
        return int(sum(int(m.sum()) for m in self.slices.values()))

    def to_dense(self, depth: Optional[int] = None) -> np.ndarray:
        """(Z, Y, X) mask over the full depth (empty slices included)."""
        depth = depth if depth is not None else max(self.slices) + 1
        first = next(iter(self.slices.values()))
        dense = np.zeros((depth,) + first.shape, dtype=bool)
        for z, m in self.slices.items():
            dense[z] = m
        return dense

    @property
    def bbox(self) -> Tuple[slice, ...]:
        """(z, y, x) bounding slices of the region."""
        objects = ndimage.find_objects(self.to_dense().astype(np.uint8))
        return objects[0]


class LabelExtractor:
    """
    Connected-component labeling of a class mask (skimage.measure.label).

    Parameters
    ----------
    connectivity : int, optional
        Maximum number of orthogonal hops to consider a neighbour
        (1 = faces, ndim = full). None means full connectivity.
    """

    def __init__(self, connectivity: Optional[int] = None) -> None:
        self.connectivity = connectivity

    def __call__(self, mask: np.ndarray) -> Tuple[np.ndarray, int]:
        labels, n = sk_label(np.asarray(mask, dtype=bool), connectivity=self.connectivity, return_num=True)
        return labels, int(n)


class RegionExtractor(OperatorCore):
    """
    Convert a labeled volume into per-(time, tier) regions.

    Notes
    -----
    - A tier with no voxel at a given time produces no region.
    - Disjoint blobs of one tier stay in the same region unless
      `RegionConfig.split_components` is set.
    """

    def __init__(
        self,
        region_cfg: RegionConfig = RegionConfig(),
        layout_cfg: LayoutConfig = LayoutConfig(),
        global_cfg: GlobalConfig = GlobalConfig(),
    ) -> None:
        super().__init__(layout_cfg=layout_cfg, global_cfg=global_cfg)
        self.region_cfg: RegionConfig = region_cfg
        self.label_extractor = LabelExtractor(region_cfg.connectivity)

    @log_exceptions()
    def extract(
        self,
        labeled: Union[LabeledVolume, np.ndarray],
        thresholds_per_frame: Sequence[Sequence[float]],
    ) -> List[Region]:
        """
        Build the regions of every (time, tier) pair.

        Parameters
        ----------
        labeled : LabeledVolume | np.ndarray
            Class map, (T, Z, Y, X) when given as an array.
        thresholds_per_frame : sequence of sequence of float
            Threshold lists used to produce the labels (one per frame).

        Returns
        -------
        list of Region
            Ordered by time, then tier (then component).
        """
        if isinstance(labeled, LabeledVolume):
            data, channel = labeled.data, labeled.channel
        else:
            data, channel = np.asarray(labeled), 0
        if data.ndim != 4:
            raise InvalidInputError(f"[RegionExtractor] expected (T, Z, Y, X) labels, got shape {data.shape}")
        if thresholds_per_frame is None or len(thresholds_per_frame) != data.shape[0]:
            raise InvalidInputError(
                f"[RegionExtractor] expected {data.shape[0]} threshold list(s) (one per frame)"
            )

        regions: List[Region] = []
        for t, thresholds in enumerate(thresholds_per_frame):
            if thresholds is None or len(thresholds) == 0:
                raise MissingThresholdsError(f"[RegionExtractor] no thresholds given for frame T={t}")
            frame = data[t]
            for tier, thr in enumerate(thresholds):
                regions.extend(self._tier_regions(frame == tier + 1, t, tier, float(thr), channel))

        self.logger.info(f"[RegionExtractor] {len(regions)} region(s) over {data.shape[0]} frame(s)")
        return regions

    def extract_from_volume(
        self,
        volume: VolumeAccessor,
        c: int,
        thresholds_per_frame: Sequence[Sequence[float]],
    ) -> List[Region]:
        """Classify channel `c` (copy mode) and extract its regions."""
        classifier = VoxelClassifier(layout_cfg=self.layout_cfg, global_cfg=self.global_cfg)
        labeled = classifier.classify(volume, c, thresholds_per_frame, in_place=False)
        return self.extract(labeled, thresholds_per_frame)

    # -------------------------- Internals --------------------------

    def _tier_regions(self, mask3d: np.ndarray, t: int, tier: int, thr: float, channel: int) -> List[Region]:
        if not mask3d.any():
            return []
        if not self.region_cfg.split_components:
            return [Region(t=t, tier=tier, threshold=thr, slices=self._slices(mask3d), channel=channel)]

        components, n = self.label_extractor(mask3d)
        return [
            Region(
                t=t,
                tier=tier,
                threshold=thr,
                slices=self._slices(components == n_comp),
                channel=channel,
                component=n_comp,
            )
            for n_comp in range(1, n + 1)
        ]

    @staticmethod
    def _slices(mask3d: np.ndarray) -> Dict[int, np.ndarray]:
        non_empty = np.flatnonzero(mask3d.reshape(mask3d.shape[0], -1).any(axis=1))
        return {int(z): mask3d[z].copy() for z in non_empty}
