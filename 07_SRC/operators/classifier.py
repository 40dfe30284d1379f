# ==================================================
# ==============  MODULE: classifier  ==============
# ==================================================
from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional, Sequence, Tuple

import numpy as np
import torch

from core.config import GlobalConfig, LayoutConfig
from core.errors import InvalidInputError, MissingThresholdsError
from core.operator_core import OperatorCore
from core.volume import ArrayLike, VolumeAccessor, VolumeND
from utils.decorators import log_exceptions

# Public API
__all__ = ["LabeledVolume", "VoxelClassifier", "classify_values"]


@dataclass
class LabeledVolume:
    """
    Single-channel class map sharing the extent of the source channel.

    Attributes
    ----------
    data : np.ndarray
        (T, Z, Y, X) labels 0..max_class, in the source sample type. In-place
        results alias the source channel storage.
    max_class : int
        Largest class count over frames (len(thresholds) of the longest list).
    channel : int
        Source channel index.
    in_place : bool
        Whether `data` is the source storage.
    name : str
        "<source name>_thresholded".
    """
    data: np.ndarray
    max_class: int
    channel: int = 0
    in_place: bool = False
    name: str = "volume_thresholded"

    @property
    def bounds(self) -> Tuple[int, int]:
        """Display bounds for the label channel."""
        return 0, int(self.max_class)

    @property
    def frame_count(self) -> int:
        return int(self.data.shape[0])

    @property
    def depth(self) -> int:
        return int(self.data.shape[1])

    def frame(self, t: int) -> np.ndarray:
        """(Z, Y, X) labels of one frame."""
        return self.data[t]

    def to_volume(self) -> VolumeND:
        """Wrap the labels as a one-channel `VolumeND` (shares memory)."""
        return VolumeND(self.data[:, :, None], name=self.name)

    def to_output(self, framework: Literal["numpy", "torch"] = "numpy", layout_name: str = "TZYX") -> ArrayLike:
        """Labels in a given layout (default TZYX), as NumPy or torch."""
        array = self.to_volume().to_array(layout_name)
        if framework == "torch":
            return torch.from_numpy(np.ascontiguousarray(array))
        return array


def classify_values(values: np.ndarray, thresholds: Sequence[float]) -> np.ndarray:
    """
    Class index of every value for one threshold list (int64 array).

    - value < thr[0]                  -> 0 (background)
    - single threshold                -> 1
    - highest j >= 1 with value >= thr[j] -> j + 1
    - otherwise                       -> 1

    Boundaries are inclusive: a value equal to a threshold belongs to the
    class above it. Applying the tiers in increasing order and letting the
    last match win is the same as scanning from the top threshold down.
    """
    thr = np.asarray(thresholds, dtype=np.float64).reshape(-1)
    if thr.size == 0:
        raise MissingThresholdsError("[VoxelClassifier] no thresholds given")
    values = np.asarray(values)

    labels = np.zeros(values.shape, dtype=np.int64)
    foreground = ~(values < thr[0])
    labels[foreground] = 1
    for j in range(1, thr.size):
        labels[foreground & (values >= thr[j])] = j + 1
    return labels


class VoxelClassifier(OperatorCore):
    """
    Assign every voxel of a channel to a class, frame by frame.

    Notes
    -----
    - Copy mode allocates a fresh (T, Z, Y, X) buffer in the source dtype.
    - In-place mode overwrites the source channel; the caller must treat the
      volume as mutated and serialize concurrent readers.
    """

    def __init__(
        self,
        layout_cfg: LayoutConfig = LayoutConfig(),
        global_cfg: GlobalConfig = GlobalConfig(),
    ) -> None:
        super().__init__(layout_cfg=layout_cfg, global_cfg=global_cfg)

    @log_exceptions()
    def classify(
        self,
        volume: VolumeAccessor,
        c: int,
        thresholds_per_frame: Sequence[Sequence[float]],
        in_place: bool = False,
    ) -> LabeledVolume:
        """
        Label channel `c` of `volume`.

        Parameters
        ----------
        volume : VolumeAccessor
            Input volume (arrays/tensors are wrapped with the layout config).
        c : int
            Channel to classify.
        thresholds_per_frame : sequence of sequence of float
            One ascending threshold list per time frame.
        in_place : bool, default False
            Overwrite the source channel instead of allocating a new buffer.

        Returns
        -------
        LabeledVolume

        Raises
        ------
        InvalidInputError
            Missing volume, invalid channel, or wrong number of frame lists.
        MissingThresholdsError
            If any frame has an empty threshold list.
        """
        volume = self.convert_once(volume)
        n_frames = volume.frame_count
        if not 0 <= int(c) < volume.channel_count:
            raise InvalidInputError(f"[VoxelClassifier] input volume has no channel #{c}")
        if thresholds_per_frame is None or len(thresholds_per_frame) != n_frames:
            got = None if thresholds_per_frame is None else len(thresholds_per_frame)
            raise InvalidInputError(
                f"[VoxelClassifier] expected {n_frames} threshold list(s) (one per frame), got {got}"
            )
        for t, thr in enumerate(thresholds_per_frame):
            if thr is None or len(thr) == 0:
                raise MissingThresholdsError(f"[VoxelClassifier] no thresholds given for frame T={t}")

        depths = sorted({int(volume.depth_at(t)) for t in range(n_frames)})
        if len(depths) > 1:
            raise InvalidInputError(
                f"[VoxelClassifier] frames of varying depth {depths} cannot share one label buffer"
            )

        max_class = max(len(thr) for thr in thresholds_per_frame)
        dtype = self._label_dtype(volume, max_class, in_place)

        if in_place:
            labels = self._storage(volume, c)
        else:
            labels = np.zeros((n_frames, depths[0], volume.height, volume.width), dtype=dtype)

        def label_frame(t: int) -> np.ndarray:
            return classify_values(self._frame_values(volume, c, t), thresholds_per_frame[t]).astype(dtype, copy=False)

        frames = self.map_frames(label_frame, range(n_frames), desc="classify")
        for t, frame in enumerate(frames):
            if labels is None:
                self._write_voxels(volume, c, t, frame)
            else:
                labels[t] = frame

        if labels is None:
            labels = np.stack(frames, axis=0)

        name = f"{getattr(volume, 'name', 'volume')}_thresholded"
        self.logger.info(
            f"[VoxelClassifier] {name}: {n_frames} frame(s), channel {c}, "
            f"{max_class + 1} classes max, {'in-place' if in_place else 'copy'}"
        )
        return LabeledVolume(data=labels, max_class=max_class, channel=int(c), in_place=bool(in_place), name=name)

    # -------------------------- Internals --------------------------

    @staticmethod
    def _frame_values(volume: VolumeAccessor, c: int, t: int) -> np.ndarray:
        if hasattr(volume, "frame_data"):
            return volume.frame_data(c, t)
        return np.asarray(
            [
                [[volume.get_voxel(x, y, z, t, c) for x in range(volume.width)] for y in range(volume.height)]
                for z in range(volume.depth_at(t))
            ],
            dtype=np.float64,
        )

    @staticmethod
    def _storage(volume: VolumeAccessor, c: int) -> Optional[np.ndarray]:
        """Writeable (T, Z, Y, X) view of the channel, or None for voxel-only accessors."""
        if hasattr(volume, "channel_data"):
            view = volume.channel_data(c)
            if not view.flags.writeable:
                raise InvalidInputError("[VoxelClassifier] in-place mode needs writeable volume storage")
            return view
        return None

    @staticmethod
    def _write_voxels(volume: VolumeAccessor, c: int, t: int, frame: np.ndarray) -> None:
        for z, y, x in np.ndindex(*frame.shape):
            volume.set_voxel(x, y, z, t, c, frame[z, y, x].item())

    def _label_dtype(self, volume: VolumeAccessor, max_class: int, in_place: bool) -> np.dtype:
        """Source sample type, widened in copy mode when it cannot hold `max_class`."""
        dtype = np.dtype(getattr(volume, "dtype", np.float64))
        if dtype.kind == "b":
            if in_place:
                raise InvalidInputError("[VoxelClassifier] boolean storage cannot hold class labels in-place")
            dtype = np.dtype(np.uint8)
        if dtype.kind in "iu" and max_class > np.iinfo(dtype).max:
            if in_place:
                raise InvalidInputError(
                    f"[VoxelClassifier] {max_class} classes do not fit in the source type {dtype}"
                )
            widened = np.promote_types(dtype, np.min_scalar_type(max_class))
            self.logger.warning(f"[VoxelClassifier] Widening label type {dtype} -> {widened}")
            dtype = widened
        return dtype
