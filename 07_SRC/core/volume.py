# ==================================================
# ================  MODULE: volume  ================
# ==================================================
from __future__ import annotations

from typing import Any, Dict, Optional, Protocol, Tuple, Union, runtime_checkable

import numpy as np
import torch

from core.config import LayoutConfig
from core.errors import InvalidInputError
from core.layout_axes import CANONICAL_LAYOUT, AXIS_LETTERS, get_layout_axes

# Public API
__all__ = ["VolumeAccessor", "VolumeND", "ArrayLike"]

ArrayLike = Union[np.ndarray, torch.Tensor]


# ==================================================
# ============ Accessor contract (host) ============
# ==================================================
@runtime_checkable
class VolumeAccessor(Protocol):
    """
    Minimal contract a host image container must satisfy.

    Coordinates are (x, y, z, t, c); bounds are (min, max) tuples.
    """

    @property
    def width(self) -> int: ...

    @property
    def height(self) -> int: ...

    @property
    def frame_count(self) -> int: ...

    @property
    def channel_count(self) -> int: ...

    def depth_at(self, t: int) -> int: ...

    def get_voxel(self, x: int, y: int, z: int, t: int, c: int) -> float: ...

    def set_voxel(self, x: int, y: int, z: int, t: int, c: int, value: float) -> None: ...

    def channel_bounds(self, c: int) -> Tuple[float, float]: ...

    def frame_channel_bounds(self, c: int, t: int) -> Tuple[float, float]: ...


# ==================================================
# ================== VolumeND ======================
# ==================================================
class VolumeND:
    """
    NumPy-backed 5D volume stored in canonical (T, Z, C, Y, X) order.

    Notes
    -----
    - Built from any NumPy array or torch tensor through a named layout;
      missing axes are added as singleton dimensions.
    - Construction never copies: the canonical array is a view of the
      caller's buffer whenever NumPy allows it, so in-place writes through
      `channel_data` reach the caller's storage.
    """

    def __init__(self, data: np.ndarray, name: str = "volume", source_framework: str = "numpy") -> None:
        if not isinstance(data, np.ndarray):
            raise InvalidInputError(f"[VolumeND] Expected a numpy.ndarray, got {type(data).__name__}")
        if data.ndim != 5:
            raise InvalidInputError(
                f"[VolumeND] Canonical data must be 5D ({CANONICAL_LAYOUT}), got shape {data.shape}"
            )
        if min(data.shape) == 0:
            raise InvalidInputError(f"[VolumeND] Empty volume (shape {data.shape})")
        self.data: np.ndarray = data
        self.name: str = name
        self.source_framework: str = source_framework

    # ====[ Construction ]====
    @classmethod
    def from_array(
        cls,
        array: ArrayLike,
        layout_name: Optional[str] = None,
        layout_cfg: Optional[LayoutConfig] = None,
        name: str = "volume",
    ) -> "VolumeND":
        """
        Wrap an array or tensor described by a layout.

        Parameters
        ----------
        array : np.ndarray | torch.Tensor
            Raw intensities.
        layout_name : str, optional
            Layout mnemonic ('TZYXC', 'ZYX', ...). Takes precedence over `layout_cfg`.
        layout_cfg : LayoutConfig, optional
            Layout configuration (defaults to 'TZYXC'; a `layout_name` of None guesses it from the shape).
        name : str, default 'volume'
            Name propagated to outputs.

        Returns
        -------
        VolumeND
        """
        if array is None:
            raise InvalidInputError("[VolumeND] no input volume given")

        framework = "numpy"
        if isinstance(array, torch.Tensor):
            framework = "torch"
            array = array.detach().cpu().numpy()
        array = np.asarray(array)

        if layout_name is not None:
            layout = get_layout_axes(layout_name)
        else:
            layout = (layout_cfg or LayoutConfig()).resolve(shape=array.shape)

        if layout["ndim"] != array.ndim:
            raise InvalidInputError(
                f"[VolumeND] Layout '{layout['name']}' expects {layout['ndim']} dims, got shape {array.shape}"
            )

        # Present axes in canonical order, then insert the missing ones
        present = [(letter, layout.get(AXIS_LETTERS[letter])) for letter in CANONICAL_LAYOUT]
        order = [pos for _, pos in present if pos is not None]
        canonical = np.transpose(array, order)
        for idx, (_, pos) in enumerate(present):
            if pos is None:
                canonical = np.expand_dims(canonical, axis=idx)

        return cls(canonical, name=name, source_framework=framework)

    def to_array(self, layout_name: Optional[str] = None) -> np.ndarray:
        """
        Return the data in another layout (default: canonical TZCYX view).

        Axes absent from the target layout must have size 1 and are dropped.
        """
        if layout_name is None:
            return self.data
        layout = get_layout_axes(layout_name)
        squeeze_axes = []
        for idx, letter in enumerate(CANONICAL_LAYOUT):
            if layout[AXIS_LETTERS[letter]] is None:
                if self.data.shape[idx] != 1:
                    raise InvalidInputError(
                        f"[VolumeND] Cannot drop axis '{letter}' of size {self.data.shape[idx]} "
                        f"for layout '{layout['name']}'"
                    )
                squeeze_axes.append(idx)
        squeezed = np.squeeze(self.data, axis=tuple(squeeze_axes)) if squeeze_axes else self.data
        kept = [letter for letter in CANONICAL_LAYOUT if layout[AXIS_LETTERS[letter]] is not None]
        order = [kept.index(letter) for letter in layout["name"]]
        return np.transpose(squeezed, order)

    # ====[ Dimensions ]====
    @property
    def shape(self) -> Tuple[int, int, int, int, int]:
        return tuple(self.data.shape)

    @property
    def dtype(self) -> np.dtype:
        return self.data.dtype

    @property
    def frame_count(self) -> int:
        return int(self.data.shape[0])

    @property
    def depth(self) -> int:
        return int(self.data.shape[1])

    @property
    def channel_count(self) -> int:
        return int(self.data.shape[2])

    @property
    def height(self) -> int:
        return int(self.data.shape[3])

    @property
    def width(self) -> int:
        return int(self.data.shape[4])

    def depth_at(self, t: int) -> int:
        self._check_frame(t)
        return self.depth

    # ====[ Voxel access ]====
    def get_voxel(self, x: int, y: int, z: int, t: int, c: int) -> float:
        return self.data[t, z, c, y, x].item()

    def set_voxel(self, x: int, y: int, z: int, t: int, c: int, value: float) -> None:
        self.data[t, z, c, y, x] = value

    def channel_data(self, c: int) -> np.ndarray:
        """(T, Z, Y, X) view of one channel (writes go to the volume storage)."""
        self.check_channel(c)
        return self.data[:, :, c]

    def frame_data(self, c: int, t: int) -> np.ndarray:
        """(Z, Y, X) view of one channel at one frame."""
        self.check_channel(c)
        self._check_frame(t)
        return self.data[t, :, c]

    def plane(self, t: int, z: int, c: int) -> np.ndarray:
        """(Y, X) view of one slice."""
        return self.frame_data(c, t)[z]

    # ====[ Intensity bounds ]====
    def channel_bounds(self, c: int) -> Tuple[float, float]:
        """Global (min, max) of a channel over every frame and slice."""
        return self._bounds(self.channel_data(c))

    def frame_channel_bounds(self, c: int, t: int) -> Tuple[float, float]:
        """(min, max) of a channel over the slices of one frame."""
        return self._bounds(self.frame_data(c, t))

    # ====[ Checks ]====
    def check_channel(self, c: int) -> None:
        if not 0 <= int(c) < self.channel_count:
            raise InvalidInputError(f"[VolumeND] input volume has no channel #{c}")

    def _check_frame(self, t: int) -> None:
        if not 0 <= int(t) < self.frame_count:
            raise InvalidInputError(f"[VolumeND] input volume has no frame #{t}")

    @staticmethod
    def _bounds(values: np.ndarray) -> Tuple[float, float]:
        finite = values[np.isfinite(values)] if values.dtype.kind == "f" else values
        if finite.size == 0:
            raise InvalidInputError("[VolumeND] no finite intensity to compute bounds from")
        return float(finite.min()), float(finite.max())

    def summary(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "shape(TZCYX)": self.shape,
            "dtype": str(self.dtype),
            "source_framework": self.source_framework,
        }

    def __repr__(self) -> str:
        return f"VolumeND(name={self.name!r}, shape(TZCYX)={self.shape}, dtype={self.dtype})"
