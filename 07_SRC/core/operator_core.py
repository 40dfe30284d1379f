# ==================================================
# =============  MODULE: operator_core =============
# ==================================================
from __future__ import annotations

import logging
from typing import Any, Callable, List, Literal, Optional, Sequence, TypeVar

import numpy as np
import torch
from joblib import Parallel, delayed
from tqdm import tqdm

from core.config import GlobalConfig, LayoutConfig
from core.errors import InvalidInputError
from core.volume import ArrayLike, VolumeAccessor, VolumeND
from utils.logger import get_logger

# Public API
__all__ = ["OperatorCore"]

Framework = Literal["numpy", "torch"]
T = TypeVar("T")


# ==================================================
# ================== OperatorCore ==================
# ==================================================
class OperatorCore:
    """
    Base class for volume operators.

    Notes
    -----
    - Converts incoming arrays/tensors into a `VolumeND` once (`convert_once`).
    - Converts outputs back to the requested backend (`to_output`).
    - Schedules independent frames sequentially or through joblib (`map_frames`).
    """

    def __init__(
        self,
        layout_cfg: LayoutConfig = LayoutConfig(),
        global_cfg: GlobalConfig = GlobalConfig(),
    ) -> None:
        """
        Parameters
        ----------
        layout_cfg : LayoutConfig
            Axis layout used to wrap raw arrays.
        global_cfg : GlobalConfig
            Backend, scheduling and logging options.
        """
        self.layout_cfg: LayoutConfig = layout_cfg
        self.global_cfg: GlobalConfig = global_cfg

        # Inherited params exposed locally
        self.framework: Framework = self.global_cfg.framework.lower()
        self.output_format: Framework = self.global_cfg.output_format.lower()
        self.backend: str = self.global_cfg.backend
        self.n_jobs: int = int(self.global_cfg.n_jobs)
        self.verbose: bool = bool(self.global_cfg.verbose)

        self.logger: logging.Logger = get_logger(
            name=f"nd_thresholder.{type(self).__name__}",
            log_dir=self.global_cfg.log_dir,
            level=self.global_cfg.log_level,
        )

    # ====[ CONVERT ONCE – Array → Volume ]====
    def convert_once(self, image: Any, name: Optional[str] = None) -> VolumeAccessor:
        """
        Return `image` as a volume accessor.

        Volumes (anything satisfying `VolumeAccessor`) pass through untouched;
        NumPy arrays and torch tensors are wrapped with `self.layout_cfg`.

        Raises
        ------
        InvalidInputError
            If `image` is None or of an unsupported type.
        """
        if image is None:
            raise InvalidInputError(f"[{type(self).__name__}] no input volume given")
        if isinstance(image, VolumeAccessor):
            return image
        if isinstance(image, (np.ndarray, torch.Tensor)):
            return VolumeND.from_array(image, layout_cfg=self.layout_cfg, name=name or "volume")
        raise InvalidInputError(
            f"[{type(self).__name__}] Unsupported input type {type(image).__name__}; "
            "expected a volume, a numpy.ndarray or a torch.Tensor"
        )

    # ====[ TO OUTPUT – NumPy → requested backend ]====
    def to_output(self, array: np.ndarray, framework: Optional[Framework] = None) -> ArrayLike:
        """Return `array` as NumPy or as a CPU torch tensor (shared memory)."""
        fw = (framework or self.output_format).lower()
        if fw == "torch":
            return torch.from_numpy(np.ascontiguousarray(array))
        if fw == "numpy":
            return array
        raise InvalidInputError(f"[{type(self).__name__}] Unknown output format '{framework}'")

    # ====[ MAP FRAMES – sequential / parallel scheduling ]====
    def map_frames(self, func: Callable[[int], T], frames: Sequence[int], desc: str = "frames") -> List[T]:
        """
        Apply `func` to every frame index, preserving order.

        With `backend="parallel"` frames are dispatched to joblib threads
        (NumPy releases the GIL); otherwise they run in a plain loop.
        """
        frames = list(frames)
        if self.backend == "parallel" and len(frames) > 1:
            return Parallel(n_jobs=self.n_jobs, prefer="threads")(delayed(func)(t) for t in frames)
        iterator = tqdm(frames, desc=desc, disable=not self.verbose, leave=False)
        return [func(t) for t in iterator]
