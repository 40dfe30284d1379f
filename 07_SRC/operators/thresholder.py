# ==================================================
# =============  MODULE: thresholder  ==============
# ==================================================
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence

from core.config import (
    DEFAULT_KMEANS_BINS,
    DEFAULT_MANUAL_THRESHOLDS,
    GlobalConfig,
    KMeansMethod,
    LayoutConfig,
    ManualMethod,
    ThresholderConfig,
    ThresholdMethod,
)
from core.errors import InvalidInputError, MissingThresholdsError, UnsupportedModeError
from core.operator_core import OperatorCore
from core.volume import ArrayLike, VolumeAccessor
from operators.classifier import LabeledVolume, VoxelClassifier
from operators.regions import Region, RegionExtractor
from operators.thresholds import ThresholdDeriver
from utils.decorators import log_exceptions, safe_timer

# Public API
__all__ = ["ThresholderND", "ThresholdResult", "thresholder_nd"]

Framework = Literal["numpy", "torch"]


@dataclass
class ThresholdResult:
    """
    Outputs of one thresholding run.

    Attributes
    ----------
    labeled : Optional[LabeledVolume]
        Class map (None when only regions were requested).
    regions : Optional[List[Region]]
        Per-(time, tier) regions (None when only labels were requested).
    thresholds : List[List[float]]
        Threshold list actually used for each frame.
    channel : int
        Thresholded channel.
    output : Optional[ArrayLike]
        Labels as (T, Z, Y, X) array/tensor in the configured output format.
    """
    labeled: Optional[LabeledVolume]
    regions: Optional[List[Region]]
    thresholds: List[List[float]]
    channel: int = 0
    output: Optional[ArrayLike] = field(default=None, repr=False)

    @property
    def num_classes(self) -> int:
        """Number of classes including background (longest frame list + 1)."""
        return max(len(thr) for thr in self.thresholds) + 1


class ThresholderND(OperatorCore):
    """
    Multi-threshold voxel classifier for 2D to 5D volumes.

    Thresholds come either from the user (absolute values or percentiles of
    the intensity range) or from a K-means clustering of the channel
    histogram. The channel is then labeled and/or split into regions.

    Notes
    -----
    - Strategy dispatch goes through the method variant (`ManualMethod`,
      `KMeansMethod`), resolved once from `ThresholderConfig`.
    - `time_dependent=True` derives bounds and thresholds per frame.
    - With `in_place=True` the labels overwrite the input channel.
    """

    def __init__(
        self,
        thresholder_cfg: ThresholderConfig = ThresholderConfig(),
        layout_cfg: LayoutConfig = LayoutConfig(),
        global_cfg: GlobalConfig = GlobalConfig(),
    ) -> None:
        """
        Parameters
        ----------
        thresholder_cfg : ThresholderConfig
            Method, output and sub-component options.
        layout_cfg : LayoutConfig
            Axis layout used to wrap raw arrays.
        global_cfg : GlobalConfig
            Backend, scheduling and logging options.
        """
        super().__init__(layout_cfg=layout_cfg, global_cfg=global_cfg)
        self.thresholder_cfg: ThresholderConfig = thresholder_cfg
        self.thresholder_cfg.validate()

        self.method: ThresholdMethod = thresholder_cfg.resolve_method()
        self.channel: int = int(thresholder_cfg.channel)
        self.time_dependent: bool = bool(thresholder_cfg.time_dependent)
        self.output_type: str = thresholder_cfg.output_type
        self.in_place: bool = bool(thresholder_cfg.in_place)

        self.deriver = ThresholdDeriver(
            histogram_cfg=thresholder_cfg.histogram,
            kmeans_cfg=thresholder_cfg.kmeans,
            layout_cfg=layout_cfg,
            global_cfg=global_cfg,
        )
        self.classifier = VoxelClassifier(layout_cfg=layout_cfg, global_cfg=global_cfg)
        self.extractor = RegionExtractor(region_cfg=thresholder_cfg.region, layout_cfg=layout_cfg, global_cfg=global_cfg)

    @log_exceptions()
    def __call__(self, volume: Any, channel: Optional[int] = None) -> ThresholdResult:
        """
        Threshold one channel of `volume`.

        Parameters
        ----------
        volume : VolumeAccessor | np.ndarray | torch.Tensor
            Input volume; arrays/tensors are read through `layout_cfg`.
        channel : int, optional
            Overrides the configured channel.

        Returns
        -------
        ThresholdResult

        Raises
        ------
        InvalidInputError
            Missing volume or invalid channel.
        MissingThresholdsError
            Manual method without thresholds.
        UnsupportedModeError
            Unknown method variant.
        """
        volume = self.convert_once(volume)
        c = self.channel if channel is None else int(channel)
        if not 0 <= c < volume.channel_count:
            raise InvalidInputError(f"[ThresholderND] input volume has no channel #{c}")

        thresholds = self.compute_thresholds(volume, c)
        for t, thr in enumerate(thresholds):
            self.logger.info(f"[ThresholderND] T={t} thresholds={thr}")

        labeled: Optional[LabeledVolume] = None
        regions: Optional[List[Region]] = None
        output: Optional[ArrayLike] = None

        if self.output_type in ("labels", "both"):
            labeled = self.classifier.classify(volume, c, thresholds, in_place=self.in_place)
            output = self.to_output(labeled.data)
            if self.output_type == "both":
                regions = self.extractor.extract(labeled, thresholds)
        else:
            # Regions only: never touch the input storage
            scratch = self.classifier.classify(volume, c, thresholds, in_place=False)
            regions = self.extractor.extract(scratch, thresholds)

        return ThresholdResult(labeled=labeled, regions=regions, thresholds=thresholds, channel=c, output=output)

    # ====[ Threshold derivation ]====
    @safe_timer(name="ThresholderND.compute_thresholds")
    def compute_thresholds(self, volume: VolumeAccessor, c: int) -> List[List[float]]:
        """One ascending threshold list per frame of channel `c`, for the configured method."""
        strategy_map = {
            ManualMethod: self._manual_thresholds,
            KMeansMethod: self._kmeans_thresholds,
        }
        strategy = strategy_map.get(type(self.method))
        if strategy is None:
            raise UnsupportedModeError(
                f"[ThresholderND] Unsupported thresholding method {type(self.method).__name__}"
            )
        return strategy(volume, c)

    def _manual_thresholds(self, volume: VolumeAccessor, c: int) -> List[List[float]]:
        method: ManualMethod = self.method
        if not method.thresholds:
            raise MissingThresholdsError("[ThresholderND] No threshold(s) indicated")
        if method.percentile:
            return self.deriver.percentiles_per_frame(volume, c, method.thresholds, time_dependent=self.time_dependent)

        values = [float(v) for v in method.thresholds]
        bad = [v for v in values if not math.isfinite(v)]
        if bad:
            raise InvalidInputError(f"[ThresholderND] Thresholds must be finite numbers, got {bad}")
        if any(b < a for a, b in zip(values, values[1:])):
            self.logger.warning(f"[ThresholderND] Thresholds {values} are not ascending; sorting them")
            values = sorted(values)
        return self.deriver.replicate(values, volume.frame_count)

    def _kmeans_thresholds(self, volume: VolumeAccessor, c: int) -> List[List[float]]:
        method: KMeansMethod = self.method
        return self.deriver.kmeans_thresholds(
            volume, c, method.num_classes, bins=method.bins, time_dependent=self.time_dependent
        )

    def threshold_block(self, volume: Any, channel: Optional[int] = None) -> List[float]:
        """Thresholds of one channel over the whole volume (shared mode), as a flat list."""
        volume = self.convert_once(volume)
        c = self.channel if channel is None else int(channel)
        if not 0 <= c < volume.channel_count:
            raise InvalidInputError(f"[ThresholderND] input volume has no channel #{c}")
        if self.time_dependent:
            raise UnsupportedModeError("[ThresholderND] threshold_block needs time_dependent=False")
        return self.compute_thresholds(volume, c)[0]


def thresholder_nd(
    image: Any,
    method: str = "kmeans",
    thresholds: Optional[Sequence[float]] = None,
    percentile: bool = False,
    num_classes: int = 2,
    bins: int = DEFAULT_KMEANS_BINS,
    channel: int = 0,
    time_dependent: bool = False,
    output_type: str = "labels",
    in_place: bool = False,
    layout_name: Optional[str] = "TZYXC",
    framework: Framework = "numpy",
    output_format: Framework = "numpy",
    backend: str = "sequential",
    n_jobs: int = -1,
) -> ThresholdResult:
    """
    Threshold an image using a preconfigured ThresholderND instance.

    Parameters
    ----------
    image : np.ndarray, torch.Tensor or VolumeAccessor
        Input volume.
    method : {'manual', 'kmeans'}, default 'kmeans'
        Threshold source.
    thresholds : sequence of float, optional
        Manual thresholds (defaults to (100, 200)).
    percentile : bool, default False
        Interpret manual thresholds as percentiles in [0, 100].
    num_classes : int, default 2
        Number of K-means classes (2..255).
    bins : int, default 255
        K-means histogram precision.
    channel : int, default 0
        Channel to threshold.
    time_dependent : bool, default False
        Compute thresholds independently for every frame.
    output_type : {'labels', 'regions', 'both'}, default 'labels'
        Requested outputs.
    in_place : bool, default False
        Overwrite the input channel with the labels.
    layout_name : str, optional, default 'TZYXC'
        Axis layout of `image` when it is an array or tensor (None guesses it
        from the shape).
    framework, output_format : {'numpy', 'torch'}
        Input and labeled output backends.
    backend : {'sequential', 'parallel'}, default 'sequential'
        Frame scheduling.
    n_jobs : int, default -1
        joblib workers for the parallel backend.

    Returns
    -------
    ThresholdResult
    """
    # ====[ Configuration ]====
    thresholder_params: Dict[str, Any] = {
        "method": method,
        "thresholds": tuple(thresholds) if thresholds is not None else DEFAULT_MANUAL_THRESHOLDS,
        "percentile": percentile,
        "num_classes": num_classes,
        "bins": bins,
        "channel": channel,
        "time_dependent": time_dependent,
        "output_type": output_type,
        "in_place": in_place,
    }
    global_params: Dict[str, Any] = {
        "framework": framework,
        "output_format": output_format,
        "backend": backend,
        "n_jobs": n_jobs,
    }

    thresholder = ThresholderND(
        thresholder_cfg=ThresholderConfig(**thresholder_params),
        layout_cfg=LayoutConfig(layout_name=layout_name),
        global_cfg=GlobalConfig(**global_params),
    )
    return thresholder(image)
