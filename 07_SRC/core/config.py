# ==================================================
# ================  MODULE: config  ================
# ==================================================
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple, Union

import yaml

from core.errors import InvalidInputError, UnsupportedModeError
from core.layout_axes import (
    get_layout_axes,
    guess_layout_from_shape,
    is_valid_layout,
    summarize_layout,
)

__all__ = [
    "DEFAULT_KMEANS_BINS",
    "DEFAULT_MANUAL_THRESHOLDS",
    "MAX_KMEANS_CLASSES",
    "LayoutConfig",
    "GlobalConfig",
    "HistogramConfig",
    "KMeansConfig",
    "RegionConfig",
    "ManualMethod",
    "KMeansMethod",
    "ThresholdMethod",
    "ThresholderConfig",
]

# ====[ Process-wide constants (never mutated) ]====
DEFAULT_KMEANS_BINS: int = 255
DEFAULT_MANUAL_THRESHOLDS: Tuple[float, ...] = (100.0, 200.0)
MAX_KMEANS_CLASSES: int = 255

OUTPUT_TYPES: Tuple[str, ...] = ("labels", "regions", "both")
BACKENDS: Tuple[str, ...] = ("sequential", "parallel")


# ==================================================
# ===============  CLASS: LayoutConfig  ============
# ==================================================
@dataclass
class LayoutConfig:
    """
    Describe how a raw array maps onto the (T, Z, C, Y, X) axes of a volume.

    Attributes
    ----------
    layout_name : Optional[str], default "TZYXC"
        Named layout (see `core.layout_axes.FORMAT_LAYOUTS`), e.g. "TZYXC",
        "TZCYX", "ZYX", "YX". Ignored when `layout` is given. None means
        "guess from the array shape" (see `guess_layout_from_shape`).
    layout : Optional[Dict[str, Optional[int]]]
        Explicit override mapping axis roles ("time_axis", "depth_axis",
        "channel_axis", "height_axis", "width_axis") to positions.
    """
    layout_name: Optional[str] = "TZYXC"
    layout: Optional[Dict[str, Optional[int]]] = None

    def __post_init__(self) -> None:
        if self.layout is None and self.layout_name is not None and not is_valid_layout(self.layout_name):
            raise InvalidInputError(f"[LayoutConfig] Invalid layout name '{self.layout_name}'")

    def update_config(self, **kwargs) -> "LayoutConfig":
        """Dynamically update layout configuration (in-place)."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                raise AttributeError(f"[LayoutConfig] Unknown config key: '{key}'")
        self.__post_init__()
        return self

    def resolve(self, shape: Optional[Tuple[int, ...]] = None) -> Dict[str, Any]:
        """
        Resolve axis positions: explicit `layout` first, named layout second,
        then a layout guessed from `shape`.

        Returns
        -------
        dict
            Axis-role mapping plus "ndim" and "name".
        """
        if self.layout is not None:
            resolved = dict(self.layout)
            resolved.setdefault("name", self.layout_name or "custom")
            resolved.setdefault("ndim", sum(v is not None for k, v in self.layout.items() if k.endswith("_axis")))
            return resolved
        if self.layout_name is not None:
            return get_layout_axes(self.layout_name)
        if shape is None:
            raise InvalidInputError(
                "[LayoutConfig] Either 'layout_name', 'layout' or an array shape must be provided."
            )
        return get_layout_axes(guess_layout_from_shape(tuple(shape)))

    def summary(self, printout: bool = True) -> Dict[str, Any]:
        """Return or print a summary of resolved axes."""
        resolved = self.resolve()
        if printout:
            print("=== [ LayoutConfig Summary ] ===")
            if self.layout is None:
                print(summarize_layout(self.layout_name))
            else:
                for k in resolved:
                    print(f"{k:<18}: {resolved[k]}")
        return resolved


# ==================================================
# ===============  CLASS: GlobalConfig  ============
# ==================================================
@dataclass
class GlobalConfig:
    """
    Global configuration shared by every operator.

    Attributes
    ----------
    framework : str, default "numpy"
        Backend of the incoming data ("numpy" or "torch"). Computation itself
        always runs on CPU NumPy.
    output_format : str, default "numpy"
        Backend of the labeled output ("numpy" or "torch").
    backend : str, default "sequential"
        Frame scheduling: "sequential" or "parallel" (joblib).
    n_jobs : int, default -1
        Number of joblib workers when `backend="parallel"`.
    verbose : bool, default False
        Show a tqdm progress bar over frames and print summaries.
    log_dir : Optional[str]
        Directory for rotating log files (None disables file logging).
    log_level : str, default "INFO"
        Level name for the operator loggers.
    """
    framework: str = "numpy"
    output_format: str = "numpy"
    backend: str = "sequential"
    n_jobs: int = -1
    verbose: bool = False
    log_dir: Optional[str] = None
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        for name in ("framework", "output_format"):
            if getattr(self, name).lower() not in ("numpy", "torch"):
                raise InvalidInputError(f"[GlobalConfig] '{name}' must be 'numpy' or 'torch'")
        if self.backend not in BACKENDS:
            raise InvalidInputError(f"[GlobalConfig] 'backend' must be one of {BACKENDS}")

    def update_config(self, **kwargs) -> "GlobalConfig":
        """Dynamically update configuration attributes (in-place)."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                raise AttributeError(f"[GlobalConfig] Unknown config key: '{key}'")
        return self

    def summary(self, printout: bool = True) -> Dict[str, Any]:
        """Return or print a summary of the global configuration."""
        info = asdict(self)
        if printout:
            print("=== [ GlobalConfig Summary ] ===")
            for k in info:
                print(f"{k:<18}: {info[k]}")
        return info


# ==================================================
# =============  CLASS: HistogramConfig  ===========
# ==================================================
@dataclass
class HistogramConfig:
    """
    Histogram binning options.

    Attributes
    ----------
    bins : int, default 255
        Bin precision (number of equal-width bins).
    clamp : bool, default True
        Clip samples falling outside [min, max] into the edge bins instead of
        raising `OutOfRangeError`.
    """
    bins: int = DEFAULT_KMEANS_BINS
    clamp: bool = True

    def update_config(self, **kwargs) -> "HistogramConfig":
        """Dynamically update configuration attributes (in-place)."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                raise AttributeError(f"[HistogramConfig] Unknown config key: '{key}'")
        return self


# ==================================================
# ==============  CLASS: KMeansConfig  =============
# ==================================================
@dataclass
class KMeansConfig:
    """
    Options of the 1-D histogram K-means.

    Attributes
    ----------
    max_iter : Optional[int], default 1000
        Iteration cap (None means iterate until the fixpoint).
    empty_policy : str, default "freeze"
        What happens to a center whose class receives no weight:
        "freeze" keeps it, "reseed" moves it to the most populated free bin.
    on_no_convergence : str, default "raise"
        "raise" a `ConvergenceError` or "warn" and return the last centers.
    """
    max_iter: Optional[int] = 1000
    empty_policy: str = "freeze"
    on_no_convergence: str = "raise"

    def __post_init__(self) -> None:
        if self.empty_policy not in ("freeze", "reseed"):
            raise UnsupportedModeError(f"[KMeansConfig] Unknown empty_policy '{self.empty_policy}'")
        if self.on_no_convergence not in ("raise", "warn"):
            raise UnsupportedModeError(f"[KMeansConfig] Unknown on_no_convergence '{self.on_no_convergence}'")
        if self.max_iter is not None and int(self.max_iter) < 1:
            raise InvalidInputError("[KMeansConfig] max_iter must be >= 1 or None")

    def update_config(self, **kwargs) -> "KMeansConfig":
        """Dynamically update configuration attributes (in-place)."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                raise AttributeError(f"[KMeansConfig] Unknown config key: '{key}'")
        return self


# ==================================================
# ==============  CLASS: RegionConfig  =============
# ==================================================
@dataclass
class RegionConfig:
    """
    Region extraction options.

    Attributes
    ----------
    split_components : bool, default False
        If True, each tier region is split into one region per connected blob.
    connectivity : Optional[int]
        Neighbourhood order passed to `skimage.measure.label` (None = full).
    """
    split_components: bool = False
    connectivity: Optional[int] = None

    def update_config(self, **kwargs) -> "RegionConfig":
        """Dynamically update configuration attributes (in-place)."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                raise AttributeError(f"[RegionConfig] Unknown config key: '{key}'")
        return self


# ==================================================
# ===========  Threshold method variants  ==========
# ==================================================
@dataclass(frozen=True)
class ManualMethod:
    """User-provided thresholds, absolute or percentiles in [0, 100]."""
    thresholds: Tuple[float, ...] = DEFAULT_MANUAL_THRESHOLDS
    percentile: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "thresholds", tuple(float(v) for v in self.thresholds))


@dataclass(frozen=True)
class KMeansMethod:
    """Thresholds derived from a K-means clustering of the intensity histogram."""
    num_classes: int = 2
    bins: int = DEFAULT_KMEANS_BINS

    def __post_init__(self) -> None:
        if not 2 <= int(self.num_classes) <= MAX_KMEANS_CLASSES:
            raise InvalidInputError(
                f"[KMeansMethod] num_classes must be in [2, {MAX_KMEANS_CLASSES}], got {self.num_classes}"
            )
        if int(self.bins) < 2:
            raise InvalidInputError(f"[KMeansMethod] bins must be >= 2, got {self.bins}")


ThresholdMethod = Union[ManualMethod, KMeansMethod]


# ==================================================
# ============  CLASS: ThresholderConfig  ==========
# ==================================================
@dataclass
class ThresholderConfig:
    """
    Configuration of the thresholding entry point.

    Attributes
    ----------
    method : str | ManualMethod | KMeansMethod, default "manual"
        Either a method variant, or "manual" / "kmeans" to build one from the
        flat fields below.
    thresholds : Sequence[float], default (100, 200)
        Manual thresholds (absolute, or percentiles when `percentile=True`).
    percentile : bool, default False
        Interpret manual thresholds as percentiles of the intensity range.
    num_classes : int, default 2
        Number of K-means classes.
    bins : int, default 255
        Histogram bin precision for K-means.
    channel : int, default 0
        Channel to threshold.
    time_dependent : bool, default False
        Recompute bounds / thresholds independently for every frame.
    output_type : str, default "labels"
        "labels" (labeled volume), "regions" or "both".
    in_place : bool, default False
        Overwrite the input channel with the labels.
    """
    method: Union[str, ManualMethod, KMeansMethod] = "manual"
    thresholds: Sequence[float] = DEFAULT_MANUAL_THRESHOLDS
    percentile: bool = False
    num_classes: int = 2
    bins: int = DEFAULT_KMEANS_BINS
    channel: int = 0
    time_dependent: bool = False
    output_type: str = "labels"
    in_place: bool = False
    histogram: HistogramConfig = field(default_factory=HistogramConfig)
    kmeans: KMeansConfig = field(default_factory=KMeansConfig)
    region: RegionConfig = field(default_factory=RegionConfig)

    def update_config(self, **kwargs) -> "ThresholderConfig":
        """Dynamically update configuration attributes (in-place)."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                raise AttributeError(f"[ThresholderConfig] Unknown config key: '{key}'")
        return self

    def resolve_method(self) -> ThresholdMethod:
        """
        Return the method variant described by this configuration.

        Raises
        ------
        UnsupportedModeError
            If `method` is neither a variant nor one of "manual" / "kmeans".
        """
        if isinstance(self.method, (ManualMethod, KMeansMethod)):
            return self.method
        key = str(self.method).lower().replace("-", "_")
        if key == "manual":
            return ManualMethod(thresholds=tuple(self.thresholds), percentile=bool(self.percentile))
        if key in ("kmeans", "k_means"):
            return KMeansMethod(num_classes=int(self.num_classes), bins=int(self.bins))
        raise UnsupportedModeError(
            f"[ThresholderConfig] Unknown thresholding method '{self.method}'. Supported: ['manual', 'kmeans']"
        )

    def validate(self) -> None:
        """Check the output options (method is checked by `resolve_method`)."""
        if self.output_type not in OUTPUT_TYPES:
            raise UnsupportedModeError(
                f"[ThresholderConfig] Unknown output_type '{self.output_type}'. Supported: {list(OUTPUT_TYPES)}"
            )
        if int(self.channel) < 0:
            raise InvalidInputError(f"[ThresholderConfig] invalid channel ({self.channel})")

    # ------------------- Serialization -------------------
    def to_dict(self) -> Dict[str, Any]:
        """Plain-python view of the configuration, suitable for YAML."""
        method = self.method
        data = asdict(self)
        if isinstance(method, ManualMethod):
            data.update(method="manual", thresholds=list(method.thresholds), percentile=method.percentile)
        elif isinstance(method, KMeansMethod):
            data.update(method="kmeans", num_classes=method.num_classes, bins=method.bins)
        data["thresholds"] = [float(v) for v in data["thresholds"]]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThresholderConfig":
        """Build a configuration from a (possibly nested) dictionary."""
        data = dict(data or {})
        nested = {
            "histogram": HistogramConfig,
            "kmeans": KMeansConfig,
            "region": RegionConfig,
        }
        for key, klass in nested.items():
            if isinstance(data.get(key), dict):
                data[key] = klass(**data[key])
        if "thresholds" in data and data["thresholds"] is not None:
            data["thresholds"] = tuple(float(v) for v in data["thresholds"])
        unknown = set(data) - set(cls.__dataclass_fields__)
        if unknown:
            raise AttributeError(f"[ThresholderConfig] Unknown config key(s): {sorted(unknown)}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ThresholderConfig":
        """Load a configuration from a YAML file."""
        with Path(path).open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    def to_yaml(self, path: Union[str, Path]) -> Path:
        """Write the configuration to a YAML file and return its path."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)
        return path

    def summary(self, printout: bool = True) -> Dict[str, Any]:
        """Return or print a summary of the thresholder configuration."""
        info = self.to_dict()
        if printout:
            print("=== [ ThresholderConfig Summary ] ===")
            for k in info:
                print(f"{k:<18}: {info[k]}")
        return info
