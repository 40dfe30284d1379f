# ==================================================
# ========= TESTS: Config_Layout_Volume ============
# ==================================================
from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import pytest
import torch

from core.config import (
    DEFAULT_KMEANS_BINS,
    DEFAULT_MANUAL_THRESHOLDS,
    GlobalConfig,
    KMeansConfig,
    KMeansMethod,
    LayoutConfig,
    ManualMethod,
    RegionConfig,
    ThresholderConfig,
)
from core.errors import (
    ConvergenceError,
    DegenerateRangeError,
    InvalidInputError,
    MissingThresholdsError,
    OutOfRangeError,
    ThresholderError,
    UnsupportedModeError,
)
from core.layout_axes import (
    get_layout_axes,
    guess_layout_from_shape,
    is_valid_layout,
    list_available_layouts,
    summarize_layout,
)
from core.volume import VolumeAccessor, VolumeND
from operators.thresholder import ThresholderND
from utils.decorators import log_exceptions, safe_timer
from utils.logger import get_debug_logger, get_error_logger, get_logger, resolve_level


# ===================
# Helpers
# ===================

class RecordingHandler(logging.Handler):
    """Keep every emitted record in memory."""

    def __init__(self) -> None:
        super().__init__()
        self.records = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


# ===================
# Tests: errors
# ===================

@pytest.mark.parametrize(
    "error, builtin",
    [
        (InvalidInputError("x"), ValueError),
        (MissingThresholdsError("x"), InvalidInputError),
        (DegenerateRangeError(1.0, 1.0), ValueError),
        (OutOfRangeError("x"), ValueError),
        (UnsupportedModeError("x"), NotImplementedError),
        (ConvergenceError(10, [1, 2]), RuntimeError),
    ],
)
def test_error_taxonomy(error: Exception, builtin: type):
    assert isinstance(error, ThresholderError)
    assert isinstance(error, builtin)


def test_error_payloads():
    err = DegenerateRangeError(3.0, 2.0, context="HistogramBuilder")
    assert (err.vmin, err.vmax) == (3.0, 2.0)
    assert "[HistogramBuilder]" in str(err)
    assert ConvergenceError(5, [4, 1]).centers == [4, 1]


# ===================
# Tests: configuration
# ===================

def test_defaults():
    cfg = ThresholderConfig()
    assert DEFAULT_KMEANS_BINS == 255
    assert tuple(cfg.thresholds) == DEFAULT_MANUAL_THRESHOLDS == (100.0, 200.0)
    assert cfg.num_classes == 2 and not cfg.time_dependent and cfg.output_type == "labels"
    assert cfg.resolve_method() == ManualMethod(thresholds=(100.0, 200.0), percentile=False)


def test_update_config_rejects_unknown_keys():
    cfg = ThresholderConfig().update_config(num_classes=4, method="kmeans")
    assert cfg.resolve_method() == KMeansMethod(num_classes=4, bins=255)
    for config in (ThresholderConfig(), GlobalConfig(), LayoutConfig(), KMeansConfig(), RegionConfig()):
        with pytest.raises(AttributeError):
            config.update_config(not_a_key=1)


@pytest.mark.parametrize("kwargs", [{"framework": "jax"}, {"output_format": "cupy"}, {"backend": "dask"}])
def test_global_config_validation(kwargs):
    with pytest.raises(InvalidInputError):
        GlobalConfig(**kwargs)


@pytest.mark.parametrize("kwargs", [{"empty_policy": "drop"}, {"on_no_convergence": "ignore"}])
def test_kmeans_config_policies(kwargs):
    with pytest.raises(UnsupportedModeError):
        KMeansConfig(**kwargs)


def test_kmeans_config_iteration_cap():
    with pytest.raises(InvalidInputError):
        KMeansConfig(max_iter=0)
    assert KMeansConfig(max_iter=None).max_iter is None


@pytest.mark.parametrize("kwargs", [{"num_classes": 1}, {"num_classes": 256}, {"bins": 1}])
def test_kmeans_method_bounds(kwargs):
    with pytest.raises(InvalidInputError):
        KMeansMethod(**kwargs)


def test_method_variants_are_immutable():
    method = ManualMethod(thresholds=[1, 2])
    assert method.thresholds == (1.0, 2.0)
    with pytest.raises(AttributeError):
        method.percentile = True


def test_yaml_round_trip(tmp_path: Path):
    cfg = ThresholderConfig(
        method=KMeansMethod(num_classes=5, bins=128),
        time_dependent=True,
        output_type="both",
        kmeans=KMeansConfig(max_iter=50, empty_policy="reseed"),
        region=RegionConfig(split_components=True, connectivity=1),
    )
    path = cfg.to_yaml(tmp_path / "cfg" / "thresholder.yaml")
    assert path.exists()

    loaded = ThresholderConfig.from_yaml(path)
    assert loaded.resolve_method() == KMeansMethod(num_classes=5, bins=128)
    assert loaded.kmeans == KMeansConfig(max_iter=50, empty_policy="reseed")
    assert loaded.region.split_components and loaded.region.connectivity == 1
    assert loaded.to_dict() == cfg.to_dict()


def test_from_dict_rejects_unknown_keys():
    with pytest.raises(AttributeError):
        ThresholderConfig.from_dict({"method": "manual", "colour": "red"})


def test_empty_yaml_gives_defaults(tmp_path: Path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert ThresholderConfig.from_yaml(path).to_dict() == ThresholderConfig().to_dict()


def test_summary_returns_dict():
    info = ThresholderConfig().summary(printout=False)
    assert info["method"] == "manual"
    assert GlobalConfig().summary(printout=False)["backend"] == "sequential"
    assert LayoutConfig(layout_name="ZYX").summary(printout=False)["ndim"] == 3


# ===================
# Tests: layouts
# ===================

@pytest.mark.parametrize("name", ["YX", "ZYX", "TZYXC", "TZCYX", "TCZYX"])
def test_named_layouts(name: str):
    layout = get_layout_axes(name)
    assert layout["ndim"] == len(name)
    assert layout["height_axis"] == name.index("Y")
    assert name in list_available_layouts()


def test_custom_permutation_layout():
    layout = get_layout_axes("xyz")
    assert layout["name"] == "XYZ"
    assert (layout["width_axis"], layout["height_axis"], layout["depth_axis"]) == (0, 1, 2)
    assert layout["time_axis"] is None


@pytest.mark.parametrize("name", ["ZZYX", "TZX", "QYX", ""])
def test_invalid_layouts(name: str):
    assert not is_valid_layout(name)
    with pytest.raises(InvalidInputError):
        get_layout_axes(name)


@pytest.mark.parametrize(
    "shape, expected",
    [((8, 8), "YX"), ((8, 8, 3), "YXC"), ((4, 8, 8), "ZYX"), ((2, 4, 8, 8), "TZYX"), ((2, 4, 8, 8, 2), "TZYXC")],
)
def test_guess_layout(shape, expected):
    assert guess_layout_from_shape(shape) == expected


def test_guess_layout_strict():
    with pytest.raises(InvalidInputError):
        guess_layout_from_shape((2,) * 6)
    assert guess_layout_from_shape((2,) * 6, strict=False) == "unknown"
    assert "depth_axis" in summarize_layout("ZYX")


def test_unknown_layout_message_lists_named_layouts():
    with pytest.raises(InvalidInputError, match="TZYXC"):
        get_layout_axes("QQ")


@pytest.mark.parametrize("name", ["ZZYX", "QYX"])
def test_layout_config_rejects_invalid_names(name: str):
    with pytest.raises(InvalidInputError):
        LayoutConfig(layout_name=name)
    with pytest.raises(InvalidInputError):
        LayoutConfig().update_config(layout_name=name)


@pytest.mark.parametrize("shape, depth, channels", [((4, 8, 8), 4, 1), ((8, 8, 3), 1, 3), ((2, 4, 8, 8), 4, 1)])
def test_layout_guessed_from_shape(shape, depth: int, channels: int):
    volume = VolumeND.from_array(np.zeros(shape), layout_cfg=LayoutConfig(layout_name=None))
    assert (volume.depth, volume.channel_count, volume.height, volume.width) == (depth, channels, 8, 8)
    with pytest.raises(InvalidInputError):
        LayoutConfig(layout_name=None).resolve()


def test_layout_summary_printout(capsys):
    LayoutConfig(layout_name="ZYX").summary()
    out = capsys.readouterr().out
    assert "[Layout: 'ZYX']" in out and "depth_axis" in out


# ===================
# Tests: VolumeND
# ===================

def test_from_array_canonical_order_is_a_view():
    raw = np.arange(2 * 3 * 4 * 5 * 2, dtype=np.float32).reshape(2, 3, 4, 5, 2)  # TZYXC
    volume = VolumeND.from_array(raw, "TZYXC")
    assert volume.shape == (2, 3, 2, 4, 5)
    assert (volume.frame_count, volume.depth, volume.channel_count, volume.height, volume.width) == (2, 3, 2, 4, 5)
    assert volume.get_voxel(x=4, y=3, z=2, t=1, c=1) == raw[1, 2, 3, 4, 1]

    volume.set_voxel(0, 0, 0, 0, 1, -7.0)
    assert raw[0, 0, 0, 0, 1] == -7.0
    assert np.shares_memory(volume.channel_data(1), raw)


def test_missing_axes_become_singletons():
    volume = VolumeND.from_array(np.zeros((6, 7)), "YX")
    assert volume.shape == (1, 1, 1, 6, 7)
    assert volume.depth_at(0) == 1
    assert volume.to_array("YX").shape == (6, 7)


def test_to_array_round_trip():
    raw = np.random.default_rng(0).random((3, 2, 4, 5))  # ZCYX
    volume = VolumeND.from_array(raw, layout_cfg=LayoutConfig(layout_name="ZCYX"))
    np.testing.assert_array_equal(volume.to_array("ZCYX"), raw)
    np.testing.assert_array_equal(volume.to_array("CZYX"), np.moveaxis(raw, 1, 0))
    with pytest.raises(InvalidInputError):
        volume.to_array("ZYX")  # two channels cannot be dropped


def test_explicit_layout_dict():
    cfg = LayoutConfig(layout_name=None, layout={"depth_axis": 2, "height_axis": 0, "width_axis": 1})
    volume = VolumeND.from_array(np.zeros((4, 5, 3)), layout_cfg=cfg)
    assert (volume.depth, volume.height, volume.width) == (3, 4, 5)


def test_from_tensor():
    tensor = torch.arange(24, dtype=torch.float32).reshape(2, 3, 4)
    volume = VolumeND.from_array(tensor, "ZYX")
    assert volume.source_framework == "torch"
    assert volume.frame_channel_bounds(0, 0) == (0.0, 23.0)


def test_bounds_skip_non_finite():
    data = np.array([[1.0, np.nan], [np.inf, -2.0]]).reshape(1, 1, 1, 2, 2)
    assert VolumeND(data).channel_bounds(0) == (-2.0, 1.0)


@pytest.mark.parametrize(
    "array, layout",
    [(np.zeros((2, 3)), "ZYX"), (np.zeros((0, 3)), "YX"), (None, "YX")],
)
def test_invalid_arrays(array, layout):
    with pytest.raises(InvalidInputError):
        VolumeND.from_array(array, layout)


def test_invalid_indices():
    volume = VolumeND(np.zeros((1, 1, 1, 2, 2)))
    assert isinstance(volume, VolumeAccessor)
    with pytest.raises(InvalidInputError):
        volume.channel_data(1)
    with pytest.raises(InvalidInputError):
        volume.frame_data(0, 3)


# ===================
# Tests: logging & decorators
# ===================

def test_logger_is_idempotent(tmp_path: Path):
    first = get_logger("nd_thresholder.tests.idempotent", log_dir=tmp_path, level="DEBUG")
    second = get_logger("nd_thresholder.tests.idempotent", log_dir=tmp_path, level="WARNING")
    assert first is second
    assert len(second.handlers) == 2
    assert all(h.level == logging.WARNING for h in second.handlers)
    assert not second.propagate


def test_file_only_loggers(tmp_path: Path):
    err = get_error_logger("nd_thresholder.tests.errors", log_dir=tmp_path)
    dbg = get_debug_logger("nd_thresholder.tests.debug", log_dir=tmp_path)
    assert not any(type(h) is logging.StreamHandler for h in err.handlers + dbg.handlers)
    err.error("boom")
    for h in err.handlers:
        h.flush()
    assert any(p.name.startswith("errors_") for p in tmp_path.iterdir())


def test_resolve_level():
    assert resolve_level("debug") == logging.DEBUG
    assert resolve_level(logging.ERROR) == logging.ERROR
    with pytest.raises(ValueError):
        resolve_level("chatty")


def test_log_exceptions_reraises():
    @log_exceptions(logger_name="nd_thresholder.tests.reraise")
    def fails():
        raise OutOfRangeError("nope")

    with pytest.raises(OutOfRangeError):
        fails()


def test_safe_timer_returns_result():
    @safe_timer(name="cube")
    def cube(x):
        return x ** 3

    assert cube(2) == 8
    assert cube.__name__ == "cube"


def test_nested_decorators_log_an_exception_once():
    logger = get_error_logger("nd_thresholder.tests.nested")
    handler = RecordingHandler()
    logger.addHandler(handler)

    @log_exceptions(logger_name="nd_thresholder.tests.nested")
    def inner():
        raise OutOfRangeError("nope")

    @log_exceptions(logger_name="nd_thresholder.tests.nested")
    def outer():
        return inner()

    try:
        with pytest.raises(OutOfRangeError):
            outer()
        with pytest.raises(OutOfRangeError):
            outer()
    finally:
        logger.removeHandler(handler)
    assert len(handler.records) == 2
    assert all("inner" in r.getMessage() for r in handler.records)


def test_thresholder_failure_is_logged_once():
    rng = np.random.default_rng(3)
    volume = VolumeND(rng.integers(0, 255, size=(1, 2, 1, 16, 16)).astype(np.float32))
    cfg = ThresholderConfig(method="kmeans", num_classes=3, kmeans=KMeansConfig(max_iter=1))

    logger = get_error_logger()
    handler = RecordingHandler()
    logger.addHandler(handler)
    try:
        with pytest.raises(ConvergenceError):
            ThresholderND(cfg)(volume)
    finally:
        logger.removeHandler(handler)
    assert len(handler.records) == 1
    assert handler.records[0].exc_info is not None
