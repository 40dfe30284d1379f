# ==================================================
# ============ TESTS: Histogram_KMeans =============
# ==================================================
from __future__ import annotations

import numpy as np
import pytest

from core.config import HistogramConfig, KMeansConfig
from core.errors import (
    ConvergenceError,
    DegenerateRangeError,
    InvalidInputError,
    OutOfRangeError,
    ThresholderError,
)
from core.volume import VolumeND
from operators.histogram import Histogram, HistogramBuilder, channel_values
from operators.kmeans import KMeansClusterer, initial_centers, kmeans_histogram_1d


# ===================
# Helpers
# ===================

def _make_volume(shape=(2, 3, 1, 8, 8), seed: int = 7, high: int = 256) -> VolumeND:
    """Deterministic integer-valued (T, Z, C, Y, X) volume."""
    rng = np.random.default_rng(seed)
    return VolumeND(rng.integers(0, high, size=shape).astype(np.float32), name="rand")


def _two_mass_histogram(n_bins: int = 64, seed: int = 3) -> np.ndarray:
    """Counts with two separated Gaussian-like masses."""
    rng = np.random.default_rng(seed)
    samples = np.concatenate([rng.normal(12, 2, 500), rng.normal(48, 3, 800)])
    idx = np.clip(np.round(samples), 0, n_bins - 1).astype(int)
    return np.bincount(idx, minlength=n_bins).astype(float)


# ===================
# Fixtures
# ===================

@pytest.fixture(scope="session")
def builder() -> HistogramBuilder:
    return HistogramBuilder(HistogramConfig(bins=8))


@pytest.fixture(scope="session")
def volume() -> VolumeND:
    return _make_volume()


# ===================
# Tests: HistogramBuilder
# ===================

def test_counts_sum_to_number_of_samples(volume: VolumeND):
    hist = HistogramBuilder().from_volume(volume, 0)
    assert hist.bins == 255
    assert hist.total == volume.frame_count * volume.depth * volume.height * volume.width
    assert len(hist) == hist.counts.size == 255


def test_bin_index_formula(builder: HistogramBuilder):
    # fact = (8 - 1) / (7 - 0) = 1 -> value v lands in bin floor(v)
    hist = builder.build(np.array([0, 0.5, 3.2, 3.9, 7.0]), 0.0, 7.0)
    np.testing.assert_array_equal(hist.counts, [2, 0, 0, 2, 0, 0, 0, 1])
    assert hist.bin_width == pytest.approx(1.0)
    assert hist.to_intensity(3.5) == pytest.approx(3.5)


def test_max_value_lands_in_last_bin():
    hist = HistogramBuilder().build(np.array([10.0, 20.0]), 10.0, 20.0, bins=255)
    assert hist.counts[0] == 1 and hist.counts[-1] == 1


def test_histogram_is_immutable(builder: HistogramBuilder):
    hist = builder.build(np.arange(8.0), 0.0, 7.0)
    assert isinstance(hist, Histogram)
    with pytest.raises(ValueError):
        hist.counts[0] = 42


@pytest.mark.parametrize("vmin, vmax", [(5.0, 5.0), (6.0, 2.0)])
def test_degenerate_range_raises(builder: HistogramBuilder, vmin: float, vmax: float):
    with pytest.raises(DegenerateRangeError) as exc:
        builder.build(np.array([5.0]), vmin, vmax)
    assert isinstance(exc.value, ThresholderError)
    assert isinstance(exc.value, ValueError)


def test_constant_volume_is_degenerate():
    flat = VolumeND(np.full((1, 2, 1, 4, 4), 9.0))
    with pytest.raises(DegenerateRangeError):
        HistogramBuilder().from_volume(flat, 0)


def test_invalid_bins(builder: HistogramBuilder):
    with pytest.raises(InvalidInputError):
        builder.build(np.arange(4.0), 0.0, 3.0, bins=0)


def test_out_of_range_samples_are_clamped_by_default(builder: HistogramBuilder):
    hist = builder.build(np.array([-3.0, 2.0, 11.0]), 0.0, 7.0)
    assert hist.counts[0] == 1 and hist.counts[2] == 1 and hist.counts[7] == 1
    assert hist.total == 3


def test_out_of_range_samples_raise_without_clamp():
    strict = HistogramBuilder(HistogramConfig(bins=8, clamp=False))
    with pytest.raises(OutOfRangeError):
        strict.build(np.array([-3.0, 2.0]), 0.0, 7.0)


def test_non_finite_samples_are_ignored(builder: HistogramBuilder):
    hist = builder.build(np.array([1.0, np.nan, np.inf, 2.0]), 0.0, 7.0)
    assert hist.total == 2


def test_per_frame_histogram_uses_frame_bounds(volume: VolumeND):
    builder = HistogramBuilder()
    for t in range(volume.frame_count):
        hist = builder.from_frame(volume, 0, t)
        assert (hist.vmin, hist.vmax) == volume.frame_channel_bounds(0, t)
        assert hist.total == volume.depth * volume.height * volume.width


def test_channel_values_global_and_frame(volume: VolumeND):
    assert channel_values(volume, 0).size == volume.data[:, :, 0].size
    np.testing.assert_array_equal(channel_values(volume, 0, t=1), volume.data[1, :, 0].reshape(-1))


# ===================
# Tests: KMeans
# ===================

def test_initial_centers_are_evenly_spread():
    np.testing.assert_array_equal(initial_centers(8, 2), [2, 4])
    np.testing.assert_array_equal(initial_centers(255, 2), [84, 169])
    centers = initial_centers(255, 5)
    assert np.all(np.diff(centers) > 0) and centers[0] > 0 and centers[-1] < 254


def test_two_masses_scenario():
    hist = np.array([0, 0, 0, 10, 10, 0, 0, 0], dtype=float)
    result = kmeans_histogram_1d(hist, 2)
    assert result.converged
    np.testing.assert_array_equal(result.sorted_centers, [3, 4])

    # midpoint in bin space is 3.5
    centers = result.sorted_centers
    assert centers[0] + (centers[1] - centers[0]) / 2 == pytest.approx(3.5)


def test_ties_go_to_first_center_in_index_order():
    # bin 2 is equidistant from both seeds and joins center #0 (bin 3)
    hist = np.array([0, 1, 5, 1, 0], dtype=float)
    result = kmeans_histogram_1d(hist, 2, init_centers=[3, 1])
    # center #0 receives bins 2, 3 -> floor((2*5 + 3*1) / 6) = 2 ; center #1 keeps bin 1
    assert result.centers.tolist()[1] == 1
    assert result.centers.tolist()[0] == 2


@pytest.mark.parametrize("k", [2, 3, 4, 6])
def test_terminates_with_k_centers_in_range(k: int):
    hist = _two_mass_histogram()
    result = KMeansClusterer().cluster(hist, k)
    assert result.k == k
    assert np.all((result.centers >= 0) & (result.centers <= hist.size - 1))


@pytest.mark.parametrize("k", [2, 3, 5])
def test_converged_centers_are_a_fixpoint(k: int):
    hist = _two_mass_histogram()
    first = kmeans_histogram_1d(hist, k)
    again = kmeans_histogram_1d(hist, k, init_centers=first.centers)
    np.testing.assert_array_equal(again.centers, first.centers)
    assert again.n_iter == 1


def test_clusterer_accepts_histogram_objects(volume: VolumeND):
    hist = HistogramBuilder().from_volume(volume, 0)
    result = KMeansClusterer().cluster(hist, 3)
    assert result.k == 3


def test_empty_class_is_frozen_by_default():
    # all weight in bin 0; the second center never receives any weight
    hist = np.array([10, 0, 0, 0, 0, 0, 0, 0], dtype=float)
    result = kmeans_histogram_1d(hist, 2, init_centers=[0, 7])
    np.testing.assert_array_equal(result.centers, [0, 7])


def test_empty_class_reseed_moves_to_populated_bin():
    # center #1 (bin 3) only attracts empty bins on the first pass
    hist = np.array([10, 4, 0, 0, 0, 0, 0, 6], dtype=float)
    frozen = kmeans_histogram_1d(hist, 3, init_centers=[0, 3, 7])
    reseeded = kmeans_histogram_1d(hist, 3, init_centers=[0, 3, 7], empty_policy="reseed")
    assert frozen.centers.tolist() == [0, 3, 7]
    assert reseeded.centers.tolist() == [0, 1, 7]


def test_iteration_cap_raises():
    hist = _two_mass_histogram()
    with pytest.raises(ConvergenceError) as exc:
        kmeans_histogram_1d(hist, 3, max_iter=1, init_centers=[0, 1, 2])
    assert exc.value.max_iter == 1
    assert isinstance(exc.value, RuntimeError)


def test_iteration_cap_warn_returns_last_centers():
    hist = _two_mass_histogram()
    clusterer = KMeansClusterer(KMeansConfig(max_iter=1, on_no_convergence="warn"))
    result = clusterer.cluster(hist, 3, init_centers=[0, 1, 2])
    assert not result.converged
    assert result.n_iter == 1


@pytest.mark.parametrize(
    "hist, k",
    [
        (np.array([]), 2),
        (np.array([1.0, -1.0, 2.0]), 2),
        (np.array([1.0, 2.0]), 3),
        (np.array([1.0, 2.0]), 0),
    ],
)
def test_invalid_kmeans_inputs(hist: np.ndarray, k: int):
    with pytest.raises(InvalidInputError):
        kmeans_histogram_1d(hist, k)


def test_invalid_seed_rejected():
    with pytest.raises(InvalidInputError):
        kmeans_histogram_1d(np.ones(8), 2, init_centers=[0, 8])
