# ==================================================
# ================  MODULE: errors  ================
# ==================================================
from __future__ import annotations

# Public API
__all__ = [
    "ThresholderError",
    "InvalidInputError",
    "MissingThresholdsError",
    "DegenerateRangeError",
    "OutOfRangeError",
    "UnsupportedModeError",
    "ConvergenceError",
]


class ThresholderError(Exception):
    """Base class for every error raised by the thresholding engine."""


class InvalidInputError(ThresholderError, ValueError):
    """
    Raised on missing volume, invalid channel, inconsistent per-frame
    threshold tables or invalid numeric parameters.
    """


class MissingThresholdsError(InvalidInputError):
    """Raised when a frame has no threshold to classify against."""


class DegenerateRangeError(ThresholderError, ValueError):
    """Raised when an intensity range has zero (or negative) width."""

    def __init__(self, vmin: float, vmax: float, context: str = "histogram") -> None:
        self.vmin = vmin
        self.vmax = vmax
        super().__init__(
            f"[{context}] Degenerate intensity range: max ({vmax}) must be greater than min ({vmin})"
        )


class OutOfRangeError(ThresholderError, ValueError):
    """Raised when a value falls outside its admissible interval (e.g. percentiles)."""


class UnsupportedModeError(ThresholderError, NotImplementedError):
    """Raised on an unknown thresholding method or output type (programming error)."""


class ConvergenceError(ThresholderError, RuntimeError):
    """Raised when K-means does not reach a fixpoint within the iteration cap."""

    def __init__(self, max_iter: int, centers) -> None:
        self.max_iter = max_iter
        self.centers = centers
        super().__init__(
            f"[KMeans] No convergence after {max_iter} iterations (last centers: {list(centers)})"
        )
