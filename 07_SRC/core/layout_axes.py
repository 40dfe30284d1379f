# ==================================================
# =============  MODULE: layout_axes  ==============
# ==================================================
from __future__ import annotations

from typing import Any, Dict, List, Tuple

from core.errors import InvalidInputError

__all__ = [
    "VOLUME_AXES",
    "AXIS_LETTERS",
    "CANONICAL_LAYOUT",
    "FORMAT_LAYOUTS",
    "get_layout_axes",
    "list_available_layouts",
    "is_valid_layout",
    "guess_layout_from_shape",
    "summarize_layout",
]

# ====[ AXIS ORDER ]====
VOLUME_AXES: List[str] = [
    "time_axis",
    "depth_axis",
    "channel_axis",
    "height_axis",
    "width_axis",
]

AXIS_LETTERS: Dict[str, str] = {
    "T": "time_axis",
    "Z": "depth_axis",
    "C": "channel_axis",
    "Y": "height_axis",
    "X": "width_axis",
}

# Storage order used by VolumeND
CANONICAL_LAYOUT: str = "TZCYX"


def _build_layout(name: str, description: str) -> Dict[str, Any]:
    """Turn a mnemonic such as 'TZYXC' into an axis-position dict."""
    layout: Dict[str, Any] = {axis: None for axis in VOLUME_AXES}
    for pos, letter in enumerate(name):
        layout[AXIS_LETTERS[letter]] = pos
    layout["name"] = name
    layout["ndim"] = len(name)
    layout["description"] = description
    return layout


# ====[ FORMAT LAYOUTS ]====
FORMAT_LAYOUTS: Dict[str, Dict[str, Any]] = {
    name: _build_layout(name, desc)
    for name, desc in (
        ("YX", "Single grayscale plane"),
        ("YXC", "Single multi-channel plane (channels last)"),
        ("CYX", "Single multi-channel plane (channels first)"),
        ("ZYX", "Grayscale z-stack"),
        ("ZYXC", "Multi-channel z-stack (channels last)"),
        ("ZCYX", "Multi-channel z-stack (channels after depth)"),
        ("CZYX", "Multi-channel z-stack (channels first)"),
        ("TYX", "Grayscale 2D time-lapse"),
        ("TYXC", "Multi-channel 2D time-lapse"),
        ("TCYX", "Multi-channel 2D time-lapse (channels first)"),
        ("TZYX", "Grayscale 3D time-lapse"),
        ("TZYXC", "Multi-channel 3D time-lapse (channels last, default)"),
        ("TZCYX", "Multi-channel 3D time-lapse (ImageJ hyperstack order)"),
        ("TCZYX", "Multi-channel 3D time-lapse (OME order)"),
    )
}


# ==================================================
# ============== FORMAT UTILITIES ==================
# ==================================================
def get_layout_axes(layout_name: str) -> Dict[str, Any]:
    """
    Retrieve the axis positions of a volume layout.

    Named layouts come from `FORMAT_LAYOUTS`; any other permutation of a
    subset of 'TZCYX' containing both 'Y' and 'X' is accepted as well.

    Parameters
    ----------
    layout_name : str
        Layout mnemonic (e.g., 'TZYXC', 'ZYX', 'YX').

    Returns
    -------
    dict
        Copy of the layout dict, with keys in VOLUME_AXES, 'ndim', 'name'.

    Raises
    ------
    InvalidInputError
        If the layout cannot be interpreted.
    """
    name = str(layout_name).upper()
    if name in FORMAT_LAYOUTS:
        return dict(FORMAT_LAYOUTS[name])

    letters = set(name)
    if (
        len(letters) != len(name)
        or not letters <= set(AXIS_LETTERS)
        or not {"Y", "X"} <= letters
    ):
        available = ", ".join(sorted(list_available_layouts()))
        raise InvalidInputError(
            f"Unknown layout '{layout_name}'. Use a permutation of 'TZCYX' containing 'Y' and 'X' "
            f"(named layouts: {available})"
        )
    return _build_layout(name, "Custom layout")


def list_available_layouts() -> List[str]:
    """List all named volume layouts."""
    return list(FORMAT_LAYOUTS.keys())


def is_valid_layout(layout_name: str) -> bool:
    """Return True if the layout can be resolved."""
    try:
        get_layout_axes(layout_name)
    except InvalidInputError:
        return False
    return True


def guess_layout_from_shape(shape: Tuple[int, ...], strict: bool = True) -> str:
    """
    Heuristically guess a volume layout from a shape tuple.

    Notes
    -----
    - 2D is always 'YX'.
    - A small trailing axis (1, 2, 3 or 4) is taken as channels.
    - Otherwise leading axes are read as depth, then time.

    Raises
    ------
    InvalidInputError
        If no reasonable layout can be inferred and strict=True.
    """
    ndim = len(shape)
    channels_last = ndim >= 3 and shape[-1] in (1, 2, 3, 4)

    if ndim == 2:
        return "YX"
    if ndim == 3:
        return "YXC" if channels_last else "ZYX"
    if ndim == 4:
        return "ZYXC" if channels_last else "TZYX"
    if ndim == 5:
        return "TZYXC" if channels_last else "TZCYX"

    if strict:
        raise InvalidInputError(f"[layout_axes] Unable to guess layout from shape {shape}.")
    return "unknown"


def summarize_layout(layout_name: str) -> str:
    """Return a human-readable summary of axis roles and their positions."""
    layout = get_layout_axes(layout_name)
    lines = [f"[Layout: '{layout['name']}']"]
    for key in VOLUME_AXES:
        lines.append(f"  {key:<14}: {layout[key]}")
    lines.append(f"  ↪ {layout['description']}")
    return "\n".join(lines)
