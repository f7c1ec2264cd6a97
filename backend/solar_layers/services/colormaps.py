"""Palette engine: hex color stops → fixed-size RGB lookup tables.

A scalar raster is rendered by normalizing each sample into [0, 1] against the
palette domain, scaling into [0, size-1] and rounding to the nearest LUT index.
All rounding in this module is half-to-even (np.rint), so 127.5 → 128 and
0.5 → 0.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Sequence, Union

import numpy as np

from ..config.layers import LUT_SIZE

ColorStop = Union[str, Sequence[int]]

# Value used for every finite sample when the domain has zero width.
DEGENERATE_DOMAIN_VALUE = 0.5

_HEX_COLOR_RE = re.compile(r"[0-9A-Fa-f]{6}")


def hex_to_rgb(hex_color: str) -> tuple[int, int, int]:
    """Parse ``"0099FF"`` or ``"#0099FF"`` into an (r, g, b) tuple."""
    hex_str = str(hex_color).strip()
    if hex_str.startswith("#"):
        hex_str = hex_str[1:]
    if not _HEX_COLOR_RE.fullmatch(hex_str):
        raise ValueError(f"Invalid hex color: {hex_color!r}")
    return (
        int(hex_str[0:2], 16),
        int(hex_str[2:4], 16),
        int(hex_str[4:6], 16),
    )


def _stop_to_rgb(stop: ColorStop) -> tuple[float, float, float]:
    if isinstance(stop, str):
        r, g, b = hex_to_rgb(stop)
        return float(r), float(g), float(b)
    values = [float(v) for v in stop]
    if len(values) != 3 or any(v < 0 or v > 255 for v in values):
        raise ValueError(f"Color stop must be an RGB triple in [0, 255], got {stop!r}")
    return values[0], values[1], values[2]


def build_lookup_table(stops: Sequence[ColorStop], size: int = LUT_SIZE) -> np.ndarray:
    """Interpolate evenly spaced color stops into a ``(size, 3)`` uint8 table.

    Slot ``i`` sits at ``i * (n - 1) / (size - 1)`` along the stop indices and
    is the per-channel lerp between the stops either side of it. Slots that
    land exactly on a stop reproduce that stop's color.
    """
    if len(stops) < 2:
        raise ValueError(f"stops must contain at least two entries, got {len(stops)}")
    if size < 2:
        raise ValueError(f"lookup table size must be >= 2, got {size}")

    anchors = np.array([_stop_to_rgb(stop) for stop in stops], dtype=np.float64)
    n = anchors.shape[0]

    # Integer numerator keeps the final slot exactly at n - 1.
    position = (np.arange(size, dtype=np.int64) * (n - 1)) / (size - 1)
    lower = np.floor(position).astype(np.intp)
    upper = np.minimum(np.ceil(position).astype(np.intp), n - 1)
    t = (position - lower)[:, np.newaxis]

    colors = anchors[lower] + t * (anchors[upper] - anchors[lower])
    return np.clip(np.rint(colors), 0, 255).astype(np.uint8)


@lru_cache(maxsize=64)
def _cached_lookup_table(colors: tuple[str, ...], size: int) -> np.ndarray:
    lut = build_lookup_table(colors, size)
    lut.setflags(write=False)
    return lut


def lookup_table(colors: Sequence[str], size: int = LUT_SIZE) -> np.ndarray:
    """Memoized, read-only :func:`build_lookup_table` for hex palettes."""
    return _cached_lookup_table(tuple(str(color) for color in colors), int(size))


def normalize(value, range_min: float, range_max: float):
    """Map ``value`` into [0, 1] against ``[range_min, range_max]``, saturating.

    Works on scalars (returns float) and arrays (returns float64 array).
    NaN samples map to 0.0. A zero-width domain maps every other sample to
    DEGENERATE_DOMAIN_VALUE.
    """
    range_min = float(range_min)
    range_max = float(range_max)
    if not (np.isfinite(range_min) and np.isfinite(range_max)):
        raise ValueError(f"domain bounds must be finite, got ({range_min}, {range_max})")

    values = np.asarray(value, dtype=np.float64)
    if range_max == range_min:
        scaled = np.full(values.shape, DEGENERATE_DOMAIN_VALUE, dtype=np.float64)
    else:
        scaled = np.clip((values - range_min) / (range_max - range_min), 0.0, 1.0)
    scaled = np.where(np.isnan(values), 0.0, scaled)

    if scaled.ndim == 0:
        return float(scaled)
    return scaled


def palette_indices(
    raster: np.ndarray,
    range_min: float,
    range_max: float,
    table_size: int = LUT_SIZE,
) -> np.ndarray:
    """Normalize every sample and scale it to a LUT index in [0, table_size-1]."""
    if table_size < 2:
        raise ValueError(f"table_size must be >= 2, got {table_size}")
    scaled = np.asarray(normalize(np.asarray(raster), range_min, range_max))
    indices = np.rint(scaled * (table_size - 1))
    return np.clip(indices, 0, table_size - 1).astype(np.intp)
