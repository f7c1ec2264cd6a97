"""Render-time resampling between a source raster grid and the output grid.

Compositing is nearest-neighbor only: every output pixel copies exactly one
source sample, never a blend of neighbours. Row and column scale factors are
independent, so the source and output aspect ratios may differ.
"""

from __future__ import annotations

import logging
from functools import lru_cache

import numpy as np

logger = logging.getLogger(__name__)


def _axis_indices(src_len: int, out_len: int) -> np.ndarray:
    # floor(i * src / out) in exact integer arithmetic; always < src_len.
    return (np.arange(out_len, dtype=np.int64) * src_len) // out_len


@lru_cache(maxsize=32)
def _cached_source_indices(src_width: int, src_height: int, out_width: int, out_height: int) -> np.ndarray:
    rows = _axis_indices(src_height, out_height)
    cols = _axis_indices(src_width, out_width)
    indices = (rows[:, np.newaxis] * src_width + cols[np.newaxis, :]).reshape(-1).astype(np.intp)
    indices.setflags(write=False)
    return indices


def nearest_source_indices(
    *,
    src_width: int,
    src_height: int,
    out_width: int,
    out_height: int,
) -> np.ndarray:
    """Flat source index for each output pixel, in output row-major order.

    ``index[y * out_width + x] == floor(y * src_height / out_height) * src_width
    + floor(x * src_width / out_width)``
    """
    dims = (src_width, src_height, out_width, out_height)
    if any(int(d) <= 0 for d in dims):
        raise ValueError(f"raster dimensions must be positive, got {dims}")
    if (src_width, src_height) != (out_width, out_height):
        logger.debug(
            "Nearest resampling %dx%d -> %dx%d",
            src_width,
            src_height,
            out_width,
            out_height,
        )
    return _cached_source_indices(int(src_width), int(src_height), int(out_width), int(out_height))
