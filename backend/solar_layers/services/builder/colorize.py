"""Image compositor: raster bands (+ optional opacity mask) → RGBA pixels.

Two entry points:
  composite_rgb()      three raw bands copied straight into R, G, B
  composite_palette()  one scalar band resolved through a palette LUT,
                       then handed to composite_rgb()

Output size follows the mask when one is supplied, otherwise the source.
The source is sampled nearest-neighbor onto that grid, so a coarse mask can
drive a fine data layer (or the reverse) without interpolation.
"""

from __future__ import annotations

import numpy as np

from solar_layers.config.layers import LUT_SIZE
from solar_layers.models.base import MalformedRasterError, Palette, RasterSet, RenderedImage
from solar_layers.services.colormaps import lookup_table, palette_indices
from solar_layers.services.render_resampling import nearest_source_indices


def _to_bytes(values: np.ndarray) -> np.ndarray:
    """Store values the way a canvas byte buffer does: round, then saturate."""
    arr = np.asarray(values)
    if arr.dtype == np.uint8:
        return arr
    arr = np.nan_to_num(arr.astype(np.float64), nan=0.0)
    return np.clip(np.rint(arr), 0, 255).astype(np.uint8)


def composite_rgb(source: RasterSet, mask: RasterSet | None = None) -> RenderedImage:
    """Render bands 0–2 of ``source`` as R, G, B; alpha is ``mask * 255`` or opaque.

    Parameters
    ----------
    source : RasterSet
        At least three bands, values already scaled to [0, 255].
    mask : RasterSet, optional
        Exactly one band of opacity fractions in [0, 1]. Its size defines
        the output size.
    """
    if source.band_count < 3:
        raise MalformedRasterError(f"RGB source needs 3 bands, got {source.band_count}")
    if mask is not None and mask.band_count != 1:
        raise MalformedRasterError(f"mask must have exactly 1 band, got {mask.band_count}")

    if mask is not None:
        out_w, out_h = mask.width, mask.height
    else:
        out_w, out_h = source.width, source.height

    src_idx = nearest_source_indices(
        src_width=source.width,
        src_height=source.height,
        out_width=out_w,
        out_height=out_h,
    )

    pixels = np.empty((out_h * out_w, 4), dtype=np.uint8)
    for channel in range(3):
        pixels[:, channel] = _to_bytes(source.bands[channel][src_idx])

    if mask is None:
        pixels[:, 3] = 255
    else:
        # Mask indexing is 1:1 with the output grid.
        pixels[:, 3] = _to_bytes(mask.bands[0].astype(np.float64) * 255.0)

    return RenderedImage(width=out_w, height=out_h, pixels=pixels.reshape(out_h, out_w, 4))


def composite_palette(
    data: RasterSet,
    palette: Palette,
    mask: RasterSet | None = None,
    *,
    band: int = 0,
    table_size: int = LUT_SIZE,
) -> RenderedImage:
    """Render one scalar band of ``data`` through ``palette``.

    ``band`` picks the month/hour for multi-band rasters.
    """
    if not 0 <= band < data.band_count:
        raise ValueError(f"band index {band} out of range for raster with {data.band_count} bands")

    lut = lookup_table(palette.colors, table_size)
    indices = palette_indices(data.bands[band], palette.min, palette.max, table_size)
    rgb = lut[indices]

    return composite_rgb(
        data.with_bands([rgb[:, 0], rgb[:, 1], rgb[:, 2]]),
        mask,
    )
