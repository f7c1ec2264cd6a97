"""Pre-render derivation helpers for data-layer rasters.

These run before compositing and reduce a raw layer to the single scalar band
the palette renders:
  - select_band: month (monthly flux) or hour (hourly shade) band selection
  - extract_day_bit: day-of-month flag from packed hourly-shade samples
  - raster_domain: data-driven palette domain (DSM elevations)
"""

from __future__ import annotations

import numpy as np

from solar_layers.models.base import RasterSet

# Hourly shade samples pack one sun/shade flag per day of the month.
MAX_DAY_OF_MONTH = 31


def select_band(raster: RasterSet, index: int) -> RasterSet:
    """Return a single-band RasterSet holding band ``index`` of ``raster``."""
    if not 0 <= index < raster.band_count:
        raise ValueError(f"band index {index} out of range for raster with {raster.band_count} bands")
    return raster.with_bands([raster.bands[index]])


def extract_day_bit(raster: RasterSet, day: int) -> RasterSet:
    """Reduce packed 32-bit day flags to 0/1 for one day of the month.

    Bit ``day - 1`` of each sample is set when that pixel sees the sun on
    ``day``. Every band is reduced, so the hour can be picked afterwards.
    """
    if not 1 <= day <= MAX_DAY_OF_MONTH:
        raise ValueError(f"day must be in 1..{MAX_DAY_OF_MONTH}, got {day}")

    shift = day - 1
    bands = []
    for band in raster.bands:
        packed = np.nan_to_num(np.asarray(band, dtype=np.float64), nan=0.0).astype(np.int64)
        bands.append(((packed >> shift) & 1).astype(np.uint8))
    return raster.with_bands(bands)


def raster_domain(raster: RasterSet, band: int = 0) -> tuple[float, float]:
    """(min, max) over the finite samples of one band."""
    values = np.asarray(raster.bands[band], dtype=np.float64)
    finite = values[np.isfinite(values)]
    if finite.size == 0:
        raise ValueError("raster has no finite samples to derive a domain from")
    return float(finite.min()), float(finite.max())
