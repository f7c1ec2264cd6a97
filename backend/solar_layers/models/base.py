from __future__ import annotations

import io
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, ClassVar, Optional, Sequence

import numpy as np
from PIL import Image

from ..config.layers import (
    BINARY_PALETTE,
    HOURS_PER_DAY,
    IRON_PALETTE,
    MONTHS_PER_YEAR,
    RAINBOW_PALETTE,
    SUNLIGHT_PALETTE,
)


class MalformedRasterError(ValueError):
    """Raised when a raster band does not match its declared width × height."""


@dataclass(frozen=True)
class Bounds:
    north: float
    south: float
    east: float
    west: float

    def to_dict(self) -> dict[str, float]:
        return {
            "north": self.north,
            "south": self.south,
            "east": self.east,
            "west": self.west,
        }


@dataclass(frozen=True, eq=False)
class RasterSet:
    """One decoded image layer: ``bands`` flat row-major arrays of ``width * height``.

    Bands may be passed flat or as ``(height, width)`` grids; both are stored
    flat and read-only.
    """

    width: int
    height: int
    bands: Sequence[np.ndarray]
    bounds: Optional[Bounds] = None

    def __post_init__(self) -> None:
        width = int(self.width)
        height = int(self.height)
        if width <= 0 or height <= 0:
            raise MalformedRasterError(f"raster size must be positive, got {width}x{height}")
        if len(self.bands) == 0:
            raise MalformedRasterError("raster must have at least one band")

        expected = width * height
        flat_bands: list[np.ndarray] = []
        for index, band in enumerate(self.bands):
            arr = np.asarray(band)
            if arr.dtype != np.bool_ and not np.issubdtype(arr.dtype, np.number):
                raise MalformedRasterError(f"band {index} is not numeric (dtype={arr.dtype})")
            if arr.ndim == 2 and arr.shape != (height, width):
                raise MalformedRasterError(
                    f"band {index} has shape {arr.shape}, expected ({height}, {width})"
                )
            if arr.ndim not in (1, 2) or arr.size != expected:
                raise MalformedRasterError(
                    f"band {index} has {arr.size} samples (shape {arr.shape}), "
                    f"expected {width}x{height}={expected}"
                )
            flat = np.array(arr, copy=True).reshape(-1)
            flat.setflags(write=False)
            flat_bands.append(flat)

        object.__setattr__(self, "width", width)
        object.__setattr__(self, "height", height)
        object.__setattr__(self, "bands", tuple(flat_bands))

    @property
    def band_count(self) -> int:
        return len(self.bands)

    def with_bands(self, bands: Sequence[np.ndarray]) -> RasterSet:
        return replace(self, bands=bands)


@dataclass(frozen=True, eq=False)
class RenderedImage:
    """RGBA uint8 pixels, shape (height, width, 4)."""

    width: int
    height: int
    pixels: np.ndarray

    def __post_init__(self) -> None:
        if self.pixels.shape != (self.height, self.width, 4):
            raise ValueError(
                f"pixels must be shape ({self.height}, {self.width}, 4), got {self.pixels.shape}"
            )
        if self.pixels.dtype != np.uint8:
            raise ValueError(f"pixels must be uint8, got {self.pixels.dtype}")

    @property
    def buffer(self) -> bytes:
        """Interleaved R, G, B, A bytes, ``width * height * 4`` long."""
        return self.pixels.tobytes()

    def to_png(self) -> bytes:
        out = io.BytesIO()
        Image.fromarray(self.pixels).save(out, format="PNG")
        return out.getvalue()


@dataclass(frozen=True)
class Palette:
    colors: tuple[str, ...]
    min: float = 0.0
    max: float = 1.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "colors", tuple(self.colors))
        if len(self.colors) < 2:
            raise ValueError(f"palette needs at least 2 colors, got {len(self.colors)}")


@dataclass(frozen=True)
class Legend:
    colors: tuple[str, ...]
    min_label: Optional[str] = None
    max_label: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "colors": list(self.colors),
            "min": self.min_label,
            "max": self.max_label,
        }


class LayerId(str, Enum):
    MASK = "mask"
    DSM = "dsm"
    RGB = "rgb"
    ANNUAL_FLUX = "annualFlux"
    MONTHLY_FLUX = "monthlyFlux"
    HOURLY_SHADE = "hourlyShade"


# ---------------------------------------------------------------------------
# Layer variants: one frozen dataclass per layer kind, each carrying only
# the parameters it renders with.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MaskLayer:
    colors: tuple[str, ...] = BINARY_PALETTE
    min_label: str = "No roof"
    max_label: str = "Roof"

    id: ClassVar[LayerId] = LayerId.MASK
    frames: ClassVar[int] = 1

    def palette(self) -> Palette:
        return Palette(self.colors, 0.0, 1.0)

    def legend(self, domain: tuple[float, float] | None = None) -> Legend:
        return Legend(self.colors, self.min_label, self.max_label)


@dataclass(frozen=True)
class DsmLayer:
    """Elevation; the palette domain is taken from the data itself."""

    colors: tuple[str, ...] = RAINBOW_PALETTE
    label_format: str = "{:.1f} m"

    id: ClassVar[LayerId] = LayerId.DSM
    frames: ClassVar[int] = 1

    def palette(self, domain: tuple[float, float]) -> Palette:
        return Palette(self.colors, domain[0], domain[1])

    def legend(self, domain: tuple[float, float] | None = None) -> Legend:
        if domain is None:
            return Legend(self.colors)
        return Legend(
            self.colors,
            self.label_format.format(domain[0]),
            self.label_format.format(domain[1]),
        )


@dataclass(frozen=True)
class RgbLayer:
    id: ClassVar[LayerId] = LayerId.RGB
    frames: ClassVar[int] = 1

    def legend(self, domain: tuple[float, float] | None = None) -> None:
        return None


@dataclass(frozen=True)
class AnnualFluxLayer:
    colors: tuple[str, ...] = IRON_PALETTE
    max_value: float = 1800.0
    min_label: str = "Shady"
    max_label: str = "Sunny"

    id: ClassVar[LayerId] = LayerId.ANNUAL_FLUX
    frames: ClassVar[int] = 1

    def palette(self) -> Palette:
        return Palette(self.colors, 0.0, self.max_value)

    def legend(self, domain: tuple[float, float] | None = None) -> Legend:
        return Legend(self.colors, self.min_label, self.max_label)


@dataclass(frozen=True)
class MonthlyFluxLayer:
    colors: tuple[str, ...] = IRON_PALETTE
    max_value: float = 200.0
    min_label: str = "Shady"
    max_label: str = "Sunny"

    id: ClassVar[LayerId] = LayerId.MONTHLY_FLUX
    frames: ClassVar[int] = MONTHS_PER_YEAR

    def palette(self) -> Palette:
        return Palette(self.colors, 0.0, self.max_value)

    def legend(self, domain: tuple[float, float] | None = None) -> Legend:
        return Legend(self.colors, self.min_label, self.max_label)


@dataclass(frozen=True)
class HourlyShadeLayer:
    """One raster per month, 24 hourly bands of day-of-month bit flags each."""

    colors: tuple[str, ...] = SUNLIGHT_PALETTE
    min_label: str = "Shade"
    max_label: str = "Sun"

    id: ClassVar[LayerId] = LayerId.HOURLY_SHADE
    frames: ClassVar[int] = HOURS_PER_DAY

    def palette(self) -> Palette:
        return Palette(self.colors, 0.0, 1.0)

    def legend(self, domain: tuple[float, float] | None = None) -> Legend:
        return Legend(self.colors, self.min_label, self.max_label)


LayerSpec = MaskLayer | DsmLayer | RgbLayer | AnnualFluxLayer | MonthlyFluxLayer | HourlyShadeLayer


@dataclass(frozen=True, eq=False)
class Layer:
    """A fetched layer ready to render: spec, rasters, legend and lat/lon bounds."""

    spec: LayerSpec
    mask: RasterSet
    data: tuple[RasterSet, ...] = field(default_factory=tuple)
    legend: Optional[Legend] = None
    domain: Optional[tuple[float, float]] = None

    @property
    def id(self) -> LayerId:
        return self.spec.id

    @property
    def bounds(self) -> Optional[Bounds]:
        return self.mask.bounds
