"""Render pipeline: decoded rasters → Layer → RGBA frames → PNG artifacts.

For a given site directory and layer it writes into the output directory:

    {layer}.{NN}.png   — RGBA PNG per frame (NN = month for monthlyFlux,
                         hour for hourlyShade, 00 otherwise)
    {layer}.json       — sidecar with legend, bounds and render parameters

Frame counts per layer: mask/dsm/rgb/annualFlux → 1, monthlyFlux → 12,
hourlyShade → 24 (hours of the selected month/day).

CLI usage:
    python -m solar_layers.services.builder.pipeline \\
        --site-dir ./data/sites/demo --layer monthlyFlux \\
        --out-dir ./out --roof-only
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Sequence

from solar_layers.config.layers import MONTHS_PER_YEAR
from solar_layers.models.base import (
    AnnualFluxLayer,
    DsmLayer,
    HourlyShadeLayer,
    Layer,
    LayerId,
    LayerSpec,
    MalformedRasterError,
    MaskLayer,
    MonthlyFluxLayer,
    RasterSet,
    RenderedImage,
    RgbLayer,
)
from solar_layers.models.registry import layer_spec
from solar_layers.services.builder.colorize import composite_palette, composite_rgb
from solar_layers.services.builder.derive import (
    MAX_DAY_OF_MONTH,
    extract_day_bit,
    raster_domain,
    select_band,
)
from solar_layers.services.builder.fetch import load_site_rasters

logger = logging.getLogger(__name__)


def build_layer(
    layer_id: LayerId | str,
    mask: RasterSet,
    data: Sequence[RasterSet],
    *,
    spec: LayerSpec | None = None,
) -> Layer:
    """Check a layer's rasters against its kind and resolve its legend.

    ``data`` holds one raster, except hourlyShade which holds one per month.
    """
    spec = spec if spec is not None else layer_spec(layer_id)
    if mask.band_count != 1:
        raise MalformedRasterError(f"mask must have exactly 1 band, got {mask.band_count}")

    expected_rasters = MONTHS_PER_YEAR if isinstance(spec, HourlyShadeLayer) else 1
    if len(data) != expected_rasters:
        raise ValueError(
            f"Layer {spec.id.value!r} needs {expected_rasters} data raster(s), got {len(data)}"
        )

    if isinstance(spec, (MonthlyFluxLayer, HourlyShadeLayer)):
        for index, raster in enumerate(data):
            if raster.band_count < spec.frames:
                raise MalformedRasterError(
                    f"Layer {spec.id.value!r} raster {index} has {raster.band_count} bands, "
                    f"expected {spec.frames}"
                )
    if isinstance(spec, RgbLayer) and data[0].band_count < 3:
        raise MalformedRasterError(f"RGB layer needs 3 bands, got {data[0].band_count}")

    domain = raster_domain(data[0]) if isinstance(spec, DsmLayer) else None
    layer = Layer(
        spec=spec,
        mask=mask,
        data=tuple(data),
        legend=spec.legend(domain),
        domain=domain,
    )
    logger.debug(
        "Built layer %s: mask=%dx%d data=%d raster(s) domain=%s",
        spec.id.value,
        mask.width,
        mask.height,
        len(data),
        domain,
    )
    return layer


def _check_month_day(month: int, day: int) -> None:
    if not 0 <= month < MONTHS_PER_YEAR:
        raise ValueError(f"month must be in 0..{MONTHS_PER_YEAR - 1}, got {month}")
    if not 1 <= day <= MAX_DAY_OF_MONTH:
        raise ValueError(f"day must be in 1..{MAX_DAY_OF_MONTH}, got {day}")


def render_frame(
    layer: Layer,
    frame: int = 0,
    *,
    roof_only: bool = False,
    month: int = 0,
    day: int = 1,
) -> RenderedImage:
    """Render one frame of ``layer``; the mask applies only when ``roof_only``."""
    _check_month_day(month, day)
    spec = layer.spec
    if not 0 <= frame < spec.frames:
        raise ValueError(f"frame must be in 0..{spec.frames - 1} for layer {spec.id.value!r}, got {frame}")

    mask = layer.mask if roof_only else None
    data = layer.data[0]

    if isinstance(spec, RgbLayer):
        return composite_rgb(data, mask)
    if isinstance(spec, DsmLayer):
        if layer.domain is None:
            raise ValueError("DSM layer has no elevation domain; build it with build_layer()")
        return composite_palette(data, spec.palette(layer.domain), mask)
    if isinstance(spec, (MaskLayer, AnnualFluxLayer)):
        return composite_palette(data, spec.palette(), mask)
    if isinstance(spec, MonthlyFluxLayer):
        return composite_palette(select_band(data, frame), spec.palette(), mask)
    if isinstance(spec, HourlyShadeLayer):
        hour = select_band(layer.data[month], frame)
        return composite_palette(extract_day_bit(hour, day), spec.palette(), mask)
    raise TypeError(f"Unsupported layer spec: {spec!r}")


def render_layer(
    layer: Layer,
    *,
    roof_only: bool = False,
    month: int = 0,
    day: int = 1,
) -> list[RenderedImage]:
    """Render every frame of ``layer`` (12 months, 24 hours, or a single image)."""
    _check_month_day(month, day)
    return [
        render_frame(layer, frame, roof_only=roof_only, month=month, day=day)
        for frame in range(layer.spec.frames)
    ]


# ---------------------------------------------------------------------------
# Artifact writers
# ---------------------------------------------------------------------------


def write_frames(images: Sequence[RenderedImage], out_dir: Path | str, stem: str) -> list[Path]:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    paths: list[Path] = []
    for index, image in enumerate(images):
        path = out_dir / f"{stem}.{index:02d}.png"
        path.write_bytes(image.to_png())
        paths.append(path)
    return paths


def layer_sidecar(layer: Layer, **params: Any) -> dict[str, Any]:
    return {
        "layer": layer.id.value,
        "frames": layer.spec.frames,
        "legend": layer.legend.to_dict() if layer.legend is not None else None,
        "bounds": layer.bounds.to_dict() if layer.bounds is not None else None,
        "domain": list(layer.domain) if layer.domain is not None else None,
        "params": params,
    }


def _write_sidecar(path: Path, data: dict) -> None:
    """Write sidecar JSON atomically (write tmp, rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".json.tmp")
    with open(tmp_path, "w") as f:
        json.dump(data, f, indent=2, default=str)
        f.write("\n")
    tmp_path.rename(path)
    logger.debug("Wrote sidecar JSON: %s", path)


def render_site_layer(
    *,
    site_dir: Path | str,
    layer_id: LayerId | str,
    out_dir: Path | str,
    roof_only: bool = False,
    month: int = 0,
    day: int = 1,
) -> list[Path]:
    """Load a layer from a site directory and write its frames + sidecar."""
    spec = layer_spec(layer_id)
    mask, data = load_site_rasters(site_dir, spec.id)
    layer = build_layer(spec.id, mask, data, spec=spec)
    images = render_layer(layer, roof_only=roof_only, month=month, day=day)

    stem = spec.id.value
    paths = write_frames(images, out_dir, stem)
    _write_sidecar(
        Path(out_dir) / f"{stem}.json",
        layer_sidecar(layer, roof_only=roof_only, month=month, day=day),
    )
    logger.info(
        "Rendered %s: %d frame(s) %dx%d → %s",
        stem,
        len(paths),
        images[0].width,
        images[0].height,
        out_dir,
    )
    return paths


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """CLI entry point for rendering one layer of a site."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Render a solar data layer to RGBA PNG frames",
        prog="python -m solar_layers.services.builder.pipeline",
    )
    parser.add_argument("--site-dir", required=True, type=Path, help="Site directory with layer GeoTIFFs")
    parser.add_argument(
        "--layer",
        required=True,
        choices=[layer.value for layer in LayerId],
        help="Layer id (e.g. monthlyFlux)",
    )
    parser.add_argument("--out-dir", required=True, type=Path, help="Output directory for PNG frames")
    parser.add_argument("--month", type=int, default=0, help="Month 0-11 (hourlyShade only, default: 0)")
    parser.add_argument("--day", type=int, default=1, help="Day of month 1-31 (hourlyShade only, default: 1)")
    parser.add_argument("--roof-only", action="store_true", help="Apply the roof mask as transparency")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        paths = render_site_layer(
            site_dir=args.site_dir,
            layer_id=args.layer,
            out_dir=args.out_dir,
            roof_only=args.roof_only,
            month=args.month,
            day=args.day,
        )
    except (OSError, ValueError) as exc:
        logger.error("Render FAILED — %s", exc)
        raise SystemExit(1)

    logger.info("Render SUCCESS — %d frame(s) in %s", len(paths), args.out_dir)


if __name__ == "__main__":
    main()
