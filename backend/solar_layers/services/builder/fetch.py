"""GeoTIFF acquisition for solar data layers.

Downloads data-layer GeoTIFFs over HTTP (or reads them from a local site
directory) and decodes them into RasterSets with lat/lon bounds.

Usage
-----
    from solar_layers.services.builder.fetch import DataLayerUrls, fetch_layer_rasters

    urls = DataLayerUrls.from_response(data_layers_json)
    mask, data = fetch_layer_rasters("monthlyFlux", urls, api_key)

The dataLayers response itself is obtained by the caller; only its URL
fields are read here.
"""

from __future__ import annotations

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import httpx
import rasterio
from pyproj import Transformer
from rasterio.errors import RasterioIOError
from rasterio.io import MemoryFile

from solar_layers.config.layers import LAYER_PRESETS, MONTHS_PER_YEAR
from solar_layers.models.base import Bounds, LayerId, RasterSet
from solar_layers.models.registry import parse_layer_id

logger = logging.getLogger(__name__)

SOLAR_API_HOST = "solar.googleapis.com"

ENV_FETCH_RETRIES = "SOLAR_LAYERS_FETCH_RETRIES"
ENV_FETCH_RETRY_SLEEP = "SOLAR_LAYERS_FETCH_RETRY_SLEEP_SECONDS"
ENV_FETCH_TIMEOUT = "SOLAR_LAYERS_FETCH_TIMEOUT_SECONDS"
ENV_FETCH_WORKERS = "SOLAR_LAYERS_FETCH_WORKERS"


class LayerFetchError(RuntimeError):
    """Raised when a data-layer GeoTIFF cannot be downloaded or decoded."""

    def __init__(self, message: str, *, url: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


def _retry_count() -> int:
    raw = os.getenv(ENV_FETCH_RETRIES, "2").strip()
    try:
        count = int(raw)
    except ValueError:
        return 2
    return max(1, count)


def _retry_sleep_seconds() -> float:
    raw = os.getenv(ENV_FETCH_RETRY_SLEEP, "0.6").strip()
    try:
        value = float(raw)
    except ValueError:
        return 0.6
    return max(0.0, value)


def _timeout_seconds() -> float:
    raw = os.getenv(ENV_FETCH_TIMEOUT, "60").strip()
    try:
        value = float(raw)
    except ValueError:
        return 60.0
    return value if value > 0 else 60.0


def _worker_count() -> int:
    raw = os.getenv(ENV_FETCH_WORKERS, "6").strip()
    try:
        count = int(raw)
    except ValueError:
        return 6
    return max(1, count)


# ---------------------------------------------------------------------------
# Data-layer URLs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DataLayerUrls:
    mask_url: str
    dsm_url: str | None = None
    rgb_url: str | None = None
    annual_flux_url: str | None = None
    monthly_flux_url: str | None = None
    hourly_shade_urls: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_response(cls, response: Mapping[str, Any]) -> DataLayerUrls:
        mask_url = response.get("maskUrl")
        if not mask_url:
            raise ValueError("dataLayers response has no maskUrl")
        return cls(
            mask_url=str(mask_url),
            dsm_url=response.get("dsmUrl") or None,
            rgb_url=response.get("rgbUrl") or None,
            annual_flux_url=response.get("annualFluxUrl") or None,
            monthly_flux_url=response.get("monthlyFluxUrl") or None,
            hourly_shade_urls=tuple(str(url) for url in response.get("hourlyShadeUrls") or ()),
        )

    def urls_for(self, layer_id: LayerId | str) -> list[str]:
        """Data URLs for one layer; the mask layer renders the mask itself."""
        layer = parse_layer_id(layer_id)
        if layer is LayerId.MASK:
            urls: list[str | None] = [self.mask_url]
        elif layer is LayerId.DSM:
            urls = [self.dsm_url]
        elif layer is LayerId.RGB:
            urls = [self.rgb_url]
        elif layer is LayerId.ANNUAL_FLUX:
            urls = [self.annual_flux_url]
        elif layer is LayerId.MONTHLY_FLUX:
            urls = [self.monthly_flux_url]
        else:
            urls = list(self.hourly_shade_urls)
            if len(urls) != MONTHS_PER_YEAR:
                raise ValueError(
                    f"hourlyShade needs {MONTHS_PER_YEAR} URLs (one per month), got {len(urls)}"
                )
        if any(not url for url in urls):
            raise ValueError(f"dataLayers response has no URL for layer {layer.value!r}")
        return [str(url) for url in urls]


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


@lru_cache(maxsize=16)
def _to_wgs84(crs_wkt: str) -> Transformer:
    return Transformer.from_crs(crs_wkt, "EPSG:4326", always_xy=True)


def _wgs84_bounds(src: rasterio.DatasetReader) -> Bounds | None:
    if src.crs is None:
        return None
    transformer = _to_wgs84(src.crs.to_wkt())
    left, bottom, right, top = src.bounds
    west, south = transformer.transform(left, bottom)
    east, north = transformer.transform(right, top)
    return Bounds(north=float(north), south=float(south), east=float(east), west=float(west))


def _raster_from_dataset(src: rasterio.DatasetReader) -> RasterSet:
    data = src.read()  # (count, H, W)
    return RasterSet(
        width=int(src.width),
        height=int(src.height),
        bands=[band.reshape(-1) for band in data],
        bounds=_wgs84_bounds(src),
    )


def decode_geotiff(content: bytes) -> RasterSet:
    """Decode GeoTIFF bytes: every band, raveled, with WGS84 bounds."""
    try:
        with MemoryFile(content) as memfile:
            with memfile.open() as src:
                return _raster_from_dataset(src)
    except RasterioIOError as exc:
        raise LayerFetchError(f"Could not decode GeoTIFF ({len(content)} bytes): {exc}") from exc


def read_geotiff(path: Path | str) -> RasterSet:
    with rasterio.open(path) as src:
        return _raster_from_dataset(src)


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------


def _request_url(url: str, api_key: str | None) -> httpx.URL:
    # Only the Solar API wants the key; the signed query string is kept as is.
    request_url = httpx.URL(url)
    if api_key and request_url.host == SOLAR_API_HOST:
        return request_url.copy_merge_params({"key": api_key})
    return request_url


def _error_detail(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text.strip()


def download_bytes(url: str, api_key: str | None, *, client: httpx.Client | None = None) -> bytes:
    """GET ``url`` with retries on transport errors; any non-200 status is fatal."""
    retries = _retry_count()
    sleep_s = _retry_sleep_seconds()
    request_url = _request_url(url, api_key)

    owns_client = client is None
    http = client if client is not None else httpx.Client(timeout=_timeout_seconds())
    try:
        last_exc: Exception | None = None
        for attempt_idx in range(1, retries + 1):
            try:
                response = http.get(request_url)
            except httpx.TransportError as exc:
                last_exc = exc
                logger.warning(
                    "Data layer download failed (attempt=%d/%d): %s: %s",
                    attempt_idx,
                    retries,
                    url,
                    exc,
                )
                if sleep_s > 0 and attempt_idx < retries:
                    time.sleep(sleep_s)
                continue

            if response.status_code != 200:
                detail = _error_detail(response)
                logger.error("Data layer download rejected (%d): %s\n%s", response.status_code, url, detail)
                raise LayerFetchError(
                    f"GET {url} returned {response.status_code}: {detail}",
                    url=url,
                    status_code=response.status_code,
                )

            logger.info("Downloaded data layer: %s (%d bytes)", url, len(response.content))
            return response.content
    finally:
        if owns_client:
            http.close()

    raise LayerFetchError(
        f"GET {url} failed after {retries} attempt(s)",
        url=url,
    ) from last_exc


def download_geotiff(url: str, api_key: str | None, *, client: httpx.Client | None = None) -> RasterSet:
    return decode_geotiff(download_bytes(url, api_key, client=client))


def fetch_layer_rasters(
    layer_id: LayerId | str,
    urls: DataLayerUrls,
    api_key: str | None,
    *,
    client: httpx.Client | None = None,
    workers: int | None = None,
) -> tuple[RasterSet, list[RasterSet]]:
    """Download the mask and the layer's data rasters concurrently.

    Returns ``(mask, data)`` with ``data`` in URL order. Each distinct URL is
    downloaded once. The first failure is raised; nothing partial is returned.
    """
    data_urls = urls.urls_for(layer_id)
    unique_urls = list(dict.fromkeys([urls.mask_url, *data_urls]))
    max_workers = max(1, min(workers or _worker_count(), len(unique_urls)))

    owns_client = client is None
    http = client if client is not None else httpx.Client(timeout=_timeout_seconds())
    try:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {url: executor.submit(download_geotiff, url, api_key, client=http) for url in unique_urls}
            rasters = {url: future.result() for url, future in futures.items()}
    finally:
        if owns_client:
            http.close()

    return rasters[urls.mask_url], [rasters[url] for url in data_urls]


# ---------------------------------------------------------------------------
# Local site directories
# ---------------------------------------------------------------------------


def site_source_paths(site_dir: Path | str, layer_id: LayerId | str) -> tuple[Path, list[Path]]:
    """(mask path, data paths) for a layer in a site directory."""
    site_dir = Path(site_dir)
    layer = parse_layer_id(layer_id)
    mask_path = site_dir / LAYER_PRESETS[LayerId.MASK.value]["filename"]
    preset = LAYER_PRESETS[layer.value]
    if "dirname" in preset:
        shade_dir = site_dir / preset["dirname"]
        data_paths = [shade_dir / f"{month:02d}.tif" for month in range(MONTHS_PER_YEAR)]
    else:
        data_paths = [site_dir / preset["filename"]]
    return mask_path, data_paths


def load_site_rasters(site_dir: Path | str, layer_id: LayerId | str) -> tuple[RasterSet, list[RasterSet]]:
    mask_path, data_paths = site_source_paths(site_dir, layer_id)
    missing = [str(p) for p in (mask_path, *data_paths) if not p.is_file()]
    if missing:
        raise FileNotFoundError(f"Missing data layer file(s): {', '.join(missing)}")
    mask = read_geotiff(mask_path)
    data = [mask if path == mask_path else read_geotiff(path) for path in data_paths]
    return mask, data


def write_site_file(site_dir: Path | str, layer_id: LayerId | str, index: int, content: bytes) -> Path:
    """Store raw GeoTIFF bytes under the site layout (``index`` is the month for hourlyShade)."""
    _, data_paths = site_source_paths(site_dir, layer_id)
    path = data_paths[index]
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tif.tmp")
    tmp_path.write_bytes(content)
    tmp_path.rename(path)
    return path
