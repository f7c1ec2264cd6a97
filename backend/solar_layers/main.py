"""Solar layers API — layer catalog, legends and rendered PNG frames per site."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .models.base import Layer, LayerId
from .models.registry import list_layer_catalog, parse_layer_id
from .services.builder.fetch import load_site_rasters, site_source_paths
from .services.builder.pipeline import build_layer, layer_sidecar, render_frame

logger = logging.getLogger(__name__)

DATA_ROOT = Path(os.environ.get("SOLAR_LAYERS_DATA_ROOT", "./data/sites"))

_SITE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

CACHE_HIT = "public, max-age=3600"
CACHE_MISS = "public, max-age=15"


def _if_none_match_values(header_value: str) -> list[str]:
    return [v.strip() for v in header_value.split(",") if v.strip()]


def _etag_matches(if_none_match: str | None, etag: str) -> bool:
    if not if_none_match:
        return False
    vals = _if_none_match_values(if_none_match)
    if "*" in vals:
        return True
    return etag in vals


def _make_etag(payload: object) -> str:
    digest = hashlib.md5(json.dumps(payload, sort_keys=True, default=str).encode()).hexdigest()[:12]
    return f'"{digest}"'


def _maybe_304(request: Request, *, etag: str, cache_control: str) -> Response | None:
    inm = request.headers.get("if-none-match")
    if _etag_matches(inm, etag):
        return Response(
            status_code=304,
            headers={
                "ETag": etag,
                "Cache-Control": cache_control,
            },
        )
    return None


app = FastAPI(title="Solar Layers API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET"],
    allow_headers=["*"],
)

_layer_cache: dict[tuple[str, str, tuple[int, ...]], Layer] = {}
_layer_cache_lock = threading.Lock()
_LAYER_CACHE_MAX = 16


def _site_dir(site: str) -> Path | None:
    if not _SITE_ID_RE.match(site):
        return None
    site_dir = DATA_ROOT / site
    if not site_dir.is_dir():
        return None
    return site_dir


def _source_stamp(site_dir: Path, layer_id: LayerId) -> tuple[int, ...] | None:
    """mtimes of every file the layer reads; None if any is missing."""
    mask_path, data_paths = site_source_paths(site_dir, layer_id)
    stamps: list[int] = []
    for path in (mask_path, *data_paths):
        try:
            stamps.append(path.stat().st_mtime_ns)
        except FileNotFoundError:
            return None
    return tuple(stamps)


def _get_cached_layer(site: str, site_dir: Path, layer_id: LayerId, stamp: tuple[int, ...]) -> Layer:
    key = (site, layer_id.value, stamp)
    with _layer_cache_lock:
        cached = _layer_cache.get(key)
    if cached is not None:
        return cached

    mask, data = load_site_rasters(site_dir, layer_id)
    layer = build_layer(layer_id, mask, data)

    with _layer_cache_lock:
        if key not in _layer_cache and len(_layer_cache) >= _LAYER_CACHE_MAX:
            _layer_cache.pop(next(iter(_layer_cache)))
        _layer_cache[key] = layer
    return layer


def _resolve_layer(site: str, layer: str) -> tuple[Layer, tuple[int, ...]]:
    site_dir = _site_dir(site)
    if site_dir is None:
        raise HTTPException(status_code=404, detail=f"Unknown site: {site}")
    try:
        layer_id = parse_layer_id(layer)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown layer: {layer}") from None

    stamp = _source_stamp(site_dir, layer_id)
    if stamp is None:
        raise HTTPException(status_code=404, detail=f"No {layer_id.value} data for site: {site}")

    try:
        return _get_cached_layer(site, site_dir, layer_id, stamp), stamp
    except (OSError, ValueError) as exc:
        logger.exception("Failed loading layer %s for site %s", layer_id.value, site)
        raise HTTPException(
            status_code=500,
            detail=f"Could not load {layer_id.value} for site {site}: {exc}",
            headers={"Cache-Control": CACHE_MISS},
        ) from exc


@app.get("/api/v1/health")
def health():
    return {"status": "ok"}


@app.get("/api/v1/layers")
def list_layers():
    return {"layers": list_layer_catalog()}


@app.get("/api/v1/sites")
def list_sites():
    if not DATA_ROOT.is_dir():
        return {"sites": []}
    sites = sorted(p.name for p in DATA_ROOT.iterdir() if p.is_dir() and _SITE_ID_RE.match(p.name))
    return {"sites": sites}


@app.get("/api/v1/sites/{site}/layers/{layer}/legend")
def get_legend(request: Request, site: str, layer: str):
    resolved, stamp = _resolve_layer(site, layer)
    payload: dict[str, Any] = {"site": site, **layer_sidecar(resolved)}
    payload.pop("params", None)

    etag = _make_etag({"site": site, "layer": resolved.id.value, "stamp": stamp})
    not_modified = _maybe_304(request, etag=etag, cache_control=CACHE_MISS)
    if not_modified is not None:
        return not_modified
    return JSONResponse(content=payload, headers={"ETag": etag, "Cache-Control": CACHE_MISS})


@app.get("/api/v1/sites/{site}/layers/{layer}/frames/{frame:int}.png")
def get_frame_png(
    request: Request,
    site: str,
    layer: str,
    frame: int,
    roof_only: bool = Query(False, description="Apply the roof mask as transparency"),
    month: int = Query(0, ge=0, le=11, description="Month (hourlyShade only)"),
    day: int = Query(1, ge=1, le=31, description="Day of month (hourlyShade only)"),
):
    resolved, stamp = _resolve_layer(site, layer)
    if frame >= resolved.spec.frames:
        return Response(status_code=404, headers={"Cache-Control": CACHE_MISS})

    etag = _make_etag(
        {
            "site": site,
            "layer": resolved.id.value,
            "frame": frame,
            "roof_only": roof_only,
            "month": month,
            "day": day,
            "stamp": stamp,
        }
    )
    not_modified = _maybe_304(request, etag=etag, cache_control=CACHE_HIT)
    if not_modified is not None:
        return not_modified

    try:
        image = render_frame(resolved, frame, roof_only=roof_only, month=month, day=day)
        content = image.to_png()
    except Exception:
        logger.exception(
            "Render failed: site=%s layer=%s frame=%d month=%d day=%d",
            site,
            resolved.id.value,
            frame,
            month,
            day,
        )
        return Response(status_code=500, headers={"Cache-Control": CACHE_MISS})

    return Response(
        content=content,
        media_type="image/png",
        headers={"ETag": etag, "Cache-Control": CACHE_HIT},
    )
