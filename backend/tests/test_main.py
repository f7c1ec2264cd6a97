import io
from collections.abc import AsyncIterator
from pathlib import Path

import httpx
import numpy as np
import pytest
import rasterio
from PIL import Image
from rasterio.transform import from_bounds

from solar_layers import main as main_module

pytestmark = pytest.mark.anyio


def _write_geotiff(path: Path, bands: np.ndarray) -> None:
    count, height, width = bands.shape
    path.parent.mkdir(parents=True, exist_ok=True)
    with rasterio.open(
        path,
        "w",
        driver="GTiff",
        width=width,
        height=height,
        count=count,
        dtype=bands.dtype,
        crs="EPSG:4326",
        transform=from_bounds(-122.1, 37.3, -122.0, 37.4, width, height),
    ) as dst:
        dst.write(bands)


@pytest.fixture
async def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AsyncIterator[httpx.AsyncClient]:
    data_root = tmp_path / "data" / "sites"
    site_dir = data_root / "demo"
    _write_geotiff(site_dir / "mask.tif", np.array([[[0, 1], [1, 1]]], dtype=np.uint8))
    _write_geotiff(site_dir / "annualFlux.tif", np.full((1, 2, 2), 900.0, dtype=np.float32))
    _write_geotiff(
        site_dir / "monthlyFlux.tif",
        np.stack([np.full((2, 2), m * 10.0, dtype=np.float32) for m in range(12)]),
    )
    (site_dir / "rgb.tif").write_bytes(b"not a tiff")
    (data_root / "empty").mkdir()

    monkeypatch.setattr(main_module, "DATA_ROOT", data_root)
    main_module._layer_cache.clear()

    transport = httpx.ASGITransport(app=main_module.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client


async def test_health_endpoint(client: httpx.AsyncClient) -> None:
    response = await client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_layers_catalog_lists_every_layer(client: httpx.AsyncClient) -> None:
    response = await client.get("/api/v1/layers")

    assert response.status_code == 200
    ids = [row["id"] for row in response.json()["layers"]]
    assert ids == ["mask", "dsm", "rgb", "annualFlux", "monthlyFlux", "hourlyShade"]


async def test_sites_lists_site_directories(client: httpx.AsyncClient) -> None:
    response = await client.get("/api/v1/sites")
    assert response.json() == {"sites": ["demo", "empty"]}


async def test_legend_includes_bounds_and_labels(client: httpx.AsyncClient) -> None:
    response = await client.get("/api/v1/sites/demo/layers/annualFlux/legend")

    assert response.status_code == 200
    payload = response.json()
    assert payload["site"] == "demo"
    assert payload["frames"] == 1
    assert payload["legend"]["min"] == "Shady"
    assert payload["bounds"]["west"] == pytest.approx(-122.1)
    assert "max-age=15" in response.headers["cache-control"]
    assert response.headers.get("etag")


async def test_frame_png_is_rgba_with_etag(client: httpx.AsyncClient) -> None:
    response = await client.get("/api/v1/sites/demo/layers/monthlyFlux/frames/3.png")

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert "max-age=3600" in response.headers["cache-control"]
    assert response.headers.get("etag")

    image = Image.open(io.BytesIO(response.content))
    assert image.mode == "RGBA"
    assert image.size == (2, 2)
    assert image.getpixel((0, 0))[3] == 255


async def test_roof_only_masks_pixels_and_changes_etag(client: httpx.AsyncClient) -> None:
    plain = await client.get("/api/v1/sites/demo/layers/annualFlux/frames/0.png")
    roof = await client.get("/api/v1/sites/demo/layers/annualFlux/frames/0.png", params={"roof_only": "true"})

    assert roof.status_code == 200
    assert roof.headers["etag"] != plain.headers["etag"]
    image = Image.open(io.BytesIO(roof.content))
    assert image.getpixel((0, 0))[3] == 0
    assert image.getpixel((1, 0))[3] == 255


async def test_if_none_match_returns_304(client: httpx.AsyncClient) -> None:
    first = await client.get("/api/v1/sites/demo/layers/annualFlux/frames/0.png")
    etag = first.headers["etag"]

    second = await client.get(
        "/api/v1/sites/demo/layers/annualFlux/frames/0.png",
        headers={"If-None-Match": etag},
    )
    assert second.status_code == 304
    assert second.headers["etag"] == etag
    assert second.content == b""


async def test_unknown_site_layer_or_data_is_404(client: httpx.AsyncClient) -> None:
    assert (await client.get("/api/v1/sites/nowhere/layers/mask/frames/0.png")).status_code == 404
    assert (await client.get("/api/v1/sites/demo/layers/bogus/frames/0.png")).status_code == 404
    assert (await client.get("/api/v1/sites/demo/layers/dsm/frames/0.png")).status_code == 404
    assert (await client.get("/api/v1/sites/empty/layers/mask/legend")).status_code == 404


async def test_frame_outside_layer_is_404(client: httpx.AsyncClient) -> None:
    response = await client.get("/api/v1/sites/demo/layers/annualFlux/frames/1.png")
    assert response.status_code == 404
    assert "max-age=15" in response.headers["cache-control"]


async def test_out_of_range_month_is_422(client: httpx.AsyncClient) -> None:
    response = await client.get(
        "/api/v1/sites/demo/layers/monthlyFlux/frames/0.png",
        params={"month": 12},
    )
    assert response.status_code == 422


async def test_undecodable_source_is_500_with_short_cache(client: httpx.AsyncClient) -> None:
    response = await client.get("/api/v1/sites/demo/layers/rgb/frames/0.png")

    assert response.status_code == 500
    assert "max-age=15" in response.headers["cache-control"]


async def test_layers_are_cached_per_source_mtime(client: httpx.AsyncClient) -> None:
    await client.get("/api/v1/sites/demo/layers/annualFlux/frames/0.png")
    await client.get("/api/v1/sites/demo/layers/annualFlux/frames/0.png", params={"roof_only": "1"})

    keys = [key for key in main_module._layer_cache if key[:2] == ("demo", "annualFlux")]
    assert len(keys) == 1
