from pathlib import Path

import httpx
import numpy as np
import pytest
import rasterio
from rasterio.transform import from_bounds

from solar_layers.models.base import LayerId
from solar_layers.services.builder import fetch
from solar_layers.services.builder.fetch import DataLayerUrls, LayerFetchError

SOLAR_URL = "https://solar.googleapis.com/v1/geoTiff:get?id=abc"
OTHER_URL = "https://tiles.example.com/mask.tif"


def _write_geotiff(path: Path, bands: np.ndarray) -> Path:
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
    return path


@pytest.fixture(autouse=True)
def _fast_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(fetch.ENV_FETCH_RETRY_SLEEP, "0")


def test_read_geotiff_returns_flat_bands_and_wgs84_bounds(tmp_path: Path) -> None:
    bands = np.arange(12, dtype=np.float32).reshape(2, 2, 3)
    raster = fetch.read_geotiff(_write_geotiff(tmp_path / "x.tif", bands))

    assert (raster.width, raster.height, raster.band_count) == (3, 2, 2)
    assert raster.bands[1].tolist() == [6, 7, 8, 9, 10, 11]
    assert raster.bounds is not None
    assert raster.bounds.north == pytest.approx(37.4)
    assert raster.bounds.south == pytest.approx(37.3)
    assert raster.bounds.west == pytest.approx(-122.1)
    assert raster.bounds.east == pytest.approx(-122.0)


def test_decode_geotiff_from_bytes(tmp_path: Path) -> None:
    path = _write_geotiff(tmp_path / "x.tif", np.ones((1, 2, 2), dtype=np.uint8))
    raster = fetch.decode_geotiff(path.read_bytes())

    assert raster.band_count == 1
    assert raster.bands[0].tolist() == [1, 1, 1, 1]


def test_decode_geotiff_rejects_garbage() -> None:
    with pytest.raises(LayerFetchError):
        fetch.decode_geotiff(b"definitely not a tiff")


def test_data_layer_urls_from_response() -> None:
    urls = DataLayerUrls.from_response(
        {
            "maskUrl": "m",
            "dsmUrl": "d",
            "monthlyFluxUrl": "mf",
            "hourlyShadeUrls": [f"h{i}" for i in range(12)],
        }
    )

    assert urls.urls_for(LayerId.MASK) == ["m"]
    assert urls.urls_for("dsm") == ["d"]
    assert urls.urls_for("monthlyFlux") == ["mf"]
    assert urls.urls_for("hourlyShade") == [f"h{i}" for i in range(12)]
    with pytest.raises(ValueError):
        urls.urls_for("rgb")


def test_data_layer_urls_need_mask_and_twelve_shade_months() -> None:
    with pytest.raises(ValueError):
        DataLayerUrls.from_response({"dsmUrl": "d"})

    urls = DataLayerUrls.from_response({"maskUrl": "m", "hourlyShadeUrls": ["h"] * 11})
    with pytest.raises(ValueError):
        urls.urls_for(LayerId.HOURLY_SHADE)


def test_api_key_is_sent_only_to_solar_host() -> None:
    seen: list[httpx.URL] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url)
        return httpx.Response(200, content=b"tif")

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        assert fetch.download_bytes(SOLAR_URL, "secret", client=client) == b"tif"
        fetch.download_bytes(OTHER_URL, "secret", client=client)

    assert seen[0].params["key"] == "secret"
    assert seen[0].params["id"] == "abc"
    assert "key" not in seen[1].params


def test_api_key_keeps_signed_query_string() -> None:
    signed = "https://solar.googleapis.com/v1/geoTiff:get?id=abc&sig=x%2By"
    request_url = fetch._request_url(signed, "secret")

    assert request_url.params.get_list("id") == ["abc"]
    assert request_url.params["sig"] == "x+y"
    assert request_url.params["key"] == "secret"
    assert fetch._request_url(signed, None) == httpx.URL(signed)
    assert "key" not in fetch._request_url("https://solar.googleapis.com.evil.test/a?id=1", "secret").params


def test_non_200_status_is_fatal_without_retry(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(fetch.ENV_FETCH_RETRIES, "3")
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(403, json={"error": {"message": "forbidden"}})

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(LayerFetchError) as excinfo:
            fetch.download_bytes(SOLAR_URL, "secret", client=client)

    assert excinfo.value.status_code == 403
    assert excinfo.value.url == SOLAR_URL
    assert len(calls) == 1


def test_transport_errors_are_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(fetch.ENV_FETCH_RETRIES, "3")
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, content=b"ok")

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        assert fetch.download_bytes(OTHER_URL, None, client=client) == b"ok"
    assert len(attempts) == 3


def test_exhausted_retries_raise_layer_fetch_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(fetch.ENV_FETCH_RETRIES, "2")

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(LayerFetchError) as excinfo:
            fetch.download_bytes(OTHER_URL, None, client=client)
    assert isinstance(excinfo.value.__cause__, httpx.ReadTimeout)


def test_fetch_layer_rasters_downloads_each_url_once(tmp_path: Path) -> None:
    mask_bytes = _write_geotiff(tmp_path / "mask.tif", np.ones((1, 2, 2), dtype=np.uint8)).read_bytes()
    flux_bytes = _write_geotiff(
        tmp_path / "monthly.tif", np.full((12, 2, 2), 50.0, dtype=np.float32)
    ).read_bytes()
    payloads = {"/mask.tif": mask_bytes, "/monthly.tif": flux_bytes}
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(request.url.path)
        return httpx.Response(200, content=payloads[request.url.path])

    urls = DataLayerUrls.from_response(
        {"maskUrl": "https://x.test/mask.tif", "monthlyFluxUrl": "https://x.test/monthly.tif"}
    )
    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        mask, data = fetch.fetch_layer_rasters("monthlyFlux", urls, None, client=client, workers=2)
        assert sorted(requested) == ["/mask.tif", "/monthly.tif"]

        requested.clear()
        mask_only, mask_data = fetch.fetch_layer_rasters(LayerId.MASK, urls, None, client=client)
        assert requested == ["/mask.tif"]

    assert mask.band_count == 1
    assert len(data) == 1 and data[0].band_count == 12
    assert mask_data[0] is mask_only


def test_site_source_paths_layout(tmp_path: Path) -> None:
    mask_path, data_paths = fetch.site_source_paths(tmp_path, "hourlyShade")

    assert mask_path == tmp_path / "mask.tif"
    assert len(data_paths) == 12
    assert data_paths[0] == tmp_path / "hourlyShade" / "00.tif"
    assert data_paths[11] == tmp_path / "hourlyShade" / "11.tif"
    assert fetch.site_source_paths(tmp_path, "dsm")[1] == [tmp_path / "dsm.tif"]


def test_load_site_rasters_reports_missing_files(tmp_path: Path) -> None:
    _write_geotiff(tmp_path / "mask.tif", np.ones((1, 2, 2), dtype=np.uint8))
    with pytest.raises(FileNotFoundError, match="annualFlux.tif"):
        fetch.load_site_rasters(tmp_path, "annualFlux")


def test_load_site_rasters_reuses_mask_for_mask_layer(tmp_path: Path) -> None:
    _write_geotiff(tmp_path / "mask.tif", np.ones((1, 2, 2), dtype=np.uint8))
    mask, data = fetch.load_site_rasters(tmp_path, LayerId.MASK)
    assert data == [mask]


def test_write_site_file_places_shade_months(tmp_path: Path) -> None:
    path = fetch.write_site_file(tmp_path, "hourlyShade", 3, b"tif-bytes")

    assert path == tmp_path / "hourlyShade" / "03.tif"
    assert path.read_bytes() == b"tif-bytes"
    assert not list(tmp_path.rglob("*.tmp"))
