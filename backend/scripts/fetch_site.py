#!/usr/bin/env python3
"""Download the GeoTIFFs referenced by a dataLayers response into a site directory.

Usage:
    SOLAR_API_KEY=... PYTHONPATH=backend .venv/bin/python backend/scripts/fetch_site.py \
      --response ./dataLayers.json --site-dir ./data/sites/demo

Optional:
    --layer monthlyFlux  # only one layer (repeatable); mask is always fetched
    --overwrite          # re-download files already present
    --workers 6          # parallel downloads
"""

from __future__ import annotations

import argparse
import json
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path

import httpx

from solar_layers.models.base import LayerId
from solar_layers.services.builder.fetch import (
    DataLayerUrls,
    download_bytes,
    site_source_paths,
    write_site_file,
)


@dataclass
class Job:
    layer_id: LayerId
    index: int
    url: str
    path: Path


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fetch solar data-layer GeoTIFFs into a site directory")
    parser.add_argument("--response", required=True, type=Path, help="dataLayers JSON response file")
    parser.add_argument("--site-dir", required=True, type=Path, help="Destination site directory")
    parser.add_argument(
        "--layer",
        dest="layers",
        action="append",
        choices=[layer.value for layer in LayerId],
        default=None,
        help="Layer to fetch (repeatable, default: every layer with a URL)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=int(os.environ.get("SOLAR_LAYERS_FETCH_WORKERS", "6")),
        help="Parallel downloads (default: env SOLAR_LAYERS_FETCH_WORKERS or 6)",
    )
    parser.add_argument("--overwrite", action="store_true", help="Re-download existing files")
    return parser.parse_args()


def discover_jobs(
    urls: DataLayerUrls,
    site_dir: Path,
    layers: list[LayerId],
    overwrite: bool,
) -> list[Job]:
    jobs: list[Job] = []
    seen: set[Path] = set()
    for layer_id in [LayerId.MASK, *layers]:
        try:
            layer_urls = urls.urls_for(layer_id)
        except ValueError as exc:
            print(f"SKIP {layer_id.value} :: {exc}")
            continue
        _, paths = site_source_paths(site_dir, layer_id)
        for index, (url, path) in enumerate(zip(layer_urls, paths)):
            if path in seen:
                continue
            seen.add(path)
            if path.is_file() and not overwrite:
                continue
            jobs.append(Job(layer_id=layer_id, index=index, url=url, path=path))
    return jobs


def fetch_job(job: Job, site_dir: Path, api_key: str | None, client: httpx.Client) -> tuple[Job, bool, str | None]:
    try:
        content = download_bytes(job.url, api_key, client=client)
        write_site_file(site_dir, job.layer_id, job.index, content)
        return (job, True, None)
    except Exception as exc:
        return (job, False, str(exc))


def main() -> int:
    args = parse_args()

    if args.workers < 1:
        print("ERROR: --workers must be >= 1")
        return 2
    if not args.response.is_file():
        print(f"ERROR: response file not found: {args.response}")
        return 1

    try:
        urls = DataLayerUrls.from_response(json.loads(args.response.read_text()))
    except (json.JSONDecodeError, ValueError) as exc:
        print(f"ERROR: invalid dataLayers response: {exc}")
        return 1

    layers = [LayerId(value) for value in args.layers] if args.layers else [
        layer for layer in LayerId if layer is not LayerId.MASK
    ]
    jobs = discover_jobs(urls, args.site_dir, layers, args.overwrite)
    if not jobs:
        print(f"Nothing to fetch for site_dir={args.site_dir}")
        return 0

    api_key = os.environ.get("SOLAR_API_KEY") or None
    print(f"Fetching data layers: site_dir={args.site_dir} jobs={len(jobs)} workers={args.workers}")

    ok = 0
    failed = 0
    timeout = float(os.environ.get("SOLAR_LAYERS_FETCH_TIMEOUT_SECONDS", "60"))
    with httpx.Client(timeout=timeout) as client, ThreadPoolExecutor(max_workers=args.workers) as executor:
        futures = [executor.submit(fetch_job, job, args.site_dir, api_key, client) for job in jobs]
        for future in as_completed(futures):
            job, success, error = future.result()
            rel = job.path.relative_to(args.site_dir)
            if success:
                ok += 1
                print(f"OK   {rel}")
            else:
                failed += 1
                print(f"FAIL {rel} :: {error}")

    print(f"Done. success={ok} failed={failed}")
    return 0 if failed == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
