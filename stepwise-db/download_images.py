"""
Download every image listed by export_database.py.

Reads image-urls.txt from the export directory, saves each image under
downloaded-images/ and writes url-filename-mapping.json so the files can be
re-uploaded and the URLs rewritten on the new deployment. A failed download
is logged and counted; the rest still run.

Run:
  python stepwise-db/download_images.py [--export-dir stepwise-db/export]
"""
from __future__ import annotations

import argparse
import json
import logging
import pathlib
import sys
from urllib.parse import urlparse

import requests

logger = logging.getLogger("stepwise.download_images")

TIMEOUT = 30


def filename_for(url: str, index: int) -> str:
    name = urlparse(url).path.rsplit("/", 1)[-1]
    return name or f"image-{index}.jpg"


def read_urls(urls_path: pathlib.Path) -> list[str]:
    return [line.strip() for line in urls_path.read_text(encoding="utf-8").splitlines() if line.strip()]


def download_images(urls: list[str], download_dir: pathlib.Path) -> tuple[int, int]:
    """Returns (succeeded, failed)."""
    download_dir.mkdir(parents=True, exist_ok=True)
    succeeded = failed = 0
    for i, url in enumerate(urls, start=1):
        filename = filename_for(url, i)
        logger.info("[%d/%d] %s", i, len(urls), url)
        try:
            resp = requests.get(url, timeout=TIMEOUT)
            resp.raise_for_status()
            (download_dir / filename).write_bytes(resp.content)
        except (requests.RequestException, OSError) as e:
            failed += 1
            logger.error("Download failed for %s: %s", url, e)
            continue
        succeeded += 1
    return succeeded, failed


def write_mapping(urls: list[str], path: pathlib.Path) -> dict:
    mapping = {url: filename_for(url, i) for i, url in enumerate(urls, start=1)}
    path.write_text(json.dumps(mapping, ensure_ascii=False, indent=2), encoding="utf-8")
    return mapping


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Download exported problem images.")
    parser.add_argument("--export-dir", default="stepwise-db/export", help="Directory written by export_database.py")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    export_dir = pathlib.Path(args.export_dir)
    urls_path = export_dir / "image-urls.txt"
    if not urls_path.exists():
        logger.error("%s not found; run export_database.py first", urls_path)
        return 1

    urls = read_urls(urls_path)
    logger.info("Found %d image URLs", len(urls))
    download_dir = export_dir / "downloaded-images"
    succeeded, failed = download_images(urls, download_dir)
    write_mapping(urls, export_dir / "url-filename-mapping.json")
    logger.info("Done: %d downloaded, %d failed, saved to %s", succeeded, failed, download_dir)
    return 0 if failed == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
