"""
Image storage on the Firebase Storage bucket.

Keys look like ``problems/problem-1718000000000-9f2c4e1a0b3d5c7e.png``: the
upload kind, a millisecond timestamp and 8 random bytes in hex, so two uploads
in the same millisecond still land on different keys.
"""
from __future__ import annotations

import logging
import secrets
import time

from firebase_admin import storage as firebase_storage

logger = logging.getLogger(__name__)

KEY_PREFIX = "problems"


def extension_for(mimetype: str | None) -> str:
    """``image/png`` -> ``png``, ``image/svg+xml`` -> ``svg``, missing -> ``bin``."""
    if not mimetype or "/" not in mimetype:
        return "bin"
    subtype = mimetype.split("/", 1)[1].split(";", 1)[0].strip().lower()
    subtype = subtype.split("+", 1)[0]
    return subtype or "bin"


def make_storage_key(kind: str, mimetype: str | None) -> str:
    stamp = int(time.time() * 1000)
    suffix = secrets.token_hex(8)
    return f"{KEY_PREFIX}/{kind}-{stamp}-{suffix}.{extension_for(mimetype)}"


class ImageStore:
    def __init__(self, bucket_name: str | None = None):
        self.bucket_name = bucket_name
        self._bucket = None

    def bucket(self):
        if self._bucket is None:
            self._bucket = firebase_storage.bucket(self.bucket_name)
        return self._bucket

    def put(self, key: str, data: bytes, content_type: str) -> str:
        """Upload ``data`` under ``key`` and return its public URL."""
        blob = self.bucket().blob(key)
        blob.upload_from_string(data, content_type=content_type)
        blob.make_public()
        logger.info("Stored %s (%d bytes, %s)", key, len(data), content_type)
        return blob.public_url

    def put_upload(self, kind: str, data: bytes, mimetype: str | None) -> tuple[str, str]:
        key = make_storage_key(kind, mimetype)
        url = self.put(key, data, mimetype or "application/octet-stream")
        return url, key
