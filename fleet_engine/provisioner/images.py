# fleet_engine/provisioner/images.py
"""Base cloud image download."""

import hashlib
import logging
from pathlib import Path
from typing import Optional

import requests

from fleet_engine.core.errors import BaseImageUnavailable

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def download_image(
    url: str,
    dest: Path,
    *,
    timeout: float = 60,
    sha256: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> Path:
    """
    Stream url into dest.

    dest is written in full before this returns; callers move it into
    place, so an interrupted download never looks like a finished image.

    Raises:
        BaseImageUnavailable: on HTTP/network failure or checksum mismatch
    """
    http = session or requests
    digest = hashlib.sha256()
    dest.parent.mkdir(parents=True, exist_ok=True)

    logger.info(f"⬇️  Downloading {url}")
    try:
        with http.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            with open(dest, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
                        digest.update(chunk)
    except (requests.exceptions.RequestException, OSError) as e:
        dest.unlink(missing_ok=True)
        raise BaseImageUnavailable(f"Failed to download base image {url}: {e}") from e

    if sha256 and digest.hexdigest().lower() != sha256.lower():
        dest.unlink(missing_ok=True)
        raise BaseImageUnavailable(
            f"Checksum mismatch for {url}: expected {sha256}, got {digest.hexdigest()}"
        )

    logger.info(f"✅ Downloaded {dest.stat().st_size} bytes")
    return dest
