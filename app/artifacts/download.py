# artifacts/download.py
from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional, Tuple
import requests

from worker.errors import ServiceError, TransportError

MEDIA_TYPES = {
    "jpg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}

def artifact_filename(output_format: str, now: Optional[datetime] = None) -> str:
    """
    generated-image-<epoch ms>.<ext>, e.g. generated-image-1760800000000.jpg
    """
    now = now or datetime.now(timezone.utc)
    ext = (output_format or "jpg").lower().lstrip(".")
    return f"generated-image-{int(now.timestamp() * 1000)}.{ext}"

def fetch_artifact(url: str, output_format: str = "jpg", timeout: float = 60.0) -> Tuple[bytes, str]:
    """
    Returns (content, media_type).
    The media type falls back to the one implied by output_format when the server sends none.
    """
    try:
        r = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise TransportError(f"Downloading {url} failed: {e}") from e
    if not r.ok:
        raise ServiceError(f"Downloading {url} failed: HTTP {r.status_code}", status_code=r.status_code)

    media_type = (r.headers.get("Content-Type") or "").split(";")[0].strip()
    return r.content, media_type or MEDIA_TYPES.get(output_format, "application/octet-stream")
