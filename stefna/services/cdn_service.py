"""
Cloudinary (CDN) helpers.

- Source URL inspection (video vs. image, hosted on our CDN or not)
- Still-frame extraction through a delivery URL transformation
- Upload of remote media through the REST upload endpoint

Frame extraction rewrites

    https://res.cloudinary.com/<cloud>/video/upload/v1/clip.mov?x=1
into
    https://res.cloudinary.com/<cloud>/video/upload/so_2,w_1024,f_jpg,q_auto/v1/clip.jpg?x=1

Uploads are signed (api key + secret) when a secret is configured and
fall back to an unsigned upload preset otherwise.
"""

from __future__ import annotations

import hashlib
import re
import time
from typing import Any, Dict, Iterable, Optional

import requests
from requests.exceptions import RequestException

from stefna.config import config
from stefna.errors import PersistenceFailed

CDN_HOST = "res.cloudinary.com"
VIDEO_UPLOAD_SEGMENT = "/video/upload/"

UPLOAD_TIMEOUT = 120  # seconds; Cloudinary fetches the remote file before answering

_VIDEO_EXT_RE = re.compile(r"\.(mp4|mov|m4v|webm)(\?|$)", re.IGNORECASE)


# ─────────────────────────────────────────────────────────────
# URL helpers
# ─────────────────────────────────────────────────────────────
def is_video_url(url: str) -> bool:
    """True if the URL path ends in a video extension (query string allowed)."""
    return bool(_VIDEO_EXT_RE.search(url or ""))


def is_cdn_url(url: str) -> bool:
    return CDN_HOST in (url or "")


def to_cdn_frame(url: str, second: int = 0, width: int = 1024) -> str:
    """
    Turn a CDN video URL into a JPEG of the frame at `second`.

    The first /video/upload/ segment gets the so_/w_/f_jpg/q_auto
    transformation and the video extension becomes .jpg; any query string
    is kept as-is. URLs not on the CDN are returned unchanged.
    """
    if not is_cdn_url(url):
        return url
    second = max(0, int(second))
    transformation = f"so_{second},w_{int(width)},f_jpg,q_auto"
    out = url.replace(VIDEO_UPLOAD_SEGMENT, f"{VIDEO_UPLOAD_SEGMENT}{transformation}/", 1)
    return _VIDEO_EXT_RE.sub(lambda m: ".jpg" + m.group(2), out, count=1)


# ─────────────────────────────────────────────────────────────
# Upload
# ─────────────────────────────────────────────────────────────
def _sign(params: Dict[str, Any], secret: str) -> str:
    """
    Cloudinary request signature: sha1 of the sorted `k=v` pairs joined
    with '&', followed by the API secret.
    """
    to_sign = "&".join(f"{k}={params[k]}" for k in sorted(params) if params[k] not in (None, ""))
    return hashlib.sha1(f"{to_sign}{secret}".encode("utf-8")).hexdigest()


def _context_string(context: Dict[str, Any]) -> str:
    # key=value pairs separated by '|'; those two characters must be escaped
    def esc(v: Any) -> str:
        return str(v).replace("|", "\\|").replace("=", "\\=")
    return "|".join(f"{k}={esc(v)}" for k, v in context.items() if v not in (None, ""))


def upload_remote(
    file_url: str,
    public_id: str,
    resource_type: str = "video",
    tags: Optional[Iterable[str]] = None,
    context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Ask Cloudinary to fetch `file_url` and store it under `public_id`.

    The public_id is deterministic per (user, job) and overwrite is on, so
    a repeated upload replaces the same asset instead of creating another.

    Returns:
        {"public_id", "secure_url", "resource_type", "bytes"}

    Raises:
        PersistenceFailed: not configured, network failure or non-2xx
    """
    if not config.CLOUDINARY_CONFIGURED:
        raise PersistenceFailed("Cloudinary is not configured", stage="upload")

    params: Dict[str, Any] = {
        "public_id": public_id,
        "overwrite": "true",
        "invalidate": "true",
    }
    if tags:
        params["tags"] = ",".join(str(t) for t in tags)
    if context:
        params["context"] = _context_string(context)

    if config.CLOUDINARY_API_KEY and config.CLOUDINARY_API_SECRET:
        params["timestamp"] = str(int(time.time()))
        params["signature"] = _sign(params, config.CLOUDINARY_API_SECRET)
        params["api_key"] = config.CLOUDINARY_API_KEY
    else:
        # Unsigned presets reject overwrite/invalidate
        params.pop("overwrite", None)
        params.pop("invalidate", None)
        params["upload_preset"] = config.CLOUDINARY_UPLOAD_PRESET

    params["file"] = file_url
    endpoint = f"https://api.cloudinary.com/v1_1/{config.CLOUDINARY_CLOUD_NAME}/{resource_type}/upload"

    try:
        r = requests.post(endpoint, data=params, timeout=UPLOAD_TIMEOUT)
    except RequestException as e:
        raise PersistenceFailed(f"Cloudinary unreachable: {type(e).__name__}", stage="upload") from e

    if not r.ok:
        print(f"[CDN] Upload failed HTTP {r.status_code}: {r.text[:300]}")
        raise PersistenceFailed(f"Cloudinary upload failed: HTTP {r.status_code}", stage="upload")

    try:
        data = r.json()
    except ValueError as e:
        raise PersistenceFailed("Cloudinary returned a non-JSON body", stage="upload") from e

    if not data.get("public_id") or not data.get("secure_url"):
        raise PersistenceFailed("Cloudinary response missing public_id/secure_url", stage="upload")

    print(f"[CDN] Uploaded public_id={data['public_id']} bytes={data.get('bytes')}")
    return {
        "public_id": data["public_id"],
        "secure_url": data["secure_url"],
        "resource_type": data.get("resource_type", resource_type),
        "bytes": data.get("bytes"),
    }
