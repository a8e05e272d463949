"""
S3 storage backend for generated media.

Keys are deterministic per (user, job):

    generated/{user_id}/{job_id}{ext}

so a second persist for the same job finds the object already there and
skips the download instead of writing a duplicate.
"""

from __future__ import annotations

import os
import re
from typing import Any, Dict
from urllib.parse import urlparse

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError
from requests.exceptions import RequestException

from stefna.config import config
from stefna.errors import PersistenceFailed

DOWNLOAD_TIMEOUT = 300  # seconds

_EXT_TO_CONTENT_TYPE = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
    ".m4v": "video/x-m4v",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}

_s3_client = None


def _client():
    """S3 client, created on first use so importing never needs credentials."""
    global _s3_client
    if _s3_client is None:
        _s3_client = boto3.client(
            "s3",
            region_name=config.AWS_REGION,
            aws_access_key_id=config.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=config.AWS_SECRET_ACCESS_KEY,
        )
    return _s3_client


def _safe_segment(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_\-]", "_", str(value)).strip("_") or "unknown"


def guess_extension(url: str, media_type: str) -> str:
    ext = os.path.splitext(urlparse(url or "").path)[1].lower()
    if ext in _EXT_TO_CONTENT_TYPE:
        return ext
    return ".mp4" if media_type == "video" else ".jpg"


def build_media_key(user_id: str, job_id: str, ext: str) -> str:
    return f"generated/{_safe_segment(user_id)}/{_safe_segment(job_id)}{ext}"


def build_s3_url(key: str) -> str:
    return f"https://{config.AWS_BUCKET_MEDIA}.s3.{config.AWS_REGION}.amazonaws.com/{key}"


def s3_key_exists(key: str) -> bool:
    try:
        _client().head_object(Bucket=config.AWS_BUCKET_MEDIA, Key=key)
        return True
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "")
        if code in ("404", "NoSuchKey", "NotFound"):
            return False
        raise


def upload_url_to_s3(url: str, key: str, content_type: str | None = None) -> Dict[str, Any]:
    """
    Download `url` and store it under `key` (skipped if the key exists).

    Returns:
        {"key", "url", "reused"}

    Raises:
        PersistenceFailed: not configured, download or upload failure
    """
    if not config.AWS_CONFIGURED:
        raise PersistenceFailed("AWS S3 is not configured", stage="upload")

    try:
        if s3_key_exists(key):
            print(f"[S3] SKIP: key exists -> {key}")
            return {"key": key, "url": build_s3_url(key), "reused": True}

        resp = requests.get(url, timeout=DOWNLOAD_TIMEOUT)
        resp.raise_for_status()
        ct = content_type or resp.headers.get("Content-Type") or "application/octet-stream"

        _client().put_object(
            Bucket=config.AWS_BUCKET_MEDIA,
            Key=key,
            Body=resp.content,
            ContentType=ct,
        )
    except RequestException as e:
        raise PersistenceFailed(f"Download of result failed: {e}", stage="upload") from e
    except (ClientError, BotoCoreError) as e:
        raise PersistenceFailed(f"S3 upload failed: {e}", stage="upload") from e

    print(f"[S3] Uploaded {len(resp.content)} bytes -> {key}")
    return {"key": key, "url": build_s3_url(key), "reused": False}


def content_type_for_extension(ext: str) -> str:
    return _EXT_TO_CONTENT_TYPE.get((ext or "").lower(), "application/octet-stream")
