"""
Storage backend selection for generated media.

STORAGE_PROVIDER=cloudinary (default) or s3. Both backends store a job's
output under a path derived only from (user_id, job_id).
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from stefna.config import config
from stefna.errors import PersistenceFailed
from stefna.services import cdn_service, s3_service


def cdn_public_id(user_id: str, job_id: str) -> str:
    return f"{config.CLOUDINARY_FOLDER.strip('/')}/{user_id}/{job_id}"


def store_remote_media(
    user_id: str,
    job_id: str,
    source_url: str,
    media_type: str = "video",
    tags: Optional[Iterable[str]] = None,
    context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Copy a vendor result URL into our storage.

    Returns:
        {"url": final_url, "public_id": cdn public id or s3 key, "provider": str}

    Raises:
        PersistenceFailed
    """
    provider = config.STORAGE_PROVIDER
    if provider == "s3":
        ext = s3_service.guess_extension(source_url, media_type)
        key = s3_service.build_media_key(user_id, job_id, ext)
        result = s3_service.upload_url_to_s3(
            source_url, key, content_type=s3_service.content_type_for_extension(ext)
        )
        return {"url": result["url"], "public_id": result["key"], "provider": "s3"}

    if provider == "cloudinary":
        result = cdn_service.upload_remote(
            source_url,
            public_id=cdn_public_id(user_id, job_id),
            resource_type="video" if media_type == "video" else "image",
            tags=tags,
            context=context,
        )
        return {"url": result["secure_url"], "public_id": result["public_id"], "provider": "cloudinary"}

    raise PersistenceFailed(f"Unknown STORAGE_PROVIDER {provider!r}", stage="upload")
