"""
Asset Persister - Stores finished generations and records MediaAsset rows.

persist_generation_result() is safe to call any number of times for a job:
- an existing media_assets row for the job is returned as-is
- the storage path is derived from (user_id, job_id), so a repeated
  upload lands on the same object
- the insert is ON CONFLICT (job_id) DO NOTHING, and the loser re-reads
  the winner's row

Failures raise PersistenceFailed. The caller reports them as a warning on a
completed job; the generation itself already succeeded.
"""

import json
from typing import Any, Dict, Iterable, List, Optional

from stefna.config import config
from stefna.db import DatabaseError, Tables, execute_returning, query_all, query_one
from stefna.errors import PersistenceFailed
from stefna.services.storage_service import store_remote_media

_ASSET_COLUMNS = """
    id, user_id, job_id, final_url, public_id, media_type, status,
    is_public, allow_remix, prompt, preset_key, meta, created_at
"""

SQL_GET_ASSET_BY_JOB = f"SELECT {_ASSET_COLUMNS} FROM {Tables.MEDIA_ASSETS} WHERE job_id = %s"

SQL_INSERT_ASSET = f"""
    INSERT INTO {Tables.MEDIA_ASSETS}
    (user_id, job_id, final_url, public_id, media_type, status, is_public, allow_remix,
     prompt, preset_key, meta, created_at)
    VALUES (%s, %s, %s, %s, %s, 'ready', %s, %s, %s, %s, %s::jsonb, NOW())
    ON CONFLICT (job_id) DO NOTHING
    RETURNING {_ASSET_COLUMNS}
"""

SQL_ASSETS_FOR_USER = f"""
    SELECT {_ASSET_COLUMNS} FROM {Tables.MEDIA_ASSETS}
    WHERE user_id = %s
    ORDER BY created_at DESC
    LIMIT %s
"""


class AssetPersister:
    """Service for media_assets."""

    @staticmethod
    def get_asset_for_job(job_id: str) -> Optional[Dict[str, Any]]:
        return query_one(SQL_GET_ASSET_BY_JOB, (job_id,))

    @staticmethod
    def persist_generation_result(
        user_id: str,
        job_id: str,
        result_url: str,
        media_type: str = "video",
        prompt: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        preset_key: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Upload the vendor result and record the asset (once per job).

        Returns:
            Formatted asset dict (see format_asset)

        Raises:
            PersistenceFailed: stage="upload" or stage="record"
        """
        try:
            existing = AssetPersister.get_asset_for_job(job_id)
        except DatabaseError as e:
            raise PersistenceFailed(f"Asset lookup failed: {e}", stage="record") from e
        if existing:
            print(f"[ASSET] Reusing asset for job_id={job_id}")
            return AssetPersister.format_asset(existing)

        stored = store_remote_media(
            user_id,
            job_id,
            result_url,
            media_type=media_type,
            tags=tags,
            context={"user_id": user_id, "job_id": job_id, "prompt": (prompt or "")[:200]},
        )

        row_meta = dict(meta or {})
        row_meta.update({"source_url": result_url, "storage": stored["provider"]})
        try:
            row = execute_returning(
                SQL_INSERT_ASSET,
                (
                    user_id,
                    job_id,
                    stored["url"],
                    stored["public_id"],
                    media_type,
                    config.MEDIA_DEFAULT_PUBLIC,
                    False,
                    prompt,
                    preset_key,
                    json.dumps(row_meta),
                ),
            )
            if row is None:
                # Concurrent poller inserted first
                row = query_one(SQL_GET_ASSET_BY_JOB, (job_id,))
        except DatabaseError as e:
            raise PersistenceFailed(f"Asset record failed: {e}", stage="record") from e

        if row is None:
            raise PersistenceFailed("Asset row missing after insert", stage="record")

        print(f"[ASSET] Persisted job_id={job_id} user={user_id} url={stored['url'][:80]}")
        return AssetPersister.format_asset(row)

    @staticmethod
    def list_assets(user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        rows = query_all(SQL_ASSETS_FOR_USER, (user_id, max(1, min(200, limit))))
        return [AssetPersister.format_asset(r) for r in rows]

    @staticmethod
    def format_asset(asset: Dict[str, Any]) -> Dict[str, Any]:
        """Format asset row for API response."""
        created_at = asset.get("created_at")
        return {
            "id": str(asset["id"]),
            "job_id": asset["job_id"],
            "url": asset["final_url"],
            "public_id": asset.get("public_id"),
            "media_type": asset["media_type"],
            "visibility": "public" if asset.get("is_public") else "private",
            "allow_remix": bool(asset.get("allow_remix")),
            "prompt": asset.get("prompt"),
            "created_at": created_at.isoformat() if hasattr(created_at, "isoformat") else created_at,
        }
