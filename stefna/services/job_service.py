"""
Job Service - Generation job rows (generation_jobs).

A job row is written only after the vendor acknowledged the start request,
keyed by the vendor's job id.

Job Statuses:
- processing: Vendor is working (initial state)
- completed:  Vendor produced a result URL (terminal)
- failed:     Vendor reported failure or an unusable result (terminal)

Transitions out of `processing` are single guarded UPDATEs
(`... WHERE status = 'processing' RETURNING`). Exactly one caller gets the
row back, and only that caller finalizes credits and persists the asset.
"""

import json
from typing import Any, Dict, List, Optional

from stefna.config import config
from stefna.db import Tables, execute_returning, query_all, query_one


class JobStatus:
    """Valid job statuses."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)


_JOB_COLUMNS = """
    job_id, user_id, request_id, model, vendor, source_url, prompt, status,
    result_url, error, progress, meta, created_at, updated_at
"""

SQL_INSERT_JOB = f"""
    INSERT INTO {Tables.GENERATION_JOBS}
    (job_id, user_id, request_id, model, vendor, source_url, prompt, status, meta, created_at, updated_at)
    VALUES (%s, %s, %s, %s, %s, %s, %s, 'processing', %s::jsonb, NOW(), NOW())
    ON CONFLICT (job_id) DO NOTHING
    RETURNING {_JOB_COLUMNS}
"""

SQL_GET_JOB = f"SELECT {_JOB_COLUMNS} FROM {Tables.GENERATION_JOBS} WHERE job_id = %s"

SQL_GET_JOB_BY_REQUEST = f"""
    SELECT {_JOB_COLUMNS} FROM {Tables.GENERATION_JOBS}
    WHERE user_id = %s AND request_id = %s
    ORDER BY created_at DESC
    LIMIT 1
"""

SQL_UPDATE_PROGRESS = f"""
    UPDATE {Tables.GENERATION_JOBS}
    SET progress = COALESCE(%s, progress), updated_at = NOW()
    WHERE job_id = %s AND status = 'processing'
    RETURNING job_id
"""

SQL_MARK_COMPLETED = f"""
    UPDATE {Tables.GENERATION_JOBS}
    SET status = 'completed', result_url = %s, progress = 100, updated_at = NOW()
    WHERE job_id = %s AND status = 'processing'
    RETURNING {_JOB_COLUMNS}
"""

SQL_MARK_FAILED = f"""
    UPDATE {Tables.GENERATION_JOBS}
    SET status = 'failed', error = %s, updated_at = NOW()
    WHERE job_id = %s AND status = 'processing'
    RETURNING {_JOB_COLUMNS}
"""

SQL_EXPIRE_STALE = f"""
    UPDATE {Tables.GENERATION_JOBS}
    SET status = 'failed', error = 'expired', updated_at = NOW()
    WHERE status = 'processing'
      AND created_at < NOW() - make_interval(mins => %s)
    RETURNING {_JOB_COLUMNS}
"""

SQL_JOBS_FOR_USER = f"""
    SELECT {_JOB_COLUMNS} FROM {Tables.GENERATION_JOBS}
    WHERE user_id = %s
    ORDER BY created_at DESC
    LIMIT %s
"""


class JobService:
    """Service for generation job rows."""

    @staticmethod
    def create_job(
        job_id: str,
        user_id: str,
        request_id: Optional[str],
        model: str,
        vendor: str,
        source_url: Optional[str],
        prompt: Optional[str],
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Record a vendor-acknowledged job. A replayed insert for the same
        vendor job id returns the existing row.
        """
        row = execute_returning(
            SQL_INSERT_JOB,
            (job_id, user_id, request_id, model, vendor, source_url, prompt, json.dumps(meta or {})),
        )
        if row is None:
            row = query_one(SQL_GET_JOB, (job_id,))
        print(f"[JOB] Created job_id={job_id} user={user_id} model={model}")
        return row

    @staticmethod
    def get_job(job_id: str) -> Optional[Dict[str, Any]]:
        return query_one(SQL_GET_JOB, (job_id,))

    @staticmethod
    def get_job_by_request(user_id: str, request_id: str) -> Optional[Dict[str, Any]]:
        return query_one(SQL_GET_JOB_BY_REQUEST, (user_id, request_id))

    @staticmethod
    def get_jobs_for_user(user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        return query_all(SQL_JOBS_FOR_USER, (user_id, limit))

    @staticmethod
    def update_progress(job_id: str, progress: Optional[int]) -> None:
        execute_returning(SQL_UPDATE_PROGRESS, (progress, job_id))

    @staticmethod
    def mark_completed(job_id: str, result_url: str) -> Optional[Dict[str, Any]]:
        """Returns the updated row, or None if another caller already moved the job."""
        return execute_returning(SQL_MARK_COMPLETED, (result_url, job_id))

    @staticmethod
    def mark_failed(job_id: str, error: str) -> Optional[Dict[str, Any]]:
        """Returns the updated row, or None if another caller already moved the job."""
        return execute_returning(SQL_MARK_FAILED, ((error or "failed")[:2000], job_id))

    @staticmethod
    def expire_stale_jobs(max_age_minutes: Optional[int] = None) -> List[Dict[str, Any]]:
        """Fail jobs stuck in processing (client stopped polling)."""
        if max_age_minutes is None:
            max_age_minutes = config.RESERVATION_STALE_MINUTES
        rows = query_all(SQL_EXPIRE_STALE, (max_age_minutes,))
        if rows:
            print(f"[JOB] Expired {len(rows)} stale processing jobs")
        return rows

    @staticmethod
    def format_job(job: Dict[str, Any]) -> Dict[str, Any]:
        """Format job row for API response."""
        created_at = job.get("created_at")
        return {
            "job_id": job["job_id"],
            "status": job["status"],
            "model": job.get("model"),
            "vendor": job.get("vendor"),
            "progress": job.get("progress"),
            "result_url": job.get("result_url"),
            "error": job.get("error"),
            "created_at": created_at.isoformat() if hasattr(created_at, "isoformat") else created_at,
        }
