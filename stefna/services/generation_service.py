"""
Generation Service - Job Starter and Job Poller.

Start:
1. Validate the source URL (video_url > image_url > url > source_url)
2. Video sources on the CDN are replaced by a still frame (vendor is image-to-video)
3. Shared rate limit, then reserve credits (request_id = client idempotency key)
4. ONE vendor POST - never retried
5. Record the job row under the vendor's job id
6. Any failure after the reservation refunds it before the error propagates

Poll (client-driven, repeated on a timer):
1. Terminal jobs are answered from the job row, no vendor call
2. Otherwise one vendor status read (transport errors and 5xx retried with backoff)
3. processing -> progress update only
4. failed     -> guarded transition, refund, never persists
5. completed  -> guarded transition, commit, persist when requested
   A storage failure still answers `completed`, with data.note and a warning.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from stefna.db import DatabaseError
from stefna.errors import (
    NotFound,
    PersistenceFailed,
    ServiceError,
    VendorRejected,
)
from stefna.services import aiml_service
from stefna.services.aiml_service import VENDOR_TAG, model_for_tier
from stefna.services.asset_service import AssetPersister
from stefna.services.cdn_service import is_cdn_url, is_video_url, to_cdn_frame
from stefna.services.job_service import JobService, JobStatus
from stefna.services.ledger_service import CreditLedger, EntryStatus, Outcome
from stefna.services.pricing_service import Actions, PricingService
from stefna.services.rate_limit_service import RateLimiter
from stefna.services.vendor_response import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    extract_job_id,
    normalize_generation_status,
)
from stefna.utils.helpers import as_bool, clamp_int, first_present, log_db_continue, log_event, new_request_id

SOURCE_FIELDS = ("video_url", "image_url", "url", "source_url")
DEFAULT_PROMPT = "Animate this image with cinematic motion"
FRAME_WIDTH = 1024
MEDIA_TYPE = "video"
NOTE_STORAGE_FAILED = "storage-failed"
# Ledger entries carrying this owner are finalized by the job lifecycle only
RESERVATION_OWNER = "generation"


class UnsupportedSource(ServiceError):
    code = "UNSUPPORTED_SOURCE"
    status = 400


class DuplicateRequest(ServiceError):
    code = "DUPLICATE_REQUEST"
    status = 409


def _refund(user_id: str, request_id: str, reason: str) -> None:
    """Refund a reservation on a failure path; the original error still propagates."""
    try:
        CreditLedger.finalize_credits(user_id, request_id, Outcome.REFUND, reason=reason)
    except DatabaseError as e:
        print(f"[START-GEN] ERROR: refund failed user={user_id} request={request_id}: {type(e).__name__}: {e}")


def build_vendor_payload(body: Dict[str, Any], image_url: str, model: str) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "model": model,
        "image_url": image_url,
        "prompt": str(body.get("prompt") or DEFAULT_PROMPT)[:2000],
        "fps": clamp_int(body.get("fps") or 24, 1, 60, 24),
        "duration": clamp_int(body.get("duration") or 3, 1, 10, 3),
        "stabilization": as_bool(body.get("stabilization")),
    }
    if body.get("effect"):
        payload["effect"] = str(body["effect"])
    return payload


def resolve_source(body: Dict[str, Any]) -> Dict[str, Any]:
    """
    Pick the source URL and derive the image the vendor will receive.

    Returns:
        {"source_url", "image_url", "is_video", "frame_extracted", "frame_second"}
    """
    source = first_present(body, *SOURCE_FIELDS)
    if not source:
        raise NotFound(
            "Missing source URL (video_url, image_url, url or source_url)",
            code="MISSING_SOURCE",
            status=400,
        )
    source = str(source).strip()
    if not source.startswith(("http://", "https://")):
        raise ValueError("Source URL must be an http(s) URL")

    is_video = is_video_url(source)
    frame_second = clamp_int(body.get("frameSecond"), 0, 3600, 0)
    image_url = source
    if is_video:
        if not is_cdn_url(source):
            raise UnsupportedSource("Video sources must be uploaded to the CDN before animation")
        image_url = to_cdn_frame(source, second=frame_second, width=FRAME_WIDTH)

    return {
        "source_url": source,
        "image_url": image_url,
        "is_video": is_video,
        "frame_extracted": image_url != source,
        "frame_second": frame_second,
    }


def _replay_start(user_id: str, request_id: str, entry: Dict[str, Any]) -> Dict[str, Any]:
    """Second start with a request_id that already holds a ledger entry."""
    job = JobService.get_job_by_request(user_id, request_id)
    if job:
        print(f"[START-GEN] Replay request={request_id} -> job_id={job['job_id']}")
        return {
            "ok": True,
            "job_id": job["job_id"],
            "model": job["model"],
            "vendor": job["vendor"],
            "request_id": request_id,
            "replayed": True,
        }
    if entry["status"] == EntryStatus.RESERVED:
        raise DuplicateRequest("This request is already being started", request_id=request_id)
    raise DuplicateRequest(
        f"This request was already {entry['status']}; send a new request_id",
        request_id=request_id,
    )


def start_generation(user_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    """
    Start an image-to-video generation.

    Returns:
        {"ok", "job_id", "model", "vendor", "request_id", "cost", "balance", "debug"}

    Raises:
        NotFound(400), ValueError, UnsupportedSource, RateLimited,
        InsufficientCredits, DailyCapExceeded, DuplicateRequest,
        VendorRejected, VendorUnavailable, DatabaseError (job record, after refund)
    """
    source = resolve_source(body)
    tier = str(body.get("tier") or "standard").lower()
    model = model_for_tier(tier)
    request_id = str(first_present(body, "request_id", "requestId") or new_request_id())

    RateLimiter.enforce("generation", user_id)

    cost = PricingService.get_action_cost(Actions.VIDEO_GEN, tier=tier)
    reservation = CreditLedger.reserve_credits(
        user_id,
        request_id,
        Actions.VIDEO_GEN,
        cost,
        meta={"owner": RESERVATION_OWNER, "model": model, "source_url": source["source_url"][:500]},
    )
    if reservation["is_existing"]:
        return _replay_start(user_id, request_id, reservation["entry"])

    payload = build_vendor_payload(body, source["image_url"], model)
    print(f"[START-GEN] user={user_id} request={request_id} model={model} video={source['is_video']} frame={source['frame_extracted']}")

    try:
        data = aiml_service.aiml_start_generation(payload)
        job_match = extract_job_id(data)
        if not job_match:
            raise VendorRejected("No job ID in vendor response", vendor_status=200, body=data)
        job_id = job_match.value
        JobService.create_job(
            job_id=job_id,
            user_id=user_id,
            request_id=request_id,
            model=model,
            vendor=VENDOR_TAG,
            source_url=source["source_url"],
            prompt=payload["prompt"],
            meta={"image_url": source["image_url"], "job_id_field": job_match.field, "tier": tier},
        )
    except ServiceError as e:
        _refund(user_id, request_id, reason=e.code.lower())
        log_event("generation.start_failed", {"user_id": user_id, "request_id": request_id, "code": e.code})
        raise
    except DatabaseError as e:
        _refund(user_id, request_id, reason="job_record_failed")
        log_event("generation.start_failed", {"user_id": user_id, "request_id": request_id, "code": "JOB_RECORD_FAILED"})
        raise

    log_event("generation.started", {
        "user_id": user_id,
        "request_id": request_id,
        "job_id": job_id,
        "model": model,
        "cost": cost,
    })
    return {
        "ok": True,
        "job_id": job_id,
        "model": model,
        "vendor": VENDOR_TAG,
        "request_id": request_id,
        "cost": cost,
        "balance": reservation["balance"],
        "debug": {
            "isVideoUpload": source["is_video"],
            "frameExtracted": source["frame_extracted"],
            "model_used": model,
            "job_id_field": job_match.field,
        },
    }


# ─────────────────────────────────────────────────────────────
# Poll
# ─────────────────────────────────────────────────────────────
def _finalize_for_job(job: Dict[str, Any], outcome: str) -> None:
    if not job.get("request_id"):
        return
    CreditLedger.finalize_credits(job["user_id"], job["request_id"], outcome, reason=f"job_{job['status']}")


def _persist(job: Dict[str, Any], result_url: str, prompt: Optional[str]) -> Dict[str, Any]:
    return AssetPersister.persist_generation_result(
        user_id=job["user_id"],
        job_id=job["job_id"],
        result_url=result_url,
        media_type=MEDIA_TYPE,
        prompt=prompt or job.get("prompt"),
        tags=["aiml", "kling", "i2v", job["job_id"]],
        meta={"model": job.get("model"), "vendor": job.get("vendor")},
    )


def _completed_response(
    job: Dict[str, Any],
    model: str,
    persist: bool,
    prompt: Optional[str],
    asset: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    result_url = job["result_url"]
    data: Dict[str, Any] = {
        "mediaType": MEDIA_TYPE,
        "resultUrl": result_url,
        "publicId": None,
        "assetId": None,
    }
    response: Dict[str, Any] = {"ok": True, "status": STATUS_COMPLETED, "job_id": job["job_id"], "model": model}

    if persist:
        if asset is None:
            try:
                asset = _persist(job, result_url, prompt)
            except PersistenceFailed as e:
                print(f"[POLL-GEN] WARNING: persistence failed job_id={job['job_id']} stage={e.stage}: {e.message}")
                log_event("generation.persist_failed", {"job_id": job["job_id"], "stage": e.stage})
                data["note"] = NOTE_STORAGE_FAILED
                response["warning"] = {"code": e.code, "message": e.message, "stage": e.stage}
        if asset is not None:
            data["publicId"] = asset["public_id"]
            data["assetId"] = asset["id"]
            data["storedUrl"] = asset["url"]

    response["data"] = data
    return response


def _failed_response(job: Dict[str, Any], model: str) -> Dict[str, Any]:
    return {
        "ok": False,
        "status": STATUS_FAILED,
        "job_id": job["job_id"],
        "error": job.get("error") or "Generation failed",
        "model": model,
    }


def _terminal_response(job: Dict[str, Any], model: str, persist: bool, prompt: Optional[str]) -> Dict[str, Any]:
    """Answer for a job whose status is already final in our table."""
    if job["status"] == JobStatus.FAILED:
        _finalize_for_job(job, Outcome.REFUND)
        return _failed_response(job, model)

    # Idempotent: a no-op unless an earlier commit was lost
    _finalize_for_job(job, Outcome.COMMIT)
    asset = None
    if persist:
        try:
            row = AssetPersister.get_asset_for_job(job["job_id"])
        except DatabaseError as e:
            # Falls through to persist, which reports the failure as a storage warning
            log_db_continue("asset_lookup", e)
            row = None
        if row:
            asset = AssetPersister.format_asset(row)
    return _completed_response(job, model, persist, prompt, asset=asset)


def poll_generation(
    user_id: str,
    job_id: Optional[str],
    model: Optional[str],
    persist: Any = False,
    prompt: Optional[str] = None,
) -> Dict[str, Any]:
    """
    One poll step for a job.

    Returns:
        processing: {"ok": True, "status": "processing", "job_id", "progress", "model"}
        failed:     {"ok": False, "status": "failed", "job_id", "error", "model"}
        completed:  {"ok": True, "status": "completed", "job_id", "model",
                     "data": {"mediaType", "resultUrl", "publicId", "assetId", "note"?},
                     "warning"?}

    Raises:
        NotFound (400 missing id/model, 404 unknown job), VendorRejected, VendorUnavailable
    """
    if not job_id or not model:
        raise NotFound("Missing id or model", code="MISSING_FIELDS", status=400)
    persist = as_bool(persist)

    job = JobService.get_job(job_id)
    if not job or job["user_id"] != user_id:
        raise NotFound("Unknown job id", code="JOB_NOT_FOUND", status=404, job_id=job_id)

    if job["status"] in JobStatus.TERMINAL:
        return _terminal_response(job, model, persist, prompt)

    data, raw_text = aiml_service.aiml_get_generation(job_id)
    status = normalize_generation_status(data, raw_text)

    if status.status == STATUS_FAILED:
        updated = JobService.mark_failed(job_id, status.error)
        if updated is None:
            # Another poller moved the job first
            return _terminal_response(JobService.get_job(job_id), model, persist, prompt)
        _finalize_for_job(updated, Outcome.REFUND)
        print(f"[POLL-GEN] job_id={job_id} failed: {status.error}")
        log_event("generation.failed", {"user_id": user_id, "job_id": job_id, "error": status.error})
        return _failed_response(updated, model)

    if status.status == STATUS_COMPLETED:
        updated = JobService.mark_completed(job_id, status.result_url)
        if updated is None:
            return _terminal_response(JobService.get_job(job_id), model, persist, prompt)
        _finalize_for_job(updated, Outcome.COMMIT)
        print(f"[POLL-GEN] job_id={job_id} completed")
        log_event("generation.completed", {"user_id": user_id, "job_id": job_id, "persist": persist})
        return _completed_response(updated, model, persist, prompt)

    JobService.update_progress(job_id, status.progress)
    return {
        "ok": True,
        "status": status.status,
        "job_id": job_id,
        "progress": status.progress,
        "model": model,
    }


def sweep_stale(max_age_minutes: Optional[int] = None) -> Dict[str, int]:
    """
    Expire abandoned jobs and refund every reservation nobody finalized.
    Jobs are expired first so a job can never be completed after its refund.
    """
    expired = JobService.expire_stale_jobs(max_age_minutes)
    refunded = 0
    for job in expired:
        if not job.get("request_id"):
            continue
        result = CreditLedger.finalize_credits(job["user_id"], job["request_id"], Outcome.REFUND, reason="expired")
        if not result["was_noop"]:
            refunded += 1
    refunded += CreditLedger.refund_stale_reservations(max_age_minutes)

    purged = 0
    try:
        purged = RateLimiter.purge_expired()
    except DatabaseError as e:
        log_db_continue("rate_limit_purge", e)

    return {"expired_jobs": len(expired), "refunded": refunded, "rate_limits_purged": purged}
