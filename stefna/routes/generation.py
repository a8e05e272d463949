"""
Generation Routes Blueprint.
----------------------------
Registered under /api.

Endpoints:
- POST /start-gen - Start an image-to-video job (reserves credits)
- GET  /poll-gen  - One poll step for a job (finalizes credits on the terminal transition)
- GET  /jobs      - Recent jobs for the caller

Errors are raised as ServiceError subclasses and rendered by
stefna.utils.error_handlers.
"""

from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from stefna.middleware import no_cache, require_user
from stefna.services import generation_service
from stefna.services.job_service import JobService
from stefna.utils.helpers import clamp_int

bp = Blueprint("generation", __name__)


@bp.route("/start-gen", methods=["POST"])
@require_user
def start_gen():
    """
    Start a generation.

    Request body:
    {
        "image_url": "https://...",   # OR video_url / url / source_url
        "prompt": "Slow dolly in",    # optional
        "fps": 24,                    # 1..60
        "duration": 3,                # 1..10 seconds
        "tier": "standard",           # "standard" or "pro"
        "frameSecond": 0,             # still taken from video sources
        "request_id": "uuid"          # idempotency key, generated when absent
    }

    Response (200):
    {
        "ok": true,
        "job_id": "...",
        "model": "kling-video/v1.6/standard/image-to-video",
        "vendor": "kling-v1.6-i2v",
        "request_id": "uuid",
        "cost": 2,
        "balance": 28,
        "debug": {...}
    }
    """
    body = request.get_json(silent=True) or {}
    result = generation_service.start_generation(g.user_id, body)
    return jsonify(result)


@bp.route("/poll-gen", methods=["GET"])
@require_user
@no_cache
def poll_gen():
    """
    Poll a job: GET /api/poll-gen?id=<job_id>&model=<model>&persist=true&prompt=...

    Failed jobs answer HTTP 200 with ok=false; the job status is in the body.
    """
    result = generation_service.poll_generation(
        g.user_id,
        job_id=request.args.get("id"),
        model=request.args.get("model"),
        persist=request.args.get("persist", "false"),
        prompt=request.args.get("prompt"),
    )
    return jsonify(result)


@bp.route("/jobs", methods=["GET"])
@require_user
@no_cache
def list_jobs():
    """Most recent jobs for the caller: GET /api/jobs?limit=20"""
    limit = clamp_int(request.args.get("limit"), 1, 100, 20)
    jobs = JobService.get_jobs_for_user(g.user_id, limit=limit)
    return jsonify({
        "ok": True,
        "jobs": [JobService.format_job(j) for j in jobs],
        "count": len(jobs),
    })
