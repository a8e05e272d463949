"""
Tests for the Job Starter and Job Poller.

The ledger runs for real against the in-memory `ledger_db` store; the vendor,
job table, rate limiter and asset persister are replaced with fakes.

Run locally:
    python -m pytest stefna/tests/test_generation_service.py -v
"""

from __future__ import annotations

import pytest

from stefna.config import config
from stefna.db import DatabaseConnectionError, DatabaseQueryError
from stefna.errors import NotFound, PersistenceFailed, VendorRejected, VendorUnavailable
from stefna.services import generation_service
from stefna.services.aiml_service import Models
from stefna.services.generation_service import DuplicateRequest, UnsupportedSource
from stefna.services.ledger_service import EntryStatus


class FakeJobs:
    """generation_jobs with the same guarded transitions as the SQL."""

    def __init__(self):
        self.rows = {}

    def create_job(self, job_id, user_id, request_id, model, vendor, source_url, prompt, meta=None):
        self.rows.setdefault(job_id, {
            "job_id": job_id,
            "user_id": user_id,
            "request_id": request_id,
            "model": model,
            "vendor": vendor,
            "source_url": source_url,
            "prompt": prompt,
            "status": "processing",
            "result_url": None,
            "error": None,
            "progress": None,
            "meta": meta or {},
        })
        return dict(self.rows[job_id])

    def get_job(self, job_id):
        row = self.rows.get(job_id)
        return dict(row) if row else None

    def get_job_by_request(self, user_id, request_id):
        for row in self.rows.values():
            if row["user_id"] == user_id and row["request_id"] == request_id:
                return dict(row)
        return None

    def update_progress(self, job_id, progress):
        row = self.rows[job_id]
        if row["status"] == "processing" and progress is not None:
            row["progress"] = progress

    def _transition(self, job_id, **changes):
        row = self.rows.get(job_id)
        if not row or row["status"] != "processing":
            return None
        row.update(changes)
        return dict(row)

    def mark_completed(self, job_id, result_url):
        return self._transition(job_id, status="completed", result_url=result_url, progress=100)

    def mark_failed(self, job_id, error):
        return self._transition(job_id, status="failed", error=error)

    def expire_stale_jobs(self, max_age_minutes=None):
        expired = []
        for job_id, row in self.rows.items():
            if row["status"] == "processing" and row.get("stale"):
                expired.append(self._transition(job_id, status="failed", error="expired"))
        return expired


class FakeVendor:
    def __init__(self):
        self.start_calls = []
        self.poll_calls = []
        self.start_result = {"generation_id": "gen-1", "status": "queued"}
        self.start_error = None
        self.poll_result = ({"status": "processing", "progress": 10}, "")

    def start(self, payload):
        self.start_calls.append(payload)
        if self.start_error:
            raise self.start_error
        return self.start_result

    def poll(self, generation_id, max_retries=None):
        self.poll_calls.append(generation_id)
        if isinstance(self.poll_result, Exception):
            raise self.poll_result
        return self.poll_result


class FakeAssets:
    def __init__(self):
        self.calls = []
        self.rows = {}
        self.error = None
        self.lookup_error = None

    def persist(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        job_id = kwargs["job_id"]
        self.rows.setdefault(job_id, {
            "id": f"asset-{job_id}",
            "job_id": job_id,
            "final_url": f"https://res.cloudinary.com/demo/video/upload/stefna/generated/{kwargs['user_id']}/{job_id}.mp4",
            "public_id": f"stefna/generated/{kwargs['user_id']}/{job_id}",
            "media_type": "video",
            "is_public": False,
        })
        return generation_service.AssetPersister.format_asset(self.rows[job_id])

    def get_asset_for_job(self, job_id):
        if self.lookup_error:
            raise self.lookup_error
        return self.rows.get(job_id)


@pytest.fixture
def env(ledger_db, monkeypatch):
    jobs = FakeJobs()
    vendor = FakeVendor()
    assets = FakeAssets()

    monkeypatch.setattr(config, "VIDEO_COST", 2)
    monkeypatch.setattr(config, "VIDEO_COST_PRO", 4)
    monkeypatch.setattr(generation_service.RateLimiter, "enforce", staticmethod(lambda action, identifier: None))
    monkeypatch.setattr(generation_service.aiml_service, "aiml_start_generation", vendor.start)
    monkeypatch.setattr(generation_service.aiml_service, "aiml_get_generation", vendor.poll)
    for name in ("create_job", "get_job", "get_job_by_request", "update_progress",
                 "mark_completed", "mark_failed", "expire_stale_jobs"):
        monkeypatch.setattr(generation_service.JobService, name, staticmethod(getattr(jobs, name)))
    monkeypatch.setattr(
        generation_service.AssetPersister, "persist_generation_result", staticmethod(assets.persist)
    )
    monkeypatch.setattr(
        generation_service.AssetPersister, "get_asset_for_job", staticmethod(assets.get_asset_for_job)
    )

    class Env:
        pass

    e = Env()
    e.ledger, e.jobs, e.vendor, e.assets = ledger_db, jobs, vendor, assets
    return e


def _start(user="u1", request_id="req-1", **body):
    body.setdefault("image_url", "https://example.com/cat.png")
    return generation_service.start_generation(user, {"request_id": request_id, **body})


class TestStartGeneration:

    def test_start_reserves_and_records_job(self, env):
        result = _start(prompt="make it move", fps=120, duration=0)

        assert result["ok"] is True
        assert result["job_id"] == "gen-1"
        assert result["model"] == Models.I2V_STD
        assert result["vendor"] == "kling-v1.6-i2v"
        assert result["cost"] == 2
        assert result["balance"] == 28
        assert result["debug"]["job_id_field"] == "generation_id"

        payload = env.vendor.start_calls[0]
        assert payload["fps"] == 60
        assert payload["duration"] == 3
        assert payload["prompt"] == "make it move"
        assert env.jobs.rows["gen-1"]["request_id"] == "req-1"
        assert env.ledger.entry_for("u1", "req-1")["status"] == EntryStatus.RESERVED

    def test_pro_tier_model_and_cost(self, env):
        result = _start(tier="pro")
        assert result["model"] == Models.I2V_PRO
        assert result["cost"] == 4

    def test_default_prompt(self, env):
        _start()
        assert env.vendor.start_calls[0]["prompt"] == generation_service.DEFAULT_PROMPT

    def test_cdn_video_source_sends_still_frame(self, env):
        clip = "https://res.cloudinary.com/demo/video/upload/v1/clip.mp4"
        result = _start(image_url=None, video_url=clip, frameSecond=2)

        sent = env.vendor.start_calls[0]["image_url"]
        assert sent == "https://res.cloudinary.com/demo/video/upload/so_2,w_1024,f_jpg,q_auto/v1/clip.jpg"
        assert result["debug"]["isVideoUpload"] is True
        assert result["debug"]["frameExtracted"] is True

    def test_video_outside_cdn_is_rejected_before_reserving(self, env):
        with pytest.raises(UnsupportedSource):
            _start(image_url="https://example.com/clip.mp4")
        assert env.ledger.entries == []
        assert env.vendor.start_calls == []

    def test_missing_source(self, env):
        with pytest.raises(NotFound) as exc_info:
            generation_service.start_generation("u1", {"prompt": "x"})
        assert exc_info.value.status == 400
        assert exc_info.value.code == "MISSING_SOURCE"

    def test_vendor_rejection_refunds_and_passes_body_through(self, env):
        env.vendor.start_error = VendorRejected(
            "vendor_start_failed", vendor_status=422, body={"message": "bad image"}
        )
        with pytest.raises(VendorRejected) as exc_info:
            _start()

        err = exc_info.value.to_dict()
        assert err["status"] == 422
        assert err["details"] == {"message": "bad image"}
        assert env.ledger.entry_for("u1", "req-1")["status"] == EntryStatus.REFUNDED
        assert env.ledger.balances["u1"] == 30
        assert env.jobs.rows == {}

    def test_vendor_unavailable_refunds(self, env):
        env.vendor.start_error = VendorUnavailable("Vendor unreachable: ConnectTimeout")
        with pytest.raises(VendorUnavailable) as exc_info:
            _start()
        assert exc_info.value.retryable is True
        assert env.ledger.balances["u1"] == 30

    def test_missing_job_id_refunds(self, env):
        env.vendor.start_result = {"status": "queued"}
        with pytest.raises(VendorRejected) as exc_info:
            _start()
        assert exc_info.value.message == "No job ID in vendor response"
        assert exc_info.value.status == 400
        assert env.ledger.entry_for("u1", "req-1")["status"] == EntryStatus.REFUNDED

    def test_replayed_request_returns_same_job_without_second_vendor_call(self, env):
        first = _start()
        second = _start()

        assert second["job_id"] == first["job_id"]
        assert second["replayed"] is True
        assert len(env.vendor.start_calls) == 1
        assert env.ledger.balances["u1"] == 28

    def test_replay_after_failed_start_is_duplicate(self, env):
        env.vendor.start_error = VendorUnavailable("down")
        with pytest.raises(VendorUnavailable):
            _start()
        env.vendor.start_error = None
        with pytest.raises(DuplicateRequest) as exc_info:
            _start()
        assert exc_info.value.status == 409

    def test_zero_duration_and_fps_use_defaults(self, env):
        _start(fps=0, duration=0)
        payload = env.vendor.start_calls[0]
        assert payload["fps"] == 24
        assert payload["duration"] == 3

    def test_non_string_prompt_is_coerced(self, env):
        _start(prompt=5)
        assert env.vendor.start_calls[0]["prompt"] == "5"

    def test_reservation_is_owned_by_the_job(self, env):
        _start()
        assert env.ledger.entry_for("u1", "req-1")["meta"]["owner"] == generation_service.RESERVATION_OWNER

    def test_job_record_failure_refunds(self, env, monkeypatch):
        def broken_create_job(**kwargs):
            raise DatabaseQueryError("Database error: relation does not exist")

        monkeypatch.setattr(generation_service.JobService, "create_job", staticmethod(broken_create_job))
        with pytest.raises(DatabaseQueryError):
            _start()

        entry = env.ledger.entry_for("u1", "req-1")
        assert entry["status"] == EntryStatus.REFUNDED
        assert entry["meta"]["finalize_reason"] == "job_record_failed"
        assert env.ledger.balances["u1"] == 30


class TestPollGeneration:

    def _started(self, env):
        _start()
        return "gen-1"

    def test_processing_updates_progress(self, env):
        job_id = self._started(env)
        env.vendor.poll_result = ({"status": "generating", "progress": 55}, "")

        result = generation_service.poll_generation("u1", job_id, Models.I2V_STD)

        assert result == {
            "ok": True,
            "status": "processing",
            "job_id": job_id,
            "progress": 55,
            "model": Models.I2V_STD,
        }
        assert env.jobs.rows[job_id]["progress"] == 55
        assert env.ledger.entry_for("u1", "req-1")["status"] == EntryStatus.RESERVED

    def test_completed_commits_and_persists_once(self, env):
        job_id = self._started(env)
        env.vendor.poll_result = ({"status": "completed", "video_url": "https://vendor/out.mp4"}, "")

        result = generation_service.poll_generation("u1", job_id, Models.I2V_STD, persist="true")

        assert result["ok"] is True
        assert result["status"] == "completed"
        assert result["data"]["resultUrl"] == "https://vendor/out.mp4"
        assert result["data"]["publicId"] == f"stefna/generated/u1/{job_id}"
        assert result["data"]["assetId"] == f"asset-{job_id}"
        assert "warning" not in result
        assert env.ledger.entry_for("u1", "req-1")["status"] == EntryStatus.COMMITTED
        assert env.ledger.balances["u1"] == 28

        # Polling again answers from the stored row
        again = generation_service.poll_generation("u1", job_id, Models.I2V_STD, persist="true")
        assert again["data"]["assetId"] == f"asset-{job_id}"
        assert len(env.vendor.poll_calls) == 1
        assert len(env.assets.calls) == 1
        assert env.ledger.balances["u1"] == 28

    def test_completed_without_persist(self, env):
        job_id = self._started(env)
        env.vendor.poll_result = ({"status": "succeeded", "content": {"url": "https://vendor/out.mp4"}}, "")

        result = generation_service.poll_generation("u1", job_id, Models.I2V_STD, persist="false")

        assert result["data"]["publicId"] is None
        assert result["data"]["assetId"] is None
        assert env.assets.calls == []

    def test_failed_refunds_and_never_persists(self, env):
        job_id = self._started(env)
        env.vendor.poll_result = ({"status": "failed", "error": "content policy"}, "")

        result = generation_service.poll_generation("u1", job_id, Models.I2V_STD, persist="true")

        assert result == {
            "ok": False,
            "status": "failed",
            "job_id": job_id,
            "error": "content policy",
            "model": Models.I2V_STD,
        }
        assert env.assets.calls == []
        assert env.ledger.entry_for("u1", "req-1")["status"] == EntryStatus.REFUNDED
        assert env.ledger.balances["u1"] == 30

        # Replayed terminal poll neither calls the vendor nor moves the balance
        generation_service.poll_generation("u1", job_id, Models.I2V_STD)
        assert len(env.vendor.poll_calls) == 1
        assert env.ledger.balances["u1"] == 28

    def test_completed_without_result_url_is_failed(self, env):
        job_id = self._started(env)
        env.vendor.poll_result = ({"status": "completed"}, "")

        result = generation_service.poll_generation("u1", job_id, Models.I2V_STD, persist="true")

        assert result["status"] == "failed"
        assert result["error"] == "No resultUrl in vendor response"
        assert env.assets.calls == []
        assert env.ledger.balances["u1"] == 30

    def test_storage_failure_still_completed(self, env):
        job_id = self._started(env)
        env.vendor.poll_result = ({"status": "completed", "video_url": "https://vendor/out.mp4"}, "")
        env.assets.error = PersistenceFailed("Cloudinary upload failed: HTTP 500", stage="upload")

        result = generation_service.poll_generation("u1", job_id, Models.I2V_STD, persist=True)

        assert result["ok"] is True
        assert result["status"] == "completed"
        assert result["data"]["note"] == "storage-failed"
        assert result["data"]["resultUrl"] == "https://vendor/out.mp4"
        assert result["warning"]["code"] == "PERSISTENCE_FAILED"
        assert env.ledger.entry_for("u1", "req-1")["status"] == EntryStatus.COMMITTED

        # A later poll retries persistence once storage is back
        env.assets.error = None
        retry = generation_service.poll_generation("u1", job_id, Models.I2V_STD, persist=True)
        assert retry["data"]["assetId"] == f"asset-{job_id}"
        assert "note" not in retry["data"]

    def test_repoll_during_database_outage_still_completed(self, env):
        job_id = self._started(env)
        env.vendor.poll_result = ({"status": "completed", "video_url": "https://vendor/out.mp4"}, "")
        env.assets.error = PersistenceFailed("Cloudinary upload failed: HTTP 500", stage="upload")
        generation_service.poll_generation("u1", job_id, Models.I2V_STD, persist=True)

        env.assets.lookup_error = DatabaseConnectionError("Database connection lost")
        env.assets.error = PersistenceFailed("Asset lookup failed: Database connection lost", stage="record")
        result = generation_service.poll_generation("u1", job_id, Models.I2V_STD, persist=True)

        assert result["ok"] is True
        assert result["status"] == "completed"
        assert result["data"]["resultUrl"] == "https://vendor/out.mp4"
        assert result["data"]["note"] == "storage-failed"
        assert result["warning"]["stage"] == "record"

    def test_missing_fields_is_400(self, env):
        with pytest.raises(NotFound) as exc_info:
            generation_service.poll_generation("u1", "", Models.I2V_STD)
        assert exc_info.value.status == 400

        with pytest.raises(NotFound) as exc_info:
            generation_service.poll_generation("u1", "gen-1", None)
        assert exc_info.value.status == 400

    def test_unknown_or_foreign_job_is_404(self, env):
        job_id = self._started(env)
        with pytest.raises(NotFound) as exc_info:
            generation_service.poll_generation("u1", "nope", Models.I2V_STD)
        assert exc_info.value.status == 404

        with pytest.raises(NotFound):
            generation_service.poll_generation("someone-else", job_id, Models.I2V_STD)
        assert env.vendor.poll_calls == []

    def test_vendor_poll_rejection_propagates(self, env):
        job_id = self._started(env)
        env.vendor.poll_result = VendorRejected("Vendor poll failed", vendor_status=404, body="not found")

        with pytest.raises(VendorRejected) as exc_info:
            generation_service.poll_generation("u1", job_id, Models.I2V_STD)
        assert exc_info.value.to_dict()["details"] == "not found"
        assert env.jobs.rows[job_id]["status"] == "processing"
        assert env.ledger.entry_for("u1", "req-1")["status"] == EntryStatus.RESERVED


class TestSweep:

    def test_sweep_expires_stale_jobs_and_refunds(self, env, monkeypatch):
        monkeypatch.setattr(generation_service.RateLimiter, "purge_expired", staticmethod(lambda: 3))
        job_id = generation_service.start_generation(
            "u1", {"request_id": "req-1", "image_url": "https://example.com/cat.png"}
        )["job_id"]
        env.jobs.rows[job_id]["stale"] = True

        result = generation_service.sweep_stale(30)

        assert result == {"expired_jobs": 1, "refunded": 1, "rate_limits_purged": 3}
        assert env.jobs.rows[job_id]["status"] == "failed"
        assert env.ledger.entry_for("u1", "req-1")["status"] == EntryStatus.REFUNDED
        assert env.ledger.balances["u1"] == 30
