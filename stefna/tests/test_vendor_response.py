"""
Tests for vendor response normalization (field extraction and status mapping).

Run locally:
    python -m pytest stefna/tests/test_vendor_response.py -v
"""

from __future__ import annotations

from stefna.services.vendor_response import (
    JOB_ID_FIELDS,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    extract_field,
    extract_job_id,
    normalize_generation_status,
)


class TestExtractField:

    def test_priority_order_wins(self):
        data = {"task_id": "t", "request_id": "r", "id": "i", "generation_id": "g"}
        match = extract_field(data, JOB_ID_FIELDS)
        assert match.field == "generation_id"
        assert match.value == "g"

    def test_skips_empty_values(self):
        match = extract_field({"generation_id": "", "id": None, "task_id": "t"}, JOB_ID_FIELDS)
        assert match.field == "task_id"

    def test_dotted_paths(self):
        match = extract_field({"content": {"url": "https://x/v.mp4"}}, ("video_url", "content.url"))
        assert match.field == "content.url"
        assert match.value == "https://x/v.mp4"

    def test_missing_is_falsy(self):
        match = extract_field({"other": 1}, JOB_ID_FIELDS)
        assert not match
        assert match.field is None

    def test_non_dict_input(self):
        assert not extract_field("not json", JOB_ID_FIELDS)
        assert not extract_field(None, JOB_ID_FIELDS)

    def test_job_id_is_string(self):
        match = extract_job_id({"id": 12345})
        assert match.value == "12345"
        assert match.field == "id"


class TestNormalizeStatus:

    def test_completed_with_video_url(self):
        status = normalize_generation_status({"status": "completed", "video_url": "https://cdn/v.mp4"})
        assert status.status == STATUS_COMPLETED
        assert status.result_url == "https://cdn/v.mp4"
        assert status.is_terminal

    def test_completed_vocabulary(self):
        for state in ("succeeded", "success", "done", "SUCCEEDED"):
            status = normalize_generation_status({"state": state, "video": {"url": "https://cdn/v.mp4"}})
            assert status.status == STATUS_COMPLETED, state
            assert status.result_url == "https://cdn/v.mp4"

    def test_result_url_priority(self):
        data = {
            "status": "completed",
            "url": "https://cdn/url.mp4",
            "content": {"url": "https://cdn/content.mp4"},
        }
        assert normalize_generation_status(data).result_url == "https://cdn/content.mp4"

    def test_completed_without_url_is_failed(self):
        status = normalize_generation_status({"status": "completed"})
        assert status.status == STATUS_FAILED
        assert status.error == "No resultUrl in vendor response"

    def test_no_state_but_url_is_completed(self):
        status = normalize_generation_status({"video_url": "https://cdn/v.mp4"})
        assert status.status == STATUS_COMPLETED

    def test_failed_error_priority(self):
        status = normalize_generation_status({"status": "failed", "error": "nsfw", "message": "other"})
        assert status.status == STATUS_FAILED
        assert status.error == "nsfw"

        status = normalize_generation_status({"state": "error", "message": "quota"})
        assert status.error == "quota"

    def test_failed_falls_back_to_raw_body(self):
        status = normalize_generation_status({"status": "failed"}, raw_text='{"status":"failed"}')
        assert status.error == '{"status":"failed"}'

    def test_unknown_state_is_processing_with_progress(self):
        status = normalize_generation_status({"status": "queued", "progress": 42})
        assert status.status == STATUS_PROCESSING
        assert status.progress == 42
        assert not status.is_terminal

    def test_nested_progress(self):
        status = normalize_generation_status({"status": "generating", "meta": {"progress": 10}})
        assert status.progress == 10

    def test_unparseable_body_is_processing(self):
        status = normalize_generation_status("<html>502</html>", raw_text="<html>502</html>")
        assert status.status == STATUS_PROCESSING
        assert status.result_url is None
