"""
Vendor response normalization.

Generation vendors disagree on field names for the same thing:

    job id      generation_id | id | request_id | task_id
    status      status | state
    result url  video_url | content.url | url | video.url
    progress    progress | percent | meta.progress

Every lookup goes through extract_field() with an explicit priority list
and returns a FieldMatch that records which path matched, so call sites
never chain optional lookups themselves.

Normalized states: "processing" | "completed" | "failed"
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

JOB_ID_FIELDS = ("generation_id", "id", "request_id", "task_id")
STATUS_FIELDS = ("status", "state")
RESULT_URL_FIELDS = ("video_url", "content.url", "url", "video.url")
PROGRESS_FIELDS = ("progress", "percent", "meta.progress")
ERROR_FIELDS = ("error", "message", "failure_reason")

STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

_COMPLETED_STATES = frozenset({"completed", "succeeded", "success", "done", "finished"})
_FAILED_STATES = frozenset({"failed", "error", "cancelled", "canceled"})


@dataclass(frozen=True)
class FieldMatch:
    """Result of a priority-ordered field lookup."""

    field: Optional[str]
    value: Any = None

    @property
    def found(self) -> bool:
        return self.field is not None

    def __bool__(self) -> bool:
        return self.found


MISSING = FieldMatch(None)


def _lookup(data: Dict[str, Any], path: str) -> Any:
    node: Any = data
    for part in path.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def extract_field(data: Any, paths: Sequence[str]) -> FieldMatch:
    """
    Return the first path (dotted for nesting) holding a non-empty value.

    Example:
        extract_field({"id": "a", "task_id": "b"}, JOB_ID_FIELDS)
        -> FieldMatch(field="id", value="a")
    """
    if not isinstance(data, dict):
        return MISSING
    for path in paths:
        value = _lookup(data, path)
        if value is None or value == "":
            continue
        if isinstance(value, (dict, list)):
            continue
        return FieldMatch(path, value)
    return MISSING


def extract_job_id(data: Any) -> FieldMatch:
    """Vendor job id, preferring generation_id > id > request_id > task_id."""
    match = extract_field(data, JOB_ID_FIELDS)
    if match:
        return FieldMatch(match.field, str(match.value))
    return match


@dataclass(frozen=True)
class VendorStatus:
    status: str
    result_url: Optional[str] = None
    error: Optional[str] = None
    progress: Optional[int] = None
    raw_state: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (STATUS_COMPLETED, STATUS_FAILED)


def _coerce_progress(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        pct = float(value)
    except (TypeError, ValueError):
        return None
    # Some vendors report 0..1
    if 0 < pct <= 1 and isinstance(value, float):
        pct *= 100
    return max(0, min(100, int(pct)))


def normalize_generation_status(data: Any, raw_text: str = "") -> VendorStatus:
    """
    Map a vendor status payload onto processing / completed / failed.

    - status/state in the failed vocabulary -> failed, error from error/message
      (raw body as last resort)
    - completed vocabulary, or no state at all but a result URL -> completed,
      provided a result URL exists; otherwise failed
    - anything else, including a body that isn't a JSON object -> processing
    """
    if not isinstance(data, dict):
        return VendorStatus(STATUS_PROCESSING)

    result_url = extract_field(data, RESULT_URL_FIELDS)
    state_match = extract_field(data, STATUS_FIELDS)
    state = str(state_match.value).strip().lower() if state_match else ""
    if not state and result_url:
        state = STATUS_COMPLETED

    if state in _FAILED_STATES:
        error = extract_field(data, ERROR_FIELDS)
        message = str(error.value) if error else (raw_text or "Generation failed")
        return VendorStatus(STATUS_FAILED, error=message, raw_state=state)

    if state in _COMPLETED_STATES:
        if not result_url:
            return VendorStatus(STATUS_FAILED, error="No resultUrl in vendor response", raw_state=state)
        return VendorStatus(STATUS_COMPLETED, result_url=str(result_url.value), progress=100, raw_state=state)

    progress = extract_field(data, PROGRESS_FIELDS)
    return VendorStatus(
        STATUS_PROCESSING,
        progress=_coerce_progress(progress.value) if progress else None,
        raw_state=state or None,
    )
