"""
AIML API HTTP Client (Kling image-to-video).

Handles authentication, headers, error parsing, and retries for the
AIML generation API.

Base URL: https://api.aimlapi.com
Auth:     Authorization: Bearer <AIML_API_KEY>

Endpoints used:
  POST /v2/generate/video/kling/generation                   → create generation
  GET  /v2/generate/video/kling/generation?generation_id=... → get generation status

Retry policy:
  - create: exactly one attempt. A retried POST can start (and bill) a
    second vendor job.
  - status: bounded retries with exponential backoff on connection errors
    and 5xx.

Non-2xx answers raise VendorRejected carrying the vendor status code and the
body as the vendor sent it (parsed JSON when possible, raw text otherwise).
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional, Tuple

import requests
from requests.exceptions import RequestException

from stefna.config import config
from stefna.errors import ServiceError, VendorRejected, VendorUnavailable


# ── Constants ────────────────────────────────────────────────
GENERATION_PATH = "/v2/generate/video/kling/generation"
BASE_RETRY_DELAY = 1        # exponential backoff base (seconds)


class Models:
    """Kling model variants selectable by tier."""
    I2V_STD = "kling-video/v1.6/standard/image-to-video"
    I2V_PRO = "kling-video/v1.6/pro/image-to-video"


VENDOR_TAG = "kling-v1.6-i2v"


def model_for_tier(tier: Optional[str]) -> str:
    return Models.I2V_PRO if (tier or "").strip().lower() == "pro" else Models.I2V_STD


# ── Exceptions ───────────────────────────────────────────────
class AimlConfigError(ServiceError):
    """Raised when AIML is not configured (missing API key)."""

    code = "VENDOR_NOT_CONFIGURED"
    status = 503

    def __init__(self, message: str = "AIML_API_KEY is not set"):
        super().__init__(message)


# ── Internal helpers ─────────────────────────────────────────
def _get_api_key() -> str:
    if not config.AIML_API_KEY:
        raise AimlConfigError()
    return config.AIML_API_KEY


def _headers() -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {_get_api_key()}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }


def _timeouts() -> Tuple[int, int]:
    return (config.AIML_CONNECT_TIMEOUT, config.AIML_READ_TIMEOUT)


def _parse_body(r: requests.Response) -> Any:
    """JSON body when the vendor sent JSON, raw text otherwise."""
    try:
        return r.json()
    except ValueError:
        return r.text


def _parse_error(r: requests.Response, what: str) -> VendorRejected:
    """Convert a non-2xx response into VendorRejected, body untouched."""
    return VendorRejected(what, vendor_status=r.status_code, body=_parse_body(r))


# ── Public API ───────────────────────────────────────────────
def check_aiml_configured() -> Tuple[bool, Optional[str]]:
    """Check whether AIML API key is set.  Returns (ok, error_msg)."""
    try:
        _get_api_key()
        return True, None
    except AimlConfigError as e:
        return False, e.message


def aiml_start_generation(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create a generation. Single attempt, never retried.

    Returns:
        Parsed JSON response (job id field name varies, see vendor_response)

    Raises:
        AimlConfigError, VendorRejected, VendorUnavailable
    """
    url = f"{config.AIML_API_URL}{GENERATION_PATH}"
    headers = _headers()

    try:
        r = requests.post(url, json=payload, headers=headers, timeout=_timeouts())
    except RequestException as e:
        print(f"[AIML] POST {GENERATION_PATH} connection error: {e}")
        raise VendorUnavailable(f"Vendor unreachable: {type(e).__name__}") from e

    if not r.ok:
        print(f"[AIML] POST {GENERATION_PATH} rejected: HTTP {r.status_code} {r.text[:300]}")
        raise _parse_error(r, "vendor_start_failed")

    data = _parse_body(r)
    if not isinstance(data, dict):
        raise VendorRejected("Vendor returned a non-JSON body", vendor_status=r.status_code, body=data)
    return data


def aiml_get_generation(generation_id: str, max_retries: Optional[int] = None) -> Tuple[Any, str]:
    """
    Fetch generation status, retrying connection errors and 5xx.

    Returns:
        (parsed_body, raw_text) - the body may not be a dict when the vendor
        misbehaves; vendor_response.normalize_generation_status copes with that.

    Raises:
        AimlConfigError, VendorRejected, VendorUnavailable
    """
    if max_retries is None:
        max_retries = config.AIML_POLL_RETRIES
    url = f"{config.AIML_API_URL}{GENERATION_PATH}"
    headers = _headers()
    headers.pop("Content-Type", None)  # no body on GET

    for attempt in range(1, max_retries + 2):  # 1-indexed, +1 for initial try
        try:
            r = requests.get(
                url,
                params={"generation_id": generation_id},
                headers=headers,
                timeout=_timeouts(),
            )
        except RequestException as e:
            if attempt > max_retries:
                raise VendorUnavailable(f"Vendor unreachable: {type(e).__name__}") from e
            delay = BASE_RETRY_DELAY * (2 ** (attempt - 1))
            print(f"[AIML] GET status {generation_id} connection error, retry {attempt}/{max_retries} after {delay}s")
            time.sleep(delay)
            continue

        if r.ok:
            return _parse_body(r), r.text

        if r.status_code >= 500 and attempt <= max_retries:
            delay = BASE_RETRY_DELAY * (2 ** (attempt - 1))
            print(f"[AIML] GET status {generation_id} HTTP {r.status_code}, retry {attempt}/{max_retries} after {delay}s")
            time.sleep(delay)
            continue

        raise _parse_error(r, "Vendor poll failed")

    # Loop always returns or raises
    raise VendorUnavailable("Vendor poll retries exhausted")
