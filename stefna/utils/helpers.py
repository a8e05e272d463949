"""
General helper utilities.

Nothing here depends on Flask, the database or config.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any


def now_s() -> int:
    """Current epoch seconds as int."""
    return int(time.time())


def clamp_int(value: Any, minimum: int, maximum: int, default: int) -> int:
    """Clamp a value to an integer within [minimum, maximum]."""
    if value is None or value == "":
        return default
    try:
        return max(minimum, min(maximum, int(float(value))))
    except (TypeError, ValueError):
        return default


def as_bool(value: Any) -> bool:
    """Interpret JSON/query-string truthiness ("true", "1", True)."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def first_present(data: dict, *keys: str) -> Any:
    """Return the value of the first key whose value is non-empty."""
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def new_request_id() -> str:
    return str(uuid.uuid4())


def truncate_traceback(tb: str, lines: int = 3) -> str:
    """Keep the last few lines of a traceback (the ones that name the failure)."""
    parts = [p for p in (tb or "").strip().splitlines() if p.strip()]
    return "\n".join(parts[-lines:])


# ─────────────────────────────────────────────────────────────
# Structured logging
# ─────────────────────────────────────────────────────────────
_logger = logging.getLogger("stefna.helpers")


def _mask_value(val: Any, max_len: int = 400) -> str:
    try:
        s = json.dumps(val, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        s = str(val)
    if len(s) > max_len:
        return s[:max_len] + "…"
    return s


def _scrub_secrets(data: Any) -> Any:
    if isinstance(data, dict):
        cleaned = {}
        for k, v in data.items():
            key = str(k).lower()
            if any(t in key for t in ("key", "token", "secret", "auth", "signature")):
                cleaned[k] = "***"
            else:
                cleaned[k] = _scrub_secrets(v)
        return cleaned
    if isinstance(data, list):
        return [_scrub_secrets(x) for x in data]
    return data


def log_event(event_name: str, data: dict) -> None:
    """Structured event logging that avoids leaking secrets."""
    try:
        safe_payload = _scrub_secrets(data)
        _logger.info("[event] %s :: %s", event_name, _mask_value(safe_payload))
    except Exception as e:
        _logger.warning("[event] %s :: failed to log (%s)", event_name, e)


def log_db_continue(op: str, err: Exception) -> None:
    """Log DB errors that should not break the request flow."""
    _logger.warning("[DB] CONTINUE: %s failed: %s: %s", op, type(err).__name__, err)
