"""Utility helpers for the Stefna backend."""

from .helpers import (
    as_bool,
    clamp_int,
    first_present,
    log_db_continue,
    log_event,
    new_request_id,
    now_s,
    truncate_traceback,
)

__all__ = [
    "as_bool",
    "clamp_int",
    "first_present",
    "log_db_continue",
    "log_event",
    "new_request_id",
    "now_s",
    "truncate_traceback",
]
