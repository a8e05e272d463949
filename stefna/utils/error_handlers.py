"""
HTTP Error Handlers
-------------------
Converts everything a request can raise into the JSON error envelope:

    {"ok": false, "code": "...", "error": "...", ...}

- ServiceError subclasses carry their own status/code/details.
- ValueError is a boundary validation failure (400).
- Database connectivity failures are transient (503, retryable).
- Anything else is a 500 with a generic message; the truncated
  traceback goes to the server log only.

Usage:
    from stefna.utils.error_handlers import register_error_handlers
    register_error_handlers(app)
"""

from __future__ import annotations

import traceback
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from stefna.db import DatabaseConnectionError, DatabaseError, DatabaseNotConfiguredError
from stefna.errors import RateLimited, ServiceError
from stefna.utils.helpers import log_event, now_s, truncate_traceback


def make_error_response(code: str, message: str, status: int, details: Optional[Dict[str, Any]] = None):
    payload: Dict[str, Any] = {"ok": False, "code": code, "error": message}
    if details:
        payload.update(details)
    return jsonify(payload), status


def handle_service_error(e: ServiceError):
    if e.status >= 500:
        print(f"[ERROR] {request.method} {request.path} -> {e.status} {e.code}: {e.message}")
    log_event("service_error", {"path": request.path, "code": e.code, "status": e.status})
    response = jsonify(e.to_dict())
    if isinstance(e, RateLimited):
        response.headers["Retry-After"] = str(max(1, e.reset_at - now_s()))
        response.headers["X-RateLimit-Limit"] = str(e.limit)
        response.headers["X-RateLimit-Remaining"] = "0"
    return response, e.status


def handle_value_error(e: ValueError):
    return make_error_response("INVALID_REQUEST", str(e), 400)


def handle_database_error(e: DatabaseError):
    print(f"[ERROR] {request.method} {request.path} database error: {type(e).__name__}: {e}")
    if isinstance(e, (DatabaseConnectionError, DatabaseNotConfiguredError)):
        return make_error_response(
            "DATABASE_UNAVAILABLE",
            "Database temporarily unavailable, please retry.",
            503,
            {"retryable": True},
        )
    return make_error_response("DATABASE_ERROR", "Internal server error", 500)


def handle_http_exception(e: HTTPException):
    code = (e.name or "error").upper().replace(" ", "_")
    return make_error_response(code, e.description or e.name, e.code or 500)


def handle_internal_error(e: Exception):
    tb = truncate_traceback(traceback.format_exc())
    print(f"[ERROR] {request.method} {request.path} unhandled {type(e).__name__}: {e}\n{tb}")
    return make_error_response("INTERNAL_ERROR", "Internal server error", 500)


def register_error_handlers(app: Flask) -> None:
    app.register_error_handler(ServiceError, handle_service_error)
    app.register_error_handler(ValueError, handle_value_error)
    app.register_error_handler(DatabaseError, handle_database_error)
    app.register_error_handler(HTTPException, handle_http_exception)
    app.register_error_handler(Exception, handle_internal_error)
