"""
Typed service errors.

Every error the services raise on purpose is a ServiceError carrying the
HTTP status and a stable machine-readable code. Routes never build error
responses by hand - error_handlers.register_error_handlers() turns these
into JSON:

    {"ok": false, "code": "INSUFFICIENT_CREDITS", "error": "...", ...details}
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for errors surfaced to API callers."""

    code = "SERVICE_ERROR"
    status = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status: Optional[int] = None,
        retryable: Optional[bool] = None,
        **details: Any,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status
        if retryable is not None:
            self.retryable = retryable
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": False, "code": self.code, "error": self.message}
        if self.retryable:
            payload["retryable"] = True
        payload.update(self.details)
        return payload


# ── Credit ledger ────────────────────────────────────────────
class InsufficientCredits(ServiceError):
    """Balance would go negative."""

    code = "INSUFFICIENT_CREDITS"
    status = 402

    def __init__(self, balance: int, required: int):
        super().__init__(
            f"You need {required} credits but only have {balance} available.",
            currentBalance=balance,
            requiredCredits=required,
            shortfall=max(0, required - balance),
        )
        self.balance = balance
        self.required = required


class DailyCapExceeded(ServiceError):
    """Rolling 24h spend plus this cost would pass the configured cap."""

    code = "DAILY_CAP_EXCEEDED"
    status = 400

    def __init__(self, spent: int, cost: int, cap: int):
        super().__init__(
            f"Daily limit reached: {spent} of {cap} credits used in the last 24 hours.",
            spentToday=spent,
            requiredCredits=cost,
            dailyCap=cap,
        )
        self.spent = spent
        self.cost = cost
        self.cap = cap


class ReservationManaged(ServiceError):
    """Reservation belongs to a generation job; only the job lifecycle finalizes it."""

    code = "RESERVATION_MANAGED"
    status = 409


# ── Vendor ───────────────────────────────────────────────────
class VendorRejected(ServiceError):
    """
    Vendor answered with a non-2xx (or an unusable 2xx).
    The vendor's status code and body are passed through untouched.
    """

    code = "VENDOR_REJECTED"
    status = 400

    def __init__(self, message: str, vendor_status: int = 0, body: Any = None):
        super().__init__(message, status=400)
        self.vendor_status = vendor_status
        self.body = body
        self.details = {"status": vendor_status, "details": body}


class VendorUnavailable(ServiceError):
    """Network failure or timeout talking to the vendor. Safe for the client to retry."""

    code = "VENDOR_UNAVAILABLE"
    status = 503
    retryable = True


# ── Persistence ──────────────────────────────────────────────
class PersistenceFailed(ServiceError):
    """
    Upload or asset record failed after a successful generation.
    Reported as a warning next to a completed job, never as a job failure.
    """

    code = "PERSISTENCE_FAILED"
    status = 502

    def __init__(self, message: str, stage: str = "upload"):
        super().__init__(message, stage=stage)
        self.stage = stage


# ── Request-level ────────────────────────────────────────────
class NotFound(ServiceError):
    """Unknown job id (404) or missing required field (400)."""

    code = "NOT_FOUND"
    status = 404


class RateLimited(ServiceError):
    code = "RATE_LIMITED"
    status = 429
    retryable = True

    def __init__(self, message: str, limit: int, reset_at: int):
        super().__init__(message, limit=limit, resetAt=reset_at)
        self.limit = limit
        self.reset_at = reset_at
