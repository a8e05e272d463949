"""
/api/credits routes - Credit reservation, finalization and balance.

Handles:
- POST /api/credits/reserve    - Hold credits for a paid action (idempotent on request_id)
- POST /api/credits/finalize   - Commit or refund a reservation (idempotent)
- GET  /api/credits/balance    - Balance, rolling 24h usage, prices and recent entries
- GET  /api/credits/daily-cap  - Read-only check against the daily cap
- GET  /api/credits/reservation/<request_id> - One ledger entry of the caller
- POST /api/credits/sweep      - Admin: expire stale jobs, refund stale reservations
"""

from flask import Blueprint, g, jsonify, request

from stefna.errors import NotFound, ReservationManaged
from stefna.middleware import no_cache, require_admin, require_user
from stefna.services import generation_service
from stefna.services.ledger_service import CreditLedger, Outcome
from stefna.services.pricing_service import DEFAULT_ACTION, PricingService
from stefna.utils.helpers import first_present

bp = Blueprint("credits", __name__)

# Wire values accepted for the finalize outcome
_OUTCOME_ALIASES = {
    "commit": Outcome.COMMIT,
    "committed": Outcome.COMMIT,
    "refund": Outcome.REFUND,
    "refunded": Outcome.REFUND,
}


def _parse_positive_int(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{field} must be a positive integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be a positive integer")
    if parsed <= 0 or (isinstance(value, float) and value != parsed):
        raise ValueError(f"{field} must be a positive integer")
    return parsed


def _client_meta(meta):
    if not isinstance(meta, dict):
        return None
    # "owner" is reserved for server-side reservations
    return {k: v for k, v in meta.items() if k != "owner"}


# ─────────────────────────────────────────────────────────────────────────────
# POST /api/credits/reserve
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/reserve", methods=["POST"])
@require_user
def reserve():
    """
    Reserve credits.

    Request body:
    {
        "cost": 2,                 # or "amount"
        "action": "image.gen",     # or "intent"
        "request_id": "uuid"       # or "requestId"
    }

    Response (200):
    {"ok": true, "entry": {...}, "balance": 28, "is_existing": false}

    Response (402): INSUFFICIENT_CREDITS with currentBalance/requiredCredits
    Response (400): DAILY_CAP_EXCEEDED, INVALID_REQUEST
    """
    body = request.get_json(silent=True) or {}
    raw_cost = first_present(body, "cost", "amount")
    if raw_cost is None:
        raise ValueError("cost is required")
    cost = _parse_positive_int(raw_cost, "cost")
    action = first_present(body, "action", "intent") or DEFAULT_ACTION
    request_id = first_present(body, "request_id", "requestId")
    if not request_id:
        raise ValueError("request_id is required")

    result = CreditLedger.reserve_credits(
        g.user_id,
        str(request_id),
        str(action),
        cost,
        meta=_client_meta(body.get("meta")),
    )
    return jsonify({"ok": True, **result})


# ─────────────────────────────────────────────────────────────────────────────
# POST /api/credits/finalize
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/finalize", methods=["POST"])
@require_user
def finalize():
    """
    Finalize a reservation.

    Request body:
    {"request_id": "uuid", "disposition": "commit" | "refund"}

    A missing or already-resolved reservation answers 200 with was_noop=true.
    Reservations held by a generation job answer 409 RESERVATION_MANAGED.
    """
    body = request.get_json(silent=True) or {}
    request_id = first_present(body, "request_id", "requestId")
    if not request_id:
        raise ValueError("request_id is required")
    raw_outcome = str(first_present(body, "disposition", "outcome") or "").strip().lower()
    outcome = _OUTCOME_ALIASES.get(raw_outcome)
    if outcome is None:
        raise ValueError("disposition must be 'commit' or 'refund'")

    entry = CreditLedger.get_entry(g.user_id, str(request_id))
    if entry and entry["owner"] == generation_service.RESERVATION_OWNER:
        print(f"[CREDITS] REJECTED client finalize of job reservation user={g.user_id} request={request_id}")
        raise ReservationManaged(
            "This reservation is finalized by its generation job",
            request_id=str(request_id),
        )

    result = CreditLedger.finalize_credits(
        g.user_id,
        str(request_id),
        outcome,
        reason=body.get("reason"),
    )
    return jsonify({"ok": True, **result})


# ─────────────────────────────────────────────────────────────────────────────
# GET /api/credits/balance
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/balance", methods=["GET"])
@require_user
@no_cache
def balance():
    balance_value = CreditLedger.get_balance(g.user_id)
    usage = CreditLedger.get_daily_usage(g.user_id)
    print(f"[CREDITS] Balance fetch: user={g.user_id}, balance={balance_value}, spent_24h={usage['spent']}")
    return jsonify({
        "ok": True,
        "user_id": g.user_id,
        "balance": balance_value,
        "daily": usage,
        "prices": PricingService.get_price_table(),
        "recent": CreditLedger.get_recent_entries(g.user_id, limit=10),
    })


# ─────────────────────────────────────────────────────────────────────────────
# GET /api/credits/daily-cap?cost=N
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/daily-cap", methods=["GET"])
@require_user
@no_cache
def daily_cap():
    cost = _parse_positive_int(request.args.get("cost", "1"), "cost")
    allowed = CreditLedger.daily_cap_check(g.user_id, cost)
    return jsonify({"ok": True, "allowed": allowed, "cost": cost})


# ─────────────────────────────────────────────────────────────────────────────
# GET /api/credits/reservation/<request_id>
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/reservation/<request_id>", methods=["GET"])
@require_user
@no_cache
def reservation(request_id):
    entry = CreditLedger.get_entry(g.user_id, request_id)
    if entry is None:
        raise NotFound("Unknown reservation", code="RESERVATION_NOT_FOUND", status=404, request_id=request_id)
    return jsonify({"ok": True, "entry": entry})


# ─────────────────────────────────────────────────────────────────────────────
# POST /api/credits/sweep (admin)
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/sweep", methods=["POST"])
@require_admin
def sweep():
    body = request.get_json(silent=True) or {}
    max_age = body.get("max_age_minutes")
    if max_age is not None:
        max_age = _parse_positive_int(max_age, "max_age_minutes")
    result = generation_service.sweep_stale(max_age)
    print(f"[CREDITS] Sweep: expired_jobs={result['expired_jobs']} refunded={result['refunded']}")
    return jsonify({"ok": True, **result})
