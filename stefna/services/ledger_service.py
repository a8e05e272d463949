"""
Credit Ledger - Per-user balance with reserve / finalize semantics.

Flow:
1. reserve_credits()  - Debit a `reserved` entry before calling the vendor
2. finalize_credits() - `commit` when the job completes, `refund` when it fails
3. refund_stale_reservations() - Sweep reservations nobody finalized

Rules:
- Exactly one ledger entry per (user_id, request_id), regardless of retries
- user_credits.balance == SUM(amount) over entries that are reserved or committed
- The balance row is locked (FOR UPDATE) before any read that decides a write,
  so concurrent reservations from one user serialize
- Finalize is idempotent: a missing or already-resolved entry is a no-op

Statuses:
- reserved:  Credits debited, operation in flight
- committed: Operation succeeded, debit is final
- refunded:  Operation failed, debit credited back
"""

import json
from typing import Any, Dict, List, Optional

from stefna.config import config
from stefna.db import Tables, fetch_all, fetch_one, fetch_scalar, query_all, query_one, transaction
from stefna.errors import DailyCapExceeded, InsufficientCredits
from stefna.services.pricing_service import Actions, PricingService, normalize_action


class EntryStatus:
    """Valid ledger entry statuses."""
    RESERVED = "reserved"
    COMMITTED = "committed"
    REFUNDED = "refunded"


class Outcome:
    COMMIT = "commit"
    REFUND = "refund"


_OUTCOME_TO_STATUS = {
    Outcome.COMMIT: EntryStatus.COMMITTED,
    Outcome.REFUND: EntryStatus.REFUNDED,
}


# ─────────────────────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────────────────────
SQL_INIT_BALANCE = f"""
    INSERT INTO {Tables.USER_CREDITS} (user_id, balance, created_at, updated_at)
    VALUES (%s, %s, NOW(), NOW())
    ON CONFLICT (user_id) DO NOTHING
    RETURNING user_id
"""

SQL_LOCK_BALANCE = f"""
    SELECT user_id, balance
    FROM {Tables.USER_CREDITS}
    WHERE user_id = %s
    FOR UPDATE
"""

SQL_GET_BALANCE = f"""
    SELECT user_id, balance, updated_at
    FROM {Tables.USER_CREDITS}
    WHERE user_id = %s
"""

SQL_ADJUST_BALANCE = f"""
    UPDATE {Tables.USER_CREDITS}
    SET balance = balance + %s, updated_at = NOW()
    WHERE user_id = %s
    RETURNING balance
"""

SQL_GET_ENTRY = f"""
    SELECT id, user_id, request_id, action, amount, status, meta, created_at, resolved_at
    FROM {Tables.CREDITS_LEDGER}
    WHERE user_id = %s AND request_id = %s
"""

SQL_LOCK_ENTRY = SQL_GET_ENTRY.rstrip() + "\n    FOR UPDATE\n"

SQL_INSERT_ENTRY = f"""
    INSERT INTO {Tables.CREDITS_LEDGER}
    (user_id, request_id, action, amount, status, meta, created_at)
    VALUES (%s, %s, %s, %s, %s, %s::jsonb, NOW())
    RETURNING id, user_id, request_id, action, amount, status, meta, created_at, resolved_at
"""

SQL_RESOLVE_ENTRY = f"""
    UPDATE {Tables.CREDITS_LEDGER}
    SET status = %s, resolved_at = NOW(),
        meta = COALESCE(meta, '{{}}'::jsonb) || %s::jsonb
    WHERE id = %s
    RETURNING id, user_id, request_id, action, amount, status, meta, created_at, resolved_at
"""

# Rolling 24h spend: debits that are still in flight or final
SQL_SPENT_24H = f"""
    SELECT COALESCE(SUM(-amount), 0) AS spent
    FROM {Tables.CREDITS_LEDGER}
    WHERE user_id = %s
      AND amount < 0
      AND status IN ('reserved', 'committed')
      AND created_at > NOW() - INTERVAL '24 hours'
"""

SQL_STALE_RESERVATIONS = f"""
    SELECT l.user_id, l.request_id, l.amount, l.created_at
    FROM {Tables.CREDITS_LEDGER} l
    WHERE l.status = 'reserved'
      AND l.created_at < NOW() - make_interval(mins => %s)
      AND NOT EXISTS (
          SELECT 1 FROM {Tables.GENERATION_JOBS} j
          WHERE j.user_id = l.user_id
            AND j.request_id = l.request_id
            AND j.status = 'processing'
      )
    ORDER BY l.created_at
    LIMIT %s
"""

SQL_RECENT_ENTRIES = f"""
    SELECT id, user_id, request_id, action, amount, status, meta, created_at, resolved_at
    FROM {Tables.CREDITS_LEDGER}
    WHERE user_id = %s
    ORDER BY created_at DESC
    LIMIT %s
"""


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"amount must be a positive integer, got {amount!r}")
    return amount


class CreditLedger:
    """
    Service for the credit ledger.

    All mutating operations run in a single transaction that holds the
    user's balance row lock for its whole duration.
    """

    # ─────────────────────────────────────────────────────────────
    # Read Operations
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def get_balance(user_id: str) -> int:
        """
        Current balance. A user who never touched the ledger reports the
        starter grant they will receive on first use.
        """
        row = query_one(SQL_GET_BALANCE, (user_id,))
        if not row:
            return PricingService.get_starter_credits()
        return int(row["balance"])

    @staticmethod
    def get_entry(user_id: str, request_id: str) -> Optional[Dict[str, Any]]:
        row = query_one(SQL_GET_ENTRY, (user_id, request_id))
        return CreditLedger._format_entry(row) if row else None

    @staticmethod
    def get_recent_entries(user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        rows = query_all(SQL_RECENT_ENTRIES, (user_id, limit))
        return [CreditLedger._format_entry(r) for r in rows]

    @staticmethod
    def get_daily_usage(user_id: str) -> Dict[str, int]:
        """Rolling 24h spend against the cap (cap <= 0 means unlimited)."""
        with transaction() as cur:
            cap = PricingService.get_daily_cap(cur=cur)
            cur.execute(SQL_SPENT_24H, (user_id,))
            spent = int(fetch_scalar(cur) or 0)
        remaining = max(0, cap - spent) if cap > 0 else None
        return {"spent": spent, "cap": cap, "remaining": remaining}

    @staticmethod
    def daily_cap_check(user_id: str, cost: int) -> bool:
        """
        Read-only: True when spending `cost` now would stay within the cap.
        Does not lock or write anything.
        """
        cost = _validate_amount(cost)
        usage = CreditLedger.get_daily_usage(user_id)
        if usage["cap"] <= 0:
            return True
        return usage["spent"] + cost <= usage["cap"]

    # ─────────────────────────────────────────────────────────────
    # Write Operations
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def _ensure_account(cur, user_id: str) -> None:
        """
        Create the balance row on first touch, together with the committed
        starter grant entry that backs it.
        """
        starter = PricingService.get_starter_credits(cur=cur)
        cur.execute(SQL_INIT_BALANCE, (user_id, max(0, starter)))
        created = fetch_one(cur)
        if created and starter > 0:
            cur.execute(
                SQL_INSERT_ENTRY,
                (
                    user_id,
                    f"starter:{user_id}",
                    Actions.STARTER_GRANT,
                    starter,
                    EntryStatus.COMMITTED,
                    json.dumps({"reason": "starter"}),
                ),
            )
            print(f"[LEDGER] New account user={user_id} starter_credits={starter}")

    @staticmethod
    def reserve_credits(
        user_id: str,
        request_id: str,
        action: str,
        amount: int,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Reserve credits for an operation identified by request_id.

        Args:
            user_id: The user's id (from the verified token)
            request_id: Client-generated key, unique per attempted operation
            action: Action tag (see pricing_service.ALLOWED_ACTIONS)
            amount: Positive number of credits to hold
            meta: Extra audit data stored on the entry

        Returns:
            {
                "entry": {...},
                "balance": balance_after,
                "is_existing": True if this request_id was already reserved
            }

        Raises:
            ValueError: invalid amount, action or request_id
            InsufficientCredits: balance - amount < 0
            DailyCapExceeded: rolling 24h spend + amount > daily cap
        """
        amount = _validate_amount(amount)
        action = normalize_action(action)
        if not request_id:
            raise ValueError("request_id is required")

        with transaction() as cur:
            CreditLedger._ensure_account(cur, user_id)

            # 1. Lock the balance row; concurrent reservations for this user wait here
            cur.execute(SQL_LOCK_BALANCE, (user_id,))
            account = fetch_one(cur)
            balance = int(account["balance"]) if account else 0

            # 2. Idempotency: one entry per (user, request)
            cur.execute(SQL_GET_ENTRY, (user_id, request_id))
            existing = fetch_one(cur)
            if existing:
                print(f"[LEDGER] Reserve replay user={user_id} request={request_id} status={existing['status']}")
                return {
                    "entry": CreditLedger._format_entry(existing),
                    "balance": balance,
                    "is_existing": True,
                }

            # 3. Balance
            if balance - amount < 0:
                print(f"[LEDGER] REJECTED insufficient user={user_id} need={amount} have={balance}")
                raise InsufficientCredits(balance=balance, required=amount)

            # 4. Daily cap
            cap = PricingService.get_daily_cap(cur=cur)
            if cap > 0:
                cur.execute(SQL_SPENT_24H, (user_id,))
                spent = int(fetch_scalar(cur) or 0)
                if spent + amount > cap:
                    print(f"[LEDGER] REJECTED daily cap user={user_id} spent={spent} cost={amount} cap={cap}")
                    raise DailyCapExceeded(spent=spent, cost=amount, cap=cap)

            # 5. Debit
            cur.execute(
                SQL_INSERT_ENTRY,
                (user_id, request_id, action, -amount, EntryStatus.RESERVED, json.dumps(meta or {})),
            )
            entry = fetch_one(cur)
            cur.execute(SQL_ADJUST_BALANCE, (-amount, user_id))
            new_balance = int(fetch_scalar(cur))

        print(f"[LEDGER] Reserved user={user_id} request={request_id} action={action} amount={amount} balance={new_balance}")
        return {
            "entry": CreditLedger._format_entry(entry),
            "balance": new_balance,
            "is_existing": False,
        }

    @staticmethod
    def finalize_credits(
        user_id: str,
        request_id: str,
        outcome: str,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Resolve a reservation.

        IDEMPOTENT: safe to call repeatedly (poller and sweep may both call it).
        - No entry for (user, request): was_noop=True, not_found=True
        - Entry already committed/refunded: was_noop=True, previous_status set

        Args:
            outcome: "commit" keeps the debit, "refund" credits it back

        Returns:
            {"entry": {...} | None, "balance": int | None, "was_noop": bool,
             "not_found": bool, "previous_status": str | None}
        """
        if outcome not in _OUTCOME_TO_STATUS:
            raise ValueError(f"outcome must be 'commit' or 'refund', got {outcome!r}")

        with transaction() as cur:
            cur.execute(SQL_LOCK_BALANCE, (user_id,))
            account = fetch_one(cur)
            if not account:
                return CreditLedger._noop(None, None)
            balance = int(account["balance"])

            cur.execute(SQL_LOCK_ENTRY, (user_id, request_id))
            entry = fetch_one(cur)
            if not entry:
                return CreditLedger._noop(None, balance)
            if entry["status"] != EntryStatus.RESERVED:
                return CreditLedger._noop(entry, balance)

            new_status = _OUTCOME_TO_STATUS[outcome]
            cur.execute(
                SQL_RESOLVE_ENTRY,
                (new_status, json.dumps({"finalize_reason": reason or outcome}), entry["id"]),
            )
            updated = fetch_one(cur)

            if outcome == Outcome.REFUND:
                cur.execute(SQL_ADJUST_BALANCE, (abs(int(entry["amount"])), user_id))
                balance = int(fetch_scalar(cur))

        print(f"[LEDGER] Finalized user={user_id} request={request_id} outcome={outcome} balance={balance}")
        return {
            "entry": CreditLedger._format_entry(updated),
            "balance": balance,
            "was_noop": False,
            "not_found": False,
            "previous_status": EntryStatus.RESERVED,
        }

    @staticmethod
    def grant_credits(user_id: str, amount: int, request_id: str, reason: str = "grant") -> Dict[str, Any]:
        """
        Add credits (admin top-up). Idempotent on request_id.
        """
        amount = _validate_amount(amount)
        with transaction() as cur:
            CreditLedger._ensure_account(cur, user_id)
            cur.execute(SQL_LOCK_BALANCE, (user_id,))
            balance = int(fetch_one(cur)["balance"])

            cur.execute(SQL_GET_ENTRY, (user_id, request_id))
            existing = fetch_one(cur)
            if existing:
                return {"entry": CreditLedger._format_entry(existing), "balance": balance, "is_existing": True}

            cur.execute(
                SQL_INSERT_ENTRY,
                (user_id, request_id, Actions.GRANT, amount, EntryStatus.COMMITTED, json.dumps({"reason": reason})),
            )
            entry = fetch_one(cur)
            cur.execute(SQL_ADJUST_BALANCE, (amount, user_id))
            balance = int(fetch_scalar(cur))

        print(f"[LEDGER] Granted user={user_id} amount={amount} reason={reason} balance={balance}")
        return {"entry": CreditLedger._format_entry(entry), "balance": balance, "is_existing": False}

    @staticmethod
    def refund_stale_reservations(max_age_minutes: Optional[int] = None, limit: int = 500) -> int:
        """
        Refund reservations older than the window that no processing job
        still depends on. Returns the number actually refunded.
        """
        if max_age_minutes is None:
            max_age_minutes = config.RESERVATION_STALE_MINUTES
        stale = query_all(SQL_STALE_RESERVATIONS, (max_age_minutes, limit))

        refunded = 0
        for row in stale:
            result = CreditLedger.finalize_credits(
                row["user_id"], row["request_id"], Outcome.REFUND, reason="stale"
            )
            if not result["was_noop"]:
                refunded += 1

        if refunded:
            print(f"[LEDGER] Sweep refunded {refunded}/{len(stale)} stale reservations")
        return refunded

    # ─────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def _noop(entry: Optional[Dict[str, Any]], balance: Optional[int]) -> Dict[str, Any]:
        return {
            "entry": CreditLedger._format_entry(entry) if entry else None,
            "balance": balance,
            "was_noop": True,
            "not_found": entry is None,
            "previous_status": entry["status"] if entry else None,
        }

    @staticmethod
    def _format_entry(entry: Dict[str, Any]) -> Dict[str, Any]:
        """Format ledger entry for API response."""
        created_at = entry.get("created_at")
        resolved_at = entry.get("resolved_at")
        return {
            "id": str(entry["id"]),
            "user_id": entry["user_id"],
            "request_id": entry["request_id"],
            "action": entry["action"],
            "amount": int(entry["amount"]),
            "status": entry["status"],
            "owner": (entry.get("meta") or {}).get("owner"),
            "created_at": created_at.isoformat() if hasattr(created_at, "isoformat") else created_at,
            "resolved_at": resolved_at.isoformat() if hasattr(resolved_at, "isoformat") else resolved_at,
        }


__all__ = ["CreditLedger", "EntryStatus", "Outcome"]
