"""
Shared pytest fixtures.

`ledger_db` swaps the ledger's transaction()/query helpers for an in-memory
store that understands exactly the statements ledger_service issues.
Each transaction() snapshots the store and restores it when the block
raises, the way a Postgres rollback would.
"""

from __future__ import annotations

import copy
import itertools
import json
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from stefna.config import config
from stefna.db import DatabaseIntegrityError
from stefna.services import ledger_service, pricing_service

TEST_JWT_SECRET = "test-secret-for-stefna-unit-tests-0123456789"


def make_token(user_id: str = "user-1", secret: str = TEST_JWT_SECRET, **claims) -> str:
    payload = {"sub": user_id, **claims}
    return jwt.encode(payload, secret, algorithm="HS256")


class FakeLedgerStore:
    """Rows for user_credits, credits_ledger, app_config and processing jobs."""

    def __init__(self):
        self.balances = {}          # user_id -> int
        self.entries = []           # list of dicts
        self.app_config = {}        # key -> value
        self.processing = set()     # (user_id, request_id) with a processing job
        self._ids = itertools.count(1)

    def entry_for(self, user_id, request_id):
        for entry in self.entries:
            if entry["user_id"] == user_id and entry["request_id"] == request_id:
                return entry
        return None

    def active_sum(self, user_id):
        return sum(
            e["amount"] for e in self.entries
            if e["user_id"] == user_id and e["status"] in ("reserved", "committed")
        )

    def age_entry(self, user_id, request_id, minutes):
        entry = self.entry_for(user_id, request_id)
        entry["created_at"] = entry["created_at"] - timedelta(minutes=minutes)

    def snapshot(self):
        return copy.deepcopy((self.balances, self.entries, self.app_config, self.processing))

    def restore(self, snap):
        self.balances, self.entries, self.app_config, self.processing = snap


class FakeCursor:
    def __init__(self, store: FakeLedgerStore):
        self.store = store
        self.description = None
        self._rows = []
        self.executed = []

    # ── dispatch ──────────────────────────────────────────────
    def execute(self, sql, params=()):
        self.executed.append(sql)
        handlers = {
            pricing_service.SQL_GET_CONFIG: self._get_config,
            ledger_service.SQL_INIT_BALANCE: self._init_balance,
            ledger_service.SQL_LOCK_BALANCE: self._get_balance,
            ledger_service.SQL_GET_BALANCE: self._get_balance,
            ledger_service.SQL_ADJUST_BALANCE: self._adjust_balance,
            ledger_service.SQL_GET_ENTRY: self._get_entry,
            ledger_service.SQL_LOCK_ENTRY: self._get_entry,
            ledger_service.SQL_INSERT_ENTRY: self._insert_entry,
            ledger_service.SQL_RESOLVE_ENTRY: self._resolve_entry,
            ledger_service.SQL_SPENT_24H: self._spent_24h,
            ledger_service.SQL_STALE_RESERVATIONS: self._stale,
            ledger_service.SQL_RECENT_ENTRIES: self._recent,
        }
        handler = handlers.get(sql)
        if handler is None:
            raise AssertionError(f"Unexpected SQL: {sql[:80]}")
        self._rows = handler(*params)

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        rows, self._rows = self._rows, []
        return rows

    # ── statements ───────────────────────────────────────────
    def _get_config(self, key):
        if key in self.store.app_config:
            return [{"value": self.store.app_config[key]}]
        return []

    def _init_balance(self, user_id, starter):
        if user_id in self.store.balances:
            return []
        self.store.balances[user_id] = starter
        return [{"user_id": user_id}]

    def _get_balance(self, user_id):
        if user_id not in self.store.balances:
            return []
        return [{"user_id": user_id, "balance": self.store.balances[user_id], "updated_at": None}]

    def _adjust_balance(self, delta, user_id):
        new_balance = self.store.balances[user_id] + delta
        if new_balance < 0:
            raise DatabaseIntegrityError("Constraint violation: balance", constraint="user_credits_balance_check")
        self.store.balances[user_id] = new_balance
        return [{"balance": new_balance}]

    def _get_entry(self, user_id, request_id):
        entry = self.store.entry_for(user_id, request_id)
        return [dict(entry)] if entry else []

    def _insert_entry(self, user_id, request_id, action, amount, status, meta):
        if self.store.entry_for(user_id, request_id):
            raise DatabaseIntegrityError("Constraint violation: duplicate", constraint="credits_ledger_user_request_key")
        entry = {
            "id": next(self.store._ids),
            "user_id": user_id,
            "request_id": request_id,
            "action": action,
            "amount": amount,
            "status": status,
            "meta": json.loads(meta),
            "created_at": datetime.now(timezone.utc),
            "resolved_at": None,
        }
        self.store.entries.append(entry)
        return [dict(entry)]

    def _resolve_entry(self, status, meta, entry_id):
        for entry in self.store.entries:
            if entry["id"] == entry_id:
                entry["status"] = status
                entry["meta"] = {**(entry["meta"] or {}), **json.loads(meta)}
                entry["resolved_at"] = datetime.now(timezone.utc)
                return [dict(entry)]
        return []

    def _spent_24h(self, user_id):
        cutoff = datetime.now(timezone.utc) - timedelta(hours=24)
        spent = sum(
            -e["amount"] for e in self.store.entries
            if e["user_id"] == user_id
            and e["amount"] < 0
            and e["status"] in ("reserved", "committed")
            and e["created_at"] > cutoff
        )
        return [{"spent": spent}]

    def _stale(self, minutes, limit):
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
        rows = [
            dict(e) for e in self.store.entries
            if e["status"] == "reserved"
            and e["created_at"] < cutoff
            and (e["user_id"], e["request_id"]) not in self.store.processing
        ]
        rows.sort(key=lambda e: e["created_at"])
        return rows[:limit]

    def _recent(self, user_id, limit):
        rows = [dict(e) for e in self.store.entries if e["user_id"] == user_id]
        rows.sort(key=lambda e: e["created_at"], reverse=True)
        return rows[:limit]


@pytest.fixture
def ledger_db(monkeypatch):
    """In-memory ledger with default credit settings (starter 30, cap 30)."""
    store = FakeLedgerStore()

    @contextmanager
    def fake_transaction():
        snap = store.snapshot()
        cur = FakeCursor(store)
        try:
            yield cur
        except Exception:
            store.restore(snap)
            raise

    def fake_query_one(sql, params=None):
        with fake_transaction() as cur:
            cur.execute(sql, params or ())
            return cur.fetchone()

    def fake_query_all(sql, params=None):
        with fake_transaction() as cur:
            cur.execute(sql, params or ())
            return cur.fetchall()

    monkeypatch.setattr(ledger_service, "transaction", fake_transaction)
    monkeypatch.setattr(ledger_service, "query_one", fake_query_one)
    monkeypatch.setattr(ledger_service, "query_all", fake_query_all)
    monkeypatch.setattr(pricing_service, "USE_DB", False)
    monkeypatch.setattr(config, "STARTER_CREDITS", 30)
    monkeypatch.setattr(config, "DAILY_CAP", 30)
    monkeypatch.setattr(config, "RESERVATION_STALE_MINUTES", 30)
    return store


@pytest.fixture
def auth_config(monkeypatch):
    monkeypatch.setattr(config, "JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setattr(config, "ADMIN_TOKEN", "admin-test-token")
    return config
