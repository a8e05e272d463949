"""
Health check routes.
"""

from __future__ import annotations

import psycopg
from flask import Blueprint, jsonify

from stefna.config import config
from stefna.db import DatabaseError, USE_DB, get_conn
from stefna.services.aiml_service import check_aiml_configured

bp = Blueprint("health", __name__)


@bp.route("/health", methods=["GET"])
def health():
    aiml_ok, _ = check_aiml_configured()
    payload = {"ok": True, "db": USE_DB, "vendor": aiml_ok}
    if config.IS_DEV:
        payload["config"] = config.to_dict()
    return jsonify(payload)


@bp.route("/db-check", methods=["GET"])
def db_check():
    if not USE_DB:
        return jsonify({"ok": False, "error": "db_disabled"}), 503
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                _ = cur.fetchone()
        return jsonify({"ok": True, "db": "connected"})
    except (DatabaseError, psycopg.Error) as e:
        print(f"[DB] db_check failed: {e}")
        return jsonify({"ok": False, "error": "db_query_failed"}), 503
