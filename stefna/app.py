"""Flask entrypoint.

Builds the app, registers the /api blueprints and the JSON error handlers,
and verifies the database (creating the schema) when DATABASE_URL is set.
"""

from __future__ import annotations

import re

from flask import Flask, g
from flask_cors import CORS

from stefna.config import config
from stefna.db import DatabaseError, USE_DB, init_db


def create_app() -> Flask:
    app = Flask(__name__)

    if config.ALLOW_ALL_ORIGINS:
        origins = [re.compile(r".*")]
    else:
        origins = config.ALLOWED_ORIGINS

    CORS(
        app,
        resources={r"/api/*": {"origins": origins}},
        supports_credentials=False,
        allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-Admin-Token"],
        expose_headers=["Content-Type", "Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
        methods=["GET", "POST", "OPTIONS"],
    )

    @app.before_request
    def _user_default():
        g.user_id = None

    from stefna.routes import register_blueprints
    from stefna.utils.error_handlers import register_error_handlers

    register_blueprints(app)
    register_error_handlers(app)

    config.log_summary()
    for warning in config.validate():
        print(f"[CONFIG] Warning: {warning}")

    # ─────────────────────────────────────────────────────────────
    # Startup: verify the database and ensure the schema exists
    # ─────────────────────────────────────────────────────────────
    if USE_DB:
        try:
            init_db()
        except DatabaseError as e:
            print(f"[APP] Warning: database not ready at startup: {e}")

    return app


if __name__ == "__main__":
    create_app().run(host=config.HOST, port=config.PORT, debug=config.IS_DEV)
