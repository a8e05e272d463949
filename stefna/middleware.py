"""
Middleware for Stefna routes.

Provides decorators for bearer-token auth, admin auth and cache headers.

Usage:
    from stefna.middleware import require_user, no_cache

    @bp.route("/credits/balance")
    @require_user
    @no_cache
    def balance():
        # g.user_id and g.token_claims are available
        return jsonify({"user_id": g.user_id})
"""

import hmac
from functools import wraps
from typing import Any, Dict, Optional

import jwt
from flask import g, jsonify, make_response, request

from stefna.config import config

# Claim names identity providers use for the subject, in priority order
USER_ID_CLAIMS = ("sub", "user_id", "uid", "id", "userId")


def _unauthorized(code: str, message: str, status: int = 401):
    return jsonify({"ok": False, "code": code, "error": message}), status


def get_bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if not header.lower().startswith("bearer "):
        return None
    token = header[7:].strip()
    return token or None


def decode_user_token(token: str) -> Dict[str, Any]:
    """
    Verify an HS256 user token.

    Raises:
        jwt.InvalidTokenError (ExpiredSignatureError is a subclass)
    """
    return jwt.decode(
        token,
        config.JWT_SECRET,
        algorithms=["HS256"],
        leeway=config.JWT_LEEWAY_SECONDS,
        options={"verify_aud": False},
    )


def user_id_from_claims(claims: Dict[str, Any]) -> Optional[str]:
    for claim in USER_ID_CLAIMS:
        value = claims.get(claim)
        if value not in (None, ""):
            return str(value)
    return None


def no_cache(f):
    """
    Decorator that adds Cache-Control headers to prevent caching.

    Use for per-user endpoints like /api/credits/*, /api/poll-gen.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        response = make_response(f(*args, **kwargs))
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
        response.headers["Pragma"] = "no-cache"
        response.headers["Expires"] = "0"
        return response

    return decorated


def require_user(f):
    """
    Decorator that requires a valid bearer token.
    Returns 401 for a missing, malformed, expired or badly signed token.

    Sets on g:
        - g.user_id: The user id (first present of sub/user_id/uid/id/userId)
        - g.token_claims: The verified claims
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        if not config.JWT_SECRET:
            print("[MIDDLEWARE] require_user: JWT_SECRET not configured")
            return _unauthorized("AUTH_NOT_CONFIGURED", "Authentication is not configured", 503)

        token = get_bearer_token()
        if not token:
            return _unauthorized("UNAUTHORIZED", "Missing bearer token")

        try:
            claims = decode_user_token(token)
        except jwt.ExpiredSignatureError:
            return _unauthorized("TOKEN_EXPIRED", "Token expired")
        except jwt.InvalidTokenError as e:
            print(f"[MIDDLEWARE] require_user: invalid token on {request.path}: {type(e).__name__}")
            return _unauthorized("INVALID_TOKEN", "Invalid token")

        user_id = user_id_from_claims(claims)
        if not user_id:
            return _unauthorized("INVALID_TOKEN", "Token has no user id claim")

        g.user_id = user_id
        g.token_claims = claims
        return f(*args, **kwargs)

    return decorated


def require_admin(f):
    """
    Decorator that requires the X-Admin-Token header.
    Returns 503 if no admin token is configured, 403 on a wrong token.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        if not config.ADMIN_TOKEN:
            return _unauthorized("ADMIN_NOT_CONFIGURED", "Admin authentication is not configured", 503)

        admin_token = request.headers.get("X-Admin-Token", "")
        if not admin_token:
            return _unauthorized("UNAUTHORIZED", "Admin token required")
        if not hmac.compare_digest(admin_token, config.ADMIN_TOKEN):
            return _unauthorized("INVALID_ADMIN_TOKEN", "Invalid admin token", 403)

        g.admin_auth_method = "token"
        return f(*args, **kwargs)

    return decorated
