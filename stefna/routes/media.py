"""
Media routes - the caller's persisted generations.

- GET /api/media?limit=N - newest first
"""

from flask import Blueprint, g, jsonify, request

from stefna.middleware import no_cache, require_user
from stefna.services.asset_service import AssetPersister
from stefna.utils.helpers import clamp_int

bp = Blueprint("media", __name__)


@bp.route("/media", methods=["GET"])
@require_user
@no_cache
def list_media():
    limit = clamp_int(request.args.get("limit"), 1, 200, 50)
    assets = AssetPersister.list_assets(g.user_id, limit=limit)
    return jsonify({"ok": True, "items": assets, "count": len(assets)})
