# mission_control/routes/api_routes.py
import http
from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify

from mission_control.systems.admission_system import rate_limited
from mission_control.systems.auth_system import require_auth

api_bp = Blueprint("api_bp", __name__, url_prefix="/api")

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


@api_bp.route("/health", methods=["GET"])
@rate_limited()
@require_auth
def api_health():
    """Authenticated health check, gated by the caller's quota tier."""
    return jsonify({
        "status": "healthy",
        "service": current_app.config.get("SERVICE_NAME", "mission-control-hq"),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }), http.HTTPStatus.OK


@api_bp.route("/<path:path>", methods=ALL_METHODS)
@rate_limited()
@require_auth
def not_implemented(path):
    return jsonify({"error": "API endpoint not implemented yet"}), http.HTTPStatus.NOT_IMPLEMENTED
