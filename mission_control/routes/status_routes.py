# mission_control/routes/status_routes.py
import http

from flask import Blueprint, jsonify

from mission_control.systems.admission_system import rate_limited
from mission_control.systems.status import get_backend_status

status_bp = Blueprint("status_bp", __name__)


@status_bp.route("/api/backend-status", methods=["GET"])
@rate_limited("public")
def backend_status_endpoint():
    """Returns the aggregated health status of all backend systems."""
    status = get_backend_status()
    status_code = http.HTTPStatus.OK if status.get("systemHealthy") else http.HTTPStatus.SERVICE_UNAVAILABLE
    return jsonify(status), status_code
