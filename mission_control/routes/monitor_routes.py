# mission_control/routes/monitor_routes.py
import http

from flask import Blueprint, jsonify, request

from mission_control.systems.admission_system import rate_limited
from mission_control.systems.auth_system import require_auth
from mission_control.systems.health_monitor import health_monitor

monitor_bp = Blueprint("monitor_bp", __name__, url_prefix="/api/monitor")


@monitor_bp.route("/check", methods=["GET"])
@rate_limited("authenticated")
@require_auth
def manual_check():
    """Checks a heartbeat URL on demand without touching stored history."""
    target = request.args.get("target")
    if not target:
        return jsonify({"error": "Missing target parameter"}), http.HTTPStatus.BAD_REQUEST

    result = health_monitor.check_heartbeat(target)
    status_code = http.HTTPStatus.OK if result.success else http.HTTPStatus.SERVICE_UNAVAILABLE
    return jsonify(result.model_dump(exclude_none=True)), status_code


@monitor_bp.route("/history", methods=["GET"])
@rate_limited("authenticated")
@require_auth
def history():
    """Stored check history for a target host."""
    target = request.args.get("target")
    if not target:
        return jsonify({"error": "Missing target parameter"}), http.HTTPStatus.BAD_REQUEST

    target = health_monitor.target_id(target) if "://" in target else target
    entries = health_monitor.get_health_history(target)
    return jsonify({
        "target": target,
        "count": len(entries),
        "alerting": health_monitor.should_alert(target, entries),
        "history": [entry.model_dump(exclude_none=True) for entry in entries],
    }), http.HTTPStatus.OK
