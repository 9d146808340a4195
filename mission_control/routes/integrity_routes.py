# mission_control/routes/integrity_routes.py
import http
import logging
from datetime import datetime, timezone
from typing import Optional, Union

from flask import Blueprint, Response, jsonify, make_response, request

from mission_control.exceptions import StoreUnavailableError
from mission_control.systems.admission_system import client_address, rate_limited
from mission_control.systems.auth_system import require_auth
from mission_control.systems.integrity_system import integrity_system

logger = logging.getLogger(__name__)

integrity_bp = Blueprint("integrity_bp", __name__, url_prefix="/api/ghost")


def _finalize(response: Response, content: Optional[Union[str, bytes]] = None) -> Response:
    """Stamps integrity headers, keeps the fuse alive and audits the request."""
    actor = client_address(request)
    integrity_system.apply_headers(response, content)
    integrity_system.refresh_fuse("active")
    integrity_system.record_audit(
        action="request",
        actor=actor,
        resource=request.path,
        result="success" if response.status_code < 400 else "failure",
        metadata={
            "status": response.status_code,
            "canary": integrity_system.should_serve_canary(actor),
        },
    )
    return response


@integrity_bp.route("/heartbeat", methods=["GET"])
@rate_limited("public")
def heartbeat():
    """Signed heartbeat consumed by the health monitor."""
    record = integrity_system.heartbeat(metrics=integrity_system.stats.snapshot())
    signature = integrity_system.sign(record)
    response = jsonify({
        "heartbeat": record.model_dump(exclude_none=True),
        "signature": signature,
        "verified": integrity_system.verify(record, signature),
    })
    return _finalize(response, response.get_data())


@integrity_bp.route("/proof", methods=["GET"])
@rate_limited("public")
def proof():
    """Public HTML rendering of the current signed heartbeat."""
    record = integrity_system.heartbeat()
    html = integrity_system.render_proof_page(record, integrity_system.sign(record))
    response = make_response(html)
    response.headers["Content-Type"] = "text/html; charset=utf-8"
    response.headers["Cache-Control"] = "no-cache"
    return _finalize(response, html)


@integrity_bp.route("/badge.svg", methods=["GET"])
@rate_limited("public")
def badge():
    svg = integrity_system.render_badge(integrity_system.badge_status())
    response = make_response(svg)
    response.headers["Content-Type"] = "image/svg+xml"
    response.headers["Cache-Control"] = "public, max-age=30"
    return response


@integrity_bp.route("/rollback", methods=["POST"])
@require_auth
def rollback():
    """Protected action: records a rollback checkpoint of the live configuration."""
    try:
        checkpoint_id = integrity_system.create_checkpoint()
    except StoreUnavailableError as e:
        logger.error(f"Rollback checkpoint could not be persisted: {e}")
        integrity_system.record_audit("checkpoint.create", client_address(request), request.path, "failure")
        return jsonify({"error": "Checkpoint store unavailable"}), http.HTTPStatus.SERVICE_UNAVAILABLE

    response = jsonify({
        "message": "Rollback checkpoint created",
        "checkpointId": checkpoint_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })
    integrity_system.record_audit(
        "checkpoint.create", client_address(request), request.path, "success",
        {"checkpointId": checkpoint_id},
    )
    return _finalize(response)


@integrity_bp.route("/audit", methods=["GET"])
@rate_limited("authenticated")
@require_auth
def audit():
    """Recent audit entries, newest first."""
    try:
        limit = request.args.get("limit", default=10, type=int)
        limit = max(1, min(limit, 100))
        entries = integrity_system.list_audit(limit)
    except StoreUnavailableError as e:
        logger.error(f"Audit log unavailable: {e}")
        return jsonify({"error": "Audit log unavailable"}), http.HTTPStatus.SERVICE_UNAVAILABLE

    return jsonify({
        "count": len(entries),
        "limit": limit,
        "audit_entries": [entry.model_dump() for entry in entries],
    }), http.HTTPStatus.OK
