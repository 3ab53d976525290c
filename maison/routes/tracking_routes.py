from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from maison.services import get_services
from maison.services.reporting import clamp_limit, clamp_offset
from maison.services.visitor_service import VisitRequest
from maison.utils.admin_gate import admin_required
from maison.utils.request_info import client_ip, read_json_body

logger = logging.getLogger(__name__)

tracking_bp = Blueprint("tracking", __name__)


# ============================================================
# /api/track (collector ingest)
# ============================================================

@tracking_bp.post("/api/track")
def track():
    """
    Always answers 200 once the body parsed: tracking must never surface
    errors to the page. 'stored' tells whether the row made it to the DB.
    """
    try:
        data = read_json_body()
    except ValueError as e:
        logger.warning("Tracking API error: unreadable body (%s)", e)
        return jsonify(success=False, error="Tracking failed"), 500

    result = get_services().tracking.ingest(data, client_ip())
    if not result.ok:
        logger.info("Tracking event acknowledged, not stored: %s", result.error)
    return jsonify(success=True, received=True, stored=result.ok), 200


@tracking_bp.get("/api/track")
def track_status():
    return jsonify(message="Tracking endpoint active", note="Use POST to send tracking data")


# ============================================================
# /api/visitors
# ============================================================

@tracking_bp.post("/api/visitors")
def upsert_visitor():
    try:
        data = read_json_body()
    except ValueError:
        return jsonify(success=False, error="Invalid JSON body"), 400

    req = VisitRequest.from_payload(data, client_ip())
    if not req.session_id:
        return jsonify(success=False, error="Session ID required"), 400

    result = get_services().visitors.upsert(req)
    if not result.ok:
        return jsonify(success=False, error="Failed to track visitor"), 500

    outcome = result.value
    return jsonify(
        success=True,
        visitor=outcome.visitor.to_dict() if outcome.visitor is not None else None,
        isNewVisitor=outcome.is_new_visitor,
    )


@tracking_bp.get("/api/visitors")
@admin_required
def list_visitors():
    limit = clamp_limit(request.args.get("limit"))
    offset = clamp_offset(request.args.get("offset"))
    rows, total = get_services().visitors.list_visitors(limit=limit, offset=offset)
    return jsonify(
        success=True,
        visitors=[v.to_dict() for v in rows],
        total=total,
        limit=limit,
        offset=offset,
    )
