from __future__ import annotations

import logging

from flask import Blueprint, Response, jsonify, render_template, request
from sqlalchemy.exc import SQLAlchemyError

from maison.models import utcnow
from maison.services import get_services
from maison.services.reporting import SubscriptionFilter, clamp_limit, clamp_offset
from maison.utils.admin_gate import admin_required
from maison.utils.request_info import read_json_body

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__)


def _bad_request(message: str):
    return jsonify(success=False, error=message), 400


# ============================================================
# Subscriptions (JSON)
# ============================================================

@admin_bp.get("/api/subscriptions")
@admin_required
def list_subscriptions():
    try:
        filters = SubscriptionFilter.from_mapping(request.args)
    except ValueError:
        return _bad_request("Invalid date (expected YYYY-MM-DD or ISO-8601)")

    limit = clamp_limit(request.args.get("limit"))
    offset = clamp_offset(request.args.get("offset"))

    try:
        report = get_services().reporting.list_subscriptions(filters, limit=limit, offset=offset)
    except SQLAlchemyError:
        logger.exception("Error fetching subscriptions")
        return jsonify(success=False, error="Failed to fetch subscriptions", subscriptions=[]), 500

    return jsonify(success=True, **report)


@admin_bp.post("/api/subscriptions")
@admin_required
def search_subscriptions():
    try:
        data = read_json_body()
    except ValueError:
        data = {}

    try:
        filters = SubscriptionFilter.from_mapping(data)
    except ValueError:
        return _bad_request("Invalid date (expected YYYY-MM-DD or ISO-8601)")

    limit = clamp_limit(data.get("limit"))

    try:
        rows = get_services().reporting.search_subscriptions(filters, limit=limit)
    except SQLAlchemyError:
        logger.exception("Error searching subscriptions")
        return jsonify(success=False, error="Failed to search subscriptions", subscriptions=[]), 500

    return jsonify(success=True, count=len(rows), subscriptions=[r.to_dict() for r in rows])


@admin_bp.get("/api/subscriptions/map")
@admin_required
def subscriptions_map():
    try:
        data = get_services().reporting.map_points()
    except SQLAlchemyError:
        logger.exception("Error fetching subscriptions for map")
        return jsonify(success=False, error="Failed to fetch subscriptions", subscriptions=[]), 500
    return jsonify(success=True, **data)


@admin_bp.get("/api/subscriptions/export.csv")
@admin_required
def export_subscriptions_csv():
    try:
        filters = SubscriptionFilter.from_mapping(request.args)
    except ValueError:
        return _bad_request("Invalid date (expected YYYY-MM-DD or ISO-8601)")

    try:
        body = get_services().reporting.export_csv(filters)
    except SQLAlchemyError:
        logger.exception("Export CSV error")
        return jsonify(success=False, error="Export failed"), 500

    stamp = utcnow().strftime("%Y%m%d")
    return Response(
        body.encode("utf-8"),
        mimetype="text/csv; charset=utf-8",
        headers={"Content-Disposition": f"attachment; filename=subscriptions-{stamp}.csv"},
    )


# ============================================================
# Dashboards (HTML)
# ============================================================

@admin_bp.get("/admin/subscriptions")
@admin_required
def subscriptions_page():
    return render_template("admin/subscriptions.html", admin_key=request.args.get("key", ""))


@admin_bp.get("/admin/visitors")
@admin_required
def visitors_page():
    return render_template("admin/visitors.html", admin_key=request.args.get("key", ""))


# ============================================================
# IP labels
# ============================================================

@admin_bp.get("/api/ip-labels")
@admin_required
def list_ip_labels():
    labels = get_services().reporting.list_labels()
    return jsonify(success=True, labels=[lbl.to_dict() for lbl in labels])


@admin_bp.post("/api/ip-labels")
@admin_required
def upsert_ip_label():
    try:
        data = read_json_body()
    except ValueError:
        data = {}

    ip_address = str(data.get("ipAddress") or "").strip()
    label = str(data.get("label") or "").strip()
    if not ip_address or not label:
        return _bad_request("IP address and label are required")

    notes = str(data.get("notes")).strip() if data.get("notes") else None

    try:
        row = get_services().reporting.upsert_label(ip_address, label, notes)
    except SQLAlchemyError:
        return jsonify(success=False, error="Failed to save IP label"), 500

    return jsonify(success=True, label=row.to_dict())


@admin_bp.delete("/api/ip-labels")
@admin_required
def delete_ip_label():
    ip_address = (request.args.get("ip") or "").strip()
    if not ip_address:
        return _bad_request("IP address is required")

    try:
        deleted = get_services().reporting.delete_label(ip_address)
    except SQLAlchemyError:
        return jsonify(success=False, error="Failed to delete IP label"), 500

    if not deleted:
        return jsonify(success=False, error="IP label not found"), 404
    return jsonify(success=True)
