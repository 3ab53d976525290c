from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from maison.services import get_services
from maison.utils.request_info import client_ip, read_json_body

logger = logging.getLogger(__name__)

subscribe_bp = Blueprint("subscribe", __name__)


@subscribe_bp.post("/api/subscribe")
def subscribe():
    # JSON from the collector page, or a plain HTML form post
    if request.form:
        data = request.form.to_dict()
    else:
        try:
            data = read_json_body()
        except ValueError:
            return jsonify(success=False, error="Invalid email address"), 400

    result = get_services().subscriptions.subscribe(data, client_ip())

    if not result.ok:
        if result.error.code == "invalid_input":
            return jsonify(success=False, error=result.error.message), 400
        return jsonify(success=False, error="An unexpected error occurred. Please try again."), 500

    outcome = result.value
    if outcome.already:
        return jsonify(success=True, already=True, message="You are already subscribed"), 200

    return jsonify(success=True, already=False, message="Successfully subscribed"), 200
