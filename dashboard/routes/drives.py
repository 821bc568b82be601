from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from fleet.errors import RipHistoryError

from ..logging import current_request_id
from . import current_monitor

logger = logging.getLogger(__name__)

drives_api = Blueprint('drives_api', __name__)


def _int_arg(name: str, default: int) -> int:
    value = request.args.get(name)
    if value is None:
        return default
    number = int(value)
    if number < 0:
        raise ValueError(f"{name} must not be negative")
    return number


@drives_api.route('/api/drives', methods=['GET'])
def api_list_drives():
    """Current state of every drive, with health statistics."""
    monitor = current_monitor()
    monitor.aggregator.refresh()
    return jsonify(monitor.enriched_drives())


@drives_api.route('/api/history', methods=['GET'])
def api_history():
    try:
        limit = _int_arg('limit', 100)
        offset = _int_arg('offset', 0)
    except ValueError:
        return jsonify({"error": "limit and offset must be non-negative integers"}), 400

    try:
        return jsonify(current_monitor().history.page(limit=limit, offset=offset))
    except RipHistoryError as e:
        logger.error(str(e))
        return jsonify({"error": str(e), "request_id": current_request_id()}), 500


@drives_api.route('/api/logs/<device>', methods=['GET'])
def api_device_log(device):
    try:
        lines = _int_arg('lines', 100)
    except ValueError:
        return jsonify({"error": "lines must be a non-negative integer"}), 400

    history = current_monitor().history
    try:
        log = history.tail_log(device, lines)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except OSError as e:
        logger.error(f"Cannot read log for {device}: {e}")
        return jsonify({"error": f"Cannot read log for {device}", "request_id": current_request_id()}), 500

    return jsonify({"device": device, "log": log})
