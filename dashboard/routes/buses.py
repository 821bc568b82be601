from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from fleet.errors import (
    BusBusyError, BusNotFoundError, ConfirmationRequired, ResetFailedError, ResetUnsupportedError,
)

from ..logging import current_request_id
from . import current_monitor

logger = logging.getLogger(__name__)

buses_api = Blueprint('buses_api', __name__)


def _confirm_requested() -> bool:
    if request.args.get('confirm', '').lower() in {'1', 'true', 'yes'}:
        return True
    data = request.get_json(silent=True)
    return isinstance(data, dict) and data.get('confirm') is True


@buses_api.route('/api/buses', methods=['GET'])
def api_list_buses():
    buses = current_monitor().resolver.discover()
    return jsonify([bus.to_dict() for bus in buses])


@buses_api.route('/api/buses/<bus_id>/reset', methods=['POST'])
def api_reset_bus(bus_id):
    """Reset a bus; asks for confirmation if drives on it are ripping."""
    confirm = _confirm_requested()
    orchestrator = current_monitor().orchestrator

    try:
        event = orchestrator.manual_reset(bus_id, confirm=confirm)
    except BusNotFoundError as e:
        return jsonify({"error": str(e), "bus": bus_id}), 404
    except ResetUnsupportedError as e:
        return jsonify({"error": str(e), "bus": bus_id}), 400
    except ConfirmationRequired as e:
        return jsonify({
            "error": "Active rips on bus",
            "bus": bus_id,
            "activeDevices": e.active_devices,
            "requiresConfirm": True,
        }), 409
    except BusBusyError as e:
        return jsonify({"error": str(e), "bus": bus_id}), 409
    except ResetFailedError as e:
        logger.error(str(e), extra={"bus_id": bus_id})
        return jsonify({"error": str(e), "bus": bus_id, "request_id": current_request_id()}), 500

    return jsonify({
        "success": True,
        "bus": bus_id,
        "devices": event.devices,
        "recordedDevices": event.recorded_devices,
    })
