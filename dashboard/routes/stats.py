from __future__ import annotations

from flask import Blueprint, jsonify

from fleet.devices import is_optical_device

from . import current_monitor

stats_api = Blueprint('stats_api', __name__)


@stats_api.route('/api/stats', methods=['GET'])
def api_all_stats():
    stats = current_monitor().ledger.get_all()
    return jsonify({device: snapshot.to_dict() for device, snapshot in stats.items()})


@stats_api.route('/api/stats/<device>', methods=['GET'])
def api_device_stats(device):
    if not is_optical_device(device):
        return jsonify({"error": f"Invalid device name: {device}"}), 400
    return jsonify(current_monitor().ledger.get(device).to_dict())


@stats_api.route('/api/stats/<device>/reset', methods=['POST'])
def api_reset_device_stats(device):
    """Forget a drive's crash history, e.g. after replacing it."""
    if not is_optical_device(device):
        return jsonify({"error": f"Invalid device name: {device}"}), 400
    existed = current_monitor().ledger.reset_device(device)
    return jsonify({"success": True, "device": device, "hadStats": existed})
