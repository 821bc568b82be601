from __future__ import annotations

from flask import current_app

from fleet.monitor import FleetMonitor


def current_monitor() -> FleetMonitor:
    """The fleet monitor attached to the running app."""
    return current_app.extensions['fleet_monitor']
