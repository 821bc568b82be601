from __future__ import annotations

import atexit
from typing import Mapping

from flask import Flask, jsonify

from fleet.monitor import FleetMonitor

from .config import Config
from .logging import init_logging
from .routes.buses import buses_api
from .routes.drives import drives_api
from .routes.events import events_api
from .routes.stats import stats_api


def create_app(config_object: object | Mapping[str, object] | None = None,
               monitor: FleetMonitor | None = None) -> Flask:
    app = Flask(__name__)

    app.config.from_object(Config)
    if config_object:
        if isinstance(config_object, Mapping):
            app.config.from_mapping(config_object)
        else:
            app.config.from_object(config_object)

    init_logging(app, app.config['LOG_LEVEL'])

    _initialise_monitor(app, monitor)
    _register_blueprints(app)
    _register_health_route(app)

    return app


def get_monitor(app: Flask) -> FleetMonitor:
    return app.extensions['fleet_monitor']


def _initialise_monitor(app: Flask, monitor: FleetMonitor | None) -> None:
    if monitor is None:
        monitor = FleetMonitor.from_config(app.config)
    app.extensions['fleet_monitor'] = monitor

    if app.config['START_MONITOR'] and not monitor.running:
        monitor.start()
        atexit.register(monitor.stop)


def _register_blueprints(app: Flask) -> None:
    app.register_blueprint(drives_api)
    app.register_blueprint(buses_api)
    app.register_blueprint(stats_api)
    app.register_blueprint(events_api)


def _register_health_route(app: Flask) -> None:
    @app.route('/api/health', methods=['GET'])
    def api_health():
        monitor = get_monitor(app)
        return jsonify({
            "status": "ok",
            "monitoring": monitor.running,
            "autoReset": monitor.orchestrator.auto_reset,
            "drives": len(monitor.aggregator.snapshot()),
            "subscribers": monitor.broadcaster.subscriber_count,
        })
