from __future__ import annotations

import logging

from flask import Blueprint, Response, current_app

from fleet.events import EVENT_DRIVES, format_sse

from . import current_monitor

logger = logging.getLogger(__name__)

events_api = Blueprint('events_api', __name__)


@events_api.route('/api/events', methods=['GET'])
def api_events():
    """Server-Sent Events feed of drive, crash and reset events.

    The first message is always a ``drives`` snapshot so a new client can
    render without a separate request.
    """
    monitor = current_monitor()
    keepalive = current_app.config['EVENT_KEEPALIVE_SECONDS']
    broadcaster = monitor.broadcaster

    def generate():
        subscription = broadcaster.subscribe()
        try:
            yield format_sse(broadcaster.envelope(EVENT_DRIVES, monitor.enriched_drives()))
            while True:
                envelope = subscription.get(timeout=keepalive)
                if envelope is None:
                    yield ": keepalive\n\n"
                    continue
                yield format_sse(envelope)
        finally:
            broadcaster.unsubscribe(subscription)
            if subscription.dropped:
                logger.warning(f"Event subscriber missed {subscription.dropped} events")

    return Response(
        generate(),
        mimetype='text/event-stream',
        headers={
            'Cache-Control': 'no-cache',
            'X-Accel-Buffering': 'no',
        }
    )
