"""Tests for the event broadcaster."""

import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fleet.events import EVENT_CRASH, EVENT_DRIVES, EventBroadcaster, Subscription, format_sse


def test_envelope_uses_millisecond_timestamp():
    broadcaster = EventBroadcaster(clock=lambda: 1700000000.1234)

    envelope = broadcaster.envelope(EVENT_DRIVES, [])

    assert envelope == {"type": "drives", "data": [], "timestamp": 1700000000123}


def test_publish_reaches_every_subscriber():
    broadcaster = EventBroadcaster()
    first = broadcaster.subscribe()
    second = broadcaster.subscribe()

    broadcaster.publish(EVENT_CRASH, {"device": "sr0"})

    assert first.get(timeout=0)["data"] == {"device": "sr0"}
    assert second.get(timeout=0)["type"] == "crash"
    assert broadcaster.subscriber_count == 2


def test_unsubscribed_client_gets_nothing():
    broadcaster = EventBroadcaster()
    subscription = broadcaster.subscribe()
    broadcaster.unsubscribe(subscription)

    broadcaster.publish(EVENT_DRIVES, [])

    assert subscription.get(timeout=0) is None
    assert broadcaster.subscriber_count == 0
    # Unsubscribing twice is harmless
    broadcaster.unsubscribe(subscription)


def test_slow_subscriber_drops_oldest():
    subscription = Subscription(max_pending=2)
    for number in range(4):
        subscription.put({"n": number})

    assert subscription.get(timeout=0) == {"n": 2}
    assert subscription.get(timeout=0) == {"n": 3}
    assert subscription.get(timeout=0) is None
    assert subscription.dropped == 2


def test_publish_without_subscribers():
    envelope = EventBroadcaster().publish(EVENT_DRIVES, [{"device": "sr0"}])
    assert envelope["type"] == "drives"


def test_format_sse():
    message = format_sse({"type": "reset", "data": {"bus": "usb-2-1"}, "timestamp": 1})

    assert message.startswith("data: ")
    assert message.endswith("\n\n")
    assert json.loads(message[len("data: "):]) == {"type": "reset", "data": {"bus": "usb-2-1"}, "timestamp": 1}
