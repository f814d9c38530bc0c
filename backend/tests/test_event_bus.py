"""
Unit tests for the page event bus.
"""

from app.services.event_bus import APP_ESCAPE, APP_RESIZE, EventBus


def test_publish_reaches_every_subscriber():
    bus = EventBus()
    received = []
    bus.subscribe(APP_RESIZE, lambda payload: received.append(("a", payload)))
    bus.subscribe(APP_RESIZE, lambda payload: received.append(("b", payload)))

    count = bus.publish(APP_RESIZE, {"width": 500})

    assert count == 2
    assert received == [("a", {"width": 500}), ("b", {"width": 500})]


def test_publish_without_subscribers():
    assert EventBus().publish(APP_ESCAPE) == 0


def test_unsubscribe():
    bus = EventBus()
    received = []
    unsubscribe = bus.subscribe(APP_ESCAPE, received.append)

    unsubscribe()
    unsubscribe()
    bus.publish(APP_ESCAPE, {"key": "Escape"})

    assert received == []


def test_failing_subscriber_does_not_block_others():
    bus = EventBus()
    received = []

    def broken(payload):
        raise RuntimeError("subscriber bug")

    bus.subscribe(APP_ESCAPE, broken)
    bus.subscribe(APP_ESCAPE, received.append)

    assert bus.publish(APP_ESCAPE, {"n": 1}) == 2
    assert received == [{"n": 1}]


def test_clear_removes_all_subscribers():
    bus = EventBus()
    bus.subscribe(APP_ESCAPE, lambda payload: None)
    bus.clear()

    assert bus.publish(APP_ESCAPE) == 0
