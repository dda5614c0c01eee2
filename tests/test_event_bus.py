"""
Tests for the event bus.

No event loop runs here, so publish() enqueues directly.
"""
import pytest

from event_bus import EventBus, NotificationEvent, TradeEvent, get_event_bus


class TestEventBus:
    def test_publish_reaches_subscriber(self):
        bus = EventBus()
        queue = bus.subscribe("notification")

        assert bus.publish("notification", NotificationEvent(level="info", title="Hi", message="there"))

        event = queue.get_nowait()
        assert event["type"] == "notification"
        assert event["title"] == "Hi"
        assert bus.get_subscriber_count("notification") == 1

    def test_invalid_channel(self):
        bus = EventBus()
        assert bus.publish("positions", {"type": "x"}) is False
        with pytest.raises(ValueError):
            bus.subscribe("positions")

    def test_snapshot_and_history(self):
        bus = EventBus()
        bus.publish("trade", TradeEvent(contract_id="1", bot_id="speed", symbol="R_100", stake=1.0, status="open"))
        bus.publish("trade", TradeEvent(contract_id="1", bot_id="speed", symbol="R_100", stake=1.0,
                                        status="won", profit=0.95))

        assert [t["status"] for t in bus.get_trade_history()] == ["open", "won"]
        assert bus.get_trade_history(limit=1)[0]["profit"] == 0.95
        assert len(bus.get_snapshot()["trade_history"]) == 2

        bus.clear_history()
        assert bus.get_trade_history() == []

    def test_unsubscribe(self):
        bus = EventBus()
        queue = bus.subscribe("status")
        assert bus.unsubscribe("status", queue) is True
        assert bus.unsubscribe("status", queue) is False

    def test_reset(self):
        bus = EventBus()
        bus.subscribe("signal")
        bus.publish("notification", NotificationEvent(level="info", title="a", message="b"))

        bus.reset()

        assert bus.get_snapshot()["notifications"] == []
        assert bus.get_subscriber_count() == {c: 0 for c in EventBus.VALID_CHANNELS}

    def test_singleton(self):
        assert get_event_bus() is get_event_bus()
