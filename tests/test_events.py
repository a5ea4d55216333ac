"""Tests for the in-process event bus."""

from deductsync.events import ALL_EVENTS, DEDUCTIONS_UPDATED, WORKER_MESSAGE, EventBus


class TestEventBus:
    """Tests for EventBus."""

    def test_emit_delivers_to_subscribers(self):
        """Test subscribers receive the event payload."""
        bus = EventBus()
        received = []
        bus.subscribe(DEDUCTIONS_UPDATED, received.append)

        delivered = bus.emit(DEDUCTIONS_UPDATED, {"deductions": []})

        assert delivered == 1
        assert received[0].name == DEDUCTIONS_UPDATED
        assert received[0].payload == {"deductions": []}

    def test_emit_without_subscribers(self):
        """Test emitting with nobody listening."""
        assert EventBus().emit(DEDUCTIONS_UPDATED, {}) == 0

    def test_wildcard_subscription(self):
        """Test '*' subscribers receive every event."""
        bus = EventBus()
        received = []
        bus.subscribe(ALL_EVENTS, received.append)

        bus.emit(DEDUCTIONS_UPDATED, {})
        bus.emit(WORKER_MESSAGE, {"type": "BACKGROUND_SYNC"})

        assert [e.name for e in received] == [DEDUCTIONS_UPDATED, WORKER_MESSAGE]
        assert bus.subscriber_count(WORKER_MESSAGE) == 1

    def test_unsubscribe(self):
        """Test the returned function removes the subscription."""
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(DEDUCTIONS_UPDATED, received.append)

        unsubscribe()
        unsubscribe()
        bus.emit(DEDUCTIONS_UPDATED, {})

        assert received == []

    def test_failing_subscriber_does_not_block_others(self):
        """Test one failing callback does not stop delivery."""
        bus = EventBus()
        received = []

        def broken(event):
            raise ValueError("boom")

        bus.subscribe(DEDUCTIONS_UPDATED, broken)
        bus.subscribe(DEDUCTIONS_UPDATED, received.append)

        assert bus.emit(DEDUCTIONS_UPDATED, {}) == 1
        assert len(received) == 1

    def test_recent_events(self):
        """Test history is kept per event and bounded."""
        bus = EventBus(history_size=2)
        for i in range(3):
            bus.emit(DEDUCTIONS_UPDATED, {"n": i})
        bus.emit(WORKER_MESSAGE, {"n": 99})

        recent = bus.get_recent_events(DEDUCTIONS_UPDATED)

        assert [e.payload["n"] for e in recent] == [2, 1]
        assert len(bus.get_recent_events()) == 3
