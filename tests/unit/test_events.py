"""Tests for the progress event bus."""

from patchfleet.engine.events import EventBus, EventType, ProgressEvent


def event(event_type: EventType = EventType.ISSUE_STARTED) -> ProgressEvent:
    return ProgressEvent(type=event_type, run_id="run-1", issue_url="https://github.com/a/b/issues/1", index=0)


class TestEventBus:
    def test_delivers_to_all_subscribers(self):
        bus = EventBus()
        first, second = [], []
        bus.subscribe(first.append)
        bus.subscribe(second.append)

        bus.emit(event())

        assert len(first) == len(second) == 1
        assert first[0].type == EventType.ISSUE_STARTED

    def test_failing_subscriber_does_not_break_others(self):
        bus = EventBus()
        received = []

        def broken(_: ProgressEvent) -> None:
            raise RuntimeError("subscriber bug")

        bus.subscribe(broken)
        bus.subscribe(received.append)

        bus.emit(event())
        bus.emit(event(EventType.COMPLETED))

        assert [e.type for e in received] == [EventType.ISSUE_STARTED, EventType.COMPLETED]

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(received.append)

        unsubscribe()
        bus.emit(event())
        bus.unsubscribe(received.append)

        assert received == []

    def test_event_defaults(self):
        e = ProgressEvent(type=EventType.CONFLICT, run_id="run-1", files=("x.py",))

        assert e.timestamp.tzinfo is not None
        assert e.files == ("x.py",)
        assert e.error is None
