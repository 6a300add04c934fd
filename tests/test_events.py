"""Tests for the per-session event bus."""

from noteledger.events import SessionEventBus
from noteledger.models.events import SessionEvent, SessionEventType


def _event(sequence, session="s1"):
    return SessionEvent(event_type=SessionEventType.NOTE_CREATED, session_id=session, sequence=sequence)


def test_subscribers_receive_only_their_session():
    bus = SessionEventBus()
    received = []
    bus.subscribe("s1", received.append)

    bus.publish(_event(0))
    bus.publish(_event(0, session="s2"))

    assert [(e.session_id, e.sequence) for e in received] == [("s1", 0)]


def test_unsubscribe_stops_delivery():
    bus = SessionEventBus()
    received = []
    unsubscribe = bus.subscribe("s1", received.append)

    bus.publish(_event(0))
    unsubscribe()
    bus.publish(_event(1))

    assert [e.sequence for e in received] == [0]


def test_failing_subscriber_does_not_block_others():
    bus = SessionEventBus()
    received = []

    def broken(event):
        raise RuntimeError("ui went away")

    bus.subscribe("s1", broken)
    bus.subscribe("s1", received.append)

    bus.publish(_event(0))

    assert [e.sequence for e in received] == [0]


def test_recent_events_are_bounded_and_filterable():
    bus = SessionEventBus(max_buffered=3)
    for sequence in range(5):
        bus.publish(_event(sequence))

    assert [e.sequence for e in bus.recent("s1")] == [2, 3, 4]
    assert [e.sequence for e in bus.recent("s1", after_sequence=3)] == [4]
    assert bus.recent("missing") == []
