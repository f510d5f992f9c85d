"""Unit tests for the session-scoped editor event channel.

See Also:
    - backend/mapsync/services/events.py for the implementation.
"""

from __future__ import annotations

from mapsync.services import events


def test_publish_delivers_in_subscription_order() -> None:
    """Handlers of the published type run in the order they subscribed."""
    channel = events.EventChannel()
    received: list[str] = []
    channel.subscribe(
        events.FeatureClicked, lambda e: received.append(f"a:{e.feature_id}")
    )
    channel.subscribe(
        events.FeatureClicked, lambda e: received.append(f"b:{e.feature_id}")
    )
    channel.subscribe(events.ZoneSelected, lambda e: received.append("zone"))

    channel.publish(events.FeatureClicked("f-1"))

    assert received == ["a:f-1", "b:f-1"]


def test_unsubscribe_stops_delivery() -> None:
    """The callable returned by subscribe removes the handler."""
    channel = events.EventChannel()
    received: list[events.SaveStatusChanged] = []
    unsubscribe = channel.subscribe(events.SaveStatusChanged, received.append)

    channel.publish(events.SaveStatusChanged("saving"))
    unsubscribe()
    unsubscribe()
    channel.publish(events.SaveStatusChanged("saved"))

    assert [e.status for e in received] == ["saving"]


def test_failing_handler_does_not_stop_delivery() -> None:
    """A handler raising an exception is logged and skipped."""
    channel = events.EventChannel()
    received: list[str] = []

    def broken(_event: events.ZoneSelected) -> None:
        raise ValueError("boom")

    channel.subscribe(events.ZoneSelected, broken)
    channel.subscribe(events.ZoneSelected, lambda e: received.append(e.layer_id))

    channel.publish(events.ZoneSelected("zones", {"type": "Feature"}))

    assert received == ["zones"]


def test_channels_are_independent() -> None:
    """Events never cross between two sessions' channels."""
    first = events.EventChannel()
    second = events.EventChannel()
    received: list[events.FeatureClicked] = []
    second.subscribe(events.FeatureClicked, received.append)

    first.publish(events.FeatureClicked("f-1"))

    assert received == []
