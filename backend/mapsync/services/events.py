"""Session-scoped, typed event channel for editor notifications.

Rendering glue and the undo stack publish events here instead of on a
process-wide bus; UI code subscribes to the event types it cares about.
One channel is created per editing session and passed explicitly to the
components that publish on it.

Example:
    React to a right click on a layer zone:
        >>> channel = EventChannel()
        >>> unsubscribe = channel.subscribe(
        ...     ZoneContextMenuRequested,
        ...     lambda event: print(event.layer_name, event.x, event.y),
        ... )
        >>> channel.publish(ZoneContextMenuRequested(
        ...     feature={}, layer_id="l-1", layer_name="Zones", x=10, y=20,
        ... ))
        Zones 10 20
        >>> unsubscribe()
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING, Any, Literal, TypeVar

from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from mapsync.services import undo

SaveStatus = Literal["idle", "saving", "saved", "error"]


@dataclasses.dataclass(frozen=True)
class EditorEvent:
    """Base class of every event published on an EventChannel."""


@dataclasses.dataclass(frozen=True)
class ZoneContextMenuRequested(EditorEvent):
    """Context menu requested on a feature of a bulk layer."""

    feature: dict[str, Any]
    layer_id: str
    layer_name: str
    x: float
    y: float
    overlay: Any = None


@dataclasses.dataclass(frozen=True)
class FeatureClicked(EditorEvent):
    feature_id: str
    overlay: Any = None


@dataclasses.dataclass(frozen=True)
class ZoneSelected(EditorEvent):
    """A layer zone was picked, e.g. while authoring a storymap session."""

    layer_id: str
    feature: dict[str, Any]


@dataclasses.dataclass(frozen=True)
class UndoApplied(EditorEvent):
    entry: undo.UndoStackEntry
    can_undo: bool
    can_redo: bool


@dataclasses.dataclass(frozen=True)
class RedoApplied(EditorEvent):
    entry: undo.UndoStackEntry
    can_undo: bool
    can_redo: bool


@dataclasses.dataclass(frozen=True)
class SaveStatusChanged(EditorEvent):
    status: SaveStatus


E = TypeVar("E", bound=EditorEvent)


class EventChannel:
    """Synchronous publish/subscribe channel keyed by event type."""

    def __init__(self) -> None:
        self._handlers: dict[type[EditorEvent], list[Callable[[Any], None]]] = {}

    def subscribe(
        self,
        event_type: type[E],
        handler: Callable[[E], None],
    ) -> Callable[[], None]:
        """Register ``handler`` for ``event_type``.

        Returns:
            A callable that removes the subscription.
        """
        handlers = self._handlers.setdefault(event_type, [])
        handlers.append(handler)

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: EditorEvent) -> None:
        """Deliver ``event`` to its subscribers in subscription order.

        A failing handler is logged and does not stop delivery to the
        remaining handlers.
        """
        for handler in list(self._handlers.get(type(event), [])):
            try:
                handler(event)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    f"Handler for {type(event).__name__} failed: {exc}"
                )
