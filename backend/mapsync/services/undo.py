"""Undo/redo history of feature edits.

Every reversible edit is recorded as a pair of before/after snapshots.
Snapshots are deep-cloned at capture time, so they stay independent of
the live drawing objects the map keeps mutating. Undo and redo do not
touch the map directly: they turn an entry into an ``AutoSaveQueueItem``
that the sync engine replays as an ordinary remote write.

Action inversion:

    ==================  ==========================  =======================
    original action     undo                        redo
    ==================  ==========================  =======================
    create              delete                      create
    delete              create                      delete
    update/style/geom   update with previous data   update with new data
    ==================  ==========================  =======================

Example:
    Record an edit and undo it:
        >>> history = UndoStack(max_size=50)
        >>> history.push("f-1", "update", before, after, "Moved marker")
        >>> item = history.undo()
        >>> item.operation, item.data == before
        ('update', True)
"""

from __future__ import annotations

import copy
import dataclasses
import datetime
import json
import time
import uuid
from typing import TYPE_CHECKING, Any, Literal

from loguru import logger

from mapsync.services import events

if TYPE_CHECKING:
    from collections.abc import Callable

    from mapsync.core import config

UndoAction = Literal["create", "update", "delete", "style", "geometry"]
SaveOperation = Literal["create", "update", "delete"]

UNDO_ACTIONS: frozenset[str] = frozenset(
    {"create", "update", "delete", "style", "geometry"}
)
REPLAY_PRIORITY = 100

_ACTION_LABELS = {
    "create": "Created",
    "update": "Updated",
    "delete": "Deleted",
    "style": "Styled",
    "geometry": "Modified geometry of",
}


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclasses.dataclass
class UndoStackEntry:
    """A recorded, reversible edit of one feature.

    Attributes:
        feature_id: Feature the edit applies to.
        action: Kind of edit.
        previous_data: Snapshot before the edit (required for delete and
            for update/style/geometry).
        new_data: Snapshot after the edit (required for create and for
            update/style/geometry).
        timestamp: Capture time in epoch milliseconds.
        description: Optional human-readable label.
    """

    feature_id: str
    action: UndoAction
    previous_data: dict[str, Any] | None
    new_data: dict[str, Any] | None
    timestamp: int
    description: str | None = None


@dataclasses.dataclass
class AutoSaveQueueItem:
    """A pending remote write consumed by the auto-save queue."""

    id: str
    feature_id: str
    operation: SaveOperation
    data: dict[str, Any]
    queued_at: int
    priority: int = 0
    retry_count: int = 0


def deep_clone(value: Any) -> Any:
    """Recursively copy plain data.

    Handles dicts, lists, tuples, sets, frozensets, dates and dataclass
    instances; anything else falls back to ``copy.deepcopy``. Cyclic
    structures are not supported.
    """
    if value is None or isinstance(value, str | int | float | bool | bytes):
        return value
    if isinstance(value, datetime.date | datetime.time | datetime.timedelta):
        return copy.copy(value)
    if isinstance(value, dict):
        return {deep_clone(k): deep_clone(v) for k, v in value.items()}
    if isinstance(value, list):
        return [deep_clone(item) for item in value]
    if isinstance(value, tuple):
        return tuple(deep_clone(item) for item in value)
    if isinstance(value, set):
        return {deep_clone(item) for item in value}
    if isinstance(value, frozenset):
        return frozenset(deep_clone(item) for item in value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.replace(
            value,
            **{
                field.name: deep_clone(getattr(value, field.name))
                for field in dataclasses.fields(value)
                if field.init
            },
        )
    return copy.deepcopy(value)


def record_entry(
    feature_id: str,
    action: UndoAction,
    previous_data: dict[str, Any] | None,
    new_data: dict[str, Any] | None,
    description: str | None = None,
    timestamp: int | None = None,
) -> UndoStackEntry:
    """Capture an edit, deep-cloning both snapshots."""
    return UndoStackEntry(
        feature_id=feature_id,
        action=action,
        previous_data=(
            deep_clone(previous_data) if previous_data is not None else None
        ),
        new_data=deep_clone(new_data) if new_data is not None else None,
        timestamp=timestamp if timestamp is not None else now_ms(),
        description=description,
    )


def to_replay_item(
    entry: UndoStackEntry,
    is_redo: bool = False,
) -> AutoSaveQueueItem:
    """Turn an entry into the remote write that undoes or redoes it."""
    operation: SaveOperation
    if is_redo:
        data = entry.new_data
        if entry.action == "create":
            operation = "create"
        elif entry.action == "delete":
            operation = "delete"
        else:
            operation = "update"
    else:
        data = entry.previous_data
        if entry.action == "create":
            operation = "delete"
        elif entry.action == "delete":
            operation = "create"
        else:
            operation = "update"

    return AutoSaveQueueItem(
        id=f"undo-{entry.feature_id}-{uuid.uuid4().hex[:8]}",
        feature_id=entry.feature_id,
        operation=operation,
        data=deep_clone(data) if data is not None else {},
        queued_at=now_ms(),
        priority=REPLAY_PRIORITY,
        retry_count=0,
    )


def validate_entry(entry: UndoStackEntry) -> bool:
    """Enforce the snapshot-presence rules of each action."""
    if not entry.feature_id or entry.action not in UNDO_ACTIONS:
        return False
    if not entry.timestamp:
        return False
    if entry.action == "create":
        return entry.new_data is not None
    if entry.action == "delete":
        return entry.previous_data is not None
    return entry.previous_data is not None and entry.new_data is not None


def merge_consecutive(
    entries: list[UndoStackEntry],
    window_ms: int = 1000,
) -> list[UndoStackEntry]:
    """Collapse runs of same-feature, same-action entries close in time.

    A merged entry keeps the first ``previous_data`` and the latest
    ``new_data`` and timestamp, so a drag-to-resize becomes one step.
    """
    if not entries:
        return []

    merged: list[UndoStackEntry] = []
    current = entries[0]
    for following in entries[1:]:
        can_merge = (
            current.feature_id == following.feature_id
            and current.action == following.action
            and following.timestamp - current.timestamp <= window_ms
        )
        if can_merge:
            if current.description:
                description: str | None = (
                    f"{current.description} + "
                    f"{following.description or 'change'}"
                )
            else:
                description = following.description
            current = dataclasses.replace(
                current,
                new_data=following.new_data,
                timestamp=following.timestamp,
                description=description,
            )
        else:
            merged.append(current)
            current = following
    merged.append(current)
    return merged


def prune(entries: list[UndoStackEntry], max_count: int) -> list[UndoStackEntry]:
    """Keep only the ``max_count`` most recent entries."""
    if max_count <= 0:
        return []
    if len(entries) <= max_count:
        return entries
    return entries[len(entries) - max_count :]


def format_description(entry: UndoStackEntry) -> str:
    if entry.description:
        return entry.description
    label = _ACTION_LABELS.get(entry.action, "Modified")
    return f"{label} feature {entry.feature_id[:8]}..."


def stack_size(entries: list[UndoStackEntry]) -> int:
    """Approximate serialized size of a stack, in characters."""
    return len(
        json.dumps([dataclasses.asdict(e) for e in entries], default=str)
    )


class UndoStack:
    """Bounded undo/redo stacks driving replay through a callback.

    Args:
        max_size: Maximum number of undo entries retained.
        enable_merging: Coalesce consecutive edits on push.
        merge_window_ms: Window used when merging.
        channel: Optional event channel receiving UndoApplied/RedoApplied.
        on_save_required: Called with the replay item of every undo/redo.
    """

    def __init__(
        self,
        max_size: int = 50,
        enable_merging: bool = False,
        merge_window_ms: int = 1000,
        channel: events.EventChannel | None = None,
        on_save_required: Callable[[AutoSaveQueueItem], Any] | None = None,
    ) -> None:
        self.max_size = max_size
        self.enable_merging = enable_merging
        self.merge_window_ms = merge_window_ms
        self.channel = channel
        self.on_save_required = on_save_required
        self._undo: list[UndoStackEntry] = []
        self._redo: list[UndoStackEntry] = []

    @classmethod
    def from_settings(
        cls,
        settings: config.Settings,
        channel: events.EventChannel | None = None,
        on_save_required: Callable[[AutoSaveQueueItem], Any] | None = None,
    ) -> UndoStack:
        return cls(
            max_size=settings.undo_max_stack_size,
            enable_merging=settings.undo_enable_merging,
            merge_window_ms=settings.undo_merge_window_ms,
            channel=channel,
            on_save_required=on_save_required,
        )

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    @property
    def undo_size(self) -> int:
        return len(self._undo)

    @property
    def redo_size(self) -> int:
        return len(self._redo)

    @property
    def entries(self) -> list[UndoStackEntry]:
        return list(self._undo)

    def push(
        self,
        feature_id: str,
        action: UndoAction,
        previous_data: dict[str, Any] | None,
        new_data: dict[str, Any] | None,
        description: str | None = None,
    ) -> UndoStackEntry | None:
        """Record an edit; invalid entries are logged and dropped.

        Pushing clears the redo stack.
        """
        entry = record_entry(
            feature_id, action, previous_data, new_data, description
        )
        if not validate_entry(entry):
            logger.warning(f"Invalid undo entry skipped: {entry}")
            return None

        stack = [*self._undo, entry]
        if self.enable_merging:
            stack = merge_consecutive(stack, self.merge_window_ms)
        self._undo = prune(stack, self.max_size)
        self._redo = []
        logger.debug(f"Pushed: {format_description(entry)}")
        return self._undo[-1]

    def undo(self) -> AutoSaveQueueItem | None:
        if not self._undo:
            logger.warning("Nothing to undo")
            return None
        entry = self._undo.pop()
        item = to_replay_item(entry, is_redo=False)
        self._redo.append(entry)
        logger.info(f"Undone: {format_description(entry)}")
        if self.on_save_required is not None:
            self.on_save_required(item)
        if self.channel is not None:
            self.channel.publish(
                events.UndoApplied(entry, self.can_undo, self.can_redo)
            )
        return item

    def redo(self) -> AutoSaveQueueItem | None:
        if not self._redo:
            logger.warning("Nothing to redo")
            return None
        entry = self._redo.pop()
        item = to_replay_item(entry, is_redo=True)
        self._undo = prune([*self._undo, entry], self.max_size)
        logger.info(f"Redone: {format_description(entry)}")
        if self.on_save_required is not None:
            self.on_save_required(item)
        if self.channel is not None:
            self.channel.publish(
                events.RedoApplied(entry, self.can_undo, self.can_redo)
            )
        return item

    def clear(self) -> None:
        self._undo = []
        self._redo = []

    def undo_description(self) -> str | None:
        return format_description(self._undo[-1]) if self._undo else None

    def redo_description(self) -> str | None:
        return format_description(self._redo[-1]) if self._redo else None
