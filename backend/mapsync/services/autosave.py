"""Debounced, retrying queue of pending remote writes.

Edits and undo/redo replays are queued as ``AutoSaveQueueItem``s and
flushed to the remote store after a quiet period. A newer item for the
same feature and operation replaces the feature's latest pending item,
so a burst of edits results in a single write. Items are ordered by
priority (higher first, stable), which lets undo/redo replays jump ahead
of ordinary saves of other features. A feature's own writes are never
reordered.

Failed writes are retried in place, up to ``max_retries`` times with
``retry_delay_ms`` between attempts, so later writes for the same feature
are never applied before an earlier one.

Example:
    Queue an update and flush it right away:
        >>> queue = AutoSaveQueue(engine.apply_replay, debounce_ms=500)
        >>> queue.enqueue("f-1", "update", {"name": "Park"})
        >>> await queue.flush()
        >>> queue.status
        'saved'
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from typing import TYPE_CHECKING, Any

from loguru import logger

from mapsync.core import errors
from mapsync.services import events, undo

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from mapsync.core import config


class AutoSaveQueue:
    """Asyncio debounce queue feeding a save coroutine.

    Args:
        on_save: Coroutine function performing one write. A ``False``
            result or a raised ``MapSyncError`` counts as a failure.
        debounce_ms: Quiet period before a scheduled flush.
        max_queue_size: Queue length that forces an immediate flush.
        max_retries: Retry budget of a failing item.
        retry_delay_ms: Delay between retries.
        on_success: Called with every item written successfully.
        on_error: Called with an item and its error once its retries are
            exhausted.
        channel: Optional event channel receiving SaveStatusChanged.
    """

    def __init__(
        self,
        on_save: Callable[[undo.AutoSaveQueueItem], Awaitable[bool | None]],
        debounce_ms: int = 1000,
        max_queue_size: int = 50,
        max_retries: int = 3,
        retry_delay_ms: int = 2000,
        on_success: Callable[[undo.AutoSaveQueueItem], Any] | None = None,
        on_error: (
            Callable[[undo.AutoSaveQueueItem, Exception], Any] | None
        ) = None,
        channel: events.EventChannel | None = None,
    ) -> None:
        self.on_save = on_save
        self.debounce_ms = debounce_ms
        self.max_queue_size = max_queue_size
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.on_success = on_success
        self.on_error = on_error
        self.channel = channel
        self._queue: list[undo.AutoSaveQueueItem] = []
        self._status: events.SaveStatus = "idle"
        self._processing = False
        self._timer: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: config.Settings,
        on_save: Callable[[undo.AutoSaveQueueItem], Awaitable[bool | None]],
        **kwargs: Any,
    ) -> AutoSaveQueue:
        return cls(
            on_save,
            debounce_ms=settings.autosave_debounce_ms,
            max_queue_size=settings.autosave_max_queue_size,
            max_retries=settings.autosave_max_retries,
            retry_delay_ms=settings.autosave_retry_delay_ms,
            **kwargs,
        )

    @property
    def status(self) -> events.SaveStatus:
        return self._status

    @property
    def size(self) -> int:
        return len(self._queue)

    @property
    def items(self) -> list[undo.AutoSaveQueueItem]:
        return list(self._queue)

    def enqueue(
        self,
        feature_id: str,
        operation: undo.SaveOperation,
        data: dict[str, Any],
        priority: int = 0,
    ) -> undo.AutoSaveQueueItem:
        """Queue a write and schedule a flush.

        Must be called from a running event loop.
        """
        item = undo.AutoSaveQueueItem(
            id=f"save-{feature_id}-{uuid.uuid4().hex[:8]}",
            feature_id=feature_id,
            operation=operation,
            data=data,
            queued_at=undo.now_ms(),
            priority=priority,
        )
        self.enqueue_item(item)
        return item

    def enqueue_item(self, item: undo.AutoSaveQueueItem) -> None:
        """Queue a prepared item, e.g. an undo/redo replay.

        The item replaces a pending write of the same feature and operation
        only when that write is the feature's latest queued item. It is
        placed by priority but never ahead of an earlier write of the same
        feature, so one feature's writes keep their call order.
        """
        # The head item is in flight while the queue is processing.
        start = 1 if self._processing and self._queue else 0
        last = None
        for index in range(start, len(self._queue)):
            if self._queue[index].feature_id == item.feature_id:
                last = index

        latest = self._queue[last] if last is not None else None
        if latest is not None and latest.operation == item.operation:
            self._queue[last] = item
            logger.debug(f"Replaced queued {item.operation} for {item.feature_id}")
        else:
            floor = max(start, last + 1 if last is not None else 0)
            position = next(
                (
                    index
                    for index in range(floor, len(self._queue))
                    if self._queue[index].priority < item.priority
                ),
                len(self._queue),
            )
            self._queue.insert(position, item)
            logger.debug(f"Queued {item.operation} for {item.feature_id}")

        if len(self._queue) >= self.max_queue_size:
            logger.warning("Save queue is full, flushing immediately")
            self._schedule(0)
        else:
            self._schedule(self.debounce_ms)

    def has_feature(self, feature_id: str) -> bool:
        return any(item.feature_id == feature_id for item in self._queue)

    def remove_item(self, feature_id: str) -> bool:
        """Drop every pending item of a feature.

        Returns:
            True when at least one item was removed.
        """
        before = len(self._queue)
        self._queue = [i for i in self._queue if i.feature_id != feature_id]
        return len(self._queue) < before

    def clear(self) -> None:
        self._queue = []
        self._cancel_timer()
        self._set_status("idle")

    async def aclose(self) -> None:
        """Cancel the pending flush and wait for it to unwind."""
        timer = self._timer
        self.clear()
        if timer is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await timer

    async def flush(self) -> None:
        """Write every queued item now, cancelling the debounce timer."""
        self._cancel_timer()
        await self._process()

    def _schedule(self, delay_ms: int) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.create_task(self._flush_after(delay_ms))

    def _cancel_timer(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is None:
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if timer is not current:
            timer.cancel()

    async def _flush_after(self, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000)
        self._timer = None
        await self._process()

    def _set_status(self, status: events.SaveStatus) -> None:
        if status == self._status:
            return
        self._status = status
        if self.channel is not None:
            self.channel.publish(events.SaveStatusChanged(status))

    def _discard(self, item: undo.AutoSaveQueueItem) -> None:
        self._queue = [queued for queued in self._queue if queued is not item]

    async def _save(self, item: undo.AutoSaveQueueItem) -> Exception | None:
        try:
            result = await self.on_save(item)
        except errors.MapSyncError as exc:
            return exc
        if result is False:
            return errors.RemoteFailureError(
                f"{item.operation} of {item.feature_id} was not saved"
            )
        return None

    async def _process(self) -> None:
        if self._processing:
            logger.debug("Save queue already processing")
            return
        if not self._queue:
            self._set_status("idle")
            return

        self._processing = True
        self._set_status("saving")
        failed = False
        logger.info(f"Saving {len(self._queue)} queued items")
        try:
            while self._queue:
                item = self._queue[0]
                error = await self._save(item)
                if error is None:
                    self._discard(item)
                    logger.debug(f"Saved {item.operation} for {item.feature_id}")
                    if self.on_success is not None:
                        self.on_success(item)
                    continue

                logger.error(f"Error saving {item.feature_id}: {error}")
                if item.retry_count < self.max_retries:
                    item.retry_count += 1
                    logger.info(
                        f"Retrying {item.feature_id} "
                        f"(attempt {item.retry_count}/{self.max_retries})"
                    )
                    await asyncio.sleep(self.retry_delay_ms / 1000)
                    continue

                self._discard(item)
                failed = True
                logger.error(
                    f"Failed to save {item.feature_id} after "
                    f"{self.max_retries} retries"
                )
                if self.on_error is not None:
                    self.on_error(item, error)
        finally:
            self._processing = False
        self._set_status("error" if failed else "saved")
