"""Tests for the debounced, retrying auto-save queue.

Covers coalescing of pending writes, priority ordering, debounce and
forced flushes, in-place retries and status reporting.

See Also:
    - backend/mapsync/services/autosave.py for the implementation.
"""

from __future__ import annotations

import asyncio

import pytest

from mapsync.core import config, errors
from mapsync.services import autosave, events, undo


class _Recorder:
    """Save callback recording calls and failing on demand."""

    def __init__(self, failures: int = 0, result: bool = True) -> None:
        self.failures = failures
        self.result = result
        self.calls: list[tuple[str, str, dict[str, object]]] = []

    async def __call__(self, item: undo.AutoSaveQueueItem) -> bool:
        self.calls.append((item.feature_id, item.operation, item.data))
        if self.failures > 0:
            self.failures -= 1
            return False
        return self.result


@pytest.mark.anyio
async def test_enqueue_replaces_pending_item() -> None:
    """A newer write of the same feature and operation replaces the old."""
    saver = _Recorder()
    queue = autosave.AutoSaveQueue(saver)
    queue.enqueue("f-1", "update", {"name": "A"})
    queue.enqueue("f-1", "update", {"name": "B"})
    queue.enqueue("f-1", "delete", {})

    assert queue.size == 2
    assert queue.items[0].data == {"name": "B"}
    assert queue.has_feature("f-1")
    await queue.aclose()


@pytest.mark.anyio
async def test_enqueue_keeps_interleaved_writes_of_a_feature() -> None:
    """A write is only coalesced into the feature's latest pending item."""
    saver = _Recorder()
    queue = autosave.AutoSaveQueue(saver)
    queue.enqueue("f-1", "update", {"radius": 50})
    queue.enqueue("f-1", "delete", {})
    queue.enqueue("f-1", "create", {})
    queue.enqueue("f-1", "update", {"radius": 75})

    await queue.flush()

    assert [(call[1], call[2]) for call in saver.calls] == [
        ("update", {"radius": 50}),
        ("delete", {}),
        ("create", {}),
        ("update", {"radius": 75}),
    ]


@pytest.mark.anyio
async def test_priority_never_overtakes_same_feature() -> None:
    """A replay item never jumps ahead of its own feature's earlier writes."""
    saver = _Recorder()
    queue = autosave.AutoSaveQueue(saver)
    queue.enqueue("f-1", "update", {})
    queue.enqueue("f-2", "update", {})
    queue.enqueue("f-2", "delete", {}, priority=undo.REPLAY_PRIORITY)

    await queue.flush()

    assert [call[:2] for call in saver.calls] == [
        ("f-1", "update"),
        ("f-2", "update"),
        ("f-2", "delete"),
    ]


@pytest.mark.anyio
async def test_priority_orders_queue() -> None:
    """Replay items jump ahead of ordinary saves; ties keep FIFO order."""
    saver = _Recorder()
    queue = autosave.AutoSaveQueue(saver)
    queue.enqueue("f-1", "update", {})
    queue.enqueue("f-2", "update", {})
    queue.enqueue("f-3", "create", {}, priority=undo.REPLAY_PRIORITY)

    await queue.flush()

    assert [call[0] for call in saver.calls] == ["f-3", "f-1", "f-2"]
    assert queue.size == 0


@pytest.mark.anyio
async def test_flush_reports_success() -> None:
    """Successful writes are reported and the status becomes saved."""
    saver = _Recorder()
    channel = events.EventChannel()
    statuses: list[str] = []
    channel.subscribe(events.SaveStatusChanged, lambda e: statuses.append(e.status))
    succeeded: list[str] = []
    queue = autosave.AutoSaveQueue(
        saver,
        on_success=lambda item: succeeded.append(item.feature_id),
        channel=channel,
    )
    queue.enqueue("f-1", "update", {"name": "A"})

    await queue.flush()

    assert succeeded == ["f-1"]
    assert queue.status == "saved"
    assert statuses == ["saving", "saved"]


@pytest.mark.anyio
async def test_failed_write_is_retried_in_place() -> None:
    """A failing item is retried before later items are written."""
    saver = _Recorder(failures=2)
    queue = autosave.AutoSaveQueue(saver, max_retries=3, retry_delay_ms=0)
    queue.enqueue("f-1", "update", {})
    queue.enqueue("f-2", "update", {})

    await queue.flush()

    assert [call[0] for call in saver.calls] == ["f-1", "f-1", "f-1", "f-2"]
    assert queue.status == "saved"


@pytest.mark.anyio
async def test_exhausted_retries_report_error() -> None:
    """After max_retries the item is dropped and on_error is called."""
    saver = _Recorder(result=False)
    failures: list[tuple[str, Exception]] = []
    queue = autosave.AutoSaveQueue(
        saver,
        max_retries=2,
        retry_delay_ms=0,
        on_error=lambda item, exc: failures.append((item.feature_id, exc)),
    )
    item = queue.enqueue("f-1", "update", {})

    await queue.flush()

    assert len(saver.calls) == 3
    assert item.retry_count == 2
    assert queue.size == 0
    assert queue.status == "error"
    (feature_id, error), = failures
    assert feature_id == "f-1"
    assert isinstance(error, errors.RemoteFailureError)


@pytest.mark.anyio
async def test_raised_sync_error_counts_as_failure() -> None:
    """A MapSyncError raised by the save callback is a failed attempt."""

    async def broken(_item: undo.AutoSaveQueueItem) -> bool:
        raise errors.RemoteFailureError("offline")

    failures: list[Exception] = []
    queue = autosave.AutoSaveQueue(
        broken,
        max_retries=0,
        on_error=lambda _item, exc: failures.append(exc),
    )
    queue.enqueue("f-1", "delete", {})

    await queue.flush()

    assert queue.status == "error"
    assert str(failures[0]) == "offline"


@pytest.mark.anyio
async def test_debounced_flush() -> None:
    """Queued items are written once the debounce period elapses."""
    saver = _Recorder()
    queue = autosave.AutoSaveQueue(saver, debounce_ms=10)
    queue.enqueue("f-1", "update", {"name": "A"})
    queue.enqueue("f-1", "update", {"name": "B"})
    assert saver.calls == []

    await asyncio.sleep(0.1)

    assert saver.calls == [("f-1", "update", {"name": "B"})]
    assert queue.status == "saved"


@pytest.mark.anyio
async def test_full_queue_flushes_immediately() -> None:
    """Reaching max_queue_size skips the debounce period."""
    saver = _Recorder()
    queue = autosave.AutoSaveQueue(saver, debounce_ms=60_000, max_queue_size=2)
    queue.enqueue("f-1", "update", {})
    queue.enqueue("f-2", "update", {})

    await asyncio.sleep(0.05)

    assert len(saver.calls) == 2
    assert queue.size == 0


@pytest.mark.anyio
async def test_remove_item_and_clear() -> None:
    """Pending items can be dropped per feature or all at once."""
    queue = autosave.AutoSaveQueue(_Recorder())
    queue.enqueue("f-1", "update", {})
    queue.enqueue("f-1", "delete", {})
    queue.enqueue("f-2", "update", {})

    assert queue.remove_item("f-1") is True
    assert queue.remove_item("f-1") is False
    assert [item.feature_id for item in queue.items] == ["f-2"]

    queue.clear()
    assert queue.size == 0
    assert queue.status == "idle"
    await queue.aclose()


@pytest.mark.anyio
async def test_flush_of_empty_queue_is_idle() -> None:
    """Flushing nothing leaves the queue idle without calling the saver."""
    saver = _Recorder()
    queue = autosave.AutoSaveQueue(saver)
    await queue.flush()
    assert queue.status == "idle"
    assert saver.calls == []


def test_from_settings() -> None:
    """Timing and bounds follow the settings."""
    settings = config.Settings(
        autosave_debounce_ms=250,
        autosave_max_queue_size=5,
        autosave_max_retries=1,
        autosave_retry_delay_ms=10,
    )
    queue = autosave.AutoSaveQueue.from_settings(settings, _Recorder())
    assert (
        queue.debounce_ms,
        queue.max_queue_size,
        queue.max_retries,
        queue.retry_delay_ms,
    ) == (250, 5, 1, 10)
