from __future__ import annotations

import pytest

from wordsync.services.offline_queue import PendingOperationQueue
from wordsync.utils.exceptions import FatalRemoteError, StoreError


class Ticker:
    def __init__(self):
        self.now = 0

    def __call__(self) -> int:
        self.now += 1
        return self.now


@pytest.fixture()
def queue(store) -> PendingOperationQueue:
    return PendingOperationQueue(store, clock=Ticker())


@pytest.mark.asyncio
async def test_enqueue_persists_in_store(queue, store):
    await queue.enqueue("upsert_word", {"entry": {"word": "hello"}})

    stored = await store.get_value("wordstream_pending_operations")
    assert [item["type"] for item in stored] == ["upsert_word"]
    assert [operation.data for operation in await queue.pending()] == [{"entry": {"word": "hello"}}]


@pytest.mark.asyncio
async def test_flush_runs_oldest_first_and_clears_queue(queue, executor):
    seen: list[str] = []

    async def handler(data):
        seen.append(data["word"])

    await queue.enqueue("upsert_word", {"word": "first"})
    await queue.enqueue("upsert_word", {"word": "second"})

    result = await queue.flush({"upsert_word": handler}, executor)

    assert seen == ["first", "second"]
    assert result.processed == 2
    assert await queue.pending() == []


@pytest.mark.asyncio
async def test_failed_and_unknown_operations_are_requeued(queue, executor):
    async def failing(data):
        raise FatalRemoteError("rejected", code="invalid-argument")

    await queue.enqueue("upsert_word", {"word": "a"})
    await queue.enqueue("mystery", {"value": 1})

    result = await queue.flush({"upsert_word": failing}, executor)

    assert (result.processed, result.failed, result.skipped) == (0, 1, 1)
    remaining = await queue.pending()
    assert [operation.type for operation in remaining] == ["upsert_word", "mystery"]
    assert remaining[0].attempts == 1
    assert result.errors == ["Database error: invalid-argument"]


@pytest.mark.asyncio
async def test_flush_of_empty_queue_does_nothing(queue, executor):
    result = await queue.flush({}, executor)

    assert result.processed == result.failed == result.skipped == 0


@pytest.mark.asyncio
async def test_store_failure_keeps_unprocessed_operations(queue, executor):
    async def broken(data):
        raise StoreError("local store unavailable")

    await queue.enqueue("upsert_word", {"word": "a"})
    await queue.enqueue("upsert_word", {"word": "b"})

    with pytest.raises(StoreError):
        await queue.flush({"upsert_word": broken}, executor)

    assert [operation.data["word"] for operation in await queue.pending()] == ["a", "b"]
