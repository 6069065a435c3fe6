from __future__ import annotations

from datetime import datetime, timezone

import pytest

from wordsync.schemas.messages import ChangeEvent
from wordsync.schemas.vocabulary import VocabularyFilter
from wordsync.services.migration import WORDS_METADATA_KEY, FormatMigrationLayer
from wordsync.services.offline_queue import PendingOperationQueue
from wordsync.services.realtime import ChangeBus
from wordsync.services.remote import document_id
from wordsync.services.vocabulary import (
    STATS_KEY,
    RemoteSyncDisabledError,
    VocabularyNotFoundError,
    VocabularyService,
)
from wordsync.utils.exceptions import AuthError, EntryValidationError, TransientRemoteError

UTC = timezone.utc
NOW = datetime(2024, 5, 15, 12, 0, tzinfo=UTC)
NOW_MS = int(NOW.timestamp() * 1000)
COLLECTION = "users/u1/words"


class FakeRemote:
    """In-memory document store; queued errors are raised before serving."""

    def __init__(self):
        self.documents: dict[str, dict[str, dict]] = {}
        self.errors: list[Exception] = []
        self.calls = 0

    def _maybe_fail(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)

    async def list_documents(self, collection):
        self._maybe_fail()
        return list(self.documents.get(collection, {}).values())

    async def get_document(self, collection, doc_id):
        self._maybe_fail()
        return self.documents.get(collection, {}).get(doc_id)

    async def set_document(self, collection, doc_id, data):
        self._maybe_fail()
        self.documents.setdefault(collection, {})[doc_id] = data

    async def delete_document(self, collection, doc_id):
        self._maybe_fail()
        self.documents.get(collection, {}).pop(doc_id, None)


def _service(store, hub=None, name="popup", **kwargs) -> VocabularyService:
    bus = ChangeBus(store, hub, context_id=name) if hub is not None else None
    return VocabularyService(
        store,
        migration=FormatMigrationLayer(store, group_size=2),
        bus=bus,
        clock=lambda: NOW,
        tz=UTC,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_recapturing_a_word_in_another_context_keeps_one_entry(store, hub):
    popup = _service(store, hub, "popup")
    page = _service(store, hub, "page")
    await popup.bus.connect()
    await page.bus.connect()

    await popup.capture("hello", "שלום", "en", "he", context="first sentence", timestamp=NOW_MS)
    await page.capture("hello", "שלום", "en", "he", context="second sentence", timestamp=NOW_MS + 2_000)

    words = await popup.load()
    assert len(words) == 1
    assert words[0].context == "second sentence"
    assert words[0].timestamp == NOW_MS + 2_000
    assert popup.stats.total_words == len(popup.words) == 1


@pytest.mark.asyncio
async def test_writes_from_two_contexts_converge(store):
    popup = _service(store, name="popup")
    background = _service(store, name="background")

    await popup.capture("cat", "gato", "en", "es")
    await background.capture("dog", "perro", "en", "es")
    await popup.refresh()

    assert [entry.word for entry in popup.words] == [entry.word for entry in background.words] == ["cat", "dog"]
    assert (await store.get_value(STATS_KEY))["totalWords"] == 2


@pytest.mark.asyncio
async def test_capture_rejects_missing_fields(store):
    service = _service(store)

    with pytest.raises(EntryValidationError) as excinfo:
        await service.capture("hello", "  ", "en", "he")

    assert excinfo.value.details == {"fields": ["translation"]}
    assert await store.get_value(WORDS_METADATA_KEY) is None


@pytest.mark.asyncio
async def test_capture_updates_in_place_and_bumps_timestamp(store, make_entry):
    service = _service(store)
    await service.save_entries([make_entry("hello", timestamp=NOW_MS + 10_000, reviewCount=4)])

    updated = await service.capture("Hello", "shalom", "en", "he", timestamp=NOW_MS)

    assert updated.timestamp == NOW_MS + 10_001
    assert updated.translation == "shalom"
    assert updated.to_record()["reviewCount"] == 4
    assert len(service.words) == 1


@pytest.mark.asyncio
async def test_capture_records_stats_and_streak(store):
    service = _service(store)

    await service.capture("hello", "shalom", "en", "he")

    stats = await store.get_value(STATS_KEY)
    assert stats["totalWords"] == 1
    assert stats["todayWords"] == 1
    assert stats["streak"] == 1
    assert stats["lastActive"] == NOW.isoformat()


@pytest.mark.asyncio
async def test_capture_publishes_snapshot(store, hub):
    service = _service(store, hub)

    await service.capture("hello", "shalom", "en", "he")

    snapshot = await service.bus.read_snapshot()
    assert snapshot[ChangeEvent.WORDS_UPDATED].payload == {"key": "hello|en|he", "totalWords": 1}
    assert snapshot[ChangeEvent.STATS_UPDATED].payload["totalWords"] == 1


@pytest.mark.asyncio
async def test_delete_removes_entry_and_updates_stats(store, hub):
    service = _service(store, hub)
    await service.capture("hello", "shalom", "en", "he")
    await service.capture("bye", "lehitraot", "en", "he")

    await service.delete("hello|en|he")

    assert [entry.word for entry in service.words] == ["bye"]
    assert service.stats.total_words == 1
    snapshot = await service.bus.read_snapshot()
    assert snapshot[ChangeEvent.WORD_DELETED].payload["key"] == "hello|en|he"
    with pytest.raises(VocabularyNotFoundError):
        await service.delete("hello|en|he")


@pytest.mark.asyncio
async def test_load_recomputes_stale_stats(store, make_entry):
    await FormatMigrationLayer(store).write_entries(
        [make_entry("a"), make_entry("b")], extra={STATS_KEY: {"totalWords": 40, "streak": 3}}
    )
    service = _service(store)

    await service.load()

    assert service.stats.total_words == 2
    assert service.stats.streak == 3


@pytest.mark.asyncio
async def test_view_filters_and_groups(store):
    service = _service(store)
    await service.capture("hello", "shalom", "en", "he")
    await service.capture("bonjour", "shalom", "fr", "he", timestamp=NOW_MS - 40 * 86_400_000)

    assert list(service.view()) == ["en", "fr"]
    today = service.view(VocabularyFilter(dateFilter="today"))
    assert {language: [entry.word for entry in words] for language, words in today.items()} == {"en": ["hello"]}


@pytest.mark.asyncio
async def test_remote_operations_require_configuration(store):
    service = _service(store)

    with pytest.raises(RemoteSyncDisabledError):
        await service.pull()


@pytest.mark.asyncio
async def test_push_uploads_every_entry(store, executor):
    remote = FakeRemote()
    service = _service(store, executor=executor, remote=remote, remote_collection=COLLECTION)
    await service.capture("hello", "shalom", "en", "he")
    await service.capture("bye", "lehitraot", "en", "he")

    assert await service.push() == 2
    assert len(remote.documents[COLLECTION]) == 2


@pytest.mark.asyncio
async def test_upload_surfaces_persistent_failure(store, executor, make_entry):
    remote = FakeRemote()
    remote.errors = [TransientRemoteError("unavailable")] * 4
    service = _service(store, executor=executor, remote=remote, remote_collection=COLLECTION)

    with pytest.raises(TransientRemoteError):
        await service.upload(make_entry("hello"))

    assert remote.calls == 4


@pytest.mark.asyncio
async def test_pull_merges_newer_remote_entries(store, executor, make_entry):
    remote = FakeRemote()
    local_old = make_entry("hello", timestamp=NOW_MS - 5_000, translation="old")
    remote_new = make_entry("hello", timestamp=NOW_MS, translation="new")
    remote.documents[COLLECTION] = {
        document_id(remote_new): remote_new.to_record(),
        "other": make_entry("world").to_record(),
    }
    service = _service(store, executor=executor, remote=remote, remote_collection=COLLECTION)
    await service.save_entries([local_old])

    pulled = await service.pull()

    assert len(pulled) == 2
    assert {entry.word: entry.translation for entry in service.words} == {"hello": "new", "world": "world-t"}


@pytest.mark.asyncio
async def test_pull_degrades_to_no_change_on_auth_failure(store, executor, provider, make_entry):
    remote = FakeRemote()
    remote.errors = [AuthError("expired")] * 3
    remote.documents[COLLECTION] = {"x": make_entry("remote-only").to_record()}
    service = _service(store, executor=executor, remote=remote, remote_collection=COLLECTION)
    await service.save_entries([make_entry("local")])

    assert await service.pull() == []
    assert [entry.word for entry in service.words] == ["local"]
    assert provider.refresh_calls == [True, True]


@pytest.mark.asyncio
async def test_captures_and_deletes_are_replayed_remotely(store, executor):
    remote = FakeRemote()
    queue = PendingOperationQueue(store)
    service = _service(store, executor=executor, remote=remote, remote_collection=COLLECTION, queue=queue)
    await service.capture("hello", "shalom", "en", "he")
    await service.capture("bye", "lehitraot", "en", "he")
    await service.delete("bye|en|he")

    result = await service.flush_pending()

    assert result.processed == 3
    assert [doc["word"] for doc in remote.documents[COLLECTION].values()] == ["hello"]
    assert await queue.pending() == []
