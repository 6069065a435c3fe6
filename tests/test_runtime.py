from __future__ import annotations

import pytest

from conftest import StubCredentialProvider
from wordsync.config import Settings
from wordsync.runtime import SyncContext, build_default_context
from wordsync.schemas.messages import ChangeEvent
from wordsync.services.auth import AuthSession
from wordsync.services.migration import WORDS_KEY, FormatMigrationLayer, StorageLayout
from wordsync.services.realtime import ChangeBus, InProcessTransport
from wordsync.services.retry import RetryExecutor
from wordsync.services.vocabulary import VocabularyService
from wordsync.utils.store import MemoryStore


def _context(name: str, store, hub) -> SyncContext:
    session = AuthSession(StubCredentialProvider())
    bus = ChangeBus(store, hub, context_id=name)
    return SyncContext(
        name,
        store=store,
        session=session,
        executor=RetryExecutor(session),
        bus=bus,
        vocabulary=VocabularyService(store, migration=FormatMigrationLayer(store, layout="grouped"), bus=bus),
    )


@pytest.mark.asyncio
async def test_capture_in_one_context_refreshes_the_other(store, hub):
    async with _context("popup", store, hub) as popup, _context("background", store, hub) as background:
        await popup.vocabulary.capture("hello", "shalom", "en", "he")

        assert [entry.key for entry in background.vocabulary.words] == ["hello|en|he"]
        assert background.vocabulary.stats.total_words == 1

        await background.vocabulary.delete("hello|en|he")

        assert popup.vocabulary.words == []


@pytest.mark.asyncio
async def test_closed_context_stops_receiving(store, hub):
    popup = _context("popup", store, hub)
    background = _context("background", store, hub)
    await popup.start()
    await background.start()
    await background.close()

    await popup.vocabulary.capture("hello", "shalom", "en", "he")

    assert background.vocabulary.words == []
    await popup.close()


@pytest.mark.asyncio
async def test_late_context_reads_snapshot_and_collection(store, hub):
    async with _context("popup", store, hub) as popup:
        await popup.vocabulary.capture("hello", "shalom", "en", "he")

    late = _context("page", store, hub)
    await late.start()

    assert late.snapshot[ChangeEvent.STATS_UPDATED].payload["totalWords"] == 1
    assert [entry.word for entry in late.vocabulary.words] == ["hello"]
    await late.close()


@pytest.mark.asyncio
async def test_start_migrates_legacy_layout(store, hub, make_entry):
    await store.set({WORDS_KEY: [make_entry("legacy").to_record()]})
    context = _context("background", store, hub)

    await context.start()

    assert await context.vocabulary.migration.detect_layout() is StorageLayout.GROUPED
    assert [entry.word for entry in context.vocabulary.words] == ["legacy"]
    await context.close()


@pytest.mark.asyncio
async def test_session_state_changes_are_published(store, hub):
    async with _context("background", store, hub) as context:
        await context.session.refresh(force=True)

        snapshot = await context.bus.read_snapshot()

    assert snapshot[ChangeEvent.AUTH_STATE_CHANGED].payload == {"state": "valid"}


@pytest.mark.asyncio
async def test_build_default_context_uses_local_backends():
    config = Settings(REDIS_URL=None, REMOTE_BASE_URL=None)

    context = await build_default_context("popup", config)

    assert isinstance(context.store, MemoryStore)
    assert isinstance(context.bus.transport, InProcessTransport)
    assert context.vocabulary.remote is None
    async with context:
        entry = await context.vocabulary.capture("hello", "shalom", "en", "he")
    assert entry.key == "hello|en|he"
