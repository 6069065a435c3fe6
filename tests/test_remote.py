from __future__ import annotations

import json

import httpx
import pytest

from wordsync.schemas.vocabulary import VocabularyEntry
from wordsync.services.remote import HttpDocumentStore, document_id, document_id_for_key
from wordsync.utils.exceptions import AuthError, FatalRemoteError, TransientRemoteError


class RecordingHandler:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _store(handler, token="id-token") -> HttpDocumentStore:
    return HttpDocumentStore(
        "https://remote.test/v1",
        token_getter=lambda: token,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_set_document_sends_bearer_token_and_json():
    handler = RecordingHandler([httpx.Response(200, json={})])
    remote = _store(handler)

    await remote.set_document("users/u1/words", "abc", {"word": "hello"})

    [request] = handler.requests
    assert request.method == "PUT"
    assert request.url.path == "/v1/users/u1/words/abc"
    assert request.headers["Authorization"] == "Bearer id-token"
    assert json.loads(request.content) == {"word": "hello"}
    await remote.aclose()


@pytest.mark.asyncio
async def test_list_documents_accepts_wrapped_and_bare_lists():
    handler = RecordingHandler(
        [
            httpx.Response(200, json={"documents": [{"word": "a"}, "junk"]}),
            httpx.Response(200, json=[{"word": "b"}]),
        ]
    )
    remote = _store(handler)

    assert await remote.list_documents("words") == [{"word": "a"}]
    assert await remote.list_documents("words") == [{"word": "b"}]
    await remote.aclose()


@pytest.mark.asyncio
async def test_missing_document_reads_as_none_and_deletes_quietly():
    handler = RecordingHandler([httpx.Response(404), httpx.Response(404)])
    remote = _store(handler)

    assert await remote.get_document("words", "nope") is None
    await remote.delete_document("words", "nope")
    await remote.aclose()


@pytest.mark.asyncio
async def test_error_statuses_are_classified_at_the_boundary():
    handler = RecordingHandler(
        [
            httpx.Response(401, json={"error": {"status": "UNAUTHENTICATED"}}),
            httpx.Response(503, text="maintenance"),
            httpx.Response(400, json={"error": {"status": "INVALID_ARGUMENT"}}),
        ]
    )
    remote = _store(handler)

    with pytest.raises(AuthError):
        await remote.list_documents("words")
    with pytest.raises(TransientRemoteError):
        await remote.list_documents("words")
    with pytest.raises(FatalRemoteError) as excinfo:
        await remote.set_document("words", "x", {})
    assert excinfo.value.code == "invalid-argument"
    await remote.aclose()


@pytest.mark.asyncio
async def test_network_failure_is_transient():
    handler = RecordingHandler([httpx.ConnectError("connection refused")])
    remote = _store(handler)

    with pytest.raises(TransientRemoteError):
        await remote.get_document("words", "x")
    await remote.aclose()


@pytest.mark.asyncio
async def test_invalid_json_is_fatal():
    handler = RecordingHandler([httpx.Response(200, text="<html>")])
    remote = _store(handler)

    with pytest.raises(FatalRemoteError):
        await remote.list_documents("words")
    await remote.aclose()


def test_document_id_is_stable_per_key(make_entry):
    entry = make_entry("Hello")

    assert document_id(entry) == document_id_for_key("hello|en|he")
    assert document_id(make_entry("hello ")) == document_id(entry)
    assert document_id(make_entry("hello", target_language="es")) != document_id(entry)


def test_document_id_requires_a_key():
    with pytest.raises(ValueError):
        document_id(VocabularyEntry(word="", translation="x"))
