"""Client for the hosted, authenticated document store."""
from __future__ import annotations

import hashlib
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx
from loguru import logger

from wordsync.config import settings
from wordsync.schemas.vocabulary import VocabularyEntry
from wordsync.utils.exceptions import FatalRemoteError, classify_remote_error, remote_error_from_response


class RemoteDocumentStore(Protocol):
    """Authenticated CRUD over JSON documents grouped in collections."""

    async def list_documents(self, collection: str) -> List[Dict[str, Any]]:  # pragma: no cover - interface definition
        ...

    async def get_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:  # pragma: no cover
        ...

    async def set_document(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:  # pragma: no cover
        ...

    async def delete_document(self, collection: str, doc_id: str) -> None:  # pragma: no cover
        ...


def document_id(entry: VocabularyEntry) -> str:
    """Stable remote identifier derived from the entry key."""

    key = entry.key
    if key is None:
        raise ValueError("Entries without a key cannot be stored remotely")
    return document_id_for_key(key)


def document_id_for_key(key: str) -> str:
    return hashlib.sha1(key.encode("utf-8")).hexdigest()


class HttpDocumentStore:
    """JSON REST client; every failure leaves as a classified remote error."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        token_getter: Callable[[], str | None] = lambda: None,
        request_timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        resolved = base_url or (str(settings.REMOTE_BASE_URL) if settings.REMOTE_BASE_URL else None)
        if not resolved:
            raise ValueError("HttpDocumentStore requires a base URL")
        self.base_url = resolved.rstrip("/")
        self.token_getter = token_getter
        self.request_timeout = request_timeout or settings.REMOTE_REQUEST_TIMEOUT_SECONDS
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.request_timeout,
                transport=self._transport,
            )
        return self._client

    def _build_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = self.token_getter()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, path, headers=self._build_headers(), **kwargs)
        except httpx.HTTPError as exc:
            raise classify_remote_error(exc) from exc
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code >= 400:
            error = remote_error_from_response(response)
            logger.error("Remote store returned error", status=response.status_code, kind=error.kind)
            raise error

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise FatalRemoteError("Remote store returned invalid JSON", code="invalid-response") from exc

    async def list_documents(self, collection: str) -> List[Dict[str, Any]]:
        response = await self._request("GET", f"/{collection}")
        self._raise_for_status(response)
        data = self._json(response)
        documents = data.get("documents", []) if isinstance(data, dict) else data
        if not isinstance(documents, list):
            raise FatalRemoteError("Remote collection listing is not a list", code="invalid-response")
        return [doc for doc in documents if isinstance(doc, dict)]

    async def get_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        response = await self._request("GET", f"/{collection}/{doc_id}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        data = self._json(response)
        return data if isinstance(data, dict) else None

    async def set_document(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        response = await self._request("PUT", f"/{collection}/{doc_id}", json=data)
        self._raise_for_status(response)

    async def delete_document(self, collection: str, doc_id: str) -> None:
        response = await self._request("DELETE", f"/{collection}/{doc_id}")
        if response.status_code == 404:
            return
        self._raise_for_status(response)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = [
    "HttpDocumentStore",
    "RemoteDocumentStore",
    "document_id",
    "document_id_for_key",
]
