from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import pytest

from sadhana_console.services.documents import DocumentStoreError
from sadhana_console.services.firestore import FirestoreDocumentStore


class FakeSnapshot:
    def __init__(self, document_id: str, data: Optional[Dict[str, Any]]) -> None:
        self.id = document_id
        self._data = data

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> Optional[Dict[str, Any]]:
        return None if self._data is None else dict(self._data)


class FakeReference:
    def __init__(self, rows: Dict[str, Dict[str, Any]], document_id: str) -> None:
        self._rows = rows
        self.id = document_id

    async def get(self) -> FakeSnapshot:
        return FakeSnapshot(self.id, self._rows.get(self.id))

    async def delete(self) -> None:
        self._rows.pop(self.id, None)


class FakeCollection:
    def __init__(self, rows: Dict[str, Dict[str, Any]], fail: bool) -> None:
        self._rows = rows
        self._fail = fail

    async def add(self, data: Dict[str, Any]):
        if self._fail:
            raise RuntimeError("quota exceeded")
        document_id = f"doc{len(self._rows) + 1}"
        self._rows[document_id] = dict(data)
        return None, FakeReference(self._rows, document_id)

    def document(self, document_id: str) -> FakeReference:
        return FakeReference(self._rows, document_id)


class FakeClient:
    def __init__(self, fail: bool = False) -> None:
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._fail = fail

    def collection(self, name: str) -> FakeCollection:
        return FakeCollection(self.collections.setdefault(name, {}), self._fail)


def test_create_get_delete_through_client() -> None:
    client = FakeClient()
    store = FirestoreDocumentStore(client)

    async def scenario():
        document_id = await store.create("books", {"id": "ignored", "title": "Gita"})
        fetched = await store.get("books", document_id)
        removed = await store.delete("books", document_id)
        removed_again = await store.delete("books", document_id)
        missing = await store.get("books", document_id)
        return document_id, fetched, removed, removed_again, missing

    document_id, fetched, removed, removed_again, missing = asyncio.run(scenario())

    assert fetched == {"id": document_id, "title": "Gita"}
    assert removed is True
    assert removed_again is False
    assert missing is None
    assert client.collections["books"] == {}


def test_client_failures_become_store_errors() -> None:
    store = FirestoreDocumentStore(FakeClient(fail=True))

    with pytest.raises(DocumentStoreError):
        asyncio.run(store.create("books", {"title": "Gita"}))
