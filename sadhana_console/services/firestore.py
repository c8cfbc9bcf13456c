"""Firestore implementation of the document store."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from ..config import FirestoreSettings
from .documents import (
    DocumentNotFoundError,
    DocumentStoreDependencyError,
    DocumentStoreError,
)


LOGGER = logging.getLogger(__name__)


def _load_client_module():
    try:
        from google.cloud import firestore  # type: ignore
    except ImportError as exc:  # pragma: no cover - depends on optional extra
        raise DocumentStoreDependencyError(
            "google-cloud-firestore is not installed; install the 'firestore' extra"
        ) from exc
    return firestore


class FirestoreDocumentStore:
    """Document store backed by ``google.cloud.firestore.AsyncClient``.

    Only equality filters are issued and no server-side ordering is requested,
    so no composite index ever has to be provisioned.
    """

    def __init__(self, client: Any) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, settings: FirestoreSettings) -> "FirestoreDocumentStore":
        firestore = _load_client_module()
        kwargs: Dict[str, Any] = {}
        if settings.project:
            kwargs["project"] = settings.project
        if settings.credentials_file is not None:
            from google.oauth2 import service_account  # type: ignore

            kwargs["credentials"] = service_account.Credentials.from_service_account_file(
                str(settings.credentials_file)
            )
        LOGGER.info("Connecting to Firestore project=%s", settings.project or "<default>")
        return cls(firestore.AsyncClient(**kwargs))

    @staticmethod
    def _wrap(action: str, collection: str, error: Exception) -> DocumentStoreError:
        LOGGER.error("Firestore %s on %s failed: %s", action, collection, error)
        return DocumentStoreError(f"Firestore {action} failed: {error}")

    async def create(self, collection: str, record: Mapping[str, Any]) -> str:
        data = {key: value for key, value in record.items() if key != "id"}
        try:
            _update_time, reference = await self._client.collection(collection).add(data)
        except Exception as error:
            raise self._wrap("create", collection, error) from error
        return reference.id

    async def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        try:
            snapshot = await self._client.collection(collection).document(document_id).get()
        except Exception as error:
            raise self._wrap("get", collection, error) from error
        if not snapshot.exists:
            return None
        return {"id": snapshot.id, **(snapshot.to_dict() or {})}

    async def list(
        self, collection: str, filters: Optional[Mapping[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        from google.cloud.firestore_v1.base_query import FieldFilter  # type: ignore

        query = self._client.collection(collection)
        for field_name, value in (filters or {}).items():
            query = query.where(filter=FieldFilter(field_name, "==", value))
        documents: List[Dict[str, Any]] = []
        try:
            async for snapshot in query.stream():
                documents.append({"id": snapshot.id, **(snapshot.to_dict() or {})})
        except Exception as error:
            raise self._wrap("list", collection, error) from error
        return documents

    async def update(
        self, collection: str, document_id: str, fields: Mapping[str, Any]
    ) -> Dict[str, Any]:
        from google.api_core import exceptions as api_exceptions  # type: ignore

        reference = self._client.collection(collection).document(document_id)
        try:
            await reference.update(dict(fields))
            snapshot = await reference.get()
        except api_exceptions.NotFound as error:
            raise DocumentNotFoundError(collection, document_id) from error
        except Exception as error:
            raise self._wrap("update", collection, error) from error
        return {"id": snapshot.id, **(snapshot.to_dict() or {})}

    async def delete(self, collection: str, document_id: str) -> bool:
        reference = self._client.collection(collection).document(document_id)
        try:
            snapshot = await reference.get()
            if not snapshot.exists:
                return False
            await reference.delete()
        except Exception as error:
            raise self._wrap("delete", collection, error) from error
        return True


__all__ = ["FirestoreDocumentStore"]
