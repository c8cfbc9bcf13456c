"""Document-store abstraction and its SQLite-backed implementation."""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import functools
import json
import logging
import re
import sqlite3
import time
import uuid
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    TypeVar,
)

from ..config import AppConfig
from .events import DB_QUERY


LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DOCUMENTS_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    data TEXT NOT NULL DEFAULT '{}',
    UNIQUE(collection, id)
);
CREATE INDEX IF NOT EXISTS documents_by_collection ON documents(collection, seq);
"""

_FIELD_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class DocumentStoreError(RuntimeError):
    """Raised when the backing document store fails."""


class DocumentNotFoundError(DocumentStoreError):
    """Raised when an update targets a document that does not exist."""

    def __init__(self, collection: str, document_id: str) -> None:
        super().__init__(f"Document {collection}/{document_id} not found")
        self.collection = collection
        self.document_id = document_id


class DocumentStoreDependencyError(DocumentStoreError):
    """Raised when the client library of a backend is not installed."""


class DocumentStore(Protocol):
    """Remote document store contract used by every service."""

    async def create(self, collection: str, record: Mapping[str, Any]) -> str: ...

    async def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]: ...

    async def list(
        self, collection: str, filters: Optional[Mapping[str, Any]] = None
    ) -> List[Dict[str, Any]]: ...

    async def update(
        self, collection: str, document_id: str, fields: Mapping[str, Any]
    ) -> Dict[str, Any]: ...

    async def delete(self, collection: str, document_id: str) -> bool: ...


def new_document_id() -> str:
    """Return an opaque 20 character identifier."""

    return uuid.uuid4().hex[:20]


def _check_field_name(name: str) -> str:
    if not _FIELD_PATTERN.match(name):
        raise ValueError(f"Unsupported filter field: {name!r}")
    return name


def _encode(record: Mapping[str, Any]) -> str:
    data = {key: value for key, value in record.items() if key != "id"}
    return json.dumps(data, ensure_ascii=False)


def _decode(document_id: str, raw: str) -> Dict[str, Any]:
    data = json.loads(raw) if raw else {}
    return {"id": document_id, **data}


class SQLiteDocumentStore:
    """Document store keeping JSON documents in a single SQLite table.

    Blocking SQLite work runs in the default executor so callers on the event
    loop only ever await. Documents come back in insertion order, which is the
    natural fetch order the content tree relies on for stable ties.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting debug events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any) -> Iterator[Dict[str, Any]]:
        """Emit a structured event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        error: BaseException | None = None
        try:
            yield event_payload
        except Exception as exc:
            error = exc
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            if error is None:
                event_payload.setdefault("status", "ok")
            filtered = {
                key: value for key, value in event_payload.items() if value is not None
            }
            self._event_emitter(
                DB_QUERY,
                action,
                payload=filtered,
                duration_ms=duration_ms,
            )

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | Tuple[Any, ...] = (),
    ) -> sqlite3.Cursor:
        return connection.execute(statement, tuple(parameters))

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        connection = sqlite3.connect(self._db_path)
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    async def _run(self, operation: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        # Worker threads see the caller's request correlation.
        context = contextvars.copy_context()
        try:
            return await loop.run_in_executor(None, functools.partial(context.run, operation, *args))
        except sqlite3.Error as error:
            raise DocumentStoreError(f"SQLite error: {error}") from error

    # ------------------------------------------------------------------
    # Blocking implementations
    # ------------------------------------------------------------------
    def _create_sync(self, collection: str, record: Mapping[str, Any]) -> str:
        document_id = str(record.get("id") or new_document_id())
        with self._track_db_event("create", collection=collection) as event:
            with self._connect() as connection:
                self._execute(
                    connection,
                    "INSERT INTO documents(collection, id, data) VALUES (?, ?, ?)",
                    (collection, document_id, _encode(record)),
                )
            event["document_id"] = document_id
        LOGGER.debug("Created %s/%s", collection, document_id)
        return document_id

    def _get_sync(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        with self._track_db_event("get", collection=collection, document_id=document_id) as event:
            with self._connect() as connection:
                row = self._execute(
                    connection,
                    "SELECT id, data FROM documents WHERE collection = ? AND id = ?",
                    (collection, document_id),
                ).fetchone()
            event["found"] = row is not None
        if row is None:
            LOGGER.debug("Document %s/%s not found", collection, document_id)
            return None
        return _decode(row[0], row[1])

    def _list_sync(
        self, collection: str, filters: Optional[Mapping[str, Any]]
    ) -> List[Dict[str, Any]]:
        clauses = ["collection = ?"]
        params: List[Any] = [collection]
        for field_name, value in (filters or {}).items():
            path = f"$.{_check_field_name(field_name)}"
            if value is None:
                clauses.append("json_extract(data, ?) IS NULL")
                params.append(path)
            else:
                clauses.append("json_extract(data, ?) = ?")
                params.extend([path, int(value) if isinstance(value, bool) else value])
        statement = (
            "SELECT id, data FROM documents WHERE "
            + " AND ".join(clauses)
            + " ORDER BY seq"
        )
        with self._track_db_event(
            "list", collection=collection, filters=dict(filters or {})
        ) as event:
            with self._connect() as connection:
                rows = self._execute(connection, statement, params).fetchall()
            event["rowcount"] = len(rows)
        LOGGER.debug("Listed %d document(s) from %s", len(rows), collection)
        return [_decode(row[0], row[1]) for row in rows]

    def _update_sync(
        self, collection: str, document_id: str, fields: Mapping[str, Any]
    ) -> Dict[str, Any]:
        with self._track_db_event(
            "update",
            collection=collection,
            document_id=document_id,
            fields=sorted(fields),
        ):
            with self._connect() as connection:
                row = self._execute(
                    connection,
                    "SELECT data FROM documents WHERE collection = ? AND id = ?",
                    (collection, document_id),
                ).fetchone()
                if row is None:
                    raise DocumentNotFoundError(collection, document_id)
                merged = {**json.loads(row[0] or "{}"), **dict(fields)}
                self._execute(
                    connection,
                    "UPDATE documents SET data = ? WHERE collection = ? AND id = ?",
                    (_encode(merged), collection, document_id),
                )
        LOGGER.debug("Updated %s/%s fields=%s", collection, document_id, sorted(fields))
        return {**{k: v for k, v in merged.items() if k != "id"}, "id": document_id}

    def _delete_sync(self, collection: str, document_id: str) -> bool:
        with self._track_db_event(
            "delete", collection=collection, document_id=document_id
        ) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "DELETE FROM documents WHERE collection = ? AND id = ?",
                    (collection, document_id),
                )
                removed = cursor.rowcount > 0
            event["removed"] = removed
        LOGGER.debug("Deleted %s/%s (existed=%s)", collection, document_id, removed)
        return removed

    # ------------------------------------------------------------------
    # DocumentStore protocol
    # ------------------------------------------------------------------
    async def create(self, collection: str, record: Mapping[str, Any]) -> str:
        return await self._run(self._create_sync, collection, dict(record))

    async def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._get_sync, collection, document_id)

    async def list(
        self, collection: str, filters: Optional[Mapping[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        return await self._run(self._list_sync, collection, dict(filters or {}))

    async def update(
        self, collection: str, document_id: str, fields: Mapping[str, Any]
    ) -> Dict[str, Any]:
        return await self._run(self._update_sync, collection, document_id, dict(fields))

    async def delete(self, collection: str, document_id: str) -> bool:
        return await self._run(self._delete_sync, collection, document_id)


def create_document_store(config: AppConfig) -> DocumentStore:
    """Return the document store selected by ``config.document_backend``."""

    if config.document_backend == "firestore":
        from .firestore import FirestoreDocumentStore

        return FirestoreDocumentStore.from_settings(config.firestore)
    return SQLiteDocumentStore(config)


__all__ = [
    "DOCUMENTS_SCHEMA",
    "DocumentNotFoundError",
    "DocumentStore",
    "DocumentStoreDependencyError",
    "DocumentStoreError",
    "SQLiteDocumentStore",
    "create_document_store",
    "new_document_id",
]
