"""Paged, searchable CRUD over the flat content collections."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, TypeVar

from .content_tree import coerce_order, timestamp_ms, utc_timestamp
from .documents import DocumentNotFoundError, DocumentStore, DocumentStoreError
from .errors import (
    CascadeDeleteError,
    DeleteReport,
    MediaDeleteWarning,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from .media import MediaError, MediaReferenceResolver


LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

_RESERVED_FIELDS = frozenset({"id", "createdAt", "updatedAt"})


@dataclass(frozen=True)
class ChildLink:
    """Child records kept in their own collection and deleted with the parent."""

    collection: str
    foreign_key: str
    order_field: str
    key: str = "chapters"
    count_field: Optional[str] = None
    media_fields: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ProjectionSpec:
    name: str
    collection: str
    search_fields: Tuple[str, ...]
    defaults: Mapping[str, Any] = field(default_factory=dict)
    media_fields: Tuple[str, ...] = ()
    children: Optional[ChildLink] = None


PROJECTIONS: Dict[str, ProjectionSpec] = {
    "books": ProjectionSpec(
        name="books",
        collection="books",
        search_fields=("title", "author", "description"),
        defaults={"totalChapters": 0, "readCount": 0},
        media_fields=("coverImage",),
        children=ChildLink(
            collection="chapters",
            foreign_key="bookId",
            order_field="chapterNumber",
            count_field="totalChapters",
            media_fields=("audioUrl",),
        ),
    ),
    "audio": ProjectionSpec(
        name="audio",
        collection="audio_contents",
        search_fields=("title", "description", "textContent", "tags"),
        defaults={"playCount": 0},
        media_fields=("audioUrl",),
    ),
    "wallpapers": ProjectionSpec(
        name="wallpapers",
        collection="wallpapers",
        search_fields=("title", "description", "tags"),
        defaults={"downloadCount": 0},
        media_fields=("imageUrl",),
    ),
    "events": ProjectionSpec(
        name="events",
        collection="calendar_events",
        search_fields=("title", "description", "type", "location"),
    ),
    "slides": ProjectionSpec(
        name="slides",
        collection="slide_contents",
        search_fields=("title", "description", "bookName"),
        defaults={"viewCount": 0},
        media_fields=("imageUrl",),
    ),
    "users": ProjectionSpec(
        name="users",
        collection="users",
        search_fields=("name", "email"),
    ),
}


@dataclass
class Page:
    items: List[Dict[str, Any]]
    page: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total / self.page_size)) if self.page_size else 1

    @property
    def has_more(self) -> bool:
        return self.page < self.total_pages

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": self.items,
            "page": self.page,
            "pageSize": self.page_size,
            "total": self.total,
            "totalPages": self.total_pages,
            "hasMore": self.has_more,
        }


def _text_values(value: Any) -> Iterable[str]:
    # Multilingual fields are nested {"hindi": ..., "english": ...} dicts.
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for nested in value.values():
            yield from _text_values(nested)
    elif isinstance(value, (list, tuple)):
        for nested in value:
            yield from _text_values(nested)


def matches_search(record: Mapping[str, Any], fields: Iterable[str], needle: str) -> bool:
    """Case-insensitive substring match over *fields* of *record*."""

    needle = needle.strip().lower()
    if not needle:
        return True
    return any(
        needle in text.lower()
        for name in fields
        for text in _text_values(record.get(name))
    )


def paginate(records: List[Dict[str, Any]], page: int, page_size: int) -> Page:
    if page < 1:
        raise ValidationError("Page numbers start at 1")
    if not 1 <= page_size <= MAX_PAGE_SIZE:
        raise ValidationError(f"Page size must be between 1 and {MAX_PAGE_SIZE}")
    start = (page - 1) * page_size
    return Page(
        items=records[start:start + page_size],
        page=page,
        page_size=page_size,
        total=len(records),
    )


def _newest_first(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(records, key=lambda record: timestamp_ms(record.get("createdAt")), reverse=True)


def _clean_fields(
    fields: Mapping[str, Any], *, entity: str, protected: Iterable[str] = _RESERVED_FIELDS
) -> Dict[str, Any]:
    if not isinstance(fields, Mapping):
        raise ValidationError(f"{entity.capitalize()} fields must be an object")
    reserved = sorted(set(protected).intersection(fields))
    if reserved:
        raise ValidationError(f"{entity.capitalize()} field(s) {', '.join(reserved)} cannot be set")
    return dict(fields)


class ListProjection:
    """CRUD plus newest-first paged listing for one flat collection."""

    def __init__(
        self,
        documents: DocumentStore,
        spec: ProjectionSpec,
        *,
        media: Optional[MediaReferenceResolver] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._documents = documents
        self._spec = spec
        self._media = media
        self._clock = clock

    @property
    def spec(self) -> ProjectionSpec:
        return self._spec

    @property
    def entity(self) -> str:
        return self._spec.name.rstrip("s") or self._spec.name

    @property
    def child_entity(self) -> str:
        link = self._require_link()
        return link.key.rstrip("s") or link.key

    def _require_link(self) -> ChildLink:
        link = self._spec.children
        if link is None:
            raise NotFoundError("collection", f"{self._spec.name}/chapters")
        return link

    def _protected_fields(self) -> frozenset:
        link = self._spec.children
        if link is None:
            return _RESERVED_FIELDS
        derived = {link.key, link.count_field} - {None}
        return _RESERVED_FIELDS | derived

    async def _call(self, action: str, operation: Awaitable[T]) -> T:
        try:
            return await operation
        except DocumentStoreError as error:
            LOGGER.error("Failed to %s in %s: %s", action, self._spec.collection, error)
            raise PersistenceError(f"Failed to {action}: {error}") from error

    async def list(
        self,
        *,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        search: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Page:
        filters = {"status": status} if status and status != "all" else None
        records = await self._call(
            f"list {self._spec.name}", self._documents.list(self._spec.collection, filters)
        )
        records = _newest_first(records)
        if search:
            records = [
                record
                for record in records
                if matches_search(record, self._spec.search_fields, search)
            ]
        return paginate(records, page, page_size)

    async def _children(self, record_id: str) -> List[Dict[str, Any]]:
        link = self._spec.children
        if link is None:
            return []
        children = await self._call(
            f"list {link.key}", self._documents.list(link.collection, {link.foreign_key: record_id})
        )
        return sorted(children, key=lambda child: coerce_order(child.get(link.order_field)))

    async def _load(self, record_id: str) -> Dict[str, Any]:
        record_id = str(record_id or "").strip()
        if not record_id:
            raise ValidationError(f"A valid {self.entity} id is required")
        record = await self._call(
            f"load {self.entity}", self._documents.get(self._spec.collection, record_id)
        )
        if record is None:
            raise NotFoundError(self.entity, record_id)
        return record

    async def get(self, record_id: str) -> Dict[str, Any]:
        record = await self._load(record_id)
        link = self._spec.children
        if link is not None:
            children = await self._children(record["id"])
            record[link.key] = children
            if link.count_field:
                record[link.count_field] = len(children)
        return record

    async def create(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        values = _clean_fields(fields, entity=self.entity, protected=self._protected_fields())
        now = utc_timestamp(self._clock())
        document = {**self._spec.defaults, **values, "createdAt": now, "updatedAt": now}
        record_id = await self._call(
            f"create {self.entity}", self._documents.create(self._spec.collection, document)
        )
        LOGGER.info("Created %s %s", self.entity, record_id)
        return {"id": record_id, **document}

    async def update(self, record_id: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        values = _clean_fields(fields, entity=self.entity, protected=self._protected_fields())
        values["updatedAt"] = utc_timestamp(self._clock())
        try:
            return await self._documents.update(self._spec.collection, record_id, values)
        except DocumentNotFoundError as error:
            raise NotFoundError(self.entity, record_id) from error
        except DocumentStoreError as error:
            raise PersistenceError(f"Failed to update {self.entity}: {error}") from error

    async def _release_media(
        self, record: Mapping[str, Any], fields: Iterable[str], report: DeleteReport
    ) -> None:
        if self._media is None:
            return
        for name in fields:
            url = record.get(name)
            if not isinstance(url, str) or not url.strip():
                continue
            try:
                await self._media.delete_by_url(url)
            except MediaError as error:
                warning = MediaDeleteWarning(url, str(error))
                LOGGER.warning("%s (%s is deleted anyway)", warning, record.get("id"))
                report.warnings.append(warning)

    async def delete(self, record_id: str) -> DeleteReport:
        """Delete children one by one, then media, then the record itself."""

        report = DeleteReport()
        link = self._spec.children
        try:
            for child in await self._children(record_id):
                await self._release_media(child, link.media_fields, report)
                removed = await self._call(
                    f"delete {link.key}", self._documents.delete(link.collection, str(child["id"]))
                )
                if removed:
                    report.chapters.append(str(child["id"]))
            record = await self._call(
                f"load {self.entity}", self._documents.get(self._spec.collection, record_id)
            )
            if record is not None:
                await self._release_media(record, self._spec.media_fields, report)
            removed = await self._call(
                f"delete {self.entity}", self._documents.delete(self._spec.collection, record_id)
            )
        except PersistenceError as error:
            if link is None:
                raise
            raise CascadeDeleteError(self.entity, record_id, str(error), report) from error
        if removed:
            report.records.append(record_id)
        return report

    # ------------------------------------------------------------------
    # Child records (book chapters)
    # ------------------------------------------------------------------
    async def _sync_count(self, record_id: str) -> None:
        """Store the live child count on the parent so listings stay accurate."""

        link = self._require_link()
        if not link.count_field:
            return
        children = await self._children(record_id)
        values = {link.count_field: len(children), "updatedAt": utc_timestamp(self._clock())}
        try:
            await self._documents.update(self._spec.collection, record_id, values)
        except DocumentNotFoundError:
            LOGGER.warning("Cannot update %s on missing %s %s", link.count_field, self.entity, record_id)
        except DocumentStoreError as error:
            raise PersistenceError(f"Failed to update {self.entity}: {error}") from error

    async def list_children(self, record_id: str) -> List[Dict[str, Any]]:
        self._require_link()
        record = await self._load(record_id)
        return await self._children(record["id"])

    async def get_child(self, record_id: str, child_id: str) -> Dict[str, Any]:
        link = self._require_link()
        child_id = str(child_id or "").strip()
        if not child_id:
            raise ValidationError(f"A valid {self.child_entity} id is required")
        child = await self._call(
            f"load {self.child_entity}", self._documents.get(link.collection, child_id)
        )
        if child is None or str(child.get(link.foreign_key)) != str(record_id):
            raise NotFoundError(self.child_entity, child_id)
        return child

    async def create_child(self, record_id: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        link = self._require_link()
        values = _clean_fields(
            fields,
            entity=self.child_entity,
            protected=_RESERVED_FIELDS | {link.foreign_key},
        )
        record = await self._load(record_id)
        now = utc_timestamp(self._clock())
        document = {**values, link.foreign_key: record["id"], "createdAt": now, "updatedAt": now}
        child_id = await self._call(
            f"create {self.child_entity}", self._documents.create(link.collection, document)
        )
        LOGGER.info("Created %s %s in %s %s", self.child_entity, child_id, self.entity, record["id"])
        await self._sync_count(record["id"])
        return {"id": child_id, **document}

    async def update_child(
        self, record_id: str, child_id: str, fields: Mapping[str, Any]
    ) -> Dict[str, Any]:
        link = self._require_link()
        values = _clean_fields(
            fields,
            entity=self.child_entity,
            protected=_RESERVED_FIELDS | {link.foreign_key},
        )
        await self.get_child(record_id, child_id)
        values["updatedAt"] = utc_timestamp(self._clock())
        try:
            return await self._documents.update(link.collection, child_id, values)
        except DocumentNotFoundError as error:
            raise NotFoundError(self.child_entity, child_id) from error
        except DocumentStoreError as error:
            raise PersistenceError(f"Failed to update {self.child_entity}: {error}") from error

    async def delete_child(self, record_id: str, child_id: str) -> DeleteReport:
        """Delete one child and its media; a child that is already gone is a no-op."""

        link = self._require_link()
        report = DeleteReport()
        child = await self._call(
            f"load {self.child_entity}", self._documents.get(link.collection, str(child_id))
        )
        if child is None:
            return report
        if str(child.get(link.foreign_key)) != str(record_id):
            raise NotFoundError(self.child_entity, child_id)
        await self._release_media(child, link.media_fields, report)
        removed = await self._call(
            f"delete {self.child_entity}", self._documents.delete(link.collection, str(child_id))
        )
        if removed:
            report.chapters.append(str(child_id))
        await self._sync_count(str(record_id))
        return report


def build_projections(
    documents: DocumentStore, media: Optional[MediaReferenceResolver] = None
) -> Dict[str, ListProjection]:
    return {
        name: ListProjection(documents, spec, media=media) for name, spec in PROJECTIONS.items()
    }


__all__ = [
    "ChildLink",
    "DEFAULT_PAGE_SIZE",
    "ListProjection",
    "MAX_PAGE_SIZE",
    "PROJECTIONS",
    "Page",
    "ProjectionSpec",
    "build_projections",
    "matches_search",
    "paginate",
]
