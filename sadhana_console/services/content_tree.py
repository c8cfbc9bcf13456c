"""Category → Chapter → Item content tree for the AI-audio library.

The three levels live in three flat collections linked by ``categoryId`` and
``chapterId`` reference fields. The document store enforces nothing, so the
store below keeps the tree consistent itself: deletes cascade child-first,
one awaited step at a time, and reads assemble nested views ordered by the
advisory ``order`` field.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

from .documents import DocumentNotFoundError, DocumentStore, DocumentStoreError
from .errors import (
    CascadeDeleteError,
    ContentError,
    DeleteReport,
    MediaDeleteWarning,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from .media import MediaError, MediaReferenceResolver, MediaUpload


LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

CATEGORIES_COLLECTION = "aiAudioCategories"
CHAPTERS_COLLECTION = "aiAudioChapters"
ITEMS_COLLECTION = "aiAudioItems"
MEDIA_FOLDER = "ai-audio"

PUBLISHED = "Published"
DRAFT = "Draft"
PUBLICATION_STATUSES: Tuple[str, ...] = (PUBLISHED, DRAFT)

_LEADING_INTEGER = re.compile(r"\s*([+-]?\d+)")

Order = Union[int, float]


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """Return an ISO-8601 UTC timestamp with millisecond precision."""

    moment = (moment or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def coerce_order(value: Any) -> Order:
    """Numeric sort key for ``order``; anything unusable sorts as 0."""

    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else 0
    if isinstance(value, str):
        match = _LEADING_INTEGER.match(value)
        return int(match.group(1)) if match else 0
    return 0


def timestamp_ms(value: Any) -> float:
    """Milliseconds since the epoch for a stored timestamp, 0 when unknown."""

    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str) and value.strip():
        try:
            moment = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return 0.0
    else:
        return 0.0
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp() * 1000.0


def _normalize_status(value: Any) -> str:
    return PUBLISHED if str(value or "").strip().lower() == "published" else DRAFT


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _document_fields(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if key != "id" and value is not None}


def _require_id(value: Any, entity: str) -> str:
    identifier = str(value or "").strip()
    if not identifier or "/" in identifier:
        raise ValidationError(f"A valid {entity} id is required")
    return identifier


def _require_text(value: Any, label: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"{label} must not be empty")
    return text


def _check_status(value: Any) -> str:
    if value not in PUBLICATION_STATUSES:
        raise ValidationError(
            f"Status must be one of {', '.join(PUBLICATION_STATUSES)}; got {value!r}"
        )
    return str(value)


def _check_order(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("Order must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and re.fullmatch(r"\s*[+-]?\d+\s*", value):
        return int(value)
    raise ValidationError(f"Order must be an integer; got {value!r}")


@dataclass
class CategoryRecord:
    id: str
    name: str
    description: str = ""
    status: str = DRAFT
    cover_image: Optional[str] = None
    created_at: str = ""
    updated_at: Optional[str] = None

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "CategoryRecord":
        return cls(
            id=str(document["id"]),
            name=str(document.get("name") or ""),
            description=str(document.get("description") or ""),
            status=_normalize_status(document.get("status")),
            cover_image=_optional_text(document.get("coverImage")),
            created_at=str(document.get("createdAt") or ""),
            updated_at=_optional_text(document.get("updatedAt")),
        )

    def to_document(self) -> Dict[str, Any]:
        return _document_fields(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "coverImage": self.cover_image,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class ChapterRecord:
    id: str
    category_id: str
    title: str
    description: str = ""
    order: Order = 0
    created_at: str = ""
    updated_at: Optional[str] = None

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "ChapterRecord":
        return cls(
            id=str(document["id"]),
            category_id=str(document.get("categoryId") or ""),
            title=str(document.get("title") or ""),
            description=str(document.get("description") or ""),
            order=coerce_order(document.get("order")),
            created_at=str(document.get("createdAt") or ""),
            updated_at=_optional_text(document.get("updatedAt")),
        )

    def to_document(self) -> Dict[str, Any]:
        return _document_fields(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "categoryId": self.category_id,
            "title": self.title,
            "description": self.description,
            "order": self.order,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class ItemRecord:
    id: str
    chapter_id: str
    category_id: str
    title: str
    text: str = ""
    status: str = DRAFT
    order: Order = 0
    audio_file: Optional[str] = None
    audio_url: Optional[str] = None
    duration: Optional[str] = None
    created_at: str = ""
    updated_at: Optional[str] = None

    @property
    def has_media(self) -> bool:
        return bool(self.audio_url)

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "ItemRecord":
        return cls(
            id=str(document["id"]),
            chapter_id=str(document.get("chapterId") or ""),
            category_id=str(document.get("categoryId") or ""),
            title=str(document.get("title") or ""),
            text=str(document.get("text") or ""),
            status=_normalize_status(document.get("status")),
            order=coerce_order(document.get("order")),
            audio_file=_optional_text(document.get("audioFile")),
            audio_url=_optional_text(document.get("audioUrl")),
            duration=_optional_text(document.get("duration")),
            created_at=str(document.get("createdAt") or ""),
            updated_at=_optional_text(document.get("updatedAt")),
        )

    def to_document(self) -> Dict[str, Any]:
        return _document_fields(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "chapterId": self.chapter_id,
            "categoryId": self.category_id,
            "title": self.title,
            "text": self.text,
            "status": self.status,
            "order": self.order,
            "audioFile": self.audio_file,
            "audioUrl": self.audio_url,
            "duration": self.duration,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class ChapterContent:
    chapter: ChapterRecord
    audio_items: List[ItemRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.chapter.to_dict(),
            "audioItems": [item.to_dict() for item in self.audio_items],
        }


@dataclass
class CategoryContent:
    category: CategoryRecord
    chapters: List[ChapterContent] = field(default_factory=list)

    @property
    def chapter_count(self) -> int:
        return len(self.chapters)

    @property
    def item_count(self) -> int:
        return sum(len(chapter.audio_items) for chapter in self.chapters)

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.category.to_dict(),
            "chapters": [chapter.to_dict() for chapter in self.chapters],
        }


# Mutable fields per entity: python name -> stored key.
_CATEGORY_FIELDS: Dict[str, str] = {
    "name": "name",
    "description": "description",
    "status": "status",
    "cover_image": "coverImage",
}
_CHAPTER_FIELDS: Dict[str, str] = {
    "title": "title",
    "description": "description",
    "order": "order",
}
_ITEM_FIELDS: Dict[str, str] = {
    "title": "title",
    "text": "text",
    "status": "status",
    "order": "order",
    "audio_file": "audioFile",
    "audio_url": "audioUrl",
    "duration": "duration",
}
_IMMUTABLE_FIELDS = frozenset(
    {"id", "category_id", "chapter_id", "created_at", "updated_at"}
)


def _clean_value(name: str, value: Any) -> Any:
    if name in ("name", "title"):
        return _require_text(value, name.capitalize())
    if name == "status":
        return _check_status(value)
    if name == "order":
        return _check_order(value)
    if name in ("description", "text"):
        return "" if value is None else str(value)
    return _optional_text(value)


def _prepare_update(
    entity: str, fields: Mapping[str, Any], allowed: Mapping[str, str], now: str
) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    for name, value in fields.items():
        if name in _IMMUTABLE_FIELDS:
            raise ValidationError(f"{entity.capitalize()} field {name!r} cannot be changed")
        if name not in allowed:
            raise ValidationError(f"Unknown {entity} field {name!r}")
        changes[allowed[name]] = _clean_value(name, value)
    changes["updatedAt"] = now
    return changes


def _sorted_by_order(records: List[T], key: Callable[[T], Order]) -> List[T]:
    # sorted() is stable, so equal orders keep the store's natural order.
    return sorted(records, key=key)


class ContentTreeStore:
    """CRUD and nested reads over the three-level AI-audio tree."""

    def __init__(
        self,
        documents: DocumentStore,
        media: MediaReferenceResolver,
        *,
        verify_parents: bool = False,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._documents = documents
        self._media = media
        self._verify_parents = verify_parents
        self._clock = clock

    @property
    def documents(self) -> DocumentStore:
        return self._documents

    @property
    def media(self) -> MediaReferenceResolver:
        return self._media

    def _now(self) -> str:
        return utc_timestamp(self._clock())

    async def _call(self, action: str, operation: Awaitable[T]) -> T:
        try:
            return await operation
        except DocumentStoreError as error:
            LOGGER.error("Failed to %s: %s", action, error)
            raise PersistenceError(f"Failed to {action}: {error}") from error

    async def _create(self, collection: str, document: Dict[str, Any], action: str) -> str:
        return await self._call(action, self._documents.create(collection, document))

    async def _update(
        self, collection: str, entity: str, record_id: str, changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        try:
            return await self._documents.update(collection, record_id, changes)
        except DocumentNotFoundError as error:
            raise NotFoundError(entity, record_id) from error
        except DocumentStoreError as error:
            LOGGER.error("Failed to update %s %s: %s", entity, record_id, error)
            raise PersistenceError(f"Failed to update {entity}: {error}") from error

    async def _get(self, collection: str, entity: str, record_id: str) -> Dict[str, Any]:
        record_id = _require_id(record_id, entity)
        document = await self._call(
            f"load {entity}", self._documents.get(collection, record_id)
        )
        if document is None:
            raise NotFoundError(entity, record_id)
        return document

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------
    async def list_categories(self) -> List[CategoryRecord]:
        """Return every category, newest first."""

        documents = await self._call(
            "list categories", self._documents.list(CATEGORIES_COLLECTION)
        )
        records = [CategoryRecord.from_document(document) for document in documents]
        return sorted(records, key=lambda record: timestamp_ms(record.created_at), reverse=True)

    async def get_category(self, category_id: str) -> CategoryRecord:
        document = await self._get(CATEGORIES_COLLECTION, "category", category_id)
        return CategoryRecord.from_document(document)

    async def create_category(
        self,
        name: str,
        description: str = "",
        status: str = DRAFT,
        *,
        cover_image: Optional[str] = None,
    ) -> CategoryRecord:
        now = self._now()
        document: Dict[str, Any] = {
            "name": _require_text(name, "Name"),
            "description": str(description or "").strip(),
            "status": _check_status(status),
            "createdAt": now,
            "updatedAt": now,
        }
        if cover_image:
            document["coverImage"] = cover_image
        category_id = await self._create(CATEGORIES_COLLECTION, document, "create category")
        LOGGER.info("Created category %s (%s)", category_id, document["name"])
        return CategoryRecord.from_document({"id": category_id, **document})

    async def update_category(self, category_id: str, fields: Mapping[str, Any]) -> CategoryRecord:
        category_id = _require_id(category_id, "category")
        changes = _prepare_update("category", fields, _CATEGORY_FIELDS, self._now())
        merged = await self._update(CATEGORIES_COLLECTION, "category", category_id, changes)
        LOGGER.debug("Updated category %s fields=%s", category_id, sorted(changes))
        return CategoryRecord.from_document(merged)

    async def delete_category(self, category_id: str) -> DeleteReport:
        """Remove every chapter (and their items) first, then the category."""

        category_id = _require_id(category_id, "category")
        report = DeleteReport()
        chapters = await self._cascade_step(
            "category",
            category_id,
            report,
            self._call(
                "list chapters",
                self._documents.list(CHAPTERS_COLLECTION, {"categoryId": category_id}),
            ),
        )
        LOGGER.info(
            "Deleting category %s with %d chapter(s)", category_id, len(chapters)
        )
        for chapter in chapters:
            report.merge(
                await self._cascade_step(
                    "category", category_id, report, self.delete_chapter(str(chapter["id"]))
                )
            )
        removed = await self._cascade_step(
            "category",
            category_id,
            report,
            self._call(
                "delete category", self._documents.delete(CATEGORIES_COLLECTION, category_id)
            ),
        )
        if removed:
            report.categories.append(category_id)
        return report

    # ------------------------------------------------------------------
    # Chapters
    # ------------------------------------------------------------------
    async def list_chapters(self, category_id: str) -> List[ChapterRecord]:
        """Chapters of a category sorted by ``order``."""

        category_id = _require_id(category_id, "category")
        documents = await self._call(
            "list chapters",
            self._documents.list(CHAPTERS_COLLECTION, {"categoryId": category_id}),
        )
        records = [ChapterRecord.from_document(document) for document in documents]
        return _sorted_by_order(records, key=lambda record: record.order)

    async def get_chapter(self, chapter_id: str) -> ChapterRecord:
        document = await self._get(CHAPTERS_COLLECTION, "chapter", chapter_id)
        return ChapterRecord.from_document(document)

    async def create_chapter(
        self,
        category_id: str,
        title: str,
        description: str = "",
        order: Any = 0,
    ) -> ChapterRecord:
        category_id = _require_id(category_id, "category")
        if self._verify_parents:
            await self.get_category(category_id)
        now = self._now()
        document: Dict[str, Any] = {
            "categoryId": category_id,
            "title": _require_text(title, "Title"),
            "description": str(description or "").strip(),
            "order": _check_order(order),
            "createdAt": now,
            "updatedAt": now,
        }
        chapter_id = await self._create(CHAPTERS_COLLECTION, document, "create chapter")
        LOGGER.info("Created chapter %s in category %s", chapter_id, category_id)
        return ChapterRecord.from_document({"id": chapter_id, **document})

    async def update_chapter(self, chapter_id: str, fields: Mapping[str, Any]) -> ChapterRecord:
        chapter_id = _require_id(chapter_id, "chapter")
        changes = _prepare_update("chapter", fields, _CHAPTER_FIELDS, self._now())
        merged = await self._update(CHAPTERS_COLLECTION, "chapter", chapter_id, changes)
        return ChapterRecord.from_document(merged)

    async def delete_chapter(self, chapter_id: str) -> DeleteReport:
        """Remove every item of the chapter first, then the chapter."""

        chapter_id = _require_id(chapter_id, "chapter")
        report = DeleteReport()
        items = await self._cascade_step(
            "chapter",
            chapter_id,
            report,
            self._call(
                "list items",
                self._documents.list(ITEMS_COLLECTION, {"chapterId": chapter_id}),
            ),
        )
        LOGGER.info("Deleting chapter %s with %d item(s)", chapter_id, len(items))
        for item in items:
            report.merge(
                await self._cascade_step(
                    "chapter", chapter_id, report, self.delete_item(str(item["id"]))
                )
            )
        removed = await self._cascade_step(
            "chapter",
            chapter_id,
            report,
            self._call(
                "delete chapter", self._documents.delete(CHAPTERS_COLLECTION, chapter_id)
            ),
        )
        if removed:
            report.chapters.append(chapter_id)
        return report

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------
    async def list_items(self, chapter_id: str) -> List[ItemRecord]:
        """Items of a chapter sorted by ``order``."""

        chapter_id = _require_id(chapter_id, "chapter")
        documents = await self._call(
            "list items",
            self._documents.list(ITEMS_COLLECTION, {"chapterId": chapter_id}),
        )
        records = [ItemRecord.from_document(document) for document in documents]
        return _sorted_by_order(records, key=lambda record: record.order)

    async def get_item(self, item_id: str) -> ItemRecord:
        document = await self._get(ITEMS_COLLECTION, "item", item_id)
        return ItemRecord.from_document(document)

    async def create_item(
        self,
        chapter_id: str,
        category_id: str,
        title: str,
        text: str = "",
        status: str = DRAFT,
        order: Any = 0,
        *,
        duration: Optional[str] = None,
    ) -> ItemRecord:
        chapter_id = _require_id(chapter_id, "chapter")
        category_id = _require_id(category_id, "category")
        if self._verify_parents:
            chapter = await self.get_chapter(chapter_id)
            if chapter.category_id != category_id:
                raise ValidationError(
                    f"Chapter {chapter_id!r} belongs to category {chapter.category_id!r}, "
                    f"not {category_id!r}"
                )
        now = self._now()
        document: Dict[str, Any] = {
            "chapterId": chapter_id,
            "categoryId": category_id,
            "title": _require_text(title, "Title"),
            "text": str(text or ""),
            "status": _check_status(status),
            "order": _check_order(order),
            "createdAt": now,
            "updatedAt": now,
        }
        if duration:
            document["duration"] = str(duration)
        item_id = await self._create(ITEMS_COLLECTION, document, "create item")
        LOGGER.info("Created item %s in chapter %s", item_id, chapter_id)
        return ItemRecord.from_document({"id": item_id, **document})

    async def update_item(self, item_id: str, fields: Mapping[str, Any]) -> ItemRecord:
        item_id = _require_id(item_id, "item")
        changes = _prepare_update("item", fields, _ITEM_FIELDS, self._now())
        merged = await self._update(ITEMS_COLLECTION, "item", item_id, changes)
        return ItemRecord.from_document(merged)

    async def attach_item_media(self, item_id: str, upload: MediaUpload) -> ItemRecord:
        """Upload *upload* and point the item's media reference at it."""

        item = await self.get_item(item_id)
        try:
            url = await self._media.upload(upload, f"{MEDIA_FOLDER}/{item.id}")
        except MediaError as error:
            raise PersistenceError(f"Failed to upload {upload.filename}: {error}") from error
        LOGGER.info("Attached %s to item %s", url, item.id)
        return await self.update_item(
            item.id, {"audio_file": upload.filename, "audio_url": url}
        )

    async def delete_item(self, item_id: str) -> DeleteReport:
        """Best-effort media cleanup, then remove the item record."""

        item_id = _require_id(item_id, "item")
        report = DeleteReport()
        document = await self._call("load item", self._documents.get(ITEMS_COLLECTION, item_id))
        url = _optional_text((document or {}).get("audioUrl"))
        if url:
            try:
                await self._media.delete_by_url(url)
            except MediaError as error:
                warning = MediaDeleteWarning(url, str(error))
                LOGGER.warning("%s (item %s is deleted anyway)", warning, item_id)
                report.warnings.append(warning)
        removed = await self._call(
            "delete item", self._documents.delete(ITEMS_COLLECTION, item_id)
        )
        if removed:
            report.items.append(item_id)
        return report

    async def _cascade_step(
        self,
        entity: str,
        record_id: str,
        report: DeleteReport,
        operation: Awaitable[T],
    ) -> T:
        try:
            return await operation
        except CascadeDeleteError as error:
            report.merge(error.report)
            raise CascadeDeleteError(entity, record_id, str(error), report) from error
        except ContentError as error:
            raise CascadeDeleteError(entity, record_id, str(error), report) from error

    # ------------------------------------------------------------------
    # Nested reads
    # ------------------------------------------------------------------
    async def get_category_with_content(self, category_id: str) -> CategoryContent:
        """The category with its chapters and their items, all ordered.

        A failing chapter or item listing degrades to an empty list; only a
        failure to load the category itself fails the read.
        """

        category = await self.get_category(category_id)
        try:
            chapters = await self.list_chapters(category.id)
        except PersistenceError as error:
            LOGGER.warning("Chapters of category %s unavailable: %s", category.id, error)
            chapters = []

        results = await asyncio.gather(
            *(self.list_items(chapter.id) for chapter in chapters),
            return_exceptions=True,
        )
        contents: List[ChapterContent] = []
        for chapter, result in zip(chapters, results):
            if isinstance(result, BaseException):
                if not isinstance(result, ContentError):
                    raise result
                LOGGER.warning("Items of chapter %s unavailable: %s", chapter.id, result)
                result = []
            contents.append(ChapterContent(chapter=chapter, audio_items=result))
        return CategoryContent(category=category, chapters=contents)

    async def get_all_categories_with_content(self) -> List[CategoryContent]:
        """Every category, newest first, each with its content tree."""

        categories = await self.list_categories()
        results = await asyncio.gather(
            *(self.get_category_with_content(category.id) for category in categories),
            return_exceptions=True,
        )
        contents: List[CategoryContent] = []
        for category, result in zip(categories, results):
            if isinstance(result, BaseException):
                if not isinstance(result, ContentError):
                    raise result
                LOGGER.warning("Content of category %s unavailable: %s", category.id, result)
                result = CategoryContent(category=category, chapters=[])
            contents.append(result)
        return contents

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    async def sweep_orphans(self) -> DeleteReport:
        """Cascade away chapters and items whose parent no longer exists."""

        report = DeleteReport()
        categories = await self._call(
            "list categories", self._documents.list(CATEGORIES_COLLECTION)
        )
        category_ids = {str(document["id"]) for document in categories}
        chapters = await self._call("list chapters", self._documents.list(CHAPTERS_COLLECTION))
        for document in chapters:
            if str(document.get("categoryId") or "") not in category_ids:
                LOGGER.info(
                    "Sweeping orphaned chapter %s (category %s missing)",
                    document["id"],
                    document.get("categoryId"),
                )
                report.merge(await self.delete_chapter(str(document["id"])))

        surviving_chapters = {
            str(document["id"])
            for document in chapters
            if str(document["id"]) not in report.chapters
        }
        items = await self._call("list items", self._documents.list(ITEMS_COLLECTION))
        for document in items:
            if str(document.get("chapterId") or "") not in surviving_chapters:
                LOGGER.info(
                    "Sweeping orphaned item %s (chapter %s missing)",
                    document["id"],
                    document.get("chapterId"),
                )
                report.merge(await self.delete_item(str(document["id"])))
        return report


__all__ = [
    "CATEGORIES_COLLECTION",
    "CHAPTERS_COLLECTION",
    "ITEMS_COLLECTION",
    "PUBLICATION_STATUSES",
    "CategoryContent",
    "CategoryRecord",
    "ChapterContent",
    "ChapterRecord",
    "ContentTreeStore",
    "ItemRecord",
    "coerce_order",
    "timestamp_ms",
    "utc_timestamp",
]
