"""Error taxonomy shared by the content services."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


class ContentError(RuntimeError):
    """Base class for failures surfaced to the console."""

    kind = "error"


class ValidationError(ContentError):
    """Caller supplied input that the store refuses to persist."""

    kind = "validation"


class NotFoundError(ContentError):
    """The targeted record does not exist (any more)."""

    kind = "not_found"

    def __init__(self, entity: str, record_id: str) -> None:
        super().__init__(f"{entity.capitalize()} {record_id!r} not found")
        self.entity = entity
        self.record_id = record_id


class PersistenceError(ContentError):
    """The document store or media store failed."""

    kind = "persistence"


class AuthenticationError(ContentError):
    """No signed-in identity, or the credential was rejected."""

    kind = "unauthenticated"


class MediaDeleteWarning(UserWarning):
    """A media object could not be removed; the record delete went ahead."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Could not delete media {url}: {reason}")
        self.url = url
        self.reason = reason


@dataclass
class DeleteReport:
    """What a (possibly cascading) delete actually removed."""

    categories: List[str] = field(default_factory=list)
    chapters: List[str] = field(default_factory=list)
    items: List[str] = field(default_factory=list)
    # Flat-collection records (books, wallpapers, ...).
    records: List[str] = field(default_factory=list)
    warnings: List[MediaDeleteWarning] = field(default_factory=list)

    @property
    def removed_count(self) -> int:
        return len(self.categories) + len(self.chapters) + len(self.items) + len(self.records)

    def merge(self, other: "DeleteReport") -> "DeleteReport":
        self.categories.extend(other.categories)
        self.chapters.extend(other.chapters)
        self.items.extend(other.items)
        self.records.extend(other.records)
        self.warnings.extend(other.warnings)
        return self

    def to_dict(self) -> dict:
        return {
            "categories": list(self.categories),
            "chapters": list(self.chapters),
            "items": list(self.items),
            "records": list(self.records),
            "warnings": [str(warning) for warning in self.warnings],
        }


class CascadeDeleteError(ContentError):
    """A multi-step delete stopped partway; earlier steps are not rolled back."""

    kind = "cascade"

    def __init__(self, entity: str, record_id: str, reason: str, report: DeleteReport) -> None:
        super().__init__(f"Deleting {entity} {record_id!r} stopped partway: {reason}")
        self.entity = entity
        self.record_id = record_id
        self.report = report


__all__ = [
    "AuthenticationError",
    "CascadeDeleteError",
    "ContentError",
    "DeleteReport",
    "MediaDeleteWarning",
    "NotFoundError",
    "PersistenceError",
    "ValidationError",
]
