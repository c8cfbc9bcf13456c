"""Headline statistics for the console landing page."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .content_tree import CATEGORIES_COLLECTION, CHAPTERS_COLLECTION, ITEMS_COLLECTION
from .documents import DocumentStore, DocumentStoreError
from .errors import PersistenceError
from .projections import PROJECTIONS


LOGGER = logging.getLogger(__name__)


@dataclass
class DashboardStats:
    total_users: int = 0
    active_users: int = 0
    total_books: int = 0
    total_audios: int = 0
    total_wallpapers: int = 0
    total_events: int = 0
    total_slides: int = 0
    ai_audio_categories: int = 0
    ai_audio_chapters: int = 0
    ai_audio_items: int = 0
    monthly_growth: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        def camel(name: str) -> str:
            head, *rest = name.split("_")
            return head + "".join(part.capitalize() for part in rest)

        return {camel(key): value for key, value in asdict(self).items()}


def month_key(moment: datetime) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


def previous_month_key(moment: datetime) -> str:
    if moment.month == 1:
        return f"{moment.year - 1:04d}-12"
    return f"{moment.year:04d}-{moment.month - 1:02d}"


def monthly_growth(created_values: Iterable[Any], now: datetime) -> float:
    """Percent change of signups this month against last month."""

    this_month = month_key(now)
    last_month = previous_month_key(now)
    current = previous = 0
    for value in created_values:
        if not isinstance(value, str):
            continue
        if value.startswith(this_month):
            current += 1
        elif value.startswith(last_month):
            previous += 1
    if previous == 0:
        return 0.0
    return round((current - previous) / previous * 100.0, 2)


class DashboardAggregator:
    def __init__(self, documents: DocumentStore) -> None:
        self._documents = documents

    async def _fetch(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        try:
            return await self._documents.list(collection, filters)
        except DocumentStoreError as error:
            raise PersistenceError(f"Failed to count {collection}: {error}") from error

    async def collect(self, now: Optional[datetime] = None) -> DashboardStats:
        now = now or datetime.now(timezone.utc)
        collections = [
            PROJECTIONS["users"].collection,
            PROJECTIONS["books"].collection,
            PROJECTIONS["audio"].collection,
            PROJECTIONS["wallpapers"].collection,
            PROJECTIONS["events"].collection,
            PROJECTIONS["slides"].collection,
            CATEGORIES_COLLECTION,
            CHAPTERS_COLLECTION,
            ITEMS_COLLECTION,
        ]
        results = await asyncio.gather(*(self._fetch(name) for name in collections))
        active = await self._fetch(PROJECTIONS["users"].collection, {"status": "active"})
        users, books, audios, wallpapers, events, slides, categories, chapters, items = results
        stats = DashboardStats(
            total_users=len(users),
            active_users=len(active),
            total_books=len(books),
            total_audios=len(audios),
            total_wallpapers=len(wallpapers),
            total_events=len(events),
            total_slides=len(slides),
            ai_audio_categories=len(categories),
            ai_audio_chapters=len(chapters),
            ai_audio_items=len(items),
            monthly_growth=monthly_growth((user.get("createdAt") for user in users), now),
        )
        LOGGER.debug("Dashboard stats collected: %s", stats)
        return stats


__all__ = [
    "DashboardAggregator",
    "DashboardStats",
    "month_key",
    "monthly_growth",
    "previous_month_key",
]
