"""Shared helpers for building overview snapshots of the content tree."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Sequence

from ..services.content_tree import PUBLISHED, CategoryContent


STATUS_LABELS: Dict[str, str] = {
    "published": "Published",
    "draft": "Draft",
    "with_media": "With audio",
    "without_media": "Missing audio",
}


@dataclass
class OverviewSnapshot:
    categories: List[CategoryContent]
    category_count: int
    chapter_count: int
    item_count: int
    item_totals: Dict[str, int]


def collect_overview(tree: Sequence[CategoryContent]) -> OverviewSnapshot:
    """Aggregate a loaded content tree into a convenient snapshot for UIs."""

    chapter_count = 0
    item_count = 0
    item_totals = {key: 0 for key in STATUS_LABELS.keys()}

    for category in tree:
        chapter_count += category.chapter_count
        for chapter in category.chapters:
            for item in chapter.audio_items:
                item_count += 1
                item_totals["published" if item.status == PUBLISHED else "draft"] += 1
                item_totals["with_media" if item.has_media else "without_media"] += 1

    return OverviewSnapshot(
        categories=list(tree),
        category_count=len(tree),
        chapter_count=chapter_count,
        item_count=item_count,
        item_totals=item_totals,
    )


__all__ = ["STATUS_LABELS", "OverviewSnapshot", "collect_overview"]
