"""Plain-text rendering of the content tree for the command line."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, TextIO

from ..services.content_tree import CategoryContent, ChapterContent, ItemRecord
from .overview import STATUS_LABELS, collect_overview


@dataclass
class ConsoleSection:
    title: str
    entries: Iterable[str]


class ConsoleUI:
    """Minimal console UI that surfaces the stored content tree."""

    def __init__(self, tree: Sequence[CategoryContent], *, stream: Optional[TextIO] = None) -> None:
        self._tree = tree
        self._stream = stream

    def _print(self, text: str = "") -> None:
        print(text, file=self._stream)

    def run(self) -> None:
        """Render the category/chapter/item hierarchy."""

        self._print("Sadhana Console – Content Overview")
        self._print("=" * 40)
        for section in self._build_sections():
            self._print(section.title)
            self._print("-" * len(section.title))
            for entry in section.entries:
                self._print(entry)
            self._print()

        snapshot = collect_overview(self._tree)
        self._print(
            f"{snapshot.category_count} categories, {snapshot.chapter_count} chapters, "
            f"{snapshot.item_count} items"
        )
        totals = ", ".join(
            f"{STATUS_LABELS[key]}: {count}" for key, count in snapshot.item_totals.items()
        )
        self._print(totals)

    def _build_sections(self) -> Iterable[ConsoleSection]:
        for content in self._tree:
            category = content.category
            yield ConsoleSection(
                title=f"Category: {category.name} [{category.status}] ({category.id})",
                entries=self._format_chapters(content),
            )

    def _format_chapters(self, content: CategoryContent) -> Iterable[str]:
        if not content.chapters:
            yield "  No chapters"
            return

        for chapter in content.chapters:
            yield from self._format_chapter_details(chapter)

    def _format_chapter_details(self, content: ChapterContent) -> Iterable[str]:
        header = f"  {content.chapter.order}. Chapter: {content.chapter.title}"
        if not content.audio_items:
            yield f"{header} (no items)"
            return

        yield header
        for item in content.audio_items:
            yield f"    {item.order}. Item: {item.title}" + self._format_item_meta(item)

    @staticmethod
    def _format_item_meta(item: ItemRecord) -> str:
        parts = [item.status]
        if item.has_media:
            parts.append("audio")
        if item.duration:
            parts.append(item.duration)
        return " (" + ", ".join(parts) + ")"


__all__ = ["ConsoleSection", "ConsoleUI"]
