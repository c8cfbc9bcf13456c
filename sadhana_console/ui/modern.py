"""A Rich-powered rendering of the AI-audio content tree."""

from __future__ import annotations

from typing import Optional, Sequence

from rich import box
from rich.columns import Columns
from rich.console import Console, Group
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from ..services.content_tree import (
    PUBLISHED,
    CategoryContent,
    CategoryRecord,
    ChapterRecord,
    ItemRecord,
)
from .overview import STATUS_LABELS, OverviewSnapshot, collect_overview


def _status_style(status: str) -> str:
    return "green" if status == PUBLISHED else "yellow"


class ModernUI:
    """Render the category/chapter/item tree next to a totals panel."""

    def __init__(self, tree: Sequence[CategoryContent], *, console: Optional[Console] = None) -> None:
        self._tree = tree
        self._console = console or Console()

    def run(self) -> None:
        snapshot = collect_overview(self._tree)
        console = self._console

        console.clear()
        console.rule("[bold magenta]Sadhana Console – AI Audio Library")

        if snapshot.category_count == 0:
            console.print(
                Panel(
                    "No categories yet.\n"
                    "Create one through [bold]POST /api/ai-audio/categories[/bold].",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return

        tree_panel = Panel(
            self._build_tree(snapshot),
            title="Library",
            border_style="cyan",
            box=box.ROUNDED,
        )
        console.print(Columns([tree_panel, self._build_stats_panel(snapshot)], expand=True, equal=True))

    def _build_tree(self, snapshot: OverviewSnapshot) -> Tree:
        tree = Tree("[bold cyan]Categories", guide_style="cyan")

        for content in snapshot.categories:
            category_node = tree.add(self._category_label(content.category))
            if not content.chapters:
                category_node.add("[dim]No chapters yet")
                continue

            for chapter in content.chapters:
                chapter_node = category_node.add(self._chapter_label(chapter.chapter))
                if not chapter.audio_items:
                    chapter_node.add("[dim]No items yet")
                    continue
                for item in chapter.audio_items:
                    chapter_node.add(self._item_label(item))

        return tree

    @staticmethod
    def _category_label(category: CategoryRecord) -> Text:
        label = Text(category.name, style="bold")
        label.append(f"  {category.status}", style=_status_style(category.status))
        if category.description:
            label.append("\n")
            label.append(category.description, style="dim")
        return label

    @staticmethod
    def _chapter_label(chapter: ChapterRecord) -> Text:
        label = Text(f"{chapter.order}. ", style="dim")
        label.append(chapter.title, style="bright_cyan")
        if chapter.description:
            label.append("\n")
            label.append(chapter.description, style="dim")
        return label

    @staticmethod
    def _item_label(item: ItemRecord) -> Text:
        label = Text(f"{item.order}. ", style="dim")
        label.append(item.title, style="white")
        label.append(f"  {item.status}", style=_status_style(item.status))
        if item.has_media:
            label.append("  🎧", style="green")
            if item.duration:
                label.append(f" {item.duration}", style="green")
        else:
            label.append("  no audio", style="dim")
        return label

    @staticmethod
    def _build_stats_panel(snapshot: OverviewSnapshot) -> Panel:
        metrics = Table.grid(expand=True, padding=(0, 1))
        metrics.add_column(style="dim")
        metrics.add_column(justify="right", style="bold")
        metrics.add_row("Categories", str(snapshot.category_count))
        metrics.add_row("Chapters", str(snapshot.chapter_count))
        metrics.add_row("Items", str(snapshot.item_count))

        status_table = Table.grid(expand=True, padding=(0, 1))
        status_table.add_column(style="dim")
        status_table.add_column(justify="right", style="bold")
        for key, label in STATUS_LABELS.items():
            status_table.add_row(label, str(snapshot.item_totals.get(key, 0)))

        body = Group(metrics, Rule(style="magenta"), status_table)
        return Panel(body, title="At a glance", border_style="magenta", box=box.ROUNDED)


__all__ = ["ModernUI"]
