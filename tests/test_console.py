from __future__ import annotations

import io

from rich.console import Console

from sadhana_console.services.content_tree import (
    CategoryContent,
    CategoryRecord,
    ChapterContent,
    ChapterRecord,
    ItemRecord,
)
from sadhana_console.ui.console import ConsoleUI
from sadhana_console.ui.modern import ModernUI
from sadhana_console.ui.overview import collect_overview


def _tree():
    meditation = CategoryRecord(id="cat-1", name="Meditation", status="Published")
    morning = ChapterRecord(id="ch-1", category_id="cat-1", title="Morning", order=1)
    evening = ChapterRecord(id="ch-2", category_id="cat-1", title="Evening", order=2)
    sunrise = ItemRecord(
        id="it-1",
        chapter_id="ch-1",
        category_id="cat-1",
        title="Sunrise",
        status="Published",
        order=1,
        audio_url="/media/ai-audio/it-1/sunrise.mp3",
        duration="5:00",
    )
    stillness = ItemRecord(id="it-2", chapter_id="ch-1", category_id="cat-1", title="Stillness", order=2)
    return [
        CategoryContent(
            category=meditation,
            chapters=[
                ChapterContent(chapter=morning, audio_items=[sunrise, stillness]),
                ChapterContent(chapter=evening),
            ],
        ),
        CategoryContent(category=CategoryRecord(id="cat-2", name="Chanting")),
    ]


def test_console_renders_hierarchy_and_totals() -> None:
    stream = io.StringIO()

    ConsoleUI(_tree(), stream=stream).run()

    lines = stream.getvalue().splitlines()
    assert lines[0] == "Sadhana Console – Content Overview"
    assert "Category: Meditation [Published] (cat-1)" in lines
    assert "  1. Chapter: Morning" in lines
    assert "    1. Item: Sunrise (Published, audio, 5:00)" in lines
    assert "    2. Item: Stillness (Draft)" in lines
    assert "  2. Chapter: Evening (no items)" in lines
    assert "Category: Chanting [Draft] (cat-2)" in lines
    assert "  No chapters" in lines
    assert "2 categories, 2 chapters, 2 items" in lines
    assert lines[-1] == "Published: 1, Draft: 1, With audio: 1, Missing audio: 1"


def test_overview_snapshot_counts() -> None:
    snapshot = collect_overview(_tree())

    assert snapshot.category_count == 2
    assert snapshot.chapter_count == 2
    assert snapshot.item_count == 2
    assert snapshot.item_totals == {
        "published": 1,
        "draft": 1,
        "with_media": 1,
        "without_media": 1,
    }


def _render_modern(tree) -> str:
    buffer = io.StringIO()
    ModernUI(tree, console=Console(file=buffer, width=120)).run()
    return buffer.getvalue()


def test_modern_ui_renders_tree_and_stats() -> None:
    output = _render_modern(_tree())

    assert "Sadhana Console" in output
    assert "Meditation" in output
    assert "Morning" in output
    assert "Sunrise" in output
    assert "No items yet" in output
    assert "No chapters yet" in output
    assert "At a glance" in output
    assert "Missing audio" in output


def test_modern_ui_empty_state() -> None:
    output = _render_modern([])

    assert "No categories yet." in output
    assert "At a glance" not in output
