from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from sadhana_console.services.content_tree import (
    CATEGORIES_COLLECTION,
    CHAPTERS_COLLECTION,
    ITEMS_COLLECTION,
    ContentTreeStore,
    coerce_order,
    timestamp_ms,
    utc_timestamp,
)
from sadhana_console.services.errors import (
    CascadeDeleteError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from sadhana_console.services.media import MediaUpload

from conftest import RecordingMedia


def test_category_with_content_builds_nested_tree(store: ContentTreeStore) -> None:
    async def scenario():
        category = await store.create_category("Meditation", "Daily practice")
        chapter = await store.create_chapter(category.id, "Morning", order=1)
        await store.create_item(chapter.id, category.id, "Sunrise", text="Breathe in", order=1)
        return await store.get_category_with_content(category.id)

    content = asyncio.run(scenario())
    tree = content.to_dict()

    assert tree["name"] == "Meditation"
    assert tree["status"] == "Draft"
    assert [chapter["title"] for chapter in tree["chapters"]] == ["Morning"]
    items = tree["chapters"][0]["audioItems"]
    assert [item["title"] for item in items] == ["Sunrise"]
    assert items[0]["categoryId"] == tree["id"]
    assert items[0]["chapterId"] == tree["chapters"][0]["id"]
    assert content.chapter_count == 1
    assert content.item_count == 1


def test_deleting_chapter_removes_its_items(store: ContentTreeStore) -> None:
    async def scenario():
        category = await store.create_category("Meditation")
        chapter = await store.create_chapter(category.id, "Morning", order=1)
        item = await store.create_item(chapter.id, category.id, "Sunrise", order=1)
        report = await store.delete_chapter(chapter.id)
        content = await store.get_category_with_content(category.id)
        with pytest.raises(NotFoundError):
            await store.get_item(item.id)
        return report, content, chapter, item

    report, content, chapter, item = asyncio.run(scenario())

    assert content.chapters == []
    assert report.chapters == [chapter.id]
    assert report.items == [item.id]


def test_updating_media_reference_keeps_other_fields(store: ContentTreeStore) -> None:
    async def scenario():
        category = await store.create_category("Meditation")
        chapter = await store.create_chapter(category.id, "Morning")
        item = await store.create_item(chapter.id, category.id, "Sunrise", text="Script")
        await store.update_item(item.id, {"audio_url": "https://cdn.test/v1/sunrise.mp3"})
        return await store.get_item(item.id)

    item = asyncio.run(scenario())

    assert item.title == "Sunrise"
    assert item.text == "Script"
    assert item.audio_url == "https://cdn.test/v1/sunrise.mp3"


def test_update_text_only_leaves_title_status_and_media(store: ContentTreeStore) -> None:
    async def scenario():
        category = await store.create_category("Meditation")
        chapter = await store.create_chapter(category.id, "Morning")
        item = await store.create_item(chapter.id, category.id, "Sunrise", status="Published")
        await store.update_item(item.id, {"audio_file": "a.mp3", "audio_url": "/media/a.mp3"})
        updated = await store.update_item(item.id, {"text": "New script"})
        return item, updated

    original, updated = asyncio.run(scenario())

    assert updated.text == "New script"
    assert updated.title == original.title
    assert updated.status == "Published"
    assert updated.audio_file == "a.mp3"
    assert updated.audio_url == "/media/a.mp3"
    assert updated.created_at == original.created_at


def test_delete_category_cascades_to_every_descendant(
    store: ContentTreeStore, documents, media: RecordingMedia
) -> None:
    async def scenario():
        category = await store.create_category("Meditation")
        keep = await store.create_category("Chanting")
        kept_chapter = await store.create_chapter(keep.id, "Evening")
        chapter_ids = []
        for index in range(2):
            chapter = await store.create_chapter(category.id, f"Chapter {index}", order=index)
            chapter_ids.append(chapter.id)
            for position in range(3):
                item = await store.create_item(
                    chapter.id, category.id, f"Item {index}.{position}", order=position
                )
                await store.update_item(item.id, {"audio_url": f"/media/{item.id}.mp3"})
        report = await store.delete_category(category.id)
        remaining_chapters = await documents.list(CHAPTERS_COLLECTION, {"categoryId": category.id})
        remaining_items = [
            await documents.list(ITEMS_COLLECTION, {"chapterId": chapter_id})
            for chapter_id in chapter_ids
        ]
        survivors = await store.list_chapters(keep.id)
        return category, report, remaining_chapters, remaining_items, survivors, kept_chapter

    category, report, chapters, items, survivors, kept_chapter = asyncio.run(scenario())

    assert chapters == []
    assert items == [[], []]
    assert report.categories == [category.id]
    assert len(report.chapters) == 2
    assert len(report.items) == 6
    assert len(media.deleted) == 6
    assert [chapter.id for chapter in survivors] == [kept_chapter.id]


def test_status_is_independent_at_every_level(store: ContentTreeStore) -> None:
    async def scenario():
        category = await store.create_category("Meditation", status="Draft")
        chapter = await store.create_chapter(category.id, "Morning")
        await store.create_item(chapter.id, category.id, "Sunrise", status="Published")
        return await store.get_category_with_content(category.id)

    content = asyncio.run(scenario())

    assert content.category.status == "Draft"
    assert content.chapters[0].audio_items[0].status == "Published"


def test_items_and_chapters_are_sorted_by_order_with_stable_ties(store: ContentTreeStore) -> None:
    async def scenario():
        category = await store.create_category("Meditation")
        first = await store.create_chapter(category.id, "First tie", order=5)
        second = await store.create_chapter(category.id, "Second tie", order=5)
        early = await store.create_chapter(category.id, "Early", order=0)
        for order in (3, 1, 2):
            await store.create_item(first.id, category.id, f"Item {order}", order=order)
        content = await store.get_category_with_content(category.id)
        return content, [early.id, first.id, second.id]

    content, expected_chapters = asyncio.run(scenario())

    assert [chapter.chapter.id for chapter in content.chapters] == expected_chapters
    assert [item.order for item in content.chapters[1].audio_items] == [1, 2, 3]


def test_failed_item_listing_degrades_to_empty_chapter(store: ContentTreeStore, documents) -> None:
    async def scenario():
        category = await store.create_category("Meditation")
        other = await store.create_category("Chanting")
        healthy = await store.create_chapter(category.id, "Healthy", order=1)
        broken = await store.create_chapter(category.id, "Broken", order=2)
        await store.create_item(healthy.id, category.id, "Kept")
        await store.create_item(broken.id, category.id, "Hidden")
        documents.failures.add(("list", ITEMS_COLLECTION, broken.id))
        return await store.get_all_categories_with_content(), category, other

    contents, category, other = asyncio.run(scenario())

    assert {content.category.id for content in contents} == {category.id, other.id}
    tree = next(content for content in contents if content.category.id == category.id)
    by_title = {chapter.chapter.title: chapter for chapter in tree.chapters}
    assert [item.title for item in by_title["Healthy"].audio_items] == ["Kept"]
    assert by_title["Broken"].audio_items == []


def test_failed_category_degrades_to_empty_chapters(store: ContentTreeStore, documents) -> None:
    async def scenario():
        category = await store.create_category("Meditation")
        await store.create_chapter(category.id, "Morning")
        documents.failures.add(("get", CATEGORIES_COLLECTION, category.id))
        return await store.get_all_categories_with_content()

    contents = asyncio.run(scenario())

    assert len(contents) == 1
    assert contents[0].category.name == "Meditation"
    assert contents[0].chapters == []


def test_category_fetch_failure_fails_single_read(store: ContentTreeStore, documents) -> None:
    async def scenario():
        category = await store.create_category("Meditation")
        documents.failures.add(("get", CATEGORIES_COLLECTION, category.id))
        await store.get_category_with_content(category.id)

    with pytest.raises(PersistenceError):
        asyncio.run(scenario())


def test_listing_failure_surfaces_as_persistence_error(store: ContentTreeStore, documents) -> None:
    documents.failures.add(("list", CATEGORIES_COLLECTION))

    with pytest.raises(PersistenceError):
        asyncio.run(store.get_all_categories_with_content())


def test_categories_are_listed_newest_first(documents, media: RecordingMedia) -> None:
    start = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)
    ticks = iter(start + timedelta(minutes=offset) for offset in range(10))
    store = ContentTreeStore(documents, media, clock=lambda: next(ticks))

    async def scenario():
        for name in ("Oldest", "Middle", "Newest"):
            await store.create_category(name)
        return await store.list_categories()

    categories = asyncio.run(scenario())

    assert [category.name for category in categories] == ["Newest", "Middle", "Oldest"]
    assert categories[-1].created_at == "2025-01-01T10:00:00.000Z"


def test_cascade_failure_keeps_parent_and_reports_progress(
    store: ContentTreeStore, documents
) -> None:
    async def scenario():
        category = await store.create_category("Meditation")
        first = await store.create_chapter(category.id, "First", order=1)
        second = await store.create_chapter(category.id, "Second", order=2)
        first_item = await store.create_item(first.id, category.id, "One")
        second_item = await store.create_item(second.id, category.id, "Two")
        documents.failures.add(("delete", CHAPTERS_COLLECTION, second.id))
        with pytest.raises(CascadeDeleteError) as excinfo:
            await store.delete_category(category.id)
        survivor = await store.get_category(category.id)

        documents.failures.clear()
        retry = await store.delete_category(category.id)
        return excinfo.value, survivor, retry, category, first, second, first_item, second_item

    error, survivor, retry, category, first, second, first_item, second_item = asyncio.run(
        scenario()
    )

    assert error.kind == "cascade"
    assert survivor.id == category.id
    assert error.report.chapters == [first.id]
    assert error.report.items == [first_item.id, second_item.id]
    assert error.report.categories == []
    assert retry.chapters == [second.id]
    assert retry.categories == [category.id]


def test_media_failure_does_not_block_item_delete(documents) -> None:
    media = RecordingMedia(failing_urls={"https://cdn.test/v1/broken.mp3"})
    store = ContentTreeStore(documents, media)

    async def scenario():
        category = await store.create_category("Meditation")
        chapter = await store.create_chapter(category.id, "Morning")
        item = await store.create_item(chapter.id, category.id, "Sunrise")
        await store.update_item(item.id, {"audio_url": "https://cdn.test/v1/broken.mp3"})
        report = await store.delete_item(item.id)
        remaining = await store.list_items(chapter.id)
        return item, report, remaining

    item, report, remaining = asyncio.run(scenario())

    assert report.items == [item.id]
    assert len(report.warnings) == 1
    assert report.warnings[0].url == "https://cdn.test/v1/broken.mp3"
    assert remaining == []


def test_deleting_missing_records_is_a_no_op(store: ContentTreeStore, media: RecordingMedia) -> None:
    async def scenario():
        return (
            await store.delete_item("missing-item"),
            await store.delete_chapter("missing-chapter"),
            await store.delete_category("missing-category"),
        )

    reports = asyncio.run(scenario())

    assert all(report.removed_count == 0 for report in reports)
    assert media.deleted == []


@pytest.mark.parametrize(
    "operation",
    [
        lambda store: store.create_category("   "),
        lambda store: store.create_category("Meditation", status="Live"),
        lambda store: store.create_chapter("category", "Title", order="first"),
        lambda store: store.create_chapter("", "Title"),
        lambda store: store.create_item("chapter", "category", "", order=1),
        lambda store: store.update_chapter("chapter", {"category_id": "elsewhere"}),
        lambda store: store.update_item("item", {"chapter_id": "elsewhere"}),
        lambda store: store.update_item("item", {"colour": "red"}),
        lambda store: store.update_category("category", {"status": "published"}),
        lambda store: store.get_category(""),
    ],
)
def test_invalid_input_is_rejected(store: ContentTreeStore, operation) -> None:
    with pytest.raises(ValidationError):
        asyncio.run(operation(store))


def test_updating_missing_record_raises_not_found(store: ContentTreeStore) -> None:
    with pytest.raises(NotFoundError) as excinfo:
        asyncio.run(store.update_category("missing", {"name": "Renamed"}))

    assert excinfo.value.kind == "not_found"
    assert excinfo.value.record_id == "missing"


def test_verify_parents_rejects_missing_or_mismatched_parents(documents, media) -> None:
    store = ContentTreeStore(documents, media, verify_parents=True)

    async def scenario():
        with pytest.raises(NotFoundError):
            await store.create_chapter("ghost", "Orphan")
        category = await store.create_category("Meditation")
        other = await store.create_category("Chanting")
        chapter = await store.create_chapter(category.id, "Morning")
        with pytest.raises(ValidationError):
            await store.create_item(chapter.id, other.id, "Mismatch")
        return await store.create_item(chapter.id, category.id, "Sunrise")

    item = asyncio.run(scenario())

    assert item.title == "Sunrise"


def test_sweep_removes_orphaned_chapters_and_items(store: ContentTreeStore) -> None:
    async def scenario():
        category = await store.create_category("Meditation")
        chapter = await store.create_chapter(category.id, "Morning")
        kept = await store.create_item(chapter.id, category.id, "Sunrise")
        orphan_chapter = await store.create_chapter("ghost-category", "Lost")
        orphan_child = await store.create_item(orphan_chapter.id, "ghost-category", "Lost item")
        stray = await store.create_item("ghost-chapter", category.id, "Stray")
        report = await store.sweep_orphans()
        items = await store.list_items(chapter.id)
        return report, kept, orphan_chapter, orphan_child, stray, items

    report, kept, orphan_chapter, orphan_child, stray, items = asyncio.run(scenario())

    assert report.chapters == [orphan_chapter.id]
    assert sorted(report.items) == sorted([orphan_child.id, stray.id])
    assert [item.id for item in items] == [kept.id]


def test_attach_item_media_uploads_then_links(store: ContentTreeStore, media: RecordingMedia) -> None:
    async def scenario():
        category = await store.create_category("Meditation")
        chapter = await store.create_chapter(category.id, "Morning")
        item = await store.create_item(chapter.id, category.id, "Sunrise")
        upload = MediaUpload("sunrise.mp3", b"ID3", "audio/mpeg")
        return item, await store.attach_item_media(item.id, upload)

    item, updated = asyncio.run(scenario())

    assert media.uploads == [("sunrise.mp3", f"ai-audio/{item.id}")]
    assert updated.audio_file == "sunrise.mp3"
    assert updated.audio_url == f"https://media.test/ai-audio/{item.id}/sunrise.mp3"
    assert updated.has_media


def test_attach_item_media_checks_item_before_uploading(
    store: ContentTreeStore, media: RecordingMedia
) -> None:
    upload = MediaUpload("sunrise.mp3", b"ID3", "audio/mpeg")

    with pytest.raises(NotFoundError):
        asyncio.run(store.attach_item_media("missing", upload))
    assert media.uploads == []


def test_attach_item_media_upload_failure_is_persistence_error(
    store: ContentTreeStore, media: RecordingMedia
) -> None:
    media.fail_uploads = True

    async def scenario():
        category = await store.create_category("Meditation")
        chapter = await store.create_chapter(category.id, "Morning")
        item = await store.create_item(chapter.id, category.id, "Sunrise")
        with pytest.raises(PersistenceError):
            await store.attach_item_media(item.id, MediaUpload("a.mp3", b"", "audio/mpeg"))
        return await store.get_item(item.id)

    item = asyncio.run(scenario())

    assert item.audio_url is None


def test_order_and_timestamp_helpers() -> None:
    assert coerce_order(4) == 4
    assert coerce_order("12abc") == 12
    assert coerce_order(" -3") == -3
    assert coerce_order("abc") == 0
    assert coerce_order(None) == 0
    assert coerce_order(True) == 0
    assert coerce_order(float("nan")) == 0
    assert timestamp_ms("not a date") == 0
    assert timestamp_ms(None) == 0
    assert timestamp_ms("1970-01-01T00:00:01.000Z") == 1000.0
    moment = datetime(2025, 1, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)
    assert utc_timestamp(moment) == "2025-01-01T10:00:00.123Z"
