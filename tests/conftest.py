from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sadhana_console.bootstrap import Bootstrapper
from sadhana_console.config import AppConfig
from sadhana_console.services.content_tree import ContentTreeStore
from sadhana_console.services.documents import DocumentStoreError, SQLiteDocumentStore
from sadhana_console.services.media import MediaError, MediaUpload


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_file = config_dir / "default.json"
    config_file.write_text(
        """
        {
            \"storage_root\": \"storage\",\n
            \"database_file\": \"storage/documents.db\",\n
            \"assets_root\": \"storage/media\"\n
        }
        """,
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/documents.db",
            "assets_root": "storage/media",
        },
        base_path=tmp_path,
        environ={},
    )

    Bootstrapper(config).initialize()
    return config


class RecordingMedia:
    """Media resolver double that remembers every call."""

    def __init__(self, failing_urls: Optional[Set[str]] = None) -> None:
        self.uploads: List[Tuple[str, str]] = []
        self.deleted: List[str] = []
        self.failing_urls = set(failing_urls or ())
        self.fail_uploads = False

    async def upload(self, upload: MediaUpload, destination_hint: str) -> str:
        if self.fail_uploads:
            raise MediaError("upload rejected")
        self.uploads.append((upload.filename, destination_hint))
        return f"https://media.test/{destination_hint}/{upload.filename}"

    async def delete_by_url(self, url: str) -> None:
        if url in self.failing_urls:
            raise MediaError("media service unavailable")
        self.deleted.append(url)


class FlakyDocumentStore(SQLiteDocumentStore):
    """SQLite store that fails selected (operation, collection[, id]) calls."""

    def __init__(self, config: AppConfig) -> None:
        super().__init__(config)
        self.failures: Set[Tuple[str, ...]] = set()
        self.calls: List[Tuple[str, str, Any]] = []

    def _check(self, operation: str, collection: str, key: Any = None) -> None:
        self.calls.append((operation, collection, key))
        if (operation, collection) in self.failures or (operation, collection, key) in self.failures:
            raise DocumentStoreError(f"{operation} {collection} unavailable")

    async def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        self._check("get", collection, document_id)
        return await super().get(collection, document_id)

    async def list(self, collection: str, filters=None) -> List[Dict[str, Any]]:
        key = next(iter((filters or {}).values()), None)
        self._check("list", collection, key)
        return await super().list(collection, filters)

    async def update(self, collection: str, document_id: str, fields) -> Dict[str, Any]:
        self._check("update", collection, document_id)
        return await super().update(collection, document_id, fields)

    async def delete(self, collection: str, document_id: str) -> bool:
        self._check("delete", collection, document_id)
        return await super().delete(collection, document_id)


@pytest.fixture()
def media() -> RecordingMedia:
    return RecordingMedia()


@pytest.fixture()
def documents(temp_config: AppConfig) -> FlakyDocumentStore:
    return FlakyDocumentStore(temp_config)


@pytest.fixture()
def store(documents: FlakyDocumentStore, media: RecordingMedia) -> ContentTreeStore:
    return ContentTreeStore(documents, media)
