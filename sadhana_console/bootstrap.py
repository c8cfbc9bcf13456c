"""Bootstrap logic that prepares runtime directories and the document database."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from . import config as config_module
from .config import AppConfig, load_config
from .services.content_tree import ContentTreeStore
from .services.documents import DOCUMENTS_SCHEMA, create_document_store
from .services.media import create_media_resolver

LOGGER = logging.getLogger(__name__)


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        if self._config.document_backend == "sqlite":
            self._ensure_database()
        else:
            LOGGER.debug("Skipping SQLite schema for %s backend", self._config.document_backend)
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        directories = [self._config.storage_root, self._config.database_file.parent]
        if self._config.media_backend == "local":
            directories.append(self._config.assets_root)
        for path in directories:
            if not config_module._ensure_writable_directory(path):
                raise BootstrapError(f"Directory is not writable: {path}")
            LOGGER.debug("Ensured directory exists: %s", path)

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        try:
            connection = sqlite3.connect(self._config.database_file)
        except sqlite3.Error as error:
            raise BootstrapError(
                f"Cannot open database {self._config.database_file}: {error}"
            ) from error
        try:
            connection.executescript(DOCUMENTS_SCHEMA)
            connection.commit()
        except sqlite3.Error as error:
            raise BootstrapError(f"Cannot prepare database schema: {error}") from error
        finally:
            connection.close()


def build_content_store(config: AppConfig) -> ContentTreeStore:
    """Wire the configured document store and media resolver into a tree store."""

    return ContentTreeStore(
        create_document_store(config),
        create_media_resolver(config),
        verify_parents=config.verify_parents,
    )


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "build_content_store", "initialize_app"]
