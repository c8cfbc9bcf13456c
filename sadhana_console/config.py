"""Configuration loading utilities for the Sadhana Console application."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".sadhana_console_write_check"

CONFIG_PATH_ENV = "SADHANA_CONSOLE_CONFIG"
CLOUDINARY_SECRET_ENV = "SADHANA_CLOUDINARY_API_SECRET"
SESSION_SECRET_ENV = "SADHANA_SESSION_SECRET"

DOCUMENT_BACKENDS: Tuple[str, ...] = ("sqlite", "firestore")
MEDIA_BACKENDS: Tuple[str, ...] = ("local", "cloudinary")


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins and the flag reports whether a fallback
    was used. When nothing can be prepared the original ``preferred`` path is
    returned so that the bootstrapper can report the problem.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


@dataclass(frozen=True)
class AdminAccount:
    """An administrator allowed to sign in to the console."""

    email: str
    password_hash: str
    name: str = ""
    role: str = "admin"


@dataclass(frozen=True)
class CloudinarySettings:
    cloud_name: str
    api_key: str
    api_secret: str
    timeout: float = 30.0


@dataclass(frozen=True)
class FirestoreSettings:
    project: Optional[str] = None
    credentials_file: Optional[Path] = None


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and backend selection for the application."""

    storage_root: Path
    database_file: Path
    assets_root: Path
    document_backend: str = "sqlite"
    media_backend: str = "local"
    media_base_url: str = "/media"
    firestore: FirestoreSettings = field(default_factory=FirestoreSettings)
    cloudinary: Optional[CloudinarySettings] = None
    admins: Tuple[AdminAccount, ...] = ()
    session_secret: str = ""
    verify_parents: bool = False

    @property
    def log_file(self) -> Path:
        return self.storage_root / "sadhana_console.log"

    @classmethod
    def from_mapping(
        cls,
        mapping: Mapping[str, Any],
        *,
        base_path: Path,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "AppConfig":
        env = os.environ if environ is None else environ

        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".sadhana_console" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()

        preferred_assets = (base_path / mapping["assets_root"]).resolve()
        assets_root, _ = _select_writable_directory(
            preferred_assets,
            label="assets",
            fallbacks=(storage_root / "_assets",),
        )

        if storage_fallback_used:
            try:
                relative_database = database_file.relative_to(preferred_storage)
            except ValueError:
                relative_database = None
            if relative_database is not None:
                fallback_database = (storage_root / relative_database).resolve()
                if _ensure_writable_directory(fallback_database.parent):
                    LOGGER.warning(
                        "Preferred database location '%s' is not writable; using fallback '%s'.",
                        database_file,
                        fallback_database,
                    )
                    database_file = fallback_database

        document_backend = str(mapping.get("document_backend", "sqlite")).strip().lower()
        if document_backend not in DOCUMENT_BACKENDS:
            raise ValueError(f"Unknown document backend: {document_backend!r}")
        media_backend = str(mapping.get("media_backend", "local")).strip().lower()
        if media_backend not in MEDIA_BACKENDS:
            raise ValueError(f"Unknown media backend: {media_backend!r}")

        firestore_mapping: Dict[str, Any] = dict(mapping.get("firestore") or {})
        credentials = firestore_mapping.get("credentials_file")
        firestore = FirestoreSettings(
            project=firestore_mapping.get("project") or None,
            credentials_file=(base_path / credentials).resolve() if credentials else None,
        )

        cloudinary: Optional[CloudinarySettings] = None
        cloudinary_mapping: Dict[str, Any] = dict(mapping.get("cloudinary") or {})
        if cloudinary_mapping.get("cloud_name"):
            cloudinary = CloudinarySettings(
                cloud_name=str(cloudinary_mapping["cloud_name"]).strip(),
                api_key=str(cloudinary_mapping.get("api_key", "")).strip(),
                api_secret=str(
                    env.get(CLOUDINARY_SECRET_ENV) or cloudinary_mapping.get("api_secret", "")
                ).strip(),
                timeout=float(cloudinary_mapping.get("timeout", 30.0)),
            )
        if media_backend == "cloudinary" and cloudinary is None:
            raise ValueError("media_backend 'cloudinary' requires a cloudinary.cloud_name")

        admins = tuple(
            AdminAccount(
                email=str(entry["email"]).strip().lower(),
                password_hash=str(entry["password_hash"]),
                name=str(entry.get("name", "")),
                role=str(entry.get("role", "admin")),
            )
            for entry in mapping.get("admins") or ()
        )

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            assets_root=assets_root,
            document_backend=document_backend,
            media_backend=media_backend,
            media_base_url="/" + str(mapping.get("media_base_url", "/media")).strip("/"),
            firestore=firestore,
            cloudinary=cloudinary,
            admins=admins,
            session_secret=str(env.get(SESSION_SECRET_ENV) or mapping.get("session_secret", "")),
            verify_parents=bool(mapping.get("verify_parents", False)),
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        override = os.environ.get(CONFIG_PATH_ENV)
        config_path = Path(override) if override else base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = [
    "AdminAccount",
    "AppConfig",
    "CloudinarySettings",
    "FirestoreSettings",
    "load_config",
]
