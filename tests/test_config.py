from pathlib import Path

import pytest

import sadhana_console.config as config_module
from sadhana_console.config import AppConfig, load_config


def test_assets_root_falls_back_when_preferred_is_unusable(tmp_path: Path) -> None:
    storage = tmp_path / "storage"
    storage.mkdir()

    preferred_assets = tmp_path / "assets"
    preferred_assets.write_text("not a directory", encoding="utf-8")

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/documents.db",
            "assets_root": "assets",
        },
        base_path=tmp_path,
        environ={},
    )

    expected_fallback = (storage / "_assets").resolve()
    assert config.assets_root == expected_fallback
    assert expected_fallback.exists()
    assert expected_fallback.is_dir()


def test_storage_root_falls_back_when_preferred_is_unusable(
    tmp_path: Path, monkeypatch
) -> None:
    home_dir = tmp_path / "home"
    monkeypatch.setattr(config_module.Path, "home", lambda: home_dir)

    preferred_storage = tmp_path / "storage"
    preferred_storage.write_text("not a directory", encoding="utf-8")

    preferred_assets = tmp_path / "assets"
    preferred_assets.write_text("not a directory", encoding="utf-8")

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/documents.db",
            "assets_root": "assets",
        },
        base_path=tmp_path,
        environ={},
    )

    expected_storage = (home_dir / ".sadhana_console" / "storage").resolve()
    expected_database = (expected_storage / "documents.db").resolve()
    expected_assets = (expected_storage / "_assets").resolve()

    assert config.storage_root == expected_storage
    assert config.database_file == expected_database
    assert config.assets_root == expected_assets
    assert config.log_file == expected_storage / "sadhana_console.log"
    assert expected_storage.exists()
    assert expected_assets.exists()


def test_backends_and_admins_are_parsed(tmp_path: Path) -> None:
    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/documents.db",
            "assets_root": "storage/media",
            "document_backend": " SQLite ",
            "media_backend": "cloudinary",
            "media_base_url": "files/",
            "cloudinary": {"cloud_name": "demo", "api_key": "key", "api_secret": "from-file"},
            "admins": [{"email": " Admin@Example.org ", "password_hash": "hash", "name": "Admin"}],
            "verify_parents": True,
        },
        base_path=tmp_path,
        environ={
            "SADHANA_CLOUDINARY_API_SECRET": "from-env",
            "SADHANA_SESSION_SECRET": "session-secret",
        },
    )

    assert config.document_backend == "sqlite"
    assert config.media_backend == "cloudinary"
    assert config.media_base_url == "/files"
    assert config.cloudinary is not None
    assert config.cloudinary.api_secret == "from-env"
    assert config.admins[0].email == "admin@example.org"
    assert config.admins[0].role == "admin"
    assert config.session_secret == "session-secret"
    assert config.verify_parents is True


@pytest.mark.parametrize(
    "overrides",
    [
        {"document_backend": "mongo"},
        {"media_backend": "s3"},
        {"media_backend": "cloudinary", "cloudinary": {"cloud_name": ""}},
    ],
)
def test_unknown_or_incomplete_backends_are_rejected(tmp_path: Path, overrides) -> None:
    mapping = {
        "storage_root": "storage",
        "database_file": "storage/documents.db",
        "assets_root": "storage/media",
        **overrides,
    }

    with pytest.raises(ValueError):
        AppConfig.from_mapping(mapping, base_path=tmp_path, environ={})


def test_load_config_honours_environment_override(tmp_path: Path, monkeypatch) -> None:
    config_file = tmp_path / "custom.json"
    config_file.write_text(
        '{"storage_root": "%s", "database_file": "%s", "assets_root": "%s"}'
        % (
            (tmp_path / "data").as_posix(),
            (tmp_path / "data" / "documents.db").as_posix(),
            (tmp_path / "data" / "media").as_posix(),
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("SADHANA_CONSOLE_CONFIG", str(config_file))

    config = load_config()

    assert config.storage_root == (tmp_path / "data").resolve()
    assert config.document_backend == "sqlite"
    assert config.admins == ()
