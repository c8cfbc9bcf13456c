"""Media reference resolvers: turn uploads into durable URLs and back."""

from __future__ import annotations

import asyncio
import functools
import hashlib
import logging
import mimetypes
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Tuple, TypeVar

import requests

from ..config import AppConfig, CloudinarySettings
from .events import emit_media_event
from .naming import build_destination_folder, build_media_name


LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_CLOUDINARY_API = "https://api.cloudinary.com/v1_1"
_CLOUDINARY_PUBLIC_ID = re.compile(
    r"/v\d+/(.+)\.(jpg|jpeg|png|gif|webp|svg|mp3|mp4|wav|m4a)$", re.IGNORECASE
)
_CLOUDINARY_RESOURCE = re.compile(r"/(image|video|raw)/upload/")


class MediaError(RuntimeError):
    """Raised when a media upload or deletion fails."""


@dataclass(frozen=True)
class MediaUpload:
    """A file waiting to be handed to a media resolver."""

    filename: str
    content: bytes
    content_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path: Path) -> "MediaUpload":
        guessed, _ = mimetypes.guess_type(path.name)
        return cls(
            filename=path.name,
            content=path.read_bytes(),
            content_type=guessed or "application/octet-stream",
        )

    @property
    def is_audio(self) -> bool:
        return self.content_type.startswith(("audio/", "video/"))


class MediaReferenceResolver(Protocol):
    async def upload(self, upload: MediaUpload, destination_hint: str) -> str: ...

    async def delete_by_url(self, url: str) -> None: ...


async def _in_executor(operation: Callable[..., T], *args: Any) -> T:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(operation, *args))


class LocalMediaResolver:
    """Store uploads below ``assets_root`` and serve them under ``base_url``."""

    def __init__(self, assets_root: Path, *, base_url: str = "/media") -> None:
        self._root = assets_root.resolve()
        self._base_url = "/" + base_url.strip("/")

    @property
    def root(self) -> Path:
        return self._root

    def resolve_url(self, url: str) -> Optional[Path]:
        """Return the file behind *url*, or ``None`` for URLs we do not own."""

        prefix = f"{self._base_url}/"
        if not url.startswith(prefix):
            return None
        relative = url[len(prefix):].split("?", 1)[0]
        candidate = (self._root / relative).resolve()
        if candidate != self._root and self._root not in candidate.parents:
            raise MediaError(f"Media URL escapes the media root: {url}")
        return candidate

    def _write(self, upload: MediaUpload, destination_hint: str) -> str:
        folder = build_destination_folder(destination_hint)
        relative = folder / build_media_name(upload.filename)
        target = self._root / Path(*relative.parts)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(upload.content)
        return f"{self._base_url}/{relative.as_posix()}"

    def _remove(self, url: str) -> bool:
        target = self.resolve_url(url)
        if target is None:
            LOGGER.debug("Ignoring delete for external media URL %s", url)
            return False
        existed = target.exists()
        target.unlink(missing_ok=True)
        return existed

    async def upload(self, upload: MediaUpload, destination_hint: str) -> str:
        start = time.perf_counter()
        try:
            url = await _in_executor(self._write, upload, destination_hint)
        except OSError as error:
            raise MediaError(f"Failed to store {upload.filename}: {error}") from error
        emit_media_event(
            "upload",
            payload={"backend": "local", "url": url, "size": len(upload.content)},
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )
        return url

    async def delete_by_url(self, url: str) -> None:
        start = time.perf_counter()
        try:
            existed = await _in_executor(self._remove, url)
        except OSError as error:
            raise MediaError(f"Failed to delete {url}: {error}") from error
        emit_media_event(
            "delete",
            payload={"backend": "local", "url": url, "existed": existed},
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )


def extract_public_id(url: str) -> Optional[str]:
    """Return the Cloudinary public id encoded in *url*, if any."""

    match = _CLOUDINARY_PUBLIC_ID.search(url.split("?", 1)[0])
    return match.group(1) if match else None


def resource_type_for_url(url: str, default: str = "video") -> str:
    match = _CLOUDINARY_RESOURCE.search(url)
    return match.group(1) if match else default


def sign_params(params: Mapping[str, Any], api_secret: str) -> str:
    """Return the Cloudinary SHA-1 signature for *params*."""

    payload = "&".join(
        f"{key}={params[key]}" for key in sorted(params) if params[key] not in (None, "")
    )
    return hashlib.sha1(f"{payload}{api_secret}".encode("utf-8")).hexdigest()


class CloudinaryMediaResolver:
    """Signed Cloudinary REST calls over a ``requests`` session.

    Audio goes to the ``video`` resource type. A destroy answered with
    ``not found`` counts as success, which keeps deletion idempotent.
    """

    def __init__(
        self,
        settings: CloudinarySettings,
        *,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not settings.api_key or not settings.api_secret:
            raise MediaError("Cloudinary api_key and api_secret are required for signed calls")
        self._settings = settings
        self._session = session or requests.Session()
        self._clock = clock

    def _url(self, resource_type: str, action: str) -> str:
        return f"{_CLOUDINARY_API}/{self._settings.cloud_name}/{resource_type}/{action}"

    def _signed(self, params: Dict[str, Any]) -> Dict[str, Any]:
        params = {**params, "timestamp": int(self._clock())}
        signature = sign_params(params, self._settings.api_secret)
        return {**params, "api_key": self._settings.api_key, "signature": signature}

    def _post(
        self,
        url: str,
        data: Dict[str, Any],
        files: Optional[Dict[str, Tuple[str, bytes, str]]] = None,
    ) -> Dict[str, Any]:
        try:
            response = self._session.post(
                url, data=data, files=files, timeout=self._settings.timeout
            )
        except requests.RequestException as error:
            raise MediaError(f"Network failure calling {url}: {error}") from error
        if not 200 <= int(response.status_code) < 300:
            snippet = str(response.text or "").strip()[:400]
            raise MediaError(f"Cloudinary answered {response.status_code} for {url}: {snippet}")
        try:
            return response.json()
        except ValueError as error:
            raise MediaError(f"Cloudinary returned invalid JSON for {url}") from error

    def _upload_sync(self, upload: MediaUpload, destination_hint: str) -> str:
        resource_type = "video" if upload.is_audio else "image"
        data = self._signed({"folder": build_destination_folder(destination_hint).as_posix()})
        body = self._post(
            self._url(resource_type, "upload"),
            data,
            files={"file": (upload.filename, upload.content, upload.content_type)},
        )
        url = body.get("secure_url")
        if not url:
            raise MediaError("Cloudinary upload response did not include secure_url")
        return str(url)

    def _delete_sync(self, url: str) -> str:
        if "cloudinary.com" not in url:
            return "external"
        public_id = extract_public_id(url)
        if public_id is None:
            LOGGER.debug("No public id in %s; nothing to delete", url)
            return "unresolved"
        data = self._signed({"public_id": public_id})
        body = self._post(self._url(resource_type_for_url(url), "destroy"), data)
        result = str(body.get("result", ""))
        if result not in ("ok", "not found"):
            raise MediaError(f"Cloudinary refused to delete {public_id}: {result or body}")
        return result

    async def upload(self, upload: MediaUpload, destination_hint: str) -> str:
        start = time.perf_counter()
        url = await _in_executor(self._upload_sync, upload, destination_hint)
        emit_media_event(
            "upload",
            payload={"backend": "cloudinary", "url": url, "size": len(upload.content)},
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )
        return url

    async def delete_by_url(self, url: str) -> None:
        start = time.perf_counter()
        result = await _in_executor(self._delete_sync, url)
        emit_media_event(
            "delete",
            payload={"backend": "cloudinary", "url": url, "result": result},
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )


def create_media_resolver(config: AppConfig) -> MediaReferenceResolver:
    """Return the media resolver selected by ``config.media_backend``."""

    if config.media_backend == "cloudinary" and config.cloudinary is not None:
        return CloudinaryMediaResolver(config.cloudinary)
    return LocalMediaResolver(config.assets_root, base_url=config.media_base_url)


__all__ = [
    "CloudinaryMediaResolver",
    "LocalMediaResolver",
    "MediaError",
    "MediaReferenceResolver",
    "MediaUpload",
    "create_media_resolver",
    "extract_public_id",
    "resource_type_for_url",
    "sign_params",
]
