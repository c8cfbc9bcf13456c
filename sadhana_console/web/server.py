"""FastAPI application serving the Sadhana Console admin API."""

from __future__ import annotations

import contextvars
import logging
import mimetypes
import os
import secrets
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar

from fastapi import APIRouter, Body, Depends, FastAPI, File, Request, UploadFile, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware
from starlette.types import ASGIApp, Receive, Scope, Send

from .. import __version__
from ..config import AppConfig
from ..services.content_tree import (
    CategoryContent,
    CategoryRecord,
    ChapterRecord,
    ContentTreeStore,
    ItemRecord,
)
from ..services.dashboard import DashboardAggregator
from ..services.errors import ContentError, DeleteReport, NotFoundError
from ..services.events import (
    APP_EVENT,
    DB_QUERY,
    MEDIA_OP,
    emit_db_event,
    emit_media_event,
    emit_structured_event,
)
from ..services.identity import AdminDirectory, Credential, Identity, IdentitySession
from ..services.media import LocalMediaResolver, MediaError, MediaUpload
from ..services.projections import DEFAULT_PAGE_SIZE, ListProjection, build_projections
from ..services.results import OperationResult, capture

T = TypeVar("T")

_DEFAULT_MAX_UPLOAD_BYTES = 200 * 1024 * 1024
try:
    _MAX_UPLOAD_BYTES = int(
        (os.environ.get("SADHANA_MAX_UPLOAD_BYTES") or "").strip() or _DEFAULT_MAX_UPLOAD_BYTES
    )
except ValueError:
    _MAX_UPLOAD_BYTES = _DEFAULT_MAX_UPLOAD_BYTES


def get_max_upload_bytes() -> int:
    """Return the configured maximum upload size in bytes."""

    return int(_MAX_UPLOAD_BYTES)


_UPLOAD_CHUNK_SIZE = 1024 * 1024


async def _read_upload(
    upload: UploadFile,
    *,
    limit: int,
    chunk_size: int = _UPLOAD_CHUNK_SIZE,
) -> Optional[bytes]:
    """Read ``upload`` in bounded chunks; ``None`` once it grows past ``limit``."""

    buffer = bytearray()
    while True:
        chunk = await upload.read(chunk_size)
        if not chunk:
            return bytes(buffer)
        buffer.extend(chunk)
        if limit > 0 and len(buffer) > limit:
            return None


_STATUS_BY_KIND: Dict[str, int] = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "unauthenticated": status.HTTP_401_UNAUTHORIZED,
    "not_found": status.HTTP_404_NOT_FOUND,
    "persistence": status.HTTP_502_BAD_GATEWAY,
    "cascade": status.HTTP_500_INTERNAL_SERVER_ERROR,
}

_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "sadhana_console_request_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "sadhana_console_actor",
    default=None,
)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _format_actor_label(role: str, detail: Optional[str] = None) -> str:
    base = role.strip() if role else "actor"
    if detail is None:
        return base
    suffix = str(detail).strip()
    return f"{base}:{suffix}" if suffix else base


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    actor = _ACTOR_VAR.get()
    if actor:
        context["actor"] = str(actor)
    return context


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope_state = scope.get("state")
        if scope_state is None:
            scope_state = {}
            scope["state"] = scope_state
        if isinstance(scope_state, dict):
            scope_state["request_id"] = request_id
        else:
            setattr(scope_state, "request_id", request_id)

        method = scope.get("method")
        actor_hint = _format_actor_label("request", method.upper() if isinstance(method, str) else None)
        request_token = _REQUEST_ID_VAR.set(request_id)
        actor_token = _ACTOR_VAR.set(actor_hint)

        try:
            await self.app(scope, receive, send)
        finally:
            _ACTOR_VAR.reset(actor_token)
            _REQUEST_ID_VAR.reset(request_token)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra)
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        correlation = _collect_correlation_context()
        for key, value in correlation.items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("sadhana_console.web.events"), {})


def _emit_debug_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
) -> None:
    emit_structured_event(
        event_type,
        message,
        payload=payload,
        context=context,
        correlation=_collect_correlation_context(),
        duration_ms=duration_ms,
        level=level,
        logger=EVENT_LOGGER,
    )


def _store_event_emitter(event_type: str, message: str, **kwargs: Any) -> None:
    correlation = _collect_correlation_context()
    if event_type == DB_QUERY:
        emit_db_event(message, correlation=correlation, logger=EVENT_LOGGER, **kwargs)
    elif event_type == MEDIA_OP:
        emit_media_event(message, correlation=correlation, logger=EVENT_LOGGER, **kwargs)
    else:
        _emit_debug_event(event_type, message, **kwargs)


def _log_event(message: str, **context: Any) -> None:
    _emit_debug_event(APP_EVENT, message, context=context)


def _normalize_root_path(value: Optional[str]) -> str:
    if not value:
        return ""
    trimmed = "/" + str(value).strip().strip("/")
    return "" if trimmed == "/" else trimmed


def _envelope(result: OperationResult[Any], *, success_status: int = status.HTTP_200_OK) -> JSONResponse:
    code = success_status if result.success else _STATUS_BY_KIND.get(result.kind or "", 500)
    return JSONResponse(status_code=code, content=jsonable_encoder(result.to_dict()))


def _failure(message: str, *, kind: str, status_code: Optional[int] = None) -> JSONResponse:
    result: OperationResult[Any] = OperationResult(success=False, error=message, kind=kind)
    response = _envelope(result)
    if status_code is not None:
        response.status_code = status_code
    return response


async def _respond(
    operation: Awaitable[T],
    *,
    serialize: Callable[[T], Any] = lambda value: value,
    message: Optional[str] = None,
    success_status: int = status.HTTP_200_OK,
) -> JSONResponse:
    result = await capture(operation, message=message)
    if result.success:
        result.data = serialize(result.data)
    return _envelope(result, success_status=success_status)


def _records(records: List[Any]) -> List[Dict[str, Any]]:
    return [record.to_dict() for record in records]


def _report(report: DeleteReport) -> Dict[str, Any]:
    return report.to_dict()


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class SignInPayload(_Payload):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class CategoryCreatePayload(_Payload):
    name: str = Field(..., min_length=1)
    description: str = ""
    status: str = "Draft"
    cover_image: Optional[str] = Field(None, alias="coverImage")


class CategoryUpdatePayload(_Payload):
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    cover_image: Optional[str] = Field(None, alias="coverImage")


class ChapterCreatePayload(_Payload):
    title: str = Field(..., min_length=1)
    description: str = ""
    order: int = 0


class ChapterUpdatePayload(_Payload):
    title: Optional[str] = None
    description: Optional[str] = None
    order: Optional[int] = None


class ItemCreatePayload(_Payload):
    category_id: Optional[str] = Field(None, alias="categoryId")
    title: str = Field(..., min_length=1)
    text: str = ""
    status: str = "Draft"
    order: int = 0
    duration: Optional[str] = None


class ItemUpdatePayload(_Payload):
    title: Optional[str] = None
    text: Optional[str] = None
    status: Optional[str] = None
    order: Optional[int] = None
    duration: Optional[str] = None
    audio_file: Optional[str] = Field(None, alias="audioFile")
    audio_url: Optional[str] = Field(None, alias="audioUrl")


def _changes(payload: BaseModel) -> Dict[str, Any]:
    return payload.model_dump(exclude_unset=True)


def create_app(
    store: ContentTreeStore,
    *,
    config: AppConfig,
    projections: Optional[Mapping[str, ListProjection]] = None,
    dashboard: Optional[DashboardAggregator] = None,
    directory: Optional[AdminDirectory] = None,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    app = FastAPI(
        title="Sadhana Console",
        description="Back-office API for the spiritual content library",
        version=__version__,
        root_path=_normalize_root_path(root_path),
    )

    configure_emitter = getattr(store.documents, "configure_event_emitter", None)
    if callable(configure_emitter):
        configure_emitter(_store_event_emitter)

    projections = dict(projections) if projections is not None else build_projections(
        store.documents, store.media
    )
    dashboard = dashboard or DashboardAggregator(store.documents)
    directory = directory or AdminDirectory.from_config(config)
    if directory.is_open:
        LOGGER.warning("No admin accounts configured; the console API is open")

    session_secret = config.session_secret
    if not session_secret:
        session_secret = secrets.token_hex(32)
        LOGGER.warning("No session secret configured; sessions will not survive a restart")

    app.state.store = store
    app.state.projections = projections
    app.state.directory = directory

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(
        SessionMiddleware,
        secret_key=session_secret,
        session_cookie="sadhana_console_session",
        same_site="lax",
    )

    @app.exception_handler(ContentError)
    async def handle_content_error(request: Request, error: ContentError) -> JSONResponse:
        return _envelope(OperationResult.failed(error))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(
        request: Request, error: RequestValidationError
    ) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in entry.get('loc', ()) if part != 'body')}: {entry.get('msg')}"
            for entry in error.errors()
        )
        return _failure(problems or "Invalid request", kind="validation")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, error: StarletteHTTPException) -> JSONResponse:
        return _failure(str(error.detail), kind="http", status_code=error.status_code)

    def _session(request: Request) -> IdentitySession:
        session = IdentitySession(request.session, directory)
        session.on_identity_change(
            lambda identity: _log_event(
                "Identity changed", email=identity.email if identity else None
            )
        )
        return session

    async def require_admin(request: Request) -> Identity:
        identity = _session(request).require_identity()
        _ACTOR_VAR.set(_format_actor_label("admin", identity.email))
        return identity

    def _projection(name: str) -> ListProjection:
        projection = projections.get(name)
        if projection is None:
            raise NotFoundError("collection", name)
        return projection

    # ------------------------------------------------------------------
    # Public routes
    # ------------------------------------------------------------------
    @app.get("/api/health")
    async def health() -> JSONResponse:
        return _envelope(
            OperationResult.ok(
                {
                    "status": "ok",
                    "version": __version__,
                    "documentBackend": config.document_backend,
                    "mediaBackend": config.media_backend,
                }
            )
        )

    @app.post("/api/session")
    async def sign_in(request: Request, payload: SignInPayload) -> JSONResponse:
        session = _session(request)

        async def _sign_in() -> Dict[str, Any]:
            return session.sign_in(Credential(payload.email, payload.password)).to_dict()

        return await _respond(_sign_in(), message="Signed in")

    @app.get("/api/session")
    async def current_session(request: Request) -> JSONResponse:
        identity = _session(request).get_current_identity()
        return _envelope(
            OperationResult.ok(
                {
                    "identity": identity.to_dict() if identity else None,
                    "open": directory.is_open,
                }
            )
        )

    @app.delete("/api/session")
    async def sign_out(request: Request) -> JSONResponse:
        _session(request).sign_out()
        return _envelope(OperationResult.ok(None, "Signed out"))

    @app.get("/media/{path:path}")
    async def serve_media_file(path: str) -> Any:
        resolver = store.media
        if not isinstance(resolver, LocalMediaResolver):
            return _failure("Media is not served locally", kind="not_found")
        try:
            target = resolver.resolve_url(f"{config.media_base_url}/{path}")
        except MediaError:
            target = None
        if target is None or not target.is_file():
            return _failure("File not found", kind="not_found")
        return FileResponse(target)

    # ------------------------------------------------------------------
    # AI-audio content tree
    # ------------------------------------------------------------------
    api = APIRouter(prefix="/api", dependencies=[Depends(require_admin)])

    @api.get("/ai-audio/categories")
    async def list_categories() -> JSONResponse:
        return await _respond(store.list_categories(), serialize=_records)

    @api.post("/ai-audio/categories")
    async def create_category(payload: CategoryCreatePayload) -> JSONResponse:
        _log_event("Creating category", name=payload.name)
        return await _respond(
            store.create_category(
                payload.name,
                payload.description,
                payload.status,
                cover_image=payload.cover_image,
            ),
            serialize=CategoryRecord.to_dict,
            message="Category created",
            success_status=status.HTTP_201_CREATED,
        )

    @api.get("/ai-audio/complete")
    async def list_complete_categories() -> JSONResponse:
        return await _respond(
            store.get_all_categories_with_content(),
            serialize=lambda contents: [content.to_dict() for content in contents],
        )

    @api.get("/ai-audio/categories/{category_id}")
    async def get_category(category_id: str) -> JSONResponse:
        return await _respond(store.get_category(category_id), serialize=CategoryRecord.to_dict)

    @api.put("/ai-audio/categories/{category_id}")
    async def update_category(category_id: str, payload: CategoryUpdatePayload) -> JSONResponse:
        _log_event("Updating category", category_id=category_id)
        return await _respond(
            store.update_category(category_id, _changes(payload)),
            serialize=CategoryRecord.to_dict,
            message="Category updated",
        )

    @api.delete("/ai-audio/categories/{category_id}")
    async def delete_category(category_id: str) -> JSONResponse:
        _log_event("Deleting category", category_id=category_id)
        return await _respond(
            store.delete_category(category_id),
            serialize=_report,
            message="Category and all its content deleted",
        )

    @api.get("/ai-audio/categories/{category_id}/complete")
    async def get_complete_category(category_id: str) -> JSONResponse:
        return await _respond(
            store.get_category_with_content(category_id), serialize=CategoryContent.to_dict
        )

    @api.get("/ai-audio/categories/{category_id}/chapters")
    async def list_chapters(category_id: str) -> JSONResponse:
        return await _respond(store.list_chapters(category_id), serialize=_records)

    @api.post("/ai-audio/categories/{category_id}/chapters")
    async def create_chapter(category_id: str, payload: ChapterCreatePayload) -> JSONResponse:
        _log_event("Creating chapter", category_id=category_id, title=payload.title)
        return await _respond(
            store.create_chapter(category_id, payload.title, payload.description, payload.order),
            serialize=ChapterRecord.to_dict,
            message="Chapter created",
            success_status=status.HTTP_201_CREATED,
        )

    @api.get("/ai-audio/chapters/{chapter_id}")
    async def get_chapter(chapter_id: str) -> JSONResponse:
        return await _respond(store.get_chapter(chapter_id), serialize=ChapterRecord.to_dict)

    @api.put("/ai-audio/chapters/{chapter_id}")
    async def update_chapter(chapter_id: str, payload: ChapterUpdatePayload) -> JSONResponse:
        _log_event("Updating chapter", chapter_id=chapter_id)
        return await _respond(
            store.update_chapter(chapter_id, _changes(payload)),
            serialize=ChapterRecord.to_dict,
            message="Chapter updated",
        )

    @api.delete("/ai-audio/chapters/{chapter_id}")
    async def delete_chapter(chapter_id: str) -> JSONResponse:
        _log_event("Deleting chapter", chapter_id=chapter_id)
        return await _respond(
            store.delete_chapter(chapter_id),
            serialize=_report,
            message="Chapter and its items deleted",
        )

    @api.get("/ai-audio/chapters/{chapter_id}/items")
    async def list_items(chapter_id: str) -> JSONResponse:
        return await _respond(store.list_items(chapter_id), serialize=_records)

    @api.post("/ai-audio/chapters/{chapter_id}/items")
    async def create_item(chapter_id: str, payload: ItemCreatePayload) -> JSONResponse:
        _log_event("Creating item", chapter_id=chapter_id, title=payload.title)

        async def _create() -> ItemRecord:
            category_id = payload.category_id
            if not category_id:
                category_id = (await store.get_chapter(chapter_id)).category_id
            return await store.create_item(
                chapter_id,
                category_id,
                payload.title,
                payload.text,
                payload.status,
                payload.order,
                duration=payload.duration,
            )

        return await _respond(
            _create(),
            serialize=ItemRecord.to_dict,
            message="Item created",
            success_status=status.HTTP_201_CREATED,
        )

    @api.get("/ai-audio/items/{item_id}")
    async def get_item(item_id: str) -> JSONResponse:
        return await _respond(store.get_item(item_id), serialize=ItemRecord.to_dict)

    @api.put("/ai-audio/items/{item_id}")
    async def update_item(item_id: str, payload: ItemUpdatePayload) -> JSONResponse:
        _log_event("Updating item", item_id=item_id)
        return await _respond(
            store.update_item(item_id, _changes(payload)),
            serialize=ItemRecord.to_dict,
            message="Item updated",
        )

    @api.delete("/ai-audio/items/{item_id}")
    async def delete_item(item_id: str) -> JSONResponse:
        _log_event("Deleting item", item_id=item_id)
        return await _respond(store.delete_item(item_id), serialize=_report, message="Item deleted")

    @api.post("/ai-audio/items/{item_id}/upload-audio")
    async def upload_item_audio(item_id: str, file: UploadFile = File(...)) -> JSONResponse:
        _log_event("Uploading audio", item_id=item_id, filename=file.filename)
        limit = get_max_upload_bytes()
        try:
            content = await _read_upload(file, limit=limit)
        finally:
            await file.close()
        if content is None:
            return _failure(
                f"File exceeds the {limit} byte upload limit",
                kind="validation",
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            )
        filename = Path(file.filename or "audio").name
        guessed, _ = mimetypes.guess_type(filename)
        upload = MediaUpload(
            filename=filename,
            content=content,
            content_type=file.content_type or guessed or "application/octet-stream",
        )
        return await _respond(
            store.attach_item_media(item_id, upload),
            serialize=ItemRecord.to_dict,
            message="Audio uploaded",
        )

    @api.post("/ai-audio/maintenance/sweep")
    async def sweep_orphans() -> JSONResponse:
        _log_event("Sweeping orphaned content")
        return await _respond(store.sweep_orphans(), serialize=_report, message="Sweep finished")

    # ------------------------------------------------------------------
    # Flat collections and dashboard
    # ------------------------------------------------------------------
    @api.get("/collections/{name}")
    async def list_collection(
        name: str,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        search: Optional[str] = None,
        status: Optional[str] = None,
    ) -> JSONResponse:
        async def _list() -> Dict[str, Any]:
            listing = await _projection(name).list(
                page=page, page_size=page_size, search=search, status=status
            )
            return listing.to_dict()

        return await _respond(_list())

    @api.post("/collections/{name}")
    async def create_collection_record(
        name: str, payload: Dict[str, Any] = Body(...)
    ) -> JSONResponse:
        _log_event("Creating record", collection=name)

        async def _create() -> Dict[str, Any]:
            return await _projection(name).create(payload)

        return await _respond(_create(), message="Record created", success_status=status.HTTP_201_CREATED)

    @api.get("/collections/{name}/{record_id}")
    async def get_collection_record(name: str, record_id: str) -> JSONResponse:
        async def _get() -> Dict[str, Any]:
            return await _projection(name).get(record_id)

        return await _respond(_get())

    @api.put("/collections/{name}/{record_id}")
    async def update_collection_record(
        name: str, record_id: str, payload: Dict[str, Any] = Body(...)
    ) -> JSONResponse:
        _log_event("Updating record", collection=name, record_id=record_id)

        async def _update() -> Dict[str, Any]:
            return await _projection(name).update(record_id, payload)

        return await _respond(_update(), message="Record updated")

    @api.delete("/collections/{name}/{record_id}")
    async def delete_collection_record(name: str, record_id: str) -> JSONResponse:
        _log_event("Deleting record", collection=name, record_id=record_id)

        async def _delete() -> DeleteReport:
            return await _projection(name).delete(record_id)

        return await _respond(_delete(), serialize=_report, message="Record deleted")

    @api.get("/collections/{name}/{record_id}/chapters")
    async def list_record_chapters(name: str, record_id: str) -> JSONResponse:
        async def _list() -> List[Dict[str, Any]]:
            return await _projection(name).list_children(record_id)

        return await _respond(_list())

    @api.post("/collections/{name}/{record_id}/chapters")
    async def create_record_chapter(
        name: str, record_id: str, payload: Dict[str, Any] = Body(...)
    ) -> JSONResponse:
        _log_event("Creating chapter", collection=name, record_id=record_id)

        async def _create() -> Dict[str, Any]:
            return await _projection(name).create_child(record_id, payload)

        return await _respond(_create(), message="Chapter created", success_status=status.HTTP_201_CREATED)

    @api.get("/collections/{name}/{record_id}/chapters/{chapter_id}")
    async def get_record_chapter(name: str, record_id: str, chapter_id: str) -> JSONResponse:
        async def _get() -> Dict[str, Any]:
            return await _projection(name).get_child(record_id, chapter_id)

        return await _respond(_get())

    @api.put("/collections/{name}/{record_id}/chapters/{chapter_id}")
    async def update_record_chapter(
        name: str, record_id: str, chapter_id: str, payload: Dict[str, Any] = Body(...)
    ) -> JSONResponse:
        _log_event("Updating chapter", collection=name, record_id=record_id, chapter_id=chapter_id)

        async def _update() -> Dict[str, Any]:
            return await _projection(name).update_child(record_id, chapter_id, payload)

        return await _respond(_update(), message="Chapter updated")

    @api.delete("/collections/{name}/{record_id}/chapters/{chapter_id}")
    async def delete_record_chapter(name: str, record_id: str, chapter_id: str) -> JSONResponse:
        _log_event("Deleting chapter", collection=name, record_id=record_id, chapter_id=chapter_id)

        async def _delete() -> DeleteReport:
            return await _projection(name).delete_child(record_id, chapter_id)

        return await _respond(_delete(), serialize=_report, message="Chapter deleted")

    @api.get("/dashboard")
    async def dashboard_stats() -> JSONResponse:
        return await _respond(dashboard.collect(), serialize=lambda stats: stats.to_dict())

    app.include_router(api)
    return app


__all__ = [
    "ContextualLoggerAdapter",
    "RequestContextMiddleware",
    "create_app",
    "get_max_upload_bytes",
]
