"""FastAPI application exposing chapter intake and moderation."""

from __future__ import annotations

import asyncio
import contextvars
import hmac
import logging
import uuid
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..pipeline.errors import (
    ChapterNotFound,
    InvalidTransition,
    PipelineError,
    PublishCancelled,
    UnpublishableChapter,
)
from ..pipeline.moderation import ModerationOrchestrator, PendingChapter
from ..services.events import APP_EVENT, DB_QUERY, emit_db_event, emit_structured_event
from ..services.intake import ChapterIntake, IntakeError
from ..services.object_store import LocalObjectStore
from ..services.settings import WebPConfig
from ..services.storage import ChapterRecord


T = TypeVar("T")

MODERATOR_ROLES = ("admin", "moderator")
ADMIN_ROLES = ("admin",)
UPLOADER_ROLES = ("admin", "moderator", "uploader")

_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "mangapub_request_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "mangapub_actor",
    default=None,
)

_ERROR_STATUS = {
    ChapterNotFound: status.HTTP_404_NOT_FOUND,
    InvalidTransition: status.HTTP_409_CONFLICT,
    UnpublishableChapter: status.HTTP_422_UNPROCESSABLE_ENTITY,
    PublishCancelled: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


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
        scope.setdefault("state", {})
        if isinstance(scope["state"], dict):
            scope["state"]["request_id"] = request_id

        method = scope.get("method")
        request_token = _REQUEST_ID_VAR.set(request_id)
        actor_token = _ACTOR_VAR.set(f"request:{method}" if isinstance(method, str) else "request")
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
        for key, value in _collect_correlation_context().items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("mangapub.web.events"), {})


def _log_event(message: str, **payload: Any) -> None:
    emit_structured_event(
        APP_EVENT,
        message,
        payload=payload,
        correlation=_collect_correlation_context(),
        logger=EVENT_LOGGER,
    )


RoleGuard = Callable[[Request, Sequence[str]], None]


class HeaderRoleGuard:
    """Accept the configured admin key or a role asserted by the upstream auth proxy."""

    def __init__(self, api_key: Optional[str] = None) -> None:
        self._api_key = api_key or None

    def __call__(self, request: Request, roles: Sequence[str]) -> None:
        supplied_key = (request.headers.get("x-api-key") or "").strip()
        if self._api_key and supplied_key and hmac.compare_digest(supplied_key, self._api_key):
            return
        role = (request.headers.get("x-user-role") or "").strip().lower()
        if role and role in roles:
            return
        if not role and not supplied_key:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")


class ApprovePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    force: bool = False
    delete_staging: bool = Field(True, alias="deleteStaging")


class RejectPayload(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)
    terminal: bool = False


class ChapterStartPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    manga_id: int = Field(..., ge=1, alias="mangaId")
    chapter_number: int = Field(..., ge=0, alias="chapterNumber")
    volume: Optional[int] = Field(None, ge=0)
    title: Optional[str] = Field(None, max_length=300)


class PageRegistration(BaseModel):
    index: int = Field(..., ge=1)
    key: Optional[str] = None
    url: Optional[str] = None
    name: Optional[str] = None


class PageRegistrationPayload(BaseModel):
    pages: List[PageRegistration] = Field(..., min_length=1)


class WebPConfigPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    upload_quality: Optional[int] = Field(None, alias="uploadQuality")
    publish_quality: Optional[int] = Field(None, alias="publishQuality")
    max_width: Optional[int] = Field(None, alias="maxWidth")
    max_height: Optional[int] = Field(None, alias="maxHeight")
    recompress_threshold: Optional[int] = Field(None, alias="recompressThreshold")
    effort: Optional[int] = None


def _serialize_chapter(chapter: ChapterRecord) -> Dict[str, Any]:
    return asdict(chapter)


def _serialize_pending(entry: PendingChapter) -> Dict[str, Any]:
    return {**_serialize_chapter(entry.chapter), "page_count": entry.page_count, "slug": entry.slug}


def create_app(
    orchestrator: ModerationOrchestrator,
    *,
    config: AppConfig,
    intake: Optional[ChapterIntake] = None,
    role_guard: Optional[RoleGuard] = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    app = FastAPI(title="Manga Publisher", description="Chapter intake and moderation")
    repository = orchestrator.repository
    intake = intake or ChapterIntake(repository, orchestrator.staging, settings=orchestrator.settings)
    guard: RoleGuard = role_guard or HeaderRoleGuard(config.admin_api_key)
    app.state.orchestrator = orchestrator
    app.state.intake = intake

    def _repository_event_emitter(event_type: str, message: str, **kwargs: Any) -> None:
        correlation = _collect_correlation_context()
        if event_type == DB_QUERY:
            emit_db_event(message, correlation=correlation, logger=EVENT_LOGGER, level=logging.DEBUG, **kwargs)
        else:
            emit_structured_event(event_type, message, correlation=correlation, logger=EVENT_LOGGER, **kwargs)

    repository.configure_event_emitter(_repository_event_emitter)
    app.add_middleware(RequestContextMiddleware)

    permanent = orchestrator.permanent
    if isinstance(permanent, LocalObjectStore):
        app.mount("/objects", StaticFiles(directory=permanent.root), name="objects")

    def _require(*roles: str) -> Callable[[Request], Any]:
        async def _dependency(request: Request) -> None:
            guard(request, roles)
            _ACTOR_VAR.set(request.headers.get("x-user-role") or "api-key")

        return _dependency

    async def _run_blocking(operation: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        context = contextvars.copy_context()
        return await loop.run_in_executor(None, context.run, operation)

    @app.exception_handler(PipelineError)
    async def _pipeline_error_handler(request: Request, error: PipelineError) -> JSONResponse:
        status_code = next(
            (code for kind, code in _ERROR_STATUS.items() if isinstance(error, kind)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        log = LOGGER.warning if status_code < 500 else LOGGER.error
        log("%s %s failed at %s: %s", request.method, request.url.path, error.stage, error)
        return JSONResponse(status_code=status_code, content={"ok": False, "detail": error.to_dict()})

    @app.exception_handler(IntakeError)
    async def _intake_error_handler(request: Request, error: IntakeError) -> JSONResponse:
        LOGGER.info("Rejected intake request %s: %s", request.url.path, error)
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"ok": False, "detail": str(error)})

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "stores": {
                "staging": orchestrator.staging.name,
                "permanent": orchestrator.permanent.name,
            },
            "publishConcurrency": config.publish_concurrency,
        }

    @app.get("/api/chapters/pending", dependencies=[Depends(_require(*MODERATOR_ROLES))])
    async def list_pending(limit: int = 200) -> Dict[str, Any]:
        entries = await _run_blocking(lambda: orchestrator.pending(limit=max(1, min(limit, 1000))))
        _log_event("Listed pending chapters", count=len(entries))
        return {"chapters": [_serialize_pending(entry) for entry in entries]}

    @app.post("/api/chapters/{chapter_id}/approve", dependencies=[Depends(_require(*MODERATOR_ROLES))])
    async def approve_chapter(chapter_id: int, payload: Optional[ApprovePayload] = None) -> Dict[str, Any]:
        options = payload or ApprovePayload()
        _log_event("Approving chapter", chapter_id=chapter_id, force=options.force)
        result = await _run_blocking(
            lambda: orchestrator.approve(
                chapter_id, force=options.force, delete_staging=options.delete_staging
            )
        )
        return result.to_dict()

    @app.post("/api/chapters/{chapter_id}/reject", dependencies=[Depends(_require(*MODERATOR_ROLES))])
    async def reject_chapter(chapter_id: int, payload: Optional[RejectPayload] = None) -> Dict[str, Any]:
        options = payload or RejectPayload()
        _log_event("Rejecting chapter", chapter_id=chapter_id, terminal=options.terminal)
        result = await _run_blocking(
            lambda: orchestrator.reject(chapter_id, reason=options.reason, terminal=options.terminal)
        )
        return result.to_dict()

    @app.post(
        "/api/chapters",
        status_code=status.HTTP_201_CREATED,
        dependencies=[Depends(_require(*UPLOADER_ROLES))],
    )
    async def start_chapter(payload: ChapterStartPayload) -> Dict[str, Any]:
        started = intake.start(
            payload.manga_id, payload.chapter_number, volume=payload.volume, title=payload.title
        )
        _log_event("Started chapter", chapter_id=started.chapter.id)
        return {"chapter": _serialize_chapter(started.chapter), "stagingPrefix": started.staging_prefix}

    @app.post(
        "/api/chapters/{chapter_id}/pages",
        status_code=status.HTTP_201_CREATED,
        dependencies=[Depends(_require(*UPLOADER_ROLES))],
    )
    async def upload_page(
        chapter_id: int,
        file: UploadFile = File(...),
        page_index: Optional[int] = Form(None),
    ) -> Dict[str, Any]:
        data = await file.read()
        staged = await _run_blocking(
            lambda: intake.stage_page(
                chapter_id, data, file_name=file.filename, page_index=page_index
            )
        )
        return {"page": asdict(staged)}

    @app.post(
        "/api/chapters/{chapter_id}/pages/register",
        status_code=status.HTTP_201_CREATED,
        dependencies=[Depends(_require(*UPLOADER_ROLES))],
    )
    async def register_pages(chapter_id: int, payload: PageRegistrationPayload) -> Dict[str, Any]:
        count = intake.register_pages(chapter_id, [page.model_dump() for page in payload.pages])
        return {"registered": count}

    @app.post("/api/chapters/{chapter_id}/commit", dependencies=[Depends(_require(*UPLOADER_ROLES))])
    async def commit_chapter(chapter_id: int) -> Dict[str, Any]:
        chapter = intake.commit(chapter_id)
        return {"chapter": _serialize_chapter(chapter)}

    @app.get("/api/admin/webp-config", dependencies=[Depends(_require(*MODERATOR_ROLES))])
    async def get_webp_config() -> Dict[str, Any]:
        return {"config": orchestrator.settings.load().to_dict()}

    @app.put("/api/admin/webp-config", dependencies=[Depends(_require(*ADMIN_ROLES))])
    async def update_webp_config(payload: WebPConfigPayload) -> Dict[str, Any]:
        changes = payload.model_dump(exclude_none=True)
        try:
            updated: WebPConfig = orchestrator.settings.update(changes)
        except (TypeError, ValueError) as error:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(error)) from error
        _log_event("Updated WebP settings", **updated.to_dict())
        return {"config": updated.to_dict()}

    return app


__all__ = [
    "ContextualLoggerAdapter",
    "HeaderRoleGuard",
    "RequestContextMiddleware",
    "RoleGuard",
    "create_app",
]
