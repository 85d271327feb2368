"""FastAPI application exposing series composition over HTTP."""

from __future__ import annotations

import contextvars
import logging
import uuid
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..services.container import SeriesServices, build_services
from ..services.errors import (
    BatchLimitExceededError,
    CascadeError,
    ConcurrentModificationError,
    GroupNotFoundError,
    MembershipConflictError,
    NotFoundError,
    SeriesNotFoundError,
    SeriesSyncError,
    SermonNotFoundError,
    ValidationError,
)
from ..services.events import emit_db_event, emit_structured_event
from ..services.membership import MemberType


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "sermon_prep_request_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "sermon_prep_actor",
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
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("sermon_prep.web.events"), {})


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


def _emit_db_event(
    action: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.DEBUG,
) -> None:
    emit_db_event(
        action,
        payload=payload,
        context=context,
        correlation=_collect_correlation_context(),
        duration_ms=duration_ms,
        level=level,
        logger=EVENT_LOGGER,
    )


def _log_event(message: str, **context: Any) -> None:
    _emit_debug_event("APP_EVENT", message, context=context)


def _normalize_root_path(value: Optional[str]) -> str:
    if value is None:
        return ""
    normalized = value.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


def _not_found_detail(error: NotFoundError) -> str:
    if isinstance(error, (SeriesNotFoundError, SermonNotFoundError, GroupNotFoundError)):
        return f"{error.kind} not found"
    return str(error)


class SeriesCreatePayload(BaseModel):
    userId: Optional[str] = None
    theme: Optional[str] = None
    bookOrTopic: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    startDate: Optional[str] = None
    duration: Optional[int] = None
    color: Optional[str] = None
    status: str = "draft"


class SeriesUpdatePayload(BaseModel):
    title: Optional[str] = None
    theme: Optional[str] = None
    description: Optional[str] = None
    bookOrTopic: Optional[str] = None
    startDate: Optional[str] = None
    duration: Optional[int] = None
    color: Optional[str] = None
    status: Optional[str] = None


class SeriesItemPayload(BaseModel):
    type: Optional[str] = None
    refId: Optional[str] = None
    position: Optional[int] = None


class SeriesItemReorderPayload(BaseModel):
    itemIds: Any = None


class SeriesSermonPayload(BaseModel):
    sermonId: Optional[str] = None
    position: Optional[int] = None


class SeriesSermonReorderPayload(BaseModel):
    sermonIds: Any = None


class SermonCreatePayload(BaseModel):
    userId: Optional[str] = None
    title: Optional[str] = None
    verse: Optional[str] = None
    date: Optional[str] = None


class SermonUpdatePayload(BaseModel):
    title: Optional[str] = None
    verse: Optional[str] = None
    date: Optional[str] = None
    isPreached: Optional[bool] = None


class GroupCreatePayload(BaseModel):
    userId: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None


class GroupUpdatePayload(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def _handle_request_validation(request: Request, error: RequestValidationError) -> JSONResponse:
        LOGGER.debug("Rejected malformed request to %s: %s", request.url.path, error.errors())
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": "Invalid request payload"})

    @app.exception_handler(ValidationError)
    async def _handle_validation(request: Request, error: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(error)})

    @app.exception_handler(NotFoundError)
    async def _handle_not_found(request: Request, error: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": _not_found_detail(error)})

    @app.exception_handler(ConcurrentModificationError)
    async def _handle_conflict(request: Request, error: ConcurrentModificationError) -> JSONResponse:
        LOGGER.warning("Gave up on %s after repeated concurrent writes: %s", request.url.path, error)
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": "Series was modified concurrently; retry the request"},
        )

    @app.exception_handler(MembershipConflictError)
    async def _handle_membership_conflict(request: Request, error: MembershipConflictError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(error)})

    @app.exception_handler(SeriesSyncError)
    async def _handle_sync_failure(request: Request, error: SeriesSyncError) -> JSONResponse:
        LOGGER.error("Series sync failed for %s: %s", error.series_id, error)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "Failed to sync series positions",
                "failed": [str(member) for member, _error in error.failures],
            },
        )


def create_app(
    services: Optional[SeriesServices] = None,
    *,
    config: AppConfig,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application.

    When ``services`` is omitted they are built from ``config`` and closed on
    application shutdown.
    """

    normalized_root = _normalize_root_path(root_path)
    app = FastAPI(
        title="Sermon Prep",
        description="Compose sermon series from sermons and groups",
        root_path=normalized_root,
    )
    owns_services = services is None
    if services is None:
        services = build_services(config)
    app.state.services = services

    def _store_event_emitter(event_type: str, message: str, **kwargs: Any) -> None:
        if event_type == "DB_QUERY":
            _emit_db_event(message, **kwargs)
        else:
            _emit_debug_event(event_type, message, **kwargs)

    services.store.configure_event_emitter(_store_event_emitter)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _install_error_handlers(app)

    if owns_services:
        app.add_event_handler("shutdown", services.close)

    series_repository = services.series
    sermons = services.sermons
    groups = services.groups

    # ------------------------------------------------------------------
    # Series
    # ------------------------------------------------------------------
    @app.get("/api/series")
    async def list_series(user_id: Optional[str] = Query(None, alias="userId")) -> Dict[str, Any]:
        if user_id:
            documents = series_repository.list_series_by_user(user_id)
        else:
            documents = series_repository.list_all_series()
        return {"series": documents}

    @app.post("/api/series", status_code=status.HTTP_201_CREATED)
    async def create_series(payload: SeriesCreatePayload) -> Dict[str, Any]:
        if not payload.theme or not payload.theme.strip():
            raise HTTPException(status_code=400, detail="Series theme is required")
        if not payload.bookOrTopic or not payload.bookOrTopic.strip():
            raise HTTPException(status_code=400, detail="Series bookOrTopic is required")

        _log_event("Creating series", user_id=payload.userId)
        created = series_repository.create_series(
            payload.userId or "",
            theme=payload.theme.strip(),
            book_or_topic=payload.bookOrTopic.strip(),
            title=payload.title,
            description=payload.description,
            start_date=payload.startDate,
            duration=payload.duration,
            color=payload.color,
            status=payload.status,
        )
        _log_event("Created series", series_id=created["id"])
        return {"series": created}

    @app.get("/api/series/{series_id}")
    async def get_series(series_id: str) -> Dict[str, Any]:
        return {"series": series_repository.require_series(series_id)}

    @app.put("/api/series/{series_id}")
    async def update_series(series_id: str, payload: SeriesUpdatePayload) -> Dict[str, Any]:
        _log_event("Updating series", series_id=series_id)
        updated = series_repository.update_series(series_id, payload.model_dump(exclude_none=True))
        return {"series": updated}

    @app.delete("/api/series/{series_id}")
    async def delete_series(series_id: str) -> Dict[str, Any]:
        _log_event("Deleting series", series_id=series_id)
        try:
            report = await services.cascade.delete_series(series_id)
        except (CascadeError, BatchLimitExceededError) as error:
            LOGGER.error("Deleting series %s failed: %s", series_id, error)
            raise HTTPException(status_code=500, detail="Failed to delete series") from error
        if not report.existed:
            return {"message": "Series not found"}
        _log_event("Deleted series", series_id=series_id, cleared=report.cleared, batches=report.batches)
        return {"message": "Series deleted successfully", "cascade": report.as_dict()}

    @app.post("/api/series/{series_id}/resync")
    async def resync_series(series_id: str) -> Dict[str, Any]:
        _log_event("Resyncing series", series_id=series_id)
        report = await services.engine.resync(series_id)
        return {"sync": report.as_dict()}

    # ------------------------------------------------------------------
    # Series items (sermons and groups)
    # ------------------------------------------------------------------
    @app.post("/api/series/{series_id}/items")
    async def add_series_item(series_id: str, payload: SeriesItemPayload) -> Dict[str, Any]:
        member_type = MemberType.parse(payload.type)
        _log_event("Adding series item", series_id=series_id, type=member_type, ref_id=payload.refId)
        series, report = await services.add_member(series_id, member_type, payload.refId, payload.position)
        return {"series": series, "sync": report.as_dict()}

    @app.put("/api/series/{series_id}/items")
    async def reorder_series_items(series_id: str, payload: SeriesItemReorderPayload) -> Dict[str, Any]:
        _log_event("Reordering series items", series_id=series_id)
        series, report = await services.reorder_items(series_id, payload.itemIds)
        return {"series": series, "sync": report.as_dict()}

    @app.delete("/api/series/{series_id}/items")
    async def remove_series_item(
        series_id: str,
        item_type: Optional[str] = Query(None, alias="type"),
        ref_id: Optional[str] = Query(None, alias="refId"),
    ) -> Dict[str, Any]:
        member_type = MemberType.parse(item_type)
        _log_event("Removing series item", series_id=series_id, type=member_type, ref_id=ref_id)
        series, report = await services.remove_member(series_id, member_type, ref_id)
        return {"series": series, "sync": report.as_dict()}

    # ------------------------------------------------------------------
    # Series sermons (works on legacy sermonIds series too)
    # ------------------------------------------------------------------
    @app.post("/api/series/{series_id}/sermons")
    async def add_series_sermon(series_id: str, payload: SeriesSermonPayload) -> Dict[str, Any]:
        _log_event("Adding sermon to series", series_id=series_id, sermon_id=payload.sermonId)
        series, report = await services.add_member(
            series_id, MemberType.SERMON, payload.sermonId, payload.position
        )
        return {"series": series, "sync": report.as_dict()}

    @app.put("/api/series/{series_id}/sermons")
    async def reorder_series_sermons(series_id: str, payload: SeriesSermonReorderPayload) -> Dict[str, Any]:
        _log_event("Reordering series sermons", series_id=series_id)
        series, report = await services.reorder_sermons(series_id, payload.sermonIds)
        return {"series": series, "sync": report.as_dict()}

    @app.delete("/api/series/{series_id}/sermons")
    async def remove_series_sermon(
        series_id: str,
        sermon_id: Optional[str] = Query(None, alias="sermonId"),
    ) -> Dict[str, Any]:
        _log_event("Removing sermon from series", series_id=series_id, sermon_id=sermon_id)
        series, report = await services.remove_member(series_id, MemberType.SERMON, sermon_id)
        return {"series": series, "sync": report.as_dict()}

    # ------------------------------------------------------------------
    # Sermons
    # ------------------------------------------------------------------
    @app.get("/api/sermons")
    async def list_sermons(user_id: str = Query(..., alias="userId")) -> Dict[str, Any]:
        return {"sermons": sermons.list_by_user(user_id)}

    @app.post("/api/sermons", status_code=status.HTTP_201_CREATED)
    async def create_sermon(payload: SermonCreatePayload) -> Dict[str, Any]:
        _log_event("Creating sermon", user_id=payload.userId)
        created = sermons.create_sermon(
            payload.userId or "",
            payload.title or "",
            verse=payload.verse,
            date=payload.date,
        )
        return {"sermon": created}

    @app.get("/api/sermons/{sermon_id}")
    async def get_sermon(sermon_id: str) -> Dict[str, Any]:
        return {"sermon": sermons.require(sermon_id)}

    @app.put("/api/sermons/{sermon_id}")
    async def update_sermon(sermon_id: str, payload: SermonUpdatePayload) -> Dict[str, Any]:
        _log_event("Updating sermon", sermon_id=sermon_id)
        return {"sermon": sermons.update(sermon_id, payload.model_dump(exclude_none=True))}

    @app.delete("/api/sermons/{sermon_id}")
    async def delete_sermon(sermon_id: str) -> Dict[str, Any]:
        _log_event("Deleting sermon", sermon_id=sermon_id)
        try:
            report = await services.cascade.delete_sermon(sermon_id)
        except (SeriesSyncError, ConcurrentModificationError) as error:
            LOGGER.error("Deleting sermon %s failed: %s", sermon_id, error)
            raise HTTPException(status_code=500, detail="Failed to delete sermon") from error
        if not report.existed:
            return {"message": "Sermon not found"}
        return {"message": "Sermon deleted successfully", "cascade": report.as_dict()}

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------
    @app.get("/api/groups")
    async def list_groups(user_id: str = Query(..., alias="userId")) -> Dict[str, Any]:
        return {"groups": groups.list_by_user(user_id)}

    @app.post("/api/groups", status_code=status.HTTP_201_CREATED)
    async def create_group(payload: GroupCreatePayload) -> Dict[str, Any]:
        _log_event("Creating group", user_id=payload.userId)
        created = groups.create_group(
            payload.userId or "",
            payload.title or "",
            description=payload.description,
        )
        return {"group": created}

    @app.get("/api/groups/{group_id}")
    async def get_group(group_id: str) -> Dict[str, Any]:
        return {"group": groups.require(group_id)}

    @app.put("/api/groups/{group_id}")
    async def update_group(group_id: str, payload: GroupUpdatePayload) -> Dict[str, Any]:
        _log_event("Updating group", group_id=group_id)
        return {"group": groups.update(group_id, payload.model_dump(exclude_none=True))}

    @app.delete("/api/groups/{group_id}")
    async def delete_group(group_id: str) -> Dict[str, Any]:
        _log_event("Deleting group", group_id=group_id)
        try:
            report = await services.cascade.delete_group(group_id)
        except (SeriesSyncError, ConcurrentModificationError) as error:
            LOGGER.error("Deleting group %s failed: %s", group_id, error)
            raise HTTPException(status_code=500, detail="Failed to delete group") from error
        if not report.existed:
            return {"message": "Group not found"}
        return {"message": "Group deleted successfully", "cascade": report.as_dict()}

    return app


__all__: List[str] = ["ContextualLoggerAdapter", "RequestContextMiddleware", "create_app"]
