"""FastAPI application exposing the lecture pipeline for review and browsing."""

from __future__ import annotations

import contextvars
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import PurePosixPath
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, File, Form, Header, HTTPException, Query, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..errors import (
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    PipelineError,
    TransientIOError,
    ValidationError,
)
from ..pipeline import LecturePipeline
from ..services.events import emit_db_event, emit_structured_event
from ..services.lifecycle import derive_stage
from ..services.storage import DraftRecord
from ..services.work_queue import STAGES


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "lecture_pipeline_request_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "lecture_pipeline_actor",
    default=None,
)


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
        scope_state = scope.get("state")
        if scope_state is None:
            scope_state = {}
            scope["state"] = scope_state
        if isinstance(scope_state, dict):
            scope_state["request_id"] = request_id
        else:
            setattr(scope_state, "request_id", request_id)

        method = scope.get("method")
        request_token = _REQUEST_ID_VAR.set(request_id)
        actor_token = _ACTOR_VAR.set(f"request:{method.upper()}" if isinstance(method, str) else "request")
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
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("lecture_pipeline.web.events"), {})


def _log_event(message: str, **context: Any) -> None:
    emit_structured_event(
        "APP_EVENT",
        message,
        context=context,
        correlation=_collect_correlation_context(),
        logger=EVENT_LOGGER,
    )


def _emit_db_event(action: str, **kwargs: Any) -> None:
    emit_db_event(action, correlation=_collect_correlation_context(), logger=EVENT_LOGGER, **kwargs)


def _normalize_root_path(root_path: Optional[str]) -> str:
    working = (root_path or "").strip()
    if not working or working == "/":
        return ""
    if not working.startswith("/"):
        working = f"/{working}"
    return working.rstrip("/")


class DraftUpdatePayload(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    summary: Optional[str] = None
    difficulty: Optional[str] = Field(None, min_length=1)
    duration: Optional[str] = Field(None, min_length=1)


class DraftApprovalPayload(DraftUpdatePayload):
    pass


class RequeuePayload(BaseModel):
    stage: Optional[str] = None
    include_running: bool = False


def _serialize_draft(draft: DraftRecord) -> Dict[str, Any]:
    return {
        "id": draft.id,
        "courseId": draft.course_id,
        "lectureId": draft.lecture_id,
        "title": draft.title,
        "content": draft.content,
        "summary": draft.summary,
        "difficulty": draft.difficulty,
        "duration": draft.duration,
        "status": draft.status.value,
        "fileName": draft.file_name,
        "fileType": draft.file_type,
        "version": draft.version,
        "createdAt": draft.created_at,
        "updatedAt": draft.updated_at,
    }


def _raise_http(error: PipelineError) -> None:
    if isinstance(error, (IllegalTransitionError, ConflictError)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error)) from error
    if isinstance(error, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error)) from error
    if isinstance(error, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error)) from error
    if isinstance(error, TransientIOError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(error)) from error
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error)) from error


def create_app(
    pipeline: LecturePipeline,
    *,
    config: AppConfig,
    root_path: str | None = None,
    auto_dispatch: bool = True,
) -> FastAPI:
    """Return a configured FastAPI application."""

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        LOGGER.info("Stopping background processing")
        pipeline.shutdown()

    app = FastAPI(
        title="Lecture Pipeline",
        description="Review drafts and browse generated summaries and quizzes",
        root_path=_normalize_root_path(root_path),
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline
    app.state.config = config
    app.state.auto_dispatch = auto_dispatch

    for repository in (pipeline.drafts, pipeline.quizzes, pipeline.queue):
        repository.configure_event_emitter(_emit_db_event)

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _dispatch() -> None:
        if not app.state.auto_dispatch:
            return
        pipeline.process_in_background()
        LOGGER.debug("Scheduled background processing")

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "database": str(config.database_file)}

    @app.post("/api/uploads", status_code=status.HTTP_202_ACCEPTED)
    async def upload_artifact(
        file: UploadFile = File(...),
        course_id: Optional[str] = Form(None),
        lecture_id: Optional[str] = Form(None),
        delivery_id: Optional[str] = Header(None, alias="Idempotency-Key"),
    ) -> Dict[str, Any]:
        file_name = PurePosixPath((file.filename or "").replace("\\", "/")).name
        if not file_name:
            raise HTTPException(status_code=400, detail="Uploaded file has no name")
        if course_id and lecture_id:
            locator = f"uploads/{course_id.strip()}/{lecture_id.strip()}/{file_name}"
        else:
            locator = file_name
        _log_event("Uploading artifact", locator=locator, content_type=file.content_type)

        data = await file.read()
        await file.close()
        if not data:
            raise HTTPException(status_code=400, detail="Uploaded file is empty")
        try:
            payload = pipeline.ingest(locator, data, file.content_type, delivery_id=delivery_id)
        except PipelineError as error:
            _raise_http(error)
        _dispatch()
        return {
            "locator": locator,
            "courseId": payload.course_id,
            "lectureId": payload.lecture_id,
            "title": payload.title or "",
            "status": "queued",
        }

    @app.get("/api/drafts")
    async def list_drafts(
        course_id: Optional[str] = Query(None),
        lecture_id: Optional[str] = Query(None),
        status_filter: Optional[str] = Query(None, alias="status"),
    ) -> Dict[str, Any]:
        try:
            drafts = pipeline.drafts.list_drafts(
                course_id=course_id, lecture_id=lecture_id, status=status_filter
            )
        except PipelineError as error:
            _raise_http(error)
        return {"drafts": [_serialize_draft(draft) for draft in drafts]}

    @app.get("/api/drafts/{draft_id}")
    async def get_draft(draft_id: str) -> Dict[str, Any]:
        draft = pipeline.drafts.get(draft_id)
        if draft is None:
            raise HTTPException(status_code=404, detail="Draft not found")
        has_quiz = bool(
            pipeline.quizzes.list_quizzes(course_id=draft.course_id, lecture_id=draft.lecture_id)
        )
        return {
            "draft": _serialize_draft(draft),
            "stage": derive_stage(draft.status, draft.summary, has_quiz=has_quiz).value,
        }

    @app.put("/api/drafts/{draft_id}")
    async def update_draft(draft_id: str, payload: DraftUpdatePayload) -> Dict[str, Any]:
        changes = payload.model_dump(exclude_none=True)
        if not changes:
            raise HTTPException(status_code=400, detail="No fields to update")
        _log_event("Updating draft", draft_id=draft_id, fields=sorted(changes))
        try:
            updated = pipeline.update(draft_id, **changes)
        except PipelineError as error:
            _raise_http(error)
        return {"draft": _serialize_draft(updated)}

    @app.post("/api/drafts/{draft_id}/approve")
    async def approve_draft(
        draft_id: str, payload: Optional[DraftApprovalPayload] = None
    ) -> Dict[str, Any]:
        corrections = payload.model_dump(exclude_none=True) if payload is not None else {}
        _log_event("Approving draft", draft_id=draft_id, corrections=sorted(corrections))
        try:
            approved = pipeline.approve(draft_id, **corrections)
        except PipelineError as error:
            _raise_http(error)
        _dispatch()
        return {"draft": _serialize_draft(approved)}

    @app.delete("/api/drafts/{draft_id}")
    async def reject_draft(draft_id: str) -> Dict[str, Any]:
        _log_event("Rejecting draft", draft_id=draft_id)
        try:
            removed = pipeline.reject(draft_id)
        except PipelineError as error:
            _raise_http(error)
        return {"rejected": _serialize_draft(removed)}

    @app.get("/api/questions")
    async def list_questions(
        course_id: Optional[str] = Query(None),
        lecture_id: Optional[str] = Query(None),
    ) -> Dict[str, Any]:
        questions = pipeline.quizzes.list_questions(course_id=course_id, lecture_id=lecture_id)
        return {
            "questions": [
                {
                    "id": question.id,
                    "courseId": question.course_id,
                    "lectureId": question.lecture_id,
                    "question": question.question,
                    "options": question.options,
                    "answer": question.answer,
                    "explanation": question.explanation,
                    "difficulty": question.difficulty,
                    "topicTag": question.topic_tag,
                }
                for question in questions
            ]
        }

    @app.get("/api/quizzes")
    async def list_quizzes(
        course_id: Optional[str] = Query(None),
        lecture_id: Optional[str] = Query(None),
    ) -> Dict[str, Any]:
        quizzes = pipeline.quizzes.list_quizzes(course_id=course_id, lecture_id=lecture_id)
        return {
            "quizzes": [
                {
                    "id": quiz.id,
                    "courseId": quiz.course_id,
                    "lectureId": quiz.lecture_id,
                    "quizId": quiz.quiz_id,
                    "title": quiz.title,
                    "description": quiz.description,
                    "questionIds": quiz.question_ids,
                    "passingScore": quiz.passing_score,
                    "difficulty": quiz.difficulty,
                    "order": quiz.order,
                    "isPersonalized": quiz.is_personalized,
                    "userId": quiz.user_id,
                }
                for quiz in quizzes
            ]
        }

    @app.get("/api/work-items")
    async def list_work_items(
        status_filter: Optional[str] = Query(None, alias="status"),
        stage: Optional[str] = Query(None),
    ) -> Dict[str, List[Dict[str, Any]]]:
        try:
            items = pipeline.queue.list_items(status=status_filter, stage=stage)
        except PipelineError as error:
            _raise_http(error)
        return {"items": [item.to_dict() for item in items]}

    @app.post("/api/work-items/requeue")
    async def requeue_work_items(payload: Optional[RequeuePayload] = None) -> Dict[str, Any]:
        request = payload or RequeuePayload()
        if request.stage and request.stage not in STAGES:
            raise HTTPException(status_code=400, detail=f"Unknown stage '{request.stage}'")
        count = pipeline.queue.requeue_failed(request.stage, include_running=request.include_running)
        _log_event("Requeued work items", stage=request.stage, count=count)
        if count:
            _dispatch()
        return {"requeued": count}

    return app


__all__ = ["create_app"]
