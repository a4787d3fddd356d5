from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import socketio
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from socketio.exceptions import ConnectionRefusedError as SocketConnectionRefused
from sqlalchemy.exc import NoResultFound
from starlette.exceptions import HTTPException as StarletteHTTPException

from codeprep.services.judge import JudgeService
from codeprep.services.quick_practice.schema import McqAnswer
from codeprep.services.realtime.schema import (
    CODE_EXECUTION_RESULT,
    CODE_UPDATE,
    INTERVIEW_PROGRESS,
    JOIN_INTERVIEW,
    LEAVE_INTERVIEW,
    PROGRESS_SAVED,
    SESSION_STATUS_UPDATE,
    TYPING_INDICATOR,
    ProgressSaved,
    SessionStatusUpdate,
)
from codeprep.services.scoring import summarize
from codeprep.services.session.schema import ProgressRecord, SubmitRequest, TestCase
from codeprep.services.store import DEFAULT_DATABASE_URL, SessionStore
from codeprep.services.transport.schema import HealthStatus
from codeprep.wire import WireModel

load_dotenv()
logger = logging.getLogger("codeprep.api")


class ServerSettings(BaseSettings):
    DATABASE_URL: str = DEFAULT_DATABASE_URL
    JUDGE0_HOST: Optional[str] = None
    JUDGE0_KEY: Optional[str] = None
    USE_JUDGE0_MOCK: bool = True
    JUDGE_CASE_TIMEOUT_S: float = 5.0
    CORS_ORIGINS: List[str] = ["*"]
    ANALYZER_ENABLED: bool = True

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class ExecuteBody(WireModel):
    session_id: str
    question_id: str
    code: str
    language: str
    test_cases: List[TestCase] = Field(default_factory=list)
    request_seq: Optional[int] = None


class QuickPracticeSubmitBody(WireModel):
    answers: List[McqAnswer] = Field(default_factory=list)


def room_for(session_id: str) -> str:
    return f"interview-{session_id}"


def require_token(authorization: Optional[str] = Header(default=None)) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Session expired. Please login again.")
    return token.strip()


def _session_id_from(data: Any) -> Optional[str]:
    if isinstance(data, str):
        return data or None
    if isinstance(data, dict):
        value = data.get("sessionId")
        return str(value) if value else None
    return None


def build_socket_server(cors_origins: List[str]) -> socketio.AsyncServer:
    """Socket.IO server for session rooms; clients in a room relay editor activity to each other."""

    sio = socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins="*" if "*" in cors_origins else cors_origins,
        logger=False,
        engineio_logger=False,
    )

    @sio.event
    async def connect(sid: str, environ: Dict[str, Any], auth: Optional[Dict[str, Any]] = None) -> None:
        token = (auth or {}).get("token")
        if not token:
            logger.info("Rejecting socket %s without a token", sid)
            raise SocketConnectionRefused("Authentication required")
        await sio.save_session(sid, {"userId": (auth or {}).get("userId"), "userName": (auth or {}).get("userName")})
        logger.debug("Socket %s connected", sid)

    @sio.event
    async def disconnect(sid: str, *args: Any) -> None:
        logger.debug("Socket %s disconnected", sid)

    @sio.on(JOIN_INTERVIEW)
    async def join_interview(sid: str, data: Any) -> None:
        session_id = _session_id_from(data)
        if session_id is None:
            return
        await sio.enter_room(sid, room_for(session_id))
        logger.info("Socket %s joined %s", sid, room_for(session_id))

    @sio.on(LEAVE_INTERVIEW)
    async def leave_interview(sid: str, data: Any) -> None:
        session_id = _session_id_from(data)
        if session_id is None:
            return
        await sio.leave_room(sid, room_for(session_id))
        logger.info("Socket %s left %s", sid, room_for(session_id))

    async def relay(event: str, sid: str, data: Any) -> None:
        session_id = _session_id_from(data)
        if session_id is None:
            return
        await sio.emit(event, data, room=room_for(session_id), skip_sid=sid)

    @sio.on(CODE_UPDATE)
    async def code_update(sid: str, data: Any) -> None:
        await relay(CODE_UPDATE, sid, data)

    @sio.on(TYPING_INDICATOR)
    async def typing_indicator(sid: str, data: Any) -> None:
        await relay(TYPING_INDICATOR, sid, data)

    @sio.on(INTERVIEW_PROGRESS)
    async def interview_progress(sid: str, data: Any) -> None:
        await relay(INTERVIEW_PROGRESS, sid, data)

    return sio


def create_app(
    settings: Optional[ServerSettings] = None,
    *,
    store: Optional[SessionStore] = None,
    judge: Optional[JudgeService] = None,
) -> socketio.ASGIApp:
    """Build the reference backend: REST routes under ``/api`` plus Socket.IO at ``/socket.io``."""

    settings = settings or ServerSettings()
    store = store or SessionStore(database_url=settings.DATABASE_URL)
    judge = judge or JudgeService(
        host=settings.JUDGE0_HOST,
        api_key=settings.JUDGE0_KEY,
        use_mock=settings.USE_JUDGE0_MOCK,
        case_timeout_s=settings.JUDGE_CASE_TIMEOUT_S,
    )
    sio = build_socket_server(settings.CORS_ORIGINS)

    app = FastAPI(title="CodePrep Interview Backend")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.store = store
    app.state.judge = judge
    app.state.sio = sio

    @app.on_event("startup")
    async def _startup() -> None:
        await judge.start()
        logger.info("Backend ready (judge mock=%s)", judge.use_mock)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await judge.close()

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.get("/api/health", response_model=HealthStatus)
    async def health() -> HealthStatus:
        return HealthStatus()

    @app.get("/api/coding/session/{session_id}")
    async def get_session(session_id: str, _token: str = Depends(require_token)) -> Dict[str, Any]:
        try:
            session = store.get_session(session_id)
        except NoResultFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        client_view = session.model_copy(update={"questions": [q.for_client() for q in session.questions]})
        return {"success": True, "data": client_view.to_wire()}

    @app.get("/api/coding/progress/{session_id}")
    async def get_progress(
        session_id: str,
        question_id: str = Query(..., alias="questionId"),
        _token: str = Depends(require_token),
    ) -> Dict[str, Any]:
        try:
            record = store.get_progress(session_id, question_id)
        except NoResultFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"success": True, "data": {"progress": record.to_wire() if record else None}}

    @app.post("/api/coding/execute")
    async def execute(body: ExecuteBody, _token: str = Depends(require_token)) -> Any:
        try:
            question = store.get_question(body.session_id, body.question_id)
        except NoResultFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        # stored cases include the hidden ones the client never sees
        cases = question.test_cases or body.test_cases
        if not cases:
            raise HTTPException(status_code=400, detail="No test cases available for this question")
        result = await judge.run_cases(body.language, body.code, cases)
        if not settings.ANALYZER_ENABLED:
            result.complexity_analysis = None
        data = result.to_wire()
        data.update(
            {
                "sessionId": body.session_id,
                "questionId": body.question_id,
                "language": body.language,
            }
        )
        if body.request_seq is not None:
            data["requestSeq"] = body.request_seq
        await sio.emit(CODE_EXECUTION_RESULT, data, room=room_for(body.session_id))
        if not result.success:
            message = result.error or "Code execution failed"
            return JSONResponse(status_code=400, content={"success": False, "message": message, "data": data})
        return {"success": True, "message": summarize(result), "data": data}

    @app.post("/api/coding/save-progress")
    async def save_progress(body: ProgressRecord, _token: str = Depends(require_token)) -> Dict[str, Any]:
        try:
            record = store.save_progress(body)
        except NoResultFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        saved = ProgressSaved(session_id=record.session_id, question_id=record.question_id, saved_at=record.updated_at)
        await sio.emit(PROGRESS_SAVED, saved.to_wire(), room=room_for(record.session_id or ""))
        return {"success": True, "message": "Progress saved", "data": {"progress": record.to_wire()}}

    @app.post("/api/coding/submit")
    async def submit(body: SubmitRequest, _token: str = Depends(require_token)) -> Dict[str, Any]:
        if not body.code.strip():
            raise HTTPException(status_code=400, detail="Code is required")
        try:
            receipt = store.submit(body)
        except NoResultFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        update = SessionStatusUpdate(session_id=receipt.session_id, status=receipt.status or "in_progress")
        await sio.emit(SESSION_STATUS_UPDATE, update.to_wire(), room=room_for(receipt.session_id))
        logger.info("Stored response for %s/%s (score %d)", receipt.session_id, receipt.question_id, receipt.final_score)
        return {"success": True, "message": "Solution submitted successfully", "data": receipt.to_wire()}

    @app.get("/api/quick-practice/session/{session_id}")
    async def get_quick_practice(session_id: str, _token: str = Depends(require_token)) -> Dict[str, Any]:
        try:
            practice = store.get_quick_practice(session_id)
        except NoResultFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        # answers and explanations ship with the run; the client reveals them once a question locks
        return {"success": True, "data": practice.to_wire()}

    @app.post("/api/quick-practice/session/{session_id}/submit")
    async def submit_quick_practice(
        session_id: str,
        body: QuickPracticeSubmitBody,
        _token: str = Depends(require_token),
    ) -> Dict[str, Any]:
        try:
            result = store.complete_quick_practice(session_id, body.answers)
        except NoResultFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"success": True, "data": result.to_wire()}

    return socketio.ASGIApp(sio, other_asgi_app=app)


__all__ = ["ExecuteBody", "ServerSettings", "build_socket_server", "create_app", "require_token", "room_for"]
