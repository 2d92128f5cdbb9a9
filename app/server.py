"""
HTTP entry point: roster admin, call history, analytics, the operator's
call session, and the Twilio status webhook.

Usage:
    python -m app.server
    # or
    uvicorn app.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import re
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from typing import Optional

import structlog
from fastapi import FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from app.auth import AuthManager, Principal
from app.config import Settings, get_settings
from app.database import KeyValueStore, SQLiteKeyValueStore
from app.directory import Directory, InvalidPhoneError
from app.errors import (
    AuthenticationError,
    BridgeError,
    CallerError,
    CaptureUnavailableError,
    ConfigurationError,
    NotFoundError,
    SchemaVersionError,
    SessionStateError,
)
from app.history import HistoryStore
from app.logging_config import bind_request_context, setup_logging
from app.models import (
    CallStatus,
    HistoryFilter,
    Preferences,
    Role,
    StudentCreate,
    StudentUpdate,
    TeacherCreate,
)
from app.output import generate_analytics, history_to_csv
from app.phone_utils import normalise_phone
from app.preferences import PreferenceStore
from app.recording import AudioRecorder
from app.session import CallSessionManager, Ticker
from app.telephony import TelephonyBridge, TwilioBridge, create_bridge, validate_twilio_signature

log = structlog.get_logger(__name__)

_RECORDING_NAME = re.compile(r"^[0-9a-f]{32}\.raw$")

_ERROR_STATUS: dict[type[CallerError], int] = {
    NotFoundError: 404,
    SessionStateError: 409,
    CaptureUnavailableError: 409,
    ConfigurationError: 503,
    BridgeError: 502,
    SchemaVersionError: 500,
    AuthenticationError: 401,
}


# ── Request bodies ──────────────────────────────────────────────
class LoginRequest(BaseModel):
    role: Role
    password: str
    name: str = ""


class StartCallRequest(BaseModel):
    student_id: int


class PreferencesUpdate(BaseModel):
    staff_phone_number: Optional[str] = None
    recording_enabled: Optional[bool] = None


class ClearResponse(BaseModel):
    removed: int = Field(ge=0)


def _preference_owner(principal: Principal) -> Optional[str]:
    return None if principal.is_admin else principal.name


# ── Service wiring ──────────────────────────────────────────────
@dataclass
class AppServices:
    settings: Settings
    store: KeyValueStore
    directory: Directory
    history: HistoryStore
    preferences: PreferenceStore
    bridge: TelephonyBridge
    recorder: AudioRecorder
    sessions: CallSessionManager
    auth: AuthManager

    async def close(self) -> None:
        await self.sessions.close()
        await self.bridge.close()
        await self.store.close()


def build_services(
    settings: Settings,
    store: KeyValueStore,
    bridge: Optional[TelephonyBridge] = None,
    ticker: Optional[Ticker] = None,
) -> AppServices:
    """Wire every component around an already-connected store."""
    bridge = bridge or create_bridge(settings)
    history = HistoryStore(store)
    preferences = PreferenceStore(store, settings)
    recorder = AudioRecorder(settings.recordings_dir)
    return AppServices(
        settings=settings,
        store=store,
        directory=Directory(store, settings.default_region),
        history=history,
        preferences=preferences,
        bridge=bridge,
        recorder=recorder,
        sessions=CallSessionManager(settings, bridge, history, recorder, preferences, ticker),
        auth=AuthManager(
            admin_password_hash=settings.admin_password_hash,
            staff_password_hash=settings.staff_password_hash,
            jwt_secret=settings.jwt_secret,
            expire_hours=settings.session_expire_hours,
            secure_cookies=settings.secure_cookies,
        ),
    )


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    """
    Create the FastAPI app with all routes.

    When ``services`` is given (tests) it is used as-is; otherwise the
    lifespan opens the SQLite store from settings and closes it on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        if owned:
            settings = get_settings()
            settings.ensure_dirs()
            setup_logging(settings.log_dir, json_logs=True)
            store = SQLiteKeyValueStore(settings.database_path)
            await store.connect()
            app.state.services = build_services(settings, store)
            log.info("server_started", db=str(settings.database_path), backend=settings.telephony_backend)
        yield
        if owned:
            await app.state.services.close()
            log.info("server_stopped")

    app = FastAPI(title="Student Caller", version="1.0.0", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    def svc() -> AppServices:
        return app.state.services

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
        bind_request_context(request_id=request_id, path=request.url.path)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(CallerError)
    async def caller_error_handler(request: Request, exc: CallerError):
        status = next((code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 400)
        if status >= 500:
            log.error("request_failed", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    @app.exception_handler(InvalidPhoneError)
    async def invalid_phone_handler(request: Request, exc: InvalidPhoneError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    # ── Health check ──────────────────────────────────────────
    @app.get("/health")
    async def health():
        issues = svc().settings.calling_issues((await svc().preferences.load()).staff_phone_number)
        return {"status": "ok", "calling_ready": not issues, "issues": issues}

    # ═══════════════════════════════════════════════════════════
    #  Auth
    # ═══════════════════════════════════════════════════════════
    @app.post("/auth/login")
    async def login(body: LoginRequest, response: Response):
        auth = svc().auth
        principal = auth.login(body.role, body.password, body.name)
        if principal.role is Role.STAFF:
            # Use the roster spelling so history groups by one teacher name.
            teacher = await svc().directory.find_teacher(principal.name)
            if teacher is not None:
                principal = Principal(teacher.name, Role.STAFF)
        token = auth.create_session_token(principal)
        auth.set_session_cookie(response, token)
        return {"token": token, "name": principal.name, "role": principal.role.value}

    @app.post("/auth/logout")
    async def logout(response: Response):
        svc().auth.clear_session_cookie(response)
        return {"ok": True}

    @app.get("/auth/me")
    async def me(request: Request):
        principal = svc().auth.require_auth(request)
        return {"name": principal.name, "role": principal.role.value}

    # ═══════════════════════════════════════════════════════════
    #  Students
    # ═══════════════════════════════════════════════════════════
    @app.get("/api/students")
    async def list_students(
        request: Request,
        q: str = "",
        sort: str = Query(default="name", pattern="^(name|phone|added_at)$"),
        order: str = Query(default="asc", pattern="^(asc|desc)$"),
    ):
        svc().auth.require_auth(request)
        return await svc().directory.list_students(q, sort, descending=order == "desc")

    @app.post("/api/students", status_code=201)
    async def add_student(body: StudentCreate, request: Request):
        principal = svc().auth.require_admin(request)
        return await svc().directory.add_student(body, added_by=principal.name)

    @app.patch("/api/students/{student_id}")
    async def update_student(student_id: int, body: StudentUpdate, request: Request):
        principal = svc().auth.require_admin(request)
        return await svc().directory.update_student(student_id, body, updated_by=principal.name)

    @app.delete("/api/students/{student_id}", status_code=204)
    async def delete_student(student_id: int, request: Request):
        svc().auth.require_admin(request)
        await svc().directory.remove_student(student_id)
        return Response(status_code=204)

    # ═══════════════════════════════════════════════════════════
    #  Teachers
    # ═══════════════════════════════════════════════════════════
    @app.get("/api/teachers")
    async def list_teachers(request: Request):
        svc().auth.require_auth(request)
        return await svc().directory.list_teachers()

    @app.post("/api/teachers", status_code=201)
    async def add_teacher(body: TeacherCreate, request: Request):
        svc().auth.require_admin(request)
        return await svc().directory.add_teacher(body)

    @app.delete("/api/teachers/{teacher_id}", status_code=204)
    async def delete_teacher(teacher_id: int, request: Request):
        svc().auth.require_admin(request)
        await svc().directory.remove_teacher(teacher_id)
        return Response(status_code=204)

    # ═══════════════════════════════════════════════════════════
    #  History & analytics
    # ═══════════════════════════════════════════════════════════
    def _history_filter(
        student: str,
        teacher: str,
        status: Optional[CallStatus],
        start: Optional[date],
        end: Optional[date],
        order: str,
    ) -> HistoryFilter:
        return HistoryFilter(
            student=student,
            teacher=teacher,
            status=status,
            start=start,
            end=end,
            newest_first=order == "desc",
        )

    @app.get("/api/history")
    async def list_history(
        request: Request,
        student: str = "",
        teacher: str = "",
        status: Optional[CallStatus] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        order: str = Query(default="desc", pattern="^(asc|desc)$"),
    ):
        svc().auth.require_auth(request)
        return await svc().history.list(_history_filter(student, teacher, status, start, end, order))

    @app.get("/api/history/export")
    async def export_history(
        request: Request,
        student: str = "",
        teacher: str = "",
        status: Optional[CallStatus] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        order: str = Query(default="desc", pattern="^(asc|desc)$"),
    ):
        svc().auth.require_auth(request)
        records = await svc().history.list(_history_filter(student, teacher, status, start, end, order))
        return PlainTextResponse(
            history_to_csv(records),
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="call_history.csv"'},
        )

    @app.delete("/api/history", response_model=ClearResponse)
    async def clear_history(request: Request):
        principal = svc().auth.require_admin(request)
        removed = await svc().history.clear()
        log.info("history_cleared_via_api", by=principal.name, removed=removed)
        return ClearResponse(removed=removed)

    @app.get("/api/analytics")
    async def analytics(request: Request, start: Optional[date] = None, end: Optional[date] = None):
        svc().auth.require_auth(request)
        records = await svc().history.list(HistoryFilter(start=start, end=end))
        return generate_analytics(records)

    @app.get("/recordings/{name}")
    async def get_recording(name: str, request: Request):
        svc().auth.require_auth(request)
        path = svc().settings.recordings_dir / name
        if not _RECORDING_NAME.match(name) or not path.is_file():
            raise HTTPException(status_code=404, detail="Recording not found")
        return FileResponse(path=str(path), media_type="application/octet-stream", filename=name)

    # ═══════════════════════════════════════════════════════════
    #  Preferences
    # ═══════════════════════════════════════════════════════════
    @app.get("/api/preferences")
    async def get_preferences(request: Request):
        principal = svc().auth.require_auth(request)
        return await svc().preferences.load(_preference_owner(principal))

    @app.put("/api/preferences")
    async def put_preferences(body: PreferencesUpdate, request: Request):
        """Staff edit their own preferences; the administrator edits the default."""
        owner = _preference_owner(svc().auth.require_auth(request))
        current = await svc().preferences.load(owner)
        changes = body.model_dump(exclude_none=True)
        if changes.get("staff_phone_number"):
            e164, valid = normalise_phone(changes["staff_phone_number"], svc().settings.default_region)
            if not valid:
                raise InvalidPhoneError(f"Invalid phone number: {changes['staff_phone_number']!r}")
            changes["staff_phone_number"] = e164
        return await svc().preferences.save(Preferences(**{**current.model_dump(), **changes}), owner)

    # ═══════════════════════════════════════════════════════════
    #  Call session (one per operator)
    # ═══════════════════════════════════════════════════════════
    @app.get("/api/call")
    async def call_state(request: Request):
        principal = svc().auth.require_auth(request)
        return svc().sessions.get(principal.name).view()

    @app.post("/api/call/start", status_code=202)
    async def start_call(body: StartCallRequest, request: Request):
        principal = svc().auth.require_auth(request)
        student = await svc().directory.get_student(body.student_id)
        session = await svc().sessions.start(principal.name, student)
        return session.view()

    @app.post("/api/call/cancel")
    async def cancel_call(request: Request):
        principal = svc().auth.require_auth(request)
        session = svc().sessions.get(principal.name)
        session.cancel()
        return session.view()

    @app.post("/api/call/hangup")
    async def hangup_call(request: Request):
        principal = svc().auth.require_auth(request)
        session = svc().sessions.get(principal.name)
        session.hangup()
        return session.view()

    @app.post("/api/call/reset")
    async def reset_call(request: Request):
        principal = svc().auth.require_auth(request)
        session = svc().sessions.get(principal.name)
        session.reset()
        return session.view()

    # ═══════════════════════════════════════════════════════════
    #  Twilio status webhook
    # ═══════════════════════════════════════════════════════════
    @app.post("/webhook/twilio/status")
    async def twilio_status(
        request: Request,
        x_twilio_signature: Optional[str] = Header(None, alias="x-twilio-signature"),
    ):
        settings = svc().settings
        bridge = svc().bridge
        form = await request.form()
        params = {k: str(v) for k, v in form.items()}

        if settings.twilio_auth_token:
            url = settings.twilio_status_callback_url or str(request.url)
            if not validate_twilio_signature(settings.twilio_auth_token, url, params, x_twilio_signature or ""):
                log.warning("webhook_signature_mismatch")
                raise HTTPException(status_code=401, detail="Invalid signature")

        log.info(
            "webhook_received",
            call_sid=params.get("CallSid", ""),
            status=params.get("CallStatus", ""),
        )
        if isinstance(bridge, TwilioBridge):
            bridge.handle_status_callback(params)
        return {"ok": True}

    return app


# Create the main app
app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "app.server:app",
        host=_settings.host,
        port=_settings.port,
        reload=False,
        log_level="info",
    )
