from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from presence import activity, dependencies, descriptor
from presence.admin import router as admin_router
from presence.attendance import AttendanceOutcome, mask_token
from presence.config import settings
from presence.dependencies import (
    ADMIN,
    STUDENT,
    TEACHER,
    Actor,
    client_ip,
    get_context,
    owned_class,
    owned_session,
    rate_limited,
    request_details,
    require_role,
)
from presence.errors import (
    ClassLocationMissing,
    InvalidDuration,
    MalformedDescriptor,
    PresenceError,
    SessionNotFound,
    SystemFailure,
)
from presence.models import (
    AttendanceResult,
    AttendanceSession,
    ClassInfo,
    CreateSessionRequest,
    ExtendSessionRequest,
    LoginEventRequest,
    MarkAttendanceRequest,
    ScanAttendanceRequest,
    SessionInfo,
    SessionResponse,
)
from presence.security_log import LogLevel, SecurityEvents
from presence.service import PresenceContext, build_store
import logging
from datetime import datetime
from typing import Optional

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("presence_service")

app = FastAPI(
    title=settings.APP_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json"
)

# CORS config
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(admin_router, tags=["Admin"])


@app.on_event("startup")
async def startup_event():
    """Connect the document store and build the service objects."""
    try:
        dependencies.presence_context = PresenceContext(build_store())
        logger.info("Presence service initialized with %s store", settings.STORE_BACKEND)
    except Exception as e:
        logger.error(f"Failed to initialize presence service: {e}")
        logger.warning("Attendance endpoints will not be available")


def _context_or_none() -> Optional[PresenceContext]:
    provider = app.dependency_overrides.get(get_context, get_context)
    try:
        return provider()
    except HTTPException:
        return None


@app.exception_handler(PresenceError)
async def presence_error_handler(request: Request, exc: PresenceError):
    headers = {**getattr(request.state, "rate_limit_headers", {}), **exc.headers}
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=headers or None,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    ctx = _context_or_none()
    if ctx is not None:
        ctx.security_log.log_invalid_input(
            [{"loc": list(err.get("loc", ())), "type": err.get("type")} for err in exc.errors()],
            request.url.path,
            request_details(request),
        )
    return await request_validation_exception_handler(request, exc)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    ctx = _context_or_none()
    if ctx is not None:
        ctx.security_log.log(
            SecurityEvents.SYSTEM_ERROR,
            LogLevel.HIGH,
            request_details(request, error=type(exc).__name__),
        )
    failure = SystemFailure()
    return JSONResponse(status_code=failure.status_code, content=failure.to_dict())


def _session_response(session: AttendanceSession, class_info: Optional[ClassInfo],
                      now: datetime, include_qr: bool = True) -> SessionResponse:
    info = SessionInfo(
        session_token=session.token,
        class_id=session.class_id,
        class_name=class_info.name if class_info else None,
        created_at=session.created_at,
        expires_at=session.expires_at,
        remaining_minutes=session.remaining_minutes(now),
        is_active=session.active,
        is_expired=session.is_expired(now),
        is_valid=session.is_valid(now),
    )
    qr_data = qr_image = None
    if include_qr and session.is_valid(now) and class_info is not None and class_info.location is not None:
        desc = descriptor.encode(session, class_info, now)
        qr_data = descriptor.to_payload(desc)
        qr_image = descriptor.render_qr(desc)
    return SessionResponse(session=info, qr_data=qr_data, qr_image=qr_image)


def _attendance_result(outcome: AttendanceOutcome) -> AttendanceResult:
    if not outcome.success:
        raise outcome.error
    record, class_info = outcome.record, outcome.class_info
    return AttendanceResult(
        message=f"Attendance marked successfully for {class_info.name}",
        record_id=record.id,
        class_id=record.class_id,
        class_name=class_info.name,
        marked_at=record.marked_at,
        distance=round(outcome.distance),
        tolerance_meters=outcome.tolerance_meters,
        session_expires_at=outcome.session.expires_at,
    )


@app.get("/", tags=["Health"])
async def health_check():
    return {"status": "ok", "service": settings.APP_NAME, "store": settings.STORE_BACKEND}


# Sessions

@app.post("/classes/{class_id}/sessions", response_model=SessionResponse,
          status_code=201, tags=["Sessions"])
async def create_session(
    class_id: str,
    request: Request,
    body: Optional[CreateSessionRequest] = None,
    _limit=Depends(rate_limited("qr_generation")),
    actor: Actor = Depends(require_role(TEACHER)),
    ctx: PresenceContext = Depends(get_context),
):
    class_info = owned_class(ctx, request, class_id, actor)
    if class_info.location is None:
        raise ClassLocationMissing()

    duration = body.duration_minutes if body else None
    try:
        session = ctx.sessions.create(class_id, duration)
    except InvalidDuration:
        ctx.security_log.log_invalid_input({"durationMinutes": duration}, request.url.path, request_details(request))
        raise

    response = _session_response(session, class_info, ctx.clock())
    ctx.security_log.log(
        SecurityEvents.QR_GENERATED,
        LogLevel.LOW,
        request_details(request, class_id=class_id, session_token=mask_token(session.token)),
        actor.id,
    )
    ctx.tracker.track(actor.id, activity.QR_GENERATED, {"class_id": class_id, "ip": client_ip(request)})
    logger.info(f"Teacher {actor.id} opened session {mask_token(session.token)} for class {class_id}")
    return response


@app.get("/classes/{class_id}/sessions/active", response_model=SessionResponse, tags=["Sessions"])
async def get_active_session(
    class_id: str,
    request: Request,
    _limit=Depends(rate_limited("general")),
    actor: Actor = Depends(require_role(TEACHER)),
    ctx: PresenceContext = Depends(get_context),
):
    class_info = owned_class(ctx, request, class_id, actor)
    session = ctx.sessions.get_active_for_class(class_id)
    if session is None:
        raise SessionNotFound("No active attendance session for this class")
    return _session_response(session, class_info, ctx.clock())


@app.delete("/classes/{class_id}", tags=["Sessions"])
async def purge_class_data(
    class_id: str,
    request: Request,
    _limit=Depends(rate_limited("general")),
    actor: Actor = Depends(require_role(TEACHER, ADMIN)),
    ctx: PresenceContext = Depends(get_context),
):
    """Hook for class deletion: removes the class's sessions and attendance records."""
    if actor.role != ADMIN:
        owned_class(ctx, request, class_id, actor)
    deleted = ctx.sessions.purge_class(class_id)
    logger.info("Purged attendance data for class %s: %s", class_id, deleted)
    return {
        "success": True,
        "classId": class_id,
        "sessionsDeleted": deleted["sessions"],
        "recordsDeleted": deleted["records"],
    }


@app.get("/sessions/{token}", response_model=SessionResponse, tags=["Sessions"])
async def get_session(
    token: str,
    _limit=Depends(rate_limited("general")),
    ctx: PresenceContext = Depends(get_context),
):
    session = ctx.sessions.get(token)
    if session is None:
        raise SessionNotFound("Attendance session not found")
    class_info = ctx.directory.get_class(session.class_id)
    return _session_response(session, class_info, ctx.clock())


@app.put("/sessions/{token}", response_model=SessionResponse, tags=["Sessions"])
async def extend_session(
    token: str,
    request: Request,
    body: Optional[ExtendSessionRequest] = None,
    _limit=Depends(rate_limited("general")),
    actor: Actor = Depends(require_role(TEACHER)),
    ctx: PresenceContext = Depends(get_context),
):
    session, class_info = owned_session(ctx, request, token, actor)
    additional = body.additional_minutes if body else None
    try:
        session = ctx.sessions.extend(session, additional)
    except InvalidDuration:
        ctx.security_log.log_invalid_input({"additionalMinutes": additional}, request.url.path, request_details(request))
        raise

    ctx.security_log.log(
        SecurityEvents.SESSION_EXTENDED,
        LogLevel.LOW,
        request_details(request, session_token=mask_token(token), expires_at=session.expires_at.isoformat()),
        actor.id,
    )
    return _session_response(session, class_info, ctx.clock())


@app.delete("/sessions/{token}", response_model=SessionResponse, tags=["Sessions"])
async def deactivate_session(
    token: str,
    request: Request,
    _limit=Depends(rate_limited("general")),
    actor: Actor = Depends(require_role(TEACHER)),
    ctx: PresenceContext = Depends(get_context),
):
    session, class_info = owned_session(ctx, request, token, actor)
    session = ctx.sessions.deactivate(session)
    ctx.security_log.log(
        SecurityEvents.SESSION_DEACTIVATED,
        LogLevel.LOW,
        request_details(request, session_token=mask_token(token)),
        actor.id,
    )
    return _session_response(session, class_info, ctx.clock(), include_qr=False)


# Attendance

@app.post("/attendance/mark", response_model=AttendanceResult, tags=["Attendance"])
async def mark_attendance(
    body: MarkAttendanceRequest,
    request: Request,
    _limit=Depends(rate_limited("attendance")),
    actor: Actor = Depends(require_role(STUDENT)),
    ctx: PresenceContext = Depends(get_context),
):
    outcome = ctx.attendance.mark_attendance(
        body.session_token, actor.id, body.location, client_ip=client_ip(request)
    )
    return _attendance_result(outcome)


@app.post("/attendance/scan", response_model=AttendanceResult, tags=["Attendance"])
async def scan_attendance(
    body: ScanAttendanceRequest,
    request: Request,
    _limit=Depends(rate_limited("attendance")),
    actor: Actor = Depends(require_role(STUDENT)),
    ctx: PresenceContext = Depends(get_context),
):
    desc = descriptor.decode(body.descriptor)
    if desc is None:
        logger.warning("Malformed descriptor scanned by %s", actor.id)
        ctx.security_log.log(
            SecurityEvents.INVALID_QR_SCAN, LogLevel.LOW, request_details(request, reason="malformed"), actor.id
        )
        raise MalformedDescriptor()

    # The descriptor is only a hint; the store decides validity
    outcome = ctx.attendance.mark_attendance(
        desc.session_token, actor.id, body.location, client_ip=client_ip(request)
    )
    return _attendance_result(outcome)


# Security

@app.post("/security/login-events", tags=["Security"])
async def report_login_event(
    body: LoginEventRequest,
    request: Request,
    _limit=Depends(rate_limited("auth")),
    ctx: PresenceContext = Depends(get_context),
):
    details = request_details(request)
    if body.client_ip:
        details["ip"] = body.client_ip
    if body.user_agent:
        details["user_agent"] = body.user_agent

    event_id = ctx.security_log.log_login_attempt(body.success, body.actor_id, details)
    activity_type = activity.LOGIN if body.success else activity.FAILED_LOGIN
    patterns = ctx.tracker.track(body.actor_id, activity_type, {"ip": details["ip"]})
    return {"success": True, "eventId": event_id, "patterns": patterns}
