import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException, Request, Response, status

from presence.clock import epoch_ms
from presence.eligibility import is_valid_attendee_id
from presence.errors import AccessDenied, ClassNotFound, RateLimited, SessionNotFound, Unauthorized
from presence.models import AttendanceSession, ClassInfo
from presence.rate_limit import RateLimitResult
from presence.service import PresenceContext

logger = logging.getLogger("presence_service")

TEACHER = "teacher"
STUDENT = "student"
ADMIN = "admin"

# Set by the startup hook; tests override get_context instead
presence_context: Optional[PresenceContext] = None


@dataclass
class Actor:
    id: str
    role: str


def get_context() -> PresenceContext:
    if presence_context is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Presence service not available",
        )
    return presence_context


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client is not None:
        return request.client.host
    return "unknown"


def request_details(request: Request, **extra: Any) -> Dict[str, Any]:
    details = {
        "ip": client_ip(request),
        "user_agent": request.headers.get("user-agent"),
        "url": request.url.path,
        "method": request.method,
    }
    details.update(extra)
    return details


def get_actor(x_actor_id: Optional[str] = Header(default=None),
              x_actor_role: Optional[str] = Header(default=None)) -> Optional[Actor]:
    if not x_actor_id or not x_actor_role:
        return None
    # Actor ids end up inside document ids
    if not is_valid_attendee_id(x_actor_id.strip()):
        logger.warning("Rejecting malformed actor id")
        return None
    return Actor(id=x_actor_id.strip(), role=x_actor_role.strip().lower())


def require_role(*roles: str):
    """Dependency factory admitting only actors with one of ``roles``."""

    def dependency(request: Request,
                   actor: Optional[Actor] = Depends(get_actor),
                   ctx: PresenceContext = Depends(get_context)) -> Actor:
        if actor is None:
            ctx.security_log.log_unauthorized_access(
                None, request.url.path, request_details(request, reason="missing_identity")
            )
            raise Unauthorized()
        if actor.role not in roles:
            logger.warning("Actor %s with role %s denied %s", actor.id, actor.role, request.url.path)
            ctx.security_log.log_permission_denied(
                actor.id,
                request.url.path,
                request_details(request, reason="wrong_role", role=actor.role, required=list(roles)),
            )
            raise AccessDenied(f"Access denied. Required role: {' or '.join(roles)}")
        return actor

    return dependency


def rate_limited(endpoint: str):
    """Dependency factory rejecting the request once the client's window is full."""

    def dependency(request: Request, response: Response,
                   actor: Optional[Actor] = Depends(get_actor),
                   ctx: PresenceContext = Depends(get_context)) -> RateLimitResult:
        ip = client_ip(request)
        # Forwarded addresses are client supplied, so identified callers are counted by id
        client = f"actor:{actor.id}" if actor is not None else ip
        result = ctx.rate_limiter.check_endpoint(client, endpoint)
        headers = {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(result.reset_at),
        }
        if result.limited:
            retry_after = max(0, math.ceil((result.reset_at - epoch_ms(ctx.clock())) / 1000))
            logger.warning("Rate limit hit for %s on %s", client, endpoint)
            ctx.security_log.log_rate_limit_exceeded(
                endpoint, ip, request_details(request, limit=result.limit, client=client)
            )
            error = RateLimited(ctx.rate_limiter.rule_for(endpoint).message, retryAfter=retry_after)
            error.headers = {**headers, "Retry-After": str(retry_after)}
            raise error
        # Error responses are built by the exception handlers, which read them from state
        request.state.rate_limit_headers = headers
        for name, value in headers.items():
            response.headers[name] = value
        return result

    return dependency


def owned_class(ctx: PresenceContext, request: Request, class_id: str, actor: Actor) -> ClassInfo:
    class_info = ctx.directory.get_class(class_id)
    if class_info is None:
        raise ClassNotFound()
    if actor.role != ADMIN and class_info.teacher_id != actor.id:
        ctx.security_log.log_permission_denied(
            actor.id, request.url.path, request_details(request, reason="not_owner", class_id=class_id)
        )
        raise AccessDenied("You can only manage sessions for your own classes")
    return class_info


def owned_session(ctx: PresenceContext, request: Request, token: str, actor: Actor):
    session: Optional[AttendanceSession] = ctx.sessions.get(token)
    if session is None:
        raise SessionNotFound("Attendance session not found")
    return session, owned_class(ctx, request, session.class_id, actor)
