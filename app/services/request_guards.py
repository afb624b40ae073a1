import re

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.services.security_log_service import log_security_event
from app.utils.exceptions import Forbidden, PayloadTooLarge

BLOCKED_AGENT_MARKERS = ("curl", "postman", "axios", "node-fetch")
_UNSAFE_INPUT = re.compile(r"[^a-zA-Z0-9\-_]")


def is_browser_request(request: Request) -> bool:
    user_agent = (request.headers.get("user-agent") or "").lower()
    if not user_agent:
        return False
    return not any(marker in user_agent for marker in BLOCKED_AGENT_MARKERS)


def is_allowed_origin(request: Request) -> bool:
    if not settings.allowed_origins:
        return True
    origin = request.headers.get("origin") or request.headers.get("referer") or ""
    return any(origin.startswith(allowed) for allowed in settings.allowed_origins)


def content_length(request: Request) -> int:
    try:
        return int(request.headers.get("content-length") or 0)
    except ValueError:
        return 0


def ensure_content_length(request: Request, max_bytes: int) -> None:
    if content_length(request) > max_bytes:
        raise PayloadTooLarge()


def sanitize_input(value: str) -> str:
    return _UNSAFE_INPUT.sub("", value or "")


def require_browser(request: Request, db: Session = Depends(get_db)) -> None:
    if not is_browser_request(request):
        log_security_event(
            db,
            "non_browser_request",
            {"path": request.url.path, "user_agent": request.headers.get("user-agent")},
        )
        raise Forbidden("Access denied: Browser requests only")


def require_allowed_origin(request: Request, db: Session = Depends(get_db)) -> None:
    if not is_allowed_origin(request):
        log_security_event(db, "invalid_request", {"path": request.url.path, "origin": request.headers.get("origin")})
        raise Forbidden("Origin not allowed")


def body_limit(max_bytes: int):
    """Dependency factory rejecting requests whose declared body exceeds ``max_bytes``."""

    def dependency(request: Request) -> None:
        ensure_content_length(request, max_bytes)

    return dependency
