"""Fixed-window request counter kept in Redis (``ratelimit:<ip>:<path>``)."""

import logging

import redis
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.services.security_log_service import log_security_event
from app.utils.exceptions import RateLimited

logger = logging.getLogger(__name__)

_redis_client = None


def get_redis_client():
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL or "redis://localhost:6379/0", decode_responses=True)
    return _redis_client


def set_redis_client(client) -> None:
    global _redis_client
    _redis_client = client


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip", "").strip()
    ip = forwarded or real_ip or (request.client.host if request.client else "")
    cleaned = "".join(ch for ch in ip if ch.isalnum() or ch in ".:")
    return cleaned or "anonymous"


def check_rate_limit(key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
    """Count one request against ``key``; returns (allowed, remaining)."""
    try:
        pipe = get_redis_client().pipeline()
        pipe.incr(key)
        pipe.expire(key, window_seconds)
        count, _ = pipe.execute()
    except redis.RedisError:
        # Fail open
        logger.exception("Rate limit store unavailable; allowing request for %s", key)
        return True, limit
    remaining = max(0, limit - int(count))
    return int(count) <= limit, remaining


def rate_limit_dependency(request: Request, db: Session = Depends(get_db)) -> None:
    if not settings.RATE_LIMIT_ENABLED:
        return
    ip = client_ip(request)
    key = f"ratelimit:{ip}:{request.url.path}"
    allowed, _ = check_rate_limit(key, settings.RATE_LIMIT_MAX_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS)
    if not allowed:
        log_security_event(db, "rate_limit_exceeded", {"ip": ip, "path": request.url.path})
        raise RateLimited()
