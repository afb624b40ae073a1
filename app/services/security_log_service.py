import json
import logging

from sqlalchemy.orm import Session

from app.models.security_log import SecurityLog

logger = logging.getLogger(__name__)

HIGH_SEVERITY_EVENTS = {"brute_force_blocked", "invalid_token", "unauthorized_method", "admin_auth_failed"}
MEDIUM_SEVERITY_EVENTS = {"rate_limit_exceeded", "invalid_request", "signin_failed", "non_browser_request"}


def severity_for(event_type: str) -> str:
    if event_type in HIGH_SEVERITY_EVENTS:
        return "high"
    if event_type in MEDIUM_SEVERITY_EVENTS:
        return "medium"
    return "low"


def log_security_event(db: Session, event_type: str, data: dict | None = None) -> None:
    """Persist a security event; failures are logged and never block the request."""
    severity = severity_for(event_type)
    payload = {"severity": severity, **(data or {})}
    if severity == "high":
        logger.warning("Security event %s: %s", event_type, payload)
    else:
        logger.info("Security event %s: %s", event_type, payload)
    try:
        db.add(SecurityLog(event_type=event_type, event_data=json.dumps(payload, default=str)))
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to persist security event %s", event_type)
