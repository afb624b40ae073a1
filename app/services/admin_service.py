import hmac
import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.config import settings
from app.models.admin import Admin
from app.models.token import TokenGenerate
from app.models.user import User
from app.services.auth_service import (
    create_access_token,
    decode_access_token,
    generate_session_id,
    hash_password,
    is_password_hashed,
    verify_password,
)
from app.services.security_log_service import log_security_event
from app.utils.exceptions import AuthenticationFailed

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "N/A"


def sign_in(db: Session, username: str, password: str) -> dict:
    admin = db.query(Admin).filter(Admin.username == username).first()
    if not admin or not verify_password(password, admin.password):
        log_security_event(db, "admin_auth_failed", {"username": username, "stage": "signin"})
        raise AuthenticationFailed("Invalid username or password.")

    if not is_password_hashed(admin.password):
        admin.password = hash_password(password)

    jti = generate_session_id()
    expires_at = datetime.utcnow() + timedelta(minutes=settings.ADMIN_SESSION_EXPIRE_MINUTES)
    session_token = create_access_token({"sub": str(admin.id), "username": admin.username, "jti": jti})

    admin.active_session_id = jti
    admin.session_expires_at = expires_at
    db.commit()

    logger.info("Admin signed in admin_id=%s", admin.id)
    return {
        "adminId": str(admin.id),
        "adminUsername": admin.username,
        "adminSessionId": session_token,
        "expiresAt": expires_at,
    }


def validate_admin_session(
    db: Session,
    admin_id: str | None,
    admin_username: str | None,
    session_token: str | None,
) -> Admin | None:
    """Require id + username to match a row and the signed session to match its stored jti."""
    if not admin_id or not admin_username or not session_token:
        return None
    try:
        admin = (
            db.query(Admin)
            .filter(Admin.id == int(admin_id), Admin.username == admin_username)
            .first()
        )
    except (TypeError, ValueError):
        return None
    except Exception:
        logger.exception("Admin lookup failed for admin_id=%s", admin_id)
        return None
    if not admin or not admin.active_session_id:
        return None

    try:
        claims = decode_access_token(session_token)
    except ValueError:
        log_security_event(db, "invalid_token", {"admin_id": admin_id, "scope": "admin"})
        return None

    if str(claims.get("sub")) != str(admin.id) or claims.get("type") != "admin":
        return None
    if not hmac.compare_digest(str(claims.get("jti") or ""), admin.active_session_id):
        return None
    if not admin.session_expires_at or admin.session_expires_at <= datetime.utcnow():
        return None
    return admin


def sign_out(db: Session, admin: Admin) -> None:
    admin.active_session_id = None
    admin.session_expires_at = None
    db.commit()
    logger.info("Admin signed out admin_id=%s", admin.id)


def token_user_rows(db: Session) -> list[dict]:
    """Pair every user with the token row attributed to them, else their token column."""
    users = db.query(User).order_by(User.id.asc()).all()
    tokens_by_user: dict[int, TokenGenerate] = {}
    for token in db.query(TokenGenerate).filter(TokenGenerate.userid.isnot(None)).all():
        tokens_by_user.setdefault(token.userid, token)

    rows = []
    for user in users:
        token = tokens_by_user.get(user.id)
        rows.append(
            {
                "userId": user.id,
                "username": user.username or NOT_AVAILABLE,
                "token": (token.token if token else None) or user.token or NOT_AVAILABLE,
                "duration": token.duration if token else NOT_AVAILABLE,
                "createdat": token.createdat if token else NOT_AVAILABLE,
                "expiresat": token.expiresat if token else None,
                "status": token.status if token else NOT_AVAILABLE,
            }
        )
    return rows


def resolve_user_token(db: Session, user: User) -> str | None:
    token = db.query(TokenGenerate).filter(TokenGenerate.userid == user.id).first()
    if token:
        return token.token
    return user.token
