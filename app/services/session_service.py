import logging
import re
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.token import TokenGenerate
from app.models.user import User
from app.services import token_service
from app.services.auth_service import (
    generate_session_id,
    generate_session_token,
    hash_password,
    is_password_hashed,
    verify_password,
)
from app.services.security_log_service import log_security_event
from app.services.session_broadcast import session_broadcaster
from app.utils.exceptions import (
    AlreadyUsed,
    AuthenticationFailed,
    Conflict,
    GalaxyError,
    NotFound,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]{3,20}$")
MIN_PASSWORD_LENGTH = 8


def logical_username(username: str) -> str:
    return f"{username}{settings.LOGICAL_USERNAME_SUFFIX}"


def sign_in(db: Session, username: str, password: str) -> dict:
    user = db.query(User).filter(User.username == username).first()
    if not user or not verify_password(password, user.password):
        log_security_event(db, "signin_failed", {"username": username})
        raise AuthenticationFailed()

    new_token = generate_session_token()
    new_session_id = generate_session_id()

    if user.active_session_id:
        logger.info("Terminating existing session for user_id=%s", user.id)
        session_broadcaster.publish_session_terminated(user.id)

    if not is_password_hashed(user.password):
        logger.info("Upgrading legacy password storage for user_id=%s", user.id)
        user.password = hash_password(password)

    user.session_token = new_token
    user.active_session_id = new_session_id
    user.login_count = (user.login_count or 0) + 1
    user.last_login = datetime.utcnow()
    db.commit()
    db.refresh(user)

    logger.info("User signed in user_id=%s login_count=%s", user.id, user.login_count)
    return {
        "userId": user.id,
        "username": user.username,
        "sessionToken": new_token,
        "sessionId": new_session_id,
    }


def validate_session(db: Session, token: str | None, user_id: str | None, session_id: str | None) -> User | None:
    """Return the user when both stored session values match exactly, else None."""
    if not token or not user_id or not session_id:
        return None
    try:
        user = db.query(User).filter(User.id == int(user_id)).first()
    except (TypeError, ValueError):
        return None
    except Exception:
        logger.exception("Session lookup failed for user_id=%s", user_id)
        return None
    if not user:
        return None
    if user.session_token == token and user.active_session_id == session_id:
        return user
    logger.info("Session mismatch for user_id=%s", user.id)
    return None


def sign_up(db: Session, username: str, password: str, token_string: str) -> User:
    if not username or not password or not token_string:
        raise ValidationFailed("Username, password, and token are required.")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed("Password must be at least 8 characters long.")
    if not USERNAME_PATTERN.match(username):
        raise ValidationFailed("Username must be 3-20 letters, digits or underscores.")

    try:
        token_service.ensure_claimable(db, token_string)
    except NotFound as exc:
        raise ValidationFailed(exc.message) from exc
    except AlreadyUsed as exc:
        raise ValidationFailed(exc.message) from exc

    user = User(username=username, password=hash_password(password), token=token_string)
    db.add(user)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise Conflict("Username already taken. Please try a different one.") from exc
    db.refresh(user)

    try:
        token_service.claim(db, token_string, user.id)
    except Exception as exc:
        db.rollback()
        logger.error("User_id=%s created but token claim failed: %s", user.id, exc)
        raise GalaxyError("User created, but failed to update token status.") from exc
    logger.info("Signed up user_id=%s", user.id)
    return user


def clear_deploy_record(db: Session, user: User) -> None:
    user.deploy_timestamp = None
    user.active_form_number = None
    user.active_run_id = None
    db.commit()


def sign_out(db: Session, user: User) -> None:
    user.session_token = None
    user.active_session_id = None
    user.last_logout = datetime.utcnow()
    user.deploy_timestamp = None
    user.active_form_number = None
    user.active_run_id = None
    db.commit()
    logger.info("User signed out user_id=%s", user.id)


def session_details(db: Session, user: User) -> dict:
    expires_at = None
    if user.token:
        token = db.query(TokenGenerate).filter(TokenGenerate.token == user.token).first()
        if token:
            expires_at = token.expiresat
    return {"username": user.username, "tokenExpiresAt": expires_at}


def record_dispatch(db: Session, user: User) -> None:
    user.deploy_timestamp = datetime.utcnow()
    db.commit()


def record_form_started(db: Session, user: User, form_number: int) -> None:
    if not user.deploy_timestamp:
        user.deploy_timestamp = datetime.utcnow()
    user.active_form_number = form_number
    db.commit()


def set_active_run(db: Session, user: User, run_id: str) -> None:
    if not user.deploy_timestamp:
        raise Conflict("Cannot set run ID without an active deployment record.")
    user.active_run_id = str(run_id)
    db.commit()
