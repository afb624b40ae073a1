from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.models.admin import Admin
from app.models.user import User
from app.services import admin_service
from app.services.session_service import validate_session
from app.utils.exceptions import AuthenticationFailed


def _bearer_token(credentials: HTTPAuthorizationCredentials | None) -> str | None:
    if not credentials or credentials.scheme.lower() != "bearer":
        return None
    return credentials.credentials or None


def get_optional_session(
    credentials: HTTPAuthorizationCredentials | None = Depends(settings.bearer_scheme),
    x_user_id: str | None = Header(None, alias="X-User-ID"),
    x_session_id: str | None = Header(None, alias="X-Session-ID"),
    db: Session = Depends(get_db),
) -> User | None:
    return validate_session(db, _bearer_token(credentials), x_user_id, x_session_id)


def get_current_user(user: User | None = Depends(get_optional_session)) -> User:
    if not user:
        raise AuthenticationFailed("Authentication required.")
    return user


def get_current_session(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"user": user, "db": db}


def get_bearer_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(settings.bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the user owning a bearer session token (routes without session id headers)."""
    token = _bearer_token(credentials)
    if not token:
        raise AuthenticationFailed("Invalid authorization header")
    user = db.query(User).filter(User.session_token == token).first()
    if not user:
        raise AuthenticationFailed("Invalid or expired session")
    return user


def get_current_admin(
    x_admin_id: str | None = Header(None, alias="X-Admin-ID"),
    x_admin_username: str | None = Header(None, alias="X-Admin-Username"),
    x_admin_session_id: str | None = Header(None, alias="X-Admin-Session-ID"),
    db: Session = Depends(get_db),
) -> Admin:
    admin = admin_service.validate_admin_session(db, x_admin_id, x_admin_username, x_admin_session_id)
    if not admin:
        raise AuthenticationFailed("Admin authentication required.")
    return admin
