import hmac
import secrets
import time
import uuid
from datetime import datetime, timedelta

import bcrypt
from jose import JWTError, jwt

from app.config import settings

BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


def hash_password(password: str) -> str:
    if not password:
        raise ValueError("Password cannot be empty")
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def is_password_hashed(stored: str | None) -> bool:
    return bool(stored) and stored.startswith(BCRYPT_PREFIXES)


def verify_password(password: str, stored: str | None) -> bool:
    """Check a password against a bcrypt hash, or a legacy plaintext value."""
    if not password or not stored:
        return False
    if is_password_hashed(stored):
        try:
            return bcrypt.checkpw(password.encode("utf-8"), stored.encode("utf-8"))
        except ValueError:
            return False
    return hmac.compare_digest(password.encode("utf-8"), stored.encode("utf-8"))


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    out = []
    while value:
        value, remainder = divmod(value, 36)
        out.append(digits[remainder])
    return "".join(reversed(out))


def generate_session_token() -> str:
    """32 random bytes as hex, suffixed with the base-36 millisecond clock."""
    return secrets.token_hex(32) + _base36(int(time.time() * 1000))


def generate_session_id() -> str:
    return str(uuid.uuid4())


def create_access_token(data: dict, expires_minutes: int | None = None) -> str:
    if not settings.JWT_SECRET:
        raise RuntimeError("JWT_SECRET is not configured")
    minutes = expires_minutes or settings.ADMIN_SESSION_EXPIRE_MINUTES
    to_encode = data.copy()
    to_encode.update({"exp": datetime.utcnow() + timedelta(minutes=minutes), "type": "admin"})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> dict:
    if not settings.JWT_SECRET:
        raise ValueError("JWT_SECRET is not configured")
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired token") from exc
