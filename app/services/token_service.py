"""
Invitation token lifecycle.

Tokens move ``Active`` (unclaimed) -> ``InUse`` (claimed by a user) and leave
the table when an admin deletes them or a renewal replaces an expired one.
Multi-step writes below commit each step on its own; a failure between steps
leaves a state that ``reconciliation_service.reconcile`` repairs.
"""

import logging
import random
import string
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.token import TokenDuration, TokenGenerate, TokenStatus
from app.models.user import User
from app.utils.dates import compute_expiry
from app.utils.exceptions import AlreadyUsed, Conflict, NotFound, PartialFailure, UpstreamFailure

logger = logging.getLogger(__name__)

TOKEN_LENGTH = 16
TOKEN_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits
INVALID_STATUSES = {"Invalid", "N/A"}


def generate_token_string() -> str:
    return "".join(random.choice(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))


def _insert_token(db: Session, token: TokenGenerate) -> TokenGenerate:
    db.add(token)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.error("Token insert failed (collision or constraint): %s", exc.orig)
        raise UpstreamFailure("Failed to generate token.", status_code=500) from exc
    db.refresh(token)
    return token


def generate(db: Session, duration: TokenDuration | str, now: datetime | None = None) -> TokenGenerate:
    """Create an unclaimed ``Active`` token; no pre-check against existing rows."""
    duration = TokenDuration(duration)
    created_at = now or datetime.utcnow()
    token = TokenGenerate(
        token=generate_token_string(),
        duration=duration.value,
        status=TokenStatus.active.value,
        createdat=created_at,
        expiresat=compute_expiry(created_at, duration),
    )
    token = _insert_token(db, token)
    logger.info("Generated %s token id=%s", duration.value, token.id)
    return token


def get_by_string(db: Session, token_string: str) -> TokenGenerate | None:
    return db.query(TokenGenerate).filter(TokenGenerate.token == token_string).first()


def ensure_claimable(db: Session, token_string: str) -> TokenGenerate:
    token = get_by_string(db, token_string)
    if not token:
        raise NotFound("Invalid token provided.")
    if token.status == TokenStatus.in_use.value:
        raise AlreadyUsed()
    return token


def claim(db: Session, token_string: str, user_id: int) -> TokenGenerate:
    """Attribute the token to ``user_id`` then mark it ``InUse``, as two commits."""
    token = ensure_claimable(db, token_string)

    token.userid = user_id
    db.commit()

    token.status = TokenStatus.in_use.value
    db.commit()
    db.refresh(token)
    logger.info("Token id=%s claimed by user_id=%s", token.id, user_id)
    return token


def find_user_token(db: Session, user_id: int) -> TokenGenerate | None:
    return (
        db.query(TokenGenerate)
        .filter(TokenGenerate.userid == user_id, TokenGenerate.token != "")
        .order_by(TokenGenerate.createdat.desc())
        .first()
    )


def renew(
    db: Session,
    user_id: int,
    duration: TokenDuration | str,
    now: datetime | None = None,
) -> TokenGenerate:
    duration = TokenDuration(duration)
    now = now or datetime.utcnow()

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFound("User not found.")

    existing = find_user_token(db, user_id)
    if existing:
        if existing.expiresat and existing.expiresat > now:
            raise Conflict("User already has an active token. Please delete the existing token before renewing.")
        logger.info("Deleting expired token id=%s before renewal for user_id=%s", existing.id, user_id)
        db.delete(existing)
        db.commit()

    token = TokenGenerate(
        token=generate_token_string(),
        duration=duration.value,
        status=TokenStatus.in_use.value,
        createdat=now,
        expiresat=compute_expiry(now, duration),
        userid=user_id,
    )
    token = _insert_token(db, token)

    try:
        user.token = token.token
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.error("Renewed token id=%s stored but user_id=%s not updated: %s", token.id, user_id, exc)
        raise PartialFailure(
            "Token generated and stored, but failed to update user record.",
            data={"renewedToken": serialize_token(token)},
        ) from exc

    db.refresh(token)
    logger.info("Renewed token for user_id=%s new token id=%s", user_id, token.id)
    return token


def delete(db: Session, token_id: int) -> None:
    deleted = db.query(TokenGenerate).filter(TokenGenerate.id == token_id).delete()
    db.commit()
    logger.info("Deleted token id=%s (rows=%s)", token_id, deleted)


def delete_token_for_user(db: Session, user_id: int, token_string: str) -> None:
    """Delete the token row, then clear the user's token column."""
    db.query(TokenGenerate).filter(TokenGenerate.token == token_string).delete()
    db.commit()

    try:
        db.query(User).filter(User.id == user_id).update({User.token: None})
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.error("Token %s deleted but user_id=%s still references it: %s", token_string, user_id, exc)
        raise PartialFailure("Token deleted, but failed to update user record.") from exc


def delete_token_and_user(db: Session, user_id: int, token_string: str | None) -> None:
    """Delete the user row, then the token row; the second step may fail alone."""
    removed = db.query(User).filter(User.id == user_id).delete()
    db.commit()
    if not removed:
        raise NotFound("User not found.")

    if not token_string or token_string == "N/A":
        logger.info("Deleted user_id=%s with no associated token", user_id)
        return

    try:
        db.query(TokenGenerate).filter(TokenGenerate.token == token_string).delete()
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.error("User_id=%s deleted but token %s left orphaned: %s", user_id, token_string, exc)
        raise PartialFailure("User deleted, but failed to delete the associated token.") from exc
    logger.info("Deleted user_id=%s and associated token", user_id)


def is_token_valid(db: Session, token_string: str | None, now: datetime | None = None) -> dict:
    if not token_string:
        return {"valid": False}
    token = get_by_string(db, token_string)
    if not token or token.status in INVALID_STATUSES:
        return {"valid": False}
    if token.expiresat and token.expiresat < (now or datetime.utcnow()):
        return {"valid": False, "expired": True}
    return {"valid": True}


def list_history(db: Session) -> list[TokenGenerate]:
    return db.query(TokenGenerate).order_by(TokenGenerate.createdat.desc(), TokenGenerate.id.desc()).all()


def serialize_token(token: TokenGenerate) -> dict:
    return {
        "id": token.id,
        "token": token.token,
        "duration": token.duration,
        "status": token.status,
        "createdat": token.createdat,
        "expiresat": token.expiresat,
        "userid": token.userid,
    }
