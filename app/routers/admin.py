import logging

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.user import User
from app.schemas.token import AdminSignIn, TokenCreate, TokenRenew, TokenResponse
from app.services import admin_service, reconciliation_service, token_service
from app.services.auth_middleware import get_current_admin
from app.services.rate_limit import rate_limit_dependency
from app.utils.exceptions import NotFound
from app.utils.response import NO_STORE_HEADERS, create_response, handle_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.post("/auth/signin", dependencies=[Depends(rate_limit_dependency)])
def admin_signin(body: AdminSignIn, db: Session = Depends(get_db)):
    try:
        session = admin_service.sign_in(db, body.username, body.password)
        return create_response(message="Admin signed in", data=session, headers=NO_STORE_HEADERS)
    except Exception as exc:
        return handle_exception(exc)


@router.post("/auth/signout")
def admin_signout(db: Session = Depends(get_db), admin=Depends(get_current_admin)):
    try:
        admin_service.sign_out(db, admin)
        return create_response(message="Admin signed out")
    except Exception as exc:
        return handle_exception(exc)


@router.post("/tokens")
def generate_token(body: TokenCreate, db: Session = Depends(get_db), admin=Depends(get_current_admin)):
    del admin
    try:
        token = token_service.generate(db, body.duration)
        return create_response(
            message="Token generated",
            data=TokenResponse.model_validate(token).model_dump(),
            status_code=status.HTTP_201_CREATED,
        )
    except Exception as exc:
        return handle_exception(exc)


@router.delete("/tokens")
def delete_token(
    token_id: int = Query(..., alias="tokenId"),
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    del admin
    try:
        token_service.delete(db, token_id)
        return create_response(message="Token deleted", data={"tokenId": token_id})
    except Exception as exc:
        return handle_exception(exc)


@router.get("/token-history")
def token_history(db: Session = Depends(get_db), admin=Depends(get_current_admin)):
    del admin
    try:
        tokens = [TokenResponse.model_validate(token).model_dump() for token in token_service.list_history(db)]
        return create_response(message="Token history fetched", data=tokens)
    except Exception as exc:
        return handle_exception(exc)


@router.get("/token-users")
def token_users(db: Session = Depends(get_db), admin=Depends(get_current_admin)):
    del admin
    try:
        return create_response(message="Token users fetched", data=admin_service.token_user_rows(db))
    except Exception as exc:
        return handle_exception(exc)


@router.post("/renew-token")
def renew_token(body: TokenRenew, db: Session = Depends(get_db), admin=Depends(get_current_admin)):
    del admin
    try:
        token = token_service.renew(db, body.userId, body.duration)
        return create_response(
            message="Token renewed successfully",
            data=TokenResponse.model_validate(token).model_dump(),
        )
    except Exception as exc:
        return handle_exception(exc)


@router.delete("/users/{user_id}")
def delete_user(user_id: int, db: Session = Depends(get_db), admin=Depends(get_current_admin)):
    try:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFound("User not found.")
        token_string = admin_service.resolve_user_token(db, user)
        token_service.delete_token_and_user(db, user_id, token_string)
        logger.info("Admin %s deleted user_id=%s", admin.id, user_id)
        return create_response(message="User and associated token deleted", data={"userId": user_id})
    except Exception as exc:
        return handle_exception(exc)


@router.delete("/users/{user_id}/token")
def delete_user_token(user_id: int, db: Session = Depends(get_db), admin=Depends(get_current_admin)):
    try:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFound("User not found.")
        token_string = admin_service.resolve_user_token(db, user)
        if not token_string:
            raise NotFound("No token associated with this user.")
        token_service.delete_token_for_user(db, user_id, token_string)
        logger.info("Admin %s deleted token of user_id=%s", admin.id, user_id)
        return create_response(message="Token deleted", data={"userId": user_id})
    except Exception as exc:
        return handle_exception(exc)


@router.post("/reconcile")
def reconcile(db: Session = Depends(get_db), admin=Depends(get_current_admin)):
    del admin
    try:
        return create_response(message="Reconciliation complete", data=reconciliation_service.reconcile(db))
    except Exception as exc:
        return handle_exception(exc)
