import logging

from fastapi import APIRouter, Depends, Path, status
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.models.user import User
from app.schemas.deploy import ModalAction, TunnelAction
from app.services import session_service, tunnel_service
from app.services.auth_middleware import get_current_session
from app.services.rate_limit import rate_limit_dependency
from app.services.request_guards import body_limit, require_browser
from app.utils.exceptions import AuthenticationFailed, Forbidden, UpstreamFailure, ValidationFailed
from app.utils.response import create_response, handle_exception

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Actions"])


@router.post(
    "/actions/{action}/{form_number}",
    dependencies=[
        Depends(require_browser),
        Depends(rate_limit_dependency),
        Depends(body_limit(settings.MAX_ACTION_REQUEST_BYTES)),
    ],
)
async def workload_action(
    body: ModalAction,
    action: str = Path(...),
    form_number: int = Path(...),
    credentials: HTTPAuthorizationCredentials | None = Depends(settings.bearer_scheme),
    db: Session = Depends(get_db),
):
    try:
        if action not in tunnel_service.VALID_ACTIONS:
            raise ValidationFailed("Invalid action.")
        if form_number not in tunnel_service.FORM_NUMBERS:
            raise ValidationFailed("Invalid form number.")
        if not credentials or not credentials.credentials:
            raise AuthenticationFailed("Authentication required.")

        user = (
            db.query(User)
            .filter(User.username == body.username, User.session_token == credentials.credentials)
            .first()
        )
        if not user or not user.token:
            raise AuthenticationFailed("Authentication required.")

        ok = await tunnel_service.forward_modal_action(user.username, action, form_number, body.data)
        if not ok:
            raise UpstreamFailure("Action failed.", data={"success": False})
        return create_response(message="Action forwarded", data={"success": True})
    except Exception as exc:
        return handle_exception(exc)


@router.post("/localt/action")
async def tunnel_action(body: TunnelAction, session=Depends(get_current_session)):
    user: User = session["user"]
    db: Session = session["db"]
    try:
        target = session_service.logical_username(user.username)
        if body.logicalUsername and body.logicalUsername != target:
            raise Forbidden("Logical username does not match the signed-in user.")

        status_code, payload = await tunnel_service.perform_tunnel_action(
            target, body.action, body.formNumber, body.formData
        )
        if status_code >= 400:
            return create_response(
                message=f"Failed to perform action via tunnel. Status: {status_code}",
                data={"error": payload},
                status_code=status_code,
            )

        if body.action == "start":
            session_service.record_form_started(db, user, body.formNumber)
        logger.info("Tunnel %s/%s for user_id=%s answered %s", body.action, body.formNumber, user.id, status_code)
        return create_response(
            message="Action completed successfully.",
            data=payload,
            status_code=status_code if status_code != status.HTTP_204_NO_CONTENT else status.HTTP_200_OK,
        )
    except Exception as exc:
        return handle_exception(exc)
