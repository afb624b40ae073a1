from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.models.user import User
from app.schemas.deploy import ModalRequest
from app.services import deploy_service, token_service
from app.services.auth_middleware import get_bearer_user
from app.services.rate_limit import rate_limit_dependency
from app.services.request_guards import body_limit, require_allowed_origin, require_browser, sanitize_input
from app.utils.exceptions import AuthenticationFailed, Forbidden, ValidationFailed
from app.utils.response import NO_STORE_HEADERS, create_response, handle_exception

router = APIRouter(
    tags=["Deploy"],
    dependencies=[
        Depends(require_browser),
        Depends(rate_limit_dependency),
    ],
)


def _ensure_token_valid(db: Session, user: User) -> None:
    if not token_service.is_token_valid(db, user.token)["valid"]:
        raise Forbidden("Access token is invalid or expired.")


@router.post(
    "/deploy",
    dependencies=[Depends(require_allowed_origin), Depends(body_limit(settings.MAX_REQUEST_BYTES))],
)
async def deploy(body: ModalRequest, user: User = Depends(get_bearer_user), db: Session = Depends(get_db)):
    try:
        if body.modal_name != user.username:
            raise AuthenticationFailed("Invalid or expired session")
        _ensure_token_valid(db, user)
        data = await deploy_service.deploy_model(body.modal_name)
        return create_response(
            message="Deployment started",
            data={"success": True, "data": data},
            headers=NO_STORE_HEADERS,
        )
    except Exception as exc:
        return handle_exception(exc)


@router.post(
    "/undeploy",
    dependencies=[Depends(require_allowed_origin), Depends(body_limit(settings.MAX_REQUEST_BYTES))],
)
async def undeploy(body: ModalRequest, user: User = Depends(get_bearer_user), db: Session = Depends(get_db)):
    try:
        modal_name = sanitize_input(body.modal_name)
        if not modal_name:
            raise ValidationFailed("Invalid modal name")
        _ensure_token_valid(db, user)
        data = await deploy_service.undeploy_model(modal_name)
        return create_response(
            message="Undeployment started",
            data={"success": True, "data": data},
            headers=NO_STORE_HEADERS,
        )
    except Exception as exc:
        return handle_exception(exc)


@router.post("/status")
async def deploy_status(body: ModalRequest, user: User = Depends(get_bearer_user)):
    del user
    try:
        deployed = await deploy_service.check_model_status(sanitize_input(body.modal_name))
        return create_response(
            message="Deployment status fetched",
            data={"success": True, "deployed": deployed},
            headers=NO_STORE_HEADERS,
        )
    except Exception as exc:
        return handle_exception(exc)
