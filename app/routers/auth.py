import asyncio
import logging

import redis
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.user import User
from app.schemas.user import SessionDetails, SetActiveRun, SignIn, SignInResponse, SignUp
from app.services import session_service
from app.services.auth_middleware import get_current_session, get_optional_session
from app.services.rate_limit import rate_limit_dependency
from app.services.session_broadcast import session_broadcaster
from app.services.tunnel_service import perform_server_side_undeploy
from app.utils.response import NO_STORE_HEADERS, create_response, handle_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])


@router.post("/signin", dependencies=[Depends(rate_limit_dependency)])
def signin(body: SignIn, db: Session = Depends(get_db)):
    try:
        session = session_service.sign_in(db, body.username, body.password)
        return create_response(
            message="Signed in successfully",
            data=SignInResponse(**session).model_dump(),
            headers=NO_STORE_HEADERS,
        )
    except Exception as exc:
        return handle_exception(exc)


@router.post("/signup", dependencies=[Depends(rate_limit_dependency)])
def signup(body: SignUp, db: Session = Depends(get_db)):
    try:
        user = session_service.sign_up(db, body.username, body.password, body.token)
        return create_response(
            message="User created successfully",
            data={"id": user.id, "username": user.username},
            status_code=status.HTTP_201_CREATED,
        )
    except Exception as exc:
        return handle_exception(exc)


@router.post("/signout")
def signout(session=Depends(get_current_session)):
    try:
        session_service.sign_out(session["db"], session["user"])
        return create_response(message="Signed out successfully")
    except Exception as exc:
        return handle_exception(exc)


@router.post("/beacon-signout-undeploy")
async def beacon_signout_undeploy(
    user: User | None = Depends(get_optional_session),
    db: Session = Depends(get_db),
):
    # The browser cannot read this response, so every outcome answers 200
    if not user:
        logger.info("Beacon received without a valid session")
        return create_response(message="No session")
    try:
        await perform_server_side_undeploy(db, user)
        session_service.sign_out(db, user)
        return create_response(message="Beacon processed")
    except Exception:
        db.rollback()
        logger.exception("Beacon processing failed for user_id=%s", user.id)
        return create_response(message="Error processing beacon")


@router.get("/session-details")
def session_details(session=Depends(get_current_session)):
    try:
        details = session_service.session_details(session["db"], session["user"])
        return create_response(
            message="Session details fetched",
            data=SessionDetails(**details).model_dump(),
            headers=NO_STORE_HEADERS,
        )
    except Exception as exc:
        return handle_exception(exc)


@router.post("/set-active-run")
def set_active_run(body: SetActiveRun, session=Depends(get_current_session)):
    try:
        session_service.set_active_run(session["db"], session["user"], body.runId)
        return create_response(message="Active run recorded", data={"runId": str(body.runId)})
    except Exception as exc:
        return handle_exception(exc)


@router.websocket("/session-events")
async def session_events(
    websocket: WebSocket,
    user_id: str = Query(..., alias="userId"),
    session_id: str = Query(..., alias="sessionId"),
    token: str = Query(...),
    db: Session = Depends(get_db),
):
    """Push ``session_terminated`` to a tab once its user signs in somewhere else."""
    user = session_service.validate_session(db, token, user_id, session_id)
    if not user:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    try:
        queue = await session_broadcaster.subscribe(user.id)
    except redis.RedisError:
        logger.exception("Session channel unavailable for user_id=%s", user.id)
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    async def forward_events():
        while True:
            await websocket.send_json(await queue.get())

    async def wait_for_disconnect():
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    tasks = []
    try:
        await websocket.accept()
        tasks = [asyncio.create_task(forward_events()), asyncio.create_task(wait_for_disconnect())]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if not task.cancelled() and task.exception():
                logger.warning("Session event stream for user_id=%s ended: %s", user.id, task.exception())
    except WebSocketDisconnect:
        pass
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        session_broadcaster.unsubscribe(user.id, queue)
