from fastapi import APIRouter, Depends, Query, Response, status

from app.services import github_service, session_service
from app.services.auth_middleware import get_current_session
from app.utils.exceptions import ValidationFailed
from app.utils.response import create_response, handle_exception

router = APIRouter(prefix="/git", tags=["GitHub"])


@router.get("/galaxyapi/runs")
async def workflow_runs(
    run_id: str | None = Query(None, alias="runId"),
    jobs_for_run_id: str | None = Query(None, alias="jobsForRunId"),
    run_status: str | None = Query(None, alias="status"),
    per_page: int = Query(github_service.DEFAULT_PER_PAGE, ge=1, le=100),
    session=Depends(get_current_session),
):
    del session
    try:
        if run_id:
            data = await github_service.get_run(run_id)
        elif jobs_for_run_id:
            data = await github_service.get_run_jobs(jobs_for_run_id)
        else:
            data = await github_service.list_workflow_runs(status=run_status, per_page=per_page)
        return create_response(message="Workflow data fetched", data=data)
    except Exception as exc:
        return handle_exception(exc)


@router.post("/galaxyapi/runs")
async def cancel_workflow_run(
    cancel_run_id: str | None = Query(None, alias="cancelRunId"),
    session=Depends(get_current_session),
):
    try:
        if not cancel_run_id:
            raise ValidationFailed("Invalid action for POST request. Specify cancelRunId parameter.")
        status_code = await github_service.cancel_run(cancel_run_id)
        session_service.clear_deploy_record(session["db"], session["user"])
        return create_response(
            message="Cancellation requested",
            data={"runId": cancel_run_id},
            status_code=status_code,
        )
    except Exception as exc:
        return handle_exception(exc)


@router.post("/galaxyapi/dispatch")
async def dispatch_workflow(session=Depends(get_current_session)):
    user = session["user"]
    try:
        await github_service.dispatch_workflow(session_service.logical_username(user.username))
        session_service.record_dispatch(session["db"], user)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except Exception as exc:
        return handle_exception(exc)


@router.get("/latest-user-run")
async def latest_user_run(
    logical_username: str | None = Query(None, alias="logicalUsername"),
    session=Depends(get_current_session),
):
    del session
    try:
        if not logical_username:
            raise ValidationFailed("Missing logicalUsername query parameter.")
        run = await github_service.find_latest_user_run(logical_username)
        return create_response(message="Latest run found", data=run)
    except Exception as exc:
        return handle_exception(exc)
