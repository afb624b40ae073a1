"""
GitHub Actions proxy for the workflow that hosts each user's workload.

Responses are narrowed before they leave the server; reads are retried on
GitHub 5xx answers, writes (dispatch, cancel) are sent once.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from app.config import settings
from app.utils.exceptions import GalaxyError, NotFound, UpstreamFailure

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {500, 502, 503, 504}
MAX_ATTEMPTS = 3
DEFAULT_PER_PAGE = 30
LATEST_RUN_JOBS_DELAY_SECONDS = 0.2
RUN_FIELDS = ("id", "name", "status", "conclusion", "created_at", "updated_at", "html_url", "run_number")


class GitHubServerError(UpstreamFailure):
    """GitHub answered 5xx or an unreadable body; safe to retry."""


def job_name_for(logical_username: str) -> str:
    return f"Run for {logical_username}"


def _repo_path(suffix: str) -> str:
    return f"/repos/{settings.GITHUB_ORG}/{settings.GITHUB_REPO}{suffix}"


def _ensure_configured() -> None:
    if not settings.GITHUB_TOKEN:
        logger.error("GitHub token not configured on the server")
        raise GalaxyError("Server configuration error: GitHub token missing.")


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.GITHUB_API_URL,
        timeout=20,
        headers={
            "Authorization": f"Bearer {settings.GITHUB_TOKEN}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        },
    )


@retry(
    stop=stop_after_attempt(MAX_ATTEMPTS),
    wait=wait_fixed(settings.GITHUB_RETRY_WAIT_SECONDS),
    retry=retry_if_exception_type(GitHubServerError),
    reraise=True,
)
async def _get_json(path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    _ensure_configured()
    try:
        async with _client() as client:
            response = await client.get(path, params=params)
    except httpx.HTTPError as exc:
        logger.warning("GitHub request %s failed: %s", path, exc)
        raise GitHubServerError("Failed to reach GitHub.") from exc

    if response.status_code in RETRYABLE_STATUSES:
        logger.warning("GitHub %s answered %s", path, response.status_code)
        raise GitHubServerError("GitHub API error.", status_code=response.status_code)
    if response.is_error:
        logger.info("GitHub %s answered %s", path, response.status_code)
        raise UpstreamFailure("GitHub API error.", status_code=response.status_code)
    try:
        return response.json()
    except ValueError as exc:
        raise GitHubServerError("Failed to parse GitHub response.") from exc


async def _post(path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
    _ensure_configured()
    try:
        async with _client() as client:
            return await client.post(path, json=json)
    except httpx.HTTPError as exc:
        logger.warning("GitHub request %s failed: %s", path, exc)
        raise UpstreamFailure("Failed to reach GitHub.") from exc


def narrow_run(run: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not run:
        return None
    return {field: run.get(field) for field in RUN_FIELDS}


def narrow_jobs(payload: Optional[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    jobs = (payload or {}).get("jobs")
    if not isinstance(jobs, list):
        return {"jobs": []}
    return {
        "jobs": [
            {
                "id": job.get("id"),
                "name": job.get("name"),
                "status": job.get("status"),
                "conclusion": job.get("conclusion"),
            }
            for job in jobs
        ]
    }


async def list_workflow_runs(status: Optional[str] = None, per_page: int = DEFAULT_PER_PAGE) -> Dict[str, Any]:
    params: Dict[str, Any] = {"per_page": per_page}
    if status:
        params["status"] = status
    payload = await _get_json(_repo_path(f"/actions/workflows/{settings.GITHUB_WORKFLOW_FILE}/runs"), params)
    runs = payload.get("workflow_runs")
    if not isinstance(runs, list):
        runs = []
    return {"workflow_runs": [narrow_run(run) for run in runs]}


async def get_run(run_id: str) -> Optional[Dict[str, Any]]:
    return narrow_run(await _get_json(_repo_path(f"/actions/runs/{run_id}")))


async def get_run_jobs(run_id: str, delay: Optional[float] = None) -> Dict[str, Any]:
    # Jobs show up a few seconds after a run is created
    await asyncio.sleep(settings.GITHUB_JOBS_DELAY_SECONDS if delay is None else delay)
    return narrow_jobs(await _get_json(_repo_path(f"/actions/runs/{run_id}/jobs")))


async def cancel_run(run_id: str) -> int:
    """Request cancellation; returns GitHub's status (202 when accepted)."""
    response = await _post(_repo_path(f"/actions/runs/{run_id}/cancel"))
    if response.is_error:
        logger.info("Cancel of run %s answered %s", run_id, response.status_code)
        raise UpstreamFailure("Failed to cancel workflow run.", status_code=response.status_code)
    logger.info("Cancel requested for run %s (status=%s)", run_id, response.status_code)
    return response.status_code


async def dispatch_workflow(logical_username: str) -> int:
    """Trigger ``workflow_dispatch``; only an empty accepted answer counts as success."""
    response = await _post(
        _repo_path(f"/actions/workflows/{settings.GITHUB_WORKFLOW_FILE}/dispatches"),
        json={"ref": settings.GITHUB_REF, "inputs": {"logical_username": logical_username}},
    )
    if response.status_code not in (202, 204) or response.content:
        logger.warning("Workflow dispatch for %s answered %s", logical_username, response.status_code)
        status_code = response.status_code if response.is_error else 502
        raise UpstreamFailure("Failed to dispatch workflow.", status_code=status_code)
    logger.info("Dispatched workflow for %s", logical_username)
    return response.status_code


async def find_latest_user_run(logical_username: str) -> Dict[str, Any]:
    """Newest run containing the user's job; runs whose jobs cannot be read are skipped."""
    target = job_name_for(logical_username)
    runs = (await list_workflow_runs(per_page=DEFAULT_PER_PAGE))["workflow_runs"]
    if not runs:
        raise NotFound(f"No workflow runs found for {settings.GITHUB_WORKFLOW_FILE}.")

    for run in runs:
        try:
            jobs = (await get_run_jobs(run["id"], delay=LATEST_RUN_JOBS_DELAY_SECONDS))["jobs"]
        except UpstreamFailure as exc:
            logger.warning("Could not fetch jobs for run %s, skipping (status=%s)", run["id"], exc.status_code)
            continue
        for job in jobs:
            if job["name"] == target:
                return {
                    "runId": run["id"],
                    "status": run["status"],
                    "conclusion": run["conclusion"],
                    "jobName": job["name"],
                }

    logger.info("No runs found with a job named %r", target)
    raise NotFound(f'No runs found with a job named "{target}".')
