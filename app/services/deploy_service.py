import logging
import uuid
from typing import Any, Dict

import httpx

from app.config import settings
from app.utils.exceptions import GalaxyError, Timeout, UpstreamFailure

logger = logging.getLogger(__name__)

DEPLOY_TIMEOUT_SECONDS = 30
UNDEPLOY_TIMEOUT_SECONDS = 10
STATUS_TIMEOUT_SECONDS = 10
SERVICE_USER_AGENT = "Galaxy-Deploy-Service"


def _client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout)


def internal_headers() -> Dict[str, str]:
    headers = {
        "X-Request-ID": str(uuid.uuid4()),
        "User-Agent": SERVICE_USER_AGENT,
        "X-Internal-Request": "true",
    }
    if settings.INTERNAL_API_KEY:
        headers["X-API-Key"] = settings.INTERNAL_API_KEY
    return headers


def _require(url: str | None, name: str) -> str:
    if not url:
        logger.error("%s is not configured", name)
        raise GalaxyError("Server configuration error.")
    return url


async def _post(url: str, payload: Dict[str, Any], timeout: float, failure_message: str) -> Any:
    try:
        async with _client(timeout) as client:
            response = await client.post(url, json=payload, headers=internal_headers())
    except httpx.TimeoutException as exc:
        logger.warning("Deploy service timed out after %ss", timeout)
        raise Timeout() from exc
    except httpx.HTTPError as exc:
        logger.error("Deploy service request failed: %s", exc)
        raise UpstreamFailure(failure_message) from exc

    if response.is_error:
        logger.error("Deploy service answered %s", response.status_code)
        raise UpstreamFailure(failure_message, status_code=response.status_code)
    try:
        return response.json()
    except ValueError:
        return None


async def deploy_model(modal_name: str) -> Any:
    url = _require(settings.DEPLOY_API_URL, "DEPLOY_API_URL")
    data = await _post(
        url,
        {"repo_url": settings.REPO_URL, "modal_name": modal_name},
        DEPLOY_TIMEOUT_SECONDS,
        "Deployment failed",
    )
    logger.info("Deploy accepted for %s", modal_name)
    return data


async def undeploy_model(modal_name: str) -> Any:
    url = _require(settings.UNDEPLOY_API_URL, "UNDEPLOY_API_URL")
    data = await _post(url, {"modal_name": modal_name}, UNDEPLOY_TIMEOUT_SECONDS, "Undeployment failed")
    logger.info("Undeploy accepted for %s", modal_name)
    return data


async def check_model_status(modal_name: str) -> bool:
    url = _require(settings.STATUS_API_URL, "STATUS_API_URL")
    data = await _post(url, {"modal_name": modal_name}, STATUS_TIMEOUT_SECONDS, "Status check failed")
    return isinstance(data, dict) and data.get("status") == "deployed"
