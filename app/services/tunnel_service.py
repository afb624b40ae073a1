"""
Calls into the per-user tunnel that fronts a running workload.

Each logical user owns ``TUNNEL_URL_TEMPLATE`` (``https://<name>.loca.lt``)
exposing ``/<action>/<form number>``; the tunnel answers 409 once the
workload has shut itself down.
"""

import logging
from typing import Any, Dict, Optional, Tuple

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.models.user import User
from app.services.session_service import clear_deploy_record, logical_username
from app.utils.exceptions import GalaxyError, UpstreamFailure

logger = logging.getLogger(__name__)

VALID_ACTIONS = ("start", "stop", "update")
FORM_NUMBERS = range(1, 6)
TUNNEL_TIMEOUT_SECONDS = 15
TUNNEL_HEADERS = {"bypass-tunnel-reminder": "true"}


def tunnel_url(target_username: str) -> str:
    return settings.TUNNEL_URL_TEMPLATE.format(username=target_username)


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=TUNNEL_TIMEOUT_SECONDS, headers=TUNNEL_HEADERS)


async def perform_tunnel_action(
    target_username: str,
    action: str,
    form_number: int,
    form_data: Dict[str, Any],
) -> Tuple[int, Optional[Any]]:
    """POST ``form_data`` to the tunnel; returns (status, parsed JSON or None)."""
    url = f"{tunnel_url(target_username)}/{action}/{form_number}"
    try:
        async with _client() as client:
            response = await client.post(url, json=form_data)
    except httpx.ConnectError as exc:
        logger.warning("Tunnel host for %s unreachable: %s", target_username, exc)
        raise UpstreamFailure(
            "Could not resolve tunnel host. Ensure the tunnel is active and the username is correct.",
            status_code=503,
        ) from exc
    except httpx.HTTPError as exc:
        logger.error("Tunnel request to %s failed: %s", url, exc)
        raise UpstreamFailure("Failed to perform action via tunnel.") from exc

    try:
        payload = response.json()
    except ValueError:
        payload = None
    if response.is_error:
        logger.info("Tunnel %s answered %s", url, response.status_code)
    return response.status_code, payload


async def perform_server_side_undeploy(db: Session, user: User) -> bool:
    """Best-effort ``stop`` of the active form; the deploy record is cleared regardless."""
    if not user.deploy_timestamp or not user.active_form_number:
        logger.info("No active deployment to stop for user_id=%s", user.id)
        return False

    stopped = False
    try:
        status_code, _ = await perform_tunnel_action(
            logical_username(user.username), "stop", user.active_form_number, {}
        )
        stopped = 200 <= status_code < 300
        if not stopped:
            logger.warning("Stop for user_id=%s answered %s", user.id, status_code)
    except UpstreamFailure as exc:
        logger.warning("Stop for user_id=%s failed: %s", user.id, exc.message)

    clear_deploy_record(db, user)
    logger.info("Cleared deploy record for user_id=%s (stopped=%s)", user.id, stopped)
    return stopped


async def forward_modal_action(username: str, action: str, form_number: int, data: Dict[str, Any]) -> bool:
    if not settings.MODAL_API_BASE_URL:
        logger.error("MODAL_API_BASE_URL is not configured")
        raise GalaxyError("Server configuration error.")
    base_url = settings.MODAL_API_BASE_URL.replace("{username}", username)
    try:
        async with httpx.AsyncClient(timeout=TUNNEL_TIMEOUT_SECONDS) as client:
            response = await client.post(f"{base_url}/{action}/{form_number}", json=data)
    except httpx.HTTPError as exc:
        logger.error("Workload action %s/%s for %s failed: %s", action, form_number, username, exc)
        raise UpstreamFailure() from exc
    if response.is_error:
        logger.warning("Workload action %s/%s for %s answered %s", action, form_number, username, response.status_code)
    return not response.is_error
