"""
Async HTTP client for the Galaxy KickLock API.

Wraps ``httpx.AsyncClient``, keeps the session returned by sign-in and
attaches it to every later call as ``Authorization``/``X-User-ID``/
``X-Session-ID`` headers.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
DEFAULT_USER_AGENT = "Mozilla/5.0 (GalaxyKickLock client)"


class ApiError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class GalaxyApiClient:
    def __init__(
        self,
        base_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=timeout,
            headers={"User-Agent": user_agent},
        )
        self.user_id: int | None = None
        self.username: str | None = None
        self.session_token: str | None = None
        self.session_id: str | None = None

    async def __aenter__(self) -> "GalaxyApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    @property
    def is_authenticated(self) -> bool:
        return bool(self.session_token and self.session_id and self.user_id is not None)

    def session_headers(self) -> Dict[str, str]:
        if not self.is_authenticated:
            return {}
        return {
            "Authorization": f"Bearer {self.session_token}",
            "X-User-ID": str(self.user_id),
            "X-Session-ID": self.session_id,
        }

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {**self.session_headers(), **kwargs.pop("headers", {})}
        return await self._client.request(method, path, headers=headers, **kwargs)

    @staticmethod
    def _data(response: httpx.Response) -> Any:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if response.is_error:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise ApiError(message or f"Request failed with status {response.status_code}", response.status_code)
        if isinstance(payload, dict) and "data" in payload:
            return payload["data"]
        return payload

    async def sign_in(self, username: str, password: str) -> Dict[str, Any]:
        response = await self._client.post("/auth/signin", json={"username": username, "password": password})
        session = self._data(response)
        self.user_id = session["userId"]
        self.username = session["username"]
        self.session_token = session["sessionToken"]
        self.session_id = session["sessionId"]
        return session

    async def sign_out(self) -> None:
        try:
            self._data(await self._request("POST", "/auth/signout"))
        finally:
            self.user_id = self.session_token = self.session_id = None

    async def session_details(self) -> Dict[str, Any]:
        return self._data(await self._request("GET", "/auth/session-details"))

    async def set_active_run(self, run_id: int | str) -> None:
        self._data(await self._request("POST", "/auth/set-active-run", json={"runId": str(run_id)}))

    async def latest_user_run(self, logical_username: str) -> Optional[Dict[str, Any]]:
        response = await self._request(
            "GET", "/git/latest-user-run", params={"logicalUsername": logical_username}
        )
        if response.status_code == 404:
            return None
        return self._data(response)

    async def list_runs(self, status: str | None = None, per_page: int = 30) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"per_page": per_page}
        if status:
            params["status"] = status
        data = self._data(await self._request("GET", "/git/galaxyapi/runs", params=params))
        return data.get("workflow_runs", [])

    async def get_run(self, run_id: int | str) -> Dict[str, Any]:
        return self._data(await self._request("GET", "/git/galaxyapi/runs", params={"runId": str(run_id)}))

    async def get_run_jobs(self, run_id: int | str) -> List[Dict[str, Any]]:
        data = self._data(
            await self._request("GET", "/git/galaxyapi/runs", params={"jobsForRunId": str(run_id)})
        )
        return data.get("jobs", [])

    async def dispatch(self) -> bool:
        """True only for an empty accepted answer."""
        response = await self._request("POST", "/git/galaxyapi/dispatch")
        accepted = response.status_code in (202, 204) and not response.content
        if not accepted:
            logger.warning("Dispatch answered %s", response.status_code)
        return accepted

    async def cancel_run(self, run_id: int | str) -> int:
        response = await self._request("POST", "/git/galaxyapi/runs", params={"cancelRunId": str(run_id)})
        return response.status_code

    async def tunnel_action(
        self,
        action: str,
        form_number: int,
        form_data: Dict[str, Any],
        logical_username: str | None = None,
    ) -> Tuple[int, Any]:
        """Relay a form action; error statuses are returned, not raised."""
        body = {"action": action, "formNumber": form_number, "formData": form_data}
        if logical_username:
            body["logicalUsername"] = logical_username
        response = await self._request("POST", "/localt/action", json=body)
        try:
            payload = response.json()
        except ValueError:
            payload = None
        data = payload.get("data") if isinstance(payload, dict) else payload
        return response.status_code, data
