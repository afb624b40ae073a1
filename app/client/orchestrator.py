"""
Deployment state machine for one signed-in user.

The workload runs as a GitHub Actions job named ``Run for <logical user>``.
Deploying dispatches the workflow, finds the run that carries that job and
polls it until it is in progress; undeploying cancels the run and polls
until GitHub reports it cancelled. Every phase is bounded by a wall-clock
window from ``OrchestratorTimings``.

Only one operation (deploy or undeploy) is live at a time: starting one
cancels the task of the previous one. ``clock`` and ``sleep`` are
injectable so the windows can be driven without real waiting.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

from app.client.api_client import ApiError, GalaxyApiClient
from app.client.control_forms import ControlForm, build_forms

logger = logging.getLogger(__name__)

ACTIVE_RUN_STATUSES = ("in_progress", "queued")
LOGICAL_USERNAME_SUFFIX = "7890"
REMOTE_ERRORS = (ApiError, httpx.HTTPError)


class PhaseTimeout(Exception):
    """A phase window closed while a lookup was still running."""


class DeploymentPhase(str, Enum):
    UNKNOWN = "unknown"
    CHECKING = "checking"
    NOT_DEPLOYED = "not_deployed"
    DISPATCHING = "dispatching"
    LOCATING_RUN = "locating_run"
    POLLING = "polling"
    DEPLOYED = "deployed"
    UNDEPLOYING = "undeploying"


@dataclass(frozen=True)
class DeploymentState:
    phase: DeploymentPhase = DeploymentPhase.UNKNOWN
    run_id: Optional[str] = None
    stale: bool = False
    redeploy_required: bool = False
    auto_undeployed: bool = False
    popup_open: bool = False
    last_conclusion: Optional[str] = None
    message: str = ""


@dataclass(frozen=True)
class OrchestratorTimings:
    settle_delay: float = 5.0
    locate_interval: float = 5.0
    locate_timeout: float = 30.0
    poll_interval: float = 10.0
    poll_timeout: float = 180.0
    popup_seconds: float = 30.0
    undeploy_interval: float = 5.0
    undeploy_timeout: float = 60.0


def logical_username_for(username: str) -> str:
    return f"{username}{LOGICAL_USERNAME_SUFFIX}"


class DeploymentOrchestrator:
    def __init__(
        self,
        api: GalaxyApiClient,
        username: str,
        timings: OrchestratorTimings | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api = api
        self.username = username
        self.logical_username = logical_username_for(username)
        self.timings = timings or OrchestratorTimings()
        self.clock = clock
        self.sleep = sleep
        self.forms: Dict[int, ControlForm] = build_forms()
        self.state = DeploymentState()
        self.history: List[DeploymentPhase] = []
        self._task: asyncio.Task | None = None
        self._popup_task: asyncio.Task | None = None

    @property
    def job_name(self) -> str:
        return f"Run for {self.logical_username}"

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def _update(self, **changes) -> DeploymentState:
        if "phase" in changes and changes["phase"] != self.state.phase:
            self.history.append(changes["phase"])
            logger.debug("Deployment phase -> %s", changes["phase"].value)
        self.state = replace(self.state, **changes)
        return self.state

    def _fail(self, message: str, stale: bool = False) -> DeploymentState:
        logger.warning("Deployment operation failed: %s", message)
        phase = DeploymentPhase.DEPLOYED if stale else DeploymentPhase.NOT_DEPLOYED
        return self._update(phase=phase, stale=stale, redeploy_required=True, popup_open=False, message=message)

    # Operation slot

    async def cancel_current(self) -> None:
        for task in (self._task, self._popup_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._popup_task = None

    async def _replace_operation(self, operation: Callable[[], Awaitable[DeploymentState]]) -> asyncio.Task:
        await self.cancel_current()
        self._task = asyncio.create_task(operation())
        return self._task

    async def start_deploy(self) -> asyncio.Task | None:
        if self.state.auto_undeployed:
            self._update(message="Acknowledge the auto-undeploy notice before redeploying.")
            return None
        return await self._replace_operation(self._deploy)

    async def start_undeploy(self) -> asyncio.Task:
        return await self._replace_operation(self._undeploy)

    async def deploy(self) -> DeploymentState:
        task = await self.start_deploy()
        return await task if task else self.state

    async def undeploy(self) -> DeploymentState:
        return await (await self.start_undeploy())

    # Phases

    async def check(self) -> DeploymentState:
        self._update(phase=DeploymentPhase.CHECKING, message="Checking deployment status...")
        try:
            run = await self.api.latest_user_run(self.logical_username)
        except REMOTE_ERRORS as exc:
            return self._fail(f"Status check failed: {exc}")

        if run and run.get("status") in ACTIVE_RUN_STATUSES:
            return self._update(
                phase=DeploymentPhase.DEPLOYED,
                run_id=str(run["runId"]),
                stale=False,
                last_conclusion=run.get("conclusion"),
                message="Deployed",
            )
        conclusion = run.get("conclusion") if run else None
        return self._update(
            phase=DeploymentPhase.NOT_DEPLOYED,
            run_id=None,
            last_conclusion=conclusion,
            message=f"Not deployed (last run: {conclusion})" if conclusion else "Not deployed",
        )

    async def _bounded(self, deadline: float, call, *args, **kwargs):
        """Await ``call(*args, **kwargs)`` only while ``deadline`` is ahead on ``self.clock``."""
        remaining = deadline - self.clock()
        if remaining <= 0:
            raise PhaseTimeout()
        try:
            result = await asyncio.wait_for(call(*args, **kwargs), remaining)
        except asyncio.TimeoutError as exc:
            raise PhaseTimeout() from exc
        if self.clock() > deadline:
            raise PhaseTimeout()
        return result

    async def _find_active_run(self, deadline: float) -> Optional[str]:
        for status in ACTIVE_RUN_STATUSES:
            for run in await self._bounded(deadline, self.api.list_runs, status=status):
                jobs = await self._bounded(deadline, self.api.get_run_jobs, run["id"])
                if any(job.get("name") == self.job_name for job in jobs):
                    return str(run["id"])
        return None

    async def _locate_run(self) -> Optional[str]:
        timings = self.timings
        started = self.clock()
        deadline = started + timings.locate_timeout
        while True:
            try:
                run_id = await self._find_active_run(deadline)
            except PhaseTimeout:
                return None
            except REMOTE_ERRORS as exc:
                logger.info("Run lookup failed, retrying: %s", exc)
                run_id = None
            if run_id:
                return run_id
            if self.clock() - started + timings.locate_interval > timings.locate_timeout:
                return None
            await self.sleep(timings.locate_interval)

    async def _poll_run(self, run_id: str) -> Optional[bool]:
        """True once the run is in progress, False if it completed, None on timeout."""
        timings = self.timings
        started = self.clock()
        deadline = started + timings.poll_timeout
        while True:
            try:
                run = await self._bounded(deadline, self.api.get_run, run_id)
            except PhaseTimeout:
                return None
            status = run.get("status") if run else None
            if status == "in_progress":
                return True
            if status == "completed":
                self._update(last_conclusion=run.get("conclusion"))
                return False
            if self.clock() - started + timings.poll_interval > timings.poll_timeout:
                return None
            await self.sleep(timings.poll_interval)

    async def _deploy(self) -> DeploymentState:
        self._update(
            phase=DeploymentPhase.DISPATCHING,
            run_id=None,
            stale=False,
            redeploy_required=False,
            message="Dispatching deployment...",
        )
        try:
            if not await self.api.dispatch():
                return self._fail("Deployment dispatch was rejected.")

            await self.sleep(self.timings.settle_delay)
            self._update(phase=DeploymentPhase.LOCATING_RUN, message="Locating deployment run...")
            run_id = await self._locate_run()
            if not run_id:
                return self._fail("Timed out locating the deployment run.")

            self._update(phase=DeploymentPhase.POLLING, run_id=run_id, message="Waiting for the run to start...")
            started = await self._poll_run(run_id)
        except REMOTE_ERRORS as exc:
            return self._fail(f"Deployment failed: {exc}")

        if started is None:
            return self._fail("Timed out waiting for the deployment run.")
        if not started:
            return self._fail(f"Deployment run finished early ({self.state.last_conclusion}).")

        try:
            await self.api.set_active_run(run_id)
        except REMOTE_ERRORS as exc:
            logger.info("Could not record active run %s: %s", run_id, exc)
        state = self._update(phase=DeploymentPhase.DEPLOYED, popup_open=True, message="Deployed")
        self._popup_task = asyncio.create_task(self._popup_countdown())
        return state

    async def _popup_countdown(self) -> None:
        try:
            await self.sleep(self.timings.popup_seconds)
        finally:
            self._update(popup_open=False)

    async def _undeploy(self) -> DeploymentState:
        self._update(phase=DeploymentPhase.UNDEPLOYING, message="Undeploying...")
        timings = self.timings
        try:
            try:
                run_id = await self._find_active_run(self.clock() + timings.locate_timeout)
            except PhaseTimeout:
                return self._fail("Timed out looking up the active run.", stale=True)
            if not run_id:
                self._reset_forms()
                return self._update(
                    phase=DeploymentPhase.NOT_DEPLOYED, run_id=None, stale=False, message="No active run found."
                )

            self._update(run_id=run_id)
            if await self.api.cancel_run(run_id) != 202:
                return self._fail("Cancellation request was not accepted.", stale=True)

            started = self.clock()
            deadline = started + timings.undeploy_timeout
            while True:
                try:
                    run = await self._bounded(deadline, self.api.get_run, run_id)
                except PhaseTimeout:
                    return self._fail("Timed out waiting for cancellation.", stale=True)
                if run and run.get("status") == "completed":
                    conclusion = run.get("conclusion")
                    self._update(last_conclusion=conclusion)
                    if conclusion != "cancelled":
                        return self._fail(f"Run ended as {conclusion} instead of cancelled.", stale=True)
                    self._reset_forms()
                    return self._update(
                        phase=DeploymentPhase.NOT_DEPLOYED,
                        run_id=None,
                        stale=False,
                        redeploy_required=False,
                        message="Undeployed",
                    )
                if self.clock() - started + timings.undeploy_interval > timings.undeploy_timeout:
                    return self._fail("Timed out waiting for cancellation.", stale=True)
                await self.sleep(timings.undeploy_interval)
        except REMOTE_ERRORS as exc:
            return self._fail(f"Undeploy failed: {exc}", stale=True)

    # Control forms

    def _reset_forms(self) -> None:
        for form in self.forms.values():
            form.reset()

    async def handle_auto_undeploy(self) -> DeploymentState:
        await self.cancel_current()
        self._reset_forms()
        return self._update(
            phase=DeploymentPhase.NOT_DEPLOYED,
            run_id=None,
            stale=False,
            redeploy_required=True,
            auto_undeployed=True,
            popup_open=False,
            message="The workload was undeployed automatically. Redeploy to continue.",
        )

    def acknowledge_auto_undeploy(self) -> DeploymentState:
        return self._update(auto_undeployed=False)

    async def run_form_action(self, form_number: int, action: str) -> bool:
        form = self.forms[form_number]
        form.begin(action)
        try:
            status_code, _ = await self.api.tunnel_action(
                action, form_number, form.payload(), logical_username=self.logical_username
            )
        except REMOTE_ERRORS as exc:
            form.fail(action, str(exc))
            return False

        if status_code == 409:
            await self.handle_auto_undeploy()
            return False
        if status_code >= 400:
            form.fail(action, f"Failed to {action} galaxy")
            return False
        form.succeed(action)
        return True
