import asyncio

import pytest

from app.client.api_client import ApiError
from app.client.orchestrator import (
    DeploymentOrchestrator,
    DeploymentPhase,
    OrchestratorTimings,
    logical_username_for,
)

JOB = "Run for pilot7890"


class FakeClock:
    """Monotonic clock that only moves when the orchestrator sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeApi:
    def __init__(self):
        self.runs = {}
        self.jobs = {}
        self.run_statuses = {}
        self.dispatch_ok = True
        self.cancel_status = 202
        self.latest = None
        self.tunnel_status = 200
        self.calls = []
        self.list_calls = 0

    async def latest_user_run(self, logical_username):
        self.calls.append(("latest", logical_username))
        return self.latest

    async def dispatch(self):
        self.calls.append(("dispatch",))
        return self.dispatch_ok

    async def list_runs(self, status=None, per_page=30):
        self.list_calls += 1
        return [run for run in self.runs.values() if run["status"] == status]

    async def get_run_jobs(self, run_id):
        return [{"name": name} for name in self.jobs.get(str(run_id), [])]

    async def get_run(self, run_id):
        key = str(run_id)
        statuses = self.run_statuses.get(key)
        if statuses:
            status, conclusion = statuses.pop(0) if len(statuses) > 1 else statuses[0]
            self.runs[key].update(status=status, conclusion=conclusion)
        return dict(self.runs[key])

    async def cancel_run(self, run_id):
        self.calls.append(("cancel", run_id))
        return self.cancel_status

    async def set_active_run(self, run_id):
        self.calls.append(("set_active_run", run_id))

    async def tunnel_action(self, action, form_number, form_data, logical_username=None):
        self.calls.append(("tunnel", action, form_number, logical_username))
        return self.tunnel_status, {"ok": True}

    def add_run(self, run_id, status="queued", job=JOB, statuses=None):
        key = str(run_id)
        self.runs[key] = {"id": run_id, "status": status, "conclusion": None}
        self.jobs[key] = [job]
        if statuses:
            self.run_statuses[key] = list(statuses)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def api():
    return FakeApi()


@pytest.fixture()
def orchestrator(api, clock):
    return DeploymentOrchestrator(api, "pilot", OrchestratorTimings(), clock=clock, sleep=clock.sleep)


def test_logical_username_suffix():
    assert logical_username_for("pilot") == "pilot7890"


def test_check_reports_deployed(orchestrator, api):
    api.latest = {"runId": 5, "status": "in_progress", "conclusion": None, "jobName": JOB}

    state = asyncio.run(orchestrator.check())

    assert state.phase == DeploymentPhase.DEPLOYED
    assert state.run_id == "5"
    assert api.calls == [("latest", "pilot7890")]


def test_check_reports_not_deployed_with_last_conclusion(orchestrator, api):
    api.latest = {"runId": 5, "status": "completed", "conclusion": "cancelled", "jobName": JOB}

    state = asyncio.run(orchestrator.check())

    assert state.phase == DeploymentPhase.NOT_DEPLOYED
    assert state.last_conclusion == "cancelled"


def test_check_without_any_run(orchestrator):
    assert asyncio.run(orchestrator.check()).phase == DeploymentPhase.NOT_DEPLOYED


def test_deploy_happy_path(orchestrator, api, clock):
    api.add_run(7, statuses=[("queued", None), ("in_progress", None)])

    async def scenario():
        state = await orchestrator.deploy()
        await orchestrator.cancel_current()
        return state

    state = asyncio.run(scenario())

    assert state.phase == DeploymentPhase.DEPLOYED
    assert state.run_id == "7"
    assert state.popup_open is True
    assert orchestrator.history == [
        DeploymentPhase.DISPATCHING,
        DeploymentPhase.LOCATING_RUN,
        DeploymentPhase.POLLING,
        DeploymentPhase.DEPLOYED,
    ]
    assert ("set_active_run", "7") in api.calls
    assert clock.sleeps[0] == 5.0


def test_popup_closes_after_countdown(orchestrator, api):
    api.add_run(7, status="in_progress")

    async def scenario():
        await orchestrator.deploy()
        await orchestrator._popup_task
        return orchestrator.state

    assert asyncio.run(scenario()).popup_open is False


def test_rejected_dispatch_fails(orchestrator, api):
    api.dispatch_ok = False

    state = asyncio.run(orchestrator.deploy())

    assert state.phase == DeploymentPhase.NOT_DEPLOYED
    assert state.redeploy_required is True
    assert api.list_calls == 0


@pytest.mark.parametrize("job", [None, "Run for someone7890"])
def test_locate_gives_up_within_window(orchestrator, api, clock, job):
    if job:
        api.add_run(8, job=job)

    state = asyncio.run(orchestrator.deploy())

    assert state.phase == DeploymentPhase.NOT_DEPLOYED
    assert state.redeploy_required is True
    assert "locating" in state.message
    locating = clock.now - orchestrator.timings.settle_delay
    assert locating <= orchestrator.timings.locate_timeout + orchestrator.timings.locate_interval


def test_locate_retries_after_lookup_errors(orchestrator, api):
    api.add_run(9, status="in_progress")
    original = api.list_runs
    failures = {"left": 2}

    async def flaky_list_runs(status=None, per_page=30):
        if failures["left"]:
            failures["left"] -= 1
            raise ApiError("GitHub API error.", 502)
        return await original(status=status, per_page=per_page)

    api.list_runs = flaky_list_runs

    async def scenario():
        state = await orchestrator.deploy()
        await orchestrator.cancel_current()
        return state

    assert asyncio.run(scenario()).phase == DeploymentPhase.DEPLOYED


def test_run_completing_early_requires_redeploy(orchestrator, api):
    api.add_run(10, statuses=[("completed", "failure")])

    state = asyncio.run(orchestrator.deploy())

    assert state.phase == DeploymentPhase.NOT_DEPLOYED
    assert state.redeploy_required is True
    assert state.last_conclusion == "failure"


def test_polling_times_out(orchestrator, api, clock):
    api.add_run(11)

    state = asyncio.run(orchestrator.deploy())

    assert state.phase == DeploymentPhase.NOT_DEPLOYED
    assert "Timed out waiting" in state.message
    timings = orchestrator.timings
    assert clock.now <= timings.settle_delay + timings.poll_timeout + timings.poll_interval


def test_undeploy_until_cancelled(orchestrator, api):
    api.add_run(12, status="in_progress", statuses=[("in_progress", None), ("completed", "cancelled")])
    orchestrator.forms[1].succeed("start")

    state = asyncio.run(orchestrator.undeploy())

    assert state.phase == DeploymentPhase.NOT_DEPLOYED
    assert state.stale is False
    assert ("cancel", "12") in api.calls
    assert orchestrator.forms[1].buttons["start"].text == "Start"


def test_undeploy_other_conclusion_leaves_stale_deployment(orchestrator, api):
    api.add_run(13, status="in_progress", statuses=[("completed", "success")])

    state = asyncio.run(orchestrator.undeploy())

    assert state.phase == DeploymentPhase.DEPLOYED
    assert state.stale is True
    assert state.redeploy_required is True


def test_undeploy_times_out_as_stale(orchestrator, api, clock):
    api.add_run(14, status="in_progress")

    state = asyncio.run(orchestrator.undeploy())

    assert state.stale is True
    assert "Timed out" in state.message
    timings = orchestrator.timings
    assert clock.now <= timings.undeploy_timeout + timings.undeploy_interval


def test_undeploy_rejected_cancel_is_stale(orchestrator, api):
    api.add_run(15, status="in_progress")
    api.cancel_status = 409

    state = asyncio.run(orchestrator.undeploy())

    assert state.phase == DeploymentPhase.DEPLOYED
    assert state.stale is True


def test_undeploy_without_active_run(orchestrator, api):
    state = asyncio.run(orchestrator.undeploy())

    assert state.phase == DeploymentPhase.NOT_DEPLOYED
    assert not [call for call in api.calls if call[0] == "cancel"]


def test_new_operation_cancels_previous(orchestrator, api):
    api.add_run(16, status="in_progress", statuses=[("in_progress", None), ("completed", "cancelled")])

    async def scenario():
        # No matching run yet, so the deploy sits in its locate loop
        api.jobs["16"] = ["Run for someone7890"]
        first = await orchestrator.start_deploy()
        await asyncio.sleep(0)
        api.jobs["16"] = [JOB]
        second = await orchestrator.start_undeploy()
        state = await second
        return first, state

    first, state = asyncio.run(scenario())

    assert first.cancelled()
    assert state.phase == DeploymentPhase.NOT_DEPLOYED


def test_conflict_from_form_action_auto_undeploys(orchestrator, api):
    api.tunnel_status = 409
    orchestrator.forms[2].succeed("start")

    async def scenario():
        ok = await orchestrator.run_form_action(3, "update")
        refused = await orchestrator.start_deploy()
        return ok, refused

    ok, refused = asyncio.run(scenario())

    assert ok is False
    assert refused is None
    assert orchestrator.state.auto_undeployed is True
    assert orchestrator.state.redeploy_required is True
    assert orchestrator.forms[2].buttons["start"].text == "Start"
    assert ("dispatch",) not in api.calls

    orchestrator.acknowledge_auto_undeploy()
    api.dispatch_ok = False
    state = asyncio.run(orchestrator.deploy())
    assert ("dispatch",) in api.calls
    assert state.auto_undeployed is False


def test_form_action_success_and_failure(orchestrator, api):
    orchestrator.forms[4].set_field("AttackTime", "12a34")

    assert asyncio.run(orchestrator.run_form_action(4, "start")) is True
    assert orchestrator.forms[4].buttons["start"].text == "Running"
    assert api.calls[-1] == ("tunnel", "start", 4, "pilot7890")

    api.tunnel_status = 500
    assert asyncio.run(orchestrator.run_form_action(4, "stop")) is False
    assert orchestrator.forms[4].error == "Error: Failed to stop galaxy"


class SlowJobsApi(FakeApi):
    """Each jobs lookup costs ``delay`` seconds on the fake clock."""

    def __init__(self, clock, delay):
        super().__init__()
        self.clock = clock
        self.delay = delay

    async def get_run_jobs(self, run_id):
        self.clock.now += self.delay
        return await super().get_run_jobs(run_id)

    async def get_run(self, run_id):
        self.clock.now += self.delay
        return await super().get_run(run_id)


def test_slow_lookups_cannot_stretch_locate_window(clock):
    api = SlowJobsApi(clock, delay=5.0)
    for run_id in range(8):
        api.add_run(run_id, status="in_progress", job="Run for someone7890")
    orchestrator = DeploymentOrchestrator(api, "pilot", OrchestratorTimings(), clock=clock, sleep=clock.sleep)

    state = asyncio.run(orchestrator.deploy())

    timings = orchestrator.timings
    assert state.phase == DeploymentPhase.NOT_DEPLOYED
    assert state.redeploy_required is True
    assert clock.now - timings.settle_delay <= timings.locate_timeout + timings.locate_interval


def test_slow_polls_cannot_stretch_poll_window(clock):
    api = SlowJobsApi(clock, delay=25.0)
    api.add_run(1)
    orchestrator = DeploymentOrchestrator(api, "pilot", OrchestratorTimings(), clock=clock, sleep=clock.sleep)
    polling_started = {}

    original_update = orchestrator._update

    def tracking_update(**changes):
        if changes.get("phase") == DeploymentPhase.POLLING:
            polling_started["at"] = clock.now
        return original_update(**changes)

    orchestrator._update = tracking_update

    state = asyncio.run(orchestrator.deploy())

    timings = orchestrator.timings
    assert state.phase == DeploymentPhase.NOT_DEPLOYED
    assert "Timed out" in state.message
    assert clock.now - polling_started["at"] <= timings.poll_timeout + api.delay


def test_slow_cancellation_checks_end_as_stale(clock):
    api = SlowJobsApi(clock, delay=20.0)
    api.add_run(2, status="in_progress")
    orchestrator = DeploymentOrchestrator(api, "pilot", OrchestratorTimings(), clock=clock, sleep=clock.sleep)

    state = asyncio.run(orchestrator.undeploy())

    assert state.phase == DeploymentPhase.DEPLOYED
    assert state.stale is True
    assert state.message == "Timed out waiting for cancellation."
    assert ("cancel", "2") in api.calls


def test_hung_lookup_is_cut_off_at_deadline():
    class HungApi(FakeApi):
        async def list_runs(self, status=None, per_page=30):
            await asyncio.Event().wait()

    timings = OrchestratorTimings(settle_delay=0, locate_interval=0.01, locate_timeout=0.05)
    orchestrator = DeploymentOrchestrator(HungApi(), "pilot", timings)

    async def scenario():
        return await asyncio.wait_for(orchestrator.deploy(), timeout=2)

    state = asyncio.run(scenario())

    assert state.phase == DeploymentPhase.NOT_DEPLOYED
    assert "locating" in state.message
