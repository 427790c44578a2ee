"""Shared fakes for controller tests."""

import asyncio
from pathlib import Path
from typing import Callable, Dict, Optional

import pytest

from controller.src.exceptions import SecretResolutionError
from controller.src.models.event import Event
from controller.src.models.step import StepInvocation, StepResult, VolumeHandle
from controller.src.services.executor import StepExecutor
from controller.src.services.pipeline_parser import load_pipeline_file
from controller.src.services.secrets import SecretStore
from controller.src.services.volumes import VolumeManager

FIXTURES = Path(__file__).parent / "fixtures"

class FakeVolumeManager(VolumeManager):
    def __init__(self):
        super().__init__()
        self.created = []
        self.destroyed = []

    async def _create(self, scope, volume):
        handle = VolumeHandle(name=volume.name, scope=scope, path=f"/fake/{scope}/{volume.name}")
        self.created.append(handle)
        return handle

    async def _destroy(self, handle):
        self.destroyed.append(handle)

class FakeExecutor(StepExecutor):
    """
    Records steps instead of running them.

    `results` maps (pipeline, step) to an exit code or to a callable
    returning a StepResult. `held` pipelines wait for a free slot until
    `release_slots` is called; `gates` block a started step until set.
    """

    def __init__(self, results: Optional[Dict] = None, gates: Optional[Dict] = None, held=()):
        super().__init__(FakeVolumeManager())
        self.results = results or {}
        self.gates = gates or {}
        self.held = set(held)
        self.slots_open = asyncio.Event()
        self.queued = []
        self.started = []
        self.invocations = []

    def release_slots(self):
        self.slots_open.set()

    async def run(self, invocation: StepInvocation) -> StepResult:
        pipeline = invocation.environment["CONDUIT_PIPELINE_NAME"]
        if pipeline in self.held:
            self.queued.append((pipeline, invocation.step.name))
            await self.slots_open.wait()
        return await self._run(invocation)

    async def _run(self, invocation: StepInvocation) -> StepResult:
        key = (invocation.environment["CONDUIT_PIPELINE_NAME"], invocation.step.name)
        self.started.append(key)
        self.invocations.append(invocation)

        gate = self.gates.get(key)
        if gate is not None:
            await gate.wait()

        outcome = self.results.get(key, 0)
        if callable(outcome):
            return outcome(invocation)
        return StepResult(exit_code=outcome, stdout=f"{invocation.step.name} done\n")

    def ran(self, pipeline: str):
        return [step for p, step in self.started if p == pipeline]

class FakeSecretStore(SecretStore):
    def __init__(self, values: Optional[Dict[str, str]] = None):
        self.values = values or {}
        self.requested = []

    def resolve(self, name: str) -> str:
        self.requested.append(name)
        if name in self.values:
            return self.values[name]
        if self.values:
            raise SecretResolutionError(name)
        return f"secret-value-{name}"

class RecordingSink:
    name = "recording"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published = []

    async def publish(self, run):
        self.published.append((run.name, run.status.value))
        if self.fail:
            raise RuntimeError("sink unavailable")

class RecordingReporter:
    def __init__(self):
        self.calls = []

    def build_updated(self, event, status, finished=False):
        self.calls.append(("build", status, finished))

    def run_updated(self, run):
        self.calls.append(("run", run.name, run.status.value))

    def step_updated(self, run, outcome):
        self.calls.append(("step", run.name, outcome.name, outcome.status.value))

async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)

def push_event(branch: str = "master", **extra) -> Event:
    return Event(
        ref=f"refs/heads/{branch}",
        commit_sha="0123456789abcdef",
        author="octocat",
        build_number=42,
        repo_owner="casper-network",
        repo_name="casper-node",
        **extra,
    )

@pytest.fixture
def pipelines():
    return load_pipeline_file(str(FIXTURES / "conduit.yml"))
