"""
Pipeline scheduler.

For each event, one coordinator task owns every Run of that event: it
decides eligibility, starts pipeline tasks and records terminal states, so
no run is dispatched twice. Pipelines with no path between them in the
dependency graph run concurrently; the steps of one pipeline run in order.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Union

from controller.src.config import get_settings
from controller.src.engine.environment import build_environment, step_environment
from controller.src.engine.graph import PipelineGraph, plan_steps, should_run_step
from controller.src.engine.trigger import evaluate, with_default_status, without_status
from controller.src.exceptions import PipelineConfigError, SecretResolutionError
from controller.src.models.event import Event
from controller.src.models.pipeline import PipelineDefinition, Step
from controller.src.models.run import Run
from controller.src.models.step import (
    Status,
    StepInvocation,
    StepOutcome,
    StepResult,
    VolumeHandle,
)
from controller.src.services.executor import StepExecutor
from controller.src.services.notifier import Sink, publish_all
from controller.src.services.secrets import EnvSecretStore, SecretMasker, SecretStore, masker
from controller.src.services.volumes import WORKSPACE

logger = logging.getLogger(__name__)

@dataclass(eq=False)
class Build:
    """Scheduler state for one event."""
    event: Event
    runs: Dict[str, Run]
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    background: Set[asyncio.Task] = field(default_factory=set)
    reports: asyncio.Queue = field(default_factory=asyncio.Queue)
    executors: List[StepExecutor] = field(default_factory=list)

    @property
    def status(self) -> Status:
        if self.cancelled.is_set():
            return Status.CANCELLED
        statuses = [run.status for run in self.runs.values()]
        if not all(s.is_terminal for s in statuses):
            return Status.RUNNING
        if Status.FAILURE in statuses:
            return Status.FAILURE
        if Status.CANCELLED in statuses:
            return Status.CANCELLED
        return Status.SUCCESS

class Scheduler:
    """
    Runs the pipelines an event triggers, honouring depends_on edges.

    The configuration is validated on construction; an unknown dependency
    or a cycle raises before any run exists.
    """

    def __init__(
        self,
        pipelines: Union[PipelineGraph, Iterable[PipelineDefinition]],
        executors: Dict[str, StepExecutor],
        secrets: Optional[SecretStore] = None,
        sinks: Iterable[Sink] = (),
        reporter=None,
        clone_url: Optional[str] = None,
        clone_image: Optional[str] = None,
        step_timeout: Optional[int] = None,
    ):
        settings = get_settings()
        self.graph = pipelines if isinstance(pipelines, PipelineGraph) else PipelineGraph(pipelines)

        missing = sorted({p.type for p in self.graph.pipelines.values()} - set(executors))
        if missing:
            raise PipelineConfigError(f"No executor for pipeline type(s): {', '.join(missing)}")

        self.executors = executors
        self.secrets = secrets or EnvSecretStore()
        self.sinks = list(sinks)
        self.reporter = reporter
        self.clone_url = settings.repo_clone_url if clone_url is None else clone_url
        self.clone_image = clone_image or settings.clone_image
        self.step_timeout = step_timeout or settings.job_timeout
        self._builds: Dict[str, Build] = {}

    # Public API

    def matching_pipelines(self, event: Event) -> List[PipelineDefinition]:
        """Pipelines whose trigger fires for `event`, in dependency order."""
        matched = []
        for name in self.graph.topological_order():
            pipeline = self.graph.pipelines[name]
            if evaluate(without_status(pipeline.trigger), event):
                matched.append(pipeline)
        return matched

    async def submit(self, event: Event) -> Set[Run]:
        """
        Create the runs `event` triggers and start scheduling them.
        Returns immediately; use `wait` to block until they finish.
        """
        if event.id in self._builds:
            raise ValueError(f"Event {event.id} was already submitted")

        pipelines = self.matching_pipelines(event)
        if not pipelines:
            logger.info(f"No pipelines triggered by {event.kind.value} event {event.id}")
            return set()

        build = Build(event=event, runs={p.name: Run(pipeline=p, event=event) for p in pipelines})
        self._builds[event.id] = build
        build.task = asyncio.create_task(self._coordinate(build), name=f"build-{event.id}")

        logger.info(
            f"Scheduled {len(pipelines)} pipeline(s) for {event.kind.value} event "
            f"{event.id}: {', '.join(build.runs)}"
        )
        return set(build.runs.values())

    async def wait(self, event_id: str) -> Set[Run]:
        build = self._builds[event_id]
        await build.task
        return set(build.runs.values())

    async def run(self, event: Event) -> Set[Run]:
        """Submit `event` and wait for all of its runs to finish."""
        runs = await self.submit(event)
        if runs:
            await self.wait(event.id)
            self._builds.pop(event.id, None)
        return runs

    def cancel(self, event_id: str) -> bool:
        """
        Cancel every non-terminal run of an event. Runs that have not
        started never will.
        """
        build = self._builds.get(event_id)
        if build is None or build.task is None or build.task.done():
            return False
        logger.info(f"Cancelling build for event {event_id}")
        build.cancelled.set()
        return True

    def get_runs(self, event_id: str) -> Dict[str, Run]:
        build = self._builds.get(event_id)
        return dict(build.runs) if build else {}

    def active_events(self) -> List[str]:
        return [event_id for event_id, b in self._builds.items() if b.task and not b.task.done()]

    # Coordination

    async def _coordinate(self, build: Build):
        active: Dict[asyncio.Task, Run] = {}
        cancel_waiter = asyncio.create_task(build.cancelled.wait())
        reporter_task = asyncio.create_task(self._drain_reports(build))
        self._report(build, "build_updated", build.event, Status.RUNNING.value)

        try:
            while True:
                if build.cancelled.is_set():
                    await self._cancel_active(build, active)
                    break

                self._dispatch(build, active)
                if all(run.is_terminal for run in build.runs.values()):
                    break
                if not active:
                    raise RuntimeError(f"Build {build.event.id} has pending runs but none can start")

                done, _ = await asyncio.wait(
                    [*active, cancel_waiter], return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    if task is not cancel_waiter:
                        self._collect(build, task, active.pop(task))
        finally:
            cancel_waiter.cancel()
            if active:
                await self._cancel_active(build, active)
            for run in build.runs.values():
                if not run.is_terminal:
                    self._finish(build, run, Status.CANCELLED)

            for executor in build.executors:
                await executor.volumes.release(build.event.id)

            if build.background:
                await asyncio.gather(*build.background, return_exceptions=True)

            self._report(build, "build_updated", build.event, build.status.value, True)
            build.reports.put_nowait(None)
            await reporter_task
            logger.info(f"Build for event {build.event.id} finished: {build.status.value}")

    def _dispatch(self, build: Build, active: Dict[asyncio.Task, Run]):
        """Start or skip every run whose upstream runs are all terminal."""
        progressed = True
        while progressed:
            progressed = False
            for run in build.runs.values():
                if run.status != Status.PENDING:
                    continue

                upstream = [build.runs[d] for d in run.pipeline.depends_on if d in build.runs]
                if not all(u.is_terminal for u in upstream):
                    continue

                progressed = True
                if any(u.status == Status.CANCELLED for u in upstream):
                    self._finish(build, run, Status.CANCELLED)
                    continue

                failed = any(u.propagated_status == Status.FAILURE for u in upstream)
                run.upstream_status = Status.FAILURE if failed else Status.SUCCESS

                trigger = run.pipeline.trigger
                if run.pipeline.depends_on:
                    trigger = with_default_status(trigger)
                if not evaluate(trigger, build.event.with_status(run.upstream_status.value)):
                    logger.info(
                        f"Skipping pipeline {run.name}: trigger does not match "
                        f"upstream status {run.upstream_status.value}"
                    )
                    self._finish(build, run, Status.SKIPPED)
                    continue

                run.status = Status.RUNNING
                run.started_at = datetime.utcnow()
                self._report(build, "run_updated", run)
                logger.info(f"Starting pipeline {run.name} for event {build.event.id}")

                task = asyncio.create_task(self._execute(build, run), name=f"run-{run.name}")
                active[task] = run

    def _collect(self, build: Build, task: asyncio.Task, run: Run):
        if task.cancelled():
            if not run.is_terminal:
                self._finish(build, run, Status.CANCELLED)
            return

        error = task.exception()
        if error is not None:
            logger.error(f"Pipeline {run.name} crashed: {error}", exc_info=error)
            if not run.is_terminal:
                self._finish(build, run, Status.FAILURE, error=str(error))

    async def _cancel_active(self, build: Build, active: Dict[asyncio.Task, Run]):
        for task in active:
            task.cancel()
        if active:
            await asyncio.gather(*active, return_exceptions=True)
        for task, run in list(active.items()):
            self._collect(build, task, run)
        active.clear()

    def _finish(self, build: Build, run: Run, status: Status, error: Optional[str] = None):
        run.status = status
        run.finished_at = datetime.utcnow()
        if error:
            run.error = error

        for outcome in run.steps:
            if outcome.status.is_terminal:
                continue
            if status == Status.CANCELLED:
                outcome.status = Status.CANCELLED
            elif outcome.status == Status.RUNNING:
                outcome.status = Status.FAILURE
            else:
                outcome.status = Status.SKIPPED
            outcome.finished_at = run.finished_at
            self._report(build, "step_updated", run, outcome)

        self._report(build, "run_updated", run)
        logger.info(f"Pipeline {run.name} finished: {status.value}")

        if self.sinks:
            task = asyncio.create_task(publish_all(self.sinks, run))
            build.background.add(task)
            task.add_done_callback(build.background.discard)

    # Run execution

    async def _execute(self, build: Build, run: Run):
        pipeline = run.pipeline
        event = build.event
        executor = self.executors[pipeline.type]
        if executor not in build.executors:
            build.executors.append(executor)

        steps = plan_steps(pipeline, event, self.clone_url, self.clone_image)
        run.steps = [StepOutcome(name=step.name, step_order=i) for i, step in enumerate(steps)]
        run_status = Status.SUCCESS
        finished: Dict[str, Status] = {}

        try:
            workspace = await executor.volumes.acquire(run.id, WORKSPACE)
            volumes = {
                volume.name: await executor.volumes.acquire(event.id, volume)
                for volume in pipeline.volumes
            }

            for step, outcome in zip(steps, run.steps):
                if not should_run_step(step, event, run_status, finished):
                    logger.info(f"Skipping step {step.name} of {pipeline.name}")
                    outcome.status = Status.SKIPPED
                    finished[step.name] = outcome.status
                    self._report(build, "step_updated", run, outcome)
                    continue

                outcome.status = Status.RUNNING
                outcome.started_at = datetime.utcnow()
                self._report(build, "step_updated", run, outcome)

                result = await self._run_step(
                    executor, run, step, outcome.step_order, workspace, volumes, run_status
                )

                outcome.result = result
                outcome.finished_at = datetime.utcnow()
                outcome.status = Status.SUCCESS if result.succeeded else Status.FAILURE
                finished[step.name] = outcome.status
                self._report(build, "step_updated", run, outcome)

                if outcome.status == Status.FAILURE:
                    if step.ignores_failure:
                        logger.warning(f"Step {step.name} of {pipeline.name} failed (ignored)")
                    else:
                        logger.error(f"Step {step.name} of {pipeline.name} failed")
                        run_status = Status.FAILURE
                else:
                    logger.info(f"Step {step.name} of {pipeline.name} succeeded")
        except asyncio.CancelledError:
            self._finish(build, run, Status.CANCELLED)
            raise
        finally:
            await executor.volumes.release(run.id)

        self._finish(build, run, run_status)

    async def _run_step(
        self,
        executor: StepExecutor,
        run: Run,
        step: Step,
        step_order: int,
        workspace: VolumeHandle,
        volumes: Dict[str, VolumeHandle],
        run_status: Status,
    ) -> StepResult:
        base = build_environment(run.event, run.pipeline, step, run_status)
        try:
            env, secret_values = await asyncio.to_thread(
                step_environment, step, self.secrets.resolve, base
            )
        except SecretResolutionError as e:
            logger.error(f"Step {step.name} of {run.name}: {e}")
            return StepResult.failed(str(e))

        masker.add(*secret_values)
        invocation = StepInvocation(
            run_id=run.id,
            step_order=step_order,
            step=step,
            workspace=workspace,
            environment=env,
            volumes={mount.path: volumes[mount.name] for mount in step.volumes},
            timeout=step.timeout or self.step_timeout,
        )

        logger.info(f"Running step {step.name} of {run.name} ({step.image})")
        try:
            result = await executor.run(invocation)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Executor error in step {step.name} of {run.name}")
            return StepResult.failed(f"Executor error: {e}")

        step_masker = SecretMasker(secret_values)
        return result.model_copy(update={
            "stdout": step_masker.mask(result.stdout),
            "stderr": step_masker.mask(result.stderr),
        })

    # Status reporting

    def _report(self, build: Build, method: str, *args):
        if self.reporter is not None:
            build.reports.put_nowait((method, args))

    async def _drain_reports(self, build: Build):
        """Apply status reports in order, off the event loop."""
        while True:
            item = await build.reports.get()
            if item is None:
                return
            method, args = item
            try:
                await asyncio.to_thread(getattr(self.reporter, method), *args)
            except Exception as e:
                logger.exception(f"Failed to report {method}: {e}")
