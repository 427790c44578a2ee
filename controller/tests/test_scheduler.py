"""Tests for multi-pipeline scheduling."""

import asyncio

import pytest

from conftest import (
    FakeExecutor,
    FakeSecretStore,
    RecordingReporter,
    RecordingSink,
    push_event,
    wait_until,
)
from controller.src.engine.scheduler import Scheduler
from controller.src.exceptions import PipelineConfigError
from controller.src.models.event import Event
from controller.src.models.step import Status, StepResult
from controller.src.services.pipeline_parser import parse_pipeline_config

def make_scheduler(pipelines, executor, **kwargs):
    kwargs.setdefault("secrets", FakeSecretStore())
    kwargs.setdefault("clone_url", "")
    return Scheduler(pipelines, executors={"docker": executor, "exec": executor}, **kwargs)

def by_name(runs):
    return {run.name: run for run in runs}

def statuses(runs):
    return {run.name: run.status for run in runs}

def test_master_push_all_green(pipelines):
    async def scenario():
        executor = FakeExecutor()
        scheduler = make_scheduler(pipelines, executor)
        runs = await scheduler.run(push_event("master"))
        return executor, runs

    executor, runs = asyncio.run(scenario())

    assert statuses(runs) == {
        "pre-checks": Status.SUCCESS,
        "failed-pre-checks": Status.SKIPPED,
        "cargo-test": Status.SUCCESS,
        "package": Status.SUCCESS,
        "test-package-success": Status.SUCCESS,
        "test-package-failure": Status.SKIPPED,
    }
    # the failure notifier is scheduled but never executes a step
    assert executor.ran("failed-pre-checks") == []
    assert executor.ran("test-package-failure") == []
    assert executor.ran("pre-checks") == ["cargo-fmt", "cargo-clippy"]

def test_step_when_mismatch_is_skipped_without_failing_run(pipelines):
    async def scenario():
        executor = FakeExecutor()
        runs = await make_scheduler(pipelines, executor).run(push_event("master"))
        return executor, by_name(runs)["package"]

    executor, package = asyncio.run(scenario())

    assert package.status == Status.SUCCESS
    assert package.get_step("upload-cache").status == Status.SUCCESS
    # only runs on release branches
    assert package.get_step("stage-upgrade-assets").status == Status.SKIPPED
    assert "stage-upgrade-assets" not in executor.ran("package")

def test_release_branch_runs_branch_scoped_steps(pipelines):
    async def scenario():
        executor = FakeExecutor()
        runs = await make_scheduler(pipelines, executor).run(push_event("release-1.4"))
        return executor, by_name(runs)

    executor, runs = asyncio.run(scenario())

    assert runs["package"].get_step("stage-upgrade-assets").status == Status.SUCCESS
    mounts = [i.volumes for i in executor.invocations if i.step.name == "stage-upgrade-assets"]
    assert list(mounts[0]) == ["/tmp/stage"]

def test_pre_checks_failure_routes_to_failure_pipelines(pipelines):
    async def scenario():
        executor = FakeExecutor(results={("pre-checks", "cargo-fmt"): 1})
        runs = await make_scheduler(pipelines, executor).run(push_event("master"))
        return executor, by_name(runs)

    executor, runs = asyncio.run(scenario())

    pre_checks = runs["pre-checks"]
    assert pre_checks.status == Status.FAILURE
    assert pre_checks.get_step("cargo-fmt").status == Status.FAILURE
    assert pre_checks.get_step("cargo-clippy").status == Status.SKIPPED

    assert runs["failed-pre-checks"].status == Status.SUCCESS
    assert runs["failed-pre-checks"].upstream_status == Status.FAILURE
    assert executor.ran("failed-pre-checks") == ["notify"]

    assert runs["cargo-test"].status == Status.SKIPPED
    assert runs["package"].status == Status.SKIPPED
    # skipped because of a failure, so the failure branch still fires
    assert runs["test-package-success"].status == Status.SKIPPED
    assert runs["test-package-failure"].status == Status.SUCCESS

def test_tag_event_only_schedules_tag_pipelines(pipelines):
    async def scenario():
        executor = FakeExecutor()
        scheduler = make_scheduler(pipelines, executor)
        runs = await scheduler.run(Event(ref="refs/tags/v1.0.0", commit_sha="abc"))
        return executor, runs

    executor, runs = asyncio.run(scenario())

    assert statuses(runs) == {
        "release-by-tag": Status.SUCCESS,
        "failed-tag": Status.SKIPPED,
    }
    assert executor.ran("release-by-tag") == ["build-deb", "publish-github-release"]
    assert {p for p, _ in executor.started} == {"release-by-tag"}

def test_downstream_stays_pending_until_upstream_terminal(pipelines):
    async def scenario():
        gate = asyncio.Event()
        executor = FakeExecutor(gates={("pre-checks", "cargo-clippy"): gate})
        scheduler = make_scheduler(pipelines, executor)
        event = push_event("master")

        runs = by_name(await scheduler.submit(event))
        await wait_until(lambda: ("pre-checks", "cargo-clippy") in executor.started)

        live = scheduler.get_runs(event.id)
        pending = {
            name: live[name].status
            for name in ("cargo-test", "package", "test-package-success")
        }
        gate.set()
        await scheduler.wait(event.id)
        return pending, runs

    pending, runs = asyncio.run(scenario())

    assert set(pending.values()) == {Status.PENDING}
    assert runs["cargo-test"].status == Status.SUCCESS
    assert runs["cargo-test"].started_at >= runs["pre-checks"].finished_at

def test_cancel_before_package_starts(pipelines):
    async def scenario():
        gate = asyncio.Event()
        executor = FakeExecutor(gates={("cargo-test", "cargo-test"): gate}, held={"package"})
        scheduler = make_scheduler(pipelines, executor)
        event = push_event("master")

        runs = by_name(await scheduler.submit(event))
        await wait_until(lambda: ("cargo-test", "cargo-test") in executor.started)
        await wait_until(lambda: executor.queued)

        assert scheduler.cancel(event.id) is True
        await scheduler.wait(event.id)
        return executor, runs

    executor, runs = asyncio.run(scenario())

    assert executor.ran("package") == []
    assert runs["pre-checks"].status == Status.SUCCESS
    assert runs["cargo-test"].status == Status.CANCELLED
    assert runs["package"].status == Status.CANCELLED
    assert runs["test-package-success"].status == Status.CANCELLED
    assert runs["test-package-failure"].status == Status.CANCELLED
    assert executor.ran("test-package-success") == []
    assert all(s.status == Status.CANCELLED for s in runs["package"].steps)

def test_cancel_unknown_or_finished_event(pipelines):
    async def scenario():
        scheduler = make_scheduler(pipelines, FakeExecutor())
        event = push_event("master")
        runs = await scheduler.submit(event)
        await scheduler.wait(event.id)
        return scheduler, event, runs

    scheduler, event, runs = asyncio.run(scenario())

    assert scheduler.cancel("no-such-event") is False
    assert scheduler.cancel(event.id) is False
    assert scheduler.get_runs("no-such-event") == {}
    assert all(run.is_terminal for run in runs)

def test_cron_event_only_runs_cron_pipeline(pipelines):
    async def scenario():
        executor = FakeExecutor(results={("nightly-tests-cron", "nightly-script"): 2})
        event = Event(cron="nightly-tests-cron", branch="master")
        runs = await make_scheduler(pipelines, executor).run(event)
        return executor, by_name(runs)

    executor, runs = asyncio.run(scenario())

    assert list(runs) == ["nightly-tests-cron"]
    nightly = runs["nightly-tests-cron"]
    assert nightly.status == Status.FAILURE
    # notify runs on success and failure
    assert executor.ran("nightly-tests-cron") == ["nightly-script", "notify"]
    assert nightly.get_step("notify").status == Status.SUCCESS

def test_unmatched_event_creates_no_runs(pipelines):
    async def scenario():
        return await make_scheduler(pipelines, FakeExecutor()).run(push_event("feature-x"))

    assert asyncio.run(scenario()) == set()

def test_duplicate_submission_rejected(pipelines):
    async def scenario():
        scheduler = make_scheduler(pipelines, FakeExecutor())
        event = push_event("master")
        await scheduler.submit(event)
        try:
            with pytest.raises(ValueError):
                await scheduler.submit(event)
        finally:
            await scheduler.wait(event.id)

    asyncio.run(scenario())

def test_missing_executor_for_pipeline_type(pipelines):
    with pytest.raises(PipelineConfigError, match="docker"):
        Scheduler(pipelines, executors={"exec": FakeExecutor()})

def test_ignored_failure_keeps_run_green(pipelines):
    async def scenario():
        executor = FakeExecutor(results={("test-package-success", "publish-repo-test"): 1})
        runs = await make_scheduler(pipelines, executor).run(push_event("master"))
        return by_name(runs)

    runs = asyncio.run(scenario())

    run = runs["test-package-success"]
    assert run.status == Status.SUCCESS
    assert run.get_step("publish-repo-test").status == Status.FAILURE
    assert runs["test-package-failure"].status == Status.SKIPPED

SECRET_CONFIG = """
kind: pipeline
type: exec
name: deploy
steps:
  - name: push
    image: shell
    environment:
      TOKEN:
        from_secret: deploy_token
    commands:
      - echo $TOKEN
  - name: report
    image: shell
    commands:
      - echo done
"""

def test_unresolvable_secret_fails_step():
    async def scenario():
        executor = FakeExecutor()
        scheduler = make_scheduler(
            parse_pipeline_config(SECRET_CONFIG),
            executor,
            secrets=FakeSecretStore({"other": "value"}),
        )
        runs = await scheduler.run(push_event("master"))
        return executor, by_name(runs)["deploy"]

    executor, run = asyncio.run(scenario())

    assert run.status == Status.FAILURE
    push = run.get_step("push")
    assert push.status == Status.FAILURE
    assert "deploy_token" in push.result.error
    assert run.get_step("report").status == Status.SKIPPED
    assert executor.started == []

def test_secret_values_masked_in_step_output():
    def echo_token(invocation):
        return StepResult(exit_code=0, stdout=f"token is {invocation.environment['TOKEN']}\n")

    async def scenario():
        executor = FakeExecutor(results={("deploy", "push"): echo_token})
        scheduler = make_scheduler(
            parse_pipeline_config(SECRET_CONFIG),
            executor,
            secrets=FakeSecretStore({"deploy_token": "s3cr3t-token"}),
        )
        runs = await scheduler.run(push_event("master"))
        return executor, by_name(runs)["deploy"]

    executor, run = asyncio.run(scenario())

    assert executor.invocations[0].environment["TOKEN"] == "s3cr3t-token"
    assert "s3cr3t-token" not in run.get_step("push").logs
    assert "********" in run.get_step("push").logs

def test_sinks_receive_every_terminal_run_and_failures_are_isolated(pipelines):
    async def scenario():
        good, bad = RecordingSink(), RecordingSink(fail=True)
        scheduler = make_scheduler(pipelines, FakeExecutor(), sinks=[bad, good])
        runs = await scheduler.run(push_event("master"))
        return good, runs

    good, runs = asyncio.run(scenario())

    assert sorted(good.published) == sorted((run.name, run.status.value) for run in runs)
    assert by_name(runs)["pre-checks"].status == Status.SUCCESS

def test_reporter_sees_final_build_status(pipelines):
    async def scenario():
        reporter = RecordingReporter()
        await make_scheduler(pipelines, FakeExecutor(), reporter=reporter).run(push_event("master"))
        return reporter

    reporter = asyncio.run(scenario())

    assert reporter.calls[0] == ("build", "running", False)
    assert reporter.calls[-1] == ("build", "success", True)
    assert any(call[:2] == ("step", "package") for call in reporter.calls)

def test_volumes_released_after_build(pipelines):
    async def scenario():
        executor = FakeExecutor()
        event = push_event("release-2.0")
        await make_scheduler(pipelines, executor).run(event)
        return executor, event

    executor, event = asyncio.run(scenario())

    volumes = executor.volumes
    assert volumes.active_scopes() == []
    stage = [h for h in volumes.created if h.name == "stage-dir"]
    assert [h.scope for h in stage] == [event.id]
    assert len(volumes.destroyed) == len(volumes.created)

def test_clone_step_prepended_when_clone_url_set(pipelines):
    async def scenario():
        executor = FakeExecutor()
        scheduler = make_scheduler(pipelines, executor, clone_url="https://git.example/casper-node.git")
        runs = await scheduler.run(push_event("master"))
        return executor, by_name(runs)

    executor, runs = asyncio.run(scenario())

    assert executor.ran("pre-checks")[0] == "clone"
    assert runs["pre-checks"].steps[0].name == "clone"
    clone = executor.invocations[0]
    assert "git remote add origin https://git.example/casper-node.git" in clone.step.commands
    assert clone.step.commands[2].endswith("origin 0123456789abcdef")
