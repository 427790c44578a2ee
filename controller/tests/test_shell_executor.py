"""Tests for the local shell executor and volume manager."""

import asyncio
import os

from controller.src.models.pipeline import PipelineVolume, Step
from controller.src.models.step import TIMEOUT_EXIT_CODE, StepInvocation
from controller.src.services.executor import ShellExecutor
from controller.src.services.volumes import WORKSPACE, LocalVolumeManager

def run_step(tmp_path, commands, environment=None, timeout=30, capacity=0, volumes=()):
    async def scenario():
        manager = LocalVolumeManager(base_dir=str(tmp_path))
        executor = ShellExecutor(volumes=manager, capacity=capacity, inherit_env=False)
        workspace = await manager.acquire("run-1", WORKSPACE)
        mounts = {
            f"/mnt/{volume.name}": await manager.acquire("event-1", volume)
            for volume in volumes
        }
        invocation = StepInvocation(
            run_id="run-1",
            step_order=0,
            step=Step(name="test", image="shell", commands=commands),
            workspace=workspace,
            environment=environment or {},
            volumes=mounts,
            timeout=timeout,
        )
        result = await executor.run(invocation)
        await manager.release("run-1")
        await manager.release("event-1")
        return result, workspace, manager

    return asyncio.run(scenario())

def test_runs_commands_in_workspace(tmp_path):
    result, workspace, _ = run_step(tmp_path, ["echo hello > greeting.txt", "cat greeting.txt", "pwd"])

    assert result.succeeded
    greeting, cwd = result.stdout.splitlines()
    assert greeting == "hello"
    assert os.path.realpath(cwd) == os.path.realpath(workspace.path)

def test_stops_at_first_failing_command(tmp_path):
    result, _, _ = run_step(tmp_path, ["echo first", "exit 3", "echo never"])

    assert result.exit_code == 3
    assert not result.succeeded
    assert "never" not in result.stdout

def test_environment_passed_to_step(tmp_path):
    result, _, _ = run_step(tmp_path, ['echo "$CONDUIT_BRANCH"'], environment={"CONDUIT_BRANCH": "dev"})

    assert result.stdout.strip() == "dev"

def test_timeout(tmp_path):
    result, _, _ = run_step(tmp_path, ["sleep 5"], timeout=0.2)

    assert result.timed_out
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert not result.succeeded

def test_volumes_exposed_and_cleaned_up(tmp_path):
    volume = PipelineVolume(name="stage-dir", temp={})
    result, workspace, manager = run_step(
        tmp_path, ['echo artifact > "$CONDUIT_VOLUME_STAGE_DIR/out"', 'ls "$CONDUIT_VOLUME_STAGE_DIR"'],
        volumes=[volume],
    )

    assert result.stdout.strip() == "out"
    assert not os.path.exists(workspace.path)
    assert manager.active_scopes() == []

def test_plugin_step_needs_container_backend(tmp_path):
    async def scenario():
        manager = LocalVolumeManager(base_dir=str(tmp_path))
        workspace = await manager.acquire("run-2", WORKSPACE)
        invocation = StepInvocation(
            run_id="run-2",
            step_order=0,
            step=Step(name="notify", image="plugins/slack", settings={"channel": "ci"}),
            workspace=workspace,
        )
        return await ShellExecutor(volumes=manager).run(invocation)

    result = asyncio.run(scenario())

    assert not result.succeeded
    assert "plugins/slack" in result.error

def test_shared_volume_handle_per_scope(tmp_path):
    async def scenario():
        manager = LocalVolumeManager(base_dir=str(tmp_path))
        volume = PipelineVolume(name="cache", temp={})
        first = await manager.acquire("event-1", volume)
        second = await manager.acquire("event-1", volume)
        other = await manager.acquire("event-2", volume)
        await manager.release("event-1")
        return first, second, other, manager

    first, second, other, manager = asyncio.run(scenario())

    assert first is second
    assert other.path != first.path
    assert not os.path.exists(first.path)
    assert os.path.exists(other.path)
    assert manager.active_scopes() == ["event-2"]
