"""
Step executors - run one pipeline step in an isolated environment.

`kubernetes` and `docker` pipelines run each step as a Kubernetes Job;
`exec` pipelines run steps as local shell processes.
"""

import asyncio
import logging
import os
import time
from typing import Dict, Optional

from kubernetes.client.rest import ApiException

from controller.src.config import get_settings
from controller.src.k8s import (
    build_job,
    build_shell_script,
    delete_job,
    get_batch_api,
    get_job_status,
)
from controller.src.models.step import TIMEOUT_EXIT_CODE, StepInvocation, StepResult
from controller.src.services.log_collector import collect_step_output
from controller.src.services.volumes import (
    KubernetesVolumeManager,
    LocalVolumeManager,
    VolumeManager,
)

logger = logging.getLogger(__name__)
settings = get_settings()

class StepExecutor:
    """
    Base executor. `capacity` bounds how many steps run at once on this
    backend (0 = unbounded).
    """

    def __init__(self, volumes: VolumeManager, capacity: int = 0):
        self.volumes = volumes
        self.capacity = capacity
        self._slots: Optional[asyncio.Semaphore] = (
            asyncio.Semaphore(capacity) if capacity > 0 else None
        )

    async def run(self, invocation: StepInvocation) -> StepResult:
        if self._slots is None:
            return await self._run(invocation)
        async with self._slots:
            return await self._run(invocation)

    async def _run(self, invocation: StepInvocation) -> StepResult:
        raise NotImplementedError

class ShellExecutor(StepExecutor):
    """Runs step commands with /bin/sh in the run's workspace directory."""

    def __init__(self, volumes: VolumeManager = None, capacity: int = 0, inherit_env: bool = True):
        super().__init__(volumes or LocalVolumeManager(), capacity)
        self.inherit_env = inherit_env

    def _environment(self, invocation: StepInvocation) -> Dict[str, str]:
        env = dict(os.environ) if self.inherit_env else {"PATH": os.environ.get("PATH", "")}
        env.update(invocation.environment)
        env["CONDUIT_WORKSPACE"] = invocation.workspace.path
        # Host processes cannot mount, so volumes are exposed as paths
        for handle in invocation.volumes.values():
            key = "CONDUIT_VOLUME_" + handle.name.upper().replace("-", "_")
            env[key] = handle.path
        return env

    async def _run(self, invocation: StepInvocation) -> StepResult:
        step = invocation.step
        if step.is_plugin:
            return StepResult.failed(
                f"Step '{step.name}' is a plugin step ({step.image}) "
                "and needs a container backend"
            )

        start = time.monotonic()
        process = await asyncio.create_subprocess_exec(
            "/bin/sh", "-c", build_shell_script(step.commands),
            cwd=invocation.workspace.path,
            env=self._environment(invocation),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=invocation.timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error(f"Step {step.name} timed out after {invocation.timeout}s")
            return StepResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stderr=f"Step timed out after {invocation.timeout}s",
                duration=time.monotonic() - start,
                timed_out=True,
            )
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        return StepResult(
            exit_code=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration=time.monotonic() - start,
        )

class KubernetesExecutor(StepExecutor):
    """Runs each step as a one-shot Kubernetes Job."""

    def __init__(self, volumes: VolumeManager = None, capacity: int = 0, poll_interval: float = 2.0):
        super().__init__(volumes or KubernetesVolumeManager(), capacity)
        self.poll_interval = poll_interval

    async def _run(self, invocation: StepInvocation) -> StepResult:
        job = build_job(invocation)
        job_name = job.metadata.name
        start = time.monotonic()

        logger.info(f"Creating job {job_name}")
        try:
            await asyncio.to_thread(self._create_job, job)
            status = await self.wait_for_job(job_name, invocation.timeout)
        except asyncio.CancelledError:
            logger.info(f"Cancelling job {job_name}")
            await asyncio.to_thread(delete_job, job_name)
            raise

        logs, exit_code = await asyncio.to_thread(collect_step_output, job_name)
        duration = time.monotonic() - start

        if status == "timeout":
            await asyncio.to_thread(delete_job, job_name)
            return StepResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=logs,
                duration=duration,
                timed_out=True,
            )

        if exit_code is None:
            exit_code = 0 if status == "succeeded" else 1
        return StepResult(exit_code=exit_code, stdout=logs, duration=duration)

    def _create_job(self, job):
        batch_v1 = get_batch_api()

        try:
            batch_v1.create_namespaced_job(
                namespace=settings.k8s_namespace,
                body=job,
            )
        except ApiException as e:
            if e.status == 409:
                # Job already exists, delete and recreate
                logger.warning(f"Job {job.metadata.name} already exists, deleting...")
                batch_v1.delete_namespaced_job(
                    name=job.metadata.name,
                    namespace=settings.k8s_namespace,
                    body={"propagationPolicy": "Foreground"},
                )
                time.sleep(2)
                batch_v1.create_namespaced_job(
                    namespace=settings.k8s_namespace,
                    body=job,
                )
            else:
                raise

    async def wait_for_job(self, job_name: str, timeout: int) -> str:
        """
        Wait for a job to complete.
        Returns 'succeeded', 'failed' or 'timeout'.
        """
        batch_v1 = get_batch_api()
        start_time = time.monotonic()

        while True:
            if time.monotonic() - start_time > timeout:
                logger.error(f"Job {job_name} timed out after {timeout}s")
                return "timeout"

            try:
                job = await asyncio.to_thread(
                    batch_v1.read_namespaced_job,
                    name=job_name,
                    namespace=settings.k8s_namespace,
                )
                status = get_job_status(job)
                if status in ("succeeded", "failed", "timeout"):
                    return status
                await asyncio.sleep(self.poll_interval)
            except ApiException as e:
                logger.error(f"Error checking job status: {e}")
                await asyncio.sleep(self.poll_interval * 2)

def create_executors(capacity: int = None) -> Dict[str, StepExecutor]:
    """Executors keyed by pipeline type."""
    capacity = settings.executor_capacity if capacity is None else capacity
    kubernetes = KubernetesExecutor(capacity=capacity)
    return {
        "kubernetes": kubernetes,
        "docker": kubernetes,
        "exec": ShellExecutor(capacity=capacity),
    }
