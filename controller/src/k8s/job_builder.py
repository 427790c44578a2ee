"""
Kubernetes Job and volume claim builders for pipeline steps.
"""

from kubernetes import client
from typing import Dict, List, Optional
import hashlib

from controller.src.config import get_settings
from controller.src.models.step import StepInvocation, VolumeHandle

settings = get_settings()

WORKSPACE_VOLUME = "workspace"

def _safe_name(name: str, length: int) -> str:
    # K8s names must be lowercase, alphanumeric, max 63 chars
    safe = name.lower().replace(" ", "-").replace("_", "-")
    safe = "".join(c for c in safe if c.isalnum() or c == "-")
    return safe[:length].strip("-")

def _short_hash(value: str) -> str:
    return hashlib.md5(value.encode()).hexdigest()[:8]

def build_job_name(run_id: str, step_order: int, step_name: str) -> str:
    """Generate a unique job name."""
    return f"cd-{_short_hash(run_id)}-{step_order}-{_safe_name(step_name, 20)}"

def build_claim_name(scope: str, volume_name: str) -> str:
    """Generate a PVC name unique to a scope (event or run) and volume."""
    return f"cv-{_short_hash(scope)}-{_safe_name(volume_name, 40)}"

def build_shell_script(commands: List[str]) -> str:
    """
    Single shell script for a step's commands.
    `set -e` stops at the first failing command.
    """
    return "set -e\n" + "\n".join(commands)

def build_volume_claim(claim_name: str, scope: str) -> client.V1PersistentVolumeClaim:
    """Build a PVC backing one named volume."""
    return client.V1PersistentVolumeClaim(
        api_version="v1",
        kind="PersistentVolumeClaim",
        metadata=client.V1ObjectMeta(
            name=claim_name,
            namespace=settings.k8s_namespace,
            labels={"app": "conduit", "scope": _short_hash(scope)},
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=[settings.k8s_volume_access_mode],
            storage_class_name=settings.k8s_storage_class,
            resources=client.V1ResourceRequirements(
                requests={"storage": settings.k8s_volume_size},
            ),
        ),
    )

def _pod_volume(volume_name: str, handle: VolumeHandle) -> client.V1Volume:
    if handle.claim_name:
        return client.V1Volume(
            name=volume_name,
            persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                claim_name=handle.claim_name,
            ),
        )
    return client.V1Volume(
        name=volume_name,
        host_path=client.V1HostPathVolumeSource(path=handle.path),
    )

def build_job(invocation: StepInvocation) -> client.V1Job:
    """
    Build a Kubernetes Job for a pipeline step.

    Command steps run their script through /bin/sh; plugin steps run the
    image entrypoint and read their settings from PLUGIN_* variables.
    """
    step = invocation.step
    job_name = build_job_name(invocation.run_id, invocation.step_order, step.name)

    env = [
        client.V1EnvVar(name="CONDUIT_RUN_ID", value=invocation.run_id),
        client.V1EnvVar(name="CONDUIT_STEP_ORDER", value=str(invocation.step_order)),
    ]
    for key, value in invocation.environment.items():
        env.append(client.V1EnvVar(name=key, value=value))

    volumes = [_pod_volume(WORKSPACE_VOLUME, invocation.workspace)]
    mounts = [
        client.V1VolumeMount(name=WORKSPACE_VOLUME, mount_path=settings.workspace_path),
    ]
    for i, (mount_path, handle) in enumerate(sorted(invocation.volumes.items())):
        pod_volume_name = f"vol-{i}-{_safe_name(handle.name, 40)}"
        volumes.append(_pod_volume(pod_volume_name, handle))
        mounts.append(client.V1VolumeMount(name=pod_volume_name, mount_path=mount_path))

    command: Optional[List[str]] = None
    args: Optional[List[str]] = None
    if step.commands:
        command = ["/bin/sh", "-c"]
        args = [build_shell_script(step.commands)]

    container = client.V1Container(
        name="step",
        image=step.image,
        command=command,
        args=args,
        env=env,
        working_dir=settings.workspace_path,
        volume_mounts=mounts,
        resources=client.V1ResourceRequirements(
            requests={"cpu": "100m", "memory": "128Mi"},
            limits={"cpu": "1", "memory": "2Gi"},
        ),
    )

    labels: Dict[str, str] = {
        "app": "conduit",
        "run-id": _short_hash(invocation.run_id),
        "step-order": str(invocation.step_order),
    }

    template = client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(labels=labels),
        spec=client.V1PodSpec(
            containers=[container],
            volumes=volumes,
            restart_policy="Never",
        ),
    )

    job_spec = client.V1JobSpec(
        template=template,
        backoff_limit=0,  # Don't retry failed steps
        active_deadline_seconds=invocation.timeout,
        ttl_seconds_after_finished=settings.job_ttl_after_finished,
    )

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=job_name,
            namespace=settings.k8s_namespace,
            labels=labels,
        ),
        spec=job_spec,
    )

def get_job_status(job: client.V1Job) -> str:
    """
    Determine job status from Kubernetes Job object.
    Returns: 'pending', 'running', 'succeeded', 'failed', 'timeout'
    """
    if job.status is None:
        return "pending"

    # Killed by the cluster at active_deadline_seconds
    for condition in job.status.conditions or []:
        if condition.type == "Failed" and condition.reason == "DeadlineExceeded":
            return "timeout"

    if job.status.succeeded and job.status.succeeded > 0:
        return "succeeded"

    if job.status.failed and job.status.failed > 0:
        return "failed"

    if job.status.active and job.status.active > 0:
        return "running"

    return "pending"
