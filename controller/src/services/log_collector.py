"""
Read the output and exit code of a finished step job.
"""

import logging
from typing import Optional, Tuple

from kubernetes.client.rest import ApiException

from controller.src.config import get_settings
from controller.src.k8s.client import get_core_api

logger = logging.getLogger(__name__)
settings = get_settings()

# Longest log tail kept per step
LOG_TAIL_LINES = 5000

def get_job_pod(job_name: str):
    """The pod a step job created, or None."""
    try:
        pods = get_core_api().list_namespaced_pod(
            namespace=settings.k8s_namespace,
            label_selector=f"job-name={job_name}",
        )
    except ApiException as e:
        logger.error(f"Failed to find pod for job {job_name}: {e}")
        return None
    return pods.items[0] if pods.items else None

def _exit_code(pod) -> Optional[int]:
    if pod.status is None:
        return None
    for container in pod.status.container_statuses or []:
        terminated = container.state.terminated if container.state else None
        if terminated is not None:
            return terminated.exit_code
    return None

def collect_step_output(job_name: str) -> Tuple[str, Optional[int]]:
    """
    Logs and container exit code of a step job.

    The exit code is None when the container never terminated, e.g. the
    image could not be pulled or the job was killed at its deadline.
    """
    pod = get_job_pod(job_name)
    if pod is None:
        return "No pod found for job", None

    try:
        logs = get_core_api().read_namespaced_pod_log(
            name=pod.metadata.name,
            namespace=settings.k8s_namespace,
            tail_lines=LOG_TAIL_LINES,
        )
    except ApiException as e:
        if e.status == 400:
            logs = "Step container did not start"
        else:
            logger.error(f"Failed to collect logs for {pod.metadata.name}: {e}")
            logs = f"Error collecting logs: {e.reason}"

    return logs, _exit_code(pod)
