"""
Kubernetes API access for step jobs, volume claims and secrets.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from typing import Dict
import logging

from controller.src.config import get_settings
from controller.src.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)
settings = get_settings()

_apis: Dict[str, object] = {}

def init_k8s_client() -> bool:
    """Load cluster credentials and check that the API server answers."""
    _apis.clear()

    try:
        if settings.k8s_in_cluster:
            config.load_incluster_config()
        else:
            # Local cluster (Docker Desktop, minikube, kind)
            config.load_kube_config()
    except config.ConfigException as e:
        logger.error(f"No usable Kubernetes configuration: {e}")
        return False

    api_client = client.ApiClient()
    core_v1 = client.CoreV1Api(api_client)
    try:
        core_v1.list_namespace(limit=1)
    except Exception as e:
        logger.error(f"Kubernetes API server unreachable: {e}")
        return False

    _apis["core"] = core_v1
    _apis["batch"] = client.BatchV1Api(api_client)
    logger.info(
        f"Kubernetes client ready ({'in-cluster' if settings.k8s_in_cluster else 'kubeconfig'})"
    )
    return True

def _api(kind: str):
    if kind not in _apis and not init_k8s_client():
        raise ExternalServiceError("Kubernetes API is not available")
    return _apis[kind]

def get_batch_api() -> client.BatchV1Api:
    """BatchV1 API for step jobs."""
    return _api("batch")

def get_core_api() -> client.CoreV1Api:
    """CoreV1 API for pods, secrets, volume claims and namespaces."""
    return _api("core")

def _tolerate(error: ApiException, status: int, action: str):
    # `status` is the expected "already done" answer for `action`
    if error.status != status:
        logger.error(f"Failed to {action}: {error}")

def ensure_namespace(namespace: str = None):
    """Create the build namespace if it does not exist yet."""
    namespace = namespace or settings.k8s_namespace
    core_v1 = get_core_api()

    try:
        core_v1.read_namespace(name=namespace)
        return
    except ApiException as e:
        if e.status != 404:
            raise

    core_v1.create_namespace(
        body=client.V1Namespace(
            metadata=client.V1ObjectMeta(name=namespace, labels={"app": "conduit"})
        )
    )
    logger.info(f"Created namespace '{namespace}'")

def delete_job(job_name: str, namespace: str = None):
    """Delete a step job together with its pod."""
    try:
        get_batch_api().delete_namespaced_job(
            name=job_name,
            namespace=namespace or settings.k8s_namespace,
            body=client.V1DeleteOptions(propagation_policy="Foreground"),
        )
        logger.info(f"Deleted job {job_name}")
    except ApiException as e:
        _tolerate(e, 404, f"delete job {job_name}")

def create_volume_claim(claim: client.V1PersistentVolumeClaim, namespace: str = None):
    """Create a PVC; an existing claim of the same name is reused."""
    try:
        get_core_api().create_namespaced_persistent_volume_claim(
            namespace=namespace or settings.k8s_namespace,
            body=claim,
        )
        logger.info(f"Created volume claim {claim.metadata.name}")
    except ApiException as e:
        if e.status != 409:
            raise

def delete_volume_claim(claim_name: str, namespace: str = None):
    try:
        get_core_api().delete_namespaced_persistent_volume_claim(
            name=claim_name,
            namespace=namespace or settings.k8s_namespace,
        )
        logger.info(f"Deleted volume claim {claim_name}")
    except ApiException as e:
        _tolerate(e, 404, f"delete volume claim {claim_name}")
