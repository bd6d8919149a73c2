"""
Kubernetes client initialization and utilities.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
import logging
from typing import Optional

from runner.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

_api_client = None
_batch_v1 = None
_core_v1 = None

def init_k8s_client():
    """Initialize Kubernetes client."""
    global _api_client, _batch_v1, _core_v1

    try:
        if settings.k8s_in_cluster:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes config")
        else:
            config.load_kube_config()
            logger.info("Loaded local Kubernetes config")

        _api_client = client.ApiClient()
        _batch_v1 = client.BatchV1Api(_api_client)
        _core_v1 = client.CoreV1Api(_api_client)

        _core_v1.list_namespace(limit=1)
        logger.info("Kubernetes client initialized successfully")

        return True
    except Exception as e:
        logger.error(f"Failed to initialize Kubernetes client: {e}")
        return False

def get_batch_api() -> client.BatchV1Api:
    """Get BatchV1 API client for Job operations."""
    if _batch_v1 is None:
        init_k8s_client()
    return _batch_v1

def get_core_api() -> client.CoreV1Api:
    """Get CoreV1 API client for Pod operations."""
    if _core_v1 is None:
        init_k8s_client()
    return _core_v1

def ensure_namespace():
    """Ensure the stage job namespace exists."""
    core_v1 = get_core_api()

    try:
        core_v1.read_namespace(name=settings.k8s_namespace)
    except ApiException as e:
        if e.status == 404:
            namespace = client.V1Namespace(
                metadata=client.V1ObjectMeta(name=settings.k8s_namespace)
            )
            core_v1.create_namespace(body=namespace)
            logger.info(f"Created namespace '{settings.k8s_namespace}'")
        else:
            raise

def create_job(job: client.V1Job):
    """Create a job, replacing a leftover job with the same name."""
    batch_v1 = get_batch_api()

    try:
        batch_v1.create_namespaced_job(namespace=settings.k8s_namespace, body=job)
    except ApiException as e:
        if e.status != 409:
            raise
        logger.warning(f"Job {job.metadata.name} already exists, replacing")
        delete_job(job.metadata.name)
        batch_v1.create_namespaced_job(namespace=settings.k8s_namespace, body=job)

def get_job_pod(job_name: str) -> Optional[client.V1Pod]:
    """Get the pod created for a job."""
    core_v1 = get_core_api()

    try:
        pods = core_v1.list_namespaced_pod(
            namespace=settings.k8s_namespace,
            label_selector=f"job-name={job_name}",
        )
        if pods.items:
            return pods.items[0]
        return None
    except ApiException as e:
        logger.error(f"Failed to get pod for job {job_name}: {e}")
        return None

def collect_logs(job_name: str) -> str:
    """Collect logs from a job's pod."""
    pod = get_job_pod(job_name)
    if pod is None:
        return "No pod found for job"

    try:
        return get_core_api().read_namespaced_pod_log(
            name=pod.metadata.name,
            namespace=settings.k8s_namespace,
            tail_lines=1000,
        )
    except ApiException as e:
        logger.error(f"Failed to collect logs for {pod.metadata.name}: {e}")
        return f"Error collecting logs: {e.reason}"

def get_job_exit_code(job_name: str) -> Optional[int]:
    """Read the step container's exit code from the terminated pod."""
    pod = get_job_pod(job_name)
    if pod is None or pod.status is None:
        return None

    for status in pod.status.container_statuses or []:
        terminated = status.state.terminated if status.state else None
        if terminated is not None:
            return terminated.exit_code
    return None

def delete_job(job_name: str, namespace: str = None):
    """Delete a job and its pods."""
    namespace = namespace or settings.k8s_namespace
    batch_v1 = get_batch_api()

    try:
        batch_v1.delete_namespaced_job(
            name=job_name,
            namespace=namespace,
            body=client.V1DeleteOptions(
                propagation_policy="Foreground"
            )
        )
        logger.info(f"Deleted job {job_name}")
    except ApiException as e:
        if e.status != 404:
            logger.error(f"Failed to delete job {job_name}: {e}")
