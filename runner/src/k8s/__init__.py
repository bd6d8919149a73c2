from runner.src.k8s.client import (
    init_k8s_client,
    get_batch_api,
    get_core_api,
    ensure_namespace,
    create_job,
    get_job_pod,
    collect_logs,
    get_job_exit_code,
    delete_job,
)
from runner.src.k8s.job_builder import (
    build_job,
    build_job_name,
    get_job_status,
)

__all__ = [
    "init_k8s_client",
    "get_batch_api",
    "get_core_api",
    "ensure_namespace",
    "create_job",
    "get_job_pod",
    "collect_logs",
    "get_job_exit_code",
    "delete_job",
    "build_job",
    "build_job_name",
    "get_job_status",
]
