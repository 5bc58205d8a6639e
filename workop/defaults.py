from typing import Dict

from workop.models import ResourceKind

# The one resource kind this operator manages. Created once at import time and
# never modified afterwards.
WORKLOAD_KIND = ResourceKind(
    group="workop.example.com",
    version="v1",
    kind="Workload",
    plural="workloads",
)

# Convenience: labels attached to every Deployment the K8s driver creates.
MANAGED_BY = "workop"


def deployment_labels(namespace: str, name: str) -> Dict[str, str]:
    """Return the labels that tie a Deployment to its Workload."""
    return {
        "app.kubernetes.io/name": name,
        "app.kubernetes.io/managed-by": MANAGED_BY,
        f"{WORKLOAD_KIND.group}/workload": f"{namespace}.{name}",
    }


def pod_security_context() -> dict:
    ctx = dict(
        allowPrivilegeEscalation=False,
        capabilities=dict(drop=["ALL"]),
        privileged=False,
        readOnlyRootFilesystem=True,
        runAsGroup=3000,
        runAsNonRoot=True,
        runAsUser=1000,
    )

    return ctx
