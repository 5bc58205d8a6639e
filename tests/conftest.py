from pathlib import Path
from typing import Awaitable, Callable, List, Tuple

import pytest
from httpx import AsyncClient
from square.dtypes import K8sConfig

import workop.logstreams
from workop.defaults import WORKLOAD_KIND
from workop.driver import SimulatedCluster, SimulatedDriver
from workop.models import (
    ResourceIdentity,
    ResourceMeta,
    ServerConfig,
    Workload,
    WorkloadSpec,
)
from workop.store import ResourceStore


def pytest_configure(*args, **kwargs):
    """Pytest calls this hook on startup."""
    # Set log level to DEBUG for all unit tests.
    workop.logstreams.setup("DEBUG")


def get_server_config(**kwargs):
    values = dict(
        kubeconfig=Path("/tmp/kind-kubeconf.yaml"),
        kubecontext="kind-kind",
        host="0.0.0.0",
        port=5001,
        loglevel="info",
        workers=2,
        resync_seconds=300,
        poll_seconds=0.05,
        max_surge=1,
        driver="simulated",
    )
    values.update(kwargs)
    return ServerConfig(**values)  # type: ignore


def make_workload(
    name: str = "web", namespace: str = "default", replicas: int = 3, image="app:v1"
) -> Workload:
    return Workload(
        apiVersion=WORKLOAD_KIND.apiVersion,
        kind=WORKLOAD_KIND.kind,
        metadata=ResourceMeta(name=name, namespace=namespace),
        spec=WorkloadSpec(replicas=replicas, image=image),
    )


class RecordingCluster(SimulatedCluster):
    """Simulated cluster that records all `ensure_replicas` calls.

    Tests can install an `on_ensure` coroutine that runs before the
    simulated cluster applies the request, eg to modify the store mid-pass.

    """

    def __init__(self, rollout_step: int = 1_000_000):
        super().__init__(rollout_step)
        self.calls: List[Tuple[ResourceIdentity, str, int]] = []
        self.on_ensure: Callable[..., Awaitable[None]] | None = None

    def driver(self, ident: ResourceIdentity) -> "RecordingDriver":
        return RecordingDriver(self, ident)


class RecordingDriver(SimulatedDriver):
    cluster: RecordingCluster

    async def ensure_replicas(self, image: str, count: int) -> None:
        self.cluster.calls.append((self.ident, image, count))
        if self.cluster.on_ensure is not None:
            await self.cluster.on_ensure(self.ident, image, count)
        await super().ensure_replicas(image, count)


@pytest.fixture
def ident() -> ResourceIdentity:
    return ResourceIdentity(namespace="default", name="web")


@pytest.fixture
async def store() -> ResourceStore:
    return ResourceStore(WORKLOAD_KIND)


@pytest.fixture
def cluster() -> RecordingCluster:
    return RecordingCluster()


@pytest.fixture
async def k8scfg(respx_mock):
    """Return an async test client."""
    async with AsyncClient(base_url="https:") as client:
        yield K8sConfig(client=client)
