"""Workload drivers turn reconciler decisions into real replicas.

Drivers are obtained per Workload through a `DriverFactory`. Their methods
must be idempotent: the reconciler may repeat them after a crash or a
conflict. Drivers must not report the requested replica count as available
unless it actually is.
"""

import logging
from typing import Callable, Dict, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from workop.models import ResourceIdentity

# Convenience.
logit = logging.getLogger("app")


@runtime_checkable
class WorkloadDriver(Protocol):
    async def ensure_replicas(self, image: str, count: int) -> None: ...  # codecov-skip

    async def current_available(self) -> int: ...  # codecov-skip

    async def remove(self) -> None: ...  # codecov-skip


DriverFactory = Callable[[ResourceIdentity], WorkloadDriver]


class SimulatedDeployment(BaseModel):
    model_config = ConfigDict(extra="forbid")

    image: str = ""
    replicas: int = 0
    available: int = 0


class SimulatedCluster:
    """In-memory stand-in for a container orchestrator.

    Every call to `current_available` moves the number of available replicas
    at most `rollout_step` replicas closer to the requested count. An image
    change makes all replicas unavailable before the rollout starts over.

    """

    def __init__(self, rollout_step: int = 1_000_000, logger: logging.Logger = logit):
        if rollout_step < 1:
            raise ValueError(f"rollout step must be positive (got {rollout_step})")
        self.logit = logger
        self.rollout_step = rollout_step
        self.deployments: Dict[ResourceIdentity, SimulatedDeployment] = {}

    def driver(self, ident: ResourceIdentity) -> "SimulatedDriver":
        return SimulatedDriver(self, ident)

    def ensure(self, ident: ResourceIdentity, image: str, count: int) -> None:
        dply = self.deployments.setdefault(ident, SimulatedDeployment())
        if dply.image != image:
            dply.available = 0
        dply.image, dply.replicas = image, count

        self.logit.info(
            "simulated rollout",
            {"component": "driver", "key": ident.key, "image": image, "count": count},
        )

    def observe(self, ident: ResourceIdentity) -> int:
        dply = self.deployments.get(ident)
        if dply is None:
            return 0

        # Step towards the desired replica count.
        delta = dply.replicas - dply.available
        step = max(-self.rollout_step, min(self.rollout_step, delta))
        dply.available += step
        return dply.available

    def remove(self, ident: ResourceIdentity) -> None:
        self.deployments.pop(ident, None)


class SimulatedDriver:
    def __init__(self, cluster: SimulatedCluster, ident: ResourceIdentity):
        self.cluster = cluster
        self.ident = ident

    async def ensure_replicas(self, image: str, count: int) -> None:
        self.cluster.ensure(self.ident, image, count)

    async def current_available(self) -> int:
        return self.cluster.observe(self.ident)

    async def remove(self) -> None:
        self.cluster.remove(self.ident)
