"""Drive the observed state of a Workload towards its desired state.

Each pass runs through four stages:

Fetch: read the current Workload. If it no longer exists, release its
    replicas and terminate.
Diff: compare the spec with the status and the replicas the driver reports.
Act: hand the desired image and replica count to the driver if the Diff
    produced any actions.
Report: derive the new status from what the driver reports *after* the Act
    stage and write it with the resource version read during Fetch.

A pass always completes against the snapshot it fetched, even if the spec
changes in the meantime. The status write will then fail with a conflict and
the controller runs another pass against the new spec.
"""

import logging
from typing import Dict, List, Tuple

from workop.driver import DriverFactory
from workop.errors import ConflictError, NotFoundError, PermanentError
from workop.models import (
    Action,
    ActionKind,
    Outcome,
    ReconcileResult,
    ResourceIdentity,
    Workload,
    WorkloadSpec,
    WorkloadStatus,
)
from workop.status import StatusWriter, set_condition
from workop.store import ResourceStore

# Convenience.
logit = logging.getLogger("app")


def validate_spec(spec: WorkloadSpec) -> None:
    """Raise `PermanentError` if `spec` can never be reconciled."""
    if spec.replicas < 0:
        raise PermanentError(f"replicas must not be negative (got {spec.replicas})")

    if len(spec.image.strip()) == 0:
        raise PermanentError("image must be nonempty")


def plan_actions(spec: WorkloadSpec, status: WorkloadStatus, live: int) -> List[Action]:
    """Return the actions required to move `status` and `live` towards `spec`.

    The `live` value is the number of available replicas according to the
    workload driver and takes precedence over the (possibly stale) status.
    """
    actions: List[Action] = []
    if status.image != spec.image:
        actions.append(
            Action(kind=ActionKind.UPDATE_IMAGE, image=spec.image, replicas=spec.replicas)
        )

    if live < spec.replicas:
        kind = ActionKind.SCALE_UP
    elif live > spec.replicas:
        kind = ActionKind.SCALE_DOWN
    else:
        return actions

    actions.append(Action(kind=kind, image=spec.image, replicas=spec.replicas))
    return actions


class Reconciler:
    def __init__(
        self,
        store: ResourceStore,
        drivers: DriverFactory,
        writer: StatusWriter | None = None,
        poll_seconds: float = 5,
        max_surge: int = 1,
        logger: logging.Logger = logit,
    ):
        self.logit = logger
        self.store = store
        self.drivers = drivers
        self.writer = writer or StatusWriter(store, logger)
        self.poll_seconds = poll_seconds
        self.max_surge = max_surge

        # Workloads with an invalid spec, keyed by identity, with the UID and
        # generation of the incarnation that was invalid.
        self.parked: Dict[ResourceIdentity, Tuple[str, int]] = {}

    def get_logging_metadata(self, ident: ResourceIdentity) -> dict:
        return {"component": "reconciler", "key": ident.key}

    def is_parked(self, obj: Workload) -> bool:
        meta = obj.metadata
        return self.parked.get(obj.identity()) == (meta.uid, meta.generation)

    async def reconcile(self, ident: ResourceIdentity) -> ReconcileResult:
        """Run a single Fetch, Diff, Act and Report pass for `ident`.

        Errors from the driver propagate to the caller which must treat them
        as transient.
        """
        meta_log = self.get_logging_metadata(ident)

        # Fetch.
        try:
            obj = await self.store.get(ident)
        except NotFoundError:
            await self.cleanup(ident)
            return ReconcileResult(outcome=Outcome.REMOVED)

        meta_log["version"] = obj.metadata.resourceVersion
        meta_log["generation"] = obj.metadata.generation

        # Do nothing until the spec of a parked Workload changes.
        if self.is_parked(obj):
            self.logit.debug("parked", meta_log)
            return ReconcileResult(outcome=Outcome.PARKED)
        self.parked.pop(ident, None)

        try:
            validate_spec(obj.spec)
        except PermanentError as err:
            return await self.park(obj, str(err))

        # Diff.
        driver = self.drivers(ident)
        live = await driver.current_available()
        actions = plan_actions(obj.spec, obj.status, live)

        # Act.
        available = live
        if len(actions) > 0:
            meta_log["actions"] = [_.kind.value for _ in actions]
            self.logit.info("applying actions", meta_log)
            await driver.ensure_replicas(obj.spec.image, obj.spec.replicas)
            available = await driver.current_available()

        # Report.
        status = self.compute_status(obj, available)
        try:
            version = await self.writer.write_status(
                ident, obj.metadata.resourceVersion, status, obj.status
            )
        except ConflictError:
            return ReconcileResult(outcome=Outcome.CONFLICT, actions=tuple(actions))
        except NotFoundError:
            await self.cleanup(ident)
            return ReconcileResult(outcome=Outcome.REMOVED, actions=tuple(actions))

        if available == obj.spec.replicas:
            self.logit.debug("converged", meta_log)
            return ReconcileResult(
                outcome=Outcome.CONVERGED, actions=tuple(actions), version=version
            )

        return ReconcileResult(
            outcome=Outcome.PROGRESSING,
            actions=tuple(actions),
            version=version,
            requeue_after=self.poll_seconds,
        )

    def compute_status(self, obj: Workload, available: int) -> WorkloadStatus:
        """Return the new status for `obj` if `available` replicas are up."""
        spec = obj.spec
        status = obj.status.model_copy(deep=True)
        status.availableReplicas = available
        status.image = spec.image
        status.observedGeneration = obj.metadata.generation

        msg = f"{available}/{spec.replicas} replicas available"
        if available == spec.replicas:
            set_condition(status, "Ready", "True", "Available", msg)
        elif available < spec.replicas:
            set_condition(status, "Ready", "False", "Progressing", msg)
        elif available <= spec.replicas + self.max_surge:
            set_condition(status, "Ready", "False", "ScalingDown", msg)
        else:
            meta_log = self.get_logging_metadata(obj.identity())
            meta_log["available"] = available
            meta_log["replicas"] = spec.replicas
            self.logit.warning("surge limit exceeded", meta_log)
            set_condition(status, "Ready", "False", "SurgeExceeded", msg)
        set_condition(status, "Degraded", "False")
        return status

    async def park(self, obj: Workload, reason: str) -> ReconcileResult:
        """Report the invalid spec of `obj` and stop reconciling it."""
        ident = obj.identity()
        meta_log = self.get_logging_metadata(ident)
        meta_log["reason"] = reason
        self.logit.error("invalid spec", meta_log)

        status = obj.status.model_copy(deep=True)
        status.observedGeneration = obj.metadata.generation
        set_condition(status, "Ready", "False", "InvalidSpec", reason)
        set_condition(status, "Degraded", "True", "InvalidSpec", reason)

        try:
            version = await self.writer.write_status(
                ident, obj.metadata.resourceVersion, status, obj.status
            )
        except ConflictError:
            return ReconcileResult(outcome=Outcome.CONFLICT)
        except NotFoundError:
            await self.cleanup(ident)
            return ReconcileResult(outcome=Outcome.REMOVED)

        self.parked[ident] = (obj.metadata.uid, obj.metadata.generation)
        return ReconcileResult(outcome=Outcome.PARKED, version=version)

    async def cleanup(self, ident: ResourceIdentity) -> None:
        """Release all replicas of the deleted Workload `ident`."""
        self.parked.pop(ident, None)
        await self.drivers(ident).remove()
        self.logit.info("removed", self.get_logging_metadata(ident))
