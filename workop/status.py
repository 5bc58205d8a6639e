import logging
from datetime import UTC, datetime
from typing import Literal

from workop.errors import ConflictError
from workop.models import Condition, ResourceIdentity, WorkloadStatus
from workop.store import ResourceStore

# Convenience.
logit = logging.getLogger("app")


def set_condition(
    status: WorkloadStatus,
    ctype: str,
    value: Literal["True", "False", "Unknown"],
    reason: str = "",
    message: str = "",
) -> WorkloadStatus:
    """Add or update the condition `ctype` in `status` in-place.

    The transition time only changes if the condition flips its value.
    """
    now = datetime.now(UTC)
    for idx, cond in enumerate(status.conditions):
        if cond.type != ctype:
            continue

        ts = cond.lastTransitionTime if cond.status == value else now
        status.conditions[idx] = Condition(
            type=ctype,
            status=value,
            reason=reason,
            message=message,
            lastTransitionTime=ts,
        )
        return status

    status.conditions.append(
        Condition(
            type=ctype,
            status=value,
            reason=reason,
            message=message,
            lastTransitionTime=now,
        )
    )
    return status


class StatusWriter:
    """Persist Workload status with optimistic concurrency control."""

    def __init__(self, store: ResourceStore, logger: logging.Logger = logit):
        self.store = store
        self.logit = logger

    async def write_status(
        self,
        ident: ResourceIdentity,
        expected_version: int,
        new_status: WorkloadStatus,
        old_status: WorkloadStatus | None = None,
    ) -> int:
        """Write `new_status` if `ident` still has `expected_version`.

        Return the new resource version. Skip the write altogether and
        return `expected_version` if `new_status` equals `old_status`.

        Raise `ConflictError` if the Workload was modified in the meantime.
        The caller must fetch it again and repeat the entire reconciliation
        pass instead of merging the statuses.

        """
        meta_log = {
            "component": "status-writer",
            "key": ident.key,
            "version": expected_version,
        }

        if old_status is not None and old_status == new_status:
            self.logit.debug("status unchanged", meta_log)
            return expected_version

        try:
            version = await self.store.write_status(ident, expected_version, new_status)
        except ConflictError as err:
            meta_log["actual"] = err.actual
            self.logit.info("status write conflict", meta_log)
            raise

        meta_log["version"] = version
        meta_log["available"] = new_status.availableReplicas
        self.logit.debug("status written", meta_log)
        return version
