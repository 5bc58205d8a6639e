"""In-memory API store for Workloads.

The store owns the only authoritative copy of every Workload. Callers only
ever receive independent deep copies and all writes copy their input, which
means nobody outside the store can alias its internal state.

Every mutation increments the resource version of the affected Workload and
notifies all active watches. Spec changes additionally increment the
generation so that consumers can distinguish them from status writes.
"""

import asyncio
import logging
import uuid
from datetime import UTC, datetime
from typing import Dict, List

from workop.errors import AlreadyExistsError, ConflictError, NotFoundError
from workop.models import (
    ResourceIdentity,
    ResourceKind,
    WatchEvent,
    Workload,
    WorkloadList,
    WorkloadSpec,
    WorkloadStatus,
)

# Convenience.
logit = logging.getLogger("app")


class StoreWatch:
    """Async iterator over the change events of a `ResourceStore`.

    Usage:

    async with store.watch() as watch:
        async for event in watch:
            print(event.type, event.object.identity())

    """

    def __init__(self, store: "ResourceStore"):
        self.store = store
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def __aiter__(self):  # codecov-skip
        return self

    async def __anext__(self) -> WatchEvent:
        event = await self.queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        self.close()

    def put(self, event: WatchEvent) -> None:
        if not self.closed:
            self.queue.put_nowait(event)

    def close(self) -> None:
        """Unsubscribe from the store and terminate the iterator."""
        if self.closed:
            return
        self.closed = True
        self.store.unsubscribe(self)
        self.queue.put_nowait(None)


class ResourceStore:
    def __init__(self, rkind: ResourceKind, logger: logging.Logger = logit):
        self.logit = logger
        self.rkind = rkind

        # Track all Workloads as an `{identity: Workload}` dict.
        self.objects: Dict[ResourceIdentity, Workload] = {}

        # Store wide counter that increases with every mutation.
        self.revision = 0

        self.watches: List[StoreWatch] = []

    def get_logging_metadata(self, ident: ResourceIdentity) -> dict:
        return {
            "component": "store",
            "kind": self.rkind.kind,
            "key": ident.key,
        }

    def _notify(self, etype: str, obj: Workload) -> None:
        self.revision += 1
        for watch in list(self.watches):
            watch.put(WatchEvent(type=etype, object=obj.duplicate()))  # type: ignore

    def _lookup(self, ident: ResourceIdentity) -> Workload:
        try:
            return self.objects[ident]
        except KeyError:
            raise NotFoundError(f"{self.rkind.kind} {ident.key} not found")

    def watch(self) -> StoreWatch:
        """Return a new watch that receives all subsequent change events."""
        watch = StoreWatch(self)
        self.watches.append(watch)
        return watch

    def unsubscribe(self, watch: StoreWatch) -> None:
        try:
            self.watches.remove(watch)
        except ValueError:
            pass

    async def get(self, ident: ResourceIdentity) -> Workload:
        """Return a copy of the Workload `ident` or raise `NotFoundError`."""
        return self._lookup(ident).duplicate()

    async def list(self) -> WorkloadList:
        """Return copies of all Workloads sorted by namespace and name."""
        items = sorted(self.objects.values(), key=lambda _: _.identity().key)
        return WorkloadList(
            resourceVersion=self.revision, items=[_.duplicate() for _ in items]
        )

    async def create(self, obj: Workload) -> Workload:
        """Store a copy of the new Workload `obj` and return it.

        The store assigns the UID, the initial resource version and
        generation. Any status in `obj` is discarded since the status is
        exclusively owned by the reconciler.

        """
        ident = obj.identity()
        meta_log = self.get_logging_metadata(ident)

        api_version = obj.apiVersion or self.rkind.apiVersion
        kind = obj.kind or self.rkind.kind
        if (api_version, kind) != (self.rkind.apiVersion, self.rkind.kind):
            raise ValueError(f"store only accepts {self.rkind.apiVersion}/{self.rkind.kind}")

        if ident in self.objects:
            raise AlreadyExistsError(f"{self.rkind.kind} {ident.key} already exists")

        new = obj.duplicate()
        new.apiVersion, new.kind = api_version, kind
        new.metadata.uid = str(uuid.uuid4())
        new.metadata.resourceVersion = 0
        new.metadata.generation = 1
        new.metadata.creationTimestamp = datetime.now(UTC)
        new.status = WorkloadStatus()

        self.objects[ident] = new
        self.logit.info("created", meta_log)
        self._notify("ADDED", new)
        return new.duplicate()

    async def update_spec(
        self,
        ident: ResourceIdentity,
        spec: WorkloadSpec,
        expected_version: int | None = None,
    ) -> Workload:
        """Replace the spec of `ident` and return the updated Workload.

        Raise `ConflictError` if `expected_version` is given and does not
        match the stored resource version.

        """
        obj = self._lookup(ident)
        meta_log = self.get_logging_metadata(ident)

        current = obj.metadata.resourceVersion
        if expected_version is not None and expected_version != current:
            raise ConflictError(ident.key, expected_version, current)

        # Nothing to do if the spec did not change.
        if obj.spec == spec:
            return obj.duplicate()

        obj.spec = spec.model_copy(deep=True)
        obj.metadata.resourceVersion += 1
        obj.metadata.generation += 1

        meta_log["generation"] = obj.metadata.generation
        self.logit.info("spec updated", meta_log)
        self._notify("MODIFIED", obj)
        return obj.duplicate()

    async def write_status(
        self, ident: ResourceIdentity, expected_version: int, status: WorkloadStatus
    ) -> int:
        """Replace the status of `ident` and return the new resource version.

        The write only succeeds if the stored resource version still equals
        `expected_version`. Otherwise raise `ConflictError` and leave the
        Workload untouched.

        """
        obj = self._lookup(ident)

        current = obj.metadata.resourceVersion
        if expected_version != current:
            raise ConflictError(ident.key, expected_version, current)

        obj.status = status.model_copy(deep=True)
        obj.metadata.resourceVersion += 1
        self._notify("MODIFIED", obj)
        return obj.metadata.resourceVersion

    async def delete(self, ident: ResourceIdentity) -> Workload:
        """Remove `ident` and return its final state."""
        obj = self._lookup(ident)
        del self.objects[ident]

        self.logit.info("deleted", self.get_logging_metadata(ident))
        self._notify("DELETED", obj)
        return obj.duplicate()
