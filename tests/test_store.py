import asyncio

import pytest

from conftest import make_workload
from workop.defaults import WORKLOAD_KIND
from workop.errors import AlreadyExistsError, ConflictError, NotFoundError
from workop.models import ResourceIdentity, WorkloadSpec, WorkloadStatus
from workop.store import ResourceStore


class TestStoreBasic:
    async def test_create_get(self, store: ResourceStore, ident: ResourceIdentity):
        src = make_workload(replicas=3, image="app:v1")
        src.status.availableReplicas = 10

        obj = await store.create(src)
        assert obj.identity() == ident
        assert obj.metadata.resourceVersion == 0
        assert obj.metadata.generation == 1
        assert obj.metadata.uid != ""
        assert obj.metadata.creationTimestamp is not None
        assert obj.apiVersion == "workop.example.com/v1"
        assert obj.kind == "Workload"

        # The store must discard the status supplied by the writer.
        assert obj.status == WorkloadStatus()

        # The input must not have been modified.
        assert src.metadata.uid == "" and src.status.availableReplicas == 10

        assert await store.get(ident) == obj

    async def test_create_defaults_kind(self, store: ResourceStore):
        src = make_workload()
        src.apiVersion, src.kind = "", ""
        obj = await store.create(src)
        assert obj.apiVersion == WORKLOAD_KIND.apiVersion
        assert obj.kind == WORKLOAD_KIND.kind

    async def test_create_invalid(self, store: ResourceStore):
        await store.create(make_workload())

        # Identity already exists.
        with pytest.raises(AlreadyExistsError):
            await store.create(make_workload())

        # Store only accepts its own resource kind.
        src = make_workload(name="other")
        src.kind = "Deployment"
        with pytest.raises(ValueError):
            await store.create(src)

        src = make_workload(name="other")
        src.apiVersion = "apps/v1"
        with pytest.raises(ValueError):
            await store.create(src)

    async def test_get_not_found(self, store: ResourceStore, ident: ResourceIdentity):
        with pytest.raises(NotFoundError):
            await store.get(ident)

    async def test_get_returns_copies(self, store: ResourceStore, ident):
        """Modifying a returned Workload must not affect the store."""
        await store.create(make_workload(replicas=3))

        obj = await store.get(ident)
        obj.spec.replicas = 100
        obj.status.availableReplicas = 50
        obj.metadata.resourceVersion = 20

        fresh = await store.get(ident)
        assert fresh.spec.replicas == 3
        assert fresh.status.availableReplicas == 0
        assert fresh.metadata.resourceVersion == 0

    async def test_list(self, store: ResourceStore):
        for name in ("c", "a", "b"):
            await store.create(make_workload(name=name))
        await store.create(make_workload(name="a", namespace="aaa"))

        ret = await store.list()
        keys = [_.identity().key for _ in ret.items]
        assert keys == ["aaa/a", "default/a", "default/b", "default/c"]
        assert ret.resourceVersion == 4

        # Modifying the list or its items must not affect the store.
        ret.items[0].spec.replicas = 100
        ret.items.clear()
        ret = await store.list()
        assert len(ret.items) == 4
        assert ret.items[0].spec.replicas == 3


class TestStoreUpdates:
    async def test_update_spec(self, store: ResourceStore, ident: ResourceIdentity):
        await store.create(make_workload(replicas=3))

        new_spec = WorkloadSpec(replicas=5, image="app:v2")
        obj = await store.update_spec(ident, new_spec)
        assert obj.spec == new_spec
        assert obj.metadata.resourceVersion == 1
        assert obj.metadata.generation == 2

        # Modifying our spec instance must not affect the store.
        new_spec.replicas = 100
        assert (await store.get(ident)).spec.replicas == 5

        # Same spec again is a no-op.
        obj = await store.update_spec(ident, WorkloadSpec(replicas=5, image="app:v2"))
        assert obj.metadata.resourceVersion == 1
        assert obj.metadata.generation == 2

    async def test_update_spec_version_check(self, store: ResourceStore, ident):
        await store.create(make_workload(replicas=3))

        with pytest.raises(ConflictError):
            await store.update_spec(ident, WorkloadSpec(replicas=1, image="x"), 5)
        assert (await store.get(ident)).spec.replicas == 3

        obj = await store.update_spec(ident, WorkloadSpec(replicas=1, image="x"), 0)
        assert obj.metadata.resourceVersion == 1

        with pytest.raises(NotFoundError):
            await store.update_spec(ResourceIdentity(namespace="a", name="b"), obj.spec)

    async def test_write_status(self, store: ResourceStore, ident: ResourceIdentity):
        await store.create(make_workload(replicas=3))

        status = WorkloadStatus(availableReplicas=2, image="app:v1")
        assert await store.write_status(ident, 0, status) == 1

        obj = await store.get(ident)
        assert obj.status == status
        assert obj.metadata.resourceVersion == 1

        # Status writes must not change the generation.
        assert obj.metadata.generation == 1

        # Modifying our status instance must not affect the store.
        status.availableReplicas = 100
        assert (await store.get(ident)).status.availableReplicas == 2

    async def test_write_status_stale_version(self, store: ResourceStore, ident):
        """A stale version must raise a conflict and leave the store untouched."""
        await store.create(make_workload(replicas=3))
        await store.update_spec(ident, WorkloadSpec(replicas=4, image="app:v1"))
        before = await store.get(ident)

        for stale in (0, 2, -1):
            with pytest.raises(ConflictError) as err:
                await store.write_status(ident, stale, WorkloadStatus(availableReplicas=4))
            assert err.value.expected == stale
            assert err.value.actual == 1
            assert await store.get(ident) == before

    async def test_write_status_not_found(self, store: ResourceStore, ident):
        with pytest.raises(NotFoundError):
            await store.write_status(ident, 0, WorkloadStatus())

    async def test_delete(self, store: ResourceStore, ident: ResourceIdentity):
        await store.create(make_workload(replicas=3))

        tombstone = await store.delete(ident)
        assert tombstone.identity() == ident
        with pytest.raises(NotFoundError):
            await store.get(ident)
        with pytest.raises(NotFoundError):
            await store.delete(ident)

        # The identity can be recreated and receives a new UID.
        obj = await store.create(make_workload(replicas=3))
        assert obj.metadata.uid != tombstone.metadata.uid
        assert obj.metadata.resourceVersion == 0


class TestStoreWatch:
    async def test_events(self, store: ResourceStore, ident: ResourceIdentity):
        watch = store.watch()
        assert len(store.watches) == 1

        await store.create(make_workload(replicas=3))
        await store.update_spec(ident, WorkloadSpec(replicas=4, image="app:v1"))
        await store.write_status(ident, 1, WorkloadStatus(availableReplicas=4))
        await store.delete(ident)

        events = [watch.queue.get_nowait() for _ in range(4)]
        assert [_.type for _ in events] == ["ADDED", "MODIFIED", "MODIFIED", "DELETED"]
        assert [_.object.metadata.resourceVersion for _ in events] == [0, 1, 2, 2]

        # The tombstone carries the last known state.
        assert events[-1].object.status.availableReplicas == 4

        # Events must be independent copies.
        events[0].object.spec.replicas = 100
        assert events[1].object.spec.replicas == 4

    async def test_multiple_watches(self, store: ResourceStore):
        w1, w2 = store.watch(), store.watch()
        await store.create(make_workload())
        assert w1.queue.qsize() == w2.queue.qsize() == 1

        e1, e2 = w1.queue.get_nowait(), w2.queue.get_nowait()
        assert e1 == e2 and e1.object is not e2.object

    async def test_close_terminates_iterator(self, store: ResourceStore):
        async with store.watch() as watch:
            await store.create(make_workload())

            async def consume():
                return [_ async for _ in watch]

            task = asyncio.create_task(consume())
            await asyncio.sleep(0.01)
            assert not task.done()

        # Leaving the context must unsubscribe the watch and stop the iterator.
        events = await asyncio.wait_for(task, timeout=1)
        assert [_.type for _ in events] == ["ADDED"]
        assert store.watches == []

        # Closed watches receive no further events.
        await store.create(make_workload(name="other"))
        assert watch.queue.qsize() == 0
