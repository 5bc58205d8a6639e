import logging

from fastapi import APIRouter, Depends, HTTPException, status

from workop.defaults import WORKLOAD_KIND
from workop.errors import AlreadyExistsError, ConflictError, NotFoundError
from workop.models import (
    ResourceIdentity,
    ResourceMeta,
    Workload,
    WorkloadCreate,
    WorkloadList,
    WorkloadPatch,
)
from workop.routers.shared import get_identity, get_store
from workop.store import ResourceStore

# Convenience.
logit = logging.getLogger("app")
router = APIRouter()

PLURAL = WORKLOAD_KIND.plural


@router.get(f"/{PLURAL}")
async def get_workloads(store: ResourceStore = Depends(get_store)) -> WorkloadList:
    return await store.list()


@router.get(f"/namespaces/{{namespace}}/{PLURAL}")
async def get_namespaced_workloads(
    namespace: str, store: ResourceStore = Depends(get_store)
) -> WorkloadList:
    ret = await store.list()
    ret.items = [_ for _ in ret.items if _.metadata.namespace == namespace]
    return ret


@router.get(f"/namespaces/{{namespace}}/{PLURAL}/{{name}}")
async def get_workload(
    ident: ResourceIdentity = Depends(get_identity),
    store: ResourceStore = Depends(get_store),
) -> Workload:
    try:
        return await store.get(ident)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Item not found"
        )


@router.post(
    f"/namespaces/{{namespace}}/{PLURAL}/{{name}}",
    status_code=status.HTTP_201_CREATED,
)
async def post_workload(
    body: WorkloadCreate,
    ident: ResourceIdentity = Depends(get_identity),
    store: ResourceStore = Depends(get_store),
) -> Workload:
    obj = Workload(
        apiVersion=WORKLOAD_KIND.apiVersion,
        kind=WORKLOAD_KIND.kind,
        metadata=ResourceMeta(name=ident.name, namespace=ident.namespace),
        spec=body.spec,
    )
    try:
        return await store.create(obj)
    except AlreadyExistsError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Workload already exists"
        )


@router.patch(f"/namespaces/{{namespace}}/{PLURAL}/{{name}}")
async def patch_workload(
    body: WorkloadPatch,
    ident: ResourceIdentity = Depends(get_identity),
    store: ResourceStore = Depends(get_store),
) -> Workload:
    try:
        return await store.update_spec(ident, body.spec, body.resourceVersion)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Item not found"
        )
    except ConflictError as err:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(err))


@router.delete(f"/namespaces/{{namespace}}/{PLURAL}/{{name}}")
async def delete_workload(
    ident: ResourceIdentity = Depends(get_identity),
    store: ResourceStore = Depends(get_store),
) -> Workload:
    try:
        return await store.delete(ident)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Item not found"
        )
