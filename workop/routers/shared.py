from typing import cast

from fastapi import HTTPException, Request, status
from pydantic import ValidationError

from workop.models import ResourceIdentity
from workop.store import ResourceStore


def get_store(request: Request) -> ResourceStore:
    """FastAPI dependency to extract the Workload store."""
    return cast(ResourceStore, request.app.extra["store"])


def get_identity(namespace: str, name: str) -> ResourceIdentity:
    """FastAPI dependency to compile the identity from the path parameters."""
    try:
        return ResourceIdentity(namespace=namespace, name=name)
    except ValidationError as err:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(err),
        )
