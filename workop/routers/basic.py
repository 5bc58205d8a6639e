import logging

from fastapi import APIRouter, Request, status

# Convenience.
logit = logging.getLogger("app")
router = APIRouter()


# ----------------------------------------------------------------------
# Basic Routes.
# ----------------------------------------------------------------------


@router.get("/healthz")
def get_healthz() -> int:
    """Health check endpoint. Always returns 200."""
    return status.HTTP_200_OK


@router.get("/readyz")
def get_readyz(request: Request) -> dict:
    """Report the work queue of the controller."""
    controller = request.app.extra.get("controller", None)
    if controller is None:
        return {"ready": False, "queued": 0, "processing": 0}

    queue = controller.queue
    return {
        "ready": not queue.shutting_down,
        "queued": len(queue),
        "processing": len(queue.processing),
    }
