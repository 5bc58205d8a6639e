import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Tuple

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from square.dtypes import K8sConfig
from starlette.types import ASGIApp

import workop.k8s
import workop.routers.basic as basic
import workop.routers.workloads as workloads
from workop.controller import Controller
from workop.defaults import WORKLOAD_KIND
from workop.driver import DriverFactory, SimulatedCluster
from workop.models import ServerConfig
from workop.queue import WorkQueue
from workop.reconciler import Reconciler
from workop.store import ResourceStore

# Convenience.
logit = logging.getLogger("app")


# ----------------------------------------------------------------------
# Setup Server.
# ----------------------------------------------------------------------
def compile_server_config() -> Tuple[ServerConfig, bool]:
    get = os.getenv
    try:
        cfg = ServerConfig(
            kubeconfig=Path(get("KUBECONFIG", "")),
            kubecontext=get("KUBECONTEXT", ""),
            loglevel=get("WORKOP_LOGLEVEL", "info"),
            host=get("WORKOP_HOST", "0.0.0.0"),
            port=int(get("WORKOP_PORT", "5001")),
            workers=int(get("WORKOP_WORKERS", "4")),
            resync_seconds=float(get("WORKOP_RESYNC_SECONDS", "300")),
            poll_seconds=float(get("WORKOP_POLL_SECONDS", "5")),
            max_surge=int(get("WORKOP_MAX_SURGE", "1")),
            driver=get("WORKOP_DRIVER", "simulated"),  # type: ignore
        )
        return cfg, False
    except (ValidationError, ValueError) as e:
        logit.error("invalid environment variables", {"reason": str(e)})
        return (
            ServerConfig(
                kubeconfig=Path(""),
                kubecontext="",
                host="",
                port=-1,
                loglevel="",
            ),
            True,
        )


def make_drivers(cfg: ServerConfig) -> Tuple[DriverFactory, K8sConfig | None, bool]:
    """Return the factory for the workload drivers selected in `cfg`.

    The K8s driver also returns the cluster config whose HTTP client the
    caller must close eventually.

    """
    if cfg.driver == "simulated":
        return SimulatedCluster().driver, None, False

    k8scfg, err = workop.k8s.create_cluster_config(cfg.kubeconfig, cfg.kubecontext)
    if err:
        logit.error("cannot load cluster config", {"kubeconfig": str(cfg.kubeconfig)})
        return SimulatedCluster().driver, None, True

    def factory(ident):
        return workop.k8s.K8sDeploymentDriver(k8scfg, ident)

    return factory, k8scfg, False


def make_controller(
    cfg: ServerConfig, store: ResourceStore, drivers: DriverFactory
) -> Controller:
    reconciler = Reconciler(
        store, drivers, poll_seconds=cfg.poll_seconds, max_surge=cfg.max_surge
    )
    return Controller(
        store,
        reconciler,
        queue=WorkQueue(),
        workers=cfg.workers,
        resync_seconds=cfg.resync_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg: ServerConfig = app.extra["config"]
    store: ResourceStore = app.extra["store"]

    drivers, k8scfg, err = make_drivers(cfg)
    if err:
        raise RuntimeError("could not create workload driver")

    controller = make_controller(cfg, store, drivers)
    app.extra["controller"] = controller

    # Run the controller in the background for the lifetime of the server.
    stop = asyncio.Event()
    task = asyncio.create_task(controller.run(stop))
    logit.info("server startup complete")
    try:
        yield
    finally:
        stop.set()
        await task
        if k8scfg is not None:
            await k8scfg.client.aclose()
    logit.info("server shutdown complete")


async def validation_error_handler(
    _: Request, exc: RequestValidationError
) -> JSONResponse:
    logit.info("invalid request", {"errors": exc.errors()})
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=jsonable_encoder({"detail": exc.errors(), "body": exc.body}),
    )


def make_app(cfg: ServerConfig | None = None) -> ASGIApp:
    """Return a fully configured FastAPI instance."""
    if cfg is None:
        cfg, err = compile_server_config()
        if err:
            raise RuntimeError("could not meet preconditions to start server")

    app = FastAPI(
        title="Workload Operator",
        summary="",
        description="",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.extra["config"] = cfg
    app.extra["store"] = ResourceStore(WORKLOAD_KIND)

    # Install the web server routes.
    prefix = f"/apis/{WORKLOAD_KIND.group}/{WORKLOAD_KIND.version}"
    app.include_router(workloads.router, prefix=prefix, tags=["Workloads"])
    app.include_router(basic.router, prefix="", tags=["Basic"])

    # Install the exception handlers.
    app.add_exception_handler(RequestValidationError, handler=validation_error_handler)  # type: ignore

    return app
