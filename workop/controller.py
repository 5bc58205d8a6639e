"""Run the reconciler for all Workloads in the store.

The controller consists of three kinds of background tasks:

* a watch consumer that enqueues every Workload whose spec changed,
* a resync task that periodically enqueues all Workloads to recover from
  missed events, and
* a pool of workers that process the queue.

Shutdown is cooperative. Workers finish the pass they are currently running
and exit afterwards. Workloads that were still queued are dropped because the
initial relist on the next start will find them again.
"""

import asyncio
import logging
from typing import Dict, List

from workop.errors import TransientError
from workop.models import (
    Outcome,
    ReconcileResult,
    ResourceIdentity,
    WatchEvent,
)
from workop.queue import WorkQueue
from workop.reconciler import Reconciler
from workop.store import ResourceStore, StoreWatch

# Convenience.
logit = logging.getLogger("app")


def should_enqueue(event: WatchEvent) -> bool:
    """Return `False` if `event` only reports a status the reconciler wrote."""
    if event.type != "MODIFIED":
        return True

    obj = event.object
    return obj.metadata.generation != obj.status.observedGeneration


class Controller:
    def __init__(
        self,
        store: ResourceStore,
        reconciler: Reconciler,
        queue: WorkQueue | None = None,
        workers: int = 4,
        resync_seconds: float = 300,
        logger: logging.Logger = logit,
    ):
        if workers < 1:
            raise ValueError(f"need at least one worker (got {workers})")
        self.logit = logger
        self.store = store
        self.reconciler = reconciler
        self.queue = queue or WorkQueue(logger=logger)
        self.num_workers = workers
        self.resync_seconds = resync_seconds

        # Number of reconciliation passes per existing Workload.
        self.passes: Dict[ResourceIdentity, int] = {}

    def get_logging_metadata(self, ident: ResourceIdentity | None = None) -> dict:
        meta_log: dict = {"component": "controller"}
        if ident is not None:
            meta_log["key"] = ident.key
        return meta_log

    async def relist(self) -> int:
        """Enqueue all Workloads in the store and return how many there were."""
        objs = await self.store.list()
        for obj in objs.items:
            self.queue.enqueue(obj.identity())

        meta_log = self.get_logging_metadata()
        meta_log["count"] = len(objs.items)
        self.logit.debug("relist", meta_log)
        return len(objs.items)

    async def watch_runner(self, watch: StoreWatch) -> None:
        """Forward all relevant store events to the work queue."""
        async for event in watch:
            if should_enqueue(event):
                self.queue.enqueue(event.object.identity())

    async def resync_runner(self) -> None:
        while True:
            await asyncio.sleep(self.resync_seconds)
            await self.relist()

    async def process(self, ident: ResourceIdentity) -> ReconcileResult | None:
        """Reconcile `ident` once and schedule the follow up work.

        Never raises. Any error is logged and `ident` retried with backoff.
        """
        meta_log = self.get_logging_metadata(ident)
        self.passes[ident] = self.passes.get(ident, 0) + 1

        try:
            result = await self.reconciler.reconcile(ident)
        except TransientError as err:
            meta_log["delay"] = self.queue.backoff(ident)
            meta_log["reason"] = str(err)
            self.logit.warning("transient error", meta_log)
            self.queue.requeue_after(ident, meta_log["delay"])
            return None
        except Exception:
            meta_log["delay"] = self.queue.backoff(ident)
            self.logit.exception("reconciliation failed", meta_log)
            self.queue.requeue_after(ident, meta_log["delay"])
            return None

        meta_log["outcome"] = result.outcome.value
        self.logit.debug("pass complete", meta_log)

        if result.outcome == Outcome.CONFLICT:
            # Another pass is already due if the Workload was modified while
            # we were processing it.
            if not self.queue.is_pending(ident):
                self.queue.requeue_after(ident, self.queue.backoff(ident))
        elif result.outcome == Outcome.PROGRESSING:
            self.queue.forget(ident)
            self.queue.requeue_after(ident, result.requeue_after)
        elif result.outcome == Outcome.REMOVED:
            self.queue.forget(ident)
            self.passes.pop(ident, None)
        else:
            self.queue.forget(ident)
        return result

    async def process_next(self) -> bool:
        """Process the next identity and return `False` after a shutdown."""
        ident = await self.queue.dequeue()
        if ident is None:
            return False

        try:
            await self.process(ident)
        finally:
            self.queue.done(ident)
        return True

    async def worker(self) -> None:
        while await self.process_next():
            pass

    async def run(self, stop: asyncio.Event) -> None:
        """Reconcile all Workloads until `stop` is set."""
        meta_log = self.get_logging_metadata()
        meta_log["workers"] = self.num_workers

        # Subscribe before the initial relist to not miss any changes.
        watch = self.store.watch()
        await self.relist()

        background: List[asyncio.Task] = [
            asyncio.create_task(self.watch_runner(watch)),
            asyncio.create_task(self.resync_runner()),
        ]
        workers = [asyncio.create_task(self.worker()) for _ in range(self.num_workers)]
        self.logit.info("controller started", meta_log)

        try:
            await stop.wait()
        finally:
            # Let the workers finish their current pass.
            self.queue.shut_down()
            await asyncio.gather(*workers)

            watch.close()
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            self.logit.info("controller stopped", meta_log)
