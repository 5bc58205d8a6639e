"""Coalescing work queue keyed by Workload identity.

An identity is either waiting in the queue, being processed by a worker, or
both (if it was enqueued again while a worker was busy with it). The queue
guarantees that a worker never receives an identity another worker is still
processing. Identities enqueued during processing are redelivered once the
worker calls `done`.

The queue lives on a single event loop and needs no locks. None of its
methods suspend, except `dequeue` while it waits for work.
"""

import asyncio
import logging
from typing import Dict, Set

import tenacity as tc

from workop.models import ResourceIdentity

# Convenience.
logit = logging.getLogger("app")


class WorkQueue:
    def __init__(
        self,
        base_delay: float = 0.5,
        max_delay: float = 300,
        jitter: float = 0.5,
        logger: logging.Logger = logit,
    ):
        self.logit = logger

        # Identities ready for a worker. A `None` entry signals shutdown.
        self.queue: asyncio.Queue = asyncio.Queue()

        # Identities that need a reconciliation pass, including those that
        # are currently processed and must be redelivered afterwards.
        self.pending: Set[ResourceIdentity] = set()

        # Identities a worker is currently processing.
        self.processing: Set[ResourceIdentity] = set()

        # Consecutive failures and scheduled redeliveries per identity.
        self.failures: Dict[ResourceIdentity, int] = {}
        self.timers: Dict[ResourceIdentity, asyncio.TimerHandle] = {}

        self.shutting_down = False

        # Exponential backoff with a bit of jitter, eg 0.5s, 1s, 2s, 4s...
        self.wait = tc.wait_exponential(
            multiplier=base_delay, min=base_delay, max=max_delay
        ) + tc.wait_random(0, jitter)

    def __len__(self) -> int:
        """Number of identities waiting for a worker."""
        return len(self.pending - self.processing)

    def is_pending(self, ident: ResourceIdentity) -> bool:
        return ident in self.pending

    def is_processing(self, ident: ResourceIdentity) -> bool:
        return ident in self.processing

    def enqueue(self, ident: ResourceIdentity) -> None:
        """Schedule a reconciliation pass for `ident`.

        This is a no-op if `ident` is already waiting. If a worker is
        currently processing `ident` it will be redelivered after `done`.
        """
        if self.shutting_down or ident in self.pending:
            return

        self.pending.add(ident)
        if ident not in self.processing:
            self.queue.put_nowait(ident)

    async def dequeue(self) -> ResourceIdentity | None:
        """Wait for the next identity or return `None` after a shutdown."""
        if self.shutting_down:
            return None

        ident = await self.queue.get()

        # Put the shutdown marker back for the other workers.
        if ident is None:
            self.queue.put_nowait(None)
            return None

        if self.shutting_down:
            return None

        self.pending.discard(ident)
        self.processing.add(ident)
        return ident

    def done(self, ident: ResourceIdentity) -> None:
        """Mark `ident` as processed and redeliver it if it became pending."""
        self.processing.discard(ident)
        if ident in self.pending and not self.shutting_down:
            self.queue.put_nowait(ident)

    def requeue_after(self, ident: ResourceIdentity, delay: float) -> None:
        """Enqueue `ident` once `delay` seconds have passed.

        Only the earliest of several scheduled redeliveries is kept.
        """
        if self.shutting_down:
            return
        if delay <= 0:
            self.enqueue(ident)
            return

        loop = asyncio.get_running_loop()
        when = loop.time() + delay

        timer = self.timers.get(ident)
        if timer is not None:
            if timer.when() <= when:
                return
            timer.cancel()
        self.timers[ident] = loop.call_at(when, self._fire, ident)

    def _fire(self, ident: ResourceIdentity) -> None:
        self.timers.pop(ident, None)
        self.enqueue(ident)

    def backoff(self, ident: ResourceIdentity) -> float:
        """Record another failure for `ident` and return the retry delay."""
        num = self.failures.get(ident, 0) + 1
        self.failures[ident] = num

        state = tc.RetryCallState(retry_object=None, fn=None, args=(), kwargs={})  # type: ignore
        state.attempt_number = num
        return self.wait(state)

    def num_failures(self, ident: ResourceIdentity) -> int:
        return self.failures.get(ident, 0)

    def forget(self, ident: ResourceIdentity) -> None:
        """Reset the backoff for `ident` and cancel its scheduled redelivery."""
        self.failures.pop(ident, None)
        timer = self.timers.pop(ident, None)
        if timer is not None:
            timer.cancel()

    def shut_down(self) -> None:
        """Wake up all workers and drop everything that was still queued."""
        if self.shutting_down:
            return
        self.shutting_down = True

        for timer in self.timers.values():
            timer.cancel()
        self.timers.clear()
        self.pending.clear()

        self.logit.info("work queue shut down", {"component": "queue"})
        self.queue.put_nowait(None)
