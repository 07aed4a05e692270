"""Reconcile driver.

This module wires the informer, the work queue and the reconciler together
and runs the worker loop. All state a worker needs travels in a
ControllerContext; there are no module-level singletons.
"""

import logging
import queue
import threading
import time
from collections.abc import Hashable
from dataclasses import dataclass

from icecream import ic
from kubernetes import client

from secret_mounter import console
from secret_mounter.accessor import ResourceAccessor
from secret_mounter.config import ControllerConfig
from secret_mounter.exceptions import InvalidKeyError, RejectedError, TransientError
from secret_mounter.informer import DeploymentInformer, Event, EventType
from secret_mounter.models import ReconcileOutcome, WorkKey
from secret_mounter.reconciler import Reconciler
from secret_mounter.workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)

QUEUE_NAME = "secret-mounter"


@dataclass
class ControllerContext:
    """Everything a worker needs to process keys.

    Attributes:
        config: Effective controller settings.
        informer: Deployment event source and cache.
        accessor: Resource reads and writes.
        queue: Deduplicating, rate-limited queue of ``namespace/name`` keys.
        reconciler: The per-Deployment reconcile function.

    """

    config: ControllerConfig
    informer: DeploymentInformer
    accessor: ResourceAccessor
    queue: RateLimitingQueue
    reconciler: Reconciler

    @classmethod
    def create(
        cls,
        config: ControllerConfig,
        apps_api: client.AppsV1Api | None = None,
        core_api: client.CoreV1Api | None = None,
    ) -> "ControllerContext":
        """Build a context backed by the Kubernetes API clients."""
        apps_api = apps_api or client.AppsV1Api()
        informer = DeploymentInformer(
            apps_api,
            namespace=config.namespace,
            resync_period=config.resync_period,
            event_buffer=config.event_buffer,
        )
        accessor = ResourceAccessor(informer, apps_api=apps_api, core_api=core_api)
        return cls(
            config=config,
            informer=informer,
            accessor=accessor,
            queue=RateLimitingQueue(name=QUEUE_NAME),
            reconciler=Reconciler(accessor, config),
        )


def handle_event(ctx: ControllerContext, event: Event) -> None:
    """Queue the key of an added or updated Deployment.

    Deletions are not queued; a pass for a missing Deployment is a skip anyway.
    """
    if event.type is EventType.DELETED:
        return
    ctx.queue.add(str(event.key))


def pump_events(ctx: ControllerContext, stop_event: threading.Event) -> None:
    """Move notifications from the informer channel into the work queue."""
    while not stop_event.is_set():
        try:
            event = ctx.informer.events.get(timeout=0.5)
        except queue.Empty:
            continue
        handle_event(ctx, event)


def _requeue(ctx: ControllerContext, item: Hashable, reason: str) -> None:
    requeues = ctx.queue.num_requeues(item)
    if requeues >= ctx.config.max_retries:
        logger.error("Dropping %s after %d retries: %s", item, requeues, reason)
        ctx.queue.forget(item)
        return
    logger.warning("Retrying %s (attempt %d): %s", item, requeues + 1, reason)
    ctx.queue.add_rate_limited(item)


def _process_key(ctx: ControllerContext, item: Hashable) -> None:
    try:
        key = WorkKey.parse(str(item))
        if not key.namespace:
            raise InvalidKeyError(f"Key {str(item)!r} has no namespace")
    except InvalidKeyError as err:
        logger.error("Dropping malformed key: %s", err)
        ctx.queue.forget(item)
        return

    try:
        result = ctx.reconciler.reconcile(key.namespace, key.name)
    except TransientError as err:
        _requeue(ctx, item, str(err))
        return
    except RejectedError as err:
        logger.error("Dropping %s: %s", key, err)
        ctx.queue.forget(item)
        return
    except Exception as err:
        logger.exception("Unexpected error while reconciling %s", key)
        _requeue(ctx, item, repr(err))
        return

    ctx.queue.forget(item)
    ic(key, result)
    match result.outcome:
        case ReconcileOutcome.APPLIED:
            logger.info("Reconciled %s: %s", key, result.reason)
        case ReconcileOutcome.UNCHANGED:
            logger.debug("Reconciled %s: %s", key, result.reason)
        case ReconcileOutcome.SKIPPED:
            logger.debug("Skipped %s: %s", key, result.reason)


def process_one(ctx: ControllerContext) -> bool:
    """Process a single key from the queue.

    Args:
        ctx: The controller context.

    Returns:
        False once the queue is shutting down, True otherwise.

    """
    item, shutdown = ctx.queue.get()
    if shutdown:
        return False
    try:
        _process_key(ctx, item)
    finally:
        ctx.queue.done(item)
    return True


def run_worker(ctx: ControllerContext) -> None:
    """Drain the queue until it shuts down."""
    while process_one(ctx):
        pass


class Controller:
    """Runs the informer, the event pump and the worker threads.

    Attributes:
        ctx: The controller context shared by every thread.

    """

    def __init__(self, ctx: ControllerContext) -> None:
        self.ctx = ctx
        self._workers: list[threading.Thread] = []

    def __repr__(self) -> str:
        return f"Controller(workers={self.ctx.config.workers}, queue={self.ctx.queue!r})"

    def _start_worker(self, index: int) -> threading.Thread:
        thread = threading.Thread(target=run_worker, args=(self.ctx,), name=f"worker-{index}", daemon=True)
        thread.start()
        return thread

    def _wait_for_sync(self, stop_event: threading.Event) -> bool:
        deadline = time.monotonic() + self.ctx.config.sync_timeout
        with console.spinner("Waiting for deployment cache to sync..."):
            while not stop_event.is_set() and time.monotonic() < deadline:
                if self.ctx.informer.wait_for_sync(timeout=0.5):
                    return True
        return self.ctx.informer.has_synced()

    def run(self, stop_event: threading.Event) -> None:
        """Run until ``stop_event`` is set.

        Waits for the cache to sync before starting workers. On shutdown the
        queue is closed, so each worker exits after its in-flight key.
        """
        ctx = self.ctx
        ctx.informer.start()

        if self._wait_for_sync(stop_event):
            logger.info("Deployment cache synced")
        elif not stop_event.is_set():
            logger.warning("Deployment cache did not sync within %gs, starting workers anyway", ctx.config.sync_timeout)

        pump = threading.Thread(target=pump_events, args=(ctx, stop_event), name="event-pump", daemon=True)
        pump.start()
        self._workers = [self._start_worker(index) for index in range(ctx.config.workers)]
        logger.info("Started %d worker(s)", len(self._workers))

        while not stop_event.wait(timeout=ctx.config.worker_restart_period):
            for index, thread in enumerate(self._workers):
                if not thread.is_alive():
                    logger.error("Worker %s exited unexpectedly, restarting", thread.name)
                    self._workers[index] = self._start_worker(index)

        logger.info("Shutting down")
        ctx.informer.stop()
        ctx.queue.shut_down()
        pump.join()
        for thread in self._workers:
            thread.join()
        logger.info("All workers stopped")
