"""Deployment event source.

This module provides the DeploymentInformer, which keeps a local cache of
Deployments in sync with the API server using list-then-watch, and
publishes a notification for every add, update and periodic resync on a
bounded channel. The controller drains that channel into its work queue.
"""

import logging
import queue
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from kubernetes import client, watch
from kubernetes.client import ApiException, V1Deployment
from urllib3.exceptions import HTTPError

from secret_mounter.models import WorkKey

logger = logging.getLogger(__name__)

_MAX_BACKOFF_SECONDS = 30.0
_WATCH_TIMEOUT_SECONDS = 300


class EventType(str, Enum):
    """Kind of change observed for a cached object."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True, slots=True)
class Event:
    """A change notification carrying the object's queue key."""

    type: EventType
    key: WorkKey


def key_for(obj: Any) -> WorkKey:
    """Build the queue key of a namespaced object."""
    return WorkKey(namespace=obj.metadata.namespace or "", name=obj.metadata.name)


class DeploymentInformer:
    """Watches Deployments and caches the latest observed state.

    Attributes:
        apps_api: AppsV1Api used for list and watch calls.
        namespace: Namespace to watch, or None for all namespaces.
        resync_period: Seconds between re-deliveries of every cached object.
            Zero disables resync.
        events: Bounded channel of Event notifications.

    """

    def __init__(
        self,
        apps_api: client.AppsV1Api | None = None,
        *,
        namespace: str | None = None,
        resync_period: float = 30.0,
        event_buffer: int = 1024,
    ) -> None:
        self.apps_api = apps_api or client.AppsV1Api()
        self.namespace = namespace
        self.resync_period = resync_period
        self.events: queue.Queue[Event] = queue.Queue(maxsize=event_buffer)

        self._store: dict[WorkKey, V1Deployment] = {}
        self._store_lock = threading.Lock()
        self._synced = threading.Event()
        self._stop = threading.Event()
        self._watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._resource_version: str | None = None
        self._last_resync = time.monotonic()

    def __repr__(self) -> str:
        return (
            f"DeploymentInformer(namespace={self.namespace!r}, "
            f"resync_period={self.resync_period!r}, synced={self.has_synced()})"
        )

    # Cache access

    def get(self, namespace: str, name: str) -> V1Deployment | None:
        """Return the cached Deployment, or None if it is not cached."""
        with self._store_lock:
            return self._store.get(WorkKey(namespace, name))

    def list_keys(self) -> list[WorkKey]:
        with self._store_lock:
            return sorted(self._store)

    def has_synced(self) -> bool:
        """Whether the initial list has been loaded into the cache."""
        return self._synced.is_set()

    def wait_for_sync(self, timeout: float | None = None) -> bool:
        """Block until the cache has synced or ``timeout`` seconds passed."""
        return self._synced.wait(timeout=timeout)

    # Lifecycle

    def start(self) -> None:
        """Run the list-then-watch loop on a daemon thread."""
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="deployment-informer", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop watching and wait for the informer thread to exit."""
        self._stop.set()
        with self._watcher_lock:
            watcher = self._watcher
        if watcher is not None:
            watcher.stop()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    # Event delivery

    def _emit(self, event_type: EventType, key: WorkKey) -> None:
        # Blocks while the channel is full so no notification is lost.
        while not self._stop.is_set():
            try:
                self.events.put(Event(type=event_type, key=key), timeout=0.5)
                return
            except queue.Full:
                continue

    def _store_object(self, event_type: str, obj: V1Deployment) -> None:
        key = key_for(obj)
        with self._store_lock:
            if event_type == EventType.DELETED:
                self._store.pop(key, None)
            else:
                self._store[key] = obj
        self._emit(EventType(event_type), key)

    def _replace(self, items: list[V1Deployment]) -> None:
        """Replace the cache with a fresh listing and emit the differences."""
        fresh = {key_for(obj): obj for obj in items}
        with self._store_lock:
            previous = set(self._store)
            self._store = fresh
        for key in sorted(fresh):
            self._emit(EventType.MODIFIED if key in previous else EventType.ADDED, key)
        for key in sorted(previous - set(fresh)):
            self._emit(EventType.DELETED, key)

    def resync(self) -> None:
        """Re-deliver every cached object as MODIFIED."""
        keys = self.list_keys()
        logger.debug("Resyncing %d cached deployment(s)", len(keys))
        for key in keys:
            self._emit(EventType.MODIFIED, key)
        self._last_resync = time.monotonic()

    def _resync_remaining(self) -> float | None:
        if self.resync_period <= 0:
            return None
        return max(0.0, self.resync_period - (time.monotonic() - self._last_resync))

    # API calls

    def _list_kwargs(self) -> dict[str, Any]:
        return {"namespace": self.namespace} if self.namespace else {}

    def _list_func(self) -> Any:
        if self.namespace:
            return self.apps_api.list_namespaced_deployment
        return self.apps_api.list_deployment_for_all_namespaces

    def list_and_replace(self) -> None:
        """List Deployments, refresh the cache and remember the resourceVersion."""
        listing = self._list_func()(**self._list_kwargs())
        self._resource_version = listing.metadata.resource_version if listing.metadata else None
        self._replace(list(listing.items or []))
        self._synced.set()
        logger.info(
            "Listed %d deployment(s) at resourceVersion %s", len(listing.items or []), self._resource_version
        )

    def _watch_once(self) -> None:
        timeout = _WATCH_TIMEOUT_SECONDS
        remaining = self._resync_remaining()
        if remaining is not None:
            timeout = max(1, min(timeout, int(remaining) + 1))

        watcher = watch.Watch()
        with self._watcher_lock:
            self._watcher = watcher
        try:
            for event in watcher.stream(
                self._list_func(),
                resource_version=self._resource_version,
                timeout_seconds=timeout,
                **self._list_kwargs(),
            ):
                if self._stop.is_set():
                    break
                event_type = event.get("type")
                obj = event.get("object")
                if event_type == "ERROR":
                    raw = event.get("raw_object") or {}
                    raise ApiException(status=raw.get("code"), reason=raw.get("message"))
                if event_type not in EventType.__members__ or obj is None:
                    continue
                self._resource_version = obj.metadata.resource_version
                self._store_object(event_type, obj)
        finally:
            with self._watcher_lock:
                self._watcher = None

    def run(self) -> None:
        """List then watch until stopped, re-listing when the watch expires."""
        backoff = 1.0
        need_list = True
        while not self._stop.is_set():
            try:
                if need_list:
                    self.list_and_replace()
                    need_list = False
                self._watch_once()
                backoff = 1.0
            except ApiException as err:
                if err.status == 410:
                    logger.info("Watch resourceVersion expired, re-listing deployments")
                    need_list = True
                    continue
                if err.status in {401, 403}:
                    logger.error(
                        "Kubernetes API access denied while watching deployments (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        err.status,
                    )
                    backoff = _MAX_BACKOFF_SECONDS
                else:
                    logger.warning("Deployment watch failed (status=%s): %s", err.status, err.reason)
                need_list = need_list or self._resource_version is None
                self._backoff(backoff)
                backoff = min(backoff * 2, _MAX_BACKOFF_SECONDS)
                continue
            except HTTPError as err:
                logger.warning("Deployment watch connection failed: %s", err)
                self._backoff(backoff)
                backoff = min(backoff * 2, _MAX_BACKOFF_SECONDS)
                continue

            remaining = self._resync_remaining()
            if remaining is not None and remaining <= 0 and not self._stop.is_set():
                self.resync()

    def _backoff(self, seconds: float) -> None:
        jittered = seconds * (0.5 + random.random())  # noqa: S311
        self._stop.wait(timeout=jittered)
