"""Kubernetes resource access.

This module provides the ResourceAccessor class, the single seam between
the reconcile logic and the Kubernetes API. Reads of the triggering object
go through the informer cache; reads before mutation and all writes go to
the API server directly. API errors are translated into the package's
error taxonomy here so callers never see ``ApiException``.
"""

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, Protocol

from kubernetes import client
from kubernetes.client import ApiException, V1Deployment, V1Secret
from urllib3.exceptions import HTTPError

from secret_mounter.exceptions import ConflictError, RejectedError, TransientError

logger = logging.getLogger(__name__)


class DeploymentCache(Protocol):
    """Read access to locally cached Deployments."""

    def get(self, namespace: str, name: str) -> V1Deployment | None: ...


def _is_retryable(status: int | None) -> bool:
    """Server errors, throttling and responses without a status are worth retrying."""
    return status is None or status == 429 or status >= 500


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    """Turn API and transport failures into the package's error taxonomy.

    409 becomes ConflictError, 5xx, 429 and transport failures become
    TransientError, and any other client error becomes RejectedError.
    """
    try:
        yield
    except ApiException as err:
        if err.status == 409:
            raise ConflictError(f"{action}: object was modified concurrently") from err
        if _is_retryable(err.status):
            raise TransientError(f"{action} failed with status {err.status}: {err.reason}") from err
        raise RejectedError(f"{action} was rejected with status {err.status}: {err.reason}") from err
    except HTTPError as err:
        raise TransientError(f"{action} failed: {err}") from err


def _read_or_none(action: str, read: Callable[[], Any]) -> Any:
    with _translate_errors(action):
        try:
            return read()
        except ApiException as err:
            if err.status == 404:
                return None
            raise


class ResourceAccessor:
    """Reads and writes the objects a reconcile pass touches.

    Attributes:
        cache: Local Deployment cache fed by the informer.
        apps_api: AppsV1Api used for live Deployment reads and updates.
        core_api: CoreV1Api used for Secret reads.

    """

    def __init__(
        self,
        cache: DeploymentCache,
        apps_api: client.AppsV1Api | None = None,
        core_api: client.CoreV1Api | None = None,
    ) -> None:
        self.cache = cache
        self.apps_api = apps_api or client.AppsV1Api()
        self.core_api = core_api or client.CoreV1Api()

    def get_cached(self, namespace: str, name: str) -> V1Deployment | None:
        """Return the cached Deployment, or None if the cache does not hold it."""
        return self.cache.get(namespace, name)

    def get_live(self, namespace: str, name: str) -> V1Deployment | None:
        """Read the Deployment from the API server.

        Returns:
            The Deployment, or None if it no longer exists.

        Raises:
            TransientError: If the read fails for a retryable reason.
            RejectedError: If the API server refuses the read.

        """
        return _read_or_none(
            f"Reading deployment {namespace}/{name}",
            lambda: self.apps_api.read_namespaced_deployment(name=name, namespace=namespace),
        )

    def update(self, namespace: str, deployment: V1Deployment) -> V1Deployment:
        """Replace the Deployment, relying on its resourceVersion for concurrency control.

        Raises:
            ConflictError: If the Deployment changed since it was read.
            TransientError: If the write fails for a retryable reason.
            RejectedError: If the API server refuses the object, for example with 422.

        """
        name = deployment.metadata.name
        with _translate_errors(f"Updating deployment {namespace}/{name}"):
            updated: V1Deployment = self.apps_api.replace_namespaced_deployment(
                name=name, namespace=namespace, body=deployment
            )
        logger.debug(
            "Deployment %s/%s written at resourceVersion %s",
            namespace,
            name,
            updated.metadata.resource_version if updated.metadata else None,
        )
        return updated

    def get_secret(self, namespace: str, name: str) -> V1Secret | None:
        """Read a Secret, or return None if it does not exist."""
        return _read_or_none(
            f"Reading secret {namespace}/{name}",
            lambda: self.core_api.read_namespaced_secret(name=name, namespace=namespace),
        )

    def list_secrets(self, namespace: str, selector: str) -> list[V1Secret]:
        """List the Secrets in a namespace matching a label selector."""
        with _translate_errors(f"Listing secrets in {namespace} ({selector})"):
            found: list[V1Secret] = self.core_api.list_namespaced_secret(
                namespace=namespace, label_selector=selector
            ).items
        return found or []
