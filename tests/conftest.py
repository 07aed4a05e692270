"""Shared test fixtures for secret-mounter tests."""

import base64
import copy
import logging
from types import SimpleNamespace

import pytest
from kubernetes.client import (
    ApiException,
    V1Container,
    V1Deployment,
    V1DeploymentSpec,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Secret,
)

from secret_mounter.accessor import ResourceAccessor
from secret_mounter.config import ControllerConfig
from secret_mounter.console import LOGGER_NAME
from secret_mounter.controller import ControllerContext
from secret_mounter.reconciler import Reconciler
from secret_mounter.workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue


def make_deployment(
    name="web",
    namespace="ns1",
    labels=None,
    annotations=None,
    containers=("app",),
    volumes=None,
    resource_version="1",
):
    """Build a minimal V1Deployment."""
    return V1Deployment(
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=labels,
            annotations=annotations,
            resource_version=resource_version,
        ),
        spec=V1DeploymentSpec(
            selector=V1LabelSelector(match_labels={"app": name}),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels={"app": name}),
                spec=V1PodSpec(
                    containers=[V1Container(name=container, image="nginx") for container in containers],
                    volumes=volumes,
                ),
            ),
        ),
    )


def make_secret(name="db-creds", namespace="ns1", data=None, string_data=None, labels=None):
    """Build a V1Secret with base64 encoded data values."""
    encoded = {key: base64.b64encode(value.encode()).decode() for key, value in (data or {}).items()}
    return V1Secret(
        metadata=V1ObjectMeta(name=name, namespace=namespace, labels=labels),
        type="Opaque",
        data=encoded or None,
        string_data=string_data,
    )


class FakeAppsApi:
    """In-memory AppsV1Api with resourceVersion checks on replace."""

    def __init__(self, deployments=(), conflicts=0, failures=0, rejections=0):
        self.deployments = {(d.metadata.namespace, d.metadata.name): d for d in deployments}
        self.conflicts = conflicts
        self.failures = failures
        self.rejections = rejections
        self.updates = []

    def read_namespaced_deployment(self, name, namespace):
        try:
            return copy.deepcopy(self.deployments[(namespace, name)])
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    def replace_namespaced_deployment(self, name, namespace, body):
        if self.failures > 0:
            self.failures -= 1
            raise ApiException(status=500, reason="Internal Server Error")
        if self.rejections > 0:
            self.rejections -= 1
            raise ApiException(status=422, reason="Unprocessable Entity")
        if self.conflicts > 0:
            self.conflicts -= 1
            # Someone else wrote the object in between.
            self.deployments[(namespace, name)].metadata.resource_version += "x"
            raise ApiException(status=409, reason="Conflict")
        current = self.deployments.get((namespace, name))
        if current is None:
            raise ApiException(status=404, reason="Not Found")
        if current.metadata.resource_version != body.metadata.resource_version:
            raise ApiException(status=409, reason="Conflict")
        stored = copy.deepcopy(body)
        stored.metadata.resource_version = str(len(self.updates) + 2)
        self.deployments[(namespace, name)] = stored
        self.updates.append((namespace, name))
        return copy.deepcopy(stored)


class FakeCoreApi:
    """In-memory CoreV1Api serving Secrets."""

    def __init__(self, secrets=(), fail_reads=False):
        self.secrets = {(s.metadata.namespace, s.metadata.name): s for s in secrets}
        self.fail_reads = fail_reads
        self.selectors = []

    def read_namespaced_secret(self, name, namespace):
        if self.fail_reads:
            raise ApiException(status=503, reason="Service Unavailable")
        try:
            return copy.deepcopy(self.secrets[(namespace, name)])
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    def list_namespaced_secret(self, namespace, label_selector):
        if self.fail_reads:
            raise ApiException(status=503, reason="Service Unavailable")
        self.selectors.append(label_selector)
        label, _, value = label_selector.partition("=")
        items = [
            copy.deepcopy(secret)
            for (ns, _name), secret in self.secrets.items()
            if ns == namespace and (secret.metadata.labels or {}).get(label) == value
        ]
        return SimpleNamespace(items=items)


class FakeCache:
    """Deployment cache mirroring the FakeAppsApi store."""

    def __init__(self, apps_api):
        self.apps_api = apps_api
        self.deployments = {}

    def get(self, namespace, name):
        if (namespace, name) in self.deployments:
            return self.deployments[(namespace, name)]
        return copy.deepcopy(self.apps_api.deployments.get((namespace, name)))


@pytest.fixture
def apps_api():
    return FakeAppsApi()


@pytest.fixture
def core_api():
    return FakeCoreApi()


@pytest.fixture
def cache(apps_api):
    return FakeCache(apps_api)


@pytest.fixture
def accessor(cache, apps_api, core_api):
    return ResourceAccessor(cache, apps_api=apps_api, core_api=core_api)


@pytest.fixture
def controller_config():
    return ControllerConfig(max_retries=3)


@pytest.fixture
def reconciler(accessor, controller_config):
    return Reconciler(accessor, controller_config)


@pytest.fixture
def controller_context(accessor, reconciler, controller_config):
    """ControllerContext backed by the in-memory fakes.

    Retries are counted but not delayed, so a requeued key is available at once.
    """
    queue = RateLimitingQueue(name="test", rate_limiter=ItemExponentialFailureRateLimiter(base_delay=0, max_delay=0))
    yield ControllerContext(
        config=controller_config,
        informer=None,
        accessor=accessor,
        queue=queue,
        reconciler=reconciler,
    )
    queue.shut_down()


@pytest.fixture
def deployment_factory():
    return make_deployment


@pytest.fixture
def secret_factory():
    return make_secret


@pytest.fixture(autouse=True)
def package_logger():
    """Restore the package logger after tests that configure it through the CLI."""
    logger = logging.getLogger(LOGGER_NAME)
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield logger
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate
