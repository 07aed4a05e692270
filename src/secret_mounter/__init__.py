"""secret-mounter: mount labelled Kubernetes secrets into deployments.

This package provides a reconciliation controller that watches
Deployments, reads a secret binding from their labels or annotations and
adds the bound Secret to the pod template as a read-only volume mounted in
every container.

Example usage:
    from secret_mounter import ControllerConfig, ControllerContext, Controller

    ctx = ControllerContext.create(ControllerConfig(namespace="apps"))
    Controller(ctx).run(stop_event)
"""

__version__ = "0.1.0"

from secret_mounter.binding import resolve_binding
from secret_mounter.cli import cli
from secret_mounter.cluster import Cluster
from secret_mounter.config import BindingKeys, ControllerConfig, load_config
from secret_mounter.controller import Controller, ControllerContext, process_one
from secret_mounter.exceptions import (
    ClusterConnectionError,
    ConfigParsingError,
    ConflictError,
    InvalidKeyError,
    RejectedError,
    SecretMounterError,
    TransientError,
)
from secret_mounter.patch import apply_patch, build_patch
from secret_mounter.reconciler import Reconciler
from secret_mounter.workqueue import RateLimitingQueue

__all__ = [
    # Version
    "__version__",
    # Main CLI
    "cli",
    # Classes
    "BindingKeys",
    "Cluster",
    "Controller",
    "ControllerConfig",
    "ControllerContext",
    "RateLimitingQueue",
    "Reconciler",
    # Functions
    "apply_patch",
    "build_patch",
    "load_config",
    "process_one",
    "resolve_binding",
    # Exceptions
    "SecretMounterError",
    "ClusterConnectionError",
    "ConfigParsingError",
    "ConflictError",
    "InvalidKeyError",
    "RejectedError",
    "TransientError",
]
