"""Custom exceptions for secret-mounter.

This module defines the exception hierarchy used throughout the controller.
The hierarchy doubles as the error taxonomy of the reconcile loop: fatal
errors stop the process at startup, transient errors send a work item back
to the queue with backoff, and skips are logged and dropped.
"""


class SecretMounterError(Exception):
    """Base exception for all secret-mounter errors.

    All custom exceptions in this package inherit from this class,
    allowing callers to catch all secret-mounter errors with a single
    except clause if desired.
    """

    pass


class ClusterConnectionError(SecretMounterError):
    """Raised when connection to the Kubernetes cluster fails.

    This is fatal at startup. It can occur when:
    - Neither in-cluster config nor a kubeconfig is available
    - The kubeconfig is invalid
    - The API server is unreachable
    - Authentication fails
    """

    pass


class ConfigParsingError(SecretMounterError):
    """Raised when the controller configuration file cannot be used.

    This can occur when:
    - The file does not exist
    - The file is not valid YAML
    - The YAML is not a single mapping
    - The mapping contains unknown or mistyped settings
    """

    pass


class InvalidKeyError(SecretMounterError):
    """Raised when a work item key is not a valid namespace/name pair.

    A malformed key can never succeed, so the worker drops it instead
    of retrying.
    """

    pass


class TransientError(SecretMounterError):
    """Raised when a reconcile pass failed for a reason that may go away.

    Network timeouts, API server errors and rejected writes fall into this
    category. The work item is re-queued with the queue's own backoff.
    """

    pass


class ConflictError(TransientError):
    """Raised when an update is rejected because the object changed.

    The API server answers 409 when the resourceVersion of the submitted
    object is stale. Re-running the reconcile pass from scratch resolves it.
    """

    pass


class RejectedError(SecretMounterError):
    """Raised when the API server refuses a request that retrying cannot fix.

    This covers client errors such as 400, 403 and 422. The work item is
    dropped; a later change to the object or a resync queues it again.
    """

    pass
