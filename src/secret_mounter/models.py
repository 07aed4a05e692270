"""Data models for secret-mounter.

This module provides the typed records passed between the stages of a
reconcile pass, replacing loosely-typed label dictionaries and tuples with
proper Python data classes.
"""

from dataclasses import dataclass
from enum import Enum
from typing import NamedTuple

from kubernetes.client import V1Volume, V1VolumeMount

from secret_mounter.exceptions import InvalidKeyError


class WorkKey(NamedTuple):
    """Identity of a namespaced object queued for reconciliation.

    Attributes:
        namespace: The namespace of the object.
        name: The name of the object.

    """

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name

    @classmethod
    def parse(cls, key: str) -> "WorkKey":
        """Split a ``namespace/name`` key.

        Args:
            key: The key as produced by ``str(WorkKey)``.

        Returns:
            The parsed WorkKey. A key without a slash yields an empty namespace.

        Raises:
            InvalidKeyError: If the key has more than one slash or an empty part.

        """
        parts = key.split("/")
        match parts:
            case [name] if name:
                return cls(namespace="", name=name)
            case [namespace, name] if namespace and name:
                return cls(namespace=namespace, name=name)
            case _:
                raise InvalidKeyError(f"Unexpected key format: {key!r}")


class BindingMode(str, Enum):
    """How a binding declaration selects its Secrets.

    Inherits from str to allow direct use in log messages.
    """

    NAME = "name"
    SELECTOR = "selector"


@dataclass(frozen=True, slots=True)
class BindingDeclaration:
    """Secret binding read from a Deployment's labels or annotations.

    Attributes:
        mode: Whether a single named Secret or a set of selected Secrets is bound.
        secret_ref: The Secret name (NAME mode) or selector value (SELECTOR mode).
        keys: Ordered Secret keys to project. Empty means the whole Secret.
        mount_path: In-container mount path override, if any.
        source: Where the declaration was found ("labels" or "annotations").

    """

    mode: BindingMode
    secret_ref: str
    keys: tuple[str, ...] = ()
    mount_path: str | None = None
    source: str = "labels"


@dataclass(frozen=True, slots=True)
class SecretMaterial:
    """A resolved Secret reduced to what the patch builder needs.

    Attributes:
        name: The Secret name.
        namespace: The Secret namespace.
        keys: Every entry key present in ``data`` or ``stringData``.

    """

    name: str
    namespace: str
    keys: frozenset[str]


@dataclass(frozen=True, slots=True)
class VolumeMountPatch:
    """A volume and the matching container mount for one Secret.

    Attributes:
        volume: Pod volume sourced from the Secret.
        volume_mount: Read-only mount of that volume.
        projected_keys: Keys projected as files. Empty means every key.
        skipped_keys: Requested keys that the Secret does not contain.

    """

    volume: V1Volume
    volume_mount: V1VolumeMount
    projected_keys: tuple[str, ...] = ()
    skipped_keys: tuple[str, ...] = ()

    @property
    def volume_name(self) -> str:
        """The deterministic volume name shared by volume and mount."""
        return str(self.volume.name)


class ReconcileOutcome(str, Enum):
    """Result classification of a successful reconcile pass."""

    APPLIED = "applied"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    """Outcome of a single reconcile pass.

    Attributes:
        outcome: What the pass did.
        reason: Human readable explanation, used for logging.
        secrets: Names of the Secrets mounted by the pass.

    """

    outcome: ReconcileOutcome
    reason: str = ""
    secrets: tuple[str, ...] = ()

    @property
    def applied(self) -> bool:
        """Whether the Deployment was written back."""
        return self.outcome is ReconcileOutcome.APPLIED
