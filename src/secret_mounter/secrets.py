"""Secret resolution.

This module turns a binding declaration into the concrete Secrets it
refers to, and filters requested keys against what a Secret contains.
"""

import logging
from collections.abc import Iterable

from icecream import ic
from kubernetes.client import V1Secret

from secret_mounter.accessor import ResourceAccessor
from secret_mounter.models import BindingDeclaration, BindingMode, SecretMaterial

logger = logging.getLogger(__name__)


def secret_material(secret: V1Secret) -> SecretMaterial:
    """Reduce a V1Secret to its name and the union of its data keys."""
    keys = set(secret.data or {}) | set(secret.string_data or {})
    return SecretMaterial(
        name=secret.metadata.name,
        namespace=secret.metadata.namespace or "",
        keys=frozenset(keys),
    )


def selector_for(declaration: BindingDeclaration, selector_label: str) -> str:
    """Build the label selector used by a bulk binding."""
    return f"{selector_label}={declaration.secret_ref}"


def resolve_secrets(
    accessor: ResourceAccessor,
    namespace: str,
    declaration: BindingDeclaration,
    selector_label: str,
) -> list[SecretMaterial]:
    """Find the Secrets a binding declaration refers to.

    Args:
        accessor: ResourceAccessor used for Secret lookups.
        namespace: Namespace of the bound Deployment.
        declaration: The resolved binding declaration.
        selector_label: Secret label matched in SELECTOR mode.

    Returns:
        The matching Secrets, sorted by name. Empty if none match,
        including a named Secret that does not exist.

    Raises:
        TransientError: If the lookup itself fails.
        RejectedError: If the API server refuses the lookup.

    """
    match declaration.mode:
        case BindingMode.NAME:
            secret = accessor.get_secret(namespace, declaration.secret_ref)
            if secret is None:
                logger.warning("Secret %s/%s does not exist", namespace, declaration.secret_ref)
                return []
            found = [secret]
        case BindingMode.SELECTOR:
            selector = selector_for(declaration, selector_label)
            found = accessor.list_secrets(namespace, selector)
            logger.debug("Selector %s matched %d secret(s) in %s", selector, len(found), namespace)

    materials = sorted((secret_material(secret) for secret in found), key=lambda m: m.name)
    ic(materials)
    return materials


def filter_keys(material: SecretMaterial, requested: Iterable[str]) -> tuple[tuple[str, ...], tuple[str, ...]]:
    """Split requested keys into those the Secret has and those it lacks.

    Order of the request is preserved and duplicates are dropped.

    Returns:
        A ``(present, missing)`` pair of key tuples.

    """
    present: list[str] = []
    missing: list[str] = []
    for key in requested:
        if key in present or key in missing:
            continue
        (present if key in material.keys else missing).append(key)
    return tuple(present), tuple(missing)
