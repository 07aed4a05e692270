"""Volume patch construction and merging.

This module builds the Secret volume and the read-only container mount for
a resolved Secret, and merges them into a Deployment's pod template. The
volume name is derived from the Secret name, so merging the same patch
again replaces the existing entries instead of adding duplicates.
"""

import logging
from collections.abc import Callable, Sequence
from typing import Any

from kubernetes.client import (
    V1Deployment,
    V1KeyToPath,
    V1PodSpec,
    V1SecretVolumeSource,
    V1Volume,
    V1VolumeMount,
)

from secret_mounter.config import DEFAULT_MOUNT_PATH
from secret_mounter.models import SecretMaterial, VolumeMountPatch
from secret_mounter.secrets import filter_keys

logger = logging.getLogger(__name__)

VOLUME_NAME_SUFFIX = "-secret-volume"


def volume_name_for(secret_name: str) -> str:
    """Return the deterministic volume name for a Secret."""
    return f"{secret_name}{VOLUME_NAME_SUFFIX}"


def build_patch(
    secret: SecretMaterial,
    requested_keys: Sequence[str] = (),
    mount_path: str | None = None,
) -> VolumeMountPatch:
    """Build the volume and mount that expose a Secret to containers.

    Args:
        secret: The resolved Secret.
        requested_keys: Keys to project as files. Empty projects the whole Secret.
        mount_path: In-container path. Defaults to DEFAULT_MOUNT_PATH.

    Returns:
        The VolumeMountPatch. Requested keys absent from the Secret are
        listed in ``skipped_keys`` and left out of the projection.

    """
    name = volume_name_for(secret.name)
    projected, skipped = filter_keys(secret, requested_keys)
    for key in skipped:
        logger.warning("Key %r not found in secret %s/%s, skipping", key, secret.namespace, secret.name)

    items = [V1KeyToPath(key=key, path=key) for key in projected] or None
    volume = V1Volume(
        name=name,
        secret=V1SecretVolumeSource(secret_name=secret.name, items=items),
    )
    volume_mount = V1VolumeMount(
        name=name,
        mount_path=mount_path or DEFAULT_MOUNT_PATH,
        read_only=True,
    )
    return VolumeMountPatch(
        volume=volume,
        volume_mount=volume_mount,
        projected_keys=projected,
        skipped_keys=skipped,
    )


def _same_volume(existing: V1Volume, wanted: V1Volume) -> bool:
    # The API server fills in defaultMode, so only the fields set here are compared.
    if existing.secret is None:
        return False
    existing_items = [(item.key, item.path) for item in existing.secret.items or []]
    wanted_items = [(item.key, item.path) for item in wanted.secret.items or []]
    return existing.secret.secret_name == wanted.secret.secret_name and existing_items == wanted_items


def _same_mount(existing: V1VolumeMount, wanted: V1VolumeMount) -> bool:
    return (
        existing.mount_path == wanted.mount_path
        and bool(existing.read_only) == bool(wanted.read_only)
        and not existing.sub_path
    )


def _upsert(
    entries: list[Any] | None,
    entry: Any,
    same: Callable[[Any, Any], bool],
) -> tuple[list[Any], bool]:
    """Replace the entry with the same name, or append it.

    Returns:
        The resulting list and whether it differs from the input.

    """
    entries = list(entries or [])
    for index, existing in enumerate(entries):
        if existing.name == entry.name:
            if same(existing, entry):
                return entries, False
            entries[index] = entry
            return entries, True
    entries.append(entry)
    return entries, True


def _owned(name: str | None) -> bool:
    return bool(name) and str(name).endswith(VOLUME_NAME_SUFFIX)


def _evict_displaced(pod_spec: V1PodSpec, patch: VolumeMountPatch) -> bool:
    """Drop controller-owned mounts that occupy the patch's mount path under another name.

    Volumes left without any mount are dropped as well.

    Returns:
        True if anything was removed.

    """
    wanted = patch.volume_mount
    evicted: set[str] = set()
    for container in pod_spec.containers or []:
        mounts = container.volume_mounts or []
        kept = []
        for mount in mounts:
            if mount.name != wanted.name and _owned(mount.name) and mount.mount_path == wanted.mount_path:
                evicted.add(mount.name)
            else:
                kept.append(mount)
        if len(kept) != len(mounts):
            container.volume_mounts = kept

    if not evicted:
        return False

    containers = list(pod_spec.containers or []) + list(pod_spec.init_containers or [])
    still_mounted = {mount.name for container in containers for mount in container.volume_mounts or []}
    orphaned = evicted - still_mounted
    if orphaned:
        logger.info("Removing volume(s) displaced from %s: %s", wanted.mount_path, ", ".join(sorted(orphaned)))
        pod_spec.volumes = [volume for volume in pod_spec.volumes or [] if volume.name not in orphaned]
    return True


def apply_patch(deployment: V1Deployment, patch: VolumeMountPatch) -> bool:
    """Merge a VolumeMountPatch into a Deployment's pod template in place.

    The volume is replaced or appended by name in the pod volumes, and the
    mount is replaced or appended by name in every container. A mount this
    controller added earlier for another Secret at the same path is removed
    together with its volume, so a rebinding never leaves two mounts on one
    path. Unrelated volumes, mounts and fields are left untouched.

    Args:
        deployment: The Deployment to mutate.
        patch: The patch to merge.

    Returns:
        True if the Deployment changed.

    """
    pod_spec = deployment.spec.template.spec

    evicted = _evict_displaced(pod_spec, patch)
    pod_spec.volumes, changed = _upsert(pod_spec.volumes, patch.volume, _same_volume)
    changed = changed or evicted
    for container in pod_spec.containers or []:
        container.volume_mounts, mount_changed = _upsert(container.volume_mounts, patch.volume_mount, _same_mount)
        changed = changed or mount_changed

    return changed
