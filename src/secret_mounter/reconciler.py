"""Deployment reconciliation.

This module provides the Reconciler, which decides for one Deployment
whether it binds any Secrets and, if so, merges the matching volumes and
mounts into the live object and writes it back. A pass keeps no state
between calls, so it can be re-run from scratch after any failure.
"""

import logging
import posixpath

from icecream import ic

from secret_mounter.accessor import ResourceAccessor
from secret_mounter.binding import resolve_binding
from secret_mounter.config import ControllerConfig
from secret_mounter.models import (
    BindingDeclaration,
    BindingMode,
    ReconcileOutcome,
    ReconcileResult,
    SecretMaterial,
    VolumeMountPatch,
)
from secret_mounter.patch import apply_patch, build_patch
from secret_mounter.secrets import resolve_secrets

logger = logging.getLogger(__name__)


def _skip(reason: str) -> ReconcileResult:
    return ReconcileResult(outcome=ReconcileOutcome.SKIPPED, reason=reason)


class Reconciler:
    """Mounts bound Secrets into Deployments.

    Attributes:
        accessor: ResourceAccessor for cached reads, live reads and updates.
        config: Controller settings (binding keys, mount path, selector label).

    """

    def __init__(self, accessor: ResourceAccessor, config: ControllerConfig) -> None:
        self.accessor = accessor
        self.config = config

    def _mount_path(self, declaration: BindingDeclaration, secret: SecretMaterial) -> str:
        base = declaration.mount_path or self.config.default_mount_path
        if declaration.mode is BindingMode.SELECTOR:
            # Every selected Secret needs its own directory.
            return posixpath.join(base, secret.name)
        return base

    def _build_patches(self, declaration: BindingDeclaration, secrets: list[SecretMaterial]) -> list[VolumeMountPatch]:
        patches: list[VolumeMountPatch] = []
        for secret in secrets:
            patch = build_patch(secret, declaration.keys, self._mount_path(declaration, secret))
            if declaration.keys and not patch.projected_keys:
                logger.warning(
                    "None of the requested keys (%s) exist in secret %s/%s, not mounting it",
                    ", ".join(declaration.keys),
                    secret.namespace,
                    secret.name,
                )
                continue
            patches.append(patch)
        return patches

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Reconcile one Deployment.

        Args:
            namespace: Namespace of the Deployment.
            name: Name of the Deployment.

        Returns:
            ReconcileResult describing whether the Deployment was updated,
            already up to date, or skipped.

        Raises:
            TransientError: If a lookup or the update failed and the pass
                should be retried. ConflictError in particular signals a
                concurrent modification.
            RejectedError: If the API server refused a request; retrying
                the same pass cannot succeed.

        """
        cached = self.accessor.get_cached(namespace, name)
        if cached is None:
            return _skip("deployment not found")

        declaration = resolve_binding(cached.metadata, self.config.binding_keys)
        if declaration is None:
            return _skip("no secret binding declared")

        logger.debug(
            "Deployment %s/%s binds %s %r (from %s)",
            namespace,
            name,
            declaration.mode.value,
            declaration.secret_ref,
            declaration.source,
        )

        secrets = resolve_secrets(self.accessor, namespace, declaration, self.config.selector_label)
        if not secrets:
            return _skip(f"no secrets match {declaration.mode.value} {declaration.secret_ref!r}")

        patches = self._build_patches(declaration, secrets)
        if not patches:
            return _skip("no requested keys present in matching secrets")

        live = self.accessor.get_live(namespace, name)
        if live is None:
            return _skip("deployment deleted before update")

        # The pass will run again for the newer object once its event arrives.
        live_declaration = resolve_binding(live.metadata, self.config.binding_keys)
        if live_declaration is None:
            return _skip("binding removed before update")
        if live_declaration != declaration:
            return _skip("binding changed before update")

        changed = False
        for patch in patches:
            changed = apply_patch(live, patch) or changed
        mounted = tuple(patch.volume.secret.secret_name for patch in patches)
        ic(mounted, changed)

        if not changed:
            return ReconcileResult(outcome=ReconcileOutcome.UNCHANGED, reason="already mounted", secrets=mounted)

        self.accessor.update(namespace, live)
        logger.info("Deployment %s/%s now mounts secret(s): %s", namespace, name, ", ".join(mounted))
        return ReconcileResult(outcome=ReconcileOutcome.APPLIED, reason="volumes updated", secrets=mounted)
