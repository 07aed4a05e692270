"""Binding declaration resolution.

This module is the only place that reads binding keys out of a
Deployment's labels and annotations. Everything downstream works with the
typed BindingDeclaration it produces.
"""

from collections.abc import Mapping
from typing import Any

from icecream import ic

from secret_mounter.config import BindingKeys
from secret_mounter.models import BindingDeclaration, BindingMode

_KEY_SEPARATOR = "."


def _split_keys(raw: str | None) -> tuple[str, ...]:
    """Split a dot-separated key list, dropping blanks and duplicates."""
    if not raw:
        return ()
    keys: list[str] = []
    for key in raw.split(_KEY_SEPARATOR):
        key = key.strip()
        if key and key not in keys:
            keys.append(key)
    return tuple(keys)


def _value(source: Mapping[str, str], key: str) -> str | None:
    value = source.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _declaration_from(source: Mapping[str, str], keys: BindingKeys, origin: str) -> BindingDeclaration | None:
    name = _value(source, keys.name)
    selector = _value(source, keys.selector)

    # A named Secret takes precedence over bulk selection.
    if name is not None:
        mode, ref = BindingMode.NAME, name
    elif selector is not None:
        mode, ref = BindingMode.SELECTOR, selector
    else:
        return None

    return BindingDeclaration(
        mode=mode,
        secret_ref=ref,
        keys=_split_keys(_value(source, keys.keys)),
        mount_path=_value(source, keys.mount_path),
        source=origin,
    )


def resolve_binding(metadata: Any, keys: BindingKeys | None = None) -> BindingDeclaration | None:
    """Resolve the secret binding declared on an object.

    Labels are consulted first. If any recognized binding key is present in
    the labels, the annotations are ignored entirely; otherwise the
    annotations are used as the fallback source.

    Args:
        metadata: A V1ObjectMeta (or anything with ``labels`` and
            ``annotations`` attributes). Either attribute may be None.
        keys: The binding keys to look for. Defaults to BindingKeys().

    Returns:
        The BindingDeclaration, or None if the object declares no binding.

    """
    keys = keys or BindingKeys()
    if metadata is None:
        return None

    labels: Mapping[str, str] = getattr(metadata, "labels", None) or {}
    annotations: Mapping[str, str] = getattr(metadata, "annotations", None) or {}

    if any(key in labels for key in keys.all()):
        declaration = _declaration_from(labels, keys, "labels")
    else:
        declaration = _declaration_from(annotations, keys, "annotations")

    ic(declaration)
    return declaration
