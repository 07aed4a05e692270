"""Controller configuration.

This module provides the ControllerConfig record with its defaults and
the loader for the optional YAML configuration file. Command-line options
are layered on top of the file with ``ControllerConfig.with_overrides``.
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Any

import yaml

from secret_mounter.exceptions import ConfigParsingError

DEFAULT_MOUNT_PATH = "/etc/secret-mounter-data/"
DEFAULT_SELECTOR_LABEL = "secret-mounter/group"


@dataclass(frozen=True, slots=True)
class BindingKeys:
    """Label/annotation keys that make up a binding declaration.

    Attributes:
        name: Key naming a single Secret.
        selector: Key carrying the selector value for bulk binding.
        keys: Key carrying a dot-separated list of Secret keys to project.
        mount_path: Key overriding the in-container mount path.

    """

    name: str = "secret-name"
    selector: str = "secret-selector"
    keys: str = "secret-keys"
    mount_path: str = "secret-mount-path"

    def all(self) -> tuple[str, ...]:
        return (self.name, self.selector, self.keys, self.mount_path)


@dataclass(frozen=True, slots=True)
class ControllerConfig:
    """Effective controller settings.

    Attributes:
        namespace: Namespace to watch. None watches every namespace.
        workers: Number of worker threads draining the queue.
        resync_period: Seconds between full re-deliveries of the cache.
        max_retries: Requeues allowed for one key before it is dropped.
        sync_timeout: Seconds to wait for the initial cache sync.
        event_buffer: Capacity of the channel between watch and queue.
        worker_restart_period: Seconds before a crashed worker is restarted.
        default_mount_path: Mount path used when a binding has no override.
        selector_label: Secret label matched by bulk bindings.
        binding_keys: Label/annotation keys of binding declarations.

    """

    namespace: str | None = None
    workers: int = 1
    resync_period: float = 30.0
    max_retries: int = 15
    sync_timeout: float = 60.0
    event_buffer: int = 1024
    worker_restart_period: float = 1.0
    default_mount_path: str = DEFAULT_MOUNT_PATH
    selector_label: str = DEFAULT_SELECTOR_LABEL
    binding_keys: BindingKeys = field(default_factory=BindingKeys)

    def with_overrides(self, **overrides: Any) -> "ControllerConfig":
        """Return a copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return dataclasses.replace(self, **changes)

    def summary(self) -> dict[str, str]:
        """Flatten the settings into labels for the startup panel."""
        return {
            "Namespace": self.namespace or "<all>",
            "Workers": str(self.workers),
            "Resync period": f"{self.resync_period:g}s",
            "Mount path": self.default_mount_path,
            "Binding keys": ", ".join(self.binding_keys.all()),
            "Selector label": self.selector_label,
        }


_INT_FIELDS = ("workers", "max_retries", "event_buffer")
_FLOAT_FIELDS = ("resync_period", "sync_timeout", "worker_restart_period")
_STR_FIELDS = ("namespace", "default_mount_path", "selector_label")


def _parse_binding_keys(raw: Any, config_path: str) -> BindingKeys:
    if not isinstance(raw, dict):
        raise ConfigParsingError(f"'binding_keys' in '{config_path}' must be a mapping")

    known = {f.name for f in dataclasses.fields(BindingKeys)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigParsingError(f"Unknown binding key setting(s) in '{config_path}': {', '.join(unknown)}")

    for key, value in raw.items():
        if not isinstance(value, str) or not value:
            raise ConfigParsingError(f"Binding key '{key}' in '{config_path}' must be a non-empty string")
    return BindingKeys(**raw)


def _parse_settings(raw: dict[str, Any], config_path: str) -> dict[str, Any]:
    known = {f.name for f in dataclasses.fields(ControllerConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigParsingError(f"Unknown setting(s) in '{config_path}': {', '.join(unknown)}")

    settings: dict[str, Any] = {}
    for key, value in raw.items():
        if value is None:
            continue
        if key == "binding_keys":
            settings[key] = _parse_binding_keys(value, config_path)
        elif key in _INT_FIELDS:
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigParsingError(f"Setting '{key}' in '{config_path}' must be a positive integer")
            settings[key] = value
        elif key in _FLOAT_FIELDS:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ConfigParsingError(f"Setting '{key}' in '{config_path}' must be a non-negative number")
            settings[key] = float(value)
        elif key in _STR_FIELDS:
            if not isinstance(value, str) or not value:
                raise ConfigParsingError(f"Setting '{key}' in '{config_path}' must be a non-empty string")
            settings[key] = value
    return settings


def load_config(config_path: str | None) -> ControllerConfig:
    """Load controller settings from a YAML file.

    Args:
        config_path: Path to the configuration file. None or an empty
            file yields the defaults.

    Returns:
        The parsed ControllerConfig.

    Raises:
        ConfigParsingError: If the file does not exist, contains multiple
            documents, contains malformed YAML, is not a YAML mapping, or
            holds unknown or mistyped settings.

    """
    if config_path is None:
        return ControllerConfig()

    try:
        with open(config_path) as stream:
            docs = [doc for doc in yaml.safe_load_all(stream) if doc is not None]
    except FileNotFoundError as err:
        raise ConfigParsingError(f"Config file '{config_path}' does not exist") from err
    except yaml.YAMLError as err:
        raise ConfigParsingError(f"Config file '{config_path}' contains malformed YAML: {err}") from err

    if len(docs) > 1:
        raise ConfigParsingError(
            f"File '{config_path}' contains multiple YAML documents. Only single document files are supported."
        )
    if not docs:
        return ControllerConfig()
    if not isinstance(docs[0], dict):
        raise ConfigParsingError(f"File '{config_path}' does not contain a valid YAML mapping.")

    return ControllerConfig(**_parse_settings(docs[0], config_path))
