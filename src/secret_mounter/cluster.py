"""Kubernetes cluster connection.

This module provides the Cluster class, which discovers the client
configuration (in-cluster service account first, kubeconfig second),
optionally lets the user pick a kubeconfig context, and verifies that the
API server is reachable before the controller starts.
"""

import click
import questionary
from icecream import ic
from kubernetes import client, config
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException
from questionary import Style
from urllib3.exceptions import HTTPError

from secret_mounter import console
from secret_mounter.exceptions import ClusterConnectionError

IN_CLUSTER_CONTEXT = "in-cluster"

PROMPT_STYLE = Style(
    [
        ("qmark", "fg:#af87ff bold"),
        ("question", "bold"),
        ("answer", "fg:#ff87d7 bold"),
        ("pointer", "fg:#ff87d7 bold"),
        ("highlighted", "fg:#1c1c1c bg:#ff87d7 bold"),
        ("instruction", "fg:#6c6c6c italic"),
    ]
)


class Cluster:
    """Manages the connection to the Kubernetes API server.

    Attributes:
        context: The kubeconfig context in use, or "in-cluster".
        in_cluster: Whether the service account configuration is used.
        server_version: The API server's git version.

    """

    def __init__(
        self,
        *,
        select_context: bool = False,
        context: str | None = None,
        kubeconfig: str | None = None,
    ) -> None:
        """Load client configuration and check connectivity.

        Args:
            select_context: If True, prompt the user to select a kubeconfig context.
            context: Kubeconfig context to use instead of the current one.
            kubeconfig: Path to a kubeconfig file. Defaults to $KUBECONFIG
                or ~/.kube/config.

        Raises:
            ClusterConnectionError: If no configuration can be loaded or the
                API server cannot be reached.

        """
        self.in_cluster: bool = False
        prefer_kubeconfig = select_context or context is not None or kubeconfig is not None
        if not prefer_kubeconfig and self._load_in_cluster():
            self.in_cluster = True
            self.context: str = IN_CLUSTER_CONTEXT
        else:
            self.context = self._set_context(select_context=select_context, context=context, kubeconfig=kubeconfig)
            config.load_kube_config(config_file=kubeconfig, context=self.context)
        console.action(f"Working with {console.highlight(self.context)} cluster")
        self.server_version: str = self._check_connection()

    @staticmethod
    def _load_in_cluster() -> bool:
        try:
            config.load_incluster_config()
        except ConfigException:
            return False
        return True

    @staticmethod
    def _set_context(*, select_context: bool, context: str | None, kubeconfig: str | None) -> str:
        """Pick the kubeconfig context to use.

        Returns:
            The selected, requested or current context name.

        Raises:
            ClusterConnectionError: If kubeconfig is invalid or missing.
            click.Abort: If user cancels context selection.

        """
        try:
            contexts, current_context = config.list_kube_config_contexts(config_file=kubeconfig)
        except ConfigException as e:
            raise ClusterConnectionError(f"Invalid or missing kubeconfig: {e}") from e

        context_names: list[str] = [ctx["name"] for ctx in contexts]
        ic(context_names)

        if context is not None:
            if context not in context_names:
                raise ClusterConnectionError(f"Context '{context}' not found in kubeconfig")
            return context

        if select_context:
            selected: str | None = questionary.select(
                "Select context to work with",
                choices=context_names,
                style=PROMPT_STYLE,
            ).ask()
            if selected is None:
                console.warning("Context selection cancelled.")
                raise click.Abort()
            return selected

        if not current_context:
            raise ClusterConnectionError("Kubeconfig has no current context")
        return str(current_context["name"])

    @staticmethod
    def _check_connection() -> str:
        """Ask the API server for its version.

        Returns:
            The server git version.

        Raises:
            ClusterConnectionError: If the cluster is unreachable or rejects the request.

        """
        with console.spinner("Connecting to the Kubernetes API server..."):
            try:
                version = client.VersionApi().get_code()
            except HTTPError as e:
                raise ClusterConnectionError(f"Failed to connect to the Kubernetes cluster: {e}") from e
            except ApiException as e:
                raise ClusterConnectionError(
                    f"Kubernetes API server rejected the connection (status {e.status}): {e.reason}"
                ) from e

        server_version = str(version.git_version)
        console.success(f"Connected to Kubernetes {console.highlight(server_version)}")
        return server_version

    @staticmethod
    def apps_api() -> client.AppsV1Api:
        return client.AppsV1Api()

    @staticmethod
    def core_api() -> client.CoreV1Api:
        return client.CoreV1Api()

    def __repr__(self) -> str:
        """Return a detailed string representation for debugging."""
        return f"Cluster(context={self.context!r}, in_cluster={self.in_cluster!r})"
