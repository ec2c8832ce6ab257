# /*
# Copyright 2026 The Kuack Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */


"""Cluster session: credential loading, namespace resolution, typed API calls."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.stream import portforward

from kuack_e2e import logger
from kuack_e2e.constants import (
    POD_DELETE_GRACE_SECONDS,
    SERVICE_ACCOUNT_DIR,
    SERVICE_ACCOUNT_NAMESPACE_FILE,
    SERVICE_ACCOUNT_TOKEN_FILE,
)
from kuack_e2e.errors import NamespaceResolutionError, NotInitializedError


class ClusterSession:
    """Kubernetes access bound to one namespace.

    Immutable after construction. Operations are thin wrappers over
    ``CoreV1Api`` without retries; callers that need to wait poll.
    """

    def __init__(self, core: client.CoreV1Api, namespace: str, in_cluster: bool) -> None:
        self._core = core
        self._namespace = namespace
        self._in_cluster = in_cluster

    @classmethod
    def load(cls, service_account_dir: Path = SERVICE_ACCOUNT_DIR, context: str | None = None) -> ClusterSession:
        """Detect the environment, load credentials, and resolve the namespace.

        Inside a pod the service-account token marker exists and the namespace
        comes from the sibling ``namespace`` file. Elsewhere the kubeconfig is
        loaded and the active context must name a namespace.

        Args:
            service_account_dir: Directory holding the service-account files.
            context: Kubeconfig context to use instead of the active one.

        Returns:
            A ready session.

        Raises:
            NamespaceResolutionError: If no namespace can be resolved.
        """
        if (service_account_dir / SERVICE_ACCOUNT_TOKEN_FILE).exists():
            config.load_incluster_config()
            namespace = _read_incluster_namespace(service_account_dir / SERVICE_ACCOUNT_NAMESPACE_FILE)
            logger.info("Using in-cluster credentials (namespace: %s)", namespace)
            return cls(client.CoreV1Api(), namespace, in_cluster=True)

        config.load_kube_config(context=context)
        namespace = _resolve_context_namespace(context)
        logger.info("Using kubeconfig credentials (namespace: %s)", namespace)
        return cls(client.CoreV1Api(), namespace, in_cluster=False)

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def in_cluster(self) -> bool:
        return self._in_cluster

    @property
    def core(self) -> client.CoreV1Api:
        return self._core

    # ------------------------------------------------------------------
    # Pods
    # ------------------------------------------------------------------

    def read_pod(self, name: str) -> client.V1Pod:
        return self._core.read_namespaced_pod(name, self._namespace)

    def find_pod(self, name: str) -> client.V1Pod | None:
        """Read a pod, returning None instead of raising when it does not exist."""
        try:
            return self.read_pod(name)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def list_pods(self, label_selector: str | None = None) -> list[client.V1Pod]:
        kwargs: dict[str, Any] = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        return self._core.list_namespaced_pod(self._namespace, **kwargs).items

    def create_pod(self, body: dict) -> client.V1Pod:
        return self._core.create_namespaced_pod(self._namespace, body)

    def replace_pod(self, name: str, body: dict) -> client.V1Pod:
        return self._core.replace_namespaced_pod(name, self._namespace, body)

    def delete_pod(self, name: str) -> bool:
        """Delete a pod. Returns False if it was already gone."""
        try:
            self._core.delete_namespaced_pod(
                name, self._namespace, grace_period_seconds=POD_DELETE_GRACE_SECONDS,
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        return True

    def delete_pods(self, label_selector: str) -> None:
        self._core.delete_collection_namespaced_pod(
            self._namespace, label_selector=label_selector, grace_period_seconds=POD_DELETE_GRACE_SECONDS,
        )

    def read_pod_log(self, name: str, container: str | None = None, tail_lines: int | None = None) -> str:
        kwargs: dict[str, Any] = {}
        if container:
            kwargs["container"] = container
        if tail_lines is not None:
            kwargs["tail_lines"] = tail_lines
        return self._core.read_namespaced_pod_log(name, self._namespace, **kwargs)

    def read_logs_by_selector(self, label_selector: str) -> str:
        """Concatenate the logs of every pod matching ``label_selector``."""
        chunks = []
        for pod in self.list_pods(label_selector):
            chunks.append(self.read_pod_log(pod.metadata.name))
        return "\n".join(chunks)

    def open_port_forward(self, pod_name: str, port: int):
        """Open a streaming port-forward session to ``pod_name:port``.

        Returns:
            A ``kubernetes.stream`` port-forward object; ``.socket(port)``
            yields the data socket and ``.error(port)`` the error channel.
        """
        return portforward(
            self._core.connect_get_namespaced_pod_portforward,
            pod_name,
            self._namespace,
            ports=str(port),
        )

    # ------------------------------------------------------------------
    # Services and nodes
    # ------------------------------------------------------------------

    def read_service(self, name: str) -> client.V1Service:
        return self._core.read_namespaced_service(name, self._namespace)

    def read_node(self, name: str) -> client.V1Node:
        return self._core.read_node(name)

    def list_nodes(self, label_selector: str | None = None) -> list[client.V1Node]:
        kwargs: dict[str, Any] = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        return self._core.list_node(**kwargs).items


def _read_incluster_namespace(path: Path) -> str:
    try:
        namespace = path.read_text().strip()
    except OSError as err:
        raise NamespaceResolutionError(f"Cannot read in-cluster namespace from {path}: {err}") from err
    if not namespace:
        raise NamespaceResolutionError(f"In-cluster namespace file {path} is empty")
    return namespace


def _resolve_context_namespace(context: str | None) -> str:
    contexts, active = config.list_kube_config_contexts()
    selected = active
    if context is not None:
        selected = next((c for c in contexts if c.get("name") == context), None)
    if not selected:
        raise NamespaceResolutionError(f"Kubeconfig context '{context}' not found")
    name = selected.get("name", "<unnamed>")
    namespace = (selected.get("context") or {}).get("namespace")
    if not namespace:
        raise NamespaceResolutionError(f"No namespace set in kubeconfig context '{name}'")
    return namespace


# ============================================================================
# Process-scoped session
# ============================================================================

_session: ClusterSession | None = None


def init_session(service_account_dir: Path = SERVICE_ACCOUNT_DIR, context: str | None = None) -> ClusterSession:
    """Load the worker's cluster session once and keep it for the process lifetime."""
    global _session
    if _session is None:
        _session = ClusterSession.load(service_account_dir, context)
    return _session


def get_session() -> ClusterSession:
    """Return the session created by :func:`init_session`.

    Raises:
        NotInitializedError: If :func:`init_session` has not run in this process.
    """
    if _session is None:
        raise NotInitializedError("Cluster session has not been initialized; call init_session() first")
    return _session


def reset_session() -> None:
    """Forget the process-scoped session."""
    global _session
    _session = None
