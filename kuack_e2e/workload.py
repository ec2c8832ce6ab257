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


"""Pod manifests for checker workloads, idempotent apply, and phase polling."""

from __future__ import annotations

import copy
import functools
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_delay,
    wait_fixed,
)

from kuack_e2e import logger
from kuack_e2e.config import E2EConfig
from kuack_e2e.constants import (
    CHECKER_CONTAINER_NAME,
    CHECKER_ENV_TARGET_URL,
    DEFAULT_CHECKER_IMAGE,
    DEFAULT_CHECKER_URL,
    KUACK_NODE_ARCHITECTURES,
    KUACK_NODE_NAME_MARKER,
    KUACK_NODE_OPERATING_SYSTEMS,
    KUACK_NODE_TYPE_LABEL,
    KUACK_NODE_TYPE_VALUE,
    KUACK_PROVIDER_TAINT_KEY,
    KUACK_PROVIDER_TAINT_VALUE,
    LABEL_HOSTNAME,
    LABEL_MANAGED_BY,
    LOG_EXCERPT_LENGTH,
    MANAGED_BY_VALUE,
    PHASE_POLL_INTERVAL_SECONDS,
)
from kuack_e2e.errors import PhaseTimeoutError, ResourceNotFoundError, WorkloadValidationError
from kuack_e2e.session import ClusterSession


class PodPhase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


TOLERATION_EFFECTS = ("NoSchedule", "PreferNoSchedule", "NoExecute")
TOLERATION_OPERATORS = ("Equal", "Exists")
RESTART_POLICIES = ("Always", "OnFailure", "Never")
_TOLERATION_SPECIAL_KEYS = {"effect", "operator", "tolerationSeconds"}


# ============================================================================
# Pod builder
# ============================================================================

class PodBuilder:
    """Fluent builder for pod manifests.

    Settings that target a container apply to the current container: the
    default ``main`` container, or the one most recently added with
    :meth:`add_container`.

    Example::

        pod = (
            PodBuilder("my-pod", namespace)
            .with_image("myapp:v1.0.0")
            .with_requests("1", "4Gi")
            .with_node_selector("kuack.io/node-type", "kuack-node")
            .build()
        )
    """

    def __init__(self, name: str, namespace: str | None = None) -> None:
        metadata: dict[str, Any] = {"name": name}
        if namespace:
            metadata["namespace"] = namespace
        self._container: dict[str, Any] = {"name": CHECKER_CONTAINER_NAME, "image": ""}
        self._pod: dict[str, Any] = {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": metadata,
            "spec": {"containers": [self._container]},
        }

    @property
    def name(self) -> str:
        return self._pod["metadata"]["name"]

    # -- Containers --

    def with_image(self, image: str) -> PodBuilder:
        self._container["image"] = image
        return self

    def with_container_name(self, name: str) -> PodBuilder:
        self._container["name"] = name
        return self

    def add_container(self, name: str, image: str) -> PodBuilder:
        self._container = {"name": name, "image": image}
        self._pod["spec"]["containers"].append(self._container)
        return self

    def with_command(self, command: list[str]) -> PodBuilder:
        self._container["command"] = list(command)
        return self

    def with_args(self, args: list[str]) -> PodBuilder:
        self._container["args"] = list(args)
        return self

    def with_env(self, name: str, value: str) -> PodBuilder:
        self._container.setdefault("env", []).append({"name": name, "value": value})
        return self

    def with_envs(self, env: Mapping[str, str]) -> PodBuilder:
        for name, value in env.items():
            self.with_env(name, value)
        return self

    # -- Resources --

    def _resources(self, kind: str) -> dict[str, str]:
        return self._container.setdefault("resources", {}).setdefault(kind, {})

    def with_request_cpu(self, cpu: str) -> PodBuilder:
        self._resources("requests")["cpu"] = cpu
        return self

    def with_request_memory(self, memory: str) -> PodBuilder:
        self._resources("requests")["memory"] = memory
        return self

    def with_limit_cpu(self, cpu: str) -> PodBuilder:
        self._resources("limits")["cpu"] = cpu
        return self

    def with_limit_memory(self, memory: str) -> PodBuilder:
        self._resources("limits")["memory"] = memory
        return self

    def with_requests(self, cpu: str, memory: str) -> PodBuilder:
        return self.with_request_cpu(cpu).with_request_memory(memory)

    def with_limits(self, cpu: str, memory: str) -> PodBuilder:
        return self.with_limit_cpu(cpu).with_limit_memory(memory)

    # -- Placement --

    def with_node_selector(self, key: str, value: str) -> PodBuilder:
        self._pod["spec"].setdefault("nodeSelector", {})[key] = value
        return self

    def with_node_selectors(self, selectors: Mapping[str, str]) -> PodBuilder:
        self._pod["spec"].setdefault("nodeSelector", {}).update(selectors)
        return self

    def with_toleration(
        self,
        key: str,
        value: str | None = None,
        effect: str | None = None,
        operator: str = "Equal",
        toleration_seconds: int | None = None,
    ) -> PodBuilder:
        """Add a toleration for the taint ``key``.

        Args:
            key: Taint key.
            value: Taint value, used with the ``Equal`` operator.
            effect: ``NoSchedule``, ``PreferNoSchedule`` or ``NoExecute``.
            operator: ``Equal`` or ``Exists``.
            toleration_seconds: Seconds to tolerate a ``NoExecute`` taint.

        Raises:
            WorkloadValidationError: If the effect or operator is unknown.
        """
        if operator not in TOLERATION_OPERATORS:
            raise WorkloadValidationError(f"Unknown toleration operator '{operator}' for key {key}")
        if effect is not None and effect not in TOLERATION_EFFECTS:
            raise WorkloadValidationError(f"Unknown toleration effect '{effect}' for key {key}")

        toleration: dict[str, Any] = {"key": key, "operator": operator}
        if value is not None and operator == "Equal":
            toleration["value"] = value
        if effect is not None:
            toleration["effect"] = effect
        if toleration_seconds is not None:
            toleration["tolerationSeconds"] = int(toleration_seconds)
        self._pod["spec"].setdefault("tolerations", []).append(toleration)
        return self

    def with_tolerations(self, tolerations: Mapping[str, str | int]) -> PodBuilder:
        """Add one toleration from a compact mapping.

        The first key that is not ``effect``, ``operator`` or
        ``tolerationSeconds`` is the taint key and its value the taint value::

            .with_tolerations({"kuack.io/provider": "kuack", "effect": "NoSchedule"})

        Raises:
            WorkloadValidationError: If no taint key is present.
        """
        key = next((k for k in tolerations if k not in _TOLERATION_SPECIAL_KEYS), None)
        if key is None:
            raise WorkloadValidationError(
                "Toleration must have a key; provide at least one non-special key in the mapping"
            )
        seconds = tolerations.get("tolerationSeconds")
        return self.with_toleration(
            key,
            value=str(tolerations[key]),
            effect=tolerations.get("effect"),
            operator=str(tolerations.get("operator", "Equal")),
            toleration_seconds=int(seconds) if seconds is not None else None,
        )

    # -- Metadata --

    def with_label(self, key: str, value: str) -> PodBuilder:
        self._pod["metadata"].setdefault("labels", {})[key] = value
        return self

    def with_labels(self, labels: Mapping[str, str]) -> PodBuilder:
        self._pod["metadata"].setdefault("labels", {}).update(labels)
        return self

    def with_annotation(self, key: str, value: str) -> PodBuilder:
        self._pod["metadata"].setdefault("annotations", {})[key] = value
        return self

    def with_restart_policy(self, policy: str) -> PodBuilder:
        if policy not in RESTART_POLICIES:
            raise WorkloadValidationError(f"Unknown restart policy '{policy}' for pod {self.name}")
        self._pod["spec"]["restartPolicy"] = policy
        return self

    def build(self) -> dict[str, Any]:
        """Validate and return a copy of the manifest.

        Raises:
            WorkloadValidationError: If there is no container or a container has no image.
        """
        containers = self._pod["spec"].get("containers") or []
        if not containers:
            raise WorkloadValidationError(f"Pod {self.name} must have at least one container")
        for container in containers:
            if not container.get("image"):
                raise WorkloadValidationError(
                    f"Container \"{container.get('name')}\" of pod {self.name} must have an image"
                )
        return copy.deepcopy(self._pod)


# ============================================================================
# Checker workloads
# ============================================================================

def _checker_base(name: str, namespace: str | None, image: str, target_url: str) -> PodBuilder:
    return (
        PodBuilder(name, namespace)
        .with_image(image)
        .with_env(CHECKER_ENV_TARGET_URL, target_url)
        .with_label(LABEL_MANAGED_BY, MANAGED_BY_VALUE)
    )


def checker_for_agent(
    name: str,
    node_name: str,
    namespace: str | None = None,
    image: str = DEFAULT_CHECKER_IMAGE,
    target_url: str = DEFAULT_CHECKER_URL,
) -> dict[str, Any]:
    """Build a checker pod pinned to one Kuack virtual node.

    Args:
        name: Pod name.
        node_name: Hostname of the Kuack node the pod must run on.
        namespace: Namespace written into the manifest metadata.
        image: Checker image.
        target_url: URL the checker probes.

    Returns:
        Pod manifest.
    """
    return (
        _checker_base(name, namespace, image, target_url)
        .with_node_selectors({KUACK_NODE_TYPE_LABEL: KUACK_NODE_TYPE_VALUE, LABEL_HOSTNAME: node_name})
        .with_tolerations({KUACK_PROVIDER_TAINT_KEY: KUACK_PROVIDER_TAINT_VALUE, "effect": "NoSchedule"})
        .build()
    )


def checker_for_cluster(
    name: str,
    namespace: str | None = None,
    image: str = DEFAULT_CHECKER_IMAGE,
    target_url: str = DEFAULT_CHECKER_URL,
) -> dict[str, Any]:
    """Build a checker pod left to the regular cluster scheduler."""
    return (
        _checker_base(name, namespace, image, target_url)
        # Bare pods with the default policy are restarted after they finish.
        .with_restart_policy("Never")
        .build()
    )


# ============================================================================
# Node classification
# ============================================================================

@dataclass
class NodeView:
    """Node name plus the Node object, read from the cluster on first access."""

    name: str
    _loader: Callable[[str], client.V1Node | None] = field(repr=False)

    @functools.cached_property
    def node(self) -> client.V1Node | None:
        return self._loader(self.name)


NodePredicate = Callable[[NodeView], bool]


def name_has_marker(view: NodeView) -> bool:
    return KUACK_NODE_NAME_MARKER in view.name.lower()


def has_node_type_label(view: NodeView) -> bool:
    node = view.node
    if node is None or node.metadata is None:
        return False
    return (node.metadata.labels or {}).get(KUACK_NODE_TYPE_LABEL) == KUACK_NODE_TYPE_VALUE


def reports_kuack_platform(view: NodeView) -> bool:
    node = view.node
    info = node.status.node_info if node is not None and node.status is not None else None
    if info is None:
        return False
    return (
        (info.architecture or "").lower() in KUACK_NODE_ARCHITECTURES
        or (info.operating_system or "").lower() in KUACK_NODE_OPERATING_SYSTEMS
    )


DEFAULT_NODE_PREDICATES: tuple[NodePredicate, ...] = (
    name_has_marker,
    has_node_type_label,
    reports_kuack_platform,
)


# ============================================================================
# Workload manager
# ============================================================================

class WorkloadManager:
    """Applies checker pods and observes their lifecycle.

    Checker image, checker URL and the default phase timeout come from ``cfg``.
    """

    def __init__(
        self,
        session: ClusterSession,
        cfg: E2EConfig | None = None,
        node_predicates: tuple[NodePredicate, ...] = DEFAULT_NODE_PREDICATES,
        poll_interval: float = PHASE_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._session = session
        self.cfg = cfg if cfg is not None else E2EConfig()
        self._node_predicates = node_predicates
        self._poll_interval = poll_interval

    def checker_for_agent(self, name: str, node_name: str) -> dict[str, Any]:
        """Checker pod pinned to ``node_name``, using the configured image and URL."""
        return checker_for_agent(
            name, node_name, self._session.namespace,
            image=self.cfg.checker_image, target_url=self.cfg.checker_url,
        )

    def checker_for_cluster(self, name: str) -> dict[str, Any]:
        return checker_for_cluster(
            name, self._session.namespace, image=self.cfg.checker_image, target_url=self.cfg.checker_url,
        )

    def apply(self, pod: dict[str, Any]) -> client.V1Pod:
        """Create a pod, replacing it if one with the same name already exists."""
        name = pod["metadata"]["name"]
        try:
            observed = self._session.create_pod(pod)
            logger.info("Pod %s created", name)
            return observed
        except ApiException as e:
            if e.status != 409:
                raise

        logger.info("Pod %s already exists, replacing", name)
        live = self._session.read_pod(name)
        body = copy.deepcopy(pod)
        body["metadata"]["resourceVersion"] = live.metadata.resource_version
        return self._session.replace_pod(name, body)

    def delete(self, name: str) -> bool:
        """Delete a pod; returns False if it did not exist."""
        deleted = self._session.delete_pod(name)
        logger.info("Pod %s %s", name, "deleted" if deleted else "already absent")
        return deleted

    def wait_for_phase(
        self,
        name: str,
        target: PodPhase | str,
        timeout: float | None = None,
    ) -> client.V1Pod:
        """Poll the pod at a fixed interval until it reports ``target``.

        Args:
            name: Pod name.
            target: Phase to wait for.
            timeout: Maximum seconds to wait; ``cfg.phase_timeout_seconds`` when omitted.

        Returns:
            The pod as last read, in the target phase.

        Raises:
            PhaseTimeoutError: On timeout, with the last observed phase, reason and message.
        """
        target = PodPhase(target).value
        if timeout is None:
            timeout = self.cfg.phase_timeout_seconds
        last: dict[str, str | None] = {"phase": None, "reason": None, "message": None}

        def _read() -> client.V1Pod | None:
            pod = self._session.find_pod(name)
            if pod is not None and pod.status is not None:
                last.update(phase=pod.status.phase, reason=pod.status.reason, message=pod.status.message)
            return pod

        def _not_there(pod: client.V1Pod | None) -> bool:
            return pod is None or pod.status is None or pod.status.phase != target

        retrying = Retrying(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(self._poll_interval),
            retry=retry_if_result(_not_there) | retry_if_exception_type(ApiException),
        )
        try:
            pod = retrying(_read)
        except RetryError as err:
            message = last["message"]
            if err.last_attempt.failed and message is None:
                message = str(err.last_attempt.exception())
            raise PhaseTimeoutError(name, target, timeout, last["phase"], last["reason"], message) from err
        logger.info("Pod %s reached phase %s", name, target)
        return pod

    def get_node_name(self, name: str) -> str:
        """Return the node the pod was scheduled on.

        Raises:
            ResourceNotFoundError: If the pod has not been scheduled yet.
        """
        pod = self._session.read_pod(name)
        node_name = pod.spec.node_name if pod.spec is not None else None
        if not node_name:
            raise ResourceNotFoundError(f"Pod {name} has not been scheduled yet (no nodeName)")
        return node_name

    def is_target_node(self, node_name: str) -> bool:
        """Tell whether ``node_name`` is a Kuack virtual node.

        Predicates are tried in order (name marker, node-type label, reported
        architecture/OS); any single match is sufficient.
        """
        view = NodeView(node_name, self._read_node)
        return any(predicate(view) for predicate in self._node_predicates)

    def _read_node(self, node_name: str) -> client.V1Node | None:
        try:
            return self._session.read_node(node_name)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def assert_ran_on_target_node(self, name: str) -> str:
        node_name = self.get_node_name(name)
        if not self.is_target_node(node_name):
            raise AssertionError(f"Pod {name} was scheduled on cluster node \"{node_name}\", not on a kuack node")
        logger.info("Pod %s was processed on agent (kuack node: %s)", name, node_name)
        return node_name

    def assert_ran_in_cluster(self, name: str) -> str:
        node_name = self.get_node_name(name)
        if self.is_target_node(node_name):
            raise AssertionError(f"Pod {name} was scheduled on kuack node \"{node_name}\", not in cluster")
        logger.info("Pod %s was processed in the cluster (node: %s)", name, node_name)
        return node_name

    def get_logs(self, name: str) -> str:
        return self._session.read_pod_log(name)

    def assert_logs_contain(self, name: str, message: str) -> None:
        logs = self.get_logs(name)
        if message not in logs:
            raise AssertionError(
                f"Pod {name} logs do not contain expected message \"{message}\". "
                f"Logs: {logs[:LOG_EXCERPT_LENGTH]}..."
            )

    def assert_checker_result(self, name: str, checker_url: str | None = None) -> None:
        """Assert that a checker pod logged a successful probe of ``checker_url``.

        Defaults to the configured checker URL.
        """
        if checker_url is None:
            checker_url = self.cfg.checker_url
        for message in (f'"url": "{checker_url}"', '"total_time_ms"', '"success": true'):
            self.assert_logs_contain(name, message)
