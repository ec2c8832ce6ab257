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


"""Per-scenario resource registry.

The registry owns everything a scenario creates: the node release and its
tunnel, browser-like driver sessions, and the workloads applied in the
cluster. ``destroy()`` tears all of it down in a fixed order, runs every
stage even when an earlier one fails, and reports outcomes instead of
raising.
"""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from kubernetes import client

from kuack_e2e import logger
from kuack_e2e.components import NodeComponent
from kuack_e2e.config import E2EConfig
from kuack_e2e.constants import DEFAULT_DRIVER_CLOSE_MAX_WORKERS
from kuack_e2e.errors import (
    CleanupOutcome,
    KuackE2EError,
    NotInitializedError,
    ResourceNotFoundError,
    failed_outcomes,
)
from kuack_e2e.port_forward import PortForwardManager
from kuack_e2e.release import ReleaseManager
from kuack_e2e.session import ClusterSession
from kuack_e2e.workload import WorkloadManager


@runtime_checkable
class DriverSession(Protocol):
    """A client session (typically a browser) opened against an endpoint."""

    def open(self, url: str) -> None: ...

    def close(self) -> None: ...

    def screenshot(self) -> bytes | None: ...

    def get_video_path(self) -> str | None: ...


class RegistryState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    TEARING_DOWN = "tearing-down"
    DESTROYED = "destroyed"


@dataclass(frozen=True)
class Evidence:
    driver: str
    screenshot: bytes | None = None
    video_path: str | None = None


def _guarded(resource: str, fn: Callable[[], Any]) -> CleanupOutcome:
    try:
        fn()
    except Exception as e:
        logger.warning("Cleanup of %s failed: %s", resource, e)
        return CleanupOutcome(resource, False, str(e))
    return CleanupOutcome(resource, True, "closed")


class ScenarioRegistry:
    """Resources of one scenario run.

    Args:
        cfg: Environment configuration.
        session: Cluster session of this worker.
        releases: Helm release manager bound to the session namespace.
        port_forwards: Port-forward manager owning this worker's tunnels.
        workloads: Workload manager used to delete tracked pods.
    """

    def __init__(
        self,
        cfg: E2EConfig,
        session: ClusterSession,
        releases: ReleaseManager,
        port_forwards: PortForwardManager,
        workloads: WorkloadManager,
    ) -> None:
        self.cfg = cfg
        self._session = session
        self._releases = releases
        self._port_forwards = port_forwards
        self.workloads = workloads
        self.state = RegistryState.UNINITIALIZED
        self.feature_name: str | None = None
        self.scenario_name: str | None = None
        self._node: NodeComponent | None = None
        self._drivers: dict[str, DriverSession] = {}
        self._workloads: dict[str, client.V1Pod] = {}
        self._pending_workloads: set[str] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self, feature_name: str, scenario_name: str) -> str:
        """Provision the scenario's node and return its endpoint.

        On failure the registry stays in ``INITIALIZING`` and ``destroy()``
        releases whatever was created.

        Raises:
            KuackE2EError: If the registry was already initialized.
            ReleaseInstallError: If the node release cannot be installed.
        """
        if self.state != RegistryState.UNINITIALIZED:
            raise KuackE2EError(f"Scenario registry is {self.state.value}, cannot initialize it again")
        self.state = RegistryState.INITIALIZING
        self.feature_name = feature_name
        self.scenario_name = scenario_name
        self._node = NodeComponent(
            feature_name, scenario_name, self.cfg, self._session, self._releases, self._port_forwards,
        )
        endpoint = self._node.init()
        self.state = RegistryState.READY
        return endpoint

    def destroy(self) -> list[CleanupOutcome]:
        """Release every resource of the scenario.

        Order: drivers (in parallel), the node tunnel, tracked workloads, the
        node release. Safe to call in any state and more than once.

        Returns:
            One outcome per resource that needed cleanup.
        """
        if self.state == RegistryState.DESTROYED:
            return []
        self.state = RegistryState.TEARING_DOWN

        outcomes = self._close_drivers()
        node = self._node
        if node is not None:
            outcomes.extend(self._stage(f"tunnel/{node.name}", node.close_tunnel))
        outcomes.extend(self._delete_workloads())
        if node is not None:
            outcomes.extend(self._stage(f"release/{node.name}", node.delete_release))

        self.state = RegistryState.DESTROYED
        failed = failed_outcomes(outcomes)
        if failed:
            logger.warning(
                "Scenario %s left %d resource(s) behind: %s",
                self.scenario_name, len(failed), ", ".join(o.resource for o in failed),
            )
        return outcomes

    @staticmethod
    def _stage(resource: str, fn: Callable[[], CleanupOutcome | None]) -> list[CleanupOutcome]:
        try:
            outcome = fn()
        except Exception as e:
            logger.warning("Cleanup of %s failed: %s", resource, e)
            return [CleanupOutcome(resource, False, str(e))]
        return [outcome] if outcome is not None else []

    def _close_drivers(self) -> list[CleanupOutcome]:
        drivers = dict(self._drivers)
        self._drivers.clear()
        if not drivers:
            return []

        outcomes: list[CleanupOutcome] = []
        with ThreadPoolExecutor(max_workers=min(len(drivers), DEFAULT_DRIVER_CLOSE_MAX_WORKERS)) as executor:
            futures = {
                executor.submit(_guarded, f"driver/{name}", driver.close): name
                for name, driver in drivers.items()
            }
            for future in as_completed(futures):
                outcomes.append(future.result())
        return sorted(outcomes, key=lambda o: o.resource)

    def _delete_workloads(self) -> list[CleanupOutcome]:
        outcomes = []
        pending = sorted(self._pending_workloads - self._workloads.keys())
        for name in [*self._workloads, *pending]:
            resource = f"pod/{name}"
            try:
                deleted = self.workloads.delete(name)
            except Exception as e:
                logger.warning("Failed to delete pod %s: %s", name, e)
                outcomes.append(CleanupOutcome(resource, False, str(e)))
                continue
            outcomes.append(CleanupOutcome(resource, True, "deleted" if deleted else "not found"))
        self._workloads.clear()
        self._pending_workloads.clear()
        return outcomes

    # ------------------------------------------------------------------
    # Node
    # ------------------------------------------------------------------

    def get_node(self) -> NodeComponent:
        if self._node is None:
            raise NotInitializedError("Node has not been initialized")
        return self._node

    def get_release_endpoint(self) -> str:
        """Return the node endpoint URL.

        Raises:
            NotInitializedError: Unless the registry is ``READY``.
        """
        if self.state != RegistryState.READY:
            raise NotInitializedError(f"Node has not been initialized (registry is {self.state.value})")
        return self.get_node().get_url()

    # ------------------------------------------------------------------
    # Drivers
    # ------------------------------------------------------------------

    def add_driver(self, name: str, driver: DriverSession) -> None:
        self._drivers[name] = driver

    def get_driver(self, name: str) -> DriverSession:
        try:
            return self._drivers[name]
        except KeyError:
            raise ResourceNotFoundError(f"Driver {name} not found") from None

    def get_drivers(self) -> dict[str, DriverSession]:
        return dict(self._drivers)

    def capture_evidence(self) -> list[Evidence]:
        """Collect a screenshot and video path from every driver, best-effort."""
        evidence = []
        for name, driver in self._drivers.items():
            screenshot = video_path = None
            try:
                screenshot = driver.screenshot()
            except Exception as e:
                logger.debug("Screenshot of driver %s failed: %s", name, e)
            try:
                video_path = driver.get_video_path()
            except Exception as e:
                logger.debug("Video path of driver %s unavailable: %s", name, e)
            evidence.append(Evidence(name, screenshot, video_path))
        return evidence

    # ------------------------------------------------------------------
    # Workloads
    # ------------------------------------------------------------------

    def track_workload(self, pod: client.V1Pod) -> None:
        self._workloads[pod.metadata.name] = pod

    def apply_workload(self, manifest: dict[str, Any]) -> client.V1Pod:
        """Apply a pod manifest and track it for teardown."""
        name = manifest["metadata"]["name"]
        # Deleted on teardown even if the call fails after the pod was created.
        self._pending_workloads.add(name)
        pod = self.workloads.apply(manifest)
        self._pending_workloads.discard(name)
        self._workloads[name] = pod
        return pod

    def get_workload(self, name: str) -> client.V1Pod:
        try:
            return self._workloads[name]
        except KeyError:
            raise ResourceNotFoundError(f"Pod {name} not found") from None

    def get_single_workload(self) -> client.V1Pod:
        if len(self._workloads) != 1:
            raise ResourceNotFoundError(f"Expected exactly one pod, but got {len(self._workloads)}")
        return next(iter(self._workloads.values()))

    def get_workloads(self) -> list[client.V1Pod]:
        return list(self._workloads.values())

    def get_workload_names(self) -> list[str]:
        return list(self._workloads)
