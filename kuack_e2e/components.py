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


"""Kuack node and agent releases and the endpoints that reach them."""

from __future__ import annotations

from kuack_e2e import logger
from kuack_e2e.config import E2EConfig, ReleaseSpec
from kuack_e2e.constants import (
    CLUSTER_DNS_SUFFIX,
    LABEL_INSTANCE,
    LABEL_NAME,
    NODE_APP_NAME,
    RELEASE_SUFFIX_LENGTH,
)
from kuack_e2e.errors import CleanupOutcome, NotInitializedError
from kuack_e2e.port_forward import PortForwardManager
from kuack_e2e.release import ReleaseManager
from kuack_e2e.session import ClusterSession
from kuack_e2e.tunnel import allocate_local_port
from kuack_e2e.utils import (
    collect_agent_helm_overrides,
    collect_node_helm_overrides,
    random_string,
    release_name,
)


class ReleaseComponent:
    """One helm release of the Kuack chart plus its reachable endpoint.

    When ``external_url`` is set no release is installed and the URL is used
    as the endpoint as is.
    """

    label = "release"

    def __init__(
        self,
        name: str,
        cfg: E2EConfig,
        session: ClusterSession,
        releases: ReleaseManager,
        port_forwards: PortForwardManager,
        external_url: str,
        service_port: int,
    ) -> None:
        self.name = name
        self.cfg = cfg
        self._session = session
        self._releases = releases
        self._port_forwards = port_forwards
        self.external_url = external_url
        self.service_port = service_port
        self.local_port: int | None = None
        self.install_attempted = False
        self._url: str | None = None

    @property
    def use_external(self) -> bool:
        return bool(self.external_url)

    def helm_overrides(self) -> list[str]:
        raise NotImplementedError

    def init(self) -> str:
        """Install the release (unless external) and derive its endpoint.

        Returns:
            The endpoint URL.

        Raises:
            ReleaseInstallError: If helm fails.
            PortInUseError, TunnelNotReadyError, ResourceNotFoundError: If the
                local tunnel cannot be established.
        """
        if self.use_external:
            logger.info("[%s] Using external endpoint at %s", self.label, self.external_url)
            self._url = self.external_url
            return self._url

        spec = ReleaseSpec(
            name=self.name,
            chart_ref=self.cfg.helm_chart,
            version=self.cfg.helm_chart_version,
            values=tuple(self.helm_overrides()),
        )
        # A failed install can still leave a release behind.
        self.install_attempted = True
        self._releases.install(spec)

        if self._session.in_cluster:
            self._url = (
                f"http://{self.name}.{self._session.namespace}.{CLUSTER_DNS_SUFFIX}:{self.service_port}/"
            )
        else:
            port = allocate_local_port(self.cfg.shard, self.cfg.tunnel_base_port)
            self.local_port = port
            self._port_forwards.open(self.name, self.service_port, port)
            self._url = f"http://localhost:{port}/"
        logger.info("[%s] %s reachable at %s", self.label, self.name, self._url)
        return self._url

    def get_url(self) -> str:
        if self._url is None:
            raise NotInitializedError(f"{self.label.capitalize()} {self.name} has not been initialized")
        return self._url

    def log_selector(self) -> str:
        return f"{LABEL_INSTANCE}={self.name}"

    def get_logs(self) -> str:
        return self._session.read_logs_by_selector(self.log_selector())

    def close_tunnel(self) -> CleanupOutcome | None:
        if self.local_port is None:
            return None
        logger.info(
            "[%s] Stopping port-forward: localhost:%d -> svc/%s:%d",
            self.label, self.local_port, self.name, self.service_port,
        )
        outcome = self._port_forwards.close(self.local_port)
        self.local_port = None
        return outcome

    def delete_release(self) -> CleanupOutcome | None:
        if self.use_external:
            logger.info("[%s] Using external endpoint, skipping cleanup", self.label)
            return None
        if not self.install_attempted:
            return None
        outcome = self._releases.delete(self.name)
        self.install_attempted = False
        return outcome

    def destroy(self) -> list[CleanupOutcome]:
        """Close the tunnel then delete the release; never raises for either step."""
        self._url = None
        return [o for o in (self.close_tunnel(), self.delete_release()) if o is not None]


class NodeComponent(ReleaseComponent):
    """Per-scenario Kuack node release (agent disabled)."""

    label = "node"

    def __init__(
        self,
        feature_name: str,
        scenario_name: str,
        cfg: E2EConfig,
        session: ClusterSession,
        releases: ReleaseManager,
        port_forwards: PortForwardManager,
    ) -> None:
        name = release_name(cfg.node_release_prefix, cfg.shard, random_string(RELEASE_SUFFIX_LENGTH))
        super().__init__(
            name, cfg, session, releases, port_forwards,
            external_url=cfg.external_node_url,
            service_port=cfg.node_service_port,
        )
        self.feature_name = feature_name
        self.scenario_name = scenario_name

    def helm_overrides(self) -> list[str]:
        return collect_node_helm_overrides(self.name, self.feature_name, self.scenario_name, self.cfg.test_id)

    def log_selector(self) -> str:
        if self.use_external:
            return f"{LABEL_NAME}={NODE_APP_NAME}"
        return super().log_selector()


class AgentComponent(ReleaseComponent):
    """Per-worker Kuack agent release (node disabled)."""

    label = "agent"

    def __init__(
        self,
        cfg: E2EConfig,
        session: ClusterSession,
        releases: ReleaseManager,
        port_forwards: PortForwardManager,
    ) -> None:
        name = release_name(cfg.agent_release_prefix, cfg.shard, random_string(RELEASE_SUFFIX_LENGTH))
        super().__init__(
            name, cfg, session, releases, port_forwards,
            external_url=cfg.external_agent_url,
            service_port=cfg.agent_service_port,
        )

    def helm_overrides(self) -> list[str]:
        return collect_agent_helm_overrides(self.name, self.cfg.test_id)
