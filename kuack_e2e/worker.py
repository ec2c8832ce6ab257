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


"""Worker-level context: session, shared managers, and the agent release."""

from __future__ import annotations

from collections.abc import Callable

from kuack_e2e import logger
from kuack_e2e.components import AgentComponent
from kuack_e2e.config import E2EConfig
from kuack_e2e.errors import CleanupOutcome, NotInitializedError
from kuack_e2e.logs import LogCaptureHub, default_hub
from kuack_e2e.port_forward import PortForwardManager
from kuack_e2e.registry import ScenarioRegistry
from kuack_e2e.release import ReleaseManager
from kuack_e2e.session import ClusterSession, init_session
from kuack_e2e.tunnel import TunnelRegistry
from kuack_e2e.workload import WorkloadManager


class WorkerContext:
    """Everything one test worker process shares across its scenarios.

    Args:
        cfg: Environment configuration; loaded from ``E2E_*`` variables when omitted.
        session: Cluster session; the process-scoped one is loaded when omitted.
        helm: Callable used instead of ``sh.helm``.
        hub: Log capture hub; the process-wide one when omitted.
    """

    def __init__(
        self,
        cfg: E2EConfig | None = None,
        session: ClusterSession | None = None,
        helm: Callable[..., str] | None = None,
        hub: LogCaptureHub | None = None,
    ) -> None:
        self.cfg = cfg if cfg is not None else E2EConfig()
        self._session = session
        self._helm = helm
        self.hub = hub if hub is not None else default_hub()
        self.tunnels = TunnelRegistry()
        self.releases: ReleaseManager | None = None
        self.port_forwards: PortForwardManager | None = None
        self.workloads: WorkloadManager | None = None
        self.agent: AgentComponent | None = None

    @property
    def session(self) -> ClusterSession:
        if self._session is None:
            raise NotInitializedError("Worker has not been bootstrapped")
        return self._session

    def bootstrap(self, install_agent: bool = True) -> WorkerContext:
        """Connect to the cluster and provision the worker's agent.

        A failure leaves :meth:`teardown` callable.

        Args:
            install_agent: Whether to provision the agent release (or use the
                external agent URL).

        Returns:
            This context.
        """
        self.hub.install_global_hooks()
        if self._session is None:
            self._session = init_session()
        session = self._session
        logger.info(
            "Worker shard %d using namespace %s (%s)",
            self.cfg.shard, session.namespace, "in-cluster" if session.in_cluster else "kubeconfig",
        )
        self.releases = ReleaseManager(session.namespace, self.cfg.helm_timeout, helm=self._helm)
        self.port_forwards = PortForwardManager(session, self.tunnels)
        self.workloads = WorkloadManager(session, self.cfg)

        if install_agent:
            self.agent = AgentComponent(self.cfg, session, self.releases, self.port_forwards)
            self.agent.init()
        return self

    def get_agent(self) -> AgentComponent:
        if self.agent is None:
            raise NotInitializedError("Agent has not been initialized")
        return self.agent

    def new_scenario(self) -> ScenarioRegistry:
        """Create an uninitialized registry bound to this worker's managers."""
        if self.releases is None or self.port_forwards is None or self.workloads is None:
            raise NotInitializedError("Worker has not been bootstrapped")
        return ScenarioRegistry(self.cfg, self.session, self.releases, self.port_forwards, self.workloads)

    def teardown(self) -> list[CleanupOutcome]:
        """Remove the agent release and stop every remaining tunnel; never raises."""
        outcomes: list[CleanupOutcome] = []
        if self.agent is not None:
            try:
                outcomes.extend(self.agent.destroy())
            except Exception as e:
                logger.warning("Agent cleanup failed: %s", e)
                outcomes.append(CleanupOutcome(f"release/{self.agent.name}", False, str(e)))
            self.agent = None
        outcomes.extend(self.tunnels.stop_all())
        return outcomes
