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


"""Service port-forwarding over local tunnels."""

from __future__ import annotations

import functools
import socket

from kubernetes.client.exceptions import ApiException

from kuack_e2e import logger
from kuack_e2e.constants import LOOPBACK_HOST, TUNNEL_READY_TIMEOUT_SECONDS
from kuack_e2e.errors import (
    CleanupOutcome,
    ResourceNotFoundError,
    TunnelNotReadyError,
    UnsupportedTargetPortError,
)
from kuack_e2e.session import ClusterSession
from kuack_e2e.tunnel import Tunnel, TunnelRegistry, assert_local_port_free, pipe_sockets


class PortForwardManager:
    """Maps cluster Services to local ports through streaming tunnels.

    In-cluster sessions never need a tunnel: services are reachable by
    their cluster DNS names, so :meth:`open` is a no-op there.
    """

    def __init__(
        self,
        session: ClusterSession,
        tunnels: TunnelRegistry,
        ready_timeout: float = TUNNEL_READY_TIMEOUT_SECONDS,
    ) -> None:
        self._session = session
        self._tunnels = tunnels
        self._ready_timeout = ready_timeout

    def open(self, service_name: str, service_port: int, local_port: int) -> Tunnel | None:
        """Forward ``localhost:local_port`` to ``svc/service_name:service_port``.

        Args:
            service_name: Name of the Service in the session namespace.
            service_port: Port exposed by the Service.
            local_port: Local port to listen on.

        Returns:
            The ready tunnel, or None when running in-cluster.

        Raises:
            PortInUseError: If the local port is bound outside the registry.
            ResourceNotFoundError: If the Service, its port, or a Running pod is missing.
            UnsupportedTargetPortError: If the Service uses a named target port.
            TunnelNotReadyError: If the tunnel is not connectable in time.
        """
        if self._session.in_cluster:
            logger.debug("In-cluster session, skipping port-forward for svc/%s", service_name)
            return None

        self._tunnels.stop(local_port)
        assert_local_port_free(local_port)

        selector, target_port = self._resolve_service(service_name, service_port)
        pod_name = self._select_running_pod(service_name, selector)
        target = f"svc/{service_name}:{service_port} (pod/{pod_name}:{target_port})"
        logger.info("Starting port-forward: localhost:%d -> %s", local_port, target)

        tunnel = self._tunnels.start(
            local_port,
            functools.partial(self._forward, pod_name, target_port),
            host=LOOPBACK_HOST,
            target=target,
        )
        try:
            tunnel.wait_ready(self._ready_timeout)
        except TunnelNotReadyError:
            self._tunnels.stop(local_port)
            raise
        logger.info("Port-forward ready on localhost:%d", local_port)
        return tunnel

    def close(self, local_port: int) -> CleanupOutcome:
        """Stop the tunnel on ``local_port``; safe even if :meth:`open` never succeeded."""
        return self._tunnels.stop(local_port)

    def _resolve_service(self, service_name: str, service_port: int) -> tuple[str, int]:
        try:
            service = self._session.read_service(service_name)
        except ApiException as e:
            if e.status == 404:
                raise ResourceNotFoundError(
                    f"Service {service_name} not found in namespace {self._session.namespace}"
                ) from e
            raise

        selector = service.spec.selector or {}
        if not selector:
            raise ResourceNotFoundError(f"Service {service_name} has no pod selector")

        port = next((p for p in service.spec.ports or [] if p.port == service_port), None)
        if port is None:
            exposed = ", ".join(str(p.port) for p in service.spec.ports or []) or "none"
            raise ResourceNotFoundError(
                f"Service {service_name} does not expose port {service_port} (exposed: {exposed})"
            )

        target_port = port.target_port if port.target_port is not None else service_port
        if isinstance(target_port, str):
            if not target_port.isdigit():
                raise UnsupportedTargetPortError(
                    f"Service {service_name} port {service_port} uses named target port "
                    f"'{target_port}'; only numeric target ports are supported"
                )
            target_port = int(target_port)

        label_selector = ",".join(f"{k}={v}" for k, v in sorted(selector.items()))
        return label_selector, target_port

    def _select_running_pod(self, service_name: str, label_selector: str) -> str:
        pods = self._session.list_pods(label_selector)
        for pod in pods:
            if pod.status is not None and pod.status.phase == "Running":
                return pod.metadata.name

        observed = ", ".join(
            f"{p.metadata.name}={p.status.phase if p.status else 'Unknown'}" for p in pods
        ) or "no pods"
        raise ResourceNotFoundError(
            f"No Running pod backs service {service_name} (selector {label_selector}); observed: {observed}"
        )

    def _forward(self, pod_name: str, target_port: int, local: socket.socket) -> None:
        stream = self._session.open_port_forward(pod_name, target_port)
        remote = stream.socket(target_port)
        remote.setblocking(True)
        try:
            pipe_sockets(local, remote)
        finally:
            remote.close()
        error = stream.error(target_port)
        if error:
            logger.debug("Port-forward to pod/%s:%d reported: %s", pod_name, target_port, error)
