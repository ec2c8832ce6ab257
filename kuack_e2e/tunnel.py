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


"""Local TCP tunnel listeners keyed by port, plus port probing helpers."""

from __future__ import annotations

import select
import socket
import socketserver
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum

from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from kuack_e2e import logger
from kuack_e2e.constants import (
    CONNECT_PROBE_TIMEOUT_SECONDS,
    LOOPBACK_HOST,
    PORTS_PER_SHARD,
    TUNNEL_BUFFER_SIZE,
    TUNNEL_READY_POLL_INTERVAL_SECONDS,
    TUNNEL_READY_TIMEOUT_SECONDS,
    TUNNEL_STOP_TIMEOUT_SECONDS,
)
from kuack_e2e.errors import CleanupOutcome, PortInUseError, TunnelNotReadyError

ConnectionHandler = Callable[[socket.socket], None]


# ============================================================================
# Port probing
# ============================================================================

def can_connect(port: int, host: str = LOOPBACK_HOST) -> bool:
    """Check whether a TCP connection to ``host:port`` can be established."""
    try:
        with socket.create_connection((host, port), timeout=CONNECT_PROBE_TIMEOUT_SECONDS):
            return True
    except OSError:
        return False


def _probe_bind(port: int, host: str) -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        probe.bind((host, port))


def assert_local_port_free(port: int, host: str = LOOPBACK_HOST) -> None:
    """Assert that a local port can be bound by attempting a throwaway bind.

    Args:
        port: Local port number.
        host: Local interface address.

    Raises:
        PortInUseError: If the port is already bound.
    """
    try:
        _probe_bind(port, host)
    except OSError as err:
        raise PortInUseError(f"Local port {port} is already in use: {err}") from err


def find_free_port(host: str = LOOPBACK_HOST) -> int:
    """Let the OS allocate a free local port by binding to port 0."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


def allocate_local_port(shard: int, base_port: int | None = None, host: str = LOOPBACK_HOST) -> int:
    """Allocate a free local port, optionally inside the worker's shard range.

    Args:
        shard: Worker shard index.
        base_port: First port of the partitioned range, or None to let the OS pick.
        host: Local interface address.

    Returns:
        A port that was free at the time of the call.

    Raises:
        PortInUseError: If every port of the shard range is taken.
    """
    if base_port is None:
        return find_free_port(host)

    start = base_port + shard * PORTS_PER_SHARD
    for port in range(start, min(start + PORTS_PER_SHARD, 65536)):
        try:
            _probe_bind(port, host)
        except OSError:
            continue
        return port
    raise PortInUseError(f"No free local port in range {start}-{start + PORTS_PER_SHARD - 1} (shard {shard})")


def wait_until_connectable(
    port: int,
    timeout: float = TUNNEL_READY_TIMEOUT_SECONDS,
    host: str = LOOPBACK_HOST,
    target: str = "",
) -> None:
    """Block until ``host:port`` accepts connections.

    Args:
        port: Local port number.
        timeout: Maximum seconds to wait.
        host: Local interface address.
        target: Description of the tunnel target, used in the error message.

    Raises:
        TunnelNotReadyError: If the port is not connectable within the timeout.
    """
    retrying = Retrying(
        stop=stop_after_delay(timeout),
        wait=wait_fixed(TUNNEL_READY_POLL_INTERVAL_SECONDS),
        retry=retry_if_result(lambda ok: not ok),
    )
    try:
        retrying(can_connect, port, host)
    except RetryError as err:
        suffix = f" -> {target}" if target else ""
        raise TunnelNotReadyError(
            f"Tunnel {host}:{port}{suffix} not connectable after {timeout:g}s"
        ) from err


# ============================================================================
# Tunnel listeners
# ============================================================================

class TunnelState(str, Enum):
    STARTING = "Starting"
    READY = "Ready"
    STOPPED = "Stopped"


class _ConnectionRequestHandler(socketserver.BaseRequestHandler):
    """Hands each accepted socket to the tunnel's connection handler."""

    server: _TunnelServer

    def handle(self) -> None:
        self.server.track(self.request)
        try:
            self.server.on_connection(self.request)
        except Exception as e:
            logger.debug("Tunnel on port %d: forwarding error ignored: %s", self.server.port, e)
        finally:
            self.server.untrack(self.request)


class _TunnelServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True
    block_on_close = False

    def __init__(self, address: tuple[str, int], on_connection: ConnectionHandler) -> None:
        self.on_connection = on_connection
        self.port = address[1]
        self._connections: set[socket.socket] = set()
        self._conn_lock = threading.Lock()
        super().__init__(address, _ConnectionRequestHandler)

    def track(self, conn: socket.socket) -> None:
        with self._conn_lock:
            self._connections.add(conn)

    def untrack(self, conn: socket.socket) -> None:
        with self._conn_lock:
            self._connections.discard(conn)

    def close_connections(self) -> None:
        with self._conn_lock:
            conns = list(self._connections)
            self._connections.clear()
        for conn in conns:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            conn.close()

    def handle_error(self, request, client_address) -> None:
        # Peer resets during cleanup are expected.
        logger.debug("Tunnel on port %d: connection from %s failed", self.port, client_address)


@dataclass
class Tunnel:
    """Handle of one local listener.

    Attributes:
        local_port: Local port the listener is bound to.
        host: Local interface address.
        target: Description of the forwarded resource (e.g. ``svc/x:8080``).
        state: Lifecycle state of the listener.
    """

    local_port: int
    host: str
    target: str
    state: TunnelState = TunnelState.STARTING
    _server: _TunnelServer | None = field(default=None, repr=False)
    _thread: threading.Thread | None = field(default=None, repr=False)

    def wait_ready(self, timeout: float = TUNNEL_READY_TIMEOUT_SECONDS) -> Tunnel:
        """Block until the listener accepts loopback connections, then mark it ready."""
        wait_until_connectable(self.local_port, timeout, self.host, self.target)
        self.state = TunnelState.READY
        return self

    def _shutdown(self) -> None:
        self.state = TunnelState.STOPPED
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        self._server.close_connections()
        if self._thread is not None:
            self._thread.join(TUNNEL_STOP_TIMEOUT_SECONDS)


class TunnelRegistry:
    """Process-scoped registry of tunnel listeners keyed by local port."""

    def __init__(self) -> None:
        self._tunnels: dict[int, Tunnel] = {}
        self._lock = threading.Lock()

    def __contains__(self, port: int) -> bool:
        with self._lock:
            return port in self._tunnels

    def ports(self) -> list[int]:
        with self._lock:
            return sorted(self._tunnels)

    def get(self, port: int) -> Tunnel | None:
        with self._lock:
            return self._tunnels.get(port)

    def start(
        self,
        port: int,
        on_connection: ConnectionHandler,
        host: str = LOOPBACK_HOST,
        target: str = "",
    ) -> Tunnel:
        """Start a listener on ``port`` that hands every connection to ``on_connection``.

        A tunnel already tracked on the same port is stopped first.

        Args:
            port: Local port to listen on.
            on_connection: Callable receiving each accepted socket.
            host: Local interface address.
            target: Description of the forwarded resource.

        Returns:
            The tunnel handle in ``STARTING`` state.

        Raises:
            PortInUseError: If the port is held outside this registry.
        """
        self.stop(port)
        assert_local_port_free(port, host)
        try:
            server = _TunnelServer((host, port), on_connection)
        except OSError as err:
            raise PortInUseError(f"Local port {port} is already in use: {err}") from err

        thread = threading.Thread(
            target=server.serve_forever,
            kwargs={"poll_interval": 0.1},
            name=f"tunnel-{port}",
            daemon=True,
        )
        tunnel = Tunnel(local_port=port, host=host, target=target, _server=server, _thread=thread)
        with self._lock:
            self._tunnels[port] = tunnel
        thread.start()
        logger.debug("Tunnel listening on %s:%d -> %s", host, port, target or "<handler>")
        return tunnel

    def stop(self, port: int) -> CleanupOutcome:
        """Stop the listener on ``port``; unknown or stopped ports are a no-op."""
        resource = f"tunnel/{port}"
        with self._lock:
            tunnel = self._tunnels.pop(port, None)
        if tunnel is None:
            return CleanupOutcome(resource, True, "not running")
        try:
            tunnel._shutdown()
        except OSError as e:
            logger.warning("Error stopping tunnel on port %d: %s", port, e)
            return CleanupOutcome(resource, False, str(e))
        return CleanupOutcome(resource, True, "stopped")

    def stop_all(self) -> list[CleanupOutcome]:
        """Stop every tracked listener in parallel; failures are returned, never raised."""
        ports = self.ports()
        if not ports:
            return []

        logger.info("Stopping %d tunnel(s)", len(ports))
        outcomes: list[CleanupOutcome] = []
        with ThreadPoolExecutor(max_workers=len(ports)) as executor:
            futures = {executor.submit(self.stop, p): p for p in ports}
            for future in as_completed(futures):
                port = futures[future]
                try:
                    outcomes.append(future.result())
                except Exception as e:
                    logger.warning("Failed to stop tunnel on port %d: %s", port, e)
                    outcomes.append(CleanupOutcome(f"tunnel/{port}", False, str(e)))
        return sorted(outcomes, key=lambda o: o.resource)


def pipe_sockets(left: socket.socket, right: socket.socket, bufsize: int = TUNNEL_BUFFER_SIZE) -> None:
    """Copy bytes in both directions until either side closes.

    Args:
        left: First socket (e.g. the accepted local connection).
        right: Second socket (e.g. the cluster stream).
        bufsize: Maximum bytes read per ``recv``.
    """
    peers = {left: right, right: left}
    while True:
        readable, _, _ = select.select(list(peers), [], [])
        for sock in readable:
            data = sock.recv(bufsize)
            if not data:
                return
            peers[sock].sendall(data)
