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


"""Shared fakes for the Kubernetes API and the helm CLI."""

from __future__ import annotations

import copy
import json
import socket
import threading

import pytest
import sh
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from kuack_e2e.config import E2EConfig
from kuack_e2e.constants import LABEL_HOSTNAME
from kuack_e2e.logs import LogCaptureHub
from kuack_e2e.session import ClusterSession
from kuack_e2e.tunnel import TunnelRegistry

pytest_plugins = ["pytester"]

NAMESPACE = "e2e"

# Every string field of NodeSystemInfo is required by the client models.
_NODE_INFO_DEFAULTS = {
    attr: "test" for attr, kind in client.V1NodeSystemInfo.openapi_types.items() if kind == "str"
}


def _matches(labels: dict | None, label_selector: str | None) -> bool:
    if not label_selector:
        return True
    labels = labels or {}
    for term in label_selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


def _not_found(kind: str, name: str) -> ApiException:
    return ApiException(status=404, reason=f"{kind} {name} not found")


def make_pod(
    name: str,
    phase: str = "Pending",
    labels: dict | None = None,
    node_name: str | None = None,
    image: str = "busybox",
) -> client.V1Pod:
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name, namespace=NAMESPACE, labels=labels, resource_version="1"),
        spec=client.V1PodSpec(containers=[client.V1Container(name="main", image=image)], node_name=node_name),
        status=client.V1PodStatus(phase=phase),
    )


def make_node(
    name: str,
    labels: dict | None = None,
    architecture: str = "amd64",
    operating_system: str = "linux",
) -> client.V1Node:
    info = client.V1NodeSystemInfo(
        **{**_NODE_INFO_DEFAULTS, "architecture": architecture, "operating_system": operating_system},
    )
    return client.V1Node(
        metadata=client.V1ObjectMeta(name=name, labels=labels),
        status=client.V1NodeStatus(node_info=info),
    )


def make_service(name: str, selector: dict | None, port: int = 8080, target_port=8080) -> client.V1Service:
    return client.V1Service(
        metadata=client.V1ObjectMeta(name=name, namespace=NAMESPACE),
        spec=client.V1ServiceSpec(
            selector=selector,
            ports=[client.V1ServicePort(port=port, target_port=target_port)],
        ),
    )


def _pod_from_manifest(body: dict, resource_version: str) -> client.V1Pod:
    meta = body["metadata"]
    spec = body["spec"]
    containers = [
        client.V1Container(
            name=c["name"],
            image=c["image"],
            env=[client.V1EnvVar(name=e["name"], value=e["value"]) for e in c.get("env", [])] or None,
        )
        for c in spec["containers"]
    ]
    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=meta["name"],
            namespace=NAMESPACE,
            labels=meta.get("labels"),
            resource_version=resource_version,
        ),
        spec=client.V1PodSpec(
            containers=containers,
            node_selector=spec.get("nodeSelector"),
            restart_policy=spec.get("restartPolicy"),
        ),
        status=client.V1PodStatus(phase="Pending"),
    )


class FakeCoreV1Api:
    """In-memory stand-in for ``CoreV1Api`` covering the calls the package makes.

    ``phase_scripts`` maps a pod name to the phases successive reads report;
    the last phase sticks. Leaving Pending schedules the pod on the node named
    by its hostname selector, or on ``default_node``.
    """

    def __init__(self) -> None:
        self.pods: dict[str, client.V1Pod] = {}
        self.services: dict[str, client.V1Service] = {}
        self.nodes: dict[str, client.V1Node] = {}
        self.logs: dict[str, str] = {}
        self.phase_scripts: dict[str, list[str]] = {}
        self.observed_phases: dict[str, list[str]] = {}
        self.default_node = "cluster-worker-1"
        self.replaced: list[str] = []
        self.node_reads: list[str] = []
        self._lock = threading.Lock()

    # -- pods --

    def create_namespaced_pod(self, namespace, body):
        name = body["metadata"]["name"]
        with self._lock:
            if name in self.pods:
                raise ApiException(status=409, reason="AlreadyExists")
            self.pods[name] = _pod_from_manifest(body, "1")
            return copy.deepcopy(self.pods[name])

    def replace_namespaced_pod(self, name, namespace, body):
        with self._lock:
            current = self.pods.get(name)
            if current is None:
                raise _not_found("pod", name)
            if body["metadata"].get("resourceVersion") != current.metadata.resource_version:
                raise ApiException(status=409, reason="Conflict")
            version = str(int(current.metadata.resource_version) + 1)
            self.pods[name] = _pod_from_manifest(body, version)
            self.replaced.append(name)
            return copy.deepcopy(self.pods[name])

    def read_namespaced_pod(self, name, namespace):
        with self._lock:
            pod = self.pods.get(name)
            if pod is None:
                raise _not_found("pod", name)
            script = self.phase_scripts.get(name)
            if script:
                phase = script.pop(0) if len(script) > 1 else script[0]
                pod.status.phase = phase
                if phase != "Pending" and not pod.spec.node_name:
                    pod.spec.node_name = (pod.spec.node_selector or {}).get(LABEL_HOSTNAME, self.default_node)
            self.observed_phases.setdefault(name, []).append(pod.status.phase)
            return copy.deepcopy(pod)

    def list_namespaced_pod(self, namespace, label_selector=None):
        with self._lock:
            items = [copy.deepcopy(p) for p in self.pods.values() if _matches(p.metadata.labels, label_selector)]
        return client.V1PodList(items=items)

    def delete_namespaced_pod(self, name, namespace, grace_period_seconds=None):
        with self._lock:
            if self.pods.pop(name, None) is None:
                raise _not_found("pod", name)

    def delete_collection_namespaced_pod(self, namespace, label_selector=None, grace_period_seconds=None):
        with self._lock:
            for name in [n for n, p in self.pods.items() if _matches(p.metadata.labels, label_selector)]:
                del self.pods[name]

    def read_namespaced_pod_log(self, name, namespace, container=None, tail_lines=None):
        if name not in self.pods:
            raise _not_found("pod", name)
        return self.logs.get(name, "")

    # -- services and nodes --

    def read_namespaced_service(self, name, namespace):
        service = self.services.get(name)
        if service is None:
            raise _not_found("service", name)
        return service

    def read_node(self, name):
        self.node_reads.append(name)
        node = self.nodes.get(name)
        if node is None:
            raise _not_found("node", name)
        return node

    def list_node(self, label_selector=None):
        return client.V1NodeList(items=[n for n in self.nodes.values() if _matches(n.metadata.labels, label_selector)])


class FakePortForward:
    """Mimics the ``kubernetes.stream.portforward`` result with an echoing pod."""

    def __init__(self, port: int) -> None:
        self.port = port
        local, remote = socket.socketpair()
        self._local = local
        threading.Thread(target=self._serve, args=(remote,), daemon=True).start()

    @staticmethod
    def _serve(remote: socket.socket) -> None:
        with remote:
            while True:
                data = remote.recv(1024)
                if not data:
                    return
                remote.sendall(b"pod:" + data)

    def socket(self, port: int) -> socket.socket:
        assert port == self.port
        return self._local

    def error(self, port: int) -> str | None:
        return None


class FakeHelm:
    """Callable standing in for ``sh.helm`` with an in-memory release set."""

    def __init__(self, releases: tuple[str, ...] = ()) -> None:
        self.releases: set[str] = set(releases)
        self.calls: list[list[str]] = []
        self.install_error: str | None = None
        self.uninstall_errors: dict[str, str] = {}
        self._lock = threading.Lock()

    def __call__(self, *args: str) -> str:
        with self._lock:
            self.calls.append(list(args))
            command, rest = args[0], args[1:]
            if command == "install":
                name = rest[0]
                if self.install_error is not None:
                    # helm keeps a failed release around
                    self.releases.add(name)
                    raise sh.ErrorReturnCode_1(f"helm install {name}", b"", self.install_error.encode())
                self.releases.add(name)
                return f"NAME: {name}\nSTATUS: deployed\n"
            if command == "uninstall":
                name = rest[0]
                if name in self.uninstall_errors:
                    raise sh.ErrorReturnCode_1(f"helm uninstall {name}", b"", self.uninstall_errors[name].encode())
                if name not in self.releases:
                    raise sh.ErrorReturnCode_1(
                        f"helm uninstall {name}", b"", f"Error: uninstall: Release not loaded: {name}: release: not found".encode()
                    )
                self.releases.discard(name)
                return f'release "{name}" uninstalled\n'
            if command == "list":
                return json.dumps([{"name": n, "namespace": NAMESPACE} for n in sorted(self.releases)])
            raise AssertionError(f"unexpected helm call: {args}")

    def commands(self, command: str) -> list[list[str]]:
        return [c for c in self.calls if c[0] == command]


@pytest.fixture
def core() -> FakeCoreV1Api:
    return FakeCoreV1Api()


@pytest.fixture
def session(core: FakeCoreV1Api) -> ClusterSession:
    return ClusterSession(core, NAMESPACE, in_cluster=False)


@pytest.fixture
def incluster_session(core: FakeCoreV1Api) -> ClusterSession:
    return ClusterSession(core, NAMESPACE, in_cluster=True)


@pytest.fixture
def helm() -> FakeHelm:
    return FakeHelm()


@pytest.fixture
def cfg() -> E2EConfig:
    return E2EConfig(shard_index=0, test_id="run-1", external_node_url="", external_agent_url="")


@pytest.fixture
def hub():
    hub = LogCaptureHub()
    yield hub
    hub.uninstall_global_hooks()


@pytest.fixture
def tunnels():
    tunnels = TunnelRegistry()
    yield tunnels
    tunnels.stop_all()
