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


"""Constants, dependency loading, and dep_value helper."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

PACKAGE_DIR = Path(__file__).resolve().parent


def load_dependencies() -> dict:
    """Load pinned chart and image references from dependencies.yaml.

    Returns:
        Parsed YAML content as a nested dictionary.
    """
    deps_file = PACKAGE_DIR / "dependencies.yaml"
    with open(deps_file) as f:
        return yaml.safe_load(f)


DEPENDENCIES = load_dependencies()


def dep_value(*keys: str, default: Any = None) -> Any:
    """Safely traverse the DEPENDENCIES dict by key path.

    Args:
        *keys: Sequence of dictionary keys to traverse.
        default: Value to return if any key is missing.

    Returns:
        The value at the nested key path, or *default* if not found.
    """
    node = DEPENDENCIES
    for key in keys:
        if not isinstance(node, dict):
            return default
        node = node.get(key)
        if node is None:
            return default
    return node


# -- In-cluster service account --
SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")
SERVICE_ACCOUNT_TOKEN_FILE = "token"
SERVICE_ACCOUNT_NAMESPACE_FILE = "namespace"
CLUSTER_DNS_SUFFIX = "svc.cluster.local"

# -- Helm --
HELM_VERSION_LATEST = "latest"
HELM_NOT_FOUND_MARKER = "not found"
DEFAULT_HELM_TIMEOUT = "5m"
DEFAULT_CLEANUP_MAX_WORKERS = 8

# -- Release naming --
DEFAULT_NODE_RELEASE_PREFIX = "kuack-node"
DEFAULT_AGENT_RELEASE_PREFIX = "kuack-agent"
RELEASE_SUFFIX_LENGTH = 10
K8S_NAME_MAX_LENGTH = 63
HELM_RELEASE_NAME_MAX_LENGTH = 53
RELEASE_PREFIX_MAX_LENGTH = 30

# -- Helm override keys --
HELM_KEY_AGENT_ENABLED = "agent.enabled"
HELM_KEY_NODE_ENABLED = "node.enabled"
HELM_KEY_FULLNAME_OVERRIDE = "fullnameOverride"
# Escaped dots keep "kuack.io/..." as a single key segment for helm --set.
HELM_KEY_LABEL_FEATURE = "global.labels.kuack\\.io/feature"
HELM_KEY_LABEL_SCENARIO = "global.labels.kuack\\.io/scenario"
HELM_KEY_LABEL_TEST_ID = "global.labels.kuack\\.io/test-id"

# -- Labels --
LABEL_INSTANCE = "app.kubernetes.io/instance"
LABEL_NAME = "app.kubernetes.io/name"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_HOSTNAME = "kubernetes.io/hostname"
MANAGED_BY_VALUE = "kuack-e2e"
NODE_APP_NAME = "kuack-node"

# -- Kuack virtual node identification --
KUACK_NODE_NAME_MARKER = "kuack"
KUACK_NODE_TYPE_LABEL = "kuack.io/node-type"
KUACK_NODE_TYPE_VALUE = "kuack-node"
KUACK_PROVIDER_TAINT_KEY = "kuack.io/provider"
KUACK_PROVIDER_TAINT_VALUE = "kuack"
KUACK_NODE_ARCHITECTURES = ("wasm", "wasm32")
KUACK_NODE_OPERATING_SYSTEMS = ("browser", "wasi")

# -- Checker workload --
CHECKER_CONTAINER_NAME = "main"
CHECKER_ENV_TARGET_URL = "TARGET_URL"
DEFAULT_CHECKER_IMAGE = dep_value("checker", "image", default="ghcr.io/kuack-io/checker:latest")
DEFAULT_CHECKER_URL = dep_value("checker", "url", default="https://kuack.io")

# -- Chart defaults --
DEFAULT_HELM_CHART = dep_value("kuack_chart", "ref", default="oci://ghcr.io/kuack-io/charts/kuack")
DEFAULT_HELM_CHART_VERSION = dep_value("kuack_chart", "version", default=HELM_VERSION_LATEST)

# -- Service ports --
DEFAULT_NODE_SERVICE_PORT = 8080
DEFAULT_AGENT_SERVICE_PORT = 8080

# -- Tunnels --
LOOPBACK_HOST = "127.0.0.1"
TUNNEL_READY_TIMEOUT_SECONDS = 15
TUNNEL_READY_POLL_INTERVAL_SECONDS = 0.2
CONNECT_PROBE_TIMEOUT_SECONDS = 0.5
TUNNEL_STOP_TIMEOUT_SECONDS = 1.0
TUNNEL_BUFFER_SIZE = 64 * 1024
PORTS_PER_SHARD = 100

# -- Polling --
PHASE_POLL_INTERVAL_SECONDS = 1
DEFAULT_PHASE_TIMEOUT_SECONDS = 60
POD_DELETE_GRACE_SECONDS = 0

# -- Parallelism & limits --
DEFAULT_DRIVER_CLOSE_MAX_WORKERS = 4
LOG_EXCERPT_LENGTH = 500
