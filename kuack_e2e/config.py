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


"""Configuration classes and release specs."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from kuack_e2e.constants import (
    DEFAULT_AGENT_RELEASE_PREFIX,
    DEFAULT_AGENT_SERVICE_PORT,
    DEFAULT_CHECKER_IMAGE,
    DEFAULT_CHECKER_URL,
    DEFAULT_HELM_CHART,
    DEFAULT_HELM_CHART_VERSION,
    DEFAULT_HELM_TIMEOUT,
    DEFAULT_NODE_RELEASE_PREFIX,
    DEFAULT_NODE_SERVICE_PORT,
    DEFAULT_PHASE_TIMEOUT_SECONDS,
    HELM_VERSION_LATEST,
    RELEASE_PREFIX_MAX_LENGTH,
)


# ============================================================================
# Configuration classes
# ============================================================================

class E2EConfig(BaseSettings):
    """E2E environment configuration, auto-loaded from E2E_* env vars.

    Attributes:
        helm_chart: Chart reference for the Kuack chart (OCI or repo/chart).
        helm_chart_version: Chart version, ``latest`` omits ``--version``.
        helm_timeout: Timeout passed to ``helm --wait``.
        test_id: Optional test run identifier attached as a release label.
        node_release_prefix: Prefix of per-scenario node release names.
        agent_release_prefix: Prefix of per-worker agent release names.
        shard_index: Parallel worker index, or None to derive it from pytest-xdist.
        checker_image: Image used by checker workloads.
        checker_url: URL the checker workloads probe.
        external_node_url: Existing node endpoint; skips node release creation.
        external_agent_url: Existing agent endpoint; skips agent release creation.
        node_service_port: Service port exposed by the node release.
        agent_service_port: Service port exposed by the agent release.
        tunnel_base_port: First local port of the shard-partitioned range, or
            None to let the OS pick free ports.
        phase_timeout_seconds: Default timeout for workload phase polling.
    """

    model_config = SettingsConfigDict(env_prefix="E2E_", extra="ignore")

    helm_chart: str = DEFAULT_HELM_CHART
    helm_chart_version: str = DEFAULT_HELM_CHART_VERSION
    helm_timeout: str = Field(default=DEFAULT_HELM_TIMEOUT, pattern=r"^\d+[smh]$")
    test_id: str = ""
    node_release_prefix: str = Field(
        default=DEFAULT_NODE_RELEASE_PREFIX, max_length=RELEASE_PREFIX_MAX_LENGTH, pattern=r"^[a-z0-9-]+$",
    )
    agent_release_prefix: str = Field(
        default=DEFAULT_AGENT_RELEASE_PREFIX, max_length=RELEASE_PREFIX_MAX_LENGTH, pattern=r"^[a-z0-9-]+$",
    )
    shard_index: int | None = Field(default=None, ge=0)
    checker_image: str = DEFAULT_CHECKER_IMAGE
    checker_url: str = DEFAULT_CHECKER_URL
    external_node_url: str = ""
    external_agent_url: str = ""
    node_service_port: int = Field(default=DEFAULT_NODE_SERVICE_PORT, ge=1, le=65535)
    agent_service_port: int = Field(default=DEFAULT_AGENT_SERVICE_PORT, ge=1, le=65535)
    tunnel_base_port: int | None = Field(default=None, ge=1024, le=65535)
    phase_timeout_seconds: float = Field(default=DEFAULT_PHASE_TIMEOUT_SECONDS, gt=0)

    @property
    def shard(self) -> int:
        """Worker shard index, falling back to the pytest-xdist worker id."""
        if self.shard_index is not None:
            return self.shard_index
        return resolve_shard_index(os.environ.get("PYTEST_XDIST_WORKER", ""))

    def release_pattern(self) -> str:
        """Regex matching every release name this system creates."""
        prefixes = "|".join(re.escape(p) for p in (self.node_release_prefix, self.agent_release_prefix))
        return rf"^({prefixes})-"


def resolve_shard_index(worker_id: str) -> int:
    """Extract the numeric shard from a pytest-xdist worker id.

    Args:
        worker_id: Worker id such as ``gw3``, or empty when not distributed.

    Returns:
        The trailing integer of the worker id, or 0.
    """
    m = re.search(r"(\d+)$", worker_id)
    return int(m.group(1)) if m else 0


# ============================================================================
# Release specs
# ============================================================================

@dataclass(frozen=True)
class ReleaseSpec:
    """Parameters of one helm release install.

    Attributes:
        name: Release name, unique per install.
        chart_ref: Chart reference passed to ``helm install``.
        version: Chart version, ``latest`` or empty means the chart default.
        values: Ordered ``key=value`` strings for ``--set`` arguments.
    """

    name: str
    chart_ref: str
    version: str = HELM_VERSION_LATEST
    values: tuple[str, ...] = field(default_factory=tuple)

    @property
    def pinned_version(self) -> str | None:
        if not self.version or self.version == HELM_VERSION_LATEST:
            return None
        return self.version
