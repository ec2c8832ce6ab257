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


from __future__ import annotations

import re

import pytest
from pydantic import ValidationError

from kuack_e2e.config import E2EConfig, ReleaseSpec, resolve_shard_index
from kuack_e2e.constants import dep_value
from kuack_e2e.utils import (
    collect_agent_helm_overrides,
    collect_node_helm_overrides,
    random_string,
    release_name,
    sanitize,
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("E2E_SHARD_INDEX", "E2E_TEST_ID", "E2E_HELM_TIMEOUT", "PYTEST_XDIST_WORKER"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_sanitize():
    assert sanitize("My Feature: Login!") == "my-feature-login"
    assert sanitize("__x__") == "x"
    long = sanitize("a-" * 60)
    assert len(long) <= 63
    assert not long.endswith("-")


def test_random_string():
    value = random_string(10)
    assert re.fullmatch(r"[a-z0-9]{10}", value)
    assert random_string(10) != value


def test_release_name_carries_shard():
    assert release_name("kuack-node", 3, "abc") == "kuack-node-w3-abc"


def test_long_prefix_is_shortened_before_the_suffix():
    prefix = "kuack-node-" + "x" * 45
    first = release_name(prefix, 3, "aaaaaaaaaa")
    second = release_name(prefix, 3, "bbbbbbbbbb")

    assert first.endswith("-w3-aaaaaaaaaa")
    assert second.endswith("-w3-bbbbbbbbbb")
    assert len(first) <= 53
    assert not first.startswith("-")
    assert re.fullmatch(r"[a-z0-9-]+", first)


def test_release_prefix_length_is_validated(clean_env):
    with pytest.raises(ValidationError):
        E2EConfig(node_release_prefix="n" * 31)
    assert E2EConfig(agent_release_prefix="a" * 30).agent_release_prefix == "a" * 30


def test_node_overrides():
    assert collect_node_helm_overrides("kuack-node-w0-a", "Feature A", "Scenario B") == [
        "agent.enabled=false",
        "fullnameOverride=kuack-node-w0-a",
        "global.labels.kuack\\.io/feature=feature-a",
        "global.labels.kuack\\.io/scenario=scenario-b",
    ]
    with_id = collect_node_helm_overrides("r", "f", "s", test_id="Run 42")
    assert with_id[-1] == "global.labels.kuack\\.io/test-id=run-42"


def test_agent_overrides():
    assert collect_agent_helm_overrides("kuack-agent-w0-a") == [
        "node.enabled=false",
        "fullnameOverride=kuack-agent-w0-a",
    ]


def test_resolve_shard_index():
    assert resolve_shard_index("gw3") == 3
    assert resolve_shard_index("gw12") == 12
    assert resolve_shard_index("") == 0
    assert resolve_shard_index("master") == 0


def test_config_defaults_come_from_dependencies(clean_env):
    cfg = E2EConfig()
    assert cfg.helm_chart == dep_value("kuack_chart", "ref")
    assert cfg.checker_image == dep_value("checker", "image")
    assert cfg.shard == 0
    assert cfg.external_node_url == ""


def test_config_reads_env(clean_env):
    clean_env.setenv("E2E_SHARD_INDEX", "4")
    clean_env.setenv("E2E_TEST_ID", "nightly")
    cfg = E2EConfig()
    assert cfg.shard == 4
    assert cfg.test_id == "nightly"


def test_shard_from_xdist_worker(clean_env):
    clean_env.setenv("PYTEST_XDIST_WORKER", "gw2")
    assert E2EConfig().shard == 2


def test_helm_timeout_is_validated(clean_env):
    clean_env.setenv("E2E_HELM_TIMEOUT", "five minutes")
    with pytest.raises(ValidationError):
        E2EConfig()


def test_release_pattern(clean_env):
    pattern = re.compile(E2EConfig().release_pattern())
    assert pattern.search("kuack-node-w0-abc")
    assert pattern.search("kuack-agent-w1-abc")
    assert not pattern.search("my-kuack-node")


def test_release_spec_pinned_version():
    assert ReleaseSpec("r", "c").pinned_version is None
    assert ReleaseSpec("r", "c", "").pinned_version is None
    assert ReleaseSpec("r", "c", "1.2.3").pinned_version == "1.2.3"
