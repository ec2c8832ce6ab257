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

import pytest

from kuack_e2e.errors import NotInitializedError, ReleaseInstallError
from kuack_e2e.registry import RegistryState
from kuack_e2e.worker import WorkerContext


def test_bootstrap_installs_agent_and_teardown_removes_it(cfg, incluster_session, helm, hub):
    worker = WorkerContext(cfg, session=incluster_session, helm=helm, hub=hub).bootstrap()

    assert hub.installed
    agent = worker.get_agent()
    assert helm.releases == {agent.name}

    outcomes = worker.teardown()

    assert [(o.resource, o.ok) for o in outcomes] == [(f"release/{agent.name}", True)]
    assert helm.releases == set()
    with pytest.raises(NotInitializedError):
        worker.get_agent()


def test_scenarios_share_worker_managers(cfg, incluster_session, helm, hub):
    worker = WorkerContext(cfg, session=incluster_session, helm=helm, hub=hub).bootstrap(install_agent=False)

    scenario = worker.new_scenario()
    scenario.init("feature", "scenario")

    assert scenario.state == RegistryState.READY
    assert scenario.workloads is worker.workloads
    scenario.destroy()
    assert helm.releases == set()


def test_new_scenario_requires_bootstrap(cfg):
    with pytest.raises(NotInitializedError):
        WorkerContext(cfg).new_scenario()


def test_failed_bootstrap_leaves_teardown_safe(cfg, incluster_session, helm, hub):
    helm.install_error = "Error: chart not found"
    worker = WorkerContext(cfg, session=incluster_session, helm=helm, hub=hub)

    with pytest.raises(ReleaseInstallError, match="chart not found"):
        worker.bootstrap()

    outcomes = worker.teardown()
    assert all(o.ok for o in outcomes)
    assert helm.releases == set()
