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

from typer.testing import CliRunner

from conftest import FakeHelm, make_pod
from kuack_e2e.cli import app
from kuack_e2e.commands import cleanup_cmd
from kuack_e2e.errors import CleanupOutcome
from kuack_e2e.orchestrator import cleanup_pods, run_global_cleanup

MANAGED = {"app.kubernetes.io/managed-by": "kuack-e2e"}

runner = CliRunner()


def test_global_cleanup_sweeps_releases_and_managed_pods(cfg, session, core):
    helm = FakeHelm(("kuack-node-w0-a", "kuack-agent-w0-b", "postgres"))
    core.pods["checker-1"] = make_pod("checker-1", "Succeeded", labels=MANAGED)
    core.pods["checker-2"] = make_pod("checker-2", "Failed", labels=MANAGED)
    core.pods["db-0"] = make_pod("db-0", "Running", labels={"app": "db"})

    outcomes = run_global_cleanup(cfg, session, helm=helm)

    assert [o.resource for o in outcomes] == [
        "release/kuack-agent-w0-b",
        "release/kuack-node-w0-a",
        "pod/checker-1",
        "pod/checker-2",
    ]
    assert all(o.ok for o in outcomes)
    assert helm.releases == {"postgres"}
    assert list(core.pods) == ["db-0"]


def test_global_cleanup_custom_pattern(cfg, session):
    helm = FakeHelm(("kuack-node-w0-a", "kuack-node-w1-b"))
    run_global_cleanup(cfg, session, pattern=r"-w1-", helm=helm)
    assert helm.releases == {"kuack-node-w0-a"}


def test_cleanup_pods_failure_is_reported(session, core, monkeypatch):
    core.pods["checker-1"] = make_pod("checker-1", labels=MANAGED)

    def broken(namespace, label_selector=None, grace_period_seconds=None):
        raise RuntimeError("apiserver unavailable")

    monkeypatch.setattr(core, "delete_collection_namespaced_pod", broken)
    outcomes = cleanup_pods(session)

    assert len(outcomes) == 1
    assert not outcomes[0].ok
    assert "apiserver unavailable" in outcomes[0].detail


def test_cli_help_lists_cleanup():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "cleanup" in result.output


def test_cli_cleanup_releases_exit_code(monkeypatch):
    seen = {}

    def fake_cleanup(cfg, session, pattern=None, helm=None):
        seen["pattern"] = pattern
        return [CleanupOutcome("release/kuack-node-w0-a", False, "cluster unreachable")]

    monkeypatch.setattr(cleanup_cmd, "init_session", lambda: "session")
    monkeypatch.setattr(cleanup_cmd, "cleanup_releases", fake_cleanup)

    result = runner.invoke(app, ["cleanup", "releases", "--pattern", "^kuack-node-"])

    assert result.exit_code == 1
    assert seen["pattern"] == "^kuack-node-"


def test_cli_cleanup_pods_success(monkeypatch):
    monkeypatch.setattr(cleanup_cmd, "init_session", lambda: "session")
    monkeypatch.setattr(cleanup_cmd, "cleanup_pods", lambda session: [CleanupOutcome("pod/a", True, "deleted")])

    result = runner.invoke(app, ["cleanup", "pods"])

    assert result.exit_code == 0
