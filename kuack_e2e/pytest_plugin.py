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


"""pytest fixtures wiring worker and scenario lifecycles into test runs.

Registered through the ``pytest11`` entry point, so installing the package is
enough to make the fixtures available:

- ``e2e_config``: the :class:`~kuack_e2e.config.E2EConfig` of the run.
- ``worker``: bootstrapped :class:`~kuack_e2e.worker.WorkerContext`, one per
  worker process, torn down at session end.
- ``scenario``: initialized :class:`~kuack_e2e.registry.ScenarioRegistry`,
  always destroyed after the test; driver evidence is saved on failure.
- ``step_logs``: active :class:`~kuack_e2e.logs.LogCapture`; captured lines are
  attached to the test report.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from kuack_e2e import logger
from kuack_e2e.config import E2EConfig
from kuack_e2e.errors import failed_outcomes
from kuack_e2e.logs import LogCapture, install_global_hooks
from kuack_e2e.registry import ScenarioRegistry
from kuack_e2e.utils import sanitize
from kuack_e2e.worker import WorkerContext

_report_key = pytest.StashKey[pytest.TestReport]()


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("kuack-e2e")
    group.addoption(
        "--kuack-evidence-dir",
        default="e2e-evidence",
        help="Directory receiving driver screenshots of failed scenarios.",
    )


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo):
    outcome = yield
    report = outcome.get_result()
    if report.when == "call":
        item.stash[_report_key] = report


def _failed(request: pytest.FixtureRequest) -> bool:
    report = request.node.stash.get(_report_key, None)
    return report is not None and report.failed


@pytest.fixture(scope="session")
def e2e_config() -> E2EConfig:
    return E2EConfig()


@pytest.fixture(scope="session")
def worker(e2e_config: E2EConfig) -> Iterator[WorkerContext]:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    context = WorkerContext(e2e_config)
    try:
        yield context.bootstrap()
    finally:
        context.teardown()


@pytest.fixture
def scenario(request: pytest.FixtureRequest, worker: WorkerContext) -> Iterator[ScenarioRegistry]:
    registry = worker.new_scenario()
    feature = getattr(request.module, "__name__", "feature").rsplit(".", 1)[-1]
    try:
        registry.init(feature, request.node.name)
        yield registry
    finally:
        if _failed(request):
            _save_evidence(registry, Path(request.config.getoption("--kuack-evidence-dir")), request.node.name)
        outcomes = registry.destroy()
        failed = failed_outcomes(outcomes)
        if failed:
            logger.warning("%d cleanup action(s) failed for %s", len(failed), request.node.nodeid)


@pytest.fixture
def step_logs(request: pytest.FixtureRequest) -> Iterator[LogCapture]:
    install_global_hooks()
    capture = LogCapture().start()
    try:
        yield capture
    finally:
        lines = capture.stop()
        if lines:
            request.node.add_report_section("call", "kuack logs", "\n".join(lines))


def _save_evidence(registry: ScenarioRegistry, directory: Path, test_name: str) -> None:
    for item in registry.capture_evidence():
        if item.video_path:
            logger.info("Video of driver %s: %s", item.driver, item.video_path)
        if item.screenshot is None:
            continue
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{sanitize(test_name)}-{sanitize(item.driver)}.png"
        path.write_bytes(item.screenshot)
        logger.info("Screenshot of driver %s saved to %s", item.driver, path)
