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

import logging
import subprocess
import sys
import textwrap

from kuack_e2e import logger
from kuack_e2e.logs import LogCapture, LogCaptureHub


def test_capture_collects_prefixed_lines_and_keeps_output(hub, caplog):
    caplog.set_level(logging.INFO)
    hub.install_global_hooks()
    capture = LogCapture(hub).start()

    logger.info("installing %s", "kuack-node-w0-a")
    logger.warning("slow rollout")
    logger.error("install failed")
    lines = capture.stop()

    assert lines == [
        "[LOG] installing kuack-node-w0-a",
        "[WARN] slow rollout",
        "[ERROR] install failed",
    ]
    assert [r.getMessage() for r in caplog.records] == [
        "installing kuack-node-w0-a",
        "slow rollout",
        "install failed",
    ]


def test_install_is_idempotent(hub):
    root = logging.getLogger()
    before = len(root.handlers)
    hub.install_global_hooks()
    hub.install_global_hooks()
    assert len(root.handlers) == before + 1
    hub.uninstall_global_hooks()
    assert len(root.handlers) == before


def test_nothing_captured_without_active_capture(hub, caplog):
    caplog.set_level(logging.INFO)
    hub.install_global_hooks()
    capture = LogCapture(hub)

    logger.info("before start")
    capture.start()
    logger.info("during")
    lines = capture.stop()
    logger.info("after stop")

    assert lines == ["[LOG] during"]
    assert capture.stop() == ["[LOG] during"]


def test_start_supersedes_previous_capture(hub, caplog):
    caplog.set_level(logging.INFO)
    hub.install_global_hooks()
    first = LogCapture(hub).start()
    second = LogCapture(hub).start()

    logger.info("step two")
    assert first.stop() == []
    assert hub.active is second
    logger.info("still step two")

    assert second.stop() == ["[LOG] step two", "[LOG] still step two"]
    assert hub.active is None


def test_restart_clears_previous_lines(hub, caplog):
    caplog.set_level(logging.INFO)
    hub.install_global_hooks()
    capture = LogCapture(hub)

    with capture:
        logger.info("one")
    with capture:
        logger.info("two")

    assert capture.lines == ["[LOG] two"]


def test_capture_sees_records_from_any_logger(hub, caplog):
    caplog.set_level(logging.INFO)
    hub.install_global_hooks()
    with LogCapture(hub) as capture:
        logging.getLogger("some.library").warning("deprecated %d", 3)
    assert capture.lines == ["[WARN] deprecated 3"]


def test_capture_keeps_stderr_output_without_configured_handlers():
    script = textwrap.dedent(
        """
        import logging
        from kuack_e2e.logs import LogCapture, install_global_hooks

        install_global_hooks()
        capture = LogCapture().start()
        log = logging.getLogger("kuack_e2e.step")
        log.warning("one")
        log.error("two")
        log.critical("three")
        print(capture.stop())
        """
    )
    result = subprocess.run([sys.executable, "-c", script], capture_output=True, text=True, timeout=60)

    assert result.returncode == 0, result.stderr
    assert result.stdout.strip() == "['[WARN] one', '[ERROR] two', '[ERROR] three']"
    assert result.stderr.splitlines() == ["one", "two", "three"]


def test_isolated_logger_falls_back_to_last_resort(monkeypatch, capsys):
    target = logging.getLogger("kuack_e2e.tests.isolated")
    monkeypatch.setattr(target, "propagate", False)
    monkeypatch.setattr(target, "handlers", [])
    target.setLevel(logging.DEBUG)
    hub = LogCaptureHub(target)
    hub.install_global_hooks()
    try:
        capture = LogCapture(hub).start()
        target.warning("kept on stderr")
        target.info("below last resort level")
        lines = capture.stop()
    finally:
        hub.uninstall_global_hooks()
        target.setLevel(logging.NOTSET)

    assert lines == ["[WARN] kept on stderr", "[LOG] below last resort level"]
    assert capsys.readouterr().err == "kept on stderr\n"
