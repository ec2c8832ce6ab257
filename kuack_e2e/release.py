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


"""Helm release install, idempotent delete, and crash-recovery sweeps."""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed

import sh

from kuack_e2e import logger
from kuack_e2e.config import ReleaseSpec
from kuack_e2e.constants import (
    DEFAULT_AGENT_RELEASE_PREFIX,
    DEFAULT_CLEANUP_MAX_WORKERS,
    DEFAULT_HELM_TIMEOUT,
    DEFAULT_NODE_RELEASE_PREFIX,
    HELM_NOT_FOUND_MARKER,
)
from kuack_e2e.errors import CleanupOutcome, ReleaseInstallError
from kuack_e2e.utils import command_output

DEFAULT_RELEASE_PATTERN = rf"^({DEFAULT_NODE_RELEASE_PREFIX}|{DEFAULT_AGENT_RELEASE_PREFIX})-"


def build_install_args(spec: ReleaseSpec, namespace: str, timeout: str = DEFAULT_HELM_TIMEOUT) -> list[str]:
    """Build ``helm install`` arguments for a release spec.

    Args:
        spec: Release to install.
        namespace: Target namespace.
        timeout: Value for ``--timeout`` paired with ``--wait``.

    Returns:
        Argument list without the ``helm`` binary.
    """
    args = ["install", spec.name, spec.chart_ref]
    if spec.pinned_version:
        args += ["--version", spec.pinned_version]
    args += ["--namespace", namespace, "--wait", "--timeout", timeout]
    args += [item for val in spec.values for item in ("--set", val)]
    return args


class ReleaseManager:
    """Runs helm against the session namespace.

    Args:
        namespace: Namespace every release lives in.
        timeout: ``--timeout`` used with ``--wait`` on install and uninstall.
        helm: Callable invoked with helm arguments; defaults to ``sh.helm``.
    """

    def __init__(
        self,
        namespace: str,
        timeout: str = DEFAULT_HELM_TIMEOUT,
        helm: Callable[..., str] | None = None,
    ) -> None:
        self.namespace = namespace
        self.timeout = timeout
        self._helm = helm

    def _run(self, *args: str) -> str:
        helm = self._helm if self._helm is not None else sh.helm
        return str(helm(*args))

    def install(self, spec: ReleaseSpec) -> None:
        """Install a release and block until its resources are ready.

        Raises:
            ReleaseInstallError: If helm exits non-zero.
        """
        version = spec.pinned_version or "chart default"
        logger.info("Installing release %s (%s, %s) in %s", spec.name, spec.chart_ref, version, self.namespace)
        try:
            self._run(*build_install_args(spec, self.namespace, self.timeout))
        except sh.ErrorReturnCode as e:
            output = command_output(e.stderr) or command_output(e.stdout)
            raise ReleaseInstallError(
                f"helm install {spec.name} failed (exit {e.exit_code}) in namespace {self.namespace}: {output.strip()}"
            ) from e
        logger.info("Release %s installed", spec.name)

    def delete(self, name: str) -> CleanupOutcome:
        """Uninstall a release; a release that does not exist counts as deleted.

        Never raises for helm failures: they are logged and reported in the outcome.
        """
        resource = f"release/{name}"
        try:
            self._run("uninstall", name, "--namespace", self.namespace, "--wait", "--timeout", self.timeout)
        except sh.ErrorReturnCode as e:
            output = (command_output(e.stderr) or command_output(e.stdout)).strip()
            if HELM_NOT_FOUND_MARKER in output.lower():
                logger.info("Release %s not found, nothing to delete", name)
                return CleanupOutcome(resource, True, "not found")
            logger.warning("Failed to delete release %s (exit %s): %s", name, e.exit_code, output)
            return CleanupOutcome(resource, False, output or f"exit {e.exit_code}")
        logger.info("Release %s deleted", name)
        return CleanupOutcome(resource, True, "deleted")

    def list_releases(self) -> list[str]:
        """Return the names of all releases in the namespace, in any state."""
        output = self._run("list", "--namespace", self.namespace, "--all", "--output", "json")
        return [item["name"] for item in json.loads(output or "[]")]

    def cleanup(
        self,
        pattern: str | None = None,
        max_workers: int = DEFAULT_CLEANUP_MAX_WORKERS,
    ) -> list[CleanupOutcome]:
        """Delete every release whose name matches ``pattern``, concurrently.

        Used for crash-recovery sweeps, not normal teardown.

        Args:
            pattern: Regex matched against release names; defaults to this
                system's naming convention.
            max_workers: Maximum concurrent uninstalls.

        Returns:
            One outcome per matched release.
        """
        regex = re.compile(pattern or DEFAULT_RELEASE_PATTERN)
        names = [n for n in self.list_releases() if regex.search(n)]
        if not names:
            logger.info("No releases matching %s in %s", regex.pattern, self.namespace)
            return []

        logger.info("Deleting %d release(s) matching %s", len(names), regex.pattern)
        outcomes: list[CleanupOutcome] = []
        with ThreadPoolExecutor(max_workers=min(len(names), max_workers)) as executor:
            futures = {executor.submit(self.delete, name): name for name in names}
            for future in as_completed(futures):
                name = futures[future]
                try:
                    outcomes.append(future.result())
                except Exception as e:
                    logger.warning("Failed to delete release %s: %s", name, e)
                    outcomes.append(CleanupOutcome(f"release/{name}", False, str(e)))
        return sorted(outcomes, key=lambda o: o.resource)
