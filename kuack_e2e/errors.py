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


"""Error types and best-effort cleanup outcomes."""

from __future__ import annotations

from dataclasses import dataclass


class KuackE2EError(RuntimeError):
    """Base class for errors raised by the e2e environment."""


class NamespaceResolutionError(KuackE2EError):
    """The active kubeconfig context does not name a namespace."""


class ReleaseInstallError(KuackE2EError):
    """``helm install`` exited non-zero."""


class WorkloadValidationError(KuackE2EError, ValueError):
    """A pod manifest failed validation before being sent to the cluster."""


class PortInUseError(KuackE2EError):
    """A local port is bound by something outside the tunnel registry."""


class TunnelNotReadyError(KuackE2EError):
    """A tunnel did not accept loopback connections before its timeout."""


class UnsupportedTargetPortError(KuackE2EError):
    """A Service maps the requested port to a named target port."""


class ResourceNotFoundError(KuackE2EError, LookupError):
    """A cluster resource or a tracked scenario resource does not exist."""


class NotInitializedError(KuackE2EError):
    """A component was used before its init step completed."""


class PhaseTimeoutError(KuackE2EError, TimeoutError):
    """A workload did not reach the expected phase before the timeout.

    Attributes:
        name: Pod name.
        target_phase: Phase that was awaited.
        last_phase: Last observed phase, or None if the pod was never read.
        reason: Last observed status reason.
        message: Last observed status message.
    """

    def __init__(
        self,
        name: str,
        target_phase: str,
        timeout: float,
        last_phase: str | None,
        reason: str | None = None,
        message: str | None = None,
    ) -> None:
        self.name = name
        self.target_phase = target_phase
        self.last_phase = last_phase
        self.reason = reason
        self.message = message
        super().__init__(
            f"Pod {name} did not reach phase {target_phase} within {timeout:g}s. "
            f"Phase: {last_phase or 'Unknown'}, Reason: {reason or 'Unknown'}, "
            f"Message: {message or 'No message'}"
        )


@dataclass(frozen=True)
class CleanupOutcome:
    """Result of one best-effort cleanup action.

    Attributes:
        resource: Identifier of the cleaned resource (e.g. ``release/kuack-node-x``).
        ok: Whether the resource is gone after the action.
        detail: Human readable detail, the error text on failure.
    """

    resource: str
    ok: bool
    detail: str = ""


def failed_outcomes(outcomes: list[CleanupOutcome]) -> list[CleanupOutcome]:
    """Return the outcomes that did not clean up their resource."""
    return [o for o in outcomes if not o.ok]
