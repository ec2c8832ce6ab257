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


"""Utility functions for naming, helm overrides, and command checks."""

from __future__ import annotations

import re
import secrets
import string

import sh

from kuack_e2e.constants import (
    HELM_KEY_AGENT_ENABLED,
    HELM_KEY_FULLNAME_OVERRIDE,
    HELM_KEY_LABEL_FEATURE,
    HELM_KEY_LABEL_SCENARIO,
    HELM_KEY_LABEL_TEST_ID,
    HELM_KEY_NODE_ENABLED,
    HELM_RELEASE_NAME_MAX_LENGTH,
    K8S_NAME_MAX_LENGTH,
)

_ALPHABET = string.ascii_lowercase + string.digits


def random_string(length: int) -> str:
    """Generate a random lowercase alphanumeric string.

    Args:
        length: Number of characters to generate.

    Returns:
        Random string usable inside Kubernetes names.
    """
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def sanitize(name: str) -> str:
    """Sanitize a string into a valid Kubernetes name / label value.

    Kubernetes names must be lowercase alphanumeric with hyphens and at most
    63 characters, starting and ending with an alphanumeric character.

    Args:
        name: Arbitrary text such as a feature or scenario title.

    Returns:
        A DNS-1123 compatible label.
    """
    sanitized = re.sub(r"[^a-z0-9-]", "-", name.lower())
    sanitized = re.sub(r"-+", "-", sanitized).strip("-")
    return sanitized[:K8S_NAME_MAX_LENGTH].rstrip("-")


def release_name(prefix: str, shard: int, suffix: str) -> str:
    """Build a release name carrying the worker shard and a random suffix.

    The prefix is shortened when needed so the shard and suffix survive
    helm's release name limit.

    Args:
        prefix: Release name prefix (e.g. ``kuack-node``).
        shard: Worker shard index.
        suffix: Random suffix that makes the name unique across scenarios.

    Returns:
        Release name such as ``kuack-node-w2-x8k2m0q1zv``.
    """
    tail = f"-w{shard}-{sanitize(suffix)}"
    head = sanitize(prefix)[: max(HELM_RELEASE_NAME_MAX_LENGTH - len(tail), 0)].rstrip("-")
    return f"{head}{tail}"


def collect_node_helm_overrides(
    release: str,
    feature_name: str,
    scenario_name: str,
    test_id: str = "",
) -> list[str]:
    """Build helm override strings for a per-scenario node release.

    Args:
        release: Release name, reused as the fullname override.
        feature_name: Feature the scenario belongs to.
        scenario_name: Scenario title.
        test_id: Optional test run identifier.

    Returns:
        List of ``key=value`` strings for ``helm --set`` arguments.
    """
    overrides: list[tuple[bool, str, str]] = [
        (True, HELM_KEY_AGENT_ENABLED, "false"),
        (True, HELM_KEY_FULLNAME_OVERRIDE, release),
        (True, HELM_KEY_LABEL_FEATURE, sanitize(feature_name)),
        (True, HELM_KEY_LABEL_SCENARIO, sanitize(scenario_name)),
        (bool(test_id), HELM_KEY_LABEL_TEST_ID, sanitize(test_id)),
    ]
    return [f"{key}={value}" for enabled, key, value in overrides if enabled]


def collect_agent_helm_overrides(release: str, test_id: str = "") -> list[str]:
    """Build helm override strings for a per-worker agent release.

    Args:
        release: Release name, reused as the fullname override.
        test_id: Optional test run identifier.

    Returns:
        List of ``key=value`` strings for ``helm --set`` arguments.
    """
    overrides: list[tuple[bool, str, str]] = [
        (True, HELM_KEY_NODE_ENABLED, "false"),
        (True, HELM_KEY_FULLNAME_OVERRIDE, release),
        (bool(test_id), HELM_KEY_LABEL_TEST_ID, sanitize(test_id)),
    ]
    return [f"{key}={value}" for enabled, key, value in overrides if enabled]


def require_command(cmd: str) -> None:
    """Check if a command exists on the system PATH.

    Args:
        cmd: Name of the CLI command to check.

    Raises:
        RuntimeError: If the command is not found.
    """
    try:
        sh.which(cmd)
    except sh.ErrorReturnCode as err:
        raise RuntimeError(f"Required command '{cmd}' not found. Please install it first.") from err


def command_output(value: bytes | str | None) -> str:
    """Decode captured command output from ``sh`` into text."""
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return str(value)
