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


"""Orchestration functions that compose domain modules into workflows."""

from __future__ import annotations

from collections.abc import Callable

from rich.panel import Panel

from kuack_e2e import console, logger
from kuack_e2e.config import E2EConfig
from kuack_e2e.constants import LABEL_MANAGED_BY, MANAGED_BY_VALUE
from kuack_e2e.errors import CleanupOutcome, failed_outcomes
from kuack_e2e.release import ReleaseManager
from kuack_e2e.session import ClusterSession, init_session
from kuack_e2e.utils import require_command


def cleanup_releases(
    cfg: E2EConfig,
    session: ClusterSession,
    pattern: str | None = None,
    helm: Callable[..., str] | None = None,
) -> list[CleanupOutcome]:
    """Delete leftover releases matching ``pattern`` (default: this system's prefixes)."""
    console.print(Panel.fit("Cleaning up Helm releases", style="bold blue"))
    if helm is None:
        require_command("helm")
    releases = ReleaseManager(session.namespace, cfg.helm_timeout, helm=helm)
    outcomes = releases.cleanup(pattern or cfg.release_pattern())
    _report(outcomes, "release")
    return outcomes


def cleanup_pods(session: ClusterSession) -> list[CleanupOutcome]:
    """Delete every pod labelled as managed by the e2e suite."""
    console.print(Panel.fit("Cleaning up test pods", style="bold blue"))
    selector = f"{LABEL_MANAGED_BY}={MANAGED_BY_VALUE}"
    resource = f"pods/{selector}"
    try:
        names = [p.metadata.name for p in session.list_pods(selector)]
        if names:
            session.delete_pods(selector)
    except Exception as e:
        logger.warning("Failed to delete pods matching %s: %s", selector, e)
        outcomes = [CleanupOutcome(resource, False, str(e))]
    else:
        outcomes = [CleanupOutcome(f"pod/{name}", True, "deleted") for name in sorted(names)]
        if not names:
            console.print(f"[yellow]   No pods matching {selector} in {session.namespace}[/yellow]")
    _report(outcomes, "pod")
    return outcomes


def run_global_cleanup(
    cfg: E2EConfig | None = None,
    session: ClusterSession | None = None,
    pattern: str | None = None,
    helm: Callable[..., str] | None = None,
) -> list[CleanupOutcome]:
    """Sweep releases and pods left behind by crashed or interrupted runs.

    Args:
        cfg: Environment configuration; loaded from ``E2E_*`` variables when omitted.
        session: Cluster session; loaded from the environment when omitted.
        pattern: Release name regex overriding the configured prefixes.
        helm: Callable used instead of ``sh.helm``.

    Returns:
        Outcomes of every deletion attempted.
    """
    cfg = cfg if cfg is not None else E2EConfig()
    session = session if session is not None else init_session()
    outcomes = cleanup_releases(cfg, session, pattern, helm)
    outcomes.extend(cleanup_pods(session))
    return outcomes


def _report(outcomes: list[CleanupOutcome], kind: str) -> None:
    failed = failed_outcomes(outcomes)
    for outcome in failed:
        console.print(f"[red]   {outcome.resource}: {outcome.detail}[/red]")
    if failed:
        console.print(f"[yellow]⚠️  {len(failed)} {kind}(s) could not be deleted[/yellow]")
    else:
        console.print(f"[green]✅ {len(outcomes)} {kind}(s) cleaned up[/green]")
