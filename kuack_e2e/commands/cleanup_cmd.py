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


"""Cleanup subcommands (all, releases, pods)."""

from __future__ import annotations

import typer

from kuack_e2e.config import E2EConfig
from kuack_e2e.errors import failed_outcomes
from kuack_e2e.orchestrator import cleanup_pods, cleanup_releases, run_global_cleanup
from kuack_e2e.session import init_session

app = typer.Typer(help="Delete resources left behind by e2e runs.")


def _exit_on_failures(outcomes) -> None:
    if failed_outcomes(outcomes):
        raise typer.Exit(code=1)


@app.command("all")
def all_resources(
    pattern: str | None = typer.Option(None, "--pattern", help="Release name regex (default: kuack prefixes)"),
) -> None:
    """Delete leftover releases and managed pods."""
    _exit_on_failures(run_global_cleanup(E2EConfig(), init_session(), pattern))


@app.command("releases")
def releases(
    pattern: str | None = typer.Option(None, "--pattern", help="Release name regex (default: kuack prefixes)"),
) -> None:
    """Delete leftover helm releases."""
    _exit_on_failures(cleanup_releases(E2EConfig(), init_session(), pattern))


@app.command("pods")
def pods() -> None:
    """Delete pods labelled as managed by the e2e suite."""
    _exit_on_failures(cleanup_pods(init_session()))
