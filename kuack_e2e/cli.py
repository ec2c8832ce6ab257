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


"""
cli.py - Kuack e2e environment maintenance CLI.

Subcommands:
    cleanup    Delete leftovers of interrupted runs (all, releases, pods)

Examples:
    # Sweep releases and pods of crashed runs in the current namespace
    kuack-e2e cleanup all

    # Only releases, with a custom name pattern
    kuack-e2e cleanup releases --pattern '^kuack-node-w3-'

For detailed usage information, run: kuack-e2e --help
"""

from __future__ import annotations

import logging
import sys

import typer

from kuack_e2e import console
from kuack_e2e.commands import cleanup_cmd

app = typer.Typer(
    help="Kuack e2e environment maintenance.",
    no_args_is_help=True,
)


@app.callback()
def _main_callback() -> None:
    """Initialize logging for all subcommands."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


app.add_typer(cleanup_cmd.app, name="cleanup")


def main() -> None:
    try:
        app()
    except Exception as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
