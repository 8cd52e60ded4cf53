# /*
# Copyright 2026 The Grove Authors.
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

"""Batch summary table and summary log file."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from rich.table import Table

from cluster_manager.models import BackendOutcome, BackendResult, TestRunSummary

SEPARATOR = "=" * 38

OUTCOME_STYLES = {
    BackendOutcome.PASSED: "green",
    BackendOutcome.FAILED: "red",
    BackendOutcome.SKIPPED: "yellow",
}


def summary_table(summary: TestRunSummary) -> Table:
    """Build the per-backend outcome table printed at the end of a batch run."""
    table = Table(title="Test Summary", header_style="bold", pad_edge=False)
    table.add_column("BACKEND")
    table.add_column("STATUS")
    table.add_column("DURATION", justify="right")
    table.add_column("DETAILS", overflow="fold")

    for result in summary.results:
        style = OUTCOME_STYLES[result.outcome]
        table.add_row(
            result.backend,
            f"[{style}]{result.outcome.value}[/{style}]",
            f"{result.duration:.0f}s",
            result.error or "",
        )
    return table


class SummaryLog:
    """Append-only summary log for one batch run.

    The header is written when the log is created, each backend's outcome as it
    is recorded, and the totals once at the end.
    """

    def __init__(self, path: Path, registry_address: str | None = None) -> None:
        self.path = path
        path.parent.mkdir(parents=True, exist_ok=True)
        self._write(
            f"Kubernetes Cluster Test Summary - {datetime.now():%a %b %d %H:%M:%S %Y}",
            f"Registry: {registry_address or 'auto-detected'}",
            SEPARATOR,
            "",
            mode="w",
        )

    def record(self, result: BackendResult) -> None:
        lines = ["", f"Testing {result.backend}...", f"  Status: {result.outcome.value}"]
        if result.outcome is not BackendOutcome.SKIPPED:
            lines.append(f"  Duration: {result.duration:.0f}s")
        if result.error:
            lines.append(f"  Error: {result.error}")
        if result.log_file:
            lines.append(f"  Log: {result.log_file}")
        self._write(*lines)

    def finish(self, summary: TestRunSummary, total: int) -> None:
        self._write(
            "",
            SEPARATOR,
            "SUMMARY:",
            f"  Total: {total}",
            f"  Passed: {summary.count(BackendOutcome.PASSED)}",
            f"  Failed: {summary.count(BackendOutcome.FAILED)}",
            f"  Skipped: {summary.count(BackendOutcome.SKIPPED)}",
            SEPARATOR,
        )

    def _write(self, *lines: str, mode: str = "a") -> None:
        with open(self.path, mode, encoding="utf-8") as fh:
            fh.write("\n".join(lines) + "\n")
