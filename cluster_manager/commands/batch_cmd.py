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

"""Batch and host subcommands (test-all, list, check-deps)."""

from __future__ import annotations

from pathlib import Path

import typer

from cluster_manager.config import RunOptions
from cluster_manager.constants import BATCH_COOL_DOWN_SECONDS, DEFAULT_TEST_TIMEOUT
from cluster_manager.orchestrator import check_deps, list_backends, run_test_all


def test_all(
    backend: list[str] | None = typer.Option(
        None, "--backend", "-b", help="Backend to include (repeatable, default: all)"),
    registry_ip: str | None = typer.Option(
        None, "--registry-ip", help="Registry host (RF_LOCAL_REGISTRY takes precedence)"),
    local_registry: bool = typer.Option(
        False, "--local-registry", help="Deploy the runtime from the local registry"),
    image_tag: str | None = typer.Option(
        None, "--image-tag", help="Runtime image tag in local-registry mode"),
    skip_runtime: bool = typer.Option(
        False, "--skip-runtime", help="Skip runtime deployment"),
    skip_coverage: bool = typer.Option(
        False, "--skip-coverage", help="Skip the coverage hook"),
    keep_cluster: bool = typer.Option(
        False, "--keep-cluster", help="Do not uninstall after each test"),
    timeout: int = typer.Option(
        DEFAULT_TEST_TIMEOUT, "--timeout", min=1, help="Seconds to wait for pods to settle"),
    cool_down: int = typer.Option(
        BATCH_COOL_DOWN_SECONDS, "--cool-down", min=0, help="Seconds to wait between backends"),
    log_dir: Path | None = typer.Option(
        None, "--log-dir", help="Directory for summary and per-backend logs"),
) -> None:
    """Test every backend sequentially and print a summary."""
    options = RunOptions(
        registry_ip=registry_ip,
        local_registry=local_registry,
        image_tag=image_tag,
        skip_runtime=skip_runtime,
        skip_coverage=skip_coverage,
        keep_cluster=keep_cluster,
        timeout=timeout,
        cool_down=cool_down,
    )
    summary = run_test_all(options, backend or None, log_dir=log_dir)
    raise typer.Exit(code=summary.exit_code)


def list_cmd() -> None:
    """List supported backends and whether their tools are installed."""
    list_backends()


def check_deps_cmd(
    install: bool | None = typer.Option(
        None, "--install/--no-install", help="Install kubectl and helm if missing (default: INSTALL_DEPS)"),
) -> None:
    """Check core tools (kubectl, helm, docker, curl)."""
    missing = check_deps(install)
    if missing:
        raise typer.Exit(code=1)


def register(app: typer.Typer) -> None:
    """Mount the batch commands on the top-level app."""
    app.command("test-all")(test_all)
    app.command("list")(list_cmd)
    app.command("check-deps")(check_deps_cmd)
