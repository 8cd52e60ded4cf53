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

"""Per-backend subcommands (install, uninstall, status, deploy-rapidfort, test)."""

from __future__ import annotations

from contextlib import nullcontext
from pathlib import Path

import typer

from cluster_manager import console
from cluster_manager.config import RunOptions
from cluster_manager.constants import DEFAULT_TEST_TIMEOUT
from cluster_manager.models import DESCRIPTORS, BackendId
from cluster_manager.orchestrator import run_deploy, run_install, run_status, run_test, run_uninstall


def _logged(log_file: Path | None):
    return console.tee(log_file) if log_file is not None else nullcontext()


def build_app(backend: BackendId) -> typer.Typer:
    """Create the typer app exposing the lifecycle commands for *backend*.

    Args:
        backend: Backend the commands operate on.

    Returns:
        A typer app to mount under the backend's name.
    """
    name = backend.value
    app = typer.Typer(help=f"{DESCRIPTORS[backend].summary}.", no_args_is_help=True)

    @app.command()
    def install(
        registry_ip: str | None = typer.Option(
            None, "--registry-ip", help="Registry host (RF_LOCAL_REGISTRY takes precedence)"),
        local_registry: bool = typer.Option(
            False, "--local-registry", help="Deploy the runtime from the local registry"),
        image_tag: str | None = typer.Option(
            None, "--image-tag", help="Runtime image tag in local-registry mode"),
        skip_runtime: bool = typer.Option(
            False, "--skip-runtime", help="Skip runtime deployment"),
        log_file: Path | None = typer.Option(
            None, "--log-file", help="Also write output to this file"),
    ) -> None:
        """Install the cluster, reconcile the local registry and deploy the runtime."""
        options = RunOptions(
            registry_ip=registry_ip,
            local_registry=local_registry,
            image_tag=image_tag,
            skip_runtime=skip_runtime,
        )
        with _logged(log_file):
            run_install(name, options)

    @app.command()
    def uninstall(
        log_file: Path | None = typer.Option(
            None, "--log-file", help="Also write output to this file"),
    ) -> None:
        """Tear the cluster down and restore the previous kubeconfig."""
        with _logged(log_file):
            run_uninstall(name)

    @app.command()
    def status() -> None:
        """Show cluster phase, nodes and pods (read-only)."""
        run_status(name)

    @app.command("deploy-rapidfort")
    def deploy_rapidfort(
        registry_ip: str | None = typer.Option(
            None, "--registry-ip", help="Registry host (RF_LOCAL_REGISTRY takes precedence)"),
        local_registry: bool = typer.Option(
            False, "--local-registry", help="Deploy the runtime from the local registry"),
        image_tag: str | None = typer.Option(
            None, "--image-tag", help="Runtime image tag in local-registry mode"),
        log_file: Path | None = typer.Option(
            None, "--log-file", help="Also write output to this file"),
    ) -> None:
        """Deploy the runtime chart onto the running cluster."""
        options = RunOptions(registry_ip=registry_ip, local_registry=local_registry, image_tag=image_tag)
        with _logged(log_file):
            run_deploy(name, options)

    @app.command()
    def test(
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
            False, "--keep-cluster", help="Do not uninstall after testing"),
        timeout: int = typer.Option(
            DEFAULT_TEST_TIMEOUT, "--timeout", min=1, help="Seconds to wait for pods to settle"),
        log_file: Path | None = typer.Option(
            None, "--log-file", help="Also write output to this file"),
    ) -> None:
        """Install, verify, run the coverage hook, then uninstall."""
        options = RunOptions(
            registry_ip=registry_ip,
            local_registry=local_registry,
            image_tag=image_tag,
            skip_runtime=skip_runtime,
            skip_coverage=skip_coverage,
            keep_cluster=keep_cluster,
            timeout=timeout,
        )
        with _logged(log_file):
            run_test(name, options)

    return app
