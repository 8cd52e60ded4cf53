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

"""
cluster-manager - Kubernetes cluster lifecycle across multiple backends.

Subcommands:
    <backend>   install | uninstall | status | deploy-rapidfort | test
                for kubeadm, k0s, k3s, k3d, kind, microk8s, minikube, zuul
    test-all    Test every backend sequentially and print a summary
    list        List backends and whether their tools are installed
    check-deps  Check (and with INSTALL_DEPS=true install) core tools

Environment Variables:
    - RF_LOCAL_REGISTRY      registry host override
    - RF_USE_LOCAL_REGISTRY  deploy the runtime from the local registry
    - INSTALL_DEPS           install missing kubectl/helm in check-deps

Examples:
    # Install kind with a local registry on a specific host IP
    cluster-manager kind install --registry-ip 192.168.1.10

    # Deploy the runtime from the local registry with a custom tag
    RF_LOCAL_REGISTRY=10.0.0.5 cluster-manager kind deploy-rapidfort --local-registry --image-tag 9.9.9

    # Full test of k3s, keeping the cluster afterwards
    cluster-manager k3s test --keep-cluster

    # Test all backends without the runtime
    cluster-manager test-all --skip-runtime

For detailed usage information, run: cluster-manager --help
"""

from __future__ import annotations

import logging
import sys

import typer

from cluster_manager import console
from cluster_manager.commands import backend_cmd, batch_cmd
from cluster_manager.models import BackendId

app = typer.Typer(
    help="Kubernetes cluster lifecycle management across multiple backends.",
    no_args_is_help=True,
)


@app.callback()
def _main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Initialize logging for all subcommands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


for _backend in BackendId:
    app.add_typer(backend_cmd.build_app(_backend), name=_backend.value)
batch_cmd.register(app)


def main() -> None:
    try:
        app()
    except Exception as e:
        console.print(f"[red]\u274c {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
