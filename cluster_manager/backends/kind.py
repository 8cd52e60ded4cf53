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

"""kind (Kubernetes in docker) backend."""

from __future__ import annotations

import tempfile
from pathlib import Path

import sh
import yaml

from cluster_manager import console
from cluster_manager.backends.base import BackendAdapter, TeardownStep, log_step
from cluster_manager.backends.common import install_ingress, render_cri_mirror_patch
from cluster_manager.constants import DEFAULT_REGISTRY_PORT
from cluster_manager.models import DESCRIPTORS, BackendId, RegistrySpec
from cluster_manager.registry import (
    connect_registry_network,
    container_running,
    ensure_registry_container,
    remove_registry_container,
)

KIND_CLUSTER_NAME = "kind"
KIND_NETWORK = "kind"
REGISTRY_CONTAINER = "kind-registry"

INGRESS_READY_PATCH = """kind: InitConfiguration
nodeRegistration:
  kubeletExtraArgs:
    node-labels: "ingress-ready=true"
"""


def render_kind_config(spec: RegistrySpec) -> str:
    """Render a kind cluster config trusting the local registry by IP and by container name."""
    mirrors = {
        spec.address: f"http://{spec.address}",
        f"{REGISTRY_CONTAINER}:{DEFAULT_REGISTRY_PORT}": f"http://{REGISTRY_CONTAINER}:{DEFAULT_REGISTRY_PORT}",
    }
    config = {
        "kind": "Cluster",
        "apiVersion": "kind.x-k8s.io/v1alpha4",
        "containerdConfigPatches": [render_cri_mirror_patch(mirrors)],
        "nodes": [{
            "role": "control-plane",
            "kubeadmConfigPatches": [INGRESS_READY_PATCH],
            "extraPortMappings": [
                {"containerPort": 80, "hostPort": 80, "protocol": "TCP"},
                {"containerPort": 443, "hostPort": 443, "protocol": "TCP"},
            ],
        }],
    }
    return yaml.safe_dump(config, default_flow_style=False, sort_keys=False)


class KindAdapter(BackendAdapter):
    descriptor = DESCRIPTORS[BackendId.KIND]
    required_commands = ("kind", "docker", "kubectl")

    def __init__(self, *args, cluster_name: str = KIND_CLUSTER_NAME, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.cluster_name = cluster_name

    def _clusters(self) -> list[str]:
        try:
            return str(sh.kind("get", "clusters")).split()
        except (sh.ErrorReturnCode, sh.CommandNotFound):
            return []

    def is_installed(self) -> bool:
        return self.cluster_name in self._clusters()

    def is_running(self) -> bool:
        return container_running(f"{self.cluster_name}-control-plane")

    def provision(self, spec: RegistrySpec) -> None:
        log_step(f"Creating kind cluster '{self.cluster_name}'")
        with tempfile.NamedTemporaryFile("w", suffix=".yaml", prefix="kind-config-", delete=False) as tmp:
            tmp.write(render_kind_config(spec))
            config_path = Path(tmp.name)
        try:
            sh.kind("create", "cluster", "--name", self.cluster_name, "--config", str(config_path), "--wait", "5m")
        finally:
            config_path.unlink(missing_ok=True)

    def fetch_kubeconfig(self) -> None:
        self.kubeconfig.write(str(sh.kind("get", "kubeconfig", "--name", self.cluster_name)))

    def ensure_registry(self, spec: RegistrySpec) -> None:
        ensure_registry_container(REGISTRY_CONTAINER, spec)
        connect_registry_network(REGISTRY_CONTAINER, KIND_NETWORK)

    def write_trust_config(self, spec: RegistrySpec) -> None:
        # containerd mirrors were written into the node config at cluster creation
        console.print(f"[green]  \u2713 Node containerd trusts {spec.address} (set at cluster creation)[/green]")

    def install_addons(self, spec: RegistrySpec) -> None:
        if not install_ingress("kind"):
            console.print("[yellow]\u26a0\ufe0f  Ingress controller not ready yet, continuing[/yellow]")

    def teardown_steps(self) -> list[TeardownStep]:
        return [
            ("Deleting kind cluster", lambda: sh.kind("delete", "cluster", "--name", self.cluster_name)),
            ("Removing registry container", lambda: remove_registry_container(REGISTRY_CONTAINER)),
        ]
