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

"""k3d (k3s in docker) backend."""

from __future__ import annotations

import json
import tempfile
from pathlib import Path

import sh
from tenacity import retry, stop_after_attempt, wait_fixed

from cluster_manager import console
from cluster_manager.backends.base import BackendAdapter, TeardownStep, log_step
from cluster_manager.backends.common import install_ingress, render_registries_yaml
from cluster_manager.config import K3dSettings
from cluster_manager.constants import DEFAULT_REGISTRY_PORT
from cluster_manager.models import DESCRIPTORS, BackendId, RegistrySpec
from cluster_manager.registry import container_running

CLUSTER_CREATE_MAX_RETRIES = 2
CLUSTER_CREATE_RETRY_WAIT_SECONDS = 10


class K3dAdapter(BackendAdapter):
    """k3d cluster with a k3d-managed registry created alongside it."""

    descriptor = DESCRIPTORS[BackendId.K3D]
    required_commands = ("k3d", "docker", "kubectl")

    def __init__(self, *args, settings: K3dSettings | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.settings = settings or K3dSettings()

    @property
    def registry_name(self) -> str:
        return f"{self.settings.cluster_name}-registry"

    def _cluster(self) -> dict | None:
        try:
            clusters = json.loads(str(sh.k3d("cluster", "list", "-o", "json")))
        except (sh.ErrorReturnCode, sh.CommandNotFound, json.JSONDecodeError):
            return None
        return next((c for c in clusters if c.get("name") == self.settings.cluster_name), None)

    def is_installed(self) -> bool:
        return self._cluster() is not None

    def is_running(self) -> bool:
        cluster = self._cluster()
        if not cluster:
            return False
        return cluster.get("serversRunning", 0) > 0 or container_running(
            f"k3d-{self.settings.cluster_name}-server-0")

    def provision(self, spec: RegistrySpec) -> None:
        log_step(f"Creating k3d cluster '{self.settings.cluster_name}'")
        registries = render_registries_yaml(spec.address, f"k3d-{self.registry_name}:{DEFAULT_REGISTRY_PORT}")
        with tempfile.NamedTemporaryFile("w", suffix=".yaml", prefix="k3d-registries-", delete=False) as tmp:
            tmp.write(registries)
            registries_path = Path(tmp.name)

        @retry(
            stop=stop_after_attempt(CLUSTER_CREATE_MAX_RETRIES),
            wait=wait_fixed(CLUSTER_CREATE_RETRY_WAIT_SECONDS),
            reraise=True,
        )
        def _attempt() -> None:
            sh.k3d(
                "cluster", "create", self.settings.cluster_name,
                "--api-port", str(self.settings.api_port),
                "--servers", "1",
                "--agents", "0",
                "--port", "80:80@loadbalancer",
                "--port", "443:443@loadbalancer",
                "--registry-create", f"{self.registry_name}:0.0.0.0:{spec.port}",
                "--registry-config", str(registries_path),
                "--k3s-arg", "--disable=traefik@server:0",
                "--wait",
            )

        try:
            _attempt()
        finally:
            registries_path.unlink(missing_ok=True)

    def fetch_kubeconfig(self) -> None:
        self.kubeconfig.write(str(sh.k3d("kubeconfig", "get", self.settings.cluster_name)))

    def ensure_registry(self, spec: RegistrySpec) -> None:
        # created together with the cluster via --registry-create
        name = f"k3d-{self.registry_name}"
        if not container_running(name):
            raise RuntimeError(f"k3d registry container '{name}' is not running")
        console.print(f"[yellow]   Registry container '{name}' already running[/yellow]")

    def write_trust_config(self, spec: RegistrySpec) -> None:
        # registries.yaml was passed to k3d at cluster creation
        console.print(f"[green]  \u2713 k3s nodes trust {spec.address} (registries.yaml)[/green]")

    def install_addons(self, spec: RegistrySpec) -> None:
        if not install_ingress("cloud"):
            console.print("[yellow]\u26a0\ufe0f  Ingress controller not ready yet, continuing[/yellow]")

    def teardown_steps(self) -> list[TeardownStep]:
        return [
            ("Deleting k3d cluster", lambda: sh.k3d("cluster", "delete", self.settings.cluster_name)),
        ]
