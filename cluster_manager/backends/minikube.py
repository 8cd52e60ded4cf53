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

"""minikube backend with containerd runtime and docker or none driver."""

from __future__ import annotations

import json
from pathlib import Path

import sh

from cluster_manager import console
from cluster_manager.backends.base import BackendAdapter, TeardownStep, log_step
from cluster_manager.backends.common import configure_host_containerd, write_containerd_hosts
from cluster_manager.config import MinikubeSettings
from cluster_manager.host import is_root
from cluster_manager.models import DESCRIPTORS, BackendId, RegistrySpec
from cluster_manager.registry import ensure_registry_container, remove_registry_container
from cluster_manager.utils import best_effort, command_available, remove_path

REGISTRY_CONTAINER = "minikube-registry"
KUBEADM_ADMIN_CONF = Path("/etc/kubernetes/admin.conf")
NONE_DRIVER_STATE = (
    Path("/etc/kubernetes/manifests"),
    Path("/var/lib/kubelet"),
    Path("/var/lib/etcd"),
)


def select_driver(requested: str, root: bool, docker_available: bool) -> str:
    """Resolve ``auto`` to a concrete driver: ``none`` as root, else ``docker`` when available.

    Raises:
        RuntimeError: If no driver can be selected.
    """
    if requested != "auto":
        return requested
    if root:
        return "none"
    if docker_available:
        return "docker"
    raise RuntimeError("No usable minikube driver: run as root for 'none' or install docker")


def start_args(profile: str, driver: str, spec: RegistrySpec, memory: str, cpus: int) -> list[str]:
    args = [
        "start",
        f"--profile={profile}",
        f"--driver={driver}",
        "--container-runtime=containerd",
        f"--insecure-registry={spec.address}",
        f"--memory={memory}",
        f"--cpus={cpus}",
    ]
    if driver == "none":
        args.append("--extra-config=kubelet.cgroup-driver=systemd")
    return args


class MinikubeAdapter(BackendAdapter):
    descriptor = DESCRIPTORS[BackendId.MINIKUBE]
    required_commands = ("minikube", "kubectl")

    def __init__(self, *args, settings: MinikubeSettings | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.settings = settings or MinikubeSettings()
        self._driver: str | None = None

    @property
    def driver(self) -> str:
        if self._driver is None:
            self._driver = select_driver(self.settings.driver, is_root(), command_available("docker"))
        return self._driver

    def _profile_status(self) -> dict | None:
        try:
            output = sh.minikube("status", f"--profile={self.settings.profile}", "-o", "json", _ok_code=list(range(256)))
        except sh.CommandNotFound:
            return None
        try:
            return json.loads(str(output))
        except json.JSONDecodeError:
            return None

    def is_installed(self) -> bool:
        status = self._profile_status()
        return bool(status) and status.get("Host") not in (None, "Nonexistent")

    def is_running(self) -> bool:
        status = self._profile_status() or {}
        return status.get("Host") == "Running" and status.get("APIServer") == "Running"

    def provision(self, spec: RegistrySpec) -> None:
        if self.driver == "none":
            log_step("Preparing host containerd for the none driver")
            configure_host_containerd()
            write_containerd_hosts(spec)
            for path in NONE_DRIVER_STATE:
                best_effort(f"Clearing {path}", lambda p=path: remove_path(p))
            best_effort("Resetting kubeadm state", lambda: sh.kubeadm("reset", "-f"))
        log_step(f"Starting minikube profile '{self.settings.profile}' with driver '{self.driver}'")
        sh.minikube(*start_args(self.settings.profile, self.driver, spec, self.settings.memory, self.settings.cpus))

    def fetch_kubeconfig(self) -> None:
        if self.driver == "none" and KUBEADM_ADMIN_CONF.exists():
            self.kubeconfig.copy_from(KUBEADM_ADMIN_CONF)
            return
        self.kubeconfig.write(str(sh.minikube(
            "kubectl", f"--profile={self.settings.profile}", "--", "config", "view", "--raw")))

    def ensure_registry(self, spec: RegistrySpec) -> None:
        ensure_registry_container(REGISTRY_CONTAINER, spec)

    def write_trust_config(self, spec: RegistrySpec) -> None:
        if self.driver == "none":
            write_containerd_hosts(spec)
        else:
            # --insecure-registry was passed to the node at start
            console.print(f"[green]  \u2713 minikube node trusts {spec.address} (--insecure-registry)[/green]")

    def install_addons(self, spec: RegistrySpec) -> None:
        best_effort("Enabling ingress add-on",
                    lambda: sh.minikube("addons", "enable", "ingress", f"--profile={self.settings.profile}"))

    def teardown_steps(self) -> list[TeardownStep]:
        profile = f"--profile={self.settings.profile}"
        steps: list[TeardownStep] = [
            ("Stopping minikube", lambda: sh.minikube("stop", profile)),
            ("Deleting minikube profile", lambda: sh.minikube("delete", profile)),
            ("Removing registry container", lambda: remove_registry_container(REGISTRY_CONTAINER)),
        ]
        if is_root():
            steps.append(("Resetting kubeadm state", lambda: sh.kubeadm("reset", "-f")))
            for path in (Path("/etc/kubernetes"), *NONE_DRIVER_STATE[1:]):
                steps.append((f"Removing {path}", lambda p=path: remove_path(p)))
        return steps
