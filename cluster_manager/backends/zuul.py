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

"""Zuul CI simulation: kubeadm with pinned versions, a restricted CI user, and namespace isolation."""

from __future__ import annotations

import tempfile
from pathlib import Path

import sh
import yaml

from cluster_manager import console
from cluster_manager.backends.base import TeardownStep, log_step
from cluster_manager.backends.kubeadm import KubeadmAdapter, apt_get
from cluster_manager.config import ZuulSettings
from cluster_manager.constants import NS_KUBE_SYSTEM, NS_ZUUL, dep_value
from cluster_manager.errors import PreconditionError
from cluster_manager.host import OsInfo
from cluster_manager.models import DESCRIPTORS, BackendId, RegistrySpec
from cluster_manager.utils import best_effort, command_available, kubectl_apply, remove_path, write_file

ZUUL_USER = "zuul"
ZUUL_SUDOERS = Path("/etc/sudoers.d/zuul")
ZUUL_APPARMOR_PROFILE = Path("/etc/apparmor.d/zuul.ctr")
ZUUL_SUDO_COMMANDS = (
    "/usr/local/bin/ctr",
    "/usr/local/bin/crictl",
    "/usr/bin/kubectl",
    "/bin/systemctl status containerd",
    "/bin/journalctl -u containerd",
)
CONTAINERD_STATE_DIRS = (Path("/etc/containerd"), Path("/var/lib/containerd"), Path("/opt/cni"))

APPARMOR_CTR_PROFILE = """#include <tunables/global>

profile zuul-ctr flags=(attach_disconnected,mediate_deleted) {
  #include <abstractions/base>

  /usr/local/bin/ctr ix,
  /usr/bin/ctr ix,

  /run/containerd/containerd.sock rw,
  /run/containerd/** r,

  /var/lib/containerd/** r,
  /tmp/** rw,

  deny mount,
  deny umount,

  capability sys_admin,
  capability dac_override,

  network unix stream,

  deny ptrace,
}
"""


def render_sudoers(user: str = ZUUL_USER) -> str:
    lines = ["# Zuul user restrictions"]
    lines.extend(f"{user} ALL=(ALL) NOPASSWD: {cmd}" for cmd in ZUUL_SUDO_COMMANDS)
    return "\n".join(lines) + "\n"


def render_kubeadm_config(k8s_version: str) -> str:
    """Render the multi-document kubeadm config used for Zuul-style nodes."""
    docs = [
        {
            "apiVersion": "kubeadm.k8s.io/v1beta3",
            "kind": "InitConfiguration",
            "nodeRegistration": {
                "criSocket": "unix:///run/containerd/containerd.sock",
                "kubeletExtraArgs": {"pod-infra-container-image": dep_value("images", "pause")},
            },
        },
        {
            "apiVersion": "kubeadm.k8s.io/v1beta3",
            "kind": "ClusterConfiguration",
            "kubernetesVersion": f"v{k8s_version}",
            "controllerManager": {"extraArgs": {"bind-address": "0.0.0.0"}},
            "scheduler": {"extraArgs": {"bind-address": "0.0.0.0"}},
        },
        {
            "apiVersion": "kubelet.config.k8s.io/v1beta1",
            "kind": "KubeletConfiguration",
            "serverTLSBootstrap": True,
            "cgroupDriver": "systemd",
            "containerRuntimeEndpoint": "unix:///run/containerd/containerd.sock",
        },
    ]
    return yaml.safe_dump_all(docs, default_flow_style=False, sort_keys=False)


def isolation_manifests(namespace: str = NS_ZUUL) -> list[dict]:
    """Restricted pod-security namespace plus a NetworkPolicy allowing only in-namespace traffic and DNS."""
    restricted = {
        f"pod-security.kubernetes.io/{mode}": "restricted" for mode in ("enforce", "warn", "audit")
    }
    return [
        {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {"name": namespace, "labels": {"name": namespace, **restricted}},
        },
        {
            "apiVersion": "networking.k8s.io/v1",
            "kind": "NetworkPolicy",
            "metadata": {"name": "zuul-isolation", "namespace": namespace},
            "spec": {
                "podSelector": {},
                "policyTypes": ["Ingress", "Egress"],
                "ingress": [{"from": [{"namespaceSelector": {"matchLabels": {"name": namespace}}}]}],
                "egress": [
                    {"to": [{"namespaceSelector": {"matchLabels": {"name": namespace}}}]},
                    {
                        "to": [{"namespaceSelector": {"matchLabels": {"name": NS_KUBE_SYSTEM}}}],
                        "ports": [{"protocol": "TCP", "port": 53}, {"protocol": "UDP", "port": 53}],
                    },
                ],
            },
        },
    ]


class ZuulAdapter(KubeadmAdapter):
    descriptor = DESCRIPTORS[BackendId.ZUUL]
    k8s_version: str = dep_value("kubernetes", "zuul")
    containerd_version: str = dep_value("containerd", "zuul")

    def __init__(self, *args, settings: ZuulSettings | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.settings = settings or ZuulSettings()

    def create_user(self) -> None:
        log_step(f"Creating restricted '{ZUUL_USER}' user")
        try:
            sh.id(ZUUL_USER)
        except sh.ErrorReturnCode:
            sh.useradd("-m", "-s", "/bin/bash", ZUUL_USER)
        best_effort("Adding user to the docker group", lambda: sh.usermod("-aG", "docker", ZUUL_USER))
        write_file(ZUUL_SUDOERS, render_sudoers(), mode=0o440)

    def setup_apparmor(self) -> None:
        if not command_available("apparmor_parser"):
            console.print("[yellow]\u26a0\ufe0f  apparmor_parser not found, skipping AppArmor profile[/yellow]")
            return
        write_file(ZUUL_APPARMOR_PROFILE, APPARMOR_CTR_PROFILE)
        best_effort("Loading AppArmor profile", lambda: sh.apparmor_parser("-r", str(ZUUL_APPARMOR_PROFILE)))

    def install_container_runtime(self, os_info: OsInfo) -> None:
        if os_info.family != "debian":
            raise PreconditionError("The Zuul simulation requires a Debian-family host")
        best_effort("Removing existing container runtimes",
                    lambda: apt_get("remove", "-y", "containerd", "containerd.io", "docker.io"))
        super().install_container_runtime(os_info)
        apt_get("install", "-y", "--allow-downgrades", f"containerd.io={self.containerd_version}-*")
        sh.systemctl("restart", "containerd")

    def init_control_plane(self, spec: RegistrySpec) -> None:
        log_step(f"Initializing Kubernetes {self.k8s_version} with kubeadm config")
        with tempfile.NamedTemporaryFile("w", suffix=".yaml", prefix="kubeadm-config-", delete=False) as tmp:
            tmp.write(render_kubeadm_config(self.k8s_version))
            config_path = Path(tmp.name)
        try:
            sh.kubeadm("init", f"--config={config_path}", "--v=5")
        finally:
            config_path.unlink(missing_ok=True)

    def install_cni(self) -> None:
        log_step("Installing Weave Net")
        kubectl_apply(dep_value("weave", "manifest"))

    def provision(self, spec: RegistrySpec) -> None:
        self.create_user()
        if self.settings.strict_mode:
            self.setup_apparmor()
        super().provision(spec)

    def install_addons(self, spec: RegistrySpec) -> None:
        kubectl_apply(isolation_manifests())
        console.print(f"[green]  \u2713 Namespace '{NS_ZUUL}' isolated[/green]")

    def teardown_steps(self) -> list[TeardownStep]:
        steps = super().teardown_steps()
        for path in CONTAINERD_STATE_DIRS:
            steps.append((f"Removing {path}", lambda p=path: remove_path(p)))
        steps.extend([
            (f"Removing user '{ZUUL_USER}'", lambda: sh.userdel("-r", ZUUL_USER)),
            ("Removing sudoers entry", lambda: ZUUL_SUDOERS.unlink(missing_ok=True)),
        ])
        if ZUUL_APPARMOR_PROFILE.exists():
            steps.append(("Unloading AppArmor profile", self._remove_apparmor))
        return steps

    def _remove_apparmor(self) -> None:
        sh.apparmor_parser("-R", str(ZUUL_APPARMOR_PROFILE))
        ZUUL_APPARMOR_PROFILE.unlink(missing_ok=True)
