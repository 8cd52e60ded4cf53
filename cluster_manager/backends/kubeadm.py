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

"""kubeadm backend: single-node control plane on host containerd with Calico."""

from __future__ import annotations

import os
from pathlib import Path

import sh

from cluster_manager import console
from cluster_manager.backends.base import BackendAdapter, TeardownStep, log_step
from cluster_manager.backends.common import (
    configure_host_containerd,
    deploy_in_cluster_registry,
    install_local_path_storage,
    systemd_active,
    write_containerd_hosts,
)
from cluster_manager.constants import (
    CLUSTER_READY_TIMEOUT,
    LABEL_CONTROL_PLANE,
    POD_NETWORK_CIDR,
    POD_POLL_INTERVAL_SECONDS,
    dep_value,
)
from cluster_manager.host import OsInfo, check_resources, detect_arch, detect_os
from cluster_manager.models import DESCRIPTORS, BackendId, RegistrySpec
from cluster_manager.poller import wait_until
from cluster_manager.probes import deployment_available
from cluster_manager.utils import best_effort, kubectl_apply, remove_path, write_file

KUBEADM_ADMIN_CONF = Path("/etc/kubernetes/admin.conf")
K8S_MODULES_CONF = Path("/etc/modules-load.d/k8s.conf")
K8S_SYSCTL_CONF = Path("/etc/sysctl.d/k8s.conf")
APT_KEYRING_DIR = Path("/etc/apt/keyrings")
APT_K8S_LIST = Path("/etc/apt/sources.list.d/kubernetes.list")
APT_DOCKER_LIST = Path("/etc/apt/sources.list.d/docker.list")
YUM_K8S_REPO = Path("/etc/yum.repos.d/kubernetes.repo")
DOCKER_CE_REPO = "https://download.docker.com/linux/centos/docker-ce.repo"
K8S_PACKAGES = ("kubelet", "kubeadm", "kubectl")
KERNEL_MODULES = ("overlay", "br_netfilter")
SYSCTL_SETTINGS = {
    "net.bridge.bridge-nf-call-iptables": "1",
    "net.bridge.bridge-nf-call-ip6tables": "1",
    "net.ipv4.ip_forward": "1",
}
KUBEADM_STATE_DIRS = (
    Path("/etc/kubernetes"),
    Path("/var/lib/kubelet"),
    Path("/var/lib/etcd"),
    Path("/etc/cni/net.d"),
)


def apt_get(*args: str) -> None:
    sh.Command("apt-get")(*args, _env={**os.environ, "DEBIAN_FRONTEND": "noninteractive"})


def render_sysctl(settings: dict[str, str]) -> str:
    return "".join(f"{key} = {value}\n" for key, value in settings.items())


def render_yum_repo(repo_base: str) -> str:
    return (
        "[kubernetes]\n"
        "name=Kubernetes\n"
        f"baseurl={repo_base}/rpm/\n"
        "enabled=1\n"
        "gpgcheck=1\n"
        f"gpgkey={repo_base}/rpm/repodata/repomd.xml.key\n"
        "exclude=kubelet kubeadm kubectl cri-tools kubernetes-cni\n"
    )


def calico_installation(cidr: str = POD_NETWORK_CIDR) -> list[dict]:
    """Calico operator Installation and APIServer resources for *cidr*."""
    return [
        {
            "apiVersion": "operator.tigera.io/v1",
            "kind": "Installation",
            "metadata": {"name": "default"},
            "spec": {"calicoNetwork": {"ipPools": [{
                "blockSize": 26,
                "cidr": cidr,
                "encapsulation": "VXLANCrossSubnet",
                "natOutgoing": "Enabled",
                "nodeSelector": "all()",
            }]}},
        },
        {"apiVersion": "operator.tigera.io/v1", "kind": "APIServer", "metadata": {"name": "default"}, "spec": {}},
    ]


class KubeadmAdapter(BackendAdapter):
    """kubeadm on the host. Subclasses swap the Kubernetes version, init and CNI."""

    descriptor = DESCRIPTORS[BackendId.KUBEADM]
    required_commands = ("curl", "systemctl")
    k8s_version: str = dep_value("kubernetes", "kubeadm")

    @property
    def k8s_minor(self) -> str:
        return ".".join(self.k8s_version.split(".")[:2])

    @property
    def repo_base(self) -> str:
        return dep_value("kubernetes", "package_repo").format(minor=self.k8s_minor)

    # -- Host preparation --

    def check_prerequisites(self) -> None:
        super().check_prerequisites()
        check_resources()

    def disable_swap(self) -> None:
        if str(sh.swapon("--show", "--noheadings")).strip():
            console.print("[yellow]\u26a0\ufe0f  Swap is enabled, disabling it[/yellow]")
            sh.swapoff("-a")
            sh.sed("-i", "/ swap / s/^/#/", "/etc/fstab")

    def setup_networking(self) -> None:
        write_file(K8S_MODULES_CONF, "".join(f"{m}\n" for m in KERNEL_MODULES))
        for module in KERNEL_MODULES:
            sh.modprobe(module)
        write_file(K8S_SYSCTL_CONF, render_sysctl(SYSCTL_SETTINGS))
        sh.sysctl("--system")

    def install_container_runtime(self, os_info: OsInfo) -> None:
        log_step("Installing containerd")
        if os_info.family == "debian":
            APT_KEYRING_DIR.mkdir(parents=True, exist_ok=True)
            key = APT_KEYRING_DIR / "docker.gpg"
            sh.gpg("--dearmor", "--yes", "-o", str(key),
                   _in=sh.curl("-fsSL", f"https://download.docker.com/linux/{os_info.id}/gpg", _piped=True))
            codename = str(sh.lsb_release("-cs")).strip()
            write_file(APT_DOCKER_LIST, (
                f"deb [arch={detect_arch()} signed-by={key}] "
                f"https://download.docker.com/linux/{os_info.id} {codename} stable\n"
            ))
            apt_get("update")
            apt_get("install", "-y", "containerd.io")
        else:
            sh.yum("install", "-y", "yum-utils")
            sh.Command("yum-config-manager")("--add-repo", DOCKER_CE_REPO)
            sh.yum("install", "-y", "containerd.io")
        configure_host_containerd()
        sh.systemctl("enable", "containerd")

    def install_kubernetes_packages(self, os_info: OsInfo) -> None:
        log_step(f"Installing Kubernetes {self.k8s_version} packages")
        if os_info.family == "debian":
            APT_KEYRING_DIR.mkdir(parents=True, exist_ok=True)
            key = APT_KEYRING_DIR / "kubernetes-apt-keyring.gpg"
            sh.gpg("--dearmor", "--yes", "-o", str(key),
                   _in=sh.curl("-fsSL", f"{self.repo_base}/deb/Release.key", _piped=True))
            write_file(APT_K8S_LIST, f"deb [signed-by={key}] {self.repo_base}/deb/ /\n")
            apt_get("update")
            apt_get("install", "-y", *(f"{pkg}={self.k8s_version}-*" for pkg in K8S_PACKAGES))
            sh.Command("apt-mark")("hold", *K8S_PACKAGES)
        else:
            write_file(YUM_K8S_REPO, render_yum_repo(self.repo_base))
            sh.yum("install", "-y", *(f"{pkg}-{self.k8s_version}" for pkg in K8S_PACKAGES),
                   "--disableexcludes=kubernetes")
        sh.systemctl("enable", "--now", "kubelet")

    # -- Control plane --

    def init_control_plane(self, spec: RegistrySpec) -> None:
        log_step("Initializing control plane with kubeadm")
        sh.kubeadm(
            "init",
            f"--pod-network-cidr={POD_NETWORK_CIDR}",
            f"--apiserver-advertise-address={spec.host}",
            f"--apiserver-cert-extra-sans={spec.host}",
        )

    def install_cni(self) -> None:
        log_step("Installing Calico")
        kubectl_apply(dep_value("calico", "operator_manifest"))
        wait_until(
            lambda: deployment_available("tigera-operator", "tigera-operator"),
            timeout=CLUSTER_READY_TIMEOUT,
            interval=POD_POLL_INTERVAL_SECONDS,
            description="tigera operator",
        ).raise_for_timeout()
        kubectl_apply(calico_installation())

    def untaint_control_plane(self) -> None:
        best_effort("Allowing workloads on the control plane",
                    lambda: sh.kubectl("taint", "nodes", "--all", f"{LABEL_CONTROL_PLANE}-"))

    # -- Hooks --

    def is_installed(self) -> bool:
        return KUBEADM_ADMIN_CONF.exists() or Path("/var/lib/kubelet/config.yaml").exists()

    def is_running(self) -> bool:
        return KUBEADM_ADMIN_CONF.exists() and systemd_active("kubelet")

    def force_clean(self) -> None:
        best_effort("Resetting kubeadm", lambda: sh.kubeadm("reset", "-f"))
        for path in KUBEADM_STATE_DIRS:
            best_effort(f"Removing {path}", lambda p=path: remove_path(p))

    def provision(self, spec: RegistrySpec) -> None:
        os_info = detect_os()
        console.print(f"[yellow]Detected OS: {os_info.id} {os_info.version_id}[/yellow]")
        self.disable_swap()
        self.setup_networking()
        self.install_container_runtime(os_info)
        write_containerd_hosts(spec)
        self.install_kubernetes_packages(os_info)
        self.init_control_plane(spec)
        self.kubeconfig.copy_from(KUBEADM_ADMIN_CONF)
        self.install_cni()
        self.untaint_control_plane()

    def fetch_kubeconfig(self) -> None:
        self.kubeconfig.copy_from(KUBEADM_ADMIN_CONF)

    def ensure_registry(self, spec: RegistrySpec) -> None:
        install_local_path_storage()
        deploy_in_cluster_registry(spec)

    def write_trust_config(self, spec: RegistrySpec) -> None:
        write_containerd_hosts(spec)

    def teardown_steps(self) -> list[TeardownStep]:
        steps: list[TeardownStep] = [
            ("Resetting kubeadm", lambda: sh.kubeadm("reset", "-f")),
            ("Removing Kubernetes packages", self.remove_packages),
        ]
        for path in KUBEADM_STATE_DIRS:
            steps.append((f"Removing {path}", lambda p=path: remove_path(p)))
        steps.append(("Flushing iptables", self.flush_iptables))
        return steps

    def remove_packages(self) -> None:
        os_info = detect_os()
        if os_info.family == "debian":
            sh.Command("apt-mark")("unhold", *K8S_PACKAGES)
            apt_get("purge", "-y", *K8S_PACKAGES)
            APT_K8S_LIST.unlink(missing_ok=True)
        else:
            sh.yum("remove", "-y", *K8S_PACKAGES)
            YUM_K8S_REPO.unlink(missing_ok=True)

    def flush_iptables(self) -> None:
        for table in ("filter", "nat", "mangle"):
            sh.iptables("-t", table, "-F")
            sh.iptables("-t", table, "-X")
