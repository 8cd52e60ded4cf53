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

"""k0s backend: single-node controller with kube-router, plus host network cleanup."""

from __future__ import annotations

import os
import re
import shlex
from datetime import datetime
from pathlib import Path

import sh
import yaml
from tenacity import retry, stop_after_attempt, wait_fixed

from cluster_manager import console
from cluster_manager.backends.base import BackendAdapter, TeardownStep, log_step
from cluster_manager.backends.common import (
    deploy_in_cluster_registry,
    install_ingress,
    install_local_path_storage,
    render_cri_mirror_patch,
    systemd_active,
)
from cluster_manager.config import K0sSettings
from cluster_manager.constants import POD_POLL_INTERVAL_SECONDS, dep_value
from cluster_manager.models import DESCRIPTORS, BackendId, RegistrySpec
from cluster_manager.utils import best_effort, remove_path, write_file

K0S_BINARY = Path("/usr/local/bin/k0s")
K0S_CONFIG = Path("/etc/k0s/k0s.yaml")
K0S_CONTAINERD_DROPIN = Path("/etc/k0s/containerd.d/registry.toml")
K0S_DATA_DIR = Path("/var/lib/k0s")
K0S_ETC_DIR = Path("/etc/k0s")
K0S_UNIT = "k0scontroller"
KUBECONFIG_MAX_RETRIES = 24

# -- Host network leftovers --
IPTABLES_TABLES = ("filter", "nat", "mangle")
K8S_CHAIN_PATTERN = re.compile(r"(KUBE-|CNI-|cali-|kube-)")
K8S_INTERFACES = ("kube-bridge", "cni0", "flannel.1", "vxlan.calico")
K8S_INTERFACE_PREFIXES = ("veth", "cali")


def render_k0s_config(spec: RegistrySpec) -> str:
    """Render the k0s ClusterConfig with the registry host in the API SANs."""
    config = {
        "apiVersion": "k0s.k0sproject.io/v1beta1",
        "kind": "ClusterConfig",
        "metadata": {"name": "k0s"},
        "spec": {
            "api": {"sans": ["127.0.0.1", "localhost", spec.host]},
            "storage": {"type": "etcd"},
            "network": {"provider": "kuberouter", "kubeRouter": {"autoMTU": True, "metricsPort": 8080}},
            "telemetry": {"enabled": False},
            "extensions": {"storage": {"create_default_storage_class": False}},
        },
    }
    return yaml.safe_dump(config, default_flow_style=False, sort_keys=False)


def iptables_cleanup_commands(table: str, rules: str) -> list[list[str]]:
    """Turn ``iptables -S`` output into commands that remove Kubernetes/CNI rules and chains.

    Rules are deleted first, then the matching user chains are flushed and removed.

    Args:
        table: iptables table name.
        rules: Output of ``iptables -t <table> -S``.

    Returns:
        Argument lists for ``iptables``.
    """
    deletes: list[list[str]] = []
    chains: list[str] = []
    for line in rules.splitlines():
        parts = shlex.split(line)
        if len(parts) < 2 or not K8S_CHAIN_PATTERN.search(line):
            continue
        if parts[0] == "-A":
            deletes.append(["-t", table, "-D", *parts[1:]])
        elif parts[0] == "-N" and K8S_CHAIN_PATTERN.match(parts[1]):
            chains.append(parts[1])
    flushes = [["-t", table, "-F", chain] for chain in chains]
    removals = [["-t", table, "-X", chain] for chain in chains]
    return deletes + flushes + removals


def leftover_interfaces(link_output: str) -> list[str]:
    """Pick Kubernetes/CNI interfaces out of ``ip -o link show`` output."""
    names: list[str] = []
    for line in link_output.splitlines():
        parts = line.split(":")
        if len(parts) < 2:
            continue
        name = parts[1].strip().split("@")[0]
        if name in K8S_INTERFACES or name.startswith(K8S_INTERFACE_PREFIXES):
            names.append(name)
    return names


def clean_iptables() -> None:
    backup = Path(f"/tmp/iptables-backup-{datetime.now():%Y%m%d-%H%M%S}.rules")
    backup.write_text(str(sh.Command("iptables-save")()))
    console.print(f"[yellow]   Saved iptables rules to {backup}[/yellow]")
    for table in IPTABLES_TABLES:
        for args in iptables_cleanup_commands(table, str(sh.iptables("-t", table, "-S"))):
            try:
                sh.iptables(*args)
            except sh.ErrorReturnCode:
                # rules referencing already-removed chains disappear with them
                continue


def clean_interfaces() -> None:
    for name in leftover_interfaces(str(sh.ip("-o", "link", "show"))):
        best_effort(f"Deleting interface {name}", lambda n=name: sh.ip("link", "delete", n))


class K0sAdapter(BackendAdapter):
    descriptor = DESCRIPTORS[BackendId.K0S]
    required_commands = ("curl", "systemctl", "kubectl")

    def __init__(self, *args, settings: K0sSettings | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.settings = settings or K0sSettings()

    def is_installed(self) -> bool:
        return K0S_BINARY.exists() or K0S_DATA_DIR.exists()

    def is_running(self) -> bool:
        if not systemd_active(K0S_UNIT):
            return False
        try:
            sh.k0s("status")
        except (sh.ErrorReturnCode, sh.CommandNotFound):
            return False
        return True

    def force_clean(self) -> None:
        """Reset a k0s that is installed but not running before reinstalling."""
        best_effort("Stopping k0s", lambda: sh.k0s("stop"))
        best_effort("Resetting k0s", lambda: sh.k0s("reset"))
        best_effort("Stopping k0scontroller unit", lambda: sh.systemctl("stop", K0S_UNIT))
        best_effort("Disabling k0scontroller unit", lambda: sh.systemctl("disable", K0S_UNIT))
        best_effort(f"Removing {K0S_DATA_DIR}", lambda: remove_path(K0S_DATA_DIR))

    def provision(self, spec: RegistrySpec) -> None:
        if not K0S_BINARY.exists():
            log_step(f"Downloading k0s {self.settings.version}")
            sh.sh("-", _in=str(sh.curl("-sSLf", dep_value("k0s", "install_script"))),
                  _env={**os.environ, "K0S_VERSION": self.settings.version})
        write_file(K0S_CONFIG, render_k0s_config(spec))
        log_step("Installing k0s controller")
        sh.k0s("install", "controller", "--single", f"--config={K0S_CONFIG}")
        sh.k0s("start")

    @retry(stop=stop_after_attempt(KUBECONFIG_MAX_RETRIES), wait=wait_fixed(POD_POLL_INTERVAL_SECONDS), reraise=True)
    def fetch_kubeconfig(self) -> None:
        self.kubeconfig.write(str(sh.k0s("kubeconfig", "admin")))

    def ensure_registry(self, spec: RegistrySpec) -> None:
        install_local_path_storage()
        deploy_in_cluster_registry(spec)

    def write_trust_config(self, spec: RegistrySpec) -> None:
        mirrors = {spec.address: f"http://{spec.address}"}
        write_file(K0S_CONTAINERD_DROPIN, render_cri_mirror_patch(mirrors, version_header=True))

    def reload_runtime(self, spec: RegistrySpec) -> bool:
        log_step("Restarting k0s to load containerd registry configuration")
        sh.k0s("stop")
        sh.k0s("start")
        return True

    def install_addons(self, spec: RegistrySpec) -> None:
        if not install_ingress("baremetal"):
            console.print("[yellow]\u26a0\ufe0f  Ingress controller not ready yet, continuing[/yellow]")

    def teardown_steps(self) -> list[TeardownStep]:
        return [
            ("Stopping k0s", lambda: sh.k0s("stop")),
            ("Resetting k0s", lambda: sh.k0s("reset")),
            (f"Removing {K0S_ETC_DIR}", lambda: remove_path(K0S_ETC_DIR)),
            (f"Removing {K0S_DATA_DIR}", lambda: remove_path(K0S_DATA_DIR)),
            ("Removing k0s binary", lambda: K0S_BINARY.unlink(missing_ok=True)),
            ("Cleaning Kubernetes iptables rules", clean_iptables),
            ("Removing CNI network interfaces", clean_interfaces),
        ]
