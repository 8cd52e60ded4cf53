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

"""k3s backend: a single k3s server installed as a systemd service."""

from __future__ import annotations

from pathlib import Path

import sh

from cluster_manager.backends.base import BackendAdapter, TeardownStep, log_step
from cluster_manager.backends.common import (
    deploy_in_cluster_registry,
    render_registries_yaml,
    systemd_active,
)
from cluster_manager.constants import CLUSTER_READY_TIMEOUT, POD_POLL_INTERVAL_SECONDS, dep_value
from cluster_manager.models import DESCRIPTORS, BackendId, RegistrySpec
from cluster_manager.poller import wait_until
from cluster_manager.utils import remove_path, write_file

K3S_UNIT = "k3s"
K3S_BINARY = Path("/usr/local/bin/k3s")
K3S_UNINSTALL_SCRIPT = Path("/usr/local/bin/k3s-uninstall.sh")
K3S_KUBECONFIG = Path("/etc/rancher/k3s/k3s.yaml")
K3S_REGISTRIES = Path("/etc/rancher/k3s/registries.yaml")
K3S_STATE_DIRS = (Path("/etc/rancher/k3s"), Path("/var/lib/rancher/k3s"))


class K3sAdapter(BackendAdapter):
    descriptor = DESCRIPTORS[BackendId.K3S]
    required_commands = ("curl", "systemctl")

    def is_installed(self) -> bool:
        return K3S_BINARY.exists() or K3S_KUBECONFIG.exists()

    def is_running(self) -> bool:
        return systemd_active(K3S_UNIT) and K3S_KUBECONFIG.exists()

    def provision(self, spec: RegistrySpec) -> None:
        log_step("Installing k3s")
        sh.sh("-", _in=str(sh.curl("-sfL", dep_value("k3s", "install_script"))))
        wait_until(
            lambda: systemd_active(K3S_UNIT) and K3S_KUBECONFIG.exists(),
            timeout=CLUSTER_READY_TIMEOUT,
            interval=POD_POLL_INTERVAL_SECONDS,
            description="k3s service",
        ).raise_for_timeout()

    def fetch_kubeconfig(self) -> None:
        self.kubeconfig.copy_from(K3S_KUBECONFIG)

    def ensure_registry(self, spec: RegistrySpec) -> None:
        deploy_in_cluster_registry(spec)

    def write_trust_config(self, spec: RegistrySpec) -> None:
        write_file(K3S_REGISTRIES, render_registries_yaml(spec.address))

    def reload_runtime(self, spec: RegistrySpec) -> bool:
        log_step("Restarting k3s to load registries.yaml")
        sh.systemctl("restart", K3S_UNIT)
        return True

    def teardown_steps(self) -> list[TeardownStep]:
        steps: list[TeardownStep] = [("Stopping k3s", lambda: sh.systemctl("stop", K3S_UNIT))]
        if K3S_UNINSTALL_SCRIPT.exists():
            steps.append(("Running k3s uninstall script", lambda: sh.Command(str(K3S_UNINSTALL_SCRIPT))()))
        for state_dir in K3S_STATE_DIRS:
            steps.append((f"Removing {state_dir}", lambda d=state_dir: remove_path(d)))
        return steps
