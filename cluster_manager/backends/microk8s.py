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

"""MicroK8s backend: snap install with the built-in registry add-on."""

from __future__ import annotations

import json
from pathlib import Path

import sh

from cluster_manager.backends.base import BackendAdapter, TeardownStep, log_step
from cluster_manager.backends.common import render_hosts_toml
from cluster_manager.constants import (
    CLUSTER_READY_TIMEOUT,
    DEFAULT_REGISTRY_PORT,
    MICROK8S_REGISTRY_NODE_PORT,
    NS_MICROK8S_REGISTRY,
    POD_POLL_INTERVAL_SECONDS,
)
from cluster_manager.models import DESCRIPTORS, BackendId, RegistrySpec
from cluster_manager.poller import wait_until
from cluster_manager.probes import pods_ready
from cluster_manager.utils import write_file

MICROK8S_CERTS_DIR = Path("/var/snap/microk8s/current/args/certs.d")
MICROK8S_ADDONS = ("dns", "registry", "ingress")


def registry_service_patches(spec: RegistrySpec) -> list[dict]:
    """Patches pinning the add-on registry Service to port 5000 / nodePort 30500 on the advertise IP."""
    return [
        {"spec": {"ports": [{
            "port": DEFAULT_REGISTRY_PORT,
            "targetPort": DEFAULT_REGISTRY_PORT,
            "nodePort": MICROK8S_REGISTRY_NODE_PORT,
            "protocol": "TCP",
        }]}},
        {"spec": {"externalIPs": [spec.host]}},
    ]


class Microk8sAdapter(BackendAdapter):
    descriptor = DESCRIPTORS[BackendId.MICROK8S]
    required_commands = ("snap",)

    def is_installed(self) -> bool:
        try:
            sh.snap("list", "microk8s")
        except (sh.ErrorReturnCode, sh.CommandNotFound):
            return False
        return True

    def is_running(self) -> bool:
        try:
            output = str(sh.microk8s("status"))
        except (sh.ErrorReturnCode, sh.CommandNotFound):
            return False
        return "microk8s is running" in output

    def provision(self, spec: RegistrySpec) -> None:
        log_step("Installing microk8s snap")
        sh.snap("install", "microk8s", "--classic")
        sh.microk8s("status", "--wait-ready", "--timeout", str(int(CLUSTER_READY_TIMEOUT)))

    def fetch_kubeconfig(self) -> None:
        self.kubeconfig.write(str(sh.microk8s("config")))

    def ensure_registry(self, spec: RegistrySpec) -> None:
        for addon in MICROK8S_ADDONS:
            log_step(f"Enabling microk8s add-on '{addon}'")
            sh.microk8s("enable", addon)
        wait_until(
            lambda: pods_ready("app=registry", NS_MICROK8S_REGISTRY),
            timeout=CLUSTER_READY_TIMEOUT,
            interval=POD_POLL_INTERVAL_SECONDS,
            description="microk8s registry add-on",
        ).raise_for_timeout()
        for patch in registry_service_patches(spec):
            sh.kubectl("patch", "service", "registry", "-n", NS_MICROK8S_REGISTRY, "-p", json.dumps(patch))

    def write_trust_config(self, spec: RegistrySpec) -> None:
        write_file(MICROK8S_CERTS_DIR / spec.address / "hosts.toml", render_hosts_toml(spec.address))
        local = f"localhost:{DEFAULT_REGISTRY_PORT}"
        write_file(MICROK8S_CERTS_DIR / local / "hosts.toml", render_hosts_toml(local))

    def reload_runtime(self, spec: RegistrySpec) -> bool:
        log_step("Restarting microk8s to load registry trust")
        sh.microk8s("stop")
        sh.microk8s("start")
        sh.microk8s("status", "--wait-ready", "--timeout", str(int(CLUSTER_READY_TIMEOUT)))
        return True

    def teardown_steps(self) -> list[TeardownStep]:
        return [
            ("Stopping microk8s", lambda: sh.microk8s("stop")),
            ("Removing microk8s snap", lambda: sh.snap("remove", "microk8s", "--purge")),
        ]
