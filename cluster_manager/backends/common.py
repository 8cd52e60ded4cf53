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

"""Trust-file renderers and cluster add-ons shared by several backends."""

from __future__ import annotations

import re
from pathlib import Path

import sh
import yaml

from cluster_manager import console
from cluster_manager.constants import (
    CONTAINERD_CERTS_DIR,
    CONTAINERD_CONFIG,
    DEFAULT_REGISTRY_PORT,
    INGRESS_CONTROLLER_SELECTOR,
    INGRESS_READY_TIMEOUT,
    NS_INGRESS,
    NS_REGISTRY,
    POD_POLL_INTERVAL_SECONDS,
    REGISTRY_DATA_PATH,
    REGISTRY_IMAGE,
    REGISTRY_PVC_SIZE,
    dep_value,
)
from cluster_manager.models import RegistrySpec
from cluster_manager.poller import wait_until
from cluster_manager.probes import deployment_available, pods_ready
from cluster_manager.utils import kubectl_apply, write_file

CRI_REGISTRY_PLUGIN = 'plugins."io.containerd.grpc.v1.cri".registry'


# ============================================================================
# Trust file renderers
# ============================================================================

def render_hosts_toml(address: str) -> str:
    """Render a containerd ``certs.d/<address>/hosts.toml`` that trusts plain HTTP."""
    return (
        f'server = "http://{address}"\n'
        "\n"
        f'[host."http://{address}"]\n'
        '  capabilities = ["pull", "resolve", "push"]\n'
        "  skip_verify = true\n"
    )


def render_registries_yaml(*addresses: str) -> str:
    """Render a k3s ``registries.yaml`` mirroring each address over HTTP."""
    doc = {
        "mirrors": {addr: {"endpoint": [f"http://{addr}"]} for addr in addresses},
        "configs": {addr: {"tls": {"insecure_skip_verify": True}} for addr in addresses},
    }
    return yaml.safe_dump(doc, default_flow_style=False, sort_keys=False)


def render_cri_mirror_patch(mirrors: dict[str, str], *, version_header: bool = False) -> str:
    """Render containerd CRI mirror/config TOML for ``{address: endpoint}`` pairs."""
    lines = ["version = 2", ""] if version_header else []
    for address, endpoint in mirrors.items():
        lines.append(f'[{CRI_REGISTRY_PLUGIN}.mirrors."{address}"]')
        lines.append(f'  endpoint = ["{endpoint}"]')
        lines.append(f'[{CRI_REGISTRY_PLUGIN}.configs."{address}".tls]')
        lines.append("  insecure_skip_verify = true")
    return "\n".join(lines) + "\n"


# ============================================================================
# Host containerd
# ============================================================================

def write_containerd_hosts(spec: RegistrySpec, certs_dir: Path = CONTAINERD_CERTS_DIR) -> Path:
    """Write ``certs.d/<address>/hosts.toml`` for the host containerd."""
    return write_file(certs_dir / spec.address / "hosts.toml", render_hosts_toml(spec.address))


def patch_containerd_config(text: str, certs_dir: Path = CONTAINERD_CERTS_DIR, systemd_cgroup: bool = True) -> str:
    """Enable the certs.d config path (and optionally the systemd cgroup driver) in a containerd config."""
    if systemd_cgroup:
        text = re.sub(r"SystemdCgroup\s*=\s*false", "SystemdCgroup = true", text)
    text = re.sub(
        r'(\[plugins\."io\.containerd\.grpc\.v1\.cri"\.registry\]\s*\n\s*config_path\s*=\s*)"[^"]*"',
        rf'\1"{certs_dir}"',
        text,
    )
    return text


def configure_host_containerd(config_path: Path = CONTAINERD_CONFIG, systemd_cgroup: bool = True) -> None:
    """Regenerate the host containerd config with certs.d trust enabled and restart it."""
    default_config = str(sh.containerd("config", "default"))
    write_file(config_path, patch_containerd_config(default_config, systemd_cgroup=systemd_cgroup))
    sh.systemctl("restart", "containerd")
    console.print(f"[green]  \u2713 containerd configured ({config_path})[/green]")


# ============================================================================
# In-cluster registry (k3s, k0s)
# ============================================================================

def registry_manifests(spec: RegistrySpec, namespace: str = NS_REGISTRY) -> list[dict]:
    """Namespace, PVC, Deployment and Service for an in-cluster ``registry:2``.

    The Service exposes the registry on the advertise IP through externalIPs
    so nodes pull from the same address the host pushes to.
    """
    labels = {"app": "registry"}
    return [
        {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": namespace}},
        {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {"name": "registry-pvc", "namespace": namespace},
            "spec": {
                "accessModes": ["ReadWriteOnce"],
                "resources": {"requests": {"storage": REGISTRY_PVC_SIZE}},
            },
        },
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": "registry", "namespace": namespace, "labels": labels},
            "spec": {
                "replicas": 1,
                "selector": {"matchLabels": labels},
                "template": {
                    "metadata": {"labels": labels},
                    "spec": {
                        "containers": [{
                            "name": "registry",
                            "image": REGISTRY_IMAGE,
                            "ports": [{"containerPort": DEFAULT_REGISTRY_PORT}],
                            "env": [{"name": "REGISTRY_HTTP_ADDR", "value": f"0.0.0.0:{DEFAULT_REGISTRY_PORT}"}],
                            "volumeMounts": [{"name": "registry-storage", "mountPath": REGISTRY_DATA_PATH}],
                        }],
                        "volumes": [{
                            "name": "registry-storage",
                            "persistentVolumeClaim": {"claimName": "registry-pvc"},
                        }],
                    },
                },
            },
        },
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": "registry", "namespace": namespace},
            "spec": {
                "selector": labels,
                "ports": [{"port": spec.port, "targetPort": DEFAULT_REGISTRY_PORT, "protocol": "TCP"}],
                "externalIPs": [spec.host],
            },
        },
    ]


def deploy_in_cluster_registry(spec: RegistrySpec, timeout: float = INGRESS_READY_TIMEOUT) -> None:
    """Apply the in-cluster registry and wait for its Deployment to become available."""
    kubectl_apply(registry_manifests(spec))
    wait_until(
        lambda: deployment_available("registry", NS_REGISTRY),
        timeout=timeout,
        interval=POD_POLL_INTERVAL_SECONDS,
        description="in-cluster registry deployment",
    ).raise_for_timeout()


# ============================================================================
# Add-ons
# ============================================================================

def install_ingress(provider: str) -> bool:
    """Apply the ingress-nginx manifest for *provider* and wait for the controller.

    A slow controller is reported as a warning; the cluster is usable without it.

    Returns:
        True if the controller became ready.
    """
    url = dep_value("ingress_nginx", "manifests", provider)
    console.print(f"[yellow]\u2139\ufe0f  Installing ingress-nginx ({provider})...[/yellow]")
    kubectl_apply(url)
    return wait_until(
        lambda: pods_ready(INGRESS_CONTROLLER_SELECTOR, NS_INGRESS),
        timeout=INGRESS_READY_TIMEOUT,
        interval=POD_POLL_INTERVAL_SECONDS,
        description="ingress controller",
    ).ready


def install_local_path_storage() -> None:
    """Install the local-path provisioner and mark it as the default StorageClass."""
    kubectl_apply(dep_value("local_path_provisioner", "manifest"))
    sh.kubectl(
        "patch", "storageclass", "local-path",
        "-p", '{"metadata": {"annotations":{"storageclass.kubernetes.io/is-default-class":"true"}}}',
    )
    console.print("[green]  \u2713 local-path storage class is the default[/green]")


def systemd_active(unit: str) -> bool:
    try:
        sh.systemctl("is-active", "--quiet", unit)
    except (sh.ErrorReturnCode, sh.CommandNotFound):
        return False
    return True
