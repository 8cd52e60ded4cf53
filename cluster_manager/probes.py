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

"""Read-only readiness predicates for use with the poller."""

from __future__ import annotations

import requests

from cluster_manager.constants import (
    POD_SETTLED_STATUSES,
    REGISTRY_PROBE_PATH,
    REGISTRY_PROBE_TIMEOUT_SECONDS,
)
from cluster_manager.utils import run_kubectl


def api_reachable() -> bool:
    ok, _, _ = run_kubectl(["cluster-info"], timeout=15)
    return ok


def nodes_ready() -> bool:
    """True when at least one node exists and every node reports Ready."""
    ok, stdout, _ = run_kubectl(["get", "nodes", "--no-headers"])
    if not ok:
        return False
    rows = [line.split() for line in stdout.splitlines() if line.strip()]
    return bool(rows) and all(len(row) > 1 and row[1] == "Ready" for row in rows)


def unsettled_pods(namespace: str | None = None) -> list[str]:
    """Return ``namespace/name status`` for pods that are not Running or Completed.

    Args:
        namespace: Restrict to one namespace; all namespaces when None.

    Returns:
        Descriptions of unsettled pods. Empty when everything has settled.

    Raises:
        RuntimeError: If pods cannot be listed.
    """
    scope = ["-n", namespace] if namespace else ["-A"]
    ok, stdout, stderr = run_kubectl(["get", "pods", *scope, "--no-headers"])
    if not ok:
        raise RuntimeError(f"Cannot list pods: {stderr.strip()}")
    status_col = 2 if namespace else 3
    pending: list[str] = []
    for line in stdout.splitlines():
        cols = line.split()
        if len(cols) <= status_col:
            continue
        if cols[status_col] not in POD_SETTLED_STATUSES:
            name = f"{namespace}/{cols[0]}" if namespace else f"{cols[0]}/{cols[1]}"
            pending.append(f"{name} {cols[status_col]}")
    return pending


def pods_settled(namespace: str | None = None) -> bool:
    try:
        return not unsettled_pods(namespace)
    except RuntimeError:
        return False


def pods_ready(selector: str, namespace: str) -> bool:
    """True when at least one pod matches *selector* and all of them are Ready."""
    ok, stdout, _ = run_kubectl([
        "get", "pods", "-n", namespace, "-l", selector,
        "-o", "jsonpath={range .items[*]}{.status.conditions[?(@.type=='Ready')].status}{'\\n'}{end}",
    ])
    if not ok:
        return False
    statuses = [s.strip() for s in stdout.splitlines() if s.strip()]
    return bool(statuses) and all(s == "True" for s in statuses)


def deployment_available(name: str, namespace: str) -> bool:
    ok, stdout, _ = run_kubectl([
        "get", "deployment", name, "-n", namespace,
        "-o", "jsonpath={.status.conditions[?(@.type=='Available')].status}",
    ])
    return ok and stdout.strip() == "True"


def pod_image_pulled(name: str, namespace: str = "default") -> bool:
    """True once the kubelet has resolved an image ID for the pod's first container."""
    ok, stdout, _ = run_kubectl([
        "get", "pod", name, "-n", namespace, "-o", "jsonpath={.status.containerStatuses[0].imageID}",
    ])
    return ok and bool(stdout.strip())


def registry_reachable(address: str) -> bool:
    """True when the registry at ``host:port`` answers its API root with 200."""
    response = requests.get(f"http://{address}{REGISTRY_PROBE_PATH}", timeout=REGISTRY_PROBE_TIMEOUT_SECONDS)
    return response.status_code == 200
