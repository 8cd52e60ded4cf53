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

"""Constants, pinned version loading, and dep_value helper."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

# -- Resolved paths --
PACKAGE_DIR = Path(__file__).resolve().parent


def load_versions() -> dict:
    """Load pinned tool versions, manifests and images from versions.yaml.

    Returns:
        Parsed YAML content as a nested dictionary.
    """
    versions_file = PACKAGE_DIR / "versions.yaml"
    with open(versions_file) as f:
        return yaml.safe_load(f)


VERSIONS = load_versions()


def dep_value(*keys: str, default: Any = None) -> Any:
    """Safely traverse the VERSIONS dict by key path.

    Args:
        *keys: Sequence of dictionary keys to traverse.
        default: Value to return if any key is missing.

    Returns:
        The value at the nested key path, or *default* if not found.
    """
    node = VERSIONS
    for key in keys:
        if not isinstance(node, dict):
            return default
        node = node.get(key)
        if node is None:
            return default
    return node


# -- Host paths --
DEFAULT_KUBECONFIG = Path.home() / ".kube" / "config"
KUBECONFIG_BACKUP_SUFFIX = ".backup"
KUBECONFIG_ABSENT_SUFFIX = ".absent"
RAPIDFORT_DIR = Path.home() / ".rapidfort"
DEFAULT_CREDENTIALS_FILE = RAPIDFORT_DIR / "credentials"
DEFAULT_REGISTRY_SECRET_FILE = RAPIDFORT_DIR / "rapidfort-registry-secret.yaml"
DEFAULT_LOG_DIR = Path("logs")
OS_RELEASE_FILE = Path("/etc/os-release")
CONTAINERD_CONFIG = Path("/etc/containerd/config.toml")
CONTAINERD_CERTS_DIR = Path("/etc/containerd/certs.d")

# -- Registry --
DEFAULT_REGISTRY_PORT = 5000
MICROK8S_REGISTRY_NODE_PORT = 30500
REGISTRY_IMAGE = dep_value("images", "registry", default="registry:2")
REGISTRY_DATA_PATH = "/var/lib/registry"
REGISTRY_PROBE_PATH = "/v2/"
REGISTRY_PVC_SIZE = "20Gi"
TEST_IMAGE = dep_value("images", "test", default="hello-world")
TEST_IMAGE_TAG = "test"
TEST_POD_NAME = "test-registry"

# -- Runtime chart --
RUNTIME_CHART_REF = "oci://quay.io/rapidfort/runtime"
RUNTIME_RELEASE = "rfruntime"
RUNTIME_POD_SELECTOR = "app=rfruntime"
CREDENTIALS_SECRET_NAME = "rfruntime-credentials"
REGISTRY_SECRET_NAME = "rapidfort-registry-secret"
LOCAL_REGISTRY_REPO = "rapidfort"
DEFAULT_HELM_TIMEOUT = "5m"

# -- Helm value keys --
HELM_KEY_CLUSTER_NAME = "ClusterName"
HELM_KEY_CLUSTER_CAPTION = "ClusterCaption"
HELM_KEY_CREDENTIALS_SECRET = "rapidfort.credentialsSecret"
HELM_KEY_VARIANT = "variant"
HELM_KEY_SCAN = "scan.enabled"
HELM_KEY_PROFILE = "profile.enabled"
HELM_KEY_REGISTRY = "registry"
HELM_KEY_IMAGE_TAG = "imageTag"
HELM_KEY_PULL_POLICY = "imagePullPolicy"
HELM_KEY_PULL_SECRETS = "imagePullSecrets.names"

# -- Credential keys --
CRED_KEY_ACCESS_ID = "access_id"
CRED_KEY_SECRET_KEY = "secret_key"
CRED_KEY_ROOT_URL = "rf_root_url"
ENV_ACCESS_ID = "RF_ACCESS_ID"
ENV_SECRET_ACCESS_KEY = "RF_SECRET_ACCESS_KEY"
ENV_ROOT_URL = "RF_ROOT_URL"

# -- Namespaces --
NS_RAPIDFORT = "rapidfort"
NS_REGISTRY = "registry"
NS_INGRESS = "ingress-nginx"
NS_KUBE_SYSTEM = "kube-system"
NS_MICROK8S_REGISTRY = "container-registry"
NS_ZUUL = "zuul-system"

# -- Labels and selectors --
INGRESS_CONTROLLER_SELECTOR = "app.kubernetes.io/component=controller"
LABEL_CONTROL_PLANE = "node-role.kubernetes.io/control-plane"

# -- Timeouts and intervals (seconds) --
DEFAULT_TEST_TIMEOUT = 600
CLUSTER_READY_TIMEOUT = 300
REGISTRY_READY_TIMEOUT = 120
RUNTIME_READY_TIMEOUT = 300
INGRESS_READY_TIMEOUT = 300
TEST_POD_READY_TIMEOUT = 60
POD_POLL_INTERVAL_SECONDS = 5
REGISTRY_POLL_INTERVAL_SECONDS = 2
SETTLE_DELAY_SECONDS = 30
BATCH_COOL_DOWN_SECONDS = 30
KUBECTL_TIMEOUT_SECONDS = 30
REGISTRY_PROBE_TIMEOUT_SECONDS = 5

# -- Coverage hook --
COVERAGE_SCRIPT = "coverage.sh"
COVERAGE_ARGS = ("-m", "blast", "-c")
COVERAGE_POD_TIMEOUT = 600

# -- Batch run --
TEST_SUMMARY_PREFIX = "test_summary"
LOG_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
POD_SETTLED_STATUSES = frozenset({"Running", "Completed", "Succeeded"})

# -- Core tools checked by check-deps --
CORE_TOOLS = ("kubectl", "helm", "docker", "curl")

# -- Host requirements for package-based backends --
MIN_CPUS = 2
MIN_MEMORY_GB = 2
POD_NETWORK_CIDR = "10.244.0.0/16"
