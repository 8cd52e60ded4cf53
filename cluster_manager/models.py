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

"""Value objects shared by backends, the planner, and the batch runner."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from cluster_manager.constants import (
    DEFAULT_HELM_TIMEOUT,
    DEFAULT_KUBECONFIG,
    ENV_ACCESS_ID,
    ENV_ROOT_URL,
    ENV_SECRET_ACCESS_KEY,
    HELM_KEY_REGISTRY,
)


# ============================================================================
# Backends
# ============================================================================

class BackendId(str, Enum):
    """Supported cluster backends, in batch-run order."""

    KUBEADM = "kubeadm"
    K0S = "k0s"
    K3S = "k3s"
    K3D = "k3d"
    KIND = "kind"
    MICROK8S = "microk8s"
    MINIKUBE = "minikube"
    ZUUL = "zuul"


@dataclass(frozen=True)
class BackendDescriptor:
    """Static facts about one backend.

    Attributes:
        id: Backend identifier.
        supports_local_registry_mirror: Whether the node image puller can be
            pointed at an insecure local registry.
        default_runtime_variant: Chart ``variant`` value for this backend.
        profile_enabled: Chart ``profile.enabled`` value for this backend.
        requires_root: Whether install/uninstall mutate system paths.
        summary: One-line description for listings.
    """

    id: BackendId
    supports_local_registry_mirror: bool
    default_runtime_variant: str
    profile_enabled: bool
    requires_root: bool
    summary: str

    @property
    def name(self) -> str:
        return self.id.value


DESCRIPTORS: dict[BackendId, BackendDescriptor] = {
    BackendId.KUBEADM: BackendDescriptor(
        BackendId.KUBEADM, True, "generic", False, True, "kubeadm single-node control plane with Calico"),
    BackendId.K0S: BackendDescriptor(
        BackendId.K0S, True, "k0s", True, True, "k0s single-node controller"),
    BackendId.K3S: BackendDescriptor(
        BackendId.K3S, True, "k3s", False, True, "k3s server installed as a systemd service"),
    BackendId.K3D: BackendDescriptor(
        BackendId.K3D, True, "k3s", True, False, "k3s in docker via k3d"),
    BackendId.KIND: BackendDescriptor(
        BackendId.KIND, True, "generic", False, False, "Kubernetes in docker via kind"),
    BackendId.MICROK8S: BackendDescriptor(
        BackendId.MICROK8S, True, "generic", False, True, "MicroK8s snap"),
    BackendId.MINIKUBE: BackendDescriptor(
        BackendId.MINIKUBE, True, "generic", True, False, "minikube with containerd runtime"),
    BackendId.ZUUL: BackendDescriptor(
        BackendId.ZUUL, True, "generic", False, True, "Zuul CI simulation on kubeadm with Weave Net"),
}


# ============================================================================
# Cluster state
# ============================================================================

class ClusterPhase(str, Enum):
    ABSENT = "Absent"
    INSTALLING = "Installing"
    RUNNING = "Running"
    DEGRADED = "Degraded"
    UNINSTALLING = "Uninstalling"


@dataclass
class ClusterState:
    """Live state of one backend's cluster on this host.

    Attributes:
        backend: Descriptor of the owning backend.
        phase: Current lifecycle phase.
        registry_address: ``host:port`` of the reconciled local registry, if any.
        kubeconfig_path: Canonical kubeconfig path the cluster writes to.
    """

    backend: BackendDescriptor
    phase: ClusterPhase = ClusterPhase.ABSENT
    registry_address: str | None = None
    kubeconfig_path: Path = DEFAULT_KUBECONFIG


# ============================================================================
# Registry
# ============================================================================

class RegistryMode(str, Enum):
    REMOTE = "Remote"
    LOCAL = "Local"


@dataclass(frozen=True)
class RegistrySpec:
    """Where the local insecure registry lives and whether the runtime pulls from it.

    Attributes:
        address: Registry address as ``host:port``.
        mode: ``LOCAL`` to deploy the runtime from this registry, ``REMOTE`` otherwise.
    """

    address: str
    mode: RegistryMode = RegistryMode.REMOTE

    @property
    def host(self) -> str:
        return self.address.rsplit(":", 1)[0]

    @property
    def port(self) -> int:
        return int(self.address.rsplit(":", 1)[1])


# ============================================================================
# Runtime deployment
# ============================================================================

@dataclass(frozen=True)
class RuntimeCredentials:
    """Runtime agent credentials read from the user's credentials file."""

    access_id: str = ""
    secret_key: str = ""
    root_url: str = ""

    def missing_fields(self) -> list[str]:
        """Return the names of empty credential fields."""
        return [name for name in ("access_id", "secret_key", "root_url") if not getattr(self, name)]

    def as_env(self) -> dict[str, str]:
        """Return the credentials keyed by their environment variable names."""
        return {
            ENV_ACCESS_ID: self.access_id,
            ENV_SECRET_ACCESS_KEY: self.secret_key,
            ENV_ROOT_URL: self.root_url,
        }

    def __repr__(self) -> str:
        masked = "***" if self.secret_key else ""
        return f"RuntimeCredentials(access_id={self.access_id!r}, secret_key={masked!r}, root_url={self.root_url!r})"


@dataclass(frozen=True)
class DeploymentPlan:
    """A fully-parameterized, immutable Helm deployment of the runtime agent.

    Attributes:
        chart_ref: OCI reference of the chart.
        release: Helm release name.
        namespace: Target namespace.
        chart_values: Values set regardless of registry mode.
        value_overrides: Registry-mode specific values (local registry, tag, pull policy).
        image_pull_secret_name: Pull secret attached in remote mode, or None.
        registry_secret_file: Manifest that creates the pull secret, or None.
        helm_timeout: ``helm --timeout`` value.

    Raises:
        ValueError: If a local registry override and a pull secret are both set.
    """

    chart_ref: str
    release: str
    namespace: str
    chart_values: Mapping[str, str] = field(default_factory=dict)
    value_overrides: Mapping[str, str] = field(default_factory=dict)
    image_pull_secret_name: str | None = None
    registry_secret_file: Path | None = None
    helm_timeout: str = DEFAULT_HELM_TIMEOUT

    def __post_init__(self) -> None:
        if HELM_KEY_REGISTRY in self.value_overrides and self.image_pull_secret_name:
            raise ValueError("A deployment plan cannot use both a local registry override and a pull secret")
        object.__setattr__(self, "chart_values", MappingProxyType(dict(self.chart_values)))
        object.__setattr__(self, "value_overrides", MappingProxyType(dict(self.value_overrides)))

    @property
    def uses_local_registry(self) -> bool:
        return HELM_KEY_REGISTRY in self.value_overrides


# ============================================================================
# Batch results
# ============================================================================

class BackendOutcome(str, Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class BackendResult:
    """Outcome of one backend in a batch run."""

    backend: str
    outcome: BackendOutcome
    duration: float
    error: str | None = None
    log_file: Path | None = None


@dataclass
class TestRunSummary:
    """Append-only record of a batch run.

    Attributes:
        results: Per-backend results in run order.
        started_at: Wall-clock start time (epoch seconds).
    """

    __test__ = False

    results: list[BackendResult] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)

    def record(self, result: BackendResult) -> None:
        self.results.append(result)

    @property
    def per_backend(self) -> dict[str, BackendOutcome]:
        return {r.backend: r.outcome for r in self.results}

    @property
    def durations(self) -> dict[str, float]:
        return {r.backend: r.duration for r in self.results}

    def count(self, outcome: BackendOutcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    @property
    def exit_code(self) -> int:
        """0 only when every backend ran and passed."""
        if not self.results:
            return 1
        return 0 if all(r.outcome is BackendOutcome.PASSED for r in self.results) else 1
