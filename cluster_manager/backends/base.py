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

"""Uniform backend protocol: install, uninstall, status, deploy_runtime."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable

import sh
from rich.panel import Panel

from cluster_manager import console, logger
from cluster_manager.config import HostSettings, RuntimeSettings
from cluster_manager.constants import CLUSTER_READY_TIMEOUT, POD_POLL_INTERVAL_SECONDS
from cluster_manager.errors import ExternalToolError, PreconditionError
from cluster_manager.host import is_root
from cluster_manager.kubeconfig import KubeconfigHandle
from cluster_manager.models import (
    BackendDescriptor,
    ClusterPhase,
    ClusterState,
    DeploymentPlan,
    RegistrySpec,
    RuntimeCredentials,
)
from cluster_manager.planner import execute_plan
from cluster_manager.poller import wait_until
from cluster_manager.probes import api_reachable, nodes_ready
from cluster_manager.registry import RegistryReconciler, round_trip_test_image
from cluster_manager.utils import best_effort, require_command

TeardownStep = tuple[str, Callable[[], object]]


class BackendAdapter(ABC):
    """One cluster technology behind the uniform lifecycle protocol.

    Subclasses set ``descriptor`` and ``required_commands`` and implement the
    provisioning hooks; the lifecycle rules (idempotent install, degraded
    cleanup, best-effort teardown, kubeconfig restore) live here.
    """

    descriptor: BackendDescriptor
    required_commands: tuple[str, ...] = ("kubectl",)

    def __init__(
        self,
        kubeconfig: KubeconfigHandle | None = None,
        reconciler: RegistryReconciler | None = None,
        runtime_settings: RuntimeSettings | None = None,
        cluster_timeout: float = CLUSTER_READY_TIMEOUT,
    ) -> None:
        self.kubeconfig = kubeconfig or KubeconfigHandle(HostSettings().kubeconfig_path)
        self.reconciler = reconciler or RegistryReconciler()
        self.runtime_settings = runtime_settings or RuntimeSettings()
        self.cluster_timeout = cluster_timeout
        self.state = ClusterState(backend=self.descriptor, kubeconfig_path=self.kubeconfig.path)

    @property
    def name(self) -> str:
        return self.descriptor.name

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------

    def install(self, spec: RegistrySpec) -> ClusterState:
        """Bring the cluster to Running and reconcile the local registry.

        Returns the current state unchanged when the cluster is already
        running. A degraded leftover from a previous attempt is force-cleaned
        before provisioning. Any failure leaves the state Degraded and
        re-raises.

        Args:
            spec: Registry to reconcile into the node configuration.

        Returns:
            The live ClusterState.
        """
        self.check_prerequisites()
        current = self.status()
        if current.phase is ClusterPhase.RUNNING:
            console.print(f"[yellow]\u2139\ufe0f  {self.name} cluster is already running, nothing to install[/yellow]")
            return current
        if current.phase is ClusterPhase.DEGRADED:
            console.print(f"[yellow]\u26a0\ufe0f  Found a partially installed {self.name} cluster, cleaning it up first[/yellow]")
            self.force_clean()

        console.print(Panel.fit(f"Installing {self.name} cluster", style="bold blue"))
        self.state.phase = ClusterPhase.INSTALLING
        try:
            self.kubeconfig.acquire()
            self.provision(spec)
            self.fetch_kubeconfig()
            self.wait_for_cluster(self.cluster_timeout)
            self.state.phase = ClusterPhase.RUNNING
            if self.descriptor.supports_local_registry_mirror:
                self.reconciler.reconcile(self, spec)
                self.state.registry_address = spec.address
            self.install_addons(spec)
        except sh.ErrorReturnCode as err:
            self.state.phase = ClusterPhase.DEGRADED
            raise ExternalToolError.from_sh(err) from err
        except Exception:
            self.state.phase = ClusterPhase.DEGRADED
            raise
        console.print(f"[green]\u2705 {self.name} cluster installed[/green]")
        return self.state

    def uninstall(self) -> ClusterState:
        """Tear the cluster down; every step is best-effort and the kubeconfig is always restored."""
        console.print(Panel.fit(f"Uninstalling {self.name} cluster", style="bold blue"))
        self.state.phase = ClusterPhase.UNINSTALLING
        try:
            for label, step in [*self._runtime_teardown_steps(), *self.teardown_steps()]:
                best_effort(label, step)
        finally:
            self.kubeconfig.release()
            self.state.phase = ClusterPhase.ABSENT
            self.state.registry_address = None
        console.print(f"[green]\u2705 {self.name} cluster uninstalled[/green]")
        return self.state

    def status(self) -> ClusterState:
        """Refresh the phase from the host without changing anything on it."""
        if not self.is_installed():
            self.state.phase = ClusterPhase.ABSENT
        elif self.is_running():
            self.state.phase = ClusterPhase.RUNNING
        else:
            self.state.phase = ClusterPhase.DEGRADED
        return self.state

    def deploy_runtime(self, plan: DeploymentPlan, credentials: RuntimeCredentials) -> None:
        """Execute a deployment plan against a running cluster.

        Raises:
            PreconditionError: If the cluster is not running or credentials are incomplete.
        """
        if self.status().phase is not ClusterPhase.RUNNING:
            raise PreconditionError(f"{self.name} cluster is not running; install it first")
        execute_plan(plan, credentials, self.runtime_settings.pod_ready_timeout)

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def check_prerequisites(self) -> None:
        if self.descriptor.requires_root and not is_root():
            raise PreconditionError(f"{self.name} must be installed as root")
        for cmd in self.required_commands:
            require_command(cmd)

    def wait_for_cluster(self, timeout: float) -> None:
        """Wait until the API answers and all nodes are Ready.

        Raises:
            ConvergenceTimeoutError: If the cluster does not become ready in time.
        """
        wait_until(
            lambda: api_reachable() and nodes_ready(),
            timeout=timeout,
            interval=POD_POLL_INTERVAL_SECONDS,
            description=f"{self.name} cluster API and nodes",
        ).raise_for_timeout()

    def force_clean(self) -> None:
        """Remove a degraded install so provisioning starts from scratch."""
        for label, step in self.teardown_steps():
            best_effort(label, step)

    def verify_registry_trust(self, spec: RegistrySpec) -> bool:
        return round_trip_test_image(spec)

    def _runtime_teardown_steps(self) -> list[TeardownStep]:
        if not self.is_running():
            return []
        settings = self.runtime_settings
        return [
            ("Uninstalling runtime release",
             lambda: sh.helm("uninstall", settings.release, "-n", settings.namespace)),
            ("Deleting runtime namespace",
             lambda: sh.kubectl("delete", "namespace", settings.namespace, "--ignore-not-found", "--timeout=120s")),
        ]

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def is_installed(self) -> bool:
        """True if any trace of this backend's cluster exists on the host."""

    @abstractmethod
    def is_running(self) -> bool:
        """True if the cluster's control plane is up."""

    @abstractmethod
    def provision(self, spec: RegistrySpec) -> None:
        """Create the cluster. Registry trust known at creation time may be baked in here."""

    @abstractmethod
    def fetch_kubeconfig(self) -> None:
        """Write the cluster's admin kubeconfig through ``self.kubeconfig``."""

    @abstractmethod
    def ensure_registry(self, spec: RegistrySpec) -> None:
        """Create the local registry if it does not exist yet."""

    @abstractmethod
    def write_trust_config(self, spec: RegistrySpec) -> None:
        """Write the backend-specific insecure-registry configuration."""

    def reload_runtime(self, spec: RegistrySpec) -> bool:
        """Restart whatever reads the trust configuration.

        Returns:
            True if a restart happened and the cluster must be waited on again.
        """
        return False

    def install_addons(self, spec: RegistrySpec) -> None:
        """Install backend add-ons such as ingress. Failures here are not fatal by default."""

    @abstractmethod
    def teardown_steps(self) -> list[TeardownStep]:
        """Ordered, individually best-effort teardown steps."""

    def describe_extra(self) -> list[str]:
        """Backend-specific lines for the status report."""
        return []


def log_step(message: str) -> None:
    console.print(f"[yellow]\u2139\ufe0f  {message}...[/yellow]")
    logger.debug(message)
