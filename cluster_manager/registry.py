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

"""Local insecure registry provisioning, trust reconciliation, and verification."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import docker
import requests
import sh
from rich.panel import Panel

from cluster_manager import console
from cluster_manager.config import RegistrySettings
from cluster_manager.constants import (
    CLUSTER_READY_TIMEOUT,
    DEFAULT_REGISTRY_PORT,
    REGISTRY_DATA_PATH,
    REGISTRY_IMAGE,
    REGISTRY_POLL_INTERVAL_SECONDS,
    REGISTRY_READY_TIMEOUT,
    TEST_IMAGE,
    TEST_IMAGE_TAG,
    TEST_POD_NAME,
    TEST_POD_READY_TIMEOUT,
)
from cluster_manager.errors import ExternalToolError
from cluster_manager.host import detect_host_ip
from cluster_manager.models import RegistryMode, RegistrySpec
from cluster_manager.poller import wait_until
from cluster_manager.probes import pod_image_pulled, registry_reachable
from cluster_manager.utils import run_kubectl

if TYPE_CHECKING:
    from cluster_manager.backends.base import BackendAdapter


def resolve_registry_spec(
    settings: RegistrySettings,
    *,
    registry_ip: str | None = None,
    local: bool = False,
) -> RegistrySpec:
    """Resolve the registry address and deployment mode for one install run.

    Address precedence: ``RF_LOCAL_REGISTRY``, then ``--registry-ip``, then the
    detected host IP. Local mode is chosen by ``--local-registry`` or
    ``RF_USE_LOCAL_REGISTRY``.

    Args:
        settings: Registry settings loaded from the environment.
        registry_ip: Explicit registry host from the command line.
        local: Whether ``--local-registry`` was given.

    Returns:
        An immutable RegistrySpec.
    """
    host = detect_host_ip(settings.local_registry or registry_ip)
    address = host if ":" in host else f"{host}:{settings.registry_port}"
    mode = RegistryMode.LOCAL if (local or settings.use_local_registry) else RegistryMode.REMOTE
    return RegistrySpec(address=address, mode=mode)


# ============================================================================
# Registry containers (docker-based backends)
# ============================================================================

def container_running(name: str) -> bool:
    """True if a docker container named *name* exists and is running."""
    try:
        client = docker.from_env()
    except docker.errors.DockerException:
        return False
    try:
        return client.containers.get(name).status == "running"
    except docker.errors.NotFound:
        return False
    finally:
        client.close()


def ensure_registry_container(name: str, spec: RegistrySpec) -> None:
    """Start a ``registry:2`` container bound to the registry address, creating it if needed.

    The registry stores images on a named volume so they survive container restarts.

    Args:
        name: Container name.
        spec: Registry address to bind.
    """
    client = docker.from_env()
    try:
        try:
            container = client.containers.get(name)
        except docker.errors.NotFound:
            console.print(f"[yellow]\u2139\ufe0f  Creating registry container '{name}' on {spec.address}...[/yellow]")
            client.containers.run(
                REGISTRY_IMAGE,
                name=name,
                detach=True,
                restart_policy={"Name": "always"},
                ports={f"{DEFAULT_REGISTRY_PORT}/tcp": (spec.host, spec.port)},
                volumes={f"{name}-data": {"bind": REGISTRY_DATA_PATH, "mode": "rw"}},
            )
            console.print(f"[green]\u2705 Registry container '{name}' started[/green]")
            return
        if container.status != "running":
            container.start()
            console.print(f"[green]  \u2713 Restarted registry container '{name}'[/green]")
        else:
            console.print(f"[yellow]   Registry container '{name}' already running[/yellow]")
    finally:
        client.close()


def connect_registry_network(name: str, network: str) -> None:
    """Attach the registry container to a docker network unless already attached."""
    client = docker.from_env()
    try:
        container = client.containers.get(name)
        attached = container.attrs.get("NetworkSettings", {}).get("Networks", {})
        if network in attached:
            return
        client.networks.get(network).connect(container)
        console.print(f"[green]  \u2713 Connected '{name}' to network '{network}'[/green]")
    finally:
        client.close()


def remove_registry_container(name: str) -> None:
    """Stop and remove the registry container; its data volume is kept."""
    client = docker.from_env()
    try:
        try:
            container = client.containers.get(name)
        except docker.errors.NotFound:
            console.print(f"[yellow]   Registry container '{name}' not found[/yellow]")
            return
        container.stop()
        container.remove()
    finally:
        client.close()


# ============================================================================
# Round-trip verification
# ============================================================================

def push_test_image(address: str) -> str:
    """Pull the test image, tag it for the local registry, and push it.

    Args:
        address: Registry ``host:port``.

    Returns:
        The pushed image reference.

    Raises:
        RuntimeError: If the registry rejects the push.
    """
    repository = f"{address}/{TEST_IMAGE}"
    client = docker.from_env()
    try:
        client.images.pull(TEST_IMAGE, tag="latest")
        image = client.images.get(f"{TEST_IMAGE}:latest")
        image.tag(repository, tag=TEST_IMAGE_TAG)
        for line in client.images.push(repository, tag=TEST_IMAGE_TAG, stream=True, decode=True):
            if "error" in line:
                raise RuntimeError(f"Push to {address} failed: {line['error']}")
    finally:
        client.close()
    return f"{repository}:{TEST_IMAGE_TAG}"


def cluster_pulls_image(image: str) -> bool:
    """Start a throwaway pod from *image* and report whether the node could pull it."""
    run_kubectl(["delete", "pod", TEST_POD_NAME, "--ignore-not-found", "--force", "--grace-period=0"])
    ok, _, stderr = run_kubectl(["run", TEST_POD_NAME, f"--image={image}", "--restart=Never"])
    if not ok:
        console.print(f"[yellow]\u26a0\ufe0f  Could not start test pod: {stderr.strip()}[/yellow]")
        return False
    try:
        return wait_until(
            lambda: pod_image_pulled(TEST_POD_NAME),
            timeout=TEST_POD_READY_TIMEOUT,
            interval=REGISTRY_POLL_INTERVAL_SECONDS,
            description="test pod image pull",
        ).ready
    finally:
        run_kubectl(["delete", "pod", TEST_POD_NAME, "--ignore-not-found", "--force", "--grace-period=0"])


def round_trip_test_image(spec: RegistrySpec) -> bool:
    """Push the test image from the host and pull it from inside the cluster."""
    image = push_test_image(spec.address)
    return cluster_pulls_image(image)


# ============================================================================
# Reconciler
# ============================================================================

class RegistryReconciler:
    """Makes the cluster's image puller trust the local registry.

    Provisioning, reachability and trust configuration are fatal when they
    fail or do not converge. The closing round trip is advisory: a failure is
    reported as a warning because some runtimes finish wiring trust only
    after a later restart.
    """

    def __init__(
        self,
        timeout: float = REGISTRY_READY_TIMEOUT,
        interval: float = REGISTRY_POLL_INTERVAL_SECONDS,
        cluster_timeout: float = CLUSTER_READY_TIMEOUT,
    ) -> None:
        self.timeout = timeout
        self.interval = interval
        self.cluster_timeout = cluster_timeout

    def reconcile(self, adapter: BackendAdapter, spec: RegistrySpec) -> bool:
        """Provision, trust, reload, and verify the registry for *adapter*.

        Args:
            adapter: Backend whose node configuration is updated.
            spec: Registry to trust.

        Returns:
            True if the round-trip verification succeeded.

        Raises:
            ExternalToolError: If provisioning or trust configuration fails.
            ConvergenceTimeoutError: If the registry or the reloaded cluster never becomes ready.
        """
        console.print(Panel.fit(f"Reconciling local registry {spec.address}", style="bold blue"))

        _fatal_step(lambda: adapter.ensure_registry(spec))
        wait_until(
            lambda: registry_reachable(spec.address),
            timeout=self.timeout,
            interval=self.interval,
            description=f"registry at {spec.address}",
        ).raise_for_timeout()

        _fatal_step(lambda: adapter.write_trust_config(spec))
        if _fatal_step(lambda: adapter.reload_runtime(spec)):
            adapter.wait_for_cluster(self.cluster_timeout)

        try:
            verified = adapter.verify_registry_trust(spec)
        except (sh.ErrorReturnCode, docker.errors.DockerException, requests.RequestException, RuntimeError) as exc:
            console.print(f"[yellow]\u26a0\ufe0f  Registry round trip raised: {exc}[/yellow]")
            verified = False
        if verified:
            console.print(f"[green]\u2705 Cluster pulls from {spec.address}[/green]")
        else:
            console.print(
                f"[yellow]\u26a0\ufe0f  Registry round trip through {spec.address} did not complete; "
                "continuing, images may need a runtime restart to resolve[/yellow]"
            )
        return verified


def _fatal_step(fn: Callable[[], object]) -> object:
    try:
        return fn()
    except sh.ErrorReturnCode as err:
        raise ExternalToolError.from_sh(err) from err
    except docker.errors.DockerException as err:
        raise ExternalToolError("docker", 1, str(err)) from err
