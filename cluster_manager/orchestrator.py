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

"""Orchestration functions that sequence backend lifecycles into workflows."""

from __future__ import annotations

import os
import time
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

import sh
from rich.panel import Panel

from cluster_manager import console, logger
from cluster_manager.backends import BACKENDS, get_adapter, parse_backend
from cluster_manager.backends.base import BackendAdapter
from cluster_manager.config import HostSettings, RegistrySettings, RunOptions
from cluster_manager.constants import (
    CORE_TOOLS,
    COVERAGE_ARGS,
    COVERAGE_POD_TIMEOUT,
    COVERAGE_SCRIPT,
    LOG_TIMESTAMP_FORMAT,
    POD_POLL_INTERVAL_SECONDS,
    TEST_SUMMARY_PREFIX,
    dep_value,
)
from cluster_manager.credentials import load_credentials
from cluster_manager.errors import PreconditionError
from cluster_manager.host import detect_arch
from cluster_manager.models import (
    BackendId,
    BackendOutcome,
    BackendResult,
    ClusterPhase,
    ClusterState,
    RegistrySpec,
    TestRunSummary,
)
from cluster_manager.planner import build_plan
from cluster_manager.poller import wait_until
from cluster_manager.probes import pods_settled, unsettled_pods
from cluster_manager.registry import resolve_registry_spec
from cluster_manager.report import SummaryLog, summary_table
from cluster_manager.utils import command_available, describe, require_command, run_kubectl

KUBECTL_INSTALL_PATH = Path("/usr/local/bin/kubectl")

PHASE_STYLES = {
    ClusterPhase.RUNNING: "green",
    ClusterPhase.DEGRADED: "red",
    ClusterPhase.ABSENT: "yellow",
    ClusterPhase.INSTALLING: "yellow",
    ClusterPhase.UNINSTALLING: "yellow",
}

# ============================================================================
# Internal helpers
# ============================================================================


def _registry_spec(options: RunOptions) -> RegistrySpec:
    spec = resolve_registry_spec(RegistrySettings(), registry_ip=options.registry_ip, local=options.local_registry)
    console.print(f"[yellow]\u2139\ufe0f  Registry: {spec.address} ({spec.mode.value} mode)[/yellow]")
    return spec


def _deploy_runtime(adapter: BackendAdapter, spec: RegistrySpec, options: RunOptions, *, required: bool) -> bool:
    """Plan and execute the runtime deployment on *adapter*'s cluster.

    Args:
        adapter: Backend whose cluster receives the runtime.
        spec: Registry spec of the current run.
        options: Run options supplying the image tag.
        required: When False, missing credentials or helm skip the deployment
            with an info line instead of raising.

    Returns:
        True if the runtime was deployed, False if it was skipped.

    Raises:
        PreconditionError: If *required* and helm or credentials are missing.
    """
    settings = adapter.runtime_settings
    credentials = load_credentials(settings.credentials_file)
    if not required:
        if credentials.missing_fields():
            console.print(f"[yellow]\u2139\ufe0f  No complete credentials in {settings.credentials_file}, "
                          "skipping runtime deployment[/yellow]")
            return False
        if not command_available("helm"):
            console.print("[yellow]\u2139\ufe0f  helm not found, skipping runtime deployment[/yellow]")
            return False
    else:
        require_command("helm")

    plan = build_plan(
        backend=adapter.descriptor,
        registry=spec,
        credentials=credentials,
        settings=settings,
        image_tag=options.image_tag,
    )
    adapter.deploy_runtime(plan, credentials)
    return True


def _wait_for_pods(timeout: float, description: str = "all pods Running/Completed") -> None:
    result = wait_until(
        pods_settled,
        timeout=timeout,
        interval=POD_POLL_INTERVAL_SECONDS,
        description=description,
    )
    if not result.ready:
        _dump_unsettled_pods()
    result.raise_for_timeout()
    console.print("[green]\u2705 All pods are ready[/green]")


def _dump_unsettled_pods() -> None:
    """Print the pods that never settled and ``kubectl describe`` for their namespaces."""
    try:
        pending = unsettled_pods()
    except RuntimeError as exc:
        console.print(f"[yellow]\u26a0\ufe0f  Could not collect pod state: {exc}[/yellow]")
        return
    console.print("[red]\u274c Pods not Running/Completed:[/red]")
    for line in pending:
        console.print(f"  {line}", markup=False, highlight=False)
    for namespace in sorted({line.split("/", 1)[0] for line in pending}):
        console.print(f"[yellow]--- kubectl describe pods -n {namespace} ---[/yellow]")
        console.print(describe("pods", namespace).rstrip(), markup=False, highlight=False)


def find_coverage_hook(backend: str, hooks_dir: Path) -> Path | None:
    """Return the coverage script for *backend*, preferring ``<hooks_dir>/<backend>/`` over ``<hooks_dir>/``."""
    for candidate in (hooks_dir / backend / COVERAGE_SCRIPT, hooks_dir / COVERAGE_SCRIPT):
        if candidate.is_file():
            return candidate
    return None


def run_coverage_hook(backend: str, timeout: float = COVERAGE_POD_TIMEOUT, hooks_dir: Path | None = None) -> None:
    """Run the external coverage hook and wait for the pods it creates.

    Raises:
        PreconditionError: If no coverage script is found.
        sh.ErrorReturnCode: If the script fails.
        ConvergenceTimeoutError: If its pods do not settle in time.
    """
    hooks_dir = hooks_dir or HostSettings().hooks_dir
    script = find_coverage_hook(backend, hooks_dir)
    if script is None:
        raise PreconditionError(f"{COVERAGE_SCRIPT} not found in {hooks_dir / backend} or {hooks_dir}")
    if not os.access(script, os.X_OK):
        script.chmod(script.stat().st_mode | 0o111)

    console.print(f"[yellow]\u2139\ufe0f  Executing: {script.name} {' '.join(COVERAGE_ARGS)}[/yellow]")
    sh.Command(str(script.resolve()))(
        *COVERAGE_ARGS,
        _cwd=str(script.parent),
        _out=lambda line: console.print(line.rstrip(), markup=False, highlight=False),
    )
    _wait_for_pods(timeout, description="coverage test pods")
    console.print("[green]\u2705 Coverage test completed[/green]")


# ============================================================================
# Single-backend workflows
# ============================================================================


def run_install(backend: str, options: RunOptions, adapter: BackendAdapter | None = None) -> ClusterState:
    """Install *backend* and deploy the runtime when credentials and helm are available.

    Args:
        backend: Backend name.
        options: Run options.
        adapter: Pre-built adapter, or None to construct one.

    Returns:
        The cluster state after install.

    Raises:
        RuntimeError: If any fatal phase fails.
    """
    adapter = adapter or get_adapter(backend)
    spec = _registry_spec(options)
    state = adapter.install(spec)
    if options.skip_runtime:
        console.print("[yellow]\u2139\ufe0f  Skipping runtime deployment[/yellow]")
    else:
        _deploy_runtime(adapter, spec, options, required=False)
    return state


def run_uninstall(backend: str, adapter: BackendAdapter | None = None) -> ClusterState:
    """Uninstall *backend*; tolerates a missing or partial cluster."""
    adapter = adapter or get_adapter(backend)
    return adapter.uninstall()


def run_status(backend: str, adapter: BackendAdapter | None = None) -> ClusterState:
    """Print a read-only status report for *backend* and return its state."""
    adapter = adapter or get_adapter(backend)
    state = adapter.status()
    style = PHASE_STYLES[state.phase]

    console.print(Panel.fit(f"{adapter.name} cluster status", style="bold blue"))
    console.print(f"  Phase:      [{style}]{state.phase.value}[/{style}]")
    console.print(f"  Kubeconfig: {state.kubeconfig_path}")
    console.print(f"  Registry:   {state.registry_address or '-'}")
    for line in adapter.describe_extra():
        console.print(f"  {line}")

    if state.phase is ClusterPhase.RUNNING:
        for args in (["get", "nodes", "-o", "wide"], ["get", "pods", "-A"]):
            ok, stdout, stderr = run_kubectl(args)
            if ok:
                console.print(stdout.rstrip(), markup=False, highlight=False)
            else:
                console.print(f"[yellow]\u26a0\ufe0f  kubectl {' '.join(args)} failed: {stderr.strip()}[/yellow]")
    return state


def run_deploy(backend: str, options: RunOptions, adapter: BackendAdapter | None = None) -> None:
    """Deploy the runtime onto an already running *backend* cluster.

    Raises:
        PreconditionError: If helm or credentials are missing or the cluster is not running.
    """
    adapter = adapter or get_adapter(backend)
    spec = _registry_spec(options)
    _deploy_runtime(adapter, spec, options, required=True)


def run_test(backend: str, options: RunOptions, adapter: BackendAdapter | None = None) -> None:
    """Install, verify, exercise and (optionally) uninstall one backend.

    Runtime deployment and the coverage hook are advisory: their failures are
    printed as warnings. Install and pod settling are fatal, and a fatal
    failure leaves the cluster in place for inspection.

    Raises:
        RuntimeError: If install fails or pods do not settle within ``options.timeout``.
    """
    adapter = adapter or get_adapter(backend)
    console.print(Panel.fit(f"Testing {adapter.name} cluster", style="bold blue"))

    # Phase 1: Install and let the cluster settle
    spec = _registry_spec(options)
    adapter.install(spec)
    if options.settle_delay > 0:
        console.print(f"[yellow]\u2139\ufe0f  Waiting {options.settle_delay}s for the cluster to stabilize...[/yellow]")
        time.sleep(options.settle_delay)
    _wait_for_pods(options.timeout)

    # Phase 2: Advisory workloads
    if options.skip_runtime:
        console.print("[yellow]\u2139\ufe0f  Skipping runtime deployment[/yellow]")
    else:
        try:
            _deploy_runtime(adapter, spec, options, required=True)
        except (RuntimeError, sh.ErrorReturnCode) as err:
            console.print(f"[yellow]\u26a0\ufe0f  Runtime deployment failed, continuing: {err}[/yellow]")
    if options.skip_coverage:
        console.print("[yellow]\u2139\ufe0f  Skipping coverage test[/yellow]")
    else:
        try:
            run_coverage_hook(adapter.name)
        except (RuntimeError, sh.ErrorReturnCode, OSError) as err:
            console.print(f"[yellow]\u26a0\ufe0f  Coverage test failed or was skipped: {err}[/yellow]")

    # Phase 3: Report and clean up
    run_status(adapter.name, adapter=adapter)
    if options.keep_cluster:
        console.print(f"[yellow]\u2139\ufe0f  Keeping {adapter.name} cluster as requested[/yellow]")
    else:
        adapter.uninstall()
    console.print(f"[green]\u2705 {adapter.name} test completed[/green]")


# ============================================================================
# Batch workflow
# ============================================================================


def run_test_all(
    options: RunOptions,
    backends: Sequence[str] | None = None,
    *,
    log_dir: Path | None = None,
) -> TestRunSummary:
    """Run ``run_test`` for each backend in turn, isolating failures.

    Each backend's output is mirrored into ``<log_dir>/<backend>_<ts>.log`` and
    its outcome appended to ``<log_dir>/test_summary_<ts>.log``. Unknown
    backends and backends without an adapter are recorded as skipped.

    Args:
        options: Run options applied to every backend.
        backends: Backend names in run order, or None for all of them.
        log_dir: Log directory, or None for the configured default.

    Returns:
        The accumulated summary; its ``exit_code`` is 0 only if every backend passed.
    """
    names = list(backends) if backends else [b.value for b in BackendId]
    log_dir = log_dir or HostSettings().log_dir
    timestamp = datetime.now().strftime(LOG_TIMESTAMP_FORMAT)
    summary = TestRunSummary()
    summary_log = SummaryLog(
        log_dir / f"{TEST_SUMMARY_PREFIX}_{timestamp}.log",
        registry_address=options.registry_ip or RegistrySettings().local_registry,
    )

    console.print(Panel.fit("Testing all Kubernetes cluster types", style="bold blue"))
    for index, name in enumerate(names):
        result = _run_one(name, options, log_dir / f"{name}_{timestamp}.log")
        summary.record(result)
        summary_log.record(result)

        if index < len(names) - 1 and options.cool_down > 0:
            console.print(f"[yellow]\u2139\ufe0f  Waiting {options.cool_down}s before the next backend...[/yellow]")
            time.sleep(options.cool_down)

    summary_log.finish(summary, total=len(names))
    console.print(summary_table(summary))
    console.print(f"[yellow]\u2139\ufe0f  Detailed logs saved in: {log_dir}[/yellow]")

    failed = summary.count(BackendOutcome.FAILED)
    skipped = summary.count(BackendOutcome.SKIPPED)
    if summary.exit_code == 0:
        console.print("[green]\u2705 All cluster tests passed![/green]")
    else:
        if failed:
            console.print(f"[red]\u274c {failed} backend(s) failed[/red]")
        if skipped:
            console.print(f"[yellow]\u26a0\ufe0f  {skipped} backend(s) skipped[/yellow]")
    return summary


def _run_one(name: str, options: RunOptions, log_file: Path) -> BackendResult:
    try:
        backend = parse_backend(name)
    except PreconditionError as err:
        console.print(f"[yellow]\u26a0\ufe0f  Skipping {name}: {err}[/yellow]")
        return BackendResult(name, BackendOutcome.SKIPPED, 0.0, error=str(err))
    if BACKENDS.get(backend) is None:
        console.print(f"[yellow]\u26a0\ufe0f  Skipping {name}: no adapter implemented[/yellow]")
        return BackendResult(name, BackendOutcome.SKIPPED, 0.0, error="no adapter implemented")

    start = time.monotonic()
    with console.tee(log_file):
        try:
            run_test(backend.value, options)
        except Exception as err:
            duration = time.monotonic() - start
            logger.debug("backend %s failed", name, exc_info=True)
            console.print(f"[red]\u274c {name}: FAILED (Duration: {duration:.0f}s): {err}[/red]")
            return BackendResult(name, BackendOutcome.FAILED, duration, error=str(err), log_file=log_file)
        duration = time.monotonic() - start
        console.print(f"[green]\u2705 {name}: PASSED (Duration: {duration:.0f}s)[/green]")
    return BackendResult(name, BackendOutcome.PASSED, duration, log_file=log_file)


# ============================================================================
# Host tooling
# ============================================================================


def list_backends() -> dict[str, bool]:
    """Print every supported backend with whether its required commands are present.

    Returns:
        Mapping of backend name to availability.
    """
    console.print(Panel.fit("Supported Kubernetes cluster types", style="bold blue"))
    availability: dict[str, bool] = {}
    for backend_id, adapter_cls in BACKENDS.items():
        missing = [cmd for cmd in adapter_cls.required_commands if not command_available(cmd)]
        availability[backend_id.value] = not missing
        summary = adapter_cls.descriptor.summary
        if missing:
            console.print(f"  [red]\u2717[/red] {backend_id.value:<9} {summary} (missing: {', '.join(missing)})")
        else:
            console.print(f"  [green]\u2713[/green] {backend_id.value:<9} {summary}")
    return availability


def install_kubectl() -> None:
    base = dep_value("tools", "kubectl_release_base")
    version = str(sh.curl("-fsSL", f"{base}/stable.txt")).strip()
    sh.curl("-fsSLo", str(KUBECTL_INSTALL_PATH), f"{base}/{version}/bin/linux/{detect_arch()}/kubectl")
    KUBECTL_INSTALL_PATH.chmod(0o755)


def install_helm() -> None:
    sh.bash(_in=str(sh.curl("-fsSL", dep_value("tools", "helm_install_script"))))


TOOL_INSTALLERS = {
    "kubectl": install_kubectl,
    "helm": install_helm,
}


def check_deps(install: bool | None = None) -> list[str]:
    """Report core tool availability and optionally install kubectl and helm.

    Args:
        install: Install missing installable tools; None reads ``INSTALL_DEPS``.

    Returns:
        Names of tools still missing afterwards.
    """
    if install is None:
        install = HostSettings().install_deps
    console.print(Panel.fit("Checking dependencies", style="bold blue"))

    missing: list[str] = []
    for tool in CORE_TOOLS:
        if command_available(tool):
            console.print(f"  [green]\u2713[/green] {tool}")
            continue
        installer = TOOL_INSTALLERS.get(tool)
        if install and installer is not None:
            console.print(f"[yellow]\u2139\ufe0f  Installing {tool}...[/yellow]")
            installer()
            console.print(f"  [green]\u2713[/green] {tool} (installed)")
            continue
        console.print(f"  [red]\u2717[/red] {tool}")
        missing.append(tool)

    if missing and not install:
        console.print("[yellow]\u2139\ufe0f  Set INSTALL_DEPS=true to install kubectl and helm automatically[/yellow]")
    return missing
