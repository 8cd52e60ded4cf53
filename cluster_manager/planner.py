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

"""Runtime agent deployment planning and Helm execution."""

from __future__ import annotations

import sh
from rich.panel import Panel

from cluster_manager import console
from cluster_manager.config import RuntimeSettings
from cluster_manager.constants import (
    CREDENTIALS_SECRET_NAME,
    ENV_ACCESS_ID,
    ENV_ROOT_URL,
    ENV_SECRET_ACCESS_KEY,
    HELM_KEY_CLUSTER_CAPTION,
    HELM_KEY_CLUSTER_NAME,
    HELM_KEY_CREDENTIALS_SECRET,
    HELM_KEY_IMAGE_TAG,
    HELM_KEY_PROFILE,
    HELM_KEY_PULL_POLICY,
    HELM_KEY_PULL_SECRETS,
    HELM_KEY_REGISTRY,
    HELM_KEY_SCAN,
    HELM_KEY_VARIANT,
    LOCAL_REGISTRY_REPO,
    POD_POLL_INTERVAL_SECONDS,
    REGISTRY_SECRET_NAME,
    RUNTIME_POD_SELECTOR,
)
from cluster_manager.errors import ExternalToolError, PreconditionError
from cluster_manager.models import (
    BackendDescriptor,
    DeploymentPlan,
    RegistryMode,
    RegistrySpec,
    RuntimeCredentials,
)
from cluster_manager.poller import wait_until
from cluster_manager.probes import pods_ready
from cluster_manager.utils import describe, ensure_namespace, require_command


def _bool(value: bool) -> str:
    return "true" if value else "false"


def require_credentials(credentials: RuntimeCredentials) -> None:
    """Raise PreconditionError if any credential field is empty."""
    missing = credentials.missing_fields()
    if missing:
        raise PreconditionError(
            f"Runtime credentials incomplete (missing: {', '.join(missing)}). "
            "Populate ~/.rapidfort/credentials with access_id, secret_key and rf_root_url."
        )


def build_plan(
    *,
    backend: BackendDescriptor,
    registry: RegistrySpec,
    credentials: RuntimeCredentials,
    settings: RuntimeSettings,
    image_tag: str | None = None,
) -> DeploymentPlan:
    """Turn credentials, registry mode and backend identity into a deployment plan.

    In local mode the chart pulls from ``<registry>/rapidfort`` with
    ``imagePullPolicy=Always`` and no pull secret. In remote mode the chart
    keeps its default registry and attaches the pull secret only when its
    manifest exists on disk.

    Args:
        backend: Backend descriptor supplying the chart variant.
        registry: Resolved registry spec.
        credentials: Runtime credentials; all fields must be set.
        settings: Chart location and timeouts.
        image_tag: Image tag override for local mode.

    Returns:
        An immutable DeploymentPlan.

    Raises:
        PreconditionError: If any credential field is empty.
    """
    require_credentials(credentials)

    chart_values = {
        HELM_KEY_CLUSTER_NAME: backend.name,
        HELM_KEY_CLUSTER_CAPTION: f"{backend.name} Cluster",
        HELM_KEY_CREDENTIALS_SECRET: CREDENTIALS_SECRET_NAME,
        HELM_KEY_VARIANT: backend.default_runtime_variant,
        HELM_KEY_SCAN: "true",
        HELM_KEY_PROFILE: _bool(backend.profile_enabled),
    }
    overrides: dict[str, str] = {}
    pull_secret: str | None = None
    secret_file = None

    if registry.mode is RegistryMode.LOCAL:
        overrides[HELM_KEY_REGISTRY] = f"{registry.address}/{LOCAL_REGISTRY_REPO}"
        if image_tag:
            overrides[HELM_KEY_IMAGE_TAG] = image_tag
        overrides[HELM_KEY_PULL_POLICY] = "Always"
    elif settings.registry_secret_file.exists():
        pull_secret = REGISTRY_SECRET_NAME
        secret_file = settings.registry_secret_file

    return DeploymentPlan(
        chart_ref=settings.chart_ref,
        release=settings.release,
        namespace=settings.namespace,
        chart_values=chart_values,
        value_overrides=overrides,
        image_pull_secret_name=pull_secret,
        registry_secret_file=secret_file,
        helm_timeout=settings.helm_timeout,
    )


def helm_args(plan: DeploymentPlan) -> list[str]:
    """Render the ``helm upgrade --install`` arguments for *plan*."""
    args = ["upgrade", "--install", plan.release, plan.chart_ref, "--namespace", plan.namespace]
    for key, value in {**plan.chart_values, **plan.value_overrides}.items():
        args.extend(["--set", f"{key}={value}"])
    if plan.image_pull_secret_name:
        args.extend(["--set", f"{HELM_KEY_PULL_SECRETS}={{{plan.image_pull_secret_name}}}"])
    args.extend(["--wait", f"--timeout={plan.helm_timeout}"])
    return args


def display_plan(plan: DeploymentPlan) -> None:
    mode = "local registry" if plan.uses_local_registry else "public registry"
    console.print(f"[yellow]Chart: {plan.chart_ref} ({mode})[/yellow]")
    for key, value in plan.value_overrides.items():
        console.print(f"  {key}={value}")
    if plan.image_pull_secret_name:
        console.print(f"  imagePullSecrets={plan.image_pull_secret_name}")


# ============================================================================
# Execution
# ============================================================================

def _create_credentials_secret(namespace: str, credentials: RuntimeCredentials) -> None:
    rendered = sh.kubectl(
        "create", "secret", "generic", CREDENTIALS_SECRET_NAME,
        "-n", namespace,
        f"--from-literal={ENV_ACCESS_ID}={credentials.access_id}",
        f"--from-literal={ENV_SECRET_ACCESS_KEY}={credentials.secret_key}",
        f"--from-literal={ENV_ROOT_URL}={credentials.root_url}",
        "--dry-run=client", "-o", "yaml",
    )
    sh.kubectl("apply", "-f", "-", _in=str(rendered))
    console.print(f"[green]  \u2713 Secret '{CREDENTIALS_SECRET_NAME}' applied[/green]")


def execute_plan(plan: DeploymentPlan, credentials: RuntimeCredentials, pod_ready_timeout: float) -> None:
    """Install or upgrade the runtime chart and wait for its pods.

    Args:
        plan: The deployment plan to execute.
        credentials: Runtime credentials written into the credentials secret.
        pod_ready_timeout: Seconds to wait for runtime pods after Helm returns.

    Raises:
        PreconditionError: If credentials are incomplete or helm is missing.
        ExternalToolError: If kubectl or helm fail, with pod descriptions attached.
        ConvergenceTimeoutError: If runtime pods never become Ready.
    """
    require_credentials(credentials)
    require_command("helm")

    console.print(Panel.fit("Deploying runtime agent", style="bold blue"))
    display_plan(plan)
    try:
        ensure_namespace(plan.namespace)
        _create_credentials_secret(plan.namespace, credentials)
        if plan.registry_secret_file is not None:
            sh.kubectl("apply", "-f", str(plan.registry_secret_file), "-n", plan.namespace)
            console.print(f"[green]  \u2713 Registry pull secret applied from {plan.registry_secret_file}[/green]")
    except sh.ErrorReturnCode as err:
        raise ExternalToolError.from_sh(err) from err

    try:
        sh.helm(*helm_args(plan))
    except sh.ErrorReturnCode as err:
        diagnostics = describe("pods", plan.namespace)
        if diagnostics:
            console.print(diagnostics, markup=False, highlight=False)
        raise ExternalToolError.from_sh(err, diagnostics) from err
    console.print(f"[green]\u2705 Helm release '{plan.release}' deployed[/green]")

    wait_until(
        lambda: pods_ready(RUNTIME_POD_SELECTOR, plan.namespace),
        timeout=pod_ready_timeout,
        interval=POD_POLL_INTERVAL_SECONDS,
        description="runtime agent pods",
    ).raise_for_timeout()
    console.print("[green]\u2705 Runtime agent is ready[/green]")
