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

"""Configuration classes and run options."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from cluster_manager.constants import (
    BATCH_COOL_DOWN_SECONDS,
    DEFAULT_CREDENTIALS_FILE,
    DEFAULT_HELM_TIMEOUT,
    DEFAULT_KUBECONFIG,
    DEFAULT_LOG_DIR,
    DEFAULT_REGISTRY_PORT,
    DEFAULT_REGISTRY_SECRET_FILE,
    DEFAULT_TEST_TIMEOUT,
    NS_RAPIDFORT,
    RUNTIME_CHART_REF,
    RUNTIME_READY_TIMEOUT,
    RUNTIME_RELEASE,
    SETTLE_DELAY_SECONDS,
    dep_value,
)


# ============================================================================
# Configuration classes
# ============================================================================

class RegistrySettings(BaseSettings):
    """Local registry configuration, auto-loaded from RF_* env vars.

    Attributes:
        local_registry: Registry host override (``RF_LOCAL_REGISTRY``).
        use_local_registry: Deploy the runtime from the local registry (``RF_USE_LOCAL_REGISTRY``).
        registry_port: Port the local registry listens on.
    """

    model_config = SettingsConfigDict(env_prefix="RF_", extra="ignore")

    local_registry: str | None = None
    use_local_registry: bool = False
    registry_port: int = Field(default=DEFAULT_REGISTRY_PORT, ge=1, le=65535)


class RuntimeSettings(BaseSettings):
    """Runtime agent chart and credential locations, auto-loaded from RF_* env vars.

    Attributes:
        credentials_file: ``key = value`` credentials file.
        registry_secret_file: Optional pull-secret manifest used in remote mode.
        chart_ref: OCI reference of the runtime chart.
        release: Helm release name.
        namespace: Namespace the runtime is installed into.
        helm_timeout: ``helm --timeout`` value.
        pod_ready_timeout: Seconds to wait for runtime pods after Helm returns.
    """

    model_config = SettingsConfigDict(env_prefix="RF_", extra="ignore")

    credentials_file: Path = DEFAULT_CREDENTIALS_FILE
    registry_secret_file: Path = DEFAULT_REGISTRY_SECRET_FILE
    chart_ref: str = RUNTIME_CHART_REF
    release: str = RUNTIME_RELEASE
    namespace: str = NS_RAPIDFORT
    helm_timeout: str = Field(default=DEFAULT_HELM_TIMEOUT, pattern=r"^\d+[smh]$")
    pod_ready_timeout: int = Field(default=RUNTIME_READY_TIMEOUT, ge=1)


class HostSettings(BaseSettings):
    """Host-level toggles.

    Attributes:
        install_deps: Install missing core tools automatically (``INSTALL_DEPS``).
        kubeconfig_path: Canonical kubeconfig path backed up and restored around a run.
        log_dir: Directory for batch summary and per-backend logs.
        hooks_dir: Directory holding per-backend hook scripts (``<backend>/coverage.sh``).
    """

    model_config = SettingsConfigDict(extra="ignore")

    install_deps: bool = Field(default=False, validation_alias=AliasChoices("INSTALL_DEPS", "install_deps"))
    kubeconfig_path: Path = Field(default=DEFAULT_KUBECONFIG, validation_alias=AliasChoices("KUBECONFIG_PATH"))
    log_dir: Path = Field(default=DEFAULT_LOG_DIR, validation_alias=AliasChoices("RF_LOG_DIR"))
    hooks_dir: Path = Field(default=Path("."), validation_alias=AliasChoices("RF_HOOKS_DIR"))


class K3dSettings(BaseSettings):
    """k3d cluster naming, auto-loaded from K3D_* env vars."""

    model_config = SettingsConfigDict(env_prefix="K3D_", extra="ignore")

    cluster_name: str = "rapidfort"
    api_port: int = Field(default=6550, ge=1, le=65535)


class K0sSettings(BaseSettings):
    """k0s version pin, auto-loaded from K0S_* env vars."""

    model_config = SettingsConfigDict(env_prefix="K0S_", extra="ignore")

    version: str = Field(default=dep_value("k0s", "version"), pattern=r"^v[\d.]+\+k0s\.\d+$")


class MinikubeSettings(BaseSettings):
    """minikube profile and driver, auto-loaded from MINIKUBE_* env vars."""

    model_config = SettingsConfigDict(env_prefix="MINIKUBE_", extra="ignore")

    profile: str = "minikube"
    driver: str = Field(default="auto", pattern=r"^(auto|docker|none)$")
    memory: str = "4096"
    cpus: int = Field(default=2, ge=1)


class ZuulSettings(BaseSettings):
    """Zuul simulation toggles, auto-loaded from ZUUL_* env vars.

    Attributes:
        strict_mode: Also load an AppArmor profile confining ``ctr`` (``ZUUL_STRICT_MODE``).
    """

    model_config = SettingsConfigDict(env_prefix="ZUUL_", extra="ignore")

    strict_mode: bool = False


# ============================================================================
# Run options
# ============================================================================

@dataclass(frozen=True)
class RunOptions:
    """Options for one install/test run.

    Attributes:
        registry_ip: Explicit registry host (``--registry-ip``), or None.
        local_registry: Deploy the runtime from the local registry (``--local-registry``).
        image_tag: Runtime image tag used in local-registry mode, or None.
        skip_runtime: Skip runtime deployment.
        skip_coverage: Skip the external coverage hook.
        keep_cluster: Do not uninstall after a test run.
        timeout: Seconds to wait for all pods to settle.
        settle_delay: Seconds to wait after install before polling pods.
        cool_down: Seconds between backends in a batch run.
    """

    registry_ip: str | None = None
    local_registry: bool = False
    image_tag: str | None = None
    skip_runtime: bool = False
    skip_coverage: bool = False
    keep_cluster: bool = False
    timeout: int = DEFAULT_TEST_TIMEOUT
    settle_delay: int = SETTLE_DELAY_SECONDS
    cool_down: int = BATCH_COOL_DOWN_SECONDS
