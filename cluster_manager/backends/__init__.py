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

"""Backend adapters, keyed by backend id."""

from __future__ import annotations

from cluster_manager.backends.base import BackendAdapter
from cluster_manager.backends.k0s import K0sAdapter
from cluster_manager.backends.k3d import K3dAdapter
from cluster_manager.backends.k3s import K3sAdapter
from cluster_manager.backends.kind import KindAdapter
from cluster_manager.backends.kubeadm import KubeadmAdapter
from cluster_manager.backends.microk8s import Microk8sAdapter
from cluster_manager.backends.minikube import MinikubeAdapter
from cluster_manager.backends.zuul import ZuulAdapter
from cluster_manager.errors import PreconditionError
from cluster_manager.models import BackendId

BACKENDS: dict[BackendId, type[BackendAdapter]] = {
    BackendId.KUBEADM: KubeadmAdapter,
    BackendId.K0S: K0sAdapter,
    BackendId.K3S: K3sAdapter,
    BackendId.K3D: K3dAdapter,
    BackendId.KIND: KindAdapter,
    BackendId.MICROK8S: Microk8sAdapter,
    BackendId.MINIKUBE: MinikubeAdapter,
    BackendId.ZUUL: ZuulAdapter,
}


def parse_backend(name: str | BackendId) -> BackendId:
    """Map a backend name to its id.

    Raises:
        PreconditionError: If the name is not a supported backend.
    """
    try:
        return BackendId(name)
    except ValueError as err:
        supported = ", ".join(b.value for b in BackendId)
        raise PreconditionError(f"Unknown backend '{name}' (supported: {supported})") from err


def get_adapter(name: str | BackendId, **kwargs) -> BackendAdapter:
    """Instantiate the adapter for *name*, passing *kwargs* to its constructor.

    Raises:
        PreconditionError: If the backend is unknown or has no adapter.
    """
    backend = parse_backend(name)
    adapter_cls = BACKENDS.get(backend)
    if adapter_cls is None:
        raise PreconditionError(f"No adapter is implemented for backend '{backend.value}'")
    return adapter_cls(**kwargs)


__all__ = ["BACKENDS", "BackendAdapter", "get_adapter", "parse_backend"]
